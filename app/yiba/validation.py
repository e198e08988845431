"""
Input validation helpers shared by route handlers and services.
"""
from __future__ import annotations

import re
from datetime import date, datetime, timezone

from app.yiba.constants import DEFAULT_PAGE_LIMIT, MAX_PAGE_LIMIT
from app.yiba.errors import ValidationError

_EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_SA_ID_RE = re.compile(r"^\d{13}$")


def sanitize_string(value: object, max_length: int | None = None) -> str:
    """Trim, strip control characters and optionally truncate."""
    if value is None:
        return ""
    text = _CONTROL_CHARS_RE.sub("", str(value)).strip()
    if max_length is not None:
        text = text[:max_length]
    return text


def optional_string(value: object, max_length: int | None = None) -> str | None:
    text = sanitize_string(value, max_length)
    return text or None


def is_valid_email(email: str | None) -> bool:
    return bool(email and _EMAIL_RE.match(email.strip()))


def is_valid_sa_id(value: str | None) -> bool:
    """South African national ID numbers are 13 digits."""
    return bool(value and _SA_ID_RE.match(value.strip()))


def validate_pagination(limit: object = None, offset: object = None) -> tuple[int, int]:
    def _to_int(raw: object, name: str) -> int | None:
        if raw is None or str(raw).strip() == "":
            return None
        try:
            return int(str(raw).strip())
        except ValueError as e:
            raise ValidationError(f"{name} must be an integer") from e

    lim = _to_int(limit, "limit")
    off = _to_int(offset, "offset")
    if lim is None:
        lim = DEFAULT_PAGE_LIMIT
    if lim < 1 or lim > MAX_PAGE_LIMIT:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_LIMIT}")
    if off is None:
        off = 0
    if off < 0:
        raise ValidationError("offset must be >= 0")
    return lim, off


def parse_date(value: object, field: str = "date") -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError as e:
        raise ValidationError(f"{field} must be YYYY-MM-DD") from e


def parse_datetime(value: object, field: str = "datetime") -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1]
    try:
        dt = datetime.fromisoformat(text)
    except ValueError as e:
        raise ValidationError(f"{field} must be an ISO-8601 datetime") from e
    # stored naive UTC
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def parse_bool(value: object) -> bool | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "y", "on"):
        return True
    if text in ("0", "false", "no", "n", "off"):
        return False
    raise ValidationError(f"Invalid boolean: {value!r}")


def parse_int(value: object, field: str) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    try:
        return int(str(value).strip())
    except ValueError as e:
        raise ValidationError(f"{field} must be an integer") from e
