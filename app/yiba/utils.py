from __future__ import annotations

from datetime import date, datetime

from flask import g, request

from app.yiba.errors import UnauthorizedError
from app.yiba.models import User


def current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise UnauthorizedError("Authentication required")
    return u


def get_payload() -> dict:
    """JSON body for API clients, form fields for multipart/form posts."""
    if request.is_json:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}
    return request.form.to_dict()


def iso(value: date | datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def page_response(items: list[dict], total: int, limit: int, offset: int) -> dict[str, object]:
    return {"items": items, "count": total, "limit": limit, "offset": offset}
