from __future__ import annotations

import csv
import io
from dataclasses import dataclass


@dataclass(frozen=True)
class CsvRowError:
    row_number: int
    message: str


def _get(row: dict[str, str], *names: str) -> str:
    for n in names:
        if n in row and row[n] is not None:
            return str(row[n]).strip()
    return ""


def parse_invite_csv(file_bytes: bytes) -> tuple[list[dict], list[CsvRowError]]:
    """
    Parse a bulk invite CSV.

    Expected headers:
    - email
    - role

    Optional headers:
    - first_name, last_name
    - institution_id
    - province

    Returns:
      (rows, errors)
    Each row carries a `row_number` (1 = header) so results can point back into the file.
    """
    text = file_bytes.decode("utf-8-sig", errors="replace")
    reader = csv.DictReader(io.StringIO(text))
    if not reader.fieldnames:
        raise ValueError("CSV has no header row.")
    headers = {h.strip().lower() for h in reader.fieldnames if h}
    if "email" not in headers:
        raise ValueError("CSV must have an 'email' column.")

    rows: list[dict] = []
    errors: list[CsvRowError] = []
    for idx, raw in enumerate(reader, start=2):
        if not raw or all((v or "").strip() == "" for v in raw.values() if isinstance(v, str)):
            continue
        row = {(k or "").strip().lower(): v for k, v in raw.items()}
        email = _get(row, "email", "email_address")
        if not email:
            errors.append(CsvRowError(idx, "Missing email"))
            continue
        rows.append(
            {
                "row_number": idx,
                "email": email,
                "role": _get(row, "role").upper(),
                "first_name": _get(row, "first_name", "first name"),
                "last_name": _get(row, "last_name", "last name", "surname"),
                "institution_id": _get(row, "institution_id"),
                "province": _get(row, "province", "default_province"),
            }
        )
    return rows, errors
