"""
Tabular exports of the scoped list queries.

Each dataset reuses the same query a list endpoint uses, so an export never
shows a caller more than the matching list would.
"""
from __future__ import annotations

import csv
import io
import json
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from app.yiba.audit import audit_log_to_dict, audit_logs_query, create_audit_log
from app.yiba.constants import CHANGE_CREATE, ENTITY_EXPORT
from app.yiba.errors import ForbiddenError, NotFoundError, ValidationError
from app.yiba.models import User
from app.yiba.modules.documents.models import EvidenceFlag
from app.yiba.modules.documents.service import flag_to_dict, flags_query
from app.yiba.modules.learners.models import Enrolment, Learner
from app.yiba.modules.learners.service import enrolment_to_dict, enrolments_query, learner_to_dict, learners_query
from app.yiba.modules.qcto_requests.models import QCTORequest
from app.yiba.modules.qcto_requests.service import request_to_dict, requests_query
from app.yiba.modules.readiness.models import Readiness
from app.yiba.modules.readiness.service import readiness_query, readiness_to_dict
from app.yiba.modules.submissions.models import Submission
from app.yiba.modules.submissions.service import submission_to_dict, submissions_query
from app.yiba.rbac import has_cap

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

EXPORT_FORMATS = ("csv", "json")
REPORT_CAPS = ("REPORTS_EXPORT", "QCTO_EXPORT")
AUDIT_CAPS = ("AUDIT_EXPORT",)


@dataclass(frozen=True)
class Dataset:
    name: str
    capabilities: tuple[str, ...]
    columns: tuple[str, ...]
    fetch: Callable[["Session", User, dict], Iterable[dict[str, Any]]]


def _learners(s: "Session", user: User, filters: dict) -> list[dict]:
    stmt = learners_query(s, user, institution_id=filters.get("institution_id"))
    return [learner_to_dict(x) for x in s.scalars(stmt.order_by(Learner.id))]


def _enrolments(s: "Session", user: User, filters: dict) -> list[dict]:
    stmt = enrolments_query(s, user, status=filters.get("status"), institution_id=filters.get("institution_id"))
    return [enrolment_to_dict(x) for x in s.scalars(stmt.order_by(Enrolment.id))]


def _readiness(s: "Session", user: User, filters: dict) -> list[dict]:
    stmt = readiness_query(s, user, status=filters.get("status"), institution_id=filters.get("institution_id"))
    return [readiness_to_dict(x) for x in s.scalars(stmt.order_by(Readiness.id))]


def _submissions(s: "Session", user: User, filters: dict) -> list[dict]:
    stmt = submissions_query(s, user, status=filters.get("status"), institution_id=filters.get("institution_id"))
    rows = []
    for sub in s.scalars(stmt.order_by(Submission.id)):
        d = submission_to_dict(sub)
        d["resource_count"] = len(sub.resources)
        rows.append(d)
    return rows


def _requests(s: "Session", user: User, filters: dict) -> list[dict]:
    stmt = requests_query(s, user, status=filters.get("status"), institution_id=filters.get("institution_id"))
    return [request_to_dict(x) for x in s.scalars(stmt.order_by(QCTORequest.id))]


def _audit_logs(s: "Session", user: User, filters: dict) -> list[dict]:
    stmt = audit_logs_query(
        s,
        user,
        entity_type=filters.get("entity_type"),
        institution_id=filters.get("institution_id"),
        start=filters.get("start"),
        end=filters.get("end"),
    )
    return [audit_log_to_dict(x) for x in s.scalars(stmt)]


def _evidence_flags(s: "Session", user: User, filters: dict) -> list[dict]:
    stmt = flags_query(s, user, status=filters.get("status"))
    return [flag_to_dict(x) for x in s.scalars(stmt.order_by(EvidenceFlag.id))]


DATASETS: dict[str, Dataset] = {
    d.name: d
    for d in (
        Dataset(
            "learners",
            REPORT_CAPS,
            (
                "id",
                "institution_id",
                "national_id",
                "first_name",
                "last_name",
                "birth_date",
                "gender_code",
                "disability_status",
                "email",
                "phone",
                "popia_consent",
                "created_at",
            ),
            _learners,
        ),
        Dataset(
            "enrolments",
            REPORT_CAPS,
            (
                "id",
                "learner_id",
                "institution_id",
                "qualification_title",
                "start_date",
                "expected_completion_date",
                "completed_date",
                "enrolment_status",
            ),
            _enrolments,
        ),
        Dataset(
            "readiness",
            REPORT_CAPS,
            (
                "id",
                "institution_id",
                "qualification_title",
                "saqa_id",
                "nqf_level",
                "delivery_mode",
                "readiness_status",
                "submission_date",
                "updated_at",
            ),
            _readiness,
        ),
        Dataset(
            "submissions",
            REPORT_CAPS,
            (
                "id",
                "institution_id",
                "institution_name",
                "title",
                "submission_type",
                "status",
                "resource_count",
                "submitted_at",
                "reviewed_at",
                "review_notes",
            ),
            _submissions,
        ),
        Dataset(
            "qcto-requests",
            REPORT_CAPS,
            (
                "id",
                "institution_id",
                "institution_name",
                "title",
                "request_type",
                "status",
                "requested_at",
                "reviewed_at",
                "expires_at",
                "response_notes",
            ),
            _requests,
        ),
        Dataset(
            "audit-logs",
            AUDIT_CAPS,
            (
                "id",
                "changed_at",
                "entity_type",
                "entity_id",
                "field_name",
                "change_type",
                "old_value",
                "new_value",
                "changed_by",
                "role_at_time",
                "institution_id",
                "reason",
            ),
            _audit_logs,
        ),
        Dataset(
            "evidence-flags",
            REPORT_CAPS,
            ("id", "document_id", "reason", "status", "flagged_by", "created_at", "resolved_by", "resolved_at"),
            _evidence_flags,
        ),
    )
}


def get_dataset(name: str) -> Dataset:
    dataset = DATASETS.get(name)
    if dataset is None:
        raise NotFoundError(f"Unknown export dataset: {name}")
    return dataset


def assert_can_export(user: User, dataset: Dataset) -> None:
    if not any(has_cap(user.role, cap) for cap in dataset.capabilities):
        raise ForbiddenError(f"Missing capability to export {dataset.name}")


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (list, dict)):
        return json.dumps(value, sort_keys=True, default=str)
    return str(value)


def to_csv(columns: Iterable[str], rows: Iterable[dict[str, Any]]) -> str:
    """Header row then one row per record. Every cell is quoted; embedded quotes are doubled."""
    columns = list(columns)
    out = io.StringIO()
    w = csv.writer(out, quoting=csv.QUOTE_ALL, lineterminator="\n")
    w.writerow(columns)
    for row in rows:
        w.writerow([_cell(row.get(c)) for c in columns])
    return out.getvalue()


def to_json(columns: Iterable[str], rows: Iterable[dict[str, Any]]) -> str:
    columns = list(columns)
    data = [{c: row.get(c) for c in columns} for row in rows]
    return json.dumps({"data": data, "count": len(data)}, default=str)


def export_filename(dataset: str, fmt: str, today: date | None = None) -> str:
    today = today or datetime.utcnow().date()
    return f"{dataset}-{today.isoformat()}.{fmt}"


def run_export(s: "Session", user: User, name: str, fmt: str, filters: dict) -> tuple[str, str, int]:
    """Returns (body, filename, row_count) and writes the EXPORT audit row."""
    fmt = (fmt or "csv").lower()
    if fmt not in EXPORT_FORMATS:
        raise ValidationError(f"Invalid format: {fmt} (must be one of: {', '.join(EXPORT_FORMATS)})")
    dataset = get_dataset(name)
    assert_can_export(user, dataset)

    rows = list(dataset.fetch(s, user, filters))
    body = to_csv(dataset.columns, rows) if fmt == "csv" else to_json(dataset.columns, rows)
    filename = export_filename(dataset.name, fmt)
    create_audit_log(
        s,
        actor=user,
        entity_type=ENTITY_EXPORT,
        entity_id=dataset.name,
        field_name="export",
        new_value={"format": fmt, "rows": len(rows), "filters": {k: v for k, v in filters.items() if v is not None}},
        change_type=CHANGE_CREATE,
        institution_id=user.institution_id,
    )
    return body, filename, len(rows)
