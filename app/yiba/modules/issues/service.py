from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from app.yiba.audit import audit_field_changes, create_audit_log
from app.yiba.constants import CHANGE_CREATE, ENTITY_ISSUE, PLATFORM_ADMIN
from app.yiba.errors import ForbiddenError, NotFoundError, ValidationError
from app.yiba.models import User
from app.yiba.modules.issues.models import IssueReport
from app.yiba.modules.notifications import service as notifications
from app.yiba.validation import optional_string, parse_int, sanitize_string

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

ISSUE_CATEGORIES = ("BUG", "DATA_ISSUE", "ACCESS_ISSUE", "FEATURE_REQUEST", "OTHER")
ISSUE_STATUSES = ("OPEN", "IN_PROGRESS", "RESOLVED", "CLOSED")
ISSUE_PRIORITIES = ("LOW", "MEDIUM", "HIGH", "CRITICAL")
CLOSED_STATUSES = ("RESOLVED", "CLOSED")

ADMIN_FIELDS = ("status", "priority", "assigned_to", "internal_notes", "resolution")
REPORTER_FIELDS = ("title", "description")


def _choice(raw: Any, field: str, choices: tuple[str, ...]) -> str:
    value = sanitize_string(raw).upper()
    if value not in choices:
        raise ValidationError(f"Invalid {field}. Must be one of: {', '.join(choices)}")
    return value


def issue_to_dict(issue: IssueReport, *, viewer: User | None = None) -> dict[str, object]:
    data: dict[str, object] = {
        "id": issue.id,
        "title": issue.title,
        "description": issue.description,
        "category": issue.category,
        "status": issue.status,
        "priority": issue.priority,
        "page_url": issue.page_url,
        "resolution": issue.resolution,
        "reporter": {
            "user_id": issue.reported_by,
            "name": issue.reporter.full_name if issue.reporter else None,
            "email": issue.reporter.email if issue.reporter else None,
            "role": issue.reporter.role if issue.reporter else None,
        },
        "institution": (
            {"id": issue.institution_id, "name": issue.institution.display_name} if issue.institution else None
        ),
        "assignee": (
            {"user_id": issue.assigned_to, "name": issue.assignee.full_name} if issue.assignee else None
        ),
        "created_at": issue.created_at.isoformat() if issue.created_at else None,
        "updated_at": issue.updated_at.isoformat() if issue.updated_at else None,
        "resolved_at": issue.resolved_at.isoformat() if issue.resolved_at else None,
    }
    if viewer is not None and viewer.role == PLATFORM_ADMIN:
        data["internal_notes"] = issue.internal_notes
    return data


def create_issue(s: "Session", payload: dict, user: User) -> IssueReport:
    errors = []
    title = sanitize_string(payload.get("title"), 255)
    description = sanitize_string(payload.get("description"))
    if not title:
        errors.append("title is required.")
    if not description:
        errors.append("description is required.")
    if not sanitize_string(payload.get("category")):
        errors.append("category is required.")
    if errors:
        raise ValidationError("; ".join(errors), details={"errors": errors})

    category = _choice(payload.get("category"), "category", ISSUE_CATEGORIES)
    priority = (
        _choice(payload.get("priority"), "priority", ISSUE_PRIORITIES)
        if sanitize_string(payload.get("priority"))
        else "MEDIUM"
    )

    now = datetime.utcnow()
    issue = IssueReport(
        reported_by=user.id,
        institution_id=user.institution_id,
        title=title,
        description=description,
        category=category,
        priority=priority,
        status="OPEN",
        page_url=optional_string(payload.get("page_url"), 1024),
        created_at=now,
        updated_at=now,
    )
    s.add(issue)
    s.flush()

    create_audit_log(
        s,
        actor=user,
        entity_type=ENTITY_ISSUE,
        entity_id=issue.id,
        field_name="issue_id",
        new_value=title,
        change_type=CHANGE_CREATE,
        institution_id=user.institution_id,
    )
    admin_ids = s.scalars(
        select(User.id).where(User.role == PLATFORM_ADMIN, User.is_active.is_(True), User.id != user.id)
    ).all()
    notifications.notify_users(s, admin_ids, notifications.issue_reported(issue.id, title, category))
    logger.info("Issue %s reported by user_id=%s (%s)", issue.id, user.id, category)
    return issue


def get_issue(s: "Session", issue_id: int) -> IssueReport:
    issue = s.get(IssueReport, issue_id)
    if issue is None:
        raise NotFoundError("Issue not found")
    return issue


def assert_can_view_issue(user: User, issue: IssueReport) -> None:
    if user.role != PLATFORM_ADMIN and issue.reported_by != user.id:
        raise ForbiddenError("You can only view issues you reported.")


def issues_query(
    s: "Session",
    user: User,
    *,
    status: str | None = None,
    category: str | None = None,
    priority: str | None = None,
):
    """Platform admins see every issue; everyone else sees the ones they reported."""
    stmt = select(IssueReport)
    if user.role != PLATFORM_ADMIN:
        stmt = stmt.where(IssueReport.reported_by == user.id)
    if status:
        stmt = stmt.where(IssueReport.status == status.upper())
    if category:
        stmt = stmt.where(IssueReport.category == category.upper())
    if priority:
        stmt = stmt.where(IssueReport.priority == priority.upper())
    return stmt


def _admin_value(s: "Session", field: str, raw: Any) -> Any:
    if field == "status":
        return _choice(raw, "status", ISSUE_STATUSES)
    if field == "priority":
        return _choice(raw, "priority", ISSUE_PRIORITIES)
    if field == "assigned_to":
        assignee_id = parse_int(raw, "assigned_to")
        if assignee_id is not None:
            assignee = s.get(User, assignee_id)
            if assignee is None or assignee.role != PLATFORM_ADMIN or not assignee.is_active:
                raise ValidationError("assigned_to must be an active platform admin.")
        return assignee_id
    return optional_string(raw)


def update_issue(s: "Session", issue: IssueReport, payload: dict, user: User) -> dict[str, tuple]:
    """
    Platform admins triage (status, priority, assignee, notes, resolution); the
    reporter may reword the title and description while the issue is OPEN.
    """
    is_admin = user.role == PLATFORM_ADMIN
    is_reporter = issue.reported_by == user.id
    if not is_admin and not is_reporter:
        raise ForbiddenError("You can only update issues you reported.")

    allowed: list[str] = []
    if is_admin:
        allowed.extend(ADMIN_FIELDS)
    if is_reporter and issue.status == "OPEN":
        allowed.extend(REPORTER_FIELDS)
    requested = [f for f in (*ADMIN_FIELDS, *REPORTER_FIELDS) if f in payload]
    if not any(f in allowed for f in requested):
        raise ValidationError("No valid updates.")

    changes: dict[str, tuple] = {}
    for field in allowed:
        if field not in payload:
            continue
        if field in REPORTER_FIELDS:
            new = sanitize_string(payload.get(field), 255 if field == "title" else None)
            if not new:
                raise ValidationError(f"{field} cannot be empty.")
        else:
            new = _admin_value(s, field, payload.get(field))
        old = getattr(issue, field)
        if old != new:
            changes[field] = (old, new)
            setattr(issue, field, new)

    if not changes:
        return changes

    now = datetime.utcnow()
    issue.updated_at = now
    if "status" in changes:
        issue.resolved_at = now if issue.status in CLOSED_STATUSES else None
    # internal notes stay out of the institution-scoped audit view
    notes = {k: v for k, v in changes.items() if k == "internal_notes"}
    audit_field_changes(
        s,
        actor=user,
        entity_type=ENTITY_ISSUE,
        entity_id=issue.id,
        changes={k: v for k, v in changes.items() if k not in notes},
        institution_id=issue.institution_id,
    )
    audit_field_changes(s, actor=user, entity_type=ENTITY_ISSUE, entity_id=issue.id, changes=notes)
    if "status" in changes and not is_reporter:
        notifications.notify(s, issue.reported_by, notifications.issue_updated(issue.id, issue.title, issue.status))
    return changes
