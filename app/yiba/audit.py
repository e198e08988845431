"""
Audit logging.

Every mutation of institution or regulator data writes one or more `AuditLog`
rows in the same session as the change. `mutate_with_audit` wraps the
permission check, the mutation and the audit row into a single commit.
"""
from __future__ import annotations

import json
from collections.abc import Callable, Iterable
from datetime import date, datetime
from typing import Any, TypeVar

from flask import g, has_app_context, has_request_context, request
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.yiba.authz import institution_scope
from app.yiba.constants import CHANGE_CREATE, CHANGE_DELETE, CHANGE_STATUS, CHANGE_TYPES, CHANGE_UPDATE, QCTO_ROLES
from app.yiba.errors import AuditError
from app.yiba.models import AuditLog, User

T = TypeVar("T")


def serialize_value(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (list, tuple, dict)):
        return json.dumps(value, sort_keys=True, default=str)
    return str(value)


def change_type_for(old: Any, new: Any, field_name: str | None = None) -> str:
    if old is None and new is not None:
        return CHANGE_CREATE
    if new is None and old is not None:
        return CHANGE_DELETE
    if field_name and field_name.lower().endswith("status"):
        return CHANGE_STATUS
    return CHANGE_UPDATE


def _request_context() -> tuple[str | None, str | None]:
    rid = getattr(g, "request_id", None) if has_app_context() else None
    ip = request.remote_addr if has_request_context() else None
    return rid, ip


def create_audit_log(
    s: Session,
    *,
    actor: User | None,
    entity_type: str,
    entity_id: Any,
    field_name: str,
    old_value: Any = None,
    new_value: Any = None,
    change_type: str = CHANGE_UPDATE,
    reason: str | None = None,
    institution_id: int | None = None,
    related_submission_id: int | None = None,
) -> AuditLog:
    if change_type not in CHANGE_TYPES:
        raise AuditError(f"Unknown audit change type: {change_type}")
    rid, ip = _request_context()
    entry = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        field_name=field_name,
        old_value=serialize_value(old_value),
        new_value=serialize_value(new_value),
        change_type=change_type,
        changed_by=actor.id if actor else None,
        role_at_time=actor.role if actor else None,
        reason=(reason or None) and reason[:512],
        institution_id=institution_id,
        related_submission_id=related_submission_id,
        request_id=rid,
        client_ip=ip,
    )
    try:
        s.add(entry)
        s.flush()
    except SQLAlchemyError as e:
        raise AuditError("Audit log creation failed - transaction aborted") from e
    return entry


def create_audit_logs(s: Session, entries: Iterable[dict[str, Any]]) -> list[AuditLog]:
    return [create_audit_log(s, **entry) for entry in entries]


def audit_field_changes(
    s: Session,
    *,
    actor: User | None,
    entity_type: str,
    entity_id: Any,
    changes: dict[str, tuple[Any, Any]],
    reason: str | None = None,
    institution_id: int | None = None,
    related_submission_id: int | None = None,
) -> list[AuditLog]:
    return create_audit_logs(
        s,
        (
            {
                "actor": actor,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "field_name": field_name,
                "old_value": old,
                "new_value": new,
                "change_type": CHANGE_STATUS if field_name.endswith("status") else CHANGE_UPDATE,
                "reason": reason,
                "institution_id": institution_id,
                "related_submission_id": related_submission_id,
            }
            for field_name, (old, new) in changes.items()
            if old != new
        ),
    )


def mutate_with_audit(
    s: Session,
    *,
    actor: User,
    entity_type: str,
    change_type: str,
    mutation: Callable[[Session, User], T],
    assert_can: Callable[[Session, User], None] | None = None,
    field_name: str | None = None,
    old_value: Any = None,
    new_value: Any = None,
    entity_id: Any = None,
    institution_id: int | None = None,
    reason: str | None = None,
    related_submission_id: int | None = None,
) -> T:
    """
    Run `assert_can`, then `mutation`, then write the audit row, and commit once.

    The entity id defaults to `result.id`. Any exception rolls back both the
    mutation and the audit row before propagating.
    """
    try:
        if assert_can is not None:
            assert_can(s, actor)
        result = mutation(s, actor)
        s.flush()
        eid = entity_id if entity_id is not None else getattr(result, "id", None)
        if eid is None:
            raise AuditError("Audit log creation failed - transaction aborted")
        create_audit_log(
            s,
            actor=actor,
            entity_type=entity_type,
            entity_id=eid,
            field_name=field_name or f"{entity_type.lower()}_id",
            old_value=old_value,
            new_value=new_value,
            change_type=change_type,
            reason=reason,
            institution_id=institution_id,
            related_submission_id=related_submission_id,
        )
        s.commit()
    except Exception:
        s.rollback()
        raise
    return result


def audit_log_to_dict(row: AuditLog) -> dict[str, object]:
    return {
        "id": row.id,
        "entity_type": row.entity_type,
        "entity_id": row.entity_id,
        "field_name": row.field_name,
        "old_value": row.old_value,
        "new_value": row.new_value,
        "change_type": row.change_type,
        "changed_by": row.changed_by,
        "changed_by_email": row.changed_by_user.email if row.changed_by_user else None,
        "role_at_time": row.role_at_time,
        "reason": row.reason,
        "institution_id": row.institution_id,
        "related_submission_id": row.related_submission_id,
        "request_id": row.request_id,
        "changed_at": row.changed_at.isoformat() if row.changed_at else None,
    }


def audit_logs_query(
    s: Session,
    user: User,
    *,
    entity_type: str | None = None,
    entity_id: str | None = None,
    change_type: str | None = None,
    institution_id: int | None = None,
    changed_by: int | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
):
    """Audit rows the user may see, newest first. Institution roles only ever see their own institution."""
    stmt = select(AuditLog)
    if user.role in QCTO_ROLES:
        from app.yiba.qcto_access import visible_institution_ids

        ids = visible_institution_ids(s, user)
        if ids is not None:
            stmt = stmt.where(AuditLog.institution_id.in_(ids))
        if institution_id is not None:
            stmt = stmt.where(AuditLog.institution_id == institution_id)
    else:
        scope = institution_scope(user, institution_id)
        if scope is not None:
            stmt = stmt.where(AuditLog.institution_id == scope)

    if entity_type:
        stmt = stmt.where(AuditLog.entity_type == entity_type.upper())
    if entity_id:
        stmt = stmt.where(AuditLog.entity_id == str(entity_id))
    if change_type:
        stmt = stmt.where(AuditLog.change_type == change_type.upper())
    if changed_by is not None:
        stmt = stmt.where(AuditLog.changed_by == changed_by)
    if start is not None:
        stmt = stmt.where(AuditLog.changed_at >= start)
    if end is not None:
        stmt = stmt.where(AuditLog.changed_at <= end)
    return stmt.order_by(AuditLog.changed_at.desc(), AuditLog.id.desc())
