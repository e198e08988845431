from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import select

from app.yiba.audit import audit_field_changes, create_audit_log, mutate_with_audit
from app.yiba.authz import (
    assert_can_read,
    assert_can_write,
    institution_id_for_entity,
    institution_scope,
    target_institution_id,
)
from app.yiba.constants import (
    CHANGE_CREATE,
    CHANGE_DELETE,
    CHANGE_STATUS,
    ENTITY_DOCUMENT,
    ENTITY_ENROLMENT,
    ENTITY_INSTITUTION,
    ENTITY_LEARNER,
    ENTITY_READINESS,
    ENTITY_SUBMISSION,
    QCTO_ROLES,
)
from app.yiba.errors import ConflictError, NotFoundError, ValidationError
from app.yiba.models import User
from app.yiba.modules.notifications import service as notifications
from app.yiba.modules.submissions.models import Submission, SubmissionResource
from app.yiba.validation import optional_string, parse_int, sanitize_string

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

SUBMISSION_STATUSES = ("DRAFT", "SUBMITTED", "UNDER_REVIEW", "APPROVED", "REJECTED", "RETURNED_FOR_CORRECTION")
INSTITUTION_EDITABLE_STATUSES = ("DRAFT", "SUBMITTED")
INSTITUTION_SETTABLE_STATUSES = ("DRAFT", "SUBMITTED")
QCTO_REVIEW_STATUSES = ("UNDER_REVIEW", "APPROVED", "REJECTED", "RETURNED_FOR_CORRECTION")
REVIEWABLE_STATUSES = ("SUBMITTED", "UNDER_REVIEW")
RESOURCE_TYPES = (ENTITY_READINESS, ENTITY_LEARNER, ENTITY_ENROLMENT, ENTITY_DOCUMENT, ENTITY_INSTITUTION)


def resource_to_dict(r: SubmissionResource) -> dict[str, object]:
    return {
        "id": r.id,
        "resource_type": r.resource_type,
        "resource_id_value": r.resource_id_value,
        "notes": r.notes,
        "added_by": r.added_by,
        "added_at": r.added_at.isoformat() if r.added_at else None,
    }


def submission_to_dict(sub: Submission) -> dict[str, object]:
    return {
        "id": sub.id,
        "institution_id": sub.institution_id,
        "institution_name": sub.institution.display_name if sub.institution else None,
        "title": sub.title,
        "submission_type": sub.submission_type,
        "status": sub.status,
        "submitted_at": sub.submitted_at.isoformat() if sub.submitted_at else None,
        "submitted_by": sub.submitted_by,
        "reviewed_at": sub.reviewed_at.isoformat() if sub.reviewed_at else None,
        "reviewed_by": sub.reviewed_by,
        "review_notes": sub.review_notes,
        "created_by": sub.created_by,
        "created_at": sub.created_at.isoformat() if sub.created_at else None,
        "updated_at": sub.updated_at.isoformat() if sub.updated_at else None,
        "resources": [resource_to_dict(r) for r in sub.resources],
    }


def get_submission(s: "Session", submission_id: int) -> Submission:
    sub = s.get(Submission, submission_id)
    if sub is None or sub.deleted_at is not None:
        raise NotFoundError("Submission not found")
    return sub


def _validate_resource(s: "Session", institution_id: int, resource_type: str, resource_id: object) -> str:
    rtype = sanitize_string(resource_type).upper()
    if rtype not in RESOURCE_TYPES:
        raise ValidationError(f"Invalid resource_type. Must be one of: {', '.join(RESOURCE_TYPES)}")
    value = sanitize_string(resource_id, 64)
    if not value:
        raise ValidationError("resource_id is required.")
    owner = institution_id_for_entity(s, rtype, value)
    if owner is None:
        raise NotFoundError(f"{rtype.title()} {value} not found")
    if owner != institution_id:
        raise ValidationError(f"{rtype.title()} {value} does not belong to this institution")
    return value


def add_resource(s: "Session", sub: Submission, payload: dict, user: User) -> SubmissionResource:
    assert_can_write(user, sub.institution_id)
    if sub.status != "DRAFT":
        raise ValidationError(f"Cannot add resources: submission status is {sub.status} (only DRAFT is editable)")

    rtype = sanitize_string(payload.get("resource_type")).upper()
    value = _validate_resource(s, sub.institution_id, rtype, payload.get("resource_id") or payload.get("resource_id_value"))
    exists = s.scalars(
        select(SubmissionResource.id).where(
            SubmissionResource.submission_id == sub.id,
            SubmissionResource.resource_type == rtype,
            SubmissionResource.resource_id_value == value,
        )
    ).first()
    if exists is not None:
        raise ConflictError("Resource is already part of this submission.")

    res = SubmissionResource(
        submission_id=sub.id,
        resource_type=rtype,
        resource_id_value=value,
        notes=optional_string(payload.get("notes")),
        added_by=user.id,
    )
    s.add(res)
    sub.resources.append(res)
    s.flush()
    create_audit_log(
        s,
        actor=user,
        entity_type=ENTITY_SUBMISSION,
        entity_id=sub.id,
        field_name="resource",
        new_value=f"{rtype}:{value}",
        change_type=CHANGE_CREATE,
        institution_id=sub.institution_id,
        related_submission_id=sub.id,
    )
    return res


def remove_resource(s: "Session", sub: Submission, resource_id: int, user: User) -> None:
    assert_can_write(user, sub.institution_id)
    if sub.status != "DRAFT":
        raise ValidationError(f"Cannot remove resources: submission status is {sub.status} (only DRAFT is editable)")
    res = next((r for r in sub.resources if r.id == resource_id), None)
    if res is None:
        raise NotFoundError("Submission resource not found")
    label = f"{res.resource_type}:{res.resource_id_value}"
    sub.resources.remove(res)
    s.flush()
    create_audit_log(
        s,
        actor=user,
        entity_type=ENTITY_SUBMISSION,
        entity_id=sub.id,
        field_name="resource",
        old_value=label,
        change_type=CHANGE_DELETE,
        institution_id=sub.institution_id,
        related_submission_id=sub.id,
    )


def create_submission(s: "Session", payload: dict, user: User) -> Submission:
    title = sanitize_string(payload.get("title"), 255)
    if not title:
        raise ValidationError("title is required.")
    institution_id = target_institution_id(user, parse_int(payload.get("institution_id"), "institution_id"))
    assert_can_write(user, institution_id)

    now = datetime.utcnow()
    sub = Submission(
        institution_id=institution_id,
        title=title,
        submission_type=optional_string(payload.get("submission_type"), 64),
        status="DRAFT",
        created_by=user.id,
        created_at=now,
        updated_at=now,
    )
    s.add(sub)
    s.flush()
    create_audit_log(
        s,
        actor=user,
        entity_type=ENTITY_SUBMISSION,
        entity_id=sub.id,
        field_name="submission_id",
        new_value=title,
        change_type=CHANGE_CREATE,
        institution_id=institution_id,
        related_submission_id=sub.id,
    )

    for item in payload.get("resources") or []:
        if not isinstance(item, dict):
            raise ValidationError("resources must be a list of {resource_type, resource_id} objects")
        add_resource(s, sub, item, user)
    return sub


def update_submission(s: "Session", sub: Submission, payload: dict, user: User) -> dict[str, tuple]:
    assert_can_write(user, sub.institution_id)
    if sub.status not in INSTITUTION_EDITABLE_STATUSES:
        raise ValidationError(
            f"Cannot update submission: status is {sub.status} "
            f"(only {', '.join(INSTITUTION_EDITABLE_STATUSES)} submissions can be updated)"
        )

    changes: dict[str, tuple] = {}
    if "title" in payload:
        title = sanitize_string(payload.get("title"), 255)
        if not title:
            raise ValidationError("title cannot be empty.")
        if title != sub.title:
            changes["title"] = (sub.title, title)
            sub.title = title
    if "submission_type" in payload:
        stype = optional_string(payload.get("submission_type"), 64)
        if stype != sub.submission_type:
            changes["submission_type"] = (sub.submission_type, stype)
            sub.submission_type = stype

    status = sanitize_string(payload.get("status")).upper()
    if status:
        if status not in INSTITUTION_SETTABLE_STATUSES:
            raise ValidationError(
                f"Invalid status: {status} (institutions can only set: {', '.join(INSTITUTION_SETTABLE_STATUSES)})"
            )
        if status == "SUBMITTED" and sub.status != "SUBMITTED":
            if not sub.resources:
                raise ValidationError("Cannot submit: the submission has no resources.")
            sub.submitted_at = datetime.utcnow()
            sub.submitted_by = user.id
        elif status == "DRAFT" and sub.status == "SUBMITTED":
            sub.submitted_at = None
            sub.submitted_by = None
        if status != sub.status:
            changes["status"] = (sub.status, status)
            sub.status = status

    if changes:
        sub.updated_at = datetime.utcnow()
        audit_field_changes(
            s,
            actor=user,
            entity_type=ENTITY_SUBMISSION,
            entity_id=sub.id,
            changes=changes,
            institution_id=sub.institution_id,
            related_submission_id=sub.id,
        )
    return changes


def submissions_query(
    s: "Session",
    user: User,
    *,
    status: str | None = None,
    institution_id: int | None = None,
):
    stmt = select(Submission).where(Submission.deleted_at.is_(None))
    if user.role in QCTO_ROLES:
        from app.yiba.qcto_access import visible_institution_ids

        ids = visible_institution_ids(s, user)
        if ids is not None:
            stmt = stmt.where(Submission.institution_id.in_(ids))
        stmt = stmt.where(Submission.status != "DRAFT")
        if institution_id is not None:
            stmt = stmt.where(Submission.institution_id == institution_id)
    else:
        scope = institution_scope(user, institution_id)
        if scope is not None:
            stmt = stmt.where(Submission.institution_id == scope)
    if status:
        stmt = stmt.where(Submission.status == status.upper())
    return stmt


def assert_can_read_submission(s: "Session", user: User, sub: Submission) -> None:
    assert_can_read(s, user, ENTITY_SUBMISSION, sub.id, sub.institution_id)


def review_submission(s: "Session", submission_id: int, payload: dict, user: User) -> Submission:
    from app.yiba.modules.reviews.service import is_reviewer_assigned

    status = sanitize_string(payload.get("status")).upper()
    if status not in QCTO_REVIEW_STATUSES:
        raise ValidationError(f"Invalid status: {status or None} (QCTO can only set: {', '.join(QCTO_REVIEW_STATUSES)})")
    notes = optional_string(payload.get("review_notes"))

    sub = get_submission(s, submission_id)
    assert_can_read_submission(s, user, sub)
    if sub.status not in REVIEWABLE_STATUSES:
        raise ValidationError(
            f"Cannot review submission: status is {sub.status} "
            "(only SUBMITTED or UNDER_REVIEW submissions can be reviewed)"
        )
    if user.role in QCTO_ROLES and not is_reviewer_assigned(s, ENTITY_SUBMISSION, sub.id, user.id):
        logger.warning("Unassigned reviewer user_id=%s reviewing submission %s", user.id, sub.id)

    old_status = sub.status

    def _apply(sess: "Session", actor: User) -> Submission:
        now = datetime.utcnow()
        sub.status = status
        sub.reviewed_at = now
        sub.reviewed_by = actor.id
        if notes is not None:
            sub.review_notes = notes
        sub.updated_at = now
        return sub

    mutate_with_audit(
        s,
        actor=user,
        entity_type=ENTITY_SUBMISSION,
        change_type=CHANGE_STATUS,
        mutation=_apply,
        field_name="status",
        old_value=old_status,
        new_value=status,
        institution_id=sub.institution_id,
        reason=notes,
        related_submission_id=sub.id,
    )

    recipient = sub.submitted_by or sub.created_by
    if recipient is not None and status != old_status:
        notifications.notify(s, recipient, notifications.submission_reviewed(sub.id, status))
        s.commit()
    return sub
