"""
Review assignment.

A review (readiness record, submission or QCTO request) can be assigned to
several QCTO users at once. An assignee must hold an active QCTO role and,
below super admin, have the review's province in their assigned provinces.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import select

from app.yiba.audit import create_audit_log
from app.yiba.constants import (
    CHANGE_CREATE,
    CHANGE_DELETE,
    CHANGE_UPDATE,
    ENTITY_QCTO_REQUEST,
    ENTITY_READINESS,
    ENTITY_SUBMISSION,
    QCTO_AUDITOR,
    QCTO_REVIEWER,
    QCTO_ROLES,
    QCTO_SUPER_ADMIN,
    REVIEW_ASSIGNER_ROLES,
    REVIEWER_POOL_ROLES,
)
from app.yiba.errors import ForbiddenError, NotFoundError, ValidationError
from app.yiba.models import User
from app.yiba.modules.notifications import service as notifications
from app.yiba.modules.qcto_requests.models import QCTORequest
from app.yiba.modules.readiness.models import Readiness
from app.yiba.modules.reviews.models import ReviewAssignment
from app.yiba.modules.submissions.models import Submission

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

REVIEW_TYPES = (ENTITY_READINESS, ENTITY_SUBMISSION, ENTITY_QCTO_REQUEST)
ASSIGNMENT_ROLES = ("REVIEWER", "AUDITOR")

_REVIEW_MODELS = {
    ENTITY_READINESS: Readiness,
    ENTITY_SUBMISSION: Submission,
    ENTITY_QCTO_REQUEST: QCTORequest,
}


def assignment_to_dict(a: ReviewAssignment) -> dict[str, object]:
    reviewer = a.assignee
    return {
        "id": a.id,
        "review_type": a.review_type,
        "review_id": a.review_id,
        "assigned_to": a.assigned_to,
        "assigned_by": a.assigned_by,
        "assignment_role": a.assignment_role,
        "status": a.status,
        "notes": a.notes,
        "assigned_at": a.assigned_at.isoformat() if a.assigned_at else None,
        "reviewer": {
            "id": reviewer.id,
            "email": reviewer.email,
            "name": reviewer.full_name,
            "role": reviewer.role,
        }
        if reviewer
        else None,
    }


def _review_record(s: "Session", review_type: str, review_id: int):
    model = _REVIEW_MODELS.get(review_type)
    if model is None:
        raise ValidationError(f"Invalid review_type: {review_type} (must be one of: {', '.join(REVIEW_TYPES)})")
    obj = s.get(model, review_id)
    if obj is None or getattr(obj, "deleted_at", None) is not None:
        return None
    return obj


def review_province(s: "Session", review_type: str, review_id: int) -> str | None:
    obj = _review_record(s, review_type, review_id)
    if obj is None or obj.institution is None:
        return None
    return obj.institution.province


def is_eligible_reviewer(user: User | None, province: str | None) -> bool:
    if user is None or not user.is_active or user.role not in QCTO_ROLES:
        return False
    if user.role == QCTO_SUPER_ADMIN:
        return True
    return bool(province) and province in user.provinces


def _assert_can_assign(actor: User) -> None:
    if actor.role not in REVIEW_ASSIGNER_ROLES:
        raise ForbiddenError(f"Role {actor.role} cannot assign reviews")


def assign_review(
    s: "Session",
    review_type: str,
    review_id: int,
    assigned_to: int,
    actor: User,
    *,
    assignment_role: str = "REVIEWER",
    notes: str | None = None,
) -> ReviewAssignment:
    _assert_can_assign(actor)
    if assignment_role not in ASSIGNMENT_ROLES:
        raise ValidationError(f"Invalid assignment_role: {assignment_role} (must be one of: {', '.join(ASSIGNMENT_ROLES)})")

    record = _review_record(s, review_type, review_id)
    province = record.institution.province if record is not None and record.institution else None
    if not province:
        raise NotFoundError(f"Review {review_type}:{review_id} not found or has no province")

    reviewer = s.get(User, assigned_to)
    if not is_eligible_reviewer(reviewer, province):
        raise ValidationError("Reviewer cannot be assigned to this review: province mismatch or invalid reviewer role")

    existing = s.scalars(
        select(ReviewAssignment).where(
            ReviewAssignment.review_type == review_type,
            ReviewAssignment.review_id == review_id,
            ReviewAssignment.assigned_to == assigned_to,
            ReviewAssignment.assignment_role == assignment_role,
        )
    ).first()

    if existing is not None:
        existing.status = "ASSIGNED"
        existing.notes = notes if notes is not None else existing.notes
        existing.assigned_by = actor.id
        existing.assigned_at = datetime.utcnow()
        existing.cancelled_at = None
        action, change_type, assignment = "reassigned", CHANGE_UPDATE, existing
    else:
        assignment = ReviewAssignment(
            review_type=review_type,
            review_id=review_id,
            assigned_to=assigned_to,
            assigned_by=actor.id,
            assignment_role=assignment_role,
            status="ASSIGNED",
            notes=notes,
            assigned_at=datetime.utcnow(),
        )
        s.add(assignment)
        action, change_type = "assigned", CHANGE_CREATE
    s.flush()

    create_audit_log(
        s,
        actor=actor,
        entity_type=review_type,
        entity_id=review_id,
        field_name="review_assignment",
        new_value=json.dumps(
            {"action": action, "assigned_to": assigned_to, "assigned_by": actor.id, "notes": notes},
            sort_keys=True,
        ),
        change_type=change_type,
        institution_id=record.institution_id,
    )
    notifications.notify(s, assigned_to, notifications.review_assigned(review_type, review_id))
    logger.info("Review %s:%s %s to user_id=%s by user_id=%s", review_type, review_id, action, assigned_to, actor.id)
    return assignment


def unassign_review(s: "Session", review_type: str, review_id: int, assigned_to: int, actor: User) -> int:
    _assert_can_assign(actor)
    record = _review_record(s, review_type, review_id)
    rows = s.scalars(
        select(ReviewAssignment).where(
            ReviewAssignment.review_type == review_type,
            ReviewAssignment.review_id == review_id,
            ReviewAssignment.assigned_to == assigned_to,
            ReviewAssignment.status != "CANCELLED",
        )
    ).all()
    if not rows:
        raise NotFoundError("Review assignment not found")

    now = datetime.utcnow()
    for row in rows:
        row.status = "CANCELLED"
        row.cancelled_at = now
    s.flush()

    create_audit_log(
        s,
        actor=actor,
        entity_type=review_type,
        entity_id=review_id,
        field_name="review_assignment",
        old_value=json.dumps(
            {"action": "unassigned", "assigned_to": assigned_to, "assigned_by": actor.id}, sort_keys=True
        ),
        change_type=CHANGE_DELETE,
        institution_id=record.institution_id if record is not None else None,
    )
    return len(rows)


def get_review_assignments(s: "Session", review_type: str, review_id: int) -> list[ReviewAssignment]:
    stmt = (
        select(ReviewAssignment)
        .where(
            ReviewAssignment.review_type == review_type,
            ReviewAssignment.review_id == review_id,
            ReviewAssignment.status == "ASSIGNED",
        )
        .order_by(ReviewAssignment.assigned_at.desc(), ReviewAssignment.id.desc())
    )
    return list(s.scalars(stmt))


def get_reviews_assigned_to(s: "Session", user_id: int, *, review_type: str | None = None) -> list[ReviewAssignment]:
    stmt = select(ReviewAssignment).where(
        ReviewAssignment.assigned_to == user_id,
        ReviewAssignment.status == "ASSIGNED",
    )
    if review_type:
        stmt = stmt.where(ReviewAssignment.review_type == review_type)
    return list(s.scalars(stmt.order_by(ReviewAssignment.assigned_at.desc(), ReviewAssignment.id.desc())))


def is_reviewer_assigned(s: "Session", review_type: str, review_id: int, user_id: int) -> bool:
    found = s.scalars(
        select(ReviewAssignment.id)
        .where(
            ReviewAssignment.review_type == review_type,
            ReviewAssignment.review_id == review_id,
            ReviewAssignment.assigned_to == user_id,
            ReviewAssignment.status == "ASSIGNED",
        )
        .limit(1)
    ).first()
    return found is not None


def get_eligible_reviewers(s: "Session", province: str | None) -> list[User]:
    users = s.scalars(
        select(User)
        .where(User.role.in_(sorted(REVIEWER_POOL_ROLES)), User.is_active.is_(True))
        .order_by(User.last_name, User.first_name, User.id)
    ).all()
    return [u for u in users if is_eligible_reviewer(u, province)]


def auto_assign_reviewers(s: "Session", review_type: str, review_id: int, actor: User) -> list[ReviewAssignment]:
    """Assign every eligible reviewer-class user (QCTO reviewers and auditors) in the review's province."""
    province = review_province(s, review_type, review_id)
    if not province:
        raise NotFoundError(f"Review {review_type}:{review_id} not found or has no province")
    out: list[ReviewAssignment] = []
    for reviewer in get_eligible_reviewers(s, province):
        if reviewer.role not in (QCTO_REVIEWER, QCTO_AUDITOR):
            continue
        role = "AUDITOR" if reviewer.role == QCTO_AUDITOR else "REVIEWER"
        out.append(assign_review(s, review_type, review_id, reviewer.id, actor, assignment_role=role))
    return out
