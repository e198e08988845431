from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import func, select

from app.yiba.audit import audit_log_to_dict
from app.yiba.constants import (
    CHANGE_STATUS,
    ENTITY_READINESS,
    ENTITY_SUBMISSION,
    INSTITUTION_ROLES,
    PLATFORM_ADMIN,
    QCTO_ROLES,
    STUDENT,
)
from app.yiba.errors import ForbiddenError
from app.yiba.models import AuditLog, User
from app.yiba.modules.institutions.models import Institution
from app.yiba.modules.invites.models import Invite
from app.yiba.modules.learners.models import Enrolment, Learner
from app.yiba.modules.learners.service import enrolment_to_dict, student_enrolments
from app.yiba.modules.notifications.models import Notification
from app.yiba.modules.qcto_requests.models import QCTORequest
from app.yiba.modules.readiness.models import Readiness
from app.yiba.modules.reviews.service import assignment_to_dict, get_reviews_assigned_to
from app.yiba.modules.submissions.models import Submission
from app.yiba.qcto_access import visible_institution_ids

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

RECENT_REVIEWS = 5


def _count(s: "Session", stmt) -> int:
    return s.scalar(select(func.count()).select_from(stmt.subquery())) or 0


def _by(s: "Session", column, *where) -> dict[str, int]:
    stmt = select(column, func.count()).where(*where).group_by(column)
    return {key: n for key, n in s.execute(stmt).all()}


def platform_stats(s: "Session") -> dict[str, object]:
    return {
        "institutions": _count(s, select(Institution.id).where(Institution.deleted_at.is_(None))),
        "users_by_role": _by(s, User.role, User.is_active.is_(True)),
        "learners": _count(s, select(Learner.id).where(Learner.deleted_at.is_(None))),
        "submissions_by_status": _by(s, Submission.status, Submission.deleted_at.is_(None)),
        "pending_invites": _count(
            s, select(Invite.id).where(Invite.status.in_(("QUEUED", "SENDING", "SENT", "RETRYING")))
        ),
    }


def institution_stats(s: "Session", user: User) -> dict[str, object]:
    iid = user.institution_id
    if iid is None:
        raise ForbiddenError("User is not linked to an institution")
    return {
        "institution_id": iid,
        "learners": _count(s, select(Learner.id).where(Learner.institution_id == iid, Learner.deleted_at.is_(None))),
        "active_enrolments": _count(
            s,
            select(Enrolment.id).where(
                Enrolment.institution_id == iid,
                Enrolment.enrolment_status == "ACTIVE",
                Enrolment.deleted_at.is_(None),
            ),
        ),
        "readiness_by_status": _by(
            s, Readiness.readiness_status, Readiness.institution_id == iid, Readiness.deleted_at.is_(None)
        ),
        "submissions_by_status": _by(
            s, Submission.status, Submission.institution_id == iid, Submission.deleted_at.is_(None)
        ),
        "pending_qcto_requests": _count(
            s,
            select(QCTORequest.id).where(
                QCTORequest.institution_id == iid,
                QCTORequest.status == "PENDING",
                QCTORequest.deleted_at.is_(None),
            ),
        ),
        "unread_notifications": _count(
            s, select(Notification.id).where(Notification.user_id == user.id, Notification.is_read.is_(False))
        ),
    }


def qcto_stats(s: "Session", user: User) -> dict[str, object]:
    ids = visible_institution_ids(s, user)
    sub_where = [Submission.deleted_at.is_(None), Submission.status != "DRAFT"]
    req_where = [QCTORequest.deleted_at.is_(None)]
    review_where = [
        AuditLog.entity_type.in_((ENTITY_SUBMISSION, ENTITY_READINESS)),
        AuditLog.change_type == CHANGE_STATUS,
        AuditLog.role_at_time.in_(sorted(QCTO_ROLES | {PLATFORM_ADMIN})),
    ]
    if ids is not None:
        sub_where.append(Submission.institution_id.in_(ids))
        req_where.append(QCTORequest.institution_id.in_(ids))
        review_where.append(AuditLog.institution_id.in_(ids))

    recent = s.scalars(
        select(AuditLog).where(*review_where).order_by(AuditLog.changed_at.desc(), AuditLog.id.desc()).limit(RECENT_REVIEWS)
    ).all()
    return {
        "provinces": None if ids is None else sorted(user.provinces),
        "submissions_by_status": _by(s, Submission.status, *sub_where),
        "requests_by_status": _by(s, QCTORequest.status, *req_where),
        "recent_reviews": [audit_log_to_dict(r) for r in recent],
        "my_assignments": [assignment_to_dict(a) for a in get_reviews_assigned_to(s, user.id)],
    }


def dashboard_for(s: "Session", user: User) -> dict[str, object]:
    if user.role == PLATFORM_ADMIN:
        return {"role": user.role, **platform_stats(s)}
    if user.role in QCTO_ROLES:
        return {"role": user.role, **qcto_stats(s, user)}
    if user.role == STUDENT:
        return {"role": user.role, "enrolments": [enrolment_to_dict(e) for e in student_enrolments(s, user)]}
    if user.role in INSTITUTION_ROLES:
        return {"role": user.role, **institution_stats(s, user)}
    return {"role": user.role}
