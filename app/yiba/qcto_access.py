"""
Regulator (QCTO) read access.

QCTO users never own institution data. What they may read is decided by:
- province: every QCTO role below super admin sees only institutions in its
  assigned provinces (an empty list sees nothing)
- sharing: below QCTO admin, a record must also have been shared, either as a
  resource of a submitted/under-review/approved submission, or of an approved,
  unexpired QCTO request
"""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from app.yiba.authz import institution_id_for_entity
from app.yiba.constants import (
    ENTITY_DOCUMENT,
    ENTITY_ENROLMENT,
    ENTITY_INSTITUTION,
    ENTITY_LEARNER,
    ENTITY_QCTO_REQUEST,
    ENTITY_READINESS,
    ENTITY_SUBMISSION,
    PLATFORM_ADMIN,
    QCTO_ADMIN,
    QCTO_ROLES,
    QCTO_SUPER_ADMIN,
)
from app.yiba.errors import ForbiddenError
from app.yiba.models import User
from app.yiba.modules.documents.models import Document
from app.yiba.modules.institutions.models import Institution
from app.yiba.modules.learners.models import Enrolment
from app.yiba.modules.qcto_requests.models import QCTORequest, QCTORequestResource
from app.yiba.modules.readiness.models import Readiness
from app.yiba.modules.submissions.models import Submission, SubmissionResource

SHARED_SUBMISSION_STATUSES = ("SUBMITTED", "UNDER_REVIEW", "APPROVED")
QCTO_VISIBLE_SUBMISSION_STATUSES = ("SUBMITTED", "UNDER_REVIEW", "APPROVED", "REJECTED", "RETURNED_FOR_CORRECTION")
QCTO_VISIBLE_READINESS_STATUSES = (
    "SUBMITTED",
    "UNDER_REVIEW",
    "RETURNED_FOR_CORRECTION",
    "REVIEWED",
    "RECOMMENDED",
    "REJECTED",
)


def qcto_province_filter(user: User) -> set[str] | None:
    """Visible provinces, or None when the user is not province-limited."""
    if user.role in (PLATFORM_ADMIN, QCTO_SUPER_ADMIN):
        return None
    if user.role in QCTO_ROLES:
        return set(user.provinces)
    return set()


def province_visible(user: User, province: str | None) -> bool:
    provinces = qcto_province_filter(user)
    if provinces is None:
        return True
    return bool(province and province in provinces)


def visible_institution_ids(s: Session, user: User) -> list[int] | None:
    """Institution ids inside the user's provinces; None means all."""
    provinces = qcto_province_filter(user)
    if provinces is None:
        return None
    if not provinces:
        return []
    stmt = select(Institution.id).where(Institution.province.in_(sorted(provinces)), Institution.deleted_at.is_(None))
    return list(s.scalars(stmt))


def _institution_province(s: Session, institution_id: int | None) -> str | None:
    if institution_id is None:
        return None
    inst = s.get(Institution, institution_id)
    return inst.province if inst else None


def _shared_via_submission(s: Session, resource_type: str, value: str) -> bool:
    stmt = (
        select(SubmissionResource.id)
        .join(Submission, Submission.id == SubmissionResource.submission_id)
        .where(
            SubmissionResource.resource_type == resource_type,
            SubmissionResource.resource_id_value == value,
            Submission.status.in_(SHARED_SUBMISSION_STATUSES),
            Submission.deleted_at.is_(None),
        )
        .limit(1)
    )
    return s.scalars(stmt).first() is not None


def _shared_via_request(s: Session, resource_type: str, value: str, now: datetime) -> bool:
    stmt = (
        select(QCTORequestResource.id)
        .join(QCTORequest, QCTORequest.id == QCTORequestResource.request_id)
        .where(
            QCTORequestResource.resource_type == resource_type,
            QCTORequestResource.resource_id_value == value,
            QCTORequest.status == "APPROVED",
            QCTORequest.deleted_at.is_(None),
            or_(QCTORequest.expires_at.is_(None), QCTORequest.expires_at > now),
        )
        .limit(1)
    )
    return s.scalars(stmt).first() is not None


def is_resource_shared(s: Session, resource_type: str, resource_id: int | str) -> bool:
    now = datetime.utcnow()
    value = str(resource_id)
    if _shared_via_submission(s, resource_type, value) or _shared_via_request(s, resource_type, value, now):
        return True
    if resource_type == ENTITY_ENROLMENT:
        enrolment = s.get(Enrolment, int(resource_id))
        if enrolment is not None:
            return is_resource_shared(s, ENTITY_LEARNER, enrolment.learner_id)
    if resource_type == ENTITY_DOCUMENT:
        doc = s.get(Document, int(resource_id))
        if doc is not None and doc.related_entity != ENTITY_INSTITUTION:
            return is_resource_shared(s, doc.related_entity, doc.related_entity_id)
    return False


def _readiness_visible(s: Session, readiness_id: int | str) -> bool:
    readiness = s.get(Readiness, int(readiness_id))
    return readiness is not None and readiness.readiness_status in QCTO_VISIBLE_READINESS_STATUSES


def can_read_for_qcto(s: Session, user: User, resource_type: str, resource_id: int | str) -> bool:
    if not user or not user.is_active:
        return False
    if user.role in (PLATFORM_ADMIN, QCTO_SUPER_ADMIN):
        return True
    if user.role not in QCTO_ROLES:
        return False

    institution_id = institution_id_for_entity(s, resource_type, resource_id)
    if institution_id is None:
        return False
    if not province_visible(user, _institution_province(s, institution_id)):
        return False
    if user.role == QCTO_ADMIN:
        return True

    if resource_type == ENTITY_INSTITUTION:
        return can_read_institution_for_qcto(s, user, institution_id)
    if resource_type == ENTITY_SUBMISSION:
        sub = s.get(Submission, int(resource_id))
        return sub is not None and sub.status in QCTO_VISIBLE_SUBMISSION_STATUSES
    if resource_type == ENTITY_QCTO_REQUEST:
        return True
    if resource_type == ENTITY_READINESS and _readiness_visible(s, resource_id):
        return True
    if resource_type == ENTITY_DOCUMENT:
        doc = s.get(Document, int(resource_id))
        if doc is not None and doc.related_entity == ENTITY_READINESS and _readiness_visible(s, doc.related_entity_id):
            return True
    return is_resource_shared(s, resource_type, resource_id)


def assert_can_read_for_qcto(s: Session, user: User, resource_type: str, resource_id: int | str) -> None:
    if not can_read_for_qcto(s, user, resource_type, resource_id):
        raise ForbiddenError(
            f"Access denied: This {resource_type.lower().replace('_', ' ')} is not accessible "
            "(may not be shared, approved, or may be from a different province)."
        )


def can_read_institution_for_qcto(s: Session, user: User, institution_id: int) -> bool:
    if user.role in (PLATFORM_ADMIN, QCTO_SUPER_ADMIN):
        return True
    if user.role not in QCTO_ROLES:
        return False
    if not province_visible(user, _institution_province(s, institution_id)):
        return False
    if user.role == QCTO_ADMIN:
        return True
    now = datetime.utcnow()
    has_submission = s.scalars(
        select(Submission.id)
        .where(
            Submission.institution_id == institution_id,
            Submission.status.in_(SHARED_SUBMISSION_STATUSES),
            Submission.deleted_at.is_(None),
        )
        .limit(1)
    ).first()
    if has_submission is not None:
        return True
    has_request = s.scalars(
        select(QCTORequest.id)
        .where(
            QCTORequest.institution_id == institution_id,
            QCTORequest.status == "APPROVED",
            QCTORequest.deleted_at.is_(None),
            or_(QCTORequest.expires_at.is_(None), QCTORequest.expires_at > now),
        )
        .limit(1)
    ).first()
    return has_request is not None


def shared_resource_ids(s: Session, resource_type: str) -> set[str]:
    """Ids (as strings) of every record of `resource_type` currently shared with QCTO."""
    now = datetime.utcnow()
    via_submissions = s.scalars(
        select(SubmissionResource.resource_id_value)
        .join(Submission, Submission.id == SubmissionResource.submission_id)
        .where(
            SubmissionResource.resource_type == resource_type,
            Submission.status.in_(SHARED_SUBMISSION_STATUSES),
            Submission.deleted_at.is_(None),
        )
    )
    via_requests = s.scalars(
        select(QCTORequestResource.resource_id_value)
        .join(QCTORequest, QCTORequest.id == QCTORequestResource.request_id)
        .where(
            QCTORequestResource.resource_type == resource_type,
            QCTORequest.status == "APPROVED",
            QCTORequest.deleted_at.is_(None),
            or_(QCTORequest.expires_at.is_(None), QCTORequest.expires_at > now),
        )
    )
    return set(via_submissions) | set(via_requests)


def needs_sharing(user: User) -> bool:
    """True for QCTO roles that may only read shared records."""
    return user.role in QCTO_ROLES and user.role not in (QCTO_SUPER_ADMIN, QCTO_ADMIN)


def _int_ids(values: set[str]) -> list[int]:
    return sorted(int(v) for v in values if v.isdigit())


def scope_query_for_qcto(s: Session, user: User, stmt, model, resource_type: str):
    """
    Narrow a list query over `model` to the rows a QCTO user may read: their
    provinces, and for roles below QCTO admin, only shared records.
    """
    ids = visible_institution_ids(s, user)
    if ids is not None:
        stmt = stmt.where(model.institution_id.in_(ids))
    if not needs_sharing(user):
        return stmt

    shared = _int_ids(shared_resource_ids(s, resource_type))
    if resource_type == ENTITY_ENROLMENT:
        learners = _int_ids(shared_resource_ids(s, ENTITY_LEARNER))
        return stmt.where(or_(model.id.in_(shared), model.learner_id.in_(learners)))
    if resource_type == ENTITY_READINESS:
        return stmt.where(or_(model.id.in_(shared), model.readiness_status.in_(QCTO_VISIBLE_READINESS_STATUSES)))
    if resource_type == ENTITY_DOCUMENT:
        visible_readiness = select(Readiness.id).where(Readiness.readiness_status.in_(QCTO_VISIBLE_READINESS_STATUSES))
        clauses = [
            model.id.in_(shared),
            and_(model.related_entity == ENTITY_READINESS, model.related_entity_id.in_(visible_readiness)),
        ]
        for related in (ENTITY_LEARNER, ENTITY_ENROLMENT, ENTITY_READINESS):
            related_ids = _int_ids(shared_resource_ids(s, related))
            clauses.append(and_(model.related_entity == related, model.related_entity_id.in_(related_ids)))
        return stmt.where(or_(*clauses))
    return stmt.where(model.id.in_(shared))
