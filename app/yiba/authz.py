"""
Institution scoping for reads and writes.

All checks are deny-by-default: anything not explicitly allowed returns an
`AuthzResult` with `allowed=False` and a reason.
"""
from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.orm import Session

from app.yiba.constants import (
    ENTITY_DOCUMENT,
    ENTITY_ENROLMENT,
    ENTITY_INSTITUTION,
    ENTITY_LEARNER,
    ENTITY_QCTO_REQUEST,
    ENTITY_READINESS,
    ENTITY_SUBMISSION,
    INSTITUTION_ADMIN,
    INSTITUTION_ROLES,
    INSTITUTION_STAFF,
    PLATFORM_ADMIN,
    QCTO_ROLES,
    STUDENT,
)
from app.yiba.errors import ForbiddenError, ValidationError
from app.yiba.models import User


@dataclass(frozen=True)
class AuthzResult:
    allowed: bool
    reason: str = ""

    def raise_if_denied(self) -> None:
        if not self.allowed:
            raise ForbiddenError(self.reason or "Access denied")


ALLOW = AuthzResult(True)


def can_access_institution(user: User | None, institution_id: int | None) -> AuthzResult:
    if not user or not user.is_active:
        return AuthzResult(False, "Not authenticated")
    if user.role == PLATFORM_ADMIN or user.role in QCTO_ROLES:
        return ALLOW
    if user.role == STUDENT:
        return AuthzResult(False, "Students cannot access institution records")
    if user.role in INSTITUTION_ROLES:
        if user.institution_id is None:
            return AuthzResult(False, "User is not linked to an institution")
        if institution_id is not None and user.institution_id == institution_id:
            return ALLOW
        return AuthzResult(False, "Institution mismatch")
    return AuthzResult(False, f"Role {user.role} cannot access institution records")


def can_access_learner(user: User | None, learner) -> AuthzResult:
    if not user or not user.is_active:
        return AuthzResult(False, "Not authenticated")
    if user.role == STUDENT:
        if learner.user_id is not None and learner.user_id == user.id:
            return ALLOW
        return AuthzResult(False, "Students can only access their own learner record")
    return can_access_institution(user, learner.institution_id)


def can_edit(user: User | None) -> AuthzResult:
    if not user or not user.is_active:
        return AuthzResult(False, "Not authenticated")
    if user.role in QCTO_ROLES:
        return AuthzResult(False, "QCTO users have read-only access to institution data")
    if user.role == PLATFORM_ADMIN or user.role in (INSTITUTION_ADMIN, INSTITUTION_STAFF):
        return ALLOW
    return AuthzResult(False, f"Role {user.role} cannot modify institution data")


def require_institution_id(user: User) -> int:
    if user.institution_id is None:
        raise ForbiddenError("User is not linked to an institution")
    return user.institution_id


def institution_scope(user: User, requested_institution_id: int | None = None) -> int | None:
    """
    Resolve the institution a list query is filtered to. None means unfiltered.
    QCTO users are scoped by province separately (see qcto_access).
    """
    if user.role == PLATFORM_ADMIN:
        return requested_institution_id
    if user.role in INSTITUTION_ROLES:
        return require_institution_id(user)
    if user.role in QCTO_ROLES:
        return requested_institution_id
    raise ForbiddenError(f"Role {user.role} cannot list institution records")


def institution_id_for_entity(s: Session, entity_type: str, entity_id: int | str) -> int | None:
    """Owning institution of a record, or None when it does not exist."""
    from app.yiba.modules.documents.models import Document
    from app.yiba.modules.institutions.models import Institution
    from app.yiba.modules.learners.models import Enrolment, Learner
    from app.yiba.modules.qcto_requests.models import QCTORequest
    from app.yiba.modules.readiness.models import Readiness
    from app.yiba.modules.submissions.models import Submission

    try:
        pk = int(entity_id)
    except (TypeError, ValueError):
        return None

    model = {
        ENTITY_INSTITUTION: Institution,
        ENTITY_LEARNER: Learner,
        ENTITY_ENROLMENT: Enrolment,
        ENTITY_READINESS: Readiness,
        ENTITY_SUBMISSION: Submission,
        ENTITY_QCTO_REQUEST: QCTORequest,
        ENTITY_DOCUMENT: Document,
    }.get(entity_type)
    if model is None:
        return None
    obj = s.get(model, pk)
    if obj is None or getattr(obj, "deleted_at", None) is not None:
        return None
    if model is Institution:
        return obj.id
    return obj.institution_id


def assert_can_read(s: Session, user: User, entity_type: str, entity_id: int, institution_id: int) -> None:
    """Read check for a single record: QCTO sharing rules or institution scoping."""
    if user.role in QCTO_ROLES:
        from app.yiba.qcto_access import assert_can_read_for_qcto

        assert_can_read_for_qcto(s, user, entity_type, entity_id)
        return
    can_access_institution(user, institution_id).raise_if_denied()


def assert_can_write(user: User, institution_id: int) -> None:
    can_edit(user).raise_if_denied()
    can_access_institution(user, institution_id).raise_if_denied()


def target_institution_id(user: User, requested_institution_id: int | None) -> int:
    """Institution a new record is written to: the caller's own, or the requested one for platform admins."""
    if user.role == PLATFORM_ADMIN:
        if requested_institution_id is None:
            raise ValidationError("institution_id is required.")
        return requested_institution_id
    return require_institution_id(user)
