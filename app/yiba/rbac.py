from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g

from app.yiba.constants import (
    ADVISOR,
    FACILITATOR,
    INSTITUTION_ADMIN,
    INSTITUTION_STAFF,
    PLATFORM_ADMIN,
    QCTO_ADMIN,
    QCTO_AUDITOR,
    QCTO_REVIEWER,
    QCTO_SUPER_ADMIN,
    QCTO_USER,
    QCTO_VIEWER,
    STUDENT,
)
from app.yiba.errors import UnauthorizedError
from app.yiba.models import User

_QCTO_READ = {
    "FORM5_VIEW",
    "EVIDENCE_VIEW",
    "LEARNER_VIEW",
    "ATTENDANCE_VIEW",
    "AUDIT_VIEW",
    "REPORTS_VIEW",
}

_QCTO_MANAGE = _QCTO_READ | {
    "QCTO_TEAM_MANAGE",
    "QCTO_REVIEW",
    "QCTO_ASSIGN",
    "QCTO_AUDIT_READ",
    "QCTO_EXPORT",
    "QCTO_REVIEW_FLAG",
    "QCTO_RECORD_RECOMMENDATION",
    "AUDIT_EXPORT",
    "REPORTS_EXPORT",
}

_INSTITUTION_ADMIN = {
    "INSTITUTION_PROFILE_EDIT",
    "STAFF_INVITE",
    "STAFF_ASSIGN_ROLES",
    "STAFF_DEACTIVATE",
    "FORM5_VIEW",
    "FORM5_EDIT",
    "FORM5_SUBMIT",
    "EVIDENCE_VIEW",
    "EVIDENCE_UPLOAD",
    "EVIDENCE_REPLACE",
    "LEARNER_VIEW",
    "LEARNER_CREATE",
    "LEARNER_EDIT",
    "LEARNER_ARCHIVE",
    "ENROLMENT_CREATE",
    "ENROLMENT_EDIT_STATUS",
    "ATTENDANCE_CAPTURE",
    "ATTENDANCE_VIEW",
    "AUDIT_VIEW",
    "REPORTS_VIEW",
    "REPORTS_EXPORT",
    "CAN_VIEW_LEADS",
    "CAN_MANAGE_PUBLIC_PROFILE",
}

CAPABILITIES: dict[str, frozenset[str]] = {
    PLATFORM_ADMIN: frozenset(
        _INSTITUTION_ADMIN
        | {
            "AUDIT_EXPORT",
            "FEATURE_APPROVE",
            "FEATURE_ALERTS",
            "QCTO_TEAM_MANAGE",
            "CAN_FACILITATE",
            "CAN_ASSESS",
            "CAN_MODERATE",
            "SERVICE_REQUESTS_VIEW",
            "SERVICE_REQUESTS_EDIT",
        }
    ),
    QCTO_SUPER_ADMIN: frozenset(_QCTO_MANAGE | {"QCTO_SETTINGS"}),
    QCTO_ADMIN: frozenset(_QCTO_MANAGE),
    QCTO_USER: frozenset(_QCTO_MANAGE - {"QCTO_TEAM_MANAGE", "QCTO_ASSIGN"}),
    QCTO_REVIEWER: frozenset(_QCTO_READ | {"QCTO_REVIEW", "QCTO_REVIEW_FLAG", "QCTO_RECORD_RECOMMENDATION"}),
    QCTO_AUDITOR: frozenset({"QCTO_AUDIT_READ", "QCTO_EXPORT", "AUDIT_VIEW", "AUDIT_EXPORT", "REPORTS_VIEW", "REPORTS_EXPORT"}),
    QCTO_VIEWER: frozenset(_QCTO_READ),
    INSTITUTION_ADMIN: frozenset(_INSTITUTION_ADMIN),
    # staff edits are limited to their own institution's records in the services
    INSTITUTION_STAFF: frozenset(
        {
            "FORM5_VIEW",
            "FORM5_EDIT",
            "EVIDENCE_VIEW",
            "EVIDENCE_UPLOAD",
            "EVIDENCE_REPLACE",
            "LEARNER_VIEW",
            "LEARNER_CREATE",
            "LEARNER_EDIT",
            "ENROLMENT_CREATE",
            "ATTENDANCE_CAPTURE",
            "ATTENDANCE_VIEW",
            "AUDIT_VIEW",
            "REPORTS_VIEW",
            "CAN_VIEW_LEADS",
        }
    ),
    STUDENT: frozenset({"LEARNER_VIEW", "ATTENDANCE_VIEW"}),
    ADVISOR: frozenset({"SERVICE_REQUESTS_VIEW", "SERVICE_REQUESTS_EDIT", "ATTENDANCE_VIEW", "REPORTS_VIEW"}),
    FACILITATOR: frozenset({"ATTENDANCE_VIEW", "ATTENDANCE_CAPTURE"}),
}


def has_cap(role: str | None, cap: str) -> bool:
    if not role:
        return False
    return cap in CAPABILITIES.get(role, frozenset())


def capabilities_for(role: str | None) -> list[str]:
    return sorted(CAPABILITIES.get(role or "", frozenset()))


def _require_user() -> User:
    user: User | None = getattr(g, "current_user", None)
    if not user or not user.is_active:
        raise UnauthorizedError("Authentication required")
    return user


def require_auth(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        _require_user()
        return fn(*args, **kwargs)

    return wrapped


def require_roles(*roles: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    allowed = frozenset(roles)

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user = _require_user()
            if user.role not in allowed:
                g.missing_capability = f"role:{'|'.join(sorted(allowed))}"
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def require_capability(cap: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user = _require_user()
            # Authenticated but unauthorized → 403
            if not has_cap(user.role, cap):
                g.missing_capability = cap
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
