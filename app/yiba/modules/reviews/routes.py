from flask import Blueprint, request

from app.yiba.constants import PLATFORM_ADMIN, QCTO_ROLES, REVIEW_ASSIGNER_ROLES
from app.yiba.db import db_session
from app.yiba.errors import ValidationError
from app.yiba.modules.reviews.service import (
    REVIEW_TYPES,
    assign_review,
    assignment_to_dict,
    auto_assign_reviewers,
    get_eligible_reviewers,
    get_review_assignments,
    get_reviews_assigned_to,
    unassign_review,
)
from app.yiba.rbac import require_roles
from app.yiba.utils import current_user, get_payload
from app.yiba.validation import optional_string, parse_bool, parse_int, sanitize_string

bp = Blueprint("reviews", __name__)


def _review_target(payload: dict) -> tuple[str, int]:
    review_type = sanitize_string(payload.get("review_type")).upper()
    if review_type not in REVIEW_TYPES:
        raise ValidationError(f"review_type must be one of: {', '.join(REVIEW_TYPES)}")
    review_id = parse_int(payload.get("review_id"), "review_id")
    if review_id is None:
        raise ValidationError("review_id is required.")
    return review_type, review_id


@bp.post("/qcto/reviews/assign")
@require_roles(*REVIEW_ASSIGNER_ROLES)
def reviews_assign():
    s = db_session()
    payload = get_payload()
    review_type, review_id = _review_target(payload)
    u = current_user()

    if parse_bool(payload.get("auto")):
        rows = auto_assign_reviewers(s, review_type, review_id, u)
        s.commit()
        return {"items": [assignment_to_dict(a) for a in rows], "count": len(rows)}, 201

    assigned_to = parse_int(payload.get("assigned_to"), "assigned_to")
    if assigned_to is None:
        raise ValidationError("assigned_to is required.")
    a = assign_review(
        s,
        review_type,
        review_id,
        assigned_to,
        u,
        assignment_role=sanitize_string(payload.get("assignment_role")).upper() or "REVIEWER",
        notes=optional_string(payload.get("notes")),
    )
    s.commit()
    return assignment_to_dict(a), 201


@bp.post("/qcto/reviews/unassign")
@require_roles(*REVIEW_ASSIGNER_ROLES)
def reviews_unassign():
    s = db_session()
    payload = get_payload()
    review_type, review_id = _review_target(payload)
    assigned_to = parse_int(payload.get("assigned_to"), "assigned_to")
    if assigned_to is None:
        raise ValidationError("assigned_to is required.")
    cancelled = unassign_review(s, review_type, review_id, assigned_to, current_user())
    s.commit()
    return {"ok": True, "cancelled": cancelled}


@bp.get("/qcto/reviews/<review_type>/<int:review_id>/assignments")
@require_roles(PLATFORM_ADMIN, *QCTO_ROLES)
def reviews_assignments(review_type: str, review_id: int):
    s = db_session()
    review_type, review_id = _review_target({"review_type": review_type, "review_id": review_id})
    rows = get_review_assignments(s, review_type, review_id)
    return {"items": [assignment_to_dict(a) for a in rows], "count": len(rows)}


@bp.get("/qcto/reviews/mine")
@require_roles(PLATFORM_ADMIN, *QCTO_ROLES)
def reviews_mine():
    s = db_session()
    review_type = sanitize_string(request.args.get("review_type")).upper() or None
    rows = get_reviews_assigned_to(s, current_user().id, review_type=review_type)
    return {"items": [assignment_to_dict(a) for a in rows], "count": len(rows)}


@bp.get("/qcto/reviews/eligible")
@require_roles(*REVIEW_ASSIGNER_ROLES)
def reviews_eligible():
    s = db_session()
    province = sanitize_string(request.args.get("province"))
    if not province:
        raise ValidationError("province is required.")
    users = get_eligible_reviewers(s, province)
    return {
        "province": province,
        "items": [{"id": u.id, "email": u.email, "name": u.full_name, "role": u.role} for u in users],
        "count": len(users),
    }
