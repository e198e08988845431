from flask import Blueprint, request
from sqlalchemy import func, select

from app.yiba.constants import INSTITUTION_ADMIN, INSTITUTION_STAFF, PLATFORM_ADMIN, QCTO_REVIEW_ROLES, QCTO_ROLES
from app.yiba.db import db_session
from app.yiba.modules.readiness.models import Readiness, ReadinessFacilitator
from app.yiba.modules.readiness.service import (
    add_facilitator,
    assert_can_read_readiness,
    calculate_section_completion,
    create_readiness,
    document_count_for,
    facilitator_to_dict,
    facilitators_query,
    get_facilitator,
    get_readiness,
    readiness_query,
    readiness_to_dict,
    remove_facilitator,
    review_readiness,
    update_facilitator,
    update_readiness,
    validate_readiness_for_submission,
)
from app.yiba.rbac import require_capability, require_roles
from app.yiba.utils import current_user, get_payload, page_response
from app.yiba.validation import parse_int, validate_pagination

bp = Blueprint("readiness", __name__)


@bp.post("/readiness")
@require_capability("FORM5_EDIT")
def readiness_create():
    s = db_session()
    r = create_readiness(s, get_payload(), current_user())
    s.commit()
    return readiness_to_dict(r), 201


@bp.get("/readiness")
@require_capability("FORM5_VIEW")
def readiness_list():
    s = db_session()
    limit, offset = validate_pagination(request.args.get("limit"), request.args.get("offset"))
    stmt = readiness_query(
        s,
        current_user(),
        status=(request.args.get("status") or "").strip() or None,
        institution_id=parse_int(request.args.get("institution_id"), "institution_id"),
        search=(request.args.get("q") or "").strip() or None,
    )
    total = s.scalar(select(func.count()).select_from(stmt.subquery())) or 0
    rows = s.scalars(stmt.order_by(Readiness.updated_at.desc(), Readiness.id.desc()).limit(limit).offset(offset)).all()
    return page_response([readiness_to_dict(r) for r in rows], total, limit, offset)


@bp.get("/readiness/<int:readiness_id>")
@require_capability("FORM5_VIEW")
def readiness_detail(readiness_id: int):
    s = db_session()
    r = get_readiness(s, readiness_id)
    assert_can_read_readiness(s, current_user(), r)
    return readiness_to_dict(r, include_completion=True)


@bp.patch("/readiness/<int:readiness_id>")
@require_capability("FORM5_EDIT")
def readiness_update(readiness_id: int):
    s = db_session()
    r = get_readiness(s, readiness_id)
    changes = update_readiness(s, r, get_payload(), current_user())
    s.commit()
    return {**readiness_to_dict(r, include_completion=True), "changed_fields": sorted(changes)}


@bp.get("/readiness/<int:readiness_id>/completion")
@require_capability("FORM5_VIEW")
def readiness_completion(readiness_id: int):
    s = db_session()
    r = get_readiness(s, readiness_id)
    assert_can_read_readiness(s, current_user(), r)
    docs = document_count_for(s, r.id)
    return {
        "readiness_id": r.id,
        **calculate_section_completion(r, docs),
        "submission_check": validate_readiness_for_submission(r, docs),
    }


@bp.post("/qcto/readiness/<int:readiness_id>/review")
@require_roles(*QCTO_REVIEW_ROLES)
def readiness_review(readiness_id: int):
    s = db_session()
    r = review_readiness(s, readiness_id, get_payload(), current_user())
    return {
        "readiness_id": r.id,
        "readiness_status": r.readiness_status,
        "message": "Readiness record reviewed successfully",
    }


# ---------- Facilitators ----------
@bp.get("/readiness/<int:readiness_id>/facilitators")
@require_capability("FORM5_VIEW")
def readiness_facilitators(readiness_id: int):
    s = db_session()
    r = get_readiness(s, readiness_id)
    assert_can_read_readiness(s, current_user(), r)
    return {"items": [facilitator_to_dict(f) for f in r.facilitators], "count": len(r.facilitators)}


@bp.post("/readiness/<int:readiness_id>/facilitators")
@require_roles(INSTITUTION_ADMIN, INSTITUTION_STAFF)
def readiness_facilitator_add(readiness_id: int):
    s = db_session()
    r = get_readiness(s, readiness_id)
    f = add_facilitator(s, r, get_payload(), current_user())
    return facilitator_to_dict(f), 201


@bp.patch("/readiness/<int:readiness_id>/facilitators/<int:facilitator_id>")
@require_roles(INSTITUTION_ADMIN, INSTITUTION_STAFF)
def readiness_facilitator_update(readiness_id: int, facilitator_id: int):
    s = db_session()
    r = get_readiness(s, readiness_id)
    f = get_facilitator(s, r, facilitator_id)
    changes = update_facilitator(s, r, f, get_payload(), current_user())
    s.commit()
    return {**facilitator_to_dict(f), "changed_fields": sorted(changes)}


@bp.delete("/readiness/<int:readiness_id>/facilitators/<int:facilitator_id>")
@require_roles(INSTITUTION_ADMIN, INSTITUTION_STAFF)
def readiness_facilitator_remove(readiness_id: int, facilitator_id: int):
    s = db_session()
    r = get_readiness(s, readiness_id)
    f = get_facilitator(s, r, facilitator_id)
    remove_facilitator(s, r, f, current_user())
    return {"ok": True, "id": facilitator_id}


@bp.get("/qcto/facilitators")
@require_roles(PLATFORM_ADMIN, *QCTO_ROLES)
def qcto_facilitators():
    s = db_session()
    limit, offset = validate_pagination(request.args.get("limit"), request.args.get("offset"))
    stmt = facilitators_query(s, current_user(), search=(request.args.get("q") or "").strip() or None)
    total = s.scalar(select(func.count()).select_from(stmt.subquery())) or 0
    rows = s.scalars(
        stmt.order_by(ReadinessFacilitator.last_name, ReadinessFacilitator.first_name, ReadinessFacilitator.id)
        .limit(limit)
        .offset(offset)
    ).all()
    return page_response([facilitator_to_dict(f) for f in rows], total, limit, offset)
