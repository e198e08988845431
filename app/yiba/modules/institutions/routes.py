from flask import Blueprint, request
from sqlalchemy import func, select

from app.yiba.auth import user_to_dict
from app.yiba.authz import can_access_institution, require_institution_id
from app.yiba.constants import INSTITUTION_ADMIN, INSTITUTION_STAFF, PLATFORM_ADMIN, QCTO_ROLES
from app.yiba.db import db_session
from app.yiba.errors import ForbiddenError
from app.yiba.modules.institutions.models import Institution
from app.yiba.modules.institutions.service import (
    complete_onboarding,
    create_institution,
    create_qualification,
    deactivate_staff,
    get_institution,
    institution_to_dict,
    list_qualifications,
    list_staff,
    qualification_to_dict,
    update_institution,
    visible_institutions_query,
)
from app.yiba.qcto_access import province_visible
from app.yiba.rbac import require_auth, require_capability, require_roles
from app.yiba.utils import current_user, get_payload, page_response
from app.yiba.validation import validate_pagination

bp = Blueprint("institutions", __name__)


# ---------- Institutions ----------
@bp.post("/institutions")
@require_roles(PLATFORM_ADMIN)
def institutions_create():
    s = db_session()
    inst = create_institution(s, get_payload(), current_user())
    s.commit()
    return institution_to_dict(inst), 201


@bp.get("/institutions")
@require_auth
def institutions_list():
    s = db_session()
    u = current_user()
    limit, offset = validate_pagination(request.args.get("limit"), request.args.get("offset"))
    search = (request.args.get("q") or "").strip() or None

    stmt = visible_institutions_query(s, u, search=search)
    total = s.scalar(select(func.count()).select_from(stmt.subquery())) or 0
    rows = s.scalars(stmt.order_by(Institution.legal_name.asc(), Institution.id).limit(limit).offset(offset)).all()
    return page_response([institution_to_dict(i) for i in rows], total, limit, offset)


@bp.get("/institutions/<int:institution_id>")
@require_auth
def institutions_detail(institution_id: int):
    s = db_session()
    u = current_user()
    can_access_institution(u, institution_id).raise_if_denied()
    inst = get_institution(s, institution_id)
    if u.role in QCTO_ROLES and not province_visible(u, inst.province):
        raise ForbiddenError("Access denied: This institution is outside your assigned provinces.")
    return institution_to_dict(inst)


# ---------- Profile / onboarding ----------
@bp.get("/institution/profile")
@require_roles(INSTITUTION_ADMIN, INSTITUTION_STAFF)
def profile_get():
    s = db_session()
    inst = get_institution(s, require_institution_id(current_user()))
    return institution_to_dict(inst)


@bp.patch("/institution/profile")
@require_capability("INSTITUTION_PROFILE_EDIT")
def profile_patch():
    s = db_session()
    u = current_user()
    inst = get_institution(s, require_institution_id(u))
    changes = update_institution(s, inst, get_payload(), u)
    s.commit()
    return {**institution_to_dict(inst), "changed_fields": sorted(changes)}


@bp.post("/institution/onboarding/complete")
@require_roles(INSTITUTION_ADMIN)
def onboarding_complete():
    s = db_session()
    u = current_user()
    inst = get_institution(s, require_institution_id(u))
    complete_onboarding(s, inst, get_payload(), u)
    s.commit()
    return institution_to_dict(inst)


# ---------- Staff ----------
@bp.get("/institution/staff")
@require_roles(INSTITUTION_ADMIN, INSTITUTION_STAFF)
def staff_list():
    s = db_session()
    users = list_staff(s, require_institution_id(current_user()))
    return {"items": [user_to_dict(x) for x in users], "count": len(users)}


@bp.post("/institution/staff/<int:user_id>/deactivate")
@require_capability("STAFF_DEACTIVATE")
def staff_deactivate(user_id: int):
    s = db_session()
    u = current_user()
    target = deactivate_staff(s, require_institution_id(u), user_id, u)
    s.commit()
    return user_to_dict(target)


# ---------- Qualifications ----------
@bp.get("/qualifications")
@require_auth
def qualifications_list():
    s = db_session()
    rows = list_qualifications(s, search=(request.args.get("q") or "").strip() or None)
    return {"items": [qualification_to_dict(q) for q in rows], "count": len(rows)}


@bp.post("/qualifications")
@require_roles(PLATFORM_ADMIN)
def qualifications_create():
    s = db_session()
    q = create_qualification(s, get_payload(), current_user())
    s.commit()
    return qualification_to_dict(q), 201
