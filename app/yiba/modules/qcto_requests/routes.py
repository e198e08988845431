from flask import Blueprint, request
from sqlalchemy import func, select

from app.yiba.constants import INSTITUTION_ADMIN, INSTITUTION_STAFF, PLATFORM_ADMIN, QCTO_ROLES
from app.yiba.db import db_session
from app.yiba.errors import ForbiddenError
from app.yiba.modules.qcto_requests.models import QCTORequest
from app.yiba.modules.qcto_requests.service import (
    assert_can_read_request,
    create_request,
    get_request,
    request_to_dict,
    requests_query,
    respond_to_request,
)
from app.yiba.rbac import has_cap, require_roles
from app.yiba.utils import current_user, get_payload, page_response
from app.yiba.validation import parse_int, validate_pagination

bp = Blueprint("qcto_requests", __name__)


def _list(s, u):
    limit, offset = validate_pagination(request.args.get("limit"), request.args.get("offset"))
    stmt = requests_query(
        s,
        u,
        status=(request.args.get("status") or "").strip() or None,
        institution_id=parse_int(request.args.get("institution_id"), "institution_id"),
    )
    total = s.scalar(select(func.count()).select_from(stmt.subquery())) or 0
    rows = s.scalars(
        stmt.order_by(QCTORequest.requested_at.desc(), QCTORequest.id.desc()).limit(limit).offset(offset)
    ).all()
    return page_response([request_to_dict(r) for r in rows], total, limit, offset)


# ---------- QCTO side ----------
@bp.post("/qcto/requests")
@require_roles(PLATFORM_ADMIN, *QCTO_ROLES)
def qcto_requests_create():
    s = db_session()
    u = current_user()
    if u.role != PLATFORM_ADMIN and not has_cap(u.role, "QCTO_REVIEW"):
        raise ForbiddenError(f"Role {u.role} cannot create QCTO requests")
    req = create_request(s, get_payload(), u)
    return request_to_dict(req), 201


@bp.get("/qcto/requests")
@require_roles(PLATFORM_ADMIN, *QCTO_ROLES)
def qcto_requests_list():
    s = db_session()
    return _list(s, current_user())


@bp.get("/qcto/requests/<int:request_id>")
@require_roles(PLATFORM_ADMIN, *QCTO_ROLES)
def qcto_requests_detail(request_id: int):
    s = db_session()
    req = get_request(s, request_id)
    assert_can_read_request(s, current_user(), req)
    return request_to_dict(req)


# ---------- Institution side ----------
@bp.get("/institutions/requests")
@require_roles(PLATFORM_ADMIN, INSTITUTION_ADMIN, INSTITUTION_STAFF)
def institution_requests_list():
    s = db_session()
    return _list(s, current_user())


@bp.get("/institutions/requests/<int:request_id>")
@require_roles(PLATFORM_ADMIN, INSTITUTION_ADMIN, INSTITUTION_STAFF)
def institution_requests_detail(request_id: int):
    s = db_session()
    req = get_request(s, request_id)
    assert_can_read_request(s, current_user(), req)
    return request_to_dict(req)


@bp.patch("/institutions/requests/<int:request_id>")
@require_roles(PLATFORM_ADMIN, INSTITUTION_ADMIN)
def institution_requests_respond(request_id: int):
    s = db_session()
    req = respond_to_request(s, request_id, get_payload(), current_user())
    return request_to_dict(req)
