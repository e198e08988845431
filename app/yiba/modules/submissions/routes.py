from flask import Blueprint, request
from sqlalchemy import func, select

from app.yiba.constants import INSTITUTION_ADMIN, INSTITUTION_STAFF, PLATFORM_ADMIN, QCTO_REVIEW_ROLES, QCTO_ROLES
from app.yiba.db import db_session
from app.yiba.errors import ForbiddenError
from app.yiba.modules.submissions.models import Submission
from app.yiba.modules.submissions.service import (
    add_resource,
    assert_can_read_submission,
    create_submission,
    get_submission,
    remove_resource,
    resource_to_dict,
    review_submission,
    submission_to_dict,
    submissions_query,
    update_submission,
)
from app.yiba.rbac import has_cap, require_roles
from app.yiba.utils import current_user, get_payload, page_response
from app.yiba.validation import parse_int, validate_pagination

bp = Blueprint("submissions", __name__)

_INSTITUTION_WRITERS = (PLATFORM_ADMIN, INSTITUTION_ADMIN, INSTITUTION_STAFF)


def _list(s, u):
    limit, offset = validate_pagination(request.args.get("limit"), request.args.get("offset"))
    stmt = submissions_query(
        s,
        u,
        status=(request.args.get("status") or "").strip() or None,
        institution_id=parse_int(request.args.get("institution_id"), "institution_id"),
    )
    total = s.scalar(select(func.count()).select_from(stmt.subquery())) or 0
    rows = s.scalars(stmt.order_by(Submission.updated_at.desc(), Submission.id.desc()).limit(limit).offset(offset)).all()
    return page_response([submission_to_dict(sub) for sub in rows], total, limit, offset)


# ---------- Institution side ----------
@bp.post("/institutions/submissions")
@require_roles(*_INSTITUTION_WRITERS)
def submissions_create():
    s = db_session()
    sub = create_submission(s, get_payload(), current_user())
    s.commit()
    return submission_to_dict(sub), 201


@bp.get("/institutions/submissions")
@require_roles(*_INSTITUTION_WRITERS)
def submissions_list():
    s = db_session()
    return _list(s, current_user())


@bp.get("/institutions/submissions/<int:submission_id>")
@require_roles(*_INSTITUTION_WRITERS)
def submissions_detail(submission_id: int):
    s = db_session()
    sub = get_submission(s, submission_id)
    assert_can_read_submission(s, current_user(), sub)
    return submission_to_dict(sub)


@bp.patch("/institutions/submissions/<int:submission_id>")
@require_roles(*_INSTITUTION_WRITERS)
def submissions_update(submission_id: int):
    s = db_session()
    sub = get_submission(s, submission_id)
    changes = update_submission(s, sub, get_payload(), current_user())
    s.commit()
    return {**submission_to_dict(sub), "changed_fields": sorted(changes)}


@bp.post("/institutions/submissions/<int:submission_id>/resources")
@require_roles(*_INSTITUTION_WRITERS)
def submissions_add_resource(submission_id: int):
    s = db_session()
    sub = get_submission(s, submission_id)
    res = add_resource(s, sub, get_payload(), current_user())
    s.commit()
    return resource_to_dict(res), 201


@bp.delete("/institutions/submissions/<int:submission_id>/resources/<int:resource_id>")
@require_roles(*_INSTITUTION_WRITERS)
def submissions_remove_resource(submission_id: int, resource_id: int):
    s = db_session()
    sub = get_submission(s, submission_id)
    remove_resource(s, sub, resource_id, current_user())
    s.commit()
    return {"ok": True}


# ---------- QCTO side ----------
@bp.get("/qcto/submissions")
@require_roles(PLATFORM_ADMIN, *QCTO_ROLES)
def qcto_submissions_list():
    s = db_session()
    return _list(s, current_user())


@bp.get("/qcto/submissions/<int:submission_id>")
@require_roles(PLATFORM_ADMIN, *QCTO_ROLES)
def qcto_submissions_detail(submission_id: int):
    s = db_session()
    sub = get_submission(s, submission_id)
    assert_can_read_submission(s, current_user(), sub)
    return submission_to_dict(sub)


@bp.patch("/qcto/submissions/<int:submission_id>")
@require_roles(*QCTO_REVIEW_ROLES)
def qcto_submissions_review(submission_id: int):
    s = db_session()
    u = current_user()
    if u.role != PLATFORM_ADMIN and not has_cap(u.role, "QCTO_REVIEW"):
        raise ForbiddenError("Missing capability: QCTO_REVIEW")
    sub = review_submission(s, submission_id, get_payload(), u)
    return {
        "submission_id": sub.id,
        "status": sub.status,
        "message": "Submission reviewed successfully",
    }
