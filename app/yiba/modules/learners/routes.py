from flask import Blueprint, request
from sqlalchemy import func, select

from app.yiba.authz import can_access_institution
from app.yiba.constants import ENTITY_ENROLMENT, QCTO_ROLES, STUDENT
from app.yiba.db import db_session
from app.yiba.modules.learners.models import Enrolment, Learner
from app.yiba.modules.learners.service import (
    archive_learner,
    assert_can_read_learner,
    create_enrolment,
    create_learner,
    enrolment_to_dict,
    enrolments_query,
    get_enrolment,
    get_learner,
    learner_to_dict,
    learners_query,
    set_enrolment_status,
    student_enrolments,
    update_learner,
)
from app.yiba.rbac import require_capability, require_roles
from app.yiba.utils import current_user, get_payload, page_response
from app.yiba.validation import parse_int, validate_pagination

bp = Blueprint("learners", __name__)


def _page(s, stmt, order_by, to_dict):
    limit, offset = validate_pagination(request.args.get("limit"), request.args.get("offset"))
    total = s.scalar(select(func.count()).select_from(stmt.subquery())) or 0
    rows = s.scalars(stmt.order_by(*order_by).limit(limit).offset(offset)).all()
    return page_response([to_dict(r) for r in rows], total, limit, offset)


# ---------- Learners ----------
@bp.post("/learners")
@require_capability("LEARNER_CREATE")
def learners_create():
    s = db_session()
    learner = create_learner(s, get_payload(), current_user())
    s.commit()
    return learner_to_dict(learner), 201


@bp.get("/learners")
@require_capability("LEARNER_VIEW")
def learners_list():
    s = db_session()
    stmt = learners_query(
        s,
        current_user(),
        search=(request.args.get("q") or "").strip() or None,
        institution_id=parse_int(request.args.get("institution_id"), "institution_id"),
    )
    return _page(s, stmt, (Learner.last_name.asc(), Learner.first_name.asc(), Learner.id), learner_to_dict)


@bp.get("/learners/<int:learner_id>")
@require_capability("LEARNER_VIEW")
def learners_detail(learner_id: int):
    s = db_session()
    learner = get_learner(s, learner_id)
    assert_can_read_learner(s, current_user(), learner)
    data = learner_to_dict(learner)
    data["enrolments"] = [enrolment_to_dict(e) for e in learner.enrolments if e.deleted_at is None]
    return data


@bp.patch("/learners/<int:learner_id>")
@require_capability("LEARNER_EDIT")
def learners_update(learner_id: int):
    s = db_session()
    learner = get_learner(s, learner_id)
    changes = update_learner(s, learner, get_payload(), current_user())
    s.commit()
    return {**learner_to_dict(learner), "changed_fields": sorted(changes)}


@bp.delete("/learners/<int:learner_id>")
@require_capability("LEARNER_ARCHIVE")
def learners_archive(learner_id: int):
    s = db_session()
    learner = get_learner(s, learner_id)
    archive_learner(s, learner, current_user(), reason=(get_payload().get("reason") or None))
    s.commit()
    return {"ok": True, "id": learner.id}


# ---------- Enrolments ----------
@bp.post("/enrolments")
@require_capability("ENROLMENT_CREATE")
def enrolments_create():
    s = db_session()
    e = create_enrolment(s, get_payload(), current_user())
    s.commit()
    return enrolment_to_dict(e), 201


@bp.patch("/enrolments/<int:enrolment_id>")
@require_capability("ENROLMENT_EDIT_STATUS")
def enrolments_update(enrolment_id: int):
    s = db_session()
    e = get_enrolment(s, enrolment_id)
    set_enrolment_status(s, e, get_payload(), current_user())
    s.commit()
    return enrolment_to_dict(e)


@bp.get("/enrolments")
@require_capability("LEARNER_VIEW")
def enrolments_list():
    s = db_session()
    stmt = enrolments_query(
        s,
        current_user(),
        learner_id=parse_int(request.args.get("learner_id"), "learner_id"),
        status=(request.args.get("status") or "").strip() or None,
        institution_id=parse_int(request.args.get("institution_id"), "institution_id"),
    )
    return _page(s, stmt, (Enrolment.start_date.desc(), Enrolment.id.desc()), enrolment_to_dict)


@bp.get("/enrolments/<int:enrolment_id>")
@require_capability("LEARNER_VIEW")
def enrolments_detail(enrolment_id: int):
    s = db_session()
    u = current_user()
    e = get_enrolment(s, enrolment_id)
    if u.role in QCTO_ROLES:
        from app.yiba.qcto_access import assert_can_read_for_qcto

        assert_can_read_for_qcto(s, u, ENTITY_ENROLMENT, e.id)
    elif u.role == STUDENT:
        assert_can_read_learner(s, u, e.learner)
    else:
        can_access_institution(u, e.institution_id).raise_if_denied()
    return enrolment_to_dict(e)


@bp.get("/student/enrolments")
@require_roles(STUDENT)
def student_enrolments_list():
    s = db_session()
    rows = student_enrolments(s, current_user())
    return {"items": [enrolment_to_dict(e) for e in rows], "count": len(rows)}
