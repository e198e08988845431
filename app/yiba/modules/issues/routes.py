from flask import Blueprint, request
from sqlalchemy import func, select

from app.yiba.db import db_session
from app.yiba.modules.issues.models import IssueReport
from app.yiba.modules.issues.service import (
    assert_can_view_issue,
    create_issue,
    get_issue,
    issue_to_dict,
    issues_query,
    update_issue,
)
from app.yiba.rbac import require_auth
from app.yiba.utils import current_user, get_payload, page_response
from app.yiba.validation import validate_pagination

bp = Blueprint("issues", __name__)


@bp.post("/issues")
@require_auth
def issues_create():
    s = db_session()
    user = current_user()
    issue = create_issue(s, get_payload(), user)
    s.commit()
    return issue_to_dict(issue, viewer=user), 201


@bp.get("/issues")
@require_auth
def issues_list():
    s = db_session()
    user = current_user()
    limit, offset = validate_pagination(request.args.get("limit"), request.args.get("offset"))
    stmt = issues_query(
        s,
        user,
        status=(request.args.get("status") or "").strip() or None,
        category=(request.args.get("category") or "").strip() or None,
        priority=(request.args.get("priority") or "").strip() or None,
    )
    total = s.scalar(select(func.count()).select_from(stmt.subquery())) or 0
    rows = s.scalars(stmt.order_by(IssueReport.created_at.desc(), IssueReport.id.desc()).limit(limit).offset(offset)).all()
    return page_response([issue_to_dict(i, viewer=user) for i in rows], total, limit, offset)


@bp.get("/issues/<int:issue_id>")
@require_auth
def issues_detail(issue_id: int):
    s = db_session()
    user = current_user()
    issue = get_issue(s, issue_id)
    assert_can_view_issue(user, issue)
    return issue_to_dict(issue, viewer=user)


@bp.patch("/issues/<int:issue_id>")
@require_auth
def issues_update(issue_id: int):
    s = db_session()
    user = current_user()
    issue = get_issue(s, issue_id)
    changes = update_issue(s, issue, get_payload(), user)
    s.commit()
    return {**issue_to_dict(issue, viewer=user), "changed_fields": sorted(changes)}
