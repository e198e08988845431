from flask import Blueprint, request

from app.yiba.db import db_session
from app.yiba.modules.notifications.service import (
    list_notifications,
    mark_all_read,
    mark_read,
    notification_to_dict,
)
from app.yiba.rbac import require_auth
from app.yiba.utils import current_user
from app.yiba.validation import parse_bool, validate_pagination

bp = Blueprint("notifications", __name__)


@bp.get("/notifications")
@require_auth
def notifications_list():
    s = db_session()
    user = current_user()
    limit, offset = validate_pagination(request.args.get("limit"), request.args.get("offset"))
    unread_only = bool(parse_bool(request.args.get("unread_only")))
    rows, total, unread = list_notifications(s, user, unread_only=unread_only, limit=limit, offset=offset)
    return {
        "items": [notification_to_dict(n) for n in rows],
        "count": total,
        "unread_count": unread,
        "limit": limit,
        "offset": offset,
    }


@bp.post("/notifications/<int:notification_id>/read")
@require_auth
def notifications_mark_read(notification_id: int):
    s = db_session()
    row = mark_read(s, current_user(), notification_id)
    s.commit()
    return notification_to_dict(row)


@bp.post("/notifications/read-all")
@require_auth
def notifications_mark_all_read():
    s = db_session()
    updated = mark_all_read(s, current_user())
    s.commit()
    return {"ok": True, "updated": updated}
