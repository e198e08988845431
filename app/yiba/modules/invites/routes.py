from flask import Blueprint, request
from sqlalchemy import func, select

from app.yiba.constants import INSTITUTION_ADMIN, PLATFORM_ADMIN, QCTO_ADMIN, QCTO_SUPER_ADMIN
from app.yiba.db import db_session
from app.yiba.errors import ValidationError
from app.yiba.modules.invites.models import Invite, InviteCampaign
from app.yiba.modules.invites.parsers import parse_invite_csv
from app.yiba.modules.invites.service import (
    INVITE_STATUSES,
    accept_invite,
    add_campaign_recipients,
    bulk_create_invites,
    campaign_to_dict,
    create_campaign,
    create_invite,
    get_campaign,
    get_invite_by_token,
    invite_link,
    invite_to_dict,
    preview_invite,
    set_campaign_status,
)
from app.yiba.rbac import require_roles
from app.yiba.utils import current_user, get_payload, page_response
from app.yiba.validation import validate_pagination

bp = Blueprint("invites", __name__)

_INVITERS = (PLATFORM_ADMIN, INSTITUTION_ADMIN, QCTO_SUPER_ADMIN, QCTO_ADMIN)


def _rows_from_request() -> tuple[list[dict], list[dict]]:
    """Rows from an uploaded CSV (`file`) or a JSON body {"rows": [...]}, plus CSV parse errors."""
    f = request.files.get("file")
    if f is not None and f.filename:
        try:
            rows, errors = parse_invite_csv(f.read())
        except ValueError as e:
            raise ValidationError(str(e)) from e
        return rows, [{"row": e.row_number, "error": e.message} for e in errors]
    rows = get_payload().get("rows")
    if not isinstance(rows, list) or not all(isinstance(r, dict) for r in rows):
        raise ValidationError("Upload a CSV file or send rows as a JSON list.")
    return rows, []


# ---------- Invites ----------
@bp.post("/invites")
@require_roles(*_INVITERS)
def invites_create():
    s = db_session()
    inv, raw = create_invite(s, current_user(), get_payload())
    s.commit()
    return {**invite_to_dict(inv), "token": raw, "invite_link": invite_link(raw)}, 201


@bp.post("/invites/bulk")
@require_roles(*_INVITERS)
def invites_bulk():
    s = db_session()
    rows, parse_errors = _rows_from_request()
    result = bulk_create_invites(s, current_user(), rows)
    result.errors[:0] = parse_errors
    s.commit()
    return result.as_dict()


@bp.get("/invites")
@require_roles(*_INVITERS)
def invites_list():
    s = db_session()
    u = current_user()
    limit, offset = validate_pagination(request.args.get("limit"), request.args.get("offset"))
    stmt = select(Invite)
    if u.role != PLATFORM_ADMIN:
        stmt = stmt.where(Invite.invited_by == u.id)
    status = (request.args.get("status") or "").strip().upper()
    if status:
        if status not in INVITE_STATUSES:
            raise ValidationError(f"Invalid status: {status}")
        stmt = stmt.where(Invite.status == status)
    total = s.scalar(select(func.count()).select_from(stmt.subquery())) or 0
    rows = s.scalars(stmt.order_by(Invite.created_at.desc(), Invite.id.desc()).limit(limit).offset(offset)).all()
    return page_response([invite_to_dict(i) for i in rows], total, limit, offset)


@bp.get("/invites/<token>")
def invites_preview(token: str):
    s = db_session()
    return preview_invite(get_invite_by_token(s, token))


@bp.post("/invites/accept")
def invites_accept():
    s = db_session()
    user = accept_invite(s, get_payload())
    s.commit()
    return {"ok": True, "user_id": user.id, "email": user.email, "role": user.role}, 201


# ---------- Campaigns ----------
@bp.get("/invites/campaigns")
@require_roles(PLATFORM_ADMIN)
def campaigns_list():
    s = db_session()
    rows = s.scalars(select(InviteCampaign).order_by(InviteCampaign.created_at.desc(), InviteCampaign.id.desc())).all()
    return {"items": [campaign_to_dict(c) for c in rows], "count": len(rows)}


@bp.post("/invites/campaigns")
@require_roles(PLATFORM_ADMIN)
def campaigns_create():
    s = db_session()
    c = create_campaign(s, current_user(), get_payload())
    s.commit()
    return campaign_to_dict(c), 201


@bp.get("/invites/campaigns/<int:campaign_id>")
@require_roles(PLATFORM_ADMIN)
def campaigns_detail(campaign_id: int):
    s = db_session()
    return campaign_to_dict(get_campaign(s, campaign_id))


@bp.post("/invites/campaigns/<int:campaign_id>/recipients")
@require_roles(PLATFORM_ADMIN)
def campaigns_recipients(campaign_id: int):
    s = db_session()
    c = get_campaign(s, campaign_id)
    rows, parse_errors = _rows_from_request()
    result = add_campaign_recipients(s, c, current_user(), rows)
    result.errors[:0] = parse_errors
    s.commit()
    return {**result.as_dict(), "campaign": campaign_to_dict(c)}


@bp.post("/invites/campaigns/<int:campaign_id>/start")
@require_roles(PLATFORM_ADMIN)
def campaigns_start(campaign_id: int):
    s = db_session()
    c = set_campaign_status(s, get_campaign(s, campaign_id), "SENDING", current_user())
    s.commit()
    return campaign_to_dict(c)


@bp.post("/invites/campaigns/<int:campaign_id>/pause")
@require_roles(PLATFORM_ADMIN)
def campaigns_pause(campaign_id: int):
    s = db_session()
    c = set_campaign_status(s, get_campaign(s, campaign_id), "PAUSED", current_user())
    s.commit()
    return campaign_to_dict(c)
