from __future__ import annotations

from datetime import datetime, time

from flask import Blueprint, request
from sqlalchemy import func, or_, select

from app.yiba.audit import audit_log_to_dict, audit_logs_query, change_type_for, create_audit_log
from app.yiba.auth import user_to_dict
from app.yiba.constants import (
    ALL_ROLES,
    CHANGE_STATUS,
    ENTITY_USER,
    INSTITUTION_ROLES,
    PLATFORM_ADMIN,
    PROVINCES,
    QCTO_ADMIN,
    QCTO_ROLES,
    QCTO_SUPER_ADMIN,
)
from app.yiba.db import db_session
from app.yiba.errors import ForbiddenError, NotFoundError, ValidationError
from app.yiba.models import User
from app.yiba.modules.institutions.models import Institution
from app.yiba.rbac import has_cap, require_auth, require_roles
from app.yiba.utils import current_user, get_payload, page_response
from app.yiba.validation import parse_bool, parse_date, parse_int, sanitize_string, validate_pagination

bp = Blueprint("admin", __name__)


def _provinces(value: object) -> list[str]:
    if not isinstance(value, list):
        raise ValidationError("assigned_provinces must be a list.")
    out = []
    for p in value:
        name = sanitize_string(p, 64)
        if name not in PROVINCES:
            raise ValidationError(f"Invalid province: {name}")
        if name not in out:
            out.append(name)
    return out


def _get_user(s, user_id: int) -> User:
    user = s.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


def _apply_user_changes(s, target: User, changes: dict[str, tuple], actor: User, reason: str | None) -> None:
    if not changes:
        return
    target.updated_at = datetime.utcnow()
    for field_name, (old, new) in changes.items():
        create_audit_log(
            s,
            actor=actor,
            entity_type=ENTITY_USER,
            entity_id=target.id,
            field_name=field_name,
            old_value=old,
            new_value=new,
            change_type=CHANGE_STATUS if field_name == "role" else change_type_for(old, new, field_name),
            reason=reason,
            institution_id=target.institution_id,
        )


# ---------- Users ----------
@bp.get("/admin/users")
@require_roles(PLATFORM_ADMIN)
def admin_users_list():
    s = db_session()
    limit, offset = validate_pagination(request.args.get("limit"), request.args.get("offset"))
    stmt = select(User)
    role = (request.args.get("role") or "").strip().upper()
    if role:
        stmt = stmt.where(User.role == role)
    institution_id = parse_int(request.args.get("institution_id"), "institution_id")
    if institution_id is not None:
        stmt = stmt.where(User.institution_id == institution_id)
    q = (request.args.get("q") or "").strip()
    if q:
        like = f"%{q.lower()}%"
        stmt = stmt.where(
            or_(
                func.lower(User.email).like(like),
                func.lower(User.first_name).like(like),
                func.lower(User.last_name).like(like),
            )
        )
    total = s.scalar(select(func.count()).select_from(stmt.subquery())) or 0
    rows = s.scalars(stmt.order_by(User.created_at.desc(), User.id.desc()).limit(limit).offset(offset)).all()
    return page_response([user_to_dict(u) for u in rows], total, limit, offset)


@bp.patch("/admin/users/<int:user_id>")
@require_roles(PLATFORM_ADMIN)
def admin_users_update(user_id: int):
    s = db_session()
    actor = current_user()
    target = _get_user(s, user_id)
    payload = get_payload()
    changes: dict[str, tuple] = {}

    if "role" in payload:
        role = sanitize_string(payload.get("role")).upper()
        if role not in ALL_ROLES:
            raise ValidationError(f"Invalid role: {role or None}")
        if target.id == actor.id and role != target.role:
            raise ValidationError("You cannot change your own role.")
        if role != target.role:
            changes["role"] = (target.role, role)
            target.role = role

    if "institution_id" in payload:
        institution_id = parse_int(payload.get("institution_id"), "institution_id")
        if institution_id is not None:
            inst = s.get(Institution, institution_id)
            if inst is None or inst.deleted_at is not None:
                raise NotFoundError(f"Institution not found: {institution_id}")
        if institution_id != target.institution_id:
            changes["institution_id"] = (target.institution_id, institution_id)
            target.institution_id = institution_id

    if target.role in INSTITUTION_ROLES and target.institution_id is None:
        raise ValidationError(f"Role {target.role} requires an institution_id.")

    if "assigned_provinces" in payload:
        provinces = _provinces(payload.get("assigned_provinces"))
        if provinces != target.provinces:
            changes["assigned_provinces"] = (target.provinces, provinces)
            target.assigned_provinces = provinces

    if "default_province" in payload:
        default = sanitize_string(payload.get("default_province"), 64) or None
        if default is not None and default not in PROVINCES:
            raise ValidationError(f"Invalid province: {default}")
        if default != target.default_province:
            changes["default_province"] = (target.default_province, default)
            target.default_province = default

    if "is_active" in payload:
        active = parse_bool(payload.get("is_active"))
        if active is None:
            raise ValidationError("is_active must be a boolean.")
        if target.id == actor.id and not active:
            raise ValidationError("You cannot deactivate your own account.")
        if active != target.is_active:
            changes["is_active"] = (target.is_active, active)
            target.is_active = active

    _apply_user_changes(s, target, changes, actor, sanitize_string(payload.get("reason"), 512) or None)
    s.commit()
    return {**user_to_dict(target), "changed_fields": sorted(changes)}


@bp.patch("/qcto/team/<int:user_id>")
@require_roles(QCTO_SUPER_ADMIN, QCTO_ADMIN)
def qcto_team_update(user_id: int):
    s = db_session()
    actor = current_user()
    target = _get_user(s, user_id)
    if target.role not in QCTO_ROLES:
        raise NotFoundError("QCTO team member not found")
    if actor.role == QCTO_ADMIN and target.role == QCTO_SUPER_ADMIN:
        raise ForbiddenError("QCTO admins cannot modify QCTO super admins")

    payload = get_payload()
    changes: dict[str, tuple] = {}
    if "assigned_provinces" in payload:
        provinces = _provinces(payload.get("assigned_provinces"))
        if actor.role == QCTO_ADMIN:
            granted = set(provinces) - set(target.provinces)
            outside = sorted(granted - set(actor.provinces))
            if outside:
                raise ForbiddenError(f"You can only grant provinces you hold: {', '.join(outside)}")
        if provinces != target.provinces:
            changes["assigned_provinces"] = (target.provinces, provinces)
            target.assigned_provinces = provinces

    if "is_active" in payload:
        active = parse_bool(payload.get("is_active"))
        if active is None:
            raise ValidationError("is_active must be a boolean.")
        if target.id == actor.id and not active:
            raise ValidationError("You cannot deactivate your own account.")
        if active != target.is_active:
            changes["is_active"] = (target.is_active, active)
            target.is_active = active

    _apply_user_changes(s, target, changes, actor, sanitize_string(payload.get("reason"), 512) or None)
    s.commit()
    return {**user_to_dict(target), "changed_fields": sorted(changes)}


# ---------- Audit trail ----------
@bp.get("/audit-logs")
@require_auth
def audit_logs_list():
    s = db_session()
    u = current_user()
    if not (has_cap(u.role, "AUDIT_VIEW") or has_cap(u.role, "QCTO_AUDIT_READ")):
        raise ForbiddenError("Missing capability: AUDIT_VIEW")

    limit, offset = validate_pagination(request.args.get("limit"), request.args.get("offset"))
    start = parse_date(request.args.get("start_date"), "start_date")
    end = parse_date(request.args.get("end_date"), "end_date")
    stmt = audit_logs_query(
        s,
        u,
        entity_type=(request.args.get("entity_type") or "").strip() or None,
        entity_id=(request.args.get("entity_id") or "").strip() or None,
        change_type=(request.args.get("change_type") or "").strip() or None,
        institution_id=parse_int(request.args.get("institution_id"), "institution_id"),
        changed_by=parse_int(request.args.get("changed_by"), "changed_by"),
        start=datetime.combine(start, time.min) if start else None,
        end=datetime.combine(end, time.max) if end else None,
    )
    total = s.scalar(select(func.count()).select_from(stmt.order_by(None).subquery())) or 0
    rows = s.scalars(stmt.limit(limit).offset(offset)).all()
    return page_response([audit_log_to_dict(r) for r in rows], total, limit, offset)
