from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, g, jsonify, request, session
from sqlalchemy import select
from werkzeug.security import check_password_hash, generate_password_hash

from app.yiba.audit import create_audit_log
from app.yiba.constants import CHANGE_UPDATE, ENTITY_USER
from app.yiba.db import db_session
from app.yiba.errors import RateLimitedError, UnauthorizedError, ValidationError
from app.yiba.models import PasswordResetToken, User
from app.yiba.rbac import capabilities_for, require_auth
from app.yiba.security import ensure_csrf_token, hash_token, new_token
from app.yiba.utils import current_user, get_payload, iso
from app.yiba.validation import is_valid_email

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds
PASSWORD_RESET_TTL_MINUTES = 60
MIN_PASSWORD_LENGTH = 8


def _check_rate_limit(ip: str) -> bool:
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(datetime.utcnow())


def reset_rate_limits() -> None:
    _login_attempts.clear()


def user_to_dict(user: User) -> dict[str, object]:
    return {
        "id": user.id,
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "role": user.role,
        "institution_id": user.institution_id,
        "default_province": user.default_province,
        "assigned_provinces": user.provinces,
        "is_active": user.is_active,
        "last_login_at": iso(user.last_login_at),
    }


def validate_password(password: str) -> None:
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Also assigns a per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    if request.path.startswith(("/static/", "/health", "/healthz")):
        g.current_user = None
        return

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return

    s = db_session()
    user = s.get(User, int(user_id))
    if not user or not user.is_active:
        session.pop("user_id", None)
        g.current_user = None
        return
    g.current_user = user


@bp.get("/csrf")
def csrf():
    return {"csrf_token": ensure_csrf_token()}


@bp.post("/login")
def login_post():
    payload = get_payload()
    email = (payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        raise RateLimitedError("Too many login attempts. Please wait 5 minutes.")

    _record_attempt(ip)

    s = db_session()
    user = s.scalars(select(User).where(User.email == email)).one_or_none()
    if not user or not user.is_active or not check_password_hash(user.password_hash, password):
        create_audit_log(
            s,
            actor=None,
            entity_type=ENTITY_USER,
            entity_id=user.id if user else email or "unknown",
            field_name="login_failed",
            new_value=email,
            change_type=CHANGE_UPDATE,
            reason="Invalid credentials",
        )
        s.commit()
        current_app.logger.info("Login failed (email=%s request_id=%s)", email, getattr(g, "request_id", None))
        raise UnauthorizedError("Invalid credentials.")

    session.clear()
    session["user_id"] = user.id
    session.permanent = True
    _login_attempts[ip].clear()
    previous_login = user.last_login_at
    user.last_login_at = datetime.utcnow()
    create_audit_log(
        s,
        actor=user,
        entity_type=ENTITY_USER,
        entity_id=user.id,
        field_name="login",
        old_value=previous_login,
        new_value=user.last_login_at,
        change_type=CHANGE_UPDATE,
        institution_id=user.institution_id,
    )
    s.commit()
    return {"user": user_to_dict(user), "csrf_token": ensure_csrf_token()}


@bp.post("/logout")
def logout():
    user = getattr(g, "current_user", None)
    if user:
        s = db_session()
        create_audit_log(
            s,
            actor=user,
            entity_type=ENTITY_USER,
            entity_id=user.id,
            field_name="logout",
            change_type=CHANGE_UPDATE,
            institution_id=user.institution_id,
        )
        s.commit()
    session.clear()
    return {"ok": True}


@bp.get("/me")
@require_auth
def me():
    user = current_user()
    return jsonify({**user_to_dict(user), "capabilities": capabilities_for(user.role)})


@bp.post("/password-reset/request")
def password_reset_request():
    from app.yiba.modules.email_templates.service import render_for_type
    from app.yiba.modules.notifications.service import queue_and_send_email

    payload = get_payload()
    email = (payload.get("email") or "").strip().lower()
    if not is_valid_email(email):
        raise ValidationError("A valid email is required.")

    s = db_session()
    user = s.scalars(select(User).where(User.email == email)).one_or_none()
    if user and user.is_active:
        raw, digest = new_token()
        s.add(
            PasswordResetToken(
                user_id=user.id,
                token_hash=digest,
                expires_at=datetime.utcnow() + timedelta(minutes=PASSWORD_RESET_TTL_MINUTES),
            )
        )
        base_url = current_app.config.get("BASE_URL", "")
        rendered = render_for_type(
            s,
            "AUTH_PASSWORD_RESET",
            {
                "recipient_name": user.full_name,
                "action_url": f"{base_url}/reset-password?token={raw}",
                "expiry_minutes": PASSWORD_RESET_TTL_MINUTES,
            },
        )
        queue_and_send_email(s, to_email=user.email, rendered=rendered)
        s.commit()
    # Same response either way so the endpoint does not reveal which emails exist.
    return {"ok": True}


@bp.post("/password-reset/confirm")
def password_reset_confirm():
    payload = get_payload()
    raw = (payload.get("token") or "").strip()
    password = payload.get("password") or ""
    if not raw:
        raise ValidationError("Token is required.")
    validate_password(password)

    s = db_session()
    token = s.scalars(select(PasswordResetToken).where(PasswordResetToken.token_hash == hash_token(raw))).one_or_none()
    now = datetime.utcnow()
    if not token or token.used_at is not None or token.expires_at <= now:
        raise ValidationError("Reset link is invalid or has expired.")
    user = s.get(User, token.user_id)
    if not user or not user.is_active:
        raise ValidationError("Reset link is invalid or has expired.")

    user.password_hash = generate_password_hash(password)
    user.updated_at = now
    token.used_at = now
    create_audit_log(
        s,
        actor=user,
        entity_type=ENTITY_USER,
        entity_id=user.id,
        field_name="password",
        change_type=CHANGE_UPDATE,
        reason="Password reset",
        institution_id=user.institution_id,
    )
    s.commit()
    return {"ok": True}
