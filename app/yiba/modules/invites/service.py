from __future__ import annotations

import logging
import random
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from flask import current_app
from sqlalchemy import and_, func, or_, select
from werkzeug.security import generate_password_hash

from app.yiba.audit import create_audit_log
from app.yiba.constants import (
    ALL_ROLES,
    CHANGE_CREATE,
    CHANGE_STATUS,
    ENTITY_CAMPAIGN,
    ENTITY_INVITE,
    INSTITUTION_ADMIN,
    INSTITUTION_ROLES,
    INSTITUTION_STAFF,
    PLATFORM_ADMIN,
    PROVINCE_SCOPED_QCTO_ROLES,
    PROVINCES,
    QCTO_ADMIN,
    QCTO_ROLES,
    QCTO_SUPER_ADMIN,
    STUDENT,
)
from app.yiba.errors import AppError, ConflictError, ForbiddenError, GoneError, NotFoundError, ValidationError
from app.yiba.mailer import send_email
from app.yiba.models import User
from app.yiba.modules.email_templates.service import render_for_type
from app.yiba.modules.institutions.models import Institution
from app.yiba.modules.invites.models import Invite, InviteCampaign
from app.yiba.modules.notifications import service as notifications
from app.yiba.security import hash_token, new_token
from app.yiba.validation import is_valid_email, optional_string, parse_int, sanitize_string

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

INVITE_TTL_DAYS = 7
CAMPAIGN_INVITE_TTL_DAYS = 30
INVITE_STATUSES = ("QUEUED", "SENDING", "SENT", "RETRYING", "FAILED", "ACCEPTED", "EXPIRED", "REVOKED")
PENDING_STATUSES = ("QUEUED", "SENDING", "SENT", "RETRYING")
INSTITUTION_ADMIN_INVITABLE = (INSTITUTION_ADMIN, INSTITUTION_STAFF, STUDENT)

CAMPAIGN_STATUSES = ("DRAFT", "SENDING", "PAUSED", "COMPLETED", "CANCELLED")
DEFAULT_SEND_SETTINGS: dict[str, int] = {
    "batch_size": 25,
    "min_delay_seconds": 30,
    "jitter_seconds": 10,
    "max_per_hour": 100,
    "per_domain_limit": 10,
}

_TEMPLATE_FOR_ROLE = {
    INSTITUTION_ADMIN: "INSTITUTION_ADMIN_INVITE",
    INSTITUTION_STAFF: "INSTITUTION_STAFF_INVITE",
    STUDENT: "STUDENT_INVITE",
    PLATFORM_ADMIN: "PLATFORM_ADMIN_INVITE",
}


def template_type_for_role(role: str) -> str:
    if role in QCTO_ROLES:
        return "QCTO_INVITE"
    return _TEMPLATE_FOR_ROLE.get(role, "INSTITUTION_STAFF_INVITE")


def invite_to_dict(inv: Invite) -> dict[str, object]:
    return {
        "id": inv.id,
        "email": inv.email,
        "role": inv.role,
        "institution_id": inv.institution_id,
        "institution_name": inv.institution.display_name if inv.institution else None,
        "default_province": inv.default_province,
        "first_name": inv.first_name,
        "last_name": inv.last_name,
        "status": inv.status,
        "invited_by": inv.invited_by,
        "expires_at": inv.expires_at.isoformat() if inv.expires_at else None,
        "attempts": inv.attempts,
        "failure_reason": inv.failure_reason,
        "sent_at": inv.sent_at.isoformat() if inv.sent_at else None,
        "accepted_at": inv.accepted_at.isoformat() if inv.accepted_at else None,
        "campaign_id": inv.campaign_id,
        "created_at": inv.created_at.isoformat() if inv.created_at else None,
    }


# ---------- Creating invites ----------
def _check_invite_permission(s: "Session", actor: User, role: str, institution_id: int | None, province: str | None):
    """Returns the (institution_id, province) the invite is bound to."""
    if actor.role == INSTITUTION_ADMIN:
        if role not in INSTITUTION_ADMIN_INVITABLE:
            raise ForbiddenError(f"Institution admins cannot invite role {role}")
        if actor.institution_id is None:
            raise ForbiddenError("Your account is not linked to an institution.")
        return actor.institution_id, None

    if actor.role == PLATFORM_ADMIN:
        if role in INSTITUTION_ROLES:
            if institution_id is None:
                raise ValidationError("institution_id is required for institution roles.")
            inst = s.get(Institution, institution_id)
            if inst is None or inst.deleted_at is not None:
                raise NotFoundError(f"Institution not found: {institution_id}")
            return institution_id, None
        if role in PROVINCE_SCOPED_QCTO_ROLES and not province:
            raise ValidationError("A province is required for province-scoped QCTO roles.")
        return None, province

    if actor.role in (QCTO_SUPER_ADMIN, QCTO_ADMIN):
        if role not in QCTO_ROLES:
            raise ForbiddenError(f"Role {actor.role} can only invite QCTO roles")
        if actor.role == QCTO_ADMIN:
            if role == QCTO_SUPER_ADMIN:
                raise ForbiddenError("QCTO admins cannot invite QCTO super admins")
            if not province or province not in actor.provinces:
                raise ForbiddenError("QCTO admins can only invite users into their assigned provinces.")
        if role in PROVINCE_SCOPED_QCTO_ROLES and not province:
            raise ValidationError("A province is required for province-scoped QCTO roles.")
        return None, province

    raise ForbiddenError(f"Role {actor.role} cannot send invites")


def _expire_pending_for(s: "Session", email: str) -> int:
    rows = s.scalars(select(Invite).where(Invite.email == email, Invite.status.in_(PENDING_STATUSES))).all()
    for inv in rows:
        inv.status = "EXPIRED"
    return len(rows)


def create_invite(
    s: "Session",
    actor: User,
    payload: Mapping[str, Any],
    *,
    ttl_days: int = INVITE_TTL_DAYS,
    campaign: InviteCampaign | None = None,
) -> tuple[Invite, str]:
    """
    Queue an invite. Returns (invite, raw_token); only the token hash is stored,
    so the raw token is available to the caller exactly once.
    """
    email = sanitize_string(payload.get("email"), 320).lower()
    if not is_valid_email(email):
        raise ValidationError("A valid email is required.")
    role = sanitize_string(payload.get("role")).upper()
    if role not in ALL_ROLES:
        raise ValidationError(f"Invalid role: {role or None}")
    province = optional_string(payload.get("province") or payload.get("default_province"), 64)
    if province is not None and province not in PROVINCES:
        raise ValidationError(f"Invalid province: {province}")

    institution_id, province = _check_invite_permission(
        s, actor, role, parse_int(payload.get("institution_id"), "institution_id"), province
    )

    existing = s.scalars(select(User).where(User.email == email)).one_or_none()
    if existing is not None and existing.is_active:
        raise ConflictError(f"A user with email {email} already exists.")
    expired = _expire_pending_for(s, email)
    if expired:
        logger.info("Expired %s earlier invite(s) for %s", expired, email)

    raw, digest = new_token()
    inv = Invite(
        email=email,
        role=role,
        institution_id=institution_id,
        default_province=province,
        first_name=optional_string(payload.get("first_name"), 128),
        last_name=optional_string(payload.get("last_name"), 128),
        message=optional_string(payload.get("message"), 2000),
        token_hash=digest,
        status="QUEUED",
        invited_by=actor.id,
        expires_at=datetime.utcnow() + timedelta(days=ttl_days),
        campaign_id=campaign.id if campaign is not None else None,
        created_at=datetime.utcnow(),
    )
    s.add(inv)
    s.flush()
    create_audit_log(
        s,
        actor=actor,
        entity_type=ENTITY_INVITE,
        entity_id=inv.id,
        field_name="invite_id",
        new_value=f"{email} ({role})",
        change_type=CHANGE_CREATE,
        institution_id=institution_id,
    )
    return inv, raw


def invite_link(raw_token: str) -> str:
    base_url = (current_app.config.get("BASE_URL") or "").rstrip("/")
    return f"{base_url}/invite?token={raw_token}"


@dataclass
class BulkInviteResult:
    created: list[dict]
    skipped: list[dict]
    errors: list[dict]

    def as_dict(self) -> dict[str, object]:
        return {
            "created": self.created,
            "skipped": self.skipped,
            "errors": self.errors,
            "summary": {"created": len(self.created), "skipped": len(self.skipped), "errors": len(self.errors)},
        }


def bulk_create_invites(s: "Session", actor: User, rows: Iterable[Mapping[str, Any]]) -> BulkInviteResult:
    """
    Create one invite per row. A row that fails never affects the others:
    duplicates and existing users are skipped, anything else is reported as an error.
    """
    result = BulkInviteResult(created=[], skipped=[], errors=[])
    seen: set[str] = set()
    for i, row in enumerate(rows, start=1):
        row_number = row.get("row_number") or i
        email = sanitize_string(row.get("email")).lower()
        if email and email in seen:
            result.skipped.append({"row": row_number, "email": email, "reason": "Duplicate email in upload"})
            continue
        seen.add(email)
        try:
            with s.begin_nested():
                inv, _raw = create_invite(s, actor, row)
        except ConflictError as e:
            result.skipped.append({"row": row_number, "email": email, "reason": e.message})
            continue
        except AppError as e:
            result.errors.append({"row": row_number, "email": email, "error": e.message})
            continue
        result.created.append({"row": row_number, "email": inv.email, "invite_id": inv.id})

    notifications.notify(
        s,
        actor.id,
        notifications.bulk_invite_completed(len(result.created), len(result.skipped), len(result.errors)),
    )
    logger.info(
        "Bulk invite by user_id=%s: created=%s skipped=%s errors=%s",
        actor.id,
        len(result.created),
        len(result.skipped),
        len(result.errors),
    )
    return result


# ---------- Accepting ----------
def get_invite_by_token(s: "Session", raw_token: str) -> Invite:
    token = sanitize_string(raw_token)
    if not token:
        raise ValidationError("Token is required.")
    inv = s.scalars(select(Invite).where(Invite.token_hash == hash_token(token))).one_or_none()
    if inv is None or inv.status not in (*PENDING_STATUSES, "EXPIRED"):
        raise NotFoundError("Invite not found or no longer valid")
    if inv.status == "EXPIRED" or inv.expires_at <= datetime.utcnow():
        raise GoneError("This invite has expired.")
    return inv


def preview_invite(inv: Invite) -> dict[str, object]:
    return {
        "email": inv.email,
        "role": inv.role,
        "institution_name": inv.institution.display_name if inv.institution else None,
        "first_name": inv.first_name,
        "last_name": inv.last_name,
        "expires_at": inv.expires_at.isoformat(),
    }


def accept_invite(s: "Session", payload: Mapping[str, Any]) -> User:
    from app.yiba.auth import validate_password

    inv = get_invite_by_token(s, payload.get("token"))
    password = payload.get("password") or ""
    validate_password(password)
    first_name = optional_string(payload.get("first_name"), 128) or inv.first_name
    last_name = optional_string(payload.get("last_name"), 128) or inv.last_name

    prior_status = inv.status
    now = datetime.utcnow()
    user = s.scalars(select(User).where(User.email == inv.email)).one_or_none()
    if user is not None and user.is_active:
        raise ConflictError(f"A user with email {inv.email} already exists.")
    if user is None:
        user = User(email=inv.email, created_at=now)
        s.add(user)
    user.password_hash = generate_password_hash(password)
    user.first_name = first_name
    user.last_name = last_name
    user.role = inv.role
    user.institution_id = inv.institution_id
    user.default_province = inv.default_province
    user.assigned_provinces = [inv.default_province] if inv.default_province else []
    user.is_active = True
    user.updated_at = now
    s.flush()

    inv.status = "ACCEPTED"
    inv.accepted_at = now
    inv.accepted_user_id = user.id
    create_audit_log(
        s,
        actor=user,
        entity_type=ENTITY_INVITE,
        entity_id=inv.id,
        field_name="status",
        old_value=prior_status,
        new_value="ACCEPTED",
        change_type=CHANGE_STATUS,
        institution_id=inv.institution_id,
    )
    if inv.invited_by is not None:
        notifications.notify(s, inv.invited_by, notifications.invite_accepted(inv.id, inv.email))
    logger.info("Invite %s accepted by user_id=%s", inv.id, user.id)
    return user


# ---------- Delivery queue ----------
@dataclass(frozen=True)
class InviteQueueConfig:
    batch_size: int = 20
    batch_delay_ms: int = 120000
    retry_delay_ms: int = 300000
    max_attempts: int = 3

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "InviteQueueConfig":
        return cls(
            batch_size=int(config.get("INVITE_BATCH_SIZE") or cls.batch_size),
            batch_delay_ms=int(config.get("INVITE_BATCH_DELAY_MS") or cls.batch_delay_ms),
            retry_delay_ms=int(config.get("INVITE_RETRY_DELAY_MS") or cls.retry_delay_ms),
            max_attempts=int(config.get("INVITE_MAX_ATTEMPTS") or cls.max_attempts),
        )


def _invite_variables(s: "Session", inv: Invite, link: str) -> dict[str, object]:
    inviter = s.get(User, inv.invited_by) if inv.invited_by else None
    return {
        "recipient_name": inv.first_name or inv.email.split("@")[0] or "there",
        "institution_name": inv.institution.display_name if inv.institution else "Yiba Verified",
        "inviter_name": inviter.full_name if inviter else "A team member",
        "role": inv.role.replace("_", " ").title(),
        "invite_link": link,
        "action_url": link,
        "expiry_date": inv.expires_at.strftime("%d %B %Y"),
    }


def process_invite(s: "Session", inv: Invite, config: InviteQueueConfig) -> bool:
    """
    Deliver one invite. The emailed link carries a freshly minted token, which
    replaces any earlier one.
    """
    now = datetime.utcnow()
    inv.status = "SENDING"
    inv.attempts = (inv.attempts or 0) + 1
    inv.last_attempt_at = now
    s.flush()

    raw, digest = new_token()
    rendered = render_for_type(s, template_type_for_role(inv.role), _invite_variables(s, inv, invite_link(raw)))
    ok, error = send_email(inv.email, rendered.subject, rendered.text, html=rendered.html)
    if ok:
        inv.token_hash = digest
        inv.status = "SENT"
        inv.sent_at = datetime.utcnow()
        inv.next_retry_at = None
        inv.failure_reason = None
        return True

    inv.failure_reason = error or "Unknown error"
    if inv.attempts < config.max_attempts:
        inv.status = "RETRYING"
        inv.next_retry_at = now + timedelta(milliseconds=config.retry_delay_ms)
    else:
        inv.status = "FAILED"
        inv.next_retry_at = None
    logger.warning("Invite %s delivery failed (attempt %s): %s", inv.id, inv.attempts, inv.failure_reason)
    return False


def process_invite_batch(s: "Session", config: InviteQueueConfig) -> dict[str, int]:
    now = datetime.utcnow()
    queued = s.scalars(
        select(Invite)
        .where(Invite.status == "QUEUED", Invite.expires_at > now, Invite.campaign_id.is_(None))
        .order_by(Invite.created_at, Invite.id)
        .limit(config.batch_size)
    ).all()
    retrying = s.scalars(
        select(Invite)
        .where(
            Invite.status == "RETRYING",
            Invite.expires_at > now,
            Invite.next_retry_at <= now,
            Invite.campaign_id.is_(None),
        )
        .order_by(Invite.next_retry_at, Invite.id)
        .limit(max(1, config.batch_size // 4))
    ).all()

    counts = {"processed": 0, "sent": 0, "failed": 0, "retrying": 0}
    for inv in [*queued, *retrying][: config.batch_size]:
        process_invite(s, inv, config)
        counts["processed"] += 1
        if inv.status == "SENT":
            counts["sent"] += 1
        elif inv.status == "FAILED":
            counts["failed"] += 1
        else:
            counts["retrying"] += 1
    return counts


def expire_stale_invites(s: "Session", *, now: datetime | None = None) -> int:
    now = now or datetime.utcnow()
    rows = s.scalars(
        select(Invite).where(Invite.status.in_(PENDING_STATUSES + ("FAILED",)), Invite.expires_at <= now)
    ).all()
    for inv in rows:
        inv.status = "EXPIRED"
    return len(rows)


# ---------- Campaigns ----------
def campaign_to_dict(c: InviteCampaign) -> dict[str, object]:
    queued = sum(1 for i in c.invites if i.status in ("QUEUED", "RETRYING"))
    return {
        "id": c.id,
        "name": c.name,
        "audience_type": c.audience_type,
        "status": c.status,
        "send_settings": campaign_settings(c),
        "total_recipients": c.total_recipients,
        "sent_count": c.sent_count,
        "failed_count": c.failed_count,
        "queued_count": queued,
        "created_by": c.created_by,
        "created_at": c.created_at.isoformat() if c.created_at else None,
        "started_at": c.started_at.isoformat() if c.started_at else None,
        "completed_at": c.completed_at.isoformat() if c.completed_at else None,
    }


def campaign_settings(c: InviteCampaign) -> dict[str, int]:
    merged = dict(DEFAULT_SEND_SETTINGS)
    for key, value in (c.send_settings or {}).items():
        if key in DEFAULT_SEND_SETTINGS and value is not None:
            merged[key] = int(value)
    return merged


def get_campaign(s: "Session", campaign_id: int) -> InviteCampaign:
    c = s.get(InviteCampaign, campaign_id)
    if c is None:
        raise NotFoundError("Campaign not found")
    return c


def create_campaign(s: "Session", actor: User, payload: Mapping[str, Any]) -> InviteCampaign:
    name = sanitize_string(payload.get("name"), 255)
    if not name:
        raise ValidationError("name is required.")
    raw_settings = payload.get("send_settings") or {}
    if not isinstance(raw_settings, dict):
        raise ValidationError("send_settings must be an object.")
    settings: dict[str, int] = {}
    for key, value in raw_settings.items():
        if key not in DEFAULT_SEND_SETTINGS:
            raise ValidationError(f"Unknown send setting: {key}")
        number = parse_int(value, key)
        if number is None or number < 0:
            raise ValidationError(f"{key} must be a non-negative integer")
        settings[key] = number

    c = InviteCampaign(
        name=name,
        audience_type=optional_string(payload.get("audience_type"), 64),
        status="DRAFT",
        send_settings={**DEFAULT_SEND_SETTINGS, **settings},
        created_by=actor.id,
        created_at=datetime.utcnow(),
    )
    s.add(c)
    s.flush()
    create_audit_log(
        s,
        actor=actor,
        entity_type=ENTITY_CAMPAIGN,
        entity_id=c.id,
        field_name="campaign_id",
        new_value=name,
        change_type=CHANGE_CREATE,
    )
    return c


def add_campaign_recipients(
    s: "Session", c: InviteCampaign, actor: User, rows: Iterable[Mapping[str, Any]]
) -> BulkInviteResult:
    if c.status in ("COMPLETED", "CANCELLED"):
        raise ValidationError(f"Cannot add recipients: campaign is {c.status}")
    result = BulkInviteResult(created=[], skipped=[], errors=[])
    for i, row in enumerate(rows, start=1):
        email = sanitize_string(row.get("email")).lower()
        try:
            with s.begin_nested():
                inv, _raw = create_invite(s, actor, row, ttl_days=CAMPAIGN_INVITE_TTL_DAYS, campaign=c)
        except ConflictError as e:
            result.skipped.append({"row": i, "email": email, "reason": e.message})
            continue
        except AppError as e:
            result.errors.append({"row": i, "email": email, "error": e.message})
            continue
        result.created.append({"row": i, "email": inv.email, "invite_id": inv.id})
    c.total_recipients = (c.total_recipients or 0) + len(result.created)
    s.flush()
    s.refresh(c)
    return result


def set_campaign_status(s: "Session", c: InviteCampaign, status: str, actor: User) -> InviteCampaign:
    allowed = {
        "SENDING": ("DRAFT", "PAUSED"),
        "PAUSED": ("SENDING",),
        "CANCELLED": ("DRAFT", "SENDING", "PAUSED"),
    }
    if status not in allowed:
        raise ValidationError(f"Invalid campaign status: {status}")
    if c.status not in allowed[status]:
        raise ValidationError(f"Cannot change campaign from {c.status} to {status}")
    old = c.status
    c.status = status
    if status == "SENDING" and c.started_at is None:
        c.started_at = datetime.utcnow()
    create_audit_log(
        s,
        actor=actor,
        entity_type=ENTITY_CAMPAIGN,
        entity_id=c.id,
        field_name="status",
        old_value=old,
        new_value=status,
        change_type=CHANGE_STATUS,
    )
    return c


@dataclass(frozen=True)
class PlannedSend:
    invite: Invite
    delay_seconds: float


def plan_campaign_batch(
    campaign: InviteCampaign,
    invites: Iterable[Invite],
    sent_last_hour: int,
    *,
    rng: random.Random | None = None,
) -> list[PlannedSend]:
    """
    Pick the next slice of a campaign's queue.

    The slice is bounded by batch_size, by what is left of max_per_hour and by
    per_domain_limit within the slice. Each send carries a delay of
    min_delay_seconds plus up to jitter_seconds.
    """
    rng = rng or random.Random()
    settings = campaign_settings(campaign)
    capacity = min(settings["batch_size"], max(0, settings["max_per_hour"] - sent_last_hour))
    per_domain: dict[str, int] = {}
    plan: list[PlannedSend] = []
    for inv in invites:
        if len(plan) >= capacity:
            break
        domain = inv.domain
        if per_domain.get(domain, 0) >= settings["per_domain_limit"]:
            continue
        per_domain[domain] = per_domain.get(domain, 0) + 1
        delay = settings["min_delay_seconds"] + rng.uniform(0, settings["jitter_seconds"])
        plan.append(PlannedSend(invite=inv, delay_seconds=delay))
    return plan


def run_campaign_batch(
    s: "Session",
    c: InviteCampaign,
    config: InviteQueueConfig,
    *,
    rng: random.Random | None = None,
    sleep: Callable[[float], None] | None = None,
) -> dict[str, int]:
    if c.status != "SENDING":
        raise ValidationError(f"Campaign is not sending (status {c.status})")
    now = datetime.utcnow()
    pending = s.scalars(
        select(Invite)
        .where(
            Invite.campaign_id == c.id,
            or_(
                Invite.status == "QUEUED",
                and_(Invite.status == "RETRYING", Invite.next_retry_at <= now),
            ),
            Invite.expires_at > now,
        )
        .order_by(Invite.created_at, Invite.id)
    ).all()
    sent_last_hour = (
        s.scalar(
            select(func.count(Invite.id)).where(Invite.campaign_id == c.id, Invite.sent_at >= now - timedelta(hours=1))
        )
        or 0
    )

    counts = {"planned": 0, "sent": 0, "failed": 0}
    plan = plan_campaign_batch(c, pending, sent_last_hour, rng=rng)
    counts["planned"] = len(plan)
    for item in plan:
        if sleep is not None:
            sleep(item.delay_seconds)
        if process_invite(s, item.invite, config):
            counts["sent"] += 1
            c.sent_count = (c.sent_count or 0) + 1
        elif item.invite.status == "FAILED":
            counts["failed"] += 1
            c.failed_count = (c.failed_count or 0) + 1

    s.flush()
    remaining = s.scalar(
        select(func.count(Invite.id)).where(Invite.campaign_id == c.id, Invite.status.in_(("QUEUED", "RETRYING")))
    )
    if not remaining:
        c.status = "COMPLETED"
        c.completed_at = datetime.utcnow()
        logger.info("Campaign %s completed: sent=%s failed=%s", c.id, c.sent_count, c.failed_count)
    return counts


def run_active_campaigns(
    s: "Session", config: InviteQueueConfig, *, sleep: Callable[[float], None] | None = None
) -> dict[int, dict[str, int]]:
    out: dict[int, dict[str, int]] = {}
    active = s.scalars(
        select(InviteCampaign).where(InviteCampaign.status == "SENDING").order_by(InviteCampaign.id)
    ).all()
    for c in active:
        out[c.id] = run_campaign_batch(s, c, config, sleep=sleep)
    return out
