from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import select

from app.yiba.audit import audit_field_changes, create_audit_log
from app.yiba.constants import (
    CHANGE_CREATE,
    CHANGE_STATUS,
    ENTITY_INSTITUTION,
    ENTITY_QUALIFICATION,
    ENTITY_USER,
    INSTITUTION_TYPES,
    PLATFORM_ADMIN,
    PROVINCES,
    QCTO_ROLES,
)
from app.yiba.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from app.yiba.models import User
from app.yiba.modules.institutions.models import Institution, Qualification
from app.yiba.modules.notifications import service as notifications
from app.yiba.validation import is_valid_email, optional_string, parse_int, sanitize_string

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


INSTITUTION_STATUSES = ("DRAFT", "APPROVED", "SUSPENDED")

# Fields an institution user may edit on their own profile
PROFILE_FIELDS = (
    "legal_name",
    "trading_name",
    "institution_type",
    "branch_code",
    "province",
    "physical_address",
    "postal_address",
    "contact_person_name",
    "contact_email",
    "contact_number",
)

ONBOARDING_REQUIRED = (
    "legal_name",
    "institution_type",
    "province",
    "physical_address",
    "contact_person_name",
    "contact_email",
)


def institution_to_dict(inst: Institution) -> dict[str, object]:
    return {
        "id": inst.id,
        "legal_name": inst.legal_name,
        "trading_name": inst.trading_name,
        "display_name": inst.display_name,
        "institution_type": inst.institution_type,
        "registration_number": inst.registration_number,
        "branch_code": inst.branch_code,
        "province": inst.province,
        "physical_address": inst.physical_address,
        "postal_address": inst.postal_address,
        "contact_person_name": inst.contact_person_name,
        "contact_email": inst.contact_email,
        "contact_number": inst.contact_number,
        "status": inst.status,
        "onboarding_completed": inst.onboarding_completed,
        "onboarding_completed_at": inst.onboarding_completed_at.isoformat() if inst.onboarding_completed_at else None,
        "created_at": inst.created_at.isoformat() if inst.created_at else None,
        "updated_at": inst.updated_at.isoformat() if inst.updated_at else None,
    }


def qualification_to_dict(q: Qualification) -> dict[str, object]:
    return {
        "id": q.id,
        "name": q.name,
        "code": q.code,
        "saqa_id": q.saqa_id,
        "nqf_level": q.nqf_level,
        "credits": q.credits,
        "status": q.status,
    }


def validate_institution_payload(payload: dict, *, partial: bool = False) -> list[str]:
    """Validate institution create/update payload. Returns list of errors."""
    errors = []
    required = () if partial else ("legal_name", "registration_number", "institution_type", "province")
    for field in required:
        if not sanitize_string(payload.get(field)):
            errors.append(f"{field} is required.")

    itype = sanitize_string(payload.get("institution_type")).upper()
    if itype and itype not in INSTITUTION_TYPES:
        errors.append(f"Invalid institution_type. Must be one of: {', '.join(sorted(INSTITUTION_TYPES))}")
    province = sanitize_string(payload.get("province"))
    if province and province not in PROVINCES:
        errors.append(f"Invalid province. Must be one of: {', '.join(PROVINCES)}")
    email = sanitize_string(payload.get("contact_email"))
    if email and not is_valid_email(email):
        errors.append("contact_email is not a valid email address.")
    return errors


def get_institution(s: "Session", institution_id: int) -> Institution:
    inst = s.get(Institution, institution_id)
    if inst is None or inst.deleted_at is not None:
        raise NotFoundError("Institution not found")
    return inst


def create_institution(s: "Session", payload: dict, user: User) -> Institution:
    errors = validate_institution_payload(payload)
    if errors:
        raise ValidationError("; ".join(errors), details={"errors": errors})

    reg = sanitize_string(payload.get("registration_number"), 64)
    if s.scalars(select(Institution.id).where(Institution.registration_number == reg)).first() is not None:
        raise ConflictError(f"An institution with registration number {reg} already exists.")

    now = datetime.utcnow()
    inst = Institution(
        legal_name=sanitize_string(payload.get("legal_name"), 255),
        trading_name=optional_string(payload.get("trading_name"), 255),
        registration_number=reg,
        institution_type=sanitize_string(payload.get("institution_type")).upper(),
        branch_code=optional_string(payload.get("branch_code"), 32),
        province=sanitize_string(payload.get("province")),
        physical_address=optional_string(payload.get("physical_address")),
        postal_address=optional_string(payload.get("postal_address")),
        contact_person_name=optional_string(payload.get("contact_person_name"), 255),
        contact_email=optional_string(payload.get("contact_email"), 320),
        contact_number=optional_string(payload.get("contact_number"), 32),
        status="DRAFT",
        created_at=now,
        updated_at=now,
    )
    s.add(inst)
    s.flush()

    create_audit_log(
        s,
        actor=user,
        entity_type=ENTITY_INSTITUTION,
        entity_id=inst.id,
        field_name="institution_id",
        new_value=inst.legal_name,
        change_type=CHANGE_CREATE,
        institution_id=inst.id,
    )
    admin_ids = s.scalars(select(User.id).where(User.role == PLATFORM_ADMIN, User.is_active.is_(True))).all()
    notifications.notify_users(s, admin_ids, notifications.institution_created(inst.id, inst.legal_name))
    return inst


def update_institution(
    s: "Session", inst: Institution, payload: dict, user: User, *, fields=PROFILE_FIELDS
) -> dict[str, tuple]:
    """Apply the editable fields present in the payload. Each changed field gets an audit row."""
    errors = validate_institution_payload(payload, partial=True)
    if errors:
        raise ValidationError("; ".join(errors), details={"errors": errors})

    changes: dict[str, tuple] = {}
    for field in fields:
        if field not in payload:
            continue
        if field in ("legal_name", "province", "institution_type"):
            new = sanitize_string(payload.get(field))
            if not new:
                raise ValidationError(f"{field} cannot be empty.")
            if field == "institution_type":
                new = new.upper()
        else:
            new = optional_string(payload.get(field))
        old = getattr(inst, field)
        if old != new:
            changes[field] = (old, new)
            setattr(inst, field, new)

    if changes:
        inst.updated_at = datetime.utcnow()
        audit_field_changes(
            s,
            actor=user,
            entity_type=ENTITY_INSTITUTION,
            entity_id=inst.id,
            changes=changes,
            institution_id=inst.id,
        )
    return changes


def complete_onboarding(s: "Session", inst: Institution, payload: dict, user: User) -> Institution:
    if inst.onboarding_completed:
        raise ConflictError("Onboarding has already been completed.")

    merged = {f: payload.get(f, getattr(inst, f)) for f in ONBOARDING_REQUIRED}
    missing = [f for f in ONBOARDING_REQUIRED if not sanitize_string(merged.get(f))]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", details={"missing": missing})

    update_institution(s, inst, payload, user)
    now = datetime.utcnow()
    inst.onboarding_completed = True
    inst.onboarding_completed_at = now
    inst.updated_at = now
    create_audit_log(
        s,
        actor=user,
        entity_type=ENTITY_INSTITUTION,
        entity_id=inst.id,
        field_name="onboarding_completed",
        old_value=False,
        new_value=True,
        change_type=CHANGE_STATUS,
        institution_id=inst.id,
    )
    return inst


def visible_institutions_query(s: "Session", user: User, *, search: str | None = None):
    from app.yiba.qcto_access import visible_institution_ids

    stmt = select(Institution).where(Institution.deleted_at.is_(None))
    if user.role == PLATFORM_ADMIN:
        pass
    elif user.role in QCTO_ROLES:
        ids = visible_institution_ids(s, user)
        if ids is not None:
            stmt = stmt.where(Institution.id.in_(ids))
    elif user.institution_id is not None:
        stmt = stmt.where(Institution.id == user.institution_id)
    else:
        raise ForbiddenError("User is not linked to an institution")

    if search:
        like = f"%{search}%"
        stmt = stmt.where(
            Institution.legal_name.ilike(like)
            | Institution.trading_name.ilike(like)
            | Institution.registration_number.ilike(like)
        )
    return stmt


def list_staff(s: "Session", institution_id: int) -> list[User]:
    stmt = select(User).where(User.institution_id == institution_id).order_by(User.last_name, User.first_name, User.id)
    return list(s.scalars(stmt))


def deactivate_staff(s: "Session", institution_id: int, target_id: int, user: User) -> User:
    target = s.get(User, target_id)
    if target is None or target.institution_id != institution_id:
        raise NotFoundError("Staff member not found")
    if target.id == user.id:
        raise ValidationError("You cannot deactivate your own account.")
    if target.is_active:
        target.is_active = False
        target.updated_at = datetime.utcnow()
        create_audit_log(
            s,
            actor=user,
            entity_type=ENTITY_USER,
            entity_id=target.id,
            field_name="is_active",
            old_value=True,
            new_value=False,
            change_type=CHANGE_STATUS,
            institution_id=institution_id,
        )
    return target


# ---------- Qualifications ----------


def list_qualifications(s: "Session", *, search: str | None = None) -> list[Qualification]:
    stmt = select(Qualification)
    if search:
        like = f"%{search}%"
        stmt = stmt.where(Qualification.name.ilike(like) | Qualification.code.ilike(like))
    return list(s.scalars(stmt.order_by(Qualification.name.asc())))


def create_qualification(s: "Session", payload: dict, user: User) -> Qualification:
    name = sanitize_string(payload.get("name"), 255)
    code = sanitize_string(payload.get("code"), 64)
    errors = []
    if not name:
        errors.append("Name is required.")
    if not code:
        errors.append("Code is required.")
    if errors:
        raise ValidationError("; ".join(errors), details={"errors": errors})
    saqa_id = optional_string(payload.get("saqa_id"), 32)

    if s.scalars(select(Qualification.id).where(Qualification.code == code)).first() is not None:
        raise ConflictError(f"A qualification with code {code} already exists.")
    if saqa_id and s.scalars(select(Qualification.id).where(Qualification.saqa_id == saqa_id)).first() is not None:
        raise ConflictError(f"A qualification with SAQA ID {saqa_id} already exists.")

    q = Qualification(
        name=name,
        code=code,
        saqa_id=saqa_id,
        nqf_level=parse_int(payload.get("nqf_level"), "nqf_level"),
        credits=parse_int(payload.get("credits"), "credits"),
        created_by_user_id=user.id,
    )
    s.add(q)
    s.flush()
    create_audit_log(
        s,
        actor=user,
        entity_type=ENTITY_QUALIFICATION,
        entity_id=q.id,
        field_name="code",
        new_value=q.code,
        change_type=CHANGE_CREATE,
    )
    return q
