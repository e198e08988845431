from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING

from sqlalchemy import select

from app.yiba.audit import audit_field_changes, create_audit_log
from app.yiba.authz import assert_can_write, can_access_learner, institution_scope, target_institution_id
from app.yiba.constants import (
    CHANGE_CREATE,
    CHANGE_DELETE,
    CHANGE_STATUS,
    ENTITY_ENROLMENT,
    ENTITY_LEARNER,
    QCTO_ROLES,
    STUDENT,
)
from app.yiba.errors import ConflictError, NotFoundError, ValidationError
from app.yiba.models import User
from app.yiba.modules.institutions.models import Qualification
from app.yiba.modules.learners.models import Enrolment, Learner
from app.yiba.validation import (
    is_valid_email,
    is_valid_sa_id,
    optional_string,
    parse_bool,
    parse_date,
    parse_int,
    sanitize_string,
)

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


ENROLMENT_STATUSES = ("ACTIVE", "COMPLETED", "TRANSFERRED", "ARCHIVED")
DISABILITY_STATUSES = ("NONE", "SIGHT", "HEARING", "COMMUNICATION", "PHYSICAL", "INTELLECTUAL", "EMOTIONAL", "MULTIPLE")

LEARNER_REQUIRED = ("national_id", "first_name", "last_name", "birth_date", "gender_code", "nationality_code")
LEARNER_EDITABLE = (
    "alternate_id",
    "first_name",
    "middle_name",
    "last_name",
    "birth_date",
    "gender_code",
    "nationality_code",
    "home_language_code",
    "disability_status",
    "email",
    "phone",
    "user_id",
)


def learner_to_dict(learner: Learner) -> dict[str, object]:
    return {
        "id": learner.id,
        "institution_id": learner.institution_id,
        "user_id": learner.user_id,
        "national_id": learner.national_id,
        "alternate_id": learner.alternate_id,
        "first_name": learner.first_name,
        "middle_name": learner.middle_name,
        "last_name": learner.last_name,
        "full_name": learner.full_name,
        "birth_date": learner.birth_date.isoformat() if learner.birth_date else None,
        "gender_code": learner.gender_code,
        "nationality_code": learner.nationality_code,
        "home_language_code": learner.home_language_code,
        "disability_status": learner.disability_status,
        "email": learner.email,
        "phone": learner.phone,
        "popia_consent": learner.popia_consent,
        "consent_date": learner.consent_date.isoformat() if learner.consent_date else None,
        "created_at": learner.created_at.isoformat() if learner.created_at else None,
        "updated_at": learner.updated_at.isoformat() if learner.updated_at else None,
    }


def enrolment_to_dict(e: Enrolment) -> dict[str, object]:
    return {
        "id": e.id,
        "learner_id": e.learner_id,
        "institution_id": e.institution_id,
        "qualification_id": e.qualification_id,
        "qualification_title": e.qualification_title,
        "start_date": e.start_date.isoformat() if e.start_date else None,
        "expected_completion_date": e.expected_completion_date.isoformat() if e.expected_completion_date else None,
        "completed_date": e.completed_date.isoformat() if e.completed_date else None,
        "enrolment_status": e.enrolment_status,
        "created_at": e.created_at.isoformat() if e.created_at else None,
    }


def validate_learner_payload(payload: dict) -> list[str]:
    """Validate learner creation payload. Returns list of errors."""
    errors = []
    for field in LEARNER_REQUIRED:
        if not sanitize_string(payload.get(field)):
            errors.append(f"{field} is required.")
    national_id = sanitize_string(payload.get("national_id"))
    if national_id and not is_valid_sa_id(national_id):
        errors.append("national_id must be 13 digits.")
    if parse_bool(payload.get("popia_consent")) is not True:
        errors.append("POPIA consent is required.")
    email = sanitize_string(payload.get("email"))
    if email and not is_valid_email(email):
        errors.append("email is not a valid email address.")
    disability = sanitize_string(payload.get("disability_status")).upper()
    if disability and disability not in DISABILITY_STATUSES:
        errors.append(f"Invalid disability_status. Must be one of: {', '.join(DISABILITY_STATUSES)}")
    return errors


def get_learner(s: "Session", learner_id: int) -> Learner:
    learner = s.get(Learner, learner_id)
    if learner is None or learner.deleted_at is not None:
        raise NotFoundError("Learner not found")
    return learner


def assert_can_read_learner(s: "Session", user: User, learner: Learner) -> None:
    if user.role in QCTO_ROLES:
        from app.yiba.qcto_access import assert_can_read_for_qcto

        assert_can_read_for_qcto(s, user, ENTITY_LEARNER, learner.id)
        return
    can_access_learner(user, learner).raise_if_denied()


def linked_student_id(s: "Session", raw: object, institution_id: int) -> int | None:
    """A learner may only be linked to an active STUDENT account of its own institution."""
    user_id = parse_int(raw, "user_id")
    if user_id is None:
        return None
    student = s.get(User, user_id)
    if student is None:
        raise ValidationError(f"User {user_id} does not exist.")
    if student.role != STUDENT:
        raise ValidationError("user_id must belong to a STUDENT account.")
    if student.institution_id != institution_id:
        raise ValidationError("user_id must belong to a student of the same institution.")
    return user_id


def create_learner(s: "Session", payload: dict, user: User) -> Learner:
    errors = validate_learner_payload(payload)
    if errors:
        raise ValidationError("; ".join(errors), details={"errors": errors})

    institution_id = target_institution_id(user, parse_int(payload.get("institution_id"), "institution_id"))
    assert_can_write(user, institution_id)

    national_id = sanitize_string(payload.get("national_id"))
    if s.scalars(select(Learner.id).where(Learner.national_id == national_id)).first() is not None:
        raise ConflictError("A learner with this national ID already exists.")

    now = datetime.utcnow()
    learner = Learner(
        institution_id=institution_id,
        user_id=linked_student_id(s, payload.get("user_id"), institution_id),
        national_id=national_id,
        alternate_id=optional_string(payload.get("alternate_id"), 64),
        first_name=sanitize_string(payload.get("first_name"), 128),
        middle_name=optional_string(payload.get("middle_name"), 128),
        last_name=sanitize_string(payload.get("last_name"), 128),
        birth_date=parse_date(payload.get("birth_date"), "birth_date"),
        gender_code=sanitize_string(payload.get("gender_code"), 8).upper(),
        nationality_code=sanitize_string(payload.get("nationality_code"), 8).upper(),
        home_language_code=optional_string(payload.get("home_language_code"), 8),
        disability_status=sanitize_string(payload.get("disability_status")).upper() or "NONE",
        email=optional_string(payload.get("email"), 320),
        phone=optional_string(payload.get("phone"), 32),
        popia_consent=True,
        consent_date=parse_date(payload.get("consent_date"), "consent_date") or date.today(),
        created_at=now,
        updated_at=now,
        created_by_user_id=user.id,
    )
    s.add(learner)
    s.flush()

    create_audit_log(
        s,
        actor=user,
        entity_type=ENTITY_LEARNER,
        entity_id=learner.id,
        field_name="learner_id",
        new_value=learner.national_id,
        change_type=CHANGE_CREATE,
        institution_id=institution_id,
    )
    return learner


def update_learner(s: "Session", learner: Learner, payload: dict, user: User) -> dict[str, tuple]:
    assert_can_write(user, learner.institution_id)

    changes: dict[str, tuple] = {}
    for field in LEARNER_EDITABLE:
        if field not in payload:
            continue
        raw = payload.get(field)
        if field == "birth_date":
            new = parse_date(raw, field)
            if new is None:
                raise ValidationError("birth_date cannot be empty.")
        elif field == "user_id":
            new = linked_student_id(s, raw, learner.institution_id)
        elif field in ("first_name", "last_name", "gender_code", "nationality_code"):
            new = sanitize_string(raw)
            if not new:
                raise ValidationError(f"{field} cannot be empty.")
            if field.endswith("_code"):
                new = new.upper()
        elif field == "disability_status":
            new = sanitize_string(raw).upper() or "NONE"
            if new not in DISABILITY_STATUSES:
                raise ValidationError(f"Invalid disability_status. Must be one of: {', '.join(DISABILITY_STATUSES)}")
        else:
            new = optional_string(raw)
            if field == "email" and new and not is_valid_email(new):
                raise ValidationError("email is not a valid email address.")
        old = getattr(learner, field)
        if old != new:
            changes[field] = (old, new)
            setattr(learner, field, new)

    if changes:
        learner.updated_at = datetime.utcnow()
        audit_field_changes(
            s,
            actor=user,
            entity_type=ENTITY_LEARNER,
            entity_id=learner.id,
            changes=changes,
            institution_id=learner.institution_id,
        )
    return changes


def archive_learner(s: "Session", learner: Learner, user: User, reason: str | None = None) -> Learner:
    """Soft delete; the row stays for audit and export history."""
    assert_can_write(user, learner.institution_id)
    now = datetime.utcnow()
    learner.deleted_at = now
    learner.updated_at = now
    create_audit_log(
        s,
        actor=user,
        entity_type=ENTITY_LEARNER,
        entity_id=learner.id,
        field_name="deleted_at",
        old_value=None,
        new_value=now,
        change_type=CHANGE_DELETE,
        reason=reason,
        institution_id=learner.institution_id,
    )
    return learner


def learners_query(s: "Session", user: User, *, search: str | None = None, institution_id: int | None = None):
    stmt = select(Learner).where(Learner.deleted_at.is_(None))
    if user.role in QCTO_ROLES:
        from app.yiba.qcto_access import scope_query_for_qcto

        stmt = scope_query_for_qcto(s, user, stmt, Learner, ENTITY_LEARNER)
        if institution_id is not None:
            stmt = stmt.where(Learner.institution_id == institution_id)
    elif user.role == STUDENT:
        stmt = stmt.where(Learner.user_id == user.id)
    else:
        scope = institution_scope(user, institution_id)
        if scope is not None:
            stmt = stmt.where(Learner.institution_id == scope)

    if search:
        like = f"%{search}%"
        stmt = stmt.where(
            Learner.first_name.ilike(like) | Learner.last_name.ilike(like) | Learner.national_id.ilike(like)
        )
    return stmt


# ---------- Enrolments ----------


def get_enrolment(s: "Session", enrolment_id: int) -> Enrolment:
    e = s.get(Enrolment, enrolment_id)
    if e is None or e.deleted_at is not None:
        raise NotFoundError("Enrolment not found")
    return e


def create_enrolment(s: "Session", payload: dict, user: User) -> Enrolment:
    learner_id = parse_int(payload.get("learner_id"), "learner_id")
    if learner_id is None:
        raise ValidationError("learner_id is required.")
    learner = get_learner(s, learner_id)
    assert_can_write(user, learner.institution_id)

    qualification_id = parse_int(payload.get("qualification_id"), "qualification_id")
    title = optional_string(payload.get("qualification_title"), 255)
    if qualification_id is not None:
        qual = s.get(Qualification, qualification_id)
        if qual is None:
            raise ValidationError("Qualification not found.")
        title = title or qual.name
    if not title:
        raise ValidationError("qualification_id or qualification_title is required.")

    dup = select(Enrolment.id).where(
        Enrolment.learner_id == learner.id,
        Enrolment.enrolment_status == "ACTIVE",
        Enrolment.deleted_at.is_(None),
    )
    if qualification_id is not None:
        dup = dup.where(Enrolment.qualification_id == qualification_id)
    else:
        dup = dup.where(Enrolment.qualification_title == title)
    if s.scalars(dup).first() is not None:
        raise ConflictError("Learner already has an active enrolment for this qualification.")

    start = parse_date(payload.get("start_date"), "start_date") or date.today()
    expected = parse_date(payload.get("expected_completion_date"), "expected_completion_date")
    if expected is not None and expected < start:
        raise ValidationError("expected_completion_date cannot be before start_date.")

    now = datetime.utcnow()
    e = Enrolment(
        learner_id=learner.id,
        institution_id=learner.institution_id,
        qualification_id=qualification_id,
        qualification_title=title,
        start_date=start,
        expected_completion_date=expected,
        enrolment_status="ACTIVE",
        created_at=now,
        updated_at=now,
        created_by_user_id=user.id,
    )
    s.add(e)
    s.flush()
    create_audit_log(
        s,
        actor=user,
        entity_type=ENTITY_ENROLMENT,
        entity_id=e.id,
        field_name="enrolment_id",
        new_value=title,
        change_type=CHANGE_CREATE,
        institution_id=e.institution_id,
    )
    return e


def set_enrolment_status(s: "Session", e: Enrolment, payload: dict, user: User) -> Enrolment:
    assert_can_write(user, e.institution_id)
    status = sanitize_string(payload.get("enrolment_status") or payload.get("status")).upper()
    if status not in ENROLMENT_STATUSES:
        raise ValidationError(f"Invalid enrolment_status. Must be one of: {', '.join(ENROLMENT_STATUSES)}")

    old = e.enrolment_status
    if status == "COMPLETED":
        completed = parse_date(payload.get("completed_date"), "completed_date") or date.today()
        if completed < e.start_date:
            raise ValidationError("completed_date cannot be before start_date.")
        e.completed_date = completed
    if old != status:
        e.enrolment_status = status
        e.updated_at = datetime.utcnow()
        create_audit_log(
            s,
            actor=user,
            entity_type=ENTITY_ENROLMENT,
            entity_id=e.id,
            field_name="enrolment_status",
            old_value=old,
            new_value=status,
            change_type=CHANGE_STATUS,
            reason=optional_string(payload.get("reason"), 512),
            institution_id=e.institution_id,
        )
    return e


def enrolments_query(
    s: "Session",
    user: User,
    *,
    learner_id: int | None = None,
    status: str | None = None,
    institution_id: int | None = None,
):
    stmt = select(Enrolment).where(Enrolment.deleted_at.is_(None))
    if user.role in QCTO_ROLES:
        from app.yiba.qcto_access import scope_query_for_qcto

        stmt = scope_query_for_qcto(s, user, stmt, Enrolment, ENTITY_ENROLMENT)
        if institution_id is not None:
            stmt = stmt.where(Enrolment.institution_id == institution_id)
    elif user.role == STUDENT:
        stmt = stmt.join(Learner, Learner.id == Enrolment.learner_id).where(Learner.user_id == user.id)
    else:
        scope = institution_scope(user, institution_id)
        if scope is not None:
            stmt = stmt.where(Enrolment.institution_id == scope)

    if learner_id is not None:
        stmt = stmt.where(Enrolment.learner_id == learner_id)
    if status:
        stmt = stmt.where(Enrolment.enrolment_status == status.upper())
    return stmt


def student_enrolments(s: "Session", user: User) -> list[Enrolment]:
    learner = s.scalars(
        select(Learner).where(Learner.user_id == user.id, Learner.deleted_at.is_(None))
    ).first()
    if learner is None:
        return []
    return [e for e in learner.enrolments if e.deleted_at is None]
