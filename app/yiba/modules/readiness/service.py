"""
Form 5 readiness records: section completion, submission checks, edits and
QCTO review.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select

from app.yiba.audit import audit_field_changes, create_audit_log, mutate_with_audit
from app.yiba.authz import assert_can_read, assert_can_write, institution_scope, target_institution_id
from app.yiba.constants import (
    CHANGE_CREATE,
    CHANGE_DELETE,
    CHANGE_STATUS,
    ENTITY_FACILITATOR,
    ENTITY_READINESS,
    FACILITATOR,
    INSTITUTION_ADMIN,
    INSTITUTION_STAFF,
    QCTO_ROLES,
)
from app.yiba.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from app.yiba.models import User
from app.yiba.modules.documents.models import Document
from app.yiba.modules.notifications import service as notifications
from app.yiba.modules.readiness.models import Readiness, ReadinessFacilitator, ReadinessRecommendation
from app.yiba.rbac import has_cap
from app.yiba.validation import is_valid_email, optional_string, parse_bool, parse_int, sanitize_string

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

DELIVERY_MODES = ("FACE_TO_FACE", "BLENDED", "MOBILE")
READINESS_STATUSES = (
    "NOT_STARTED",
    "IN_PROGRESS",
    "SUBMITTED",
    "UNDER_REVIEW",
    "RETURNED_FOR_CORRECTION",
    "REVIEWED",
    "RECOMMENDED",
    "REJECTED",
)
INSTITUTION_EDITABLE_STATUSES = ("NOT_STARTED", "IN_PROGRESS", "RETURNED_FOR_CORRECTION")
QCTO_REVIEW_STATUSES = ("UNDER_REVIEW", "RETURNED_FOR_CORRECTION", "RECOMMENDED", "REJECTED")
REVIEWABLE_STATUSES = ("SUBMITTED", "UNDER_REVIEW")
RECOMMENDATIONS = ("APPROVE", "CONDITIONAL_APPROVAL", "REJECT")
MIN_LEARNING_MATERIAL_COVERAGE = 50

# field -> value kind, for the Form 5 fields an institution may edit
FORM_FIELDS: dict[str, str] = {
    "qualification_title": "str",
    "saqa_id": "str",
    "curriculum_code": "str",
    "nqf_level": "int",
    "credits": "int",
    "occupational_category": "str",
    "delivery_mode": "delivery_mode",
    "self_assessment_completed": "bool",
    "self_assessment_remarks": "str",
    "registration_type": "str",
    "professional_body_registration": "bool",
    "training_site_address": "str",
    "ownership_type": "str",
    "number_of_training_rooms": "int",
    "room_capacity": "int",
    "facilitator_learner_ratio": "str",
    "wbl_workplace_partner_name": "str",
    "wbl_agreement_type": "str",
    "lms_name": "str",
    "internet_connectivity_method": "str",
    "isp": "str",
    "lmis_functional": "bool",
    "lmis_popia_compliant": "bool",
    "policies_procedures_notes": "str",
    "fire_extinguisher_available": "bool",
    "emergency_exits_marked": "bool",
    "accessibility_for_disabilities": "bool",
    "first_aid_kit_available": "bool",
    "ohs_representative_name": "str",
    "learning_material_exists": "bool",
    "learning_material_coverage_percentage": "int",
    "learning_material_nqf_aligned": "bool",
    "knowledge_components_complete": "bool",
    "practical_components_complete": "bool",
    "learning_material_quality_verified": "bool",
}


# ---------- Completion ----------


def _filled(value: Any) -> bool:
    return value is not None and value != ""


def _percent(values: list[Any]) -> int:
    if not values:
        return 0
    return round(sum(1 for v in values if _filled(v)) / len(values) * 100)


def _section(name: str, completed: int, missing: list[str] | None = None, warnings: list[str] | None = None) -> dict:
    return {
        "section_name": name,
        "completed": completed,
        "required": True,
        "missing_fields": missing or [],
        "validation_warnings": warnings or [],
    }


def calculate_section_completion(r: Readiness, document_count: int = 0) -> dict[str, Any]:
    """
    Per-section completion (0..100) for a readiness record.

    Sections that are evidenced by uploads (3.5 practical resources, 5 mobile unit)
    count as complete once the record has at least one document attached.
    """
    mode = r.delivery_mode
    doc_based = 100 if document_count > 0 else 0
    sections: list[dict] = []
    warnings: list[str] = []

    sections.append(
        _section(
            "section_2_qualification",
            _percent([r.qualification_title, r.saqa_id, r.curriculum_code, r.credits, r.delivery_mode]),
            [
                f
                for f, v in (
                    ("qualification_title", r.qualification_title),
                    ("saqa_id", r.saqa_id),
                    ("curriculum_code", r.curriculum_code),
                    ("credits", r.credits),
                )
                if not v
            ],
        )
    )

    sections.append(
        _section(
            "section_3_1_self_assessment",
            100 if r.self_assessment_completed is not None else 0,
            ["self_assessment_completed"] if r.self_assessment_completed is None else [],
            ["Self-assessment remarks are recommended when completed"]
            if r.self_assessment_completed is True and not r.self_assessment_remarks
            else [],
        )
    )

    missing = []
    if not r.registration_type:
        missing.append("registration_type")
    if r.professional_body_registration is None:
        missing.append("professional_body_registration")
    sections.append(
        _section(
            "section_3_2_registration",
            _percent([r.registration_type, r.professional_body_registration]),
            missing,
        )
    )

    if mode in ("FACE_TO_FACE", "BLENDED"):
        sections.append(
            _section(
                "section_3_3_physical_delivery",
                _percent(
                    [r.training_site_address, r.ownership_type, r.number_of_training_rooms, r.facilitator_learner_ratio]
                ),
                [f for f, v in (("training_site_address", r.training_site_address), ("ownership_type", r.ownership_type)) if not v],
            )
        )

    sections.append(
        _section(
            "section_3_4_knowledge_resources",
            _percent([r.number_of_training_rooms, r.room_capacity, r.facilitator_learner_ratio]),
        )
    )
    sections.append(_section("section_3_5_practical_resources", doc_based))
    sections.append(_section("section_3_6_wbl", _percent([r.wbl_workplace_partner_name, r.wbl_agreement_type])))

    if mode == "BLENDED":
        sections.append(
            _section("section_4_hybrid_blended", _percent([r.lms_name, r.internet_connectivity_method, r.isp]))
        )
    if mode == "MOBILE":
        sections.append(_section("section_5_mobile_unit", doc_based))

    sections.append(_section("section_6_lmis", _percent([r.lmis_functional, r.lmis_popia_compliant])))
    sections.append(
        _section(
            "section_7_policies",
            100 if r.policies_procedures_notes else 0,
            [] if r.policies_procedures_notes else ["policies_procedures_notes"],
        )
    )
    sections.append(
        _section(
            "section_8_ohs",
            _percent(
                [
                    r.fire_extinguisher_available,
                    r.emergency_exits_marked,
                    r.accessibility_for_disabilities,
                    r.first_aid_kit_available,
                    r.ohs_representative_name,
                ]
            ),
        )
    )

    coverage = r.learning_material_coverage_percentage
    low_coverage = coverage is not None and coverage < MIN_LEARNING_MATERIAL_COVERAGE
    if low_coverage:
        warnings.append(
            f"Learning material coverage is {coverage}%, which is below the 50% requirement per Form 5 Section 9"
        )
    sections.append(
        _section(
            "section_9_learning_material",
            _percent(
                [
                    r.learning_material_exists,
                    coverage,
                    r.learning_material_nqf_aligned,
                    r.knowledge_components_complete,
                    r.practical_components_complete,
                    r.learning_material_quality_verified,
                ]
            ),
            warnings=["Learning material coverage must be ≥50% per Form 5 Section 9"] if low_coverage else [],
        )
    )

    overall = round(sum(sec["completed"] for sec in sections) / len(sections)) if sections else 0
    missing_required = [sec["section_name"] for sec in sections if sec["required"] and sec["completed"] < 100]
    return {
        "sections": sections,
        "overall_completion": overall,
        "required_sections_complete": not missing_required,
        "missing_required_sections": missing_required,
        "validation_warnings": warnings,
    }


def validate_readiness_for_submission(r: Readiness, document_count: int = 0) -> dict[str, Any]:
    completion = calculate_section_completion(r, document_count)
    errors: list[str] = []
    warnings: list[str] = []

    if not (r.qualification_title and r.saqa_id and r.curriculum_code and r.credits):
        errors.append("Qualification information (Section 2) is incomplete. All fields are required.")
    if r.self_assessment_completed is None:
        errors.append("Self-assessment (Section 3.1) must be completed.")
    if r.self_assessment_completed is True and not r.self_assessment_remarks:
        warnings.append("Self-assessment remarks are recommended when completed.")
    if not r.registration_type:
        errors.append("Registration type (Section 3.2) is required.")

    coverage = r.learning_material_coverage_percentage
    if coverage is not None and coverage < MIN_LEARNING_MATERIAL_COVERAGE:
        errors.append(
            f"Learning material coverage is {coverage}%, which is below the 50% requirement per Form 5 Section 9"
        )

    if r.delivery_mode in ("FACE_TO_FACE", "BLENDED") and not (r.training_site_address and r.ownership_type):
        errors.append(
            "Physical delivery readiness (Section 3.3) is incomplete. Property & premises information is required."
        )
    if r.delivery_mode == "BLENDED" and not r.lms_name:
        errors.append("LMS information (Section 4) is required for Blended delivery mode.")

    if completion["overall_completion"] < 80:
        warnings.append(
            f"Overall completion is {completion['overall_completion']}%. "
            "Consider completing more sections before submission."
        )
    if not completion["required_sections_complete"]:
        errors.append(
            "The following required sections are incomplete: " + ", ".join(completion["missing_required_sections"])
        )
    warnings.extend(completion["validation_warnings"])
    return {"can_submit": not errors, "errors": errors, "warnings": warnings}


# ---------- Records ----------


def readiness_to_dict(r: Readiness, *, include_completion: bool = False) -> dict[str, object]:
    data: dict[str, object] = {
        "id": r.id,
        "institution_id": r.institution_id,
        "readiness_status": r.readiness_status,
        **{f: getattr(r, f) for f in FORM_FIELDS},
        "section_completion_data": r.section_completion_data,
        "submission_date": r.submission_date.isoformat() if r.submission_date else None,
        "created_at": r.created_at.isoformat() if r.created_at else None,
        "updated_at": r.updated_at.isoformat() if r.updated_at else None,
    }
    rec = r.recommendation
    data["recommendation"] = (
        {
            "recommendation": rec.recommendation,
            "remarks": rec.remarks,
            "recommended_by": rec.recommended_by,
            "recommended_at": rec.recommended_at.isoformat() if rec.recommended_at else None,
        }
        if rec is not None
        else None
    )
    if include_completion:
        data["completion"] = r.section_completion_data
        data["facilitators"] = [facilitator_to_dict(f) for f in r.facilitators]
    return data


def document_count_for(s: "Session", readiness_id: int) -> int:
    return (
        s.scalar(
            select(func.count(Document.id)).where(
                Document.related_entity == ENTITY_READINESS,
                Document.related_entity_id == readiness_id,
                Document.deleted_at.is_(None),
            )
        )
        or 0
    )


def refresh_completion(s: "Session", r: Readiness) -> dict[str, Any]:
    data = calculate_section_completion(r, document_count_for(s, r.id) if r.id else 0)
    r.section_completion_data = data
    return data


def _coerce(field: str, kind: str, raw: Any) -> Any:
    if kind == "bool":
        return parse_bool(raw)
    if kind == "int":
        value = parse_int(raw, field)
        if value is not None and value < 0:
            raise ValidationError(f"{field} must be >= 0")
        if field == "learning_material_coverage_percentage" and value is not None and value > 100:
            raise ValidationError(f"{field} must be between 0 and 100")
        return value
    if kind == "delivery_mode":
        mode = sanitize_string(raw).upper()
        if mode not in DELIVERY_MODES:
            raise ValidationError(f"Invalid delivery_mode. Must be one of: {', '.join(DELIVERY_MODES)}")
        return mode
    return optional_string(raw)


def get_readiness(s: "Session", readiness_id: int) -> Readiness:
    r = s.get(Readiness, readiness_id)
    if r is None or r.deleted_at is not None:
        raise NotFoundError("Readiness record not found")
    return r


def assert_can_read_readiness(s: "Session", user: User, r: Readiness) -> None:
    assert_can_read(s, user, ENTITY_READINESS, r.id, r.institution_id)


def create_readiness(s: "Session", payload: dict, user: User) -> Readiness:
    errors = []
    if not sanitize_string(payload.get("qualification_title")):
        errors.append("qualification_title is required.")
    if not sanitize_string(payload.get("delivery_mode")):
        errors.append("delivery_mode is required.")
    if errors:
        raise ValidationError("; ".join(errors), details={"errors": errors})

    institution_id = target_institution_id(user, parse_int(payload.get("institution_id"), "institution_id"))
    assert_can_write(user, institution_id)

    now = datetime.utcnow()
    r = Readiness(
        institution_id=institution_id,
        readiness_status="NOT_STARTED",
        created_at=now,
        updated_at=now,
        created_by_user_id=user.id,
    )
    for field, kind in FORM_FIELDS.items():
        if field in payload:
            setattr(r, field, _coerce(field, kind, payload.get(field)))
    s.add(r)
    s.flush()
    refresh_completion(s, r)

    create_audit_log(
        s,
        actor=user,
        entity_type=ENTITY_READINESS,
        entity_id=r.id,
        field_name="readiness_id",
        new_value=r.qualification_title,
        change_type=CHANGE_CREATE,
        institution_id=institution_id,
    )
    return r


def update_readiness(s: "Session", r: Readiness, payload: dict, user: User) -> dict[str, tuple]:
    """
    Apply Form 5 edits and optional status change (IN_PROGRESS / SUBMITTED).

    Returns {field: (old, new)} for the changed fields.
    """
    assert_can_write(user, r.institution_id)
    if user.role in (INSTITUTION_ADMIN, INSTITUTION_STAFF) and r.readiness_status not in INSTITUTION_EDITABLE_STATUSES:
        raise ForbiddenError(
            f"Cannot edit readiness record: Status is {r.readiness_status} "
            f"(only {', '.join(INSTITUTION_EDITABLE_STATUSES)} records can be edited)"
        )

    changes: dict[str, tuple] = {}
    for field, kind in FORM_FIELDS.items():
        if field not in payload:
            continue
        new = _coerce(field, kind, payload.get(field))
        if field == "qualification_title" and not new:
            raise ValidationError("qualification_title cannot be empty.")
        old = getattr(r, field)
        if old != new:
            changes[field] = (old, new)
            setattr(r, field, new)

    requested = sanitize_string(payload.get("readiness_status")).upper() or None
    if requested is not None and requested not in ("IN_PROGRESS", "SUBMITTED"):
        raise ValidationError("readiness_status may only be set to IN_PROGRESS or SUBMITTED")

    old_status = r.readiness_status
    new_status = old_status
    if changes and old_status == "NOT_STARTED":
        new_status = "IN_PROGRESS"
    if requested == "IN_PROGRESS":
        new_status = "IN_PROGRESS"

    docs = document_count_for(s, r.id)
    if requested == "SUBMITTED":
        if not has_cap(user.role, "FORM5_SUBMIT"):
            raise ForbiddenError("You do not have permission to submit readiness records.")
        result = validate_readiness_for_submission(r, docs)
        if not result["can_submit"]:
            raise ValidationError(
                "Readiness record cannot be submitted: " + "; ".join(result["errors"]),
                details={"errors": result["errors"], "warnings": result["warnings"]},
            )
        new_status = "SUBMITTED"
        r.submission_date = datetime.utcnow()

    if new_status != old_status:
        r.readiness_status = new_status
        changes["readiness_status"] = (old_status, new_status)

    r.section_completion_data = calculate_section_completion(r, docs)
    if changes:
        r.updated_at = datetime.utcnow()
        audit_field_changes(
            s,
            actor=user,
            entity_type=ENTITY_READINESS,
            entity_id=r.id,
            changes=changes,
            institution_id=r.institution_id,
        )

    if new_status == "SUBMITTED" and old_status != "SUBMITTED":
        inst = r.institution
        notifications.notify_users(
            s,
            notifications.province_qcto_user_ids(s, inst.province if inst else None),
            notifications.readiness_submitted(r.id, inst.display_name if inst else "", r.qualification_title),
        )
    return changes


def readiness_query(
    s: "Session",
    user: User,
    *,
    status: str | None = None,
    institution_id: int | None = None,
    search: str | None = None,
):
    stmt = select(Readiness).where(Readiness.deleted_at.is_(None))
    if user.role in QCTO_ROLES:
        from app.yiba.qcto_access import QCTO_VISIBLE_READINESS_STATUSES, scope_query_for_qcto

        stmt = scope_query_for_qcto(s, user, stmt, Readiness, ENTITY_READINESS)
        stmt = stmt.where(Readiness.readiness_status.in_(QCTO_VISIBLE_READINESS_STATUSES))
        if institution_id is not None:
            stmt = stmt.where(Readiness.institution_id == institution_id)
    else:
        scope = institution_scope(user, institution_id)
        if scope is not None:
            stmt = stmt.where(Readiness.institution_id == scope)

    if status:
        stmt = stmt.where(Readiness.readiness_status == status.upper())
    if search:
        like = f"%{search}%"
        stmt = stmt.where(Readiness.qualification_title.ilike(like) | Readiness.saqa_id.ilike(like))
    return stmt


# ---------- QCTO review ----------


def review_readiness(s: "Session", readiness_id: int, payload: dict, user: User) -> Readiness:
    from app.yiba.modules.reviews.service import is_reviewer_assigned

    status = sanitize_string(payload.get("status") or payload.get("readiness_status")).upper()
    if status not in QCTO_REVIEW_STATUSES:
        raise ValidationError(
            f"Invalid status: {status or None} (QCTO can only set: {', '.join(QCTO_REVIEW_STATUSES)})"
        )
    recommendation = sanitize_string(payload.get("recommendation")).upper() or None
    if recommendation is not None and recommendation not in RECOMMENDATIONS:
        raise ValidationError(f"Invalid recommendation: {recommendation} (valid: {', '.join(RECOMMENDATIONS)})")
    remarks = optional_string(payload.get("remarks"))

    r = get_readiness(s, readiness_id)
    assert_can_read_readiness(s, user, r)
    if r.readiness_status not in REVIEWABLE_STATUSES:
        raise ValidationError(
            f"Cannot review readiness record: Status is {r.readiness_status} "
            "(only SUBMITTED or UNDER_REVIEW records can be reviewed by QCTO)"
        )
    if user.role in QCTO_ROLES and not is_reviewer_assigned(s, ENTITY_READINESS, r.id, user.id):
        logger.warning("Unassigned reviewer user_id=%s reviewing readiness %s", user.id, r.id)

    old_status = r.readiness_status

    def _apply(sess: "Session", actor: User) -> Readiness:
        r.readiness_status = status
        r.updated_at = datetime.utcnow()
        if status in ("RECOMMENDED", "REJECTED") or recommendation or remarks:
            default = "REJECT" if status == "REJECTED" else "APPROVE"
            rec = r.recommendation
            if rec is None:
                rec = ReadinessRecommendation(readiness_id=r.id)
                sess.add(rec)
                r.recommendation = rec
            rec.recommendation = recommendation or default
            rec.remarks = remarks
            rec.recommended_by = actor.id
            rec.recommended_at = datetime.utcnow()
        return r

    mutate_with_audit(
        s,
        actor=user,
        entity_type=ENTITY_READINESS,
        change_type=CHANGE_STATUS,
        mutation=_apply,
        field_name="readiness_status",
        old_value=old_status,
        new_value=status,
        institution_id=r.institution_id,
        reason=optional_string(payload.get("reason"), 512) or remarks,
    )

    if status != old_status:
        content = notifications.readiness_reviewed(r.id, status, r.qualification_title)
        recipients = notifications.institution_user_ids(s, r.institution_id, (INSTITUTION_ADMIN, INSTITUTION_STAFF))
        notifications.notify_users(s, recipients, content)
        s.commit()
    return r



# ---------- Facilitators ----------

# account roles that may be named as a facilitator on their institution's records
FACILITATOR_ACCOUNT_ROLES = (FACILITATOR, INSTITUTION_STAFF, INSTITUTION_ADMIN)
FACILITATOR_EDITABLE = ("first_name", "last_name", "email", "qualification")


def facilitator_to_dict(f: ReadinessFacilitator) -> dict[str, object]:
    return {
        "id": f.id,
        "readiness_id": f.readiness_id,
        "user_id": f.user_id,
        "first_name": f.first_name,
        "last_name": f.last_name,
        "email": f.email,
        "qualification": f.qualification,
        "created_at": f.created_at.isoformat() if f.created_at else None,
        "updated_at": f.updated_at.isoformat() if f.updated_at else None,
    }


def get_facilitator(s: "Session", r: Readiness, facilitator_id: int) -> ReadinessFacilitator:
    f = s.get(ReadinessFacilitator, facilitator_id)
    if f is None or f.readiness_id != r.id:
        raise NotFoundError("Facilitator not found")
    return f


def _assert_can_manage_facilitators(user: User, r: Readiness) -> None:
    if user.role not in (INSTITUTION_ADMIN, INSTITUTION_STAFF):
        raise ForbiddenError("Only institution users can manage readiness facilitators.")
    assert_can_write(user, r.institution_id)


def _clean_email(raw: Any) -> str | None:
    email = optional_string(raw, 320)
    if email and not is_valid_email(email):
        raise ValidationError("email is not a valid email address.")
    return email.lower() if email else None


def add_facilitator(s: "Session", r: Readiness, payload: dict, user: User) -> ReadinessFacilitator:
    """
    Name a facilitator on a readiness record and commit.

    With `user_id` the facilitator is copied from an active account of the same
    institution; without it, `first_name` and `last_name` are required.
    """
    _assert_can_manage_facilitators(user, r)

    user_id = parse_int(payload.get("user_id"), "user_id")
    if user_id is not None:
        account = s.get(User, user_id)
        if (
            account is None
            or not account.is_active
            or account.role not in FACILITATOR_ACCOUNT_ROLES
            or account.institution_id != r.institution_id
        ):
            raise ValidationError("User is not an eligible facilitator for this institution.")
        if any(f.user_id == user_id for f in r.facilitators):
            raise ConflictError("This user is already a facilitator on this readiness record.")
        first_name = account.first_name or account.email.split("@")[0]
        last_name = account.last_name or ""
        email = account.email
        how = "from account"
    else:
        first_name = sanitize_string(payload.get("first_name"), 128)
        last_name = sanitize_string(payload.get("last_name"), 128)
        if not first_name or not last_name:
            raise ValidationError("first_name and last_name are required when no user_id is given.")
        email = _clean_email(payload.get("email"))
        how = "manual"

    now = datetime.utcnow()

    def _apply(sess: "Session", actor: User) -> ReadinessFacilitator:
        f = ReadinessFacilitator(
            user_id=user_id,
            first_name=first_name,
            last_name=last_name,
            email=email,
            qualification=optional_string(payload.get("qualification"), 255),
            created_at=now,
            updated_at=now,
        )
        r.facilitators.append(f)
        r.updated_at = now
        return f

    return mutate_with_audit(
        s,
        actor=user,
        entity_type=ENTITY_FACILITATOR,
        change_type=CHANGE_CREATE,
        mutation=_apply,
        field_name="facilitator",
        new_value=f"{first_name} {last_name}".strip(),
        institution_id=r.institution_id,
        reason=f"Add facilitator ({how}) to readiness {r.id}",
    )


def update_facilitator(
    s: "Session", r: Readiness, f: ReadinessFacilitator, payload: dict, user: User
) -> dict[str, tuple]:
    _assert_can_manage_facilitators(user, r)

    changes: dict[str, tuple] = {}
    for field in FACILITATOR_EDITABLE:
        if field not in payload:
            continue
        if field in ("first_name", "last_name"):
            new = sanitize_string(payload.get(field), 128)
            if not new:
                raise ValidationError(f"{field} cannot be empty.")
        elif field == "email":
            new = _clean_email(payload.get(field))
        else:
            new = optional_string(payload.get(field), 255)
        old = getattr(f, field)
        if old != new:
            changes[field] = (old, new)
            setattr(f, field, new)

    if changes:
        f.updated_at = datetime.utcnow()
        audit_field_changes(
            s,
            actor=user,
            entity_type=ENTITY_FACILITATOR,
            entity_id=f.id,
            changes=changes,
            institution_id=r.institution_id,
        )
    return changes


def remove_facilitator(s: "Session", r: Readiness, f: ReadinessFacilitator, user: User) -> None:
    _assert_can_manage_facilitators(user, r)
    name = f"{f.first_name} {f.last_name}".strip()

    def _apply(sess: "Session", actor: User) -> None:
        r.facilitators.remove(f)
        r.updated_at = datetime.utcnow()

    mutate_with_audit(
        s,
        actor=user,
        entity_type=ENTITY_FACILITATOR,
        change_type=CHANGE_DELETE,
        mutation=_apply,
        entity_id=f.id,
        field_name="facilitator",
        old_value=name,
        institution_id=r.institution_id,
        reason=f"Remove facilitator from readiness {r.id}",
    )


def facilitators_query(s: "Session", user: User, *, search: str | None = None):
    """Facilitators on every readiness record `user` may list."""
    visible = readiness_query(s, user).with_only_columns(Readiness.id)
    stmt = select(ReadinessFacilitator).where(ReadinessFacilitator.readiness_id.in_(visible))
    if search:
        like = f"%{search}%"
        stmt = stmt.where(
            ReadinessFacilitator.first_name.ilike(like)
            | ReadinessFacilitator.last_name.ilike(like)
            | ReadinessFacilitator.email.ilike(like)
        )
    return stmt
