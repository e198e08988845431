from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import select

from app.yiba.audit import mutate_with_audit
from app.yiba.authz import can_access_institution, institution_scope
from app.yiba.constants import (
    CHANGE_CREATE,
    CHANGE_STATUS,
    ENTITY_DOCUMENT,
    ENTITY_ENROLMENT,
    ENTITY_INSTITUTION,
    ENTITY_LEARNER,
    ENTITY_QCTO_REQUEST,
    ENTITY_READINESS,
    PLATFORM_ADMIN,
    QCTO_ROLES,
)
from app.yiba.errors import ForbiddenError, NotFoundError, ValidationError
from app.yiba.models import User
from app.yiba.modules.institutions.models import Institution
from app.yiba.modules.notifications import service as notifications
from app.yiba.modules.qcto_requests.models import QCTORequest, QCTORequestResource
from app.yiba.qcto_access import province_visible, visible_institution_ids
from app.yiba.validation import optional_string, parse_datetime, parse_int, sanitize_string

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

REQUEST_STATUSES = ("PENDING", "APPROVED", "REJECTED")
RESPONSE_STATUSES = ("APPROVED", "REJECTED")
RESOURCE_TYPES = (ENTITY_READINESS, ENTITY_LEARNER, ENTITY_ENROLMENT, ENTITY_DOCUMENT, ENTITY_INSTITUTION)


def request_to_dict(req: QCTORequest) -> dict[str, object]:
    return {
        "id": req.id,
        "institution_id": req.institution_id,
        "institution_name": req.institution.display_name if req.institution else None,
        "title": req.title,
        "description": req.description,
        "request_type": req.request_type,
        "status": req.status,
        "requested_by": req.requested_by,
        "requested_at": req.requested_at.isoformat() if req.requested_at else None,
        "response_notes": req.response_notes,
        "reviewed_by": req.reviewed_by,
        "reviewed_at": req.reviewed_at.isoformat() if req.reviewed_at else None,
        "expires_at": req.expires_at.isoformat() if req.expires_at else None,
        "resources": [
            {
                "id": r.id,
                "resource_type": r.resource_type,
                "resource_id_value": r.resource_id_value,
                "notes": r.notes,
            }
            for r in req.resources
        ],
    }


def get_request(s: "Session", request_id: int) -> QCTORequest:
    req = s.get(QCTORequest, request_id)
    if req is None or req.deleted_at is not None:
        raise NotFoundError("QCTO request not found")
    return req


def _future_expiry(value: object) -> datetime | None:
    expires_at = parse_datetime(value, "expires_at")
    if expires_at is not None and expires_at <= datetime.utcnow():
        raise ValidationError("expires_at must be in the future.")
    return expires_at


def _parse_resources(items: object) -> list[QCTORequestResource]:
    if items in (None, ""):
        return []
    if not isinstance(items, list):
        raise ValidationError("resources must be a list.")
    out: list[QCTORequestResource] = []
    for item in items:
        if not isinstance(item, dict):
            raise ValidationError("Each resource must be an object.")
        rtype = sanitize_string(item.get("resource_type")).upper()
        if rtype not in RESOURCE_TYPES:
            raise ValidationError(
                f"Invalid resource_type: {rtype or None} (must be one of: {', '.join(RESOURCE_TYPES)})"
            )
        value = sanitize_string(item.get("resource_id_value") or item.get("resource_id"), 64)
        if not value:
            raise ValidationError("Each resource must have a resource_id_value")
        out.append(
            QCTORequestResource(resource_type=rtype, resource_id_value=value, notes=optional_string(item.get("notes")))
        )
    return out


def create_request(s: "Session", payload: dict, user: User) -> QCTORequest:
    institution_id = parse_int(payload.get("institution_id"), "institution_id")
    if institution_id is None:
        raise ValidationError("Missing required field: institution_id")
    title = sanitize_string(payload.get("title"), 255)
    if not title:
        raise ValidationError("Missing required field: title")

    inst = s.get(Institution, institution_id)
    if inst is None or inst.deleted_at is not None:
        raise NotFoundError(f"Institution not found: {institution_id}")
    if not province_visible(user, inst.province):
        raise ForbiddenError("Institution is outside your assigned provinces.")

    expires_at = _future_expiry(payload.get("expires_at"))
    resources = _parse_resources(payload.get("resources"))

    def _create(sess: "Session", actor: User) -> QCTORequest:
        req = QCTORequest(
            institution_id=institution_id,
            title=title,
            description=optional_string(payload.get("description")),
            request_type=optional_string(payload.get("request_type"), 64),
            status="PENDING",
            requested_by=actor.id,
            requested_at=datetime.utcnow(),
            expires_at=expires_at,
            resources=resources,
        )
        sess.add(req)
        return req

    req = mutate_with_audit(
        s,
        actor=user,
        entity_type=ENTITY_QCTO_REQUEST,
        change_type=CHANGE_CREATE,
        mutation=_create,
        field_name="request_id",
        new_value=title,
        institution_id=institution_id,
        reason=f"Create QCTO request: {title}",
    )
    logger.info("QCTO request %s created for institution %s by user_id=%s", req.id, institution_id, user.id)
    return req


def requests_query(
    s: "Session",
    user: User,
    *,
    status: str | None = None,
    institution_id: int | None = None,
):
    stmt = select(QCTORequest).where(QCTORequest.deleted_at.is_(None))
    if user.role in QCTO_ROLES:
        ids = visible_institution_ids(s, user)
        if ids is not None:
            stmt = stmt.where(QCTORequest.institution_id.in_(ids))
        if institution_id is not None:
            stmt = stmt.where(QCTORequest.institution_id == institution_id)
    else:
        scope = institution_scope(user, institution_id)
        if scope is not None:
            stmt = stmt.where(QCTORequest.institution_id == scope)
    if status:
        stmt = stmt.where(QCTORequest.status == status.upper())
    return stmt


def assert_can_read_request(s: "Session", user: User, req: QCTORequest) -> None:
    if user.role in QCTO_ROLES:
        if not province_visible(user, req.institution.province if req.institution else None):
            raise ForbiddenError("Access denied: this request belongs to an institution outside your provinces.")
        return
    can_access_institution(user, req.institution_id).raise_if_denied()


def respond_to_request(s: "Session", request_id: int, payload: dict, user: User) -> QCTORequest:
    status = sanitize_string(payload.get("status")).upper()
    if status not in RESPONSE_STATUSES:
        raise ValidationError(f"Invalid status: {status or None} (must be one of: {', '.join(RESPONSE_STATUSES)})")

    req = get_request(s, request_id)
    if user.role != PLATFORM_ADMIN:
        can_access_institution(user, req.institution_id).raise_if_denied()
    if req.status != "PENDING":
        raise ValidationError(f"Cannot respond to request: status is {req.status} (only PENDING requests can be answered)")

    notes = optional_string(payload.get("response_notes"))
    expires_at = _future_expiry(payload.get("expires_at")) if payload.get("expires_at") else req.expires_at

    def _apply(sess: "Session", actor: User) -> QCTORequest:
        req.status = status
        req.response_notes = notes
        req.reviewed_by = actor.id
        req.reviewed_at = datetime.utcnow()
        req.expires_at = expires_at
        return req

    mutate_with_audit(
        s,
        actor=user,
        entity_type=ENTITY_QCTO_REQUEST,
        change_type=CHANGE_STATUS,
        mutation=_apply,
        field_name="status",
        old_value="PENDING",
        new_value=status,
        institution_id=req.institution_id,
        reason=notes,
    )

    if req.requested_by is not None:
        name = req.institution.display_name if req.institution else "The institution"
        notifications.notify(s, req.requested_by, notifications.request_responded(req.id, status, name))
        s.commit()
    return req
