from __future__ import annotations

import hashlib
import logging
import secrets
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import func, select
from werkzeug.utils import secure_filename

from app.yiba.audit import create_audit_log
from app.yiba.authz import (
    assert_can_read,
    assert_can_write,
    institution_id_for_entity,
    institution_scope,
    target_institution_id,
)
from app.yiba.constants import (
    CHANGE_CREATE,
    CHANGE_STATUS,
    CHANGE_UPDATE,
    ENTITY_DOCUMENT,
    ENTITY_ENROLMENT,
    ENTITY_EVIDENCE_FLAG,
    ENTITY_INSTITUTION,
    ENTITY_LEARNER,
    ENTITY_READINESS,
    INSTITUTION_ADMIN,
    INSTITUTION_STAFF,
    QCTO_ROLES,
)
from app.yiba.errors import NotFoundError, ValidationError
from app.yiba.models import User
from app.yiba.modules.documents.models import Document, EvidenceFlag
from app.yiba.modules.notifications import service as notifications
from app.yiba.storage import Storage, StorageError, content_type_for
from app.yiba.validation import optional_string, parse_int, sanitize_string

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


RELATED_ENTITIES = (ENTITY_INSTITUTION, ENTITY_LEARNER, ENTITY_ENROLMENT, ENTITY_READINESS)
DOCUMENT_STATUSES = ("UPLOADED", "FLAGGED", "ACCEPTED", "REJECTED")
MAX_UPLOAD_BYTES = 10 * 1024 * 1024


def document_to_dict(d: Document) -> dict[str, object]:
    return {
        "id": d.id,
        "institution_id": d.institution_id,
        "related_entity": d.related_entity,
        "related_entity_id": d.related_entity_id,
        "document_type": d.document_type,
        "file_name": d.file_name,
        "mime_type": d.mime_type,
        "file_size_bytes": d.file_size_bytes,
        "sha256": d.sha256,
        "version": d.version,
        "status": d.status,
        "uploaded_by": d.uploaded_by,
        "uploaded_at": d.uploaded_at.isoformat() if d.uploaded_at else None,
        "active_flags": sum(1 for f in d.flags if f.status == "ACTIVE"),
    }


def flag_to_dict(f: EvidenceFlag) -> dict[str, object]:
    return {
        "id": f.id,
        "document_id": f.document_id,
        "reason": f.reason,
        "status": f.status,
        "flagged_by": f.flagged_by,
        "created_at": f.created_at.isoformat() if f.created_at else None,
        "resolved_by": f.resolved_by,
        "resolved_at": f.resolved_at.isoformat() if f.resolved_at else None,
        "resolution_notes": f.resolution_notes,
    }


def build_storage_key(
    related_entity: str, related_entity_id: int, document_type: str, filename: str, now: datetime | None = None
) -> str:
    now = now or datetime.utcnow()
    safe_filename = secure_filename(filename) or "document.bin"
    safe_type = secure_filename(document_type) or "document"
    return (
        f"{related_entity.lower()}/{related_entity_id}/{safe_type}/"
        f"{now.strftime('%Y%m%d%H%M%S')}-{secrets.token_hex(4)}-{safe_filename}"
    )


def file_digest_and_bytes(file_bytes: bytes) -> tuple[str, int]:
    """Return (sha256 hex digest, size in bytes)."""
    h = hashlib.sha256()
    h.update(file_bytes)
    return h.hexdigest(), len(file_bytes)


def _check_file(filename: str, file_bytes: bytes) -> None:
    if not filename:
        raise ValidationError("A file is required.")
    if not file_bytes:
        raise ValidationError("Uploaded file is empty.")
    if len(file_bytes) > MAX_UPLOAD_BYTES:
        raise ValidationError("File too large. Maximum size is 10 MB.")


def resolve_related(s: "Session", user: User, payload: dict) -> tuple[str, int, int]:
    """Validate the related entity of an upload. Returns (entity, entity_id, institution_id)."""
    related = sanitize_string(payload.get("related_entity")).upper()
    if related not in RELATED_ENTITIES:
        raise ValidationError(f"Invalid related_entity. Must be one of: {', '.join(RELATED_ENTITIES)}")

    related_id = parse_int(payload.get("related_entity_id"), "related_entity_id")
    if related == ENTITY_INSTITUTION:
        related_id = target_institution_id(user, related_id)
    elif related_id is None:
        raise ValidationError("related_entity_id is required.")
    institution_id = institution_id_for_entity(s, related, related_id)
    if institution_id is None:
        raise NotFoundError(f"{related.title()} {related_id} not found")
    assert_can_write(user, institution_id)
    return related, related_id, institution_id


@contextmanager
def discard_on_error(s: "Session", storage: Storage, storage_key: str) -> Generator[None, None, None]:
    """Roll back and remove the stored object when the database work recording it fails."""
    try:
        yield
    except Exception:
        s.rollback()
        try:
            storage.delete(storage_key)
        except StorageError:
            logger.warning("Could not remove orphaned object %s", storage_key)
        raise


def _store(
    s: "Session",
    storage: Storage,
    *,
    user: User,
    institution_id: int,
    related_entity: str,
    related_entity_id: int,
    document_type: str,
    filename: str,
    file_bytes: bytes,
    version: int,
) -> Document:
    sha256, size_bytes = file_digest_and_bytes(file_bytes)
    storage_key = build_storage_key(related_entity, related_entity_id, document_type, filename)
    content_type = content_type_for(filename)
    storage.put_bytes(storage_key, file_bytes, content_type=content_type)

    with discard_on_error(s, storage, storage_key):
        doc = Document(
            institution_id=institution_id,
            related_entity=related_entity,
            related_entity_id=related_entity_id,
            document_type=document_type,
            file_name=secure_filename(filename) or "document.bin",
            mime_type=content_type,
            file_size_bytes=size_bytes,
            sha256=sha256,
            storage_key=storage_key,
            version=version,
            status="UPLOADED",
            uploaded_by=user.id,
        )
        s.add(doc)
        s.flush()
    return doc


def upload_document(
    s: "Session", storage: Storage, payload: dict, filename: str, file_bytes: bytes, user: User
) -> Document:
    document_type = sanitize_string(payload.get("document_type"), 64).upper()
    if not document_type:
        raise ValidationError("document_type is required.")
    related, related_id, institution_id = resolve_related(s, user, payload)
    _check_file(filename, file_bytes)

    doc = _store(
        s,
        storage,
        user=user,
        institution_id=institution_id,
        related_entity=related,
        related_entity_id=related_id,
        document_type=document_type,
        filename=filename,
        file_bytes=file_bytes,
        version=1,
    )
    with discard_on_error(s, storage, doc.storage_key):
        create_audit_log(
            s,
            actor=user,
            entity_type=ENTITY_DOCUMENT,
            entity_id=doc.id,
            field_name="document_id",
            new_value=doc.file_name,
            change_type=CHANGE_CREATE,
            institution_id=institution_id,
        )
        _refresh_readiness(s, doc)
        s.commit()
    return doc


def replace_document(
    s: "Session", storage: Storage, doc: Document, filename: str, file_bytes: bytes, user: User
) -> Document:
    """Add the next version of `doc`; earlier versions stay readable."""
    assert_can_write(user, doc.institution_id)
    _check_file(filename, file_bytes)

    current = (
        s.scalar(
            select(func.max(Document.version)).where(
                Document.related_entity == doc.related_entity,
                Document.related_entity_id == doc.related_entity_id,
                Document.document_type == doc.document_type,
            )
        )
        or 0
    )
    new_doc = _store(
        s,
        storage,
        user=user,
        institution_id=doc.institution_id,
        related_entity=doc.related_entity,
        related_entity_id=doc.related_entity_id,
        document_type=doc.document_type,
        filename=filename,
        file_bytes=file_bytes,
        version=current + 1,
    )
    with discard_on_error(s, storage, new_doc.storage_key):
        create_audit_log(
            s,
            actor=user,
            entity_type=ENTITY_DOCUMENT,
            entity_id=new_doc.id,
            field_name="version",
            old_value=current,
            new_value=new_doc.version,
            change_type=CHANGE_UPDATE,
            reason=f"Replaces document {doc.id}",
            institution_id=doc.institution_id,
        )
        s.commit()
    return new_doc


def _refresh_readiness(s: "Session", doc: Document) -> None:
    if doc.related_entity != ENTITY_READINESS:
        return
    from app.yiba.modules.readiness.models import Readiness
    from app.yiba.modules.readiness.service import refresh_completion

    r = s.get(Readiness, doc.related_entity_id)
    if r is not None:
        refresh_completion(s, r)


def get_document(s: "Session", document_id: int) -> Document:
    doc = s.get(Document, document_id)
    if doc is None or doc.deleted_at is not None:
        raise NotFoundError("Document not found")
    return doc


def assert_can_read_document(s: "Session", user: User, doc: Document) -> None:
    assert_can_read(s, user, ENTITY_DOCUMENT, doc.id, doc.institution_id)


def document_versions(s: "Session", doc: Document) -> list[Document]:
    stmt = (
        select(Document)
        .where(
            Document.related_entity == doc.related_entity,
            Document.related_entity_id == doc.related_entity_id,
            Document.document_type == doc.document_type,
            Document.deleted_at.is_(None),
        )
        .order_by(Document.version.desc(), Document.id.desc())
    )
    return list(s.scalars(stmt))


def documents_query(
    s: "Session",
    user: User,
    *,
    related_entity: str | None = None,
    related_entity_id: int | None = None,
    institution_id: int | None = None,
):
    stmt = select(Document).where(Document.deleted_at.is_(None))
    if user.role in QCTO_ROLES:
        from app.yiba.qcto_access import scope_query_for_qcto

        stmt = scope_query_for_qcto(s, user, stmt, Document, ENTITY_DOCUMENT)
        if institution_id is not None:
            stmt = stmt.where(Document.institution_id == institution_id)
    else:
        scope = institution_scope(user, institution_id)
        if scope is not None:
            stmt = stmt.where(Document.institution_id == scope)
    if related_entity:
        stmt = stmt.where(Document.related_entity == related_entity.upper())
    if related_entity_id is not None:
        stmt = stmt.where(Document.related_entity_id == related_entity_id)
    return stmt


def record_download(s: "Session", doc: Document, user: User) -> None:
    create_audit_log(
        s,
        actor=user,
        entity_type=ENTITY_DOCUMENT,
        entity_id=doc.id,
        field_name="download",
        new_value=doc.file_name,
        change_type=CHANGE_UPDATE,
        institution_id=doc.institution_id,
    )


# ---------- Evidence flags ----------


def flag_document(s: "Session", doc: Document, payload: dict, user: User) -> EvidenceFlag:
    assert_can_read_document(s, user, doc)
    reason = sanitize_string(payload.get("reason"))
    if not reason:
        raise ValidationError("reason is required.")

    flag = EvidenceFlag(document_id=doc.id, reason=reason, status="ACTIVE", flagged_by=user.id)
    s.add(flag)
    old_status = doc.status
    doc.status = "FLAGGED"
    s.flush()

    create_audit_log(
        s,
        actor=user,
        entity_type=ENTITY_EVIDENCE_FLAG,
        entity_id=flag.id,
        field_name="evidence_flag",
        new_value=reason,
        change_type=CHANGE_CREATE,
        institution_id=doc.institution_id,
    )
    if old_status != doc.status:
        create_audit_log(
            s,
            actor=user,
            entity_type=ENTITY_DOCUMENT,
            entity_id=doc.id,
            field_name="status",
            old_value=old_status,
            new_value=doc.status,
            change_type=CHANGE_STATUS,
            reason=reason,
            institution_id=doc.institution_id,
        )

    recipients = notifications.institution_user_ids(s, doc.institution_id, (INSTITUTION_ADMIN, INSTITUTION_STAFF))
    notifications.notify_users(s, recipients, notifications.document_flagged(doc.id, doc.file_name, reason))
    return flag


def resolve_flag(s: "Session", flag_id: int, payload: dict, user: User) -> EvidenceFlag:
    flag = s.get(EvidenceFlag, flag_id)
    if flag is None:
        raise NotFoundError("Flag not found")
    doc = flag.document
    assert_can_read_document(s, user, doc)
    if flag.status == "RESOLVED":
        raise ValidationError("Flag is already resolved.")

    flag.status = "RESOLVED"
    flag.resolved_by = user.id
    flag.resolved_at = datetime.utcnow()
    flag.resolution_notes = optional_string(payload.get("resolution_notes") or payload.get("notes"))
    create_audit_log(
        s,
        actor=user,
        entity_type=ENTITY_EVIDENCE_FLAG,
        entity_id=flag.id,
        field_name="status",
        old_value="ACTIVE",
        new_value="RESOLVED",
        change_type=CHANGE_STATUS,
        reason=flag.resolution_notes,
        institution_id=doc.institution_id,
    )

    if doc.status == "FLAGGED" and not any(f.status == "ACTIVE" for f in doc.flags if f.id != flag.id):
        doc.status = "UPLOADED"
    return flag


def flags_query(s: "Session", user: User, *, status: str | None = None, document_id: int | None = None):
    stmt = select(EvidenceFlag).join(Document, Document.id == EvidenceFlag.document_id)
    if user.role in QCTO_ROLES:
        from app.yiba.qcto_access import visible_institution_ids

        ids = visible_institution_ids(s, user)
        if ids is not None:
            stmt = stmt.where(Document.institution_id.in_(ids))
    else:
        scope = institution_scope(user, None)
        if scope is not None:
            stmt = stmt.where(Document.institution_id == scope)
    if status:
        stmt = stmt.where(EvidenceFlag.status == status.upper())
    if document_id is not None:
        stmt = stmt.where(EvidenceFlag.document_id == document_id)
    return stmt
