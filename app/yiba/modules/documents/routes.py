from flask import Blueprint, current_app, request, send_file
from sqlalchemy import func, select

from app.yiba.constants import QCTO_REVIEW_ROLES
from app.yiba.db import db_session
from app.yiba.errors import NotFoundError, ValidationError
from app.yiba.modules.documents.models import Document, EvidenceFlag
from app.yiba.modules.documents.service import (
    assert_can_read_document,
    document_to_dict,
    document_versions,
    documents_query,
    flag_document,
    flag_to_dict,
    flags_query,
    get_document,
    record_download,
    replace_document,
    resolve_flag,
    upload_document,
)
from app.yiba.rbac import require_capability, require_roles
from app.yiba.storage import StorageError, storage_from_config
from app.yiba.utils import current_user, get_payload, page_response
from app.yiba.validation import parse_int, validate_pagination

bp = Blueprint("documents", __name__)


def _uploaded_file() -> tuple[str, bytes]:
    f = request.files.get("file")
    if not f or not f.filename:
        raise ValidationError("A file is required.")
    return f.filename, f.read()


# ---------- Upload / replace ----------
@bp.post("/documents")
@require_capability("EVIDENCE_UPLOAD")
def documents_upload():
    s = db_session()
    filename, data = _uploaded_file()
    storage = storage_from_config(current_app.config)
    doc = upload_document(s, storage, request.form.to_dict(), filename, data, current_user())
    return document_to_dict(doc), 201


@bp.post("/documents/<int:document_id>/replace")
@require_capability("EVIDENCE_REPLACE")
def documents_replace(document_id: int):
    s = db_session()
    doc = get_document(s, document_id)
    filename, data = _uploaded_file()
    storage = storage_from_config(current_app.config)
    new_doc = replace_document(s, storage, doc, filename, data, current_user())
    return document_to_dict(new_doc), 201


# ---------- Read ----------
@bp.get("/documents")
@require_capability("EVIDENCE_VIEW")
def documents_list():
    s = db_session()
    limit, offset = validate_pagination(request.args.get("limit"), request.args.get("offset"))
    stmt = documents_query(
        s,
        current_user(),
        related_entity=(request.args.get("related_entity") or "").strip() or None,
        related_entity_id=parse_int(request.args.get("related_entity_id"), "related_entity_id"),
        institution_id=parse_int(request.args.get("institution_id"), "institution_id"),
    )
    total = s.scalar(select(func.count()).select_from(stmt.subquery())) or 0
    rows = s.scalars(stmt.order_by(Document.uploaded_at.desc(), Document.id.desc()).limit(limit).offset(offset)).all()
    return page_response([document_to_dict(d) for d in rows], total, limit, offset)


@bp.get("/documents/<int:document_id>")
@require_capability("EVIDENCE_VIEW")
def documents_detail(document_id: int):
    s = db_session()
    doc = get_document(s, document_id)
    assert_can_read_document(s, current_user(), doc)
    return document_to_dict(doc)


@bp.get("/documents/<int:document_id>/versions")
@require_capability("EVIDENCE_VIEW")
def documents_versions(document_id: int):
    s = db_session()
    doc = get_document(s, document_id)
    assert_can_read_document(s, current_user(), doc)
    versions = document_versions(s, doc)
    return {"items": [document_to_dict(d) for d in versions], "count": len(versions)}


@bp.get("/documents/<int:document_id>/download")
@require_capability("EVIDENCE_VIEW")
def documents_download(document_id: int):
    s = db_session()
    u = current_user()
    doc = get_document(s, document_id)
    assert_can_read_document(s, u, doc)

    storage = storage_from_config(current_app.config)
    try:
        fobj = storage.open(doc.storage_key)
    except StorageError as e:
        current_app.logger.warning("Document %s missing from storage: %s", doc.id, e)
        raise NotFoundError("File not found in storage") from e

    record_download(s, doc, u)
    s.commit()
    return send_file(
        fobj,
        mimetype=doc.mime_type,
        as_attachment=True,
        download_name=doc.file_name,
    )


# ---------- Evidence flags ----------
@bp.post("/qcto/documents/<int:document_id>/flags")
@require_roles(*QCTO_REVIEW_ROLES)
def documents_flag(document_id: int):
    s = db_session()
    doc = get_document(s, document_id)
    flag = flag_document(s, doc, get_payload(), current_user())
    s.commit()
    return flag_to_dict(flag), 201


@bp.post("/qcto/flags/<int:flag_id>/resolve")
@require_roles(*QCTO_REVIEW_ROLES)
def flags_resolve(flag_id: int):
    s = db_session()
    flag = resolve_flag(s, flag_id, get_payload(), current_user())
    s.commit()
    return flag_to_dict(flag)


@bp.get("/qcto/flags")
@require_roles(*QCTO_REVIEW_ROLES)
def flags_list():
    s = db_session()
    limit, offset = validate_pagination(request.args.get("limit"), request.args.get("offset"))
    stmt = flags_query(
        s,
        current_user(),
        status=(request.args.get("status") or "").strip() or None,
        document_id=parse_int(request.args.get("document_id"), "document_id"),
    )
    total = s.scalar(select(func.count()).select_from(stmt.subquery())) or 0
    rows = s.scalars(
        stmt.order_by(EvidenceFlag.created_at.desc(), EvidenceFlag.id.desc()).limit(limit).offset(offset)
    ).all()
    return page_response([flag_to_dict(f) for f in rows], total, limit, offset)
