import io
import re
from datetime import datetime

import pytest
from sqlalchemy import select

from app.yiba.db import session_scope
from app.yiba.models import AuditLog
from app.yiba.modules.documents.service import MAX_UPLOAD_BYTES, build_storage_key
from app.yiba.modules.notifications.models import Notification
from app.yiba.storage import LocalStorage, StorageError, content_type_for


def _upload(c, entity="INSTITUTION", entity_id="", data=b"%PDF-1.4 accreditation letter", name="letter.pdf", doc_type="ACCREDITATION_LETTER"):
    return c.post(
        "/api/documents",
        data={
            "document_type": doc_type,
            "related_entity": entity,
            "related_entity_id": str(entity_id),
            "file": (io.BytesIO(data), name),
        },
        content_type="multipart/form-data",
    )


def test_storage_key_layout():
    key = build_storage_key("READINESS", 7, "practical resources", "Work Shop.pdf", now=datetime(2025, 3, 1, 8, 30, 0))
    assert re.fullmatch(r"readiness/7/practical_resources/20250301083000-[0-9a-f]{8}-Work_Shop\.pdf", key)


def test_local_storage_rejects_traversal(tmp_path):
    storage = LocalStorage(root=tmp_path)
    storage.put_bytes("a/b.txt", b"hello")
    assert storage.exists("a/b.txt")
    with storage.open("a/b.txt") as f:
        assert f.read() == b"hello"
    with pytest.raises(StorageError):
        storage.put_bytes("../../etc/passwd", b"x")


def test_content_types():
    assert content_type_for("scan.PDF") == "application/pdf"
    assert content_type_for("noext") == "application/octet-stream"


def test_upload_validation(inst_admin):
    assert _upload(inst_admin, data=b"").status_code == 400
    r = _upload(inst_admin, entity="SPACESHIP")
    assert r.status_code == 400
    r = _upload(inst_admin, entity="LEARNER")
    assert r.status_code == 400
    assert r.json["error"] == "related_entity_id is required."
    r = _upload(inst_admin, entity="READINESS", entity_id=999)
    assert r.status_code == 404
    r = _upload(inst_admin, data=b"x" * (MAX_UPLOAD_BYTES + 1))
    assert r.status_code == 400
    assert r.json["error"] == "File too large. Maximum size is 10 MB."


def test_upload_replace_versions_and_download(app, institution, inst_admin):
    r = _upload(inst_admin)
    assert r.status_code == 201
    doc = r.json
    assert doc["institution_id"] == institution
    assert doc["version"] == 1
    assert doc["status"] == "UPLOADED"
    assert doc["mime_type"] == "application/pdf"
    assert len(doc["sha256"]) == 64

    r = inst_admin.post(
        f"/api/documents/{doc['id']}/replace",
        data={"file": (io.BytesIO(b"%PDF-1.4 updated letter"), "letter-v2.pdf")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 201
    v2 = r.json
    assert v2["version"] == 2
    assert v2["document_type"] == "ACCREDITATION_LETTER"

    r = inst_admin.get(f"/api/documents/{doc['id']}/versions")
    assert [d["version"] for d in r.json["items"]] == [2, 1]

    r = inst_admin.get(f"/api/documents/{v2['id']}/download")
    assert r.status_code == 200
    assert r.data == b"%PDF-1.4 updated letter"

    with session_scope(app) as s:
        rows = s.scalars(select(AuditLog).where(AuditLog.entity_type == "DOCUMENT").order_by(AuditLog.id)).all()
        assert [(a.field_name, a.change_type) for a in rows] == [
            ("document_id", "CREATE"),
            ("version", "UPDATE"),
            ("download", "UPDATE"),
        ]
        assert rows[1].reason == f"Replaces document {doc['id']}"


def test_failed_upload_leaves_no_stored_object(app, institution, inst_admin, tmp_path, monkeypatch):
    from app.yiba.errors import AuditError
    from app.yiba.modules.documents import service

    def _broken_audit(*args, **kwargs):
        raise AuditError("Audit log creation failed - transaction aborted")

    monkeypatch.setattr(service, "create_audit_log", _broken_audit)
    r = _upload(inst_admin)
    assert r.status_code == 500

    uploads = tmp_path / "uploads"
    assert not uploads.exists() or not [p for p in uploads.rglob("*") if p.is_file()]
    with session_scope(app) as s:
        assert s.scalars(select(service.Document)).all() == []


def test_other_institution_cannot_read_or_replace(make_institution, make_user, login, inst_admin):
    doc_id = _upload(inst_admin).json["id"]
    other = make_institution()
    make_user("owner@other.example.org", "INSTITUTION_ADMIN", institution_id=other)
    other_admin = login("owner@other.example.org")

    assert other_admin.get(f"/api/documents/{doc_id}").status_code == 403
    assert other_admin.get(f"/api/documents/{doc_id}/download").status_code == 403
    r = other_admin.post(
        f"/api/documents/{doc_id}/replace",
        data={"file": (io.BytesIO(b"nope"), "x.pdf")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 403
    assert other_admin.get("/api/documents").json["count"] == 0


def test_flag_and_resolve_evidence(app, make_user, login, inst_admin):
    doc_id = _upload(inst_admin).json["id"]
    make_user("super@qcto.example.org", "QCTO_SUPER_ADMIN")
    qcto = login("super@qcto.example.org")

    assert qcto.post(f"/api/qcto/documents/{doc_id}/flags", json={}).status_code == 400
    r = qcto.post(f"/api/qcto/documents/{doc_id}/flags", json={"reason": "Letter is unsigned"})
    assert r.status_code == 201
    flag = r.json
    assert flag["status"] == "ACTIVE"

    r = inst_admin.get(f"/api/documents/{doc_id}")
    assert r.json["status"] == "FLAGGED"
    assert r.json["active_flags"] == 1

    r = qcto.get("/api/qcto/flags?status=active")
    assert [f["id"] for f in r.json["items"]] == [flag["id"]]

    r = qcto.post(f"/api/qcto/flags/{flag['id']}/resolve", json={"resolution_notes": "Signed copy uploaded"})
    assert r.status_code == 200
    assert r.json["status"] == "RESOLVED"
    assert qcto.post(f"/api/qcto/flags/{flag['id']}/resolve", json={}).status_code == 400
    assert inst_admin.get(f"/api/documents/{doc_id}").json["status"] == "UPLOADED"

    with session_scope(app) as s:
        n = s.scalars(select(Notification).where(Notification.notification_type == "DOCUMENT_FLAGGED")).one()
        assert n.priority == "HIGH"
        assert "Letter is unsigned" in n.message


def test_institution_cannot_flag(inst_admin):
    doc_id = _upload(inst_admin).json["id"]
    assert inst_admin.post(f"/api/qcto/documents/{doc_id}/flags", json={"reason": "x"}).status_code == 403
