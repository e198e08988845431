import json
from datetime import date

from sqlalchemy import select

from app.yiba.db import session_scope
from app.yiba.models import AuditLog
from app.yiba.modules.exports.service import export_filename, to_csv


def _learner(c, national_id="9001015800087", first_name="Sipho"):
    r = c.post(
        "/api/learners",
        json={
            "national_id": national_id,
            "first_name": first_name,
            "last_name": "Ndlovu",
            "birth_date": "1990-01-01",
            "gender_code": "M",
            "nationality_code": "SA",
            "popia_consent": True,
        },
    )
    assert r.status_code == 201, r.json
    return r.json["id"]


def test_to_csv_quotes_every_cell():
    out = to_csv(("a", "b"), [{"a": 'say "hi"', "b": True}, {"a": None, "b": ["x"]}])
    assert out == '"a","b"\n"say ""hi""","true"\n"","[""x""]"\n'


def test_export_filename():
    assert export_filename("learners", "csv", today=date(2025, 1, 2)) == "learners-2025-01-02.csv"


def test_learners_csv_export_is_scoped_and_audited(app, make_institution, make_user, login, inst_admin):
    _learner(inst_admin)
    other = make_institution()
    make_user("owner@other.example.org", "INSTITUTION_ADMIN", institution_id=other)
    _learner(login("owner@other.example.org"), national_id="9202025800081", first_name="Zanele")

    r = inst_admin.get("/api/export/learners")
    assert r.status_code == 200
    assert r.mimetype == "text/csv"
    assert r.headers["Content-Disposition"].startswith('attachment; filename="learners-')
    lines = r.get_data(as_text=True).splitlines()
    assert lines[0].startswith('"id","institution_id","national_id"')
    assert len(lines) == 2
    assert '"9001015800087"' in lines[1]
    assert '"true"' in lines[1]

    with session_scope(app) as s:
        row = s.scalars(select(AuditLog).where(AuditLog.entity_type == "EXPORT")).one()
        assert row.entity_id == "learners"
        assert row.change_type == "CREATE"
        assert json.loads(row.new_value)["rows"] == 1


def test_json_export(inst_admin):
    _learner(inst_admin)
    r = inst_admin.get("/api/export/learners?format=json")
    assert r.status_code == 200
    body = json.loads(r.get_data(as_text=True))
    assert body["count"] == 1
    assert body["data"][0]["first_name"] == "Sipho"
    assert "popia_consent" in body["data"][0]
    assert "national_id" in body["data"][0]


def test_export_errors(inst_admin):
    assert inst_admin.get("/api/export/learners?format=xml").status_code == 400
    assert inst_admin.get("/api/export/payslips").status_code == 404
    assert inst_admin.get("/api/export/audit-logs").status_code == 403


def test_staff_cannot_export_reports(institution, make_user, login):
    make_user("staff@academy.example.org", "INSTITUTION_STAFF", institution_id=institution)
    staff = login("staff@academy.example.org")
    assert staff.get("/api/export/learners").status_code == 403


def test_audit_log_export_for_platform_admin(admin, institution):
    assert admin.get("/api/export/learners").status_code == 200
    r = admin.get("/api/export/audit-logs?format=json&entity_type=export")
    assert r.status_code == 200
    body = json.loads(r.get_data(as_text=True))
    assert body["count"] == 1
    assert body["data"][0]["entity_id"] == "learners"
    assert admin.get("/api/export/audit-logs?start_date=yesterday").status_code == 400


def test_qcto_auditor_exports_submissions_in_province(make_user, login, inst_admin):
    learner_id = _learner(inst_admin)
    r = inst_admin.post(
        "/api/institutions/submissions",
        json={"title": "Pack", "resources": [{"resource_type": "LEARNER", "resource_id": learner_id}]},
    )
    inst_admin.patch(f"/api/institutions/submissions/{r.json['id']}", json={"status": "SUBMITTED"})

    make_user("auditor@qcto.example.org", "QCTO_AUDITOR", provinces=["Gauteng"])
    make_user("cape-auditor@qcto.example.org", "QCTO_AUDITOR", provinces=["Western Cape"])

    body = login("auditor@qcto.example.org").get("/api/export/submissions?format=json").get_json()
    assert body["count"] == 1
    assert body["data"][0]["resource_count"] == 1
    assert login("cape-auditor@qcto.example.org").get("/api/export/submissions?format=json").get_json()["count"] == 0
