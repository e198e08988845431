from datetime import datetime, timedelta

from sqlalchemy import select

from app.yiba.db import session_scope
from app.yiba.models import AuditLog
from app.yiba.modules.notifications.models import Notification
from app.yiba.modules.qcto_requests.models import QCTORequest


def _new_learner(c):
    r = c.post(
        "/api/learners",
        json={
            "national_id": "9001015800087",
            "first_name": "Sipho",
            "last_name": "Ndlovu",
            "birth_date": "1990-01-01",
            "gender_code": "F",
            "nationality_code": "SA",
            "popia_consent": True,
        },
    )
    assert r.status_code == 201, r.json
    return r.json["id"]


def _request_payload(institution_id, learner_id, **overrides):
    payload = {
        "institution_id": institution_id,
        "title": "Learner files for site visit",
        "request_type": "LEARNER_RECORDS",
        "resources": [{"resource_type": "LEARNER", "resource_id_value": learner_id}],
    }
    payload.update(overrides)
    return payload


def test_create_request_validation(institution, make_user, login):
    make_user("reviewer@qcto.example.org", "QCTO_REVIEWER", provinces=["Gauteng"])
    reviewer = login("reviewer@qcto.example.org")

    r = reviewer.post("/api/qcto/requests", json={"title": "x"})
    assert r.status_code == 400
    assert r.json["error"] == "Missing required field: institution_id"

    r = reviewer.post("/api/qcto/requests", json={"institution_id": 999, "title": "x"})
    assert r.status_code == 404

    r = reviewer.post(
        "/api/qcto/requests",
        json={"institution_id": institution, "title": "x", "expires_at": "2000-01-01T00:00:00Z"},
    )
    assert r.status_code == 400

    r = reviewer.post(
        "/api/qcto/requests",
        json={"institution_id": institution, "title": "x", "resources": [{"resource_type": "PAYSLIP", "resource_id": 1}]},
    )
    assert r.status_code == 400


def test_requests_are_limited_by_role_and_province(institution, make_user, login):
    make_user("viewer@qcto.example.org", "QCTO_VIEWER", provinces=["Gauteng"])
    make_user("cape@qcto.example.org", "QCTO_REVIEWER", provinces=["Western Cape"])

    r = login("viewer@qcto.example.org").post("/api/qcto/requests", json={"institution_id": institution, "title": "x"})
    assert r.status_code == 403

    cape = login("cape@qcto.example.org")
    r = cape.post("/api/qcto/requests", json={"institution_id": institution, "title": "x"})
    assert r.status_code == 403
    assert r.json["error"] == "Institution is outside your assigned provinces."


def test_approved_request_shares_resources_until_expiry(app, institution, make_user, login, inst_admin):
    reviewer_id = make_user("reviewer@qcto.example.org", "QCTO_REVIEWER", provinces=["Gauteng"])
    reviewer = login("reviewer@qcto.example.org")
    learner_id = _new_learner(inst_admin)

    r = reviewer.post("/api/qcto/requests", json=_request_payload(institution, learner_id))
    assert r.status_code == 201
    req = r.json
    assert req["status"] == "PENDING"
    assert req["resources"][0]["resource_id_value"] == str(learner_id)

    assert reviewer.get(f"/api/learners/{learner_id}").status_code == 403

    r = inst_admin.get("/api/institutions/requests")
    assert r.json["count"] == 1
    assert r.json["items"][0]["institution_name"] == "Skills Academy 1"

    assert inst_admin.patch(f"/api/institutions/requests/{req['id']}", json={"status": "MAYBE"}).status_code == 400
    r = inst_admin.patch(
        f"/api/institutions/requests/{req['id']}",
        json={"status": "APPROVED", "response_notes": "Shared for the visit."},
    )
    assert r.status_code == 200
    assert r.json["status"] == "APPROVED"
    assert r.json["reviewed_at"]

    assert reviewer.get(f"/api/learners/{learner_id}").status_code == 200
    assert inst_admin.patch(f"/api/institutions/requests/{req['id']}", json={"status": "REJECTED"}).status_code == 400

    with session_scope(app) as s:
        n = s.scalars(select(Notification).where(Notification.notification_type == "REQUEST_APPROVED")).one()
        assert n.user_id == reviewer_id
        changes = [
            a.change_type
            for a in s.scalars(
                select(AuditLog).where(AuditLog.entity_type == "QCTO_REQUEST").order_by(AuditLog.id)
            )
        ]
        assert changes == ["CREATE", "STATUS_CHANGE"]
        s.get(QCTORequest, req["id"]).expires_at = datetime.utcnow() - timedelta(minutes=1)

    assert reviewer.get(f"/api/learners/{learner_id}").status_code == 403


def test_staff_can_view_but_not_answer_requests(institution, make_user, login, inst_admin):
    make_user("reviewer@qcto.example.org", "QCTO_REVIEWER", provinces=["Gauteng"])
    reviewer = login("reviewer@qcto.example.org")
    req_id = reviewer.post("/api/qcto/requests", json={"institution_id": institution, "title": "Policies"}).json["id"]

    make_user("staff@academy.example.org", "INSTITUTION_STAFF", institution_id=institution)
    staff = login("staff@academy.example.org")
    assert staff.get(f"/api/institutions/requests/{req_id}").status_code == 200
    assert staff.patch(f"/api/institutions/requests/{req_id}", json={"status": "APPROVED"}).status_code == 403


def test_other_institution_cannot_see_request(institution, make_institution, make_user, login):
    make_user("reviewer@qcto.example.org", "QCTO_REVIEWER", provinces=["Gauteng"])
    reviewer = login("reviewer@qcto.example.org")
    req_id = reviewer.post("/api/qcto/requests", json={"institution_id": institution, "title": "Policies"}).json["id"]

    other = make_institution()
    make_user("owner@other.example.org", "INSTITUTION_ADMIN", institution_id=other)
    other_admin = login("owner@other.example.org")
    assert other_admin.get(f"/api/institutions/requests/{req_id}").status_code == 403
    assert other_admin.patch(f"/api/institutions/requests/{req_id}", json={"status": "APPROVED"}).status_code == 403
    assert other_admin.get("/api/institutions/requests").json["count"] == 0
