from sqlalchemy import select

from app.yiba.db import session_scope
from app.yiba.models import AuditLog
from app.yiba.modules.notifications.models import Notification


def _readiness(c):
    r = c.post("/api/readiness", json={"qualification_title": "Electrician", "delivery_mode": "FACE_TO_FACE"})
    assert r.status_code == 201, r.json
    return r.json["id"]


def test_assign_requires_eligible_reviewer(institution, make_user, admin, inst_admin):
    readiness_id = _readiness(inst_admin)
    cape_id = make_user("cape@qcto.example.org", "QCTO_REVIEWER", provinces=["Western Cape"])
    owner_id = make_user("owner2@academy.example.org", "INSTITUTION_ADMIN", institution_id=institution)

    for assignee in (cape_id, owner_id):
        r = admin.post(
            "/api/qcto/reviews/assign",
            json={"review_type": "READINESS", "review_id": readiness_id, "assigned_to": assignee},
        )
        assert r.status_code == 400

    r = admin.post("/api/qcto/reviews/assign", json={"review_type": "FORM9", "review_id": readiness_id})
    assert r.status_code == 400
    r = admin.post("/api/qcto/reviews/assign", json={"review_type": "READINESS", "review_id": 999, "assigned_to": cape_id})
    assert r.status_code == 404


def test_assign_reassign_and_unassign(app, make_user, login, admin, inst_admin):
    readiness_id = _readiness(inst_admin)
    reviewer_id = make_user("reviewer@qcto.example.org", "QCTO_REVIEWER", provinces=["Gauteng"])
    target = {"review_type": "readiness", "review_id": readiness_id, "assigned_to": reviewer_id}

    r = admin.post("/api/qcto/reviews/assign", json={**target, "notes": "Site visit next week"})
    assert r.status_code == 201
    assert r.json["status"] == "ASSIGNED"
    assert r.json["reviewer"]["email"] == "reviewer@qcto.example.org"

    assert admin.post("/api/qcto/reviews/assign", json=target).status_code == 201
    r = admin.get(f"/api/qcto/reviews/READINESS/{readiness_id}/assignments")
    assert r.json["count"] == 1
    assert r.json["items"][0]["notes"] == "Site visit next week"

    reviewer = login("reviewer@qcto.example.org")
    r = reviewer.get("/api/qcto/reviews/mine")
    assert [a["review_id"] for a in r.json["items"]] == [readiness_id]
    assert reviewer.post("/api/qcto/reviews/assign", json=target).status_code == 403

    r = admin.post("/api/qcto/reviews/unassign", json=target)
    assert r.json == {"ok": True, "cancelled": 1}
    assert admin.post("/api/qcto/reviews/unassign", json=target).status_code == 404
    assert reviewer.get("/api/qcto/reviews/mine").json["count"] == 0

    with session_scope(app) as s:
        changes = [
            a.change_type
            for a in s.scalars(
                select(AuditLog).where(AuditLog.field_name == "review_assignment").order_by(AuditLog.id)
            )
        ]
        notified = s.scalars(select(Notification).where(Notification.notification_type == "REVIEW_ASSIGNED")).all()
    assert changes == ["CREATE", "UPDATE", "DELETE"]
    assert {n.user_id for n in notified} == {reviewer_id}


def test_auto_assign_picks_reviewers_and_auditors_in_province(make_user, admin, inst_admin):
    readiness_id = _readiness(inst_admin)
    reviewer_id = make_user("reviewer@qcto.example.org", "QCTO_REVIEWER", provinces=["Gauteng"])
    auditor_id = make_user("auditor@qcto.example.org", "QCTO_AUDITOR", provinces=["Gauteng"])
    make_user("qadmin@qcto.example.org", "QCTO_ADMIN", provinces=["Gauteng"])
    make_user("cape@qcto.example.org", "QCTO_REVIEWER", provinces=["Western Cape"])

    r = admin.get("/api/qcto/reviews/eligible?province=Gauteng")
    assert r.json["count"] == 3

    r = admin.post("/api/qcto/reviews/assign", json={"review_type": "READINESS", "review_id": readiness_id, "auto": True})
    assert r.status_code == 201
    got = {(a["assigned_to"], a["assignment_role"]) for a in r.json["items"]}
    assert got == {(reviewer_id, "REVIEWER"), (auditor_id, "AUDITOR")}


def test_eligible_requires_province(admin):
    assert admin.get("/api/qcto/reviews/eligible").status_code == 400
