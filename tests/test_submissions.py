from sqlalchemy import select

from app.yiba.db import session_scope
from app.yiba.models import AuditLog
from app.yiba.modules.notifications.models import Notification


def _new_learner(c, national_id="9001015800087"):
    r = c.post(
        "/api/learners",
        json={
            "national_id": national_id,
            "first_name": "Sipho",
            "last_name": "Ndlovu",
            "birth_date": "1990-01-01",
            "gender_code": "M",
            "nationality_code": "SA",
            "popia_consent": True,
        },
    )
    assert r.status_code == 201, r.json
    return r.json["id"]


def test_submission_needs_title_and_resources_before_submit(inst_admin):
    assert inst_admin.post("/api/institutions/submissions", json={}).status_code == 400

    r = inst_admin.post("/api/institutions/submissions", json={"title": "Quarterly learner report"})
    assert r.status_code == 201
    sub = r.json
    assert sub["status"] == "DRAFT"
    assert sub["resources"] == []

    r = inst_admin.patch(f"/api/institutions/submissions/{sub['id']}", json={"status": "SUBMITTED"})
    assert r.status_code == 400
    assert r.json["error"] == "Cannot submit: the submission has no resources."

    r = inst_admin.patch(f"/api/institutions/submissions/{sub['id']}", json={"status": "APPROVED"})
    assert r.status_code == 400


def test_reverting_to_draft_clears_submission_stamp(inst_admin):
    learner_id = _new_learner(inst_admin)
    sub_id = inst_admin.post("/api/institutions/submissions", json={"title": "Report"}).json["id"]
    inst_admin.post(
        f"/api/institutions/submissions/{sub_id}/resources",
        json={"resource_type": "learner", "resource_id": learner_id},
    )

    r = inst_admin.patch(f"/api/institutions/submissions/{sub_id}", json={"status": "SUBMITTED"})
    assert r.status_code == 200
    assert r.json["submitted_at"] is not None
    assert r.json["submitted_by"] is not None

    r = inst_admin.patch(f"/api/institutions/submissions/{sub_id}", json={"status": "DRAFT"})
    assert r.status_code == 200
    assert r.json["status"] == "DRAFT"
    assert r.json["submitted_at"] is None
    assert r.json["submitted_by"] is None


def test_resources_must_belong_to_the_institution(make_institution, make_user, login, inst_admin):
    other = make_institution()
    make_user("owner@other.example.org", "INSTITUTION_ADMIN", institution_id=other)
    foreign_learner = _new_learner(login("owner@other.example.org"))

    sub_id = inst_admin.post("/api/institutions/submissions", json={"title": "Report"}).json["id"]
    r = inst_admin.post(
        f"/api/institutions/submissions/{sub_id}/resources",
        json={"resource_type": "LEARNER", "resource_id": foreign_learner},
    )
    assert r.status_code == 400
    assert "does not belong" in r.json["error"]

    r = inst_admin.post(
        f"/api/institutions/submissions/{sub_id}/resources",
        json={"resource_type": "LEARNER", "resource_id": 4242},
    )
    assert r.status_code == 404


def test_resource_add_and_remove_are_audited(app, inst_admin):
    learner_id = _new_learner(inst_admin)
    sub_id = inst_admin.post("/api/institutions/submissions", json={"title": "Report"}).json["id"]

    r = inst_admin.post(
        f"/api/institutions/submissions/{sub_id}/resources",
        json={"resource_type": "learner", "resource_id": learner_id},
    )
    assert r.status_code == 201
    resource_id = r.json["id"]
    assert r.json["resource_id_value"] == str(learner_id)

    r = inst_admin.post(
        f"/api/institutions/submissions/{sub_id}/resources",
        json={"resource_type": "LEARNER", "resource_id": learner_id},
    )
    assert r.status_code == 409

    r = inst_admin.delete(f"/api/institutions/submissions/{sub_id}/resources/{resource_id}")
    assert r.status_code == 200
    assert inst_admin.get(f"/api/institutions/submissions/{sub_id}").json["resources"] == []

    with session_scope(app) as s:
        rows = s.scalars(
            select(AuditLog).where(AuditLog.entity_type == "SUBMISSION", AuditLog.field_name == "resource")
        ).all()
        assert [(a.change_type, a.related_submission_id) for a in rows] == [("CREATE", sub_id), ("DELETE", sub_id)]


def test_submit_share_and_review(app, make_user, login, inst_admin):
    make_user("reviewer@qcto.example.org", "QCTO_REVIEWER", provinces=["Gauteng"])
    reviewer = login("reviewer@qcto.example.org")

    learner_id = _new_learner(inst_admin)
    r = inst_admin.post(
        "/api/institutions/submissions",
        json={
            "title": "Learner evidence pack",
            "submission_type": "LEARNER_EVIDENCE",
            "resources": [{"resource_type": "LEARNER", "resource_id": learner_id}],
        },
    )
    assert r.status_code == 201
    sub_id = r.json["id"]
    assert len(r.json["resources"]) == 1

    # drafts stay private
    assert reviewer.get("/api/qcto/submissions").json["count"] == 0
    assert reviewer.get(f"/api/learners/{learner_id}").status_code == 403

    r = inst_admin.patch(f"/api/institutions/submissions/{sub_id}", json={"status": "SUBMITTED"})
    assert r.status_code == 200
    assert r.json["submitted_at"]
    assert r.json["changed_fields"] == ["status"]

    assert reviewer.get("/api/qcto/submissions").json["count"] == 1
    assert reviewer.get(f"/api/qcto/submissions/{sub_id}").status_code == 200
    assert reviewer.get(f"/api/learners/{learner_id}").status_code == 200
    assert reviewer.get("/api/learners").json["count"] == 1

    r = inst_admin.post(
        f"/api/institutions/submissions/{sub_id}/resources",
        json={"resource_type": "INSTITUTION", "resource_id": r.json["institution_id"]},
    )
    assert r.status_code == 400

    assert reviewer.patch(f"/api/qcto/submissions/{sub_id}", json={"status": "DRAFT"}).status_code == 400
    r = reviewer.patch(f"/api/qcto/submissions/{sub_id}", json={"status": "APPROVED", "review_notes": "Complete pack."})
    assert r.status_code == 200
    assert r.json == {"submission_id": sub_id, "status": "APPROVED", "message": "Submission reviewed successfully"}
    assert reviewer.patch(f"/api/qcto/submissions/{sub_id}", json={"status": "REJECTED"}).status_code == 400

    r = inst_admin.get(f"/api/institutions/submissions/{sub_id}")
    assert r.json["review_notes"] == "Complete pack."
    assert inst_admin.patch(f"/api/institutions/submissions/{sub_id}", json={"title": "x"}).status_code == 400

    # approved submissions keep their resources shared
    assert reviewer.get(f"/api/learners/{learner_id}").status_code == 200

    with session_scope(app) as s:
        n = s.scalars(select(Notification).where(Notification.notification_type == "SUBMISSION_APPROVED")).one()
        assert n.entity_id == str(sub_id)
        row = s.scalars(
            select(AuditLog).where(AuditLog.entity_type == "SUBMISSION", AuditLog.new_value == "APPROVED")
        ).one()
        assert row.change_type == "STATUS_CHANGE"
        assert row.reason == "Complete pack."


def test_institutions_cannot_use_qcto_endpoints(inst_admin):
    assert inst_admin.get("/api/qcto/submissions").status_code == 403
    assert inst_admin.patch("/api/qcto/submissions/1", json={"status": "APPROVED"}).status_code == 403
