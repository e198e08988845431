from sqlalchemy import select

from app.yiba.db import session_scope
from app.yiba.models import AuditLog
from app.yiba.modules.learners.models import Learner


def _learner(national_id="9001015800087", **overrides):
    payload = {
        "national_id": national_id,
        "first_name": "Sipho",
        "last_name": "Ndlovu",
        "birth_date": "1990-01-01",
        "gender_code": "m",
        "nationality_code": "sa",
        "email": "sipho@example.org",
        "popia_consent": True,
    }
    payload.update(overrides)
    return payload


def test_create_learner_requires_consent_and_valid_id(inst_admin):
    r = inst_admin.post("/api/learners", json=_learner(national_id="12345", popia_consent=False))
    assert r.status_code == 400
    errors = r.json["details"]["errors"]
    assert "national_id must be 13 digits." in errors
    assert "POPIA consent is required." in errors


def test_learner_lifecycle_is_audited(app, institution, inst_admin):
    r = inst_admin.post("/api/learners", json=_learner())
    assert r.status_code == 201
    learner = r.json
    assert learner["institution_id"] == institution
    assert learner["gender_code"] == "M"
    assert learner["disability_status"] == "NONE"
    assert learner["consent_date"]

    r = inst_admin.post("/api/learners", json=_learner(first_name="Other"))
    assert r.status_code == 409

    r = inst_admin.patch(f"/api/learners/{learner['id']}", json={"phone": "082 555 1234", "first_name": "Sipho"})
    assert r.status_code == 200
    assert r.json["changed_fields"] == ["phone"]

    r = inst_admin.get("/api/learners?q=ndlovu")
    assert r.json["count"] == 1

    r = inst_admin.delete(f"/api/learners/{learner['id']}")
    assert r.status_code == 200
    assert inst_admin.get(f"/api/learners/{learner['id']}").status_code == 404
    assert inst_admin.get("/api/learners").json["count"] == 0

    with session_scope(app) as s:
        assert s.get(Learner, learner["id"]).deleted_at is not None
        changes = [
            (a.field_name, a.change_type)
            for a in s.scalars(
                select(AuditLog).where(AuditLog.entity_type == "LEARNER").order_by(AuditLog.id)
            )
        ]
    assert changes == [("learner_id", "CREATE"), ("phone", "UPDATE"), ("deleted_at", "DELETE")]


def test_platform_admin_must_choose_institution(admin, institution):
    r = admin.post("/api/learners", json=_learner())
    assert r.status_code == 400
    assert r.json["error"] == "institution_id is required."

    r = admin.post("/api/learners", json=_learner(institution_id=institution))
    assert r.status_code == 201


def test_learners_are_isolated_between_institutions(institution, make_institution, make_user, login, inst_admin):
    other = make_institution(province="Gauteng")
    make_user("owner@other.example.org", "INSTITUTION_ADMIN", institution_id=other)
    other_admin = login("owner@other.example.org")

    learner_id = inst_admin.post("/api/learners", json=_learner()).json["id"]

    assert other_admin.get(f"/api/learners/{learner_id}").status_code == 403
    assert other_admin.patch(f"/api/learners/{learner_id}", json={"phone": "1"}).status_code == 403
    assert other_admin.get("/api/learners").json["count"] == 0


def test_qcto_cannot_write_learners(make_user, login, institution):
    make_user("qcto@qcto.example.org", "QCTO_ADMIN", provinces=["Gauteng"])
    qcto = login("qcto@qcto.example.org")
    assert qcto.post("/api/learners", json=_learner(institution_id=institution)).status_code == 403


def test_enrolments(app, institution, make_user, login, inst_admin):
    learner_id = inst_admin.post("/api/learners", json=_learner()).json["id"]

    r = inst_admin.post("/api/enrolments", json={"learner_id": learner_id})
    assert r.status_code == 400

    r = inst_admin.post(
        "/api/enrolments",
        json={"learner_id": learner_id, "qualification_title": "Plumber", "start_date": "2025-02-01"},
    )
    assert r.status_code == 201
    enrolment = r.json
    assert enrolment["enrolment_status"] == "ACTIVE"

    r = inst_admin.post("/api/enrolments", json={"learner_id": learner_id, "qualification_title": "Plumber"})
    assert r.status_code == 409

    r = inst_admin.post(
        "/api/enrolments",
        json={
            "learner_id": learner_id,
            "qualification_title": "Welder",
            "start_date": "2025-02-01",
            "expected_completion_date": "2024-01-01",
        },
    )
    assert r.status_code == 400

    r = inst_admin.patch(f"/api/enrolments/{enrolment['id']}", json={"enrolment_status": "GRADUATED"})
    assert r.status_code == 400
    r = inst_admin.patch(
        f"/api/enrolments/{enrolment['id']}", json={"enrolment_status": "COMPLETED", "completed_date": "2025-12-01"}
    )
    assert r.status_code == 200
    assert r.json["completed_date"] == "2025-12-01"

    make_user("staff@academy.example.org", "INSTITUTION_STAFF", institution_id=institution)
    staff = login("staff@academy.example.org")
    assert staff.patch(f"/api/enrolments/{enrolment['id']}", json={"enrolment_status": "ACTIVE"}).status_code == 403
    assert staff.get(f"/api/enrolments?learner_id={learner_id}").json["count"] == 1

    with session_scope(app) as s:
        row = s.scalars(
            select(AuditLog).where(AuditLog.entity_type == "ENROLMENT", AuditLog.change_type == "STATUS_CHANGE")
        ).one()
        assert (row.old_value, row.new_value) == ("ACTIVE", "COMPLETED")


def test_student_sees_own_enrolments(institution, make_user, login, inst_admin):
    student_id = make_user("student@example.org", "STUDENT", institution_id=institution)
    learner_id = inst_admin.post("/api/learners", json=_learner(user_id=student_id)).json["id"]
    inst_admin.post("/api/enrolments", json={"learner_id": learner_id, "qualification_title": "Plumber"})
    other_id = inst_admin.post("/api/learners", json=_learner(national_id="9202025800081", first_name="Zanele")).json["id"]

    student = login("student@example.org")
    r = student.get("/api/student/enrolments")
    assert r.status_code == 200
    assert [e["qualification_title"] for e in r.json["items"]] == ["Plumber"]

    assert student.get(f"/api/learners/{learner_id}").status_code == 200
    assert student.get(f"/api/learners/{other_id}").status_code == 403
    assert student.get("/api/learners").json["count"] == 1
    assert inst_admin.get("/api/student/enrolments").status_code == 403


def test_learner_can_only_link_a_student_of_its_institution(app, institution, make_institution, make_user, login, inst_admin):
    other = make_institution(province="Gauteng")
    outsider_id = make_user("student@other.example.org", "STUDENT", institution_id=other)
    staff_id = make_user("staff@academy.example.org", "INSTITUTION_STAFF", institution_id=institution)
    student_id = make_user("student@academy.example.org", "STUDENT", institution_id=institution)

    r = inst_admin.post("/api/learners", json=_learner(user_id=outsider_id))
    assert r.status_code == 400
    assert r.json["error"] == "user_id must belong to a student of the same institution."
    r = inst_admin.post("/api/learners", json=_learner(user_id=staff_id))
    assert r.status_code == 400
    assert r.json["error"] == "user_id must belong to a STUDENT account."
    r = inst_admin.post("/api/learners", json=_learner(user_id=9999))
    assert r.status_code == 400
    assert r.json["error"] == "User 9999 does not exist."

    learner_id = inst_admin.post("/api/learners", json=_learner()).json["id"]
    assert inst_admin.patch(f"/api/learners/{learner_id}", json={"user_id": outsider_id}).status_code == 400
    assert login("student@other.example.org").get(f"/api/learners/{learner_id}").status_code == 403

    r = inst_admin.patch(f"/api/learners/{learner_id}", json={"user_id": student_id})
    assert r.status_code == 200
    with session_scope(app) as s:
        assert s.get(Learner, learner_id).user_id == student_id
