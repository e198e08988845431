from app.yiba.models import User
from app.yiba.qcto_access import needs_sharing, province_visible, qcto_province_filter


def _learner(c):
    r = c.post(
        "/api/learners",
        json={
            "national_id": "9001015800087",
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


def test_province_filter_by_role():
    assert qcto_province_filter(User(role="PLATFORM_ADMIN")) is None
    assert qcto_province_filter(User(role="QCTO_SUPER_ADMIN")) is None
    assert qcto_province_filter(User(role="QCTO_ADMIN", assigned_provinces=["Gauteng"])) == {"Gauteng"}
    assert qcto_province_filter(User(role="INSTITUTION_ADMIN")) == set()

    reviewer = User(role="QCTO_REVIEWER", assigned_provinces=[])
    assert province_visible(reviewer, "Gauteng") is False
    assert province_visible(User(role="QCTO_SUPER_ADMIN"), None) is True


def test_sharing_applies_below_qcto_admin():
    assert needs_sharing(User(role="QCTO_REVIEWER")) is True
    assert needs_sharing(User(role="QCTO_VIEWER")) is True
    assert needs_sharing(User(role="QCTO_ADMIN")) is False
    assert needs_sharing(User(role="QCTO_SUPER_ADMIN")) is False
    assert needs_sharing(User(role="PLATFORM_ADMIN")) is False


def test_qcto_admin_reads_by_province_only(make_user, login, inst_admin):
    learner_id = _learner(inst_admin)
    make_user("gp-admin@qcto.example.org", "QCTO_ADMIN", provinces=["Gauteng"])
    make_user("wc-admin@qcto.example.org", "QCTO_ADMIN", provinces=["Western Cape"])
    make_user("reviewer@qcto.example.org", "QCTO_REVIEWER", provinces=["Gauteng"])

    gp = login("gp-admin@qcto.example.org")
    assert gp.get(f"/api/learners/{learner_id}").status_code == 200
    assert gp.get("/api/learners").json["count"] == 1

    wc = login("wc-admin@qcto.example.org")
    assert wc.get(f"/api/learners/{learner_id}").status_code == 403
    assert wc.get("/api/learners").json["count"] == 0

    reviewer = login("reviewer@qcto.example.org")
    r = reviewer.get(f"/api/learners/{learner_id}")
    assert r.status_code == 403
    assert "not accessible" in r.json["error"]
    assert reviewer.get("/api/learners").json["count"] == 0


def test_draft_readiness_is_hidden_from_reviewers(make_user, login, inst_admin):
    r = inst_admin.post("/api/readiness", json={"qualification_title": "Electrician", "delivery_mode": "FACE_TO_FACE"})
    readiness_id = r.json["id"]
    make_user("gp-admin@qcto.example.org", "QCTO_ADMIN", provinces=["Gauteng"])
    make_user("reviewer@qcto.example.org", "QCTO_REVIEWER", provinces=["Gauteng"])

    assert login("reviewer@qcto.example.org").get(f"/api/readiness/{readiness_id}").status_code == 403
    assert login("gp-admin@qcto.example.org").get(f"/api/readiness/{readiness_id}").status_code == 200


def test_qcto_user_without_provinces_sees_nothing(institution, make_user, login):
    make_user("nowhere@qcto.example.org", "QCTO_USER", provinces=[])
    c = login("nowhere@qcto.example.org")
    assert c.get("/api/institutions").json["count"] == 0
    assert c.get(f"/api/institutions/{institution}").status_code == 403


def test_auditor_reads_learners_once_shared_by_submission(make_user, login, inst_admin):
    learner_id = _learner(inst_admin)
    make_user("auditor@qcto.example.org", "QCTO_AUDITOR", provinces=["Gauteng"])
    make_user("far-auditor@qcto.example.org", "QCTO_AUDITOR", provinces=["Limpopo"])
    auditor = login("auditor@qcto.example.org")
    assert auditor.get(f"/api/learners/{learner_id}").status_code == 403

    sub_id = inst_admin.post("/api/institutions/submissions", json={"title": "Learner report"}).json["id"]
    inst_admin.post(
        f"/api/institutions/submissions/{sub_id}/resources",
        json={"resource_type": "LEARNER", "resource_id": learner_id},
    )
    assert inst_admin.patch(f"/api/institutions/submissions/{sub_id}", json={"status": "SUBMITTED"}).status_code == 200

    assert auditor.get(f"/api/learners/{learner_id}").status_code == 200
    assert login("far-auditor@qcto.example.org").get(f"/api/learners/{learner_id}").status_code == 403
