def _learner(c, **overrides):
    payload = {
        "national_id": "9001015800087",
        "first_name": "Sipho",
        "last_name": "Ndlovu",
        "birth_date": "1990-01-01",
        "gender_code": "M",
        "nationality_code": "SA",
        "popia_consent": True,
    }
    payload.update(overrides)
    r = c.post("/api/learners", json=payload)
    assert r.status_code == 201, r.json
    return r.json["id"]


def test_institution_dashboard(inst_admin, institution):
    learner_id = _learner(inst_admin)
    inst_admin.post("/api/enrolments", json={"learner_id": learner_id, "qualification_title": "Plumber"})
    inst_admin.post("/api/readiness", json={"qualification_title": "Electrician", "delivery_mode": "FACE_TO_FACE"})
    inst_admin.post("/api/institutions/submissions", json={"title": "Draft report"})

    r = inst_admin.get("/api/dashboard")
    assert r.status_code == 200
    body = r.json
    assert body["role"] == "INSTITUTION_ADMIN"
    assert body["institution_id"] == institution
    assert body["learners"] == 1
    assert body["active_enrolments"] == 1
    assert body["readiness_by_status"] == {"NOT_STARTED": 1}
    assert body["submissions_by_status"] == {"DRAFT": 1}
    assert body["pending_qcto_requests"] == 0


def test_platform_dashboard(admin, inst_admin):
    _learner(inst_admin)
    body = admin.get("/api/dashboard").json
    assert body["role"] == "PLATFORM_ADMIN"
    assert body["institutions"] == 1
    assert body["learners"] == 1
    assert body["users_by_role"] == {"PLATFORM_ADMIN": 1, "INSTITUTION_ADMIN": 1}
    assert body["pending_invites"] == 0


def test_qcto_dashboard_is_province_scoped(make_institution, make_user, login, inst_admin):
    learner_id = _learner(inst_admin)
    r = inst_admin.post(
        "/api/institutions/submissions",
        json={"title": "Pack", "resources": [{"resource_type": "LEARNER", "resource_id": learner_id}]},
    )
    sub_id = r.json["id"]
    inst_admin.patch(f"/api/institutions/submissions/{sub_id}", json={"status": "SUBMITTED"})
    inst_admin.post("/api/institutions/submissions", json={"title": "Still a draft"})

    make_user("reviewer@qcto.example.org", "QCTO_REVIEWER", provinces=["Gauteng", "Limpopo"])
    make_user("cape@qcto.example.org", "QCTO_REVIEWER", provinces=["Western Cape"])
    make_user("super@qcto.example.org", "QCTO_SUPER_ADMIN")

    reviewer = login("reviewer@qcto.example.org")
    assert reviewer.patch(f"/api/qcto/submissions/{sub_id}", json={"status": "APPROVED"}).status_code == 200

    body = reviewer.get("/api/dashboard").json
    assert body["role"] == "QCTO_REVIEWER"
    assert body["provinces"] == ["Gauteng", "Limpopo"]
    assert body["submissions_by_status"] == {"APPROVED": 1}
    assert len(body["recent_reviews"]) == 1
    assert body["recent_reviews"][0]["entity_type"] == "SUBMISSION"
    assert body["my_assignments"] == []

    cape = login("cape@qcto.example.org").get("/api/qcto/stats").json
    assert cape["submissions_by_status"] == {}
    assert cape["recent_reviews"] == []

    super_stats = login("super@qcto.example.org").get("/api/qcto/stats").json
    assert super_stats["provinces"] is None
    assert super_stats["submissions_by_status"] == {"APPROVED": 1}


def test_student_dashboard(institution, make_user, login, inst_admin):
    student_id = make_user("student@example.org", "STUDENT", institution_id=institution)
    learner_id = _learner(inst_admin, user_id=student_id)
    inst_admin.post("/api/enrolments", json={"learner_id": learner_id, "qualification_title": "Plumber"})

    body = login("student@example.org").get("/api/dashboard").json
    assert body["role"] == "STUDENT"
    assert [e["qualification_title"] for e in body["enrolments"]] == ["Plumber"]


def test_qcto_stats_is_not_for_institutions(inst_admin, client):
    assert inst_admin.get("/api/qcto/stats").status_code == 403
    assert client.get("/api/dashboard").status_code == 401
