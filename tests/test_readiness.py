import io

from sqlalchemy import select

from app.yiba.db import session_scope
from app.yiba.models import AuditLog
from app.yiba.modules.notifications.models import Notification
from app.yiba.modules.readiness.models import Readiness
from app.yiba.modules.readiness.service import calculate_section_completion, validate_readiness_for_submission

COMPLETE_FORM = {
    "saqa_id": "91761",
    "curriculum_code": "671101-000-01-00",
    "credits": 360,
    "nqf_level": 4,
    "self_assessment_completed": True,
    "self_assessment_remarks": "Self-assessment done by the academic committee.",
    "registration_type": "PRIVATE_SDP",
    "professional_body_registration": False,
    "training_site_address": "12 Main Road, Johannesburg",
    "ownership_type": "LEASED",
    "number_of_training_rooms": 3,
    "room_capacity": 25,
    "facilitator_learner_ratio": "1:20",
    "wbl_workplace_partner_name": "Rand Electrical",
    "wbl_agreement_type": "MOU",
    "lmis_functional": True,
    "lmis_popia_compliant": True,
    "policies_procedures_notes": "Assessment, appeals and RPL policies attached.",
    "fire_extinguisher_available": True,
    "emergency_exits_marked": True,
    "accessibility_for_disabilities": True,
    "first_aid_kit_available": True,
    "ohs_representative_name": "Thabo Mokoena",
    "learning_material_exists": True,
    "learning_material_coverage_percentage": 80,
    "learning_material_nqf_aligned": True,
    "knowledge_components_complete": True,
    "practical_components_complete": True,
    "learning_material_quality_verified": True,
}


def _create(c, **fields):
    payload = {"qualification_title": "Occupational Certificate: Electrician", "delivery_mode": "FACE_TO_FACE"}
    payload.update(fields)
    r = c.post("/api/readiness", json=payload)
    assert r.status_code == 201, r.json
    return r.json


def _upload_evidence(c, readiness_id):
    r = c.post(
        "/api/documents",
        data={
            "document_type": "PRACTICAL_RESOURCES",
            "related_entity": "READINESS",
            "related_entity_id": str(readiness_id),
            "file": (io.BytesIO(b"%PDF-1.4 workshop inventory"), "workshop.pdf"),
        },
        content_type="multipart/form-data",
    )
    assert r.status_code == 201, r.json
    return r.json


def _submitted_readiness(c):
    record = _create(c, **COMPLETE_FORM)
    _upload_evidence(c, record["id"])
    r = c.patch(f"/api/readiness/{record['id']}", json={"readiness_status": "SUBMITTED"})
    assert r.status_code == 200, r.json
    return record["id"]


def test_completion_counts_mode_specific_sections():
    r = Readiness(qualification_title="Electrician", delivery_mode="BLENDED")
    names = [sec["section_name"] for sec in calculate_section_completion(r)["sections"]]
    assert "section_4_hybrid_blended" in names
    assert "section_3_3_physical_delivery" in names
    assert "section_5_mobile_unit" not in names

    r = Readiness(qualification_title="Electrician", delivery_mode="MOBILE")
    names = [sec["section_name"] for sec in calculate_section_completion(r)["sections"]]
    assert "section_5_mobile_unit" in names
    assert "section_3_3_physical_delivery" not in names


def test_document_based_sections_need_an_upload():
    r = Readiness(qualification_title="Electrician", delivery_mode="FACE_TO_FACE", **COMPLETE_FORM)
    without = calculate_section_completion(r, document_count=0)
    assert without["missing_required_sections"] == ["section_3_5_practical_resources"]
    assert validate_readiness_for_submission(r, 0)["can_submit"] is False

    with_doc = calculate_section_completion(r, document_count=1)
    assert with_doc["overall_completion"] == 100
    assert with_doc["required_sections_complete"] is True
    assert validate_readiness_for_submission(r, 1) == {"can_submit": True, "errors": [], "warnings": []}


def test_low_learning_material_coverage_blocks_submission():
    form = dict(COMPLETE_FORM, learning_material_coverage_percentage=40)
    r = Readiness(qualification_title="Electrician", delivery_mode="FACE_TO_FACE", **form)
    result = validate_readiness_for_submission(r, 1)
    assert result["can_submit"] is False
    assert any("below the 50% requirement" in e for e in result["errors"])


def test_create_and_edit_moves_to_in_progress(app, inst_admin):
    record = _create(inst_admin)
    assert record["readiness_status"] == "NOT_STARTED"

    r = inst_admin.patch(f"/api/readiness/{record['id']}", json={"saqa_id": "91761", "credits": "360"})
    assert r.status_code == 200
    assert r.json["readiness_status"] == "IN_PROGRESS"
    assert r.json["changed_fields"] == ["credits", "readiness_status", "saqa_id"]
    assert r.json["completion"]["overall_completion"] > 0

    r = inst_admin.patch(f"/api/readiness/{record['id']}", json={"delivery_mode": "ONLINE"})
    assert r.status_code == 400
    r = inst_admin.patch(f"/api/readiness/{record['id']}", json={"learning_material_coverage_percentage": 120})
    assert r.status_code == 400

    with session_scope(app) as s:
        rows = s.scalars(
            select(AuditLog).where(AuditLog.entity_type == "READINESS", AuditLog.field_name == "readiness_status")
        ).all()
        assert [(a.old_value, a.new_value, a.change_type) for a in rows] == [
            ("NOT_STARTED", "IN_PROGRESS", "STATUS_CHANGE")
        ]


def test_completion_endpoint_reports_submission_check(inst_admin):
    record = _create(inst_admin)
    r = inst_admin.get(f"/api/readiness/{record['id']}/completion")
    assert r.status_code == 200
    assert r.json["readiness_id"] == record["id"]
    assert r.json["submission_check"]["can_submit"] is False
    assert "section_2_qualification" in r.json["missing_required_sections"]


def test_incomplete_record_cannot_be_submitted(inst_admin):
    record = _create(inst_admin, **COMPLETE_FORM)
    r = inst_admin.patch(f"/api/readiness/{record['id']}", json={"readiness_status": "SUBMITTED"})
    assert r.status_code == 400
    assert "section_3_5_practical_resources" in r.json["error"]


def test_staff_can_edit_but_not_submit(institution, make_user, login, inst_admin):
    record = _create(inst_admin, **COMPLETE_FORM)
    _upload_evidence(inst_admin, record["id"])

    make_user("staff@academy.example.org", "INSTITUTION_STAFF", institution_id=institution)
    staff = login("staff@academy.example.org")
    assert staff.patch(f"/api/readiness/{record['id']}", json={"isp": "Telkom"}).status_code == 200
    r = staff.patch(f"/api/readiness/{record['id']}", json={"readiness_status": "SUBMITTED"})
    assert r.status_code == 403


def test_submit_locks_record_and_notifies_province_qcto(app, make_user, login, inst_admin):
    reviewer_id = make_user("reviewer@qcto.example.org", "QCTO_REVIEWER", provinces=["Gauteng"])
    cape_id = make_user("cape@qcto.example.org", "QCTO_REVIEWER", provinces=["Western Cape"])

    readiness_id = _submitted_readiness(inst_admin)

    r = inst_admin.get(f"/api/readiness/{readiness_id}")
    assert r.json["readiness_status"] == "SUBMITTED"
    assert r.json["submission_date"]

    r = inst_admin.patch(f"/api/readiness/{readiness_id}", json={"isp": "Vumatel"})
    assert r.status_code == 403

    with session_scope(app) as s:
        recipients = {
            n.user_id
            for n in s.scalars(select(Notification).where(Notification.notification_type == "READINESS_SUBMITTED"))
        }
    assert reviewer_id in recipients
    assert cape_id not in recipients

    reviewer = login("reviewer@qcto.example.org")
    assert reviewer.get(f"/api/readiness/{readiness_id}").status_code == 200
    assert reviewer.get("/api/readiness").json["count"] == 1
    cape = login("cape@qcto.example.org")
    assert cape.get(f"/api/readiness/{readiness_id}").status_code == 403


def test_qcto_review_records_recommendation(app, make_user, login, inst_admin):
    make_user("reviewer@qcto.example.org", "QCTO_REVIEWER", provinces=["Gauteng"])
    readiness_id = _submitted_readiness(inst_admin)
    reviewer = login("reviewer@qcto.example.org")

    r = reviewer.post(f"/api/qcto/readiness/{readiness_id}/review", json={"status": "APPROVED"})
    assert r.status_code == 400

    r = reviewer.post(f"/api/qcto/readiness/{readiness_id}/review", json={"status": "UNDER_REVIEW"})
    assert r.status_code == 200
    assert r.json["readiness_status"] == "UNDER_REVIEW"

    r = reviewer.post(
        f"/api/qcto/readiness/{readiness_id}/review",
        json={"status": "RECOMMENDED", "recommendation": "CONDITIONAL_APPROVAL", "remarks": "Add a second workshop."},
    )
    assert r.status_code == 200

    r = reviewer.get(f"/api/readiness/{readiness_id}")
    assert r.json["readiness_status"] == "RECOMMENDED"
    assert r.json["recommendation"]["recommendation"] == "CONDITIONAL_APPROVAL"
    assert r.json["recommendation"]["remarks"] == "Add a second workshop."

    r = reviewer.post(f"/api/qcto/readiness/{readiness_id}/review", json={"status": "REJECTED"})
    assert r.status_code == 400

    with session_scope(app) as s:
        types = [
            n.notification_type
            for n in s.scalars(select(Notification).where(Notification.entity_type == "READINESS").order_by(Notification.id))
        ]
        reviews = s.scalars(
            select(AuditLog).where(
                AuditLog.entity_type == "READINESS",
                AuditLog.change_type == "STATUS_CHANGE",
                AuditLog.role_at_time == "QCTO_REVIEWER",
            )
        ).all()
    assert "READINESS_RECOMMENDED" in types
    assert [(a.old_value, a.new_value) for a in reviews] == [("SUBMITTED", "UNDER_REVIEW"), ("UNDER_REVIEW", "RECOMMENDED")]


def test_rejection_defaults_recommendation_to_reject(make_user, login, inst_admin):
    make_user("super@qcto.example.org", "QCTO_SUPER_ADMIN")
    readiness_id = _submitted_readiness(inst_admin)
    qcto = login("super@qcto.example.org")

    r = qcto.post(f"/api/qcto/readiness/{readiness_id}/review", json={"status": "REJECTED"})
    assert r.status_code == 200
    assert qcto.get(f"/api/readiness/{readiness_id}").json["recommendation"]["recommendation"] == "REJECT"


def test_returned_record_is_editable_again(make_user, login, inst_admin):
    make_user("super@qcto.example.org", "QCTO_SUPER_ADMIN")
    readiness_id = _submitted_readiness(inst_admin)
    qcto = login("super@qcto.example.org")
    qcto.post(f"/api/qcto/readiness/{readiness_id}/review", json={"status": "RETURNED_FOR_CORRECTION"})

    r = inst_admin.patch(f"/api/readiness/{readiness_id}", json={"room_capacity": 30})
    assert r.status_code == 200
    r = inst_admin.patch(f"/api/readiness/{readiness_id}", json={"readiness_status": "SUBMITTED"})
    assert r.status_code == 200
    assert r.json["readiness_status"] == "SUBMITTED"


def test_institution_cannot_review(inst_admin):
    readiness_id = _submitted_readiness(inst_admin)
    r = inst_admin.post(f"/api/qcto/readiness/{readiness_id}/review", json={"status": "RECOMMENDED"})
    assert r.status_code == 403


# ---------- Facilitators ----------
def test_facilitators_manual_and_from_account(app, institution, make_institution, make_user, inst_admin):
    readiness_id = _create(inst_admin)["id"]
    trainer_id = make_user("trainer@academy.example.org", "FACILITATOR", institution_id=institution)
    outsider_id = make_user("trainer@other.example.org", "FACILITATOR", institution_id=make_institution())
    student_id = make_user("student@academy.example.org", "STUDENT", institution_id=institution)

    url = f"/api/readiness/{readiness_id}/facilitators"
    r = inst_admin.post(url, json={"first_name": "Nomsa"})
    assert r.status_code == 400
    assert inst_admin.post(url, json={"first_name": "Nomsa", "last_name": "Dube", "email": "nope"}).status_code == 400

    r = inst_admin.post(url, json={"first_name": "Nomsa", "last_name": "Dube", "qualification": "N6 Electrical"})
    assert r.status_code == 201
    manual = r.json
    assert manual["user_id"] is None

    r = inst_admin.post(url, json={"user_id": trainer_id})
    assert r.status_code == 201
    assert r.json["email"] == "trainer@academy.example.org"
    assert inst_admin.post(url, json={"user_id": trainer_id}).status_code == 409
    assert inst_admin.post(url, json={"user_id": outsider_id}).status_code == 400
    assert inst_admin.post(url, json={"user_id": student_id}).status_code == 400

    r = inst_admin.get(url)
    assert r.json["count"] == 2
    detail = inst_admin.get(f"/api/readiness/{readiness_id}").json
    assert [f["first_name"] for f in detail["facilitators"]] == ["Nomsa", "Trainer"]

    r = inst_admin.patch(f"{url}/{manual['id']}", json={"last_name": "Dube-Khumalo", "first_name": "Nomsa"})
    assert r.status_code == 200
    assert r.json["changed_fields"] == ["last_name"]
    assert inst_admin.patch(f"{url}/{manual['id']}", json={"last_name": ""}).status_code == 400

    assert inst_admin.delete(f"{url}/{manual['id']}").status_code == 200
    assert inst_admin.delete(f"{url}/{manual['id']}").status_code == 404
    assert inst_admin.get(url).json["count"] == 1

    with session_scope(app) as s:
        rows = s.scalars(
            select(AuditLog).where(AuditLog.entity_type == "FACILITATOR").order_by(AuditLog.id)
        ).all()
        assert [(a.change_type, a.field_name) for a in rows] == [
            ("CREATE", "facilitator"),
            ("CREATE", "facilitator"),
            ("UPDATE", "last_name"),
            ("DELETE", "facilitator"),
        ]
        assert rows[-1].old_value == "Nomsa Dube-Khumalo"
        assert {a.institution_id for a in rows} == {institution}


def test_facilitators_are_institution_managed(institution, make_institution, make_user, login, inst_admin):
    readiness_id = _create(inst_admin)["id"]
    url = f"/api/readiness/{readiness_id}/facilitators"
    inst_admin.post(url, json={"first_name": "Nomsa", "last_name": "Dube"})

    other = make_institution()
    make_user("owner@other.example.org", "INSTITUTION_ADMIN", institution_id=other)
    other_admin = login("owner@other.example.org")
    assert other_admin.get(url).status_code == 403
    assert other_admin.post(url, json={"first_name": "X", "last_name": "Y"}).status_code == 403

    make_user("gp-admin@qcto.example.org", "QCTO_ADMIN", provinces=["Gauteng"])
    qcto = login("gp-admin@qcto.example.org")
    assert qcto.post(url, json={"first_name": "X", "last_name": "Y"}).status_code == 403


def test_qcto_facilitator_list_follows_readiness_visibility(make_user, login, inst_admin):
    draft_id = _create(inst_admin)["id"]
    inst_admin.post(f"/api/readiness/{draft_id}/facilitators", json={"first_name": "Draft", "last_name": "Only"})
    submitted_id = _submitted_readiness(inst_admin)
    inst_admin.post(f"/api/readiness/{submitted_id}/facilitators", json={"first_name": "Sibusiso", "last_name": "Zulu"})

    make_user("reviewer@qcto.example.org", "QCTO_REVIEWER", provinces=["Gauteng"])
    make_user("wc@qcto.example.org", "QCTO_REVIEWER", provinces=["Western Cape"])
    reviewer = login("reviewer@qcto.example.org")

    r = reviewer.get("/api/qcto/facilitators")
    assert r.status_code == 200
    assert [f["last_name"] for f in r.json["items"]] == ["Zulu"]
    assert reviewer.get(f"/api/readiness/{submitted_id}/facilitators").json["count"] == 1
    assert reviewer.get("/api/qcto/facilitators?q=nobody").json["count"] == 0

    assert login("wc@qcto.example.org").get("/api/qcto/facilitators").json["count"] == 0
    assert inst_admin.get("/api/qcto/facilitators").status_code == 403
