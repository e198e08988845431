from sqlalchemy import select

from app.yiba.db import session_scope
from app.yiba.models import AuditLog
from app.yiba.modules.email_templates.models import EmailTemplate
from app.yiba.modules.email_templates.service import (
    TEMPLATE_TYPES,
    render_for_type,
    render_template_content,
    seed_default_templates,
)


def _draft(**overrides):
    payload = {
        "subject": "Welcome to {{institution_name}}",
        "body_sections": [
            {"type": "paragraph", "content": "Hi {{recipient_name}},"},
            {"type": "list", "content": '["Upload evidence", "Track reviews"]'},
        ],
        "cta_text": "Get started",
        "footer_html": "<em>Yiba Verified</em>",
    }
    payload.update(overrides)
    return payload


def test_render_escapes_html_but_not_text():
    rendered = render_template_content(
        _draft(),
        {"recipient_name": "<b>Thandi</b>", "institution_name": "Ubuntu & Co", "action_url": "https://x.example/go"},
    )
    assert rendered.subject == "Welcome to Ubuntu & Co"
    assert "Hi <b>Thandi</b>," in rendered.text
    assert "- Upload evidence\n- Track reviews" in rendered.text
    assert "Get started: https://x.example/go" in rendered.text
    assert rendered.text.endswith("Yiba Verified")
    assert "&lt;b&gt;Thandi&lt;/b&gt;" in rendered.html
    assert "<li>Track reviews</li>" in rendered.html
    assert 'href="https://x.example/go"' in rendered.html


def test_unknown_variables_render_empty():
    rendered = render_template_content({"subject": "Hi {{nobody}}!", "body_sections": []}, {})
    assert rendered.subject == "Hi !"


def test_list_and_get_defaults(admin):
    r = admin.get("/api/email-templates")
    assert r.status_code == 200
    assert r.json["count"] == len(TEMPLATE_TYPES) == 8
    assert all(t["is_default"] for t in r.json["items"])

    r = admin.get("/api/email-templates/auth_password_reset")
    assert r.json["type"] == "AUTH_PASSWORD_RESET"
    assert "{{expiry_minutes}}" in r.json["body_sections"][2]["content"]
    assert admin.get("/api/email-templates/BIRTHDAY").status_code == 404


def test_put_validates_and_audits(app, admin):
    r = admin.put("/api/email-templates/STUDENT_INVITE", json={"subject": "", "body_sections": []})
    assert r.status_code == 400
    assert "Subject is required." in r.json["details"]["errors"]

    r = admin.put("/api/email-templates/STUDENT_INVITE", json=_draft(subject="Hello {{ broken"))
    assert r.status_code == 400
    assert any("not a valid template" in e for e in r.json["details"]["errors"])

    r = admin.put("/api/email-templates/STUDENT_INVITE", json=_draft(body_sections=[{"type": "table", "content": "x"}]))
    assert r.status_code == 400

    r = admin.put("/api/email-templates/STUDENT_INVITE", json=_draft())
    assert r.status_code == 200
    assert r.json["is_default"] is False
    assert r.json["subject"] == "Welcome to {{institution_name}}"

    r = admin.put("/api/email-templates/STUDENT_INVITE", json=_draft(cta_text="Join now"))
    assert r.status_code == 200
    assert r.json["cta_text"] == "Join now"

    with session_scope(app) as s:
        rows = s.scalars(
            select(AuditLog).where(AuditLog.entity_type == "EMAIL_TEMPLATE").order_by(AuditLog.id)
        ).all()
        assert [(a.field_name, a.change_type) for a in rows] == [("type", "CREATE"), ("cta_text", "UPDATE")]


def test_stored_template_is_used_for_sending(app, admin):
    admin.put("/api/email-templates/SYSTEM_NOTIFICATION", json=_draft(subject="[Yiba] {{notification_subject}}"))
    with app.app_context(), session_scope(app) as s:
        rendered = render_for_type(s, "SYSTEM_NOTIFICATION", {"notification_subject": "Heads up"})
    assert rendered.subject == "[Yiba] Heads up"


def test_preview_draft_and_current(admin):
    r = admin.post("/api/email-templates/QCTO_INVITE/preview", json={})
    assert r.status_code == 200
    assert r.json["subject"] == "You're invited to Sample Skills Academy on Yiba Verified"
    assert "Thandi Mokoena" in r.json["text"]

    r = admin.post(
        "/api/email-templates/QCTO_INVITE/preview",
        json={**_draft(), "variables": {"recipient_name": "Naledi"}},
    )
    assert r.status_code == 200
    assert r.json["subject"] == "Welcome to Sample Skills Academy"
    assert r.json["text"].startswith("Hi Naledi,")
    assert "<html>" in r.json["html"]

    r = admin.post("/api/email-templates/QCTO_INVITE/preview", json={"subject": "x", "body_sections": "nope"})
    assert r.status_code == 400


def test_seed_default_templates(app):
    with session_scope(app) as s:
        assert seed_default_templates(s) == 8
    with session_scope(app) as s:
        assert seed_default_templates(s) == 0
        assert len(s.scalars(select(EmailTemplate)).all()) == 8


def test_templates_are_platform_admin_only(inst_admin):
    assert inst_admin.get("/api/email-templates").status_code == 403
