from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from jinja2 import TemplateError
from jinja2.sandbox import SandboxedEnvironment
from markupsafe import Markup
from sqlalchemy import select

from app.yiba.audit import audit_field_changes, create_audit_log
from app.yiba.constants import CHANGE_CREATE, ENTITY_EMAIL_TEMPLATE
from app.yiba.errors import NotFoundError, ValidationError
from app.yiba.modules.email_templates.models import EmailTemplate

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.yiba.models import User


TEMPLATE_TYPES = (
    "INSTITUTION_ADMIN_INVITE",
    "INSTITUTION_STAFF_INVITE",
    "STUDENT_INVITE",
    "QCTO_INVITE",
    "PLATFORM_ADMIN_INVITE",
    "SYSTEM_NOTIFICATION",
    "AUTH_PASSWORD_RESET",
    "AUTH_EMAIL_VERIFY",
)

TEMPLATE_VARIABLES = (
    "recipient_name",
    "institution_name",
    "inviter_name",
    "expiry_date",
    "role",
    "invite_link",
    "action_url",
    "notification_subject",
    "notification_message",
    "expiry_minutes",
)

SAMPLE_VARIABLES: dict[str, object] = {
    "recipient_name": "Thandi Mokoena",
    "institution_name": "Sample Skills Academy",
    "inviter_name": "Sipho Dlamini",
    "expiry_date": "2026-01-31",
    "role": "Institution Staff",
    "invite_link": "https://app.example.org/invites/sample-token",
    "action_url": "https://app.example.org/dashboard",
    "notification_subject": "Submission Approved",
    "notification_message": "Your submission has been approved by QCTO.",
    "expiry_minutes": 60,
}

_TAG_RE = re.compile(r"<[^>]+>")

# Unknown variables render as empty strings (jinja2 default Undefined).
_text_env = SandboxedEnvironment(autoescape=False)
_html_env = SandboxedEnvironment(autoescape=True)

_HTML_LAYOUT = _html_env.from_string(
    """<!doctype html>
<html><body style="font-family: Arial, sans-serif; color: #1f2937;">
<div style="max-width: 600px; margin: 0 auto; padding: 24px;">
<h2 style="color: #0f4c81;">Yiba Verified</h2>
{% for block in blocks %}{{ block }}
{% endfor %}{% if cta_text and cta_url %}<p><a href="{{ cta_url }}" style="background: #0f4c81; color: #fff; padding: 10px 18px; text-decoration: none; border-radius: 4px;">{{ cta_text }}</a></p>
{% endif %}{% if footer %}<hr><p style="font-size: 12px; color: #6b7280;">{{ footer }}</p>{% endif %}
</div></body></html>"""
)


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    text: str
    html: str


def _human_name(template_type: str) -> str:
    return template_type.replace("_", " ").title()


def default_template_for(template_type: str) -> dict[str, Any]:
    if template_type not in TEMPLATE_TYPES:
        raise NotFoundError(f"Unknown email template type: {template_type}")
    name = _human_name(template_type)
    invite_body = [
        {"type": "paragraph", "content": "Hi {{recipient_name}},"},
        {
            "type": "paragraph",
            "content": "{{inviter_name}} has invited you to join {{institution_name}} on Yiba Verified as {{role}}.",
        },
        {
            "type": "paragraph",
            "content": "Click the button below to review your invitation. This link expires on {{expiry_date}}.",
        },
    ]
    invite_footer = (
        "If you didn't expect this invitation, you can safely ignore this email. "
        "Questions? support@yibaverified.co.za"
    )

    if template_type in ("INSTITUTION_ADMIN_INVITE", "INSTITUTION_STAFF_INVITE"):
        return {
            "name": name,
            "subject": "You've been invited to {{institution_name}} on Yiba Verified",
            "body_sections": [
                {"type": "paragraph", "content": "Hi {{recipient_name}},"},
                {
                    "type": "paragraph",
                    "content": "You've been invited to join Yiba Verified as {{role}} for {{institution_name}}.",
                },
                {"type": "paragraph", "content": "On Yiba Verified you'll be able to:"},
                {
                    "type": "list",
                    "content": json.dumps(
                        [
                            "Manage your institution profile and branches",
                            "Upload and track compliance documentation",
                            "Submit readiness information for QCTO review",
                            "Monitor progress and feedback in one place",
                        ]
                    ),
                },
                {"type": "paragraph", "content": "This invitation expires on {{expiry_date}}."},
            ],
            "cta_text": "Accept Invitation",
            "footer_html": "If you weren't expecting this invitation, you can safely ignore this email.",
        }
    if template_type in ("STUDENT_INVITE", "QCTO_INVITE", "PLATFORM_ADMIN_INVITE"):
        return {
            "name": name,
            "subject": "You're invited to {{institution_name}} on Yiba Verified",
            "body_sections": invite_body,
            "cta_text": "Accept Invitation",
            "footer_html": invite_footer,
        }
    if template_type == "SYSTEM_NOTIFICATION":
        return {
            "name": name,
            "subject": "{{notification_subject}}",
            "body_sections": [
                {"type": "paragraph", "content": "Hi {{recipient_name}},"},
                {"type": "paragraph", "content": "{{notification_message}}"},
                {"type": "paragraph", "content": "To view the full details and take action, open your dashboard."},
            ],
            "cta_text": "View Notification",
            "footer_html": "You're receiving this email because it relates to activity on your Yiba Verified account.",
        }
    if template_type == "AUTH_PASSWORD_RESET":
        return {
            "name": name,
            "subject": "Reset your Yiba Verified password",
            "body_sections": [
                {"type": "paragraph", "content": "Hi {{recipient_name}},"},
                {
                    "type": "paragraph",
                    "content": "We received a request to reset the password for your Yiba Verified account.",
                },
                {
                    "type": "paragraph",
                    "content": "Click the button below to choose a new password. "
                    "For security reasons, this link will expire in {{expiry_minutes}} minutes.",
                },
                {
                    "type": "paragraph",
                    "content": "If you didn't request a password reset, you can safely ignore this email.",
                },
            ],
            "cta_text": "Reset Password",
            "footer_html": "For your protection, we'll never ask for your password via email.",
        }
    # AUTH_EMAIL_VERIFY
    return {
        "name": name,
        "subject": "Yiba Verified: action required",
        "body_sections": [
            {"type": "paragraph", "content": "Hi {{recipient_name}},"},
            {
                "type": "paragraph",
                "content": "Please use the link below to complete your request. This link expires on {{expiry_date}}.",
            },
        ],
        "cta_text": "Continue",
        "footer_html": "If you didn't request this, you can safely ignore this email.",
    }


def _template_dict(row: EmailTemplate) -> dict[str, Any]:
    return {
        "name": row.name,
        "subject": row.subject,
        "body_sections": list(row.body_sections or []),
        "cta_text": row.cta_text,
        "footer_html": row.footer_html,
    }


def template_to_dict(template_type: str, row: EmailTemplate | None) -> dict[str, Any]:
    data = _template_dict(row) if row is not None else default_template_for(template_type)
    return {
        "type": template_type,
        **data,
        "is_active": row.is_active if row is not None else True,
        "is_default": row is None,
        "updated_at": row.updated_at.isoformat() if row is not None else None,
    }


def get_template_row(s: "Session", template_type: str) -> EmailTemplate | None:
    return s.scalars(select(EmailTemplate).where(EmailTemplate.type == template_type)).one_or_none()


def get_template(s: "Session", template_type: str) -> dict[str, Any]:
    """Stored active template, falling back to the built-in default."""
    if template_type not in TEMPLATE_TYPES:
        raise NotFoundError(f"Unknown email template type: {template_type}")
    row = get_template_row(s, template_type)
    if row is not None and row.is_active:
        return _template_dict(row)
    return default_template_for(template_type)


def _list_items(content: str) -> list[str]:
    try:
        items = json.loads(content)
    except (TypeError, ValueError):
        return [line.strip() for line in str(content).splitlines() if line.strip()]
    if not isinstance(items, list):
        return [str(items)]
    return [str(i) for i in items]


def render_template_content(template: dict[str, Any], variables: dict[str, Any]) -> RenderedEmail:
    """Substitute {{variable}} placeholders into subject, body sections, CTA and footer."""
    ctx = {k: ("" if v is None else v) for k, v in variables.items()}

    def _text(src: str | None) -> str:
        return _text_env.from_string(src or "").render(**ctx)

    def _html(src: str | None) -> Markup:
        return Markup(_html_env.from_string(src or "").render(**ctx))

    subject = _text(template.get("subject")).strip()
    text_parts: list[str] = []
    html_blocks: list[Markup] = []
    for section in template.get("body_sections") or []:
        kind = (section.get("type") or "paragraph").lower()
        content = section.get("content") or ""
        if kind == "list":
            items = _list_items(content)
            text_parts.append("\n".join(f"- {_text(item)}" for item in items))
            lis = Markup("").join(Markup("<li>{}</li>").format(_html(item)) for item in items)
            html_blocks.append(Markup("<ul>{}</ul>").format(lis))
        else:
            text_parts.append(_text(content))
            html_blocks.append(Markup("<p>{}</p>").format(_html(content)))

    cta_text = _text(template.get("cta_text")).strip()
    cta_url = str(ctx.get("invite_link") or ctx.get("action_url") or "")
    if cta_text and cta_url:
        text_parts.append(f"{cta_text}: {cta_url}")

    footer_html = _html(template.get("footer_html"))
    footer_text = _TAG_RE.sub("", _text(template.get("footer_html"))).strip()
    if footer_text:
        text_parts.append(footer_text)

    html = _HTML_LAYOUT.render(blocks=html_blocks, cta_text=cta_text, cta_url=cta_url, footer=footer_html)
    return RenderedEmail(subject=subject, text="\n\n".join(p for p in text_parts if p), html=html)


def render_for_type(s: "Session", template_type: str, variables: dict[str, Any]) -> RenderedEmail:
    return render_template_content(get_template(s, template_type), variables)


def validate_template_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    if not (payload.get("subject") or "").strip():
        errors.append("Subject is required.")
    sections = payload.get("body_sections")
    if not isinstance(sections, list) or not sections:
        errors.append("body_sections must be a non-empty list.")
        return errors
    for i, section in enumerate(sections):
        if not isinstance(section, dict) or (section.get("type") or "paragraph") not in ("paragraph", "list"):
            errors.append(f"body_sections[{i}] must have type 'paragraph' or 'list'.")
            continue
        if not isinstance(section.get("content"), str):
            errors.append(f"body_sections[{i}].content must be a string.")
    for field in ("subject", "cta_text", "footer_html"):
        try:
            _text_env.parse(payload.get(field) or "")
        except TemplateError as e:
            errors.append(f"{field} is not a valid template: {e}")
    for i, section in enumerate(sections):
        if isinstance(section, dict) and isinstance(section.get("content"), str):
            try:
                _text_env.parse(section["content"])
            except TemplateError as e:
                errors.append(f"body_sections[{i}] is not a valid template: {e}")
    return errors


def upsert_template(s: "Session", template_type: str, payload: dict, user: "User") -> EmailTemplate:
    if template_type not in TEMPLATE_TYPES:
        raise NotFoundError(f"Unknown email template type: {template_type}")
    errors = validate_template_payload(payload)
    if errors:
        raise ValidationError("; ".join(errors), details={"errors": errors})

    row = get_template_row(s, template_type)
    updates = {
        "subject": payload["subject"].strip(),
        "body_sections": payload["body_sections"],
        "cta_text": (payload.get("cta_text") or "").strip() or None,
        "footer_html": (payload.get("footer_html") or "").strip() or None,
        "is_active": bool(payload.get("is_active", True)),
    }
    if row is None:
        row = EmailTemplate(
            type=template_type,
            name=(payload.get("name") or "").strip() or _human_name(template_type),
            updated_by=user.id,
            **updates,
        )
        s.add(row)
        s.flush()
        create_audit_log(
            s,
            actor=user,
            entity_type=ENTITY_EMAIL_TEMPLATE,
            entity_id=row.id,
            field_name="type",
            new_value=template_type,
            change_type=CHANGE_CREATE,
        )
        return row

    changes = {}
    for field, new in updates.items():
        old = getattr(row, field)
        if old != new:
            changes[field] = (old, new)
            setattr(row, field, new)
    if changes:
        row.updated_at = datetime.utcnow()
        row.updated_by = user.id
        audit_field_changes(s, actor=user, entity_type=ENTITY_EMAIL_TEMPLATE, entity_id=row.id, changes=changes)
    return row


def seed_default_templates(s: "Session") -> int:
    """Insert a row for every template type that has none. Returns rows created."""
    created = 0
    for template_type in TEMPLATE_TYPES:
        if get_template_row(s, template_type) is not None:
            continue
        s.add(EmailTemplate(type=template_type, **default_template_for(template_type)))
        created += 1
    return created
