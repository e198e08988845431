from dataclasses import asdict

from flask import Blueprint

from app.yiba.constants import PLATFORM_ADMIN
from app.yiba.db import db_session
from app.yiba.modules.email_templates.service import (
    SAMPLE_VARIABLES,
    TEMPLATE_TYPES,
    get_template_row,
    render_template_content,
    template_to_dict,
    upsert_template,
    validate_template_payload,
)
from app.yiba.errors import NotFoundError, ValidationError
from app.yiba.rbac import require_roles
from app.yiba.utils import current_user, get_payload

bp = Blueprint("email_templates", __name__)


def _check_type(template_type: str) -> str:
    t = (template_type or "").upper()
    if t not in TEMPLATE_TYPES:
        raise NotFoundError(f"Unknown email template type: {template_type}")
    return t


@bp.get("/email-templates")
@require_roles(PLATFORM_ADMIN)
def templates_list():
    s = db_session()
    items = [template_to_dict(t, get_template_row(s, t)) for t in TEMPLATE_TYPES]
    return {"items": items, "count": len(items)}


@bp.get("/email-templates/<template_type>")
@require_roles(PLATFORM_ADMIN)
def templates_get(template_type: str):
    s = db_session()
    t = _check_type(template_type)
    return template_to_dict(t, get_template_row(s, t))


@bp.put("/email-templates/<template_type>")
@require_roles(PLATFORM_ADMIN)
def templates_put(template_type: str):
    s = db_session()
    t = _check_type(template_type)
    row = upsert_template(s, t, get_payload(), current_user())
    s.commit()
    return template_to_dict(t, row)


@bp.post("/email-templates/<template_type>/preview")
@require_roles(PLATFORM_ADMIN)
def templates_preview(template_type: str):
    """
    Render either the posted draft (subject + body_sections) or the current template
    with sample variables. Posted `variables` override the samples.
    """
    s = db_session()
    t = _check_type(template_type)
    payload = get_payload()
    if payload.get("subject") or payload.get("body_sections"):
        errors = validate_template_payload(payload)
        if errors:
            raise ValidationError("; ".join(errors), details={"errors": errors})
        template = payload
    else:
        template = template_to_dict(t, get_template_row(s, t))
    variables = {**SAMPLE_VARIABLES, **(payload.get("variables") or {})}
    return asdict(render_template_content(template, variables))
