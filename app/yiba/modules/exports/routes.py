from datetime import datetime, time

from flask import Blueprint, Response, current_app, request

from app.yiba.db import db_session
from app.yiba.modules.exports.service import run_export
from app.yiba.rbac import require_auth
from app.yiba.utils import current_user
from app.yiba.validation import parse_date, parse_int

bp = Blueprint("exports", __name__)

_MIMETYPES = {"csv": "text/csv; charset=utf-8", "json": "application/json"}


@bp.get("/export/<dataset>")
@require_auth
def export_dataset(dataset: str):
    s = db_session()
    u = current_user()
    fmt = (request.args.get("format") or "csv").strip().lower()
    start = parse_date(request.args.get("start_date"), "start_date")
    end = parse_date(request.args.get("end_date"), "end_date")
    filters = {
        "institution_id": parse_int(request.args.get("institution_id"), "institution_id"),
        "status": (request.args.get("status") or "").strip() or None,
        "entity_type": (request.args.get("entity_type") or "").strip() or None,
        "start": datetime.combine(start, time.min) if start else None,
        "end": datetime.combine(end, time.max) if end else None,
    }
    body, filename, count = run_export(s, u, dataset, fmt, filters)
    s.commit()
    current_app.logger.info("Export %s (%s, %s rows) by user_id=%s", dataset, fmt, count, u.id)
    return Response(
        body,
        mimetype=_MIMETYPES[fmt],
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
