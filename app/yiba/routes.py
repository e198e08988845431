from flask import Blueprint, current_app
from sqlalchemy import text

from app.yiba.db import db_session

bp = Blueprint("routes", __name__)

SERVICE_NAME = "yiba-verified"


@bp.get("/")
def index():
    return {"service": SERVICE_NAME, "api": "/api", "ok": True}


@bp.get("/health")
def health():
    """Readiness check: the database must answer and the storage backend is reported."""
    db_session().execute(text("SELECT 1"))
    return {
        "ok": True,
        "service": SERVICE_NAME,
        "storage": current_app.config.get("STORAGE_BACKEND") or "local",
    }


@bp.get("/healthz")
def healthz():
    # liveness only; never touches the database
    return "ok", 200
