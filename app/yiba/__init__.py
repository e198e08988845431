import logging
import os
from datetime import timedelta

from botocore.exceptions import BotoCoreError, ClientError
from dotenv import load_dotenv
from flask import Flask, g, request, session

from app.yiba.admin import bp as admin_bp
from app.yiba.auth import bp as auth_bp, load_current_user
from app.yiba.config import load_config
from app.yiba.db import init_db, teardown_db_session
from app.yiba.errors import ERROR_CODES, error_response, register_error_handlers
from app.yiba.modules.dashboards.routes import bp as dashboards_bp
from app.yiba.modules.documents.routes import bp as documents_bp
from app.yiba.modules.email_templates.routes import bp as email_templates_bp
from app.yiba.modules.exports.routes import bp as exports_bp
from app.yiba.modules.institutions.routes import bp as institutions_bp
from app.yiba.modules.invites.routes import bp as invites_bp
from app.yiba.modules.issues.routes import bp as issues_bp
from app.yiba.modules.learners.routes import bp as learners_bp
from app.yiba.modules.notifications.routes import bp as notifications_bp
from app.yiba.modules.qcto_requests.routes import bp as qcto_requests_bp
from app.yiba.modules.readiness.routes import bp as readiness_bp
from app.yiba.modules.reviews.routes import bp as reviews_bp
from app.yiba.modules.submissions.routes import bp as submissions_bp
from app.yiba.routes import bp as routes_bp

API_PREFIX = "/api"

# Endpoints reachable before a session (and so a CSRF token) exists.
CSRF_EXEMPT_ENDPOINTS = {
    "auth.csrf",
    "auth.login_post",
    "auth.password_reset_request",
    "auth.password_reset_confirm",
    "invites.invites_accept",
}


def create_app(overrides: dict | None = None) -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    if overrides:
        app.config.update(overrides)
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    register_error_handlers(app)

    from app.yiba.security import ensure_csrf_token, validate_csrf

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/health", "/healthz")):
            return None
        session.permanent = True
        if not app.config.get("CSRF_ENABLED", True):
            return None
        ensure_csrf_token()
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            if (request.endpoint or "") in CSRF_EXEMPT_ENDPOINTS:
                return None
            if not validate_csrf(request):
                return error_response("CSRF token missing or invalid.", ERROR_CODES.FORBIDDEN, 403)
        return None

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not str(app.config.get("DATABASE_URL") or "").strip():
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    # Storage health check (fail loudly on misconfiguration)
    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [
            key
            for key in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")
            if not app.config.get(key)
        ]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))
        else:
            from app.yiba.storage import S3Storage, storage_from_config

            storage = storage_from_config(app.config)
            if isinstance(storage, S3Storage):
                try:
                    storage._client().head_bucket(Bucket=storage.bucket)
                    app.logger.info("Storage health check PASSED: S3 bucket '%s' accessible", storage.bucket)
                except (BotoCoreError, ClientError) as e:
                    app.logger.error("STORAGE CONFIG ERROR: Cannot access S3 bucket: %s", e)

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    for bp in (
        institutions_bp,
        learners_bp,
        readiness_bp,
        documents_bp,
        submissions_bp,
        qcto_requests_bp,
        reviews_bp,
        notifications_bp,
        email_templates_bp,
        invites_bp,
        exports_bp,
        dashboards_bp,
        issues_bp,
        admin_bp,
    ):
        app.register_blueprint(bp, url_prefix=API_PREFIX)

    def _load_user_wrapper():
        if request.path.startswith(("/health", "/healthz")):
            g.current_user = None
            return None
        return load_current_user()

    app.before_request(_load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
