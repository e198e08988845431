from datetime import datetime, timedelta

import pytest
from sqlalchemy import select
from werkzeug.security import check_password_hash

from app.yiba import create_app
from app.yiba.db import session_scope
from app.yiba.models import AuditLog, PasswordResetToken, User
from app.yiba.modules.notifications.models import EmailQueue
from app.yiba.security import hash_token


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True
    assert r.json["storage"] == "local"

    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_unknown_route_is_json_404(client):
    r = client.get("/api/does-not-exist")
    assert r.status_code == 404
    assert r.json == {"error": "Not found", "code": "NOT_FOUND"}


def test_anonymous_is_unauthenticated(client):
    r = client.get("/api/institutions")
    assert r.status_code == 401
    assert r.json["code"] == "UNAUTHENTICATED"

    r = client.get("/auth/me")
    assert r.status_code == 401


def test_login_me_and_logout(app, make_user, client):
    make_user("admin@yiba.example.org", "PLATFORM_ADMIN")

    r = client.post("/auth/login", json={"email": "Admin@Yiba.example.org", "password": "password123"})
    assert r.status_code == 200
    assert r.json["user"]["role"] == "PLATFORM_ADMIN"
    assert r.json["csrf_token"]

    r = client.get("/auth/me")
    assert r.status_code == 200
    assert r.json["email"] == "admin@yiba.example.org"
    assert "AUDIT_EXPORT" in r.json["capabilities"]

    r = client.post("/auth/logout")
    assert r.status_code == 200
    assert client.get("/auth/me").status_code == 401

    with session_scope(app) as s:
        fields = [a.field_name for a in s.scalars(select(AuditLog).where(AuditLog.entity_type == "USER"))]
    assert "login" in fields
    assert "logout" in fields


def test_bad_credentials_are_audited(app, make_user, client):
    make_user("staff@academy.example.org", "INSTITUTION_STAFF")
    r = client.post("/auth/login", json={"email": "staff@academy.example.org", "password": "wrong-password"})
    assert r.status_code == 401
    assert r.json["error"] == "Invalid credentials."

    with session_scope(app) as s:
        row = s.scalars(select(AuditLog).where(AuditLog.field_name == "login_failed")).one()
        assert row.changed_by is None
        assert row.reason == "Invalid credentials"


def test_inactive_user_cannot_login(make_user, client):
    make_user("gone@academy.example.org", "INSTITUTION_STAFF", is_active=False)
    r = client.post("/auth/login", json={"email": "gone@academy.example.org", "password": "password123"})
    assert r.status_code == 401


def test_login_is_rate_limited(make_user, client):
    make_user("admin@yiba.example.org", "PLATFORM_ADMIN")
    for _ in range(5):
        r = client.post("/auth/login", json={"email": "admin@yiba.example.org", "password": "nope"})
        assert r.status_code == 401
    r = client.post("/auth/login", json={"email": "admin@yiba.example.org", "password": "password123"})
    assert r.status_code == 429
    assert r.json["code"] == "RATE_LIMITED"


def test_csrf_token_required_for_mutations(app, make_user):
    make_user("admin@yiba.example.org", "PLATFORM_ADMIN")
    csrf_app = create_app({"CSRF_ENABLED": True})
    c = csrf_app.test_client()

    r = c.post("/auth/login", json={"email": "admin@yiba.example.org", "password": "password123"})
    assert r.status_code == 200
    token = r.json["csrf_token"]

    r = c.post("/api/notifications/read-all")
    assert r.status_code == 403
    assert r.json["error"] == "CSRF token missing or invalid."

    r = c.post("/api/notifications/read-all", headers={"X-CSRF-Token": token})
    assert r.status_code == 200

    r = c.get("/auth/csrf")
    assert r.json["csrf_token"] == token


def test_password_reset_request_queues_email_without_revealing_accounts(app, make_user, client):
    make_user("owner@academy.example.org", "INSTITUTION_ADMIN")

    r = client.post("/auth/password-reset/request", json={"email": "nobody@academy.example.org"})
    assert r.status_code == 200
    r = client.post("/auth/password-reset/request", json={"email": "owner@academy.example.org"})
    assert r.status_code == 200
    assert r.json == {"ok": True}

    with session_scope(app) as s:
        assert len(s.scalars(select(PasswordResetToken)).all()) == 1
        mail = s.scalars(select(EmailQueue)).one()
        assert mail.to_email == "owner@academy.example.org"
        assert mail.status == "SENT"
        assert "/reset-password?token=" in mail.body_text


def test_password_reset_confirm_sets_new_password_once(app, make_user, client):
    uid = make_user("owner@academy.example.org", "INSTITUTION_ADMIN")
    with session_scope(app) as s:
        s.add(
            PasswordResetToken(
                user_id=uid,
                token_hash=hash_token("reset-token"),
                expires_at=datetime.utcnow() + timedelta(minutes=30),
            )
        )

    r = client.post("/auth/password-reset/confirm", json={"token": "reset-token", "password": "short"})
    assert r.status_code == 400

    r = client.post("/auth/password-reset/confirm", json={"token": "reset-token", "password": "a-new-password"})
    assert r.status_code == 200

    with session_scope(app) as s:
        assert check_password_hash(s.get(User, uid).password_hash, "a-new-password")

    r = client.post("/auth/password-reset/confirm", json={"token": "reset-token", "password": "another-password"})
    assert r.status_code == 400
    assert r.json["error"] == "Reset link is invalid or has expired."


def test_production_requires_postgres(monkeypatch):
    monkeypatch.setenv("ENV", "production")
    monkeypatch.setenv("SECRET_KEY", "a-strong-secret")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///prod.db")
    with pytest.raises(RuntimeError, match="Postgres"):
        create_app()
