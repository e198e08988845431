import pytest
from sqlalchemy import select

from app.yiba.db import session_scope
from app.yiba.models import User
from scripts.init_db import seed_only
from scripts.release import check_database_url
from scripts.start import gunicorn_argv


def test_seed_is_idempotent(app, monkeypatch):
    monkeypatch.setenv("ADMIN_EMAIL", "Root@Yiba.example.org")
    monkeypatch.setenv("ADMIN_PASSWORD", "s3cret-pass")

    first = seed_only()
    assert first == {"admin_email": "root@yiba.example.org", "admin_created": True, "templates_created": 8}

    with session_scope(app) as s:
        s.scalars(select(User).where(User.email == "root@yiba.example.org")).one().role = "INSTITUTION_STAFF"

    second = seed_only()
    assert second["admin_created"] is False
    assert second["templates_created"] == 0
    with session_scope(app) as s:
        assert s.scalars(select(User).where(User.email == "root@yiba.example.org")).one().role == "PLATFORM_ADMIN"


def test_seed_requires_admin_password(app, monkeypatch):
    monkeypatch.delenv("ADMIN_PASSWORD", raising=False)
    with pytest.raises(RuntimeError, match="ADMIN_PASSWORD"):
        seed_only()


def test_release_database_url_checks():
    with pytest.raises(RuntimeError):
        check_database_url("", "dev")
    with pytest.raises(RuntimeError, match="sqlite"):
        check_database_url("sqlite:///yiba.db", "production")
    check_database_url("sqlite:///yiba.db", "dev")


def test_gunicorn_argv(monkeypatch):
    monkeypatch.setenv("PORT", "9000")
    monkeypatch.setenv("WEB_CONCURRENCY", "4")
    monkeypatch.delenv("GUNICORN_TIMEOUT", raising=False)
    argv = gunicorn_argv()
    assert argv[:2] == ["gunicorn", "app.wsgi:app"]
    assert argv[argv.index("--bind") + 1] == "0.0.0.0:9000"
    assert argv[argv.index("--workers") + 1] == "4"
    assert argv[argv.index("--timeout") + 1] == "60"

    monkeypatch.setenv("PORT", "99999")
    with pytest.raises(SystemExit):
        gunicorn_argv()
