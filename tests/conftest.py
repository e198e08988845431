import pytest
from werkzeug.security import generate_password_hash

from app.yiba import create_app
from app.yiba.auth import reset_rate_limits
from app.yiba.db import session_scope
from app.yiba.models import Base, User
from app.yiba.modules.institutions.models import Institution

PASSWORD = "password123"


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_LOCAL_PATH", str(tmp_path / "uploads"))
    monkeypatch.setenv("EMAIL_BACKEND", "console")
    monkeypatch.setenv("BASE_URL", "http://testserver")
    monkeypatch.setenv("CSRF_ENABLED", "false")
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    reset_rate_limits()
    yield app
    reset_rate_limits()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def make_institution(app):
    counter = {"n": 0}

    def _make(province="Gauteng", legal_name=None, institution_type="PRIVATE_SDP") -> int:
        counter["n"] += 1
        n = counter["n"]
        with session_scope(app) as s:
            inst = Institution(
                legal_name=legal_name or f"Skills Academy {n}",
                registration_number=f"REG-{n:04d}",
                institution_type=institution_type,
                province=province,
                contact_email=f"info{n}@academy.example.org",
            )
            s.add(inst)
            s.flush()
            return inst.id

    return _make


@pytest.fixture()
def make_user(app):
    def _make(email, role, institution_id=None, provinces=None, password=PASSWORD, is_active=True) -> int:
        with session_scope(app) as s:
            u = User(
                email=email,
                password_hash=generate_password_hash(password),
                first_name=email.split("@")[0].title(),
                role=role,
                institution_id=institution_id,
                assigned_provinces=list(provinces or []),
                default_province=(provinces or [None])[0],
                is_active=is_active,
            )
            s.add(u)
            s.flush()
            return u.id

    return _make


@pytest.fixture()
def login(app):
    """Returns a fresh test client logged in as `email`."""

    def _login(email, password=PASSWORD):
        c = app.test_client()
        r = c.post("/auth/login", json={"email": email, "password": password})
        assert r.status_code == 200, r.json
        return c

    return _login


@pytest.fixture()
def admin(make_user, login):
    make_user("admin@yiba.example.org", "PLATFORM_ADMIN")
    return login("admin@yiba.example.org")


@pytest.fixture()
def institution(make_institution):
    return make_institution(province="Gauteng")


@pytest.fixture()
def inst_admin(institution, make_user, login):
    make_user("owner@academy.example.org", "INSTITUTION_ADMIN", institution_id=institution)
    return login("owner@academy.example.org")
