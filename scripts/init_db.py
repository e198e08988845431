"""
Seed a fresh database: the platform admin account plus the default email templates.

Safe to run repeatedly. An existing admin keeps their password; only the role is
restored if someone demoted the account.

Usage:
  ADMIN_EMAIL=... ADMIN_PASSWORD=... python scripts/init_db.py
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

from sqlalchemy import select
from werkzeug.security import generate_password_hash

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.yiba import create_app  # noqa: E402
from app.yiba.constants import PLATFORM_ADMIN  # noqa: E402
from app.yiba.db import session_scope  # noqa: E402
from app.yiba.models import User  # noqa: E402
from app.yiba.modules.email_templates.service import seed_default_templates  # noqa: E402

logger = logging.getLogger("yiba.init_db")

DEFAULT_ADMIN_EMAIL = "admin@yibaverified.co.za"


def ensure_platform_admin(s, email: str, password: str) -> bool:
    """Returns True when the account was created."""
    user = s.scalars(select(User).where(User.email == email)).one_or_none()
    if user is None:
        s.add(
            User(
                email=email,
                password_hash=generate_password_hash(password),
                role=PLATFORM_ADMIN,
                first_name="Platform",
                last_name="Admin",
                is_active=True,
            )
        )
        return True
    if user.role != PLATFORM_ADMIN:
        logger.warning("Restoring PLATFORM_ADMIN role on %s (was %s)", email, user.role)
        user.role = PLATFORM_ADMIN
    return False


def seed_only(*, database_url: str | None = None) -> dict[str, object]:
    admin_email = (os.environ.get("ADMIN_EMAIL") or DEFAULT_ADMIN_EMAIL).strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or ""
    if not admin_password:
        raise RuntimeError("ADMIN_PASSWORD must be set to seed the platform admin.")

    app = create_app({"DATABASE_URL": database_url} if database_url else None)
    try:
        with app.app_context(), session_scope(app) as s:
            created = ensure_platform_admin(s, admin_email, admin_password)
            templates = seed_default_templates(s)
    finally:
        app.extensions["sqlalchemy_engine"].dispose()

    logger.info("Seed done: admin=%s created=%s templates_created=%s", admin_email, created, templates)
    return {"admin_email": admin_email, "admin_created": created, "templates_created": templates}


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    seed_only()


if __name__ == "__main__":
    main()
