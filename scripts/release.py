"""
Release phase: migrate the schema to head, then seed.

Refuses to run against sqlite when ENV is production so a missing DATABASE_URL
never ends up migrating a throwaway file.

Usage:
  python scripts/release.py [--skip-seed]
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

from alembic import command
from alembic.config import Config

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

logger = logging.getLogger("yiba.release")


def alembic_config(db_url: str) -> Config:
    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    return cfg


def check_database_url(db_url: str, env: str) -> None:
    if not db_url:
        raise RuntimeError("DATABASE_URL is required for the release phase.")
    if env in ("prod", "production") and db_url.startswith("sqlite"):
        raise RuntimeError("DATABASE_URL points at sqlite while ENV=production; use Postgres.")


def run_release(*, seed: bool = True) -> None:
    db_url = (os.environ.get("DATABASE_URL") or "").strip()
    env = (os.environ.get("ENV") or "").strip().lower()
    check_database_url(db_url, env)

    logger.info("Migrating to head (ENV=%s)", env or "unset")
    command.upgrade(alembic_config(db_url), "head")

    if seed:
        from scripts.init_db import seed_only

        seed_only(database_url=db_url)
    logger.info("Release complete")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run migrations and seed data.")
    parser.add_argument("--skip-seed", action="store_true", help="Only run migrations")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    run_release(seed=not args.skip_seed)


if __name__ == "__main__":
    main()
