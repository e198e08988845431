#!/usr/bin/env python3
"""
Container entrypoint: release phase, then gunicorn serving app.wsgi:app.

Environment:
  PORT              listen port (default 8080)
  WEB_CONCURRENCY   gunicorn workers (default 2)
  GUNICORN_TIMEOUT  worker timeout in seconds (default 60)
  SKIP_RELEASE      set to 1 to go straight to gunicorn
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

logger = logging.getLogger("yiba.start")


def _int_env(name: str, default: int, low: int, high: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise SystemExit(f"{name}={raw!r} is not an integer") from None
    if not low <= value <= high:
        raise SystemExit(f"{name}={value} must be between {low} and {high}")
    return value


def gunicorn_argv() -> list[str]:
    port = _int_env("PORT", 8080, 1, 65535)
    workers = _int_env("WEB_CONCURRENCY", 2, 1, 64)
    timeout = _int_env("GUNICORN_TIMEOUT", 60, 1, 3600)
    return [
        "gunicorn",
        "app.wsgi:app",
        "--bind", f"0.0.0.0:{port}",
        "--workers", str(workers),
        "--timeout", str(timeout),
        "--preload",
        "--access-logfile", "-",
        "--error-logfile", "-",
    ]


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    argv = gunicorn_argv()

    if os.environ.get("SKIP_RELEASE") != "1":
        from scripts.release import run_release

        run_release()

    logger.info("exec %s", " ".join(argv))
    # gunicorn replaces this process so it receives container signals
    os.execvp(argv[0], argv)


if __name__ == "__main__":
    main()
