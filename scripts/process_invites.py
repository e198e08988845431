"""
Invite delivery worker.

Expires stale invites, sends the next batch of queued/retrying invites and
advances every campaign that is SENDING.

Usage:
  python scripts/process_invites.py          # one pass
  python scripts/process_invites.py --loop   # run until interrupted
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.yiba import create_app  # noqa: E402
from app.yiba.db import session_scope  # noqa: E402
from app.yiba.modules.invites.service import (  # noqa: E402
    InviteQueueConfig,
    expire_stale_invites,
    process_invite_batch,
    run_active_campaigns,
)

logger = logging.getLogger("yiba.invites.worker")


def run_once(app, config: InviteQueueConfig, *, throttle: bool = True) -> dict[str, object]:
    with app.app_context():
        with session_scope(app) as s:
            expired = expire_stale_invites(s)
        with session_scope(app) as s:
            batch = process_invite_batch(s, config)
        with session_scope(app) as s:
            campaigns = run_active_campaigns(s, config, sleep=time.sleep if throttle else None)
    return {"expired": expired, "batch": batch, "campaigns": campaigns}


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Send queued invites and advance campaigns.")
    parser.add_argument("--loop", action="store_true", help="Keep running, pausing INVITE_BATCH_DELAY_MS between passes")
    parser.add_argument("--no-throttle", action="store_true", help="Skip per-send campaign delays")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app = create_app()
    config = InviteQueueConfig.from_config(app.config)

    while True:
        result = run_once(app, config, throttle=not args.no_throttle)
        logger.info("Invite pass complete: %s", result)
        if not args.loop:
            break
        time.sleep(config.batch_delay_ms / 1000)


if __name__ == "__main__":
    main()
