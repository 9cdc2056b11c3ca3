#!/usr/bin/env python3
import sys
import os
import argparse
import time

# Add src to path
sys.path.append(os.path.join(os.path.dirname(__file__), '../src'))

from loguru import logger

from signage.db.base import SessionLocal
from signage.jobs.publish_queue_worker import build_worker
from signage.services.publish_queue import PublishQueueService


def has_pending_items(session) -> bool:
    stats = PublishQueueService.stats(session)
    return (stats["pending"] + stats["retrying"]) > 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Drain the publish queue (one-shot for cron/systemd, or --loop)")
    parser.add_argument("--loop", action="store_true", help="Keep running with the supervised worker loop")
    args = parser.parse_args()

    # Setup logger to stdout/stderr for systemd
    logger.remove()
    logger.add(sys.stdout, level="INFO")

    worker = build_worker()

    if args.loop:
        worker.start()
        try:
            while worker.running:
                time.sleep(5)
        except KeyboardInterrupt:
            logger.info("[worker] Interrupted")
        finally:
            worker.stop()
        return 0

    with SessionLocal() as session:
        if not has_pending_items(session):
            print("[worker] No pending queue items, exiting")
            return 0

    try:
        result = worker.run_cycle()
        print(f"[worker] Result: {result}")
    except Exception as exc:
        print(f"[worker] ERROR: {exc}", file=sys.stderr)
        logger.exception("Worker failed")
        return 1

    return 1 if result.get("error") else 0


if __name__ == "__main__":
    raise SystemExit(main())
