"""Background worker that drains the publish queue under a distributed lock."""
from __future__ import annotations

import argparse
import sys
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from dotenv import load_dotenv
from loguru import logger
from sqlalchemy.orm import Session

# Load env immediately to ensure DATABASE_URL is set for DB base
load_dotenv()

from signage.config import QueueConfig, WorkerConfig, load_settings
from signage.db.base import SessionLocal
from signage.device_api.client import DeviceApiClient
from signage.services.deterministic_publish import DeterministicPublisher
from signage.services.publish_queue import PublishQueueService
from signage.services.sync_locks import SyncLockHandle


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, timezone.utc).isoformat()


class PublishQueueWorker:
    """
    One worker instance: its own lock handle, counters and supervisor thread.

    Each cycle takes the `publish_queue_worker` lock, processes up to batch_size
    items, then releases the lock. A cycle that cannot get the lock is skipped.
    After max_consecutive_errors failed cycles the worker pauses and resumes on
    its own once cooldown_seconds have passed.
    """

    def __init__(
        self,
        publisher: DeterministicPublisher,
        *,
        session_factory: Callable[[], Session] = SessionLocal,
        config: Optional[WorkerConfig] = None,
        queue_config: Optional[QueueConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.publisher = publisher
        self.session_factory = session_factory
        self.config = config or WorkerConfig()
        self.queue_config = queue_config or QueueConfig()
        self.clock = clock
        self.lock = SyncLockHandle(
            session_factory,
            self.config.lock_id,
            timeout_seconds=self.config.lock_timeout_seconds,
        )

        self.consecutive_errors = 0
        self.paused = False
        self.resume_at: Optional[float] = None
        self.last_cycle_at: Optional[float] = None
        self.last_error: Optional[str] = None

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._cycle_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # Lifecycle

    def start(self) -> bool:
        if self.running:
            logger.info("[WORKER] Already running")
            return False
        self._stop.clear()
        self._thread = threading.Thread(target=self._supervise, name="publish-queue-worker", daemon=True)
        self._thread.start()
        logger.info(
            f"[WORKER] Started (interval={self.config.interval_seconds}s, batch={self.config.batch_size}, "
            f"owner={self.lock.owner})"
        )
        return True

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout if timeout is not None else self.config.interval_seconds + 5)
            self._thread = None
        logger.info("[WORKER] Stopped")

    def _supervise(self) -> None:
        while not self._stop.is_set():
            delay = self.step()
            self._stop.wait(delay)

    def step(self) -> float:
        """One supervisor tick. Returns how long to wait before the next one."""
        now = self.clock()
        if self.paused:
            if self.resume_at is not None and now >= self.resume_at:
                self.resume()
            else:
                remaining = (self.resume_at or now) - now
                return max(0.0, min(self.config.interval_seconds, remaining))

        self.run_cycle()
        return self.config.interval_seconds

    def pause(self) -> None:
        self.paused = True
        self.resume_at = self.clock() + self.config.cooldown_seconds
        logger.warning(
            f"[WORKER] Paused after {self.consecutive_errors} consecutive errors, "
            f"resuming at {_iso(self.resume_at)}"
        )

    def resume(self) -> None:
        logger.info("[WORKER] Cooldown elapsed, resuming")
        self.paused = False
        self.resume_at = None
        self.consecutive_errors = 0

    # Work

    def run_cycle(self) -> Dict[str, Any]:
        """Process up to batch_size queue items under the worker lock."""
        with self._cycle_lock:
            self.last_cycle_at = self.clock()
            if not self.lock.acquire():
                reason = self.lock.last_result.reason if self.lock.last_result else "unknown"
                logger.debug(f"[WORKER] Lock not acquired ({reason}), skipping cycle")
                return {"skipped": True, "processed": 0, "results": []}

            results = []
            error: Optional[str] = None
            session = self.session_factory()
            try:
                for index in range(max(1, self.config.batch_size)):
                    if index and not self.lock.extend():
                        logger.warning(f"[WORKER] Lost {self.lock.lock_id} mid-cycle, stopping after {len(results)} item(s)")
                        break
                    result = PublishQueueService.process_next_item(
                        session, self.publisher, config=self.queue_config
                    )
                    if not result.processed:
                        break
                    results.append(result.to_dict())
            except Exception as e:
                error = f"{type(e).__name__}: {e}"
                logger.exception("[WORKER] Cycle failed")
            finally:
                session.close()
                self.lock.release(success=error is None, error=error)

            if error is None:
                self.consecutive_errors = 0
                self.last_error = None
            else:
                self.consecutive_errors += 1
                self.last_error = error
                if self.consecutive_errors >= self.config.max_consecutive_errors and not self.paused:
                    self.pause()

            if results:
                logger.info(f"[WORKER] Cycle processed {len(results)} item(s)")
            return {"skipped": False, "processed": len(results), "results": results, "error": error}

    def manual_process(self) -> Dict[str, Any]:
        logger.info("[WORKER] Manual cycle requested")
        return self.run_cycle()

    def health(self) -> Dict[str, Any]:
        session = self.session_factory()
        try:
            queue_stats = PublishQueueService.stats(session)
        finally:
            session.close()
        return {
            "running": self.running,
            "paused": self.paused,
            "consecutive_errors": self.consecutive_errors,
            "resume_at": _iso(self.resume_at),
            "last_cycle_at": _iso(self.last_cycle_at),
            "last_error": self.last_error,
            "queue_stats": queue_stats,
        }


def build_worker() -> PublishQueueWorker:
    settings = load_settings()
    client = DeviceApiClient(settings.device_api)
    publisher = DeterministicPublisher(client, settings.publish)
    return PublishQueueWorker(publisher, config=settings.worker, queue_config=settings.queue)


def main():
    parser = argparse.ArgumentParser(description="Publish queue worker")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit (default)")
    parser.add_argument("--loop", action="store_true", help="Run the supervised loop until interrupted")
    parser.add_argument("--batch-size", type=int, help="Items per cycle (overrides WORKER_BATCH_SIZE)")
    args = parser.parse_args()

    logger.remove()
    logger.add(sys.stdout, level="INFO")

    worker = build_worker()
    if args.batch_size:
        worker.config = worker.config.model_copy(update={"batch_size": args.batch_size})

    if args.loop:
        worker.start()
        try:
            while worker.running:
                time.sleep(1)
        except KeyboardInterrupt:
            logger.info("[WORKER] Interrupted")
        finally:
            worker.stop()
        return 0

    result = worker.run_cycle()
    logger.info(f"[WORKER] Result: {result}")
    return 1 if result.get("error") else 0


if __name__ == "__main__":
    raise SystemExit(main())
