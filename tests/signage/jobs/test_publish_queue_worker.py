from unittest.mock import MagicMock, patch

import pytest

from signage.config import WorkerConfig
from signage.db.models import QueueStatus
from signage.jobs.publish_queue_worker import PublishQueueWorker
from signage.services.deterministic_publish import BulkPublishResult
from signage.services.publish_queue import PublishQueueService, ProcessResult
from signage.services.sync_locks import SyncLockService

LOCK = "publish_queue_worker"


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def publisher():
    publisher = MagicMock()
    publisher.bulk_publish.return_value = BulkPublishResult(
        correlation_id="dpub-1-abcd",
        advertiser_id=7,
        external_media_id=5001,
        targets_resolved=1,
        traces=[],
        summary={"success": 1, "failed": 0, "screens_in_playlist_mode": 1, "ads_inserted": 1},
        outcome="SUCCESS",
    )
    return publisher


def _worker(publisher, session_factory, clock, **config):
    return PublishQueueWorker(
        publisher,
        session_factory=session_factory,
        config=WorkerConfig(**config),
        clock=clock,
    )


def test_empty_cycle_releases_lock(session, session_factory, publisher, clock):
    worker = _worker(publisher, session_factory, clock)

    result = worker.run_cycle()

    assert result == {"skipped": False, "processed": 0, "results": [], "error": None}
    lock = SyncLockService.get_status(session, LOCK)
    assert not lock.locked
    assert lock.last_success_at is not None
    assert worker.last_cycle_at == clock.now


def test_cycle_skipped_while_another_worker_holds_lock(session, session_factory, publisher, clock):
    SyncLockService.acquire(session, LOCK, owner="other-host", timeout_seconds=300)
    worker = _worker(publisher, session_factory, clock)

    result = worker.run_cycle()

    assert result == {"skipped": True, "processed": 0, "results": []}
    publisher.bulk_publish.assert_not_called()
    assert worker.consecutive_errors == 0


def test_batch_processes_until_queue_empty(session, session_factory, make, publisher, clock):
    first = make.asset(storage_path="a.mp4")
    second = make.asset(storage_path="b.mp4", advertiser_id=8)
    a = PublishQueueService.enqueue(session, asset_id=first.id, advertiser_id=7)
    b = PublishQueueService.enqueue(session, asset_id=second.id, advertiser_id=8)
    worker = _worker(publisher, session_factory, clock, batch_size=5)

    result = worker.manual_process()

    assert result["processed"] == 2
    assert [r["item_id"] for r in result["results"]] == [a, b]
    assert all(r["status"] == QueueStatus.COMPLETED for r in result["results"])
    assert publisher.bulk_publish.call_count == 2


def test_batch_size_limits_cycle(session, session_factory, make, publisher, clock):
    for advertiser_id in (7, 8):
        asset = make.asset(storage_path=f"{advertiser_id}.mp4", advertiser_id=advertiser_id)
        PublishQueueService.enqueue(session, asset_id=asset.id, advertiser_id=advertiser_id)
    worker = _worker(publisher, session_factory, clock, batch_size=1)

    assert worker.run_cycle()["processed"] == 1
    assert PublishQueueService.stats(session)["pending"] == 1


def test_consecutive_errors_pause_then_resume(session_factory, publisher, clock):
    worker = _worker(
        publisher, session_factory, clock, max_consecutive_errors=2, cooldown_seconds=60, interval_seconds=10
    )

    with patch.object(PublishQueueService, "process_next_item", side_effect=RuntimeError("database gone")) as process:
        assert worker.step() == 10
        assert worker.consecutive_errors == 1
        assert worker.last_error == "RuntimeError: database gone"
        assert not worker.paused

        worker.step()
        assert worker.paused
        assert worker.resume_at == clock.now + 60

        clock.now += 30
        assert worker.step() == 10
        assert process.call_count == 2

        clock.now += 30
        worker.step()
        assert not worker.paused
        assert worker.consecutive_errors == 1
        assert process.call_count == 3


def test_wait_while_paused_never_exceeds_remaining_cooldown(session_factory, publisher, clock):
    worker = _worker(publisher, session_factory, clock, cooldown_seconds=60, interval_seconds=10)
    worker.pause()
    clock.now += 55

    assert worker.step() == 5


def test_successful_cycle_clears_error_count(session_factory, publisher, clock):
    worker = _worker(publisher, session_factory, clock)
    worker.consecutive_errors = 3
    worker.last_error = "boom"

    with patch.object(PublishQueueService, "process_next_item", return_value=ProcessResult(processed=False)):
        worker.run_cycle()

    assert worker.consecutive_errors == 0
    assert worker.last_error is None


def test_health_report(session_factory, publisher, clock):
    worker = _worker(publisher, session_factory, clock)
    worker.run_cycle()

    health = worker.health()

    assert set(health) == {
        "running", "paused", "consecutive_errors", "resume_at", "last_cycle_at", "last_error", "queue_stats",
    }
    assert health["running"] is False
    assert health["resume_at"] is None
    assert health["last_cycle_at"].startswith("2023-11-14")
    assert health["queue_stats"]["total"] == 0


def test_start_and_stop(session_factory, publisher):
    worker = PublishQueueWorker(publisher, session_factory=session_factory, config=WorkerConfig(interval_seconds=0.05))

    assert worker.start()
    assert not worker.start()
    worker.stop(timeout=5)

    assert not worker.running


def test_batch_stops_when_lock_is_lost(session, session_factory, make, publisher, clock):
    for advertiser_id in (7, 8):
        asset = make.asset(storage_path=f"{advertiser_id}.mp4", advertiser_id=advertiser_id)
        PublishQueueService.enqueue(session, asset_id=asset.id, advertiser_id=advertiser_id)
    worker = _worker(publisher, session_factory, clock, batch_size=5)

    def publish_then_lose_lock(*args, **kwargs):
        SyncLockService.force_break(session, LOCK)
        SyncLockService.acquire(session, LOCK, owner="other-host", timeout_seconds=300)
        return publisher.bulk_publish.return_value

    publisher.bulk_publish.side_effect = publish_then_lose_lock

    result = worker.run_cycle()

    assert result["processed"] == 1
    assert PublishQueueService.stats(session)["pending"] == 1
    session.expire_all()
    lock = SyncLockService.get_status(session, LOCK)
    assert lock.locked
    assert lock.locked_by == "other-host"
