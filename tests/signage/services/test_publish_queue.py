from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select

from signage.config import QueueConfig
from signage.db.base import utcnow
from signage.db.models import PipelineEvent, PublishStatus, QueueStatus, ReadinessStatus
from signage.errors import PreconditionError
from signage.services.deterministic_publish import BulkPublishResult
from signage.services.publish_queue import PublishQueueService, backoff_delay_ms, item_to_dict


def _bulk(outcome, success=1, failed=0):
    return BulkPublishResult(
        correlation_id="dpub-1-abcd",
        advertiser_id=7,
        external_media_id=5001,
        targets_resolved=success + failed,
        traces=[],
        summary={"success": success, "failed": failed, "screens_in_playlist_mode": success, "ads_inserted": success},
        outcome=outcome,
    )


@pytest.mark.parametrize("retry_count,expected", [(0, 5000), (1, 10000), (2, 20000), (3, 40000), (10, 300000)])
def test_backoff_delay(retry_count, expected):
    assert backoff_delay_ms(retry_count, QueueConfig()) == expected


def test_enqueue_is_idempotent_per_asset(session, make):
    asset = make.asset()

    first = PublishQueueService.enqueue(session, asset_id=asset.id, advertiser_id=7)
    second = PublishQueueService.enqueue(session, asset_id=asset.id, advertiser_id=7, priority=9)

    assert first == second
    assert PublishQueueService.stats(session)["pending"] == 1


def test_enqueue_after_completion_creates_new_item(session, make):
    asset = make.asset()
    first = PublishQueueService.enqueue(session, asset_id=asset.id, advertiser_id=7)
    PublishQueueService.mark_completed(session, first, {"outcome": "SUCCESS"})

    second = PublishQueueService.enqueue(session, asset_id=asset.id, advertiser_id=7)

    assert second != first


def test_dequeue_orders_by_priority_and_skips_future(session, make):
    low = make.asset(storage_path="a.mp4")
    high = make.asset(storage_path="b.mp4", advertiser_id=8)
    later = make.asset(storage_path="c.mp4", advertiser_id=9)
    PublishQueueService.enqueue(session, asset_id=low.id, advertiser_id=7, priority=5)
    urgent = PublishQueueService.enqueue(session, asset_id=high.id, advertiser_id=8, priority=1)
    PublishQueueService.enqueue(
        session, asset_id=later.id, advertiser_id=9, scheduled_for=utcnow() + timedelta(hours=1)
    )

    item = PublishQueueService.dequeue_next(session)

    assert item.id == urgent
    assert item.status == QueueStatus.PROCESSING
    assert item.processed_at is not None
    assert PublishQueueService.dequeue_next(session).asset_id == low.id
    assert PublishQueueService.dequeue_next(session) is None


def test_failures_back_off_then_fail_permanently(session, make):
    asset = make.asset()
    item_id = PublishQueueService.enqueue(session, asset_id=asset.id, advertiser_id=7)

    for expected_retry in range(1, 6):
        before = utcnow()
        item = PublishQueueService.mark_failed(session, item_id, error_code="PUBLISH_FAILED", error_message="screen offline")
        assert item.status == QueueStatus.RETRYING
        assert item.retry_count == expected_retry
        assert item.scheduled_for >= before + timedelta(milliseconds=backoff_delay_ms(expected_retry - 1, QueueConfig()))

    item = PublishQueueService.mark_failed(session, item_id, error_code="PUBLISH_FAILED", error_message="screen offline")

    assert item.status == QueueStatus.FAILED
    assert item.active_key is None
    session.refresh(asset)
    assert asset.publish_status == PublishStatus.PUBLISH_FAILED
    assert asset.publish_error.startswith("PUBLISH_FAILED")

    delays = [
        e.payload["delay_ms"]
        for e in session.execute(
            select(PipelineEvent).where(PipelineEvent.event_type == "QUEUE_RETRY_SCHEDULED").order_by(PipelineEvent.id)
        ).scalars()
    ]
    assert delays == [5000, 10000, 20000, 40000, 80000]


def test_non_retryable_failure_is_immediate(session, make):
    asset = make.asset()
    item_id = PublishQueueService.enqueue(session, asset_id=asset.id, advertiser_id=7)

    item = PublishQueueService.mark_failed(
        session, item_id, error_code="MEDIA_NOT_READY", error_message="rejected", can_retry=False
    )

    assert item.status == QueueStatus.FAILED
    assert item.retry_count == 0


def test_retry_and_cancel(session, make):
    asset = make.asset()
    item_id = PublishQueueService.enqueue(session, asset_id=asset.id, advertiser_id=7)

    with pytest.raises(PreconditionError) as exc:
        PublishQueueService.retry_item(session, item_id)
    assert exc.value.code == "INVALID_QUEUE_STATE"

    PublishQueueService.mark_failed(session, item_id, error_code="X", error_message="x", can_retry=False)
    item = PublishQueueService.retry_item(session, item_id)
    assert item.status == QueueStatus.PENDING
    assert item.retry_count == 0
    assert item.active_key == str(asset.id)

    PublishQueueService.cancel_item(session, item_id)
    assert PublishQueueService.get_item(session, item_id) is None

    with pytest.raises(PreconditionError) as exc:
        PublishQueueService.cancel_item(session, item_id)
    assert exc.value.code == "QUEUE_ITEM_NOT_FOUND"


def test_retry_refused_when_asset_requeued(session, make):
    asset = make.asset()
    old = PublishQueueService.enqueue(session, asset_id=asset.id, advertiser_id=7)
    PublishQueueService.mark_failed(session, old, error_code="X", error_message="x", can_retry=False)
    PublishQueueService.enqueue(session, asset_id=asset.id, advertiser_id=7)

    with pytest.raises(PreconditionError) as exc:
        PublishQueueService.retry_item(session, old)
    assert exc.value.code == "ALREADY_QUEUED"


def test_completed_item_cannot_be_cancelled(session, make):
    asset = make.asset()
    item_id = PublishQueueService.enqueue(session, asset_id=asset.id, advertiser_id=7)
    PublishQueueService.mark_completed(session, item_id)

    with pytest.raises(PreconditionError):
        PublishQueueService.cancel_item(session, item_id)


def test_stats_and_listing(session, make):
    a = make.asset(storage_path="a.mp4")
    b = make.asset(storage_path="b.mp4", advertiser_id=8)
    PublishQueueService.enqueue(session, asset_id=a.id, advertiser_id=7)
    done = PublishQueueService.enqueue(session, asset_id=b.id, advertiser_id=8)
    PublishQueueService.dequeue_next(session)
    PublishQueueService.mark_completed(session, done)

    stats = PublishQueueService.stats(session)
    assert stats["total"] == 2
    assert stats["completed"] + stats["processing"] + stats["pending"] == 2
    assert stats["avg_wait_ms"] >= 0

    items = PublishQueueService.list_items(session, advertiser_id=8)
    assert [i.id for i in items] == [done]
    data = item_to_dict(items[0])
    assert data["status"] == QueueStatus.COMPLETED
    assert data["assetId"] == b.id


class TestProcessNextItem:
    def test_empty_queue(self, session):
        result = PublishQueueService.process_next_item(session, MagicMock())
        assert not result.processed

    def test_success_marks_completed_and_published(self, session, make):
        asset = make.asset()
        item_id = PublishQueueService.enqueue(session, asset_id=asset.id, advertiser_id=7)
        publisher = MagicMock()
        publisher.bulk_publish.return_value = _bulk("SUCCESS")

        result = PublishQueueService.process_next_item(session, publisher)

        assert result.status == QueueStatus.COMPLETED
        assert result.outcome == "SUCCESS"
        publisher.bulk_publish.assert_called_once_with(session, 7)
        item = PublishQueueService.get_item(session, item_id)
        assert item.result["summary"]["success"] == 1
        session.refresh(asset)
        assert asset.publish_status == PublishStatus.PUBLISHED
        assert asset.published_at is not None

    def test_partial_publish_retries(self, session, make):
        asset = make.asset()
        PublishQueueService.enqueue(session, asset_id=asset.id, advertiser_id=7)
        publisher = MagicMock()
        publisher.bulk_publish.return_value = _bulk("PARTIAL", success=1, failed=1)

        result = PublishQueueService.process_next_item(session, publisher)

        assert result.status == QueueStatus.RETRYING
        assert result.error_code == "PUBLISH_FAILED"
        assert "1/2" in result.error

    def test_unready_asset_fails_without_retry(self, session, make):
        asset = make.asset(readiness_status=ReadinessStatus.REJECTED)
        PublishQueueService.enqueue(session, asset_id=asset.id, advertiser_id=7)
        publisher = MagicMock()

        result = PublishQueueService.process_next_item(session, publisher)

        assert result.status == QueueStatus.FAILED
        assert result.error_code == "MEDIA_NOT_READY"
        publisher.bulk_publish.assert_not_called()

    def test_missing_asset(self, session):
        PublishQueueService.enqueue(session, asset_id=999, advertiser_id=7)
        result = PublishQueueService.process_next_item(session, MagicMock())
        assert result.error_code == "ASSET_NOT_FOUND"
        assert result.status == QueueStatus.FAILED

    def test_unexpected_error_is_retried(self, session, make):
        asset = make.asset()
        PublishQueueService.enqueue(session, asset_id=asset.id, advertiser_id=7)
        publisher = MagicMock()
        publisher.bulk_publish.side_effect = RuntimeError("socket closed")

        result = PublishQueueService.process_next_item(session, publisher)

        assert result.status == QueueStatus.RETRYING
        assert result.error_code == "PROCESSING_ERROR"
        assert result.error == "socket closed"

    def test_superseded_asset_is_never_published(self, session, make):
        newer = make.asset(storage_path="ads/adv7/new.mp4", external_media_id=6002)
        older = make.asset(external_media_id=5001, is_superseded=True, superseded_by_id=newer.id)
        PublishQueueService.enqueue(session, asset_id=older.id, advertiser_id=7)
        publisher = MagicMock()

        result = PublishQueueService.process_next_item(session, publisher)

        assert result.status == QueueStatus.FAILED
        assert result.error_code == "ASSET_SUPERSEDED"
        publisher.bulk_publish.assert_not_called()
        session.refresh(older)
        assert older.publish_status != PublishStatus.PUBLISHED

    def test_success_for_other_media_is_not_recorded_as_published(self, session, make):
        asset = make.asset(external_media_id=4000)
        item_id = PublishQueueService.enqueue(session, asset_id=asset.id, advertiser_id=7)
        publisher = MagicMock()
        publisher.bulk_publish.return_value = _bulk("SUCCESS")

        result = PublishQueueService.process_next_item(session, publisher)

        assert result.status == QueueStatus.FAILED
        assert result.error_code == "ASSET_SUPERSEDED"
        assert "5001" in result.error
        assert PublishQueueService.get_item(session, item_id).result["outcome"] == "SUCCESS"
        session.refresh(asset)
        assert asset.publish_status == PublishStatus.PUBLISH_FAILED
        assert asset.published_at is None
