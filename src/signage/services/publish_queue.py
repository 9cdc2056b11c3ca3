"""Durable publish queue with idempotent enqueue and exponential backoff."""
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from loguru import logger
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from signage.config import QueueConfig
from signage.db.base import as_naive_utc, utcnow
from signage.db.models import AdAsset, PublishQueueItem, PublishStatus, QueueStatus
from signage.errors import AssetSupersededError, MediaNotReadyError, PreconditionError
from signage.services.pipeline_events import PipelineEventService
from signage.services.readiness import ReadinessGate

if TYPE_CHECKING:
    from signage.services.deterministic_publish import DeterministicPublisher


@dataclass
class ProcessResult:
    processed: bool
    item_id: Optional[int] = None
    status: Optional[str] = None
    outcome: Optional[str] = None
    error_code: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def backoff_delay_ms(retry_count: int, config: QueueConfig) -> int:
    """delay = min(base * multiplier^retry_count, max)"""
    delay = config.base_delay_ms * (config.backoff_multiplier ** retry_count)
    return int(min(delay, config.max_delay_ms))


def item_to_dict(item: PublishQueueItem) -> Dict[str, Any]:
    def iso(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    return {
        "id": item.id,
        "assetId": item.asset_id,
        "advertiserId": item.advertiser_id,
        "status": item.status,
        "priority": item.priority,
        "retryCount": item.retry_count,
        "maxRetries": item.max_retries,
        "scheduledFor": iso(item.scheduled_for),
        "processedAt": iso(item.processed_at),
        "completedAt": iso(item.completed_at),
        "errorCode": item.error_code,
        "errorMessage": item.error_message,
        "result": item.result,
        "createdAt": iso(item.created_at),
    }


class PublishQueueService:
    """Queue operations. One non-terminal item per asset, enforced by active_key."""

    @staticmethod
    def enqueue(
        session: Session,
        *,
        asset_id: int,
        advertiser_id: int,
        priority: int = 0,
        scheduled_for: Optional[datetime] = None,
        config: Optional[QueueConfig] = None,
    ) -> int:
        config = config or QueueConfig()
        key = str(asset_id)

        existing = session.execute(
            select(PublishQueueItem).where(PublishQueueItem.active_key == key)
        ).scalar_one_or_none()
        if existing is not None:
            logger.info(f"[QUEUE] Asset {asset_id} already queued as item {existing.id} ({existing.status})")
            return existing.id

        item = PublishQueueItem(
            asset_id=asset_id,
            advertiser_id=advertiser_id,
            status=QueueStatus.PENDING,
            priority=priority,
            retry_count=0,
            max_retries=config.max_retries,
            scheduled_for=as_naive_utc(scheduled_for),
            active_key=key,
        )
        session.add(item)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            winner = session.execute(
                select(PublishQueueItem).where(PublishQueueItem.active_key == key)
            ).scalar_one()
            return winner.id

        PipelineEventService.log_event(
            session,
            event_type=PipelineEventService.EVENT_QUEUE_ENQUEUED,
            entity_type=PipelineEventService.ENTITY_QUEUE_ITEM,
            entity_id=item.id,
            new_status=QueueStatus.PENDING,
            payload={"asset_id": asset_id, "advertiser_id": advertiser_id, "priority": priority},
        )
        logger.info(f"[QUEUE] Enqueued asset {asset_id} as item {item.id} (priority {priority})")
        return item.id

    @staticmethod
    def dequeue_next(session: Session) -> Optional[PublishQueueItem]:
        """Claim the next eligible item and flip it to PROCESSING."""
        now = utcnow()
        stmt = (
            select(PublishQueueItem)
            .where(
                or_(
                    PublishQueueItem.status == QueueStatus.PENDING,
                    PublishQueueItem.status == QueueStatus.RETRYING,
                ),
                or_(
                    PublishQueueItem.scheduled_for.is_(None),
                    PublishQueueItem.scheduled_for <= now,
                ),
            )
            .order_by(
                PublishQueueItem.priority.asc(),
                PublishQueueItem.created_at.asc(),
                PublishQueueItem.id.asc(),
            )
            .limit(1)
        )
        if session.get_bind().dialect.name == "postgresql":
            stmt = stmt.with_for_update(skip_locked=True)

        item = session.execute(stmt).scalar_one_or_none()
        if item is None:
            session.rollback()
            return None

        claimed = session.execute(
            update(PublishQueueItem)
            .where(PublishQueueItem.id == item.id, PublishQueueItem.status == item.status)
            .values(status=QueueStatus.PROCESSING, processed_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            session.rollback()
            return None
        session.commit()
        session.refresh(item)
        return item

    @staticmethod
    def mark_completed(session: Session, item_id: int, result: Optional[Dict[str, Any]] = None) -> None:
        item = session.get(PublishQueueItem, item_id)
        if item is None:
            return
        old_status = item.status
        item.status = QueueStatus.COMPLETED
        item.completed_at = utcnow()
        item.active_key = None
        item.error_code = None
        item.error_message = None
        item.result = result
        session.commit()

        PipelineEventService.log_event(
            session,
            event_type=PipelineEventService.EVENT_QUEUE_COMPLETED,
            entity_type=PipelineEventService.ENTITY_QUEUE_ITEM,
            entity_id=item.id,
            old_status=old_status,
            new_status=QueueStatus.COMPLETED,
            payload={"outcome": (result or {}).get("outcome")},
        )

    @staticmethod
    def mark_failed(
        session: Session,
        item_id: int,
        *,
        error_code: str,
        error_message: str,
        can_retry: bool = True,
        result: Optional[Dict[str, Any]] = None,
        config: Optional[QueueConfig] = None,
    ) -> Optional[PublishQueueItem]:
        config = config or QueueConfig()
        item = session.get(PublishQueueItem, item_id)
        if item is None:
            return None

        old_status = item.status
        item.error_code = error_code
        item.error_message = error_message[:1000]
        if result is not None:
            item.result = result

        if can_retry and item.retry_count < item.max_retries:
            delay_ms = backoff_delay_ms(item.retry_count, config)
            item.retry_count += 1
            item.status = QueueStatus.RETRYING
            item.scheduled_for = utcnow() + timedelta(milliseconds=delay_ms)
            session.commit()
            PipelineEventService.log_event(
                session,
                event_type=PipelineEventService.EVENT_QUEUE_RETRY_SCHEDULED,
                entity_type=PipelineEventService.ENTITY_QUEUE_ITEM,
                entity_id=item.id,
                old_status=old_status,
                new_status=QueueStatus.RETRYING,
                error_code=error_code,
                message=error_message,
                payload={"retry_count": item.retry_count, "delay_ms": delay_ms},
            )
            logger.warning(
                f"[QUEUE] Item {item.id} failed ({error_code}), retry {item.retry_count}/{item.max_retries} in {delay_ms}ms"
            )
            return item

        item.status = QueueStatus.FAILED
        item.completed_at = utcnow()
        item.active_key = None
        asset = session.get(AdAsset, item.asset_id)
        if asset is not None:
            asset.publish_status = PublishStatus.PUBLISH_FAILED
            asset.publish_error = f"{error_code}: {error_message}"[:1000]
        session.commit()

        PipelineEventService.log_failure(
            session,
            event_type=PipelineEventService.EVENT_QUEUE_FAILED,
            entity_type=PipelineEventService.ENTITY_QUEUE_ITEM,
            entity_id=item.id,
            error_code=error_code,
            message=error_message,
            old_status=old_status,
            new_status=QueueStatus.FAILED,
        )
        logger.error(f"[QUEUE] Item {item.id} FAILED permanently: {error_code} {error_message[:200]}")
        return item

    @staticmethod
    def stats(session: Session) -> Dict[str, Any]:
        counts = dict(
            session.execute(
                select(PublishQueueItem.status, func.count(PublishQueueItem.id)).group_by(PublishQueueItem.status)
            ).all()
        )
        waits = [
            (as_naive_utc(processed) - as_naive_utc(created)).total_seconds() * 1000
            for created, processed in session.execute(
                select(PublishQueueItem.created_at, PublishQueueItem.processed_at)
                .where(PublishQueueItem.processed_at.is_not(None))
            ).all()
        ]
        return {
            "total": sum(counts.values()),
            "pending": counts.get(QueueStatus.PENDING, 0),
            "processing": counts.get(QueueStatus.PROCESSING, 0),
            "completed": counts.get(QueueStatus.COMPLETED, 0),
            "failed": counts.get(QueueStatus.FAILED, 0),
            "retrying": counts.get(QueueStatus.RETRYING, 0),
            "avg_wait_ms": int(sum(waits) / len(waits)) if waits else 0,
        }

    @staticmethod
    def list_items(
        session: Session,
        *,
        status: Optional[str] = None,
        advertiser_id: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[PublishQueueItem]:
        stmt = select(PublishQueueItem)
        if status:
            stmt = stmt.where(PublishQueueItem.status == status)
        if advertiser_id is not None:
            stmt = stmt.where(PublishQueueItem.advertiser_id == advertiser_id)
        stmt = stmt.order_by(PublishQueueItem.created_at.desc(), PublishQueueItem.id.desc()).limit(limit).offset(offset)
        return list(session.execute(stmt).scalars().all())

    @staticmethod
    def get_item(session: Session, item_id: int) -> Optional[PublishQueueItem]:
        return session.get(PublishQueueItem, item_id)

    @staticmethod
    def retry_item(session: Session, item_id: int) -> PublishQueueItem:
        item = session.get(PublishQueueItem, item_id)
        if item is None:
            raise PreconditionError(f"Queue item {item_id} not found", code="QUEUE_ITEM_NOT_FOUND")
        if item.status not in (QueueStatus.FAILED, QueueStatus.RETRYING):
            raise PreconditionError(
                f"Queue item {item_id} is {item.status}; only FAILED or RETRYING items can be retried",
                code="INVALID_QUEUE_STATE",
            )

        key = str(item.asset_id)
        holder = session.execute(
            select(PublishQueueItem).where(PublishQueueItem.active_key == key, PublishQueueItem.id != item.id)
        ).scalar_one_or_none()
        if holder is not None:
            raise PreconditionError(
                f"Asset {item.asset_id} already has active queue item {holder.id}",
                code="ALREADY_QUEUED",
            )

        item.status = QueueStatus.PENDING
        item.retry_count = 0
        item.error_code = None
        item.error_message = None
        item.scheduled_for = None
        item.completed_at = None
        item.active_key = key
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise PreconditionError(f"Asset {item.asset_id} was queued concurrently", code="ALREADY_QUEUED")
        logger.info(f"[QUEUE] Item {item_id} reset to PENDING for manual retry")
        return item

    @staticmethod
    def cancel_item(session: Session, item_id: int) -> None:
        item = session.get(PublishQueueItem, item_id)
        if item is None:
            raise PreconditionError(f"Queue item {item_id} not found", code="QUEUE_ITEM_NOT_FOUND")
        if item.status == QueueStatus.COMPLETED:
            raise PreconditionError(f"Queue item {item_id} is already completed", code="INVALID_QUEUE_STATE")
        session.delete(item)
        session.commit()
        logger.info(f"[QUEUE] Item {item_id} cancelled")

    @staticmethod
    def process_next_item(
        session: Session,
        publisher: "DeterministicPublisher",
        *,
        config: Optional[QueueConfig] = None,
    ) -> ProcessResult:
        """Dequeue one item and run it through the readiness gate and bulk publish."""
        item = PublishQueueService.dequeue_next(session)
        if item is None:
            return ProcessResult(processed=False)

        item_id = item.id
        logger.info(f"[QUEUE] Processing item {item_id} (asset {item.asset_id}, attempt {item.retry_count + 1})")

        def fail(code: str, message: str, can_retry: bool, result: Optional[dict] = None) -> ProcessResult:
            failed = PublishQueueService.mark_failed(
                session, item_id, error_code=code, error_message=message,
                can_retry=can_retry, result=result, config=config,
            )
            return ProcessResult(
                processed=True,
                item_id=item_id,
                status=failed.status if failed else None,
                outcome=(result or {}).get("outcome"),
                error_code=code,
                error=message,
            )

        try:
            asset = session.get(AdAsset, item.asset_id)
            if asset is None:
                return fail("ASSET_NOT_FOUND", f"Asset {item.asset_id} not found", False)

            try:
                ReadinessGate.require_asset_ready(session, item.asset_id)
                bulk = publisher.bulk_publish(session, item.advertiser_id)
            except AssetSupersededError as e:
                return fail(e.code, e.message, False)
            except MediaNotReadyError as e:
                return fail("MEDIA_NOT_READY", e.message, False)

            summary = bulk.to_summary()
            if bulk.external_media_id and bulk.external_media_id != asset.external_media_id:
                # The advertiser's live media is no longer this item's asset
                return fail(
                    "ASSET_SUPERSEDED",
                    f"Published media {bulk.external_media_id}, not asset {asset.id} media {asset.external_media_id}",
                    False,
                    summary,
                )
            if bulk.outcome in ("SUCCESS", "NO_TARGETS"):
                PublishQueueService.mark_completed(session, item_id, summary)
                if bulk.outcome == "SUCCESS":
                    asset.publish_status = PublishStatus.PUBLISHED
                    asset.publish_error = None
                    asset.published_at = utcnow()
                    session.commit()
                logger.info(f"[QUEUE] Item {item_id} completed: {bulk.outcome}")
                return ProcessResult(processed=True, item_id=item_id, status=QueueStatus.COMPLETED, outcome=bulk.outcome)

            failed = bulk.summary.get("failed", 0)
            return fail(
                "PUBLISH_FAILED",
                f"Publish {bulk.outcome}: {failed}/{bulk.targets_resolved} screen(s) failed",
                True,
                summary,
            )
        except Exception as e:
            logger.exception(f"[QUEUE] Unexpected error processing item {item_id}")
            session.rollback()
            return fail("PROCESSING_ERROR", str(e), True)
