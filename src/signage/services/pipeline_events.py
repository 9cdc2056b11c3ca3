"""Service for logging pipeline audit events and publish traces."""
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from signage.db.models import PipelineEvent, PublishTraceRecord

if TYPE_CHECKING:
    from signage.services.deterministic_publish import PublishTrace


class PipelineEventService:
    """Append-only writes to pipeline_events and publish_traces."""

    # Standard event types
    EVENT_UPLOAD_STARTED = "UPLOAD_STARTED"
    EVENT_UPLOAD_COMPLETED = "UPLOAD_COMPLETED"
    EVENT_UPLOAD_FAILED = "UPLOAD_FAILED"
    EVENT_UPLOAD_RETRYING = "UPLOAD_RETRYING"
    EVENT_QUEUE_ENQUEUED = "QUEUE_ENQUEUED"
    EVENT_QUEUE_COMPLETED = "QUEUE_COMPLETED"
    EVENT_QUEUE_RETRY_SCHEDULED = "QUEUE_RETRY_SCHEDULED"
    EVENT_QUEUE_FAILED = "QUEUE_FAILED"
    EVENT_PUBLISH_COMPLETED = "PUBLISH_COMPLETED"
    EVENT_SCREEN_REPAIRED = "SCREEN_REPAIRED"
    EVENT_STATUS_CHANGE = "STATUS_CHANGE"

    ENTITY_UPLOAD_JOB = "upload_job"
    ENTITY_QUEUE_ITEM = "queue_item"
    ENTITY_ASSET = "ad_asset"
    ENTITY_SCREEN = "screen"

    @staticmethod
    def log_event(
        session: Session,
        *,
        event_type: str,
        entity_type: str,
        entity_id: Optional[int] = None,
        correlation_id: Optional[str] = None,
        old_status: Optional[str] = None,
        new_status: Optional[str] = None,
        error_code: Optional[str] = None,
        message: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        worker_id: Optional[str] = None,
    ) -> PipelineEvent:
        """Log an event to the pipeline_events table."""
        event = PipelineEvent(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            correlation_id=correlation_id,
            old_status=old_status,
            new_status=new_status,
            error_code=error_code,
            message=message[:1000] if message else message,
            payload=payload,
            worker_id=worker_id,
        )
        session.add(event)
        session.commit()
        session.refresh(event)
        return event

    @staticmethod
    def log_failure(
        session: Session,
        *,
        event_type: str,
        entity_type: str,
        entity_id: Optional[int],
        error_code: str,
        message: str,
        correlation_id: Optional[str] = None,
        old_status: Optional[str] = None,
        new_status: Optional[str] = None,
        exception_details: Optional[str] = None,
        worker_id: Optional[str] = None,
    ) -> PipelineEvent:
        payload = {}
        if exception_details:
            payload["exception"] = exception_details[:1000]  # Truncate

        return PipelineEventService.log_event(
            session,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            correlation_id=correlation_id,
            old_status=old_status,
            new_status=new_status,
            error_code=error_code,
            message=message,
            payload=payload if payload else None,
            worker_id=worker_id,
        )

    @staticmethod
    def record_trace(session: Session, trace: "PublishTrace") -> PublishTraceRecord:
        """Persist one per-screen publish trace. Diagnostics only."""
        record = PublishTraceRecord(
            correlation_id=trace.correlation_id,
            advertiser_id=trace.advertiser_id,
            screen_id=trace.screen_id,
            player_id=trace.player_id,
            source_type_before=trace.source_type_before,
            source_type_after=trace.source_type_after,
            was_in_layout_mode=trace.was_in_layout_mode,
            enforced_playlist_id=trace.enforced_playlist_id,
            playlist_mutation=trace.playlist_mutation.to_dict() if trace.playlist_mutation else None,
            verification_snapshot=trace.verification_snapshot,
            outcome=trace.outcome,
            failure_reason=trace.failure_reason,
            logs=list(trace.logs),
        )
        session.add(record)
        session.commit()
        return record

    @staticmethod
    def list_for_entity(session: Session, entity_type: str, entity_id: int) -> list[PipelineEvent]:
        return list(
            session.execute(
                select(PipelineEvent)
                .where(PipelineEvent.entity_type == entity_type, PipelineEvent.entity_id == entity_id)
                .order_by(PipelineEvent.id)
            ).scalars().all()
        )
