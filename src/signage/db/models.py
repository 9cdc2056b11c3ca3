"""ORM models for the external media publish pipeline."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    JSON,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from signage.db.base import Base

# Utility for cross-dialect JSON support (JSONB on Postgres, JSON on SQLite)
JSON_VARIANT = JSON().with_variant(JSONB, "postgresql")


class ReadinessStatus:
    PENDING = "PENDING"
    VALIDATING = "VALIDATING"
    NEEDS_NORMALIZATION = "NEEDS_NORMALIZATION"
    NORMALIZING = "NORMALIZING"
    READY_FOR_YODECK = "READY_FOR_YODECK"
    REJECTED = "REJECTED"

    PROCESSING = (VALIDATING, NEEDS_NORMALIZATION, NORMALIZING)


class UploadJobStatus:
    UPLOADING = "UPLOADING"
    POLLING = "POLLING"
    READY = "READY"
    RETRYING = "RETRYING"
    PERMANENT_FAIL = "PERMANENT_FAIL"

    ACTIVE = (UPLOADING, POLLING, RETRYING)
    TERMINAL = (READY, PERMANENT_FAIL)


class QueueStatus:
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    RETRYING = "RETRYING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    ACTIVE = (PENDING, PROCESSING, RETRYING)


class PublishStatus:
    PUBLISHED = "PUBLISHED"
    PUBLISH_FAILED = "PUBLISH_FAILED"


class Location(Base):
    """A physical venue. Owns exactly one canonical playlist once resolved."""

    __tablename__ = "locations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    playlist_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    playlist_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Relationships
    screens: Mapped[List["Screen"]] = relationship(back_populates="location")


class Screen(Base):
    """A signage screen, linked to an external player device."""

    __tablename__ = "screens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    player_id: Mapped[Optional[int]] = mapped_column(Integer, unique=True, nullable=True)
    location_id: Mapped[Optional[int]] = mapped_column(ForeignKey("locations.id"), nullable=True)
    status: Mapped[str] = mapped_column(String(50), default="unknown", nullable=False)
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    location: Mapped[Optional["Location"]] = relationship(back_populates="screens")
    placements: Mapped[List["Placement"]] = relationship(back_populates="screen")


class Placement(Base):
    """An advertiser booked onto a screen."""

    __tablename__ = "placements"

    __table_args__ = (
        Index("idx_placements_advertiser_active", "advertiser_id", "is_active"),
        Index("idx_placements_screen_active", "screen_id", "is_active"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    screen_id: Mapped[int] = mapped_column(ForeignKey("screens.id"), nullable=False)
    advertiser_id: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Relationships
    screen: Mapped["Screen"] = relationship(back_populates="placements")


class AdAsset(Base):
    """One uploaded advertisement file and its readiness lifecycle."""

    __tablename__ = "ad_assets"

    __table_args__ = (
        Index("idx_ad_assets_advertiser_status", "advertiser_id", "readiness_status", "is_superseded"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    advertiser_id: Mapped[int] = mapped_column(Integer, nullable=False)
    original_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    file_size: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Storage locations (raw / transcoded / normalized)
    storage_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    converted_storage_path: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    normalized_storage_path: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    readiness_status: Mapped[str] = mapped_column(String(50), default=ReadinessStatus.PENDING, nullable=False)
    reject_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    media_metadata: Mapped[Optional[dict]] = mapped_column(JSON_VARIANT, nullable=True)

    normalization_provider: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    normalization_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    normalization_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    normalization_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Canonical external media id
    external_media_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    uploaded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    is_superseded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    superseded_by_id: Mapped[Optional[int]] = mapped_column(ForeignKey("ad_assets.id"), nullable=True)

    publish_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    publish_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def playable_path(self) -> str:
        return self.normalized_storage_path or self.converted_storage_path or self.storage_path


class UploadJob(Base):
    """One attempt to transfer an asset's bytes to the device platform."""

    __tablename__ = "upload_jobs"

    __table_args__ = (
        Index("idx_upload_jobs_key_status", "idempotency_key", "status"),
        Index("idx_upload_jobs_advertiser", "advertiser_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    correlation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    advertiser_id: Mapped[int] = mapped_column(Integer, nullable=False)
    asset_id: Mapped[Optional[int]] = mapped_column(ForeignKey("ad_assets.id"), nullable=True)
    asset_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    desired_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_size: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Idempotency: active_key mirrors idempotency_key while the job is non-terminal
    idempotency_key: Mapped[str] = mapped_column(String(1100), nullable=False)
    active_key: Mapped[Optional[str]] = mapped_column(String(1100), unique=True, nullable=True)

    external_media_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(50), default=UploadJobStatus.UPLOADING, nullable=False)
    final_state: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    attempt: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    poll_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    last_error_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    last_error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_error_raw: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    phase_log: Mapped[Optional[list]] = mapped_column(JSON_VARIANT, nullable=True)

    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class PublishQueueItem(Base):
    """One unit of 'insert this asset into a live playlist' work."""

    __tablename__ = "publish_queue"

    __table_args__ = (
        Index("idx_publish_queue_pick", "status", "priority", "created_at"),
        Index("idx_publish_queue_asset", "asset_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    asset_id: Mapped[int] = mapped_column(Integer, nullable=False)
    advertiser_id: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(50), default=QueueStatus.PENDING, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_retries: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    scheduled_for: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Holds str(asset_id) while the item is non-terminal
    active_key: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)

    error_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    result: Mapped[Optional[dict]] = mapped_column(JSON_VARIANT, nullable=True)

    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class PublishTraceRecord(Base):
    """Append-only audit record of one publish attempt to one screen."""

    __tablename__ = "publish_traces"

    __table_args__ = (
        Index("idx_publish_traces_correlation", "correlation_id"),
        Index("idx_publish_traces_screen", "screen_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    correlation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    advertiser_id: Mapped[int] = mapped_column(Integer, nullable=False)
    screen_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    player_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    source_type_before: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    source_type_after: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    was_in_layout_mode: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    enforced_playlist_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    playlist_mutation: Mapped[Optional[dict]] = mapped_column(JSON_VARIANT, nullable=True)
    verification_snapshot: Mapped[Optional[dict]] = mapped_column(JSON_VARIANT, nullable=True)

    outcome: Mapped[str] = mapped_column(String(20), nullable=False)  # SUCCESS, FAILED, PARTIAL
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    logs: Mapped[Optional[list]] = mapped_column(JSON_VARIANT, nullable=True)


class PipelineEvent(Base):
    """Append-only audit trail for uploads, queue items and publishes."""

    __tablename__ = "pipeline_events"

    __table_args__ = (
        Index("idx_pipeline_events_entity", "entity_type", "entity_id", "created_at"),
        Index("idx_pipeline_events_correlation", "correlation_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    correlation_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)  # upload_job, queue_item, screen
    entity_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    old_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    new_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payload: Mapped[Optional[dict]] = mapped_column(JSON_VARIANT, nullable=True)
    worker_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)


class SyncLock(Base):
    """Distributed lock row, one per worker role."""

    __tablename__ = "sync_locks"

    __table_args__ = (
        Index("idx_sync_locks_expires_at", "expires_at"),
    )

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    locked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    locked_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_success_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
