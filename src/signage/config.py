"""Configuration models for the media publish pipeline."""

from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

# Load .env automatically on import (local dev)
load_dotenv()


class DeviceApiConfig(BaseModel):
    """Connection settings for the signage device-management API."""

    base_url: str = "https://app.yodeck.com/api/v2"
    api_key: Optional[str] = None
    request_timeout_seconds: float = 30.0
    upload_timeout_seconds: float = 300.0


class UploadConfig(BaseModel):
    """Upload transaction tuning."""

    stale_job_minutes: int = 15
    max_attempts: int = 5
    min_file_size_bytes: int = 100 * 1024
    finalize_attempts: int = 3
    finalize_retry_seconds: float = 2.0
    finalize_stuck_retries: int = 2
    poll_intervals_seconds: List[float] = [2, 3, 5, 5, 10, 15]
    poll_max_interval_seconds: float = 15.0
    poll_timeout_seconds: float = 300.0
    init_stuck_max_polls: int = 8


class QueueConfig(BaseModel):
    """Publish queue retry policy."""

    max_retries: int = 5
    base_delay_ms: int = 5000
    backoff_multiplier: float = 2.0
    max_delay_ms: int = 300000


class WorkerConfig(BaseModel):
    """Background queue worker settings."""

    lock_id: str = "publish_queue_worker"
    interval_seconds: float = 10.0
    lock_timeout_seconds: int = 30
    max_consecutive_errors: int = 5
    cooldown_seconds: float = 60.0
    batch_size: int = 1


class PublishConfig(BaseModel):
    """Deterministic publish behaviour."""

    playlist_name_prefix: str = "SIGNAGE | SCREEN |"
    settle_seconds: float = 2.0
    retry_settle_seconds: float = 3.0
    default_item_duration: int = 15


class ContentConfig(BaseModel):
    """Fallback content used to keep playlists from going empty."""

    self_ad_media_id: Optional[int] = None
    fallback_tag: str = "signage:ad"
    fallback_search_page_size: int = 50


class StorageConfig(BaseModel):
    """Object storage backend selection."""

    backend: str = "local"  # local, s3
    root: Path = Path("storage")
    s3_bucket: Optional[str] = None
    s3_prefix: str = ""


class MediaConfig(BaseModel):
    """Container and transcoder constraints for playable media."""

    max_duration_seconds: float = 60.0
    max_width: int = 1920
    max_height: int = 1080
    ffmpeg_binary: str = "ffmpeg"
    ffprobe_binary: str = "ffprobe"
    transcode_timeout_seconds: int = 300


class Settings(BaseModel):
    """Global settings for the publish pipeline."""

    device_api: DeviceApiConfig = Field(default_factory=DeviceApiConfig)
    upload: UploadConfig = Field(default_factory=UploadConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    publish: PublishConfig = Field(default_factory=PublishConfig)
    content: ContentConfig = Field(default_factory=ContentConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    media: MediaConfig = Field(default_factory=MediaConfig)


def _env_path(name: str, default: str) -> Path:
    value = os.environ.get(name) or default
    return Path(value).expanduser().resolve()

def _env_optional_int(name: str) -> int | None:
    value = os.environ.get(name)
    if not value:
        return None
    return int(value)

def _env_floats(name: str, default: List[float]) -> List[float]:
    value = os.environ.get(name)
    if not value:
        return list(default)
    return [float(part) for part in value.split(",") if part.strip()]


def load_settings() -> Settings:
    """Build Settings from environment variables (.env for local dev)."""
    try:
        device_api = DeviceApiConfig(
            base_url=os.getenv("DEVICE_API_BASE_URL", "https://app.yodeck.com/api/v2"),
            api_key=os.getenv("DEVICE_API_KEY"),
            request_timeout_seconds=float(os.getenv("DEVICE_API_TIMEOUT_SECS", "30")),
            upload_timeout_seconds=float(os.getenv("DEVICE_API_UPLOAD_TIMEOUT_SECS", "300")),
        )

        upload = UploadConfig(
            stale_job_minutes=int(os.getenv("UPLOAD_STALE_JOB_MINUTES", "15")),
            max_attempts=int(os.getenv("UPLOAD_MAX_ATTEMPTS", "5")),
            min_file_size_bytes=int(os.getenv("UPLOAD_MIN_FILE_SIZE_BYTES", str(100 * 1024))),
            finalize_attempts=int(os.getenv("UPLOAD_FINALIZE_ATTEMPTS", "3")),
            finalize_retry_seconds=float(os.getenv("UPLOAD_FINALIZE_RETRY_SECS", "2")),
            finalize_stuck_retries=int(os.getenv("UPLOAD_FINALIZE_STUCK_RETRIES", "2")),
            poll_intervals_seconds=_env_floats("UPLOAD_POLL_INTERVALS_SECS", [2, 3, 5, 5, 10, 15]),
            poll_max_interval_seconds=float(os.getenv("UPLOAD_POLL_MAX_INTERVAL_SECS", "15")),
            poll_timeout_seconds=float(os.getenv("UPLOAD_POLL_TIMEOUT_SECS", "300")),
            init_stuck_max_polls=int(os.getenv("UPLOAD_INIT_STUCK_MAX_POLLS", "8")),
        )

        queue = QueueConfig(
            max_retries=int(os.getenv("QUEUE_MAX_RETRIES", "5")),
            base_delay_ms=int(os.getenv("QUEUE_BASE_DELAY_MS", "5000")),
            backoff_multiplier=float(os.getenv("QUEUE_BACKOFF_MULTIPLIER", "2")),
            max_delay_ms=int(os.getenv("QUEUE_MAX_DELAY_MS", "300000")),
        )

        worker = WorkerConfig(
            lock_id=os.getenv("WORKER_LOCK_ID", "publish_queue_worker"),
            interval_seconds=float(os.getenv("WORKER_INTERVAL_SECS", "10")),
            lock_timeout_seconds=int(os.getenv("WORKER_LOCK_TIMEOUT_SECS", "30")),
            max_consecutive_errors=int(os.getenv("WORKER_MAX_CONSECUTIVE_ERRORS", "5")),
            cooldown_seconds=float(os.getenv("WORKER_COOLDOWN_SECS", "60")),
            batch_size=int(os.getenv("WORKER_BATCH_SIZE", "1")),
        )

        publish = PublishConfig(
            playlist_name_prefix=os.getenv("PUBLISH_PLAYLIST_PREFIX", "SIGNAGE | SCREEN |"),
            settle_seconds=float(os.getenv("PUBLISH_SETTLE_SECS", "2")),
            retry_settle_seconds=float(os.getenv("PUBLISH_RETRY_SETTLE_SECS", "3")),
            default_item_duration=int(os.getenv("PUBLISH_DEFAULT_ITEM_DURATION", "15")),
        )

        content = ContentConfig(
            self_ad_media_id=_env_optional_int("SELF_AD_MEDIA_ID"),
            fallback_tag=os.getenv("CONTENT_FALLBACK_TAG", "signage:ad"),
            fallback_search_page_size=int(os.getenv("CONTENT_FALLBACK_PAGE_SIZE", "50")),
        )

        storage = StorageConfig(
            backend=os.getenv("STORAGE_BACKEND", "local").lower(),
            root=_env_path("STORAGE_ROOT", "storage"),
            s3_bucket=os.getenv("STORAGE_S3_BUCKET"),
            s3_prefix=os.getenv("STORAGE_S3_PREFIX", ""),
        )

        media = MediaConfig(
            max_duration_seconds=float(os.getenv("MEDIA_MAX_DURATION_SECS", "60")),
            max_width=int(os.getenv("MEDIA_MAX_WIDTH", "1920")),
            max_height=int(os.getenv("MEDIA_MAX_HEIGHT", "1080")),
            ffmpeg_binary=os.getenv("FFMPEG_BINARY", "ffmpeg"),
            ffprobe_binary=os.getenv("FFPROBE_BINARY", "ffprobe"),
            transcode_timeout_seconds=int(os.getenv("MEDIA_TRANSCODE_TIMEOUT_SECS", "300")),
        )

        return Settings(
            device_api=device_api,
            upload=upload,
            queue=queue,
            worker=worker,
            publish=publish,
            content=content,
            storage=storage,
            media=media,
        )
    except (ValidationError, ValueError) as e:
        raise RuntimeError(f"Invalid settings: {e}") from e
