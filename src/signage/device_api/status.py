"""Classification of device API media status strings."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class MediaStatus(str, Enum):
    READY = "READY"
    IN_PROGRESS = "IN_PROGRESS"
    INITIALIZING = "INITIALIZING"
    FAILED = "FAILED"
    UNKNOWN = "UNKNOWN"


_STATUS_MAP: Dict[str, MediaStatus] = {
    "ready": MediaStatus.READY,
    "done": MediaStatus.READY,
    "encoded": MediaStatus.READY,
    "active": MediaStatus.READY,
    "ok": MediaStatus.READY,
    "completed": MediaStatus.READY,
    "finished": MediaStatus.READY,
    "initialized": MediaStatus.INITIALIZING,
    "initializing": MediaStatus.INITIALIZING,
    "uploading": MediaStatus.IN_PROGRESS,
    "uploaded": MediaStatus.IN_PROGRESS,
    "processing": MediaStatus.IN_PROGRESS,
    "encoding": MediaStatus.IN_PROGRESS,
    "converting": MediaStatus.IN_PROGRESS,
    "pending": MediaStatus.IN_PROGRESS,
    "queued": MediaStatus.IN_PROGRESS,
    "failed": MediaStatus.FAILED,
    "error": MediaStatus.FAILED,
    "encoding_failed": MediaStatus.FAILED,
    "aborted": MediaStatus.FAILED,
}


def classify_media_status(raw: Optional[str]) -> MediaStatus:
    """Map an external status string onto MediaStatus. Unrecognized values are UNKNOWN."""
    if not raw:
        return MediaStatus.UNKNOWN
    return _STATUS_MAP.get(str(raw).strip().lower(), MediaStatus.UNKNOWN)


@dataclass
class MediaFileState:
    """File materialization fields pulled out of a media document."""

    raw_status: Optional[str]
    status: MediaStatus
    file_size: int
    file_url: Optional[str]
    play_from_url: Optional[str]
    download_from_url: Optional[str]

    @property
    def has_file(self) -> bool:
        return self.file_size > 0 or bool(self.file_url)

    @property
    def has_unsafe_playback_urls(self) -> bool:
        return bool(self.play_from_url) or bool(self.download_from_url)

    @classmethod
    def from_media(cls, media: Optional[Dict[str, Any]]) -> "MediaFileState":
        media = media or {}
        raw_status = media.get("status")

        size = 0
        for key in ("filesize", "file_size", "fileSize"):
            value = media.get(key)
            if value:
                try:
                    size = int(value)
                except (TypeError, ValueError):
                    continue
                break

        file_obj = media.get("file")
        file_url = None
        if isinstance(file_obj, dict):
            file_url = file_obj.get("url") or file_obj.get("file_url")
            if not size and file_obj.get("size"):
                try:
                    size = int(file_obj["size"])
                except (TypeError, ValueError):
                    pass
        elif isinstance(file_obj, str) and file_obj:
            file_url = file_obj
        file_url = file_url or media.get("file_url")

        arguments = media.get("arguments") or {}
        if not isinstance(arguments, dict):
            arguments = {}

        return cls(
            raw_status=raw_status,
            status=classify_media_status(raw_status),
            file_size=size,
            file_url=file_url,
            play_from_url=arguments.get("play_from_url") or None,
            download_from_url=arguments.get("download_from_url") or None,
        )
