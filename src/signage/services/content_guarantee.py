"""Keeps playlists from going empty by seeding them with a self-ad or any usable video."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional

from loguru import logger

from signage.config import ContentConfig, PublishConfig
from signage.device_api.client import DeviceApiClient, results_list
from signage.services.deterministic_publish import playlist_items

ACTION_NO_CHANGE = "no_change"
ACTION_APPENDED = "appended"
ACTION_TAGGED = "tagged"
ACTION_FAILED = "failed"

# Library statuses that make a video unusable as filler
_UNUSABLE_STATUSES = {"processing", "error", "failed", "pending"}


@dataclass
class SeedResult:
    ok: bool
    action: str
    media_id: Optional[int] = None
    error: Optional[str] = None
    logs: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "action": self.action,
            "media_id": self.media_id,
            "error": self.error,
            "logs": list(self.logs),
        }


def _created_at(media: dict) -> datetime:
    raw = media.get("created_at")
    if not raw:
        return datetime.min
    try:
        return datetime.fromisoformat(str(raw).replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        return datetime.min


def _tag_names(media: Any) -> List[str]:
    tags = (media.get("tags") or []) if isinstance(media, dict) else []
    names = []
    for tag in tags:
        if isinstance(tag, dict):
            tag = tag.get("name")
        if tag:
            names.append(str(tag))
    return names


class ContentGuaranteeSeeder:
    """Fallback seeder for empty playlists."""

    def __init__(
        self,
        client: DeviceApiClient,
        config: Optional[ContentConfig] = None,
        publish_config: Optional[PublishConfig] = None,
    ):
        self.client = client
        self.config = config or ContentConfig()
        self.publish_config = publish_config or PublishConfig()

    def _log(self, logs: List[str], msg: str) -> None:
        logger.info(f"[SEED] {msg}")
        logs.append(f"[SEED] {msg}")

    def find_fallback_media(self, logs: List[str]) -> Optional[int]:
        """Newest usable video in the library; the first video when none qualifies."""
        resp = self.client.list_media(media_type="video", page_size=self.config.fallback_search_page_size)
        if not resp.ok:
            self._log(logs, f"Media library lookup failed: {resp.error}")
            return None

        videos = [m for m in results_list(resp.data) if isinstance(m, dict) and m.get("id")]
        if not videos:
            self._log(logs, "No videos in media library")
            return None

        usable = [m for m in videos if str(m.get("status") or "").strip().lower() not in _UNUSABLE_STATUSES]
        if not usable:
            self._log(logs, f"None of {len(videos)} videos usable, last resort: first video {videos[0]['id']}")
            return int(videos[0]["id"])

        usable.sort(key=_created_at, reverse=True)
        chosen = usable[0]
        self._log(logs, f'Chose fallback video {chosen["id"]} "{chosen.get("name")}" ({len(usable)} usable)')
        return int(chosen["id"])

    def _append(self, playlist_id: int, media_id: int, current: List[dict], logs: List[str]) -> bool:
        items = [dict(i) for i in current]
        items.append({
            "id": media_id,
            "type": "media",
            "priority": len(items) + 1,
            "duration": self.publish_config.default_item_duration,
        })
        patch = self.client.patch_playlist(playlist_id, {"items": items})
        if not patch.ok:
            self._log(logs, f"Append to playlist {playlist_id} rejected: {patch.error}")
            return False

        verify = self.client.get_playlist(playlist_id)
        if verify.ok and playlist_items(verify.data):
            return True
        self._log(logs, f"Append to playlist {playlist_id} not visible on re-read")
        return False

    def _tag(self, media_id: int, logs: List[str]) -> bool:
        tag = self.config.fallback_tag
        current = self.client.get_media(media_id)
        tags = _tag_names(current.data) if current.ok else []
        if tag not in tags:
            patch = self.client.patch_media(media_id, {"tags": tags + [tag]})
            if not patch.ok:
                self._log(logs, f"Tagging media {media_id} failed: {patch.error}")
                return False

        verify = self.client.get_media(media_id)
        if verify.ok and tag in _tag_names(verify.data):
            return True
        self._log(logs, f'Tag "{tag}" not visible on media {media_id}')
        return False

    def ensure_playlist_non_empty(self, playlist_id: int) -> SeedResult:
        logs: List[str] = []
        resp = self.client.get_playlist(playlist_id)
        if not resp.ok or not isinstance(resp.data, dict):
            self._log(logs, f"Failed to fetch playlist {playlist_id}: {resp.error}")
            return SeedResult(ok=False, action=ACTION_FAILED, error=f"PLAYLIST_FETCH_FAILED: {resp.error}", logs=logs)

        current = playlist_items(resp.data)
        if current:
            self._log(logs, f"Playlist {playlist_id} has {len(current)} items")
            return SeedResult(ok=True, action=ACTION_NO_CHANGE, logs=logs)

        logger.warning(f"[SEED] Playlist {playlist_id} is empty, seeding")
        media_id = self.config.self_ad_media_id
        if media_id:
            self._log(logs, f"Using self-ad media {media_id}")
        else:
            media_id = self.find_fallback_media(logs)

        if not media_id:
            self._log(logs, "No media available to seed playlist")
            return SeedResult(ok=False, action=ACTION_FAILED, error="NO_MEDIA_AVAILABLE", logs=logs)

        if self._append(playlist_id, media_id, current, logs):
            self._log(logs, f"Playlist {playlist_id} seeded with media {media_id}")
            return SeedResult(ok=True, action=ACTION_APPENDED, media_id=media_id, logs=logs)

        self._log(logs, f"Falling back to tagging media {media_id}")
        if self._tag(media_id, logs):
            self._log(logs, f'Media {media_id} tagged "{self.config.fallback_tag}"')
            return SeedResult(ok=True, action=ACTION_TAGGED, media_id=media_id, logs=logs)

        logger.error(f"[SEED] Playlist {playlist_id} still empty: append and tag both failed")
        return SeedResult(
            ok=False,
            action=ACTION_FAILED,
            media_id=media_id,
            error="CONTENT_GUARANTEE_FAILED",
            logs=logs,
        )
