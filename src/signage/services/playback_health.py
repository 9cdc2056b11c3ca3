"""
Playback health diagnostics for a single screen, plus a self-heal that re-enters the
deterministic publish and content-guarantee paths.

get_playback_health never writes to the device API.
"""
from __future__ import annotations

import re
import secrets
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Set

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from signage.config import ContentConfig, PublishConfig
from signage.db.base import utcnow
from signage.db.models import AdAsset, Location, Placement, Screen
from signage.device_api.client import DeviceApiClient
from signage.services.content_guarantee import ContentGuaranteeSeeder
from signage.services.deterministic_publish import (
    DeterministicPublisher,
    dedupe_items,
    extract_media_id,
    playlist_items,
    screen_source,
)
from signage.services.pipeline_events import PipelineEventService
from signage.services.readiness import ReadinessGate

# Ordered by urgency
ACTION_URGENT_FIX_BLACK_SCREEN = "URGENT_FIX_BLACK_SCREEN"
ACTION_LINK_PLAYER = "LINK_PLAYER"
ACTION_ASSIGN_LOCATION = "ASSIGN_LOCATION"
ACTION_CREATE_PLAYLIST = "CREATE_PLAYLIST"
ACTION_REASSIGN_PLAYLIST = "REASSIGN_PLAYLIST"
ACTION_RESEED_BASELINE = "RESEED_BASELINE"
ACTION_DEDUP_PLAYLIST = "DEDUP_PLAYLIST"
ACTION_VALIDATE_ADS = "VALIDATE_ADS"
ACTION_SCREEN_NOT_FOUND = "SCREEN_NOT_FOUND"

STATUS_OK = "OK"
STATUS_NEEDS_ATTENTION = "NEEDS_ATTENTION"
STATUS_CRITICAL = "CRITICAL"
STATUS_NOT_FOUND = "NOT_FOUND"

_BASELINE_WORDS = ("baseline", "filler", "default", "loop", "fallback")
_HASH_LIKE = re.compile(r"^(?=.*\d)[a-z0-9]{8,}$")


def new_health_correlation_id() -> str:
    return f"pbh-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def _item_name(item: dict) -> str:
    name = item.get("name") or item.get("media_name")
    if not name and isinstance(item.get("item"), dict):
        name = item["item"].get("name")
    return str(name or "")


def classify_by_name(name: str) -> str:
    """Naming heuristic for items the database knows nothing about."""
    lowered = (name or "").lower()
    if any(word in lowered for word in _BASELINE_WORDS):
        return "baseline"
    if lowered.startswith("adv-") or "_ad_" in lowered:
        return "ad"
    stem = lowered.rsplit(".", 1)[0]
    if _HASH_LIKE.match(re.sub(r"[^a-z0-9]", "", stem)):
        return "ad"
    return "unknown"


def classify_playlist_item(
    item: dict, ad_media_ids: Set[int], self_ad_media_id: Optional[int] = None
) -> str:
    media_id = extract_media_id(item)
    if media_id is not None and media_id in ad_media_ids:
        return "ad"
    if media_id is not None and self_ad_media_id and media_id == self_ad_media_id:
        return "baseline"
    return classify_by_name(_item_name(item))


@dataclass
class ClassifiedItem:
    media_id: Optional[int]
    name: str
    duration: int
    category: str


@dataclass
class PlaybackHealth:
    correlation_id: str
    screen_id: int
    status: str = STATUS_OK
    screen: Dict[str, Any] = field(default_factory=dict)
    expected_source: Dict[str, Any] = field(default_factory=dict)
    actual_source: Dict[str, Any] = field(default_factory=dict)
    playlist_id: Optional[int] = None
    items: List[ClassifiedItem] = field(default_factory=list)
    baseline_count: int = 0
    ads_count: int = 0
    unknown_count: int = 0
    duplicate_media_ids: List[int] = field(default_factory=list)
    ads_ready: int = 0
    ads_not_ready: int = 0
    blocking_reasons: List[Dict[str, Any]] = field(default_factory=list)
    is_playlist_empty: bool = True
    playlist_unreadable: bool = False
    has_invalid_ad: bool = False
    has_duplicate_ad: bool = False
    has_mismatch: bool = False
    possible_black_screen: bool = True
    recommended_actions: List[str] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)

    @property
    def item_count(self) -> int:
        return len(self.items)

    def flags(self) -> Dict[str, bool]:
        return {
            "is_playlist_empty": self.is_playlist_empty,
            "playlist_unreadable": self.playlist_unreadable,
            "has_invalid_ad": self.has_invalid_ad,
            "has_duplicate_ad": self.has_duplicate_ad,
            "has_mismatch": self.has_mismatch,
            "POSSIBLE_BLACK_SCREEN": self.possible_black_screen,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["item_count"] = self.item_count
        data["flags"] = self.flags()
        return data


@dataclass
class RepairAction:
    action: str
    outcome: str  # success, failed, skipped
    details: str
    duration_ms: int


@dataclass
class RepairResult:
    correlation_id: str
    screen_id: int
    actions: List[RepairAction] = field(default_factory=list)
    final_state: Dict[str, Any] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PlaybackHealthService:
    """Screen diagnostics and the limited set of automatic repairs."""

    def __init__(
        self,
        client: DeviceApiClient,
        publisher: Optional[DeterministicPublisher] = None,
        seeder: Optional[ContentGuaranteeSeeder] = None,
        content_config: Optional[ContentConfig] = None,
        publish_config: Optional[PublishConfig] = None,
    ):
        self.client = client
        self.content_config = content_config or ContentConfig()
        self.publish_config = publish_config or PublishConfig()
        self.publisher = publisher or DeterministicPublisher(client, self.publish_config)
        self.seeder = seeder or ContentGuaranteeSeeder(client, self.content_config, self.publish_config)

    @staticmethod
    def _log(correlation_id: str, msg: str, logs: List[str]) -> None:
        entry = f"[HEALTH][{correlation_id}] {msg}"
        logger.info(entry)
        logs.append(entry)

    @staticmethod
    def _known_ad_media_ids(session: Session) -> Set[int]:
        rows = session.execute(
            select(AdAsset.external_media_id).where(AdAsset.external_media_id.is_not(None))
        ).scalars().all()
        return set(rows)

    def get_playback_health(self, session: Session, screen_id: int) -> PlaybackHealth:
        cid = new_health_correlation_id()
        health = PlaybackHealth(correlation_id=cid, screen_id=screen_id)
        logs = health.logs
        self._log(cid, f"Checking screen {screen_id}", logs)

        screen = session.get(Screen, screen_id)
        if screen is None:
            self._log(cid, f"Screen {screen_id} not found", logs)
            health.status = STATUS_NOT_FOUND
            health.recommended_actions = [ACTION_SCREEN_NOT_FOUND]
            return health

        location: Optional[Location] = screen.location
        health.screen = {
            "id": screen.id,
            "name": screen.name,
            "player_id": screen.player_id,
            "status": screen.status,
            "last_seen_at": screen.last_seen_at.isoformat() if screen.last_seen_at else None,
            "location_id": screen.location_id,
            "location_name": location.name if location else None,
        }
        expected_playlist_id = location.playlist_id if location else None
        health.playlist_id = expected_playlist_id
        health.expected_source = {
            "source_type": "playlist",
            "source_id": expected_playlist_id,
            "source_name": location.playlist_name if location else None,
        }
        health.actual_source = {"source_type": None, "source_id": None, "mismatch": False, "fetched": False}

        if screen.player_id:
            resp = self.client.get_screen(screen.player_id)
            if resp.ok and resp.data:
                source_type, source_id = screen_source(resp.data)
                mismatch = bool(expected_playlist_id) and (
                    source_type != "playlist" or source_id != expected_playlist_id
                )
                health.actual_source = {
                    "source_type": source_type,
                    "source_id": source_id,
                    "mismatch": mismatch,
                    "fetched": True,
                }
                health.has_mismatch = mismatch
                self._log(cid, f"Device reports {source_type}:{source_id} mismatch={mismatch}", logs)
            else:
                self._log(cid, f"Could not read player {screen.player_id}: {resp.error}", logs)

        if expected_playlist_id:
            resp = self.client.get_playlist(expected_playlist_id)
            if resp.ok and resp.data:
                self._classify_items(session, health, playlist_items(resp.data))
                self._log(
                    cid,
                    f"Playlist {expected_playlist_id}: {health.item_count} items "
                    f"(baseline={health.baseline_count}, ads={health.ads_count}, unknown={health.unknown_count})",
                    logs,
                )
            else:
                health.playlist_unreadable = True
                health.is_playlist_empty = False
                self._log(cid, f"Could not read playlist {expected_playlist_id}: {resp.error}", logs)

        placements = session.execute(
            select(Placement).where(Placement.screen_id == screen.id, Placement.is_active.is_(True))
        ).scalars().all()
        for placement in placements:
            check = ReadinessGate.check_advertiser_ready(session, placement.advertiser_id)
            if check.ready:
                health.ads_ready += 1
                continue
            health.ads_not_ready += 1
            health.has_invalid_ad = True
            health.blocking_reasons.append({
                "advertiser_id": placement.advertiser_id,
                "asset_id": check.asset_id,
                "status": check.status,
                "reason": check.reason,
                "next_action": check.next_action,
            })
        self._log(cid, f"Media readiness: {health.ads_ready} ready, {health.ads_not_ready} not ready", logs)

        # An unreadable playlist says nothing about what the screen shows
        health.possible_black_screen = not health.playlist_unreadable and (
            health.is_playlist_empty or (health.baseline_count == 0 and health.ads_count == 0)
        )
        health.recommended_actions = self._recommend(screen, location, health)
        if health.possible_black_screen:
            health.status = STATUS_CRITICAL
            logger.warning(f"[HEALTH][{cid}] Screen {screen_id} may be showing nothing")
        elif health.recommended_actions or health.playlist_unreadable:
            health.status = STATUS_NEEDS_ATTENTION
        self._log(cid, f"Recommended actions: {', '.join(health.recommended_actions) or 'none'}", logs)
        return health

    def _classify_items(self, session: Session, health: PlaybackHealth, items: List[dict]) -> None:
        ad_media_ids = self._known_ad_media_ids(session)
        seen: Set[int] = set()
        for item in items:
            media_id = extract_media_id(item)
            category = classify_playlist_item(item, ad_media_ids, self.content_config.self_ad_media_id)
            health.items.append(ClassifiedItem(
                media_id=media_id,
                name=_item_name(item),
                duration=item.get("duration") or self.publish_config.default_item_duration,
                category=category,
            ))
            if category == "baseline":
                health.baseline_count += 1
            elif category == "ad":
                health.ads_count += 1
            else:
                health.unknown_count += 1

            if media_id is not None:
                if media_id in seen and media_id not in health.duplicate_media_ids:
                    health.duplicate_media_ids.append(media_id)
                seen.add(media_id)

        health.is_playlist_empty = not items
        health.has_duplicate_ad = bool(health.duplicate_media_ids)

    @staticmethod
    def _recommend(screen: Screen, location: Optional[Location], health: PlaybackHealth) -> List[str]:
        actions = []
        if health.possible_black_screen:
            actions.append(ACTION_URGENT_FIX_BLACK_SCREEN)
        if not screen.player_id:
            actions.append(ACTION_LINK_PLAYER)
        if location is None:
            actions.append(ACTION_ASSIGN_LOCATION)
        if location is None or not location.playlist_id:
            actions.append(ACTION_CREATE_PLAYLIST)
        if health.has_mismatch:
            actions.append(ACTION_REASSIGN_PLAYLIST)
        if health.playlist_id and health.is_playlist_empty:
            actions.append(ACTION_RESEED_BASELINE)
        if health.has_duplicate_ad:
            actions.append(ACTION_DEDUP_PLAYLIST)
        if health.ads_not_ready:
            actions.append(ACTION_VALIDATE_ADS)
        return actions

    # Repair

    def _dedup(self, playlist_id: int, logs: List[str]) -> RepairAction:
        resp = self.client.get_playlist(playlist_id)
        if not resp.ok or not resp.data:
            return RepairAction(ACTION_DEDUP_PLAYLIST, "failed", f"Playlist fetch failed: {resp.error}", 0)

        items, duplicates = dedupe_items(playlist_items(resp.data), self.publish_config.default_item_duration)
        if not duplicates:
            return RepairAction(ACTION_DEDUP_PLAYLIST, "skipped", "No duplicates found", 0)
        if not items:
            return RepairAction(ACTION_DEDUP_PLAYLIST, "skipped", "Refusing to write an empty playlist", 0)

        patch = self.client.patch_playlist(playlist_id, {"items": items})
        if not patch.ok:
            return RepairAction(ACTION_DEDUP_PLAYLIST, "failed", f"Playlist update failed: {patch.error}", 0)
        logs.append(f"[Dedup] playlist {playlist_id} rewritten with {len(items)} items")
        return RepairAction(ACTION_DEDUP_PLAYLIST, "success", f"Removed {duplicates} duplicate items", 0)

    def _reassign(self, health: PlaybackHealth, logs: List[str]) -> RepairAction:
        player_id = health.screen.get("player_id")
        if not player_id or not health.playlist_id:
            return RepairAction(ACTION_REASSIGN_PLAYLIST, "skipped", "No player or playlist to assign", 0)
        mode = self.publisher.force_screen_to_playlist_mode(player_id, health.playlist_id, logs)
        if mode.ok:
            return RepairAction(
                ACTION_REASSIGN_PLAYLIST, "success", f"Screen verified on playlist {health.playlist_id}", 0
            )
        return RepairAction(ACTION_REASSIGN_PLAYLIST, "failed", mode.error or "enforcement failed", 0)

    def _reseed(self, health: PlaybackHealth, logs: List[str]) -> RepairAction:
        if not health.playlist_id:
            return RepairAction(ACTION_RESEED_BASELINE, "skipped", "No playlist to seed", 0)
        seed = self.seeder.ensure_playlist_non_empty(health.playlist_id)
        logs.extend(seed.logs)
        if seed.ok:
            return RepairAction(ACTION_RESEED_BASELINE, "success", f"Baseline seeded: {seed.action}", 0)
        return RepairAction(ACTION_RESEED_BASELINE, "failed", f"Baseline seed failed: {seed.error}", 0)

    def repair_screen(self, session: Session, screen_id: int) -> RepairResult:
        health = self.get_playback_health(session, screen_id)
        cid = health.correlation_id
        result = RepairResult(correlation_id=cid, screen_id=screen_id)
        logs = result.logs
        self._log(cid, f"Repairing screen {screen_id}", logs)

        handlers = {
            ACTION_DEDUP_PLAYLIST: lambda: self._dedup(health.playlist_id, logs),
            ACTION_REASSIGN_PLAYLIST: lambda: self._reassign(health, logs),
            ACTION_RESEED_BASELINE: lambda: self._reseed(health, logs),
        }

        for name in health.recommended_actions:
            started = time.monotonic()
            handler = handlers.get(name)
            if handler is None:
                action = RepairAction(name, "skipped", f"{name} is not repaired automatically", 0)
            else:
                try:
                    action = handler()
                except Exception as e:
                    logger.exception(f"[HEALTH][{cid}] {name} raised")
                    action = RepairAction(name, "failed", f"{type(e).__name__}: {e}", 0)
            action.duration_ms = int((time.monotonic() - started) * 1000)
            result.actions.append(action)
            self._log(cid, f"{name}: {action.outcome} - {action.details}", logs)

        final = self.get_playback_health(session, screen_id)
        result.final_state = {
            "playlist_item_count": final.item_count,
            "baseline_count": final.baseline_count,
            "ads_count": final.ads_count,
            "POSSIBLE_BLACK_SCREEN": final.possible_black_screen,
        }

        if health.status != STATUS_NOT_FOUND:
            PipelineEventService.log_event(
                session,
                event_type=PipelineEventService.EVENT_SCREEN_REPAIRED,
                entity_type=PipelineEventService.ENTITY_SCREEN,
                entity_id=screen_id,
                correlation_id=cid,
                old_status=health.status,
                new_status=final.status,
                payload={
                    "actions": [asdict(a) for a in result.actions],
                    "final_state": result.final_state,
                    "checked_at": utcnow().isoformat(),
                },
            )
        self._log(cid, "Repair complete", logs)
        return result
