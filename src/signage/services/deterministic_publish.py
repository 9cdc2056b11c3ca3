"""
Deterministic publish: put one ad into the canonical playlist of every target screen
and only report success after re-reading the screen and playlist.

Per screen:
    1. resolve (or create) the location's canonical playlist
    2. force the screen into playlist mode on that playlist
    3. dedupe playlist items and append the ad if missing
    4. push, settle
    5. hard-verify; on failure push again, wait, verify once more
"""
from __future__ import annotations

import secrets
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from signage.config import PublishConfig
from signage.db.models import Location, Placement, Screen
from signage.device_api.client import DeviceApiClient, results_list
from signage.errors import DeviceApiError, LayoutForbiddenError, guard_no_layout
from signage.services.pipeline_events import PipelineEventService
from signage.services.readiness import ReadinessGate

OUTCOME_SUCCESS = "SUCCESS"
OUTCOME_FAILED = "FAILED"
OUTCOME_PARTIAL = "PARTIAL"
OUTCOME_NO_TARGETS = "NO_TARGETS"


def new_publish_correlation_id() -> str:
    return f"dpub-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


# Playlist item helpers (shared with playback health)

def extract_media_id(item: Any) -> Optional[int]:
    """Playlist items carry the media id as `media`, `item.id` or `id`."""
    if not isinstance(item, dict):
        return None
    candidate = item.get("media")
    if isinstance(candidate, dict):
        candidate = candidate.get("id")
    if not candidate and isinstance(item.get("item"), dict):
        candidate = item["item"].get("id")
    if not candidate:
        candidate = item.get("id")
    if isinstance(candidate, bool) or not isinstance(candidate, int):
        return None
    return candidate


def playlist_items(playlist: Any) -> List[dict]:
    if not isinstance(playlist, dict):
        return []
    items = playlist.get("items") or []
    return [i for i in items if isinstance(i, dict)]


def dedupe_items(items: List[dict], default_duration: int = 15) -> Tuple[List[dict], int]:
    """Drop repeated media ids, keep order and durations, renumber priority 1..n."""
    seen = set()
    result = []
    duplicates = 0
    for item in items:
        media_id = extract_media_id(item)
        if media_id is None:
            continue
        if media_id in seen:
            duplicates += 1
            continue
        seen.add(media_id)
        result.append({
            "id": media_id,
            "type": "media",
            "priority": len(result) + 1,
            "duration": item.get("duration") or default_duration,
        })
    return result, duplicates


def screen_source(screen: Any) -> Tuple[str, Optional[int]]:
    content = (screen.get("screen_content") or {}) if isinstance(screen, dict) else {}
    return content.get("source_type") or "unknown", content.get("source_id")


@dataclass
class ScreenTarget:
    player_id: int
    screen_id: Optional[int] = None
    location_id: Optional[int] = None
    location_name: Optional[str] = None
    expected_playlist_id: Optional[int] = None


@dataclass
class CanonicalPlaylist:
    ok: bool
    playlist_id: Optional[int] = None
    playlist_name: Optional[str] = None
    was_created: bool = False
    error: Optional[str] = None


@dataclass
class ModeEnforcement:
    ok: bool
    source_type_before: str = "unknown"
    source_id_before: Optional[int] = None
    source_type_after: str = "unknown"
    source_id_after: Optional[int] = None
    was_in_layout_mode: bool = False
    patched: bool = False
    pushed: bool = False
    error: Optional[str] = None


@dataclass
class PlaylistMutation:
    playlist_id: int
    playlist_name: str
    baseline_count: int
    ads_before: int
    ads_after: int
    inserted: List[int] = field(default_factory=list)
    already_present: List[int] = field(default_factory=list)
    duplicates_removed: int = 0
    total_items: int = 0
    written: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class VerificationResult:
    ok: bool
    snapshot: Dict[str, Any]
    error: Optional[str] = None


@dataclass
class PublishTrace:
    correlation_id: str
    advertiser_id: int
    player_id: int
    screen_id: Optional[int] = None
    source_type_before: str = "unknown"
    source_type_after: str = "unknown"
    was_in_layout_mode: bool = False
    enforced_playlist_id: Optional[int] = None
    playlist_mutation: Optional[PlaylistMutation] = None
    verification_snapshot: Optional[Dict[str, Any]] = None
    outcome: str = OUTCOME_FAILED
    failure_reason: Optional[str] = None
    logs: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["playlist_mutation"] = self.playlist_mutation.to_dict() if self.playlist_mutation else None
        return data


@dataclass
class BulkPublishResult:
    correlation_id: str
    advertiser_id: int
    external_media_id: Optional[int]
    targets_resolved: int
    traces: List[PublishTrace]
    summary: Dict[str, int]
    outcome: str

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["traces"] = [t.to_dict() for t in self.traces]
        return data

    def to_summary(self) -> Dict[str, Any]:
        """Compact form stored on queue items."""
        return {
            "correlation_id": self.correlation_id,
            "outcome": self.outcome,
            "external_media_id": self.external_media_id,
            "targets_resolved": self.targets_resolved,
            "summary": dict(self.summary),
            "screens": [
                {
                    "screen_id": t.screen_id,
                    "player_id": t.player_id,
                    "outcome": t.outcome,
                    "failure_reason": t.failure_reason,
                }
                for t in self.traces
            ],
        }


class DeterministicPublisher:
    """Publishes an advertiser's canonical media to screens with hard verification."""

    def __init__(
        self,
        client: DeviceApiClient,
        config: Optional[PublishConfig] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.config = config or PublishConfig()
        self.sleep = sleep

    @staticmethod
    def _log(correlation_id: str, step: str, msg: str, logs: List[str]) -> None:
        entry = f"[PUBLISH][{correlation_id}] {step}: {msg}"
        logger.info(entry)
        logs.append(entry)

    def canonical_playlist_name(self, location_name: str) -> str:
        return f"{self.config.playlist_name_prefix} {location_name}"

    # Step 1

    def resolve_canonical_playlist(self, session: Session, location: Location, logs: List[str]) -> CanonicalPlaylist:
        expected_name = self.canonical_playlist_name(location.name)

        if location.playlist_id:
            resp = self.client.get_playlist(location.playlist_id)
            if resp.ok and resp.data:
                logs.append(f"[CanonicalPlaylist] Location {location.id} playlist {location.playlist_id} exists")
                return CanonicalPlaylist(
                    ok=True,
                    playlist_id=location.playlist_id,
                    playlist_name=(resp.data or {}).get("name") or expected_name,
                )
            if not resp.not_found:
                return CanonicalPlaylist(ok=False, error=f"Could not verify playlist {location.playlist_id}: {resp.error}")
            logs.append(f"[CanonicalPlaylist] Stored playlist {location.playlist_id} is gone, re-resolving")

        search = self.client.search_playlists(expected_name)
        if search.ok:
            match = next((p for p in results_list(search.data) if p.get("name") == expected_name), None)
            if match and match.get("id"):
                location.playlist_id = int(match["id"])
                location.playlist_name = expected_name
                session.commit()
                logs.append(f'[CanonicalPlaylist] Found existing playlist {match["id"]} "{expected_name}"')
                return CanonicalPlaylist(ok=True, playlist_id=location.playlist_id, playlist_name=expected_name)

        logs.append(f'[CanonicalPlaylist] Creating playlist "{expected_name}"')
        created = self.client.create_playlist(expected_name, [])
        new_id = (created.data or {}).get("id") if isinstance(created.data, dict) else None
        if not created.ok or not new_id:
            return CanonicalPlaylist(ok=False, error=created.error or "Failed to create playlist")

        location.playlist_id = int(new_id)
        location.playlist_name = expected_name
        session.commit()
        return CanonicalPlaylist(ok=True, playlist_id=location.playlist_id, playlist_name=expected_name, was_created=True)

    # Step 2

    def force_screen_to_playlist_mode(self, player_id: int, playlist_id: int, logs: List[str]) -> ModeEnforcement:
        current = self.client.get_screen(player_id)
        if not current.ok or not current.data:
            logs.append(f"[PlaylistEnforcer] Could not fetch screen {player_id}: {current.error}")
            return ModeEnforcement(ok=False, error=current.error or "screen fetch failed")

        before_type, before_id = screen_source(current.data)
        result = ModeEnforcement(
            ok=False,
            source_type_before=before_type,
            source_id_before=before_id,
            source_type_after=before_type,
            source_id_after=before_id,
            was_in_layout_mode=before_type == "layout",
        )
        logs.append(f"[PlaylistEnforcer] before={{source_type:{before_type}, source_id:{before_id}}}")

        if before_type == "playlist" and before_id == playlist_id:
            logs.append(f"[PlaylistEnforcer] ALREADY_OK on playlist {playlist_id}")
            result.ok = True
            return result

        if result.was_in_layout_mode:
            logs.append("[PlaylistEnforcer] LAYOUT_DETECTED: forcing playlist mode")
        patch = self.client.patch_screen(player_id, {
            "screen_content": {"source_type": "playlist", "source_id": playlist_id},
        })
        if not patch.ok:
            result.error = f"PATCH failed: {patch.error}"
            logs.append(f"[PlaylistEnforcer] PATCH_FAILED: {patch.error}")
            return result
        result.patched = True

        push = self.client.push_screen(player_id)
        result.pushed = push.ok
        if not push.ok:
            logs.append(f"[PlaylistEnforcer] PUSH_WARNING: {push.error} (continuing)")

        after = self.client.get_screen(player_id)
        if not after.ok or not after.data:
            result.source_type_after, result.source_id_after = "unknown", None
            result.error = "VERIFY_FAILED: could not re-read screen"
            logs.append("[PlaylistEnforcer] VERIFY_FAILED: could not re-read screen")
            return result

        after_type, after_id = screen_source(after.data)
        result.source_type_after, result.source_id_after = after_type, after_id
        logs.append(f"[PlaylistEnforcer] after={{source_type:{after_type}, source_id:{after_id}}}")
        if after_type != "playlist" or after_id != playlist_id:
            result.error = f"HARD_FAIL: screen on {after_type}:{after_id}, expected playlist:{playlist_id}"
            logs.append(f"[PlaylistEnforcer] {result.error}")
            return result

        result.ok = True
        return result

    # Step 3

    def update_playlist_with_ad(
        self, playlist_id: int, media_id: int, logs: Optional[List[str]] = None
    ) -> PlaylistMutation:
        """Idempotent: a second call with the same media leaves the playlist unchanged."""
        logs = logs if logs is not None else []
        resp = self.client.get_playlist(playlist_id)
        if not resp.ok or not resp.data:
            raise DeviceApiError(
                f"Failed to fetch playlist {playlist_id}: {resp.error}",
                code="PLAYLIST_FETCH_FAILED",
                status_code=resp.status_code,
            )

        name = resp.data.get("name") or f"Playlist {playlist_id}"
        current = playlist_items(resp.data)
        items, duplicates = dedupe_items(current, self.config.default_item_duration)
        already = any(i["id"] == media_id for i in items)

        mutation = PlaylistMutation(
            playlist_id=playlist_id,
            playlist_name=name,
            baseline_count=0,
            ads_before=1 if already else 0,
            ads_after=1,
            duplicates_removed=duplicates,
        )
        if already:
            mutation.already_present.append(media_id)
            logs.append(f"[PlaylistUpdate] media {media_id} already present")
        else:
            items.append({
                "id": media_id,
                "type": "media",
                "priority": len(items) + 1,
                "duration": self.config.default_item_duration,
            })
            mutation.inserted.append(media_id)
            logs.append(f"[PlaylistUpdate] media {media_id} not present, appending")

        mutation.total_items = len(items)
        mutation.baseline_count = len(items) - 1

        as_is = [
            {
                "id": extract_media_id(i),
                "type": i.get("type", "media"),
                "priority": i.get("priority"),
                "duration": i.get("duration") or self.config.default_item_duration,
            }
            for i in current
        ]
        if items != as_is:
            patch = self.client.patch_playlist(playlist_id, {"items": items})
            if not patch.ok:
                raise DeviceApiError(
                    f"Failed to update playlist {playlist_id}: {patch.error}",
                    code="PLAYLIST_UPDATE_FAILED",
                    status_code=patch.status_code,
                )
            mutation.written = True

        logs.append(
            f"[PlaylistUpdate] total={mutation.total_items} inserted={len(mutation.inserted)} "
            f"duplicates_removed={duplicates} written={mutation.written}"
        )
        return mutation

    # Step 5

    def verify_ad_in_playlist(
        self, player_id: int, playlist_id: int, media_id: int, logs: List[str]
    ) -> VerificationResult:
        snapshot: Dict[str, Any] = {
            "source_type": "unknown",
            "playlist_id": None,
            "ads_count": 0,
            "contains_expected_media": False,
            "expected_media_id": media_id,
            "playlist_items": [],
        }

        screen = self.client.get_screen(player_id)
        if not screen.ok or not screen.data:
            return VerificationResult(ok=False, snapshot=snapshot, error=screen.error or "screen fetch failed")

        source_type, source_id = screen_source(screen.data)
        snapshot["source_type"] = source_type
        snapshot["playlist_id"] = source_id

        try:
            guard_no_layout(source_type, f"verify screen={player_id}")
        except LayoutForbiddenError as e:
            logs.append(f"[Verify] {e.message}")
            return VerificationResult(ok=False, snapshot=snapshot, error=e.message)

        if source_type != "playlist":
            logs.append(f'[Verify] FAILED: source_type="{source_type}" is not "playlist"')
            return VerificationResult(ok=False, snapshot=snapshot, error=f"Screen is in {source_type} mode")

        if source_id != playlist_id:
            logs.append(f"[Verify] FAILED: playlist {source_id} != expected {playlist_id}")
            return VerificationResult(
                ok=False, snapshot=snapshot, error=f"Screen on wrong playlist {source_id}, expected {playlist_id}"
            )

        playlist = self.client.get_playlist(playlist_id)
        if not playlist.ok or not playlist.data:
            return VerificationResult(ok=False, snapshot=snapshot, error="Failed to fetch playlist items")

        ids = [m for m in (extract_media_id(i) for i in playlist_items(playlist.data)) if m is not None]
        snapshot["playlist_items"] = ids
        if media_id not in ids:
            logs.append(f"[Verify] FAILED: media {media_id} not in {ids}")
            return VerificationResult(ok=False, snapshot=snapshot, error=f"Media {media_id} not found in playlist")

        snapshot["contains_expected_media"] = True
        snapshot["ads_count"] = 1
        logs.append(f"[Verify] OK: media {media_id} present, total={len(ids)}")
        return VerificationResult(ok=True, snapshot=snapshot)

    # Targets

    def resolve_target_screens(
        self, session: Session, advertiser_id: int, target_player_ids: Optional[List[int]] = None
    ) -> List[ScreenTarget]:
        if target_player_ids:
            targets = []
            for player_id in target_player_ids:
                screen = session.execute(
                    select(Screen).where(Screen.player_id == int(player_id))
                ).scalar_one_or_none()
                targets.append(self._target_for(screen, int(player_id)))
            return targets

        screens = session.execute(
            select(Screen)
            .join(Placement, Placement.screen_id == Screen.id)
            .where(Placement.advertiser_id == advertiser_id, Placement.is_active.is_(True))
            .distinct()
            .order_by(Screen.id)
        ).scalars().all()
        return [self._target_for(s, s.player_id) for s in screens if s.player_id]

    @staticmethod
    def _target_for(screen: Optional[Screen], player_id: int) -> ScreenTarget:
        if screen is None:
            return ScreenTarget(player_id=player_id)
        location = screen.location
        return ScreenTarget(
            player_id=player_id,
            screen_id=screen.id,
            location_id=screen.location_id,
            location_name=location.name if location else None,
            expected_playlist_id=location.playlist_id if location else None,
        )

    # Per-screen flow

    def publish_to_screen(
        self,
        session: Session,
        advertiser_id: int,
        target: ScreenTarget,
        external_media_id: int,
        correlation_id: str,
    ) -> PublishTrace:
        ReadinessGate.require_media_ready(session, advertiser_id, external_media_id)

        trace = PublishTrace(
            correlation_id=correlation_id,
            advertiser_id=advertiser_id,
            player_id=target.player_id,
            screen_id=target.screen_id,
        )
        try:
            self._publish_steps(session, target, external_media_id, trace)
        finally:
            PipelineEventService.record_trace(session, trace)
        return trace

    def _publish_steps(self, session: Session, target: ScreenTarget, media_id: int, trace: PublishTrace) -> None:
        cid, logs = trace.correlation_id, trace.logs
        self._log(cid, "START", f"screen={target.screen_id} player={target.player_id} media={media_id}", logs)

        location = session.get(Location, target.location_id) if target.location_id else None
        if location is None:
            trace.failure_reason = "NO_CANONICAL_PLAYLIST: screen has no location"
            self._log(cid, "FAILED", trace.failure_reason, logs)
            return

        canonical = self.resolve_canonical_playlist(session, location, logs)
        if not canonical.ok:
            trace.failure_reason = f"NO_CANONICAL_PLAYLIST: {canonical.error}"
            self._log(cid, "FAILED", trace.failure_reason, logs)
            return
        playlist_id = canonical.playlist_id
        trace.enforced_playlist_id = playlist_id

        mode = self.force_screen_to_playlist_mode(target.player_id, playlist_id, logs)
        trace.source_type_before = mode.source_type_before
        trace.source_type_after = mode.source_type_after
        trace.was_in_layout_mode = mode.was_in_layout_mode
        if not mode.ok:
            trace.failure_reason = f"Playlist enforcement failed: {mode.error}"
            self._log(cid, "FAILED", trace.failure_reason, logs)
            return

        try:
            trace.playlist_mutation = self.update_playlist_with_ad(playlist_id, media_id, logs)
        except DeviceApiError as e:
            trace.failure_reason = f"Playlist update failed: {e.message}"
            self._log(cid, "FAILED", trace.failure_reason, logs)
            return

        self._log(cid, "PUSH", f"player={target.player_id}", logs)
        self.client.push_screen(target.player_id)
        self.sleep(self.config.settle_seconds)

        verification = self.verify_ad_in_playlist(target.player_id, playlist_id, media_id, logs)
        if not verification.ok:
            self._log(cid, "RETRY", f"verification failed ({verification.error}), pushing again", logs)
            self.client.push_screen(target.player_id)
            self.sleep(self.config.retry_settle_seconds)
            verification = self.verify_ad_in_playlist(target.player_id, playlist_id, media_id, logs)

        trace.verification_snapshot = verification.snapshot
        trace.source_type_after = verification.snapshot.get("source_type") or trace.source_type_after
        if not verification.ok:
            trace.failure_reason = f"Verification failed after retry: {verification.error}"
            self._log(cid, "FAILED", trace.failure_reason, logs)
            return

        trace.outcome = OUTCOME_SUCCESS
        self._log(cid, "SUCCESS", f"media {media_id} verified on playlist {playlist_id}", logs)

    # Fan-out

    def bulk_publish(
        self, session: Session, advertiser_id: int, target_player_ids: Optional[List[int]] = None
    ) -> BulkPublishResult:
        correlation_id = new_publish_correlation_id()
        asset = ReadinessGate.require_advertiser_ready(session, advertiser_id)
        media_id = asset.external_media_id
        logger.info(f"[PUBLISH][{correlation_id}] START advertiser={advertiser_id} asset={asset.id} media={media_id}")

        targets = self.resolve_target_screens(session, advertiser_id, target_player_ids)
        summary = {"success": 0, "failed": 0, "screens_in_playlist_mode": 0, "ads_inserted": 0}
        if not targets:
            logger.info(f"[PUBLISH][{correlation_id}] NO_TARGETS")
            return BulkPublishResult(correlation_id, advertiser_id, media_id, 0, [], summary, OUTCOME_NO_TARGETS)

        traces = []
        for target in targets:
            trace = self.publish_to_screen(session, advertiser_id, target, media_id, correlation_id)
            traces.append(trace)
            if trace.outcome == OUTCOME_SUCCESS:
                summary["success"] += 1
                if trace.source_type_after == "playlist":
                    summary["screens_in_playlist_mode"] += 1
                if trace.playlist_mutation:
                    summary["ads_inserted"] += len(trace.playlist_mutation.inserted)
            else:
                summary["failed"] += 1

        if summary["success"] == len(targets):
            outcome = OUTCOME_SUCCESS
        elif summary["success"] > 0:
            outcome = OUTCOME_PARTIAL
        else:
            outcome = OUTCOME_FAILED

        PipelineEventService.log_event(
            session,
            event_type=PipelineEventService.EVENT_PUBLISH_COMPLETED,
            entity_type=PipelineEventService.ENTITY_ASSET,
            entity_id=asset.id,
            correlation_id=correlation_id,
            new_status=outcome,
            payload=summary,
        )
        logger.info(
            f"[PUBLISH][{correlation_id}] DONE success={summary['success']} failed={summary['failed']} outcome={outcome}"
        )
        return BulkPublishResult(correlation_id, advertiser_id, media_id, len(targets), traces, summary, outcome)
