"""
Content readiness: classify uploaded ad files as playable, fixable or rejected,
and gate every publish on the asset being READY_FOR_YODECK.
"""
from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from signage.config import MediaConfig
from signage.db.base import utcnow
from signage.db.models import AdAsset, ReadinessStatus
from signage.errors import AssetSupersededError, MediaNotReadyError, PreconditionError
from signage.media.container import inspect_container
from signage.media.storage import ObjectStorage, StorageError
from signage.media.transcoder import ProbeResult, Transcoder


@dataclass
class ValidationOutcome:
    asset_id: int
    status: str
    reasons: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CanonicalAssetResult:
    asset: Optional[AdAsset]
    reason: str


@dataclass
class ReadinessCheck:
    ready: bool
    status: str
    reason: str
    next_action: Optional[str] = None
    asset_id: Optional[int] = None
    external_media_id: Optional[int] = None


def _non_superseded(session: Session, advertiser_id: int) -> List[AdAsset]:
    return list(
        session.execute(
            select(AdAsset)
            .where(AdAsset.advertiser_id == advertiser_id, AdAsset.is_superseded.is_(False))
            .order_by(AdAsset.created_at.desc(), AdAsset.id.desc())
        ).scalars().all()
    )


def _says_no_video(asset: AdAsset) -> bool:
    return (asset.media_metadata or {}).get("has_video") is False


def find_canonical_asset(session: Session, advertiser_id: int) -> CanonicalAssetResult:
    """Ready beats processing beats rejected beats pending."""
    assets = _non_superseded(session, advertiser_id)

    for asset in assets:
        if asset.readiness_status == ReadinessStatus.READY_FOR_YODECK and not _says_no_video(asset):
            return CanonicalAssetResult(asset, "ready")
    for asset in assets:
        if asset.readiness_status in ReadinessStatus.PROCESSING:
            return CanonicalAssetResult(asset, f"processing ({asset.readiness_status})")
    for asset in assets:
        if asset.readiness_status == ReadinessStatus.REJECTED:
            return CanonicalAssetResult(asset, f"rejected: {asset.reject_reason or 'unknown'}")
    for asset in assets:
        if asset.readiness_status == ReadinessStatus.PENDING:
            return CanonicalAssetResult(asset, "pending validation")
    return CanonicalAssetResult(None, "no asset uploaded")


def _supersede_others(session: Session, asset: AdAsset, *, only_ready: bool) -> int:
    """Supersede the advertiser's live assets older than `asset`. A superseded asset supersedes nothing."""
    if asset.is_superseded:
        return 0
    count = 0
    for other in _non_superseded(session, asset.advertiser_id):
        if other.id >= asset.id:
            continue
        if only_ready and other.readiness_status != ReadinessStatus.READY_FOR_YODECK:
            continue
        other.is_superseded = True
        other.superseded_by_id = asset.id
        count += 1
    return count


class ContentReadinessService:
    """Validates and normalizes ad assets."""

    def __init__(
        self,
        storage: ObjectStorage,
        transcoder: Optional[Transcoder] = None,
        config: Optional[MediaConfig] = None,
    ):
        self.storage = storage
        self.transcoder = transcoder
        self.config = config or MediaConfig()

    @staticmethod
    def _get_asset(session: Session, asset_id: int) -> AdAsset:
        asset = session.get(AdAsset, asset_id)
        if not asset:
            raise PreconditionError(f"Asset {asset_id} not found", code="ASSET_NOT_FOUND")
        return asset

    def _probe_bytes(self, data: bytes, suffix: str) -> ProbeResult:
        fd, tmp_path = tempfile.mkstemp(suffix=suffix)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            return self.transcoder.probe(tmp_path)
        finally:
            os.remove(tmp_path)

    def validate_asset(self, session: Session, asset_id: int) -> ValidationOutcome:
        asset = self._get_asset(session, asset_id)
        old_status = asset.readiness_status
        asset.readiness_status = ReadinessStatus.VALIDATING
        session.commit()
        logger.info(f"[READINESS] Asset {asset_id}: {old_status} -> VALIDATING")

        outcome = ValidationOutcome(asset_id=asset_id, status=ReadinessStatus.VALIDATING)
        source = asset.playable_path

        try:
            data = self.storage.download(source)
        except StorageError as e:
            return self._finish(session, asset, outcome, ReadinessStatus.REJECTED, [f"unreadable: {e}"])

        inspection = inspect_container(data)
        meta = outcome.metadata
        meta.update({
            "source_path": source,
            "file_size": len(data),
            "is_mp4": inspection.is_mp4,
            "brand": inspection.brand,
            "boxes": inspection.boxes[:20],
            "faststart": inspection.faststart,
        })

        probe = None
        if self.transcoder is not None:
            probe = self._probe_bytes(data, PurePosixPath(source).suffix or ".mp4")
            if not probe.ok:
                outcome.warnings.append(f"probe failed, using box inspection only: {probe.error}")
                probe = None

        if probe is not None:
            meta.update({
                "container": probe.container,
                "video_codec": probe.video_codec,
                "audio_codec": probe.audio_codec,
                "pixel_format": probe.pixel_format,
                "width": probe.width,
                "height": probe.height,
                "duration_seconds": probe.duration_seconds,
                "has_video": probe.has_video,
                "has_audio": probe.has_audio,
            })
            if not probe.has_video:
                return self._finish(session, asset, outcome, ReadinessStatus.REJECTED, ["no video stream"])
            if probe.duration_seconds and probe.duration_seconds > self.config.max_duration_seconds:
                return self._finish(session, asset, outcome, ReadinessStatus.REJECTED, [
                    f"duration {probe.duration_seconds:.1f}s exceeds {self.config.max_duration_seconds:.0f}s"
                ])
            reasons = self._compatibility_reasons(probe, inspection.is_mp4, inspection.faststart)
        else:
            if not inspection.is_mp4:
                return self._finish(session, asset, outcome, ReadinessStatus.REJECTED, ["unreadable: no ftyp box"])
            if not inspection.has_moov:
                return self._finish(session, asset, outcome, ReadinessStatus.REJECTED, ["unreadable: no moov box"])
            reasons = [] if inspection.faststart else ["moov after mdat, needs faststart"]

        if reasons:
            return self._finish(session, asset, outcome, ReadinessStatus.NEEDS_NORMALIZATION, reasons)
        return self._finish(session, asset, outcome, ReadinessStatus.READY_FOR_YODECK, [])

    def _compatibility_reasons(self, probe: ProbeResult, is_mp4: bool, faststart: bool) -> List[str]:
        reasons = []
        if probe.container != "mp4" or not is_mp4:
            reasons.append(f"container={probe.container}, needs mp4")
        if probe.video_codec != "h264":
            reasons.append(f"codec={probe.video_codec}, needs h264")
        if probe.pixel_format and probe.pixel_format != "yuv420p":
            reasons.append(f"pixelFormat={probe.pixel_format}, needs yuv420p")
        if (probe.width or 0) > self.config.max_width or (probe.height or 0) > self.config.max_height:
            reasons.append(
                f"resolution={probe.width}x{probe.height}, max {self.config.max_width}x{self.config.max_height}"
            )
        if not faststart:
            reasons.append("moov after mdat, needs faststart")
        return reasons

    def _finish(
        self,
        session: Session,
        asset: AdAsset,
        outcome: ValidationOutcome,
        status: str,
        reasons: List[str],
    ) -> ValidationOutcome:
        outcome.status = status
        outcome.reasons = reasons
        metadata = dict(outcome.metadata)
        metadata["compatibility_reasons"] = reasons
        if outcome.warnings:
            metadata["warnings"] = outcome.warnings

        asset.readiness_status = status
        asset.media_metadata = metadata
        asset.reject_reason = "; ".join(reasons) if status == ReadinessStatus.REJECTED else None
        if status == ReadinessStatus.READY_FOR_YODECK:
            superseded = _supersede_others(session, asset, only_ready=True)
            if superseded:
                logger.info(f"[READINESS] Asset {asset.id} superseded {superseded} older ready asset(s)")
        session.commit()
        logger.info(f"[READINESS] Asset {asset.id} -> {status} {reasons or ''}")
        return outcome

    def normalize_asset(self, session: Session, asset_id: int) -> ValidationOutcome:
        asset = self._get_asset(session, asset_id)
        asset.readiness_status = ReadinessStatus.NORMALIZING
        asset.normalization_provider = "ffmpeg"
        asset.normalization_started_at = utcnow()
        asset.normalization_error = None
        session.commit()
        logger.info(f"[READINESS] Asset {asset_id}: normalizing")

        outcome = ValidationOutcome(asset_id=asset_id, status=ReadinessStatus.NORMALIZING)
        outcome.metadata = dict(asset.media_metadata or {})
        source = asset.converted_storage_path or asset.storage_path
        stem = PurePosixPath(source).stem
        parent = str(PurePosixPath(source).parent)
        target_key = f"{stem}_normalized.mp4" if parent in ("", ".") else f"{parent}/{stem}_normalized.mp4"

        error = None
        if self.transcoder is None:
            error = "no transcoder configured"
        else:
            with tempfile.TemporaryDirectory() as tmp:
                local_in = os.path.join(tmp, f"input{PurePosixPath(source).suffix or '.mp4'}")
                local_out = os.path.join(tmp, f"{stem}_normalized.mp4")
                try:
                    self.storage.download_to(source, local_in)
                except StorageError as e:
                    error = f"download failed: {e}"
                else:
                    result = self.transcoder.transcode(local_in, local_out)
                    if result.ok and os.path.exists(local_out) and os.path.getsize(local_out) > 0:
                        with open(local_out, "rb") as f:
                            self.storage.upload(target_key, f.read())
                    else:
                        error = result.error or "transcoder produced no output"

        asset.normalization_completed_at = utcnow()
        if error is None:
            asset.normalized_storage_path = target_key
            asset.reject_reason = None
            outcome.metadata["normalized"] = True
            return self._finish(session, asset, outcome, ReadinessStatus.READY_FOR_YODECK, [])

        asset.normalization_error = error[:1000]
        logger.warning(f"[READINESS] Asset {asset_id} normalization failed: {error[:200]}")

        # Fall back to the original bytes when they at least form a sound MP4
        try:
            original_ok = inspect_container(self.storage.download(source)).has_moov
        except StorageError:
            original_ok = False
        if original_ok:
            outcome.warnings.append(f"normalization failed, using original file: {error[:200]}")
            return self._finish(session, asset, outcome, ReadinessStatus.READY_FOR_YODECK, [])
        return self._finish(
            session, asset, outcome, ReadinessStatus.REJECTED, [f"normalization failed: {error[:200]}"]
        )

    def retry_normalization(self, session: Session, asset_id: int) -> ValidationOutcome:
        asset = self._get_asset(session, asset_id)
        asset.reject_reason = None
        asset.normalization_error = None
        asset.normalization_started_at = None
        asset.normalization_completed_at = None
        asset.normalized_storage_path = None
        session.commit()
        return self.normalize_asset(session, asset_id)

    def handle_new_upload(self, session: Session, asset_id: int) -> ValidationOutcome:
        """Supersede every other live asset of the advertiser, then validate (and normalize if fixable)."""
        asset = self._get_asset(session, asset_id)
        count = _supersede_others(session, asset, only_ready=False)
        session.commit()
        if count:
            logger.info(f"[READINESS] New upload {asset_id} superseded {count} asset(s) for advertiser {asset.advertiser_id}")

        outcome = self.validate_asset(session, asset_id)
        if outcome.status == ReadinessStatus.NEEDS_NORMALIZATION:
            outcome = self.normalize_asset(session, asset_id)
        return outcome

    def get_canonical_asset(self, session: Session, advertiser_id: int) -> CanonicalAssetResult:
        return find_canonical_asset(session, advertiser_id)

    def get_media_diagnostics(self, session: Session, asset_id: int) -> Dict[str, Any]:
        asset = self._get_asset(session, asset_id)
        return {
            "assetId": asset.id,
            "advertiserId": asset.advertiser_id,
            "status": asset.readiness_status,
            "rejectReason": asset.reject_reason,
            "metadata": asset.media_metadata or {},
            "files": {
                "original": asset.storage_path,
                "converted": asset.converted_storage_path,
                "normalized": asset.normalized_storage_path,
                "playable": asset.playable_path,
            },
            "normalization": {
                "provider": asset.normalization_provider,
                "startedAt": asset.normalization_started_at.isoformat() if asset.normalization_started_at else None,
                "completedAt": asset.normalization_completed_at.isoformat() if asset.normalization_completed_at else None,
                "error": asset.normalization_error,
            },
            "externalMediaId": asset.external_media_id,
            "isSuperseded": asset.is_superseded,
            "supersededById": asset.superseded_by_id,
        }


_NEXT_ACTIONS = {
    ReadinessStatus.PENDING: "validate",
    ReadinessStatus.REJECTED: "retry_normalization",
    ReadinessStatus.NEEDS_NORMALIZATION: "retry_normalization",
    ReadinessStatus.VALIDATING: "wait",
    ReadinessStatus.NORMALIZING: "wait",
}


class ReadinessGate:
    """Precondition checks run before anything touches a screen or playlist."""

    @staticmethod
    def next_action_for(asset: Optional[AdAsset]) -> Optional[str]:
        if asset is None:
            return "upload"
        if asset.readiness_status == ReadinessStatus.READY_FOR_YODECK:
            return None if asset.external_media_id else "upload"
        return _NEXT_ACTIONS.get(asset.readiness_status, "wait")

    @staticmethod
    def _raise_for(asset: Optional[AdAsset], reason: str) -> None:
        status = asset.readiness_status if asset else "NO_ASSET"
        raise MediaNotReadyError(
            reason,
            status=status,
            asset_id=asset.id if asset else None,
            next_action=ReadinessGate.next_action_for(asset) or "wait",
        )

    @staticmethod
    def require_asset_ready(session: Session, asset_id: int) -> AdAsset:
        asset = session.get(AdAsset, asset_id)
        if asset is None:
            ReadinessGate._raise_for(None, f"Asset {asset_id} not found")
        if asset.is_superseded:
            raise AssetSupersededError(
                f"Asset {asset_id} was superseded by asset {asset.superseded_by_id}",
                asset_id=asset.id,
                superseded_by_id=asset.superseded_by_id,
            )
        if asset.readiness_status != ReadinessStatus.READY_FOR_YODECK:
            ReadinessGate._raise_for(asset, f"Asset {asset_id} is {asset.readiness_status}, not READY_FOR_YODECK")
        if not asset.external_media_id:
            ReadinessGate._raise_for(asset, f"Asset {asset_id} has no external media id")
        return asset

    @staticmethod
    def require_advertiser_ready(session: Session, advertiser_id: int) -> AdAsset:
        """Return the playable asset: newest non-superseded READY asset with an external media id."""
        for asset in _non_superseded(session, advertiser_id):
            if (
                asset.readiness_status == ReadinessStatus.READY_FOR_YODECK
                and asset.external_media_id
                and not _says_no_video(asset)
            ):
                return asset

        canonical = find_canonical_asset(session, advertiser_id)
        ReadinessGate._raise_for(
            canonical.asset,
            f"Advertiser {advertiser_id} has no playable asset: {canonical.reason}",
        )

    @staticmethod
    def require_media_ready(session: Session, advertiser_id: int, external_media_id: int) -> AdAsset:
        asset = session.execute(
            select(AdAsset)
            .where(
                AdAsset.advertiser_id == advertiser_id,
                AdAsset.external_media_id == external_media_id,
                AdAsset.is_superseded.is_(False),
            )
            .order_by(AdAsset.id.desc())
            .limit(1)
        ).scalar_one_or_none()
        if asset is None:
            ReadinessGate._raise_for(
                None, f"Media {external_media_id} is not the live asset of advertiser {advertiser_id}"
            )
        if asset.readiness_status != ReadinessStatus.READY_FOR_YODECK:
            ReadinessGate._raise_for(asset, f"Media {external_media_id} asset is {asset.readiness_status}")
        return asset

    @staticmethod
    def check_advertiser_ready(session: Session, advertiser_id: int) -> ReadinessCheck:
        try:
            asset = ReadinessGate.require_advertiser_ready(session, advertiser_id)
        except MediaNotReadyError as e:
            return ReadinessCheck(
                ready=False,
                status=e.status,
                reason=e.message,
                next_action=e.next_action,
                asset_id=e.asset_id,
            )
        return ReadinessCheck(
            ready=True,
            status=asset.readiness_status,
            reason="ready",
            asset_id=asset.id,
            external_media_id=asset.external_media_id,
        )
