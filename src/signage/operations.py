"""Caller-facing operations. Every method returns a plain dict; failures use the error triple."""
from __future__ import annotations

import time
from dataclasses import asdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from loguru import logger
from sqlalchemy.orm import Session

from signage.config import Settings, load_settings
from signage.db.base import SessionLocal
from signage.db.models import AdAsset, ReadinessStatus
from signage.device_api.client import DeviceApiClient
from signage.errors import MediaNotReadyError, PipelineError, PreconditionError, UploadAlreadyInProgressError
from signage.jobs.publish_queue_worker import PublishQueueWorker
from signage.media.storage import ObjectStorage, build_storage
from signage.media.transcoder import FfmpegTranscoder, Transcoder
from signage.services.content_guarantee import ContentGuaranteeSeeder
from signage.services.deterministic_publish import OUTCOME_NO_TARGETS, OUTCOME_SUCCESS, DeterministicPublisher
from signage.services.legacy_layout import ensure_ads_region_bound
from signage.services.playback_health import PlaybackHealthService
from signage.services.publish_queue import PublishQueueService, item_to_dict
from signage.services.readiness import ContentReadinessService, ReadinessGate
from signage.services.upload_engine import UploadTransactionEngine


class PipelineOperations:
    """Wires the pipeline services together for the CLI and any outer surface."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        session_factory: Callable[[], Session] = SessionLocal,
        client: Optional[DeviceApiClient] = None,
        storage: Optional[ObjectStorage] = None,
        transcoder: Optional[Transcoder] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings or load_settings()
        self.session_factory = session_factory
        self.client = client or DeviceApiClient(self.settings.device_api)
        self.storage = storage or build_storage(self.settings.storage)
        self.transcoder = transcoder or FfmpegTranscoder(self.settings.media)

        self.readiness = ContentReadinessService(self.storage, self.transcoder, self.settings.media)
        self.uploader = UploadTransactionEngine(self.client, self.storage, self.settings.upload, sleep=sleep)
        self.publisher = DeterministicPublisher(self.client, self.settings.publish, sleep=sleep)
        self.seeder = ContentGuaranteeSeeder(self.client, self.settings.content, self.settings.publish)
        self.health = PlaybackHealthService(
            self.client,
            publisher=self.publisher,
            seeder=self.seeder,
            content_config=self.settings.content,
            publish_config=self.settings.publish,
        )
        self.worker = PublishQueueWorker(
            self.publisher,
            session_factory=session_factory,
            config=self.settings.worker,
            queue_config=self.settings.queue,
        )

    def _run(self, label: str, fn: Callable[[Session], Dict[str, Any]]) -> Dict[str, Any]:
        session = self.session_factory()
        try:
            return fn(session)
        except PipelineError as e:
            logger.warning(f"[OPS] {label} failed: {e.code}: {e.message}")
            session.rollback()
            return {"ok": False, **e.to_dict()}
        except Exception as e:
            logger.exception(f"[OPS] {label} crashed")
            session.rollback()
            return {"ok": False, "errorCode": "INTERNAL_ERROR", "message": str(e)[:1000], "nextAction": "retry"}
        finally:
            session.close()

    # Readiness

    def validate_asset(self, asset_id: int) -> Dict[str, Any]:
        def op(session: Session) -> Dict[str, Any]:
            outcome = self.readiness.handle_new_upload(session, asset_id)
            return {"ok": outcome.status == ReadinessStatus.READY_FOR_YODECK, **asdict(outcome)}

        return self._run("validate_asset", op)

    def retry_normalization(self, asset_id: int) -> Dict[str, Any]:
        def op(session: Session) -> Dict[str, Any]:
            outcome = self.readiness.retry_normalization(session, asset_id)
            return {"ok": outcome.status == ReadinessStatus.READY_FOR_YODECK, **asdict(outcome)}

        return self._run("retry_normalization", op)

    def media_diagnostics(self, asset_id: int) -> Dict[str, Any]:
        return self._run("media_diagnostics", lambda s: {"ok": True, **self.readiness.get_media_diagnostics(s, asset_id)})

    # Upload

    def upload_asset(self, asset_id: int) -> Dict[str, Any]:
        def op(session: Session) -> Dict[str, Any]:
            asset = session.get(AdAsset, asset_id)
            if asset is None:
                raise PreconditionError(f"Asset {asset_id} not found", code="ASSET_NOT_FOUND")
            if asset.readiness_status != ReadinessStatus.READY_FOR_YODECK:
                raise MediaNotReadyError(
                    f"Asset {asset_id} is {asset.readiness_status}, not READY_FOR_YODECK",
                    status=asset.readiness_status,
                    asset_id=asset.id,
                    next_action=ReadinessGate.next_action_for(asset) or "wait",
                )
            result = self.uploader.upload(
                session,
                asset.advertiser_id,
                asset.playable_path,
                asset.original_name or f"ad-{asset.advertiser_id}-{asset.id}",
                asset_id=asset.id,
            )
            if result.error_code == UploadAlreadyInProgressError.default_code:
                raise UploadAlreadyInProgressError(result.message, job_id=result.job_id)
            return result.to_dict()

        return self._run("upload_asset", op)

    def verify_asset_media(self, asset_id: int) -> Dict[str, Any]:
        def op(session: Session) -> Dict[str, Any]:
            check = self.uploader.ensure_canonical_media_valid(session, asset_id)
            return {"ok": bool(check.get("valid")), **check}

        return self._run("verify_asset_media", op)

    # Publish

    def enqueue_for_publish(
        self, asset_id: int, priority: int = 0, scheduled_for: Optional[datetime] = None
    ) -> Dict[str, Any]:
        def op(session: Session) -> Dict[str, Any]:
            asset = ReadinessGate.require_asset_ready(session, asset_id)
            item_id = PublishQueueService.enqueue(
                session,
                asset_id=asset.id,
                advertiser_id=asset.advertiser_id,
                priority=priority,
                scheduled_for=scheduled_for,
                config=self.settings.queue,
            )
            item = PublishQueueService.get_item(session, item_id)
            return {"ok": True, "itemId": item_id, "item": item_to_dict(item)}

        return self._run("enqueue_for_publish", op)

    def trigger_immediate_publish(
        self, advertiser_id: int, target_player_ids: Optional[List[int]] = None
    ) -> Dict[str, Any]:
        def op(session: Session) -> Dict[str, Any]:
            ReadinessGate.require_advertiser_ready(session, advertiser_id)
            result = self.publisher.bulk_publish(session, advertiser_id, target_player_ids)
            return {"ok": result.outcome in (OUTCOME_SUCCESS, OUTCOME_NO_TARGETS), **result.to_dict()}

        return self._run("trigger_immediate_publish", op)

    # Health

    def get_playback_health(self, screen_id: int) -> Dict[str, Any]:
        return self._run("get_playback_health", lambda s: self.health.get_playback_health(s, screen_id).to_dict())

    def repair_screen(self, screen_id: int) -> Dict[str, Any]:
        def op(session: Session) -> Dict[str, Any]:
            result = self.health.repair_screen(session, screen_id)
            failed = [a.action for a in result.actions if a.outcome == "failed"]
            return {"ok": not failed, **result.to_dict()}

        return self._run("repair_screen", op)

    def ensure_playlist_non_empty(self, playlist_id: int) -> Dict[str, Any]:
        return self._run("ensure_playlist_non_empty", lambda s: self.seeder.ensure_playlist_non_empty(playlist_id).to_dict())

    def bind_legacy_layout(self, layout_id: int, playlist_id: int, region_index: Optional[int] = None) -> Dict[str, Any]:
        def op(session: Session) -> Dict[str, Any]:
            result = ensure_ads_region_bound(self.client, layout_id, playlist_id, region_index)
            return asdict(result)

        return self._run("bind_legacy_layout", op)

    # Queue

    def get_queue_stats(self) -> Dict[str, Any]:
        return self._run("get_queue_stats", lambda s: {"ok": True, **PublishQueueService.stats(s)})

    def list_queue_items(
        self,
        status: Optional[str] = None,
        advertiser_id: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Dict[str, Any]:
        def op(session: Session) -> Dict[str, Any]:
            items = PublishQueueService.list_items(
                session, status=status, advertiser_id=advertiser_id, limit=limit, offset=offset
            )
            return {"ok": True, "items": [item_to_dict(i) for i in items]}

        return self._run("list_queue_items", op)

    def retry_failed_queue_item(self, item_id: int) -> Dict[str, Any]:
        def op(session: Session) -> Dict[str, Any]:
            item = PublishQueueService.retry_item(session, item_id)
            return {"ok": True, "item": item_to_dict(item)}

        return self._run("retry_failed_queue_item", op)

    def cancel_queue_item(self, item_id: int) -> Dict[str, Any]:
        def op(session: Session) -> Dict[str, Any]:
            PublishQueueService.cancel_item(session, item_id)
            return {"ok": True, "itemId": item_id, "cancelled": True}

        return self._run("cancel_queue_item", op)

    # Worker

    def worker_health(self) -> Dict[str, Any]:
        return self._run("worker_health", lambda s: {"ok": True, **self.worker.health()})

    def process_queue_now(self) -> Dict[str, Any]:
        def op(session: Session) -> Dict[str, Any]:
            result = self.worker.manual_process()
            return {"ok": result.get("error") is None, **result}

        return self._run("process_queue_now", op)
