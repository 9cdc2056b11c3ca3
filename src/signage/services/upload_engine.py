"""
Transactional upload of ad bytes to the device platform.

Protocol (each step committed before the next):
    idempotency check -> create media -> transfer target -> PUT bytes
    -> finalize -> verify exists -> poll until ready + file present
    -> strip unsafe playback URLs
"""
from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, Optional

from loguru import logger
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from signage.config import UploadConfig
from signage.db.base import as_naive_utc, utcnow
from signage.db.models import AdAsset, UploadJob, UploadJobStatus
from signage.device_api.client import ApiResponse, DeviceApiClient
from signage.device_api.status import MediaFileState, MediaStatus
from signage.errors import is_transient_status
from signage.media.container import has_mp4_signature
from signage.media.storage import ObjectStorage, StorageError
from signage.services.pipeline_events import PipelineEventService
from signage.services.upload_phases import (
    CreateResponse,
    FinalizeResponse,
    PhaseRecord,
    PollResponse,
    TransferResponse,
    dump_phase,
)

# Furthest protocol state reached by a job
STATE_CREATED = "CREATED"
STATE_UPLOADED = "UPLOADED"
STATE_FINALIZED = "FINALIZED"
STATE_VERIFIED_EXISTS = "VERIFIED_EXISTS"
STATE_READY = "READY"

TERMINAL_CODES = frozenset({
    "FAILED_INIT_STUCK",
    "POLL_TIMEOUT",
    "POLL_404",
    "VERIFY_404",
    "VERIFY_INVALID_RESPONSE",
    "FINAL_VERIFY_404",
    "REMOTE_PROCESSING_FAILED",
    "UPLOAD_BYTES_MISSING",
    "UPLOAD_COMPLETE_FAILED",
    "INVALID_CONTAINER_SIGNATURE",
    "FILE_TOO_SMALL",
    "FILE_SIZE_MISMATCH",
    "PLAYBACK_URL_NOT_CLEARED",
    "MAX_ATTEMPTS_EXCEEDED",
    "CREATE_NO_MEDIA_ID",
    "NO_PRESIGNED_URL_IN_RESPONSE",
    "INVALID_PRESIGNED_URL",
})


def new_correlation_id() -> str:
    return f"TXN-{int(time.time() * 1000):X}-{uuid.uuid4().hex[:6].upper()}"


@dataclass
class UploadResult:
    ok: bool
    job_id: Optional[int]
    external_media_id: Optional[int]
    final_state: Optional[str]
    error_code: Optional[str] = None
    message: Optional[str] = None
    next_action: Optional[str] = None
    correlation_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class UploadFailure(Exception):
    """One protocol step failed. Terminal unless the cause was network, 5xx or 429."""

    def __init__(
        self,
        code: str,
        message: str,
        *,
        status_code: Optional[int] = None,
        raw: Optional[str] = None,
        transient: Optional[bool] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.raw = raw
        if code in TERMINAL_CODES:
            self.transient = False
        elif transient is not None:
            self.transient = transient
        else:
            self.transient = is_transient_status(status_code)

    @classmethod
    def from_response(cls, prefix: str, resp: ApiResponse) -> "UploadFailure":
        if resp.status_code is None:
            return cls(f"{prefix}_EXCEPTION", resp.error or "network error", raw=resp.error, transient=True)
        return cls(
            f"{prefix}_FAILED_{resp.status_code}",
            resp.error or f"HTTP {resp.status_code}",
            status_code=resp.status_code,
            raw=resp.snippet(),
        )


class UploadTransactionEngine:
    """At most one in-flight upload per (advertiser, asset path), enforced by UploadJob.active_key."""

    def __init__(
        self,
        client: DeviceApiClient,
        storage: ObjectStorage,
        config: Optional[UploadConfig] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.storage = storage
        self.config = config or UploadConfig()
        self.sleep = sleep
        self.clock = clock

    # Entry point

    def upload(
        self,
        session: Session,
        advertiser_id: int,
        asset_path: str,
        desired_name: str,
        file_size: Optional[int] = None,
        *,
        asset_id: Optional[int] = None,
    ) -> UploadResult:
        key = f"{advertiser_id}:{asset_path}"
        asset = self._find_asset(session, advertiser_id, asset_path, asset_id)

        short_circuit = self._confirmed_ready_job(session, key)
        if short_circuit is not None:
            if asset is not None and asset.external_media_id != short_circuit.external_media_id:
                asset.external_media_id = short_circuit.external_media_id
                asset.uploaded_at = asset.uploaded_at or utcnow()
                session.commit()
            logger.info(
                f"[UPLOAD][{short_circuit.correlation_id}] Already uploaded as media "
                f"{short_circuit.external_media_id}, skipping"
            )
            return UploadResult(
                ok=True,
                job_id=short_circuit.id,
                external_media_id=short_circuit.external_media_id,
                final_state=STATE_READY,
                message="Already uploaded and confirmed ready",
                correlation_id=short_circuit.correlation_id,
            )

        job = session.execute(select(UploadJob).where(UploadJob.active_key == key)).scalar_one_or_none()
        if job is not None:
            if job.status in (UploadJobStatus.UPLOADING, UploadJobStatus.POLLING):
                age = utcnow() - as_naive_utc(job.updated_at)
                if age < timedelta(minutes=self.config.stale_job_minutes):
                    logger.warning(f"[UPLOAD][{job.correlation_id}] Job {job.id} still {job.status}, refusing")
                    return self._in_progress(job)
                logger.warning(
                    f"[UPLOAD][{job.correlation_id}] Job {job.id} stale for {age}, force-failing"
                )
                self._close_job(
                    session, job, UploadJobStatus.PERMANENT_FAIL,
                    error_code="STALE_JOB_FORCE_FAILED",
                    error_message=f"No progress for {age}",
                )
                job = None
            elif job.status == UploadJobStatus.RETRYING:
                if job.attempt + 1 > job.max_attempts:
                    failure = UploadFailure(
                        "MAX_ATTEMPTS_EXCEEDED", f"Job {job.id} exhausted {job.max_attempts} attempts"
                    )
                    return self._fail(session, job, asset, failure)
                job.attempt += 1
                job.status = UploadJobStatus.UPLOADING
                session.commit()
                logger.info(f"[UPLOAD][{job.correlation_id}] Resuming job {job.id}, attempt {job.attempt}")

        if job is None:
            job = UploadJob(
                correlation_id=new_correlation_id(),
                advertiser_id=advertiser_id,
                asset_id=asset.id if asset else None,
                asset_path=asset_path,
                desired_name=desired_name,
                file_size=file_size,
                idempotency_key=key,
                active_key=key,
                status=UploadJobStatus.UPLOADING,
                attempt=1,
                max_attempts=self.config.max_attempts,
                phase_log=[],
            )
            session.add(job)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                winner = session.execute(
                    select(UploadJob).where(UploadJob.active_key == key)
                ).scalar_one_or_none()
                logger.warning(f"[UPLOAD] Concurrent upload for {key} won the race")
                return self._in_progress(winner)

            PipelineEventService.log_event(
                session,
                event_type=PipelineEventService.EVENT_UPLOAD_STARTED,
                entity_type=PipelineEventService.ENTITY_UPLOAD_JOB,
                entity_id=job.id,
                correlation_id=job.correlation_id,
                new_status=job.status,
                payload={"advertiser_id": advertiser_id, "asset_path": asset_path},
            )

        logger.info(f"[UPLOAD][{job.correlation_id}] Job {job.id} starting for advertiser={advertiser_id}")
        try:
            media_id = self._run(session, job, asset, file_size)
        except UploadFailure as failure:
            return self._fail(session, job, asset, failure)
        except Exception as e:
            logger.exception(f"[UPLOAD][{job.correlation_id}] Unexpected error")
            session.rollback()
            return self._fail(session, job, asset, UploadFailure(
                "UPLOAD_EXCEPTION", str(e), raw=repr(e)[:1000], transient=True
            ))

        self._close_job(session, job, UploadJobStatus.READY)
        if asset is not None:
            asset.external_media_id = media_id
            asset.uploaded_at = utcnow()
            session.commit()

        PipelineEventService.log_event(
            session,
            event_type=PipelineEventService.EVENT_UPLOAD_COMPLETED,
            entity_type=PipelineEventService.ENTITY_UPLOAD_JOB,
            entity_id=job.id,
            correlation_id=job.correlation_id,
            new_status=UploadJobStatus.READY,
            payload={"external_media_id": media_id},
        )
        logger.info(f"[UPLOAD][{job.correlation_id}] COMPLETE: job={job.id} media={media_id} READY")
        return UploadResult(
            ok=True,
            job_id=job.id,
            external_media_id=media_id,
            final_state=STATE_READY,
            correlation_id=job.correlation_id,
        )

    # Protocol

    def _run(self, session: Session, job: UploadJob, asset: Optional[AdAsset], file_size: Optional[int]) -> int:
        payload = self._load_bytes(job, file_size)

        media_id, create_data = self._create_or_reuse(session, job, asset)
        upload_url = self._resolve_upload_target(media_id, create_data)
        self._transfer(session, job, upload_url, payload)
        self._finalize(session, job, media_id, upload_url)
        self._verify_exists(session, job, media_id)
        self._poll_until_ready(session, job, media_id, upload_url)
        self._strip_unsafe_playback(session, job, media_id)
        return media_id

    def _load_bytes(self, job: UploadJob, file_size: Optional[int]) -> bytes:
        try:
            data = self.storage.download(job.asset_path)
        except StorageError as e:
            raise UploadFailure("UPLOAD_BYTES_MISSING", str(e))
        if not data:
            raise UploadFailure("UPLOAD_BYTES_MISSING", f"{job.asset_path} is empty")
        if len(data) < self.config.min_file_size_bytes:
            raise UploadFailure(
                "FILE_TOO_SMALL", f"{len(data)} bytes < minimum {self.config.min_file_size_bytes}"
            )
        if not has_mp4_signature(data):
            raise UploadFailure(
                "INVALID_CONTAINER_SIGNATURE", f"No ftyp at offset 4 (first bytes {data[:12].hex()})"
            )
        if file_size and file_size != len(data):
            raise UploadFailure("FILE_SIZE_MISMATCH", f"Declared size {file_size} != stored {len(data)} bytes")
        return data

    def _create_or_reuse(self, session: Session, job: UploadJob, asset: Optional[AdAsset]) -> tuple[int, dict]:
        if job.external_media_id:
            check = self.client.get_media(job.external_media_id)
            if check.ok:
                logger.info(f"[UPLOAD][{job.correlation_id}] Reusing media {job.external_media_id} from previous attempt")
                return job.external_media_id, {}
            if not check.not_found:
                raise UploadFailure.from_response("VERIFY", check)
            job.external_media_id = None

        resp = self.client.create_media(job.desired_name)
        data = resp.data if isinstance(resp.data, dict) else {}
        media_id = data.get("id")
        self._record(job, CreateResponse(status_code=resp.status_code, media_id=media_id, raw=resp.snippet()))
        if not resp.ok:
            session.commit()
            raise UploadFailure.from_response("CREATE", resp)
        if not media_id:
            session.commit()
            raise UploadFailure("CREATE_NO_MEDIA_ID", "Create response has no id", raw=resp.snippet())

        media_id = int(media_id)
        job.external_media_id = media_id
        job.final_state = STATE_CREATED
        if asset is not None:
            asset.external_media_id = media_id
        session.commit()
        logger.info(f"[UPLOAD][{job.correlation_id}] Created media {media_id}")
        return media_id, data

    def _resolve_upload_target(self, media_id: int, create_data: dict) -> str:
        direct = create_data.get("presign_url") or create_data.get("upload_url")
        if direct and str(direct).startswith(("http://", "https://")):
            return str(direct)

        endpoint = create_data.get("get_upload_url") or direct or f"/media/{media_id}/upload/"
        resp = self.client.get_upload_url(str(endpoint))
        if not resp.ok:
            raise UploadFailure.from_response("GET_UPLOAD_URL", resp)

        data = resp.data if isinstance(resp.data, dict) else {}
        url = data.get("upload_url") or data.get("presign_url") or data.get("url")
        if not url:
            raise UploadFailure("NO_PRESIGNED_URL_IN_RESPONSE", "No upload URL in response", raw=resp.snippet())
        if not str(url).startswith(("http://", "https://")):
            raise UploadFailure("INVALID_PRESIGNED_URL", f"Upload URL is not absolute: {str(url)[:100]}")
        return str(url)

    def _transfer(self, session: Session, job: UploadJob, url: str, payload: bytes) -> None:
        resp = self.client.put_binary(url, payload)
        etag = resp.headers.get("ETag") or resp.headers.get("etag")
        self._record(job, TransferResponse(status_code=resp.status_code, etag=etag, bytes_sent=len(payload)))
        session.commit()
        if not resp.ok:
            raise UploadFailure.from_response("PUT", resp)

        if not has_mp4_signature(payload):
            raise UploadFailure(
                "INVALID_CONTAINER_SIGNATURE", f"Post-transfer check failed: sent {len(payload)} bytes without ftyp"
            )
        job.final_state = STATE_UPLOADED
        session.commit()
        logger.info(f"[UPLOAD][{job.correlation_id}] PUT {len(payload)} bytes ok (etag={etag})")

    def _finalize(self, session: Session, job: UploadJob, media_id: int, upload_url: str) -> None:
        attempts = max(1, self.config.finalize_attempts)
        for attempt in range(1, attempts + 1):
            resp = self.client.complete_upload(media_id, upload_url)
            self._record(job, FinalizeResponse(
                status_code=resp.status_code, attempt=attempt, ok=resp.ok, raw=resp.snippet(500)
            ))
            session.commit()
            if resp.ok:
                job.final_state = STATE_FINALIZED
                session.commit()
                return
            logger.warning(f"[UPLOAD][{job.correlation_id}] Finalize attempt {attempt}/{attempts} failed: {resp.error}")
            if attempt < attempts:
                self.sleep(self.config.finalize_retry_seconds)

        raise UploadFailure(
            "UPLOAD_COMPLETE_FAILED",
            f"upload/complete failed after {attempts} attempts",
            status_code=resp.status_code,
            raw=resp.snippet(),
        )

    def _verify_exists(self, session: Session, job: UploadJob, media_id: int) -> None:
        resp = self.client.get_media(media_id)
        if resp.not_found:
            raise UploadFailure("VERIFY_404", f"Media {media_id} not found after finalize", status_code=404)
        if not resp.ok:
            raise UploadFailure.from_response("VERIFY", resp)
        if not isinstance(resp.data, dict) or not resp.data.get("id"):
            raise UploadFailure("VERIFY_INVALID_RESPONSE", "Media response has no id", raw=resp.snippet())
        job.final_state = STATE_VERIFIED_EXISTS
        job.status = UploadJobStatus.POLLING
        session.commit()

    def _poll_interval(self, poll_number: int) -> float:
        schedule = self.config.poll_intervals_seconds or [self.config.poll_max_interval_seconds]
        interval = schedule[min(poll_number, len(schedule) - 1)]
        return min(interval, self.config.poll_max_interval_seconds)

    def _poll_until_ready(self, session: Session, job: UploadJob, media_id: int, upload_url: str) -> MediaFileState:
        start = self.clock()
        poll_number = 0
        init_streak = 0
        refires = 0

        while True:
            remaining = self.config.poll_timeout_seconds - (self.clock() - start)
            if remaining <= 0:
                raise UploadFailure(
                    "POLL_TIMEOUT", f"Media {media_id} not ready after {self.config.poll_timeout_seconds:.0f}s"
                )
            self.sleep(min(self._poll_interval(poll_number), remaining))
            poll_number += 1
            job.poll_attempts = (job.poll_attempts or 0) + 1

            resp = self.client.get_media(media_id)
            if resp.not_found:
                session.commit()
                raise UploadFailure("POLL_404", f"Media {media_id} disappeared while polling", status_code=404)
            if not resp.ok:
                self._record(job, PollResponse(poll_number=poll_number, status_code=resp.status_code, raw=resp.snippet(500)))
                session.commit()
                continue

            state = MediaFileState.from_media(resp.data)
            self._record(job, PollResponse(
                poll_number=poll_number,
                status_code=resp.status_code,
                raw_status=state.raw_status,
                classified=state.status,
                file_size=state.file_size,
                raw=resp.snippet(500),
            ))
            session.commit()
            logger.debug(
                f"[UPLOAD][{job.correlation_id}] poll {poll_number}: {state.raw_status} "
                f"-> {state.status.value} size={state.file_size}"
            )

            if state.status == MediaStatus.FAILED:
                raise UploadFailure(
                    "REMOTE_PROCESSING_FAILED", f"Remote status {state.raw_status}", raw=resp.snippet()
                )

            if state.status == MediaStatus.INITIALIZING and not state.has_file:
                init_streak += 1
                if init_streak >= self.config.init_stuck_max_polls:
                    raise UploadFailure(
                        "FAILED_INIT_STUCK",
                        f"Media {media_id} initializing with no file for {init_streak} polls "
                        f"after {refires} re-finalize call(s)",
                    )
                if init_streak % 3 == 0 and refires < self.config.finalize_stuck_retries:
                    refires += 1
                    logger.warning(f"[UPLOAD][{job.correlation_id}] Stuck initializing, re-firing finalize ({refires})")
                    refire = self.client.complete_upload(media_id, upload_url)
                    self._record(job, FinalizeResponse(
                        status_code=refire.status_code, attempt=100 + refires, ok=refire.ok, raw=refire.snippet(500)
                    ))
                    session.commit()
                continue
            init_streak = 0

            # READY alone is not enough; the file must have materialized
            if state.status == MediaStatus.READY and state.has_file:
                break

        final = self.client.get_media(media_id)
        if final.not_found:
            raise UploadFailure("FINAL_VERIFY_404", f"Media {media_id} gone on final verification", status_code=404)
        if not final.ok:
            raise UploadFailure.from_response("FINAL_VERIFY", final)
        return MediaFileState.from_media(final.data)

    def _strip_unsafe_playback(self, session: Session, job: UploadJob, media_id: int) -> None:
        current = self.client.get_media(media_id)
        media = current.data if current.ok and isinstance(current.data, dict) else {}
        state = MediaFileState.from_media(media)
        if not state.has_unsafe_playback_urls:
            job.final_state = STATE_READY
            session.commit()
            return

        arguments = dict(media.get("arguments") or {})
        arguments["play_from_url"] = ""
        arguments["download_from_url"] = ""
        patched = self.client.patch_media(media_id, {"arguments": arguments})
        check = self.client.get_media(media_id)
        if not patched.ok or not check.ok or MediaFileState.from_media(check.data).has_unsafe_playback_urls:
            raise UploadFailure(
                "PLAYBACK_URL_NOT_CLEARED",
                f"Could not clear playback URLs on media {media_id}",
                raw=(patched.error or check.snippet()),
            )
        job.final_state = STATE_READY
        session.commit()
        logger.info(f"[UPLOAD][{job.correlation_id}] Cleared play_from_url/download_from_url on media {media_id}")

    # Bookkeeping

    @staticmethod
    def _record(job: UploadJob, record: PhaseRecord) -> None:
        # Reassign so the JSON column is flagged dirty
        job.phase_log = [*(job.phase_log or []), dump_phase(record)]

    @staticmethod
    def _in_progress(job: Optional[UploadJob]) -> UploadResult:
        return UploadResult(
            ok=False,
            job_id=job.id if job else None,
            external_media_id=job.external_media_id if job else None,
            final_state=job.final_state if job else None,
            error_code="UPLOAD_ALREADY_IN_PROGRESS",
            message="Another upload for this asset is in progress",
            next_action="wait",
            correlation_id=job.correlation_id if job else None,
        )

    @staticmethod
    def _close_job(
        session: Session,
        job: UploadJob,
        status: str,
        *,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        job.status = status
        job.active_key = None
        job.completed_at = utcnow()
        if status == UploadJobStatus.READY:
            job.final_state = STATE_READY
        if error_code:
            job.last_error_code = error_code
            job.last_error_message = error_message
        session.commit()

    def _fail(self, session: Session, job: UploadJob, asset: Optional[AdAsset], failure: UploadFailure) -> UploadResult:
        job.last_error_code = failure.code
        job.last_error_message = failure.message[:1000]
        job.last_error_raw = (failure.raw or "")[:2000] or None
        old_status = job.status

        if failure.transient and job.attempt < job.max_attempts:
            job.status = UploadJobStatus.RETRYING
            session.commit()
            PipelineEventService.log_failure(
                session,
                event_type=PipelineEventService.EVENT_UPLOAD_RETRYING,
                entity_type=PipelineEventService.ENTITY_UPLOAD_JOB,
                entity_id=job.id,
                correlation_id=job.correlation_id,
                error_code=failure.code,
                message=failure.message,
                old_status=old_status,
                new_status=UploadJobStatus.RETRYING,
            )
            logger.warning(
                f"[UPLOAD][{job.correlation_id}] Transient failure {failure.code} "
                f"(attempt {job.attempt}/{job.max_attempts}): {failure.message}"
            )
            return UploadResult(
                ok=False,
                job_id=job.id,
                external_media_id=job.external_media_id,
                final_state=job.final_state,
                error_code=failure.code,
                message=failure.message,
                next_action="retry",
                correlation_id=job.correlation_id,
            )

        # Terminal: the remote media can no longer be trusted
        failed_media_id = job.external_media_id
        self._close_job(session, job, UploadJobStatus.PERMANENT_FAIL)
        if asset is not None and failed_media_id and asset.external_media_id == failed_media_id:
            asset.external_media_id = None
            asset.uploaded_at = None
            session.commit()

        PipelineEventService.log_failure(
            session,
            event_type=PipelineEventService.EVENT_UPLOAD_FAILED,
            entity_type=PipelineEventService.ENTITY_UPLOAD_JOB,
            entity_id=job.id,
            correlation_id=job.correlation_id,
            error_code=failure.code,
            message=failure.message,
            old_status=old_status,
            new_status=UploadJobStatus.PERMANENT_FAIL,
            exception_details=failure.raw,
        )
        logger.error(f"[UPLOAD][{job.correlation_id}] PERMANENT_FAIL {failure.code}: {failure.message}")
        return UploadResult(
            ok=False,
            job_id=job.id,
            external_media_id=None,
            final_state=job.final_state,
            error_code=failure.code,
            message=failure.message,
            next_action="reupload",
            correlation_id=job.correlation_id,
        )

    # Lookups

    @staticmethod
    def _find_asset(
        session: Session, advertiser_id: int, asset_path: str, asset_id: Optional[int]
    ) -> Optional[AdAsset]:
        if asset_id is not None:
            return session.get(AdAsset, asset_id)
        return session.execute(
            select(AdAsset)
            .where(
                AdAsset.advertiser_id == advertiser_id,
                AdAsset.is_superseded.is_(False),
                or_(
                    AdAsset.storage_path == asset_path,
                    AdAsset.converted_storage_path == asset_path,
                    AdAsset.normalized_storage_path == asset_path,
                ),
            )
            .order_by(AdAsset.id.desc())
            .limit(1)
        ).scalar_one_or_none()

    def _confirmed_ready_job(self, session: Session, key: str) -> Optional[UploadJob]:
        job = session.execute(
            select(UploadJob)
            .where(UploadJob.idempotency_key == key, UploadJob.status == UploadJobStatus.READY)
            .order_by(UploadJob.id.desc())
            .limit(1)
        ).scalar_one_or_none()
        if job is None or not job.external_media_id:
            return None

        resp = self.client.get_media(job.external_media_id)
        if not resp.ok:
            logger.info(f"[UPLOAD][{job.correlation_id}] Previous media {job.external_media_id} not confirmed ({resp.status_code})")
            return None
        state = MediaFileState.from_media(resp.data)
        if state.status == MediaStatus.READY and state.has_file:
            return job
        return None

    def ensure_canonical_media_valid(self, session: Session, asset_id: int) -> Dict[str, Any]:
        """Re-check the asset's external media. A 404 clears the canonical id."""
        asset = session.get(AdAsset, asset_id)
        if asset is None:
            return {"valid": False, "reason": "ASSET_NOT_FOUND", "externalMediaId": None}
        media_id = asset.external_media_id
        if not media_id:
            return {"valid": False, "reason": "NO_EXTERNAL_MEDIA", "externalMediaId": None}

        resp = self.client.get_media(media_id)
        if resp.not_found:
            asset.external_media_id = None
            asset.uploaded_at = None
            session.commit()
            logger.warning(f"[UPLOAD] Asset {asset_id} media {media_id} is gone, cleared canonical id")
            return {"valid": False, "reason": "MEDIA_NOT_FOUND", "externalMediaId": media_id, "cleared": True}
        if not resp.ok:
            return {"valid": None, "reason": f"CHECK_FAILED_{resp.status_code}", "externalMediaId": media_id}

        state = MediaFileState.from_media(resp.data)
        return {
            "valid": state.status == MediaStatus.READY and state.has_file,
            "reason": state.status.value,
            "externalMediaId": media_id,
            "fileSize": state.file_size,
        }
