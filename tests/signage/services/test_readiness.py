import os
from unittest.mock import MagicMock

import pytest

from signage.db.models import AdAsset, ReadinessStatus
from signage.errors import MediaNotReadyError, PreconditionError
from signage.media.transcoder import ProbeResult, TranscodeResult
from signage.services.readiness import ContentReadinessService, ReadinessGate, find_canonical_asset

SOURCE = "ads/adv7/spot.mp4"


def _probe(**overrides):
    fields = dict(
        ok=True, container="mp4", video_codec="h264", audio_codec="aac", pixel_format="yuv420p",
        width=1920, height=1080, duration_seconds=15.0, has_video=True, has_audio=True,
    )
    fields.update(overrides)
    return ProbeResult(**fields)


def test_faststart_mp4_is_ready_without_transcoder(session, make, storage, make_mp4):
    storage.upload(SOURCE, make_mp4(4096))
    asset = make.asset(readiness_status=ReadinessStatus.PENDING, external_media_id=None)

    outcome = ContentReadinessService(storage).validate_asset(session, asset.id)

    assert outcome.status == ReadinessStatus.READY_FOR_YODECK
    session.refresh(asset)
    assert asset.readiness_status == ReadinessStatus.READY_FOR_YODECK
    assert asset.media_metadata["faststart"] is True
    assert asset.reject_reason is None


def test_non_mp4_rejected(session, make, storage):
    storage.upload(SOURCE, b"GIF89a" + b"\x00" * 100)
    asset = make.asset(readiness_status=ReadinessStatus.PENDING, external_media_id=None)

    outcome = ContentReadinessService(storage).validate_asset(session, asset.id)

    assert outcome.status == ReadinessStatus.REJECTED
    session.refresh(asset)
    assert "no ftyp" in asset.reject_reason


def test_missing_file_rejected(session, make, storage):
    asset = make.asset(readiness_status=ReadinessStatus.PENDING, external_media_id=None)
    outcome = ContentReadinessService(storage).validate_asset(session, asset.id)
    assert outcome.status == ReadinessStatus.REJECTED
    assert outcome.reasons[0].startswith("unreadable")


def test_unknown_asset_is_precondition_error(session, storage):
    with pytest.raises(PreconditionError) as exc:
        ContentReadinessService(storage).validate_asset(session, 404)
    assert exc.value.code == "ASSET_NOT_FOUND"


def test_moov_at_end_needs_normalization(session, make, storage, make_mp4):
    storage.upload(SOURCE, make_mp4(4096, faststart=False))
    asset = make.asset(readiness_status=ReadinessStatus.PENDING, external_media_id=None)

    outcome = ContentReadinessService(storage).validate_asset(session, asset.id)

    assert outcome.status == ReadinessStatus.NEEDS_NORMALIZATION
    assert "faststart" in outcome.reasons[0]


def test_probe_rejects_audio_only(session, make, storage, make_mp4):
    storage.upload(SOURCE, make_mp4(4096))
    asset = make.asset(readiness_status=ReadinessStatus.PENDING, external_media_id=None)
    transcoder = MagicMock()
    transcoder.probe.return_value = _probe(has_video=False, video_codec=None)

    outcome = ContentReadinessService(storage, transcoder).validate_asset(session, asset.id)

    assert outcome.status == ReadinessStatus.REJECTED
    assert outcome.reasons == ["no video stream"]


def test_probe_rejects_long_duration(session, make, storage, make_mp4):
    storage.upload(SOURCE, make_mp4(4096))
    asset = make.asset(readiness_status=ReadinessStatus.PENDING, external_media_id=None)
    transcoder = MagicMock()
    transcoder.probe.return_value = _probe(duration_seconds=95.0)

    outcome = ContentReadinessService(storage, transcoder).validate_asset(session, asset.id)

    assert outcome.status == ReadinessStatus.REJECTED
    assert "exceeds" in outcome.reasons[0]


def test_failed_probe_falls_back_to_box_inspection(session, make, storage, make_mp4):
    storage.upload(SOURCE, make_mp4(4096))
    asset = make.asset(readiness_status=ReadinessStatus.PENDING, external_media_id=None)
    transcoder = MagicMock()
    transcoder.probe.return_value = ProbeResult(ok=False, error="ffprobe spawn error")

    outcome = ContentReadinessService(storage, transcoder).validate_asset(session, asset.id)

    assert outcome.status == ReadinessStatus.READY_FOR_YODECK
    assert "probe failed" in outcome.warnings[0]


def test_handle_new_upload_normalizes_hevc(session, make, storage, make_mp4):
    storage.upload(SOURCE, make_mp4(4096))
    asset = make.asset(readiness_status=ReadinessStatus.PENDING, external_media_id=None)
    transcoder = MagicMock()
    transcoder.probe.return_value = _probe(video_codec="hevc")

    def transcode(input_path, output_path):
        with open(output_path, "wb") as f:
            f.write(make_mp4(8192))
        return TranscodeResult(ok=True, output_path=output_path)

    transcoder.transcode.side_effect = transcode

    outcome = ContentReadinessService(storage, transcoder).handle_new_upload(session, asset.id)

    assert outcome.status == ReadinessStatus.READY_FOR_YODECK
    session.refresh(asset)
    assert asset.normalized_storage_path == "ads/adv7/spot_normalized.mp4"
    assert asset.playable_path == "ads/adv7/spot_normalized.mp4"
    assert asset.normalization_provider == "ffmpeg"
    assert asset.normalization_completed_at is not None
    assert len(storage.download(asset.normalized_storage_path)) == 8192


def test_failed_normalization_keeps_sound_original(session, make, storage, make_mp4):
    storage.upload(SOURCE, make_mp4(4096, faststart=False))
    asset = make.asset(readiness_status=ReadinessStatus.PENDING, external_media_id=None)
    transcoder = MagicMock()
    transcoder.probe.return_value = ProbeResult(ok=False, error="no ffprobe")
    transcoder.transcode.return_value = TranscodeResult(ok=False, error="ffmpeg exited 1")

    outcome = ContentReadinessService(storage, transcoder).handle_new_upload(session, asset.id)

    assert outcome.status == ReadinessStatus.READY_FOR_YODECK
    session.refresh(asset)
    assert asset.normalization_error == "ffmpeg exited 1"
    assert asset.normalized_storage_path is None


def test_retry_normalization_clears_previous_attempt(session, make, storage, make_mp4):
    storage.upload(SOURCE, make_mp4(4096, faststart=False))
    asset = make.asset(
        readiness_status=ReadinessStatus.REJECTED,
        external_media_id=None,
        reject_reason="normalization failed: boom",
        normalization_error="boom",
    )
    transcoder = MagicMock()

    def transcode(input_path, output_path):
        assert os.path.exists(input_path)
        with open(output_path, "wb") as f:
            f.write(make_mp4(4096))
        return TranscodeResult(ok=True, output_path=output_path)

    transcoder.transcode.side_effect = transcode

    outcome = ContentReadinessService(storage, transcoder).retry_normalization(session, asset.id)

    assert outcome.status == ReadinessStatus.READY_FOR_YODECK
    session.refresh(asset)
    assert asset.reject_reason is None
    assert asset.normalization_error is None


def test_new_upload_supersedes_previous_assets(session, make, storage, make_mp4):
    storage.upload("ads/adv7/new.mp4", make_mp4(4096))
    old = make.asset(storage_path="ads/adv7/old.mp4")
    new = make.asset(storage_path="ads/adv7/new.mp4", readiness_status=ReadinessStatus.PENDING, external_media_id=None)

    ContentReadinessService(storage).handle_new_upload(session, new.id)

    session.refresh(old)
    assert old.is_superseded
    assert old.superseded_by_id == new.id


def test_retrying_superseded_asset_leaves_newer_asset_live(session, make, storage, make_mp4):
    storage.upload("ads/adv7/old.mp4", make_mp4(4096, faststart=False))
    storage.upload("ads/adv7/new.mp4", make_mp4(4096))
    old = make.asset(
        storage_path="ads/adv7/old.mp4",
        readiness_status=ReadinessStatus.REJECTED,
        external_media_id=None,
        reject_reason="normalization failed: boom",
    )
    new = make.asset(storage_path="ads/adv7/new.mp4", readiness_status=ReadinessStatus.PENDING, external_media_id=6002)
    transcoder = MagicMock()

    def transcode(input_path, output_path):
        with open(output_path, "wb") as f:
            f.write(make_mp4(4096))
        return TranscodeResult(ok=True, output_path=output_path)

    transcoder.probe.return_value = _probe()
    transcoder.transcode.side_effect = transcode
    service = ContentReadinessService(storage, transcoder)
    service.handle_new_upload(session, new.id)

    outcome = service.retry_normalization(session, old.id)

    assert outcome.status == ReadinessStatus.READY_FOR_YODECK
    session.refresh(old)
    session.refresh(new)
    assert old.is_superseded
    assert not new.is_superseded
    assert new.superseded_by_id is None
    assert ReadinessGate.require_advertiser_ready(session, 7).id == new.id


def test_older_asset_reaching_ready_does_not_supersede_newer(session, make, storage, make_mp4):
    storage.upload("ads/adv7/old.mp4", make_mp4(4096))
    old = make.asset(storage_path="ads/adv7/old.mp4", readiness_status=ReadinessStatus.PENDING, external_media_id=None)
    new = make.asset(storage_path="ads/adv7/new.mp4", external_media_id=6002)

    ContentReadinessService(storage).validate_asset(session, old.id)

    session.refresh(new)
    assert not new.is_superseded
    assert find_canonical_asset(session, 7).asset.id == new.id


def test_newer_asset_reaching_ready_supersedes_older_ready(session, make, storage, make_mp4):
    storage.upload("ads/adv7/new.mp4", make_mp4(4096))
    old = make.asset(storage_path="ads/adv7/old.mp4")
    new = make.asset(storage_path="ads/adv7/new.mp4", readiness_status=ReadinessStatus.PENDING, external_media_id=None)

    ContentReadinessService(storage).validate_asset(session, new.id)

    session.refresh(old)
    assert old.is_superseded
    assert old.superseded_by_id == new.id


def test_media_diagnostics(session, make, storage):
    asset = make.asset(media_metadata={"faststart": True})
    data = ContentReadinessService(storage).get_media_diagnostics(session, asset.id)
    assert data["status"] == ReadinessStatus.READY_FOR_YODECK
    assert data["files"]["playable"] == SOURCE
    assert data["externalMediaId"] == 5001


class TestCanonicalAsset:
    def test_ready_beats_processing_and_rejected(self, session, make):
        make.asset(readiness_status=ReadinessStatus.REJECTED, storage_path="a.mp4")
        ready = make.asset(readiness_status=ReadinessStatus.READY_FOR_YODECK, storage_path="b.mp4")
        make.asset(readiness_status=ReadinessStatus.NORMALIZING, storage_path="c.mp4")

        result = find_canonical_asset(session, 7)

        assert result.asset.id == ready.id
        assert result.reason == "ready"

    def test_ready_without_video_is_skipped(self, session, make):
        make.asset(storage_path="a.mp4", media_metadata={"has_video": False})
        processing = make.asset(readiness_status=ReadinessStatus.VALIDATING, storage_path="b.mp4")

        result = find_canonical_asset(session, 7)

        assert result.asset.id == processing.id
        assert result.reason.startswith("processing")

    def test_nothing_uploaded(self, session):
        result = find_canonical_asset(session, 99)
        assert result.asset is None
        assert result.reason == "no asset uploaded"


class TestReadinessGate:
    def test_require_asset_ready_passes(self, session, make):
        asset = make.asset()
        assert ReadinessGate.require_asset_ready(session, asset.id).id == asset.id

    def test_rejected_asset_blocked(self, session, make):
        asset = make.asset(readiness_status=ReadinessStatus.REJECTED, reject_reason="no video stream")
        with pytest.raises(MediaNotReadyError) as exc:
            ReadinessGate.require_asset_ready(session, asset.id)
        assert exc.value.status == ReadinessStatus.REJECTED
        assert exc.value.next_action == "retry_normalization"

    def test_ready_but_not_uploaded_needs_upload(self, session, make):
        asset = make.asset(external_media_id=None)
        with pytest.raises(MediaNotReadyError) as exc:
            ReadinessGate.require_asset_ready(session, asset.id)
        assert exc.value.next_action == "upload"

    def test_missing_asset(self, session):
        with pytest.raises(MediaNotReadyError) as exc:
            ReadinessGate.require_asset_ready(session, 12345)
        assert exc.value.status == "NO_ASSET"
        assert exc.value.next_action == "upload"

    def test_require_media_ready_rejects_superseded_media(self, session, make):
        make.asset(external_media_id=4000, is_superseded=True)
        with pytest.raises(MediaNotReadyError):
            ReadinessGate.require_media_ready(session, 7, 4000)

    def test_check_advertiser_ready(self, session, make):
        make.asset(readiness_status=ReadinessStatus.PENDING, external_media_id=None)
        check = ReadinessGate.check_advertiser_ready(session, 7)
        assert not check.ready
        assert check.status == ReadinessStatus.PENDING
        assert check.next_action == "validate"

        asset = make.asset(storage_path="b.mp4")
        check = ReadinessGate.check_advertiser_ready(session, 7)
        assert check.ready
        assert check.asset_id == asset.id
        assert check.external_media_id == 5001


def test_asset_rows_are_independent_per_advertiser(session, make):
    make.asset(advertiser_id=1)
    make.asset(advertiser_id=2, storage_path="x.mp4")
    assert session.query(AdAsset).filter_by(advertiser_id=1).count() == 1
