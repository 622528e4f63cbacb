import pytest
from prometheus_client import REGISTRY

from app.core.config import settings
from app.core.exceptions import ExternalServiceFailure, ValidationFailure
from app.db.models import MediaItem, MediaOwnerKind, MediaStatus
from app.services.media_service import (
    build_output_key,
    build_thumbnail_key,
    ingest_media,
    register_media,
    transcode_media,
)


def _sample(name: str) -> float:
    return REGISTRY.get_sample_value(name) or 0.0


class FakeScanner:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.scanned = []

    def scan(self, path):
        self.scanned.append(path)
        if self.error is not None:
            raise self.error


class FakeTranscoder:
    def __init__(self, fail_video: bool = False, thumbnail_ok: bool = True) -> None:
        self.fail_video = fail_video
        self.thumbnail_ok = thumbnail_ok
        self.outputs = []

    def render_video(self, source, output, profile):
        if self.fail_video:
            raise ExternalServiceFailure("ffmpeg", "Invalid data found when processing input")
        self.outputs.append(output)

    def render_audio(self, source, output, profile):
        self.outputs.append(output)

    def render_thumbnail(self, source, output):
        return self.thumbnail_ok


@pytest.fixture()
def media_config(tmp_path):
    (tmp_path / "tours").mkdir()
    (tmp_path / "tours" / "garden.mp4").write_bytes(b"\x00" * 16)
    return settings.model_copy(
        update={
            "media_root": str(tmp_path),
            "media_video_profiles": [{"resolution": "720p", "bitrate": "2500k"}],
            "media_audio_profiles": [{"bitrate": "128k"}],
        }
    )


@pytest.fixture()
def media_item(db_session, media_config):
    return register_media(
        db_session,
        file_url="tours/garden.mp4",
        mime_type="video/mp4",
        size_bytes=16,
        owner_kind=MediaOwnerKind.FACILITY,
        owner_id=1,
        title="Garden tour",
        config=media_config,
    )


@pytest.mark.parametrize(
    ("source", "suffix", "expected"),
    [
        ("tours/garden.mp4", "720p", "tours/garden_720p.mp4"),
        ("tours/garden.mov", "Audio Track", "tours/garden_audio_track.mov"),
        ("tours/garden", "1080p", "tours/garden_1080p.mp4"),
    ],
)
def test_build_output_key(source, suffix, expected):
    assert build_output_key(source, suffix) == expected


@pytest.mark.parametrize(
    ("source", "expected"),
    [
        ("tours/garden.mp4", "tours/garden_thumbnail.jpg"),
        ("tours/garden", "tours/garden_thumbnail.jpg"),
    ],
)
def test_build_thumbnail_key_uses_jpeg_extension(source, expected):
    assert build_thumbnail_key(source) == expected


@pytest.mark.parametrize(
    ("overrides", "field"),
    [
        ({"size_bytes": 0}, "size_bytes"),
        ({"size_bytes": settings.media_max_upload_bytes + 1}, "size_bytes"),
        ({"mime_type": "application/pdf"}, "mime_type"),
        ({"owner_kind": MediaOwnerKind.SERVICE}, "owner_id"),
    ],
)
def test_register_media_validation(db_session, overrides, field):
    payload = {"file_url": "tours/garden.mp4", "mime_type": "video/mp4", "size_bytes": 16, **overrides}

    with pytest.raises(ValidationFailure) as exc_info:
        register_media(db_session, **payload)

    assert field in exc_info.value.detail
    assert db_session.query(MediaItem).count() == 0


def test_register_media_starts_pending(media_item):
    assert media_item.status == MediaStatus.PENDING.value
    assert media_item.owner_kind == "facility"
    assert media_item.conversions is None


def test_virus_scan_failure_marks_failed_and_reraises(db_session, media_item, media_config):
    scanner = FakeScanner(error=ExternalServiceFailure("virus_scanner", "Infected: EICAR-Test-File"))
    failures_before = _sample("elderly_media_virus_scan_failure_total")

    with pytest.raises(ExternalServiceFailure):
        ingest_media(db_session, media_item.id, scanner=scanner, config=media_config)

    db_session.refresh(media_item)
    assert media_item.status == MediaStatus.FAILED.value
    assert media_item.error_message == "Infected: EICAR-Test-File"
    assert _sample("elderly_media_virus_scan_failure_total") == failures_before + 1


def test_exhausted_virus_scan_retries_leave_the_backlog(db_session, media_item, media_config):
    scanner = FakeScanner(error=ExternalServiceFailure("virus_scanner", "Scan timed out"))
    backlog_before = _sample("elderly_media_conversion_backlog")
    ingested_before = _sample("elderly_media_ingest_total")

    for _ in range(media_config.media_max_attempts):
        with pytest.raises(ExternalServiceFailure):
            ingest_media(db_session, media_item.id, scanner=scanner, config=media_config)

    db_session.refresh(media_item)
    assert media_item.status == MediaStatus.FAILED.value
    assert len(scanner.scanned) == media_config.media_max_attempts
    assert _sample("elderly_media_ingest_total") == ingested_before + 1
    assert _sample("elderly_media_conversion_backlog") == backlog_before


def test_ingest_retry_after_scan_failure_settles_backlog(db_session, media_item, media_config):
    backlog_before = _sample("elderly_media_conversion_backlog")
    with pytest.raises(ExternalServiceFailure):
        ingest_media(
            db_session,
            media_item.id,
            scanner=FakeScanner(error=ExternalServiceFailure("virus_scanner", "Scanner unavailable")),
            config=media_config,
        )

    ingest_media(db_session, media_item.id, scanner=FakeScanner(), config=media_config)
    transcode_media(db_session, media_item.id, transcoder=FakeTranscoder(), config=media_config)

    db_session.refresh(media_item)
    assert media_item.status == MediaStatus.READY.value
    assert _sample("elderly_media_conversion_backlog") == backlog_before


def test_ingest_marks_processing_and_counts_backlog_once(db_session, media_item, media_config):
    backlog_before = _sample("elderly_media_conversion_backlog")

    assert ingest_media(db_session, media_item.id, scanner=FakeScanner(), config=media_config) is True
    # A retried ingest on a processing item does not re-enter the backlog.
    assert ingest_media(db_session, media_item.id, scanner=FakeScanner(), config=media_config) is True

    db_session.refresh(media_item)
    assert media_item.status == MediaStatus.PROCESSING.value
    assert _sample("elderly_media_conversion_backlog") == backlog_before + 1


def test_transcode_success_stores_conversions(db_session, media_item, media_config):
    ingest_media(db_session, media_item.id, scanner=FakeScanner(), config=media_config)
    backlog_before = _sample("elderly_media_conversion_backlog")

    conversions = transcode_media(db_session, media_item.id, transcoder=FakeTranscoder(), config=media_config)

    db_session.refresh(media_item)
    assert media_item.status == MediaStatus.READY.value
    assert media_item.error_message is None
    assert media_item.conversions == conversions
    assert conversions["video"] == [{"resolution": "720p", "bitrate": "2500k", "url": "tours/garden_720p.mp4"}]
    assert conversions["audio"] == [{"bitrate": "128k", "url": "tours/garden_audio.mp4"}]
    assert conversions["thumbnail"]["url"] == "tours/garden_thumbnail.jpg"
    assert conversions["thumbnail"]["width"] == media_config.media_thumbnail_width
    assert _sample("elderly_media_conversion_backlog") == backlog_before - 1


def test_thumbnail_failure_is_not_fatal(db_session, media_item, media_config):
    ingest_media(db_session, media_item.id, scanner=FakeScanner(), config=media_config)

    conversions = transcode_media(
        db_session,
        media_item.id,
        transcoder=FakeTranscoder(thumbnail_ok=False),
        config=media_config,
    )

    db_session.refresh(media_item)
    assert media_item.status == MediaStatus.READY.value
    assert "thumbnail" not in conversions


def test_video_failure_marks_failed_and_reraises(db_session, media_item, media_config):
    ingest_media(db_session, media_item.id, scanner=FakeScanner(), config=media_config)
    failures_before = _sample("elderly_media_transcode_failure_total")
    backlog_before = _sample("elderly_media_conversion_backlog")

    with pytest.raises(ExternalServiceFailure):
        transcode_media(db_session, media_item.id, transcoder=FakeTranscoder(fail_video=True), config=media_config)
    # The retried attempt re-enters the backlog before leaving it again.
    with pytest.raises(ExternalServiceFailure):
        transcode_media(db_session, media_item.id, transcoder=FakeTranscoder(fail_video=True), config=media_config)

    db_session.refresh(media_item)
    assert media_item.status == MediaStatus.FAILED.value
    assert media_item.error_message == "Invalid data found when processing input"
    assert _sample("elderly_media_transcode_failure_total") == failures_before + 2
    assert _sample("elderly_media_conversion_backlog") == backlog_before - 1


def test_missing_source_file_fails(db_session, media_config):
    media = register_media(
        db_session,
        file_url="tours/missing.mp4",
        mime_type="video/mp4",
        size_bytes=16,
        config=media_config,
    )

    with pytest.raises(ExternalServiceFailure):
        transcode_media(db_session, media.id, transcoder=FakeTranscoder(), config=media_config)

    db_session.refresh(media)
    assert media.status == MediaStatus.FAILED.value
