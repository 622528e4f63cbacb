import logging
import re
import subprocess
from pathlib import Path, PurePosixPath
from typing import Any
from uuid import uuid4

from sqlalchemy.orm import Session

from app.core.config import Settings, settings as default_settings
from app.core.exceptions import ExternalServiceFailure, ValidationFailure
from app.core.metrics import MediaMetrics, media_metrics
from app.db.models import MediaItem, MediaOwnerKind, MediaStatus

logger = logging.getLogger(__name__)

ALLOWED_MIME_PREFIXES = ("video/", "audio/", "image/")


def _slug(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", value.lower()).strip("_")


def build_output_key(source_key: str, suffix: str) -> str:
    source = PurePosixPath(source_key)
    extension = source.suffix.lstrip(".") or "mp4"
    return str(source.parent / f"{source.stem}_{_slug(suffix)}.{extension}")


def build_thumbnail_key(source_key: str) -> str:
    source = PurePosixPath(source_key)
    return str(source.parent / f"{source.stem}_thumbnail.jpg")


def _stderr_tail(output: str | bytes | None, limit: int = 500) -> str:
    if output is None:
        return ""
    if isinstance(output, bytes):
        output = output.decode("utf-8", errors="replace")
    return output.strip()[-limit:]


class VirusScanner:
    def __init__(self, config: Settings = default_settings) -> None:
        self._config = config

    def scan(self, path: Path) -> None:
        config = self._config
        if not config.media_virus_scanning_enabled:
            return

        script = Path(config.media_virus_scan_script)
        if not script.exists():
            logger.warning("virus_scan_script_missing script=%s", script)
            return

        try:
            subprocess.run(
                [str(script), str(path)],
                capture_output=True,
                text=True,
                timeout=config.media_virus_scan_timeout_seconds,
                check=True,
            )
        except subprocess.TimeoutExpired as exc:
            raise ExternalServiceFailure("virus_scanner", f"Virus scan timed out after {exc.timeout}s") from exc
        except subprocess.CalledProcessError as exc:
            message = _stderr_tail(exc.stderr) or f"Virus scan exited with status {exc.returncode}"
            raise ExternalServiceFailure("virus_scanner", message) from exc


class Transcoder:
    def __init__(self, config: Settings = default_settings) -> None:
        self._config = config

    def _run(self, command: list[str], timeout: int) -> None:
        try:
            subprocess.run(command, capture_output=True, text=True, timeout=timeout, check=True)
        except subprocess.TimeoutExpired as exc:
            logger.error("transcode_timeout command=%s", " ".join(command))
            raise ExternalServiceFailure("ffmpeg", f"ffmpeg timed out after {exc.timeout}s") from exc
        except subprocess.CalledProcessError as exc:
            logger.error("transcode_failed command=%s output=%s", " ".join(command), _stderr_tail(exc.stderr))
            raise ExternalServiceFailure("ffmpeg", _stderr_tail(exc.stderr) or "ffmpeg failed") from exc

    def render_video(self, source: Path, output: Path, profile: dict[str, str]) -> None:
        command = [self._config.media_ffmpeg_binary, "-y", "-i", str(source)]
        if profile.get("resolution"):
            command += ["-vf", f"scale=-2:{profile['resolution'].replace('p', '')}"]
        if profile.get("bitrate"):
            command += ["-b:v", profile["bitrate"]]
        command.append(str(output))
        self._run(command, self._config.media_transcode_timeout_seconds)

    def render_audio(self, source: Path, output: Path, profile: dict[str, str]) -> None:
        command = [self._config.media_ffmpeg_binary, "-y", "-i", str(source), "-vn"]
        if profile.get("bitrate"):
            command += ["-b:a", profile["bitrate"]]
        command.append(str(output))
        self._run(command, self._config.media_transcode_timeout_seconds)

    def render_thumbnail(self, source: Path, output: Path) -> bool:
        config = self._config
        command = [
            config.media_ffmpeg_binary,
            "-y",
            "-ss",
            str(config.media_thumbnail_offset_seconds),
            "-i",
            str(source),
            "-vframes",
            "1",
            "-vf",
            f"scale={config.media_thumbnail_width}:{config.media_thumbnail_height}",
            str(output),
        ]
        try:
            self._run(command, config.media_thumbnail_timeout_seconds)
        except ExternalServiceFailure as exc:
            logger.warning("thumbnail_generation_failed source=%s message=%s", source, exc.message)
            return False
        return True


def media_path(key: str, config: Settings = default_settings) -> Path:
    return Path(config.media_root) / key.lstrip("/")


def register_media(
    db: Session,
    *,
    file_url: str,
    mime_type: str,
    size_bytes: int,
    owner_kind: MediaOwnerKind | None = None,
    owner_id: int | None = None,
    title: str | None = None,
    uploaded_by: int | None = None,
    config: Settings = default_settings,
) -> MediaItem:
    if size_bytes <= 0 or size_bytes > config.media_max_upload_bytes:
        raise ValidationFailure(
            "Media size is outside the allowed range",
            {"size_bytes": [f"Must be between 1 and {config.media_max_upload_bytes} bytes"]},
        )
    if not mime_type.startswith(ALLOWED_MIME_PREFIXES):
        raise ValidationFailure("Unsupported media type", {"mime_type": ["Unsupported media type"]})
    if (owner_kind is None) != (owner_id is None):
        raise ValidationFailure(
            "Owner kind and owner id must be provided together",
            {"owner_id": ["Owner kind and owner id must be provided together"]},
        )

    media = MediaItem(
        uuid=str(uuid4()),
        owner_kind=owner_kind.value if owner_kind else None,
        owner_id=owner_id,
        title=title,
        file_url=file_url,
        mime_type=mime_type,
        size_bytes=size_bytes,
        status=MediaStatus.PENDING.value,
        uploaded_by=uploaded_by,
    )
    db.add(media)
    db.commit()
    db.refresh(media)
    logger.info("media_registered media_uuid=%s owner_kind=%s owner_id=%s", media.uuid, media.owner_kind, owner_id)
    return media


def ingest_media(
    db: Session,
    media_id: int,
    scanner: VirusScanner | None = None,
    config: Settings = default_settings,
    metrics: MediaMetrics = media_metrics,
) -> bool:
    """Scan an uploaded item; returns True when it may be transcoded."""
    media = db.get(MediaItem, media_id)
    if media is None:
        logger.warning("media_item_missing stage=ingest media_item_id=%s", media_id)
        return False

    first_pass = media.status == MediaStatus.PENDING.value
    entering_backlog = media.status != MediaStatus.PROCESSING.value
    media.mark_status(MediaStatus.PROCESSING)
    db.commit()
    if first_pass:
        metrics.record_ingest_queued()
    if entering_backlog:
        metrics.record_backlog_entered()

    try:
        (scanner or VirusScanner(config)).scan(media_path(media.file_url, config))
    except ExternalServiceFailure as exc:
        metrics.record_virus_scan_failure()
        media.mark_status(MediaStatus.FAILED, exc.message)
        db.commit()
        metrics.record_backlog_left()
        logger.error("virus_scan_failed media_item_id=%s message=%s", media.id, exc.message)
        raise

    return True


def transcode_media(
    db: Session,
    media_id: int,
    transcoder: Transcoder | None = None,
    config: Settings = default_settings,
    metrics: MediaMetrics = media_metrics,
) -> dict[str, Any] | None:
    media = db.get(MediaItem, media_id)
    if media is None:
        logger.warning("media_item_missing stage=transcode media_item_id=%s", media_id)
        return None

    engine = transcoder or Transcoder(config)
    # A re-run after a failed attempt puts the item back into the backlog.
    entering_backlog = media.status != MediaStatus.PROCESSING.value
    media.mark_status(MediaStatus.PROCESSING)
    db.commit()
    if entering_backlog:
        metrics.record_backlog_entered()
    metrics.record_transcode_start()

    try:
        source = media_path(media.file_url, config)
        if not source.exists():
            raise ExternalServiceFailure("storage", "Source media file cannot be located.")

        conversions: dict[str, Any] = {}
        for profile in config.media_video_profiles:
            key = build_output_key(media.file_url, profile.get("resolution", "unknown"))
            engine.render_video(source, media_path(key, config), profile)
            conversions.setdefault("video", []).append(
                {"resolution": profile.get("resolution"), "bitrate": profile.get("bitrate"), "url": key}
            )

        for profile in config.media_audio_profiles:
            key = build_output_key(media.file_url, "audio")
            engine.render_audio(source, media_path(key, config), profile)
            conversions.setdefault("audio", []).append({"bitrate": profile.get("bitrate"), "url": key})

        thumbnail_key = build_thumbnail_key(media.file_url)
        if engine.render_thumbnail(source, media_path(thumbnail_key, config)):
            conversions["thumbnail"] = {
                "url": thumbnail_key,
                "width": config.media_thumbnail_width,
                "height": config.media_thumbnail_height,
            }
    except ExternalServiceFailure as exc:
        media.mark_status(MediaStatus.FAILED, exc.message)
        db.commit()
        metrics.record_transcode_failure()
        metrics.record_backlog_left()
        logger.error("transcode_job_failed media_item_id=%s message=%s", media.id, exc.message)
        raise

    media.conversions = conversions
    media.mark_status(MediaStatus.READY)
    db.commit()
    metrics.record_transcode_success()
    metrics.record_backlog_left()
    logger.info("transcode_job_completed media_item_id=%s", media.id)
    return conversions
