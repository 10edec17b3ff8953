"""
Media Acquirer.
Normalizes a remote URL or a direct upload into a local blob with known
duration and size.
"""
import os
import re
import uuid
import shutil
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import httpx
import yt_dlp

from mediaflow.config import config
from .errors import AcquisitionError, EngineError, ValidationError
from .ffmpeg import FFmpegRunner
from .models import SourceMode

logger = logging.getLogger(__name__)

UPLOAD_SCHEME = "upload://"

PLATFORM_HOST_PATTERN = re.compile(
    r"(^|\.)(youtube\.com|youtu\.be|tiktok\.com|facebook\.com|fb\.watch|instagram\.com|vimeo\.com)$",
    re.IGNORECASE,
)

# ffprobe format_name tokens we accept as "common video containers"
ALLOWED_FORMAT_TOKENS = {"mov", "mp4", "m4a", "matroska", "webm", "avi", "mpegts", "flv"}


@dataclass
class AcquiredMedia:
    """Local source blob plus the metadata later stages need."""
    blob_path: str
    duration_seconds: float
    size_bytes: int
    has_audio: bool
    width: Optional[int] = None
    height: Optional[int] = None
    format_name: Optional[str] = None


# ============================================================
# Fetch services (RemoteUrl)
# ============================================================

class FetchService(ABC):
    """Downloads a remote resource into dest_dir and returns the local path."""

    @abstractmethod
    def fetch(self, url: str, dest_dir: Path) -> str:
        pass


class YtDlpFetchService(FetchService):
    """Platform links (YouTube, TikTok, Facebook) via yt-dlp."""

    def __init__(self, max_bytes: Optional[int] = None):
        self.max_bytes = max_bytes or config.pipeline.max_download_bytes

    def fetch(self, url: str, dest_dir: Path) -> str:
        download_id = uuid.uuid4().hex[:8]
        opts = {
            "quiet": True,
            "no_warnings": True,
            "noplaylist": True,
            "format": "bestvideo[ext=mp4][height<=1080]+bestaudio[ext=m4a]/best[ext=mp4]/best",
            "merge_output_format": "mp4",
            "outtmpl": str(dest_dir / f"source_{download_id}.%(ext)s"),
            "max_filesize": self.max_bytes,
        }
        ffmpeg_dir = os.path.dirname(config.paths.ffmpeg_path)
        if ffmpeg_dir and os.path.isdir(ffmpeg_dir):
            opts["ffmpeg_location"] = ffmpeg_dir

        logger.info(f"[ACQUIRE] yt-dlp download: {url}")
        try:
            with yt_dlp.YoutubeDL(opts) as ydl:
                ydl.download([url])
        except yt_dlp.utils.DownloadError as e:
            raise AcquisitionError(*classify_download_error(str(e))) from e

        files = sorted(dest_dir.glob(f"source_{download_id}.*"))
        if not files:
            raise AcquisitionError(
                "Download finished but no file was written (size limit or unavailable format)",
                code="SOURCE_UNAVAILABLE",
            )
        return str(files[0])


class HttpFetchService(FetchService):
    """Direct media links streamed with httpx."""

    def __init__(self, max_bytes: Optional[int] = None, timeout: float = 60.0):
        self.max_bytes = max_bytes or config.pipeline.max_download_bytes
        self.timeout = timeout

    def fetch(self, url: str, dest_dir: Path) -> str:
        suffix = Path(urlparse(url).path).suffix or ".mp4"
        dest = dest_dir / f"source_{uuid.uuid4().hex[:8]}{suffix}"
        written = 0

        logger.info(f"[ACQUIRE] HTTP download: {url}")
        try:
            with httpx.stream("GET", url, timeout=self.timeout, follow_redirects=True) as response:
                if response.status_code in (401, 403):
                    raise AcquisitionError(f"Source is private (HTTP {response.status_code})", code="SOURCE_PRIVATE")
                if response.status_code == 404:
                    raise AcquisitionError("Source not found (HTTP 404)", code="SOURCE_UNAVAILABLE")
                response.raise_for_status()

                declared = response.headers.get("content-length")
                if declared and int(declared) > self.max_bytes:
                    raise AcquisitionError(
                        f"Source is {declared} bytes, limit {self.max_bytes}", code="SOURCE_TOO_LARGE"
                    )

                with open(dest, "wb") as f:
                    for chunk in response.iter_bytes():
                        written += len(chunk)
                        if written > self.max_bytes:
                            raise AcquisitionError(
                                f"Source exceeds {self.max_bytes} bytes", code="SOURCE_TOO_LARGE"
                            )
                        f.write(chunk)
        except AcquisitionError:
            dest.unlink(missing_ok=True)
            raise
        except httpx.HTTPError as e:
            dest.unlink(missing_ok=True)
            raise AcquisitionError(f"Download failed: {e}", code="SOURCE_UNAVAILABLE") from e

        return str(dest)


class AutoFetchService(FetchService):
    """Picks yt-dlp for known platforms, plain HTTP otherwise."""

    def __init__(
        self,
        platform: Optional[FetchService] = None,
        direct: Optional[FetchService] = None,
    ):
        self.platform = platform or YtDlpFetchService()
        self.direct = direct or HttpFetchService()

    def fetch(self, url: str, dest_dir: Path) -> str:
        host = urlparse(url).hostname or ""
        if PLATFORM_HOST_PATTERN.search(host):
            return self.platform.fetch(url, dest_dir)
        return self.direct.fetch(url, dest_dir)


def classify_download_error(message: str) -> tuple:
    """Map a yt-dlp error message to (message, code)."""
    lowered = message.lower()
    if "private" in lowered or "sign in" in lowered or "login" in lowered:
        return f"Source is private: {message[:200]}", "SOURCE_PRIVATE"
    if "unsupported url" in lowered:
        return f"Unsupported source: {message[:200]}", "SOURCE_UNSUPPORTED"
    return f"Download failed: {message[:200]}", "SOURCE_UNAVAILABLE"


# ============================================================
# Acquirer
# ============================================================

def resolve_upload_ref(source_ref: str, uploads_dir: Path) -> Path:
    """upload://<name> -> file inside uploads_dir. Rejects traversal."""
    name = source_ref[len(UPLOAD_SCHEME):] if source_ref.startswith(UPLOAD_SCHEME) else source_ref
    if not name or "/" in name or "\\" in name or name.startswith("."):
        raise ValidationError(f"Invalid upload reference: {source_ref}")
    return uploads_dir / name


def validate_remote_url(source_ref: str) -> None:
    parsed = urlparse(source_ref)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise ValidationError(f"Source URL must be http(s): {source_ref}")


class MediaAcquirer:
    """Produces an AcquiredMedia for either source mode."""

    def __init__(
        self,
        fetch_service: Optional[FetchService] = None,
        runner: Optional[FFmpegRunner] = None,
        uploads_dir: Optional[Path] = None,
        max_upload_bytes: Optional[int] = None,
        allowed_extensions: Optional[tuple] = None,
    ):
        self.fetch_service = fetch_service or AutoFetchService()
        self.runner = runner or FFmpegRunner()
        self.uploads_dir = Path(uploads_dir or config.paths.uploads_dir)
        self.max_upload_bytes = max_upload_bytes or config.pipeline.max_upload_bytes
        self.allowed_extensions = allowed_extensions or config.pipeline.allowed_containers

    def acquire(self, source_mode: SourceMode, source_ref: str, work_dir: Path) -> AcquiredMedia:
        work_dir = Path(work_dir)
        work_dir.mkdir(parents=True, exist_ok=True)

        if source_mode == SourceMode.REMOTE_URL:
            validate_remote_url(source_ref)
            blob_path = self.fetch_service.fetch(source_ref, work_dir)
        else:
            blob_path = self._accept_upload(source_ref, work_dir)

        media = self.probe(blob_path)
        logger.info(
            f"[ACQUIRE] Source ready: {Path(blob_path).name} "
            f"({media.duration_seconds:.1f}s, {media.size_bytes} bytes, audio={media.has_audio})"
        )
        return media

    def _accept_upload(self, source_ref: str, work_dir: Path) -> str:
        path = resolve_upload_ref(source_ref, self.uploads_dir)
        if not path.is_file():
            raise AcquisitionError(f"Upload not found: {path.name}", code="UPLOAD_NOT_FOUND")

        self.validate_upload(path.name, path.stat().st_size)

        dest = work_dir / f"source{path.suffix.lower()}"
        shutil.copyfile(path, dest)
        return str(dest)

    def validate_upload(self, filename: str, size_bytes: int) -> None:
        """Size ceiling and extension allow-list, checked before any decoding."""
        if size_bytes > self.max_upload_bytes:
            raise ValidationError(
                f"Upload is {size_bytes} bytes, limit {self.max_upload_bytes}",
                code="UPLOAD_TOO_LARGE",
            )
        ext = Path(filename).suffix.lower().lstrip(".")
        if ext not in self.allowed_extensions:
            raise ValidationError(f"Unsupported container: .{ext}", code="UNSUPPORTED_CONTAINER")

    def probe(self, blob_path: str) -> AcquiredMedia:
        try:
            result = self.runner.probe(blob_path)
        except EngineError as e:
            raise AcquisitionError(f"Source could not be decoded: {e.message}", code="SOURCE_UNDECODABLE") from e

        tokens = set((result.format_name or "").split(","))
        if not tokens & ALLOWED_FORMAT_TOKENS:
            raise AcquisitionError(f"Unsupported container format: {result.format_name}", code="UNSUPPORTED_CONTAINER")
        if not result.width or not result.height:
            raise AcquisitionError("Source has no video stream", code="NO_VIDEO_STREAM")
        if not result.duration_seconds or result.duration_seconds <= 0:
            raise AcquisitionError("Source duration is unknown", code="UNKNOWN_DURATION")

        size = result.size_bytes or os.path.getsize(blob_path)
        if not size:
            raise AcquisitionError("Source size is unknown", code="UNKNOWN_SIZE")

        return AcquiredMedia(
            blob_path=blob_path,
            duration_seconds=result.duration_seconds,
            size_bytes=size,
            has_audio=result.has_audio,
            width=result.width,
            height=result.height,
            format_name=result.format_name,
        )
