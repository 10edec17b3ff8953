"""
FFmpeg process runner.
Every ffmpeg/ffprobe call goes through FFmpegRunner so the memory ceiling,
wall-clock timeout and error reporting are applied uniformly.
"""
import os
import sys
import json
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from mediaflow.config import config
from .errors import EngineError

logger = logging.getLogger(__name__)

STDERR_TAIL_CHARS = 2000


@dataclass
class ProbeResult:
    """Media metadata from ffprobe."""
    duration_seconds: Optional[float]
    size_bytes: Optional[int]
    has_audio: bool
    width: Optional[int]
    height: Optional[int]
    format_name: Optional[str]


def _memory_limiter(limit_mb: int):
    """preexec_fn that caps the child's address space (POSIX only)."""
    def apply_limit():
        import resource
        limit = limit_mb * 1024 * 1024
        resource.setrlimit(resource.RLIMIT_AS, (limit, limit))
    return apply_limit


class FFmpegRunner:
    """
    Runs ffmpeg/ffprobe as bounded child processes.
    Stateless; one instance may be shared by a job's engine and composer.
    """

    def __init__(
        self,
        ffmpeg_path: Optional[str] = None,
        ffprobe_path: Optional[str] = None,
        memory_limit_mb: Optional[int] = None,
        default_timeout: Optional[int] = None,
    ):
        self.ffmpeg_path = ffmpeg_path or config.paths.ffmpeg_path
        self.ffprobe_path = ffprobe_path or config.paths.ffprobe_path
        self.memory_limit_mb = memory_limit_mb or config.pipeline.engine_memory_limit_mb
        self.default_timeout = default_timeout or config.pipeline.engine_timeout_seconds

    def run(self, args: List[str], timeout: Optional[int] = None) -> None:
        """
        Run ffmpeg with the given arguments (without the binary).
        Raises EngineError on non-zero exit or timeout.
        """
        cmd = [self.ffmpeg_path, "-y", "-hide_banner", "-loglevel", "error", *args]
        logger.debug(f"[ENGINE] ffmpeg {' '.join(args)}")

        preexec = None
        if os.name == "posix" and sys.platform != "darwin" and self.memory_limit_mb:
            preexec = _memory_limiter(self.memory_limit_mb)

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout or self.default_timeout,
                preexec_fn=preexec,
            )
        except subprocess.TimeoutExpired as e:
            raise EngineError(
                f"ffmpeg timed out after {e.timeout}s",
                code="ENGINE_TIMEOUT",
            ) from e
        except OSError as e:
            raise EngineError(f"ffmpeg could not start: {e}") from e

        if result.returncode != 0:
            tail = (result.stderr or "")[-STDERR_TAIL_CHARS:]
            logger.error(f"[ENGINE] ffmpeg failed (code {result.returncode}): {tail}")
            raise EngineError(f"ffmpeg exited with code {result.returncode}", stderr_tail=tail)

    def probe(self, path: str, timeout: int = 30) -> ProbeResult:
        """Read duration, size and stream layout with ffprobe JSON output."""
        cmd = [
            self.ffprobe_path, "-v", "error",
            "-show_entries", "format=duration,size,format_name:stream=codec_type,width,height",
            "-of", "json",
            str(path),
        ]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            raise EngineError(f"ffprobe timed out after {timeout}s", code="PROBE_TIMEOUT") from e
        except OSError as e:
            raise EngineError(f"ffprobe could not start: {e}") from e

        if result.returncode != 0:
            tail = (result.stderr or "")[-STDERR_TAIL_CHARS:]
            raise EngineError(f"ffprobe failed for {Path(path).name}", stderr_tail=tail, code="PROBE_FAILED")

        try:
            data = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            raise EngineError(f"ffprobe returned invalid JSON: {e}", code="PROBE_FAILED") from e

        return parse_probe_output(data)


def parse_probe_output(data: dict) -> ProbeResult:
    """Turn ffprobe's JSON into a ProbeResult."""
    fmt = data.get("format") or {}
    streams = data.get("streams") or []

    duration = fmt.get("duration")
    size = fmt.get("size")
    video = next((s for s in streams if s.get("codec_type") == "video"), {})

    return ProbeResult(
        duration_seconds=float(duration) if duration not in (None, "N/A") else None,
        size_bytes=int(size) if size not in (None, "N/A") else None,
        has_audio=any(s.get("codec_type") == "audio" for s in streams),
        width=video.get("width"),
        height=video.get("height"),
        format_name=fmt.get("format_name"),
    )
