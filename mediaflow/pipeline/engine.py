"""
Local Transcoding Engine.
Applies a FilterChain to one blob. Engines are disposable: open one with
engine_session() around each call, never hold one across an await.
"""
import os
import uuid
import shutil
import logging
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from mediaflow.config import config
from .errors import EngineCapacityExceeded, EngineError
from .ffmpeg import FFmpegRunner
from .filters import FilterChain, FrameSize

logger = logging.getLogger(__name__)


class LocalTranscodingEngine:
    """
    Single-threaded transcoding runtime bound to one scratch directory.
    Work happens in scratch; only finished blobs are moved to output_dir.
    """

    def __init__(
        self,
        runner: FFmpegRunner,
        scratch_dir: Path,
        output_dir: Path,
        max_input_bytes: Optional[int] = None,
    ):
        self.runner = runner
        self.scratch_dir = scratch_dir
        self.output_dir = output_dir
        self.max_input_bytes = max_input_bytes or config.pipeline.engine_max_input_bytes

    def check_capacity(self, blob_path: str) -> int:
        """Stat the input; raise before any data is read if it is too large."""
        size = os.path.getsize(blob_path)
        if size > self.max_input_bytes:
            logger.warning(f"[ENGINE] {Path(blob_path).name} is {size} bytes, ceiling {self.max_input_bytes}")
            raise EngineCapacityExceeded(size, self.max_input_bytes)
        return size

    def apply(self, blob_path: str, chain: FilterChain, frame_size: FrameSize) -> str:
        """Apply the chain and return the new blob path. Empty chains are a no-op."""
        self.check_capacity(blob_path)

        if chain.is_empty:
            return blob_path

        name = f"{Path(blob_path).stem}_fx_{uuid.uuid4().hex[:8]}.mp4"
        work_path = self.scratch_dir / name
        final_path = self.output_dir / name

        logger.info(f"[ENGINE] Applying {[k.value for k in chain.stage_kinds]} to {Path(blob_path).name}")
        self.runner.run(chain.compile(blob_path, str(work_path), frame_size))

        if not work_path.exists() or work_path.stat().st_size == 0:
            raise EngineError(f"Engine produced no output for {Path(blob_path).name}")

        shutil.move(str(work_path), str(final_path))
        return str(final_path)

    def slice(self, blob_path: str, start: float, duration: float, index: int) -> str:
        """Stream-copy one time range into its own blob (no re-encoding)."""
        name = f"{Path(blob_path).stem}_seg{index:03d}.mp4"
        work_path = self.scratch_dir / name
        final_path = self.output_dir / name

        self.runner.run([
            "-ss", f"{start:.3f}",
            "-i", str(blob_path),
            "-t", f"{duration:.3f}",
            "-map", "0",
            "-c", "copy",
            "-avoid_negative_ts", "make_zero",
            str(work_path),
        ])

        if not work_path.exists() or work_path.stat().st_size == 0:
            raise EngineError(f"Slice {index} of {Path(blob_path).name} is empty")

        shutil.move(str(work_path), str(final_path))
        return str(final_path)


@contextmanager
def engine_session(
    output_dir: Path,
    runner: Optional[FFmpegRunner] = None,
    max_input_bytes: Optional[int] = None,
) -> Iterator[LocalTranscodingEngine]:
    """
    Create a disposable engine with its own scratch directory.
    The scratch directory (and any half-written output) is removed on exit.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    scratch = Path(tempfile.mkdtemp(prefix="engine_", dir=str(output_dir)))
    engine = LocalTranscodingEngine(
        runner=runner or FFmpegRunner(),
        scratch_dir=scratch,
        output_dir=output_dir,
        max_input_bytes=max_input_bytes,
    )
    try:
        yield engine
    finally:
        shutil.rmtree(scratch, ignore_errors=True)
