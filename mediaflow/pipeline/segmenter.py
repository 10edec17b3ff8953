"""
Segmenter.
Splits long sources into fixed-length stream-copied slices.
"""
import math
import logging
from typing import List, Tuple

from .engine import LocalTranscodingEngine
from .errors import EngineError, SegmentationError
from .models import Segment

logger = logging.getLogger(__name__)


def plan_segments(duration_seconds: float, threshold_seconds: float) -> List[Tuple[float, float]]:
    """
    (start, duration) pairs covering [0, D).
    ceil(D/T) slices of T seconds, the last one holding D - T*(n-1).
    """
    if duration_seconds <= 0:
        raise ValueError("duration must be positive")
    if threshold_seconds <= 0:
        raise ValueError("threshold must be positive")

    if duration_seconds <= threshold_seconds:
        return [(0.0, duration_seconds)]

    # round() absorbs float noise such as 120.00000001 / 60
    count = math.ceil(round(duration_seconds / threshold_seconds, 9))
    plan = [(i * threshold_seconds, threshold_seconds) for i in range(count - 1)]
    last_start = threshold_seconds * (count - 1)
    plan.append((last_start, duration_seconds - last_start))
    return plan


class Segmenter:
    """Turns a plan into Segment records using a disposable engine."""

    def split(
        self,
        engine: LocalTranscodingEngine,
        blob_path: str,
        duration_seconds: float,
        threshold_seconds: float,
    ) -> List[Segment]:
        plan = plan_segments(duration_seconds, threshold_seconds)

        if len(plan) == 1:
            return [Segment(index=0, start_offset_seconds=0.0, duration_seconds=duration_seconds, blob_ref=blob_path)]

        logger.info(f"[SEGMENT] Splitting {duration_seconds:.1f}s into {len(plan)} segments of <= {threshold_seconds:.0f}s")

        segments: List[Segment] = []
        for index, (start, length) in enumerate(plan):
            try:
                ref = engine.slice(blob_path, start, length, index)
            except EngineError as e:
                raise SegmentationError(f"Slice {index} failed: {e.message}") from e
            segments.append(Segment(
                index=index,
                start_offset_seconds=start,
                duration_seconds=length,
                blob_ref=ref,
            ))

        return segments
