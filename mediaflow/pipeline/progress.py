"""
Weighted progress for a MediaJob.
Progress comes from completed work, never from wall-clock time.
"""
from typing import Dict, List

from .models import MediaJob, StageKind

PHASE_WEIGHTS: Dict[str, float] = {
    "acquire": 10.0,
    "segment": 5.0,
    "local": 20.0,
    "remote": 40.0,
    "compose": 15.0,
    "upload": 10.0,
}


class ProgressTracker:
    """
    Tracks finished phases and remote stages for one job.
    The remote weight is split evenly across the selected remote stages.
    """

    def __init__(self, job: MediaJob):
        self.job = job
        self._done: set = set()
        self._remote_stages: List[StageKind] = job.stages_where(lambda k: k.is_remote)
        self._remote_done: set = set()

    @property
    def percent(self) -> float:
        total = sum(PHASE_WEIGHTS[p] for p in self._done)
        if "remote" not in self._done and self._remote_stages:
            share = PHASE_WEIGHTS["remote"] / len(self._remote_stages)
            total += share * len(self._remote_done)
        return min(100.0, total)

    def complete(self, phase: str) -> float:
        """Mark a phase finished (successfully or not) and push progress to the job."""
        if phase not in PHASE_WEIGHTS:
            raise ValueError(f"Unknown phase: {phase}")
        self._done.add(phase)
        self.job.advance_progress(self.percent)
        return self.job.progress_percent

    def complete_remote_stage(self, kind: StageKind) -> float:
        if kind in self._remote_stages:
            self._remote_done.add(kind)
        self.job.advance_progress(self.percent)
        return self.job.progress_percent

    def finish(self) -> float:
        self.job.advance_progress(100.0)
        return self.job.progress_percent
