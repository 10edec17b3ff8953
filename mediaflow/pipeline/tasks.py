"""
Celery tasks for the media pipeline.
"""
import asyncio
import logging
import shutil
import time
from pathlib import Path
from typing import Any, Optional

from celery import Task
from celery.exceptions import SoftTimeLimitExceeded

from mediaflow.celery_app import TASK_TIME_LIMIT, celery_app
from mediaflow.config import config
from .controller import PipelineController, get_pipeline_controller

logger = logging.getLogger(__name__)


class MediaPipelineTask(Task):
    """
    Base Celery task with error logging.
    Retries are disabled: a job is driven once, crash recovery is the reaper's job.
    """

    abstract = True
    track_started = True
    acks_late = True
    reject_on_worker_lost = True

    max_retries = 0

    _controller: Optional[PipelineController] = None

    @property
    def controller(self) -> PipelineController:
        if self._controller is None:
            self._controller = get_pipeline_controller()
        return self._controller

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        job_id = kwargs.get("job_id") or (args[0] if args else "unknown")
        logger.error(f"Task {task_id} failed for job {job_id}: {exc}")
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_success(self, retval, task_id, args, kwargs):
        job_id = kwargs.get("job_id") or (args[0] if args else "unknown")
        logger.info(f"Task {task_id} completed for job {job_id}")
        super().on_success(retval, task_id, args, kwargs)


def job_summary(job) -> dict[str, Any]:
    if job is None:
        return {"job_id": None, "status": "not_found"}
    return {
        "job_id": job.id,
        "status": job.status.value,
        "progress": job.progress_percent,
        "output_ref": job.output_ref,
        "cost_charged": job.cost_charged,
        "error": job.last_error.message if job.last_error else None,
    }


@celery_app.task(
    base=MediaPipelineTask,
    bind=True,
    name="media_pipeline.run_media_job",
    time_limit=TASK_TIME_LIMIT,
    soft_time_limit=TASK_TIME_LIMIT - 60,
)
def run_media_job(self, job_id: str) -> dict[str, Any]:
    """
    Drive one job to a terminal state.

    Args:
        job_id: MediaJob id

    Returns:
        Terminal job summary
    """
    task_id = self.request.id
    logger.info(f"Starting pipeline task {task_id} for job {job_id}")

    self.update_state(state="PROGRESS", meta={"job_id": job_id, "stage": "starting", "progress": 0})

    try:
        job = asyncio.run(self.controller.run(job_id))
    except SoftTimeLimitExceeded:
        # The reaper fails the job once it goes stale.
        logger.error(f"Task {task_id} exceeded soft time limit for job {job_id}")
        return job_summary(self.controller.get_status(job_id))

    return job_summary(job)


@celery_app.task(base=MediaPipelineTask, bind=True, name="media_pipeline.reap_stale_jobs")
def reap_stale_jobs(self, grace_seconds: float = 300.0) -> dict[str, Any]:
    """Fail jobs abandoned by a crashed worker."""
    reaped = self.controller.reap_stale_jobs(grace_seconds=grace_seconds)
    return {"reaped_count": len(reaped), "job_ids": reaped}


@celery_app.task(base=MediaPipelineTask, bind=True, name="media_pipeline.cleanup_work_dirs")
def cleanup_work_dirs(self, work_dir: Optional[str] = None, max_age_hours: int = 24) -> dict[str, Any]:
    """
    Remove per-job scratch directories of finished jobs.

    Args:
        work_dir: Base work directory
        max_age_hours: Minimum age in hours
    """
    base = Path(work_dir or config.paths.work_dir)
    if not base.exists():
        return {"deleted_count": 0, "freed_bytes": 0}

    max_age_seconds = max_age_hours * 3600
    current_time = time.time()

    deleted_count = 0
    freed_bytes = 0

    for job_dir in base.iterdir():
        if not job_dir.is_dir():
            continue

        job = self.controller.get_status(job_dir.name)
        if job is not None and not job.is_terminal:
            continue

        try:
            if current_time - job_dir.stat().st_mtime > max_age_seconds:
                dir_size = sum(f.stat().st_size for f in job_dir.rglob("*") if f.is_file())
                shutil.rmtree(job_dir)
                deleted_count += 1
                freed_bytes += dir_size
                logger.info(f"Deleted old work directory: {job_dir}")
        except OSError as e:
            logger.warning(f"Failed to delete {job_dir}: {e}")

    freed_mb = round(freed_bytes / (1024 * 1024), 2)
    logger.info(f"Cleanup complete: deleted {deleted_count} directories, freed {freed_mb}MB")

    return {"deleted_count": deleted_count, "freed_bytes": freed_bytes}
