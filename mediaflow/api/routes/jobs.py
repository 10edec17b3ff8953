"""
Media job endpoints.
Submission returns 202 immediately; the pipeline runs on a Celery worker,
or in-process when the broker is down.
"""
import asyncio
import uuid
import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Header, UploadFile, status

from mediaflow.auth.dependencies import get_current_user
from mediaflow.auth.models import User
from mediaflow.credits.exceptions import InsufficientBalance, JobNotOwnedError
from mediaflow.pipeline.acquirer import UPLOAD_SCHEME
from mediaflow.pipeline.controller import PipelineController
from mediaflow.pipeline.errors import AcquisitionError
from mediaflow.pipeline.errors import ValidationError as PipelineValidationError
from mediaflow.pipeline.models import JobSpec, JobStatus, MediaJob
from ..dependencies import check_redis_connection, get_controller
from ..exceptions import JobNotFoundError, PayloadTooLargeError, ValidationError
from ..schemas import (
    CancelResponse,
    EstimateRequest,
    EstimateResponse,
    JobListResponse,
    JobStatusResponse,
    JobSubmitResponse,
    UploadResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["Jobs"])

UPLOAD_CHUNK_BYTES = 1024 * 1024


def _owned_job(controller: PipelineController, job_id: str, user: User) -> MediaJob:
    job = controller.get_status(job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    if job.user_id != user.user_id:
        raise JobNotOwnedError(user.user_id, job_id).to_http_exception()
    return job


def _dispatch(controller: PipelineController, job: MediaJob, background_tasks: BackgroundTasks) -> str:
    """Queue the job on Celery, or run it in-process if Redis is unavailable."""
    if check_redis_connection():
        from mediaflow.pipeline.tasks import run_media_job

        # task_id is persisted before the worker can pick the job up
        task_id = str(uuid.uuid4())
        job.task_id = task_id
        controller.repository.save(job)
        run_media_job.apply_async(args=[job.id], task_id=task_id)
        logger.info(f"Job {job.id} queued as task {task_id}")
        return "queued"

    logger.warning(f"Redis unavailable, running job {job.id} in-process")
    background_tasks.add_task(controller.run, job.id)
    return "direct"


@router.post(
    "",
    response_model=JobSubmitResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit Media Job",
    description="Validate, quote and start a media job. Requires enough credits for the quote.",
)
async def submit_job(
    spec: JobSpec,
    background_tasks: BackgroundTasks,
    user: User = Depends(get_current_user),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    controller: PipelineController = Depends(get_controller),
) -> JobSubmitResponse:
    """
    Submit a job.

    A repeated Idempotency-Key returns the job created by the first call
    without starting it again.
    """
    if idempotency_key and not spec.idempotency_key:
        spec = spec.model_copy(update={"idempotency_key": idempotency_key})

    try:
        job_id = await asyncio.to_thread(controller.submit, spec, user)
    except (PipelineValidationError, AcquisitionError) as e:
        raise ValidationError.from_pipeline_error(e)
    except InsufficientBalance as e:
        raise e.to_http_exception()

    job = controller.get_status(job_id)

    if job.status == JobStatus.CREATED and job.task_id is None:
        mode = _dispatch(controller, job, background_tasks)
    else:
        mode = "queued" if job.task_id else "direct"

    return JobSubmitResponse(
        job_id=job.id,
        status=job.status,
        cost_estimate=job.cost_estimate,
        cost_breakdown=job.cost_breakdown,
        execution_mode=mode,
        status_url=f"/jobs/{job.id}",
    )


@router.post(
    "/upload",
    response_model=UploadResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Upload Source Media",
    description="Store a video for a direct_upload job. Size and container are checked before decoding.",
)
async def upload_source(
    file: UploadFile = File(...),
    user: User = Depends(get_current_user),
    controller: PipelineController = Depends(get_controller),
) -> UploadResponse:
    acquirer = controller.acquirer
    filename = file.filename or "upload"

    try:
        acquirer.validate_upload(filename, 0)
    except PipelineValidationError as e:
        raise ValidationError.from_pipeline_error(e)

    name = f"{uuid.uuid4().hex}{Path(filename).suffix.lower()}"
    dest = acquirer.uploads_dir / name
    dest.parent.mkdir(parents=True, exist_ok=True)

    size = 0
    with open(dest, "wb") as out:
        while chunk := await file.read(UPLOAD_CHUNK_BYTES):
            size += len(chunk)
            if size > acquirer.max_upload_bytes:
                out.close()
                dest.unlink(missing_ok=True)
                raise PayloadTooLargeError(f"Upload exceeds {acquirer.max_upload_bytes} bytes")
            out.write(chunk)

    logger.info(f"User {user.user_id} uploaded {name} ({size} bytes)")
    return UploadResponse(source_ref=f"{UPLOAD_SCHEME}{name}", filename=filename, size_bytes=size)


@router.post(
    "/estimate",
    response_model=EstimateResponse,
    summary="Estimate Job Cost",
)
async def estimate_job(
    request: EstimateRequest,
    user: User = Depends(get_current_user),
    controller: PipelineController = Depends(get_controller),
) -> EstimateResponse:
    """Quote without creating a job."""
    estimate = controller.cost_meter.estimate(request.stages, request.duration_seconds)
    balance = controller.credits.get_balance(user.user_id)

    return EstimateResponse(
        total=estimate.total,
        base=estimate.base,
        minutes=estimate.minutes,
        breakdown=estimate.breakdown,
        balance=balance,
        affordable=not user.is_metered or balance >= estimate.total,
    )


@router.get(
    "",
    response_model=JobListResponse,
    summary="List Jobs",
)
async def list_jobs(
    limit: int = 50,
    user: User = Depends(get_current_user),
    controller: PipelineController = Depends(get_controller),
) -> JobListResponse:
    jobs = controller.list_jobs(user.user_id, limit=min(max(limit, 1), 200))
    return JobListResponse(
        jobs=[JobStatusResponse.from_job(job) for job in jobs],
        total=len(jobs),
    )


@router.get(
    "/{job_id}",
    response_model=JobStatusResponse,
    summary="Get Job Status",
    description="Status, progress, charge and output reference of a job.",
)
async def get_job(
    job_id: str,
    user: User = Depends(get_current_user),
    controller: PipelineController = Depends(get_controller),
) -> JobStatusResponse:
    job = _owned_job(controller, job_id, user)
    cancel_requested = controller.repository.is_cancel_requested(job_id)
    return JobStatusResponse.from_job(job, cancel_requested=cancel_requested)


@router.post(
    "/{job_id}/cancel",
    response_model=CancelResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Cancel Job",
    description="Stop a job at its next checkpoint. Work finished so far may still be delivered.",
)
async def cancel_job(
    job_id: str,
    user: User = Depends(get_current_user),
    controller: PipelineController = Depends(get_controller),
) -> CancelResponse:
    _owned_job(controller, job_id, user)
    accepted = controller.cancel(job_id)
    job = controller.get_status(job_id)

    return CancelResponse(
        job_id=job_id,
        accepted=accepted,
        status=job.status,
        message="Cancellation requested" if accepted else f"Job is already {job.status.value}",
    )
