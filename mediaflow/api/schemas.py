"""
Pydantic schemas for API requests and responses.
"""
from pydantic import BaseModel, Field
from typing import Optional, Dict, List
from datetime import datetime

from mediaflow.pipeline.models import (
    ErrorInfo,
    JobStatus,
    MediaJob,
    RemoteJobStatus,
    StageKind,
)


class JobSubmitResponse(BaseModel):
    """POST /jobs response (202 Accepted)."""
    job_id: str
    status: JobStatus
    cost_estimate: int
    cost_breakdown: Dict[str, int] = Field(default_factory=dict)
    execution_mode: str = Field(..., description="queued (Celery worker) or direct (in-process)")
    status_url: str


class RemoteJobView(BaseModel):
    """Public view of one remote AI job."""
    kind: StageKind
    status: RemoteJobStatus
    segment_index: Optional[int] = None
    attempts: int = 0
    error_message: Optional[str] = None


class JobStatusResponse(BaseModel):
    """GET /jobs/{job_id} response."""
    job_id: str
    status: JobStatus
    progress_percent: float
    selected_stages: List[StageKind]
    completed_stages: List[StageKind] = Field(default_factory=list)
    partial: bool = False
    cost_estimate: int
    cost_charged: int
    output_ref: Optional[str] = None
    last_error: Optional[ErrorInfo] = None
    stage_errors: List[ErrorInfo] = Field(default_factory=list)
    segment_count: int = 0
    remote_jobs: List[RemoteJobView] = Field(default_factory=list)
    duration_seconds: Optional[float] = None
    cancel_requested: bool = False
    created_at: datetime
    updated_at: datetime
    finished_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: MediaJob, cancel_requested: bool = False) -> "JobStatusResponse":
        return cls(
            job_id=job.id,
            status=job.status,
            progress_percent=job.progress_percent,
            selected_stages=job.selected_stages,
            completed_stages=job.completed_stages,
            partial=job.partial,
            cost_estimate=job.cost_estimate,
            cost_charged=job.cost_charged,
            output_ref=job.output_ref,
            last_error=job.last_error,
            stage_errors=job.stage_errors,
            segment_count=len(job.segments) or (1 if job.duration_seconds else 0),
            remote_jobs=[
                RemoteJobView(
                    kind=r.kind,
                    status=r.status,
                    segment_index=r.segment_index,
                    attempts=r.attempts,
                    error_message=r.error_message,
                )
                for r in job.remote_jobs
            ],
            duration_seconds=job.duration_seconds,
            cancel_requested=cancel_requested or job.cancel_requested,
            created_at=job.created_at,
            updated_at=job.updated_at,
            finished_at=job.finished_at,
        )


class JobListResponse(BaseModel):
    """GET /jobs response."""
    jobs: List[JobStatusResponse]
    total: int


class CancelResponse(BaseModel):
    """POST /jobs/{job_id}/cancel response."""
    job_id: str
    accepted: bool
    status: JobStatus
    message: str


class EstimateRequest(BaseModel):
    """POST /jobs/estimate request body."""
    stages: List[StageKind] = Field(default_factory=list)
    duration_seconds: float = Field(..., gt=0)


class EstimateResponse(BaseModel):
    """Quoted price and whether the caller can afford it."""
    total: int
    base: int
    minutes: int
    breakdown: Dict[str, int]
    balance: int
    affordable: bool


class UploadResponse(BaseModel):
    """POST /jobs/upload response."""
    source_ref: str = Field(..., description="Pass as source_ref with source_mode=direct_upload")
    filename: str
    size_bytes: int


class SettlementIssueView(BaseModel):
    job_id: str
    user_id: str
    amount: int
    message: str
    created_at: datetime


class SettlementIssueListResponse(BaseModel):
    issues: List[SettlementIssueView]
    total: int


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    service: str
    version: str
    celery_connected: bool
    redis_connected: bool
    ffmpeg_available: bool
    remote_configured: bool
    artifact_backend: str
    timestamp: datetime
