"""
Pipeline error taxonomy.
Fatal errors (validation, acquisition) surface to the caller; the rest are
converted into the fallback path by the controller.
"""
from typing import Optional

from .models import ErrorInfo


class PipelineError(Exception):
    """Base pipeline error."""

    default_code = "PIPELINE_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, stage: Optional[str] = None):
        self.message = message
        self.code = code or self.default_code
        self.stage = stage
        super().__init__(message)

    def to_error_info(self) -> ErrorInfo:
        return ErrorInfo(code=self.code, message=self.message, stage=self.stage)


class ValidationError(PipelineError):
    """Malformed or oversized job request. Never charged."""
    default_code = "VALIDATION_ERROR"


class AcquisitionError(PipelineError):
    """Source could not be fetched or decoded."""
    default_code = "ACQUISITION_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message, code=code, stage="acquire")


class EngineError(PipelineError):
    """Local transcoding failed."""
    default_code = "ENGINE_ERROR"

    def __init__(self, message: str, stderr_tail: str = "", code: Optional[str] = None):
        self.stderr_tail = stderr_tail
        super().__init__(message, code=code, stage="local")


class EngineCapacityExceeded(EngineError):
    """Input larger than the sandbox ceiling; raised before any data is read."""
    default_code = "ENGINE_CAPACITY_EXCEEDED"

    def __init__(self, size_bytes: int, limit_bytes: int):
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes
        super().__init__(f"Input of {size_bytes} bytes exceeds engine ceiling of {limit_bytes} bytes")


class SegmentationError(PipelineError):
    """A slice failed; the whole split is discarded."""
    default_code = "SEGMENTATION_ERROR"

    def __init__(self, message: str):
        super().__init__(message, stage="segment")


class RemoteStageError(PipelineError):
    """Remote stage failed or timed out. Isolated per stage."""
    default_code = "REMOTE_STAGE_ERROR"

    def __init__(self, message: str, kind: Optional[str] = None, timed_out: bool = False):
        self.timed_out = timed_out
        super().__init__(
            message,
            code="REMOTE_STAGE_TIMED_OUT" if timed_out else None,
            stage=kind,
        )


class ComposeError(PipelineError):
    """Main segments could not be joined."""
    default_code = "COMPOSE_ERROR"

    def __init__(self, message: str):
        super().__init__(message, stage="compose")


class SettlementInconsistency(PipelineError):
    """Artifact produced but the ledger debit failed."""
    default_code = "SETTLEMENT_INCONSISTENCY"

    def __init__(self, job_id: str, amount: int, reason: str):
        self.job_id = job_id
        self.amount = amount
        super().__init__(
            f"Debit of {amount} credits for job {job_id} failed: {reason}",
            stage="settle",
        )


class JobCancelled(PipelineError):
    """Caller cancelled the job."""
    default_code = "JOB_CANCELLED"

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} was cancelled")


class JobTimedOut(PipelineError):
    """Global job timeout reached."""
    default_code = "JOB_TIMED_OUT"

    def __init__(self, job_id: str, timeout_seconds: float):
        super().__init__(f"Job {job_id} exceeded {timeout_seconds:.0f}s")
