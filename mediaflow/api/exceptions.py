"""
API Exceptions and Error Handlers.

Every APIError renders as {"error", "detail", "code", "status_code"}.
"""
import logging
from typing import Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from mediaflow.pipeline.errors import PipelineError

logger = logging.getLogger(__name__)


class ErrorResponse(BaseModel):
    error: str
    detail: Optional[str] = None
    code: str
    status_code: int


class APIError(Exception):
    """Base API exception; subclasses pin the status and default code."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code = "API_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, detail: Optional[str] = None):
        self.message = message
        self.code = code or self.default_code
        self.detail = detail
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(
            error=self.message,
            detail=self.detail,
            code=self.code,
            status_code=self.status_code,
        )


class ValidationError(APIError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_code = "VALIDATION_ERROR"

    @classmethod
    def from_pipeline_error(cls, error: PipelineError) -> "ValidationError":
        """Rejections raised by the controller at submit time keep their code."""
        return cls(error.message, code=error.code)


class ForbiddenError(APIError):
    status_code = status.HTTP_403_FORBIDDEN
    default_code = "FORBIDDEN"


class NotFoundError(APIError):
    status_code = status.HTTP_404_NOT_FOUND
    default_code = "NOT_FOUND"

    def __init__(self, resource: str, resource_id: str):
        super().__init__(f"{resource} not found: {resource_id}")


class JobNotFoundError(NotFoundError):

    def __init__(self, job_id: str):
        super().__init__("Job", job_id)


class ConflictError(APIError):
    status_code = status.HTTP_409_CONFLICT
    default_code = "CONFLICT"


class PayloadTooLargeError(APIError):
    status_code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
    default_code = "UPLOAD_TOO_LARGE"


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_response().model_dump())


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last-resort 500; the exception text is only exposed in debug mode."""
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    body = ErrorResponse(
        error="Internal server error",
        detail=str(exc) if request.app.debug else None,
        code="INTERNAL_ERROR",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    return JSONResponse(status_code=body.status_code, content=body.model_dump())
