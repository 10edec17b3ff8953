"""
Admin endpoints.
Every route requires the X-Admin-Secret header; with no ADMIN_SECRET
configured the admin surface is disabled.
"""
import hmac
import os
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from pydantic import BaseModel, Field

from mediaflow.pipeline.controller import PipelineController
from mediaflow.pipeline.errors import SettlementInconsistency
from ..dependencies import get_controller
from ..exceptions import ConflictError
from ..schemas import JobStatusResponse, SettlementIssueListResponse, SettlementIssueView

logger = logging.getLogger(__name__)


def _admin_denied(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"error": "Admin access denied", "code": code, "message": message},
    )


async def verify_admin_secret(
    x_admin_secret: Optional[str] = Header(None, alias="X-Admin-Secret"),
) -> None:
    """401 without the header, 403 on a wrong secret, 503 if none is configured."""
    expected = os.environ.get("ADMIN_SECRET")
    if not expected:
        logger.error("ADMIN_SECRET is not set, refusing admin request")
        raise _admin_denied(status.HTTP_503_SERVICE_UNAVAILABLE, "ADMIN_DISABLED", "Admin access is not configured")
    if not x_admin_secret:
        raise _admin_denied(status.HTTP_401_UNAUTHORIZED, "ADMIN_AUTH_REQUIRED", "Missing X-Admin-Secret header")
    if not hmac.compare_digest(x_admin_secret.encode(), expected.encode()):
        logger.warning("Admin request with invalid X-Admin-Secret")
        raise _admin_denied(status.HTTP_403_FORBIDDEN, "INVALID_ADMIN_SECRET", "The provided X-Admin-Secret is invalid")


router = APIRouter(prefix="/admin", tags=["Admin"], dependencies=[Depends(verify_admin_secret)])


class AddCreditsRequest(BaseModel):
    delta: int = Field(..., gt=0, description="Credits to add")


class AddCreditsResponse(BaseModel):
    user_id: str
    new_balance: int


@router.post(
    "/users/{user_id}/credits",
    response_model=AddCreditsResponse,
    summary="Modify User Credits",
)
async def add_credits(
    user_id: str,
    request: AddCreditsRequest,
    controller: PipelineController = Depends(get_controller),
) -> AddCreditsResponse:
    user = controller.credits.add_credits(user_id, request.delta)
    logger.info(f"Admin adjusted credits of {user_id} by {request.delta}")
    return AddCreditsResponse(user_id=user_id, new_balance=user.credits)


@router.get(
    "/settlement-issues",
    response_model=SettlementIssueListResponse,
    summary="List Settlement Issues",
    description="Jobs whose artifact exists but whose debit failed.",
)
async def list_settlement_issues(
    controller: PipelineController = Depends(get_controller),
) -> SettlementIssueListResponse:
    issues = controller.settlement_issues.list_open()
    return SettlementIssueListResponse(
        issues=[
            SettlementIssueView(
                job_id=i.job_id,
                user_id=i.user_id,
                amount=i.amount,
                message=i.message,
                created_at=i.created_at,
            )
            for i in issues
        ],
        total=len(issues),
    )


@router.post(
    "/settlement-issues/{job_id}/resolve",
    response_model=JobStatusResponse,
    summary="Resolve Settlement Issue",
    description="Retry the debit of a held job and publish its artifact.",
)
async def resolve_settlement_issue(
    job_id: str,
    controller: PipelineController = Depends(get_controller),
) -> JobStatusResponse:
    try:
        job = controller.resolve_settlement(job_id)
    except ValueError as e:
        raise ConflictError(str(e), code="NO_OPEN_ISSUE")
    except SettlementInconsistency as e:
        raise ConflictError(e.message, code="SETTLEMENT_INCONSISTENCY")

    return JobStatusResponse.from_job(job)
