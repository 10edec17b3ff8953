"""
Health check endpoints.
A missing broker degrades the service (jobs run in-process) but never
takes it out of rotation.
"""
import shutil
from datetime import datetime

from fastapi import APIRouter

from mediaflow import __version__
from mediaflow.config import config
from ..schemas import HealthResponse
from ..dependencies import check_celery_connection, check_redis_connection

router = APIRouter(tags=["Health"])


def ffmpeg_available() -> bool:
    return shutil.which(config.paths.ffmpeg_path) is not None


@router.get("/health", response_model=HealthResponse, summary="Health Check")
async def health_check() -> HealthResponse:
    celery_ok = check_celery_connection()
    redis_ok = check_redis_connection()
    ffmpeg_ok = ffmpeg_available()

    return HealthResponse(
        status="healthy" if (celery_ok and redis_ok and ffmpeg_ok) else "degraded",
        service="mediaflow-api",
        version=__version__,
        celery_connected=celery_ok,
        redis_connected=redis_ok,
        ffmpeg_available=ffmpeg_ok,
        remote_configured=config.remote.has_api_key,
        artifact_backend=config.storage.backend,
        timestamp=datetime.utcnow(),
    )


@router.get("/health/live", summary="Liveness Probe")
async def liveness() -> dict:
    return {"status": "alive"}


@router.get("/health/ready", summary="Readiness Probe")
async def readiness() -> dict:
    if not check_redis_connection():
        return {"status": "degraded", "reason": "Redis unavailable, jobs run in-process"}
    return {"status": "ready"}
