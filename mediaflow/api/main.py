"""
FastAPI Application - Media Pipeline Gateway.

Run with: uvicorn mediaflow.api.main:app
"""
import os
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from mediaflow import __version__
from mediaflow.auth import AuthMiddleware
from mediaflow.config import config

from .routes import health_router, jobs_router, artifacts_router, admin_router
from .exceptions import APIError, api_error_handler, generic_exception_handler

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    from mediaflow.persistence import close_connection
    from .dependencies import check_redis_connection
    from .routes.health import ffmpeg_available

    logger.info(f"Starting mediaflow API {__version__}")
    config.log_status()

    if not ffmpeg_available():
        logger.error(f"ffmpeg not found at {config.paths.ffmpeg_path}; local stages and composition will fail")
    if not check_redis_connection():
        logger.warning("Broker unreachable, jobs will run in-process")

    yield

    close_connection()
    logger.info("mediaflow API stopped")


def create_app(debug: bool = False, require_auth: bool = True) -> FastAPI:
    app = FastAPI(
        title="Media Pipeline API",
        description="Transform short videos with local effects and remote AI stages",
        version=__version__,
        lifespan=lifespan,
        debug=debug,
    )

    origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    app.add_middleware(AuthMiddleware, require_auth=require_auth)

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    for router in (health_router, jobs_router, artifacts_router, admin_router):
        app.include_router(router)

    return app


app = create_app(
    debug=_env_flag("DEBUG", "false"),
    require_auth=_env_flag("REQUIRE_AUTH", "true"),
)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "mediaflow.api.main:app",
        host=os.getenv("API_HOST", "0.0.0.0"),
        port=int(os.getenv("API_PORT", "8000")),
        reload=_env_flag("DEBUG", "false"),
    )
