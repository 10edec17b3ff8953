"""
API Routes.
"""
from .health import router as health_router
from .jobs import router as jobs_router
from .artifacts import router as artifacts_router
from .admin import router as admin_router

__all__ = ["health_router", "jobs_router", "artifacts_router", "admin_router"]
