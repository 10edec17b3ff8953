"""
Shared dependencies for API routes.
"""
import logging

from kombu.exceptions import OperationalError

from mediaflow.celery_app import celery_app
from mediaflow.pipeline.controller import PipelineController, get_pipeline_controller

logger = logging.getLogger(__name__)


def get_controller() -> PipelineController:
    return get_pipeline_controller()


def check_redis_connection() -> bool:
    """Whether the broker accepts connections, i.e. apply_async would go through."""
    try:
        with celery_app.connection_for_write() as conn:
            conn.ensure_connection(max_retries=1, timeout=1)
        return True
    except (OperationalError, OSError) as e:
        logger.warning(f"Broker unreachable: {e}")
        return False


def check_celery_connection() -> bool:
    """Whether at least one worker answers a ping."""
    try:
        return bool(celery_app.control.inspect(timeout=1.0).ping())
    except (OperationalError, OSError) as e:
        logger.warning(f"Celery workers unreachable: {e}")
        return False
