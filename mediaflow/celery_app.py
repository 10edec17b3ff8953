"""
Celery application configuration.

Pipeline runs go to the media_pipeline queue. Beat tasks (crash recovery and
scratch cleanup) go to a separate maintenance queue so they are never stuck
behind long jobs.
"""
import os

from celery import Celery
from kombu import Exchange, Queue

from mediaflow.config import config

PIPELINE_QUEUE = "media_pipeline"
MAINTENANCE_QUEUE = "maintenance"

# Hard ceiling for one run_media_job; the controller's own timeout fires first.
TASK_TIME_LIMIT = int(os.getenv("TASK_TIME_LIMIT_SECONDS", "3600"))

celery_app = Celery(
    "mediaflow",
    broker=config.broker_url,
    backend=config.result_backend,
    include=["mediaflow.pipeline.tasks"],
)

_exchange = Exchange("mediaflow", type="direct")

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    task_track_started=True,
    task_time_limit=TASK_TIME_LIMIT,
    task_soft_time_limit=TASK_TIME_LIMIT - 60,

    # One job per worker process at a time; ffmpeg is memory bound.
    worker_prefetch_multiplier=1,
    worker_concurrency=int(os.getenv("WORKER_CONCURRENCY", "2")),
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    result_expires=86400,

    task_queues=(
        Queue(PIPELINE_QUEUE, _exchange, routing_key=PIPELINE_QUEUE),
        Queue(MAINTENANCE_QUEUE, _exchange, routing_key=MAINTENANCE_QUEUE),
    ),
    task_default_queue=PIPELINE_QUEUE,
    task_default_exchange="mediaflow",
    task_default_routing_key=PIPELINE_QUEUE,
    task_routes={
        "media_pipeline.run_media_job": {"queue": PIPELINE_QUEUE},
        "media_pipeline.reap_stale_jobs": {"queue": MAINTENANCE_QUEUE},
        "media_pipeline.cleanup_work_dirs": {"queue": MAINTENANCE_QUEUE},
    },

    beat_schedule={
        "reap-stale-jobs": {
            "task": "media_pipeline.reap_stale_jobs",
            "schedule": float(os.getenv("REAPER_INTERVAL_SECONDS", "300")),
        },
        "cleanup-work-dirs": {
            "task": "media_pipeline.cleanup_work_dirs",
            "schedule": float(os.getenv("CLEANUP_INTERVAL_SECONDS", "3600")),
            "kwargs": {"max_age_hours": 24},
        },
    },
)

# Must exceed the longest job or Redis redelivers it to a second worker.
celery_app.conf.broker_transport_options = {
    "visibility_timeout": TASK_TIME_LIMIT * 2,
}
