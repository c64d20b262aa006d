"""Celery application configuration."""

from celery import Celery

from hlsingest.core.config import settings

celery_app = Celery(
    "hlsingest",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # Bounded by the per-rendition timeout times the ladder size, plus slack
    task_time_limit=int(settings.TRANSCODE_TIMEOUT_S * 8 + settings.LEASE_TTL_S),
    worker_prefetch_multiplier=1,
    # One asset per worker process; its renditions share WORKER_POOL_SIZE encoder slots
    worker_concurrency=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    beat_schedule={
        "recover-stalled-assets": {
            "task": "hlsingest.modules.ingest.tasks.recover_stalled_assets_task",
            "schedule": settings.RECOVERY_INTERVAL_S,
        },
    },
)

celery_app.autodiscover_tasks(["hlsingest.modules.ingest"])
