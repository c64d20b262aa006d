"""Retry policies shared by ingest background work."""

from hlsingest.modules.job.tasks import RETRY_CONFIGS, BaseTaskWithRetry, RetryConfig

__all__ = [
    "RetryConfig",
    "RETRY_CONFIGS",
    "BaseTaskWithRetry",
]
