"""Celery tasks for the ingest pipeline.

``ingest_asset_task`` runs the orchestrator for one asset;
``recover_stalled_assets_task`` runs periodically (celery beat) and
re-dispatches assets whose lease expired or that were never picked up.
"""

import asyncio
import logging
from typing import Optional

from hlsingest.core.celery_app import celery_app
from hlsingest.core.config import settings
from hlsingest.core.database import create_engine, create_session_factory
from hlsingest.core.storage import StorageService
from hlsingest.modules.ingest.config import PipelineConfig
from hlsingest.modules.ingest.errors import StateStoreTransient
from hlsingest.modules.ingest.orchestrator import IngestOrchestrator
from hlsingest.modules.ingest.repository import StateStore
from hlsingest.modules.job.tasks import BaseTaskWithRetry

logger = logging.getLogger(__name__)


class IngestTask(BaseTaskWithRetry):
    """Base task for ingest runs; retries only when the state store is down."""
    abstract = True
    retry_config_name = "dispatch"

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        asset_id = args[0] if args else kwargs.get("asset_id")
        # The lease expires and recovery picks the asset up again
        logger.error("Ingest task failed", extra={"asset": asset_id, "task_id": task_id, "error": str(exc)})


async def _run_ingest(asset_id: str) -> Optional[str]:
    # Each task runs in its own event loop, so it gets its own engine
    engine = create_engine(use_null_pool=True)
    try:
        store = StateStore(create_session_factory(engine))
        config = PipelineConfig.from_settings()
        orchestrator = IngestOrchestrator(store, StorageService(), config)
        status = await orchestrator.run(asset_id)
        return status.value if status else None
    finally:
        await engine.dispose()


@celery_app.task(bind=True, base=IngestTask, name="hlsingest.modules.ingest.tasks.ingest_asset_task")
def ingest_asset_task(self: IngestTask, asset_id: str) -> dict:
    """Run the ingest pipeline for one asset.

    Args:
        asset_id: Asset to process

    Returns:
        dict: asset_id and the terminal status reached (None when another
        worker owns the asset)
    """
    try:
        status = asyncio.run(_run_ingest(asset_id))
    except StateStoreTransient as exc:
        self.retry_with_backoff(exc, self.request.retries + 1)
        raise
    return {"asset_id": asset_id, "status": status}


async def _recover_stalled(limit: int) -> list[str]:
    engine = create_engine(use_null_pool=True)
    try:
        store = StateStore(create_session_factory(engine))
        return await store.run(
            lambda repo: repo.find_recoverable(limit=limit, queued_grace_s=settings.RECOVERY_INTERVAL_S)
        )
    finally:
        await engine.dispose()


@celery_app.task(name="hlsingest.modules.ingest.tasks.recover_stalled_assets_task")
def recover_stalled_assets_task(limit: int = 100) -> dict:
    """Re-dispatch non-terminal assets that no worker holds a live lease on."""
    asset_ids = asyncio.run(_recover_stalled(limit))
    for asset_id in asset_ids:
        dispatch_ingest(asset_id)
    if asset_ids:
        logger.info("Re-dispatched stalled assets", extra={"count": len(asset_ids), "assets": asset_ids})
    return {"dispatched": len(asset_ids), "asset_ids": asset_ids}


def dispatch_ingest(asset_id: str) -> None:
    """Queue an ingest run for an asset."""
    ingest_asset_task.delay(asset_id)
