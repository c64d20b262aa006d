"""Service layer for the ingest API: Submit, GetStatus, Cancel, Delete, Retry, GetStats."""

import logging
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from hlsingest.core.metrics import ASSETS_TOTAL
from hlsingest.core.storage import StorageService
from hlsingest.modules.ingest.config import PipelineConfig
from hlsingest.modules.ingest.errors import AssetAlreadyExists, AssetBusy, UnknownAsset
from hlsingest.modules.ingest.models import TERMINAL_STATUSES, Asset, AssetStatus, utcnow
from hlsingest.modules.ingest.publisher import SegmentWriter
from hlsingest.modules.ingest.repository import AssetRepository
from hlsingest.modules.ingest.schemas import AssetStats, AssetView, SubmitRequest

logger = logging.getLogger(__name__)

# Statuses under which an asset_id may be reused by a new Submit
REPLACEABLE_STATUSES = (AssetStatus.FAILED, AssetStatus.CANCELLED)


class AssetService:
    """Caller-facing operations on assets.

    Args:
        session: Database session (committed by the service)
        storage: Async storage wrapper, used for purges and playback URLs
        dispatcher: Callable that schedules ``IngestOrchestrator.run`` for an
            asset_id; None leaves the asset for a polling worker
        config: Pipeline configuration
    """

    def __init__(
        self,
        session: AsyncSession,
        storage: Optional[StorageService] = None,
        dispatcher: Optional[Callable[[str], None]] = None,
        config: Optional[PipelineConfig] = None,
    ):
        self.session = session
        self.repo = AssetRepository(session)
        self.storage = storage or StorageService()
        self.dispatcher = dispatcher
        self.config = config or PipelineConfig.from_settings()
        self.writer = SegmentWriter(self.storage, self.config)

    def _url_for(self, key: str) -> str:
        return self.storage.get_url(key, self.config.playback_url_ttl_s)

    def _view(self, asset: Asset) -> AssetView:
        return AssetView.from_asset(asset, self._url_for)

    async def _get_or_raise(self, asset_id: str) -> Asset:
        asset = await self.repo.get(asset_id)
        if asset is None:
            raise UnknownAsset(f"asset {asset_id} not found")
        return asset

    def _dispatch(self, asset_id: str) -> None:
        if self.dispatcher is None:
            return
        try:
            self.dispatcher(asset_id)
        except Exception:
            # The asset stays QUEUED and is picked up by stalled-asset recovery
            logger.exception("Dispatch failed", extra={"asset": asset_id})

    # ==================== Submit ====================

    async def submit(self, request: SubmitRequest) -> AssetView:
        """Register a source for ingestion.

        Re-submitting identical parameters while the asset is QUEUED is a
        no-op; a FAILED or CANCELLED asset_id is replaced by the new submit.

        Raises:
            AssetAlreadyExists: If the asset_id is in use
            PublishFailed: If outputs of a replaced asset cannot be purged
        """
        existing = await self.repo.get(request.asset_id)
        if existing is not None:
            return await self._resubmit(existing, request)

        try:
            await self.repo.create(request.asset_id, request.source_handle, request.ladder)
            await self.session.commit()
        except IntegrityError:
            # Lost a race with a concurrent Submit of the same asset_id
            await self.session.rollback()
            existing = await self.repo.get(request.asset_id)
            if existing is None or existing.status in REPLACEABLE_STATUSES:
                raise AssetAlreadyExists(f"asset {request.asset_id} is being registered concurrently")
            return await self._resubmit(existing, request)

        logger.info("Asset submitted", extra={"asset": request.asset_id, "ladder": request.ladder})
        self._dispatch(request.asset_id)
        return self._view(await self._get_or_raise(request.asset_id))

    def _is_identical(self, asset: Asset, request: SubmitRequest) -> bool:
        return asset.source_handle == request.source_handle and asset.requested_ladder == request.ladder

    async def _resubmit(self, existing: Asset, request: SubmitRequest) -> AssetView:
        if existing.status == AssetStatus.QUEUED and self._is_identical(existing, request):
            return self._view(existing)
        if existing.status not in REPLACEABLE_STATUSES:
            raise AssetAlreadyExists(
                f"asset {request.asset_id} already exists with status {existing.status.value}"
            )

        await self.writer.purge_asset(request.asset_id)
        if not await self.repo.delete_if_status(request.asset_id, REPLACEABLE_STATUSES):
            await self.session.rollback()
            raise AssetAlreadyExists(f"asset {request.asset_id} changed while being replaced")
        await self.repo.create(request.asset_id, request.source_handle, request.ladder)
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            raise AssetAlreadyExists(f"asset {request.asset_id} is being registered concurrently")

        logger.info("Asset replaced", extra={"asset": request.asset_id, "previous": existing.status.value})
        self._dispatch(request.asset_id)
        return self._view(await self._get_or_raise(request.asset_id))

    # ==================== GetStatus ====================

    async def get_status(self, asset_id: str) -> AssetView:
        """Consistent snapshot of an asset; playback URLs only when READY.

        Raises:
            UnknownAsset: If the asset does not exist
        """
        return self._view(await self._get_or_raise(asset_id))

    # ==================== Cancel ====================

    async def cancel(self, asset_id: str) -> AssetView:
        """Request cancellation; a no-op on terminal assets.

        A QUEUED asset that no worker holds is cancelled on the spot;
        otherwise the owning worker stops within its grace period.

        Raises:
            UnknownAsset: If the asset does not exist
        """
        asset = await self._get_or_raise(asset_id)
        if asset.status.is_terminal:
            return self._view(asset)

        await self.repo.request_cancel(asset_id)
        cancelled_now = False
        if asset.status == AssetStatus.QUEUED:
            cancelled_now = await self.repo.transition(
                asset_id, AssetStatus.QUEUED, AssetStatus.CANCELLED, require_unowned=True
            )
        await self.session.commit()

        if cancelled_now:
            ASSETS_TOTAL.labels(status=AssetStatus.CANCELLED.value).inc()
            logger.info("Queued asset cancelled", extra={"asset": asset_id})
        else:
            logger.info("Cancellation requested", extra={"asset": asset_id})
            if asset.job is not None and not asset.job.lease_is_live(utcnow()):
                # Nobody is working on it; let a worker finish the cancellation
                self._dispatch(asset_id)
        return self._view(await self._get_or_raise(asset_id))

    # ==================== Delete ====================

    async def delete(self, asset_id: str) -> None:
        """Purge storage and remove the record of a terminal asset.

        Raises:
            UnknownAsset: If the asset does not exist
            AssetBusy: If the asset is not terminal
            PublishFailed: If storage could not be purged
        """
        asset = await self._get_or_raise(asset_id)
        if not asset.status.is_terminal:
            raise AssetBusy(f"asset {asset_id} is {asset.status.value}; cancel it first")

        await self.writer.purge_asset(asset_id)
        if not await self.repo.delete_if_status(asset_id, TERMINAL_STATUSES):
            await self.session.rollback()
            raise AssetBusy(f"asset {asset_id} changed while being deleted")
        await self.session.commit()
        logger.info("Asset deleted", extra={"asset": asset_id})

    # ==================== Retry ====================

    async def retry(self, asset_id: str) -> AssetView:
        """Re-queue a FAILED asset with its original source and ladder.

        Raises:
            UnknownAsset: If the asset does not exist
            AssetBusy: If the asset is not FAILED
        """
        asset = await self._get_or_raise(asset_id)
        if asset.status != AssetStatus.FAILED:
            raise AssetBusy(f"only FAILED assets can be retried; {asset_id} is {asset.status.value}")

        source_handle, ladder = asset.source_handle, asset.requested_ladder
        await self.writer.purge_asset(asset_id)
        if not await self.repo.delete_if_status(asset_id, [AssetStatus.FAILED]):
            await self.session.rollback()
            raise AssetBusy(f"asset {asset_id} changed while being retried")
        await self.repo.create(asset_id, source_handle, ladder)
        await self.session.commit()

        logger.info("Asset re-queued", extra={"asset": asset_id})
        self._dispatch(asset_id)
        return self._view(await self._get_or_raise(asset_id))

    # ==================== Stats ====================

    async def get_stats(self) -> AssetStats:
        counts = await self.repo.count_by_status()
        by_status = {status.value: counts.get(status.value, 0) for status in AssetStatus}
        return AssetStats(total=sum(by_status.values()), by_status=by_status)
