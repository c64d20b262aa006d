"""Ingest API router.

REST endpoints for Submit, GetStatus, Cancel, Delete, Retry and GetStats.
"""

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from hlsingest.core.database import get_db
from hlsingest.modules.ingest.errors import (
    AssetAlreadyExists,
    AssetBusy,
    IngestError,
    PublishFailed,
    StateStoreTransient,
    UnknownAsset,
)
from hlsingest.modules.ingest.schemas import AssetStats, AssetView, SubmitRequest
from hlsingest.modules.ingest.service import AssetService
from hlsingest.modules.ingest.tasks import dispatch_ingest

router = APIRouter(prefix="/assets", tags=["assets"])

ERROR_STATUS = {
    AssetAlreadyExists: status.HTTP_409_CONFLICT,
    AssetBusy: status.HTTP_409_CONFLICT,
    UnknownAsset: status.HTTP_404_NOT_FOUND,
    PublishFailed: status.HTTP_503_SERVICE_UNAVAILABLE,
    StateStoreTransient: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def get_asset_service(session: AsyncSession = Depends(get_db)) -> AssetService:
    return AssetService(session, dispatcher=dispatch_ingest)


def _http_error(error: IngestError) -> HTTPException:
    code = ERROR_STATUS.get(type(error), status.HTTP_500_INTERNAL_SERVER_ERROR)
    return HTTPException(
        status_code=code,
        detail={"error_kind": error.kind.value, "message": str(error)},
    )


@router.post("", response_model=AssetView, status_code=status.HTTP_202_ACCEPTED)
async def submit_asset(
    data: SubmitRequest,
    service: AssetService = Depends(get_asset_service),
):
    """Register a source video for ingestion."""
    try:
        return await service.submit(data)
    except (AssetAlreadyExists, PublishFailed) as e:
        raise _http_error(e)


@router.get("/stats", response_model=AssetStats)
async def get_stats(service: AssetService = Depends(get_asset_service)):
    """Asset counts by status."""
    return await service.get_stats()


@router.get("/{asset_id}", response_model=AssetView)
async def get_asset(asset_id: str, service: AssetService = Depends(get_asset_service)):
    """Get the status of an asset; playback URLs are set once it is READY."""
    try:
        return await service.get_status(asset_id)
    except UnknownAsset as e:
        raise _http_error(e)


@router.post("/{asset_id}/cancel", response_model=AssetView)
async def cancel_asset(asset_id: str, service: AssetService = Depends(get_asset_service)):
    """Request cancellation. A no-op for terminal assets."""
    try:
        return await service.cancel(asset_id)
    except UnknownAsset as e:
        raise _http_error(e)


@router.delete("/{asset_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_asset(asset_id: str, service: AssetService = Depends(get_asset_service)):
    """Delete a terminal asset and everything stored for it."""
    try:
        await service.delete(asset_id)
    except (UnknownAsset, AssetBusy, PublishFailed) as e:
        raise _http_error(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{asset_id}/retry", response_model=AssetView, status_code=status.HTTP_202_ACCEPTED)
async def retry_asset(asset_id: str, service: AssetService = Depends(get_asset_service)):
    """Re-queue a FAILED asset."""
    try:
        return await service.retry(asset_id)
    except (UnknownAsset, AssetBusy, PublishFailed) as e:
        raise _http_error(e)
