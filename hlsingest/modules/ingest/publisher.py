"""Segment writer and master manifest publisher.

Lays renditions out under ``assets/{asset_id}/{label}/`` and commits the
master manifest last, through a temporary key that is moved into place, so a
reader who sees ``master.m3u8`` sees every rendition it names.
"""

import asyncio
import logging
import os
import uuid
from typing import Awaitable, Callable, Iterable

from hlsingest.core.storage import StorageResult, StorageService
from hlsingest.modules.ingest.config import PipelineConfig
from hlsingest.modules.ingest.errors import PublishFailed, UploadTransient
from hlsingest.modules.ingest.ffmpeg import RenditionOutput
from hlsingest.modules.ingest.manifest import (
    MASTER_PLAYLIST_NAME,
    MEDIA_PLAYLIST_NAME,
    MasterVariant,
    build_master_manifest,
)
from hlsingest.modules.job.tasks import RetryConfig

logger = logging.getLogger(__name__)

PLAYLIST_CONTENT_TYPE = "application/vnd.apple.mpegurl"
SEGMENT_CONTENT_TYPE = "video/MP2T"
THUMBNAIL_CONTENT_TYPE = "image/jpeg"
THUMBNAIL_NAME = "thumb.jpg"


def asset_prefix(asset_id: str) -> str:
    return f"assets/{asset_id}/"


def rendition_prefix(asset_id: str, label: str) -> str:
    return f"assets/{asset_id}/{label}/"


def master_key(asset_id: str) -> str:
    return f"assets/{asset_id}/{MASTER_PLAYLIST_NAME}"


def playlist_key(asset_id: str, label: str) -> str:
    return f"assets/{asset_id}/{label}/{MEDIA_PLAYLIST_NAME}"


def thumbnail_key(asset_id: str) -> str:
    return f"assets/{asset_id}/{THUMBNAIL_NAME}"


class SegmentWriter:
    """Publishes scratch outputs to the object store."""

    def __init__(self, storage: StorageService, config: PipelineConfig):
        self.storage = storage
        self.config = config
        self.retry = RetryConfig(
            max_attempts=max(1, config.max_upload_retries),
            initial_delay=config.retry_backoff_base_s,
            max_delay=config.retry_backoff_cap_s,
            backoff_multiplier=2,
        )
        self._inflight: dict[str, set[asyncio.Future]] = {}

    async def _tracked(self, asset_id: str, operation: Awaitable[StorageResult]) -> StorageResult:
        # Storage calls run in threads and cannot be interrupted; shielding
        # lets a purge wait for them instead of racing a late write.
        future = asyncio.ensure_future(operation)
        pending = self._inflight.setdefault(asset_id, set())
        pending.add(future)
        future.add_done_callback(pending.discard)
        return await asyncio.shield(future)

    async def wait_idle(self, asset_id: str) -> None:
        """Wait for every storage call started for ``asset_id`` to finish."""
        pending = list(self._inflight.get(asset_id, ()))
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if not self._inflight.get(asset_id):
            self._inflight.pop(asset_id, None)

    async def _with_retry(
        self,
        asset_id: str,
        key: str,
        operation: Callable[[], Awaitable[StorageResult]],
    ) -> StorageResult:
        """Run a storage write, retrying transient failures with backoff.

        Raises:
            UploadTransient: When every attempt failed
        """
        error = "unknown error"
        for attempt in range(1, self.retry.max_attempts + 1):
            try:
                result = await self._tracked(asset_id, operation())
            except asyncio.TimeoutError:
                error = f"timed out after {self.storage.timeout:.0f}s"
            except OSError as e:
                error = str(e)
            else:
                if result.success:
                    return result
                error = result.error_message or "storage rejected the write"

            if attempt < self.retry.max_attempts:
                delay = self.retry.calculate_delay(attempt)
                logger.warning(
                    "Upload failed, retrying",
                    extra={"key": key, "attempt": attempt, "delay_s": delay, "error": error},
                )
                await asyncio.sleep(delay)
        raise UploadTransient(f"{key}: {error}")

    async def _upload_file(self, asset_id: str, file_path: str, key: str, content_type: str) -> StorageResult:
        return await self._with_retry(
            asset_id, key, lambda: self.storage.upload_file(file_path, key, content_type)
        )

    async def upload_rendition(self, asset_id: str, output: RenditionOutput) -> str:
        """Upload segments, then the playlist, of one rendition.

        Returns:
            Storage key of the rendition playlist

        Raises:
            PublishFailed: If an upload failed after retries; keys already
                written for the rendition are removed first
        """
        prefix = rendition_prefix(asset_id, output.label)
        try:
            for segment in output.segment_files:
                await self._upload_file(
                    asset_id, segment, prefix + os.path.basename(segment), SEGMENT_CONTENT_TYPE
                )
            key = playlist_key(asset_id, output.label)
            await self._upload_file(asset_id, output.playlist_path, key, PLAYLIST_CONTENT_TYPE)
        except UploadTransient as e:
            await self.purge_rendition(asset_id, output.label)
            raise PublishFailed(f"{output.label}: {e.detail}")

        logger.info(
            "Rendition uploaded",
            extra={"label": output.label, "segments": output.segment_count, "key": key},
        )
        return key

    async def upload_thumbnail(self, asset_id: str, file_path: str) -> str:
        """Upload the thumbnail image; raises PublishFailed on exhaustion."""
        key = thumbnail_key(asset_id)
        try:
            await self._upload_file(asset_id, file_path, key, THUMBNAIL_CONTENT_TYPE)
        except UploadTransient as e:
            raise PublishFailed(e.detail)
        return key

    async def verify_rendition(self, asset_id: str, label: str, segment_count: int) -> bool:
        """Check the store holds the playlist and every segment of a rendition."""
        keys = await self.storage.list_files(rendition_prefix(asset_id, label))
        segments = [key for key in keys if key.endswith(".ts")]
        return playlist_key(asset_id, label) in keys and len(segments) == segment_count

    async def publish_master(self, asset_id: str, variants: Iterable[MasterVariant]) -> str:
        """Write the master manifest under a temporary key, then move it into place.

        Returns:
            Storage key of the master manifest

        Raises:
            PublishFailed: If the manifest could not be committed; the
                temporary key is removed
        """
        body = build_master_manifest(variants).encode("utf-8")
        final_key = master_key(asset_id)
        temp_key = f"{asset_prefix(asset_id)}.{MASTER_PLAYLIST_NAME}.{uuid.uuid4().hex}.tmp"
        try:
            await self._with_retry(
                asset_id, temp_key, lambda: self.storage.upload_bytes(body, temp_key, PLAYLIST_CONTENT_TYPE)
            )
            moved = await self._tracked(asset_id, self.storage.move(temp_key, final_key))
            if not moved.success:
                raise PublishFailed(f"commit of {final_key} failed: {moved.error_message}")
        except (UploadTransient, asyncio.TimeoutError, OSError) as e:
            await self._delete_quietly(temp_key)
            raise PublishFailed(f"commit of {final_key} failed: {e}")
        except PublishFailed:
            await self._delete_quietly(temp_key)
            raise

        logger.info("Master manifest published", extra={"key": final_key})
        return final_key

    async def _delete_quietly(self, key: str) -> None:
        try:
            await self.storage.delete(key)
        except (asyncio.TimeoutError, OSError):
            logger.warning("Could not delete %s", key, exc_info=True)

    async def remove_master(self, asset_id: str) -> None:
        await self._delete_quietly(master_key(asset_id))

    async def purge_rendition(self, asset_id: str, label: str) -> None:
        """Best-effort removal of one rendition's keys."""
        try:
            await self.storage.delete_prefix(rendition_prefix(asset_id, label))
        except (asyncio.TimeoutError, OSError):
            logger.warning("Could not purge rendition %s", label, exc_info=True)

    async def purge_asset(self, asset_id: str) -> int:
        """Remove every key under ``assets/{asset_id}/``.

        Waits for in-flight writes first so none lands after the purge.

        Returns:
            Number of keys removed

        Raises:
            PublishFailed: If keys remain after retries
        """
        await self.wait_idle(asset_id)
        prefix = asset_prefix(asset_id)
        removed = 0
        for attempt in range(1, self.retry.max_attempts + 1):
            try:
                removed += await self.storage.delete_prefix(prefix)
                remaining = await self.storage.list_files(prefix)
            except (asyncio.TimeoutError, OSError) as e:
                remaining = [f"<{e or 'timeout'}>"]
            if not remaining:
                if removed:
                    logger.info("Purged asset storage", extra={"keys": removed})
                return removed
            if attempt < self.retry.max_attempts:
                await asyncio.sleep(self.retry.calculate_delay(attempt))
        raise PublishFailed(f"{len(remaining)} keys remain under {prefix}")
