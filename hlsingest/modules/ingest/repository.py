"""Repository for ingest state.

Every status change is a compare-and-set on ``(asset_id, status)`` and, for
worker writes, on the lease owner recorded in ``ingest_jobs``. A write that
loses the race updates zero rows and reports False.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Iterable, Optional, TypeVar

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hlsingest.modules.ingest.errors import StateStoreTransient
from hlsingest.modules.ingest.ladder import QUALITY_PROFILES
from hlsingest.modules.ingest.models import (
    TERMINAL_STATUSES,
    Asset,
    AssetStatus,
    IngestJob,
    Rendition,
    RenditionStatus,
    can_transition,
    utcnow,
)
from hlsingest.modules.ingest.planner import RenditionPlan, calculate_bandwidth
from hlsingest.modules.job.tasks import RETRY_CONFIGS, RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AssetRepository:
    """Repository for Asset, Rendition and IngestJob operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # ==================== Assets ====================

    async def get(self, asset_id: str) -> Optional[Asset]:
        """Get an asset with renditions and job, bypassing the identity map."""
        result = await self.session.execute(
            select(Asset)
            .where(Asset.asset_id == asset_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def create(
        self,
        asset_id: str,
        source_handle: str,
        requested_ladder: Optional[list[str]] = None,
    ) -> Asset:
        """Create a QUEUED asset together with its job record.

        Raises:
            IntegrityError: If asset_id is already taken (on flush)
        """
        now = utcnow()
        asset = Asset(
            asset_id=asset_id,
            source_handle=source_handle,
            requested_ladder=requested_ladder,
            status=AssetStatus.QUEUED,
            created_at=now,
            updated_at=now,
        )
        asset.job = IngestJob(asset_id=asset_id, attempts=0, cancel_requested=False, created_at=now)
        self.session.add(asset)
        await self.session.flush()
        return asset

    async def delete_if_status(self, asset_id: str, statuses: Iterable[AssetStatus]) -> bool:
        """Delete an asset and its children if its status is one of ``statuses``.

        Returns:
            True if the asset was deleted
        """
        result = await self.session.execute(
            delete(Asset)
            .where(Asset.asset_id == asset_id, Asset.status.in_(list(statuses)))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        # Explicit child deletes; SQLite does not enforce ON DELETE CASCADE by default
        await self.session.execute(delete(Rendition).where(Rendition.asset_id == asset_id))
        await self.session.execute(delete(IngestJob).where(IngestJob.asset_id == asset_id))
        self.session.expunge_all()
        return True

    def _owned_by(self, asset_id: str, owner: str):
        return (
            select(IngestJob.asset_id)
            .where(IngestJob.asset_id == asset_id, IngestJob.worker_id == owner)
            .exists()
        )

    def _leased(self, asset_id: str, now: datetime):
        return (
            select(IngestJob.asset_id)
            .where(
                IngestJob.asset_id == asset_id,
                IngestJob.worker_id.is_not(None),
                IngestJob.lease_expires_at > now,
            )
            .exists()
        )

    async def transition(
        self,
        asset_id: str,
        expected: AssetStatus,
        new: AssetStatus,
        owner: Optional[str] = None,
        require_unowned: bool = False,
        unless_cancelled: bool = False,
        **values,
    ) -> bool:
        """Compare-and-set the status of an asset.

        Args:
            asset_id: Asset to update
            expected: Status the asset must currently have
            new: Target status (must be an edge of the state machine)
            owner: If given, the caller must hold the asset's lease
            require_unowned: If True, no live lease may exist
            unless_cancelled: If True, fail when cancellation was requested
            **values: Extra columns to set with the transition

        Returns:
            True if the row was updated

        Raises:
            ValueError: If expected -> new is not allowed
        """
        if not can_transition(expected, new):
            raise ValueError(f"Illegal transition {expected.value} -> {new.value}")

        now = utcnow()
        stmt = update(Asset).where(Asset.asset_id == asset_id, Asset.status == expected)
        if owner is not None:
            stmt = stmt.where(self._owned_by(asset_id, owner))
        if require_unowned:
            stmt = stmt.where(~self._leased(asset_id, now))
        if unless_cancelled:
            stmt = stmt.where(
                ~select(IngestJob.asset_id)
                .where(IngestJob.asset_id == asset_id, IngestJob.cancel_requested.is_(True))
                .exists()
            )
        result = await self.session.execute(
            stmt.values(status=new, updated_at=now, **values).execution_options(synchronize_session=False)
        )
        changed = result.rowcount == 1
        if changed:
            logger.info(
                "Asset transition",
                extra={"from_status": expected.value, "to_status": new.value, "owner": owner},
            )
        return changed

    async def count_by_status(self) -> dict[str, int]:
        result = await self.session.execute(
            select(Asset.status, func.count(Asset.asset_id)).group_by(Asset.status)
        )
        return {status.value: count for status, count in result.all()}

    async def find_recoverable(
        self,
        now: Optional[datetime] = None,
        limit: int = 100,
        queued_grace_s: float = 0.0,
    ) -> list[str]:
        """Find non-terminal assets that nobody holds a live lease on.

        Args:
            now: Reference time (defaults to the current time)
            limit: Maximum number of asset IDs
            queued_grace_s: Ignore QUEUED assets younger than this, they are
                probably still waiting in the broker

        Returns:
            Asset IDs, oldest first
        """
        now = now or utcnow()
        queued_cutoff = now - timedelta(seconds=queued_grace_s)
        result = await self.session.execute(
            select(Asset.asset_id)
            .join(IngestJob, IngestJob.asset_id == Asset.asset_id)
            .where(
                Asset.status.not_in(list(TERMINAL_STATUSES)),
                or_(
                    IngestJob.worker_id.is_(None),
                    IngestJob.lease_expires_at.is_(None),
                    IngestJob.lease_expires_at <= now,
                ),
                or_(Asset.status != AssetStatus.QUEUED, Asset.created_at <= queued_cutoff),
            )
            .order_by(Asset.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    # ==================== Leases ====================

    async def get_job(self, asset_id: str) -> Optional[IngestJob]:
        result = await self.session.execute(
            select(IngestJob)
            .where(IngestJob.asset_id == asset_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def claim_lease(self, asset_id: str, worker_id: str, ttl_s: float) -> Optional[IngestJob]:
        """Take the lease if it is free or expired.

        Returns:
            The job with incremented attempts, or None if another worker
            holds a live lease (or the asset does not exist)
        """
        now = utcnow()
        result = await self.session.execute(
            update(IngestJob)
            .where(
                IngestJob.asset_id == asset_id,
                or_(
                    IngestJob.worker_id.is_(None),
                    IngestJob.lease_expires_at.is_(None),
                    IngestJob.lease_expires_at <= now,
                ),
            )
            .values(
                worker_id=worker_id,
                lease_expires_at=now + timedelta(seconds=ttl_s),
                attempts=IngestJob.attempts + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return await self.get_job(asset_id)

    async def renew_lease(self, asset_id: str, worker_id: str, ttl_s: float) -> bool:
        result = await self.session.execute(
            update(IngestJob)
            .where(IngestJob.asset_id == asset_id, IngestJob.worker_id == worker_id)
            .values(lease_expires_at=utcnow() + timedelta(seconds=ttl_s))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def release_lease(self, asset_id: str, worker_id: str) -> bool:
        result = await self.session.execute(
            update(IngestJob)
            .where(IngestJob.asset_id == asset_id, IngestJob.worker_id == worker_id)
            .values(worker_id=None, lease_expires_at=None, scratch_id=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def set_scratch(self, asset_id: str, worker_id: str, scratch_id: Optional[str]) -> bool:
        result = await self.session.execute(
            update(IngestJob)
            .where(IngestJob.asset_id == asset_id, IngestJob.worker_id == worker_id)
            .values(scratch_id=scratch_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def request_cancel(self, asset_id: str) -> bool:
        result = await self.session.execute(
            update(IngestJob)
            .where(IngestJob.asset_id == asset_id)
            .values(cancel_requested=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def is_cancel_requested(self, asset_id: str) -> Optional[bool]:
        """Cancel flag of an asset, or None if the asset is gone."""
        result = await self.session.execute(
            select(IngestJob.cancel_requested).where(IngestJob.asset_id == asset_id)
        )
        return result.scalar_one_or_none()

    # ==================== Renditions ====================

    async def add_renditions(self, asset_id: str, plan: RenditionPlan) -> None:
        """Insert the planned renditions (PENDING) and skipped rungs (SKIPPED)."""
        now = utcnow()
        for spec in plan.renditions:
            self.session.add(
                Rendition(
                    asset_id=asset_id,
                    label=spec.label,
                    width=spec.width,
                    height=spec.height,
                    video_bitrate_bps=spec.video_bitrate_bps,
                    audio_bitrate_bps=spec.audio_bitrate_bps,
                    bandwidth=spec.bandwidth,
                    codec_v=spec.codec_v,
                    codec_a=spec.codec_a,
                    status=RenditionStatus.PENDING,
                    attempt=0,
                    updated_at=now,
                )
            )
        for label in plan.skipped:
            profile = QUALITY_PROFILES[label]
            self.session.add(
                Rendition(
                    asset_id=asset_id,
                    label=label,
                    width=profile.width,
                    height=profile.height,
                    video_bitrate_bps=profile.video_kbps * 1000,
                    audio_bitrate_bps=profile.audio_kbps * 1000,
                    bandwidth=calculate_bandwidth(profile.video_kbps, profile.audio_kbps),
                    status=RenditionStatus.SKIPPED,
                    attempt=0,
                    updated_at=now,
                )
            )
        await self.session.flush()

    async def update_rendition(self, asset_id: str, label: str, owner: str, **values) -> bool:
        """Update one rendition; only the lease owner may write."""
        result = await self.session.execute(
            update(Rendition)
            .where(
                Rendition.asset_id == asset_id,
                Rendition.label == label,
                self._owned_by(asset_id, owner),
            )
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def reset_renditions(self, asset_id: str, owner: str, labels: Iterable[str]) -> int:
        """Put renditions back to PENDING after a takeover purged their outputs."""
        labels = list(labels)
        if not labels:
            return 0
        result = await self.session.execute(
            update(Rendition)
            .where(
                Rendition.asset_id == asset_id,
                Rendition.label.in_(labels),
                self._owned_by(asset_id, owner),
            )
            .values(
                status=RenditionStatus.PENDING,
                playlist_key=None,
                segment_count=None,
                avg_segment_seconds=None,
                error_kind=None,
                error_detail=None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount


class StateStore:
    """Runs repository work in short transactions with retry.

    Each call gets a fresh session and commits on success. Database
    availability errors are retried with backoff and escalate to
    :class:`StateStoreTransient`.
    """

    def __init__(self, session_factory: async_sessionmaker, retry: Optional[RetryConfig] = None):
        self.session_factory = session_factory
        self.retry = retry or RETRY_CONFIGS["state_store"]

    async def run(self, fn: Callable[[AssetRepository], Awaitable[T]]) -> T:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.retry.max_attempts + 1):
            try:
                async with self.session_factory() as session:
                    result = await fn(AssetRepository(session))
                    await session.commit()
                    return result
            except OperationalError as e:
                last_error = e
                if attempt < self.retry.max_attempts:
                    delay = self.retry.calculate_delay(attempt)
                    logger.warning(
                        "State store unavailable, retrying",
                        extra={"attempt": attempt, "delay_s": delay, "error": str(e.orig)},
                    )
                    await asyncio.sleep(delay)
        raise StateStoreTransient(str(last_error))
