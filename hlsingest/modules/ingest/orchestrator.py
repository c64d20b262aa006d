"""Job orchestrator: drives one asset through the ingest state machine.

A run claims the asset's lease, reconciles leftovers of an earlier holder,
then walks QUEUED -> PROBING -> PLANNED -> TRANSCODING -> PUBLISHING -> READY.
Renditions are encoded in parallel on a pool shared by every asset of this
process. A heartbeat task renews the lease and watches the cancel flag; on
cancel (or lost lease) it signals the encoders and, after the grace period,
stops the work outright.
"""

import asyncio
import logging
import os
import shutil
import socket
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Optional

from hlsingest.core.logging import bind_asset
from hlsingest.core.metrics import (
    ASSETS_TOTAL,
    LEASE_TAKEOVERS_TOTAL,
    PHASE_DURATION_SECONDS,
    RENDITION_RETRIES_TOTAL,
    RENDITIONS_TOTAL,
)
from hlsingest.core.storage import StorageService
from hlsingest.core.tracing import create_span
from hlsingest.modules.ingest.config import PipelineConfig
from hlsingest.modules.ingest.errors import (
    Cancelled,
    EncoderTransient,
    InputError,
    LeaseLost,
    PublishFailed,
    StateStoreTransient,
    TranscodeFailed,
    bound_detail,
)
from hlsingest.modules.ingest.ffmpeg import TranscodeDriver
from hlsingest.modules.ingest.manifest import MasterVariant
from hlsingest.modules.ingest.ladder import QUALITY_PROFILES
from hlsingest.modules.ingest.models import (
    Asset,
    AssetStatus,
    ErrorKind,
    IngestJob,
    RenditionStatus,
)
from hlsingest.modules.ingest.planner import RenditionSpec, build_spec, plan_renditions
from hlsingest.modules.ingest.probe import Prober, resolve_source
from hlsingest.modules.ingest.publisher import THUMBNAIL_NAME, SegmentWriter
from hlsingest.modules.ingest.repository import StateStore
from hlsingest.modules.ingest.schemas import ProbeDescriptor
from hlsingest.modules.job.tasks import RetryConfig

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


@contextmanager
def phase(name: str, **attributes) -> Iterator[None]:
    """Span plus duration histogram around one pipeline phase."""
    started = time.monotonic()
    with create_span(f"ingest.{name}", attributes):
        try:
            yield
        finally:
            PHASE_DURATION_SECONDS.labels(phase=name).observe(time.monotonic() - started)


@dataclass
class RunContext:
    """Mutable state of one orchestrator run."""
    asset_id: str
    job: IngestJob
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    scratch_dir: Optional[str] = None
    lease_lost: bool = False
    hard_stopped: bool = False


@dataclass
class RenditionOutcome:
    """Result of encoding and uploading one rendition."""
    spec: RenditionSpec
    playlist_key: Optional[str] = None
    segment_count: int = 0
    error_kind: Optional[ErrorKind] = None
    error_detail: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.playlist_key is not None


class IngestOrchestrator:
    """Runs the ingest pipeline for assets this worker can lease."""

    def __init__(
        self,
        store: StateStore,
        storage: StorageService,
        config: PipelineConfig,
        prober: Optional[Prober] = None,
        driver: Optional[TranscodeDriver] = None,
        writer: Optional[SegmentWriter] = None,
        pool: Optional[asyncio.Semaphore] = None,
        worker_id: Optional[str] = None,
    ):
        self.store = store
        self.storage = storage
        self.config = config
        self.prober = prober or Prober(config)
        self.driver = driver or TranscodeDriver(config)
        self.writer = writer or SegmentWriter(storage, config)
        # Global bound on encoder processes, shared across assets
        self.pool = pool or asyncio.Semaphore(config.worker_pool_size)
        self.worker_id = worker_id or default_worker_id()
        self.encoder_retry = RetryConfig(
            max_attempts=config.max_rendition_retries + 1,
            initial_delay=config.retry_backoff_base_s,
            max_delay=config.retry_backoff_cap_s,
            backoff_multiplier=2,
        )

    # ==================== Entry point ====================

    async def run(self, asset_id: str) -> Optional[AssetStatus]:
        """Process one asset until it reaches a terminal status.

        Returns:
            The terminal status committed by this run, the status found if
            the asset was already terminal, or None if this worker could not
            claim the asset or lost its lease.

        Raises:
            StateStoreTransient: If the state store stayed unavailable
        """
        job = await self.store.run(
            lambda repo: repo.claim_lease(asset_id, self.worker_id, self.config.lease_ttl_s)
        )
        if job is None:
            logger.info("Asset not claimable", extra={"asset": asset_id, "worker_id": self.worker_id})
            return None

        ctx = RunContext(asset_id=asset_id, job=job)
        with bind_asset(asset_id), create_span(
            "ingest.run", {"asset.id": asset_id, "worker.id": self.worker_id, "job.attempts": job.attempts}
        ):
            try:
                return await self._run_claimed(ctx)
            except LeaseLost:
                ctx.lease_lost = True
                logger.warning("Lease lost, abandoning run")
                return None
            finally:
                await self._cleanup(ctx)

    async def _run_claimed(self, ctx: RunContext) -> Optional[AssetStatus]:
        asset = await self.store.run(lambda repo: repo.get(ctx.asset_id))
        if asset is None:
            return None
        if asset.status.is_terminal:
            return asset.status

        if ctx.job.cancel_requested:
            self._remove_stale_scratch(ctx.job)
            return await self._finish_cancelled(ctx)

        if ctx.job.attempts > self.config.max_job_attempts:
            logger.error("Job attempts exhausted", extra={"attempts": ctx.job.attempts})
            self._remove_stale_scratch(ctx.job)
            return await self._fail(
                ctx,
                asset.status,
                ErrorKind.TRANSCODE_FAILED,
                f"gave up after {ctx.job.attempts - 1} interrupted attempts",
            )

        if ctx.job.attempts > 1 or ctx.job.scratch_id is not None:
            await self._reconcile(ctx, asset)

        scratch_id = uuid.uuid4().hex
        self._require(
            await self.store.run(lambda repo: repo.set_scratch(ctx.asset_id, self.worker_id, scratch_id))
        )
        ctx.scratch_dir = os.path.join(self.config.scratch_root, scratch_id)
        os.makedirs(ctx.scratch_dir, exist_ok=True)

        work = asyncio.create_task(self._pipeline(ctx, asset))
        heartbeat = asyncio.create_task(self._heartbeat(ctx, work))
        try:
            return await work
        except Cancelled:
            if ctx.lease_lost:
                raise LeaseLost()
            return await self._finish_cancelled(ctx)
        except asyncio.CancelledError:
            if not ctx.hard_stopped:
                raise
            if ctx.lease_lost:
                raise LeaseLost()
            return await self._finish_cancelled(ctx)
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)

    # ==================== Lease and cancellation ====================

    async def _heartbeat(self, ctx: RunContext, work: asyncio.Task) -> None:
        """Renew the lease and poll the cancel flag until ``work`` finishes."""
        loop = asyncio.get_running_loop()
        next_renewal = loop.time() + self.config.lease_renew_s
        while not work.done():
            await asyncio.sleep(self.config.cancel_poll_interval_s)
            try:
                if loop.time() >= next_renewal:
                    renewed = await self.store.run(
                        lambda repo: repo.renew_lease(ctx.asset_id, self.worker_id, self.config.lease_ttl_s)
                    )
                    next_renewal = loop.time() + self.config.lease_renew_s
                    if not renewed:
                        logger.error("Lease taken over by another worker")
                        ctx.lease_lost = True
                        break
                cancel_requested = await self.store.run(lambda repo: repo.is_cancel_requested(ctx.asset_id))
            except StateStoreTransient:
                logger.warning("Heartbeat could not reach the state store", exc_info=True)
                continue
            if cancel_requested or cancel_requested is None:
                logger.info("Cancellation requested")
                break
        else:
            return

        ctx.cancel_event.set()
        done, _ = await asyncio.wait({work}, timeout=self.config.cancel_grace_s)
        if not done:
            logger.warning("Work did not stop within grace period, cancelling it")
            ctx.hard_stopped = True
            work.cancel()

    def _check_cancel(self, ctx: RunContext) -> None:
        if ctx.cancel_event.is_set():
            raise Cancelled()

    async def _sleep_or_cancel(self, ctx: RunContext, delay: float) -> None:
        try:
            await asyncio.wait_for(ctx.cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise Cancelled()

    @staticmethod
    def _require(ok: bool) -> None:
        if not ok:
            raise LeaseLost()

    async def _transition(self, ctx: RunContext, expected: AssetStatus, new: AssetStatus, **values) -> None:
        ok = await self.store.run(
            lambda repo: repo.transition(ctx.asset_id, expected, new, owner=self.worker_id, **values)
        )
        self._require(ok)

    # ==================== Pipeline ====================

    async def _pipeline(self, ctx: RunContext, asset: Asset) -> AssetStatus:
        status = asset.status
        descriptor = ProbeDescriptor.model_validate(asset.probe) if asset.probe else None

        if status == AssetStatus.QUEUED:
            await self._transition(ctx, AssetStatus.QUEUED, AssetStatus.PROBING)
            status = AssetStatus.PROBING

        if status == AssetStatus.PROBING:
            try:
                with phase("probe"):
                    descriptor = await self.prober.probe(asset.source_handle)
                with phase("plan"):
                    plan = plan_renditions(
                        descriptor, asset.requested_ladder, self.config.quality_ladder_default
                    )
            except InputError as e:
                logger.warning("Source rejected", extra={"error_kind": e.kind.value, "detail": e.detail})
                return await self._fail(ctx, AssetStatus.PROBING, e.kind, e.detail)
            self._check_cancel(ctx)

            async def commit_plan(repo):
                ok = await repo.transition(
                    ctx.asset_id,
                    AssetStatus.PROBING,
                    AssetStatus.PLANNED,
                    owner=self.worker_id,
                    probe=descriptor.model_dump(mode="json"),
                )
                self._require(ok)
                await repo.add_renditions(ctx.asset_id, plan)

            await self.store.run(commit_plan)
            status = AssetStatus.PLANNED
            logger.info(
                "Renditions planned",
                extra={"labels": [s.label for s in plan.renditions], "skipped": plan.skipped},
            )
            asset = await self.store.run(lambda repo: repo.get(ctx.asset_id))

        specs = [
            build_spec(QUALITY_PROFILES[r.label], descriptor)
            for r in asset.renditions
            if r.status != RenditionStatus.SKIPPED
        ]

        if status == AssetStatus.PLANNED:
            self._check_cancel(ctx)
            await self._transition(ctx, AssetStatus.PLANNED, AssetStatus.TRANSCODING)
            status = AssetStatus.TRANSCODING

        try:
            source = resolve_source(asset.source_handle)
        except InputError as e:
            return await self._fail(ctx, status, e.kind, e.detail)

        outcomes, thumbnail_path = await self._transcode_all(ctx, source, descriptor, specs)
        succeeded = [o for o in outcomes if o.succeeded]
        if not succeeded:
            first = next((o for o in outcomes if o.error_detail), None)
            detail = f"{first.spec.label}: {first.error_detail}" if first else "no rendition succeeded"
            return await self._fail(ctx, status, ErrorKind.TRANSCODE_FAILED, detail)

        self._check_cancel(ctx)
        if status == AssetStatus.TRANSCODING:
            await self._transition(ctx, AssetStatus.TRANSCODING, AssetStatus.PUBLISHING)
        return await self._publish(ctx, succeeded, thumbnail_path)

    async def _transcode_all(
        self,
        ctx: RunContext,
        source: str,
        descriptor: ProbeDescriptor,
        specs: list[RenditionSpec],
    ) -> tuple[list[RenditionOutcome], Optional[str]]:
        has_audio = descriptor.audio is not None
        coroutines = [self._encode_rendition(ctx, source, spec, has_audio) for spec in specs]
        if self.config.thumbnail_enabled:
            coroutines.append(self._make_thumbnail(ctx, source, descriptor))

        with phase("transcode_all", renditions=len(specs)):
            results = await asyncio.gather(*coroutines, return_exceptions=True)

        # Let every sibling settle before surfacing cancel or lease loss
        for result in results:
            if isinstance(result, (Cancelled, LeaseLost)):
                raise result
        for result in results:
            if isinstance(result, BaseException):
                raise result

        thumbnail_path = results.pop() if self.config.thumbnail_enabled else None
        return results, thumbnail_path

    async def _encode_rendition(
        self,
        ctx: RunContext,
        source: str,
        spec: RenditionSpec,
        has_audio: bool,
    ) -> RenditionOutcome:
        output_dir = os.path.join(ctx.scratch_dir, spec.label)
        attempt = 0
        while True:
            attempt += 1
            self._check_cancel(ctx)
            await self._update_rendition(ctx, spec.label, status=RenditionStatus.RUNNING, attempt=attempt)
            try:
                async with self.pool:
                    self._check_cancel(ctx)
                    with create_span(
                        "ingest.transcode", {"rendition.label": spec.label, "rendition.attempt": attempt}
                    ):
                        output = await self.driver.transcode(
                            source, spec, output_dir, has_audio, ctx.cancel_event
                        )
            except EncoderTransient as e:
                if attempt < self.encoder_retry.max_attempts:
                    delay = self.encoder_retry.calculate_delay(attempt)
                    RENDITION_RETRIES_TOTAL.labels(label=spec.label).inc()
                    logger.warning(
                        "Transient encoder failure, retrying",
                        extra={"label": spec.label, "attempt": attempt, "delay_s": delay, "reason": e.reason},
                    )
                    await self._sleep_or_cancel(ctx, delay)
                    continue
                return await self._rendition_failed(
                    ctx, spec, ErrorKind.TRANSCODE_FAILED, f"{e.reason} after {attempt} attempts: {e.detail}"
                )
            except TranscodeFailed as e:
                return await self._rendition_failed(ctx, spec, e.kind, f"{e.reason}: {e.detail}")
            break

        try:
            key = await self.writer.upload_rendition(ctx.asset_id, output)
        except PublishFailed as e:
            return await self._rendition_failed(ctx, spec, e.kind, e.detail)
        finally:
            shutil.rmtree(output_dir, ignore_errors=True)

        await self._update_rendition(
            ctx,
            spec.label,
            status=RenditionStatus.DONE,
            playlist_key=key,
            segment_count=output.segment_count,
            avg_segment_seconds=output.avg_segment_seconds,
            error_kind=None,
            error_detail=None,
        )
        RENDITIONS_TOTAL.labels(label=spec.label, status=RenditionStatus.DONE.value).inc()
        return RenditionOutcome(spec=spec, playlist_key=key, segment_count=output.segment_count)

    async def _rendition_failed(
        self, ctx: RunContext, spec: RenditionSpec, kind: ErrorKind, detail: str
    ) -> RenditionOutcome:
        detail = bound_detail(detail, self.config.error_detail_max_bytes)
        logger.warning("Rendition failed", extra={"label": spec.label, "error_kind": kind.value})
        await self._update_rendition(
            ctx, spec.label, status=RenditionStatus.FAILED, error_kind=kind, error_detail=detail
        )
        RENDITIONS_TOTAL.labels(label=spec.label, status=RenditionStatus.FAILED.value).inc()
        return RenditionOutcome(spec=spec, error_kind=kind, error_detail=detail)

    async def _update_rendition(self, ctx: RunContext, label: str, **values) -> None:
        ok = await self.store.run(
            lambda repo: repo.update_rendition(ctx.asset_id, label, self.worker_id, **values)
        )
        self._require(ok)

    async def _make_thumbnail(self, ctx: RunContext, source: str, descriptor: ProbeDescriptor) -> Optional[str]:
        at_seconds = min(self.config.thumbnail_max_offset_s, descriptor.duration_s / 2)
        output_path = os.path.join(ctx.scratch_dir, THUMBNAIL_NAME)
        try:
            async with self.pool:
                self._check_cancel(ctx)
                return await self.driver.extract_thumbnail(source, at_seconds, output_path, ctx.cancel_event)
        except TranscodeFailed as e:
            logger.warning("Thumbnail extraction failed", extra={"reason": e.reason})
            return None

    async def _publish(
        self,
        ctx: RunContext,
        outcomes: list[RenditionOutcome],
        thumbnail_path: Optional[str],
    ) -> AssetStatus:
        with phase("publish", renditions=len(outcomes)):
            variants = []
            for outcome in outcomes:
                if await self.writer.verify_rendition(ctx.asset_id, outcome.spec.label, outcome.segment_count):
                    variants.append(
                        MasterVariant(
                            label=outcome.spec.label,
                            bandwidth=outcome.spec.bandwidth,
                            width=outcome.spec.width,
                            height=outcome.spec.height,
                        )
                    )
                else:
                    await self.writer.purge_rendition(ctx.asset_id, outcome.spec.label)
                    await self._rendition_failed(
                        ctx, outcome.spec, ErrorKind.PUBLISH_FAILED, "uploaded rendition incomplete in storage"
                    )
            if not variants:
                return await self._fail(
                    ctx, AssetStatus.PUBLISHING, ErrorKind.PUBLISH_FAILED, "no rendition verified in storage"
                )

            thumb_key = None
            if thumbnail_path:
                try:
                    thumb_key = await self.writer.upload_thumbnail(ctx.asset_id, thumbnail_path)
                except PublishFailed as e:
                    logger.warning("Thumbnail upload failed", extra={"detail": e.detail})

            self._check_cancel(ctx)
            try:
                manifest_key = await self.writer.publish_master(ctx.asset_id, variants)
            except PublishFailed as e:
                return await self._fail(ctx, AssetStatus.PUBLISHING, ErrorKind.PUBLISH_FAILED, e.detail)

            committed = await self.store.run(
                lambda repo: repo.transition(
                    ctx.asset_id,
                    AssetStatus.PUBLISHING,
                    AssetStatus.READY,
                    owner=self.worker_id,
                    unless_cancelled=True,
                    master_manifest_key=manifest_key,
                    thumbnail_key=thumb_key,
                )
            )
            if not committed:
                # Nobody may see a master for an asset that is not READY
                await self.writer.remove_master(ctx.asset_id)
                if await self.store.run(lambda repo: repo.is_cancel_requested(ctx.asset_id)):
                    raise Cancelled()
                raise LeaseLost()

        ASSETS_TOTAL.labels(status=AssetStatus.READY.value).inc()
        logger.info("Asset ready", extra={"renditions": [v.label for v in variants]})
        return AssetStatus.READY

    # ==================== Terminal paths ====================

    async def _fail(self, ctx: RunContext, current: AssetStatus, kind: ErrorKind, detail: str) -> AssetStatus:
        """Purge outputs and commit FAILED."""
        detail = bound_detail(detail, self.config.error_detail_max_bytes)
        try:
            await self.writer.purge_asset(ctx.asset_id)
        except PublishFailed as e:
            logger.error("Could not purge storage of failed asset", extra={"detail": e.detail})

        if current == AssetStatus.QUEUED:
            # FAILED is only reachable from an in-progress status
            await self._transition(ctx, AssetStatus.QUEUED, AssetStatus.PROBING)
            current = AssetStatus.PROBING
        await self._transition(
            ctx,
            current,
            AssetStatus.FAILED,
            error_kind=kind,
            error_detail=detail,
            master_manifest_key=None,
            thumbnail_key=None,
        )
        ASSETS_TOTAL.labels(status=AssetStatus.FAILED.value).inc()
        logger.warning("Asset failed", extra={"error_kind": kind.value})
        return AssetStatus.FAILED

    async def _finish_cancelled(self, ctx: RunContext) -> Optional[AssetStatus]:
        """Remove every artifact, then commit CANCELLED."""
        if ctx.scratch_dir:
            shutil.rmtree(ctx.scratch_dir, ignore_errors=True)
        await self.writer.purge_asset(ctx.asset_id)

        asset = await self.store.run(lambda repo: repo.get(ctx.asset_id))
        if asset is None:
            return None
        if asset.status.is_terminal:
            return asset.status
        await self._transition(ctx, asset.status, AssetStatus.CANCELLED)
        ASSETS_TOTAL.labels(status=AssetStatus.CANCELLED.value).inc()
        logger.info("Asset cancelled")
        return AssetStatus.CANCELLED

    # ==================== Recovery and cleanup ====================

    def _remove_stale_scratch(self, job: IngestJob) -> None:
        if job.scratch_id:
            shutil.rmtree(os.path.join(self.config.scratch_root, job.scratch_id), ignore_errors=True)

    async def _reconcile(self, ctx: RunContext, asset: Asset) -> None:
        """Bring scratch and storage back to a clean start after a takeover."""
        LEASE_TAKEOVERS_TOTAL.inc()
        logger.warning(
            "Taking over asset",
            extra={"status": asset.status.value, "attempts": ctx.job.attempts, "stale_scratch": ctx.job.scratch_id},
        )
        self._remove_stale_scratch(ctx.job)
        await self.writer.purge_asset(ctx.asset_id)
        labels = [r.label for r in asset.renditions if r.status != RenditionStatus.SKIPPED]
        await self.store.run(lambda repo: repo.reset_renditions(ctx.asset_id, self.worker_id, labels))

    async def _cleanup(self, ctx: RunContext) -> None:
        if ctx.scratch_dir:
            shutil.rmtree(ctx.scratch_dir, ignore_errors=True)
        if ctx.lease_lost:
            return
        try:
            await self.store.run(lambda repo: repo.release_lease(ctx.asset_id, self.worker_id))
        except StateStoreTransient:
            logger.warning("Could not release lease; it will expire", exc_info=True)


class IngestWorker:
    """Polls the state store and runs the orchestrator for claimable assets.

    Used by the standalone ``worker`` command; Celery deployments dispatch
    through tasks instead.
    """

    def __init__(self, orchestrator: IngestOrchestrator, max_concurrent_assets: Optional[int] = None):
        self.orchestrator = orchestrator
        self.config = orchestrator.config
        self.max_concurrent_assets = max_concurrent_assets or max(2, self.config.worker_pool_size)
        self._running: dict[str, asyncio.Task] = {}

    async def _run_one(self, asset_id: str) -> None:
        try:
            status = await self.orchestrator.run(asset_id)
            if status is not None:
                logger.info("Run finished", extra={"asset": asset_id, "status": status.value})
        except StateStoreTransient:
            logger.error("State store unavailable while processing asset", extra={"asset": asset_id})
        except Exception:
            logger.exception("Unexpected error while processing asset", extra={"asset": asset_id})

    async def poll(self) -> int:
        """Start runs for recoverable assets; returns the number started."""
        self._running = {k: t for k, t in self._running.items() if not t.done()}
        free = self.max_concurrent_assets - len(self._running)
        if free <= 0:
            return 0
        candidates = await self.orchestrator.store.run(
            lambda repo: repo.find_recoverable(limit=free + len(self._running))
        )
        started = 0
        for asset_id in candidates:
            if asset_id in self._running or started >= free:
                continue
            self._running[asset_id] = asyncio.create_task(self._run_one(asset_id))
            started += 1
        return started

    async def drain(self) -> None:
        """Wait for every run started by this worker."""
        if self._running:
            await asyncio.gather(*self._running.values(), return_exceptions=True)
        self._running.clear()

    async def run_until_idle(self) -> None:
        """Process assets until nothing claimable is left."""
        while await self.poll():
            await self.drain()
        await self.drain()

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None) -> None:
        stop_event = stop_event or asyncio.Event()
        logger.info("Ingest worker started", extra={"worker_id": self.orchestrator.worker_id})
        while not stop_event.is_set():
            try:
                await self.poll()
            except StateStoreTransient:
                logger.warning("State store unavailable, will poll again")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.config.worker_poll_interval_s)
            except asyncio.TimeoutError:
                pass
        await self.drain()
        logger.info("Ingest worker stopped")
