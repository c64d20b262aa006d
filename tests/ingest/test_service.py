"""Tests for Submit, GetStatus, Cancel, Delete, Retry and GetStats."""

import asyncio

import pytest
from pydantic import ValidationError

from hlsingest.modules.ingest.errors import AssetAlreadyExists, AssetBusy, UnknownAsset
from hlsingest.modules.ingest.models import AssetStatus, ErrorKind
from hlsingest.modules.ingest.schemas import SubmitRequest
from hlsingest.modules.ingest.service import AssetService


@pytest.fixture
def dispatched() -> list[str]:
    return []


@pytest.fixture
async def service(session_factory, storage_service, pipeline_config, dispatched):
    async with session_factory() as session:
        yield AssetService(
            session, storage=storage_service, dispatcher=dispatched.append, config=pipeline_config
        )


async def force_status(state_store, asset_id: str, *path: AssetStatus, **values) -> None:
    """Walk an asset along ``path`` as a worker would."""
    await state_store.run(lambda repo: repo.claim_lease(asset_id, "w1", 30))
    for current, new in zip(path, path[1:]):
        extra = values if new == path[-1] else {}
        await state_store.run(lambda repo: repo.transition(asset_id, current, new, owner="w1", **extra))
    await state_store.run(lambda repo: repo.release_lease(asset_id, "w1"))


class TestSubmitRequest:

    @pytest.mark.parametrize("asset_id", ["", "-leading-dash", "has space", "a/b", "x" * 256])
    def test_invalid_asset_ids(self, asset_id) -> None:
        with pytest.raises(ValidationError):
            SubmitRequest(asset_id=asset_id, source_handle="/media/a.mp4")

    def test_ladder_is_normalized(self) -> None:
        request = SubmitRequest(asset_id="A1", source_handle=" /media/a.mp4 ", ladder=["720P", "360p", "720p"])

        assert request.ladder == ["360p", "720p"]
        assert request.source_handle == "/media/a.mp4"

    def test_unknown_label(self) -> None:
        with pytest.raises(ValidationError):
            SubmitRequest(asset_id="A1", source_handle="/media/a.mp4", ladder=["4k"])

    def test_empty_ladder(self) -> None:
        with pytest.raises(ValidationError):
            SubmitRequest(asset_id="A1", source_handle="/media/a.mp4", ladder=[])


class TestSubmit:

    async def test_submit_queues_and_dispatches(self, service, dispatched) -> None:
        view = await service.submit(SubmitRequest(asset_id="A1", source_handle="/media/a.mp4"))

        assert view.status == AssetStatus.QUEUED
        assert view.requested_ladder is None
        assert view.master_manifest_url is None
        assert dispatched == ["A1"]

    async def test_identical_resubmit_is_a_no_op(self, service, dispatched) -> None:
        request = SubmitRequest(asset_id="A1", source_handle="/media/a.mp4", ladder=["360p"])
        first = await service.submit(request)

        second = await service.submit(request)

        assert second.created_at == first.created_at
        assert dispatched == ["A1"]

    async def test_different_resubmit_conflicts(self, service) -> None:
        await service.submit(SubmitRequest(asset_id="A1", source_handle="/media/a.mp4"))

        with pytest.raises(AssetAlreadyExists):
            await service.submit(SubmitRequest(asset_id="A1", source_handle="/media/b.mp4"))

    async def test_ready_asset_cannot_be_resubmitted(self, service, state_store) -> None:
        request = SubmitRequest(asset_id="A1", source_handle="/media/a.mp4")
        await service.submit(request)
        await force_status(
            state_store, "A1",
            AssetStatus.QUEUED, AssetStatus.PROBING, AssetStatus.PLANNED,
            AssetStatus.TRANSCODING, AssetStatus.PUBLISHING, AssetStatus.READY,
        )

        with pytest.raises(AssetAlreadyExists):
            await service.submit(request)

    async def test_failed_asset_is_replaced(self, service, state_store, storage, dispatched) -> None:
        await service.submit(SubmitRequest(asset_id="A1", source_handle="/media/a.mp4"))
        await force_status(
            state_store, "A1", AssetStatus.QUEUED, AssetStatus.PROBING, AssetStatus.FAILED,
            error_kind=ErrorKind.SOURCE_UNREADABLE,
        )
        storage.upload_bytes(b"stale", "assets/A1/360p/segment_000.ts")

        view = await service.submit(SubmitRequest(asset_id="A1", source_handle="/media/b.mp4"))

        assert view.status == AssetStatus.QUEUED
        assert view.source_handle == "/media/b.mp4"
        assert view.error_kind is None
        assert storage.list_files("assets/A1/") == []
        assert dispatched == ["A1", "A1"]

    async def test_dispatch_failure_leaves_asset_queued(self, session_factory, storage_service,
                                                        pipeline_config) -> None:
        def broken_dispatcher(asset_id):
            raise ConnectionError("broker down")

        async with session_factory() as session:
            service = AssetService(
                session, storage=storage_service, dispatcher=broken_dispatcher, config=pipeline_config
            )
            view = await service.submit(SubmitRequest(asset_id="A1", source_handle="/media/a.mp4"))

        assert view.status == AssetStatus.QUEUED

    async def test_concurrent_submits_have_one_winner(self, session_factory, storage_service,
                                                      pipeline_config) -> None:
        async def submit(source_handle: str) -> str:
            async with session_factory() as session:
                service = AssetService(session, storage=storage_service, config=pipeline_config)
                try:
                    view = await service.submit(SubmitRequest(asset_id="A1", source_handle=source_handle))
                except AssetAlreadyExists:
                    return "exists"
                return view.source_handle

        outcomes = await asyncio.gather(submit("/media/a.mp4"), submit("/media/b.mp4"))

        assert outcomes.count("exists") == 1
        winner = next(o for o in outcomes if o != "exists")
        async with session_factory() as session:
            stored = await AssetService(session, storage=storage_service, config=pipeline_config).get_status("A1")
        assert stored.source_handle == winner
        assert stored.status == AssetStatus.QUEUED


class TestGetStatus:

    async def test_unknown_asset(self, service) -> None:
        with pytest.raises(UnknownAsset):
            await service.get_status("nope")

    async def test_urls_only_when_ready(self, service, state_store) -> None:
        await service.submit(SubmitRequest(asset_id="A1", source_handle="/media/a.mp4"))
        await force_status(
            state_store, "A1",
            AssetStatus.QUEUED, AssetStatus.PROBING, AssetStatus.PLANNED,
            AssetStatus.TRANSCODING, AssetStatus.PUBLISHING,
            master_manifest_key="assets/A1/master.m3u8",
        )
        assert (await service.get_status("A1")).master_manifest_url is None

        await force_status(
            state_store, "A1", AssetStatus.PUBLISHING, AssetStatus.READY,
            master_manifest_key="assets/A1/master.m3u8",
        )
        view = await service.get_status("A1")

        assert view.status == AssetStatus.READY
        assert view.master_manifest_url.startswith("file://")
        assert view.master_manifest_url.endswith("assets/A1/master.m3u8")


class TestCancel:

    async def test_queued_asset_is_cancelled_immediately(self, service) -> None:
        await service.submit(SubmitRequest(asset_id="A1", source_handle="/media/a.mp4"))

        view = await service.cancel("A1")

        assert view.status == AssetStatus.CANCELLED
        assert view.cancel_requested

    async def test_leased_asset_only_gets_the_flag(self, service, state_store) -> None:
        await service.submit(SubmitRequest(asset_id="A1", source_handle="/media/a.mp4"))
        await state_store.run(lambda repo: repo.claim_lease("A1", "w1", 30))

        view = await service.cancel("A1")

        assert view.status == AssetStatus.QUEUED
        assert view.cancel_requested

    async def test_unleased_running_asset_is_redispatched(self, service, state_store, dispatched) -> None:
        await service.submit(SubmitRequest(asset_id="A1", source_handle="/media/a.mp4"))
        await force_status(state_store, "A1", AssetStatus.QUEUED, AssetStatus.PROBING)

        view = await service.cancel("A1")

        assert view.status == AssetStatus.PROBING
        assert dispatched == ["A1", "A1"]

    async def test_cancel_is_idempotent_on_terminal_assets(self, service) -> None:
        await service.submit(SubmitRequest(asset_id="A1", source_handle="/media/a.mp4"))
        await service.cancel("A1")

        view = await service.cancel("A1")

        assert view.status == AssetStatus.CANCELLED

    async def test_unknown_asset(self, service) -> None:
        with pytest.raises(UnknownAsset):
            await service.cancel("nope")


class TestDelete:

    async def test_non_terminal_asset_is_busy(self, service) -> None:
        await service.submit(SubmitRequest(asset_id="A1", source_handle="/media/a.mp4"))

        with pytest.raises(AssetBusy):
            await service.delete("A1")

    async def test_delete_removes_record_and_objects(self, service, storage) -> None:
        await service.submit(SubmitRequest(asset_id="A1", source_handle="/media/a.mp4"))
        await service.cancel("A1")
        storage.upload_bytes(b"x", "assets/A1/thumb.jpg")

        await service.delete("A1")

        assert storage.list_files("assets/A1/") == []
        with pytest.raises(UnknownAsset):
            await service.get_status("A1")

    async def test_unknown_asset(self, service) -> None:
        with pytest.raises(UnknownAsset):
            await service.delete("nope")


class TestRetry:

    async def test_failed_asset_is_requeued(self, service, state_store, dispatched) -> None:
        await service.submit(SubmitRequest(asset_id="A1", source_handle="/media/a.mp4", ladder=["480p"]))
        await force_status(
            state_store, "A1", AssetStatus.QUEUED, AssetStatus.PROBING, AssetStatus.FAILED,
            error_kind=ErrorKind.TRANSCODE_FAILED,
        )

        view = await service.retry("A1")

        assert view.status == AssetStatus.QUEUED
        assert view.requested_ladder == ["480p"]
        assert view.error_kind is None
        assert dispatched == ["A1", "A1"]

    async def test_only_failed_assets_can_be_retried(self, service) -> None:
        await service.submit(SubmitRequest(asset_id="A1", source_handle="/media/a.mp4"))

        with pytest.raises(AssetBusy):
            await service.retry("A1")


class TestStats:

    async def test_counts_every_status(self, service) -> None:
        await service.submit(SubmitRequest(asset_id="A1", source_handle="/media/a.mp4"))
        await service.submit(SubmitRequest(asset_id="A2", source_handle="/media/b.mp4"))
        await service.cancel("A2")

        stats = await service.get_stats()

        assert stats.total == 2
        assert stats.by_status["QUEUED"] == 1
        assert stats.by_status["CANCELLED"] == 1
        assert stats.by_status["READY"] == 0
