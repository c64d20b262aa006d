"""Tests for lease ownership and compare-and-set transitions."""

from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from hlsingest.modules.ingest.errors import StateStoreTransient
from hlsingest.modules.ingest.ladder import QUALITY_PROFILES
from hlsingest.modules.ingest.models import AssetStatus, RenditionStatus, utcnow
from hlsingest.modules.ingest.planner import RenditionPlan, build_spec
from hlsingest.modules.ingest.repository import AssetRepository
from hlsingest.modules.ingest.schemas import ProbeDescriptor, VideoStreamInfo

DESCRIPTOR = ProbeDescriptor(
    container="mp4",
    duration_s=60.0,
    video=VideoStreamInfo(codec="h264", width=854, height=480, fps=30.0),
)


async def create_asset(store, asset_id: str = "A1", ladder=None) -> None:
    await store.run(lambda repo: repo.create(asset_id, f"/media/{asset_id}.mp4", ladder))


class TestAssets:

    async def test_create_and_get(self, state_store) -> None:
        await create_asset(state_store, ladder=["360p"])

        asset = await state_store.run(lambda repo: repo.get("A1"))

        assert asset.status == AssetStatus.QUEUED
        assert asset.requested_ladder == ["360p"]
        assert asset.job.attempts == 0
        assert asset.job.cancel_requested is False
        assert asset.renditions == []

    async def test_duplicate_asset_id(self, state_store, session_factory) -> None:
        await create_asset(state_store)

        async with session_factory() as session:
            with pytest.raises(IntegrityError):
                await AssetRepository(session).create("A1", "/media/other.mp4")

    async def test_delete_if_status(self, state_store) -> None:
        await create_asset(state_store)

        assert not await state_store.run(lambda repo: repo.delete_if_status("A1", [AssetStatus.FAILED]))
        assert await state_store.run(lambda repo: repo.delete_if_status("A1", [AssetStatus.QUEUED]))
        assert await state_store.run(lambda repo: repo.get("A1")) is None
        assert await state_store.run(lambda repo: repo.get_job("A1")) is None

    async def test_count_by_status(self, state_store) -> None:
        await create_asset(state_store, "A1")
        await create_asset(state_store, "A2")

        assert await state_store.run(lambda repo: repo.count_by_status()) == {"QUEUED": 2}


class TestLeases:

    async def test_only_one_worker_holds_the_lease(self, state_store) -> None:
        await create_asset(state_store)

        job = await state_store.run(lambda repo: repo.claim_lease("A1", "w1", 30))
        assert job.worker_id == "w1"
        assert job.attempts == 1

        assert await state_store.run(lambda repo: repo.claim_lease("A1", "w2", 30)) is None
        assert await state_store.run(lambda repo: repo.renew_lease("A1", "w1", 30))
        assert not await state_store.run(lambda repo: repo.renew_lease("A1", "w2", 30))

    async def test_expired_lease_is_taken_over(self, state_store) -> None:
        await create_asset(state_store)
        await state_store.run(lambda repo: repo.claim_lease("A1", "w1", -1))

        job = await state_store.run(lambda repo: repo.claim_lease("A1", "w2", 30))

        assert job.worker_id == "w2"
        assert job.attempts == 2
        assert not await state_store.run(lambda repo: repo.renew_lease("A1", "w1", 30))

    async def test_release_clears_lease_and_scratch(self, state_store) -> None:
        await create_asset(state_store)
        await state_store.run(lambda repo: repo.claim_lease("A1", "w1", 30))
        assert await state_store.run(lambda repo: repo.set_scratch("A1", "w1", "abc"))

        assert await state_store.run(lambda repo: repo.release_lease("A1", "w1"))

        job = await state_store.run(lambda repo: repo.get_job("A1"))
        assert job.worker_id is None and job.lease_expires_at is None and job.scratch_id is None

    async def test_claim_of_unknown_asset(self, state_store) -> None:
        assert await state_store.run(lambda repo: repo.claim_lease("nope", "w1", 30)) is None

    async def test_cancel_flag(self, state_store) -> None:
        await create_asset(state_store)

        assert await state_store.run(lambda repo: repo.is_cancel_requested("A1")) is False
        assert await state_store.run(lambda repo: repo.request_cancel("A1"))
        assert await state_store.run(lambda repo: repo.is_cancel_requested("A1")) is True
        assert await state_store.run(lambda repo: repo.is_cancel_requested("nope")) is None


class TestTransitions:

    async def test_owner_compare_and_set(self, state_store) -> None:
        await create_asset(state_store)
        await state_store.run(lambda repo: repo.claim_lease("A1", "w1", 30))

        assert not await state_store.run(
            lambda repo: repo.transition("A1", AssetStatus.QUEUED, AssetStatus.PROBING, owner="w2")
        )
        assert await state_store.run(
            lambda repo: repo.transition("A1", AssetStatus.QUEUED, AssetStatus.PROBING, owner="w1")
        )
        # Stale expectation loses
        assert not await state_store.run(
            lambda repo: repo.transition("A1", AssetStatus.QUEUED, AssetStatus.PROBING, owner="w1")
        )
        asset = await state_store.run(lambda repo: repo.get("A1"))
        assert asset.status == AssetStatus.PROBING

    async def test_illegal_edge_is_rejected(self, state_store) -> None:
        await create_asset(state_store)

        with pytest.raises(ValueError):
            await state_store.run(lambda repo: repo.transition("A1", AssetStatus.QUEUED, AssetStatus.READY))

    async def test_require_unowned(self, state_store) -> None:
        await create_asset(state_store)
        await state_store.run(lambda repo: repo.claim_lease("A1", "w1", 30))

        assert not await state_store.run(
            lambda repo: repo.transition("A1", AssetStatus.QUEUED, AssetStatus.CANCELLED, require_unowned=True)
        )
        await state_store.run(lambda repo: repo.release_lease("A1", "w1"))
        assert await state_store.run(
            lambda repo: repo.transition("A1", AssetStatus.QUEUED, AssetStatus.CANCELLED, require_unowned=True)
        )

    async def test_unless_cancelled(self, state_store) -> None:
        await create_asset(state_store)
        await state_store.run(lambda repo: repo.claim_lease("A1", "w1", 30))
        await state_store.run(lambda repo: repo.request_cancel("A1"))

        assert not await state_store.run(
            lambda repo: repo.transition(
                "A1", AssetStatus.QUEUED, AssetStatus.PROBING, owner="w1", unless_cancelled=True
            )
        )


class TestRecovery:

    async def test_find_recoverable(self, state_store) -> None:
        for asset_id in ("free", "leased", "expired", "done"):
            await create_asset(state_store, asset_id)
        await state_store.run(lambda repo: repo.claim_lease("leased", "w1", 300))
        await state_store.run(lambda repo: repo.claim_lease("expired", "w1", -1))
        await state_store.run(lambda repo: repo.claim_lease("done", "w1", 300))
        await state_store.run(
            lambda repo: repo.transition("done", AssetStatus.QUEUED, AssetStatus.CANCELLED, owner="w1")
        )
        await state_store.run(lambda repo: repo.release_lease("done", "w1"))

        found = await state_store.run(lambda repo: repo.find_recoverable())

        assert sorted(found) == ["expired", "free"]

    async def test_young_queued_assets_are_left_to_the_broker(self, state_store) -> None:
        await create_asset(state_store)

        assert await state_store.run(lambda repo: repo.find_recoverable(queued_grace_s=60)) == []
        later = utcnow() + timedelta(seconds=120)
        assert await state_store.run(lambda repo: repo.find_recoverable(now=later, queued_grace_s=60)) == ["A1"]


class TestRenditions:

    async def test_add_update_and_reset(self, state_store) -> None:
        await create_asset(state_store, ladder=["360p", "480p", "720p"])
        await state_store.run(lambda repo: repo.claim_lease("A1", "w1", 30))
        plan = RenditionPlan(
            renditions=[build_spec(QUALITY_PROFILES[label], DESCRIPTOR) for label in ("360p", "480p")],
            skipped=["720p"],
        )
        await state_store.run(lambda repo: repo.add_renditions("A1", plan))

        assert await state_store.run(
            lambda repo: repo.update_rendition(
                "A1", "360p", "w1", status=RenditionStatus.DONE, playlist_key="assets/A1/360p/playlist.m3u8"
            )
        )
        assert not await state_store.run(
            lambda repo: repo.update_rendition("A1", "480p", "w2", status=RenditionStatus.DONE)
        )

        asset = await state_store.run(lambda repo: repo.get("A1"))
        by_label = {r.label: r for r in asset.renditions}
        assert [r.label for r in asset.renditions] == ["360p", "480p", "720p"]
        assert by_label["360p"].status == RenditionStatus.DONE
        assert by_label["480p"].status == RenditionStatus.PENDING
        assert by_label["720p"].status == RenditionStatus.SKIPPED
        assert by_label["360p"].bandwidth == 730400

        reset = await state_store.run(lambda repo: repo.reset_renditions("A1", "w1", ["360p", "480p"]))
        assert reset == 2
        asset = await state_store.run(lambda repo: repo.get("A1"))
        assert {r.label: r.status for r in asset.renditions}["360p"] == RenditionStatus.PENDING
        assert {r.label: r.playlist_key for r in asset.renditions}["360p"] is None


class TestStateStore:

    async def test_operational_errors_escalate(self, state_store) -> None:
        calls = []

        async def unavailable(repo):
            calls.append(1)
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))

        with pytest.raises(StateStoreTransient):
            await state_store.run(unavailable)

        assert len(calls) == state_store.retry.max_attempts

    async def test_failed_work_is_rolled_back(self, state_store) -> None:
        async def create_then_fail(repo):
            await repo.create("A1", "/media/A1.mp4")
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await state_store.run(create_then_fail)

        assert await state_store.run(lambda repo: repo.get("A1")) is None
