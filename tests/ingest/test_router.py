"""HTTP tests for the assets API."""

import httpx
import pytest
from fastapi import Depends

from hlsingest.core.database import get_db
from hlsingest.main import app
from hlsingest.modules.ingest.errors import PublishFailed
from hlsingest.modules.ingest.publisher import SegmentWriter
from hlsingest.modules.ingest.router import get_asset_service
from hlsingest.modules.ingest.service import AssetService

PREFIX = "/api/v1/assets"


@pytest.fixture
async def client(session_factory, storage_service, pipeline_config):
    async def override_db():
        async with session_factory() as session:
            yield session

    def override_service(session=Depends(get_db)):
        return AssetService(session, storage=storage_service, dispatcher=None, config=pipeline_config)

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_asset_service] = override_service
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http
    app.dependency_overrides.clear()


class TestAssetsApi:

    async def test_submit_returns_queued_view(self, client) -> None:
        response = await client.post(PREFIX, json={"asset_id": "A1", "source_handle": "/media/a.mp4"})

        assert response.status_code == 202
        body = response.json()
        assert body["asset_id"] == "A1"
        assert body["status"] == "QUEUED"
        assert body["master_manifest_url"] is None

    async def test_conflicting_submit(self, client) -> None:
        await client.post(PREFIX, json={"asset_id": "A1", "source_handle": "/media/a.mp4"})

        response = await client.post(PREFIX, json={"asset_id": "A1", "source_handle": "/media/b.mp4"})

        assert response.status_code == 409
        assert response.json()["detail"]["error_kind"] == "AssetAlreadyExists"

    async def test_invalid_submit(self, client) -> None:
        response = await client.post(
            PREFIX, json={"asset_id": "A1", "source_handle": "/media/a.mp4", "ladder": ["8k"]}
        )

        assert response.status_code == 422

    async def test_unknown_asset(self, client) -> None:
        response = await client.get(f"{PREFIX}/missing")

        assert response.status_code == 404
        assert response.json()["detail"]["error_kind"] == "UnknownAsset"

    async def test_cancel_then_delete(self, client) -> None:
        await client.post(PREFIX, json={"asset_id": "A1", "source_handle": "/media/a.mp4"})

        busy = await client.delete(f"{PREFIX}/A1")
        cancelled = await client.post(f"{PREFIX}/A1/cancel")
        deleted = await client.delete(f"{PREFIX}/A1")
        gone = await client.get(f"{PREFIX}/A1")

        assert busy.status_code == 409
        assert busy.json()["detail"]["error_kind"] == "AssetBusy"
        assert cancelled.json()["status"] == "CANCELLED"
        assert deleted.status_code == 204
        assert gone.status_code == 404

    async def test_replace_with_unpurgeable_outputs_is_unavailable(self, client, monkeypatch) -> None:
        async def failing_purge(self, asset_id):
            raise PublishFailed(f"keys remain under assets/{asset_id}/")

        await client.post(PREFIX, json={"asset_id": "A1", "source_handle": "/media/a.mp4"})
        await client.post(f"{PREFIX}/A1/cancel")
        monkeypatch.setattr(SegmentWriter, "purge_asset", failing_purge)

        response = await client.post(PREFIX, json={"asset_id": "A1", "source_handle": "/media/b.mp4"})
        current = await client.get(f"{PREFIX}/A1")

        assert response.status_code == 503
        assert response.json()["detail"]["error_kind"] == "PublishFailed"
        assert current.json()["status"] == "CANCELLED"

    async def test_retry_requires_failed_asset(self, client) -> None:
        await client.post(PREFIX, json={"asset_id": "A1", "source_handle": "/media/a.mp4"})

        response = await client.post(f"{PREFIX}/A1/retry")

        assert response.status_code == 409

    async def test_stats(self, client) -> None:
        await client.post(PREFIX, json={"asset_id": "A1", "source_handle": "/media/a.mp4"})

        response = await client.get(f"{PREFIX}/stats")

        assert response.status_code == 200
        assert response.json()["total"] == 1
        assert response.json()["by_status"]["QUEUED"] == 1


class TestMetricsEndpoint:

    async def test_prometheus_exposition(self, client) -> None:
        await client.get(f"{PREFIX}/missing")

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "text/plain" in response.headers["content-type"]


class TestRequestContext:

    async def test_correlation_id_is_echoed(self, client) -> None:
        response = await client.get(f"{PREFIX}/stats", headers={"X-Correlation-ID": "req-42"})

        assert response.headers["X-Correlation-ID"] == "req-42"

    async def test_correlation_id_is_generated(self, client) -> None:
        response = await client.get(f"{PREFIX}/stats")

        assert response.headers["X-Correlation-ID"]
