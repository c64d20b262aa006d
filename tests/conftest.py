"""Shared fixtures: fast pipeline configuration, local storage, SQLite state store."""

import pytest

from hlsingest.core.database import create_engine, create_session_factory, init_db
from hlsingest.core.storage import Storage, StorageConfig, StorageService
from hlsingest.modules.ingest.config import PipelineConfig
from hlsingest.modules.ingest.repository import StateStore
from hlsingest.modules.job.tasks import RetryConfig


@pytest.fixture
def pipeline_config(tmp_path) -> PipelineConfig:
    return PipelineConfig(
        probe_timeout_s=10.0,
        transcode_timeout_s=30.0,
        max_rendition_retries=2,
        retry_backoff_base_s=0.01,
        retry_backoff_cap_s=0.05,
        max_upload_retries=3,
        worker_pool_size=2,
        lease_ttl_s=30.0,
        lease_renew_s=5.0,
        cancel_grace_s=1.0,
        cancel_poll_interval_s=0.05,
        worker_poll_interval_s=0.05,
        scratch_root=str(tmp_path / "scratch"),
        thumbnail_enabled=False,
    )


@pytest.fixture
def storage(tmp_path) -> Storage:
    return Storage(StorageConfig(backend="local", local_path=str(tmp_path / "objects")))


@pytest.fixture
def storage_service(storage) -> StorageService:
    return StorageService(storage, timeout=5.0)


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'state.db'}")
    await init_db(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def state_store(session_factory) -> StateStore:
    return StateStore(
        session_factory,
        RetryConfig(max_attempts=2, initial_delay=0.01, max_delay=0.02, backoff_multiplier=2),
    )
