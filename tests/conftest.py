"""Shared fixtures for cloudstash tests."""
from unittest.mock import AsyncMock, MagicMock

import pytest

from cloudstash.models import (
    ExplorerConfig,
    FolderListing,
    JobStart,
    JobState,
    JobStatus,
    MiB,
    MultipartUpload,
    StorageUsage,
    UnlockResult,
)
from cloudstash.services.cache import CacheInvalidator, ListingCache
from cloudstash.services.session_store import SessionStore
from cloudstash.utils.events import EventEmitter


class FakeClock:
    """Manually advanced replacement for time.time."""

    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def config():
    return ExplorerConfig(
        chunk_size=5 * MiB,
        poll_interval=0.01,
        job_cleanup_delay=0.05,
        session_sweep_interval=0.01,
        retry_base_delay=0.001,
        retry_max_delay=0.002,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def api():
    """Mock storage API with well-behaved defaults."""
    api = MagicMock()
    api.unlock = AsyncMock(
        side_effect=lambda path, passphrase: UnlockResult(token=f"tok-{path}", encrypted_path=path)
    )
    api.list = AsyncMock(side_effect=lambda path, session_token=None: FolderListing(path=path))
    api.storage_usage = AsyncMock(return_value=StorageUsage(used_bytes=10, total_bytes=100))

    api.create_multipart = AsyncMock(
        side_effect=lambda key, content_type, size, session_token=None: MultipartUpload("up-1", key)
    )

    async def upload_part(key, upload_id, part_number, data, md5, session_token=None, on_progress=None):
        if on_progress:
            on_progress(len(data) // 2)
            on_progress(len(data))
        return f"etag-{part_number}"

    api.upload_part = AsyncMock(side_effect=upload_part)
    api.complete_multipart = AsyncMock(return_value=None)
    api.abort_multipart = AsyncMock(return_value=None)

    api.start_job = AsyncMock(return_value=JobStart(job_id="job-1"))
    api.job_status = AsyncMock(return_value=JobStatus(state=JobState.ACTIVE))
    api.cancel_job = AsyncMock(return_value=None)
    api.archive_preview = AsyncMock(return_value=[])

    api.move = AsyncMock(return_value=None)
    api.delete = AsyncMock(return_value=None)
    api.create_directory = AsyncMock(return_value=None)
    api.rename_directory = AsyncMock(return_value=None)
    api.delete_directory = AsyncMock(return_value=None)
    api.convert_directory = AsyncMock(return_value=None)
    return api


@pytest.fixture
def events():
    return EventEmitter()


@pytest.fixture
def cache():
    return ListingCache()


@pytest.fixture
def invalidator(cache, events):
    return CacheInvalidator(cache, events)


@pytest.fixture
def sessions(api, events, config, clock):
    return SessionStore(api, events, config, clock)
