"""Tests for background job tracking."""
import asyncio
from unittest.mock import AsyncMock

import pytest

from cloudstash.errors import ApiError, ServerJobFailure
from cloudstash.models import ExplorerConfig, JobKind, JobProgress, JobStart, JobState, JobStatus
from cloudstash.orchestrator.jobs import (
    ArchiveCreateFamily,
    ArchiveExtractFamily,
    JobOrchestrator,
    ZipExtractFamily,
)
from cloudstash.utils.events import INVALIDATE


def _statuses(*statuses):
    """Return each status in turn, then repeat the last one."""
    remaining = list(statuses)

    def next_status(*args, **kwargs):
        return remaining.pop(0) if len(remaining) > 1 else remaining[0]

    return AsyncMock(side_effect=next_status)


@pytest.fixture
def slow_config():
    # Polling only happens when a test calls poll() itself
    return ExplorerConfig(poll_interval=60, job_cleanup_delay=60)


def _orchestrator(api, family, sessions, invalidator, events, config, clock):
    return JobOrchestrator(api, family, sessions, invalidator, events, config, clock)


class TestProgressMerge:
    @pytest.mark.asyncio
    async def test_total_entries_survive_partial_poll(self, api, sessions, invalidator, events, slow_config, clock):
        api.job_status = _statuses(
            JobStatus(state=JobState.ACTIVE, progress=JobProgress(total_entries=50)),
            JobStatus(state=JobState.ACTIVE, progress=JobProgress(entries_processed=10)),
        )
        jobs = _orchestrator(api, ArchiveExtractFamily(), sessions, invalidator, events, slow_config, clock)

        job = await jobs.start("x.zip")
        assert job.state is JobState.ACTIVE
        assert job.progress.total_entries == 50

        clock.advance(1.5)
        job = await jobs.poll("x.zip")

        assert job.progress.total_entries == 50
        assert job.progress.entries_processed == 10
        assert job.updated_at == clock.now
        await jobs.close()

    @pytest.mark.asyncio
    async def test_seeded_total_is_kept(self, api, sessions, invalidator, events, slow_config, clock):
        api.job_status = _statuses(JobStatus(state=JobState.ACTIVE, progress=JobProgress(entries_processed=1)))
        jobs = _orchestrator(api, ArchiveExtractFamily(), sessions, invalidator, events, slow_config, clock)

        job = await jobs.start("x.zip", progress=JobProgress(total_entries=7))

        assert job.progress.total_entries == 7
        assert job.progress.entries_processed == 1
        await jobs.close()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_records_and_polls(self, api, sessions, invalidator, events, slow_config, clock):
        updates = []
        jobs = _orchestrator(api, ArchiveExtractFamily(), sessions, invalidator, events, slow_config, clock)
        jobs.on_update(updates.append)

        await jobs.start("Docs/x.zip", {"entries": ["a.txt"]})
        await events.drain()

        api.start_job.assert_awaited_once_with(
            JobKind.ARCHIVE_EXTRACT,
            {"Key": "Docs/x.zip", "SelectedEntries": ["a.txt"]},
            session_token=None,
        )
        api.job_status.assert_awaited_once_with(JobKind.ARCHIVE_EXTRACT, "job-1", session_token=None)
        assert [u.state for u in updates] == [JobState.STARTING, JobState.WAITING, JobState.ACTIVE]
        await jobs.close()

    @pytest.mark.asyncio
    async def test_poll_loop_runs_until_terminal(self, api, sessions, invalidator, events, config, clock):
        api.job_status = _statuses(
            JobStatus(state=JobState.WAITING),
            JobStatus(state=JobState.ACTIVE),
            JobStatus(state=JobState.COMPLETED, output_path="Docs/x"),
        )
        jobs = _orchestrator(api, ZipExtractFamily(), sessions, invalidator, events, config, clock)

        await jobs.start("Docs/x.zip")
        job = await asyncio.wait_for(jobs.wait("Docs/x.zip"), timeout=2)

        assert job.state is JobState.COMPLETED
        assert job.output_path == "Docs/x"
        assert api.job_status.await_count == 3
        await jobs.close()

    @pytest.mark.asyncio
    async def test_completed_twice_fires_side_effects_once(self, api, sessions, invalidator, events, slow_config, clock):
        api.job_status = _statuses(JobStatus(state=JobState.COMPLETED, output_path="Docs/x"))
        invalidations = []
        events.on(INVALIDATE, invalidations.append)
        jobs = _orchestrator(api, ArchiveExtractFamily(), sessions, invalidator, events, slow_config, clock)

        await jobs.start("Docs/x.zip")
        first = list(invalidations)
        await jobs.poll("Docs/x.zip")
        await jobs._on_terminal(jobs.get("Docs/x.zip"))

        assert [i.path for i in first] == ["Docs", "Docs/x"]
        assert invalidations == first
        assert len(jobs._cleanups) == 1
        await jobs.close()

    @pytest.mark.asyncio
    async def test_cleanup_removes_finished_job(self, api, sessions, invalidator, events, config, clock):
        api.job_status = _statuses(JobStatus(state=JobState.COMPLETED))
        jobs = _orchestrator(api, ZipExtractFamily(), sessions, invalidator, events, config, clock)

        await jobs.start("x.zip")
        assert jobs.get("x.zip").state is JobState.COMPLETED
        await asyncio.sleep(config.job_cleanup_delay * 4)

        assert jobs.get("x.zip") is None
        await jobs.close()

    @pytest.mark.asyncio
    async def test_restart_resets_terminal_gate(self, api, sessions, invalidator, events, slow_config, clock):
        api.job_status = _statuses(JobStatus(state=JobState.FAILED, failed_reason="boom"))
        jobs = _orchestrator(api, ZipExtractFamily(), sessions, invalidator, events, slow_config, clock)
        await jobs.start("x.zip")
        assert jobs.get("x.zip").state is JobState.FAILED

        api.job_status = _statuses(JobStatus(state=JobState.COMPLETED))
        job = await jobs.start("x.zip")

        assert job.state is JobState.COMPLETED
        assert (await jobs.wait("x.zip")).state is JobState.COMPLETED
        await jobs.close()


class TestFailures:
    @pytest.mark.asyncio
    async def test_server_failure_reason_is_surfaced(self, api, sessions, invalidator, events, slow_config, clock):
        api.job_status = _statuses(JobStatus(state=JobState.FAILED, failed_reason="Corrupt archive"))
        jobs = _orchestrator(api, ArchiveExtractFamily(), sessions, invalidator, events, slow_config, clock)

        await jobs.start("x.zip")

        with pytest.raises(ServerJobFailure, match="Corrupt archive"):
            await jobs.wait("x.zip", raise_on_failure=True)
        job = await jobs.wait("x.zip")
        assert job.failed_reason == "Corrupt archive"
        await jobs.close()

    @pytest.mark.asyncio
    async def test_start_error_records_failed(self, api, sessions, invalidator, events, slow_config, clock):
        api.start_job = AsyncMock(side_effect=ApiError("Not an archive", 400))
        jobs = _orchestrator(api, ArchiveExtractFamily(), sessions, invalidator, events, slow_config, clock)

        job = await jobs.start("notes.txt")

        assert job.state is JobState.FAILED
        assert job.failed_reason == "Not an archive"
        api.job_status.assert_not_called()
        await jobs.close()

    @pytest.mark.asyncio
    async def test_missing_job_id_records_failed(self, api, sessions, invalidator, events, slow_config, clock):
        api.start_job = AsyncMock(return_value=JobStart(job_id=None))
        jobs = _orchestrator(api, ZipExtractFamily(), sessions, invalidator, events, slow_config, clock)

        job = await jobs.start("x.zip")

        assert job.state is JobState.FAILED
        await jobs.close()

    @pytest.mark.asyncio
    async def test_poll_error_keeps_record(self, api, sessions, invalidator, events, slow_config, clock):
        jobs = _orchestrator(api, ZipExtractFamily(), sessions, invalidator, events, slow_config, clock)
        await jobs.start("x.zip")
        api.job_status = AsyncMock(side_effect=ApiError("Bad gateway", 502))

        job = await jobs.poll("x.zip")

        assert job.state is JobState.ACTIVE
        await jobs.close()


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_marks_cancelled(self, api, sessions, invalidator, events, slow_config, clock):
        jobs = _orchestrator(api, ArchiveExtractFamily(), sessions, invalidator, events, slow_config, clock)
        await jobs.start("x.zip")

        assert await jobs.cancel("x.zip") is True

        api.cancel_job.assert_awaited_once_with(JobKind.ARCHIVE_EXTRACT, "job-1")
        job = await jobs.wait("x.zip")
        assert job.state is JobState.CANCELLED
        assert await jobs.cancel("x.zip") is False
        await jobs.close()

    @pytest.mark.asyncio
    async def test_rejected_cancel_leaves_job_running(self, api, sessions, invalidator, events, slow_config, clock):
        api.cancel_job = AsyncMock(side_effect=ApiError("Job already finished", 409))
        jobs = _orchestrator(api, ArchiveExtractFamily(), sessions, invalidator, events, slow_config, clock)
        await jobs.start("x.zip")

        assert await jobs.cancel("x.zip") is False
        assert jobs.get("x.zip").state is JobState.ACTIVE
        await jobs.close()

    @pytest.mark.asyncio
    async def test_completion_during_cancel_is_kept(self, api, sessions, invalidator, events, slow_config, clock):
        release = asyncio.Event()
        cancel_sent = asyncio.Event()

        async def slow_cancel(*args, **kwargs):
            cancel_sent.set()
            await release.wait()

        api.cancel_job = AsyncMock(side_effect=slow_cancel)
        jobs = _orchestrator(api, ArchiveExtractFamily(), sessions, invalidator, events, slow_config, clock)
        await jobs.start("x.zip")

        cancelling = asyncio.create_task(jobs.cancel("x.zip"))
        await cancel_sent.wait()
        api.job_status = AsyncMock(return_value=JobStatus(state=JobState.COMPLETED))
        await jobs.poll("x.zip")
        release.set()

        assert await cancelling is False
        assert jobs.get("x.zip").state is JobState.COMPLETED
        assert (await jobs.wait("x.zip")).state is JobState.COMPLETED
        await jobs.close()

    @pytest.mark.asyncio
    async def test_terminal_state_is_not_overwritten(self, api, sessions, invalidator, events, slow_config, clock):
        api.job_status = AsyncMock(return_value=JobStatus(state=JobState.FAILED, failed_reason="corrupt"))
        jobs = _orchestrator(api, ArchiveExtractFamily(), sessions, invalidator, events, slow_config, clock)
        await jobs.start("x.zip")

        job = await jobs._settle("x.zip", JobState.CANCELLED)

        assert job.state is JobState.FAILED
        assert jobs.get("x.zip").failed_reason == "corrupt"
        await jobs.close()


class TestFamilies:
    @pytest.mark.asyncio
    async def test_encrypted_source_uses_folder_session(self, api, sessions, invalidator, events, slow_config, clock):
        await sessions.unlock_folder("Vault", "secret123")
        jobs = _orchestrator(api, ZipExtractFamily(), sessions, invalidator, events, slow_config, clock)

        await jobs.start("Vault/x.zip")

        assert api.start_job.await_args.kwargs["session_token"] == "tok-Vault"
        assert api.job_status.await_args.kwargs["session_token"] == "tok-Vault"
        await jobs.close()

    @pytest.mark.asyncio
    async def test_archive_create_keys_and_body(self, api, sessions, invalidator, events, slow_config, clock):
        api.start_job = AsyncMock(return_value=JobStart(job_id="j", format="zip", output_key="a/bundle.zip"))
        api.job_status = _statuses(JobStatus(state=JobState.COMPLETED))
        invalidations = []
        events.on(INVALIDATE, invalidations.append)
        jobs = _orchestrator(api, ArchiveCreateFamily(), sessions, invalidator, events, slow_config, clock)

        job = await jobs.start(["a/1.txt", "a/2.txt"], {"format": "zip", "output_name": "bundle"})

        assert job.key == "a/1.txt,a/2.txt"
        assert job.output_key == "a/bundle.zip"
        args, _ = api.start_job.await_args
        assert args == (
            JobKind.ARCHIVE_CREATE,
            {"Keys": ["a/1.txt", "a/2.txt"], "Format": "zip", "OutputName": "bundle"},
        )
        assert {i.path for i in invalidations} == {"a"}
        await jobs.close()

    def test_extract_body_omits_empty_selection(self):
        assert ArchiveExtractFamily().start_body("x.zip", {}) == {"Key": "x.zip"}
