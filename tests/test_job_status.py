"""Tests for job percentages and status text."""
from cloudstash.models import Job, JobKind, JobProgress, JobState
from cloudstash.orchestrator.job_status import (
    can_cancel_job,
    can_start_job,
    describe_job,
    human_size,
    job_percent,
)


def _job(kind=JobKind.ARCHIVE_EXTRACT, state=JobState.ACTIVE, job_id="j", **progress):
    return Job(key="x.zip", kind=kind, state=state, job_id=job_id, progress=JobProgress(**progress))


def test_human_size():
    assert human_size(0) == "0 B"
    assert human_size(None) == "0 B"
    assert human_size(1536) == "1.5 KB"
    assert human_size(5 * 1024 * 1024) == "5.0 MB"


class TestJobPercent:
    def test_pending_is_indeterminate(self):
        assert job_percent(_job(state=JobState.WAITING, entries_processed=1, total_entries=2)) is None
        assert job_percent(_job(state=JobState.STARTING)) is None

    def test_extraction_prefers_entries(self):
        job = _job(entries_processed=10, total_entries=50, bytes_read=90, total_bytes=100)
        assert job_percent(job) == 20

    def test_extraction_stays_below_100_until_completed(self):
        assert job_percent(_job(entries_processed=50, total_entries=50)) == 99
        assert job_percent(_job(state=JobState.COMPLETED)) == 100

    def test_extraction_falls_back_to_bytes(self):
        assert job_percent(_job(bytes_read=25, total_bytes=100)) == 25
        assert job_percent(_job(bytes_read=100, total_bytes=100)) is None

    def test_creation_prefers_bytes(self):
        job = _job(kind=JobKind.ARCHIVE_CREATE, bytes_processed=75, total_bytes=100, entries_processed=1, total_entries=4)
        assert job_percent(job) == 75

    def test_failed_has_no_percent(self):
        assert job_percent(_job(state=JobState.FAILED)) is None


class TestDescribeJob:
    def test_active_extraction(self):
        job = _job(entries_processed=3, total_entries=10, current_entry="a.txt")
        assert describe_job(job) == "Extracting archive 3 / 10 files - a.txt"

    def test_failed_uses_server_reason(self):
        failed = Job(key="x.zip", kind=JobKind.ZIP_EXTRACT, state=JobState.FAILED, failed_reason="Corrupt archive")
        assert describe_job(failed) == "Corrupt archive"
        assert describe_job(_job(state=JobState.FAILED)) == "Extraction failed"

    def test_creation_states(self):
        assert describe_job(_job(kind=JobKind.ARCHIVE_CREATE, state=JobState.WAITING)) == "Creating archive..."
        assert describe_job(_job(kind=JobKind.ARCHIVE_CREATE, state=JobState.COMPLETED)) == "Archive created"
        assert describe_job(_job(kind=JobKind.ARCHIVE_CREATE, state=JobState.CANCELLED)) == "Archive creation cancelled"


class TestGuards:
    def test_can_start_job(self):
        assert can_start_job("x.zip", None)
        assert can_start_job("x.tar.gz", None)
        assert not can_start_job("x.txt", None)
        assert not can_start_job("x.zip", _job(state=JobState.ACTIVE))
        assert can_start_job("x.zip", _job(state=JobState.FAILED))
        assert not can_start_job("x.rar", None, JobKind.ZIP_EXTRACT)

    def test_can_cancel_job(self):
        assert can_cancel_job(_job(state=JobState.ACTIVE))
        assert can_cancel_job(_job(state=JobState.DELAYED))
        assert not can_cancel_job(_job(state=JobState.STARTING))
        assert not can_cancel_job(_job(state=JobState.ACTIVE, job_id=None))
        assert not can_cancel_job(None)
