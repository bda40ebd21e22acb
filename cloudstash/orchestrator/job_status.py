"""Human-readable status text and percentages for background jobs."""
import math
from typing import Optional

from ..models import Job, JobKind, JobState
from ..utils.paths import is_archive_name, is_zip_name

PENDING_STATES = {JobState.WAITING, JobState.DELAYED, JobState.STARTING}
CANCELLABLE_STATES = {JobState.ACTIVE, JobState.WAITING, JobState.DELAYED}

_SIZE_UNITS = ("B", "KB", "MB", "GB", "TB")


def human_size(num_bytes: Optional[int]) -> str:
    """1536 -> '1.5 KB'."""
    if not num_bytes or num_bytes <= 0:
        return "0 B"
    size = float(num_bytes)
    index = 0
    while size >= 1024 and index < len(_SIZE_UNITS) - 1:
        size /= 1024
        index += 1
    return f"{size:.1f} {_SIZE_UNITS[index]}"


def _round(value: float) -> int:
    return int(math.floor(value + 0.5))


def _ratio(done: Optional[int], total: Optional[int]) -> Optional[float]:
    if done is None or not total or total <= 0:
        return None
    return done / total


def job_percent(job: Job) -> Optional[int]:
    """
    Percent for a progress bar, or None when indeterminate.

    Extraction prefers entry counts (byte counters tend to hit 100% early) and
    stays below 100 until the job completes; archive creation prefers bytes.
    """
    if job.state in PENDING_STATES:
        return None
    if job.state is JobState.COMPLETED:
        return 100
    if job.state in (JobState.FAILED, JobState.CANCELLED):
        return None

    progress = job.progress
    if job.kind.is_extraction:
        ratio = _ratio(progress.entries_processed, progress.total_entries)
        if ratio is not None:
            return min(99, _round(ratio * 100))
        bytes_ratio = _ratio(progress.bytes_read, progress.total_bytes)
        if bytes_ratio is not None and bytes_ratio < 1:
            return min(99, _round(bytes_ratio * 100))
        return None

    for ratio in (
        _ratio(progress.bytes_processed, progress.total_bytes),
        _ratio(progress.entries_processed, progress.total_entries),
    ):
        if ratio is not None:
            return min(100, _round(ratio * 100))
    return None


def _describe_extraction(job: Job) -> str:
    progress = job.progress
    label = "Creating files" if progress.phase == "create" else "Extracting archive"
    entry = f" - {progress.current_entry}" if progress.current_entry else ""
    if progress.entries_processed is not None:
        total = f" / {progress.total_entries}" if progress.total_entries else ""
        return f"{label} {progress.entries_processed}{total} files{entry}"
    bytes_ratio = _ratio(progress.bytes_read, progress.total_bytes)
    if bytes_ratio is not None and bytes_ratio < 1:
        return f"{label} {human_size(progress.bytes_read)} / {human_size(progress.total_bytes)}{entry}"
    return f"{label}{entry}"


def _describe_creation(job: Job) -> str:
    progress = job.progress
    if _ratio(progress.bytes_processed, progress.total_bytes) is not None:
        return f"Creating archive {human_size(progress.bytes_processed)} / {human_size(progress.total_bytes)}"
    if progress.entries_processed is not None:
        total = f" / {progress.total_entries}" if progress.total_entries else ""
        return f"Creating archive {progress.entries_processed}{total}"
    return "Creating archive..."


def describe_job(job: Job) -> str:
    extraction = job.kind.is_extraction
    noun = "Extraction" if extraction else "Archive creation"
    if job.state in PENDING_STATES:
        return "Extraction pending" if extraction else "Creating archive..."
    if job.state is JobState.ACTIVE:
        return _describe_extraction(job) if extraction else _describe_creation(job)
    if job.state is JobState.COMPLETED:
        return "Extraction completed" if extraction else "Archive created"
    if job.state is JobState.FAILED:
        return job.failed_reason or f"{noun} failed"
    if job.state is JobState.CANCELLED:
        return f"{noun} cancelled"
    return f"{noun} status unknown"


def can_start_job(name: Optional[str], job: Optional[Job], kind: JobKind = JobKind.ARCHIVE_EXTRACT) -> bool:
    """An extraction may start for an archive that has no tracked job."""
    if job is not None and not job.is_terminal:
        return False
    if kind is JobKind.ZIP_EXTRACT:
        return is_zip_name(name)
    return is_archive_name(name)


def can_cancel_job(job: Optional[Job]) -> bool:
    return job is not None and job.job_id is not None and job.state in CANCELLABLE_STATES
