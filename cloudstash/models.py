"""
Models for cloudstash.

Wire records and job snapshots are immutable dataclasses; records that a
single owner mutates in place (upload items, selection) are plain classes.
"""
import asyncio
import math
import mimetypes
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, Iterator, Optional, Set, Tuple, Union

MiB = 1024 * 1024


@dataclass(frozen=True)
class ExplorerConfig:
    """Immutable configuration for an explorer session."""
    chunk_size: int = 5 * MiB
    poll_interval: float = 1.5
    job_cleanup_delay: float = 10.0
    session_sweep_interval: float = 30.0
    default_session_ttl: float = 900.0  # used when the server omits ExpiresAt
    request_timeout: float = 60.0
    max_retries: int = 4
    retry_base_delay: float = 0.5
    retry_max_delay: float = 5.0
    max_upload_size: Optional[int] = None


# ---------------------------------------------------------------------------
# Encryption sessions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FolderSession:
    """Decryption session for one canonical encrypted folder."""
    path: str
    token: str
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now


@dataclass(frozen=True)
class UnlockResult:
    token: str
    expires_at: Optional[float] = None
    encrypted_path: Optional[str] = None


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DirectoryEntry:
    prefix: str
    name: str
    is_encrypted: bool = False


@dataclass(frozen=True)
class ObjectEntry:
    key: str
    name: str
    size: int = 0
    content_type: Optional[str] = None
    original_name: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.original_name or self.name


@dataclass(frozen=True)
class FolderListing:
    path: str
    directories: Tuple[DirectoryEntry, ...] = ()
    objects: Tuple[ObjectEntry, ...] = ()


@dataclass(frozen=True)
class StorageUsage:
    used_bytes: int = 0
    total_bytes: Optional[int] = None


@dataclass(frozen=True)
class ArchiveEntry:
    """One entry of an archive, as listed by the preview call."""
    name: str
    size: Optional[int] = None
    is_directory: bool = False


@dataclass(frozen=True)
class DeleteTarget:
    """An item picked for deletion. `is_encrypted` comes from the listing."""
    key: str
    is_directory: bool = False
    is_encrypted: bool = False


# ---------------------------------------------------------------------------
# Uploads
# ---------------------------------------------------------------------------

class UploadStatus(Enum):
    """Upload item status."""
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not UploadStatus.UPLOADING


@dataclass
class UploadItem:
    """Progress record for one file upload."""
    id: str
    name: str
    key: str
    total_size: int
    progress: int = 0
    status: UploadStatus = UploadStatus.UPLOADING
    error: Optional[str] = None
    upload_id: Optional[str] = None

    def advance(self, percent: float) -> bool:
        """Raise progress to `percent` (rounded, clamped). Never lowers it."""
        value = max(0, min(100, int(math.floor(percent + 0.5))))
        if value <= self.progress:
            return False
        self.progress = value
        return True

    def snapshot(self) -> "UploadItem":
        return replace(self)


@dataclass(frozen=True)
class MultipartUpload:
    upload_id: str
    key: str


def _read_range(path: Path, offset: int, length: int) -> bytes:
    with open(path, "rb") as fh:
        fh.seek(offset)
        return fh.read(length)


@dataclass(frozen=True)
class UploadSource:
    """A file to upload, backed by a local path or by bytes in memory."""
    name: str
    size: int
    content_type: Optional[str] = None
    path: Optional[Path] = None
    data: Optional[bytes] = None

    @classmethod
    def from_path(cls, path: Union[str, Path], name: Optional[str] = None) -> "UploadSource":
        path = Path(path)
        content_type, _ = mimetypes.guess_type(path.name)
        return cls(
            name=name or path.name,
            size=path.stat().st_size,
            content_type=content_type,
            path=path,
        )

    @classmethod
    def from_bytes(cls, name: str, data: bytes, content_type: Optional[str] = None) -> "UploadSource":
        return cls(name=name, size=len(data), content_type=content_type, data=data)

    async def read(self, offset: int, length: int) -> bytes:
        if self.data is not None:
            return self.data[offset:offset + length]
        if self.path is None:
            raise ValueError(f"Upload source {self.name} has no content")
        # File reads run in a worker thread to keep the event loop free
        return await asyncio.to_thread(_read_range, self.path, offset, length)


# ---------------------------------------------------------------------------
# Background jobs
# ---------------------------------------------------------------------------

class JobKind(Enum):
    ZIP_EXTRACT = "zip_extract"
    ARCHIVE_EXTRACT = "archive_extract"
    ARCHIVE_CREATE = "archive_create"

    @property
    def is_extraction(self) -> bool:
        return self is not JobKind.ARCHIVE_CREATE


class JobState(Enum):
    """Server-side job state, plus the local optimistic `starting`."""
    STARTING = "starting"
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, value: Any) -> Optional["JobState"]:
        if isinstance(value, JobState):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED)

    @property
    def rank(self) -> int:
        return _STATE_RANK[self]

    def can_transition(self, new: "JobState") -> bool:
        """starting -> waiting -> active <-> delayed -> terminal; terminal is final."""
        if self.is_terminal:
            return False
        return new.rank >= self.rank


_STATE_RANK = {
    JobState.STARTING: 0,
    JobState.WAITING: 1,
    JobState.ACTIVE: 2,
    JobState.DELAYED: 2,
    JobState.COMPLETED: 3,
    JobState.FAILED: 3,
    JobState.CANCELLED: 3,
}

# Status payloads arrive in PascalCase or camelCase depending on the job family
_PROGRESS_ALIASES = {
    "phase": ("Phase", "phase"),
    "entries_processed": ("EntriesProcessed", "entriesProcessed"),
    "total_entries": ("TotalEntries", "totalEntries"),
    "bytes_read": ("BytesRead", "bytesRead"),
    "bytes_processed": ("BytesProcessed", "bytesProcessed"),
    "total_bytes": ("TotalBytes", "totalBytes"),
    "current_entry": ("CurrentEntry", "currentEntry"),
}


@dataclass(frozen=True)
class JobProgress:
    """
    Progress reported by a job's status call.

    Every field is optional: a status response may report only some of them
    (e.g. the total entry count once, up front). Use `merge` to fold a new
    report into the stored one.
    """
    phase: Optional[str] = None
    entries_processed: Optional[int] = None
    total_entries: Optional[int] = None
    bytes_read: Optional[int] = None
    bytes_processed: Optional[int] = None
    total_bytes: Optional[int] = None
    current_entry: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Optional[Dict[str, Any]]) -> "JobProgress":
        if not payload:
            return cls()
        values = {}
        for name, aliases in _PROGRESS_ALIASES.items():
            for alias in aliases:
                if payload.get(alias) is not None:
                    values[name] = payload[alias]
                    break
        return cls(**values)

    def merge(self, update: Optional["JobProgress"]) -> "JobProgress":
        """Fields set in `update` win; fields it leaves as None are retained."""
        if update is None:
            return self
        changes = {
            f.name: getattr(update, f.name)
            for f in fields(self)
            if getattr(update, f.name) is not None
        }
        return replace(self, **changes) if changes else self

    def as_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}


@dataclass(frozen=True)
class JobStart:
    job_id: Optional[str]
    format: Optional[str] = None
    output_key: Optional[str] = None


@dataclass(frozen=True)
class JobStatus:
    state: Optional[JobState]
    progress: Optional[JobProgress] = None
    output_path: Optional[str] = None
    failed_reason: Optional[str] = None
    format: Optional[str] = None
    archive_size: Optional[int] = None


@dataclass(frozen=True)
class Job:
    """Snapshot of a tracked job. Replaced, never mutated."""
    key: str
    kind: JobKind
    state: JobState = JobState.STARTING
    job_id: Optional[str] = None
    progress: JobProgress = field(default_factory=JobProgress)
    output_path: Optional[str] = None
    output_key: Optional[str] = None
    format: Optional[str] = None
    archive_size: Optional[int] = None
    failed_reason: Optional[str] = None
    updated_at: float = 0.0

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def with_status(self, status: JobStatus, now: float) -> "Job":
        """Fold a status response into this snapshot."""
        state = self.state
        if status.state is not None and self.state.can_transition(status.state):
            state = status.state
        return replace(
            self,
            state=state,
            progress=self.progress.merge(status.progress),
            output_path=status.output_path or self.output_path,
            failed_reason=status.failed_reason or self.failed_reason,
            format=status.format or self.format,
            archive_size=status.archive_size if status.archive_size is not None else self.archive_size,
            updated_at=now,
        )


# ---------------------------------------------------------------------------
# Operation outcomes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Proceeded:
    """The operation ran. `value` carries its result, if any."""
    value: Any = None


@dataclass(frozen=True)
class Blocked:
    """
    The operation needs `path` unlocked first.

    Await `resume()` after a successful unlock to continue. `completed` lists
    keys the operation already applied before it got blocked.
    """
    path: str
    resume: Callable[[], Awaitable["Outcome"]]
    label: str = ""
    force: bool = False
    completed: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Failed:
    """The operation failed; the error was logged at the boundary."""
    error: str


Outcome = Union[Proceeded, Blocked, Failed]


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

class SelectionSet:
    """Item keys selected in the current folder."""

    def __init__(self, path: str = ""):
        self._path = path
        self._keys: Set[str] = set()

    @property
    def path(self) -> str:
        return self._path

    @property
    def keys(self) -> Set[str]:
        return set(self._keys)

    def navigate(self, path: str) -> None:
        """Entering another folder drops the selection."""
        if path != self._path:
            self._path = path
            self._keys = set()

    def select(self, key: str) -> None:
        self._keys = self._keys | {key}

    def discard(self, key: str) -> None:
        self._keys = self._keys - {key}

    def toggle(self, key: str) -> None:
        self._keys = self._keys ^ {key}

    def replace(self, keys: Iterable[str]) -> None:
        self._keys = set(keys)

    def clear(self) -> None:
        self._keys = set()

    def __contains__(self, key: object) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._keys))
