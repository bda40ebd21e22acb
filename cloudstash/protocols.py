"""
Protocols (Interfaces) for Dependency Inversion.

Small, focused interfaces: the core depends on these, tests substitute mocks.
"""
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from .models import (
    ArchiveEntry,
    DeleteTarget,
    FolderListing,
    JobKind,
    JobStart,
    JobStatus,
    MultipartUpload,
    StorageUsage,
    UnlockResult,
)


@runtime_checkable
class ISessionApi(Protocol):
    """Interface for folder unlock."""

    async def unlock(self, path: str, passphrase: str) -> UnlockResult:
        """Exchange a passphrase for a folder session."""
        ...


@runtime_checkable
class IMultipartApi(Protocol):
    """Interface for chunked uploads."""

    async def create_multipart(
        self, key: str, content_type: Optional[str], total_size: int, session_token: Optional[str] = None
    ) -> MultipartUpload:
        ...

    async def upload_part(
        self,
        key: str,
        upload_id: str,
        part_number: int,
        data: bytes,
        content_md5: str,
        session_token: Optional[str] = None,
        on_progress: Optional[Callable[[int], None]] = None,
    ) -> Optional[str]:
        """Upload one part, return its ETag."""
        ...

    async def complete_multipart(
        self,
        key: str,
        upload_id: str,
        parts: Sequence[Dict[str, Any]],
        idempotency_key: str,
        session_token: Optional[str] = None,
    ) -> None:
        ...

    async def abort_multipart(self, key: str, upload_id: str, session_token: Optional[str] = None) -> None:
        ...


@runtime_checkable
class IJobApi(Protocol):
    """Interface for the start/status/cancel job families."""

    async def start_job(self, kind: JobKind, body: Dict[str, Any], session_token: Optional[str] = None) -> JobStart:
        ...

    async def job_status(self, kind: JobKind, job_id: str, session_token: Optional[str] = None) -> JobStatus:
        ...

    async def cancel_job(self, kind: JobKind, job_id: str) -> None:
        ...


@runtime_checkable
class ICloudApi(ISessionApi, IMultipartApi, IJobApi, Protocol):
    """Everything the explorer session needs from the remote API."""

    async def list(self, path: str, session_token: Optional[str] = None) -> FolderListing:
        ...

    async def storage_usage(self) -> StorageUsage:
        ...

    async def archive_preview(self, key: str, session_token: Optional[str] = None) -> List[ArchiveEntry]:
        ...

    async def move(
        self, source_keys: Sequence[str], destination_key: str, idempotency_key: str, session_token: Optional[str] = None
    ) -> None:
        ...

    async def delete(
        self, items: Sequence[DeleteTarget], idempotency_key: str, session_token: Optional[str] = None
    ) -> None:
        ...

    async def create_directory(
        self, path: str, passphrase: Optional[str] = None, session_token: Optional[str] = None
    ) -> None:
        ...

    async def rename_directory(
        self, path: str, new_name: str, passphrase: Optional[str] = None, session_token: Optional[str] = None
    ) -> None:
        ...

    async def delete_directory(
        self, path: str, passphrase: Optional[str] = None, session_token: Optional[str] = None
    ) -> None:
        ...

    async def convert_directory(self, path: str, passphrase: str, session_token: Optional[str] = None) -> None:
        ...


# (path, label, error) -> passphrase, or None when the user cancels
PassphraseProvider = Callable[[str, str, Optional[str]], Awaitable[Optional[str]]]

# size -> whether the quota allows it
QuotaCheck = Callable[[int], Awaitable[bool]]
