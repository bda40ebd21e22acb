"""HTTP adapter for the cloud storage API."""
from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence

import httpx

from ..errors import ApiError, AuthExpiredError
from ..models import (
    ArchiveEntry,
    DeleteTarget,
    DirectoryEntry,
    ExplorerConfig,
    FolderListing,
    JobKind,
    JobProgress,
    JobStart,
    JobState,
    JobStatus,
    MultipartUpload,
    ObjectEntry,
    StorageUsage,
    UnlockResult,
)
from ..utils.paths import folder_name, normalize_folder_path
from ..utils.retry import retry_with_backoff

logger = logging.getLogger(__name__)

SESSION_HEADER = "X-Folder-Session"
PASSPHRASE_HEADER = "X-Folder-Passphrase"
IDEMPOTENCY_HEADER = "Idempotency-Key"
CONTENT_MD5_HEADER = "Content-MD5"

# 403 message naming the encryption boundary that denied access
ENCRYPTED_FOLDER_PATTERN = re.compile(r'Folder "(.*?)" is encrypted')

STREAM_SLICE_SIZE = 64 * 1024

_JOB_ENDPOINTS = {
    JobKind.ZIP_EXTRACT: "/api/v1/jobs/zip-extract",
    JobKind.ARCHIVE_EXTRACT: "/api/v1/jobs/archive-extract",
    JobKind.ARCHIVE_CREATE: "/api/v1/jobs/archive-create",
}


def _field(payload: Any, *names: str) -> Any:
    """First non-None value among `names` (PascalCase and camelCase variants)."""
    if not isinstance(payload, dict):
        return None
    for name in names:
        value = payload.get(name)
        if value is not None:
            return value
    return None


def _parse_timestamp(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        # Millisecond epochs are common in JSON payloads
        return float(value) / 1000 if value > 1e12 else float(value)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable timestamp from API: {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    message = _field(payload, "message", "Message", "title", "error", "detail")
    if isinstance(message, str) and message:
        return message
    return response.text or f"HTTP {response.status_code}"


def error_from_response(response: httpx.Response) -> ApiError:
    """Map an error response to ApiError, or AuthExpiredError for encrypted folders."""
    message = _error_message(response)
    if response.status_code == 403:
        match = ENCRYPTED_FOLDER_PATTERN.search(message)
        if match:
            return AuthExpiredError(message, path=normalize_folder_path(match.group(1)))
        if "encrypted" in message.lower():
            return AuthExpiredError(message)
    return ApiError(message, status_code=response.status_code)


def is_rate_limit_error(exc: Exception) -> bool:
    """Only HTTP 429 is retried; the server has not applied a rate-limited request."""
    return isinstance(exc, ApiError) and exc.is_rate_limited


def _folder_headers(
    session_token: Optional[str] = None,
    passphrase: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> Dict[str, str]:
    headers = {}
    if session_token:
        headers[SESSION_HEADER] = session_token
    if passphrase:
        headers[PASSPHRASE_HEADER] = passphrase
    if idempotency_key:
        headers[IDEMPOTENCY_HEADER] = idempotency_key
    return headers


def _parse_listing(path: str, payload: Any) -> FolderListing:
    directories = []
    for entry in _field(payload, "Directories", "directories", "CommonPrefixes") or []:
        if isinstance(entry, str):
            prefix, encrypted = entry, False
        else:
            prefix = _field(entry, "Prefix", "prefix", "Path", "path") or ""
            encrypted = bool(_field(entry, "IsEncrypted", "isEncrypted"))
        prefix = normalize_folder_path(prefix)
        directories.append(DirectoryEntry(prefix=prefix, name=folder_name(prefix), is_encrypted=encrypted))

    objects = []
    for entry in _field(payload, "Contents", "contents", "Objects", "objects") or []:
        key = _field(entry, "Key", "key") or ""
        metadata = _field(entry, "Metadata", "metadata") or {}
        objects.append(ObjectEntry(
            key=key,
            name=key.rsplit("/", 1)[-1],
            size=int(_field(entry, "Size", "size") or 0),
            content_type=_field(entry, "ContentType", "contentType"),
            original_name=_field(metadata, "originalname", "OriginalName", "originalName"),
        ))
    return FolderListing(path=path, directories=tuple(directories), objects=tuple(objects))


def _parse_job_start(payload: Any) -> JobStart:
    job_id = _field(payload, "JobId", "jobId", "Id", "id")
    return JobStart(
        job_id=str(job_id) if job_id is not None else None,
        format=_field(payload, "Format", "format"),
        output_key=_field(payload, "ArchiveKey", "archiveKey", "OutputKey", "outputKey"),
    )


def _parse_job_status(payload: Any) -> JobStatus:
    progress = _field(payload, "Progress", "progress")
    archive_size = _field(payload, "ArchiveSize", "archiveSize")
    return JobStatus(
        state=JobState.parse(_field(payload, "State", "state", "Status", "status")),
        progress=JobProgress.from_payload(progress) if isinstance(progress, dict) else None,
        output_path=_field(
            payload, "ExtractedPath", "extractedPath", "OutputPath", "outputPath",
            "ArchiveKey", "archiveKey",
        ),
        failed_reason=_field(payload, "FailedReason", "failedReason"),
        format=_field(payload, "Format", "format"),
        archive_size=int(archive_size) if archive_size is not None else None,
    )


class CloudApiClient:
    """
    HTTP client adapter for the storage API.

    Implements ICloudApi protocol. Every call rides on the bearer token given
    at construction; folder-scoped calls add a session or passphrase header.
    """

    def __init__(
        self,
        base_url: str,
        access_token: Optional[str] = None,
        config: Optional[ExplorerConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url
        self._access_token = access_token
        self._config = config or ExplorerConfig()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        headers = {"Accept": "application/json"}
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._config.request_timeout,
            headers=headers,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        json: Optional[Dict] = None,
        params: Optional[Dict] = None,
        headers: Optional[Dict[str, str]] = None,
        content_factory: Optional[Callable[[], Any]] = None,
        retry: bool = False,
    ) -> httpx.Response:
        """
        Send one request. With `retry`, a 429 answer is retried with backoff;
        only the multipart calls opt in.
        """
        if not self._client:
            raise RuntimeError("CloudApiClient not initialized. Use 'async with' context.")
        client = self._client

        async def attempt() -> httpx.Response:
            content = content_factory() if content_factory else None
            response = await client.request(
                method, endpoint, json=json, params=params, headers=headers, content=content,
            )
            if response.status_code >= 400:
                raise error_from_response(response)
            return response

        if not retry:
            return await attempt()
        return await retry_with_backoff(
            attempt,
            is_retryable=is_rate_limit_error,
            max_attempts=self._config.max_retries,
            base_delay=self._config.retry_base_delay,
            max_delay=self._config.retry_max_delay,
            description=f"{method} {endpoint}",
        )

    @staticmethod
    def _unwrap(response: httpx.Response) -> Any:
        """Unwrap the `result` envelope the API puts around payloads."""
        if not response.content:
            return None
        payload = response.json()
        if isinstance(payload, dict):
            for key in ("result", "Result"):
                if key in payload:
                    return payload[key]
        return payload

    async def _call(self, method: str, endpoint: str, **kwargs) -> Any:
        return self._unwrap(await self._request(method, endpoint, **kwargs))

    # ------------------------------------------------------------------
    # Sessions and listings
    # ------------------------------------------------------------------

    async def unlock(self, path: str, passphrase: str) -> UnlockResult:
        payload = await self._call(
            "POST", "/api/v1/folders/unlock",
            json={"Path": path},
            headers=_folder_headers(passphrase=passphrase),
        )
        token = _field(payload, "SessionToken", "sessionToken")
        if not token:
            raise ApiError("Unlock response did not include a session token")
        encrypted_path = _field(payload, "EncryptedFolderPath", "encryptedFolderPath")
        return UnlockResult(
            token=token,
            expires_at=_parse_timestamp(_field(payload, "ExpiresAt", "expiresAt")),
            encrypted_path=normalize_folder_path(encrypted_path) if encrypted_path else None,
        )

    async def list(self, path: str, session_token: Optional[str] = None) -> FolderListing:
        path = normalize_folder_path(path)
        payload = await self._call(
            "GET", "/api/v1/objects",
            params={"prefix": f"{path}/" if path else ""},
            headers=_folder_headers(session_token=session_token),
        )
        return _parse_listing(path, payload)

    async def storage_usage(self) -> StorageUsage:
        payload = await self._call("GET", "/api/v1/usage")
        total = _field(payload, "TotalBytes", "totalBytes", "Quota", "quota")
        return StorageUsage(
            used_bytes=int(_field(payload, "UsedBytes", "usedBytes") or 0),
            total_bytes=int(total) if total is not None else None,
        )

    # ------------------------------------------------------------------
    # Multipart upload
    # ------------------------------------------------------------------

    async def create_multipart(
        self,
        key: str,
        content_type: Optional[str],
        total_size: int,
        session_token: Optional[str] = None,
    ) -> MultipartUpload:
        payload = await self._call(
            "POST", "/api/v1/uploads",
            json={
                "Key": key,
                "ContentType": content_type or "application/octet-stream",
                "Size": total_size,
            },
            headers=_folder_headers(session_token=session_token),
            retry=True,
        )
        upload_id = _field(payload, "UploadId", "uploadId")
        if not upload_id:
            raise ApiError("Create multipart response did not include an upload id")
        return MultipartUpload(upload_id=upload_id, key=_field(payload, "Key", "key") or key)

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
        """
        Upload one part and return its ETag (None if the server sent none).

        `on_progress` receives the cumulative bytes sent for this part.
        """

        async def body() -> AsyncIterator[bytes]:
            sent = 0
            for offset in range(0, len(data), STREAM_SLICE_SIZE):
                chunk = data[offset:offset + STREAM_SLICE_SIZE]
                yield chunk
                sent += len(chunk)
                if on_progress:
                    on_progress(sent)

        headers = _folder_headers(session_token=session_token)
        headers[CONTENT_MD5_HEADER] = content_md5
        headers["Content-Length"] = str(len(data))
        headers["Content-Type"] = "application/octet-stream"
        response = await self._request(
            "PUT", f"/api/v1/uploads/{upload_id}/parts/{part_number}",
            params={"key": key},
            headers=headers,
            content_factory=body,
            retry=True,
        )
        etag = _field(self._unwrap(response), "ETag", "eTag", "etag") or response.headers.get("ETag")
        return etag.strip('"') if etag else None

    async def complete_multipart(
        self,
        key: str,
        upload_id: str,
        parts: Sequence[Dict[str, Any]],
        idempotency_key: str,
        session_token: Optional[str] = None,
    ) -> None:
        await self._call(
            "POST", f"/api/v1/uploads/{upload_id}/complete",
            json={
                "Key": key,
                "Parts": [{"PartNumber": p["part_number"], "ETag": p["etag"]} for p in parts],
            },
            headers=_folder_headers(session_token=session_token, idempotency_key=idempotency_key),
            retry=True,
        )

    async def abort_multipart(self, key: str, upload_id: str, session_token: Optional[str] = None) -> None:
        await self._call(
            "DELETE", f"/api/v1/uploads/{upload_id}",
            params={"key": key},
            headers=_folder_headers(session_token=session_token),
            retry=True,
        )

    # ------------------------------------------------------------------
    # Background jobs
    # ------------------------------------------------------------------

    async def start_job(
        self,
        kind: JobKind,
        body: Dict[str, Any],
        session_token: Optional[str] = None,
    ) -> JobStart:
        payload = await self._call(
            "POST", _JOB_ENDPOINTS[kind],
            json=body,
            headers=_folder_headers(session_token=session_token),
        )
        return _parse_job_start(payload)

    async def job_status(self, kind: JobKind, job_id: str, session_token: Optional[str] = None) -> JobStatus:
        payload = await self._call(
            "GET", f"{_JOB_ENDPOINTS[kind]}/{job_id}",
            headers=_folder_headers(session_token=session_token),
        )
        return _parse_job_status(payload)

    async def cancel_job(self, kind: JobKind, job_id: str) -> None:
        await self._call("POST", f"{_JOB_ENDPOINTS[kind]}/{job_id}/cancel")

    async def archive_preview(self, key: str, session_token: Optional[str] = None) -> List[ArchiveEntry]:
        payload = await self._call(
            "GET", "/api/v1/archives/preview",
            params={"key": key},
            headers=_folder_headers(session_token=session_token),
        )
        entries = _field(payload, "Entries", "entries") if isinstance(payload, dict) else payload
        result = []
        for entry in entries or []:
            size = _field(entry, "Size", "size")
            result.append(ArchiveEntry(
                name=_field(entry, "Name", "name", "Path", "path") or "",
                size=int(size) if size is not None else None,
                is_directory=bool(_field(entry, "IsDirectory", "isDirectory")),
            ))
        return result

    # ------------------------------------------------------------------
    # Move / delete / directories
    # ------------------------------------------------------------------

    async def move(
        self,
        source_keys: Sequence[str],
        destination_key: str,
        idempotency_key: str,
        session_token: Optional[str] = None,
    ) -> None:
        await self._call(
            "POST", "/api/v1/objects/move",
            # The API addresses the root as "/"
            json={"SourceKeys": list(source_keys), "DestinationKey": destination_key or "/"},
            headers=_folder_headers(session_token=session_token, idempotency_key=idempotency_key),
        )

    async def delete(
        self,
        items: Sequence[DeleteTarget],
        idempotency_key: str,
        session_token: Optional[str] = None,
    ) -> None:
        await self._call(
            "POST", "/api/v1/objects/delete",
            json={"Items": [{"Key": item.key, "IsDirectory": item.is_directory} for item in items]},
            headers=_folder_headers(session_token=session_token, idempotency_key=idempotency_key),
        )

    async def create_directory(
        self,
        path: str,
        passphrase: Optional[str] = None,
        session_token: Optional[str] = None,
    ) -> None:
        await self._call(
            "POST", "/api/v1/directories",
            json={"Path": path, "IsEncrypted": bool(passphrase)},
            headers=_folder_headers(session_token=session_token, passphrase=passphrase),
        )

    async def rename_directory(
        self,
        path: str,
        new_name: str,
        passphrase: Optional[str] = None,
        session_token: Optional[str] = None,
    ) -> None:
        await self._call(
            "POST", "/api/v1/directories/rename",
            json={"Path": path, "Name": new_name},
            headers=_folder_headers(session_token=session_token, passphrase=passphrase),
        )

    async def delete_directory(
        self,
        path: str,
        passphrase: Optional[str] = None,
        session_token: Optional[str] = None,
    ) -> None:
        await self._call(
            "POST", "/api/v1/directories/delete",
            json={"Path": path},
            headers=_folder_headers(session_token=session_token, passphrase=passphrase),
        )

    async def convert_directory(self, path: str, passphrase: str, session_token: Optional[str] = None) -> None:
        await self._call(
            "POST", "/api/v1/directories/encrypt",
            json={"Path": path},
            headers=_folder_headers(session_token=session_token, passphrase=passphrase),
        )
