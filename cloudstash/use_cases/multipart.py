"""Use cases for chunked (multipart) uploads."""
from __future__ import annotations

import base64
import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from cloudstash.errors import ApiError, CloudStashError
from cloudstash.models import ExplorerConfig, MultipartUpload, UploadSource
from cloudstash.protocols import IMultipartApi
from cloudstash.utils.cancellation import CancellationToken

logger = logging.getLogger(__name__)

# Shown until Complete succeeds
MAX_PENDING_PERCENT = 99


@dataclass(frozen=True)
class PartPlan:
    part_number: int
    offset: int
    size: int


def plan_parts(total_size: int, chunk_size: int) -> List[PartPlan]:
    """Split `total_size` bytes into parts of `chunk_size`; always at least one part."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if total_size <= 0:
        return [PartPlan(part_number=1, offset=0, size=0)]
    return [
        PartPlan(part_number=index + 1, offset=offset, size=min(chunk_size, total_size - offset))
        for index, offset in enumerate(range(0, total_size, chunk_size))
    ]


def content_md5(data: bytes) -> str:
    """Base64 MD5 digest for the Content-MD5 header."""
    return base64.b64encode(hashlib.md5(data).digest()).decode("ascii")


class PartProgress:
    """
    Byte accounting across sequential parts.

    Attributed bytes = completed parts + bytes reported for the part in
    flight, never more than the total.
    """

    def __init__(self, total_size: int):
        self.total_size = total_size
        self._completed = 0
        self._in_flight = 0
        self._current_size = 0

    def begin_part(self, size: int) -> None:
        self._current_size = size
        self._in_flight = 0

    def update(self, sent: int) -> None:
        # A retried part restarts its byte count; keep the high-water mark
        self._in_flight = max(self._in_flight, min(sent, self._current_size))

    def finish_part(self) -> None:
        self._completed += self._current_size
        self._current_size = 0
        self._in_flight = 0

    @property
    def completed_bytes(self) -> int:
        return self._completed

    @property
    def attributed_bytes(self) -> int:
        return min(self.total_size, self._completed + self._in_flight)

    @property
    def fraction(self) -> float:
        if self.total_size <= 0:
            return 0.0
        return self.attributed_bytes / self.total_size

    @property
    def percent(self) -> float:
        """Display percent; 100 is reserved for the completed upload."""
        return min(float(MAX_PENDING_PERCENT), self.fraction * 100)


class UploadPartsUseCase:
    """Upload every part of a source, one at a time."""

    def __init__(self, api: IMultipartApi, config: Optional[ExplorerConfig] = None):
        self._api = api
        self._config = config or ExplorerConfig()

    async def execute(
        self,
        source: UploadSource,
        multipart: MultipartUpload,
        cancellation: CancellationToken,
        session_token: Optional[str] = None,
        on_progress: Optional[Callable[[PartProgress], None]] = None,
    ) -> List[Dict[str, Any]]:
        """Return `[{"part_number", "etag"}]` for Complete."""
        progress = PartProgress(source.size)
        parts: List[Dict[str, Any]] = []

        def report(sent: int) -> None:
            progress.update(sent)
            if on_progress:
                on_progress(progress)

        for plan in plan_parts(source.size, self._config.chunk_size):
            cancellation.raise_if_cancelled()
            data = await source.read(plan.offset, plan.size)
            if len(data) != plan.size:
                raise CloudStashError(
                    f"Read {len(data)} of {plan.size} bytes for part {plan.part_number} of {source.name}"
                )

            progress.begin_part(plan.size)
            etag = await self._api.upload_part(
                multipart.key,
                multipart.upload_id,
                plan.part_number,
                data,
                content_md5(data),
                session_token=session_token,
                on_progress=report,
            )
            if not etag:
                raise ApiError(f"Part {plan.part_number} of {source.name} was stored without an ETag")

            progress.finish_part()
            if on_progress:
                on_progress(progress)
            parts.append({"part_number": plan.part_number, "etag": etag})
            logger.debug(f"Uploaded part {plan.part_number} of {source.name} ({plan.size} bytes)")

        cancellation.raise_if_cancelled()
        return parts
