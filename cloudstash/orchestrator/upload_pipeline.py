"""Chunked upload pipeline: one task per file, parts in sequence."""
import asyncio
import logging
import uuid
from typing import Callable, Dict, List, Optional, Sequence

from ..errors import ApiError, CancelledOperation, describe_exception
from ..models import (
    Blocked,
    ExplorerConfig,
    MultipartUpload,
    Outcome,
    Proceeded,
    UploadItem,
    UploadSource,
    UploadStatus,
)
from ..protocols import IMultipartApi, QuotaCheck
from ..services.cache import CacheInvalidator
from ..services.session_store import SessionStore
from ..use_cases.multipart import PartProgress, UploadPartsUseCase
from ..utils.cancellation import CancellationToken
from ..utils.events import UPLOAD_FINISHED, UPLOAD_PROGRESS, EventEmitter
from ..utils.idempotency import create_idempotency_key
from ..utils.paths import folder_name, join_key, normalize_folder_path
from .job_status import human_size

logger = logging.getLogger(__name__)


class UploadPipeline:
    """
    Uploads files through create -> parts -> complete.

    Each file gets its own task and cancellation token; parts within a file
    are uploaded one after another.

    Usage:
        pipeline = UploadPipeline(api, sessions, invalidator, events)
        pipeline.on_progress(lambda item: print(item.name, item.progress))
        outcome = await pipeline.start_uploads([UploadSource.from_path(p)], "Docs")
        await pipeline.wait()
    """

    def __init__(
        self,
        api: IMultipartApi,
        sessions: SessionStore,
        invalidator: CacheInvalidator,
        events: Optional[EventEmitter] = None,
        config: Optional[ExplorerConfig] = None,
        upload_parts: Optional[UploadPartsUseCase] = None,
    ):
        self._api = api
        self._sessions = sessions
        self._invalidator = invalidator
        self._events = events or EventEmitter()
        self._config = config or ExplorerConfig()
        self._upload_parts = upload_parts or UploadPartsUseCase(api, self._config)

        self._items: Dict[str, UploadItem] = {}
        self._order: List[str] = []  # newest first
        self._tasks: Dict[str, asyncio.Task] = {}
        self._tokens: Dict[str, CancellationToken] = {}

    # Event subscription methods
    def on_progress(self, callback: Callable[[UploadItem], None]):
        """Called when an item's progress advances. Receives an UploadItem snapshot."""
        self._events.on(UPLOAD_PROGRESS, callback)

    def on_finished(self, callback: Callable[[UploadItem], None]):
        """Called once per item when it reaches a terminal status."""
        self._events.on(UPLOAD_FINISHED, callback)

    @property
    def uploads(self) -> List[UploadItem]:
        """Snapshots of every tracked item, newest first."""
        return [self._items[item_id].snapshot() for item_id in self._order]

    def get(self, upload_id: str) -> Optional[UploadItem]:
        item = self._items.get(upload_id)
        return item.snapshot() if item else None

    @property
    def active_count(self) -> int:
        return sum(1 for item in self._items.values() if not item.status.is_terminal)

    async def start_uploads(
        self,
        sources: Sequence[UploadSource],
        dest_path: Optional[str],
        quota_check: Optional[QuotaCheck] = None,
    ) -> Outcome:
        """
        Start one upload per source into `dest_path`.

        Returns Blocked if the destination is a locked encrypted folder,
        otherwise Proceeded with the created items.
        """
        dest = normalize_folder_path(dest_path)
        if self._sessions.is_folder_encrypted(dest) and not self._sessions.is_folder_unlocked(dest):
            boundary = self._sessions.encrypted_ancestor(dest) or dest
            return Blocked(
                path=boundary,
                label=folder_name(boundary),
                resume=lambda: self.start_uploads(sources, dest, quota_check),
            )

        started: List[UploadItem] = []
        for source in sources:
            item = UploadItem(
                id=uuid.uuid4().hex,
                name=source.name,
                key=join_key(dest, source.name),
                total_size=source.size,
            )
            self._items[item.id] = item
            self._order.insert(0, item.id)

            rejection = await self._check_size(source, quota_check)
            if rejection:
                logger.warning(f"Rejected upload of {source.name}: {rejection}")
                self._finish(item, UploadStatus.FAILED, rejection)
                started.append(item.snapshot())
                continue

            token = CancellationToken()
            self._tokens[item.id] = token
            task = asyncio.get_running_loop().create_task(self._run(item, source, dest, token))
            self._tasks[item.id] = task
            task.add_done_callback(lambda done, item_id=item.id: self._task_done(item_id, done))
            started.append(item.snapshot())

        return Proceeded(started)

    async def _check_size(self, source: UploadSource, quota_check: Optional[QuotaCheck]) -> Optional[str]:
        limit = self._config.max_upload_size
        if limit is not None and source.size > limit:
            return f"File is larger than the {human_size(limit)} upload limit"
        if quota_check is None:
            return None
        try:
            allowed = await quota_check(source.size)
        except Exception as e:
            logger.error(f"Quota check failed for {source.name}: {e}", exc_info=True)
            return f"Quota check failed: {describe_exception(e)}"
        if not allowed:
            return "Not enough storage space"
        return None

    async def _run(
        self,
        item: UploadItem,
        source: UploadSource,
        dest: str,
        cancellation: CancellationToken,
    ) -> None:
        session_token = self._sessions.get_session_token(dest)
        multipart: Optional[MultipartUpload] = None
        try:
            cancellation.raise_if_cancelled()
            multipart = await self._api.create_multipart(
                item.key, source.content_type, source.size, session_token=session_token
            )
            item.upload_id = multipart.upload_id
            item.key = multipart.key
            logger.info(f"Uploading {item.name} to {multipart.key} ({human_size(source.size)})")

            parts = await self._upload_parts.execute(
                source,
                multipart,
                cancellation,
                session_token=session_token,
                on_progress=lambda progress: self._report(item, progress),
            )
            await self._api.complete_multipart(
                multipart.key,
                multipart.upload_id,
                parts,
                idempotency_key=create_idempotency_key(),
                session_token=session_token,
            )
        except (CancelledOperation, asyncio.CancelledError):
            logger.info(f"Upload of {item.name} cancelled")
            await self._abort(item, multipart, session_token)
            self._finish(item, UploadStatus.CANCELLED, cancellation.reason or "Upload cancelled")
            return
        except Exception as e:
            logger.error(f"Upload of {item.name} failed: {e}", exc_info=not isinstance(e, ApiError))
            await self._abort(item, multipart, session_token)
            self._finish(item, UploadStatus.FAILED, describe_exception(e))
            return

        self._finish(item, UploadStatus.COMPLETED)
        logger.info(f"Upload completed: {item.key}")
        await self._invalidator.invalidate(dest, objects=True)
        await self._invalidator.invalidate_usage()

    def _report(self, item: UploadItem, progress: PartProgress) -> None:
        if item.status.is_terminal:
            return
        if item.advance(progress.percent):
            self._events.emit_nowait(UPLOAD_PROGRESS, item.snapshot())

    async def _abort(
        self,
        item: UploadItem,
        multipart: Optional[MultipartUpload],
        session_token: Optional[str],
    ) -> None:
        """Best-effort abort; failures are logged and dropped."""
        if multipart is None:
            return
        try:
            await self._api.abort_multipart(multipart.key, multipart.upload_id, session_token=session_token)
            logger.debug(f"Aborted multipart upload {multipart.upload_id} for {item.name}")
        except Exception as e:
            logger.warning(f"Abort of {item.name} failed: {describe_exception(e)}")

    def _finish(self, item: UploadItem, status: UploadStatus, error: Optional[str] = None) -> None:
        if item.status.is_terminal:
            return
        if status is UploadStatus.COMPLETED:
            item.progress = 100
        item.status = status
        item.error = error
        # Queued behind any progress events already scheduled for this item
        self._events.emit_nowait(UPLOAD_FINISHED, item.snapshot())

    def _task_done(self, item_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(item_id, None)
        self._tokens.pop(item_id, None)
        item = self._items.get(item_id)
        if item is None or item.status.is_terminal:
            return
        # Cancelled before the task got to run
        item.status = UploadStatus.CANCELLED if task.cancelled() else UploadStatus.FAILED
        item.error = item.error or ("Upload cancelled" if task.cancelled() else "Upload stopped unexpectedly")
        self._events.emit_nowait(UPLOAD_FINISHED, item.snapshot())

    def cancel(self, upload_id: str) -> bool:
        """Cancel an in-flight upload. Returns False if it already finished."""
        item = self._items.get(upload_id)
        if item is None or item.status.is_terminal:
            return False
        token = self._tokens.get(upload_id)
        if token is not None:
            if token.cancelled:
                return False
            token.cancel("Upload cancelled by user")
        task = self._tasks.get(upload_id)
        if task is not None and not task.done():
            task.cancel()
        logger.debug(f"Cancelling upload {item.name}")
        return True

    def cancel_all(self) -> int:
        return sum(1 for item_id in list(self._order) if self.cancel(item_id))

    def dismiss(self, upload_id: str) -> bool:
        """Forget a finished item. In-flight items cannot be dismissed."""
        item = self._items.get(upload_id)
        if item is None or not item.status.is_terminal:
            return False
        del self._items[upload_id]
        self._order.remove(upload_id)
        return True

    async def wait(self) -> List[UploadItem]:
        """Wait for every running upload, then return all snapshots."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)
        await self._events.drain()
        return self.uploads

    async def close(self) -> None:
        self.cancel_all()
        await self.wait()
