"""Core explorer session - owns every component for one login."""
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from ..models import (
    ArchiveEntry,
    DeleteTarget,
    ExplorerConfig,
    Job,
    JobKind,
    JobProgress,
    Outcome,
    SelectionSet,
    StorageUsage,
    UploadSource,
)
from ..protocols import ICloudApi, PassphraseProvider, QuotaCheck
from ..services.api_client import CloudApiClient
from ..services.cache import CacheInvalidator, ListingCache
from ..services.listing import ListingService
from ..services.session_store import SessionStore
from ..services.unlock import UnlockFlow
from ..use_cases.folders import ConvertFolderUseCase, CreateFolderUseCase, RenameFolderUseCase
from ..utils.events import EventEmitter
from ..utils.paths import normalize_folder_path, parent_path

from .jobs import ArchiveCreateFamily, ArchiveExtractFamily, JobOrchestrator, ZipExtractFamily
from .move_delete import MoveDeleteCoordinator
from .upload_pipeline import UploadPipeline

logger = logging.getLogger(__name__)


class ExplorerSession:
    """
    Explicit store for one browsing session.

    Created at login and torn down at logout: leaving the context cancels
    uploads, stops job polling and the expiry sweep, and forgets every
    folder session and passphrase.

    Usage:
        async with ExplorerSession(api_url, token, passphrase_provider=ask) as explorer:
            listing = (await explorer.run(lambda: explorer.list_folder("Docs"))).value
            await explorer.run(lambda: explorer.move_items(["a.txt"], "Team/Secrets"))
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        access_token: Optional[str] = None,
        config: Optional[ExplorerConfig] = None,
        passphrase_provider: Optional[PassphraseProvider] = None,
        api: Optional[ICloudApi] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the session with dependencies.

        Args:
            api_url: Storage API base URL (ignored when `api` is given)
            access_token: Bearer token for the API
            config: Timing and chunking configuration
            passphrase_provider: Async callback asking the user for a passphrase
            api: Pre-built API client, e.g. a mock in tests
        """
        if api is None and not api_url:
            raise ValueError("Either api_url or api must be provided")
        self._config = config or ExplorerConfig()
        self._api_client: Optional[CloudApiClient] = None
        if api is None:
            self._api_client = CloudApiClient(api_url, access_token, self._config)
            api = self._api_client
        self._api: ICloudApi = api

        self.events = EventEmitter()
        self.cache = ListingCache()
        self.invalidator = CacheInvalidator(self.cache, self.events)
        self.sessions = SessionStore(self._api, self.events, self._config, clock)
        self.selection = SelectionSet()
        self.unlock_flow: Optional[UnlockFlow] = (
            UnlockFlow(self.sessions, passphrase_provider) if passphrase_provider else None
        )

        self.listing = ListingService(self._api, self.sessions, self.cache)
        self.uploads = UploadPipeline(self._api, self.sessions, self.invalidator, self.events, self._config)
        self.move_delete = MoveDeleteCoordinator(self._api, self.sessions, self.invalidator, self.selection)
        self.jobs: Dict[JobKind, JobOrchestrator] = {
            family.kind: JobOrchestrator(
                self._api, family, self.sessions, self.invalidator, self.events, self._config, clock
            )
            for family in (ZipExtractFamily(), ArchiveExtractFamily(), ArchiveCreateFamily())
        }
        self._create_folder = CreateFolderUseCase(self._api, self.sessions, self.invalidator)
        self._rename_folder = RenameFolderUseCase(self._api, self.sessions, self.invalidator)
        self._convert_folder = ConvertFolderUseCase(self._api, self.sessions, self.invalidator)

        self._current_path = ""

    async def __aenter__(self):
        """Open the HTTP client and start the session expiry sweep."""
        if self._api_client:
            await self._api_client.__aenter__()
        self.sessions.start()
        logger.debug("Explorer session started")
        return self

    async def __aexit__(self, *args):
        """Cleanup resources."""
        try:
            await self.uploads.close()
            for orchestrator in self.jobs.values():
                await orchestrator.close()
            await self.sessions.close()
        finally:
            self.logout()
            if self._api_client:
                await self._api_client.__aexit__(*args)
        logger.debug("Explorer session closed")

    @property
    def config(self) -> ExplorerConfig:
        return self._config

    @property
    def current_path(self) -> str:
        return self._current_path

    def logout(self) -> None:
        """Forget all sessions, passphrases and cached listings."""
        self.sessions.clear_all()
        self.cache.clear()
        self.selection.clear()

    async def run(self, operation: Callable[[], Awaitable[Outcome]]) -> Outcome:
        """Run an operation, unlocking and resuming whenever it is blocked."""
        if self.unlock_flow is None:
            return await operation()
        return await self.unlock_flow.run(operation)

    # ------------------------------------------------------------------
    # Browsing and sessions
    # ------------------------------------------------------------------

    def navigate(self, path: Optional[str]) -> None:
        self._current_path = normalize_folder_path(path)
        self.selection.navigate(self._current_path)

    async def list_folder(self, path: Optional[str] = None, use_cache: bool = True) -> Outcome:
        return await self.listing.list_folder(self._current_path if path is None else path, use_cache)

    async def storage_usage(self, use_cache: bool = True) -> StorageUsage:
        return await self.listing.storage_usage(use_cache)

    async def unlock_folder(self, path: str, passphrase: str) -> str:
        return await self.sessions.unlock_folder(path, passphrase)

    async def request_unlock(self, path: str, label: Optional[str] = None, force: bool = False) -> Optional[str]:
        if self.unlock_flow is None:
            raise RuntimeError("No passphrase provider configured")
        return await self.unlock_flow.request_unlock(path, label, force)

    def lock_folder(self, path: str) -> None:
        self.sessions.clear_session(path)

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    async def upload(
        self,
        sources: Sequence[UploadSource],
        dest: Optional[str] = None,
        quota_check: Optional[QuotaCheck] = None,
    ) -> Outcome:
        return await self.uploads.start_uploads(sources, self._current_path if dest is None else dest, quota_check)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def extract_zip(self, key: str) -> Optional[Job]:
        return await self.jobs[JobKind.ZIP_EXTRACT].start(key)

    async def extract_archive(
        self,
        key: str,
        entries: Optional[Sequence[str]] = None,
        total_entries: Optional[int] = None,
    ) -> Optional[Job]:
        progress = JobProgress(total_entries=total_entries) if total_entries else None
        return await self.jobs[JobKind.ARCHIVE_EXTRACT].start(key, {"entries": entries}, progress)

    async def create_archive(
        self,
        keys: Sequence[str],
        format: Optional[str] = None,
        output_name: Optional[str] = None,
    ) -> Optional[Job]:
        return await self.jobs[JobKind.ARCHIVE_CREATE].start(
            list(keys), {"format": format, "output_name": output_name}
        )

    async def cancel_job(self, kind: JobKind, key: str) -> bool:
        return await self.jobs[kind].cancel(key)

    async def wait_for_job(self, kind: JobKind, key: str, raise_on_failure: bool = False) -> Optional[Job]:
        return await self.jobs[kind].wait(key, raise_on_failure)

    async def archive_preview(self, key: str) -> List[ArchiveEntry]:
        return await self._api.archive_preview(key, session_token=self.sessions.get_session_token(parent_path(key)))

    # ------------------------------------------------------------------
    # Move / delete / folders
    # ------------------------------------------------------------------

    async def move_items(self, source_keys: Sequence[str], destination: Optional[str]) -> Outcome:
        return await self.move_delete.move_items(source_keys, destination)

    async def delete_selection(self, targets: Sequence[DeleteTarget]) -> Outcome:
        return await self.move_delete.delete_selection(targets, self._current_path)

    async def delete_item(self, target: DeleteTarget) -> Outcome:
        return await self.move_delete.delete_item(target)

    async def create_folder(self, name: str, parent: Optional[str] = None, passphrase: Optional[str] = None) -> Outcome:
        return await self._create_folder.execute(self._current_path if parent is None else parent, name, passphrase)

    async def rename_folder(self, path: str, new_name: str, is_encrypted: bool = False) -> Outcome:
        return await self._rename_folder.execute(path, new_name, is_encrypted=is_encrypted)

    async def convert_folder(self, path: str, passphrase: str) -> Outcome:
        return await self._convert_folder.execute(path, passphrase)

    def on(self, event_name: str, callback: Callable[..., Any]) -> None:
        """Subscribe to an explorer event (see cloudstash.utils.events)."""
        self.events.on(event_name, callback)
