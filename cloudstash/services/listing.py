"""Folder listings and storage usage reads."""
import logging
from typing import Optional

from ..errors import ApiError, AuthExpiredError
from ..models import Blocked, Failed, Outcome, Proceeded, StorageUsage
from ..protocols import ICloudApi
from ..utils.paths import folder_name, normalize_folder_path
from .cache import ListingCache
from .session_store import SessionStore

logger = logging.getLogger(__name__)


class ListingService:
    """Reads folders, learning encryption boundaries along the way."""

    def __init__(self, api: ICloudApi, sessions: SessionStore, cache: ListingCache):
        self._api = api
        self._sessions = sessions
        self._cache = cache

    async def list_folder(self, path: Optional[str], use_cache: bool = True) -> Outcome:
        """
        List one folder.

        Returns Proceeded(FolderListing), or Blocked when the folder sits in a
        locked encrypted folder; resuming re-reads it bypassing the cache.
        """
        path = normalize_folder_path(path)
        if use_cache:
            cached = self._cache.get_listing(path)
            if cached is not None:
                return Proceeded(cached)

        async def retry() -> Outcome:
            return await self.list_folder(path, use_cache=False)

        if self._sessions.is_folder_encrypted(path) and not self._sessions.is_folder_unlocked(path):
            boundary = self._sessions.encrypted_ancestor(path) or path
            return Blocked(path=boundary, label=folder_name(boundary), resume=retry)

        try:
            listing = await self._api.list(path, session_token=self._sessions.get_session_token(path))
        except AuthExpiredError as exc:
            boundary = exc.path or path
            self._sessions.register_encrypted_path(boundary)
            logger.info(f"Listing {path or '/'} requires unlocking {boundary}")
            # The server rejected whatever session we had, so prompt again
            return Blocked(path=boundary, label=folder_name(boundary), resume=retry, force=True)
        except ApiError as e:
            logger.error(f"Failed to list {path or '/'}: {e.message}")
            return Failed(e.message)
        except Exception as e:
            logger.error(f"Failed to list {path or '/'}: {e}", exc_info=True)
            return Failed(str(e))

        for directory in listing.directories:
            if directory.is_encrypted:
                self._sessions.register_encrypted_path(directory.prefix)
        self._cache.put_listing(listing)
        return Proceeded(listing)

    async def storage_usage(self, use_cache: bool = True) -> StorageUsage:
        if use_cache:
            cached = self._cache.get_usage()
            if cached is not None:
                return cached
        usage = await self._api.storage_usage()
        self._cache.put_usage(usage)
        return usage
