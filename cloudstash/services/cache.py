"""Client-side listing cache and the invalidation signal."""
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from ..models import FolderListing, StorageUsage
from ..utils.events import INVALIDATE, EventEmitter
from ..utils.paths import is_within, normalize_folder_path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Invalidation:
    """
    What went stale. `path` None means every folder.

    Emitted with the `invalidate` event so a presentation layer can refetch.
    """
    path: Optional[str] = None
    objects: bool = False
    directories: bool = False
    usage: bool = False


class ListingCache:
    """Folder listings and the storage usage aggregate, keyed by folder path."""

    def __init__(self):
        self._listings: Dict[str, FolderListing] = {}
        self._usage: Optional[StorageUsage] = None

    def get_listing(self, path: str) -> Optional[FolderListing]:
        return self._listings.get(normalize_folder_path(path))

    def put_listing(self, listing: FolderListing) -> None:
        self._listings[normalize_folder_path(listing.path)] = listing

    def drop_listing(self, path: str) -> None:
        self._listings.pop(normalize_folder_path(path), None)

    def drop_subtree(self, path: str) -> None:
        for cached in [p for p in self._listings if is_within(p, path)]:
            self._listings.pop(cached, None)

    def get_usage(self) -> Optional[StorageUsage]:
        return self._usage

    def put_usage(self, usage: StorageUsage) -> None:
        self._usage = usage

    def drop_usage(self) -> None:
        self._usage = None

    def clear(self) -> None:
        self._listings = {}
        self._usage = None

    def __contains__(self, path: object) -> bool:
        return isinstance(path, str) and normalize_folder_path(path) in self._listings


class CacheInvalidator:
    """Drops stale cache entries and tells listeners about it."""

    def __init__(self, cache: ListingCache, events: EventEmitter):
        self._cache = cache
        self._events = events

    async def invalidate(
        self,
        path: Optional[str] = None,
        objects: bool = False,
        directories: bool = False,
        usage: bool = False,
    ) -> Invalidation:
        scope = Invalidation(
            path=normalize_folder_path(path) if path is not None else None,
            objects=objects,
            directories=directories,
            usage=usage,
        )
        if scope.path is None:
            if objects or directories:
                self._cache.clear()
        else:
            if objects:
                self._cache.drop_listing(scope.path)
            if directories:
                self._cache.drop_subtree(scope.path)
        if usage:
            self._cache.drop_usage()

        logger.debug(f"Invalidated {scope}")
        await self._events.emit(INVALIDATE, scope)
        return scope

    async def invalidate_path(self, path: str) -> Invalidation:
        """A folder's contents changed."""
        return await self.invalidate(path, objects=True, directories=True)

    async def invalidate_usage(self) -> Invalidation:
        return await self.invalidate(usage=True)
