"""Services for cloudstash module."""
from .api_client import CloudApiClient
from .cache import CacheInvalidator, Invalidation, ListingCache
from .listing import ListingService
from .session_store import SessionStore
from .unlock import UnlockFlow

__all__ = [
    "CloudApiClient",
    "CacheInvalidator",
    "Invalidation",
    "ListingCache",
    "ListingService",
    "SessionStore",
    "UnlockFlow",
]
