"""
Encrypted-folder sessions.

Holds the per-folder session tokens and passphrases for the life of an
explorer session, and the set of paths known to be encryption boundaries.
Every lookup resolves through the ancestor walk, so anything below an
unlocked folder inherits its session.
"""
import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional, Set

from ..errors import ValidationError
from ..models import ExplorerConfig, FolderSession
from ..protocols import ISessionApi
from ..utils.events import SESSION_EXPIRED, EventEmitter
from ..utils.paths import find_ancestor, iter_ancestors, normalize_folder_path

logger = logging.getLogger(__name__)


class SessionStore:
    """
    Per-folder decryption sessions, cached passphrases and known boundaries.

    Usage:
        async with SessionStore(api, events) as sessions:
            token = await sessions.unlock_folder("Docs/Private", "secret123")
            sessions.get_session_token("Docs/Private/sub")  # == token
    """

    def __init__(
        self,
        api: ISessionApi,
        events: Optional[EventEmitter] = None,
        config: Optional[ExplorerConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._api = api
        self._events = events or EventEmitter()
        self._config = config or ExplorerConfig()
        self._clock = clock

        # Single-key writes only: replace or delete
        self._sessions: Dict[str, FolderSession] = {}
        self._passphrases: Dict[str, str] = {}
        self._encrypted: Set[str] = set()

        self._sweep_task: Optional[asyncio.Task] = None

    async def __aenter__(self):
        self.start()
        return self

    async def __aexit__(self, *args):
        await self.close()

    # ------------------------------------------------------------------
    # Encrypted boundaries
    # ------------------------------------------------------------------

    def register_encrypted_path(self, path: str) -> None:
        normalized = normalize_folder_path(path)
        if normalized and normalized not in self._encrypted:
            self._encrypted.add(normalized)
            logger.debug(f"Registered encrypted folder {normalized}")

    def is_folder_encrypted(self, path: str) -> bool:
        """True if path or any ancestor is a known encryption boundary."""
        return find_ancestor(path, self._encrypted) is not None

    def is_folder_encrypted_exact(self, path: str) -> bool:
        return normalize_folder_path(path) in self._encrypted

    def encrypted_ancestor(self, path: str) -> Optional[str]:
        """Nearest known boundary at or above path."""
        return find_ancestor(path, self._encrypted)

    @property
    def encrypted_paths(self) -> Set[str]:
        return set(self._encrypted)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def get_session(self, path: str) -> Optional[FolderSession]:
        """Session of the nearest unlocked ancestor, skipping expired ones."""
        now = self._clock()
        for candidate in iter_ancestors(path):
            session = self._sessions.get(candidate)
            if session is not None and not session.is_expired(now):
                return session
        return None

    def get_session_token(self, path: str) -> Optional[str]:
        session = self.get_session(path)
        return session.token if session else None

    def is_folder_unlocked(self, path: str) -> bool:
        return self.get_session(path) is not None

    def get_folder_passphrase(self, path: str) -> Optional[str]:
        holder = find_ancestor(path, self._passphrases)
        return self._passphrases[holder] if holder is not None else None

    async def unlock_folder(self, path: str, passphrase: str) -> str:
        """
        Unlock `path` and return the session token.

        The session is stored under the canonical boundary the server reports,
        which differs from `path` when `path` is a descendant of that boundary.
        Server rejections propagate unchanged and nothing is cached.
        """
        target = normalize_folder_path(path)
        if not target:
            raise ValidationError("A folder path is required to unlock")
        if not passphrase:
            raise ValidationError("Passphrase is required")

        result = await self._api.unlock(target, passphrase)

        canonical = normalize_folder_path(result.encrypted_path) or target
        expires_at = result.expires_at
        if expires_at is None:
            expires_at = self._clock() + self._config.default_session_ttl

        self._sessions[canonical] = FolderSession(path=canonical, token=result.token, expires_at=expires_at)
        self._passphrases[canonical] = passphrase
        self._encrypted.add(canonical)
        logger.info(f"Unlocked encrypted folder {canonical}")
        return result.token

    def clear_session(self, path: str) -> None:
        """Lock one folder: forget its session and passphrase."""
        normalized = normalize_folder_path(path)
        self._sessions.pop(normalized, None)
        self._passphrases.pop(normalized, None)

    def clear_all(self) -> None:
        """Forget everything (logout)."""
        self._sessions = {}
        self._passphrases = {}
        self._encrypted = set()
        logger.debug("Cleared all folder sessions")

    # ------------------------------------------------------------------
    # Expiry sweep
    # ------------------------------------------------------------------

    async def sweep_expired(self) -> List[str]:
        """Remove expired sessions and notify listeners. Returns the cleared paths."""
        now = self._clock()
        expired = [path for path, session in list(self._sessions.items()) if session.is_expired(now)]
        cleared = []
        for path in expired:
            current = self._sessions.get(path)
            # A re-unlock may have replaced it since the scan
            if current is None or not current.is_expired(now):
                continue
            self.clear_session(path)
            cleared.append(path)
            logger.warning(f"Session for encrypted folder {path} expired")
            await self._events.emit(SESSION_EXPIRED, path)
        return cleared

    def start(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def close(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.session_sweep_interval)
            await self.sweep_expired()
