"""Unlock prompting and the Blocked -> resume loop."""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

from ..errors import ApiError, AuthExpiredError, CancelledOperation, PartialBulkFailure, ValidationError
from ..models import Blocked, Outcome
from ..protocols import PassphraseProvider
from ..utils.paths import folder_name, normalize_folder_path
from .session_store import SessionStore

logger = logging.getLogger(__name__)


class UnlockFlow:
    """
    Asks the user for passphrases and resumes blocked operations.

    Concurrent requests for the same encrypted folder share one prompt.

    Usage:
        flow = UnlockFlow(sessions, ask_passphrase)
        outcome = await flow.run(lambda: coordinator.move_items(keys, dest))
    """

    def __init__(self, sessions: SessionStore, provider: PassphraseProvider, max_attempts: int = 3):
        self._sessions = sessions
        self._provider = provider
        self._max_attempts = max(1, max_attempts)
        self._pending: Dict[str, asyncio.Task] = {}

    async def request_unlock(self, path: str, label: Optional[str] = None, force: bool = False) -> Optional[str]:
        """
        Return a session token for `path`, prompting if needed.

        Without `force`, an existing session is reused. Returns None when the
        user cancels the prompt.
        """
        path = normalize_folder_path(path)
        if not force:
            token = self._sessions.get_session_token(path)
            if token:
                return token

        target = self._sessions.encrypted_ancestor(path) or path
        task = self._pending.get(target)
        if task is None:
            task = asyncio.get_running_loop().create_task(
                self._prompt(target, label or folder_name(target))
            )
            self._pending[target] = task
            task.add_done_callback(lambda done: self._forget(target, done))
        else:
            logger.debug(f"Joining pending unlock prompt for {target}")
        return await asyncio.shield(task)

    def _forget(self, target: str, task: asyncio.Task) -> None:
        if self._pending.get(target) is task:
            del self._pending[target]

    async def _prompt(self, target: str, label: str) -> Optional[str]:
        error: Optional[str] = None
        for attempt in range(1, self._max_attempts + 1):
            passphrase = await self._provider(target, label, error)
            if passphrase is None:
                logger.info(f"Unlock of {target} cancelled")
                return None
            try:
                return await self._sessions.unlock_folder(target, passphrase)
            except (ApiError, ValidationError) as exc:
                if attempt >= self._max_attempts:
                    raise
                error = exc.message if isinstance(exc, ApiError) else str(exc)
                logger.warning(f"Unlock of {target} rejected: {error}")
        return None

    async def run(self, operation: Callable[[], Awaitable[Outcome]]) -> Outcome:
        """
        Await `operation`, unlocking and resuming for as long as it is blocked.

        Raises CancelledOperation when the user cancels a prompt, or
        PartialBulkFailure when the blocked operation had already applied part
        of its work.
        """
        outcome = await operation()
        last_unlocked: Optional[str] = None
        while isinstance(outcome, Blocked):
            if outcome.path == last_unlocked:
                raise AuthExpiredError(
                    f"Folder {outcome.path} is still locked after unlocking", path=outcome.path
                )
            token = await self.request_unlock(outcome.path, outcome.label or None, force=outcome.force)
            if token is None:
                if outcome.completed:
                    raise PartialBulkFailure(outcome.completed, outcome.path)
                raise CancelledOperation(f"Unlock of {outcome.path} was cancelled")
            last_unlocked = outcome.path
            outcome = await outcome.resume()
        return outcome
