"""Move and delete across plain and encrypted folders."""
import asyncio
import logging
from typing import List, Optional, Sequence, Set, Tuple

from ..errors import ApiError, AuthExpiredError, describe_exception
from ..models import Blocked, DeleteTarget, Failed, Outcome, Proceeded, SelectionSet
from ..protocols import ICloudApi
from ..services.cache import CacheInvalidator
from ..services.session_store import SessionStore
from ..utils.idempotency import create_idempotency_key
from ..utils.paths import folder_name, normalize_folder_path, parent_path

logger = logging.getLogger(__name__)


class MoveDeleteCoordinator:
    """
    Runs move and delete, asking for unlocks where encrypted folders need them.

    Every method returns an Outcome; a Blocked outcome carries the
    continuation to await once the named folder is unlocked.
    """

    def __init__(
        self,
        api: ICloudApi,
        sessions: SessionStore,
        invalidator: CacheInvalidator,
        selection: Optional[SelectionSet] = None,
    ):
        self._api = api
        self._sessions = sessions
        self._invalidator = invalidator
        self._selection = selection or SelectionSet()
        self._deleting: Set[str] = set()

    @property
    def deleting(self) -> Set[str]:
        """Keys with a delete in flight."""
        return set(self._deleting)

    def is_deleting(self, key: str) -> bool:
        return key in self._deleting

    # ------------------------------------------------------------------
    # Move
    # ------------------------------------------------------------------

    async def move_items(
        self,
        source_keys: Sequence[str],
        destination_key: Optional[str],
        skip_unlock_prompt: bool = False,
    ) -> Outcome:
        """
        Move `source_keys` into `destination_key`.

        A locked encrypted destination returns Blocked; its resume retries
        once with `skip_unlock_prompt` set so a second block ends the chain.
        """
        keys = list(source_keys)
        destination = normalize_folder_path(destination_key)
        if not keys:
            return Proceeded(())

        if (
            destination
            and not skip_unlock_prompt
            and self._sessions.is_folder_encrypted(destination)
            and not self._sessions.is_folder_unlocked(destination)
        ):
            return Blocked(
                path=destination,
                label=folder_name(destination) or destination,
                resume=lambda: self.move_items(keys, destination, skip_unlock_prompt=True),
            )

        token = self._sessions.get_session_token(destination) if destination else None
        if not token:
            # Moving already-unlocked encrypted content out of its folder
            for key in keys:
                token = self._sessions.get_session_token(key)
                if token:
                    break

        try:
            await self._api.move(keys, destination, create_idempotency_key(), session_token=token)
        except AuthExpiredError as e:
            blocked = e.path or destination
            if skip_unlock_prompt or not blocked:
                logger.error(f"Move to {destination or '/'} denied: {e.message}")
                return Failed(e.message)
            self._sessions.register_encrypted_path(blocked)
            return Blocked(
                path=blocked,
                label=folder_name(blocked),
                force=True,
                resume=lambda: self.move_items(keys, destination, skip_unlock_prompt=True),
            )
        except ApiError as e:
            logger.error(f"Failed to move {len(keys)} item(s) to {destination or '/'}: {e.message}")
            return Failed(e.message)
        except Exception as e:
            logger.error(f"Failed to move {len(keys)} item(s) to {destination or '/'}: {e}", exc_info=True)
            return Failed(describe_exception(e))

        logger.info(f"Moved {len(keys)} item(s) to {destination or '/'}")
        self._selection.clear()
        await self._invalidator.invalidate(objects=True, directories=True)
        return Proceeded(tuple(keys))

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    def _is_encrypted_directory(self, target: DeleteTarget) -> bool:
        if not target.is_directory:
            return False
        path = normalize_folder_path(target.key)
        return bool(path) and (target.is_encrypted or self._sessions.is_folder_encrypted(path))

    def _has_credentials(self, target: DeleteTarget) -> bool:
        path = normalize_folder_path(target.key)
        return bool(
            path and (self._sessions.get_folder_passphrase(path) or self._sessions.get_session_token(path))
        )

    def _partition(self, targets: Sequence[DeleteTarget]) -> Tuple[List[DeleteTarget], List[DeleteTarget]]:
        encrypted, plain = [], []
        for target in targets:
            (encrypted if self._is_encrypted_directory(target) else plain).append(target)
        return encrypted, plain

    async def _delete_encrypted_directory(self, target: DeleteTarget) -> None:
        path = normalize_folder_path(target.key)
        await self._api.delete_directory(
            path,
            passphrase=self._sessions.get_folder_passphrase(path),
            session_token=self._sessions.get_session_token(path),
        )

    def _already_deleting(self, keys: Set[str]) -> Optional[Failed]:
        busy = sorted(keys & self._deleting)
        if not busy:
            return None
        names = ", ".join(folder_name(key) or key for key in busy)
        logger.warning(f"Skipping delete, already in flight: {names}")
        return Failed(f"Already being deleted: {names}")

    async def delete_selection(self, targets: Sequence[DeleteTarget], current_path: Optional[str]) -> Outcome:
        """
        Delete a selection of files and folders.

        Plain items go in one bulk call; encrypted folders are deleted one by
        one with their passphrase or session. If any encrypted folder has no
        credentials, nothing is deleted and the Blocked resume re-runs the
        whole operation.
        """
        targets = list(targets)
        current_path = normalize_folder_path(current_path)
        if not targets:
            return Proceeded(())

        encrypted, plain = self._partition(targets)
        missing = next((t for t in encrypted if not self._has_credentials(t)), None)
        if missing is not None:
            path = normalize_folder_path(missing.key)
            return Blocked(
                path=path,
                label=folder_name(path),
                resume=lambda: self.delete_selection(targets, current_path),
            )

        keys = {t.key for t in targets}
        busy = self._already_deleting(keys)
        if busy is not None:
            return busy
        self._deleting |= keys
        completed: List[str] = []
        try:
            if plain:
                try:
                    await self._api.delete(
                        plain,
                        create_idempotency_key(),
                        session_token=self._sessions.get_session_token(current_path),
                    )
                except AuthExpiredError as e:
                    blocked = e.path or current_path
                    if not blocked:
                        raise
                    self._sessions.register_encrypted_path(blocked)
                    return Blocked(
                        path=blocked,
                        label=folder_name(blocked),
                        force=True,
                        resume=lambda: self.delete_selection(targets, current_path),
                    )
                completed.extend(t.key for t in plain)
                logger.info(f"Deleted {len(plain)} item(s) from {current_path or '/'}")
            return await self._delete_encrypted(encrypted, completed, current_path)
        except ApiError as e:
            logger.error(f"Failed to delete selection in {current_path or '/'}: {e.message}")
            return Failed(e.message)
        except Exception as e:
            logger.error(f"Failed to delete selection in {current_path or '/'}: {e}", exc_info=True)
            return Failed(describe_exception(e))
        finally:
            self._deleting -= keys

    async def _delete_encrypted(
        self,
        targets: List[DeleteTarget],
        completed: List[str],
        current_path: str,
    ) -> Outcome:
        results = await asyncio.gather(
            *(self._delete_encrypted_directory(t) for t in targets),
            return_exceptions=True,
        )
        denied: List[DeleteTarget] = []
        failure: Optional[BaseException] = None
        for target, result in zip(targets, results):
            if result is None:
                completed.append(target.key)
                logger.info(f"Deleted encrypted folder {target.key}")
            elif isinstance(result, AuthExpiredError):
                denied.append(target)
            elif failure is None:
                failure = result

        if failure is not None or denied:
            if completed:
                await self._invalidator.invalidate(current_path, objects=True, directories=True, usage=True)
        if failure is not None:
            if isinstance(failure, Exception):
                logger.error(f"Failed to delete encrypted folder: {describe_exception(failure)}")
                return Failed(describe_exception(failure))
            raise failure
        if denied:
            path = normalize_folder_path(denied[0].key)
            self._sessions.register_encrypted_path(path)
            done = tuple(completed)
            return Blocked(
                path=path,
                label=folder_name(path),
                force=True,
                completed=done,
                resume=lambda: self._resume_encrypted(denied, list(done), current_path),
            )

        self._selection.clear()
        await self._invalidator.invalidate(current_path, objects=True, directories=True, usage=True)
        return Proceeded(tuple(completed))

    async def _resume_encrypted(
        self,
        targets: List[DeleteTarget],
        completed: List[str],
        current_path: str,
    ) -> Outcome:
        """Retry only the encrypted folders left over after a partial delete."""
        missing = next((t for t in targets if not self._has_credentials(t)), None)
        if missing is not None:
            path = normalize_folder_path(missing.key)
            return Blocked(
                path=path,
                label=folder_name(path),
                completed=tuple(completed),
                resume=lambda: self._resume_encrypted(targets, completed, current_path),
            )
        keys = {t.key for t in targets}
        busy = self._already_deleting(keys)
        if busy is not None:
            return busy
        self._deleting |= keys
        try:
            return await self._delete_encrypted(targets, list(completed), current_path)
        except Exception as e:
            logger.error(f"Failed to delete encrypted folders: {e}", exc_info=True)
            return Failed(describe_exception(e))
        finally:
            self._deleting -= keys

    async def delete_item(self, target: DeleteTarget) -> Outcome:
        """Delete a single file or folder."""
        key = target.key
        if key in self._deleting:
            return Failed(f"{folder_name(key) or key} is already being deleted")

        self._deleting.add(key)
        try:
            if self._is_encrypted_directory(target):
                path = normalize_folder_path(key)
                if not self._has_credentials(target):
                    return Blocked(path=path, label=folder_name(path), resume=lambda: self.delete_item(target))
                await self._delete_encrypted_directory(target)
            else:
                await self._api.delete(
                    [target],
                    create_idempotency_key(),
                    session_token=self._sessions.get_session_token(key),
                )
        except AuthExpiredError as e:
            blocked = e.path or (normalize_folder_path(key) if target.is_directory else parent_path(key))
            if not blocked:
                logger.error(f"Delete of {key} denied: {e.message}")
                return Failed(e.message)
            self._sessions.register_encrypted_path(blocked)
            return Blocked(
                path=blocked,
                label=folder_name(blocked),
                force=True,
                resume=lambda: self.delete_item(target),
            )
        except ApiError as e:
            logger.error(f"Failed to delete {key}: {e.message}")
            return Failed(e.message)
        except Exception as e:
            logger.error(f"Failed to delete {key}: {e}", exc_info=True)
            return Failed(describe_exception(e))
        finally:
            self._deleting.discard(key)

        logger.info(f"Deleted {key}")
        self._selection.discard(key)
        await self._invalidator.invalidate(parent_path(key), objects=True, directories=True, usage=True)
        return Proceeded((key,))
