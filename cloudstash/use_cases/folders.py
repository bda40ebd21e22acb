"""Use cases for folder lifecycle: create, rename, convert to encrypted."""
from __future__ import annotations

import logging
from typing import Optional

from cloudstash.errors import ApiError, ValidationError, describe_exception
from cloudstash.models import Blocked, Failed, Outcome, Proceeded
from cloudstash.protocols import ICloudApi
from cloudstash.services.cache import CacheInvalidator
from cloudstash.services.session_store import SessionStore
from cloudstash.utils.paths import folder_name, join_key, normalize_folder_path, parent_path

logger = logging.getLogger(__name__)

MIN_PASSPHRASE_LENGTH = 8


def validate_folder_name(name: Optional[str]) -> str:
    trimmed = (name or "").strip()
    if not trimmed:
        raise ValidationError("Folder name required")
    if "/" in trimmed:
        raise ValidationError("Folder name cannot contain '/'")
    return trimmed


def validate_passphrase(passphrase: Optional[str]) -> str:
    if not passphrase or len(passphrase) < MIN_PASSPHRASE_LENGTH:
        raise ValidationError(f"Passphrase must be at least {MIN_PASSPHRASE_LENGTH} characters")
    return passphrase


class CreateFolderUseCase:
    """Create a plain or encrypted folder under a parent."""

    def __init__(self, api: ICloudApi, sessions: SessionStore, invalidator: CacheInvalidator):
        self._api = api
        self._sessions = sessions
        self._invalidator = invalidator

    async def execute(self, parent: Optional[str], name: str, passphrase: Optional[str] = None) -> Outcome:
        name = validate_folder_name(name)
        if passphrase is not None:
            validate_passphrase(passphrase)
        parent = normalize_folder_path(parent)

        if self._sessions.is_folder_encrypted(parent) and not self._sessions.is_folder_unlocked(parent):
            boundary = self._sessions.encrypted_ancestor(parent) or parent
            return Blocked(
                path=boundary,
                label=folder_name(boundary),
                resume=lambda: self.execute(parent, name, passphrase),
            )

        path = join_key(parent, name)
        token = self._sessions.get_session_token(parent)
        try:
            if passphrase:
                await self._api.create_directory(path, passphrase=passphrase, session_token=token)
                self._sessions.register_encrypted_path(path)
            else:
                # Plain folders are addressed as a key prefix
                await self._api.create_directory(f"{path}/", session_token=token)
        except ApiError as e:
            if e.is_conflict:
                logger.warning(f"Folder already exists: {path}")
                return Failed(f"A folder named '{name}' already exists")
            logger.error(f"Failed to create folder {path}: {e.message}")
            return Failed(e.message)
        except Exception as e:
            logger.error(f"Failed to create folder {path}: {e}", exc_info=True)
            return Failed(describe_exception(e))

        logger.info(f"Created {'encrypted ' if passphrase else ''}folder {path}")
        await self._invalidator.invalidate(parent, directories=True)
        return Proceeded(path)


class RenameFolderUseCase:
    """Rename a folder in place. Encrypted folders need their passphrase."""

    def __init__(self, api: ICloudApi, sessions: SessionStore, invalidator: CacheInvalidator):
        self._api = api
        self._sessions = sessions
        self._invalidator = invalidator

    async def execute(
        self,
        path: str,
        new_name: str,
        is_encrypted: bool = False,
        passphrase: Optional[str] = None,
    ) -> Outcome:
        path = normalize_folder_path(path)
        if not path:
            raise ValidationError("Folder path required")
        new_name = validate_folder_name(new_name)
        if folder_name(path) == new_name:
            return Proceeded(path)

        encrypted = is_encrypted or self._sessions.is_folder_encrypted_exact(path)
        if encrypted:
            passphrase = passphrase or self._sessions.get_folder_passphrase(path)
            if not passphrase:
                return Blocked(
                    path=path,
                    label=folder_name(path),
                    resume=lambda: self.execute(path, new_name, is_encrypted=True),
                )
        else:
            passphrase = None

        try:
            await self._api.rename_directory(
                path,
                new_name,
                passphrase=passphrase,
                session_token=self._sessions.get_session_token(path),
            )
        except ApiError as e:
            if e.is_conflict:
                logger.warning(f"Cannot rename {path}: {new_name} already exists")
                return Failed(f"A folder named '{new_name}' already exists")
            logger.error(f"Failed to rename folder {path}: {e.message}")
            return Failed(e.message)
        except Exception as e:
            logger.error(f"Failed to rename folder {path}: {e}", exc_info=True)
            return Failed(describe_exception(e))

        new_path = join_key(parent_path(path), new_name)
        if encrypted:
            self._sessions.register_encrypted_path(new_path)
        logger.info(f"Renamed folder {path} -> {new_path}")
        await self._invalidator.invalidate(parent_path(path), objects=True, directories=True)
        await self._invalidator.invalidate(path, directories=True)
        return Proceeded(new_path)


class ConvertFolderUseCase:
    """Encrypt an existing plain folder with a new passphrase."""

    def __init__(self, api: ICloudApi, sessions: SessionStore, invalidator: CacheInvalidator):
        self._api = api
        self._sessions = sessions
        self._invalidator = invalidator

    async def execute(self, path: str, passphrase: str, is_encrypted: bool = False) -> Outcome:
        path = normalize_folder_path(path)
        if not path:
            raise ValidationError("Folder path required")
        if is_encrypted or self._sessions.is_folder_encrypted(path):
            raise ValidationError("Folder is already encrypted")
        passphrase = validate_passphrase((passphrase or "").strip())

        try:
            await self._api.convert_directory(
                path, passphrase, session_token=self._sessions.get_session_token(path)
            )
        except ApiError as e:
            if e.is_conflict:
                logger.warning(f"Folder {path} already appears to be encrypted")
                return Failed("Folder already appears to be encrypted")
            logger.error(f"Failed to encrypt folder {path}: {e.message}")
            return Failed(e.message)
        except Exception as e:
            logger.error(f"Failed to encrypt folder {path}: {e}", exc_info=True)
            return Failed(describe_exception(e))

        self._sessions.register_encrypted_path(path)
        logger.info(f"Converted folder {path} to encrypted")
        await self._invalidator.invalidate(parent_path(path), objects=True, directories=True)
        await self._invalidator.invalidate(path, objects=True, directories=True)
        return Proceeded(path)
