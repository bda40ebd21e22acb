"""Tests for move and delete across encrypted folders."""
import asyncio
from unittest.mock import AsyncMock

import pytest

from cloudstash.errors import ApiError, AuthExpiredError, PartialBulkFailure
from cloudstash.models import Blocked, DeleteTarget, Failed, Proceeded, SelectionSet
from cloudstash.orchestrator.move_delete import MoveDeleteCoordinator
from cloudstash.services.cache import Invalidation
from cloudstash.services.unlock import UnlockFlow
from cloudstash.utils.events import INVALIDATE


@pytest.fixture
def selection():
    selection = SelectionSet("Docs")
    selection.replace(["Docs/a.txt"])
    return selection


@pytest.fixture
def coordinator(api, sessions, invalidator, selection):
    return MoveDeleteCoordinator(api, sessions, invalidator, selection)


class TestMove:
    @pytest.mark.asyncio
    async def test_move_into_unlocked_team_secrets(self, coordinator, sessions, api, selection):
        await sessions.unlock_folder("Team/Secrets", "secret123")

        outcome = await coordinator.move_items(["a.txt"], "Team/Secrets")

        assert outcome == Proceeded(("a.txt",))
        args, kwargs = api.move.await_args
        assert args[0] == ["a.txt"]
        assert args[1] == "Team/Secrets"
        assert args[2]
        assert kwargs["session_token"] == "tok-Team/Secrets"
        assert len(selection) == 0

    @pytest.mark.asyncio
    async def test_move_invalidates_everything(self, coordinator, events):
        seen = []
        events.on(INVALIDATE, seen.append)

        await coordinator.move_items(["Docs/a.txt"], "Archive")

        assert seen == [Invalidation(objects=True, directories=True)]

    @pytest.mark.asyncio
    async def test_move_out_of_unlocked_folder_uses_source_session(self, coordinator, sessions, api):
        await sessions.unlock_folder("Vault", "secret123")

        await coordinator.move_items(["Vault/a.txt"], "/")

        args, kwargs = api.move.await_args
        assert args[1] == ""
        assert kwargs["session_token"] == "tok-Vault"

    @pytest.mark.asyncio
    async def test_locked_destination_blocks(self, coordinator, sessions, api):
        sessions.register_encrypted_path("Team/Secrets")

        outcome = await coordinator.move_items(["a.txt"], "Team/Secrets/inner")

        assert isinstance(outcome, Blocked)
        assert outcome.path == "Team/Secrets/inner"
        api.move.assert_not_called()

        await sessions.unlock_folder("Team/Secrets", "secret123")
        assert isinstance(await outcome.resume(), Proceeded)
        assert api.move.await_args.kwargs["session_token"] == "tok-Team/Secrets"

    @pytest.mark.asyncio
    async def test_server_denial_blocks_once(self, coordinator, sessions, api):
        denied = AuthExpiredError('Folder "Vault" is encrypted', path="Vault")
        api.move = AsyncMock(side_effect=[denied, denied])

        outcome = await coordinator.move_items(["a.txt"], "Vault/sub")

        assert isinstance(outcome, Blocked)
        assert outcome.path == "Vault"
        assert outcome.force is True
        assert sessions.is_folder_encrypted("Vault/sub")

        resumed = await outcome.resume()
        assert isinstance(resumed, Failed)

    @pytest.mark.asyncio
    async def test_api_error_is_failed(self, coordinator, api, selection):
        api.move = AsyncMock(side_effect=ApiError("Destination missing", 404))

        outcome = await coordinator.move_items(["a.txt"], "Nowhere")

        assert outcome == Failed("Destination missing")
        assert "Docs/a.txt" in selection

    @pytest.mark.asyncio
    async def test_empty_move_is_noop(self, coordinator, api):
        assert await coordinator.move_items([], "Docs") == Proceeded(())
        api.move.assert_not_called()


class TestDeleteSelection:
    @pytest.mark.asyncio
    async def test_plain_items_in_one_bulk_call(self, coordinator, api, events, selection):
        seen = []
        events.on(INVALIDATE, seen.append)
        targets = [DeleteTarget("Docs/a.txt"), DeleteTarget("Docs/old", is_directory=True)]

        outcome = await coordinator.delete_selection(targets, "Docs")

        assert outcome == Proceeded(("Docs/a.txt", "Docs/old"))
        args, kwargs = api.delete.await_args
        assert args[0] == targets
        assert args[1]
        api.delete_directory.assert_not_called()
        assert seen == [Invalidation(path="Docs", objects=True, directories=True, usage=True)]
        assert len(selection) == 0
        assert coordinator.deleting == set()

    @pytest.mark.asyncio
    async def test_encrypted_folder_without_credentials_blocks_first(self, coordinator, sessions, api):
        targets = [DeleteTarget("Docs/a.txt"), DeleteTarget("Docs/Vault", is_directory=True, is_encrypted=True)]

        outcome = await coordinator.delete_selection(targets, "Docs")

        assert isinstance(outcome, Blocked)
        assert outcome.path == "Docs/Vault"
        api.delete.assert_not_called()

        await sessions.unlock_folder("Docs/Vault", "secret123")
        resumed = await outcome.resume()

        assert resumed == Proceeded(("Docs/a.txt", "Docs/Vault"))
        api.delete_directory.assert_awaited_once_with(
            "Docs/Vault", passphrase="secret123", session_token="tok-Docs/Vault"
        )

    @pytest.mark.asyncio
    async def test_denied_encrypted_folder_reports_completed_plain_items(self, coordinator, sessions, api):
        await sessions.unlock_folder("Docs/Vault", "secret123")
        api.delete_directory = AsyncMock(side_effect=AuthExpiredError("Session expired"))
        targets = [DeleteTarget("Docs/a.txt"), DeleteTarget("Docs/Vault", is_directory=True, is_encrypted=True)]

        outcome = await coordinator.delete_selection(targets, "Docs")

        assert isinstance(outcome, Blocked)
        assert outcome.force is True
        assert outcome.completed == ("Docs/a.txt",)

        api.delete_directory = AsyncMock(return_value=None)
        resumed = await outcome.resume()
        assert resumed == Proceeded(("Docs/a.txt", "Docs/Vault"))
        api.delete.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cancelled_unlock_after_partial_delete(self, coordinator, sessions, api):
        await sessions.unlock_folder("Docs/Vault", "secret123")
        api.delete_directory = AsyncMock(side_effect=AuthExpiredError("Session expired"))
        flow = UnlockFlow(sessions, AsyncMock(return_value=None))
        targets = [DeleteTarget("Docs/a.txt"), DeleteTarget("Docs/Vault", is_directory=True, is_encrypted=True)]

        with pytest.raises(PartialBulkFailure) as excinfo:
            await flow.run(lambda: coordinator.delete_selection(targets, "Docs"))

        assert excinfo.value.completed_keys == ("Docs/a.txt",)
        assert coordinator.deleting == set()

    @pytest.mark.asyncio
    async def test_failure_resets_deleting(self, coordinator, api, selection):
        api.delete = AsyncMock(side_effect=ApiError("Internal error", 500))

        outcome = await coordinator.delete_selection([DeleteTarget("Docs/a.txt")], "Docs")

        assert outcome == Failed("Internal error")
        assert coordinator.deleting == set()
        assert "Docs/a.txt" in selection

    @pytest.mark.asyncio
    async def test_current_folder_session_is_sent(self, coordinator, sessions, api):
        await sessions.unlock_folder("Vault", "secret123")

        await coordinator.delete_selection([DeleteTarget("Vault/a.txt")], "Vault")

        assert api.delete.await_args.kwargs["session_token"] == "tok-Vault"

    @pytest.mark.asyncio
    async def test_selection_with_key_in_flight_is_rejected(self, coordinator, api):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_delete(*args, **kwargs):
            started.set()
            await release.wait()

        api.delete = AsyncMock(side_effect=slow_delete)
        single = asyncio.ensure_future(coordinator.delete_item(DeleteTarget("Docs/a.txt")))
        await started.wait()

        outcome = await coordinator.delete_selection(
            [DeleteTarget("Docs/a.txt"), DeleteTarget("Docs/b.txt")], "Docs"
        )

        assert isinstance(outcome, Failed)
        assert "a.txt" in outcome.error
        assert api.delete.await_count == 1
        assert coordinator.is_deleting("Docs/a.txt")
        assert not coordinator.is_deleting("Docs/b.txt")

        release.set()
        assert isinstance(await single, Proceeded)
        assert coordinator.deleting == set()


class TestDeleteItem:
    @pytest.mark.asyncio
    async def test_delete_single_file(self, coordinator, api, selection):
        outcome = await coordinator.delete_item(DeleteTarget("Docs/a.txt"))

        assert outcome == Proceeded(("Docs/a.txt",))
        assert "Docs/a.txt" not in selection

    @pytest.mark.asyncio
    async def test_duplicate_delete_is_rejected(self, coordinator, api):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_delete(*args, **kwargs):
            started.set()
            await release.wait()

        api.delete = AsyncMock(side_effect=slow_delete)
        first = asyncio.ensure_future(coordinator.delete_item(DeleteTarget("Docs/a.txt")))
        await started.wait()

        assert coordinator.is_deleting("Docs/a.txt")
        second = await coordinator.delete_item(DeleteTarget("Docs/a.txt"))
        release.set()

        assert isinstance(second, Failed)
        assert isinstance(await first, Proceeded)
        assert not coordinator.is_deleting("Docs/a.txt")

    @pytest.mark.asyncio
    async def test_locked_encrypted_folder_blocks(self, coordinator, api):
        outcome = await coordinator.delete_item(DeleteTarget("Vault", is_directory=True, is_encrypted=True))

        assert isinstance(outcome, Blocked)
        assert outcome.path == "Vault"
        api.delete_directory.assert_not_called()
