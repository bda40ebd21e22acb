"""Tests for events, retry and cancellation helpers."""
import asyncio
from unittest.mock import AsyncMock

import pytest

from cloudstash.errors import CancelledOperation
from cloudstash.utils.cancellation import CancellationToken
from cloudstash.utils.events import EventEmitter
from cloudstash.utils.idempotency import create_idempotency_key
from cloudstash.utils.retry import JITTER_MAX, JITTER_MIN, backoff_delay, retry_with_backoff


class TestEventEmitter:
    @pytest.mark.asyncio
    async def test_sync_and_async_listeners(self):
        emitter = EventEmitter()
        seen = []

        async def async_listener(value):
            seen.append(("async", value))

        emitter.on("evt", lambda value: seen.append(("sync", value)))
        emitter.on("evt", async_listener)
        await emitter.emit("evt", 1)

        assert seen == [("sync", 1), ("async", 1)]

    @pytest.mark.asyncio
    async def test_listener_errors_do_not_propagate(self):
        emitter = EventEmitter()
        seen = []

        def broken(value):
            raise RuntimeError("listener bug")

        emitter.on("evt", broken)
        emitter.on("evt", seen.append)
        await emitter.emit("evt", 1)

        assert seen == [1]

    @pytest.mark.asyncio
    async def test_emit_nowait_preserves_order(self):
        emitter = EventEmitter()
        seen = []
        emitter.on("evt", seen.append)

        for value in range(5):
            emitter.emit_nowait("evt", value)
        await emitter.drain()

        assert seen == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_off(self):
        emitter = EventEmitter()
        seen = []
        emitter.on("evt", seen.append)
        emitter.off("evt", seen.append)
        await emitter.emit("evt", 1)
        assert seen == []


class TestRetry:
    def test_backoff_delay_bounds(self):
        for attempt in range(6):
            delay = backoff_delay(attempt, 0.5, 5.0)
            base = min(0.5 * 2 ** attempt, 5.0)
            assert base * JITTER_MIN <= delay <= base * JITTER_MAX

    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        func = AsyncMock(side_effect=[ConnectionError("a"), ConnectionError("b"), "ok"])
        retries = []

        result = await retry_with_backoff(
            func,
            is_retryable=lambda exc: isinstance(exc, ConnectionError),
            base_delay=0.001,
            max_delay=0.001,
            on_retry=lambda exc, attempt, delay: retries.append(attempt),
        )

        assert result == "ok"
        assert retries == [1, 2]

    @pytest.mark.asyncio
    async def test_non_retryable_raises_immediately(self):
        func = AsyncMock(side_effect=ValueError("bad"))

        with pytest.raises(ValueError):
            await retry_with_backoff(func, is_retryable=lambda exc: False)
        assert func.await_count == 1


class TestCancellationToken:
    @pytest.mark.asyncio
    async def test_cancel_once(self):
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel("user")
        token.cancel("again")

        assert token.cancelled
        assert token.reason == "user"
        with pytest.raises(CancelledOperation, match="user"):
            token.raise_if_cancelled()
        await asyncio.wait_for(token.wait(), timeout=1)


def test_idempotency_keys_are_unique():
    assert create_idempotency_key() != create_idempotency_key()
