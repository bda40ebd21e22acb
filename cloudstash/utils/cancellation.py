"""Cooperative cancellation for long-running transfers."""
import asyncio
from typing import Optional

from cloudstash.errors import CancelledOperation


class CancellationToken:
    """
    Set once by whoever wants the operation stopped.

    Workers call `raise_if_cancelled()` between steps; in-flight requests are
    interrupted by cancelling the owning task.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledOperation(self._reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()
