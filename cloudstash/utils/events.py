from typing import Dict, List, Callable, Set
import asyncio
import logging
logger = logging.getLogger(__name__)

# Event names
INVALIDATE = "invalidate"
SESSION_EXPIRED = "session_expired"
UPLOAD_PROGRESS = "upload_progress"
UPLOAD_FINISHED = "upload_finished"
JOB_UPDATE = "job_update"


class EventEmitter:
    """Simple event emitter for explorer events."""

    def __init__(self):
        self._listeners: Dict[str, List[Callable]] = {}
        self._pending: Set[asyncio.Task] = set()

    def on(self, event_name: str, callback: Callable):
        """Subscribe to an event."""
        if event_name not in self._listeners:
            self._listeners[event_name] = []
        if callback not in self._listeners[event_name]:
            self._listeners[event_name].append(callback)

    def off(self, event_name: str, callback: Callable):
        """Unsubscribe from an event."""
        if event_name in self._listeners:
            if callback in self._listeners[event_name]:
                self._listeners[event_name].remove(callback)

    async def emit(self, event_name: str, *args, **kwargs):
        """Emit an event to all listeners."""
        if event_name not in self._listeners:
            return

        for callback in self._listeners[event_name][:]:  # Copy list to avoid modification during iteration
            try:
                result = callback(*args, **kwargs)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Error in event listener for {event_name}: {e}")

    def emit_nowait(self, event_name: str, *args, **kwargs):
        """Schedule an emit on the running loop without waiting for listeners."""
        if event_name not in self._listeners:
            return
        task = asyncio.get_running_loop().create_task(self.emit(event_name, *args, **kwargs))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self):
        """Wait until every emit scheduled with emit_nowait has run."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
