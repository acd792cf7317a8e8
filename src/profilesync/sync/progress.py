"""
ProgressEmitter: turns orchestrator callbacks into a one-way event stream.

The producer side (orchestrator callbacks, heartbeat task, terminal event)
calls send(); the consumer side iterates events() or stream(). Every send
checks the done signal first, so anything sent after the consumer went
away or after the stream closed is dropped silently.

Event kinds: sync_start, progress, checkpoint, errors, warnings, heartbeat,
and exactly one terminal event, complete or failed (none when the run
paused because the consumer disconnected).
"""
import asyncio
import json
import logging
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from profilesync.models.sync import RunStatus
from profilesync.sync.orchestrator import SyncCallbacks, SyncResult

logger = logging.getLogger(__name__)

TERMINAL_EVENTS = ("complete", "failed")

_CLOSED = object()


def sse_frame(event: Dict[str, Any]) -> str:
    """Encode one event as a server-sent-events data frame."""
    return f"data: {json.dumps(event, default=str)}\n\n"


class ProgressEmitter:
    def __init__(
        self,
        heartbeat_interval: float = 15.0,
        on_disconnect: Optional[Callable[[], None]] = None,
    ):
        """
        Args:
            heartbeat_interval: Seconds between heartbeat events.
            on_disconnect: Called once if the consumer goes away before the
                stream closed; typically the orchestrator's pause().
        """
        self.heartbeat_interval = heartbeat_interval
        self.on_disconnect = on_disconnect
        self._queue: asyncio.Queue = asyncio.Queue()
        self._done = asyncio.Event()
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._terminal_sent = False

    @property
    def closed(self) -> bool:
        return self._done.is_set()

    def start(self) -> None:
        """Start the heartbeat. Must be called from within the running loop."""
        if self._heartbeat_task is None and not self.closed:
            self._heartbeat_task = asyncio.get_running_loop().create_task(self._heartbeat())

    async def _heartbeat(self) -> None:
        while not self.closed:
            await asyncio.sleep(self.heartbeat_interval)
            self.send("heartbeat")

    def send(self, event_type: str, **payload: Any) -> bool:
        """Queue an event. Returns False (and drops it) once the stream is done."""
        if self.closed:
            logger.debug("Dropping %s event: stream closed", event_type)
            return False
        event = {"type": event_type, **payload, "timestamp": datetime.utcnow().isoformat()}
        self._queue.put_nowait(event)
        return True

    def callbacks(self) -> SyncCallbacks:
        return SyncCallbacks(
            on_progress=lambda progress: self.send("progress", progress=progress),
            on_checkpoint=lambda checkpoint: self.send("checkpoint", checkpoint=checkpoint),
            on_errors=lambda errors: self.send("errors", errors=errors),
            on_warnings=lambda warnings: self.send("warnings", warnings=warnings),
        )

    # ─── Terminal events ─────────────────────────────────────────────────────

    def complete(self, result: SyncResult) -> None:
        self._terminal("complete", result=result.to_dict(), errors=result.errors)

    def fail(self, message: str, errors: Optional[List[Dict[str, Any]]] = None) -> None:
        self._terminal("failed", error=message, errors=errors or [])

    def finish(self, result: SyncResult) -> None:
        """Send the terminal event matching the result's status, then close."""
        if result.status == RunStatus.COMPLETED:
            self.complete(result)
        elif result.status == RunStatus.FAILED:
            self.fail(result.failure_message or "Sync failed", result.errors)
        else:
            self.close()

    def _terminal(self, event_type: str, **payload: Any) -> None:
        if self._terminal_sent:
            return
        if self.send(event_type, **payload):
            self._terminal_sent = True
        self.close()

    # ─── Shutdown ────────────────────────────────────────────────────────────

    def close(self) -> None:
        """Producer-side close: stop the heartbeat and end the stream after queued events."""
        if self.closed:
            return
        self._shutdown()
        self._queue.put_nowait(_CLOSED)

    def disconnect(self) -> None:
        """Consumer-side close: drop everything from now on and notify the producer."""
        if self.closed:
            return
        logger.info("Progress stream consumer disconnected")
        self._shutdown()
        if self.on_disconnect:
            self.on_disconnect()

    def _shutdown(self) -> None:
        self._done.set()
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None:
            task.cancel()

    # ─── Consumer side ───────────────────────────────────────────────────────

    async def events(self) -> AsyncIterator[Dict[str, Any]]:
        """Yield queued events until the producer closes the stream."""
        while True:
            event = await self._queue.get()
            if event is _CLOSED:
                return
            yield event

    async def stream(self) -> AsyncIterator[str]:
        """SSE frames; leaving early (client gone, generator closed) counts as a disconnect."""
        try:
            async for event in self.events():
                yield sse_frame(event)
        finally:
            self.disconnect()
