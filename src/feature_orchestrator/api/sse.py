"""Server-sent event transport over the event bus.

Each client connection is one bus subscription (with replay) feeding an
``asyncio.Queue`` that the response generator drains. A background keep-alive
task publishes ``ping`` events to every session that has a live connection.
"""

import asyncio
import json
from typing import AsyncIterator, Awaitable, Callable, Optional

from rich.console import Console

from ..bus import EventBus
from ..models import ServerEvent, ServerEventType

console = Console()

# How often an idle stream checks whether the client went away
DISCONNECT_POLL_SECONDS = 1.0


def format_sse(event: ServerEvent) -> str:
    """Frame an event as a single ``data:`` record."""
    return f"data: {json.dumps(event.model_dump(mode='json'))}\n\n"


class ConnectionTracker:
    """Live stream connections per session id."""

    def __init__(self):
        self._counts: dict[str, int] = {}

    def increment(self, session_id: str) -> int:
        self._counts[session_id] = self._counts.get(session_id, 0) + 1
        return self._counts[session_id]

    def decrement(self, session_id: str) -> int:
        remaining = self._counts.get(session_id, 0) - 1
        if remaining > 0:
            self._counts[session_id] = remaining
        else:
            self._counts.pop(session_id, None)
            remaining = 0
        return remaining

    def count(self, session_id: str) -> int:
        return self._counts.get(session_id, 0)

    @property
    def total(self) -> int:
        return sum(self._counts.values())

    @property
    def active_sessions(self) -> list[str]:
        return list(self._counts)


async def event_stream(
    bus: EventBus,
    tracker: ConnectionTracker,
    session_id: str,
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
) -> AsyncIterator[str]:
    """Yield SSE frames for one session until the client goes away.

    Sends a synthetic ``status {connected: true}`` event first, then the
    buffered replay, then live events.
    """
    queue: asyncio.Queue = asyncio.Queue()
    tracker.increment(session_id)
    unsubscribe = None
    try:
        yield format_sse(ServerEvent(
            type=ServerEventType.STATUS,
            session_id=session_id,
            data={"connected": True},
        ))
        unsubscribe = bus.subscribe(session_id, queue.put_nowait, replay_buffered=True)

        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=DISCONNECT_POLL_SECONDS)
            except asyncio.TimeoutError:
                if is_disconnected is not None and await is_disconnected():
                    break
                continue
            yield format_sse(event)
    finally:
        if unsubscribe is not None:
            unsubscribe()
        tracker.decrement(session_id)


class KeepAlive:
    """Publishes a ping to every session with at least one live connection."""

    def __init__(self, bus: EventBus, tracker: ConnectionTracker, interval_seconds: float = 15.0):
        self.bus = bus
        self.tracker = tracker
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    def tick(self) -> int:
        """Send one round of pings. Returns the number of sessions pinged."""
        sessions = self.tracker.active_sessions
        for session_id in sessions:
            self.bus.emit(ServerEventType.PING, session_id)
        return len(sessions)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            self.tick()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
