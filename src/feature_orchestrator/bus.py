"""In-memory event bus with per-session replay buffers.

Events are published under their ``session_id``. Subscribers listen to one
session or to every session via the ``"*"`` wildcard. Each session keeps a
short sliding window of recent events (TTL and size capped) so a subscriber
that joins late can catch up before receiving live events.

Delivery is synchronous and in publish order. A failing handler is logged
and skipped; the other handlers still receive the event.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from rich.console import Console

from .models import ServerEvent, ServerEventType

console = Console()

WILDCARD = "*"
QUEUE_SESSION_ID = "__queue__"

DEFAULT_BUFFER_MAX_SIZE = 100
DEFAULT_BUFFER_TTL_SECONDS = 30.0

EventHandler = Callable[[ServerEvent], None]


@dataclass
class _BufferedEvent:
    event: ServerEvent
    received_at: float


@dataclass
class _Subscription:
    key: str
    handler: EventHandler
    # While replaying, live events are parked here and flushed after the snapshot
    replaying: bool = False
    pending: list[ServerEvent] = field(default_factory=list)


class EventBus:
    """Pub/sub keyed by session id, with a bounded replay buffer per session."""

    def __init__(
        self,
        max_buffer_size: int = DEFAULT_BUFFER_MAX_SIZE,
        buffer_ttl_seconds: float = DEFAULT_BUFFER_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_buffer_size = max_buffer_size
        self.buffer_ttl_seconds = buffer_ttl_seconds
        self._clock = clock
        self._lock = threading.RLock()
        self._subscriptions: list[_Subscription] = []
        self._buffers: dict[str, list[_BufferedEvent]] = {}

    # ------------------------------------------------------------------
    # Buffer
    # ------------------------------------------------------------------

    def _trim(self, session_id: str) -> list[_BufferedEvent]:
        """Drop expired entries and enforce the cap. Caller holds the lock."""
        buffer = self._buffers.get(session_id)
        if buffer is None:
            return []
        cutoff = self._clock() - self.buffer_ttl_seconds
        buffer = [entry for entry in buffer if entry.received_at > cutoff]
        if len(buffer) > self.max_buffer_size:
            buffer = buffer[-self.max_buffer_size:]
        if buffer:
            self._buffers[session_id] = buffer
        else:
            del self._buffers[session_id]
        return buffer

    def get_buffered_events(self, session_id: str) -> list[ServerEvent]:
        """Non-expired buffered events for a session, oldest first."""
        with self._lock:
            return [entry.event for entry in self._trim(session_id)]

    def clear_buffer(self, session_id: str) -> None:
        with self._lock:
            self._buffers.pop(session_id, None)

    @property
    def buffered_session_ids(self) -> list[str]:
        with self._lock:
            return list(self._buffers)

    # ------------------------------------------------------------------
    # Pub/sub
    # ------------------------------------------------------------------

    def publish(self, event: ServerEvent) -> None:
        """Buffer the event (pings excluded) and deliver it to matching subscribers."""
        with self._lock:
            if event.type != ServerEventType.PING:
                self._buffers.setdefault(event.session_id, []).append(
                    _BufferedEvent(event=event, received_at=self._clock())
                )
                self._trim(event.session_id)

            targets = []
            for sub in self._subscriptions:
                if sub.key not in (WILDCARD, event.session_id):
                    continue
                if sub.replaying:
                    sub.pending.append(event)
                else:
                    targets.append(sub)

        for sub in targets:
            self._deliver(sub, event)

    def subscribe(
        self,
        session_id: str,
        handler: EventHandler,
        replay_buffered: bool = True,
    ) -> Callable[[], None]:
        """Register ``handler`` for a session id (or ``"*"``).

        With ``replay_buffered`` the handler receives the buffered snapshot
        before this call returns, followed by everything published after
        registration, with no gaps and no duplicates.

        Returns:
            A function that removes the subscription.
        """
        replay = replay_buffered and session_id != WILDCARD
        sub = _Subscription(key=session_id, handler=handler, replaying=replay)

        with self._lock:
            snapshot = [entry.event for entry in self._trim(session_id)] if replay else []
            self._subscriptions.append(sub)

        if replay:
            for event in snapshot:
                self._deliver(sub, event)
            while True:
                with self._lock:
                    if not sub.pending:
                        sub.replaying = False
                        break
                    parked, sub.pending = sub.pending, []
                for event in parked:
                    self._deliver(sub, event)

        def unsubscribe() -> None:
            with self._lock:
                if sub in self._subscriptions:
                    self._subscriptions.remove(sub)

        return unsubscribe

    def _deliver(self, sub: _Subscription, event: ServerEvent) -> None:
        try:
            sub.handler(event)
        except Exception as e:
            console.print(
                f"[red][Bus] Handler for '{sub.key}' failed on {event.type.value}: {e}[/red]"
            )

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def session_subscriber_count(self, session_id: str) -> int:
        with self._lock:
            return sum(1 for sub in self._subscriptions if sub.key == session_id)

    def emit(
        self,
        type: ServerEventType,
        session_id: str,
        data: Optional[dict[str, Any]] = None,
    ) -> ServerEvent:
        """Build an event stamped with the current time and publish it."""
        event = ServerEvent(type=type, session_id=session_id, data=data or {})
        self.publish(event)
        return event
