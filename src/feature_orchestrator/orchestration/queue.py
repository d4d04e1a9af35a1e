"""Durable single-lane FIFO of feature requests.

Pending items are processed strictly in insertion order, one at a time, by a
single background worker task. The whole queue is persisted after every
mutation and every item transition; queue events are published on the bus
under the reserved ``__queue__`` session id.
"""

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from rich.console import Console

from ..bus import QUEUE_SESSION_ID, EventBus
from ..models import (
    LogLevel,
    OrchestrationState,
    OrchestrationStatus,
    OrchestratorOptions,
    QueueEventType,
    QueueItem,
    QueueItemStatus,
    QueueState,
    ServerEventType,
    generate_queue_item_id,
    generate_session_id,
)
from ..protocols import QueueRepository

console = Console()

INTERRUPTED_ERROR = "Interrupted by restart"

# Runs one session for a queue item: (feature, options, session_id) -> final state
SessionRunner = Callable[[str, OrchestratorOptions, str], Awaitable[OrchestrationState]]


class SessionQueue:
    """Single-lane processor for queued feature requests."""

    def __init__(self, store: QueueRepository, bus: EventBus, run_session: SessionRunner):
        self.store = store
        self.bus = bus
        self.run_session = run_session
        self._state = QueueState()
        self._worker: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Persistence / events
    # ------------------------------------------------------------------

    def _persist(self) -> None:
        try:
            self.store.save(self._state)
        except OSError as e:
            console.print(f"[red][Queue] Failed to persist queue: {e}[/red]")

    def _emit(self, event_type: QueueEventType, data: dict[str, Any]) -> None:
        """Publish a queue event carrying a snapshot of the whole queue."""
        self.bus.emit(ServerEventType.LOG, QUEUE_SESSION_ID, {
            "level": LogLevel.INFO.value,
            "message": f"[Queue] {event_type.value}",
            "queue_event": {
                "type": event_type.value,
                "timestamp": datetime.now().isoformat(),
                "data": {**data, "queue": self._state.model_dump(mode="json")},
            },
        })

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Load the persisted queue and reconcile items left running by a crash."""
        loaded = self.store.load()
        self._state = loaded or QueueState()

        recovered = 0
        for item in self._state.items:
            if item.status == QueueItemStatus.RUNNING:
                item.status = QueueItemStatus.FAILED
                item.error = INTERRUPTED_ERROR
                item.completed_at = datetime.now()
                recovered += 1
        self._state.is_processing = False
        self._state.current_item_id = None
        self._persist()

        if recovered:
            console.print(f"[yellow][Queue] Marked {recovered} interrupted item(s) as failed[/yellow]")

        if self._state.first_pending() is not None:
            self._ensure_processing()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _new_item(self, feature: str, options: Optional[OrchestratorOptions]) -> QueueItem:
        return QueueItem(
            id=generate_queue_item_id(),
            feature=feature,
            options=options or OrchestratorOptions(),
        )

    def add(self, feature: str, options: Optional[OrchestratorOptions] = None) -> QueueItem:
        item = self._new_item(feature, options)
        self._state.items.append(item)
        self._persist()
        self._emit(QueueEventType.ITEM_ADDED, {"item": item.model_dump(mode="json")})
        self._ensure_processing()
        return item.model_copy(deep=True)

    def add_many(
        self,
        requests: list[tuple[str, Optional[OrchestratorOptions]]],
    ) -> list[QueueItem]:
        """Append several items with a single persist, preserving their order."""
        items = [self._new_item(feature, options) for feature, options in requests]
        self._state.items.extend(items)
        self._persist()
        for item in items:
            self._emit(QueueEventType.ITEM_ADDED, {"item": item.model_dump(mode="json")})
        self._ensure_processing()
        return [item.model_copy(deep=True) for item in items]

    def remove(self, item_id: str) -> bool:
        """Remove an item that is still pending."""
        item = self._state.get_item(item_id)
        if item is None or item.status != QueueItemStatus.PENDING:
            return False
        self._state.items.remove(item)
        self._persist()
        self._emit(QueueEventType.ITEM_REMOVED, {"item_id": item_id})
        return True

    def clear_pending(self) -> int:
        """Drop every pending item. Returns how many were removed."""
        before = len(self._state.items)
        self._state.items = [
            item for item in self._state.items if item.status != QueueItemStatus.PENDING
        ]
        removed = before - len(self._state.items)
        self._persist()
        self._emit(QueueEventType.CLEARED, {"removed": removed})
        return removed

    def get_state(self) -> QueueState:
        return self._state.model_copy(deep=True)

    def get_item(self, item_id: str) -> Optional[QueueItem]:
        item = self._state.get_item(item_id)
        return item.model_copy(deep=True) if item else None

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    @property
    def is_processing(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def _ensure_processing(self) -> None:
        """Start the worker unless one is already running."""
        if self.is_processing:
            return
        self._state.is_processing = True
        self._worker = asyncio.get_running_loop().create_task(self._process())

    async def _process(self) -> None:
        while True:
            item = self._state.first_pending()
            if item is None:
                self._state.is_processing = False
                self._state.current_item_id = None
                self._persist()
                return
            await self._process_item(item)

    async def _process_item(self, item: QueueItem) -> None:
        item.status = QueueItemStatus.RUNNING
        item.started_at = datetime.now()
        item.session_id = generate_session_id()
        self._state.is_processing = True
        self._state.current_item_id = item.id
        self._persist()
        self._emit(QueueEventType.ITEM_STARTED, {
            "item_id": item.id,
            "session_id": item.session_id,
        })
        console.print(f"[Queue] Processing {item.id}: {item.feature[:60]}")

        try:
            final = await self.run_session(item.feature, item.options, item.session_id)
            if final.status == OrchestrationStatus.APPROVED:
                item.status = QueueItemStatus.COMPLETED
            else:
                item.status = QueueItemStatus.FAILED
                item.error = f"Session ended with status: {final.status.value}"
        except asyncio.CancelledError:
            raise
        except Exception as e:
            item.status = QueueItemStatus.FAILED
            item.error = str(e) or type(e).__name__

        item.completed_at = datetime.now()
        self._state.current_item_id = None
        self._persist()

        if item.status == QueueItemStatus.COMPLETED:
            self._emit(QueueEventType.ITEM_COMPLETED, {
                "item_id": item.id,
                "session_id": item.session_id,
            })
        else:
            console.print(f"[yellow][Queue] {item.id} failed: {item.error}[/yellow]")
            self._emit(QueueEventType.ITEM_FAILED, {
                "item_id": item.id,
                "session_id": item.session_id,
                "error": item.error,
            })

    async def wait_idle(self) -> None:
        """Wait until the worker has drained every pending item."""
        while self.is_processing:
            await asyncio.shield(self._worker)

    async def shutdown(self) -> None:
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)
