"""Tests for the durable feature queue.

Tests cover:
- Strict FIFO, single-lane processing
- Persistence after every transition
- Crash recovery of items left running
- Removal and clearing of pending items
- Queue events on the reserved queue session id
"""

import asyncio
from datetime import datetime

import pytest

from fakes import MemoryQueueStore, make_agents, wait_until

from feature_orchestrator.bus import QUEUE_SESSION_ID, EventBus
from feature_orchestrator.models import (
    OrchestrationState,
    OrchestrationStatus,
    OrchestratorConfig,
    OrchestratorOptions,
    QueueItem,
    QueueItemStatus,
    QueueState,
    ServerEventType,
)
from feature_orchestrator.orchestration import SessionQueue
from feature_orchestrator.orchestration.queue import INTERRUPTED_ERROR
from feature_orchestrator.runtime import build_runtime


class FakeRunner:
    """Session runner returning scripted terminal statuses (or raising)."""

    def __init__(self, *outcomes, gate=None):
        self.outcomes = list(outcomes)
        self.gate = gate
        self.calls: list[tuple[str, str]] = []
        self.running = 0
        self.max_running = 0

    async def __call__(self, feature, options, session_id) -> OrchestrationState:
        self.calls.append((feature, session_id))
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
            outcome = self.outcomes.pop(0) if self.outcomes else OrchestrationStatus.APPROVED
            if isinstance(outcome, Exception):
                raise outcome
            return OrchestrationState(
                id=session_id, feature=feature, working_dir=options.working_dir, status=outcome
            )
        finally:
            self.running -= 1

    @property
    def features(self) -> list[str]:
        return [feature for feature, _ in self.calls]


@pytest.fixture
def store():
    return MemoryQueueStore()


@pytest.fixture
def bus():
    return EventBus()


def auto(tmp_path) -> OrchestratorOptions:
    return OrchestratorOptions(interactive=False, working_dir=str(tmp_path))


# =============================================================================
# Processing
# =============================================================================

class TestProcessing:
    @pytest.mark.asyncio
    async def test_items_run_in_order_one_at_a_time(self, store, bus, tmp_path):
        runner = FakeRunner()
        queue = SessionQueue(store, bus, runner)

        for feature in ("A", "B", "C"):
            queue.add(feature, auto(tmp_path))
        await queue.wait_idle()

        assert runner.features == ["A", "B", "C"]
        assert runner.max_running == 1
        state = queue.get_state()
        assert [i.status for i in state.items] == [QueueItemStatus.COMPLETED] * 3
        assert len({i.session_id for i in state.items}) == 3
        assert not state.is_processing
        assert state.current_item_id is None

    @pytest.mark.asyncio
    async def test_every_transition_is_persisted(self, store, bus, tmp_path):
        queue = SessionQueue(store, bus, FakeRunner())
        queue.add_many([("A", auto(tmp_path)), ("B", auto(tmp_path))])
        await queue.wait_idle()

        for snapshot in store.saves:
            running = [i for i in snapshot.items if i.status == QueueItemStatus.RUNNING]
            assert len(running) <= 1
            if running:
                assert snapshot.current_item_id == running[0].id

        statuses_of_a = [s.items[0].status for s in store.saves]
        assert statuses_of_a[0] == QueueItemStatus.PENDING
        assert QueueItemStatus.RUNNING in statuses_of_a
        assert statuses_of_a[-1] == QueueItemStatus.COMPLETED
        assert store.saves[-1].is_processing is False
        assert store.load() == queue.get_state()

    @pytest.mark.asyncio
    async def test_failures_do_not_stop_the_queue(self, store, bus, tmp_path):
        runner = FakeRunner(OrchestrationStatus.FAILED, RuntimeError("boom"), OrchestrationStatus.APPROVED)
        queue = SessionQueue(store, bus, runner)

        queue.add_many([("A", None), ("B", None), ("C", None)])
        await queue.wait_idle()

        a, b, c = queue.get_state().items
        assert a.status == QueueItemStatus.FAILED
        assert a.error == "Session ended with status: failed"
        assert b.status == QueueItemStatus.FAILED
        assert b.error == "boom"
        assert c.status == QueueItemStatus.COMPLETED
        assert all(i.started_at and i.completed_at for i in (a, b, c))

    @pytest.mark.asyncio
    async def test_idle_queue_restarts_on_add(self, store, bus, tmp_path):
        runner = FakeRunner()
        queue = SessionQueue(store, bus, runner)

        queue.add("A", auto(tmp_path))
        await queue.wait_idle()
        assert not queue.is_processing

        queue.add("B", auto(tmp_path))
        assert queue.is_processing
        await queue.wait_idle()
        assert runner.features == ["A", "B"]

    @pytest.mark.asyncio
    async def test_add_many_persists_once_and_keeps_order(self, store, bus, tmp_path):
        queue = SessionQueue(store, bus, FakeRunner(gate=asyncio.Event()))
        items = queue.add_many([("A", None), ("B", None), ("C", None)])

        assert [i.feature for i in items] == ["A", "B", "C"]
        assert len(store.saves) == 1
        assert [i.feature for i in store.saves[0].items] == ["A", "B", "C"]
        await queue.shutdown()


# =============================================================================
# Mutations
# =============================================================================

class TestMutations:
    @pytest.mark.asyncio
    async def test_only_pending_items_can_be_removed(self, store, bus, tmp_path):
        gate = asyncio.Event()
        runner = FakeRunner(gate=gate)
        queue = SessionQueue(store, bus, runner)
        first = queue.add("A", auto(tmp_path))
        second = queue.add("B", auto(tmp_path))

        await wait_until(lambda: queue.get_state().current_item_id == first.id)
        assert not queue.remove(first.id)
        assert queue.remove(second.id)
        assert not queue.remove("missing")

        gate.set()
        await queue.wait_idle()
        assert runner.features == ["A"]
        assert [i.id for i in queue.get_state().items] == [first.id]

    @pytest.mark.asyncio
    async def test_clear_pending_keeps_running_and_finished(self, store, bus, tmp_path):
        gate = asyncio.Event()
        queue = SessionQueue(store, bus, FakeRunner(gate=gate))
        queue.add_many([("A", None), ("B", None), ("C", None)])

        await wait_until(lambda: queue.get_state().current_item_id is not None)
        assert queue.clear_pending() == 2
        assert [i.feature for i in queue.get_state().items] == ["A"]

        gate.set()
        await queue.wait_idle()
        assert queue.get_state().items[0].status == QueueItemStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_get_state_is_a_copy(self, store, bus, tmp_path):
        queue = SessionQueue(store, bus, FakeRunner(gate=asyncio.Event()))
        queue.add("A", auto(tmp_path))

        snapshot = queue.get_state()
        snapshot.items.clear()
        assert len(queue.get_state().items) == 1
        await queue.shutdown()


# =============================================================================
# Startup recovery
# =============================================================================

class TestInitialize:
    @pytest.mark.asyncio
    async def test_running_items_are_failed_on_restart(self, bus, tmp_path):
        store = MemoryQueueStore(QueueState(
            items=[
                QueueItem(id="q-1", feature="A", status=QueueItemStatus.RUNNING,
                          session_id="s-1", started_at=datetime(2025, 1, 20, 9, 0)),
                QueueItem(id="q-2", feature="B"),
                QueueItem(id="q-3", feature="C"),
            ],
            is_processing=True,
            current_item_id="q-1",
        ))
        runner = FakeRunner()
        queue = SessionQueue(store, bus, runner)

        await queue.initialize()
        await queue.wait_idle()

        # The reconciled queue is persisted before any pending item starts
        cleaned = store.saves[0]
        assert not cleaned.is_processing
        assert cleaned.current_item_id is None
        assert [i.status for i in cleaned.items] == [
            QueueItemStatus.FAILED,
            QueueItemStatus.PENDING,
            QueueItemStatus.PENDING,
        ]
        assert cleaned.items[0].error == INTERRUPTED_ERROR
        for pending in cleaned.items[1:]:
            assert pending.session_id is None
            assert pending.started_at is None
            assert pending.error is None

        recovered, second, third = queue.get_state().items
        assert recovered.status == QueueItemStatus.FAILED
        assert recovered.error == INTERRUPTED_ERROR
        assert recovered.completed_at is not None
        assert second.status == QueueItemStatus.COMPLETED
        assert third.status == QueueItemStatus.COMPLETED
        assert runner.features == ["B", "C"]

    @pytest.mark.asyncio
    async def test_empty_store_stays_idle(self, store, bus):
        queue = SessionQueue(store, bus, FakeRunner())
        await queue.initialize()

        assert not queue.is_processing
        assert queue.get_state().items == []


# =============================================================================
# Queue events
# =============================================================================

class TestQueueEvents:
    @pytest.mark.asyncio
    async def test_events_use_queue_session_id(self, store, bus, tmp_path):
        events = []
        bus.subscribe(QUEUE_SESSION_ID, events.append)
        queue = SessionQueue(store, bus, FakeRunner(OrchestrationStatus.APPROVED, OrchestrationStatus.FAILED))

        queue.add("A", auto(tmp_path))
        queue.add("B", auto(tmp_path))
        await queue.wait_idle()
        added = queue.add("C", auto(tmp_path))
        assert queue.remove(added.id)
        await queue.wait_idle()
        queue.clear_pending()

        assert all(e.type == ServerEventType.LOG for e in events)
        types = [e.data["queue_event"]["type"] for e in events]
        assert types[:6] == [
            "queue_item_added",
            "queue_item_added",
            "queue_item_started",
            "queue_item_completed",
            "queue_item_started",
            "queue_item_failed",
        ]
        assert types[-1] == "queue_cleared"
        assert events[0].data["message"] == "[Queue] queue_item_added"
        assert events[0].data["queue_event"]["data"]["item"]["feature"] == "A"
        failed = events[5].data["queue_event"]["data"]
        assert failed["error"] == "Session ended with status: failed"

        by_type = {e.data["queue_event"]["type"]: e.data["queue_event"]["data"] for e in events}
        removed = by_type["queue_item_removed"]
        assert removed["item_id"] == added.id
        assert added.id not in [i["id"] for i in removed["queue"]["items"]]
        cleared = by_type["queue_cleared"]["queue"]
        assert [i["feature"] for i in cleared["items"]] == ["A", "B"]
        assert all(i["status"] != "pending" for i in cleared["items"])


# =============================================================================
# End to end with real sessions
# =============================================================================

class TestWithRuntime:
    @pytest.mark.asyncio
    async def test_queue_drives_real_sessions(self, tmp_path):
        runtime = build_runtime(OrchestratorConfig(state_dir=tmp_path / "state"), make_agents())

        item = runtime.queue.add("Add a health endpoint", auto(tmp_path))
        await runtime.queue.wait_idle()

        finished = runtime.queue.get_item(item.id)
        assert finished.status == QueueItemStatus.COMPLETED
        session = runtime.sessions.load(finished.session_id)
        assert session.status == OrchestrationStatus.APPROVED
        assert runtime.config.queue_file.exists()
