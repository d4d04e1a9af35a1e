"""Tests for the event bus and its replay buffer."""

import pytest

from feature_orchestrator.bus import QUEUE_SESSION_ID, WILDCARD, EventBus
from feature_orchestrator.models import ServerEvent, ServerEventType


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def log_event(session_id: str, n: int) -> ServerEvent:
    return ServerEvent(type=ServerEventType.LOG, session_id=session_id, data={"n": n})


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def bus(clock):
    return EventBus(max_buffer_size=100, buffer_ttl_seconds=30, clock=clock)


class TestPublish:
    def test_delivers_to_session_and_wildcard(self, bus):
        session, everything, other = [], [], []
        bus.subscribe("s1", session.append)
        bus.subscribe(WILDCARD, everything.append)
        bus.subscribe("s2", other.append)

        bus.publish(log_event("s1", 1))

        assert [e.data["n"] for e in session] == [1]
        assert [e.data["n"] for e in everything] == [1]
        assert other == []

    def test_failing_handler_is_isolated(self, bus):
        received = []

        def broken(event):
            raise RuntimeError("handler bug")

        bus.subscribe("s1", broken)
        bus.subscribe("s1", received.append)
        bus.publish(log_event("s1", 1))
        bus.publish(log_event("s1", 2))

        assert [e.data["n"] for e in received] == [1, 2]

    def test_unsubscribe(self, bus):
        received = []
        unsubscribe = bus.subscribe("s1", received.append)
        unsubscribe()
        unsubscribe()
        bus.publish(log_event("s1", 1))

        assert received == []
        assert bus.subscriber_count == 0

    def test_emit_stamps_session_and_type(self, bus):
        received = []
        bus.subscribe(QUEUE_SESSION_ID, received.append)
        event = bus.emit(ServerEventType.STATUS, QUEUE_SESSION_ID, {"status": "ok"})

        assert received == [event]
        assert event.session_id == QUEUE_SESSION_ID


class TestReplay:
    def test_late_subscriber_gets_snapshot_then_live(self, bus):
        for n in range(1, 6):
            bus.publish(log_event("s1", n))

        received = []
        bus.subscribe("s1", received.append)
        bus.publish(log_event("s1", 6))

        assert [e.data["n"] for e in received] == [1, 2, 3, 4, 5, 6]

    def test_pings_are_delivered_but_never_buffered(self, bus):
        live = []
        bus.subscribe("s1", live.append)
        bus.emit(ServerEventType.PING, "s1")
        bus.publish(log_event("s1", 1))

        late = []
        bus.subscribe("s1", late.append)

        assert [e.type for e in live] == [ServerEventType.PING, ServerEventType.LOG]
        assert [e.type for e in late] == [ServerEventType.LOG]

    def test_replay_can_be_disabled(self, bus):
        bus.publish(log_event("s1", 1))
        received = []
        bus.subscribe("s1", received.append, replay_buffered=False)
        assert received == []

    def test_wildcard_subscription_does_not_replay(self, bus):
        bus.publish(log_event("s1", 1))
        received = []
        bus.subscribe(WILDCARD, received.append)
        assert received == []

    def test_events_published_during_replay_follow_the_snapshot(self, bus):
        """A handler that publishes while replaying sees no gap and no duplicate."""
        for n in range(1, 4):
            bus.publish(log_event("s1", n))

        received = []

        def handler(event):
            received.append(event.data["n"])
            if event.data["n"] == 1:
                bus.publish(log_event("s1", 100))

        bus.subscribe("s1", handler)
        bus.publish(log_event("s1", 4))

        assert received == [1, 2, 3, 100, 4]


class TestBufferPolicy:
    def test_expired_events_are_dropped(self, bus, clock):
        bus.publish(log_event("s1", 1))
        clock.now += 20
        bus.publish(log_event("s1", 2))
        clock.now += 15

        assert [e.data["n"] for e in bus.get_buffered_events("s1")] == [2]

    def test_cap_keeps_most_recent(self, clock):
        bus = EventBus(max_buffer_size=3, buffer_ttl_seconds=30, clock=clock)
        for n in range(1, 6):
            bus.publish(log_event("s1", n))

        assert [e.data["n"] for e in bus.get_buffered_events("s1")] == [3, 4, 5]

    def test_empty_buffers_are_deleted(self, bus, clock):
        bus.publish(log_event("s1", 1))
        assert bus.buffered_session_ids == ["s1"]

        clock.now += 31
        assert bus.get_buffered_events("s1") == []
        assert bus.buffered_session_ids == []

    def test_buffers_are_per_session(self, bus):
        bus.publish(log_event("s1", 1))
        bus.publish(log_event("s2", 2))
        bus.clear_buffer("s1")

        assert bus.get_buffered_events("s1") == []
        assert [e.data["n"] for e in bus.get_buffered_events("s2")] == [2]

    def test_subscriber_counts(self, bus):
        bus.subscribe("s1", lambda e: None)
        bus.subscribe("s1", lambda e: None)
        bus.subscribe(WILDCARD, lambda e: None)

        assert bus.subscriber_count == 3
        assert bus.session_subscriber_count("s1") == 2
