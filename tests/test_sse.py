"""Tests for the server-sent event transport."""

import asyncio
import json

import pytest

from feature_orchestrator.api import sse
from feature_orchestrator.api.sse import ConnectionTracker, KeepAlive, event_stream, format_sse
from feature_orchestrator.bus import EventBus
from feature_orchestrator.models import ServerEvent, ServerEventType


def parse(frame: str) -> dict:
    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    return json.loads(frame[len("data: "):])


def log_event(session_id: str, message: str) -> ServerEvent:
    return ServerEvent(type=ServerEventType.LOG, session_id=session_id, data={"level": "info", "message": message})


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def tracker():
    return ConnectionTracker()


class TestFormat:
    def test_single_data_record(self):
        frame = format_sse(log_event("s1", "hello"))
        payload = parse(frame)
        assert payload["type"] == "log"
        assert payload["session_id"] == "s1"
        assert payload["data"]["message"] == "hello"
        assert frame.count("\n\n") == 1


class TestConnectionTracker:
    def test_counts_per_session(self, tracker):
        tracker.increment("s1")
        tracker.increment("s1")
        tracker.increment("s2")
        assert tracker.count("s1") == 2
        assert tracker.total == 3

        tracker.decrement("s1")
        tracker.decrement("s1")
        assert tracker.count("s1") == 0
        assert tracker.active_sessions == ["s2"]

    def test_decrement_never_goes_negative(self, tracker):
        assert tracker.decrement("s1") == 0
        assert tracker.active_sessions == []


class TestEventStream:
    @pytest.mark.asyncio
    async def test_connected_then_replay_then_live(self, bus, tracker):
        bus.publish(log_event("s1", "one"))
        bus.publish(log_event("s1", "two"))
        stream = event_stream(bus, tracker, "s1")

        connected = parse(await stream.__anext__())
        assert connected["type"] == "status"
        assert connected["data"] == {"connected": True}
        assert tracker.count("s1") == 1

        replayed = [parse(await stream.__anext__())["data"]["message"] for _ in range(2)]
        assert replayed == ["one", "two"]

        bus.publish(log_event("s1", "three"))
        bus.publish(log_event("s2", "elsewhere"))
        assert parse(await stream.__anext__())["data"]["message"] == "three"

        await stream.aclose()
        assert tracker.count("s1") == 0
        assert bus.session_subscriber_count("s1") == 0

    @pytest.mark.asyncio
    async def test_stream_ends_when_client_disconnects(self, bus, tracker, monkeypatch):
        monkeypatch.setattr(sse, "DISCONNECT_POLL_SECONDS", 0.01)

        async def gone() -> bool:
            return True

        frames = [frame async for frame in event_stream(bus, tracker, "s1", is_disconnected=gone)]

        assert len(frames) == 1
        assert parse(frames[0])["data"] == {"connected": True}
        assert tracker.total == 0
        assert bus.subscriber_count == 0


class TestKeepAlive:
    def test_tick_pings_connected_sessions(self, bus, tracker):
        received = []
        bus.subscribe("s1", received.append)
        tracker.increment("s1")

        assert KeepAlive(bus, tracker).tick() == 1
        assert [e.type for e in received] == [ServerEventType.PING]
        assert bus.get_buffered_events("s1") == []

    def test_tick_without_connections(self, bus, tracker):
        assert KeepAlive(bus, tracker).tick() == 0

    @pytest.mark.asyncio
    async def test_background_pings_reach_streams(self, bus, tracker):
        keepalive = KeepAlive(bus, tracker, interval_seconds=0.01)
        stream = event_stream(bus, tracker, "s1")
        await stream.__anext__()

        keepalive.start()
        try:
            ping = parse(await asyncio.wait_for(stream.__anext__(), timeout=2))
        finally:
            await keepalive.stop()
            await stream.aclose()

        assert ping["type"] == "ping"

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, bus, tracker):
        keepalive = KeepAlive(bus, tracker, interval_seconds=0.01)
        keepalive.start()
        keepalive.start()
        await keepalive.stop()
        await keepalive.stop()
