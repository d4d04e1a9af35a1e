"""Wiring of the orchestration components for one process."""

from dataclasses import dataclass
from typing import Optional

from .agents import AgentSet
from .bus import EventBus
from .models import OrchestratorConfig
from .orchestration.engine import Orchestrator
from .orchestration.queue import SessionQueue
from .orchestration.registry import SessionRegistry
from .state import QueueStore, SessionStore


@dataclass
class Runtime:
    """Everything a server (or an in-process CLI run) needs, created once at startup."""
    config: OrchestratorConfig
    bus: EventBus
    sessions: SessionStore
    orchestrator: Orchestrator
    registry: SessionRegistry
    queue: SessionQueue


def build_runtime(
    config: Optional[OrchestratorConfig] = None,
    agents: Optional[AgentSet] = None,
) -> Runtime:
    config = config or OrchestratorConfig.load()
    agents = agents or AgentSet.default(config)

    bus = EventBus(
        max_buffer_size=config.event_buffer_max_size,
        buffer_ttl_seconds=config.event_buffer_ttl_seconds,
    )
    sessions = SessionStore(config.sessions_dir)
    orchestrator = Orchestrator(agents, sessions, config)
    registry = SessionRegistry(orchestrator, sessions, bus)
    queue = SessionQueue(QueueStore(config.queue_file), bus, registry.run_session)

    return Runtime(
        config=config,
        bus=bus,
        sessions=sessions,
        orchestrator=orchestrator,
        registry=registry,
        queue=queue,
    )
