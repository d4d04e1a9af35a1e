"""Feature Orchestrator - drives feature requests to approval.

Alternates an implementer agent (Claude Code) with a reviewer agent (Codex)
until the reviewer approves, with resumable sessions, a durable queue and
live progress streams.
"""

__version__ = "0.1.0"
