"""HTTP client for a running orchestrator server.

Used by the CLI's queue and watch commands.
"""

import json
from typing import Any, Iterator, Optional

import httpx

from .models import QueueItem, QueueState, ServerEvent

DEFAULT_SERVER_URL = "http://127.0.0.1:3100"


class OrchestratorClient:
    def __init__(self, base_url: str = DEFAULT_SERVER_URL, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(base_url=self.base_url, timeout=timeout)

    def __enter__(self) -> "OrchestratorClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def health(self) -> dict[str, Any]:
        r = self._client.get("/health")
        r.raise_for_status()
        return r.json()

    # Sessions

    def start_session(self, feature: str, options: Optional[dict[str, Any]] = None) -> str:
        r = self._client.post("/api/sessions", json={"feature": feature, "options": options or {}})
        r.raise_for_status()
        return r.json()["session_id"]

    def resume_session(self, session_id: str, interactive: bool = True) -> None:
        r = self._client.post(
            f"/api/sessions/{session_id}/resume",
            json={"interactive": interactive},
        )
        r.raise_for_status()

    def respond(self, session_id: str, answer: bool, question_id: Optional[str] = None) -> None:
        body = {"answer": answer, "question_id": question_id}
        r = self._client.post(f"/api/sessions/{session_id}/respond", json=body)
        r.raise_for_status()

    def get_session(self, session_id: str) -> dict[str, Any]:
        r = self._client.get(f"/api/sessions/{session_id}")
        r.raise_for_status()
        return r.json()

    # Queue

    def get_queue(self) -> QueueState:
        r = self._client.get("/api/queue")
        r.raise_for_status()
        return QueueState.model_validate(r.json()["queue"])

    def add_to_queue(self, features: list[str], options: Optional[dict[str, Any]] = None) -> list[QueueItem]:
        items = [{"feature": feature, "options": options or {}} for feature in features]
        if len(items) == 1:
            r = self._client.post("/api/queue", json=items[0])
            r.raise_for_status()
            return [QueueItem.model_validate(r.json())]
        r = self._client.post("/api/queue/batch", json={"items": items})
        r.raise_for_status()
        return [QueueItem.model_validate(item) for item in r.json()["items"]]

    def remove_from_queue(self, item_id: str) -> bool:
        r = self._client.delete(f"/api/queue/{item_id}")
        if r.status_code == 404:
            return False
        r.raise_for_status()
        return True

    def clear_queue(self) -> int:
        r = self._client.delete("/api/queue")
        r.raise_for_status()
        return r.json()["removed"]

    # Streams

    def stream_events(self, path: str) -> Iterator[ServerEvent]:
        """Follow an SSE endpoint, yielding parsed events until the server closes it."""
        with self._client.stream("GET", path, timeout=None) as response:
            response.raise_for_status()
            for line in response.iter_lines():
                if not line.startswith("data: "):
                    continue
                yield ServerEvent.model_validate(json.loads(line[len("data: "):]))

    def session_events(self, session_id: str) -> Iterator[ServerEvent]:
        return self.stream_events(f"/api/sessions/{session_id}/events")

    def queue_events(self) -> Iterator[ServerEvent]:
        return self.stream_events("/api/queue/events")
