"""Durable storage for session records and the queue.

Each session is one JSON document under ``<state_dir>/sessions/<id>.json``;
the queue is a single ``<state_dir>/queue.json``. Writes go through a temp
file and ``os.replace`` so a crash never leaves a half-written record.

Single-writer assumption: only this process writes these files. Nothing
here takes a lock.
"""

import os
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError
from rich.console import Console

from .models import OrchestrationState, QueueState, SessionSummary

console = Console()


def atomic_write(path: Path, content: str) -> None:
    """Write ``content`` to ``path`` via a temp file and atomic rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        tmp_path.write_text(content, encoding="utf-8")
        os.replace(tmp_path, path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise


class SessionStore:
    """One JSON record per session, last write wins."""

    def __init__(self, sessions_dir: Path):
        self.sessions_dir = Path(sessions_dir)

    def _path(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}.json"

    def save(self, state: OrchestrationState) -> None:
        """Persist the full session record. Raises OSError on write failure."""
        atomic_write(self._path(state.id), state.model_dump_json(indent=2))

    def load(self, session_id: Optional[str] = None) -> Optional[OrchestrationState]:
        """Load a session by id, or the most recent session when no id is given."""
        if session_id is None:
            ids = self.list()
            if not ids:
                return None
            session_id = ids[0]

        path = self._path(session_id)
        if not path.exists():
            return None
        try:
            return OrchestrationState.model_validate_json(path.read_text(encoding="utf-8"))
        except (ValidationError, OSError) as e:
            console.print(f"[yellow][Store] Unreadable session {session_id}: {e}[/yellow]")
            return None

    def list(self) -> List[str]:
        """Session ids, newest first. Ids are time-sortable."""
        if not self.sessions_dir.exists():
            return []
        return sorted((p.stem for p in self.sessions_dir.glob("*.json")), reverse=True)

    def summaries(self) -> List[SessionSummary]:
        """Summaries of every readable session, newest first."""
        summaries = []
        for session_id in self.list():
            state = self.load(session_id)
            if state is not None:
                summaries.append(SessionSummary.from_state(state))
        return summaries


class QueueStore:
    """The queue as a single JSON document."""

    def __init__(self, queue_file: Path):
        self.queue_file = Path(queue_file)

    def save(self, state: QueueState) -> None:
        atomic_write(self.queue_file, state.model_dump_json(indent=2))

    def load(self) -> Optional[QueueState]:
        if not self.queue_file.exists():
            return None
        try:
            return QueueState.model_validate_json(self.queue_file.read_text(encoding="utf-8"))
        except (ValidationError, OSError) as e:
            console.print(f"[yellow][Queue] Ignoring unreadable queue file: {e}[/yellow]")
            return None
