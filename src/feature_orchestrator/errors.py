"""Exceptions raised by the orchestration layer.

The HTTP routes translate these into status codes; the CLI prints them.
"""


class OrchestratorError(Exception):
    """Base class for orchestrator errors."""


class SessionNotFoundError(OrchestratorError):
    """No stored session has the requested id."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SessionActiveError(OrchestratorError):
    """The session already has a running pipeline in this process."""

    def __init__(self, session_id: str):
        super().__init__(f"Session is already running: {session_id}")
        self.session_id = session_id


class SessionNotResumableError(OrchestratorError):
    """Approved sessions are final and cannot be resumed."""

    def __init__(self, session_id: str, status: str):
        super().__init__(f"Session {session_id} is {status} and cannot be resumed")
        self.session_id = session_id
        self.status = status


class NoPendingQuestionError(OrchestratorError):
    def __init__(self, session_id: str):
        super().__init__(f"No pending question for session {session_id}")
        self.session_id = session_id


class QuestionMismatchError(OrchestratorError):
    """The answer names a question that is no longer the pending one."""

    def __init__(self, session_id: str, question_id: str):
        super().__init__(f"Question {question_id} is not pending for session {session_id}")
        self.session_id = session_id
        self.question_id = question_id
