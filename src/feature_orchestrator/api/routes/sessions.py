"""Session endpoints: start, resume, answer questions, inspect, stream."""

import os
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from ...errors import (
    NoPendingQuestionError,
    QuestionMismatchError,
    SessionActiveError,
    SessionNotFoundError,
    SessionNotResumableError,
)
from ...models import OrchestrationState, OrchestratorOptions, SessionSummary
from ...runtime import Runtime
from ..sse import event_stream

router = APIRouter()

SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


class SessionOptionsRequest(BaseModel):
    """Caller-supplied options; anything omitted takes the server default."""
    max_iterations: Optional[int] = Field(default=None, ge=1)
    interactive: bool = True
    verbose: bool = False
    working_dir: Optional[str] = None


class StartSessionRequest(BaseModel):
    feature: str = Field(min_length=1)
    options: SessionOptionsRequest = Field(default_factory=SessionOptionsRequest)


class ResumeSessionRequest(BaseModel):
    interactive: bool = True
    verbose: bool = False


class RespondRequest(BaseModel):
    answer: bool
    question_id: Optional[str] = None


class SessionStartedResponse(BaseModel):
    session_id: str
    message: str
    events_url: str


class SessionListResponse(BaseModel):
    sessions: list[SessionSummary]
    active: list[str]
    sessions_dir: str


class SessionDetailResponse(BaseModel):
    session: OrchestrationState
    active: bool
    pending_question: Optional[str] = None
    pending_question_id: Optional[str] = None


class MessageResponse(BaseModel):
    message: str


def get_runtime(request: Request) -> Runtime:
    """Get the orchestration runtime from app state."""
    return request.app.state.runtime


def to_options(runtime: Runtime, body: SessionOptionsRequest) -> OrchestratorOptions:
    return OrchestratorOptions(
        max_iterations=body.max_iterations or runtime.config.default_max_iterations,
        interactive=body.interactive,
        verbose=body.verbose,
        working_dir=body.working_dir or os.getcwd(),
    )


@router.get("/sessions", response_model=SessionListResponse)
async def list_sessions(request: Request) -> SessionListResponse:
    """List stored sessions, newest first."""
    runtime = get_runtime(request)
    return SessionListResponse(
        sessions=runtime.sessions.summaries(),
        active=runtime.registry.active_session_ids,
        sessions_dir=str(runtime.sessions.sessions_dir),
    )


@router.post("/sessions", response_model=SessionStartedResponse, status_code=202)
async def start_session(request: Request, body: StartSessionRequest) -> SessionStartedResponse:
    """Start a session in the background."""
    runtime = get_runtime(request)
    session_id = runtime.registry.start(body.feature, to_options(runtime, body.options))
    return SessionStartedResponse(
        session_id=session_id,
        message="Session started",
        events_url=f"/api/sessions/{session_id}/events",
    )


@router.get("/sessions/{session_id}", response_model=SessionDetailResponse)
async def get_session(request: Request, session_id: str) -> SessionDetailResponse:
    runtime = get_runtime(request)
    state = runtime.sessions.load(session_id)
    if state is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return SessionDetailResponse(
        session=state,
        active=runtime.registry.is_active(session_id),
        pending_question=runtime.registry.pending_question(session_id),
        pending_question_id=runtime.registry.pending_question_id(session_id),
    )


@router.post("/sessions/{session_id}/resume", response_model=SessionStartedResponse, status_code=202)
async def resume_session(
    request: Request,
    session_id: str,
    body: ResumeSessionRequest = ResumeSessionRequest(),
) -> SessionStartedResponse:
    """Resume a stored session at the step that was in flight."""
    runtime = get_runtime(request)
    try:
        runtime.registry.resume(session_id, interactive=body.interactive, verbose=body.verbose)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (SessionActiveError, SessionNotResumableError) as e:
        raise HTTPException(status_code=409, detail=str(e))

    return SessionStartedResponse(
        session_id=session_id,
        message="Session resumed",
        events_url=f"/api/sessions/{session_id}/events",
    )


@router.post("/sessions/{session_id}/respond", response_model=MessageResponse)
async def respond(request: Request, session_id: str, body: RespondRequest) -> MessageResponse:
    """Answer the session's pending question."""
    runtime = get_runtime(request)
    try:
        runtime.registry.respond(session_id, body.answer, question_id=body.question_id)
    except NoPendingQuestionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except QuestionMismatchError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return MessageResponse(message="Response recorded")


@router.get("/sessions/{session_id}/events")
async def stream_session_events(request: Request, session_id: str) -> StreamingResponse:
    """Server-sent events for one session, replaying recent history first."""
    runtime = get_runtime(request)
    stream = event_stream(
        runtime.bus,
        request.app.state.connections,
        session_id,
        is_disconnected=request.is_disconnected,
    )
    return StreamingResponse(stream, media_type="text/event-stream", headers=SSE_HEADERS)
