"""Orchestration engine: drives one feature request to approval.

The pipeline is prompting -> (implementing -> reviewing)* -> approved/failed.
The session record is persisted after every transition, and
``last_failed_step`` marks a step whose effect has not been recorded yet, so
an interrupted session can be resumed at exactly the step that was in flight.
"""

import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from rich.console import Console

from ..agents import AgentSet, extract_feedback, is_approved
from ..models import (
    AgentName,
    AgentResponse,
    AgentResult,
    AgentRole,
    LogLevel,
    OrchestrationState,
    OrchestrationStatus,
    OrchestratorConfig,
    OrchestratorOptions,
    PipelineStep,
    ServerEvent,
    ServerEventType,
    generate_session_id,
)
from ..prompts import build_feedback_prompt
from ..protocols import SessionRepository

console = Console()

FEATURE_PREVIEW_CHARS = 100


@dataclass
class OrchestratorCallbacks:
    """Hooks through which a run talks to the outside world.

    ``on_question`` is the only suspension point besides agent calls: the run
    does not advance until it resolves. It receives the question text and the
    id carried by the matching ``question`` event.
    """
    on_event: Callable[[ServerEvent], None]
    on_question: Callable[[str, str], Awaitable[bool]]


class Orchestrator:
    """Runs sessions against a set of agents and a session store."""

    def __init__(
        self,
        agents: AgentSet,
        store: SessionRepository,
        config: Optional[OrchestratorConfig] = None,
    ):
        self.agents = agents
        self.store = store
        self.config = config or OrchestratorConfig()

    async def run(
        self,
        feature: str,
        options: OrchestratorOptions,
        callbacks: OrchestratorCallbacks,
        resume_state: Optional[OrchestrationState] = None,
        session_id: Optional[str] = None,
    ) -> OrchestrationState:
        """Run (or resume) a session until it is approved or failed.

        Args:
            feature: Free-text feature request (ignored when resuming)
            options: Session options; a resumed session keeps its working dir
            callbacks: Event sink and question gate
            resume_state: Previously persisted session to continue
            session_id: Id for a fresh session (generated when omitted)

        Returns:
            The terminal session state.
        """
        return await _PipelineRun(self, feature, options, callbacks, resume_state, session_id).execute()


class _PipelineRun:
    """Mutable working copy of one session for the duration of a run."""

    def __init__(
        self,
        orchestrator: Orchestrator,
        feature: str,
        options: OrchestratorOptions,
        callbacks: OrchestratorCallbacks,
        resume_state: Optional[OrchestrationState],
        session_id: Optional[str],
    ):
        self.agents = orchestrator.agents
        self.store = orchestrator.store
        self.config = orchestrator.config
        self.callbacks = callbacks
        self.resumed = resume_state is not None

        if resume_state is not None:
            self.state = resume_state
            self.options = options.model_copy(update={"working_dir": resume_state.working_dir})
        else:
            self.options = options
            self.state = OrchestrationState(
                id=session_id or generate_session_id(),
                feature=feature,
                max_iterations=options.max_iterations,
                working_dir=options.working_dir,
            )

        # Captured before anything mutates the record
        self.resume_step = self.state.last_failed_step
        self.resume_iteration = self.state.iteration

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def emit(self, type: ServerEventType, data: dict[str, Any]) -> None:
        self.callbacks.on_event(ServerEvent(type=type, session_id=self.state.id, data=data))

    def log(self, message: str, level: LogLevel = LogLevel.INFO) -> None:
        self.emit(ServerEventType.LOG, {"level": level.value, "message": message})

    def persist(self) -> None:
        """Write through to the store. Failures degrade resume, they do not abort."""
        try:
            self.store.save(self.state)
        except OSError as e:
            console.print(f"[red][Engine] Failed to persist session {self.state.id}: {e}[/red]")
            self.log(f"Failed to persist session state: {e}", LogLevel.ERROR)

    def emit_status(self) -> None:
        self.emit(ServerEventType.STATUS, {
            "status": self.state.status.value,
            "iteration": self.state.iteration,
            "max_iterations": self.state.max_iterations,
        })

    def emit_iteration(self, iteration: int, phase: str) -> None:
        self.emit(ServerEventType.ITERATION, {
            "iteration": iteration,
            "max_iterations": self.state.max_iterations,
            "phase": phase,
        })

    def begin_step(self, status: OrchestrationStatus, step: PipelineStep) -> None:
        self.state.status = status
        self.state.last_failed_step = step
        self.persist()

    def record(self, agent: AgentName, role: AgentRole, content: str, iteration: int) -> None:
        """Append a transcript entry, clear the resume marker and persist."""
        self.state.history.append(
            AgentResponse(agent=agent, role=role, content=content, iteration=iteration)
        )
        self.state.last_failed_step = None
        self.persist()
        if self.options.verbose:
            self.log(content, LogLevel.VERBOSE)

    def complete(self, status: OrchestrationStatus, iterations: int) -> None:
        self.emit(ServerEventType.COMPLETE, {"status": status.value, "iterations": iterations})

    def fail(self, message: str) -> OrchestrationState:
        """Agent failure: fatal error event, terminal status, complete event."""
        self.emit(ServerEventType.ERROR, {"message": message, "fatal": True})
        self.state.status = OrchestrationStatus.FAILED
        self.persist()
        self.complete(OrchestrationStatus.FAILED, self.state.iteration)
        return self.state

    def abort(self) -> OrchestrationState:
        """The user answered no at a question gate."""
        self.log("Aborted by user")
        self.state.status = OrchestrationStatus.FAILED
        self.persist()
        self.complete(OrchestrationStatus.FAILED, self.state.iteration)
        return self.state

    async def ask(self, question: str) -> bool:
        """Suspend on the question gate with the wait recorded in the session."""
        previous = self.state.status
        self.state.status = OrchestrationStatus.WAITING_FOR_INPUT
        self.state.pending_question = question
        self.persist()
        self.emit_status()
        question_id = uuid.uuid4().hex[:12]
        self.emit(ServerEventType.QUESTION, {"question": question, "question_id": question_id})

        answer = await self.callbacks.on_question(question, question_id)

        self.state.status = previous
        self.state.pending_question = None
        self.persist()
        self.emit_status()
        return bool(answer)

    async def invoke(
        self,
        agent: AgentName,
        role: AgentRole,
        invoker,
        prompt: str,
        timeout: float,
    ) -> AgentResult:
        self.emit(ServerEventType.AGENT_START, {"agent": agent.value, "role": role.value})
        result = await invoker.invoke(prompt, self.options.working_dir, timeout)
        self.emit(ServerEventType.AGENT_COMPLETE, {
            "agent": agent.value,
            "role": role.value,
            "output": result.output,
            "success": result.success,
        })
        return result

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def generate_prompt(self) -> bool:
        self.emit_iteration(1, "PROMPTING")
        self.begin_step(OrchestrationStatus.PROMPTING, PipelineStep.PROMPTING)

        result = await self.invoke(
            AgentName.CODEX, AgentRole.PROMPT_GENERATOR, self.agents.generator,
            self.state.feature, self.config.generator_timeout_seconds,
        )
        if not result.success:
            self.fail(result.error or "Failed to generate prompt")
            return False

        self.state.generated_prompt = result.output
        self.record(AgentName.CODEX, AgentRole.PROMPT_GENERATOR, result.output, 0)
        return True

    async def implement(self, feedback: Optional[str]) -> Optional[bool]:
        """Run the implementer for the current iteration.

        Returns True on success, False on agent failure, None when aborted.
        """
        state = self.state
        self.begin_step(OrchestrationStatus.IMPLEMENTING, PipelineStep.IMPLEMENTING)
        self.emit_iteration(state.iteration, "IMPLEMENTING")
        self.emit_status()

        if state.iteration == 1 or not feedback:
            prompt = state.generated_prompt or ""
        else:
            prompt = build_feedback_prompt(state.feature, feedback, state.iteration)

        if self.options.interactive and state.iteration > 1 and feedback:
            self.log(f"Reviewer Feedback:\n{feedback}")
            if not await self.ask("Continue with next iteration?"):
                return None

        result = await self.invoke(
            AgentName.CLAUDE, AgentRole.IMPLEMENTER, self.agents.implementer,
            prompt, self.config.implementer_timeout_seconds,
        )
        if not result.success:
            self.fail(result.error or "Claude implementation failed")
            return False

        self.record(AgentName.CLAUDE, AgentRole.IMPLEMENTER, result.output, state.iteration)
        return True

    async def review(self) -> Optional[str]:
        """Run the reviewer for the current iteration. Returns its output, or None on failure."""
        self.begin_step(OrchestrationStatus.REVIEWING, PipelineStep.REVIEWING)
        self.emit_status()

        result = await self.invoke(
            AgentName.CODEX, AgentRole.REVIEWER, self.agents.reviewer,
            self.state.feature, self.config.reviewer_timeout_seconds,
        )
        if not result.success:
            self.fail(result.error or "Codex review failed")
            return None

        self.record(AgentName.CODEX, AgentRole.REVIEWER, result.output, self.state.iteration)
        return result.output

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def execute(self) -> OrchestrationState:
        state = self.state
        preview = state.feature[:FEATURE_PREVIEW_CHARS]
        if len(state.feature) > FEATURE_PREVIEW_CHARS:
            preview += "..."

        self.log(f"Session: {state.id}")
        self.log(f"Feature: {preview}")
        self.log(f"Working directory: {self.options.working_dir}")
        if self.resumed:
            step = self.resume_step.value if self.resume_step else state.status.value
            self.log(f"Resuming from iteration: {state.iteration}, step: {step}")

        if not state.generated_prompt:
            if not await self.generate_prompt():
                return state
            if self.options.interactive and not await self.ask("Proceed with implementation?"):
                return self.abort()
        else:
            self.log("Using saved prompt from previous session")

        feedback: Optional[str] = None
        if self.resumed:
            last_review = state.last_review()
            if last_review is not None and not is_approved(last_review.content):
                feedback = extract_feedback(last_review.content)

        # Iteration at which the implementer must be skipped (side effect already happened)
        skip_at: Optional[int] = (
            self.resume_iteration if self.resume_step == PipelineStep.REVIEWING else None
        )
        # True when state.iteration already names the next implementing iteration
        carried = self.resume_step == PipelineStep.IMPLEMENTING and state.iteration > 0

        while True:
            while True:
                skipping = skip_at is not None and state.iteration == skip_at

                if skipping:
                    self.emit_iteration(state.iteration, "RESUMING REVIEW")
                    self.log("Skipping implementation - resuming at review step")
                else:
                    if carried:
                        if state.iteration > state.max_iterations:
                            break
                        carried = False
                    else:
                        if state.iteration >= state.max_iterations:
                            break
                        state.iteration += 1

                    implemented = await self.implement(feedback)
                    if implemented is None:
                        return self.abort()
                    if not implemented:
                        return state

                output = await self.review()
                if output is None:
                    return state

                reviewed_iteration = state.iteration
                if skipping:
                    # The skipped review stands in for a full iteration; count it once
                    skip_at = None
                    state.iteration += 1
                    carried = True

                if is_approved(output):
                    state.status = OrchestrationStatus.APPROVED
                    self.persist()
                    self.complete(OrchestrationStatus.APPROVED, reviewed_iteration)
                    return state

                feedback = extract_feedback(output)
                self.log("Changes requested - continuing to next iteration")

            self.log(f"Max iterations ({state.max_iterations}) reached without approval")

            if self.options.interactive and await self.ask("Continue with additional iterations?"):
                state.max_iterations += self.config.extension_iterations
                state.last_failed_step = None
                self.persist()
                self.log(f"Extended to {state.max_iterations} iterations")
                continue

            state.status = OrchestrationStatus.FAILED
            self.persist()
            self.complete(OrchestrationStatus.FAILED, state.iteration)
            return state
