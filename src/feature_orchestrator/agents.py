"""Agent invokers backed by the Claude Code and Codex CLIs.

Each invoker runs one CLI call as an asyncio subprocess. Invokers never raise:
missing executables, non-zero exits and timeouts all come back as a failed
AgentResult. On timeout the process is killed and whatever it had written so
far is returned as partial output. A cancelled invocation kills its process
before the cancellation propagates.
"""

import asyncio
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from rich.console import Console

from .models import AgentResult, OrchestratorConfig
from .prompts import build_generator_prompt, build_review_prompt
from .protocols import AgentInvoker

console = Console()

APPROVAL_MARKERS = ("APPROVED", "LGTM", "LOOKS GOOD")

# How long to wait for pipes to drain after killing a timed-out process
DRAIN_GRACE_SECONDS = 0.5


def is_approved(review_output: str) -> bool:
    """Case-insensitive, unanchored match against the approval markers.

    "not approved yet" also matches; this is observed behavior and is kept.
    """
    normalized = review_output.upper()
    return any(marker in normalized for marker in APPROVAL_MARKERS)


def extract_feedback(review_output: str) -> str:
    """Reviewer output minus blank lines and lines mentioning approval."""
    lines = [
        line for line in review_output.split("\n")
        if "APPROVED" not in line.upper() and line.strip()
    ]
    feedback = "\n".join(lines).strip()
    return feedback or review_output


async def _drain(stream: Optional[asyncio.StreamReader], chunks: list[bytes]) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            break
        chunks.append(chunk)


def _decode(chunks: list[bytes]) -> str:
    return b"".join(chunks).decode("utf-8", errors="replace")


async def _kill(proc: asyncio.subprocess.Process) -> None:
    try:
        proc.kill()
    except ProcessLookupError:
        pass
    await proc.wait()


async def _cancel_readers(readers: asyncio.Future) -> None:
    readers.cancel()
    try:
        await readers
    except asyncio.CancelledError:
        pass


async def run_agent_command(
    name: str,
    args: list[str],
    working_dir: str,
    timeout: float,
) -> AgentResult:
    """Run an agent CLI, capturing stdout/stderr with a hard timeout."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            cwd=working_dir,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (FileNotFoundError, PermissionError, OSError) as e:
        return AgentResult(success=False, output="", error=f"Failed to run {name}: {e}")

    stdout_chunks: list[bytes] = []
    stderr_chunks: list[bytes] = []
    readers = asyncio.gather(
        _drain(proc.stdout, stdout_chunks),
        _drain(proc.stderr, stderr_chunks),
    )

    try:
        await asyncio.wait_for(proc.wait(), timeout=timeout)
        await readers
    except asyncio.TimeoutError:
        await _kill(proc)
        try:
            await asyncio.wait_for(asyncio.shield(readers), timeout=DRAIN_GRACE_SECONDS)
        except asyncio.TimeoutError:
            await _cancel_readers(readers)
        partial_stderr = _decode(stderr_chunks).strip()
        error = f"{name} timed out after {timeout:g}s"
        if partial_stderr:
            error = f"{error}: {partial_stderr}"
        console.print(f"[yellow][Agents] {error}[/yellow]")
        return AgentResult(success=False, output=_decode(stdout_chunks), error=error)
    except asyncio.CancelledError:
        # The child must not outlive the run that owns it
        await _kill(proc)
        await _cancel_readers(readers)
        console.print(f"[yellow][Agents] {name} cancelled, process killed[/yellow]")
        raise

    stdout = _decode(stdout_chunks)
    stderr = _decode(stderr_chunks)

    if proc.returncode != 0:
        return AgentResult(
            success=False,
            output=stdout or stderr,
            error=stderr.strip() or f"{name} exited with code {proc.returncode}",
        )
    return AgentResult(success=True, output=stdout)


def find_claude_executable(command: str = "claude") -> str:
    """Resolve the Claude CLI from common install locations, then PATH."""
    if os.path.sep in command:
        return command
    home = Path.home()
    for candidate in (
        home / ".claude" / "local" / command,
        home / ".local" / "bin" / command,
        Path("/usr/local/bin") / command,
    ):
        if candidate.exists():
            return str(candidate)
    return shutil.which(command) or command


class ClaudeImplementer:
    """Implementer: lets Claude Code edit the working tree."""

    def __init__(self, command: str = "claude"):
        self.executable = find_claude_executable(command)

    async def invoke(self, prompt: str, working_dir: str, timeout: float) -> AgentResult:
        args = [self.executable, "-p", prompt, "--dangerously-skip-permissions"]
        return await run_agent_command("Claude", args, working_dir, timeout)


class CodexAgent:
    """Read-only Codex run whose final message is the result.

    The prompt is built from the text passed to ``invoke`` by ``prompt_builder``
    so the same class serves as both prompt generator and reviewer.
    """

    def __init__(self, prompt_builder, label: str, command: str = "codex"):
        self.prompt_builder = prompt_builder
        self.label = label
        self.command = command

    async def invoke(self, prompt: str, working_dir: str, timeout: float) -> AgentResult:
        fd, output_file = tempfile.mkstemp(prefix=f"codex-{self.label}-", suffix=".txt")
        os.close(fd)
        output_path = Path(output_file)
        try:
            args = [
                self.command, "exec",
                "--sandbox", "read-only",
                "-C", working_dir,
                "--output-last-message", output_file,
                self.prompt_builder(prompt),
            ]
            result = await run_agent_command("Codex", args, working_dir, timeout)
            if not result.success:
                return result

            last_message = output_path.read_text() if output_path.exists() else ""
            if last_message.strip():
                return AgentResult(success=True, output=last_message)
            return AgentResult(success=True, output=result.output.strip())
        except OSError as e:
            return AgentResult(success=False, output="", error=f"Failed to run Codex {self.label}: {e}")
        finally:
            output_path.unlink(missing_ok=True)


@dataclass
class AgentSet:
    """The three agent roles a pipeline needs."""
    generator: AgentInvoker
    implementer: AgentInvoker
    reviewer: AgentInvoker

    @classmethod
    def default(cls, config: OrchestratorConfig) -> "AgentSet":
        return cls(
            generator=CodexAgent(build_generator_prompt, "prompt", config.codex_command),
            implementer=ClaudeImplementer(config.claude_command),
            reviewer=CodexAgent(build_review_prompt, "review", config.codex_command),
        )
