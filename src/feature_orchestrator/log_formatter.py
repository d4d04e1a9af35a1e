"""Formatting of sessions and progress events for CLI display.

Provides:
- Session list table formatting
- Single session detail view
- Rendering of live progress events
"""

import sys
from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .models import (
    OrchestrationState,
    OrchestrationStatus,
    QueueItemStatus,
    QueueState,
    ServerEvent,
    ServerEventType,
    SessionSummary,
)
from .prompts import format_iteration_header


# Windows-compatible symbols
if sys.platform == "win32":
    SYM_OK = "[OK]"
    SYM_FAIL = "[X]"
    SYM_ARROW = "->"
else:
    SYM_OK = "✓"
    SYM_FAIL = "✗"
    SYM_ARROW = "→"

STATUS_COLORS = {
    OrchestrationStatus.PROMPTING: "cyan",
    OrchestrationStatus.IMPLEMENTING: "yellow",
    OrchestrationStatus.REVIEWING: "blue",
    OrchestrationStatus.COMMITTING: "blue",
    OrchestrationStatus.APPROVED: "green",
    OrchestrationStatus.FAILED: "red",
    OrchestrationStatus.WAITING_FOR_INPUT: "magenta",
}

QUEUE_STATUS_COLORS = {
    QueueItemStatus.PENDING: "white",
    QueueItemStatus.RUNNING: "yellow",
    QueueItemStatus.COMPLETED: "green",
    QueueItemStatus.FAILED: "red",
}


def truncate(text: str, limit: int = 60) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 3] + "..."


def format_session_list(summaries: list[SessionSummary], title: str = "Sessions") -> Table:
    """Build a table of stored sessions, newest first."""
    table = Table(title=title)
    table.add_column("Session", style="cyan")
    table.add_column("Status")
    table.add_column("Iteration", justify="right")
    table.add_column("Feature")
    table.add_column("Created")

    for s in summaries:
        color = STATUS_COLORS.get(s.status, "white")
        table.add_row(
            s.id,
            f"[{color}]{s.status.value}[/{color}]",
            f"{s.iteration}/{s.max_iterations}",
            truncate(s.feature),
            s.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    return table


def format_queue(state: QueueState) -> Table:
    table = Table(title="Queue")
    table.add_column("Item", style="cyan")
    table.add_column("Status")
    table.add_column("Session")
    table.add_column("Feature")
    table.add_column("Error")

    for item in state.items:
        color = QUEUE_STATUS_COLORS.get(item.status, "white")
        table.add_row(
            item.id,
            f"[{color}]{item.status.value}[/{color}]",
            item.session_id or "-",
            truncate(item.feature, 50),
            truncate(item.error, 40) if item.error else "",
        )
    return table


def print_session_detail(console: Console, state: OrchestrationState) -> None:
    """Print a session header followed by its transcript."""
    color = STATUS_COLORS.get(state.status, "white")
    header = (
        f"[bold]Session:[/bold] {state.id}\n"
        f"[bold]Status:[/bold] [{color}]{state.status.value}[/{color}]\n"
        f"[bold]Iteration:[/bold] {state.iteration}/{state.max_iterations}\n"
        f"[bold]Working dir:[/bold] {state.working_dir}\n"
        f"[bold]Created:[/bold] {state.created_at.isoformat(timespec='seconds')}"
    )
    if state.last_failed_step:
        header += f"\n[bold]Resume at:[/bold] {state.last_failed_step.value}"
    if state.pending_question:
        header += f"\n[bold]Waiting on:[/bold] {state.pending_question}"
    console.print(Panel(header, title="Session", border_style=color))
    console.print(f"\n[bold]Feature:[/bold] {state.feature}\n")

    for entry in state.history:
        title = f"#{entry.iteration} {entry.agent.value} ({entry.role.value})"
        console.print(Panel(entry.content.strip() or "[dim](empty)[/dim]", title=title, expand=True))


def render_event(console: Console, event: ServerEvent, verbose: bool = False) -> None:
    """Print one progress event. Pings and connection notices are silent."""
    data = event.data
    if event.type == ServerEventType.PING:
        return

    if event.type == ServerEventType.LOG:
        level = data.get("level", "info")
        if level == "verbose":
            if verbose:
                console.print(f"[dim]{data.get('message', '')}[/dim]")
        elif level == "error":
            console.print(f"[red]{data.get('message', '')}[/red]")
        else:
            console.print(data.get("message", ""))
    elif event.type == ServerEventType.ITERATION:
        console.print(format_iteration_header(
            data.get("iteration", 0), data.get("max_iterations", 0), data.get("phase", "")
        ), style="bold")
    elif event.type == ServerEventType.STATUS:
        if data.get("connected"):
            return
        console.print(f"[dim]Status: {data.get('status')}[/dim]")
    elif event.type == ServerEventType.AGENT_START:
        console.print(f"[cyan]{SYM_ARROW} {data.get('agent')} ({data.get('role')}) running...[/cyan]")
    elif event.type == ServerEventType.AGENT_COMPLETE:
        symbol = SYM_OK if data.get("success") else SYM_FAIL
        color = "green" if data.get("success") else "red"
        console.print(f"[{color}]{symbol} {data.get('agent')} ({data.get('role')}) finished[/{color}]")
    elif event.type == ServerEventType.QUESTION:
        console.print(f"[magenta]? {data.get('question')}[/magenta]")
    elif event.type == ServerEventType.ERROR:
        console.print(f"[red]Error: {data.get('message')}[/red]")
    elif event.type == ServerEventType.COMPLETE:
        status = data.get("status")
        color = "green" if status == OrchestrationStatus.APPROVED.value else "red"
        console.print(
            f"\n[bold {color}]Session {status} after {data.get('iterations', 0)} iteration(s)[/bold {color}]"
        )
    elif event.type == ServerEventType.SESSION_STARTED:
        console.print(f"[bold]Session {event.session_id} started[/bold]")


def final_status_line(state: Optional[OrchestrationState]) -> str:
    if state is None:
        return "[yellow]No session state[/yellow]"
    color = STATUS_COLORS.get(state.status, "white")
    return f"[{color}]{state.status.value}[/{color}] ({state.iteration}/{state.max_iterations} iterations)"
