"""CLI interface for the Feature Orchestrator."""

import asyncio
import os
import sys
from pathlib import Path
from typing import Optional

import click
import httpx
from rich.console import Console
from rich.prompt import Confirm

from .agents import AgentSet
from .client import DEFAULT_SERVER_URL, OrchestratorClient
from .log_formatter import (
    SYM_FAIL,
    SYM_OK,
    final_status_line,
    format_queue,
    format_session_list,
    print_session_detail,
    render_event,
)
from .models import (
    OrchestrationState,
    OrchestrationStatus,
    OrchestratorConfig,
    OrchestratorOptions,
    ServerEvent,
    ServerEventType,
)
from .orchestration import Orchestrator, OrchestratorCallbacks
from .state import SessionStore

console = Console()

state_dir_option = click.option(
    '--state-dir', type=click.Path(file_okay=False), default=None,
    help='State directory (default: $ORCHESTRATOR_HOME or ~/.orchestrator)'
)
server_option = click.option(
    '--server', default=DEFAULT_SERVER_URL, show_default=True,
    help='URL of a running orchestrator server'
)


def load_config(state_dir: Optional[str]) -> OrchestratorConfig:
    return OrchestratorConfig.load(Path(state_dir) if state_dir else None)


def make_callbacks(verbose: bool) -> OrchestratorCallbacks:
    """Console callbacks for an in-process run."""

    def on_event(event: ServerEvent) -> None:
        if event.type == ServerEventType.QUESTION:
            return
        render_event(console, event, verbose=verbose)

    async def on_question(question: str, question_id: str) -> bool:
        return await asyncio.to_thread(Confirm.ask, question, default=True)

    return OrchestratorCallbacks(on_event=on_event, on_question=on_question)


def run_in_process(
    config: OrchestratorConfig,
    feature: str,
    options: OrchestratorOptions,
    resume_state: Optional[OrchestrationState] = None,
) -> OrchestrationState:
    orchestrator = Orchestrator(AgentSet.default(config), SessionStore(config.sessions_dir), config)
    return asyncio.run(orchestrator.run(
        feature,
        options,
        make_callbacks(options.verbose),
        resume_state=resume_state,
    ))


def exit_for(state: OrchestrationState) -> None:
    console.print(f"\n[bold]Final status:[/bold] {final_status_line(state)}")
    console.print(f"[dim]Session: {state.id}[/dim]")
    if state.status != OrchestrationStatus.APPROVED:
        sys.exit(1)


@click.group()
@click.version_option(package_name="feature-orchestrator")
def main():
    """Feature Orchestrator - drive a feature request to reviewer approval."""
    pass


@main.command()
@click.argument('feature', nargs=-1)
@click.option('--file', '-f', 'feature_file', type=click.Path(exists=True, dir_okay=False),
              help='Read the feature request from a file')
@click.option('--max-iterations', '-n', type=int, default=None,
              help='Implement/review cycles before giving up (default from config)')
@click.option('--auto', is_flag=True, help='Non-interactive: never ask for confirmation')
@click.option('--verbose', '-v', is_flag=True, help='Show full agent output')
@click.option('--working-dir', '-C', type=click.Path(exists=True, file_okay=False), default=None,
              help='Directory the agents work in (default: current directory)')
@state_dir_option
def run(
    feature: tuple[str, ...],
    feature_file: Optional[str],
    max_iterations: Optional[int],
    auto: bool,
    verbose: bool,
    working_dir: Optional[str],
    state_dir: Optional[str],
):
    """Run a session in this process.

    FEATURE is the free-text feature request. The implementer edits the
    working tree; the reviewer inspects the uncommitted diff until it
    approves or the iteration limit is reached.

    Example:
        orchestrator run "Add a --json flag to the export command"
    """
    text = Path(feature_file).read_text().strip() if feature_file else " ".join(feature).strip()
    if not text:
        raise click.UsageError("Provide a feature request or --file")

    config = load_config(state_dir)
    options = OrchestratorOptions(
        max_iterations=max_iterations or config.default_max_iterations,
        interactive=not auto,
        verbose=verbose,
        working_dir=str(Path(working_dir or os.getcwd()).resolve()),
    )

    try:
        final = run_in_process(config, text, options)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted - resume with 'orchestrator resume'[/yellow]")
        sys.exit(130)
    exit_for(final)


@main.command()
@click.argument('session_id', required=False)
@click.option('--auto', is_flag=True, help='Non-interactive: never ask for confirmation')
@click.option('--verbose', '-v', is_flag=True, help='Show full agent output')
@state_dir_option
def resume(session_id: Optional[str], auto: bool, verbose: bool, state_dir: Optional[str]):
    """Resume a session at the step that was interrupted.

    Resumes SESSION_ID, or the most recent session when omitted.
    """
    config = load_config(state_dir)
    store = SessionStore(config.sessions_dir)
    state = store.load(session_id)

    if state is None:
        console.print(f"[red]No session found{f': {session_id}' if session_id else ''}[/red]")
        sys.exit(1)
    if state.status == OrchestrationStatus.APPROVED:
        console.print(f"[green]Session {state.id} is already approved[/green]")
        return

    options = OrchestratorOptions(
        max_iterations=state.max_iterations,
        interactive=not auto,
        verbose=verbose,
        working_dir=state.working_dir,
    )
    try:
        final = run_in_process(config, state.feature, options, resume_state=state)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)
    exit_for(final)


@main.command()
@click.option('--limit', default=20, help='Number of sessions to show')
@state_dir_option
def sessions(limit: int, state_dir: Optional[str]):
    """List stored sessions, newest first."""
    config = load_config(state_dir)
    summaries = SessionStore(config.sessions_dir).summaries()

    if not summaries:
        console.print("[yellow]No sessions recorded yet.[/yellow]")
        return

    console.print(format_session_list(summaries[:limit]))
    console.print(f"\n[dim]{len(summaries)} session(s) in {config.sessions_dir}[/dim]")


@main.command()
@click.argument('session_id', required=False)
@state_dir_option
def show(session_id: Optional[str], state_dir: Optional[str]):
    """Show a session and its transcript (most recent when omitted)."""
    config = load_config(state_dir)
    state = SessionStore(config.sessions_dir).load(session_id)
    if state is None:
        console.print("[red]Session not found[/red]")
        sys.exit(1)
    print_session_detail(console, state)


@main.command()
@click.option('--host', default=None, help='Host to bind to (default from config)')
@click.option('--port', type=int, default=None, help='Port to listen on (default 3100)')
@state_dir_option
def serve(host: Optional[str], port: Optional[int], state_dir: Optional[str]):
    """Start the orchestrator server.

    Provides:
    - REST API at http://host:port/api/
    - Server-sent event streams per session and for the queue
    - API docs at http://host:port/docs
    """
    from .api import run_server

    config = load_config(state_dir)
    updates = {k: v for k, v in {"host": host, "port": port}.items() if v is not None}
    config = config.model_copy(update=updates)

    try:
        run_server(config)
    except KeyboardInterrupt:
        console.print("\n[yellow]Server stopped[/yellow]")


def is_question_pending(client: OrchestratorClient, session_id: str, question_id: Optional[str]) -> bool:
    try:
        detail = client.get_session(session_id)
    except httpx.HTTPStatusError:
        return False
    return question_id is not None and detail.get("pending_question_id") == question_id


def answer_questions(client: OrchestratorClient, session_id: str) -> None:
    """Render a session's event stream, answering questions interactively.

    Replayed questions that were already settled are shown but not asked, and
    every answer names its question so it cannot land on a later one.
    """
    answered: set[str] = set()
    for event in client.session_events(session_id):
        render_event(console, event)
        if event.type == ServerEventType.QUESTION:
            question_id = event.data.get("question_id")
            if question_id in answered or not is_question_pending(client, session_id, question_id):
                console.print("[dim]  (already answered)[/dim]")
                continue
            answer = Confirm.ask(event.data.get("question", "Continue?"), default=True)
            answered.add(question_id)
            try:
                client.respond(session_id, answer, question_id)
            except httpx.HTTPStatusError:
                console.print("[dim]Question already answered[/dim]")
        elif event.type == ServerEventType.COMPLETE:
            return


@main.command()
@click.argument('session_id')
@server_option
def watch(session_id: str, server: str):
    """Follow a session on a running server and answer its questions."""
    try:
        with OrchestratorClient(server) as client:
            answer_questions(client, session_id)
    except httpx.HTTPError as e:
        console.print(f"[red]Server error: {e}[/red]")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped watching[/yellow]")


@main.group()
def queue():
    """Manage the queue of a running server."""
    pass


@queue.command('list')
@server_option
def queue_list(server: str):
    """Show queued, running and finished items."""
    with OrchestratorClient(server) as client:
        state = client.get_queue()
    if not state.items:
        console.print("[yellow]Queue is empty[/yellow]")
        return
    console.print(format_queue(state))
    if state.current_item_id:
        console.print(f"\n[yellow]Running:[/yellow] {state.current_item_id}")


@queue.command('add')
@click.argument('features', nargs=-1, required=True)
@click.option('--max-iterations', '-n', type=int, default=None, help='Iterations per session')
@click.option('--working-dir', '-C', type=click.Path(exists=True, file_okay=False), default=None,
              help='Directory the agents work in (default: current directory)')
@click.option('--interactive', is_flag=True,
              help='Pause queued sessions at question gates (answer with watch)')
@server_option
def queue_add(
    features: tuple[str, ...],
    max_iterations: Optional[int],
    working_dir: Optional[str],
    interactive: bool,
    server: str,
):
    """Queue one or more feature requests (one argument each)."""
    options = {
        "interactive": interactive,
        "working_dir": str(Path(working_dir or os.getcwd()).resolve()),
    }
    if max_iterations:
        options["max_iterations"] = max_iterations

    with OrchestratorClient(server) as client:
        items = client.add_to_queue(list(features), options)
    for item in items:
        console.print(f"[green]{SYM_OK}[/green] Queued {item.id}: {item.feature[:60]}")


@queue.command('remove')
@click.argument('item_id')
@server_option
def queue_remove(item_id: str, server: str):
    """Remove a pending item."""
    with OrchestratorClient(server) as client:
        removed = client.remove_from_queue(item_id)
    if removed:
        console.print(f"[green]{SYM_OK}[/green] Removed {item_id}")
    else:
        console.print(f"[red]{SYM_FAIL}[/red] {item_id} is not a pending item")
        sys.exit(1)


@queue.command('clear')
@server_option
def queue_clear(server: str):
    """Remove every pending item."""
    with OrchestratorClient(server) as client:
        removed = client.clear_queue()
    console.print(f"Removed {removed} pending item(s)")


@queue.command('watch')
@server_option
def queue_watch(server: str):
    """Follow queue events live."""
    try:
        with OrchestratorClient(server) as client:
            for event in client.queue_events():
                queue_event = event.data.get("queue_event")
                if queue_event:
                    console.print(
                        f"[cyan]{queue_event['timestamp'][11:19]}[/cyan] "
                        f"{queue_event['type']} {queue_event.get('data', {})}"
                    )
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped watching[/yellow]")


if __name__ == '__main__':
    main()
