"""Command line interface."""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer
from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table

from csva.config import Settings, get_settings
from csva.errors import ConfigurationError, CsvaError
from csva.intake import new_id
from csva.reconcile.session import LiveSession
from csva.runtime import AppRuntime
from csva.types import Turn

app = typer.Typer(name="csva", help="Voice-enabled customer-service chat agent", add_completion=False)
console = Console()


def _build_runtime(settings: Settings) -> AppRuntime:
    try:
        return AppRuntime(settings)
    except ConfigurationError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1) from exc


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address"),
    port: int = typer.Option(8000, "--port", "-p", help="Bind port"),
) -> None:
    """Run the HTTP API and the in-process job worker."""
    import uvicorn

    from csva.api import create_app

    settings = get_settings()
    uvicorn.run(create_app(_build_runtime(settings)), host=host, port=port, log_config=None)


@app.command()
def chat(
    session_id: str | None = typer.Option(None, "--session-id", "-s", help="Resume an existing session"),
    timeout: float = typer.Option(120.0, "--timeout", help="Seconds to wait for one answer"),
) -> None:
    """Chat in the terminal through the full intake, worker and reconciliation path."""
    settings = get_settings(log_profile="chat", webhook_url=None)
    runtime = _build_runtime(settings)
    asyncio.run(_chat_loop(runtime, session_id or new_id(), timeout))


async def _chat_loop(runtime: AppRuntime, session_id: str, timeout: float) -> None:
    await runtime.start()
    session = await runtime.session(session_id).open()
    console.print(f"[dim]session {session_id}[/dim]")
    for turn in session.engine.history:
        _render_turn(turn)
    try:
        while True:
            try:
                text = await asyncio.to_thread(console.input, "[bold cyan]you[/bold cyan] > ")
            except (EOFError, KeyboardInterrupt):
                break
            if text.strip().lower() in {"quit", "exit", "q"}:
                break
            if not text.strip():
                continue
            await _ask(session, runtime, text, timeout)
    finally:
        session.close()
        await runtime.stop()
    console.print("[dim]Goodbye![/dim]")


async def _ask(session: LiveSession, runtime: AppRuntime, text: str, timeout: float) -> None:
    try:
        result = await session.send(runtime.intake, text)
    except CsvaError as exc:
        console.print(f"[red]error:[/red] {exc}")
        return
    if result.turn_id is None:
        return
    try:
        with console.status("thinking..."):
            turn = await session.wait_committed(result.turn_id, timeout=timeout)
    except TimeoutError:
        console.print("[yellow]no answer yet; it will show up in the history once stored[/yellow]")
        return
    _render_turn(turn)


def _render_turn(turn: Turn) -> None:
    if turn.user_query:
        console.print(f"[bold cyan]you[/bold cyan] > {turn.user_query}")
    if turn.tool_invocations:
        table = Table(show_header=True, header_style="dim", box=None)
        table.add_column("tool")
        table.add_column("status")
        table.add_column("ms", justify="right")
        for invocation in turn.tool_invocations:
            duration = "" if invocation.duration_ms is None else str(invocation.duration_ms)
            table.add_row(invocation.tool_name, invocation.status.value, duration)
        console.print(table)
    console.print(Markdown(turn.assistant_response or ""))


@app.command()
def ingest(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Markdown file, one entry per heading"),  # noqa: B008
    category: str = typer.Option("general", "--category", "-c", help="services, policies, hours or general"),
) -> None:
    """Load knowledge-base entries from a markdown file."""
    from csva.tools.knowledge import KnowledgeBase

    settings = get_settings()
    knowledge = KnowledgeBase(settings.database_path)
    count = knowledge.ingest_markdown(path.read_text(encoding="utf-8"), category=category)
    typer.echo(f"Ingested {count} entries into {settings.database_path}")


@app.command()
def purge(
    days: int | None = typer.Option(None, "--days", help="Override the retention period"),
) -> None:
    """Delete sessions with no activity within the retention period."""
    from datetime import UTC, datetime, timedelta

    from csva.message_store.service import MessageStore

    settings = get_settings()
    retention = settings.session_retention_days if days is None else days
    store = MessageStore(settings.database_path)
    removed = store.purge_sessions(datetime.now(UTC) - timedelta(days=retention))
    typer.echo(f"Purged {len(removed)} sessions older than {retention} days")
