"""CLI entry point for contextbot -- ask questions about your dependencies' source."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from pathlib import Path
from typing import List, Optional

import typer
from pydantic import ValidationError
from rich.console import Console, Group
from rich.live import Live
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.table import Table
from rich.text import Text

from .agent import ReplaySource
from .aggregator import group_for_display
from .client import AnswerView, RemoteClient
from .config import (
    CONFIG_FILENAME,
    LoadedConfig,
    default_config,
    load_dotenv,
    resolve_config,
    save_config,
)
from .errors import ContextbotError
from .models import (
    Chunk,
    FileChunk,
    ReasoningChunk,
    ResourceDefinition,
    TextChunk,
    ToolChunk,
    ToolStatus,
)
from .service import ContextbotService, create_source
from .session import CancelState

app = typer.Typer(
    name="contextbot",
    help="Ask questions about the source code of the libraries you use.",
    add_completion=False,
)

resources_app = typer.Typer(help="Manage the resources questions can draw on.")
app.add_typer(resources_app, name="resources")

threads_app = typer.Typer(help="Browse saved conversations.")
app.add_typer(threads_app, name="threads")

console = Console()

_EDITABLE_KEYS = ("model", "provider", "data_dir")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging."),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def _load() -> LoadedConfig:
    """Resolve the effective config or exit with an error."""
    load_dotenv(Path.cwd())
    try:
        return resolve_config()
    except ContextbotError as exc:
        console.print(f"[red]Error:[/red] {exc.message}")
        raise typer.Exit(code=1)


def _fail(exc: ContextbotError) -> None:
    console.print(f"[red]Error:[/red] {exc.message}")
    raise typer.Exit(code=1)


_STATUS_STYLE = {
    ToolStatus.pending: "dim",
    ToolStatus.running: "yellow",
    ToolStatus.completed: "green",
}


def render_chunks(chunks: list[Chunk], status: str | None = None) -> Group:
    """Rich renderable for an answer: reasoning, tool calls, text, then files."""
    parts: list = []
    if not chunks and status:
        parts.append(Text(f"{status}...", style="dim"))
    for chunk in group_for_display(chunks):
        if isinstance(chunk, ReasoningChunk):
            parts.append(Text(chunk.text, style="dim italic"))
        elif isinstance(chunk, ToolChunk):
            parts.append(Text.assemble(
                ("  > ", "dim"),
                (chunk.tool_name, "bold"),
                (f" {chunk.status.value}", _STATUS_STYLE[chunk.status]),
            ))
        elif isinstance(chunk, TextChunk):
            parts.append(Markdown(chunk.text))
        elif isinstance(chunk, FileChunk):
            parts.append(Text(f"  file: {chunk.file_path}", style="cyan"))
    return Group(*parts)


@contextlib.contextmanager
def _interrupt_handler(callback):
    """Route Ctrl+C to *callback* for the duration of an answer."""
    loop = asyncio.get_running_loop()
    installed = False
    with contextlib.suppress(NotImplementedError, RuntimeError):
        loop.add_signal_handler(signal.SIGINT, callback)
        installed = True
    try:
        yield
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


def _announce_cancel(state: CancelState) -> None:
    if state == CancelState.pending:
        console.print("[yellow]Press Ctrl+C again to stop the answer.[/yellow]")


async def _ask_local(
    service: ContextbotService,
    question: str,
    resources: list[str],
    thread_id: str | None,
) -> tuple[AnswerView, str]:
    stream = service.open_stream(question, resources, thread_id)
    view = AnswerView()

    def _on_interrupt() -> None:
        _announce_cancel(stream.session.request_cancel())

    try:
        with _interrupt_handler(_on_interrupt):
            with Live(render_chunks([]), console=console, refresh_per_second=12) as live:
                async for message in stream.messages():
                    view.apply(message)
                    live.update(render_chunks(view.chunks, view.status))
    finally:
        stream.close()
    return view, stream.thread_id


async def _ask_remote(
    client: RemoteClient,
    question: str,
    resources: list[str],
    thread_id: str | None,
) -> tuple[AnswerView, str | None]:
    view = AnswerView()
    pending: set[asyncio.Task] = set()

    async def _cancel() -> None:
        if client.thread_id:
            _announce_cancel(CancelState(await client.cancel(client.thread_id)))

    def _on_interrupt() -> None:
        task = asyncio.ensure_future(_cancel())
        pending.add(task)
        task.add_done_callback(pending.discard)

    with _interrupt_handler(_on_interrupt):
        with Live(render_chunks([]), console=console, refresh_per_second=12) as live:
            async for message in client.stream_question(question, resources, thread_id):
                view.apply(message)
                live.update(render_chunks(view.chunks, view.status))
    return view, client.thread_id


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def init(
    no_defaults: bool = typer.Option(False, "--no-defaults", help="Start with no resources."),
) -> None:
    """Write a project config in the current directory."""
    target = Path.cwd() / CONFIG_FILENAME
    if target.exists():
        console.print(f"[yellow]Already initialised:[/yellow] {target}")
        raise typer.Exit(code=0)
    config = default_config()
    if no_defaults:
        config.resources = []
    try:
        save_config(target, config)
    except OSError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1)
    console.print(f"[green]Initialised[/green] {target}")
    console.print("  Run [bold]contextbot resources add[/bold] to register a repository.")


@app.command()
def ask(
    question: str = typer.Argument(..., help="The question to ask."),
    resource: Optional[List[str]] = typer.Option(None, "--resource", "-r", help="Resource to include (repeatable)."),
    thread: Optional[str] = typer.Option(None, "--thread", "-t", help="Continue a saved thread."),
    server: Optional[str] = typer.Option(None, "--server", help="Ask a running contextbot server instead."),
    replay: Optional[Path] = typer.Option(None, "--replay", help="Replay a recorded JSONL event log instead of calling the model."),
) -> None:
    """Ask a question; the answer streams in as it is generated."""
    resources = list(resource or [])

    try:
        if server:
            client = RemoteClient(server)
            view, thread_id = asyncio.run(_ask_remote(client, question, resources, thread))
        else:
            loaded = _load()
            source = ReplaySource(replay) if replay else create_source(loaded)
            service = ContextbotService(loaded, source)
            view, thread_id = asyncio.run(_ask_local(service, question, resources, thread))
    except ContextbotError as exc:
        _fail(exc)

    if view.error:
        console.print(f"[red]Error:[/red] {view.error}")
        raise typer.Exit(code=1)
    if not view.done:
        console.print("[yellow]Canceled.[/yellow]")
    if thread_id:
        console.print(f"[dim]Thread {thread_id} (continue with --thread {thread_id})[/dim]")


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address."),
    port: int = typer.Option(8000, "--port", "-p", help="Port number."),
) -> None:
    """Serve the question API over HTTP."""
    from .server import start_server

    loaded = _load()
    try:
        source = create_source(loaded)
    except ContextbotError as exc:
        _fail(exc)

    console.print(f"[bold]Model:[/bold] {loaded.config.model} via {loaded.config.provider}")
    console.print(f"[bold]Config:[/bold] {loaded.config_path}")
    console.print(f"[bold cyan]Serving[/bold cyan] http://{host}:{port}")
    start_server(ContextbotService(loaded, source), host=host, port=port)


@app.command()
def sync(
    names: Optional[List[str]] = typer.Argument(None, help="Resources to sync (default: all)."),
) -> None:
    """Clone or update resources.  Each one succeeds or fails on its own."""
    loaded = _load()
    service = ContextbotService(loaded)
    outcomes = asyncio.run(service.sync(names))

    failed = 0
    for name, outcome in outcomes.items():
        if outcome.ok and outcome.checkout is not None:
            revision = service.store.revision(name)
            suffix = f" @ {revision[:12]}" if revision else ""
            console.print(f"[green]Synced[/green] {name} -> {outcome.checkout.absolute_path}{suffix}")
        else:
            failed += 1
            console.print(f"[red]Failed[/red] {name}: {outcome.error.message if outcome.error else 'unknown error'}")
    if failed:
        raise typer.Exit(code=1)


@app.command()
def config(
    key: Optional[str] = typer.Argument(None, help="Config key to get or set."),
    value: Optional[str] = typer.Argument(None, help="New value (omit to read)."),
) -> None:
    """View or modify contextbot.config.jsonc settings."""
    loaded = _load()
    cfg = loaded.config

    if key is None:
        console.print(f"[bold]contextbot config:[/bold] {loaded.config_path}")
        for field_name in _EDITABLE_KEYS:
            console.print(f"  {field_name} = {getattr(cfg, field_name)!r}")
        console.print(f"  resources = {cfg.resource_names()!r}")
        return

    if key not in _EDITABLE_KEYS:
        console.print(
            f"[red]Error:[/red] Unknown config key [bold]{key}[/bold].\n"
            f"  Valid keys: {', '.join(_EDITABLE_KEYS)}"
        )
        raise typer.Exit(code=1)

    if value is None:
        console.print(f"{key} = {getattr(cfg, key)!r}")
        return

    setattr(cfg, key, value)
    save_config(loaded.config_path, cfg)
    console.print(f"[green]Updated:[/green] {key} = {value!r}")


# ---------------------------------------------------------------------------
# Resource subcommands
# ---------------------------------------------------------------------------


@resources_app.command("list")
def resources_list() -> None:
    """Show every configured resource."""
    loaded = _load()
    if not loaded.config.resources:
        console.print("[yellow]No resources configured.[/yellow]")
        return
    table = Table(show_header=True, header_style="bold")
    table.add_column("Name")
    table.add_column("Kind")
    table.add_column("Location")
    table.add_column("Branch")
    table.add_column("Focus")
    for r in loaded.config.resources:
        table.add_row(
            r.name,
            r.kind,
            r.url if r.kind == "git" else r.path,
            r.branch if r.kind == "git" else "",
            r.focus_subpath or "",
        )
    console.print(table)


@resources_app.command("add")
def resources_add(
    name: str = typer.Argument(..., help="Resource name."),
    url: Optional[str] = typer.Option(None, "--url", help="Git URL to clone."),
    path: Optional[Path] = typer.Option(None, "--path", help="Local directory instead of a git URL."),
    branch: str = typer.Option("main", "--branch", "-b", help="Git branch."),
    focus: Optional[str] = typer.Option(None, "--focus", help="Sub-directory to concentrate on."),
    note: Optional[str] = typer.Option(None, "--note", help="Extra notes for the answerer."),
) -> None:
    """Register a git repository or local directory."""
    loaded = _load()
    if loaded.config.get_resource(name) is not None:
        console.print(f"[red]Error:[/red] Resource [bold]{name}[/bold] already exists.")
        raise typer.Exit(code=1)
    if (url is None) == (path is None):
        console.print("[red]Error:[/red] Pass exactly one of --url or --path.")
        raise typer.Exit(code=1)

    try:
        definition = ResourceDefinition(
            name=name,
            kind="git" if url else "local",
            url=url,
            branch=branch,
            path=str(path.expanduser().resolve()) if path else None,
            focus_subpath=focus,
            note=note,
        )
    except ValidationError as exc:
        console.print(f"[red]Error:[/red] {exc.errors()[0]['msg']}")
        raise typer.Exit(code=1)

    loaded.config.resources.append(definition)
    save_config(loaded.config_path, loaded.config)
    console.print(f"[green]Added[/green] {name}")


@resources_app.command("remove")
def resources_remove(
    name: str = typer.Argument(..., help="Resource name."),
) -> None:
    """Forget a resource.  Its checkout is left on disk."""
    loaded = _load()
    if loaded.config.get_resource(name) is None:
        console.print(f"[red]Error:[/red] No resource named [bold]{name}[/bold].")
        raise typer.Exit(code=1)
    loaded.config.resources = [r for r in loaded.config.resources if r.name != name]
    save_config(loaded.config_path, loaded.config)
    console.print(f"[green]Removed[/green] {name}")


# ---------------------------------------------------------------------------
# Thread subcommands
# ---------------------------------------------------------------------------


@threads_app.command("list")
def threads_list() -> None:
    """Saved threads, most recent first."""
    loaded = _load()
    service = ContextbotService(loaded)
    threads = service.threads.list_threads()
    if not threads:
        console.print("[yellow]No saved threads.[/yellow]")
        return
    table = Table(show_header=True, header_style="bold")
    table.add_column("Thread")
    table.add_column("Last activity")
    table.add_column("Resources")
    table.add_column("Messages", justify="right")
    for t in threads:
        table.add_row(t.id, t.last_activity_at, ", ".join(t.resources), str(len(t.messages)))
    console.print(table)


@threads_app.command("show")
def threads_show(
    thread_id: str = typer.Argument(..., help="Thread id."),
) -> None:
    """Print a saved conversation."""
    loaded = _load()
    service = ContextbotService(loaded)
    try:
        thread = service.threads.load(thread_id)
    except ValueError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1)
    if thread is None:
        console.print(f"[red]Error:[/red] Thread [bold]{thread_id}[/bold] not found.")
        raise typer.Exit(code=1)

    console.print(f"[bold]Thread {thread.id}[/bold]  [dim]{', '.join(thread.resources)}[/dim]")
    for message in thread.messages:
        if message.role == "user":
            console.print(f"\n[bold]You:[/bold] {message.content}")
        elif message.role == "assistant":
            label = " [yellow](canceled)[/yellow]" if message.canceled else ""
            console.print(f"\n[bold]Assistant:[/bold]{label}")
            if isinstance(message.content, str):
                console.print(Markdown(message.content))
            else:
                console.print(render_chunks(message.content))
        else:
            console.print(f"\n[dim]{message.content}[/dim]")
