"""CLI entry point for termote."""

from __future__ import annotations

import asyncio
import logging
import os

import httpx
import typer
from rich.console import Console
from rich.markup import escape

from termote import __version__
from termote.config import SESSION_ID_ENV, TermoteConfig
from termote.relay.api import create_session, fetch_session
from termote.relay.errors import ApiError, FatalError
from termote.session.orchestrator import Session, SessionOrchestrator
from termote.session.terminal import LocalTerminal
from termote.session.wire import EventType, Wire, WireEvent

app = typer.Typer(
    name="termote",
    help="Share your local terminal through the termote relay.",
    no_args_is_help=True,
)

console = Console(stderr=True, highlight=False)


def setup_logging(verbose: bool = False, log_file: str | None = None) -> None:
    # The terminal belongs to the shared shell, so stay quiet unless asked
    level = logging.DEBUG if verbose else logging.WARNING
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(os.path.expanduser(log_file)))
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        handlers=handlers,
    )


def session_url(server_url: str, session_id: str) -> str:
    return f"{server_url}/t/{session_id}"


@app.command()
def start(
    command: list[str] | None = typer.Argument(
        None, help="Command to type into the shell once it is up."
    ),
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help=f"Always create a new session, even inside one (${SESSION_ID_ENV}).",
    ),
    name: str | None = typer.Option(
        None, "--name", "-n", help="Display name for the session."
    ),
    server_url: str | None = typer.Option(
        None, "--server-url", help="Relay server URL (default: from env/config)."
    ),
    token: str | None = typer.Option(
        None, "--token", help="Access token (default: from env/config)."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Start sharing a shell, or reconnect the session this shell belongs to."""
    config = TermoteConfig.load(config_file)
    if server_url:
        config.server_url = server_url.rstrip("/")
    if token:
        config.token = token
    setup_logging(verbose, config.log_file)

    if not config.token:
        console.print(
            "[red]Not logged in.[/red] Set TERMOTE_TOKEN or add a token to "
            "your config file."
        )
        raise typer.Exit(1)

    try:
        status = asyncio.run(_run_session(config, command or [], force, name))
    except (FatalError, ApiError) as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(1)
    except httpx.ConnectError as e:
        console.print(f"[red]Failed to connect to server:[/red] {escape(config.server_url)}")
        console.print(f"  {escape(str(e))}")
        console.print("  Check that the server URL is correct and reachable,")
        console.print("  or set TERMOTE_SERVER_URL to point at another relay.")
        raise typer.Exit(1)
    except FileNotFoundError as e:
        console.print(f"[red]Cannot start shell:[/red] {escape(str(e))}")
        raise typer.Exit(1)
    raise typer.Exit(status)


@app.command()
def version() -> None:
    """Print the termote version."""
    typer.echo(f"termote v{__version__}")


async def _resolve_session(
    config: TermoteConfig, force: bool, name: str | None
) -> Session | None:
    """Pick the session to serve; None when another agent already serves it."""
    assert config.token is not None
    existing_id = None if force else os.environ.get(SESSION_ID_ENV)

    if existing_id:
        remote = await fetch_session(config.server_url, config.token, existing_id)
        if remote is not None and remote.agent.connected:
            console.print(
                f"Already inside session [bold]{escape(existing_id)}[/bold], "
                "and its agent is connected."
            )
            console.print(f"  {session_url(config.server_url, existing_id)}")
            console.print("Use --force to start a new session from here.")
            return None
        if remote is not None:
            console.print(f"Reconnecting to session [bold]{escape(existing_id)}[/bold]")
            return Session(existing_id, config.token, config.server_url)

    session_id = await create_session(
        config.server_url, config.token, config.terminal.shell, name=name
    )
    return Session(session_id, config.token, config.server_url)


async def _run_session(
    config: TermoteConfig, command: list[str], force: bool, name: str | None
) -> int:
    session = await _resolve_session(config, force, name)
    if session is None:
        return 0

    console.print(f"termote v{__version__}")
    console.print(f"Session: [bold]{session.id}[/bold]")
    console.print(f"Share:   [link]{session_url(session.server_url, session.id)}[/link]")
    console.print("---")

    wire = Wire()
    terminal = LocalTerminal(
        default_cols=config.terminal.default_cols,
        default_rows=config.terminal.default_rows,
    )
    orchestrator = SessionOrchestrator(session, config, terminal=terminal, wire=wire)

    # --- Wire consumer (async background task) ---
    async def _consume_wire() -> None:
        queue = wire.subscribe()
        while True:
            event = await queue.get()
            if event is None:
                break
            _render(event, terminal)
        wire.unsubscribe(queue)

    consumer_task = asyncio.create_task(_consume_wire())
    try:
        status = await orchestrator.run(command)
    finally:
        wire.close()
        await consumer_task
    return status


def _render(event: WireEvent, terminal: LocalTerminal) -> None:
    """Print one notice; raw mode needs explicit carriage returns."""
    end = "\r\n" if terminal.raw else "\n"
    d = event.data

    if event.type == EventType.CONNECTED:
        console.print("[green]Connected to relay[/green]", end=end)

    elif event.type == EventType.RECONNECTING:
        attempt = d.get("attempt", 0)
        delay = d.get("delay", 0.0)
        console.print(
            f"[yellow]Connection lost. Reconnecting in {delay:.1f}s "
            f"(attempt {attempt})...[/yellow]",
            end=end,
        )

    elif event.type == EventType.RECONNECTED:
        console.print("[green]Reconnected[/green]", end=end)

    elif event.type == EventType.SESSION_END:
        reason = d.get("reason")
        suffix = f": {escape(reason)}" if reason else ""
        console.print(f"Session ended by server{suffix}", end=end)

    elif event.type == EventType.FATAL_ERROR:
        message = d.get("message", "Unknown error")
        console.print(f"[red]{escape(message)}[/red]", end=end)

    elif event.type == EventType.PROCESS_EXIT:
        exit_code = d.get("exit_code")
        code_str = str(exit_code) if exit_code is not None else "?"
        console.print(f"[dim]Shell exited (code={code_str})[/dim]", end=end)


if __name__ == "__main__":
    app()
