"""Daemon and session registry commands."""

import asyncio
import contextlib
from pathlib import Path

import httpx
import typer

from grotto.daemon import process
from grotto.lib import config
from grotto.live.observer import ConnectionMachine, ObserverClient
from grotto.models import Event

from . import output
from .errors import error_feedback

daemon_app = typer.Typer(help="Run and inspect the session daemon.", no_args_is_help=True)
sessions_app = typer.Typer(help="Manage sessions registered with the daemon.", no_args_is_help=True)


def _base_url(url: str | None) -> str:
    if url:
        return url.rstrip("/")
    settings = config.settings()
    return process.daemon_url(settings.host, settings.port)


def _request(method: str, url: str | None, path: str, **kwargs) -> httpx.Response:
    with httpx.Client(base_url=_base_url(url), timeout=10) as client:
        response = client.request(method, path, **kwargs)
    if response.status_code >= 400:
        try:
            detail = response.json().get("detail", response.text)
        except ValueError:
            detail = response.text
        typer.echo(f"Error: {detail}", err=True)
        raise typer.Exit(1)
    return response


UrlOption = typer.Option(None, "--url", help="Daemon base URL (defaults to configured host/port)")


@daemon_app.command("serve")
@error_feedback
def serve(
    host: str | None = typer.Option(None, "--host", help="Bind address"),
    port: int | None = typer.Option(None, "--port", "-p", help="Port"),
):
    """Run the daemon in the foreground."""
    from grotto.api.main import main as run_daemon

    config.init_config()
    config.clear_cache()
    run_daemon(host=host, port=port)


@daemon_app.command("start")
@error_feedback
def start(
    host: str | None = typer.Option(None, "--host", help="Bind address"),
    port: int | None = typer.Option(None, "--port", "-p", help="Port"),
):
    """Start the daemon in the background."""
    if process.is_daemon_running():
        typer.echo(f"Daemon already running (pid {process.read_pid()})")
        return
    args = []
    if host:
        args += ["--host", host]
    if port:
        args += ["--port", str(port)]
    process.detach_daemon(*args)
    typer.echo("Daemon starting")


@daemon_app.command("stop")
@error_feedback
def stop():
    """Stop a running daemon."""
    pid = process.stop_daemon()
    if pid is None:
        typer.echo("Daemon not running")
        raise typer.Exit(1)
    typer.echo(f"Stopped daemon (pid {pid})")


@daemon_app.command("status")
@error_feedback
def daemon_status(ctx: typer.Context):
    """Report whether the daemon is running."""
    running = process.is_daemon_running()
    pid = process.read_pid()
    if output.echo_json({"running": running, "pid": pid}, ctx):
        return
    if running:
        typer.echo(f"Daemon running (pid {pid})")
    else:
        typer.echo("Daemon not running")
        raise typer.Exit(1)


@sessions_app.command("list")
@error_feedback
def list_sessions(ctx: typer.Context, url: str | None = UrlOption):
    """List registered sessions."""
    sessions = _request("GET", url, "/api/sessions").json()
    if output.echo_json(sessions, ctx):
        return
    if not sessions:
        output.echo_text("No sessions", ctx)
        return
    for s in sessions:
        typer.echo(f"{s['id']:<20} {s['status']:<10} seq {s['last_seq']:<6} {s['dir']}")


@sessions_app.command("register")
@error_feedback
def register(
    ctx: typer.Context,
    session_id: str = typer.Argument(..., help="Session id"),
    project_dir: Path = typer.Argument(Path("."), help="Project directory containing .grotto"),
    url: str | None = UrlOption,
):
    """Register a project with the daemon."""
    body = {"id": session_id, "dir": str(project_dir.resolve())}
    result = _request("POST", url, "/api/sessions", json=body).json()
    if output.echo_json(result, ctx):
        return
    output.echo_text(f"Registered: {session_id}", ctx)


@sessions_app.command("unregister")
@error_feedback
def unregister(
    ctx: typer.Context,
    session_id: str = typer.Argument(..., help="Session id"),
    url: str | None = UrlOption,
):
    """Stop watching a session."""
    result = _request("DELETE", url, f"/api/sessions/{session_id}").json()
    if output.echo_json(result, ctx):
        return
    output.echo_text(f"Unregistered: {session_id}", ctx)


@sessions_app.command("watch")
@error_feedback
def watch(
    session_id: str = typer.Argument(..., help="Session id"),
    url: str | None = UrlOption,
):
    """Follow a session live, falling back to history when the daemon is unreachable."""

    def on_change(machine: ConnectionMachine):
        typer.echo(f"[{machine.label}]", err=True)

    def on_event(event: Event, applied: bool):
        typer.echo(output.format_event(event) + ("" if applied else "  (history)"))

    client = ObserverClient(
        _base_url(url),
        session_id,
        retry=config.settings().retry,
        on_change=on_change,
        on_event=on_event,
    )
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(client.run())
