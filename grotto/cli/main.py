"""grotto CLI: coordinate agents through a shared .grotto directory."""

import asyncio
import contextlib
from pathlib import Path
from typing import Annotated

import typer

from grotto.core import claims
from grotto.core import session as coord
from grotto.core.eventlog import EventLog
from grotto.lib import paths
from grotto.models import TaskStatus

from . import output
from .daemon import daemon_app, sessions_app
from .errors import error_feedback

app = typer.Typer(
    invoke_without_command=True,
    add_completion=False,
    help="Filesystem-coordinated task board for teams of agents.",
)
app.add_typer(daemon_app, name="daemon")
app.add_typer(sessions_app, name="sessions")

DirOption = Annotated[Path, typer.Option("--dir", "-d", help="Project directory containing .grotto")]


@app.callback(context_settings={"help_option_names": ["-h", "--help"]})
def main_callback(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", "-j", help="Output in JSON format."),
    quiet_output: bool = typer.Option(False, "--quiet", "-q", help="Suppress non-essential output."),
):
    output.set_flags(ctx, json_output, quiet_output)
    if ctx.resilient_parsing:
        return
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())


@app.command("init")
@error_feedback
def init(
    ctx: typer.Context,
    agent_count: int = typer.Argument(..., help="Number of agents in the team"),
    task: str = typer.Argument(..., help="Main task for the team"),
    project_dir: DirOption = Path("."),
    session_id: Annotated[str | None, typer.Option("--session-id", help="tmux session name")] = None,
):
    """Create the coordination directory."""
    gdir = coord.init_session(project_dir, agent_count, task, session_id)
    if output.echo_json({"dir": str(gdir)}, ctx):
        return
    output.echo_text(f"Initialized {gdir} with {agent_count} agents", ctx)


@app.command("status")
@error_feedback
def status(ctx: typer.Context, project_dir: DirOption = Path(".")):
    """Show the task board and agent status."""
    gdir = coord.find_session(project_dir)
    tasks = claims.load_board(gdir).tasks()
    agents = coord.load_agents(gdir)
    if output.echo_json(
        {"tasks": [t.to_dict() for t in tasks], "agents": {k: a.to_dict() for k, a in agents.items()}},
        ctx,
    ):
        return
    config = coord.load_config(gdir)
    if config:
        typer.echo(f"Task: {config.task}")
    typer.echo("Tasks:")
    for task in tasks:
        typer.echo(f"  {output.format_task(task)}")
    if agents:
        typer.echo("Agents:")
        for agent in agents.values():
            typer.echo(f"  {output.format_agent(agent)}")


@app.command("claim")
@error_feedback
def claim(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task to claim"),
    agent_id: str = typer.Option(..., "--as", help="Claiming agent"),
    project_dir: DirOption = Path("."),
):
    """Claim an open task."""
    task = claims.claim_task(coord.find_session(project_dir), task_id, agent_id)
    if output.echo_json(task.to_dict(), ctx):
        return
    output.echo_text(f"Claimed: {task.id} by {agent_id}", ctx)


@app.command("complete")
@error_feedback
def complete(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task to complete"),
    project_dir: DirOption = Path("."),
):
    """Complete a claimed task."""
    task = claims.complete_task(coord.find_session(project_dir), task_id)
    if output.echo_json(task.to_dict(), ctx):
        return
    output.echo_text(f"Completed: {task.id}", ctx)


@app.command("add")
@error_feedback
def add(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="New task id"),
    description: str = typer.Argument(..., help="Task description"),
    project_dir: DirOption = Path("."),
):
    """Add an open task to the board."""
    task = claims.add_task(coord.find_session(project_dir), task_id, description)
    if output.echo_json(task.to_dict(), ctx):
        return
    output.echo_text(f"Added: {task.id}", ctx)


@app.command("mark")
@error_feedback
def mark(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task to update"),
    new_status: TaskStatus = typer.Argument(..., help="in_progress, blocked or open"),
    project_dir: DirOption = Path("."),
):
    """Move a task to in_progress, blocked or back to open."""
    task = claims.set_task_status(coord.find_session(project_dir), task_id, new_status)
    if output.echo_json(task.to_dict(), ctx):
        return
    output.echo_text(f"{task.id}: {task.status.value}", ctx)


@app.command("events")
@error_feedback
def events(
    ctx: typer.Context,
    since: int = typer.Option(0, "--since", help="Only events after this sequence number"),
    follow: bool = typer.Option(False, "--follow", "-f", help="Keep printing new events"),
    project_dir: DirOption = Path("."),
):
    """Print the session's event log."""
    log = EventLog(paths.event_log(coord.find_session(project_dir)))

    def show(event):
        if not output.echo_json(event.to_dict(), ctx):
            typer.echo(output.format_event(event))

    if not follow:
        for event in log.read_from(since):
            show(event)
        return

    async def tail():
        async for event in log.follow(since):
            show(event)

    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(tail())


def main() -> None:
    app()


if __name__ == "__main__":
    main()
