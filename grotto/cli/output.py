import json as json_lib

import typer

from grotto.core.board import STATUS_MARKERS
from grotto.models import AgentStatus, Event, Task


def set_flags(ctx: typer.Context, json_output: bool = False, quiet_output: bool = False) -> None:
    if ctx.obj is None or not isinstance(ctx.obj, dict):
        ctx.obj = {}
    ctx.obj["json_output"] = json_output
    ctx.obj["quiet_output"] = quiet_output


def is_json_mode(ctx: typer.Context) -> bool:
    """Check if JSON output mode is enabled."""
    return ctx.obj.get("json_output", False) if ctx.obj else False


def is_quiet_mode(ctx: typer.Context) -> bool:
    return ctx.obj.get("quiet_output", False) if ctx.obj else False


def echo_json(data, ctx: typer.Context) -> bool:
    """Output data as JSON if in JSON mode. Returns True if output, False otherwise."""
    if is_json_mode(ctx):
        typer.echo(json_lib.dumps(data, indent=2))
        return True
    return False


def echo_text(msg: str, ctx: typer.Context) -> None:
    """Echo message only if not in quiet mode."""
    if not is_quiet_mode(ctx):
        typer.echo(msg)


def format_task(task: Task) -> str:
    line = f"{STATUS_MARKERS[task.status]} {task.id:<12} {task.status.value:<12} {task.description}"
    if task.claimed_by:
        line += f"  [{task.claimed_by}]"
    return line


def format_agent(agent: AgentStatus) -> str:
    phase = f" ({agent.phase})" if agent.phase else ""
    task = f" on {agent.current_task}" if agent.current_task else ""
    return f"{agent.id:<10} {agent.state}{phase}{task}  {agent.progress}".rstrip()


def format_event(event: Event) -> str:
    who = f" {event.agent_id}" if event.agent_id else ""
    what = f" {event.task_id}" if event.task_id else ""
    message = f"  {event.message}" if event.message else ""
    return f"#{event.seq:<5} {event.timestamp[11:19]} {event.raw_type:<16}{who}{what}{message}"
