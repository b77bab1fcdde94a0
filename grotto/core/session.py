"""Coordination directory bootstrap and loading."""

import json
import logging
import uuid
from pathlib import Path

import yaml

from grotto.errors import InvalidSessionError
from grotto.lib import fs, paths
from grotto.models import AgentState, AgentStatus, SessionConfig, Task, now_iso

from . import board, journal

logger = logging.getLogger(__name__)

MAIN_TASK_ID = "main"


def init_session(
    project_dir: str | Path,
    agent_count: int,
    task: str,
    session_id: str | None = None,
) -> Path:
    """Create `<project>/.grotto/` with config, task board and agent status files."""
    if agent_count < 1:
        raise ValueError("agent_count must be at least 1")
    gdir = paths.coord_dir(project_dir)
    if paths.session_config(gdir).exists():
        raise InvalidSessionError(f"Session already initialized at {gdir}")

    for d in (paths.agents_dir(gdir), paths.claims_dir(gdir), paths.messages_dir(gdir)):
        d.mkdir(parents=True, exist_ok=True)

    created_at = now_iso()
    config = SessionConfig(
        agent_count=agent_count,
        task=task,
        project_dir=str(gdir.parent),
        session_id=session_id or f"grotto-{uuid.uuid4().hex[:8]}",
        created_at=created_at,
    )
    fs.atomic_write(paths.session_config(gdir), yaml.safe_dump(config.to_dict(), sort_keys=False))

    main = Task(id=MAIN_TASK_ID, description=task, created_at=created_at)
    fs.atomic_write(paths.task_board(gdir), board.render([main]))

    for index, agent_id in enumerate(config.agent_ids):
        status = AgentStatus(
            id=agent_id,
            state=AgentState.SPAWNING.value,
            progress="Initializing...",
            last_update=created_at,
            pane_index=index,
        )
        fs.atomic_write_json(paths.agent_status(gdir, agent_id), status.to_dict())

    journal.log_event(
        gdir,
        "team_spawned",
        message=f"Spawned {agent_count} agents for task: {task}",
        data={"agent_count": agent_count, "task": task},
    )
    logger.info(f"Initialized session {config.session_id} at {gdir}")
    return gdir


def find_session(project_dir: str | Path) -> Path:
    """Return the coordination directory for project_dir or raise InvalidSessionError."""
    gdir = paths.coord_dir(project_dir)
    if not gdir.is_dir():
        raise InvalidSessionError("No .grotto directory found at specified path")
    return gdir


def load_config(gdir: Path) -> SessionConfig | None:
    content = fs.read_text(paths.session_config(gdir))
    if content is None:
        return None
    try:
        data = yaml.safe_load(content) or {}
    except yaml.YAMLError as e:
        logger.warning(f"Unreadable session config in {gdir}: {e}")
        return None
    if not isinstance(data, dict):
        return None
    return SessionConfig.from_dict(data)


def load_agents(gdir: Path) -> dict[str, AgentStatus]:
    agents: dict[str, AgentStatus] = {}
    root = paths.agents_dir(gdir)
    if not root.exists():
        return agents
    for status_file in sorted(root.glob("*/status.json")):
        content = fs.read_text(status_file)
        if not content:
            continue
        try:
            status = AgentStatus.from_dict(json.loads(content))
        except (json.JSONDecodeError, ValueError, TypeError) as e:
            logger.warning(f"Skipping corrupt agent status {status_file}: {e}")
            continue
        agents[status.id] = status
    return agents
