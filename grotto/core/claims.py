"""Worker-side task protocol over the shared coordination directory.

Workers are separate processes with no lock in common. Claims and completions
are linearised by exclusive marker files under `claims/`; the board file is
then rewritten by temp-file + rename and re-verified, since another worker
may have replaced it concurrently while changing a different task.
"""

import json
import logging
from collections.abc import Callable
from pathlib import Path

from grotto.errors import AgentNotFoundError, ClaimConflict, TaskNotFoundError, TransientIOError
from grotto.lib import fs, paths
from grotto.models import AgentState, AgentStatus, Task, TaskStatus, can_transition, now_iso

from . import board, journal
from .board import TaskBoard

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 5


def load_board(gdir: Path) -> TaskBoard:
    content = fs.read_text(paths.task_board(gdir))
    return TaskBoard(board.parse(content or ""))


def write_board(gdir: Path, task_board: TaskBoard) -> None:
    fs.atomic_write(paths.task_board(gdir), board.render(task_board.tasks()))


def claim_task(gdir: Path, task_id: str, agent_id: str) -> Task:
    """Claim an open task for agent_id.

    Raises ClaimConflict when the task is not open or another worker's claim
    landed first. Nothing is written on conflict.
    """
    _require_agent(gdir, agent_id)
    current = load_board(gdir).get(task_id)
    if current is None:
        raise TaskNotFoundError(task_id)
    if current.status != TaskStatus.OPEN:
        raise ClaimConflict(task_id, current.status.value)

    marker = _marker(gdir, task_id, "claimed")
    if not fs.exclusive_create(marker, agent_id):
        raise ClaimConflict(task_id, TaskStatus.CLAIMED.value)

    task = _rewrite_marked(gdir, task_id, marker, lambda b: b.claim(task_id, agent_id))
    _set_agent(
        gdir,
        agent_id,
        state=AgentState.WORKING.value,
        current_task=task_id,
        progress=f"Working on task: {task.description}",
    )
    journal.log_event(
        gdir,
        "task_claimed",
        agent_id=agent_id,
        task_id=task_id,
        message=f"Task '{task_id}' claimed by {agent_id}",
        data={"task_description": task.description},
    )
    logger.info(f"{agent_id} claimed {task_id}")
    return task


def complete_task(gdir: Path, task_id: str) -> Task:
    """Complete a claimed or in-progress task."""
    current = load_board(gdir).get(task_id)
    if current is None:
        raise TaskNotFoundError(task_id)
    if not current.status.is_held:
        raise ClaimConflict(task_id, current.status.value, action="complete")

    marker = _marker(gdir, task_id, "completed")
    if not fs.exclusive_create(marker, current.claimed_by or ""):
        raise ClaimConflict(task_id, TaskStatus.COMPLETED.value, action="complete")

    completed_at = now_iso()
    task = _rewrite_marked(gdir, task_id, marker, lambda b: b.complete(task_id, at=completed_at))
    if task.claimed_by:
        _set_agent(
            gdir,
            task.claimed_by,
            state=AgentState.IDLE.value,
            current_task=None,
            progress="Task completed, ready for next task",
        )
    journal.log_event(
        gdir,
        "task_completed",
        agent_id=task.claimed_by,
        task_id=task_id,
        message=f"Task '{task_id}' completed",
        data={"task_description": task.description},
    )
    logger.info(f"Completed {task_id}")
    return task


def add_task(gdir: Path, task_id: str, description: str) -> Task:
    valid, error = paths.validate_id(task_id, "task id")
    if not valid:
        raise ValueError(error)
    task = Task(id=task_id, description=description, created_at=now_iso())
    return _rewrite(gdir, task_id, lambda b: b.add(task))


def set_task_status(gdir: Path, task_id: str, status: TaskStatus) -> Task:
    """Move a task to in_progress, blocked or back to open.

    Claiming and completing go through claim_task/complete_task so that the
    exclusive markers are honoured.
    """
    if status in (TaskStatus.CLAIMED, TaskStatus.COMPLETED):
        raise ValueError(f"Use claim/complete to move a task to {status.value}")
    current = load_board(gdir).get(task_id)
    if current is None:
        raise TaskNotFoundError(task_id)
    if status == TaskStatus.IN_PROGRESS and not current.status.is_held:
        raise ClaimConflict(task_id, current.status.value, action="start")
    if not can_transition(current.status, status):
        raise ClaimConflict(task_id, current.status.value, action=f"move to {status.value}")

    if status == TaskStatus.OPEN:
        for kind in ("claimed", "completed"):
            _marker(gdir, task_id, kind).unlink(missing_ok=True)

    def change(b: TaskBoard) -> Task:
        task = b.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return b.update(task.copy(status=status))

    return _rewrite(gdir, task_id, change)


def write_agent_status(gdir: Path, status: AgentStatus) -> None:
    fs.atomic_write_json(paths.agent_status(gdir, status.id), status.to_dict())


def read_agent_status(gdir: Path, agent_id: str) -> AgentStatus | None:
    content = fs.read_text(paths.agent_status(gdir, agent_id))
    if content is None:
        return None
    return AgentStatus.from_dict(json.loads(content))


def _rewrite(gdir: Path, task_id: str, change: Callable[[TaskBoard], Task]) -> Task:
    for attempt in range(MAX_WRITE_ATTEMPTS):
        task_board = load_board(gdir)
        task = change(task_board)
        write_board(gdir, task_board)
        if _persisted(load_board(gdir).get(task_id), task):
            return task
        logger.debug(f"tasks.md replaced concurrently while writing {task_id}, retry {attempt + 1}")
    raise TransientIOError(f"Could not persist {task_id} after {MAX_WRITE_ATTEMPTS} attempts")


def _rewrite_marked(gdir: Path, task_id: str, marker: Path, change: Callable[[TaskBoard], Task]) -> Task:
    """Rewrite the board while holding `marker`; the marker goes if the write does not land."""
    try:
        return _rewrite(gdir, task_id, change)
    except BaseException:
        marker.unlink(missing_ok=True)
        raise


def _persisted(stored: Task | None, task: Task) -> bool:
    return stored is not None and (stored.status, stored.claimed_by) == (task.status, task.claimed_by)


def _marker(gdir: Path, task_id: str, kind: str) -> Path:
    return paths.claims_dir(gdir) / f"{task_id}.{kind}"


def _known_agents(gdir: Path) -> set[str]:
    agents_root = paths.agents_dir(gdir)
    if not agents_root.exists():
        return set()
    return {p.name for p in agents_root.iterdir() if p.is_dir()}


def _require_agent(gdir: Path, agent_id: str) -> None:
    known = _known_agents(gdir)
    if known and agent_id not in known:
        raise AgentNotFoundError(agent_id)


def _set_agent(gdir: Path, agent_id: str, **changes) -> None:
    status = read_agent_status(gdir, agent_id) or AgentStatus(id=agent_id)
    write_agent_status(gdir, status.copy(last_update=now_iso(), **changes))
