"""Task board: in-memory claim state machine and the tasks.md format."""

import logging
from collections.abc import Iterable

from grotto.errors import ClaimConflict, TaskNotFoundError
from grotto.models import Task, TaskStatus, can_transition, now_iso

logger = logging.getLogger(__name__)

STATUS_MARKERS = {
    TaskStatus.OPEN: "⭕",
    TaskStatus.CLAIMED: "🟡",
    TaskStatus.IN_PROGRESS: "🔄",
    TaskStatus.COMPLETED: "✅",
    TaskStatus.BLOCKED: "🚫",
}
_MARKER_STATUS = {marker: status for status, marker in STATUS_MARKERS.items()}

CLAIMED_BY_PREFIX = "- Claimed by: "
COMPLETED_AT_PREFIX = "- Completed at: "


class TaskBoard:
    def __init__(self, tasks: Iterable[Task] = ()):
        self._tasks: dict[str, Task] = {}
        for task in tasks:
            self._tasks[task.id] = task

    def __contains__(self, task_id: str) -> bool:
        return task_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def __eq__(self, other) -> bool:
        return isinstance(other, TaskBoard) and self.tasks() == other.tasks()

    def get(self, task_id: str) -> Task | None:
        task = self._tasks.get(task_id)
        return task.copy() if task else None

    def tasks(self) -> list[Task]:
        return [t.copy() for t in self._tasks.values()]

    def copy(self) -> "TaskBoard":
        return TaskBoard(self.tasks())

    def _require(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def add(self, task: Task) -> Task:
        if task.id in self._tasks:
            raise ValueError(f"Task '{task.id}' already exists")
        self._tasks[task.id] = task.copy()
        return task.copy()

    def claim(self, task_id: str, agent_id: str) -> Task:
        """Open -> claimed by agent_id. Anything else is a conflict."""
        task = self._require(task_id)
        if task.status != TaskStatus.OPEN:
            raise ClaimConflict(task_id, task.status.value)
        updated = task.copy(status=TaskStatus.CLAIMED, claimed_by=agent_id)
        self._tasks[task_id] = updated
        return updated.copy()

    def complete(self, task_id: str, at: str | None = None) -> Task:
        """Claimed/in_progress -> completed. Anything else is a conflict."""
        task = self._require(task_id)
        if not task.status.is_held:
            raise ClaimConflict(task_id, task.status.value, action="complete")
        updated = task.copy(status=TaskStatus.COMPLETED, completed_at=at or now_iso())
        self._tasks[task_id] = updated
        return updated.copy()

    def reassign(self, task_id: str, agent_id: str) -> Task:
        task = self._require(task_id)
        if not task.status.is_held:
            raise ClaimConflict(task_id, task.status.value, action="reassign")
        updated = task.copy(claimed_by=agent_id)
        self._tasks[task_id] = updated
        return updated.copy()

    def update(self, task: Task) -> Task:
        """Insert a new task or move an existing one forward through the lifecycle."""
        current = self._tasks.get(task.id)
        if current is None:
            return self.add(task)
        if not can_transition(current.status, task.status):
            raise ClaimConflict(task.id, current.status.value, action=f"move to {task.status.value}")
        updated = task.copy(created_at=task.created_at or current.created_at)
        if updated.status == TaskStatus.OPEN:
            updated.claimed_by = None
        self._tasks[task.id] = updated
        return updated.copy()


def render(tasks: Iterable[Task]) -> str:
    lines = ["# Task Board", ""]
    for task in tasks:
        lines.append(f"{STATUS_MARKERS[task.status]} **{task.id}** - {task.description}")
        if task.claimed_by:
            lines.append(f"   {CLAIMED_BY_PREFIX}{task.claimed_by}")
        if task.completed_at:
            lines.append(f"   {COMPLETED_AT_PREFIX}{task.completed_at}")
        lines.append("")
    return "\n".join(lines) + "\n"


def parse(content: str) -> list[Task]:
    """Parse tasks.md. Lines that are not task entries are ignored."""
    tasks: list[Task] = []
    current: Task | None = None
    for line in content.splitlines():
        entry = _parse_entry(line)
        if entry is not None:
            current = entry
            tasks.append(entry)
            continue
        if current is None:
            continue
        detail = line.strip()
        if detail.startswith(CLAIMED_BY_PREFIX):
            current.claimed_by = detail[len(CLAIMED_BY_PREFIX) :].strip() or None
        elif detail.startswith(COMPLETED_AT_PREFIX):
            current.completed_at = detail[len(COMPLETED_AT_PREFIX) :].strip() or None
        elif not detail:
            current = None
    return tasks


def _parse_entry(line: str) -> Task | None:
    marker, sep, rest = line.partition(" ")
    status = _MARKER_STATUS.get(marker)
    if status is None or not sep:
        return None
    rest = rest.strip()
    if not rest.startswith("**"):
        return None
    task_id, found, remainder = rest[2:].partition("**")
    if not found or not task_id:
        logger.warning(f"Skipping malformed task line: {line!r}")
        return None
    description = remainder.strip()
    if description.startswith("- "):
        description = description[2:]
    return Task(id=task_id, description=description.strip(), status=status)
