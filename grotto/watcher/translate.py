"""Turn raw observations of the coordination directory into typed events."""

import logging

from grotto.core.board import TaskBoard
from grotto.core.journal import JournalRecord
from grotto.models import AgentStatus, Event, EventType, Task, TaskStatus, can_transition, now_iso

logger = logging.getLogger(__name__)


def from_journal(record: JournalRecord) -> Event:
    fields = record.fields
    raw_type = record.event_type
    event_type = EventType.parse(raw_type)
    data = fields.get("data") or {}
    if not isinstance(data, dict):
        data = {"value": data}
    if event_type == EventType.RAW:
        data = {**data, "event_type": raw_type}
    return Event(
        type=event_type,
        timestamp=str(fields.get("timestamp") or now_iso()),
        agent_id=fields.get("agent_id"),
        task_id=fields.get("task_id"),
        message=fields.get("message"),
        data=data,
        journal_offset=record.end_offset,
    )


def agent_status_event(status: AgentStatus) -> Event:
    return Event(
        type=EventType.AGENT_STATUS,
        agent_id=status.id,
        task_id=status.current_task,
        message=f"{status.id}: {status.state}",
        data={"status": status.to_dict()},
    )


def task_updated(task: Task, message: str | None = None) -> Event:
    return Event(
        type=EventType.TASK_UPDATED,
        task_id=task.id,
        message=message or f"Task '{task.id}' is {task.status.value}",
        data={"task": task.to_dict()},
    )


def board_diff(known: TaskBoard, observed: list[Task]) -> list[Event]:
    """Events that move `known` to the observed board without skipping transitions.

    Regressions the lifecycle forbids are logged and dropped; the event log
    stays authoritative over a stale board file.
    """
    events: list[Event] = []
    for task in observed:
        previous = known.get(task.id)
        if previous is None:
            previous = task.copy(status=TaskStatus.OPEN, claimed_by=None, completed_at=None)
            events.append(task_updated(previous, f"Task '{task.id}' added"))
        events.extend(_task_path(previous, task))
    return events


def _task_path(old: Task, new: Task) -> list[Event]:
    if old.status == new.status and old.claimed_by == new.claimed_by:
        if old.description != new.description:
            return [task_updated(old.copy(description=new.description))]
        return []

    events: list[Event] = []
    status = old.status
    if status == TaskStatus.BLOCKED and new.status.is_held:
        events.append(task_updated(old.copy(status=TaskStatus.OPEN, claimed_by=None)))
        status = TaskStatus.OPEN
    elif not can_transition(status, new.status):
        logger.warning(f"Ignoring regression of {new.id} on board: {status.value} -> {new.status.value}")
        return []

    if new.claimed_by and (
        (status == TaskStatus.OPEN and (new.status.is_held or new.status == TaskStatus.COMPLETED))
        or (status.is_held and new.status.is_held and old.claimed_by != new.claimed_by)
    ):
        data = {"task_description": new.description}
        if status.is_held:
            data["previous_claimant"] = old.claimed_by
        events.append(
            Event(
                type=EventType.TASK_CLAIMED,
                agent_id=new.claimed_by,
                task_id=new.id,
                message=f"Task '{new.id}' claimed by {new.claimed_by}",
                data=data,
            )
        )
        status = TaskStatus.CLAIMED

    if new.status == TaskStatus.COMPLETED and status.is_held:
        events.append(
            Event(
                type=EventType.TASK_COMPLETED,
                agent_id=new.claimed_by,
                task_id=new.id,
                message=f"Task '{new.id}' completed",
                data={"task_description": new.description},
            )
        )
    elif new.status != status:
        events.append(task_updated(new.copy(claimed_by=new.claimed_by if new.status.is_held else None)))
    return events
