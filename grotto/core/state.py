"""Derived session state: the fold of the event log.

`SessionState.apply` is the only way state changes, so replaying events
1..N always rebuilds the same task board and agent statuses.
"""

import logging
from collections.abc import Iterable

from grotto.errors import ClaimConflict, ResyncRequired
from grotto.models import (
    AgentState,
    AgentStatus,
    Event,
    EventType,
    SessionConfig,
    Snapshot,
    Task,
    TaskStatus,
)

from .board import TaskBoard

logger = logging.getLogger(__name__)


class SessionState:
    def __init__(self, config: SessionConfig | None = None):
        self.config = config
        self.board = TaskBoard()
        self.agents: dict[str, AgentStatus] = {}
        self.offset = 0
        self.active = True
        self.completed_reason: str | None = None
        self.last_updated: str | None = config.created_at if config else None

    @classmethod
    def replay(cls, events: Iterable[Event], config: SessionConfig | None = None) -> "SessionState":
        state = cls(config)
        for event in events:
            if event.seq > state.offset + 1:
                logger.warning(f"Event log skips from seq {state.offset} to {event.seq}; continuing")
                state.offset = event.seq - 1
            state.apply(event)
        return state

    @classmethod
    def from_snapshot(cls, snapshot: Snapshot) -> "SessionState":
        state = cls(snapshot.config)
        state.board = TaskBoard(snapshot.tasks)
        state.agents = {k: v.copy() for k, v in snapshot.agents.items()}
        state.offset = snapshot.cursor
        state.active = snapshot.session_active
        state.completed_reason = snapshot.completed_reason
        return state

    def copy(self) -> "SessionState":
        return SessionState.from_snapshot(self.snapshot())

    def snapshot(self) -> Snapshot:
        return Snapshot(
            cursor=self.offset,
            tasks=self.board.tasks(),
            agents={k: v.copy() for k, v in self.agents.items()},
            config=self.config,
            session_active=self.active,
            completed_reason=self.completed_reason,
        )

    def apply(self, event: Event) -> bool:
        """Fold one sequenced event. Returns True if state changed.

        Events at or below the current offset were already applied and are
        ignored. A gap means events were lost and raises ResyncRequired.
        """
        if event.seq <= self.offset:
            return False
        if event.seq != self.offset + 1:
            raise ResyncRequired(f"expected seq {self.offset + 1}, got {event.seq}")
        changed = self._mutate(event)
        self.offset = event.seq
        self.last_updated = event.timestamp
        return changed

    def is_redundant(self, event: Event) -> bool:
        """True if the event's effect is already reflected in this state."""
        if event.type == EventType.RAW:
            return False
        return not self.copy()._mutate(event)

    def _mutate(self, event: Event) -> bool:
        handler = _HANDLERS.get(event.type)
        if handler is None:
            return False
        return handler(self, event)

    def _on_task_claimed(self, event: Event) -> bool:
        if not event.task_id or not event.agent_id:
            logger.warning(f"task_claimed without task or agent (seq {event.seq})")
            return False
        task = self.board.get(event.task_id)
        if task is None:
            description = str(event.data.get("task_description", ""))
            self.board.add(Task(id=event.task_id, description=description, created_at=event.timestamp))
            task = self.board.get(event.task_id)

        if task.status == TaskStatus.OPEN:
            self.board.claim(event.task_id, event.agent_id)
        elif task.status.is_held and task.claimed_by != event.agent_id:
            if not event.data.get("previous_claimant"):
                # Only an observed board change may move a held task.
                logger.warning(
                    f"Rejecting claim of {event.task_id} by {event.agent_id}: held by {task.claimed_by}"
                )
                return False
            self.board.reassign(event.task_id, event.agent_id)
        else:
            return False

        self._touch_agent(
            event.agent_id,
            event,
            state=AgentState.WORKING.value,
            current_task=event.task_id,
            progress=f"Working on task: {task.description}" if task.description else "Working",
        )
        return True

    def _on_task_completed(self, event: Event) -> bool:
        if not event.task_id:
            return False
        task = self.board.get(event.task_id)
        if task is None or not task.status.is_held:
            return False
        completed = self.board.complete(event.task_id, at=event.timestamp)
        if completed.claimed_by:
            self._touch_agent(
                completed.claimed_by,
                event,
                state=AgentState.IDLE.value,
                current_task=None,
                progress="Task completed, ready for next task",
            )
        return True

    def _on_task_updated(self, event: Event) -> bool:
        raw = event.data.get("task")
        if not isinstance(raw, dict):
            return False
        try:
            task = Task.from_dict(raw)
        except (KeyError, ValueError) as e:
            logger.warning(f"Ignoring malformed task_updated (seq {event.seq}): {e}")
            return False
        current = self.board.get(task.id)
        if current is not None:
            merged = task.copy(created_at=task.created_at or current.created_at)
            if merged.status == TaskStatus.OPEN:
                merged.claimed_by = None
            if merged == current:
                return False
        try:
            self.board.update(task)
        except ClaimConflict as e:
            logger.warning(f"Ignoring task_updated (seq {event.seq}): {e}")
            return False
        return True

    def _on_agent_status(self, event: Event) -> bool:
        raw = event.data.get("status")
        if not isinstance(raw, dict):
            return False
        try:
            status = AgentStatus.from_dict(raw)
        except ValueError as e:
            logger.warning(f"Ignoring malformed agent_status (seq {event.seq}): {e}")
            return False
        current = self.agents.get(status.id)
        if current is not None and status.phase is None:
            status.phase = current.phase
        if status == current:
            return False
        self.agents[status.id] = status
        return True

    def _on_agent_phase(self, event: Event) -> bool:
        phase = event.data.get("phase")
        if not event.agent_id or not isinstance(phase, str):
            return False
        current = self.agents.get(event.agent_id)
        if current is not None and current.phase == phase:
            return False
        agent = current or AgentStatus(id=event.agent_id)
        self.agents[event.agent_id] = agent.copy(phase=phase)
        return True

    def _on_session_completed(self, event: Event) -> bool:
        if not self.active:
            return False
        self.active = False
        self.completed_reason = event.data.get("reason") or event.message
        return True

    def _touch_agent(self, agent_id: str, event: Event, **changes) -> None:
        agent = self.agents.get(agent_id) or AgentStatus(id=agent_id)
        self.agents[agent_id] = agent.copy(last_update=event.timestamp, **changes)


_HANDLERS = {
    EventType.TASK_CLAIMED: SessionState._on_task_claimed,
    EventType.TASK_COMPLETED: SessionState._on_task_completed,
    EventType.TASK_UPDATED: SessionState._on_task_updated,
    EventType.AGENT_STATUS: SessionState._on_agent_status,
    EventType.AGENT_PHASE: SessionState._on_agent_phase,
    EventType.SESSION_COMPLETED: SessionState._on_session_completed,
}
