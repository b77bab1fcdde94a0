from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class TaskStatus(str, Enum):
    OPEN = "open"
    CLAIMED = "claimed"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    COMPLETED = "completed"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)

    @property
    def is_held(self) -> bool:
        return self in (TaskStatus.CLAIMED, TaskStatus.IN_PROGRESS)


_STATUS_ORDER = [
    TaskStatus.OPEN,
    TaskStatus.CLAIMED,
    TaskStatus.IN_PROGRESS,
    TaskStatus.BLOCKED,
    TaskStatus.COMPLETED,
]


def can_transition(old: TaskStatus, new: TaskStatus) -> bool:
    """Statuses only move forward; blocked -> open is the one regression allowed."""
    if old == new:
        return True
    if old == TaskStatus.COMPLETED:
        return False
    if old == TaskStatus.BLOCKED and new == TaskStatus.OPEN:
        return True
    return new.rank > old.rank


class AgentState(str, Enum):
    IDLE = "idle"
    WORKING = "working"
    SPAWNING = "spawning"
    COMPLETED = "completed"
    ERROR = "error"


class AgentPhase(str, Enum):
    STARTING = "starting"
    THINKING = "thinking"
    EDITING = "editing"
    RUNNING = "running"
    IDLE = "idle"
    FINISHED = "finished"
    ERROR = "error"


class EventType(str, Enum):
    TASK_CLAIMED = "task_claimed"
    TASK_COMPLETED = "task_completed"
    TASK_UPDATED = "task_updated"
    AGENT_STATUS = "agent_status"
    AGENT_PHASE = "agent_phase"
    SESSION_COMPLETED = "session_completed"
    RAW = "raw"

    @classmethod
    def parse(cls, value: str) -> "EventType":
        try:
            return cls(value)
        except ValueError:
            return cls.RAW


@dataclass
class Task:
    id: str
    description: str
    status: TaskStatus = TaskStatus.OPEN
    claimed_by: str | None = None
    created_at: str | None = None
    completed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        return cls(
            id=str(data["id"]),
            description=str(data.get("description", "")),
            status=TaskStatus(data.get("status", "open")),
            claimed_by=data.get("claimed_by"),
            created_at=data.get("created_at"),
            completed_at=data.get("completed_at"),
        )

    def copy(self, **changes) -> "Task":
        return replace(self, **changes)


@dataclass
class AgentStatus:
    id: str
    state: str = AgentState.SPAWNING.value
    phase: str | None = None
    current_task: str | None = None
    progress: str = ""
    last_update: str | None = None
    pane_index: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentStatus":
        if "id" not in data:
            raise ValueError("agent status record has no id")
        return cls(
            id=str(data["id"]),
            state=str(data.get("state", AgentState.SPAWNING.value)),
            phase=data.get("phase"),
            current_task=data.get("current_task"),
            progress=str(data.get("progress", "")),
            last_update=data.get("last_update"),
            pane_index=data.get("pane_index"),
        )

    def copy(self, **changes) -> "AgentStatus":
        return replace(self, **changes)


@dataclass(frozen=True)
class Event:
    """One entry of a session's event log. Immutable once appended."""

    type: EventType
    timestamp: str = field(default_factory=now_iso)
    agent_id: str | None = None
    task_id: str | None = None
    message: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    seq: int = 0
    journal_offset: int | None = None

    @property
    def raw_type(self) -> str:
        """Original journal type for passthrough events, else the enum value."""
        if self.type == EventType.RAW:
            return str(self.data.get("event_type", EventType.RAW.value))
        return self.type.value

    def with_seq(self, seq: int) -> "Event":
        return replace(self, seq=seq)

    def to_dict(self) -> dict[str, Any]:
        data = {
            "seq": self.seq,
            "timestamp": self.timestamp,
            "type": self.type.value,
            "agent_id": self.agent_id,
            "task_id": self.task_id,
            "message": self.message,
            "data": self.data,
        }
        if self.journal_offset is not None:
            data["journal_offset"] = self.journal_offset
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        raw_type = data.get("type") or data.get("event_type")
        if not isinstance(raw_type, str):
            raise ValueError("event record has no type")
        event_type = EventType.parse(raw_type)
        payload = data.get("data") or {}
        if not isinstance(payload, dict):
            payload = {"value": payload}
        if event_type == EventType.RAW and "event_type" not in payload:
            payload = {**payload, "event_type": raw_type}
        seq = data.get("seq", 0)
        if not isinstance(seq, int):
            raise ValueError(f"invalid seq: {seq!r}")
        return cls(
            type=event_type,
            timestamp=str(data.get("timestamp") or now_iso()),
            agent_id=data.get("agent_id"),
            task_id=data.get("task_id"),
            message=data.get("message"),
            data=payload,
            seq=seq,
            journal_offset=data.get("journal_offset"),
        )


@dataclass
class SessionConfig:
    agent_count: int
    task: str
    project_dir: str
    session_id: str | None = None
    created_at: str | None = None

    @property
    def agent_ids(self) -> list[str]:
        return [f"agent-{i + 1}" for i in range(self.agent_count)]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionConfig":
        return cls(
            agent_count=int(data.get("agent_count", 0)),
            task=str(data.get("task", "")),
            project_dir=str(data.get("project_dir", "")),
            session_id=data.get("session_id"),
            created_at=data.get("created_at"),
        )


@dataclass
class Snapshot:
    """Task board + agent status bound to the event log offset it was computed at."""

    cursor: int
    tasks: list[Task]
    agents: dict[str, AgentStatus]
    config: SessionConfig | None = None
    session_active: bool = True
    completed_reason: str | None = None

    @property
    def session_status(self) -> str:
        return "live" if self.session_active else "completed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "cursor": self.cursor,
            "tasks": [t.to_dict() for t in self.tasks],
            "agents": {agent_id: a.to_dict() for agent_id, a in self.agents.items()},
            "config": self.config.to_dict() if self.config else None,
            "session_active": self.session_active,
            "session_status": self.session_status,
            "completed_reason": self.completed_reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Snapshot":
        config = data.get("config")
        return cls(
            cursor=int(data.get("cursor", 0)),
            tasks=[Task.from_dict(t) for t in data.get("tasks") or []],
            agents={
                agent_id: AgentStatus.from_dict(a)
                for agent_id, a in (data.get("agents") or {}).items()
            },
            config=SessionConfig.from_dict(config) if config else None,
            session_active=bool(data.get("session_active", True)),
            completed_reason=data.get("completed_reason"),
        )
