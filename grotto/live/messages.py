"""Live-sync wire messages: JSON objects tagged by `type`."""

from typing import Any

from grotto.models import Event, EventType, Snapshot, now_iso

SNAPSHOT = "snapshot"

WIRE_KINDS = {
    EventType.AGENT_STATUS: "agent:status",
    EventType.AGENT_PHASE: "agent:phase",
    EventType.TASK_CLAIMED: "task:claimed",
    EventType.TASK_COMPLETED: "task:completed",
    EventType.TASK_UPDATED: "task:updated",
    EventType.SESSION_COMPLETED: "session:completed",
    EventType.RAW: "event:raw",
}
_KIND_TYPES = {kind: event_type for event_type, kind in WIRE_KINDS.items()}

RESYNC_CLOSE_CODE = 4409
NOT_FOUND_CLOSE_CODE = 4404


def snapshot_message(snapshot: Snapshot) -> dict[str, Any]:
    return {
        "type": SNAPSHOT,
        "timestamp": now_iso(),
        "message": "Full state snapshot",
        **snapshot.to_dict(),
    }


def event_message(event: Event, replay: bool = False) -> dict[str, Any]:
    message = {
        "type": WIRE_KINDS[event.type],
        "seq": event.seq,
        "timestamp": event.timestamp,
        "agent_id": event.agent_id,
        "task_id": event.task_id,
        "message": event.message,
        "data": event.data,
    }
    if replay:
        message["replay"] = True
    return message


def completion_message(reason: str, seq: int = 0) -> dict[str, Any]:
    """Sent when a session is torn down without a logged completion event."""
    return {
        "type": WIRE_KINDS[EventType.SESSION_COMPLETED],
        "seq": seq,
        "timestamp": now_iso(),
        "agent_id": None,
        "task_id": None,
        "message": reason,
        "data": {"reason": reason},
        "session_status": "completed",
    }


def parse_message(message: dict[str, Any]) -> Snapshot | Event | None:
    """Decode a wire message. Unknown kinds become raw events."""
    kind = message.get("type")
    if not isinstance(kind, str):
        return None
    if kind == SNAPSHOT:
        return Snapshot.from_dict(message)
    event_type = _KIND_TYPES.get(kind, EventType.RAW)
    data = message.get("data") or {}
    if not isinstance(data, dict):
        data = {"value": data}
    if event_type == EventType.RAW and "event_type" not in data:
        data = {**data, "event_type": kind}
    seq = message.get("seq")
    return Event(
        type=event_type,
        timestamp=str(message.get("timestamp") or now_iso()),
        agent_id=message.get("agent_id"),
        task_id=message.get("task_id"),
        message=message.get("message"),
        data=data,
        seq=seq if isinstance(seq, int) else 0,
    )


def is_replay(message: dict[str, Any]) -> bool:
    return bool(message.get("replay"))
