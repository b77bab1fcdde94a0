from grotto.core.board import TaskBoard
from grotto.core.journal import JournalRecord
from grotto.models import EventType, Task, TaskStatus
from grotto.watcher import translate


def _types(events):
    return [e.type for e in events]


def test_open_to_completed_burst_keeps_both_transitions():
    known = TaskBoard([Task(id="t1", description="Work")])
    observed = [Task(id="t1", description="Work", status=TaskStatus.COMPLETED, claimed_by="agent-1")]

    events = translate.board_diff(known, observed)

    assert _types(events) == [EventType.TASK_CLAIMED, EventType.TASK_COMPLETED]
    assert all(e.agent_id == "agent-1" for e in events)


def test_new_claimed_task_is_added_then_claimed():
    events = translate.board_diff(
        TaskBoard(),
        [Task(id="t9", description="New", status=TaskStatus.IN_PROGRESS, claimed_by="agent-2")],
    )
    assert _types(events) == [EventType.TASK_UPDATED, EventType.TASK_CLAIMED, EventType.TASK_UPDATED]
    assert events[0].data["task"]["status"] == "open"
    assert events[2].data["task"]["status"] == "in_progress"


def test_unchanged_board_emits_nothing():
    tasks = [Task(id="t1", description="Work", status=TaskStatus.CLAIMED, claimed_by="agent-1")]
    assert translate.board_diff(TaskBoard(tasks), tasks) == []


def test_regression_on_board_is_dropped():
    known = TaskBoard([Task(id="t1", description="Work", status=TaskStatus.COMPLETED, claimed_by="a")])
    assert translate.board_diff(known, [Task(id="t1", description="Work")]) == []


def test_reassignment_carries_previous_claimant():
    known = TaskBoard([Task(id="t1", description="Work", status=TaskStatus.CLAIMED, claimed_by="agent-1")])
    events = translate.board_diff(
        known, [Task(id="t1", description="Work", status=TaskStatus.CLAIMED, claimed_by="agent-2")]
    )
    assert _types(events) == [EventType.TASK_CLAIMED]
    assert events[0].data["previous_claimant"] == "agent-1"


def test_blocked_to_claimed_reopens_first():
    known = TaskBoard([Task(id="t1", description="Work", status=TaskStatus.BLOCKED)])
    events = translate.board_diff(
        known, [Task(id="t1", description="Work", status=TaskStatus.CLAIMED, claimed_by="agent-1")]
    )
    assert _types(events) == [EventType.TASK_UPDATED, EventType.TASK_CLAIMED]
    assert events[0].data["task"]["status"] == "open"


def test_journal_record_types():
    claimed = translate.from_journal(
        JournalRecord(120, {"event_type": "task_claimed", "agent_id": "agent-1", "task_id": "t1"})
    )
    assert claimed.type == EventType.TASK_CLAIMED
    assert claimed.journal_offset == 120

    raw = translate.from_journal(JournalRecord(200, {"event_type": "team_spawned", "data": {"agent_count": 3}}))
    assert raw.type == EventType.RAW
    assert raw.raw_type == "team_spawned"
    assert raw.data["agent_count"] == 3
