import pytest

from grotto.core.state import SessionState
from grotto.errors import ResyncRequired
from grotto.models import AgentStatus, Event, EventType, Task, TaskStatus


def _sequenced(events):
    return [e.with_seq(i + 1) for i, e in enumerate(events)]


def _history():
    main = Task(id="main", description="Build it")
    t2 = Task(id="t2", description="Tests")
    return _sequenced(
        [
            Event(type=EventType.RAW, data={"event_type": "team_spawned"}),
            Event(type=EventType.TASK_UPDATED, task_id="main", data={"task": main.to_dict()}),
            Event(type=EventType.TASK_UPDATED, task_id="t2", data={"task": t2.to_dict()}),
            Event(
                type=EventType.AGENT_STATUS,
                agent_id="agent-1",
                data={"status": AgentStatus(id="agent-1", state="spawning").to_dict()},
            ),
            Event(type=EventType.TASK_CLAIMED, agent_id="agent-1", task_id="main"),
            Event(type=EventType.AGENT_PHASE, agent_id="agent-1", data={"phase": "editing"}),
            Event(type=EventType.TASK_CLAIMED, agent_id="agent-2", task_id="t2"),
            Event(type=EventType.TASK_COMPLETED, agent_id="agent-1", task_id="main"),
            Event(
                type=EventType.TASK_UPDATED,
                task_id="t2",
                data={"task": t2.copy(status=TaskStatus.BLOCKED).to_dict()},
            ),
            Event(type=EventType.SESSION_COMPLETED, data={"reason": "tmux_session_ended"}),
        ]
    )


def test_replay_is_deterministic():
    events = _history()
    assert SessionState.replay(events).snapshot() == SessionState.replay(events).snapshot()


def test_replay_reconstructs_board_and_agents():
    state = SessionState.replay(_history())
    assert state.offset == 10
    assert state.board.get("main").status == TaskStatus.COMPLETED
    assert state.board.get("main").claimed_by == "agent-1"
    assert state.board.get("t2").status == TaskStatus.BLOCKED
    assert state.agents["agent-1"].state == "idle"
    assert state.agents["agent-1"].phase == "editing"
    assert state.agents["agent-2"].current_task == "t2"
    assert not state.active
    assert state.completed_reason == "tmux_session_ended"


def test_snapshot_plus_tail_matches_full_replay():
    events = _history()
    expected = SessionState.replay(events).snapshot()
    for cursor in range(len(events) + 1):
        snapshot = SessionState.replay(events[:cursor]).snapshot()
        assert snapshot.cursor == cursor
        resumed = SessionState.from_snapshot(snapshot)
        for event in events[cursor:]:
            resumed.apply(event)
        assert resumed.snapshot() == expected


def test_already_applied_events_are_ignored():
    events = _history()
    state = SessionState.replay(events[:5])
    before = state.snapshot()
    assert state.apply(events[4]) is False
    assert state.snapshot() == before


def test_gap_requires_resync():
    events = _history()
    state = SessionState.replay(events[:3])
    with pytest.raises(ResyncRequired):
        state.apply(events[5])


def test_redundant_claim_detected():
    events = _history()
    state = SessionState.replay(events[:5])
    same = Event(type=EventType.TASK_CLAIMED, agent_id="agent-1", task_id="main")
    other = Event(type=EventType.TASK_CLAIMED, agent_id="agent-2", task_id="main")
    moved = Event(
        type=EventType.TASK_CLAIMED,
        agent_id="agent-2",
        task_id="main",
        data={"previous_claimant": "agent-1"},
    )
    assert state.is_redundant(same)
    assert state.is_redundant(other)
    assert not state.is_redundant(moved)
    assert not state.is_redundant(Event(type=EventType.RAW, data={"event_type": "note"}))


def test_regressing_update_is_ignored():
    state = SessionState.replay(_history()[:8])
    regress = Event(
        type=EventType.TASK_UPDATED,
        task_id="main",
        data={"task": Task(id="main", description="Build it").to_dict()},
        seq=9,
    )
    assert state.apply(regress) is False
    assert state.board.get("main").status == TaskStatus.COMPLETED
    assert state.offset == 9


def test_claim_of_held_task_by_other_agent_is_rejected():
    state = SessionState.replay(_history()[:5])
    rival = Event(type=EventType.TASK_CLAIMED, agent_id="agent-2", task_id="main").with_seq(6)
    assert state.apply(rival) is False
    assert state.board.get("main").claimed_by == "agent-1"
    assert state.offset == 6


def test_board_reassignment_moves_held_task():
    state = SessionState.replay(_history()[:5])
    moved = Event(
        type=EventType.TASK_CLAIMED,
        agent_id="agent-2",
        task_id="main",
        data={"previous_claimant": "agent-1"},
    ).with_seq(6)
    assert state.apply(moved) is True
    assert state.board.get("main").claimed_by == "agent-2"
