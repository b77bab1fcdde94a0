import asyncio
import logging
import shutil
from pathlib import Path

import pytest

from grotto.core import board, claims, journal
from grotto.daemon.hub import Closed, Hub
from grotto.errors import SessionLostError, TransientIOError
from grotto.lib import fs, paths
from grotto.models import EventType, Task, TaskStatus
from grotto.watcher import translate
from grotto.watcher.watcher import SessionWatcher


def _watcher(gdir, settings, session_id="s1"):
    return SessionWatcher(session_id, gdir, Hub(session_id), settings=settings)


def _logged(watcher, event_type):
    return [e for e in watcher.log.history() if e.type == event_type]


def _drain_queue(sub):
    return [sub.queue.get_nowait() for _ in range(sub.queue.qsize())]


async def _eventually(predicate, timeout=5.0):
    for _ in range(int(timeout / 0.02)):
        if predicate():
            return
        await asyncio.sleep(0.02)
    raise AssertionError("condition not met in time")


def _locked_board(monkeypatch):
    """Make tasks.md unreadable for the next `left` reads."""
    failures = {"left": 0}
    real = Path.read_text

    def read_text(self, *args, **kwargs):
        if self.name == "tasks.md" and failures["left"] > 0:
            failures["left"] -= 1
            raise PermissionError(f"{self} is locked")
        return real(self, *args, **kwargs)

    monkeypatch.setattr(Path, "read_text", read_text)
    return failures


def _board_with(gdir, *extra):
    main = Task(id="main", description="Build the thing")
    fs.atomic_write(paths.task_board(gdir), board.render([main, *extra]))


@pytest.mark.asyncio
async def test_initial_scan_records_existing_state(gdir, fast_settings):
    watcher = _watcher(gdir, fast_settings)
    await watcher.start(watch=False)

    events = watcher.log.history()
    assert [e.seq for e in events] == list(range(1, len(events) + 1))
    assert events[0].raw_type == "team_spawned"
    assert set(watcher.state.agents) == {"agent-1", "agent-2"}
    assert watcher.state.board.get("main").status == TaskStatus.OPEN
    assert watcher.ready.is_set()


@pytest.mark.asyncio
async def test_claim_is_recorded_once(gdir, fast_settings):
    watcher = _watcher(gdir, fast_settings)
    await watcher.start(watch=False)

    claims.claim_task(gdir, "main", "agent-1")
    await watcher.sync()
    await watcher.sync()

    claimed = _logged(watcher, EventType.TASK_CLAIMED)
    assert [(e.task_id, e.agent_id) for e in claimed] == [("main", "agent-1")]
    assert claimed[0].journal_offset is not None
    assert watcher.state.board.get("main").claimed_by == "agent-1"


@pytest.mark.asyncio
async def test_burst_keeps_claim_before_completion(gdir, fast_settings):
    watcher = _watcher(gdir, fast_settings)
    await watcher.start(watch=False)

    claims.claim_task(gdir, "main", "agent-2")
    claims.complete_task(gdir, "main")
    await watcher.sync()

    types = [e.type for e in watcher.log.history() if e.task_id == "main" and e.type != EventType.AGENT_STATUS]
    assert types.count(EventType.TASK_CLAIMED) == 1
    assert types.count(EventType.TASK_COMPLETED) == 1
    assert types.index(EventType.TASK_CLAIMED) < types.index(EventType.TASK_COMPLETED)


@pytest.mark.asyncio
async def test_board_only_jump_is_expanded(gdir, fast_settings):
    """Contract: an open -> completed board edit yields claimed then completed."""
    watcher = _watcher(gdir, fast_settings)
    await watcher.start(watch=False)

    done = Task(id="main", description="Build the thing", status=TaskStatus.COMPLETED, claimed_by="agent-1")
    fs.atomic_write(paths.task_board(gdir), board.render([done]))
    committed = await watcher.sync()

    assert [e.type for e in committed] == [EventType.TASK_CLAIMED, EventType.TASK_COMPLETED]
    assert [e.seq for e in committed] == [committed[0].seq, committed[0].seq + 1]
    assert watcher.state.board.get("main").status == TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_restart_replays_without_duplicates(gdir, fast_settings):
    first = _watcher(gdir, fast_settings)
    await first.start(watch=False)
    claims.claim_task(gdir, "main", "agent-1")
    await first.sync()
    before = first.state.snapshot()

    second = _watcher(gdir, fast_settings)
    await second.start(watch=False)

    assert second.state.snapshot() == before
    assert second.log.last_seq() == before.cursor
    assert second.journal.position == paths.journal(gdir).stat().st_size


@pytest.mark.asyncio
async def test_published_batches_follow_log_order(gdir, fast_settings):
    watcher = _watcher(gdir, fast_settings)
    await watcher.start(watch=False)
    snapshot, sub = await watcher.attach()

    claims.add_task(gdir, "t2", "Second")
    claims.claim_task(gdir, "t2", "agent-2")
    committed = await watcher.sync()

    received = [sub.queue.get_nowait() for _ in range(sub.queue.qsize())]
    assert received == committed
    assert [e.seq for e in received] == list(range(snapshot.cursor + 1, snapshot.cursor + 1 + len(received)))


@pytest.mark.asyncio
async def test_corrupt_status_file_is_skipped(gdir, fast_settings, caplog):
    watcher = _watcher(gdir, fast_settings)
    await watcher.start(watch=False)

    paths.agent_status(gdir, "agent-1").write_text("{broken")
    with caplog.at_level(logging.WARNING):
        committed = await watcher.sync()

    assert committed == []
    assert "corrupt" in caplog.text
    assert watcher.state.agents["agent-1"].state == "spawning"


@pytest.mark.asyncio
async def test_missing_directory_is_fatal(gdir, fast_settings):
    watcher = _watcher(gdir, fast_settings)
    await watcher.start(watch=False)

    shutil.rmtree(gdir)
    with pytest.raises(SessionLostError):
        await watcher.sync()


@pytest.mark.asyncio
async def test_background_loop_picks_up_changes(gdir, fast_settings):
    watcher = _watcher(gdir, fast_settings)
    await watcher.start()
    try:
        await asyncio.to_thread(claims.claim_task, gdir, "main", "agent-1")
        for _ in range(200):
            if watcher.state.board.get("main").status == TaskStatus.CLAIMED:
                break
            await asyncio.sleep(0.02)
        assert watcher.state.board.get("main").claimed_by == "agent-1"
    finally:
        await watcher.stop()


@pytest.mark.asyncio
async def test_journal_claim_on_held_task_commits_nothing(gdir, fast_settings):
    watcher = _watcher(gdir, fast_settings)
    await watcher.start(watch=False)
    claims.claim_task(gdir, "main", "agent-1")
    await watcher.sync()

    journal.log_event(gdir, "task_claimed", agent_id="agent-2", task_id="main", message="late claim")
    committed = await watcher.sync()

    assert committed == []
    assert watcher.state.board.get("main").claimed_by == "agent-1"
    assert [e.agent_id for e in _logged(watcher, EventType.TASK_CLAIMED)] == ["agent-1"]


@pytest.mark.asyncio
async def test_restart_resumes_after_redundant_journal_tail(gdir, fast_settings):
    first = _watcher(gdir, fast_settings)
    await first.start(watch=False)
    claims.claim_task(gdir, "main", "agent-1")
    await first.sync()
    journal.log_event(gdir, "task_claimed", agent_id="agent-1", task_id="main", message="repeat")
    assert await first.sync() == []
    end = paths.journal(gdir).stat().st_size
    assert first.journal.position == end

    second = _watcher(gdir, fast_settings)
    await second.start(watch=False)

    assert second.journal.position == end
    assert second.log.last_seq() == first.log.last_seq()


@pytest.mark.asyncio
async def test_board_read_retried_within_one_scan(gdir, fast_settings, monkeypatch):
    watcher = _watcher(gdir, fast_settings)
    await watcher.start(watch=False)
    failures = _locked_board(monkeypatch)

    _board_with(gdir, Task(id="t2", description="Tests"))
    failures["left"] = 1
    await watcher.sync()

    assert failures["left"] == 0
    assert "t2" in watcher.state.board


@pytest.mark.asyncio
async def test_unreadable_board_fails_scan_then_recovers(gdir, fast_settings, monkeypatch):
    watcher = _watcher(gdir, fast_settings)
    await watcher.start(watch=False)
    failures = _locked_board(monkeypatch)

    _board_with(gdir, Task(id="t2", description="Tests"))
    failures["left"] = fast_settings.io_attempts
    with pytest.raises(TransientIOError):
        await watcher.sync()
    assert "t2" not in watcher.state.board

    await watcher.sync()
    assert "t2" in watcher.state.board


@pytest.mark.asyncio
async def test_background_loop_skips_unreadable_scan(gdir, fast_settings, monkeypatch, caplog):
    caplog.set_level(logging.ERROR, logger="grotto.watcher.watcher")
    watcher = _watcher(gdir, fast_settings)
    await watcher.start()
    failures = _locked_board(monkeypatch)
    try:
        failures["left"] = fast_settings.io_attempts
        _board_with(gdir, Task(id="t2", description="Tests"))
        await _eventually(lambda: "t2" in watcher.state.board)
        assert "scan skipped" in caplog.text
        assert watcher.lost_reason is None
    finally:
        await watcher.stop()


@pytest.mark.asyncio
async def test_failed_scan_rebuilds_state_and_continues(gdir, fast_settings, monkeypatch):
    watcher = _watcher(gdir, fast_settings)
    await watcher.start()
    _, sub = await watcher.attach()
    real = translate.board_diff
    calls = {"n": 0}

    def board_diff(known, observed):
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("reducer blew up")
        return real(known, observed)

    monkeypatch.setattr(translate, "board_diff", board_diff)
    try:
        _board_with(gdir, Task(id="t2", description="Tests"))
        await _eventually(lambda: "t2" in watcher.state.board)
        assert calls["n"] >= 2
        assert watcher.lost_reason is None
        assert sub.closed
        assert [item for item in _drain_queue(sub) if isinstance(item, Closed)] == [
            Closed("resync required", resync=True)
        ]
        assert [e.seq for e in watcher.log.history()] == list(range(1, watcher.state.offset + 1))
    finally:
        await watcher.stop()


@pytest.mark.asyncio
async def test_repeated_scan_failures_lose_the_session(gdir, fast_settings, monkeypatch):
    lost = []

    async def on_lost(session_id, reason):
        lost.append((session_id, reason))

    watcher = SessionWatcher("s1", gdir, Hub("s1"), settings=fast_settings, on_lost=on_lost)
    await watcher.start()

    def board_diff(known, observed):
        raise RuntimeError("reducer blew up")

    monkeypatch.setattr(translate, "board_diff", board_diff)
    try:
        _board_with(gdir, Task(id="t2", description="Tests"))
        await _eventually(lambda: lost)
        assert lost == [("s1", "Watcher failed: reducer blew up")]
        assert watcher.lost_reason == "Watcher failed: reducer blew up"
    finally:
        await watcher.stop()
