"""Session watcher: the single writer of a session's event log.

Each scan reads new journal lines, changed agent status files and the task
board, turns them into typed events, drops those already reflected in state,
then appends, applies and publishes the rest under `commit_lock`. Live
connections take their snapshot under the same lock, so a snapshot never
straddles a commit.
"""

import asyncio
import contextlib
import json
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from grotto.core import board
from grotto.core import session as coord
from grotto.core.eventlog import EventLog
from grotto.core.journal import JournalReader, JournalRecord
from grotto.core.state import SessionState
from grotto.daemon.hub import Hub, Subscription
from grotto.errors import SessionLostError, TransientIOError
from grotto.lib import fs, paths
from grotto.lib.config import Settings
from grotto.models import AgentStatus, Event, Snapshot, Task

from . import translate
from .monitor import PhaseTracker, TmuxProbe

logger = logging.getLogger(__name__)

_WATCHED_EVENTS = ("created", "modified", "moved", "deleted")
MAX_SCAN_FAILURES = 3


@dataclass
class Observation:
    journal: list[JournalRecord] = field(default_factory=list)
    agents: list[tuple[str, str, AgentStatus]] = field(default_factory=list)
    board: tuple[str, list[Task]] | None = None


class _CoordDirHandler(FileSystemEventHandler):
    def __init__(self, gdir: Path, notify: Callable[[], None]):
        self.gdir = str(gdir)
        self.log_path = str(paths.event_log(gdir))
        self.notify = notify

    def on_any_event(self, event):
        if event.event_type not in _WATCHED_EVENTS:
            return
        path = getattr(event, "dest_path", "") or event.src_path
        if path == self.gdir or event.src_path == self.gdir:
            self.notify()
            return
        if path == self.log_path or os.path.basename(path).startswith("."):
            return
        self.notify()


class SessionWatcher:
    def __init__(
        self,
        session_id: str,
        gdir: Path,
        hub: Hub,
        settings: Settings | None = None,
        probe: TmuxProbe | None = None,
        on_lost: Callable[[str, str], Awaitable[None]] | None = None,
    ):
        self.session_id = session_id
        self.gdir = gdir
        self.hub = hub
        self.settings = settings or Settings()
        self.probe = probe
        self.on_lost = on_lost

        self.log = EventLog(paths.event_log(gdir))
        self.journal = JournalReader(paths.journal(gdir))
        self.state = SessionState()
        self.commit_lock = asyncio.Lock()
        self.ready = asyncio.Event()
        self.lost_reason: str | None = None

        self._seen: dict[str, str] = {}
        self._scan_lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._observer: Observer | None = None
        self._tasks: list[asyncio.Task] = []

    async def start(self, watch: bool = True) -> None:
        """Replay the log, catch up with the directory, then follow changes if `watch`."""
        if not self.gdir.is_dir():
            raise SessionLostError(f"Coordination directory {self.gdir} does not exist")
        await asyncio.to_thread(self._replay)
        await self.sync()
        self.ready.set()
        if not watch:
            return

        loop = asyncio.get_running_loop()
        handler = _CoordDirHandler(self.gdir, lambda: loop.call_soon_threadsafe(self._wakeup.set))
        self._observer = Observer()
        self._observer.schedule(handler, str(self.gdir), recursive=True)
        self._observer.start()

        self._spawn(self._run())
        if self.probe is not None:
            self._spawn(self._probe_loop())
        logger.info(f"[{self.session_id}] watching {self.gdir} from seq {self.state.offset}")

    async def stop(self) -> None:
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current:
                task.cancel()
        for task in self._tasks:
            if task is not current:
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._tasks.clear()
        if self._observer is not None:
            observer, self._observer = self._observer, None
            observer.stop()
            await asyncio.to_thread(observer.join)

    async def attach(self) -> tuple[Snapshot, Subscription]:
        """Snapshot plus a subscription to everything committed after it."""
        await self.ready.wait()
        async with self.commit_lock:
            return self.state.snapshot(), self.hub.subscribe()

    async def snapshot(self) -> Snapshot:
        await self.ready.wait()
        async with self.commit_lock:
            return self.state.snapshot()

    async def sync(self) -> list[Event]:
        """Scan the coordination directory once and commit what changed."""
        async with self._scan_lock:
            return await self._sync()

    async def _sync(self) -> list[Event]:
        if not self.gdir.is_dir():
            raise SessionLostError(f"Coordination directory {self.gdir} was removed")

        start = self.journal.position
        try:
            observed = await asyncio.to_thread(self._observe)
        except BaseException:
            self.journal.position = start
            raise

        committed: list[Event] = []
        async with self.commit_lock:
            consumed = start
            try:
                for record in observed.journal:
                    await self._commit(translate.from_journal(record), committed)
                    consumed = record.end_offset
                consumed = self.journal.position
                if consumed != start:
                    await asyncio.to_thread(self._save_journal_position, consumed)
                for key, text, status in observed.agents:
                    await self._commit(translate.agent_status_event(status), committed)
                    self._seen[key] = text
                if observed.board is not None:
                    text, tasks = observed.board
                    for event in translate.board_diff(self.state.board, tasks):
                        await self._commit(event, committed)
                    self._seen["tasks.md"] = text
            except BaseException:
                self.journal.position = consumed
                raise
            finally:
                if committed:
                    self.hub.publish(committed)
        return committed

    async def commit(self, events: list[Event]) -> list[Event]:
        committed: list[Event] = []
        async with self.commit_lock:
            try:
                for event in events:
                    await self._commit(event, committed)
            finally:
                if committed:
                    self.hub.publish(committed)
        return committed

    async def _commit(self, event: Event, committed: list[Event]) -> None:
        if self.state.is_redundant(event):
            logger.debug(f"[{self.session_id}] skipping redundant {event.type.value}")
            return
        seq = await asyncio.to_thread(self.log.append, event)
        sequenced = event.with_seq(seq)
        self.state.apply(sequenced)
        committed.append(sequenced)

    def _replay(self) -> None:
        config = coord.load_config(self.gdir)
        journal_position = 0
        events = []
        for event in self.log.replay():
            events.append(event)
            if event.journal_offset:
                journal_position = max(journal_position, event.journal_offset)
        self.state = SessionState.replay(events, config)
        self.journal.position = max(journal_position, self._saved_journal_position())
        if events:
            logger.info(f"[{self.session_id}] replayed {len(events)} events")

    def _saved_journal_position(self) -> int:
        text = fs.read_text(paths.journal_position(self.gdir))
        try:
            return int(text) if text else 0
        except ValueError:
            logger.warning(f"[{self.session_id}] ignoring corrupt journal position {text!r}")
            return 0

    def _save_journal_position(self, position: int) -> None:
        # Covers trailing records that were redundant and so carry no offset in the log.
        fs.atomic_write(paths.journal_position(self.gdir), str(position))

    def _read(self, path: Path) -> str | None:
        return fs.read_text(path, attempts=self.settings.io_attempts, backoff=self.settings.io_backoff)

    def _observe(self) -> Observation:
        observed = Observation(journal=self.journal.read_new())

        agents_root = paths.agents_dir(self.gdir)
        if agents_root.exists():
            for status_file in sorted(agents_root.glob("*/status.json")):
                key = str(status_file.relative_to(self.gdir))
                text = self._read(status_file)
                if text is None or text == self._seen.get(key):
                    continue
                try:
                    status = AgentStatus.from_dict(json.loads(text))
                except (json.JSONDecodeError, ValueError, TypeError) as e:
                    logger.warning(f"[{self.session_id}] skipping corrupt {key}: {e}")
                    self._seen[key] = text
                    continue
                observed.agents.append((key, text, status))

        text = self._read(paths.task_board(self.gdir))
        if text is not None and text != self._seen.get("tasks.md"):
            observed.board = (text, board.parse(text))
        return observed

    async def _run(self) -> None:
        failures = 0
        while True:
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.settings.poll_interval)
                await asyncio.sleep(self.settings.debounce)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()
            try:
                await self.sync()
            except SessionLostError as e:
                await self._lost(str(e))
                return
            except (TransientIOError, OSError) as e:
                if not self.gdir.is_dir():
                    await self._lost(f"Coordination directory {self.gdir} was removed")
                    return
                logger.error(f"[{self.session_id}] scan skipped: {e}")
            except Exception as e:
                failures += 1
                logger.error(f"[{self.session_id}] scan failed ({failures}/{MAX_SCAN_FAILURES}): {e}", exc_info=e)
                if failures >= MAX_SCAN_FAILURES:
                    await self._lost(f"Watcher failed: {e}")
                    return
                try:
                    await self._rebuild()
                except Exception as err:
                    await self._lost(f"Watcher failed: {err}")
                    return
            else:
                failures = 0

    async def _rebuild(self) -> None:
        """Reload state from the log after a failed scan; subscribers must resync."""
        async with self.commit_lock:
            await asyncio.to_thread(self._replay)
            self._seen.clear()
            self.hub.reset("resync required")
        logger.info(f"[{self.session_id}] rebuilt state at seq {self.state.offset}")

    async def _probe_loop(self) -> None:
        tracker = PhaseTracker()
        while not tracker.completed:
            snapshots = await asyncio.to_thread(self.probe.capture)
            events = tracker.observe(snapshots)
            if events:
                try:
                    await self.commit(events)
                except OSError as e:
                    logger.error(f"[{self.session_id}] could not record liveness: {e}")
            await asyncio.sleep(self.settings.probe_interval)
        logger.info(f"[{self.session_id}] all agent panes exited")

    async def _lost(self, reason: str) -> None:
        logger.error(f"[{self.session_id}] session lost: {reason}")
        self.lost_reason = reason
        if self.on_lost is not None:
            await self.on_lost(self.session_id, reason)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        task.add_done_callback(self._task_done)
        self._tasks.append(task)

    def _task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"[{self.session_id}] watcher task failed: {error}", exc_info=error)
