"""Event log: the authoritative, sequenced record of a session.

Records are NDJSON lines in `.grotto/log.jsonl`, each carrying a `seq` that
starts at 1 and grows by one per append. Only `EventLog.append` assigns
sequence numbers. Readers tail the file concurrently with the writer, so a
torn final record is buffered until its newline lands.
"""

import asyncio
import contextlib
import json
import logging
import os
import threading
from collections.abc import AsyncIterator, Iterator
from dataclasses import dataclass
from pathlib import Path

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from grotto.lib import fs
from grotto.models import Event

from .ndjson import ends_with_newline, parse_line, read_complete_lines

logger = logging.getLogger(__name__)

FOLLOW_POLL_INTERVAL = 0.5


@dataclass
class LogCursor:
    """Per-consumer read position: byte offset plus last delivered seq."""

    position: int = 0
    seq: int = 0


class EventLog:
    def __init__(self, path: Path):
        self.path = path
        self._lock = threading.Lock()
        self.lock_path = path.with_name(f".{path.name}.lock")
        self._last_seq: int | None = None
        self._end: int = -1

    def last_seq(self) -> int:
        with self._lock:
            return self._refresh_last_seq()

    def _refresh_last_seq(self) -> int:
        size = os.path.getsize(self.path) if self.path.exists() else 0
        if self._last_seq is not None and size == self._end:
            return self._last_seq
        last = 0
        for event in self._scan(LogCursor()):
            last = event.seq
        self._last_seq = last
        self._end = size
        return last

    def append(self, event: Event) -> int:
        """Durably append one event and return the sequence number assigned to it."""
        with self._lock, fs.file_lock(self.lock_path):
            seq = self._refresh_last_seq() + 1
            record = event.with_seq(seq)
            line = json.dumps(record.to_dict(), separators=(",", ":"))
            if not ends_with_newline(self.path):
                # Isolate a torn record left by a crashed writer.
                line = "\n" + line
                logger.warning(f"{self.path} ended mid-record; sealing it before append")
            self._end = fs.append_line(self.path, line)
            self._last_seq = seq
            return seq

    def read_from(self, offset: int = 0) -> Iterator[Event]:
        """Lazily yield events with seq > offset, up to the last complete record."""
        yield from self._scan(LogCursor(seq=offset))

    def history(self, since: int = 0) -> list[Event]:
        return list(self.read_from(since))

    def replay(self) -> Iterator[Event]:
        return self.read_from(0)

    def read_new(self, cursor: LogCursor) -> list[Event]:
        """Events appended since the cursor; advances it so nothing is handed out twice."""
        return list(self._scan(cursor))

    def cursor_at(self, offset: int) -> LogCursor:
        """Cursor positioned just after the record with seq == offset."""
        cursor = LogCursor()
        if offset <= 0:
            return cursor
        lines, _ = read_complete_lines(self.path, 0)
        for end, text in lines:
            record = parse_line(self.path, text)
            if record is None:
                continue
            if record.get("seq", 0) > offset:
                break
            cursor.position = end
            cursor.seq = record.get("seq", 0)
        return cursor

    def _scan(self, cursor: LogCursor) -> Iterator[Event]:
        lines, end = read_complete_lines(self.path, cursor.position)
        for line_end, text in lines:
            cursor.position = line_end
            record = parse_line(self.path, text)
            if record is None:
                continue
            try:
                event = Event.from_dict(record)
            except (ValueError, TypeError) as e:
                logger.warning(f"Skipping malformed event in {self.path.name}: {e}")
                continue
            if event.seq <= cursor.seq:
                continue
            cursor.seq = event.seq
            yield event
        cursor.position = max(cursor.position, end)

    async def follow(
        self, offset: int = 0, poll_interval: float = FOLLOW_POLL_INTERVAL
    ) -> AsyncIterator[Event]:
        """Unbounded stream of events after `offset`; parks until new records arrive.

        Cancel the consuming task (or close the generator) to stop following.
        """
        loop = asyncio.get_running_loop()
        wakeup = asyncio.Event()
        handler = _LogFileHandler(self.path, lambda: loop.call_soon_threadsafe(wakeup.set))
        observer = Observer()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        observer.schedule(handler, str(self.path.parent), recursive=False)
        observer.start()

        cursor = await asyncio.to_thread(self.cursor_at, offset)
        cursor.seq = max(cursor.seq, offset)
        try:
            while True:
                wakeup.clear()
                events = await asyncio.to_thread(self.read_new, cursor)
                for event in events:
                    yield event
                if not events:
                    with contextlib.suppress(asyncio.TimeoutError):
                        await asyncio.wait_for(wakeup.wait(), timeout=poll_interval)
        finally:
            observer.stop()
            observer.join()


class _LogFileHandler(FileSystemEventHandler):
    def __init__(self, path: Path, notify):
        self.path = str(path)
        self.notify = notify

    def on_modified(self, event):
        if not event.is_directory and event.src_path == self.path:
            self.notify()

    def on_created(self, event):
        if not event.is_directory and event.src_path == self.path:
            self.notify()
