"""Multi-session registry: one watcher and one hub per registered session."""

import asyncio
import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from grotto.core import session as coord
from grotto.errors import InvalidSessionError, SessionLostError, SessionNotFoundError
from grotto.lib import fs, paths
from grotto.lib.config import Settings
from grotto.watcher.monitor import TmuxProbe
from grotto.watcher.watcher import SessionWatcher

from .hub import Hub

logger = logging.getLogger(__name__)

NO_COORD_DIR = "No .grotto directory found at specified path"


@dataclass
class SessionEntry:
    id: str
    dir: str
    agent_count: int = 0
    task: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionEntry":
        return cls(
            id=str(data["id"]),
            dir=str(data["dir"]),
            agent_count=int(data.get("agent_count") or 0),
            task=str(data.get("task") or ""),
        )


@dataclass
class SessionSummary:
    id: str
    dir: str
    agent_count: int
    task: str
    status: str
    last_updated: str | None
    last_seq: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class LiveSession:
    def __init__(self, entry: SessionEntry, hub: Hub, watcher: SessionWatcher):
        self.entry = entry
        self.hub = hub
        self.watcher = watcher

    @property
    def gdir(self) -> Path:
        return self.watcher.gdir

    def summary(self) -> SessionSummary:
        state = self.watcher.state
        return SessionSummary(
            id=self.entry.id,
            dir=self.entry.dir,
            agent_count=self.entry.agent_count,
            task=self.entry.task,
            status="live" if state.active else "completed",
            last_updated=state.last_updated,
            last_seq=state.offset,
        )


class SessionRegistry:
    def __init__(self, settings: Settings | None = None, persist: bool = True):
        self.settings = settings or Settings()
        self.persist = persist
        self._sessions: dict[str, LiveSession] = {}
        self._pending: dict[str, Path] = {}
        self._lock = asyncio.Lock()

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def get(self, session_id: str) -> LiveSession | None:
        return self._sessions.get(session_id)

    def require(self, session_id: str) -> LiveSession:
        live = self._sessions.get(session_id)
        if live is None:
            raise SessionNotFoundError(session_id)
        return live

    async def register(
        self,
        session_id: str,
        project_dir: str | Path,
        agent_count: int | None = None,
        task: str | None = None,
    ) -> SessionSummary:
        """Start watching a session. Re-registering the same id updates it in place.

        A coordination directory has one writer, so it can be registered under
        one id only; a second id for it raises InvalidSessionError.
        """
        valid, error = paths.validate_id(session_id, "session id")
        if not valid:
            raise ValueError(error)
        project = Path(project_dir).expanduser().resolve()
        gdir = paths.coord_dir(project)
        if not gdir.is_dir():
            raise InvalidSessionError(NO_COORD_DIR)

        config = await asyncio.to_thread(coord.load_config, gdir)
        entry = SessionEntry(
            id=session_id,
            dir=str(project),
            agent_count=agent_count if agent_count is not None else (config.agent_count if config else 0),
            task=task if task is not None else (config.task if config else ""),
        )

        async with self._lock:
            owner = self._owner_of(gdir, session_id)
            if owner is not None:
                raise InvalidSessionError(f"{gdir} is already registered as '{owner}'")
            if session_id in self._pending:
                raise InvalidSessionError(f"Session '{session_id}' is already being registered")
            existing = self._sessions.get(session_id)
            if existing is not None and existing.entry.dir == entry.dir:
                existing.entry = entry
            else:
                existing = None
                self._pending[session_id] = gdir
        if existing is not None:
            await self._save()
            return existing.summary()

        try:
            live = await self._start(entry, config.session_id if config else None)
        except BaseException:
            self._pending.pop(session_id, None)
            raise
        async with self._lock:
            self._pending.pop(session_id, None)
            previous = self._sessions.get(session_id)
            self._sessions[session_id] = live
        if previous is not None:
            await self._teardown(previous, "Session re-registered with a different directory")
        await self._save()
        logger.info(f"Registered session {session_id} at {entry.dir}")
        return live.summary()

    async def unregister(self, session_id: str) -> None:
        async with self._lock:
            live = self._sessions.pop(session_id, None)
        if live is None:
            raise SessionNotFoundError(session_id)
        await self._teardown(live, "Session unregistered")
        await self._save()
        logger.info(f"Unregistered session {session_id}")

    async def load_persisted(self) -> int:
        """Restore sessions saved by a previous daemon run. Returns how many were started."""
        started = 0
        for entry in await asyncio.to_thread(self._read_persisted):
            if not paths.coord_dir(entry.dir).is_dir():
                logger.warning(f"Skipping stale session {entry.id}: {entry.dir} has no .grotto")
                continue
            try:
                await self.register(entry.id, entry.dir, entry.agent_count, entry.task)
            except (InvalidSessionError, SessionLostError, ValueError) as e:
                logger.warning(f"Could not restore session {entry.id}: {e}")
                continue
            started += 1
        return started

    async def close(self) -> None:
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for live in sessions:
            await self._teardown(live, "Daemon shutting down")

    def _owner_of(self, gdir: Path, session_id: str) -> str | None:
        """Id of another session already watching gdir, if any."""
        for other, live in self._sessions.items():
            if other != session_id and live.gdir == gdir:
                return other
        for other, pending in self._pending.items():
            if other != session_id and pending == gdir:
                return other
        return None

    async def _start(self, entry: SessionEntry, tmux_session: str | None) -> LiveSession:
        hub = Hub(entry.id, self.settings.queue_size)
        watcher = SessionWatcher(
            entry.id,
            paths.coord_dir(entry.dir),
            hub,
            settings=self.settings,
            probe=self._probe_for(entry, tmux_session),
            on_lost=self._on_lost,
        )
        await watcher.start()
        return LiveSession(entry, hub, watcher)

    def _probe_for(self, entry: SessionEntry, tmux_session: str | None) -> TmuxProbe | None:
        if not self.settings.probe_enabled or not entry.agent_count or not TmuxProbe.available():
            return None
        agent_ids = [f"agent-{i + 1}" for i in range(entry.agent_count)]
        return TmuxProbe(tmux_session or entry.id, agent_ids)

    async def _on_lost(self, session_id: str, reason: str) -> None:
        async with self._lock:
            live = self._sessions.get(session_id)
            if live is None or live.watcher.lost_reason is None:
                return
            del self._sessions[session_id]
        await self._teardown(live, f"Session lost: {reason}")
        await self._save()

    async def _teardown(self, live: LiveSession, reason: str) -> None:
        await live.watcher.stop()
        live.hub.close(reason)

    def _read_persisted(self) -> list[SessionEntry]:
        path = paths.sessions_file()
        content = fs.read_text(path)
        if not content:
            return []
        try:
            raw = json.loads(content)
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring unreadable {path}: {e}")
            return []
        entries = []
        for data in (raw.get("sessions") or {}).values():
            try:
                entries.append(SessionEntry.from_dict(data))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed registry entry: {e}")
        return entries

    async def _save(self) -> None:
        if not self.persist:
            return
        data = {"sessions": {sid: live.entry.to_dict() for sid, live in self._sessions.items()}}
        await asyncio.to_thread(fs.atomic_write_json, paths.sessions_file(), data)

    def list(self) -> list[SessionSummary]:
        summaries = [live.summary() for live in self._sessions.values()]
        summaries.sort(key=lambda s: s.id)
        summaries.sort(key=lambda s: s.last_updated or "", reverse=True)
        return summaries
