"""Live-sync observer: reconnecting client for `/ws/{session_id}`.

The connection lifecycle is an explicit state machine. Every state is
surfaced through `on_change`, so a caller always knows whether what it shows
is live or cached.
"""

import asyncio
import contextlib
import json
import logging
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from enum import Enum
from typing import Any

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from grotto.core.state import SessionState
from grotto.errors import ResyncRequired
from grotto.lib.config import RetrySettings
from grotto.models import Event, EventType, Snapshot

from . import messages

logger = logging.getLogger(__name__)

HISTORY_LABEL = "history (live status unknown)"
DISPLAY_LOG_SIZE = 400


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    HISTORY = "history"
    COMPLETED = "completed"


class Trigger(str, Enum):
    OPENED = "opened"
    FAILED = "failed"
    LOST = "lost"
    RETRY = "retry"
    EXHAUSTED = "exhausted"
    COMPLETED = "completed"


_TRANSITIONS = {
    (ConnectionState.CONNECTING, Trigger.OPENED): ConnectionState.CONNECTED,
    (ConnectionState.CONNECTING, Trigger.FAILED): ConnectionState.DISCONNECTED,
    (ConnectionState.CONNECTED, Trigger.LOST): ConnectionState.DISCONNECTED,
    (ConnectionState.DISCONNECTED, Trigger.RETRY): ConnectionState.CONNECTING,
    (ConnectionState.DISCONNECTED, Trigger.EXHAUSTED): ConnectionState.HISTORY,
    (ConnectionState.HISTORY, Trigger.OPENED): ConnectionState.CONNECTED,
    (ConnectionState.HISTORY, Trigger.FAILED): ConnectionState.HISTORY,
}

_LABELS = {
    ConnectionState.CONNECTING: "connecting",
    ConnectionState.CONNECTED: "live",
    ConnectionState.DISCONNECTED: "reconnecting",
    ConnectionState.HISTORY: HISTORY_LABEL,
}


class InvalidTransition(ValueError):
    pass


class ConnectionMachine:
    def __init__(
        self,
        retry: RetrySettings | None = None,
        on_change: Callable[["ConnectionMachine"], None] | None = None,
    ):
        self.retry = retry or RetrySettings()
        self.on_change = on_change
        self.state = ConnectionState.CONNECTING
        self.attempts = 0
        self.completed_reason: str | None = None

    @property
    def label(self) -> str:
        if self.state == ConnectionState.COMPLETED:
            return f"session completed: {self.completed_reason}" if self.completed_reason else "session completed"
        return _LABELS[self.state]

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.retry.attempts

    def next_delay(self) -> float:
        if self.attempts <= 0:
            return self.retry.base_delay
        return min(self.retry.base_delay * 2 ** (self.attempts - 1), self.retry.max_delay)

    def fire(self, trigger: Trigger, reason: str | None = None) -> ConnectionState:
        if self.state == ConnectionState.COMPLETED:
            raise InvalidTransition(f"session completed; cannot handle {trigger.value}")
        if trigger == Trigger.COMPLETED:
            target = ConnectionState.COMPLETED
            self.completed_reason = reason
        else:
            target = _TRANSITIONS.get((self.state, trigger))
            if target is None:
                raise InvalidTransition(f"{trigger.value} is not valid while {self.state.value}")

        if trigger == Trigger.OPENED:
            self.attempts = 0
        elif trigger == Trigger.FAILED and self.state == ConnectionState.CONNECTING:
            self.attempts += 1

        previous, self.state = self.state, target
        if previous != target:
            logger.info(f"observer {previous.value} -> {target.value} ({reason or trigger.value})")
        if self.on_change is not None:
            self.on_change(self)
        return target


class SessionView:
    """Client-side copy of a session, advanced strictly in sequence."""

    def __init__(self, max_log: int = DISPLAY_LOG_SIZE):
        self.state: SessionState | None = None
        self.log: deque[Event] = deque(maxlen=max_log)

    @property
    def cursor(self) -> int:
        return self.state.offset if self.state else 0

    def apply_snapshot(self, snapshot: Snapshot) -> None:
        self.state = SessionState.from_snapshot(snapshot)

    def apply(self, event: Event) -> bool:
        """Apply the next event. Older events are display-only; a gap needs a resync."""
        if self.state is None:
            self.state = SessionState()
        if event.seq <= self.cursor:
            self.display(event)
            return False
        if event.seq != self.cursor + 1:
            raise ResyncRequired(f"expected seq {self.cursor + 1}, got {event.seq}")
        self.state.apply(event)
        self.display(event)
        return True

    def display(self, event: Event) -> None:
        self.log.append(event)

    def load_history(self, events: list[Event]) -> int:
        applied = 0
        for event in sorted(events, key=lambda e: e.seq):
            if event.seq <= self.cursor:
                continue
            try:
                self.apply(event)
            except ResyncRequired as e:
                logger.warning(f"History is incomplete: {e}")
                break
            applied += 1
        return applied


Transport = Callable[[str], AsyncIterator[dict[str, Any]]]
HistoryLoader = Callable[[int], Awaitable[list[Event]]]

LINK_ERRORS = (OSError, WebSocketException, asyncio.TimeoutError, json.JSONDecodeError)


async def websocket_transport(url: str) -> AsyncIterator[dict[str, Any]]:
    async with websockets.connect(url, open_timeout=10) as ws:
        try:
            async for raw in ws:
                yield json.loads(raw)
        except ConnectionClosed as e:
            if e.rcvd is not None and e.rcvd.code == messages.RESYNC_CLOSE_CODE:
                raise ResyncRequired(e.rcvd.reason or "resync required") from e
            raise


class _LinkDown(Exception):
    pass


class ObserverClient:
    def __init__(
        self,
        base_url: str,
        session_id: str,
        retry: RetrySettings | None = None,
        transport: Transport | None = None,
        history: HistoryLoader | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_change: Callable[[ConnectionMachine], None] | None = None,
        on_event: Callable[[Event, bool], None] | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.session_id = session_id
        self.machine = ConnectionMachine(retry, on_change)
        self.view = SessionView()
        self.transport = transport or websocket_transport
        self.history = history or self._fetch_history
        self.sleep = sleep
        self.on_event = on_event
        self._stopped = False
        self._resync = False

    @property
    def state(self) -> ConnectionState:
        return self.machine.state

    def stop(self) -> None:
        self._stopped = True

    def url(self) -> str:
        base = self.base_url.replace("https://", "wss://", 1).replace("http://", "ws://", 1)
        url = f"{base}/ws/{self.session_id}"
        if self.view.cursor:
            url += f"?since={self.view.cursor}"
        return url

    async def run(self) -> SessionView:
        while not self._stopped and self.state != ConnectionState.COMPLETED:
            try:
                await self._stream()
            except ResyncRequired as e:
                logger.info(f"[{self.session_id}] resync: {e}")
                self._resync = True
                self._link_lost(str(e))
            except _LinkDown as e:
                self._link_lost(str(e))

            if self._stopped or self.state == ConnectionState.COMPLETED:
                break
            await self._recover()
        return self.view

    async def _recover(self) -> None:
        if self.state == ConnectionState.HISTORY:
            self._resync = False
            await self.sleep(self.machine.retry.max_delay)
            return
        if self._resync:
            self._resync = False
        elif self.machine.exhausted:
            self.machine.fire(Trigger.EXHAUSTED, "retries exhausted")
            await self._load_history()
            return
        else:
            await self.sleep(self.machine.next_delay())
        if not self._stopped:
            self.machine.fire(Trigger.RETRY)

    async def _stream(self) -> None:
        try:
            async with contextlib.aclosing(self.transport(self.url())) as stream:
                async for message in stream:
                    self._handle(message)
                    if self.state == ConnectionState.COMPLETED or self._stopped:
                        return
        except LINK_ERRORS as e:
            raise _LinkDown(str(e) or type(e).__name__) from e
        raise _LinkDown("connection closed")

    def _handle(self, message: dict[str, Any]) -> None:
        parsed = messages.parse_message(message)
        if isinstance(parsed, Snapshot):
            self.view.apply_snapshot(parsed)
            if self.state != ConnectionState.CONNECTED:
                self.machine.fire(Trigger.OPENED)
            if not parsed.session_active:
                self.machine.fire(Trigger.COMPLETED, parsed.completed_reason)
            return
        if parsed is None:
            logger.warning(f"[{self.session_id}] ignoring malformed message")
            return

        if messages.is_replay(message):
            self.view.display(parsed)
            self._notify(parsed, False)
            return
        if parsed.type == EventType.SESSION_COMPLETED and parsed.seq <= self.view.cursor:
            # Teardown notice from the daemon, not a logged event.
            self.view.display(parsed)
            self._notify(parsed, False)
            self.machine.fire(Trigger.COMPLETED, parsed.data.get("reason") or parsed.message)
            return

        applied = self.view.apply(parsed)
        self._notify(parsed, applied)
        if parsed.type == EventType.SESSION_COMPLETED:
            self.machine.fire(Trigger.COMPLETED, parsed.data.get("reason") or parsed.message)

    def _notify(self, event: Event, applied: bool) -> None:
        if self.on_event is not None:
            self.on_event(event, applied)

    def _link_lost(self, reason: str) -> None:
        if self.state == ConnectionState.CONNECTED:
            self.machine.fire(Trigger.LOST, reason)
        elif self.state in (ConnectionState.CONNECTING, ConnectionState.HISTORY):
            self.machine.fire(Trigger.FAILED, reason)

    async def _load_history(self) -> None:
        try:
            events = await self.history(self.view.cursor)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"[{self.session_id}] history unavailable: {e}")
            return
        self.view.load_history(events)

    async def _fetch_history(self, since: int) -> list[Event]:
        async with httpx.AsyncClient(base_url=self.base_url, timeout=10) as client:
            response = await client.get(f"/api/sessions/{self.session_id}/events", params={"since": since})
            response.raise_for_status()
            return [Event.from_dict(item) for item in response.json()]
