"""Per-session fan-out of committed events to live connections."""

import asyncio
import logging
from dataclasses import dataclass

from grotto.models import Event

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 256


@dataclass(frozen=True)
class Closed:
    """Terminal queue item: the subscription ends after this."""

    reason: str
    resync: bool = False


class Subscription:
    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE):
        self.queue: asyncio.Queue[Event | Closed] = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    async def get(self) -> Event | Closed:
        return await self.queue.get()

    def _offer(self, item: Event) -> bool:
        try:
            self.queue.put_nowait(item)
        except asyncio.QueueFull:
            return False
        return True

    def _close(self, closed: Closed) -> None:
        if self.closed:
            return
        self.closed = True
        if closed.resync or self.queue.full():
            # Pending events are useless to a consumer that must resync anyway.
            while not self.queue.empty():
                self.queue.get_nowait()
        self.queue.put_nowait(closed)


class Hub:
    """Publishes are non-blocking; a subscriber that falls behind is dropped alone."""

    def __init__(self, session_id: str, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.session_id = session_id
        self.queue_size = queue_size
        self._subscribers: set[Subscription] = set()
        self.closed_reason: str | None = None

    def __len__(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        sub = Subscription(self.queue_size)
        if self.closed_reason is not None:
            sub._close(Closed(self.closed_reason))
            return sub
        self._subscribers.add(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        self._subscribers.discard(sub)

    def reset(self, reason: str) -> None:
        """Send every current subscriber back to a fresh snapshot."""
        for sub in list(self._subscribers):
            sub._close(Closed(reason, resync=True))
        self._subscribers.clear()

    def publish(self, events: list[Event]) -> None:
        for sub in list(self._subscribers):
            for event in events:
                if not sub._offer(event):
                    logger.warning(f"[{self.session_id}] subscriber queue full; dropping connection")
                    sub._close(Closed("resync required", resync=True))
                    self._subscribers.discard(sub)
                    break

    def close(self, reason: str) -> None:
        """End every subscription, e.g. when the session is torn down.

        Later subscribers get a subscription that is already closed.
        """
        self.closed_reason = reason
        for sub in list(self._subscribers):
            sub._close(Closed(reason))
        self._subscribers.clear()
