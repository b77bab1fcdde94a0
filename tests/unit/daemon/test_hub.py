import pytest

from grotto.daemon.hub import Closed, Hub
from grotto.models import Event, EventType


def _events(start, count):
    return [Event(type=EventType.RAW, data={"event_type": "note"}, seq=start + i) for i in range(count)]


def _drain(sub):
    return [sub.queue.get_nowait() for _ in range(sub.queue.qsize())]


@pytest.mark.asyncio
async def test_publish_reaches_every_subscriber_in_order():
    hub = Hub("s1")
    a, b = hub.subscribe(), hub.subscribe()

    hub.publish(_events(1, 3))
    hub.publish(_events(4, 2))

    assert [e.seq for e in _drain(a)] == [1, 2, 3, 4, 5]
    assert [e.seq for e in _drain(b)] == [1, 2, 3, 4, 5]


@pytest.mark.asyncio
async def test_slow_subscriber_is_dropped_alone():
    hub = Hub("s1", queue_size=4)
    slow, fast = hub.subscribe(), hub.subscribe()

    hub.publish(_events(1, 3))
    _drain(fast)
    hub.publish(_events(4, 3))

    assert _drain(slow) == [Closed("resync required", resync=True)]
    assert [e.seq for e in _drain(fast)] == [4, 5, 6]
    assert len(hub) == 1


@pytest.mark.asyncio
async def test_close_delivers_reason_after_pending_events():
    hub = Hub("s1")
    sub = hub.subscribe()
    hub.publish(_events(1, 2))

    hub.close("Session unregistered")

    items = _drain(sub)
    assert [e.seq for e in items[:2]] == [1, 2]
    assert items[2] == Closed("Session unregistered")
    assert len(hub) == 0
    hub.publish(_events(3, 1))
    assert sub.queue.empty()


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery():
    hub = Hub("s1")
    sub = hub.subscribe()
    hub.unsubscribe(sub)
    hub.publish(_events(1, 1))
    assert sub.queue.empty()
    assert not sub.closed


@pytest.mark.asyncio
async def test_subscribe_after_close_is_already_closed():
    hub = Hub("s1")
    hub.close("Session lost: directory removed")

    late = hub.subscribe()

    assert late.closed
    assert len(hub) == 0
    assert await late.get() == Closed("Session lost: directory removed")


@pytest.mark.asyncio
async def test_reset_sends_subscribers_to_resync_but_keeps_hub_open():
    hub = Hub("s1")
    sub = hub.subscribe()
    hub.publish(_events(1, 2))

    hub.reset("state rebuilt")

    assert _drain(sub) == [Closed("state rebuilt", resync=True)]
    fresh = hub.subscribe()
    assert not fresh.closed
    hub.publish(_events(3, 1))
    assert [e.seq for e in _drain(fresh)] == [3]
