"""Live-sync gateway: snapshot first, then the ordered tail of the event log."""

import asyncio
import contextlib
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from grotto.daemon.hub import Closed
from grotto.live import messages
from grotto.models import EventType

logger = logging.getLogger(__name__)

router = APIRouter(tags=["live"])


@router.websocket("/ws/{session_id}")
async def live_sync(websocket: WebSocket, session_id: str, since: int | None = None):
    live = websocket.app.state.registry.get(session_id)
    if live is None:
        await websocket.close(code=messages.NOT_FOUND_CLOSE_CODE, reason=f"Session '{session_id}' not found")
        return

    await websocket.accept()
    snapshot, sub = await live.watcher.attach()
    receiver = asyncio.create_task(_drain(websocket))
    try:
        await websocket.send_json(messages.snapshot_message(snapshot))
        cursor = snapshot.cursor

        if since is not None and since < cursor:
            history = await asyncio.to_thread(live.watcher.log.history, since)
            for event in history:
                if event.seq > cursor:
                    break
                await websocket.send_json(messages.event_message(event, replay=True))

        if not snapshot.session_active:
            await websocket.close(code=1000)
            return

        while True:
            getter = asyncio.create_task(sub.get())
            done, _ = await asyncio.wait({getter, receiver}, return_when=asyncio.FIRST_COMPLETED)
            if getter not in done:
                getter.cancel()
                return
            item = getter.result()

            if isinstance(item, Closed):
                if item.resync:
                    await websocket.close(code=messages.RESYNC_CLOSE_CODE, reason=item.reason)
                else:
                    await websocket.send_json(messages.completion_message(item.reason, cursor))
                    await websocket.close(code=1000)
                return
            if item.seq <= cursor:
                continue
            if item.seq != cursor + 1:
                logger.warning(f"[{session_id}] gap after seq {cursor} (got {item.seq}); forcing resync")
                await websocket.close(code=messages.RESYNC_CLOSE_CODE, reason="resync required")
                return

            await websocket.send_json(messages.event_message(item))
            cursor = item.seq
            if item.type == EventType.SESSION_COMPLETED:
                await websocket.close(code=1000)
                return
    except WebSocketDisconnect:
        logger.debug(f"[{session_id}] observer disconnected")
    finally:
        live.hub.unsubscribe(sub)
        receiver.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await receiver


async def _drain(websocket: WebSocket) -> None:
    """Consume client frames until the peer disconnects."""
    with contextlib.suppress(WebSocketDisconnect, RuntimeError):
        while True:
            await websocket.receive_text()
