"""Session registry endpoints."""

import asyncio

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from grotto.daemon.registry import SessionRegistry
from grotto.errors import InvalidSessionError, SessionLostError, SessionNotFoundError

router = APIRouter(prefix="/api/sessions", tags=["sessions"])


class RegisterSession(BaseModel):
    id: str
    dir: str
    agent_count: int | None = None
    task: str | None = None


def _registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def _live(request: Request, session_id: str):
    try:
        return _registry(request).require(session_id)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e


@router.get("")
async def list_sessions(request: Request):
    return [s.to_dict() for s in _registry(request).list()]


@router.post("", status_code=201)
async def register_session(request: Request, body: RegisterSession):
    try:
        summary = await _registry(request).register(body.id, body.dir, body.agent_count, body.task)
    except (InvalidSessionError, SessionLostError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return {"id": summary.id, "status": "registered", "session": summary.to_dict()}


@router.delete("/{session_id}")
async def unregister_session(request: Request, session_id: str):
    try:
        await _registry(request).unregister(session_id)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return {"id": session_id, "status": "unregistered"}


@router.get("/{session_id}/events")
async def session_events(request: Request, session_id: str, since: int = 0):
    live = _live(request, session_id)
    events = await asyncio.to_thread(live.watcher.log.history, since)
    return [e.to_dict() for e in events]


@router.get("/{session_id}/snapshot")
async def session_snapshot(request: Request, session_id: str):
    live = _live(request, session_id)
    snapshot = await live.watcher.snapshot()
    return snapshot.to_dict()
