"""
Server push channel for drink-issue activity, one stream per session.

GET /open-bar/events?session_id=... answers text/event-stream:
a `connected` event first, then `drink_issue_created` / `drink_issue_deleted`
as they happen, with a `: keepalive` comment when the stream is idle.
"""

import asyncio
import json
import logging
from collections import defaultdict
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Set, Tuple
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from core.auth import current_active_user
from core.config import settings
from db.database import get_async_session
from db.users import User
from routers.sessions import can_manage_session, get_membership, get_session_or_404

logger = logging.getLogger(__name__)

router = APIRouter()


class SessionEventBroker:
    """In-process fan-out of session events to connected streams."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, Set[asyncio.Queue]] = defaultdict(set)

    def subscribe(self, session_id) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers[str(session_id)].add(queue)
        return queue

    def unsubscribe(self, session_id, queue: asyncio.Queue) -> None:
        key = str(session_id)
        self._subscribers[key].discard(queue)
        if not self._subscribers[key]:
            self._subscribers.pop(key, None)

    def subscriber_count(self, session_id) -> int:
        return len(self._subscribers.get(str(session_id), ()))

    def publish(self, session_id, event: str, data: Dict[str, Any]) -> int:
        queues = list(self._subscribers.get(str(session_id), ()))
        for queue in queues:
            queue.put_nowait((event, data))
        logger.debug("Published %s to %d stream(s) of session %s", event, len(queues), session_id)
        return len(queues)


broker = SessionEventBroker()


def format_sse(event: str, data: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


async def event_stream(
    queue: asyncio.Queue,
    session_id,
    keepalive_seconds: float,
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
) -> AsyncIterator[str]:
    yield format_sse("connected", {"session_id": str(session_id)})
    while True:
        if is_disconnected is not None and await is_disconnected():
            break
        try:
            item: Tuple[str, Dict[str, Any]] = await asyncio.wait_for(queue.get(), timeout=keepalive_seconds)
        except asyncio.TimeoutError:
            yield ": keepalive\n\n"
            continue
        event, data = item
        yield format_sse(event, data)


@router.get("/events")
async def stream_session_events(
    request: Request,
    session_id: UUID,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    session = await get_session_or_404(db, session_id)
    if not can_manage_session(session, user):
        membership = await get_membership(db, session_id, user.id)
        if membership is None:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")

    queue = broker.subscribe(session_id)

    async def _stream():
        try:
            async for chunk in event_stream(queue, session_id, settings.events_keepalive_seconds, request.is_disconnected):
                yield chunk
        finally:
            broker.unsubscribe(session_id, queue)

    return StreamingResponse(
        _stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
