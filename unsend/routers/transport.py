"""Pull-based polling, the server-sent event stream and presence listing."""

import asyncio
import json
import logging
from typing import TYPE_CHECKING, AsyncIterator, Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import StreamingResponse

from unsend.identity import normalize_room, resolve_identity

if TYPE_CHECKING:
    from unsend.dispatcher import Dispatcher, Subscriber
    from unsend.relay import Relay

logger = logging.getLogger(__name__)


def format_sse(event: dict) -> str:
    return f"id: {event.get('seq', '')}\ndata: {json.dumps(event)}\n\n"


async def event_stream(
    request: Request,
    dispatcher: "Dispatcher",
    sub: "Subscriber",
    keepalive: float,
) -> AsyncIterator[str]:
    """Yield SSE frames for ``sub`` until the client goes away or falls behind."""
    try:
        yield "retry: 3000\n\n"
        while True:
            try:
                event = await asyncio.wait_for(sub.queue.get(), timeout=keepalive)
            except asyncio.TimeoutError:
                if await request.is_disconnected():
                    break
                yield ": keepalive\n\n"
                continue
            if event is None:
                break
            yield format_sse(event)
    finally:
        dispatcher.unsubscribe(sub)
        dispatcher.release(sub.room)
        logger.debug("Stream for %s in %s closed", sub.identity, sub.room)


def create_transport_router(relay: "Relay") -> APIRouter:
    settings = relay.settings
    router = APIRouter(prefix="/api", tags=["transport"])

    def identity_of(request: Request) -> str:
        return resolve_identity(request, trust_forwarded_for=settings.trust_forwarded_for)

    @router.get("/poll")
    async def poll(request: Request, room: str = "", since: int = Query(0)):
        room_name = normalize_room(room, settings.default_room)
        events, cursor = relay.dispatcher.poll(room_name, since, identity_of(request))
        return {"ok": True, "room": room_name, "events": events, "next": cursor}

    @router.get("/stream")
    async def stream(request: Request, room: str = ""):
        room_name = normalize_room(room, settings.default_room)
        last_seq: Optional[int] = None
        last_event_id = request.headers.get("last-event-id", "")
        if last_event_id.isdigit():
            last_seq = int(last_event_id)

        sub = relay.dispatcher.subscribe(room_name, identity_of(request), last_seq=last_seq)
        return StreamingResponse(
            event_stream(request, relay.dispatcher, sub, settings.stream_keepalive_seconds),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @router.get("/rooms/{room}")
    async def room_presence(room: str):
        room_name = normalize_room(room, settings.default_room)
        return {"ok": True, **relay.presence(room_name).to_event()}

    return router
