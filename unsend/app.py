"""FastAPI application: the live websocket transport plus the HTTP routers.

Clients connect at ``/ws/{room}`` (or ``/ws?room=...``). A room holds two
connections; a third is told the room is full and closed with code 4001.
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse

from unsend.config import Settings, get_settings
from unsend.errors import RelayError, RoomFullError
from unsend.identity import new_client_id, normalize_room, resolve_identity
from unsend.models import ErrorEvent, parse_client_frame
from unsend.relay import Relay
from unsend.rooms import Member
from unsend.routers import create_files_router, create_transport_router

logger = logging.getLogger(__name__)

ROOM_FULL_CLOSE_CODE = 4001


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    relay = Relay(settings)

    @asynccontextmanager
    async def lifespan(fastapi_app: FastAPI) -> AsyncGenerator[None, None]:
        relay.startup()
        yield
        relay.shutdown()

    app = FastAPI(title="unsend", lifespan=lifespan)
    app.state.relay = relay

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
        return JSONResponse(exc.to_body(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        fields = ", ".join(".".join(str(p) for p in err.get("loc", ())) for err in exc.errors())
        body = {"ok": False, "error": "invalid_input", "message": f"invalid request: {fields}"}
        return JSONResponse(body, status_code=400)

    @app.get("/")
    async def index():
        return HTMLResponse("<h3>unsend relay running. Connect via WebSocket at /ws/ROOM</h3>")

    @app.get("/health")
    async def health():
        return {"ok": True, "rooms": len(relay.rooms.snapshot()), "items": len(relay.artifacts)}

    @app.websocket("/ws")
    @app.websocket("/ws/{room}")
    async def websocket_endpoint(websocket: WebSocket, room: Optional[str] = None):
        await websocket.accept()
        member = Member(
            room=normalize_room(room or websocket.query_params.get("room"), settings.default_room),
            identity=resolve_identity(websocket, trust_forwarded_for=settings.trust_forwarded_for),
            client_id=new_client_id(),
            websocket=websocket,
        )

        try:
            await relay.join(member)
        except RoomFullError as e:
            logger.info("Rejected %s from full room %s", member.identity, member.room)
            await websocket.send_text(json.dumps(ErrorEvent(category=e.category, message=e.message).to_event()))
            await websocket.close(code=ROOM_FULL_CLOSE_CODE, reason="room full")
            return

        logger.info("%s connected to %s as %s", member.identity, member.room, member.client_id)
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text") or message.get("bytes")
                if not raw:
                    continue
                frame = parse_client_frame(raw)
                if frame is None:
                    continue
                await relay.handle_frame(member, frame)
        except WebSocketDisconnect:
            pass
        finally:
            await relay.leave(member)
            logger.info("%s disconnected from %s", member.client_id, member.room)

    app.include_router(create_files_router(relay))
    app.include_router(create_transport_router(relay))
    return app
