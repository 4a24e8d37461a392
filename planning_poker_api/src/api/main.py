from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from src.api.config import Settings, load_settings
from src.api.db import RoomStore, create_db_engine, init_db
from src.api.errors import StoreError
from src.api.logging_config import get_logger
from src.api.messages import room_error
from src.api.poker import to_public
from src.api.session import ConnectionContext, RoomSessionEngine
from src.api.ws_manager import ConnectionRegistry, RoomBroadcaster, WebSocketChannel

logger = get_logger(__name__)

openapi_tags = [
    {"name": "Health", "description": "Service health endpoints."},
    {"name": "Rooms", "description": "Read-only room listing for monitoring."},
    {"name": "WebSockets", "description": "Real-time room channel: commands in, room state out."},
]


class HealthResponse(BaseModel):
    status: str = Field(..., description="'ok' when the room store answers.")
    rooms: int = Field(..., description="Number of rooms currently stored.")
    connections: int = Field(..., description="Participants with a live connection on this process.")
    timestamp: str = Field(..., description="Server time, ISO 8601 UTC.")


class RoomListResponse(BaseModel):
    rooms: list[dict[str, Any]] = Field(..., description="Room projections.")


class RoomDetailResponse(BaseModel):
    room: dict[str, Any] = Field(..., description="Room projection.")


def _engine_of(request: Request) -> RoomSessionEngine:
    return request.app.state.session_engine


# PUBLIC_INTERFACE
def create_app(store: Optional[RoomStore] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the planning-poker API.

    With no *store*, one is created at startup from POKER_DB_URL (or
    db_connection.txt) and its schema initialised.
    """
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        room_store = store
        if room_store is None:
            db_engine = create_db_engine()
            init_db(db_engine)
            room_store = RoomStore(db_engine)
            logger.info(f"Connected to room store at {db_engine.url.render_as_string(hide_password=True)}")
        registry = ConnectionRegistry()
        app.state.registry = registry
        session_engine = RoomSessionEngine(room_store, registry, RoomBroadcaster(registry), settings)
        app.state.session_engine = session_engine
        logger.info("Planning poker server ready")
        yield
        await session_engine.wait_for_cleanups()
        if store is None:
            room_store.engine.dispose()

    app = FastAPI(
        title="Planning Poker API",
        description=(
            "Real-time planning poker rooms.\n\n"
            "WebSocket usage:\n"
            "- Connect to: /ws\n"
            "- Send JSON commands: room:create, room:join, user:vote, user:spectate, "
            "room:reveal, room:reset, room:leave.\n"
            "- Server replies with room:created / room:joined / room:error and keeps every member in sync "
            "with room:updated.\n"
        ),
        version="0.1.0",
        openapi_tags=openapi_tags,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # PUBLIC_INTERFACE
    @app.get("/health", tags=["Health"], summary="Health check", operation_id="health_check", response_model=HealthResponse)
    async def health_check(request: Request) -> HealthResponse:
        """Return process status, stored room count and live connection count."""
        engine = _engine_of(request)
        try:
            rooms = await run_in_threadpool(engine.store.count_documents)
        except StoreError as e:
            raise HTTPException(status_code=503, detail="Room store unavailable") from e
        return HealthResponse(
            status="ok",
            rooms=rooms,
            connections=len(engine.registry),
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    # PUBLIC_INTERFACE
    @app.get("/rooms", tags=["Rooms"], summary="List rooms", operation_id="list_rooms", response_model=RoomListResponse)
    async def list_rooms(request: Request) -> RoomListResponse:
        """Return every stored room."""
        engine = _engine_of(request)
        try:
            docs = await run_in_threadpool(engine.store.find_all)
        except StoreError as e:
            raise HTTPException(status_code=500, detail="Error fetching rooms") from e
        return RoomListResponse(rooms=[to_public(d, settings.default_emoji) for d in docs])

    # PUBLIC_INTERFACE
    @app.get("/rooms/{room_id}", tags=["Rooms"], summary="Get room", operation_id="get_room", response_model=RoomDetailResponse)
    async def get_room(room_id: str, request: Request) -> RoomDetailResponse:
        """Fetch one room's current state."""
        engine = _engine_of(request)
        try:
            doc = await run_in_threadpool(engine.store.find_one, room_id)
        except StoreError as e:
            raise HTTPException(status_code=500, detail="Error fetching room") from e
        if doc is None:
            raise HTTPException(status_code=404, detail="Room not found")
        return RoomDetailResponse(room=to_public(doc, settings.default_emoji))

    # PUBLIC_INTERFACE
    @app.websocket("/ws")
    async def ws_room(websocket: WebSocket) -> None:
        """
        Participant channel.

        Commands on one connection are handled strictly in arrival order.
        Closing the socket leaves the room: the room is deleted when it was
        the last member, otherwise ownership moves on if needed and the
        remaining members get room:updated.
        """
        engine: RoomSessionEngine = websocket.app.state.session_engine
        await websocket.accept()
        ctx = ConnectionContext(channel=WebSocketChannel(websocket))
        logger.info("WebSocket connection opened")
        try:
            while True:
                try:
                    msg = await websocket.receive_json()
                except ValueError:
                    await engine.broadcaster.send_direct(ctx.channel, room_error("Message must be valid JSON"))
                    continue
                try:
                    await engine.handle(ctx, msg)
                except Exception:
                    logger.exception("Unhandled error while processing a command")
                    await engine.broadcaster.send_direct(ctx.channel, room_error("Internal server error"))
        except WebSocketDisconnect:
            logger.info("WebSocket connection closed")
        finally:
            await engine.disconnect(ctx)

    return app


app = create_app()
