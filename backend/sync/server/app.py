"""Starlette application: HTTP actions for the pull transport, /ws for the push transport."""

from __future__ import annotations

import contextlib
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, ValidationError
from starlette.applications import Starlette
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse
from starlette.routing import Route, WebSocketRoute

from shared.build_info import APP_VERSION, GIT_COMMIT
from shared.logging import setup_logging
from sync.errors import ErrorCode
from sync.messaging.router import MessageRouter
from sync.messaging.types import (
    ActionFailure,
    JoinRoomRequest,
    PollRequest,
    SessionRequest,
    SyncDiceRequest,
    SyncPlayersRequest,
    SyncTimerRequest,
)
from sync.rooms.models import ParticipantInfo, utcnow
from sync.rooms.registry import RoomRegistry
from sync.server.settings import SyncServerSettings
from sync.server.websocket import websocket_endpoint
from sync.strategies.pull import PullStrategy
from sync.strategies.push import PushStrategy

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from starlette.requests import Request
    from starlette.websockets import WebSocket

    from sync.messaging.types import ActionResult
    from sync.strategies.base import ReconciliationStrategy

logger = structlog.get_logger()

_MAX_REQUEST_BODY_SIZE = 64 * 1024

_STATUS_BY_CODE = {
    ErrorCode.ROOM_NOT_FOUND: 404,
    ErrorCode.SESSION_NOT_FOUND: 404,
    ErrorCode.SERVER_AT_CAPACITY: 503,
    ErrorCode.INVALID_REQUEST: 400,
    ErrorCode.INTERNAL_ERROR: 500,
}


class _BadRequest(Exception):
    def __init__(self, error: str, status_code: int = 400) -> None:
        super().__init__(error)
        self.error = error
        self.status_code = status_code


def _respond(result: ActionResult) -> JSONResponse:
    status_code = _STATUS_BY_CODE[result.code] if isinstance(result, ActionFailure) else 200
    return JSONResponse(result.to_wire(), status_code=status_code)


def _bad_request(exc: _BadRequest) -> JSONResponse:
    body = ActionFailure(error=exc.error, code=ErrorCode.INVALID_REQUEST).to_wire()
    return JSONResponse(body, status_code=exc.status_code)


async def _parse_body(request: Request, model: type[BaseModel]) -> Any:  # noqa: ANN401
    raw_body = await request.body()
    if len(raw_body) > _MAX_REQUEST_BODY_SIZE:
        raise _BadRequest("Request body too large", status_code=413)
    try:
        return model.model_validate_json(raw_body or b"{}")
    except ValidationError as e:
        logger.info("invalid request body", path=request.url.path, errors=e.error_count())
        raise _BadRequest("Invalid request body") from None


def _participant_info(request: Request) -> ParticipantInfo:
    ip = request.headers.get("client-ip") or (request.client.host if request.client else None)
    return ParticipantInfo(user_agent=request.headers.get("user-agent", "Unknown"), ip=ip or "Unknown")


def _pull(request: Request) -> PullStrategy:
    return request.app.state.strategy


async def health(request: Request) -> JSONResponse:
    registry: RoomRegistry = request.app.state.registry
    strategy: ReconciliationStrategy = request.app.state.strategy
    return JSONResponse(
        {
            "status": "healthy",
            "rooms": registry.room_count,
            "strategy": strategy.name,
            "timestamp": utcnow().isoformat(),
            "version": APP_VERSION,
            "commit": GIT_COMMIT,
        },
    )


async def room_info(request: Request) -> JSONResponse:
    strategy: ReconciliationStrategy = request.app.state.strategy
    return _respond(strategy.room_info(request.path_params["room_id"]))


async def create_room(request: Request) -> JSONResponse:
    return _respond(_pull(request).create_room(_participant_info(request)))


async def join_room(request: Request) -> JSONResponse:
    try:
        body: JoinRoomRequest = await _parse_body(request, JoinRoomRequest)
    except _BadRequest as e:
        return _bad_request(e)
    return _respond(_pull(request).join_room(body.room_id, _participant_info(request)))


async def leave_room(request: Request) -> JSONResponse:
    try:
        body: SessionRequest = await _parse_body(request, SessionRequest)
    except _BadRequest as e:
        return _bad_request(e)
    return _respond(_pull(request).leave_room(body.room_id, body.session_id))


async def sync_dice(request: Request) -> JSONResponse:
    try:
        body: SyncDiceRequest = await _parse_body(request, SyncDiceRequest)
    except _BadRequest as e:
        return _bad_request(e)
    return _respond(_pull(request).sync_dice(body.room_id, body.session_id, body.dice_values))


async def sync_timer(request: Request) -> JSONResponse:
    try:
        body: SyncTimerRequest = await _parse_body(request, SyncTimerRequest)
    except _BadRequest as e:
        return _bad_request(e)
    return _respond(_pull(request).sync_timer(body.room_id, body.session_id, body.timer_state))


async def sync_players(request: Request) -> JSONResponse:
    try:
        body: SyncPlayersRequest = await _parse_body(request, SyncPlayersRequest)
    except _BadRequest as e:
        return _bad_request(e)
    return _respond(_pull(request).sync_players(body.room_id, body.session_id, body.players))


async def poll(request: Request) -> JSONResponse:
    try:
        body: PollRequest = await _parse_body(request, PollRequest)
    except _BadRequest as e:
        return _bad_request(e)
    return _respond(_pull(request).poll(body.room_id, body.session_id, body.since))


def create_strategy(settings: SyncServerSettings, registry: RoomRegistry) -> ReconciliationStrategy:
    """Build the configured strategy and wire the registry's removal callback to it."""
    if settings.strategy == "push":
        strategy = PushStrategy(registry, queue_size=settings.channel_queue_size)
        registry.on_rooms_removed = strategy.handle_rooms_removed
        registry.refresh_presence = strategy.refresh_presence
        return strategy
    return PullStrategy(registry)


def create_app(
    settings: SyncServerSettings | None = None,
    registry: RoomRegistry | None = None,
    strategy: ReconciliationStrategy | None = None,
) -> Starlette:
    if settings is None:
        settings = SyncServerSettings()

    if registry is None:
        registry = (
            strategy.registry
            if strategy is not None
            else RoomRegistry(
                settings.room_limits,
                max_rooms=settings.max_rooms,
                code_length=settings.room_code_length,
                sweep_interval_seconds=settings.sweep_interval_seconds,
                sweep_probability=settings.sweep_probability,
            )
        )

    if strategy is None:
        strategy = create_strategy(settings, registry)

    routes: list[Route | WebSocketRoute] = [
        Route("/health", health, methods=["GET"]),
        Route("/room/{room_id}", room_info, methods=["GET"]),
    ]

    if isinstance(strategy, PushStrategy):
        message_router = MessageRouter(strategy)

        async def ws_endpoint(websocket: WebSocket) -> None:
            await websocket_endpoint(websocket, message_router)

        routes.append(WebSocketRoute("/ws", ws_endpoint))
    else:
        routes += [
            Route("/create-room", create_room, methods=["POST"]),
            Route("/join-room", join_room, methods=["POST"]),
            Route("/leave-room", leave_room, methods=["POST"]),
            Route("/sync-dice", sync_dice, methods=["POST"]),
            Route("/sync-timer", sync_timer, methods=["POST"]),
            Route("/sync-players", sync_players, methods=["POST"]),
            Route("/poll", poll, methods=["POST"]),
        ]

    @contextlib.asynccontextmanager
    async def lifespan(_app: Starlette) -> AsyncGenerator[None]:
        registry.start_reaper()
        yield
        await registry.stop_reaper()

    app = Starlette(routes=routes, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )
    app.state.settings = settings
    app.state.registry = registry
    app.state.strategy = strategy

    logger.info("sync server ready", strategy=strategy.name)
    return app


def get_app() -> Starlette:  # pragma: no cover
    """ASGI application factory for production use (uvicorn --factory sync.server.app:get_app)."""
    settings = SyncServerSettings()
    setup_logging(log_dir=settings.log_dir)
    return create_app(settings=settings)
