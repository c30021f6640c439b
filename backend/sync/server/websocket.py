"""WebSocket endpoint for the push transport, accepting JSON or MessagePack frames."""

from __future__ import annotations

import contextlib
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import structlog
from starlette.websockets import WebSocket, WebSocketDisconnect

from sync.messaging.encoder import DecodeError, FrameFormat, decode, decode_json, encode, encode_json
from sync.messaging.protocol import ConnectionProtocol
from sync.rooms.models import ParticipantInfo

if TYPE_CHECKING:
    from sync.messaging.router import MessageRouter

logger = structlog.get_logger()

# Disconnect after this many consecutive decode errors
_MAX_DECODE_ERRORS = 5


class WebSocketConnection(ConnectionProtocol):
    """Starlette WebSocket speaking JSON text frames or MessagePack binary frames.

    Replies use the format of the most recent incoming frame (JSON until the
    client has sent anything).
    """

    def __init__(self, websocket: WebSocket, connection_id: str | None = None) -> None:
        self._websocket = websocket
        self._connection_id = connection_id or str(uuid4())
        self._format = FrameFormat.JSON
        client = websocket.client
        self._participant_info = ParticipantInfo(
            user_agent=websocket.headers.get("user-agent", "Unknown"),
            ip=client.host if client is not None else "Unknown",
        )

    @property
    def connection_id(self) -> str:
        return self._connection_id

    @property
    def participant_info(self) -> ParticipantInfo:
        return self._participant_info

    @property
    def frame_format(self) -> FrameFormat:
        return self._format

    async def send_message(self, data: dict[str, Any]) -> None:
        try:
            if self._format is FrameFormat.MSGPACK:
                await self._websocket.send_bytes(encode(data))
            else:
                await self._websocket.send_text(encode_json(data))
        except WebSocketDisconnect:
            raise ConnectionError("WebSocket already disconnected") from None

    async def receive_message(self) -> dict[str, Any]:
        message = await self._websocket.receive()
        if message["type"] == "websocket.disconnect":
            raise ConnectionError("WebSocket disconnected")
        if message.get("bytes") is not None:
            self._format = FrameFormat.MSGPACK
            return decode(message["bytes"])
        self._format = FrameFormat.JSON
        return decode_json(message.get("text") or "")

    async def close(self, code: int = 1000, reason: str = "") -> None:
        with contextlib.suppress(WebSocketDisconnect, RuntimeError):
            await self._websocket.close(code=code, reason=reason)


async def websocket_endpoint(websocket: WebSocket, router: MessageRouter) -> None:
    await websocket.accept()

    connection = WebSocketConnection(websocket)
    structlog.contextvars.bind_contextvars(connection_id=connection.connection_id)
    logger.info("websocket connected", user_agent=connection.participant_info.user_agent)
    await router.handle_connect(connection)

    decode_errors = 0

    try:
        while True:
            try:
                data = await connection.receive_message()
            except DecodeError as e:
                decode_errors += 1
                logger.warning("decode error", error=str(e), strikes=decode_errors)
                router.send_error(connection, str(e))
                if decode_errors >= _MAX_DECODE_ERRORS:
                    logger.info("too many decode errors, disconnecting")
                    await router.flush(connection)
                    await connection.close(code=4004, reason="too_many_decode_errors")
                    return
                continue

            decode_errors = 0
            await router.handle_message(connection, data)
    except (WebSocketDisconnect, RuntimeError, ConnectionError):  # fmt: skip
        pass
    finally:
        await router.handle_disconnect(connection)
        logger.info("websocket disconnected")
        structlog.contextvars.clear_contextvars()
