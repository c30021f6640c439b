"""WebSocket channel for ChannelSessionClient, speaking the server's /ws frames."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Self

import structlog
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from sync.messaging.encoder import DecodeError, FrameFormat, decode, decode_json, encode, encode_json

if TYPE_CHECKING:
    from sync.client.channel import ChannelFactory

logger = structlog.get_logger()

OPEN_TIMEOUT_SECONDS = 10.0


class WebSocketChannel:
    """ClientChannel over a ``websockets`` connection.

    Requests go out as JSON text frames or MessagePack binary frames per
    ``frame_format``; the server mirrors that format, but either kind is
    decoded on the way in. Undecodable frames are logged and skipped.
    """

    def __init__(self, connection: ClientConnection, frame_format: FrameFormat = FrameFormat.JSON) -> None:
        self._connection = connection
        self.frame_format = frame_format

    @classmethod
    async def open(
        cls,
        url: str,
        *,
        frame_format: FrameFormat = FrameFormat.JSON,
        open_timeout: float = OPEN_TIMEOUT_SECONDS,
    ) -> Self:
        """Connect to ``url``. Handshake failures surface as ConnectionError."""
        try:
            connection = await connect(url, open_timeout=open_timeout)
        except (InvalidHandshake, InvalidURI) as e:
            raise ConnectionError(f"cannot open {url}: {e}") from e
        return cls(connection, frame_format)

    async def send(self, message: dict[str, Any]) -> None:
        frame: bytes | str = encode(message) if self.frame_format is FrameFormat.MSGPACK else encode_json(message)
        try:
            await self._connection.send(frame)
        except ConnectionClosed as e:
            raise ConnectionError("channel closed") from e

    async def receive(self) -> dict[str, Any]:
        while True:
            try:
                frame = await self._connection.recv()
            except ConnectionClosed as e:
                raise ConnectionError(f"channel closed ({e.rcvd.code if e.rcvd else 'no close frame'})") from e
            try:
                return decode(frame) if isinstance(frame, bytes) else decode_json(frame)
            except DecodeError as e:
                logger.warning("undecodable frame from server", error=str(e))

    async def close(self) -> None:
        await self._connection.close()


def websocket_factory(url: str, *, frame_format: FrameFormat = FrameFormat.JSON) -> ChannelFactory:
    """Channel factory for ``ChannelSessionClient`` that opens a fresh WebSocket per (re)connect."""

    async def connect_channel() -> WebSocketChannel:
        return await WebSocketChannel.open(url, frame_format=frame_format)

    return connect_channel
