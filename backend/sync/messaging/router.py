"""Route decoded push-channel messages to the push strategy and answer each request."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog
from pydantic import ValidationError

from sync.errors import ErrorCode
from sync.messaging.types import (
    CreateRoomMessage,
    JoinRoomMessage,
    LeaveRoomMessage,
    PingMessage,
    ServerMessageType,
    SyncDiceRollMessage,
    SyncPlayersMessage,
    SyncTimerMessage,
    parse_client_message,
)

if TYPE_CHECKING:
    from sync.messaging.protocol import ConnectionProtocol
    from sync.messaging.types import ActionResult
    from sync.strategies.push import PushChannel, PushStrategy

logger = structlog.get_logger()


class MessageRouter:
    """
    Routes incoming channel messages to the push strategy.

    Every message is answered with exactly one reply carrying its
    ``requestId``: ``pong`` for a ping, ``error`` when it cannot be parsed,
    ``ack`` with the action result otherwise. Replies go
    through the channel's outbound queue so they stay ordered with the
    broadcasts the action triggered.
    """

    def __init__(self, strategy: PushStrategy) -> None:
        self._strategy = strategy

    async def handle_connect(self, connection: ConnectionProtocol) -> None:
        self._strategy.connect(connection)
        logger.info("channel connected", connection_id=connection.connection_id)

    async def handle_disconnect(self, connection: ConnectionProtocol) -> None:
        await self._strategy.disconnect(connection)
        logger.info("channel disconnected", connection_id=connection.connection_id)

    async def handle_message(
        self,
        connection: ConnectionProtocol,
        raw_message: dict[str, Any],
    ) -> None:
        channel = self._strategy.get_channel(connection.connection_id)
        if channel is None:
            logger.warning("message on unknown channel", connection_id=connection.connection_id)
            return

        try:
            message = parse_client_message(raw_message)
        except (ValidationError, KeyError, TypeError, ValueError) as e:
            logger.warning("invalid message", connection_id=connection.connection_id, error=str(e))
            self.send_error(connection, "Invalid message", request_id=raw_message.get("requestId"))
            return

        result = self._dispatch(channel, message)
        reply_type = ServerMessageType.PONG if isinstance(message, PingMessage) else ServerMessageType.ACK
        channel.send({**result.to_wire(), "type": reply_type, "requestId": message.request_id})

    async def flush(self, connection: ConnectionProtocol) -> None:
        """Wait until every reply queued for ``connection`` has been written."""
        channel = self._strategy.get_channel(connection.connection_id)
        if channel is not None:
            await channel.flush()

    def send_error(self, connection: ConnectionProtocol, error: str, *, request_id: Any = None) -> None:  # noqa: ANN401
        channel = self._strategy.get_channel(connection.connection_id)
        if channel is None:
            return
        channel.send(
            {
                "type": ServerMessageType.ERROR,
                "requestId": request_id,
                "code": ErrorCode.INVALID_REQUEST,
                "error": error,
            },
        )

    def _dispatch(self, channel: PushChannel, message: Any) -> ActionResult:  # noqa: ANN401
        if isinstance(message, CreateRoomMessage):
            return self._strategy.create_channel_room(channel)
        if isinstance(message, JoinRoomMessage):
            return self._strategy.join_channel_room(channel, message.room_id)
        if isinstance(message, LeaveRoomMessage):
            return self._strategy.leave_channel_room(channel)
        if isinstance(message, SyncDiceRollMessage):
            return self._strategy.sync_channel_dice(channel, message.dice_values)
        if isinstance(message, SyncTimerMessage):
            return self._strategy.sync_channel_timer(channel, message.timer_state)
        if isinstance(message, SyncPlayersMessage):
            return self._strategy.sync_channel_players(channel, message.players)
        if isinstance(message, PingMessage):
            return self._strategy.ping(channel)
        raise TypeError(f"unhandled message type {type(message).__name__}")  # pragma: no cover
