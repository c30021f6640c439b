"""Push strategy: live channels, every change forwarded to peers immediately."""

from __future__ import annotations

import asyncio
import contextlib
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from sync.errors import ErrorCode
from sync.messaging.types import ActionFailure, ActionResult, PongResult, ServerMessageType
from sync.rooms.models import EventType, utcnow
from sync.strategies.base import ReconciliationStrategy

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from sync.messaging.protocol import ConnectionProtocol
    from sync.rooms.models import Event, TimerState
    from sync.rooms.registry import RoomRegistry
    from sync.rooms.room import Room

logger = structlog.get_logger()

_DEFAULT_QUEUE_SIZE = 256

_EVENT_MESSAGE_TYPES = {
    EventType.DICE_ROLL: ServerMessageType.DICE_ROLL_RECEIVED,
    EventType.TIMER_SYNC: ServerMessageType.TIMER_SYNC_RECEIVED,
    EventType.PLAYERS_UPDATE: ServerMessageType.PLAYERS_UPDATE,
}


class ChannelState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class PushChannel:
    """One live connection plus its outbound FIFO.

    ``send`` never waits: messages are queued and written by a dedicated
    sender task, so a slow peer only ever delays itself. A full queue or a
    failed write drops the message with a warning.
    """

    def __init__(self, connection: ConnectionProtocol, *, queue_size: int = _DEFAULT_QUEUE_SIZE) -> None:
        self.connection = connection
        self.state = ChannelState.DISCONNECTED
        self.room_id: str | None = None
        self.session_id: str | None = None
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=queue_size)
        self._sender: asyncio.Task[None] | None = None

    @property
    def connection_id(self) -> str:
        return self.connection.connection_id

    def start(self) -> None:
        self.state = ChannelState.CONNECTING
        self._sender = asyncio.create_task(self._drain())
        self.state = ChannelState.CONNECTED

    def send(self, message: dict[str, Any]) -> bool:
        if self.state is not ChannelState.CONNECTED:
            return False
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning(
                "outbound queue full, dropping message",
                connection_id=self.connection_id,
                message_type=message.get("type"),
            )
            return False
        return True

    async def flush(self) -> None:
        """Wait until everything queued so far has been written (or dropped)."""
        await self._queue.join()

    async def close(self) -> None:
        self.state = ChannelState.DISCONNECTED
        if self._sender is not None:
            self._sender.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sender
            self._sender = None

    async def _drain(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self.connection.send_message(message)
            except (ConnectionError, RuntimeError) as e:
                logger.warning("send failed, message dropped", connection_id=self.connection_id, error=str(e))
            finally:
                self._queue.task_done()


class PushStrategy(ReconciliationStrategy):
    """Forward every recorded event to the room's other live channels.

    A connected channel is proof of presence: its session is refreshed
    before any live count, so only sessions whose channel is gone can go
    stale. A room is deleted as soon as its last participant leaves or
    disconnects.
    """

    name = "push"

    def __init__(self, registry: RoomRegistry, *, queue_size: int = _DEFAULT_QUEUE_SIZE) -> None:
        super().__init__(registry)
        self._queue_size = queue_size
        self._channels: dict[str, PushChannel] = {}  # connection_id -> channel
        self._room_channels: dict[str, dict[str, PushChannel]] = {}  # room_id -> {session_id -> channel}

    # --- Channel lifecycle ---

    def connect(self, connection: ConnectionProtocol) -> PushChannel:
        channel = PushChannel(connection, queue_size=self._queue_size)
        channel.start()
        self._channels[connection.connection_id] = channel
        return channel

    async def disconnect(self, connection: ConnectionProtocol) -> None:
        channel = self._channels.pop(connection.connection_id, None)
        if channel is None:
            return
        self.leave_channel_room(channel)
        await channel.close()

    def get_channel(self, connection_id: str) -> PushChannel | None:
        return self._channels.get(connection_id)

    @property
    def channel_count(self) -> int:
        return len(self._channels)

    # --- Channel actions ---

    def create_channel_room(self, channel: PushChannel) -> ActionResult:
        self.leave_channel_room(channel)
        result = self.create_room(channel.connection.participant_info)
        if result.success:
            self._bind(channel, result.room_id, result.session_id)
        return result

    def join_channel_room(self, channel: PushChannel, room_id: str) -> ActionResult:
        """Join ``room_id``; a channel already in a room leaves it once the join succeeded."""
        result = self.join_room(room_id, channel.connection.participant_info)
        if not result.success:
            return result
        self.leave_channel_room(channel)
        self._bind(channel, result.room_id, result.session_id)
        room = self.registry.get_room(result.room_id)
        if room is not None:
            self._broadcast(
                result.room_id,
                {"type": ServerMessageType.PARTICIPANT_JOINED, "participantCount": self._live_count(room)},
                exclude=result.session_id,
            )
        return result

    def leave_channel_room(self, channel: PushChannel) -> ActionResult:
        room_id, session_id = channel.room_id, channel.session_id
        if room_id is None or session_id is None:
            return ActionResult()
        self._unbind(channel)
        result = self.leave_room(room_id, session_id)
        room = self.registry.get_room(room_id)
        if room is not None:
            self._broadcast(
                room_id,
                {"type": ServerMessageType.PARTICIPANT_LEFT, "participantCount": self._live_count(room)},
            )
        return result

    def sync_channel_dice(self, channel: PushChannel, values: Sequence[Any]) -> ActionResult:
        if channel.room_id is None or channel.session_id is None:
            return _not_in_room()
        return self.sync_dice(channel.room_id, channel.session_id, values)

    def sync_channel_timer(self, channel: PushChannel, timer: TimerState) -> ActionResult:
        if channel.room_id is None or channel.session_id is None:
            return _not_in_room()
        return self.sync_timer(channel.room_id, channel.session_id, timer)

    def sync_channel_players(self, channel: PushChannel, players: Sequence[Mapping[str, Any]]) -> ActionResult:
        if channel.room_id is None or channel.session_id is None:
            return _not_in_room()
        return self.sync_players(channel.room_id, channel.session_id, players)

    def ping(self, channel: PushChannel) -> PongResult:
        if channel.room_id is not None and channel.session_id is not None:
            room = self.registry.get_room(channel.room_id)
            if room is not None:
                room.touch(channel.session_id, activity=False)
        return PongResult(timestamp=utcnow())

    async def handle_rooms_removed(self, room_ids: list[str]) -> None:
        """Tell channels still bound to swept rooms that their room is gone."""
        for room_id in room_ids:
            channels = self._room_channels.pop(room_id, {})
            for channel in channels.values():
                channel.room_id = None
                channel.session_id = None
                channel.send({"type": ServerMessageType.ROOM_CLOSED, "roomId": room_id})
            if channels:
                logger.info("room closed for live channels", room_id=room_id, channels=len(channels))

    # --- Hooks ---

    def refresh_presence(self, room: Room) -> None:
        for session_id in self._room_channels.get(room.room_id, {}):
            room.touch(session_id, activity=False)

    def _publish(self, room: Room, event: Event) -> None:
        message: dict[str, Any] = {
            **event.payload,
            "type": _EVENT_MESSAGE_TYPES[event.type],
            "fromParticipant": event.from_session,
            "timestamp": event.timestamp.isoformat(),
        }
        self._broadcast(room.room_id, message, exclude=event.from_session)

    # --- Internal helpers ---

    def _broadcast(self, room_id: str, message: dict[str, Any], exclude: str | None = None) -> None:
        for session_id, channel in list(self._room_channels.get(room_id, {}).items()):
            if session_id == exclude:
                continue
            channel.send(message)

    def _bind(self, channel: PushChannel, room_id: str, session_id: str) -> None:
        channel.room_id = room_id
        channel.session_id = session_id
        self._room_channels.setdefault(room_id, {})[session_id] = channel

    def _unbind(self, channel: PushChannel) -> None:
        if channel.room_id is None or channel.session_id is None:
            return
        members = self._room_channels.get(channel.room_id)
        if members is not None:
            members.pop(channel.session_id, None)
            if not members:
                del self._room_channels[channel.room_id]
        channel.room_id = None
        channel.session_id = None


def _not_in_room() -> ActionFailure:
    return ActionFailure(error="Not in a room", code=ErrorCode.SESSION_NOT_FOUND)
