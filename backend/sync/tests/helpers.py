"""Shared helpers for sync tests: clock manipulation, WebSocket frames and an in-process channel."""

import asyncio
import contextlib
from datetime import timedelta
from typing import Any
from uuid import uuid4

from sync.messaging.encoder import decode, encode
from sync.messaging.protocol import ConnectionProtocol
from sync.rooms.models import ParticipantInfo, utcnow

_CLOSED = None


def age_participant(room, session_id: str, seconds: float) -> None:
    """Move a participant's last_seen ``seconds`` into the past."""
    room.participants[session_id].last_seen = utcnow() - timedelta(seconds=seconds)


def age_room(room, seconds: float) -> None:
    room.last_activity = utcnow() - timedelta(seconds=seconds)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Yield to the event loop until ``predicate()`` holds."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)


def send_ws(ws, data: dict) -> None:
    """Send a MessagePack-encoded message over a test WebSocket."""
    ws.send_bytes(encode(data))


def recv_ws(ws) -> dict:
    """Receive and decode a MessagePack message from a test WebSocket."""
    return decode(ws.receive_bytes())


def recv_until(ws, message_type: str, *, binary: bool = False) -> dict:
    """Skip broadcasts until a message of ``message_type`` arrives."""
    while True:
        message = recv_ws(ws) if binary else ws.receive_json()
        if message.get("type") == message_type:
            return message


class LoopbackConnection(ConnectionProtocol):
    """Server end of an in-process channel."""

    def __init__(self, inbound: asyncio.Queue, outbound: asyncio.Queue) -> None:
        self._connection_id = str(uuid4())
        self._inbound = inbound
        self._outbound = outbound
        self._closed = False

    @property
    def connection_id(self) -> str:
        return self._connection_id

    @property
    def participant_info(self) -> ParticipantInfo:
        return ParticipantInfo(user_agent="loopback", ip="127.0.0.1")

    async def send_message(self, data: dict[str, Any]) -> None:
        if self._closed:
            raise ConnectionError("Connection is closed")
        self._outbound.put_nowait(data)

    async def receive_message(self) -> dict[str, Any]:
        item = await self._inbound.get()
        if item is _CLOSED:
            self._closed = True
            raise ConnectionError("Connection is closed")
        return item

    async def close(self, code: int = 1000, reason: str = "") -> None:  # noqa: ARG002
        self._closed = True
        self._outbound.put_nowait(_CLOSED)


class LoopbackChannel:
    """Client end of an in-process channel (satisfies ClientChannel)."""

    def __init__(self, inbound: asyncio.Queue, outbound: asyncio.Queue) -> None:
        self._inbound = inbound
        self._outbound = outbound
        self.closed = False

    async def send(self, message: dict[str, Any]) -> None:
        if self.closed:
            raise ConnectionError("Channel is closed")
        self._outbound.put_nowait(message)

    async def receive(self) -> dict[str, Any]:
        item = await self._inbound.get()
        if item is _CLOSED:
            self.closed = True
            raise ConnectionError("Channel is closed")
        return item

    async def close(self) -> None:
        self.closed = True
        self._outbound.put_nowait(_CLOSED)

    def drop(self) -> None:
        """Sever the channel in both directions, as a network failure would."""
        self.closed = True
        self._outbound.put_nowait(_CLOSED)
        self._inbound.put_nowait(_CLOSED)


class LoopbackServer:
    """Serve a MessageRouter over in-process channels.

    Use ``connect`` as the ChannelSessionClient factory. Setting ``refuse``
    makes further connection attempts fail.
    """

    def __init__(self, router) -> None:
        self.router = router
        self.refuse = False
        self.connect_attempts = 0
        self.channels: list[LoopbackChannel] = []
        self._tasks: list[asyncio.Task] = []

    async def connect(self) -> LoopbackChannel:
        self.connect_attempts += 1
        if self.refuse:
            raise ConnectionRefusedError("loopback server refusing connections")
        to_server: asyncio.Queue = asyncio.Queue()
        to_client: asyncio.Queue = asyncio.Queue()
        connection = LoopbackConnection(to_server, to_client)
        channel = LoopbackChannel(to_client, to_server)
        await self.router.handle_connect(connection)
        self._tasks.append(asyncio.create_task(self._serve(connection)))
        self.channels.append(channel)
        return channel

    async def shutdown(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()

    async def _serve(self, connection: LoopbackConnection) -> None:
        try:
            while True:
                data = await connection.receive_message()
                await self.router.handle_message(connection, data)
        except ConnectionError:
            pass
        finally:
            await self.router.handle_disconnect(connection)
