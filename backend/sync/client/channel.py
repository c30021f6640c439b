"""Session client for the push transport (one live message channel)."""

from __future__ import annotations

import asyncio
import contextlib
import itertools
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from sync.client.session import ConnectionStatus, SessionAction, SessionClient
from sync.errors import RequestRejected, SyncError, TransportFailure

if TYPE_CHECKING:
    from sync.client.session import SessionCallbacks

logger = structlog.get_logger()

HEARTBEAT_INTERVAL_SECONDS = 30.0
REQUEST_TIMEOUT_SECONDS = 10.0
MAX_RECONNECT_ATTEMPTS = 5
RECONNECT_DELAY_SECONDS = 1.0

_MESSAGE_TYPES = {
    SessionAction.CREATE_ROOM: "create-room",
    SessionAction.JOIN_ROOM: "join-room",
    SessionAction.LEAVE_ROOM: "leave-room",
    SessionAction.SYNC_DICE: "sync-dice-roll",
    SessionAction.SYNC_TIMER: "sync-timer",
    SessionAction.SYNC_PLAYERS: "sync-players",
}
_REPLY_TYPES = frozenset({"ack", "pong", "error"})


class ClientChannel(Protocol):
    """Bidirectional message channel to the server, e.g. ``sync.client.websocket.WebSocketChannel``.

    ``receive`` raises ConnectionError once the channel is closed.
    """

    async def send(self, message: dict[str, Any]) -> None: ...

    async def receive(self) -> dict[str, Any]: ...

    async def close(self) -> None: ...


ChannelFactory = Callable[[], Awaitable[ClientChannel]]


class ChannelSessionClient(SessionClient):
    """Keep one live channel open and receive peers' changes as they happen.

    Every request carries a ``requestId`` and waits for the matching reply;
    everything else arriving on the channel is an event for ``handle_event``.
    When the channel drops unexpectedly the client reconnects up to
    ``max_reconnect_attempts`` times, waiting ``reconnect_delay * attempt``
    before each try, rejoins its room and otherwise goes offline for good.
    """

    def __init__(
        self,
        connect_channel: ChannelFactory,
        *,
        callbacks: SessionCallbacks | None = None,
        request_timeout: float = REQUEST_TIMEOUT_SECONDS,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
        max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS,
        reconnect_delay: float = RECONNECT_DELAY_SECONDS,
    ) -> None:
        super().__init__(callbacks)
        self._connect_channel = connect_channel
        self._request_timeout = request_timeout
        self._heartbeat_interval = heartbeat_interval
        self._max_reconnect_attempts = max_reconnect_attempts
        self._reconnect_delay = reconnect_delay
        self._channel: ClientChannel | None = None
        self._receive_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._pending: dict[str, asyncio.Future[dict[str, Any]]] = {}
        self._request_ids = itertools.count(1)
        self._closing = False
        self.reconnect_attempts = 0

    # --- Transport ---

    async def connect(self) -> bool:
        self._closing = False
        self._set_status(ConnectionStatus.CONNECTING, "Opening channel")
        try:
            channel = await self._connect_channel()
        except (OSError, ConnectionError) as e:
            self._set_status(ConnectionStatus.OFFLINE, "Server unreachable")
            self._report_error(f"Server unavailable: {e}")
            return False
        self._install(channel)
        self._set_status(ConnectionStatus.ONLINE, "Ready")
        return True

    async def disconnect(self) -> None:
        self._closing = True
        await self._stop_updates()
        await _cancel(self._receive_task)
        self._receive_task = None
        await self._close_channel()
        self._fail_pending(TransportFailure("disconnected"))
        self._reset_room()
        self._set_status(ConnectionStatus.OFFLINE, "Disconnected")

    async def ping(self) -> dict[str, Any]:
        return await self._send_request("ping", {})

    async def _request(self, action: SessionAction, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._send_request(_MESSAGE_TYPES[action], payload)

    def _start_updates(self) -> None:
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def _stop_updates(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not asyncio.current_task():
            await _cancel(task)

    # --- Requests ---

    async def _send_request(self, message_type: str, fields: dict[str, Any]) -> dict[str, Any]:
        channel = self._channel
        if channel is None:
            raise TransportFailure("channel is not open")
        request_id = str(next(self._request_ids))
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            try:
                await channel.send({**fields, "type": message_type, "requestId": request_id})
            except (OSError, ConnectionError) as e:
                raise TransportFailure(f"send failed: {e}") from e
            try:
                reply = await asyncio.wait_for(future, self._request_timeout)
            except TimeoutError:
                raise TransportFailure(f"no reply to {message_type} within {self._request_timeout}s") from None
        finally:
            self._pending.pop(request_id, None)
        if reply.get("type") == "error" or not reply.get("success", False):
            raise RequestRejected(reply.get("error") or "Request failed", reply.get("code"))
        return reply

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    # --- Background tasks ---

    async def _receive_loop(self, channel: ClientChannel) -> None:
        while True:
            try:
                message = await channel.receive()
            except (OSError, ConnectionError):
                break
            request_id = message.get("requestId")
            if message.get("type") in _REPLY_TYPES and request_id is not None:
                future = self._pending.get(str(request_id))
                if future is not None and not future.done():
                    future.set_result(message)
                continue
            self.handle_event(message)
        if not self._closing and channel is self._channel:
            await self._handle_connection_lost()

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            try:
                await self.ping()
            except SyncError as e:
                logger.warning("heartbeat failed", error=str(e))

    async def _handle_connection_lost(self) -> None:
        logger.warning("channel lost", room_id=self.room_id)
        self._channel = None
        self._fail_pending(TransportFailure("channel lost"))
        await self._stop_updates()
        room_id = self.room_id
        self._set_status(ConnectionStatus.CONNECTING, "Reconnecting")

        for attempt in range(1, self._max_reconnect_attempts + 1):
            self.reconnect_attempts = attempt
            await asyncio.sleep(self._reconnect_delay * attempt)
            if self._closing:
                return
            try:
                channel = await self._connect_channel()
            except (OSError, ConnectionError) as e:
                logger.info("reconnect attempt failed", attempt=attempt, error=str(e))
                continue
            self._install(channel)
            self.reconnect_attempts = 0
            self._set_status(ConnectionStatus.ONLINE, "Reconnected")
            if room_id is not None:
                await self._restore_room(room_id)
            return

        self._reset_room()
        self._set_status(ConnectionStatus.OFFLINE, "Reconnect failed")
        self._report_error("Reconnect failed")

    async def _restore_room(self, room_id: str) -> None:
        try:
            await self._join(room_id)
        except SyncError as e:
            self._report_error(f"Rejoin failed: {e}")
            self._reset_room()
            return
        self._start_updates()

    # --- Internal helpers ---

    def _install(self, channel: ClientChannel) -> None:
        self._channel = channel
        self._receive_task = asyncio.create_task(self._receive_loop(channel))

    async def _close_channel(self) -> None:
        channel, self._channel = self._channel, None
        if channel is not None:
            with contextlib.suppress(OSError, ConnectionError):
                await channel.close()

    def debug_info(self) -> dict[str, Any]:
        return {
            **super().debug_info(),
            "channelOpen": self._channel is not None,
            "reconnectAttempts": self.reconnect_attempts,
            "pendingRequests": len(self._pending),
        }


async def _cancel(task: asyncio.Task[None] | None) -> None:
    if task is None or task is asyncio.current_task():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
