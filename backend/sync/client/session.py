"""Client-side session: room membership, status and event dispatch.

Transport-specific subclasses supply ``connect``, ``disconnect``,
``_request`` and the start/stop of background updates; everything a caller
sees (status, counts, callbacks, the room actions) lives here.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from sync.errors import ErrorCode, RequestRejected, SyncError, TransportFailure

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping, Sequence

logger = structlog.get_logger()


class ConnectionStatus(StrEnum):
    CONNECTING = "connecting"
    ONLINE = "online"
    OFFLINE = "offline"


class SessionAction(StrEnum):
    CREATE_ROOM = "create-room"
    JOIN_ROOM = "join-room"
    LEAVE_ROOM = "leave-room"
    SYNC_DICE = "sync-dice"
    SYNC_TIMER = "sync-timer"
    SYNC_PLAYERS = "sync-players"


@dataclass(frozen=True)
class RoomUpdate:
    room_id: str | None
    participant_count: int
    active_player_count: int


@dataclass
class SessionCallbacks:
    """Hooks invoked on the event loop. Exceptions raised by a hook are logged and ignored."""

    on_status_change: Callable[[ConnectionStatus, str], None] | None = None
    on_room_update: Callable[[RoomUpdate], None] | None = None
    on_dice_received: Callable[[list[Any]], None] | None = None
    on_timer_sync: Callable[[dict[str, Any]], None] | None = None
    on_players_received: Callable[[list[dict[str, Any]]], None] | None = None
    on_error: Callable[[str], None] | None = None


# Pull events and push messages name the same change differently.
_DICE_EVENTS = frozenset({"dice-roll", "dice-roll-received"})
_TIMER_EVENTS = frozenset({"timer-sync", "timer-sync-received"})
_PARTICIPANT_EVENTS = frozenset({"participant-joined", "participant-left"})


class SessionClient(ABC):
    def __init__(self, callbacks: SessionCallbacks | None = None) -> None:
        self.callbacks = callbacks or SessionCallbacks()
        self.status = ConnectionStatus.OFFLINE
        self.status_text = ""
        self.room_id: str | None = None
        self.session_id: str | None = None
        self.participant_count = 0
        self.active_player_count = 0

    @property
    def is_connected(self) -> bool:
        return self.status is ConnectionStatus.ONLINE

    @property
    def in_room(self) -> bool:
        return self.room_id is not None and self.session_id is not None

    # --- Transport ---

    @abstractmethod
    async def connect(self) -> bool:
        """Establish (or verify) the connection to the server. Returns True when online."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Stop all background work and forget the current room."""

    @abstractmethod
    async def _request(self, action: SessionAction, payload: dict[str, Any]) -> dict[str, Any]:
        """Perform one action and return the successful response body.

        Raises TransportFailure when the server cannot be reached and
        RequestRejected when it answers with ``success: false``.
        """

    @abstractmethod
    def _start_updates(self) -> None:
        """Begin receiving peers' changes for the current room."""

    @abstractmethod
    async def _stop_updates(self) -> None: ...

    # --- Room actions ---

    async def create_room(self) -> str:
        self._require_connected()
        try:
            data = await self._request(SessionAction.CREATE_ROOM, {})
        except SyncError as e:
            self._report_error(f"Create room failed: {e}")
            raise
        self._enter_room(data)
        self._set_status(ConnectionStatus.ONLINE, f"Room {self.room_id} created")
        self._start_updates()
        return data["roomId"]

    async def join_room(self, room_id: str) -> str:
        self._require_connected()
        try:
            await self._join(room_id)
        except SyncError as e:
            self._report_error(f"Join room failed: {e}")
            raise
        self._set_status(ConnectionStatus.ONLINE, f"Joined room {self.room_id}")
        self._start_updates()
        return self.room_id or ""

    async def leave_room(self) -> None:
        await self._stop_updates()
        if self.in_room:
            try:
                await self._request(SessionAction.LEAVE_ROOM, self._session_fields())
            except SyncError as e:
                logger.warning("leave room failed", room_id=self.room_id, error=str(e))
        self._reset_room()
        if self.status is ConnectionStatus.ONLINE:
            self._set_status(ConnectionStatus.ONLINE, "Ready")

    async def sync_dice(self, values: Sequence[Any]) -> dict[str, Any] | None:
        return await self._sync(SessionAction.SYNC_DICE, {"diceValues": list(values)})

    async def sync_timer(self, timer_state: Mapping[str, Any]) -> dict[str, Any] | None:
        return await self._sync(SessionAction.SYNC_TIMER, {"timerState": dict(timer_state)})

    async def sync_players(self, players: Sequence[Mapping[str, Any]]) -> dict[str, Any] | None:
        data = await self._sync(SessionAction.SYNC_PLAYERS, {"players": [dict(p) for p in players]})
        if data is not None and "players" in data:
            self._emit(self.callbacks.on_players_received, data["players"])
        return data

    def debug_info(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "isConnected": self.is_connected,
            "currentRoomId": self.room_id,
            "sessionId": self.session_id,
            "participantCount": self.participant_count,
            "activePlayerCount": self.active_player_count,
        }

    # --- Incoming events ---

    def handle_event(self, message: Mapping[str, Any]) -> None:
        """Dispatch one change made by another participant to the callbacks."""
        event_type = message.get("type")
        if event_type in _DICE_EVENTS:
            self._emit(self.callbacks.on_dice_received, message.get("values"))
        elif event_type in _TIMER_EVENTS:
            self._emit(self.callbacks.on_timer_sync, message.get("timerState"))
        elif event_type == "players-update":
            if "activePlayerCount" in message:
                self._update_counts(active_player_count=message["activePlayerCount"])
            self._emit(self.callbacks.on_players_received, message.get("players", []))
        elif event_type in _PARTICIPANT_EVENTS:
            self._update_counts(participant_count=message.get("participantCount", self.participant_count))
        elif event_type == "room-closed":
            logger.info("room closed by server", room_id=self.room_id)
            self._reset_room()
            self._report_error("Room closed")
        else:
            logger.debug("unknown event type", event_type=event_type)

    # --- Internal helpers ---

    async def _join(self, room_id: str) -> None:
        data = await self._request(SessionAction.JOIN_ROOM, {"roomId": room_id.strip().upper()})
        self._enter_room(data)
        if data.get("currentDiceValues") is not None:
            self._emit(self.callbacks.on_dice_received, data["currentDiceValues"])
        if data.get("timerState") is not None:
            self._emit(self.callbacks.on_timer_sync, data["timerState"])
        if data.get("players"):
            self._emit(self.callbacks.on_players_received, data["players"])

    async def _sync(self, action: SessionAction, fields: dict[str, Any]) -> dict[str, Any] | None:
        if not self.is_connected or not self.in_room:
            return None
        try:
            data = await self._request(action, {**self._session_fields(), **fields})
        except TransportFailure as e:
            logger.warning("sync failed", action=action, error=str(e))
            return None
        except RequestRejected as e:
            logger.warning("sync rejected", action=action, code=e.code, error=e.error)
            self._report_error(e.error)
            return None
        self._update_counts(
            participant_count=data.get("participantCount", self.participant_count),
            active_player_count=data.get("activePlayerCount", self.active_player_count),
        )
        return data

    def _require_connected(self) -> None:
        if not self.is_connected:
            raise TransportFailure("not connected to server")

    def _session_fields(self) -> dict[str, Any]:
        return {"roomId": self.room_id, "sessionId": self.session_id}

    def _enter_room(self, data: Mapping[str, Any]) -> None:
        self.room_id = data["roomId"]
        self.session_id = data["sessionId"]
        self._update_counts(
            participant_count=data.get("participantCount", 0),
            active_player_count=data.get("activePlayerCount", 0),
            force=True,
        )

    def _reset_room(self) -> None:
        self.room_id = None
        self.session_id = None
        self.participant_count = 0
        self.active_player_count = 0

    def _update_counts(
        self,
        *,
        participant_count: int | None = None,
        active_player_count: int | None = None,
        force: bool = False,
    ) -> None:
        changed = force
        if participant_count is not None and participant_count != self.participant_count:
            self.participant_count = participant_count
            changed = True
        if active_player_count is not None and active_player_count != self.active_player_count:
            self.active_player_count = active_player_count
            changed = True
        if changed:
            self._emit(
                self.callbacks.on_room_update,
                RoomUpdate(self.room_id, self.participant_count, self.active_player_count),
            )

    def _set_status(self, status: ConnectionStatus, text: str) -> None:
        self.status = status
        self.status_text = text
        logger.info("session status", status=status, text=text)
        self._emit(self.callbacks.on_status_change, status, text)

    def _report_error(self, text: str) -> None:
        logger.warning("session error", error=text)
        self._emit(self.callbacks.on_error, text)

    def _emit(self, callback: Callable[..., None] | None, *args: Any) -> None:  # noqa: ANN401
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("session callback failed", callback=getattr(callback, "__name__", repr(callback)))


def is_terminal(error: RequestRejected) -> bool:
    """Whether a rejection means the room is gone for good."""
    return error.code is ErrorCode.ROOM_NOT_FOUND
