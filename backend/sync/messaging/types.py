"""Wire models for both transports.

HTTP bodies and channel messages use camelCase keys; the models accept either
spelling on input and always serialize with aliases (``to_wire``).
"""

from datetime import datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import Field, TypeAdapter

from sync.errors import ErrorCode
from sync.rooms.models import TimerState, WireModel

_ROOM_ID_FIELD = Field(min_length=1, max_length=16, pattern=r"^[a-zA-Z0-9]+$")
_SESSION_ID_FIELD = Field(min_length=1, max_length=64)
_REQUEST_ID_FIELD = Field(default=None, max_length=64)

# Dice values are opaque to the server: whatever the client rolled is stored and relayed.
DiceValues = Annotated[list[Any], Field(max_length=64)]
PlayerList = Annotated[list[dict[str, Any]], Field(max_length=64)]


class ClientMessageType(StrEnum):
    CREATE_ROOM = "create-room"
    JOIN_ROOM = "join-room"
    LEAVE_ROOM = "leave-room"
    SYNC_DICE_ROLL = "sync-dice-roll"
    SYNC_TIMER = "sync-timer"
    SYNC_PLAYERS = "sync-players"
    PING = "ping"


class ServerMessageType(StrEnum):
    ACK = "ack"
    PARTICIPANT_JOINED = "participant-joined"
    PARTICIPANT_LEFT = "participant-left"
    DICE_ROLL_RECEIVED = "dice-roll-received"
    TIMER_SYNC_RECEIVED = "timer-sync-received"
    PLAYERS_UPDATE = "players-update"
    ROOM_CLOSED = "room-closed"
    PONG = "pong"
    ERROR = "error"


# --- HTTP request bodies (pull transport) ---


class JoinRoomRequest(WireModel):
    room_id: str = _ROOM_ID_FIELD


class SessionRequest(WireModel):
    room_id: str = _ROOM_ID_FIELD
    session_id: str = _SESSION_ID_FIELD


class SyncDiceRequest(SessionRequest):
    dice_values: DiceValues


class SyncTimerRequest(SessionRequest):
    timer_state: TimerState


class SyncPlayersRequest(SessionRequest):
    players: PlayerList


class PollRequest(SessionRequest):
    since: datetime | None = None


# --- Channel messages (push transport) ---


class CreateRoomMessage(WireModel):
    type: Literal[ClientMessageType.CREATE_ROOM] = ClientMessageType.CREATE_ROOM
    request_id: str | None = _REQUEST_ID_FIELD


class JoinRoomMessage(WireModel):
    type: Literal[ClientMessageType.JOIN_ROOM] = ClientMessageType.JOIN_ROOM
    request_id: str | None = _REQUEST_ID_FIELD
    room_id: str = _ROOM_ID_FIELD


class LeaveRoomMessage(WireModel):
    type: Literal[ClientMessageType.LEAVE_ROOM] = ClientMessageType.LEAVE_ROOM
    request_id: str | None = _REQUEST_ID_FIELD


class SyncDiceRollMessage(WireModel):
    type: Literal[ClientMessageType.SYNC_DICE_ROLL] = ClientMessageType.SYNC_DICE_ROLL
    request_id: str | None = _REQUEST_ID_FIELD
    dice_values: DiceValues


class SyncTimerMessage(WireModel):
    type: Literal[ClientMessageType.SYNC_TIMER] = ClientMessageType.SYNC_TIMER
    request_id: str | None = _REQUEST_ID_FIELD
    timer_state: TimerState


class SyncPlayersMessage(WireModel):
    type: Literal[ClientMessageType.SYNC_PLAYERS] = ClientMessageType.SYNC_PLAYERS
    request_id: str | None = _REQUEST_ID_FIELD
    players: PlayerList


class PingMessage(WireModel):
    type: Literal[ClientMessageType.PING] = ClientMessageType.PING
    request_id: str | None = _REQUEST_ID_FIELD


ClientMessage = Annotated[
    CreateRoomMessage
    | JoinRoomMessage
    | LeaveRoomMessage
    | SyncDiceRollMessage
    | SyncTimerMessage
    | SyncPlayersMessage
    | PingMessage,
    Field(discriminator="type"),
]

_client_message_adapter = TypeAdapter(ClientMessage)


def parse_client_message(data: dict[str, Any]) -> ClientMessage:
    """Parse a raw dict into a typed channel message. Raises pydantic.ValidationError."""
    return _client_message_adapter.validate_python(data)


# --- Action results ---


class ActionResult(WireModel):
    success: bool = True


class ActionFailure(ActionResult):
    success: bool = False
    error: str
    code: ErrorCode


class CreateRoomResult(ActionResult):
    room_id: str
    session_id: str
    participant_count: int
    active_player_count: int


class JoinRoomResult(CreateRoomResult):
    current_dice_values: list[Any] | None
    timer_state: TimerState
    players: list[dict[str, Any]]


class SyncResult(ActionResult):
    participant_count: int


class SyncPlayersResult(SyncResult):
    active_player_count: int
    players: list[dict[str, Any]]


class PollResult(SyncPlayersResult):
    messages: list[dict[str, Any]]
    current_dice_values: list[Any] | None
    timer_state: TimerState
    timestamp: datetime


class RoomInfoResult(ActionResult):
    id: str
    participant_count: int
    active_player_count: int
    timer_state: TimerState
    dice_state: list[Any] | None
    players: list[dict[str, Any]]
    created_at: datetime
    last_activity: datetime


class PongResult(ActionResult):
    pong: bool = True
    timestamp: datetime
