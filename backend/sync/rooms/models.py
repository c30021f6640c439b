"""Records held by a room: participants, players, timer state and events."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

# Keys the server owns on a player record; client-supplied values are ignored.
_SERVER_PLAYER_KEYS = frozenset({"isActive", "sessionId", "lastUpdated"})


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


class WireModel(BaseModel):
    """Base for models that cross the wire with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


@dataclass(frozen=True)
class RoomLimits:
    """Tunables applied to every room of a registry."""

    participant_timeout_seconds: float = 300
    room_ttl_seconds: float = 3600
    event_log_capacity: int = 50
    recent_events_limit: int = 10
    max_active_players: int = 4


class EventType(StrEnum):
    DICE_ROLL = "dice-roll"
    TIMER_SYNC = "timer-sync"
    PLAYERS_UPDATE = "players-update"


@dataclass(frozen=True)
class ParticipantInfo:
    """Connection metadata captured when a participant joins."""

    user_agent: str = "Unknown"
    ip: str = "Unknown"


@dataclass
class ParticipantRecord:
    session_id: str
    joined_at: datetime
    last_seen: datetime
    info: ParticipantInfo = field(default_factory=ParticipantInfo)


@dataclass
class PlayerRecord:
    """One roster entry, owned by the session that submitted it."""

    session_id: str
    attributes: dict[str, Any]
    is_active: bool
    last_updated: datetime

    @classmethod
    def from_submission(
        cls,
        session_id: str,
        submitted: dict[str, Any],
        *,
        is_active: bool,
        now: datetime,
    ) -> PlayerRecord:
        attributes = {k: v for k, v in submitted.items() if k not in _SERVER_PLAYER_KEYS}
        return cls(session_id=session_id, attributes=attributes, is_active=is_active, last_updated=now)

    @property
    def player_id(self) -> Any:  # noqa: ANN401
        return self.attributes.get("id")

    def to_wire(self) -> dict[str, Any]:
        return {
            **self.attributes,
            "sessionId": self.session_id,
            "isActive": self.is_active,
            "lastUpdated": self.last_updated.isoformat(),
        }


class TimerState(WireModel):
    """Countdown timer shared by the room. Replaced wholesale on every sync."""

    is_running: bool = False
    remaining_time: float = 0
    duration: float = 60
    start_time: float | None = None
    last_updated_by: str | None = None
    last_updated_at: datetime | None = None


@dataclass(frozen=True)
class Event:
    """Entry of a room's event log.

    from_session is None for events the room records on its own behalf
    (a roster change caused by a staleness purge).
    """

    id: int
    type: EventType
    payload: dict[str, Any]
    from_session: str | None
    timestamp: datetime

    def to_wire(self) -> dict[str, Any]:
        return {
            **self.payload,
            "id": self.id,
            "type": self.type.value,
            "fromSession": self.from_session,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class RoomSnapshot:
    """Read-only projection of a room for join responses and info queries."""

    room_id: str
    participant_count: int
    active_player_count: int
    dice_state: list[Any] | None
    timer_state: TimerState
    players: list[dict[str, Any]]
    created_at: datetime
    last_activity: datetime


@dataclass(frozen=True)
class JoinResult:
    session_id: str
    snapshot: RoomSnapshot


@dataclass(frozen=True)
class LeaveResult:
    removed: bool
    room_empty: bool
    event: Event | None = None
