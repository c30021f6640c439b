"""Action surface shared by both reconciliation strategies."""

from __future__ import annotations

from abc import ABC
from typing import TYPE_CHECKING, Any, ClassVar

import structlog

from sync.errors import ErrorCode, RoomNotFound, ServerAtCapacity, SessionNotFound, SyncError
from sync.messaging.types import (
    ActionFailure,
    ActionResult,
    CreateRoomResult,
    JoinRoomResult,
    RoomInfoResult,
    SyncPlayersResult,
    SyncResult,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping, Sequence

    from sync.rooms.models import Event, ParticipantInfo, TimerState
    from sync.rooms.registry import RoomRegistry
    from sync.rooms.room import Room

logger = structlog.get_logger()

# Failures the caller caused; reported without a traceback.
_EXPECTED_ERRORS = (RoomNotFound, SessionNotFound, ServerAtCapacity)


class ReconciliationStrategy(ABC):
    """Apply room actions and decide how other participants observe them.

    Every action is implemented here once and returns a result model; nothing
    raises past an action. Subclasses only override the hooks that differ
    between transports: how recorded events reach peers (``_publish``), what
    counts as presence (``refresh_presence``) and per-request housekeeping
    (``_on_request``).
    """

    name: ClassVar[str]

    def __init__(self, registry: RoomRegistry) -> None:
        self.registry = registry

    # --- Actions ---

    def create_room(self, info: ParticipantInfo | None = None) -> CreateRoomResult | ActionFailure:
        def run() -> CreateRoomResult:
            room, joined = self.registry.create_room(info)
            logger.info("room created", room_id=room.room_id, session_id=joined.session_id)
            return CreateRoomResult(
                room_id=room.room_id,
                session_id=joined.session_id,
                participant_count=joined.snapshot.participant_count,
                active_player_count=joined.snapshot.active_player_count,
            )

        return self._guarded("create_room", run)

    def join_room(self, room_id: str, info: ParticipantInfo | None = None) -> JoinRoomResult | ActionFailure:
        def run() -> JoinRoomResult:
            room = self._room(room_id)
            with room.lock:
                self.refresh_presence(room)
                joined = room.join(info)
            snapshot = joined.snapshot
            logger.info("participant joined", room_id=room.room_id, session_id=joined.session_id)
            return JoinRoomResult(
                room_id=room.room_id,
                session_id=joined.session_id,
                participant_count=snapshot.participant_count,
                active_player_count=snapshot.active_player_count,
                current_dice_values=snapshot.dice_state,
                timer_state=snapshot.timer_state,
                players=snapshot.players,
            )

        return self._guarded("join_room", run, room_id=room_id)

    def leave_room(self, room_id: str, session_id: str) -> ActionResult | ActionFailure:
        """Leave a room. Unknown rooms and sessions are a successful no-op."""

        def run() -> ActionResult:
            room = self.registry.get_room(room_id)
            if room is None:
                return ActionResult()
            with room.lock:
                self.refresh_presence(room)
                result = room.leave(session_id)
            if result.event is not None:
                self._publish(room, result.event)
            if result.room_empty:
                self.registry.delete_room(room.room_id)
            logger.info(
                "participant left",
                room_id=room.room_id,
                session_id=session_id,
                removed=result.removed,
                room_empty=result.room_empty,
            )
            return ActionResult()

        return self._guarded("leave_room", run, room_id=room_id, session_id=session_id)

    def sync_dice(self, room_id: str, session_id: str, values: Sequence[Any]) -> SyncResult | ActionFailure:
        def run() -> SyncResult:
            room = self._room(room_id)
            with room.lock:
                event = room.record_dice_roll(session_id, values)
                self._publish(room, event)
                return SyncResult(participant_count=self._live_count(room))

        return self._guarded("sync_dice", run, room_id=room_id, session_id=session_id)

    def sync_timer(self, room_id: str, session_id: str, timer: TimerState) -> SyncResult | ActionFailure:
        def run() -> SyncResult:
            room = self._room(room_id)
            with room.lock:
                event = room.record_timer_update(session_id, timer)
                self._publish(room, event)
                return SyncResult(participant_count=self._live_count(room))

        return self._guarded("sync_timer", run, room_id=room_id, session_id=session_id)

    def sync_players(
        self,
        room_id: str,
        session_id: str,
        players: Sequence[Mapping[str, Any]],
    ) -> SyncPlayersResult | ActionFailure:
        def run() -> SyncPlayersResult:
            room = self._room(room_id)
            with room.lock:
                event = room.update_players(session_id, players)
                self._publish(room, event)
                return SyncPlayersResult(
                    participant_count=self._live_count(room),
                    active_player_count=room.active_player_count,
                    players=room.roster(),
                )

        return self._guarded("sync_players", run, room_id=room_id, session_id=session_id)

    def room_info(self, room_id: str) -> RoomInfoResult | ActionFailure:
        """Read-only view of a room. Never counts as room activity."""

        def run() -> RoomInfoResult:
            room = self._room(room_id)
            with room.lock:
                self.refresh_presence(room)
                snapshot = room.snapshot()
            return RoomInfoResult(
                id=snapshot.room_id,
                participant_count=snapshot.participant_count,
                active_player_count=snapshot.active_player_count,
                timer_state=snapshot.timer_state,
                dice_state=snapshot.dice_state,
                players=snapshot.players,
                created_at=snapshot.created_at,
                last_activity=snapshot.last_activity,
            )

        return self._guarded("room_info", run, room_id=room_id)

    # --- Hooks ---

    def _on_request(self) -> None:
        """Housekeeping run before every action."""

    def refresh_presence(self, room: Room) -> None:
        """Mark sessions the transport knows to be alive before the room counts them."""

    def _publish(self, room: Room, event: Event) -> None:
        """Deliver a freshly recorded event to the room's other participants."""

    # --- Internal helpers ---

    def _room(self, room_id: str) -> Room:
        room = self.registry.get_room(room_id)
        if room is None:
            raise RoomNotFound(room_id)
        return room

    def _live_count(self, room: Room) -> int:
        with room.lock:
            self.refresh_presence(room)
            return room.live_participant_count()

    def _guarded(self, action: str, run: Callable[[], ActionResult], **context: str) -> ActionResult:
        """Run an action, converting every exception into an ActionFailure for this caller."""
        try:
            self._on_request()
            return run()
        except _EXPECTED_ERRORS as exc:
            logger.info("action rejected", action=action, code=exc.code, reason=str(exc), **context)
            return ActionFailure(error=exc.public_message, code=exc.code)
        except Exception:
            logger.exception("action failed", action=action, **context)
            return ActionFailure(error=SyncError.public_message, code=ErrorCode.INTERNAL_ERROR)
