"""Pull strategy: clients fetch everything newer than their watermark."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sync.errors import SessionNotFound
from sync.messaging.types import PollResult
from sync.strategies.base import ReconciliationStrategy

if TYPE_CHECKING:
    from sync.messaging.types import ActionFailure


class PullStrategy(ReconciliationStrategy):
    """Stateless per request. Events wait in the room's log until polled.

    Every request doubles as housekeeping: with a small probability it
    sweeps expired rooms from the registry.
    """

    name = "pull"

    def poll(self, room_id: str, session_id: str, since: datetime | None = None) -> PollResult | ActionFailure:
        """Return peers' events after ``since`` plus the current room state.

        An unknown session is rejected so the client can rejoin; a poll
        from a purged session must not silently resurrect it.
        """

        def run() -> PollResult:
            room = self._room(room_id)
            watermark = _as_utc(since)
            with room.lock:
                if not room.has_participant(session_id):
                    raise SessionNotFound(session_id)
                room.touch(session_id)
                participant_count = room.live_participant_count()
                events = [e for e in room.recent_events(watermark) if e.from_session != session_id]
                return PollResult(
                    messages=[e.to_wire() for e in events],
                    participant_count=participant_count,
                    active_player_count=room.active_player_count,
                    current_dice_values=list(room.dice_state) if room.dice_state is not None else None,
                    timer_state=room.timer_state,
                    players=room.roster(),
                    timestamp=room.watermark(),
                )

        return self._guarded("poll", run, room_id=room_id, session_id=session_id)

    def _on_request(self) -> None:
        self.registry.maybe_sweep()


def _as_utc(since: datetime | None) -> datetime | None:
    if since is None or since.tzinfo is not None:
        return since
    return since.replace(tzinfo=UTC)
