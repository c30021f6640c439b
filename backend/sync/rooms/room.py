"""Room aggregate: the authoritative state of one dice session."""

from __future__ import annotations

import itertools
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog

from sync.errors import SessionNotFound
from sync.rooms.models import (
    Event,
    EventType,
    JoinResult,
    LeaveResult,
    ParticipantInfo,
    ParticipantRecord,
    PlayerRecord,
    RoomLimits,
    RoomSnapshot,
    TimerState,
    utcnow,
)

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping, Sequence

logger = structlog.get_logger()

_TICK = timedelta(microseconds=1)


def new_session_id() -> str:
    return f"session_{uuid.uuid4().hex[:16]}"


@dataclass
class Room:
    """State machine for one session: participants, roster, dice, timer, event log.

    Every public method runs under ``lock`` so that read-then-write sequences
    (notably the active-player cap in ``update_players``) are atomic even when
    called from several threads. Methods never perform I/O, so the lock is
    never held across a network wait.

    Mutations compute their new values first and commit them last; an
    exception before the commit leaves the room unchanged.
    """

    room_id: str
    limits: RoomLimits = field(default_factory=RoomLimits)
    created_at: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)
    dice_state: list[Any] | None = None
    timer_state: TimerState = field(default_factory=TimerState)
    participants: dict[str, ParticipantRecord] = field(default_factory=dict)
    players: dict[str, list[PlayerRecord]] = field(default_factory=dict)  # session_id -> roster
    event_log: deque[Event] = field(init=False)
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)
    _event_ids: Iterator[int] = field(default_factory=lambda: itertools.count(1), repr=False, compare=False)
    _last_stamp: datetime | None = field(default=None, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.event_log = deque(maxlen=self.limits.event_log_capacity)

    # --- Membership ---

    def join(self, info: ParticipantInfo | None = None) -> JoinResult:
        """Admit a new participant and hand back its session id plus current state."""
        with self.lock:
            now = utcnow()
            session_id = new_session_id()
            while session_id in self.participants:  # pragma: no cover
                session_id = new_session_id()
            self.participants[session_id] = ParticipantRecord(
                session_id=session_id,
                joined_at=now,
                last_seen=now,
                info=info or ParticipantInfo(),
            )
            self.last_activity = now
            return JoinResult(session_id=session_id, snapshot=self.snapshot())

    def leave(self, session_id: str) -> LeaveResult:
        """Remove a participant and its players.

        Unknown sessions are ignored; ``room_empty`` still reports whether
        anyone is left so the registry can reclaim the room.
        """
        with self.lock:
            if session_id not in self.participants:
                return LeaveResult(removed=False, room_empty=not self.participants)

            del self.participants[session_id]
            self.players.pop(session_id, None)
            self.last_activity = utcnow()
            event = self._append(EventType.PLAYERS_UPDATE, self._roster_payload(), session_id)
            return LeaveResult(removed=True, room_empty=self.live_participant_count() == 0, event=event)

    def live_participant_count(self) -> int:
        """Purge stale participants (and their players), then count the rest.

        The only place staleness is enforced. A purge that drops players
        records a players-update on the room's own behalf but does not count
        as room activity.
        """
        with self.lock:
            cutoff = utcnow() - timedelta(seconds=self.limits.participant_timeout_seconds)
            stale = [sid for sid, p in self.participants.items() if p.last_seen < cutoff]
            dropped_players = False
            for sid in stale:
                del self.participants[sid]
                if self.players.pop(sid, None):
                    dropped_players = True
            if stale:
                logger.info("stale participants purged", room_id=self.room_id, count=len(stale))
            if dropped_players:
                self._append(EventType.PLAYERS_UPDATE, self._roster_payload(), None, touch=False)
            return len(self.participants)

    def has_participant(self, session_id: str) -> bool:
        return session_id in self.participants

    def touch(self, session_id: str, *, activity: bool = True) -> None:
        """Refresh a participant's last_seen. Silent for unknown sessions."""
        with self.lock:
            participant = self.participants.get(session_id)
            if participant is None:
                return
            now = utcnow()
            participant.last_seen = now
            if activity:
                self.last_activity = now

    # --- Mutations ---

    def record_dice_roll(self, session_id: str, values: Sequence[Any]) -> Event:
        with self.lock:
            self._require(session_id)
            dice = list(values)
            self.dice_state = dice
            return self._append(EventType.DICE_ROLL, {"values": dice}, session_id)

    def record_timer_update(self, session_id: str, timer: TimerState) -> Event:
        """Replace the timer state wholesale, stamping who wrote it and when."""
        with self.lock:
            self._require(session_id)
            state = timer.model_copy(update={"last_updated_by": session_id, "last_updated_at": utcnow()})
            self.timer_state = state
            return self._append(EventType.TIMER_SYNC, {"timerState": state.to_wire()}, session_id)

    def update_players(self, session_id: str, submitted: Sequence[Mapping[str, Any]]) -> Event:
        """Replace the session's roster, throttling new activations at the room cap.

        A record that was already active for this session stays active. Those
        records are reserved first; every other requested activation is granted
        only while the room is below ``max_active_players``.
        """
        with self.lock:
            self._require(session_id)
            now = utcnow()
            cap = self.limits.max_active_players
            previous = self.players.get(session_id, [])
            active_elsewhere = sum(
                1 for owner, records in self.players.items() if owner != session_id for r in records if r.is_active
            )

            entries = [dict(p) for p in submitted]
            wants = [bool(p.get("isActive", False)) for p in entries]
            claimed: set[int] = set()
            keeps = [
                want and _claim_active(previous, i, p, claimed)
                for i, (p, want) in enumerate(zip(entries, wants, strict=True))
            ]
            granted = sum(keeps)

            records: list[PlayerRecord] = []
            for entry, want, keep in zip(entries, wants, keeps, strict=True):
                active = keep
                if want and not keep and active_elsewhere + granted < cap:
                    active = True
                    granted += 1
                records.append(PlayerRecord.from_submission(session_id, entry, is_active=active, now=now))

            if records:
                self.players[session_id] = records
            else:
                self.players.pop(session_id, None)
            return self._append(EventType.PLAYERS_UPDATE, self._roster_payload(), session_id)

    # --- Queries ---

    def recent_events(self, since: datetime | None = None) -> list[Event]:
        """Events newer than ``since`` in append order, or the latest few without a watermark."""
        with self.lock:
            if since is None:
                return list(self.event_log)[-self.limits.recent_events_limit :]
            return [e for e in self.event_log if e.timestamp > since]

    def watermark(self) -> datetime:
        """Issue a "since" value covering every event recorded so far.

        Later events are stamped strictly after any issued watermark.
        """
        with self.lock:
            stamp = utcnow()
            if self._last_stamp is not None and stamp < self._last_stamp:
                stamp = self._last_stamp
            self._last_stamp = stamp
            return stamp

    def roster(self) -> list[dict[str, Any]]:
        with self.lock:
            return [record.to_wire() for records in self.players.values() for record in records]

    @property
    def active_player_count(self) -> int:
        with self.lock:
            return sum(1 for records in self.players.values() for r in records if r.is_active)

    def is_expired(self) -> bool:
        return utcnow() - self.last_activity > timedelta(seconds=self.limits.room_ttl_seconds)

    def snapshot(self) -> RoomSnapshot:
        with self.lock:
            participant_count = self.live_participant_count()
            return RoomSnapshot(
                room_id=self.room_id,
                participant_count=participant_count,
                active_player_count=self.active_player_count,
                dice_state=list(self.dice_state) if self.dice_state is not None else None,
                timer_state=self.timer_state,
                players=self.roster(),
                created_at=self.created_at,
                last_activity=self.last_activity,
            )

    # --- Internal helpers ---

    def _require(self, session_id: str) -> None:
        participant = self.participants.get(session_id)
        if participant is None:
            raise SessionNotFound(session_id)
        now = utcnow()
        participant.last_seen = now
        self.last_activity = now

    def _roster_payload(self) -> dict[str, Any]:
        return {"players": self.roster(), "activePlayerCount": self.active_player_count}

    def _append(
        self,
        event_type: EventType,
        payload: dict[str, Any],
        from_session: str | None,
        *,
        touch: bool = True,
    ) -> Event:
        stamp = utcnow()
        if self._last_stamp is not None and stamp <= self._last_stamp:
            stamp = self._last_stamp + _TICK
        event = Event(
            id=next(self._event_ids),
            type=event_type,
            payload=payload,
            from_session=from_session,
            timestamp=stamp,
        )
        self._last_stamp = stamp
        self.event_log.append(event)
        if touch:
            self.last_activity = stamp
        return event


def _claim_active(previous: list[PlayerRecord], index: int, entry: Mapping[str, Any], claimed: set[int]) -> bool:
    """Claim an unclaimed player this session already had active for the submitted entry.

    Entries carrying an ``id`` match by id; the rest match by list position.
    Each previous record can be claimed once, so duplicates count as new activations.
    """
    player_id = entry.get("id")
    if player_id is not None:
        for i, record in enumerate(previous):
            if i not in claimed and record.player_id == player_id and record.is_active:
                claimed.add(i)
                return True
        return False
    if index < len(previous) and index not in claimed:
        candidate = previous[index]
        if candidate.player_id is None and candidate.is_active:
            claimed.add(index)
            return True
    return False
