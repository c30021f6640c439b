"""Process-wide room registry: creation, lookup, deletion and expiry sweep."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import secrets
import string
import threading
from typing import TYPE_CHECKING, Any

from sync.errors import InternalError, ServerAtCapacity
from sync.rooms.models import JoinResult, ParticipantInfo, RoomLimits
from sync.rooms.room import Room

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine

logger = logging.getLogger(__name__)

_CODE_ALPHABET = string.ascii_uppercase + string.digits
_MAX_CODE_ATTEMPTS = 100


class RoomRegistry:
    """Own every live Room of the process.

    Purely state management, no network I/O. One instance is created by the
    application and shared by the active strategy. Rooms are removed either
    explicitly (``delete_room``, when a leave empties them) or by ``sweep``,
    which runs periodically from the reaper task and, for the pull transport,
    probabilistically on incoming requests. When set, ``refresh_presence``
    marks sessions the transport knows to be alive before a room is counted.
    """

    def __init__(
        self,
        limits: RoomLimits | None = None,
        *,
        max_rooms: int | None = None,
        code_length: int = 6,
        sweep_interval_seconds: float = 3600,
        sweep_probability: float = 0.1,
        on_rooms_removed: Callable[[list[str]], Coroutine[Any, Any, None]] | None = None,
        refresh_presence: Callable[[Room], None] | None = None,
    ) -> None:
        self.limits = limits or RoomLimits()
        self._max_rooms = max_rooms
        self._code_length = code_length
        self._sweep_interval_seconds = sweep_interval_seconds
        self._sweep_probability = sweep_probability
        self.on_rooms_removed = on_rooms_removed
        self.refresh_presence = refresh_presence
        self._rooms: dict[str, Room] = {}
        self._lock = threading.Lock()
        self._reaper_task: asyncio.Task[None] | None = None

    # --- Public API ---

    def create_room(self, participant_info: ParticipantInfo | None = None) -> tuple[Room, JoinResult]:
        """Create a room under a fresh code and admit its creator."""
        with self._lock:
            if self._max_rooms is not None and len(self._rooms) >= self._max_rooms:
                raise ServerAtCapacity(f"room limit {self._max_rooms} reached")
            room_id = self._unused_code()
            room = Room(room_id=room_id, limits=self.limits)
            self._rooms[room_id] = room
        joined = room.join(participant_info)
        logger.info("room %s created by %s", room_id, joined.session_id)
        return room, joined

    def get_room(self, room_id: str) -> Room | None:
        return self._rooms.get(room_id.strip().upper())

    def delete_room(self, room_id: str) -> bool:
        with self._lock:
            removed = self._rooms.pop(room_id.strip().upper(), None)
        if removed is not None:
            logger.info("room %s deleted", removed.room_id)
        return removed is not None

    @property
    def room_count(self) -> int:
        return len(self._rooms)

    def room_ids(self) -> list[str]:
        return list(self._rooms)

    def sweep(self) -> list[str]:
        """Delete every room that has no live participants or has been idle past its TTL."""
        removed: list[str] = []
        for room in list(self._rooms.values()):
            with room.lock:
                if self.refresh_presence is not None:
                    self.refresh_presence(room)
                empty = room.live_participant_count() == 0
                expired = room.is_expired()
            if not (empty or expired):
                continue
            with self._lock:
                if self._rooms.get(room.room_id) is room:
                    del self._rooms[room.room_id]
                    removed.append(room.room_id)
            logger.info("room %s swept (empty=%s, expired=%s)", room.room_id, empty, expired)
        if removed:
            logger.info("sweep removed %d room(s), %d remaining", len(removed), self.room_count)
        return removed

    def maybe_sweep(self) -> list[str]:
        """Run ``sweep`` with the configured probability."""
        if random.random() < self._sweep_probability:  # noqa: S311
            return self.sweep()
        return []

    # --- Reaper ---

    def start_reaper(self) -> None:
        """Start the periodic sweep task. Idempotent."""
        if self._reaper_task is not None and not self._reaper_task.done():
            return
        self._reaper_task = asyncio.create_task(self._reaper_loop())

    async def stop_reaper(self) -> None:
        if self._reaper_task is not None:
            self._reaper_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reaper_task
            self._reaper_task = None

    async def _reaper_loop(self) -> None:  # pragma: no cover - long-running background loop
        while True:
            await asyncio.sleep(self._sweep_interval_seconds)
            try:
                await self.reap()
            except Exception:
                logger.exception("room reaper encountered an error")

    async def reap(self) -> list[str]:
        """Sweep once and notify ``on_rooms_removed`` of the deleted codes."""
        removed = self.sweep()
        if removed and self.on_rooms_removed is not None:
            try:
                await self.on_rooms_removed(removed)
            except Exception:
                logger.exception("error in on_rooms_removed callback")
        return removed

    # --- Internal helpers ---

    def _unused_code(self) -> str:
        for _ in range(_MAX_CODE_ATTEMPTS):
            code = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(self._code_length))
            if code not in self._rooms:
                return code
        raise InternalError("could not allocate an unused room code")
