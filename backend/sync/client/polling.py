"""Session client for the pull transport (HTTP JSON polling)."""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING, Any, Self

import httpx
import structlog

from sync.client.session import ConnectionStatus, SessionAction, SessionClient, is_terminal
from sync.errors import ErrorCode, RequestRejected, TransportFailure

if TYPE_CHECKING:
    from types import TracebackType

    from sync.client.session import SessionCallbacks

logger = structlog.get_logger()

POLL_DELAY_SECONDS = 2.0
MAX_POLL_DELAY_SECONDS = 10.0
POLL_BACKOFF_FACTOR = 1.5
HEALTH_RETRY_SECONDS = 5.0


class PollingSessionClient(SessionClient):
    """Fetch peers' changes every ``poll_delay`` seconds.

    Failed polls stretch the delay by ``POLL_BACKOFF_FACTOR`` up to
    ``max_poll_delay``; the next successful poll restores the base delay.
    A poll rejected because the server forgot this session rejoins the
    room under a new session; a vanished room ends polling.
    """

    def __init__(
        self,
        base_url: str,
        *,
        callbacks: SessionCallbacks | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 5.0,
        poll_delay: float = POLL_DELAY_SECONDS,
        max_poll_delay: float = MAX_POLL_DELAY_SECONDS,
        health_retry_delay: float = HEALTH_RETRY_SECONDS,
    ) -> None:
        super().__init__(callbacks)
        self.base_url = base_url
        self._http = httpx.AsyncClient(base_url=base_url, transport=transport, timeout=timeout)
        self._base_poll_delay = poll_delay
        self._max_poll_delay = max_poll_delay
        self._health_retry_delay = health_retry_delay
        self.poll_delay = poll_delay
        self.last_poll_timestamp: str | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._health_task: asyncio.Task[None] | None = None

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.disconnect()
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    # --- Transport ---

    async def connect(self) -> bool:
        """Check server health. On failure go offline and retry in the background."""
        self._set_status(ConnectionStatus.CONNECTING, "Testing server connection")
        try:
            response = await self._http.get("/health")
            response.raise_for_status()
        except httpx.HTTPError as e:
            self._set_status(ConnectionStatus.OFFLINE, "Server unreachable")
            self._report_error(f"Server unavailable: {e}")
            self._schedule_health_retry()
            return False
        self._set_status(ConnectionStatus.ONLINE, "Ready")
        return True

    async def disconnect(self) -> None:
        await self._stop_updates()
        await _cancel(self._health_task)
        self._health_task = None
        self._reset_room()
        self._set_status(ConnectionStatus.OFFLINE, "Disconnected")

    async def _request(self, action: SessionAction, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._post(f"/{action.value}", payload)

    def _start_updates(self) -> None:
        if self.is_polling:
            return
        self.poll_delay = self._base_poll_delay
        self.last_poll_timestamp = None
        self._poll_task = asyncio.create_task(self._poll_loop())

    async def _stop_updates(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is not asyncio.current_task():
            await _cancel(task)
        self.last_poll_timestamp = None

    # --- Polling ---

    async def poll_once(self) -> dict[str, Any]:
        """Fetch and dispatch everything newer than the last watermark."""
        data = await self._post("/poll", {**self._session_fields(), "since": self.last_poll_timestamp})
        self._update_counts(
            participant_count=data.get("participantCount"),
            active_player_count=data.get("activePlayerCount"),
        )
        for message in data.get("messages", []):
            self.handle_event(message)
        self.last_poll_timestamp = data.get("timestamp")
        return data

    async def poll_tick(self) -> bool:
        """Run one poll and adjust the delay. Returns False when polling should stop."""
        if not self.in_room:
            return False
        try:
            await self.poll_once()
        except TransportFailure as e:
            self._back_off(str(e))
            return True
        except RequestRejected as e:
            if is_terminal(e):
                self._report_error("Room no longer exists")
                self._reset_room()
                return False
            if e.code is ErrorCode.SESSION_NOT_FOUND:
                return await self._rejoin()
            self._back_off(e.error)
            return True
        self.poll_delay = self._base_poll_delay
        return True

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_delay)
            if not await self.poll_tick():
                return

    async def _rejoin(self) -> bool:
        room_id = self.room_id
        logger.info("session expired, rejoining", room_id=room_id)
        try:
            await self._join(room_id or "")
        except TransportFailure as e:
            self._back_off(str(e))
            return True
        except RequestRejected as e:
            self._report_error(f"Rejoin failed: {e.error}")
            self._reset_room()
            return False
        self.last_poll_timestamp = None
        self.poll_delay = self._base_poll_delay
        return True

    def _back_off(self, reason: str) -> None:
        self.poll_delay = min(self.poll_delay * POLL_BACKOFF_FACTOR, self._max_poll_delay)
        logger.warning("poll failed", reason=reason, next_delay=self.poll_delay)

    # --- Internal helpers ---

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._http.post(path, json=payload)
        except httpx.HTTPError as e:
            raise TransportFailure(f"request to {path} failed: {e}") from e
        try:
            data = response.json()
        except ValueError as e:
            raise TransportFailure(f"HTTP {response.status_code} from {path}: not JSON") from e
        if not isinstance(data, dict) or not data.get("success", False):
            error = data.get("error") if isinstance(data, dict) else None
            code = data.get("code") if isinstance(data, dict) else None
            raise RequestRejected(error or f"HTTP {response.status_code}", code)
        return data

    def _schedule_health_retry(self) -> None:
        if self._health_task is not None and not self._health_task.done():
            return
        self._health_task = asyncio.create_task(self._retry_health())

    async def _retry_health(self) -> None:
        await asyncio.sleep(self._health_retry_delay)
        self._health_task = None
        await self.connect()

    def debug_info(self) -> dict[str, Any]:
        return {
            **super().debug_info(),
            "serverUrl": self.base_url,
            "pollDelay": self.poll_delay,
            "isPolling": self.is_polling,
        }


async def _cancel(task: asyncio.Task[None] | None) -> None:
    if task is None:
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
