"""Error taxonomy shared by the room engine, the strategies and the client.

Nothing here is allowed to escape a single request or channel event: the
strategies convert every SyncError (and any unexpected exception) into an
ActionFailure for the one caller involved.
"""

from enum import StrEnum


class ErrorCode(StrEnum):
    ROOM_NOT_FOUND = "room_not_found"
    SESSION_NOT_FOUND = "session_not_found"
    SERVER_AT_CAPACITY = "server_at_capacity"
    INVALID_REQUEST = "invalid_request"
    INTERNAL_ERROR = "internal_error"


class SyncError(Exception):
    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    public_message: str = "Internal server error"


class RoomNotFound(SyncError):
    code = ErrorCode.ROOM_NOT_FOUND
    public_message = "Room not found"

    def __init__(self, room_id: str) -> None:
        super().__init__(f"room {room_id!r} not found")
        self.room_id = room_id


class SessionNotFound(SyncError):
    code = ErrorCode.SESSION_NOT_FOUND
    public_message = "Session not found"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"session {session_id!r} is not a participant")
        self.session_id = session_id


class ServerAtCapacity(SyncError):
    code = ErrorCode.SERVER_AT_CAPACITY
    public_message = "Server at capacity"


class InternalError(SyncError):
    """Unexpected fault while mutating a room."""


class TransportFailure(SyncError):
    """Client-side network or channel error. Triggers backoff or reconnect."""


class RequestRejected(SyncError):
    """The server answered with ``success: false``."""

    def __init__(self, error: str, code: str | None = None) -> None:
        super().__init__(error)
        self.error = error
        try:
            self.code = ErrorCode(code)
        except ValueError:
            self.code = ErrorCode.INTERNAL_ERROR
