"""Abstract connection protocol for the push channel."""

from abc import ABC, abstractmethod
from typing import Any

from sync.rooms.models import ParticipantInfo


class ConnectionProtocol(ABC):
    """
    Abstract interface for a live client channel.

    This abstraction allows message handling logic to be tested
    without real WebSocket connections. Implementations own the frame
    format; callers only exchange dicts.
    """

    @property
    @abstractmethod
    def connection_id(self) -> str:
        """Unique identifier for this connection."""
        ...

    @property
    @abstractmethod
    def participant_info(self) -> ParticipantInfo:
        """Metadata recorded on the participant when this connection joins a room."""
        ...

    @abstractmethod
    async def send_message(self, data: dict[str, Any]) -> None:
        """
        Send a message to the client.
        """
        ...

    @abstractmethod
    async def receive_message(self) -> dict[str, Any]:
        """
        Receive the next message from the client.

        Raises DecodeError for an undecodable frame and ConnectionError once
        the peer is gone.
        """
        ...

    @abstractmethod
    async def close(self, code: int = 1000, reason: str = "") -> None:
        """
        Close the connection.
        """
        ...
