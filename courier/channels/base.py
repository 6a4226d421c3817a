"""Transport interface consumed by the delivery layer."""

from abc import ABC, abstractmethod
from typing import Any


class BaseTransport(ABC):
    """
    Narrow view of a messaging network client.

    Implementations wrap the real client (socket, bot API, bridge) and should
    raise ``TemporaryDeliveryError`` / ``PermanentDeliveryError`` where they
    can tell the difference; anything else is classified from its shape.
    """

    name: str = "base"

    @abstractmethod
    async def send(self, target: str, content: dict[str, Any]) -> Any:
        """
        Send or edit a text message.

        Args:
            target: Conversation address.
            content: ``{"text": ...}`` for a new message, plus ``"edit": handle``
                to replace the text of a previously sent message, or
                ``"quoted": ...`` to reply to an inbound message.

        Returns:
            An opaque handle for the sent message, or None if the transport
            did not return one.
        """
        pass

    @abstractmethod
    async def send_reaction(self, target: str, message_id: str, emoji: str) -> None:
        """Set the bot's reaction on a message. An empty emoji removes it."""
        pass

    async def send_presence(self, target: str, state: str) -> None:
        """Update presence ("composing" / "paused"). Optional."""
        return None
