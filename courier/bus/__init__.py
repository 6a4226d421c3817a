"""Message events shared by transports and the bridge."""

from courier.bus.events import InboundMessage

__all__ = ["InboundMessage"]
