"""Event types exchanged between the transport and the bridge."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class InboundMessage:
    """Message received from the messaging network."""

    id: str  # Transport message id, used as the reaction key
    conversation_id: str  # Chat address replies go to
    text: str = ""
    sender: str = ""  # Display name or address of the author
    from_me: bool = False
    is_group: bool = False
    timestamp: datetime = field(default_factory=datetime.now)
    raw: Any = None  # Transport-native message, used for quoting replies
    metadata: dict[str, Any] = field(default_factory=dict)
