"""Delivery layer: retries, streaming, reactions and the conversation bridge."""

from courier.channels.base import BaseTransport
from courier.channels.bridge import ConversationBridge
from courier.channels.errors import (
    OutboundDeliveryError,
    PermanentDeliveryError,
    TemporaryDeliveryError,
)
from courier.channels.reactions import ReactionState, ReactionStateMachine
from courier.channels.retry import ErrorClass, RetryEngine, classify_error, with_retry
from courier.channels.streaming import MessageStream, StreamManager, find_split_point

__all__ = [
    "BaseTransport",
    "ConversationBridge",
    "OutboundDeliveryError",
    "PermanentDeliveryError",
    "TemporaryDeliveryError",
    "ReactionState",
    "ReactionStateMachine",
    "ErrorClass",
    "RetryEngine",
    "classify_error",
    "with_retry",
    "MessageStream",
    "StreamManager",
    "find_split_point",
]
