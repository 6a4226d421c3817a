"""Delivery errors for outbound messages.

Transports should raise these so the retry engine can decide whether to retry
without guessing from the error text.
"""


class OutboundDeliveryError(RuntimeError):
    """Base class for outbound delivery errors.

    ``status_code`` carries the transport's HTTP-like status when one is known.
    ``retry_after`` is the server backoff hint in seconds.
    """

    def __init__(
        self,
        message: str = "",
        *,
        status_code: int | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class TemporaryDeliveryError(OutboundDeliveryError):
    """A transient failure (network, reconnect, rate limit). Safe to retry."""


class PermanentDeliveryError(OutboundDeliveryError):
    """A permanent failure (bad address, logged out session). Do not retry."""
