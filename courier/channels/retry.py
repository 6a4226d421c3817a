"""
Retry wrapper with exponential backoff for one-shot transport sends.

Separates retryable failures (network drops, rate limits, reconnects) from
permanent ones (bad address, logged out session, auth) so that futile sends
fail fast instead of burning the whole backoff schedule.
"""

import asyncio
import random
import re
from collections.abc import Mapping
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from courier.channels.errors import PermanentDeliveryError, TemporaryDeliveryError
from courier.config.schema import RetryConfig

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


class ErrorClass(str, Enum):
    """Whether a failed send is worth another attempt."""
    RETRYABLE = "retryable"
    PERMANENT = "permanent"


# HTTP-like status codes that will never succeed on retry.
PERMANENT_STATUS_CODES = frozenset({400, 401, 403, 404, 410})

# Rate limiting / overload.
RATE_LIMIT_STATUS_CODES = frozenset({429, 503})

PERMANENT_ERROR_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"invalid jid",
        r"invalid (?:address|recipient)",
        r"not a valid",
        r"not registered",
        r"logged out",
        r"authentication",
        r"unauthorized",
        r"forbidden",
        r"not found",
        r"bad request",
    )
]

TRANSIENT_ERROR_PATTERN = re.compile(
    r"ECONNRESET|ETIMEDOUT|ENOTFOUND|ENETUNREACH|EPIPE|ECONNREFUSED"
    r"|socket hang up|socket closed|connection closed|connection reset"
    r"|timed out|broken pipe|network",
    re.IGNORECASE,
)

# (field name, multiplier to milliseconds)
_RETRY_AFTER_FIELDS = (
    ("retryAfter", 1000),
    ("retry_after", 1000),
    ("retryAfterMs", 1),
    ("retry_after_ms", 1),
)


def _field(obj: Any, name: str) -> Any:
    """Read ``name`` from a mapping key or an attribute, whichever exists."""
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        return obj.get(name)
    return getattr(obj, name, None)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def get_status_code(err: Any) -> int | None:
    """Extract a numeric status code from a transport error, if present."""
    output = _field(err, "output")
    for candidate in (
        _field(output, "status_code"),
        _field(output, "statusCode"),
        _field(err, "status"),
        _field(err, "status_code"),
        _field(err, "statusCode"),
        _field(_field(err, "response"), "status_code"),
    ):
        if _is_number(candidate):
            return int(candidate)
    return None


def extract_retry_after(err: Any) -> int | None:
    """Return the server backoff hint in milliseconds, or None.

    Second-based fields are normalized to milliseconds. Only positive numbers
    count as a hint.
    """
    if err is None or isinstance(err, (str, int, float, bool)):
        return None

    for name, factor in _RETRY_AFTER_FIELDS:
        value = _field(err, name)
        if _is_number(value) and value > 0:
            return int(round(value * factor))

    data_hint = _field(_field(err, "data"), "retry_after")
    if _is_number(data_hint) and data_hint > 0:
        return int(round(data_hint * 1000))

    return None


def _error_message(err: Any) -> str:
    message = _field(err, "message") if not isinstance(err, str) else None
    if isinstance(message, str) and message:
        return message
    return str(err)


def classify_error(err: Any) -> ErrorClass:
    """Classify a raised value as retryable or permanent.

    Unknown shapes default to retryable: an extra attempt is cheaper than
    silently dropping a response.
    """
    if isinstance(err, PermanentDeliveryError):
        return ErrorClass.PERMANENT
    if isinstance(err, TemporaryDeliveryError):
        return ErrorClass.RETRYABLE

    status = get_status_code(err)
    if status in PERMANENT_STATUS_CODES:
        return ErrorClass.PERMANENT
    if status in RATE_LIMIT_STATUS_CODES:
        return ErrorClass.RETRYABLE

    message = _error_message(err)
    for pattern in PERMANENT_ERROR_PATTERNS:
        if pattern.search(message):
            return ErrorClass.PERMANENT

    if TRANSIENT_ERROR_PATTERN.search(message):
        return ErrorClass.RETRYABLE

    return ErrorClass.RETRYABLE


def calculate_delay(
    attempt: int,
    config: RetryConfig,
    retry_after_ms: int | None,
    rng: Callable[[], float] = random.random,
) -> int:
    """Delay in ms before retry number ``attempt`` (0-indexed).

    A positive server hint wins over exponential backoff and is not jittered.
    """
    if retry_after_ms is not None and retry_after_ms > 0:
        return min(retry_after_ms, config.max_delay)

    capped = min(config.base_delay * 2 ** attempt, config.max_delay)
    jitter_range = capped * config.jitter
    offset = (rng() * 2 - 1) * jitter_range
    return max(0, round(capped + offset))


def resolve_config(
    base: RetryConfig | None = None,
    overrides: RetryConfig | Mapping[str, Any] | None = None,
) -> RetryConfig:
    """Merge per-call overrides onto a default config (validated)."""
    base = base or RetryConfig()
    if overrides is None:
        return base
    if isinstance(overrides, RetryConfig):
        return overrides
    return RetryConfig.model_validate({**base.model_dump(), **dict(overrides)})


async def _asyncio_sleep(delay_ms: float) -> None:
    await asyncio.sleep(delay_ms / 1000)


class RetryEngine:
    """
    Runs async operations with bounded retries.

    Owns the default ``RetryConfig`` for a host application and the sleep
    primitive used between attempts (tests pass a recording no-op).
    """

    def __init__(
        self,
        defaults: RetryConfig | None = None,
        *,
        sleep: SleepFn | None = None,
        log: Any = None,
        rng: Callable[[], float] = random.random,
    ):
        self.defaults = defaults or RetryConfig()
        self._sleep = sleep or _asyncio_sleep
        self._log = log or logger.bind(component="retry")
        self._rng = rng

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        label: str,
        config: RetryConfig | Mapping[str, Any] | None = None,
        log: Any = None,
    ) -> T:
        """Invoke ``operation`` until it succeeds, fails permanently, or runs out of attempts.

        ``operation`` may be invoked several times and must be safe to repeat.
        """
        cfg = resolve_config(self.defaults, config)
        log = log or self._log

        for attempt in range(cfg.max_retries + 1):
            try:
                return await operation()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if classify_error(e) is ErrorClass.PERMANENT:
                    log.error(f"[retry] {label}: permanent error, not retrying: {e}")
                    raise

                if attempt >= cfg.max_retries:
                    log.error(f"[retry] {label}: all {cfg.max_retries} retries exhausted: {e}")
                    raise

                retry_after = extract_retry_after(e)
                delay = calculate_delay(attempt, cfg, retry_after, self._rng)
                hint = " (using server hint)" if retry_after else ""
                log.warning(
                    f"[retry] {label}: attempt {attempt + 1}/{cfg.max_retries + 1} failed ({e}), "
                    f"retrying in {delay}ms{hint}"
                )
                await self._sleep(delay)

        raise RuntimeError(f"[retry] {label}: retry loop exited without a result")


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    label: str,
    log: Any = None,
    config: RetryConfig | Mapping[str, Any] | None = None,
    *,
    sleep: SleepFn | None = None,
) -> T:
    """One-off retry run with the default config plus ``config`` overrides."""
    engine = RetryEngine(sleep=sleep, log=log)
    return await engine.run(operation, label, config)
