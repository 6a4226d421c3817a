"""One-shot sends: chunked text messages and reactions, retry-wrapped."""

import re
from typing import Any

from loguru import logger

from courier.channels.base import BaseTransport
from courier.channels.retry import RetryEngine
from courier.config.schema import RetryConfig

_SENTENCE_BREAK = re.compile(r"(?<=[.!?])\s+")


def normalize_target(value: str) -> str:
    """Turn a phone number into a user address; full addresses pass through."""
    if "@" in value:
        return value
    digits = re.sub(r"[^0-9]", "", value)
    return f"{digits}@s.whatsapp.net"


def chunk_message(text: str, max_length: int) -> list[str]:
    """
    Split text into chunks of at most ``max_length`` characters.

    Sentences are packed greedily and re-joined with a single space. A sentence
    longer than ``max_length`` is hard-split.
    """
    if len(text) <= max_length:
        return [text]

    chunks: list[str] = []
    current = ""
    for sentence in _SENTENCE_BREAK.split(text):
        while len(sentence) > max_length:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(sentence[:max_length])
            sentence = sentence[max_length:]
        if not sentence:
            continue

        if not current:
            current = sentence
        elif len(current) + len(sentence) + 1 <= max_length:
            current = f"{current} {sentence}"
        else:
            chunks.append(current)
            current = sentence

    if current:
        chunks.append(current)
    return chunks


async def send_message(
    transport: BaseTransport,
    target: str,
    text: str,
    *,
    retry: RetryEngine,
    quoted: Any = None,
    chunk_size: int = 4000,
    retry_config: RetryConfig | dict[str, Any] | None = None,
    log: Any = None,
) -> list[Any]:
    """
    Send ``text`` as one or more messages, each through the retry engine.

    Only the first chunk quotes ``quoted``. If a quoted send fails (the quoted
    message may be gone), the chunk is re-sent once without the quote before
    the failure counts as an attempt.

    Returns:
        The handles returned by the transport, one per chunk.
    """
    log = log or logger.bind(component="messaging")
    address = normalize_target(target)
    chunks = [c for c in chunk_message(text, chunk_size) if c.strip()]
    handles: list[Any] = []

    for i, chunk in enumerate(chunks):
        quote = quoted if i == 0 else None

        async def _send(chunk: str = chunk, quote: Any = quote) -> Any:
            if quote is None:
                return await transport.send(address, {"text": chunk})
            try:
                return await transport.send(address, {"text": chunk, "quoted": quote})
            except Exception as e:
                log.warning(f"Failed to send with quote, retrying without: {e}")
                return await transport.send(address, {"text": chunk})

        handles.append(await retry.run(_send, f"send_message to {address}", retry_config))

    return handles


async def send_reaction(
    transport: BaseTransport,
    target: str,
    message_id: str,
    emoji: str,
    *,
    retry: RetryEngine,
    retry_config: RetryConfig | dict[str, Any] | None = None,
) -> None:
    """Set a reaction through the retry engine."""

    async def _react() -> None:
        await transport.send_reaction(target, message_id, emoji)

    await retry.run(_react, f"send_reaction to {target}", retry_config)
