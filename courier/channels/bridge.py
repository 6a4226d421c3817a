"""
Conversation bridge: drives one inbound message through the delivery layer.

For every inbound message:
  - any reply still streaming into the same conversation is interrupted
  - a reaction machine marks the message queued (⏳)
  - a command handler gets the first chance to resolve it
  - otherwise the backend runs while its fragments stream into a live
    message (🔄), and the message ends done (✅), error (❌) or timeout (⏰)
"""

import asyncio
from collections.abc import Mapping
from functools import partial
from typing import Any, Awaitable, Callable

from loguru import logger

from courier.bus.events import InboundMessage
from courier.channels.base import BaseTransport
from courier.channels.messaging import normalize_target, send_message, send_reaction
from courier.channels.presence import TypingIndicator
from courier.channels.reactions import ReactionState, ReactionStateMachine
from courier.channels.retry import RetryEngine
from courier.channels.streaming import MessageStream, StreamManager
from courier.config.schema import Config

FragmentCallback = Callable[[Any], None]

# async fn(message, on_fragment) -> full response text
Backend = Callable[[InboundMessage, FragmentCallback], Awaitable[str]]

# async fn(message) -> True if the message was handled as a command
CommandHandler = Callable[[InboundMessage], Awaitable[bool]]


class ResponseTimeoutError(TimeoutError):
    """The backend missed the configured response deadline."""


def extract_fragment_text(fragment: Any) -> str:
    """Pull the text out of a backend stream event.

    Accepts plain strings, ``{"type": "text", "content": ...}`` and the
    ``{"type": "assistant", "message": {"content": ...}}`` shape, where content
    is a string or a list of ``{"text": ...}`` blocks.
    """
    if isinstance(fragment, str):
        return fragment
    if not isinstance(fragment, Mapping):
        return ""

    kind = fragment.get("type")
    if kind == "text":
        content = fragment.get("content")
        return content if isinstance(content, str) else ""

    if kind == "assistant":
        message = fragment.get("message")
        content = message.get("content") if isinstance(message, Mapping) else None
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return "".join(
                block.get("text") or ""
                for block in content
                if isinstance(block, Mapping)
            )
    return ""


async def _skip_reaction(conversation_id: str, message_id: str, emoji: str) -> None:
    return None


class ConversationBridge:
    """
    Relays backend responses for inbound messages.

    Owns the stream registry, the retry defaults and the typing indicator for
    one transport.
    """

    def __init__(
        self,
        transport: BaseTransport,
        backend: Backend,
        config: Config | None = None,
        *,
        commands: CommandHandler | None = None,
        retry: RetryEngine | None = None,
        streams: StreamManager | None = None,
        log: Any = None,
    ):
        self.config = config or Config()
        self.transport = transport
        self._backend = backend
        self._commands = commands
        self._log = log or logger.bind(component="bridge")
        self.retry = retry or RetryEngine(self.config.retry, log=self._log)
        self.streams = streams or StreamManager(
            limit=self.config.streaming.limit,
            flush_interval=self.config.streaming.edit_interval,
            log=self._log,
        )
        self.typing = TypingIndicator(transport)

    def reactions_for(self, message: InboundMessage) -> ReactionStateMachine:
        """Create the reaction machine for an inbound message."""
        if self.config.reactions.enabled:
            sender = partial(send_reaction, self.transport, retry=self.retry)
        else:
            sender = _skip_reaction
        return ReactionStateMachine(
            normalize_target(message.conversation_id),
            message.id,
            sender,
            self._log,
            self.config.reactions.emojis,
        )

    async def handle_inbound(self, message: InboundMessage) -> None:
        """Process one inbound message end to end."""
        if message.from_me:
            return

        target = normalize_target(message.conversation_id)
        if self.streams.interrupt(target):
            self._log.info(f"Stream interrupted by new message from {message.conversation_id}")

        reactions = self.reactions_for(message)
        await reactions.transition(ReactionState.QUEUED)

        if not message.text.strip():
            await reactions.transition(ReactionState.ACTIVE)
            await reactions.transition(ReactionState.DONE)
            return

        if self._commands is not None:
            try:
                handled = await self._commands(message)
            except Exception as e:
                self._log.error(f"Command handler error: {e}")
                handled = False
            if handled:
                await reactions.transition(ReactionState.ACTIVE)
                await reactions.transition(ReactionState.DONE)
                return

        await self.respond(message, reactions)

    async def respond(
        self,
        message: InboundMessage,
        reactions: ReactionStateMachine | None = None,
    ) -> str:
        """
        Run the backend for ``message`` and deliver its response.

        Fragments stream into a live message; if nothing was streamed, the
        full response is sent with retries. On failure the message is marked
        error (or timeout), a short failure notice is sent and the exception
        propagates. Partial streamed text is left in place.
        """
        if reactions is None:
            reactions = self.reactions_for(message)
            await reactions.transition(ReactionState.QUEUED)
        target = normalize_target(message.conversation_id)

        stream: MessageStream | None = None
        if self.config.streaming.enabled:
            stream = self.streams.create(target, self.transport, self._log)

        def on_fragment(fragment: Any) -> None:
            text = extract_fragment_text(fragment)
            if text and stream is not None:
                stream.append(text)

        await reactions.transition(ReactionState.ACTIVE)
        if self.config.bridge.typing_indicator:
            self.typing.start(target)

        try:
            response = await self._run_backend(message, on_fragment)

            if stream is not None and stream.is_cancelled:
                self._log.info(f"Reply to {message.id} superseded by a newer message in {target}")
                await reactions.transition(ReactionState.DONE)
                return response

            did_stream = await self._finalize_stream(target, stream)
            if not did_stream:
                await send_message(
                    self.transport,
                    target,
                    response,
                    retry=self.retry,
                    quoted=message.raw,
                    chunk_size=self.config.bridge.chunk_size,
                    log=self._log,
                )

            await reactions.transition(ReactionState.DONE)
            return response
        except ResponseTimeoutError:
            self._log.warning(f"Backend timed out for message {message.id} in {target}")
            await reactions.transition(ReactionState.TIMEOUT)
            await self._notify_failure(target)
            raise
        except Exception as e:
            self._log.error(f"Failed to deliver reply to {message.id} in {target}: {e}")
            await reactions.transition(ReactionState.ERROR)
            await self._notify_failure(target)
            raise
        finally:
            if stream is not None:
                stream.cancel()
            if self.config.bridge.typing_indicator:
                self.typing.stop(target)

    async def shutdown(self) -> None:
        """Cancel live streams and typing indicators."""
        self.streams.cancel_all()
        self.typing.clear_all()

    async def _run_backend(self, message: InboundMessage, on_fragment: FragmentCallback) -> str:
        call = self._backend(message, on_fragment)
        timeout = self.config.bridge.response_timeout
        try:
            async with asyncio.timeout(timeout) as deadline:
                return await call
        except TimeoutError:
            # Only the configured deadline counts; a TimeoutError raised by the
            # backend itself is an ordinary failure.
            if not deadline.expired():
                raise
            raise ResponseTimeoutError(
                f"no response for {message.id} within {timeout:g}s"
            ) from None

    async def _finalize_stream(self, target: str, stream: MessageStream | None) -> bool:
        if stream is None:
            return False
        if self.streams.get(target) is stream:
            return await self.streams.finalize(target)
        await stream.finalize()
        return stream.did_stream

    async def _notify_failure(self, target: str) -> None:
        notice = self.config.bridge.failure_notice
        if not notice:
            return
        try:
            await self.transport.send(target, {"text": notice})
        except Exception as e:
            self._log.error(f"Failed to send failure notice to {target}: {e}")
