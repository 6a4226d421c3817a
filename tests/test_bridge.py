import asyncio
from typing import Any

import pytest

from courier.bus.events import InboundMessage
from courier.channels.base import BaseTransport
from courier.channels.bridge import ConversationBridge, ResponseTimeoutError, extract_fragment_text
from courier.channels.errors import PermanentDeliveryError
from courier.config.schema import BridgeConfig, Config, ReactionsConfig, RetryConfig, StreamingConfig

INTERVAL = 0.02
CHAT = "15550001111@s.whatsapp.net"
NOTICE = "Sorry, delivery failed."


class FakeTransport(BaseTransport):
    name = "fake"

    def __init__(self, send_error: Exception | None = None) -> None:
        self.sent: list[dict[str, Any]] = []
        self.reactions: list[tuple[str, str, str]] = []
        self.presence: list[tuple[str, str]] = []
        self._send_error = send_error
        self._next = 0

    async def send(self, target: str, content: dict[str, Any]) -> Any:
        self.sent.append(dict(content))
        if "edit" in content:
            return content["edit"]
        if self._send_error is not None:
            raise self._send_error
        self._next += 1
        return f"msg-{self._next}"

    async def send_reaction(self, target: str, message_id: str, emoji: str) -> None:
        self.reactions.append((target, message_id, emoji))

    async def send_presence(self, target: str, state: str) -> None:
        self.presence.append((target, state))

    def emojis_for(self, message_id: str) -> list[str]:
        return [e for _, mid, e in self.reactions if mid == message_id]

    @property
    def new_texts(self) -> list[str]:
        return [c["text"] for c in self.sent if "edit" not in c]


def _config(**bridge: Any) -> Config:
    return Config(
        retry=RetryConfig(base_delay=1, max_delay=5, jitter=0),
        streaming=StreamingConfig(edit_interval=INTERVAL),
        bridge=BridgeConfig(failure_notice=NOTICE, **bridge),
    )


def _message(message_id: str = "m1", text: str = "hello", **kwargs: Any) -> InboundMessage:
    return InboundMessage(id=message_id, conversation_id=CHAT, text=text, sender="alice", **kwargs)


def _static_backend(reply: str):
    calls: list[InboundMessage] = []

    async def backend(message: InboundMessage, on_fragment) -> str:
        calls.append(message)
        return reply

    backend.calls = calls
    return backend


@pytest.mark.asyncio
async def test_streamed_reply_edits_in_place() -> None:
    transport = FakeTransport()

    async def backend(message: InboundMessage, on_fragment) -> str:
        on_fragment("Hello")
        await asyncio.sleep(INTERVAL * 3)
        on_fragment({"type": "text", "content": " world"})
        await asyncio.sleep(INTERVAL * 3)
        return "Hello world"

    bridge = ConversationBridge(transport, backend, _config())
    await bridge.handle_inbound(_message())

    assert transport.sent[0] == {"text": "Hello"}
    assert transport.sent[-1] == {"text": "Hello world", "edit": "msg-1"}
    assert transport.new_texts == ["Hello"]
    assert transport.emojis_for("m1") == ["⏳", "🔄", "✅"]
    assert (CHAT, "composing") in transport.presence
    assert bridge.streams.get(CHAT) is None


@pytest.mark.asyncio
async def test_unstreamed_reply_is_sent_with_quote() -> None:
    transport = FakeTransport()
    backend = _static_backend("Here is the answer.")
    bridge = ConversationBridge(transport, backend, _config())

    await bridge.handle_inbound(_message(raw={"key": "in-1"}))

    assert transport.sent == [{"text": "Here is the answer.", "quoted": {"key": "in-1"}}]
    assert transport.emojis_for("m1") == ["⏳", "🔄", "✅"]
    assert len(backend.calls) == 1


@pytest.mark.asyncio
async def test_respond_without_reaction_machine_creates_one() -> None:
    transport = FakeTransport()
    bridge = ConversationBridge(transport, _static_backend("direct reply"), _config())

    assert await bridge.respond(_message()) == "direct reply"
    assert transport.emojis_for("m1") == ["⏳", "🔄", "✅"]
    assert transport.new_texts == ["direct reply"]


@pytest.mark.asyncio
async def test_streaming_disabled_sends_full_reply() -> None:
    transport = FakeTransport()

    async def backend(message: InboundMessage, on_fragment) -> str:
        on_fragment("partial")
        await asyncio.sleep(INTERVAL * 3)
        return "partial and complete"

    config = _config()
    config.streaming.enabled = False
    bridge = ConversationBridge(transport, backend, config)
    await bridge.handle_inbound(_message())

    assert transport.sent == [{"text": "partial and complete"}]


@pytest.mark.asyncio
async def test_messages_from_self_are_ignored() -> None:
    transport = FakeTransport()
    backend = _static_backend("nope")
    bridge = ConversationBridge(transport, backend, _config())

    await bridge.handle_inbound(_message(from_me=True))

    assert transport.sent == []
    assert transport.reactions == []
    assert backend.calls == []


@pytest.mark.asyncio
async def test_empty_message_completes_without_backend() -> None:
    transport = FakeTransport()
    backend = _static_backend("nope")
    bridge = ConversationBridge(transport, backend, _config())

    await bridge.handle_inbound(_message(text="   "))

    assert transport.emojis_for("m1") == ["⏳", "🔄", "✅"]
    assert backend.calls == []
    assert transport.sent == []


@pytest.mark.asyncio
async def test_handled_command_skips_backend() -> None:
    transport = FakeTransport()
    backend = _static_backend("nope")
    seen: list[str] = []

    async def commands(message: InboundMessage) -> bool:
        seen.append(message.text)
        return message.text.startswith("/")

    bridge = ConversationBridge(transport, backend, _config(), commands=commands)
    await bridge.handle_inbound(_message(text="/status"))

    assert seen == ["/status"]
    assert backend.calls == []
    assert transport.emojis_for("m1") == ["⏳", "🔄", "✅"]


@pytest.mark.asyncio
async def test_failing_command_handler_falls_through_to_backend() -> None:
    transport = FakeTransport()
    backend = _static_backend("fallback reply")

    async def commands(message: InboundMessage) -> bool:
        raise RuntimeError("command registry broken")

    bridge = ConversationBridge(transport, backend, _config(), commands=commands)
    await bridge.handle_inbound(_message(text="/status"))

    assert len(backend.calls) == 1
    assert transport.new_texts == ["fallback reply"]


@pytest.mark.asyncio
async def test_backend_error_marks_error_and_notifies() -> None:
    transport = FakeTransport()

    async def backend(message: InboundMessage, on_fragment) -> str:
        raise RuntimeError("model exploded")

    bridge = ConversationBridge(transport, backend, _config())
    with pytest.raises(RuntimeError, match="model exploded"):
        await bridge.handle_inbound(_message())

    assert transport.emojis_for("m1") == ["⏳", "🔄", "❌"]
    assert transport.new_texts == [NOTICE]


@pytest.mark.asyncio
async def test_backend_timeout_marks_timeout() -> None:
    transport = FakeTransport()

    async def backend(message: InboundMessage, on_fragment) -> str:
        await asyncio.sleep(5)
        return "too late"

    bridge = ConversationBridge(transport, backend, _config(response_timeout=0.05))
    with pytest.raises(ResponseTimeoutError):
        await bridge.handle_inbound(_message())

    assert transport.emojis_for("m1") == ["⏳", "🔄", "⏰"]
    assert transport.new_texts == [NOTICE]


@pytest.mark.asyncio
async def test_transport_timeout_without_deadline_marks_error() -> None:
    transport = FakeTransport(send_error=TimeoutError("send timed out"))
    config = _config()
    config.streaming.enabled = False
    bridge = ConversationBridge(transport, _static_backend("hi"), config)

    with pytest.raises(TimeoutError) as exc_info:
        await bridge.handle_inbound(_message())

    assert not isinstance(exc_info.value, ResponseTimeoutError)
    assert transport.emojis_for("m1") == ["⏳", "🔄", "❌"]
    # Initial send plus three retries, then the failure notice attempt.
    assert [c["text"] for c in transport.sent] == ["hi"] * 4 + [NOTICE]


@pytest.mark.asyncio
async def test_backend_own_timeout_within_deadline_marks_error() -> None:
    transport = FakeTransport()

    async def backend(message: InboundMessage, on_fragment) -> str:
        raise TimeoutError("upstream model timed out")

    bridge = ConversationBridge(transport, backend, _config(response_timeout=5))
    with pytest.raises(TimeoutError) as exc_info:
        await bridge.handle_inbound(_message())

    assert not isinstance(exc_info.value, ResponseTimeoutError)
    assert transport.emojis_for("m1") == ["⏳", "🔄", "❌"]
    assert transport.new_texts == [NOTICE]


@pytest.mark.asyncio
async def test_permanent_delivery_failure_marks_error() -> None:
    transport = FakeTransport(send_error=PermanentDeliveryError("recipient not registered"))
    bridge = ConversationBridge(transport, _static_backend("hi"), _config())

    with pytest.raises(PermanentDeliveryError):
        await bridge.handle_inbound(_message())

    assert transport.emojis_for("m1") == ["⏳", "🔄", "❌"]
    # One reply attempt, one failure notice attempt.
    assert [c["text"] for c in transport.sent] == ["hi", NOTICE]


@pytest.mark.asyncio
async def test_new_message_interrupts_streaming_reply() -> None:
    transport = FakeTransport()
    release = asyncio.Event()

    async def backend(message: InboundMessage, on_fragment) -> str:
        if message.id == "m1":
            on_fragment("first reply so far")
            await release.wait()
            return "first reply so far and the rest"
        return "second reply"

    bridge = ConversationBridge(transport, backend, _config())
    first = asyncio.create_task(bridge.handle_inbound(_message("m1")))
    await asyncio.sleep(INTERVAL * 4)
    assert transport.new_texts == ["first reply so far"]

    await bridge.handle_inbound(_message("m2", text="actually, something else"))
    release.set()
    await first

    assert transport.new_texts == ["first reply so far", "second reply"]
    assert all("and the rest" not in c["text"] for c in transport.sent)
    assert transport.emojis_for("m1") == ["⏳", "🔄", "✅"]
    assert transport.emojis_for("m2") == ["⏳", "🔄", "✅"]
    assert len(bridge.streams) == 0


@pytest.mark.asyncio
async def test_reactions_can_be_disabled() -> None:
    transport = FakeTransport()
    config = _config()
    config.reactions = ReactionsConfig(enabled=False)
    bridge = ConversationBridge(transport, _static_backend("ok"), config)

    await bridge.handle_inbound(_message())

    assert transport.reactions == []
    assert transport.new_texts == ["ok"]


@pytest.mark.asyncio
async def test_custom_reaction_emojis() -> None:
    transport = FakeTransport()
    config = _config()
    config.reactions = ReactionsConfig(emojis={"done": "👍"})
    bridge = ConversationBridge(transport, _static_backend("ok"), config)

    await bridge.handle_inbound(_message())

    assert transport.emojis_for("m1") == ["⏳", "🔄", "👍"]


@pytest.mark.asyncio
async def test_shutdown_cancels_live_streams() -> None:
    transport = FakeTransport()
    bridge = ConversationBridge(transport, _static_backend("ok"), _config())
    stream = bridge.streams.create(CHAT, transport)

    await bridge.shutdown()

    assert stream.is_cancelled
    assert len(bridge.streams) == 0


def test_extract_fragment_text_shapes() -> None:
    assert extract_fragment_text("plain") == "plain"
    assert extract_fragment_text({"type": "text", "content": "typed"}) == "typed"
    assert (
        extract_fragment_text({"type": "assistant", "message": {"content": "whole"}}) == "whole"
    )
    assert (
        extract_fragment_text(
            {
                "type": "assistant",
                "message": {"content": [{"text": "a"}, {"type": "tool_use"}, {"text": "b"}]},
            }
        )
        == "ab"
    )
    assert extract_fragment_text({"type": "tool_result", "content": "x"}) == ""
    assert extract_fragment_text(None) == ""
    assert extract_fragment_text(42) == ""
