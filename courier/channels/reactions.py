"""
Reaction state machine for the inbound message lifecycle.

Five states, each rendered as one emoji reaction on the user's message:

    queued (⏳) -> active (🔄) -> done (✅) / error (❌) / timeout (⏰)

The transport keeps one reaction per sender, so sending a new emoji replaces
the previous one. Terminal states are absorbing: a late completion signal can
never overwrite a message's final reaction.
"""

from enum import Enum
from typing import Any, Awaitable, Callable

from loguru import logger


class ReactionState(str, Enum):
    """Reaction lifecycle states."""
    QUEUED = "queued"
    ACTIVE = "active"
    DONE = "done"
    ERROR = "error"
    TIMEOUT = "timeout"


DEFAULT_REACTION_EMOJIS: dict[ReactionState, str] = {
    ReactionState.QUEUED: "⏳",
    ReactionState.ACTIVE: "🔄",
    ReactionState.DONE: "✅",
    ReactionState.ERROR: "❌",
    ReactionState.TIMEOUT: "⏰",
}

TERMINAL_STATES = frozenset({ReactionState.DONE, ReactionState.ERROR, ReactionState.TIMEOUT})

# None is the state before the message entered the pipeline.
VALID_TRANSITIONS: dict[ReactionState | None, frozenset[ReactionState]] = {
    None: frozenset({ReactionState.QUEUED}),
    ReactionState.QUEUED: frozenset(
        {ReactionState.ACTIVE, ReactionState.DONE, ReactionState.ERROR, ReactionState.TIMEOUT}
    ),
    ReactionState.ACTIVE: frozenset(
        {ReactionState.DONE, ReactionState.ERROR, ReactionState.TIMEOUT}
    ),
    ReactionState.DONE: frozenset(),
    ReactionState.ERROR: frozenset(),
    ReactionState.TIMEOUT: frozenset(),
}

# async fn(conversation_id, message_id, emoji)
SendReactionFn = Callable[[str, str, str], Awaitable[None]]


def build_emoji_table(overrides: dict[Any, str] | None = None) -> dict[ReactionState, str]:
    """Default emojis with ``overrides`` (keyed by state or state name) applied."""
    table = dict(DEFAULT_REACTION_EMOJIS)
    for key, emoji in (overrides or {}).items():
        table[ReactionState(key)] = emoji
    return table


class ReactionStateMachine:
    """
    Tracks the reaction state of a single inbound message.

    Usage:
        sm = ReactionStateMachine(chat_id, message_id, send_reaction)
        await sm.transition(ReactionState.QUEUED)   # ⏳
        await sm.transition(ReactionState.ACTIVE)   # 🔄
        await sm.transition(ReactionState.DONE)     # ✅
    """

    def __init__(
        self,
        conversation_id: str,
        message_id: str,
        send_reaction: SendReactionFn,
        log: Any = None,
        emojis: dict[Any, str] | None = None,
    ):
        self.conversation_id = conversation_id
        self.message_id = message_id
        self._send_reaction = send_reaction
        self._log = log or logger.bind(component="reactions")
        self._emojis = build_emoji_table(emojis)
        self._state: ReactionState | None = None

    @property
    def state(self) -> ReactionState | None:
        """Current state, or None before the first transition."""
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    async def transition(self, new_state: ReactionState | str) -> bool:
        """Move to ``new_state`` and send its reaction.

        Returns True if the transition was accepted. The reaction send is
        best-effort: a failure is logged and does not undo the state change.
        """
        try:
            target = ReactionState(new_state)
        except ValueError:
            self._log.warning(
                f"[reactions] Unknown state '{new_state}' for message {self.message_id}"
            )
            return False

        if self._state is None and target is not ReactionState.QUEUED:
            self._log.warning(
                f"[reactions] First transition must be to 'queued', got '{target.value}' "
                f"for message {self.message_id}"
            )
            return False

        if self.is_terminal:
            self._log.debug(
                f"[reactions] Ignoring transition to '{target.value}', already in terminal "
                f"state '{self._state.value}' for message {self.message_id}"
            )
            return False

        if target not in VALID_TRANSITIONS[self._state]:
            self._log.warning(
                f"[reactions] Invalid transition '{self._state.value}' -> '{target.value}' "
                f"for message {self.message_id}"
            )
            return False

        previous = self._state
        self._state = target
        emoji = self._emojis[target]

        try:
            await self._send_reaction(self.conversation_id, self.message_id, emoji)
            self._log.debug(
                f"[reactions] {previous.value if previous else 'init'} -> {target.value} "
                f"({emoji}) for message {self.message_id}"
            )
        except Exception as e:
            self._log.warning(
                f"[reactions] Failed to send {target.value} reaction for message "
                f"{self.message_id}: {e}"
            )

        return True

    async def clear(self) -> None:
        """Remove the reaction (an empty emoji clears it on the transport)."""
        try:
            await self._send_reaction(self.conversation_id, self.message_id, "")
        except Exception as e:
            self._log.warning(
                f"[reactions] Failed to clear reaction for message {self.message_id}: {e}"
            )
