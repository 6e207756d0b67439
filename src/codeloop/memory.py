"""Conversation memory: the ordered message history of one session."""

import json
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Iterator, Optional, Sequence

import tiktoken

from codeloop.llm.base import Message, ToolCall


# Role, separators and framing the providers add around each message
MESSAGE_OVERHEAD_TOKENS = 4


class ConversationError(Exception):
    """A change would break the call/result pairing of the conversation."""
    pass


@lru_cache(maxsize=1)
def _encoder():
    return tiktoken.get_encoding("cl100k_base")


def estimate_tokens(messages: Sequence[Message]) -> int:
    """Count tokens across all messages using tiktoken."""
    encoder = _encoder()
    total = 0
    for m in messages:
        content = m.content or ""
        for call in m.tool_calls:
            content += call.name + json.dumps(call.arguments)
        total += len(encoder.encode(content))
    total += MESSAGE_OVERHEAD_TOKENS * len(messages)
    return total


@dataclass(frozen=True)
class RetentionPolicy:
    """Budget for how much history is kept. None means unlimited."""
    max_messages: Optional[int] = None
    max_tokens: Optional[int] = None


def group_into_turns(messages: Sequence[Message]) -> list[list[Message]]:
    """Group messages into user turns.

    A turn starts at a user message and runs up to the next one, so every
    assistant call and its results always land in the same turn.
    """
    turns: list[list[Message]] = []
    for msg in messages:
        if msg.role == "user" or not turns:
            turns.append([msg])
        else:
            turns[-1].append(msg)
    return turns


class ConversationMemory:
    """Append-only message history with pairing checks and compaction.

    Every tool message must answer an unanswered call from the most recent
    assistant message, and nothing else may be appended while calls are
    still unanswered.
    """

    def __init__(
        self,
        policy: Optional[RetentionPolicy] = None,
        token_counter: Callable[[Sequence[Message]], int] = estimate_tokens,
    ):
        self.policy = policy or RetentionPolicy()
        self._count_tokens = token_counter
        self._messages: list[Message] = []
        # Unanswered calls of the last assistant message, in issued order
        self._pending: dict[str, ToolCall] = {}

    def append(self, message: Message) -> None:
        """Append a message.

        Raises:
            ConversationError: If the message breaks call/result pairing.
        """
        if message.role == "tool":
            if message.tool_call_id not in self._pending:
                raise ConversationError(
                    f"tool result for '{message.tool_call_id}' does not answer "
                    "a pending tool call"
                )
            del self._pending[message.tool_call_id]
        elif self._pending:
            raise ConversationError(
                f"cannot append {message.role} message: "
                f"{len(self._pending)} tool call(s) still unanswered "
                f"({', '.join(self._pending)})"
            )
        elif message.role == "assistant" and message.tool_calls:
            ids = [call.id for call in message.tool_calls]
            if len(set(ids)) != len(ids):
                raise ConversationError(f"duplicate tool call ids in {ids}")
            self._pending = {call.id: call for call in message.tool_calls}

        self._messages.append(message)

    def snapshot(self) -> tuple[Message, ...]:
        """Immutable copy of the history at this point in time."""
        return tuple(self._messages)

    def pending_tool_calls(self) -> list[ToolCall]:
        return list(self._pending.values())

    @property
    def at_safe_boundary(self) -> bool:
        """True when no tool call is waiting for its result."""
        return not self._pending

    def last(self) -> Optional[Message]:
        return self._messages[-1] if self._messages else None

    def clear(self) -> None:
        self._messages = []
        self._pending = {}

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(self.snapshot())

    def _over_budget(self, messages: Sequence[Message]) -> bool:
        if self.policy.max_messages is not None and len(messages) > self.policy.max_messages:
            return True
        if self.policy.max_tokens is not None:
            return self._count_tokens(messages) > self.policy.max_tokens
        return False

    def compact(self) -> int:
        """Drop the oldest whole turns until the history fits the policy.

        The latest turn is always kept, even when it alone exceeds the
        budget.

        Returns:
            Number of messages dropped.

        Raises:
            ConversationError: If tool calls are pending.
        """
        if self._pending:
            raise ConversationError("cannot compact while tool calls are pending")

        if not self._over_budget(self._messages):
            return 0

        turns = group_into_turns(self._messages)
        start = 0
        kept = self._messages
        while start < len(turns) - 1 and self._over_budget(kept):
            start += 1
            kept = [m for turn in turns[start:] for m in turn]

        dropped = len(self._messages) - len(kept)
        self._messages = list(kept)
        return dropped
