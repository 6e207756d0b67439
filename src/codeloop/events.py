"""Events the session reports to its UI collaborator."""

from dataclasses import dataclass
from typing import Union

from codeloop.llm.base import ToolCall
from codeloop.tools.base import ToolOutcome


@dataclass(frozen=True)
class UserMessageReceived:
    text: str


@dataclass(frozen=True)
class AwaitingModel:
    """A model request is about to be sent."""
    round_trip: int


@dataclass(frozen=True)
class AssistantNote:
    """Text the model sent alongside tool calls."""
    text: str


@dataclass(frozen=True)
class ToolCallStarted:
    call: ToolCall


@dataclass(frozen=True)
class ToolCallFinished:
    call: ToolCall
    outcome: ToolOutcome


@dataclass(frozen=True)
class AssistantMessage:
    """The final answer of a turn. Synthetic when the loop wrote it itself."""
    text: str
    synthetic: bool = False


@dataclass(frozen=True)
class TurnAborted:
    reason: str


Event = Union[
    UserMessageReceived,
    AwaitingModel,
    AssistantNote,
    ToolCallStarted,
    ToolCallFinished,
    AssistantMessage,
    TurnAborted,
]


class EventHandler:
    """Receives session events and answers approval requests.

    The default implementation ignores events and denies approval.
    """

    def handle_event(self, event: Event) -> None:
        pass

    def request_approval(self, call: ToolCall, description: str) -> str:
        """Ask whether a tool call may run.

        Returns:
            "allow", "always", "deny", "never" or "feedback:<text>".
        """
        return "deny"


class NullEventHandler(EventHandler):
    """Ignores events and allows every tool call."""

    def request_approval(self, call: ToolCall, description: str) -> str:
        return "allow"


class RecordingEventHandler(EventHandler):
    """Records events and replies to approval requests from a script.

    Once the scripted replies run out, `default_reply` is used.
    """

    def __init__(self, approvals=(), default_reply: str = "allow"):
        self.events: list[Event] = []
        self.approval_requests: list[tuple[ToolCall, str]] = []
        self._approvals = list(approvals)
        self._default_reply = default_reply

    def handle_event(self, event: Event) -> None:
        self.events.append(event)

    def request_approval(self, call: ToolCall, description: str) -> str:
        self.approval_requests.append((call, description))
        if self._approvals:
            return self._approvals.pop(0)
        return self._default_reply

    def of_type(self, event_type) -> list:
        return [e for e in self.events if isinstance(e, event_type)]
