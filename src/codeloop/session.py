"""Chat session: the tool-calling loop for one conversation."""

import json
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from codeloop.events import (
    AssistantMessage,
    AssistantNote,
    AwaitingModel,
    EventHandler,
    NullEventHandler,
    ToolCallFinished,
    ToolCallStarted,
    TurnAborted,
    UserMessageReceived,
)
from codeloop.llm.base import FinalMessage, LLMError, LLMProvider, Message, ToolCall
from codeloop.memory import ConversationError, ConversationMemory
from codeloop.permissions import FeedbackProvided, PermissionDenied, PermissionGate
from codeloop.tools.base import (
    CancelToken,
    InvalidArguments,
    ToolOutcome,
    UnknownTool,
    validate_arguments,
)
from codeloop.tools.registry import ToolRegistry

__all__ = [
    "CancellableModelCall",
    "ChatSession",
    "ConversationError",
    "RoundTripLimitExceeded",
    "SessionAborted",
    "TurnResult",
    "TurnState",
]


DEFAULT_MAX_ROUND_TRIPS = 25


class TurnState(Enum):
    """Where the session is within a turn."""
    AWAITING_USER_INPUT = "awaiting_user_input"
    MODEL_PENDING = "model_pending"
    TOOLS_PENDING = "tools_pending"
    ABORTED = "aborted"


class SessionAborted(Exception):
    """The current turn was abandoned."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"turn aborted: {reason}")


class RoundTripLimitExceeded(Exception):
    """The model kept calling tools past the per-turn limit."""

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"stopped after {limit} tool round trips")


@dataclass(frozen=True)
class TurnResult:
    """What one call to ChatSession.send produced."""
    text: str
    state: TurnState
    round_trips: int
    synthetic: bool = False
    aborted_reason: Optional[str] = None
    error: Optional[Exception] = None

    @property
    def aborted(self) -> bool:
        return self.state is TurnState.ABORTED


class CancellableModelCall:
    """Run a model call in a thread so it can be abandoned on cancel.

    The caller's thread keeps polling, so both Ctrl+C and a cancel token
    set from another thread interrupt the wait. The result of an
    abandoned call is discarded.
    """

    def __init__(self, cancel: CancelToken, poll_interval: float = 0.1):
        self._cancel = cancel
        self._poll_interval = poll_interval

    def run(self, fn, *args, **kwargs):
        """Run fn in a worker thread; return its result or raise its error.

        Raises:
            SessionAborted: If the cancel token is set before fn finishes.
        """
        done = threading.Event()
        outcome: dict[str, Any] = {}

        def worker():
            try:
                outcome["result"] = fn(*args, **kwargs)
            except Exception as e:
                outcome["error"] = e
            finally:
                done.set()

        thread = threading.Thread(target=worker, daemon=True)
        thread.start()

        while not done.wait(timeout=self._poll_interval):
            if self._cancel.cancelled:
                raise SessionAborted("cancelled by user")

        if "error" in outcome:
            raise outcome["error"]
        return outcome["result"]


class ChatSession:
    """Drives turns between the user, the model and the tools.

    One turn: the user message goes to the model; while the model answers
    with tool calls, the calls run in order and their results go back to
    the model; the turn ends with a final answer, the round-trip limit, or
    an abort. Every tool call in memory is answered before the next model
    request, including calls cut short by an abort.
    """

    def __init__(
        self,
        provider: LLMProvider,
        registry: ToolRegistry,
        handler: Optional[EventHandler] = None,
        memory: Optional[ConversationMemory] = None,
        max_round_trips: int = DEFAULT_MAX_ROUND_TRIPS,
        system_prompt: Optional[str] = None,
        permission_gate: Optional[PermissionGate] = None,
        debug: bool = False,
    ):
        if max_round_trips < 1:
            raise ValueError("max_round_trips must be at least 1")

        self.provider = provider
        self.registry = registry
        self.registry.freeze()
        self.handler = handler or NullEventHandler()
        self.memory = memory if memory is not None else ConversationMemory()
        self.max_round_trips = max_round_trips
        self.system_prompt = system_prompt
        self.permission_gate = permission_gate or PermissionGate()
        self.debug = debug

        self._state = TurnState.AWAITING_USER_INPUT
        self._cancel = CancelToken()

    @property
    def state(self) -> TurnState:
        return self._state

    def cancel(self) -> None:
        """Ask the running turn to stop. Safe to call from any thread."""
        self._cancel.cancel()

    def _set_state(self, state: TurnState) -> None:
        if state is not self._state:
            self._log_debug("STATE", f"{self._state.name} -> {state.name}")
        self._state = state

    def _emit(self, event) -> None:
        self.handler.handle_event(event)

    def _log_debug(self, label: str, data: Any) -> None:
        """Log debug information if debug mode is enabled."""
        if self.debug:
            if isinstance(data, str):
                formatted = data
            else:
                try:
                    formatted = json.dumps(data, indent=2, default=str)
                except (TypeError, ValueError):
                    formatted = str(data)
            print(f"\033[90m[DEBUG {label}] {formatted}\033[0m")

    def send(self, user_input: str) -> TurnResult:
        """Run one full turn for a user message.

        Model errors, malformed responses, cancellation and any other
        failure inside the turn end it as ABORTED rather than raising; the
        session can take the next message either way.

        Raises:
            ConversationError: If called while a turn is already running.
        """
        if self._state in (TurnState.MODEL_PENDING, TurnState.TOOLS_PENDING):
            raise ConversationError("a turn is already in progress")

        self._cancel.reset()
        self.memory.append(Message.user(user_input))
        self._emit(UserMessageReceived(user_input))

        round_trips = 0
        try:
            while True:
                self._set_state(TurnState.MODEL_PENDING)
                response = self._request_model(round_trips + 1)

                if isinstance(response, FinalMessage):
                    self.memory.append(Message.assistant(response.text))
                    self._emit(AssistantMessage(response.text))
                    self._set_state(TurnState.AWAITING_USER_INPUT)
                    return TurnResult(
                        text=response.text,
                        state=TurnState.AWAITING_USER_INPUT,
                        round_trips=round_trips,
                    )

                self.memory.append(Message.assistant(response.text, response.calls))
                if response.text:
                    self._emit(AssistantNote(response.text))

                self._set_state(TurnState.TOOLS_PENDING)
                self._run_tool_calls(response.calls)
                round_trips += 1

                if round_trips >= self.max_round_trips:
                    return self._stop_at_limit(round_trips)
                if self._cancel.cancelled:
                    raise SessionAborted("cancelled by user")

        except KeyboardInterrupt:
            return self._abort(SessionAborted("cancelled by user"), round_trips)
        except SessionAborted as e:
            return self._abort(e, round_trips)
        except LLMError as e:
            self._log_debug("MODEL ERROR", e.format_message())
            return self._abort(SessionAborted(f"model error: {e.message}"), round_trips)
        except Exception as e:
            self._log_debug("ERROR", f"{type(e).__name__}: {e}")
            aborted = SessionAborted(f"unexpected error: {type(e).__name__}: {e}")
            aborted.__cause__ = e
            return self._abort(aborted, round_trips)

    def _request_model(self, round_trip: int):
        dropped = self.memory.compact()
        if dropped:
            self._log_debug("MEMORY", f"compacted {dropped} message(s)")

        self._emit(AwaitingModel(round_trip))
        self._log_debug("MODEL REQUEST", {
            "round_trip": round_trip,
            "messages": len(self.memory),
        })
        call = CancellableModelCall(self._cancel)
        return call.run(
            self.provider.complete,
            self.memory.snapshot(),
            self.registry.list(),
            self.system_prompt,
        )

    def _run_tool_calls(self, calls: tuple[ToolCall, ...]) -> None:
        """Run calls one by one, in the order the model issued them."""
        for call in calls:
            if self._cancel.cancelled:
                raise SessionAborted("cancelled by user")

            self._emit(ToolCallStarted(call))
            outcome = self._execute_call(call)
            self.memory.append(Message.tool_result(
                call.id, outcome.llm_output, is_error=not outcome.success
            ))
            self._log_debug("TOOL", {
                "name": call.name,
                "id": call.id,
                "success": outcome.success,
                "error": outcome.error,
            })
            self._emit(ToolCallFinished(call, outcome))

    def _execute_call(self, call: ToolCall) -> ToolOutcome:
        try:
            tool = self.registry.resolve(call.name)
        except UnknownTool as e:
            return ToolOutcome.fail(
                f"{e}. Available tools: {', '.join(self.registry.names())}"
            )

        # Checked before approval so the user never sees a call that cannot run
        try:
            validate_arguments(tool.name, tool.get_schema(), call.arguments)
        except InvalidArguments as e:
            return ToolOutcome.fail(str(e))

        def prompt(tool_name: str, description: str) -> str:
            return self.handler.request_approval(call, description)

        try:
            self.permission_gate.check_tool(tool, call.arguments, prompt)
        except PermissionDenied as e:
            return ToolOutcome.fail(f"Operation cancelled by user: {call.name} ({e})")
        except FeedbackProvided as e:
            return ToolOutcome.fail(
                f"User declined {call.name} and said instead: {e.feedback}"
            )

        try:
            return tool.run(call.arguments, cancel=self._cancel)
        except Exception as e:
            return ToolOutcome.fail(f"{call.name} failed: {type(e).__name__}: {e}")

    def _stop_at_limit(self, round_trips: int) -> TurnResult:
        limit = RoundTripLimitExceeded(self.max_round_trips)
        text = (
            f"I stopped after {self.max_round_trips} rounds of tool calls without "
            "reaching a final answer. Send another message to let me continue."
        )
        self._log_debug("LIMIT", str(limit))
        self.memory.append(Message.assistant(text))
        self._emit(AssistantMessage(text, synthetic=True))
        self._set_state(TurnState.AWAITING_USER_INPUT)
        return TurnResult(
            text=text,
            state=TurnState.AWAITING_USER_INPUT,
            round_trips=round_trips,
            synthetic=True,
            error=limit,
        )

    def _abort(self, error: SessionAborted, round_trips: int) -> TurnResult:
        """Answer every outstanding call, then end the turn as ABORTED."""
        for call in self.memory.pending_tool_calls():
            outcome = ToolOutcome.fail(f"turn aborted: {error.reason}")
            self.memory.append(Message.tool_result(
                call.id, outcome.llm_output, is_error=True
            ))
            self._emit(ToolCallFinished(call, outcome))

        self._set_state(TurnState.ABORTED)
        self._emit(TurnAborted(error.reason))
        self._cancel.reset()
        return TurnResult(
            text="",
            state=TurnState.ABORTED,
            round_trips=round_trips,
            aborted_reason=error.reason,
            error=error,
        )
