"""Tests for the chat session loop."""

import threading

import pytest

from codeloop.events import (
    AssistantMessage,
    AssistantNote,
    AwaitingModel,
    RecordingEventHandler,
    ToolCallFinished,
    ToolCallStarted,
    TurnAborted,
    UserMessageReceived,
)
from codeloop.llm.base import (
    FinalMessage,
    LLMProvider,
    MockLLMProvider,
    ModelError,
    RateLimitError,
    ServiceUnavailableError,
    ToolCall,
    ToolCalls,
)
from codeloop.memory import ConversationError
from codeloop.permissions import PermissionGate
from codeloop.session import ChatSession, RoundTripLimitExceeded, TurnState
from codeloop.tools.base import Tool, ToolOutcome
from codeloop.tools.registry import build_default_registry


def _session(workspace, responses, handler=None, **kwargs):
    provider = MockLLMProvider(responses)
    registry = kwargs.pop("registry", None) or build_default_registry(workspace=workspace)
    session = ChatSession(
        provider,
        registry,
        handler=handler or RecordingEventHandler(),
        **kwargs,
    )
    return session, provider


def _assert_paired(messages):
    """Every call is answered, in issued order, before anything else."""
    i = 0
    while i < len(messages):
        msg = messages[i]
        if msg.role == "assistant" and msg.tool_calls:
            ids = [c.id for c in msg.tool_calls]
            results = [m.tool_call_id for m in messages[i + 1:i + 1 + len(ids)]]
            assert results == ids
            i += len(ids)
        i += 1


class _CancelDuringRun(Tool):
    """Cancels the session while it runs."""

    name = "cancel_me"
    description = "Cancels the session from inside a tool"

    def __init__(self):
        super().__init__()
        self.session = None
        self.runs = 0

    def execute(self, **kwargs):
        self.runs += 1
        self.session.cancel()
        return ToolOutcome.ok("cancelled the session")

    def get_schema(self):
        return {"properties": {}, "required": []}


class _BlockingProvider(LLMProvider):
    """Never answers until released."""

    name = "Blocking"

    def __init__(self):
        self.release = threading.Event()

    def _complete(self, messages, tools, system):
        self.release.wait(timeout=10)
        return FinalMessage("too late")

    def is_available(self):
        return True


# ============================================================================
# Basic Turn Tests
# ============================================================================

class TestBasicTurns:
    """Turns that end with a final answer."""

    def test_plain_answer(self, temp_workspace):
        """A final answer with no tools ends the turn."""
        session, provider = _session(temp_workspace, [FinalMessage("Hi there")])

        result = session.send("hello")

        assert result.text == "Hi there"
        assert result.state is TurnState.AWAITING_USER_INPUT
        assert result.round_trips == 0
        assert session.state is TurnState.AWAITING_USER_INPUT
        assert [m.role for m in session.memory.snapshot()] == ["user", "assistant"]

    def test_read_then_answer(self, temp_workspace, temp_dir, make_calls):
        """The model reads a file and answers with what it saw."""
        (temp_dir / "a.txt").write_text("hello")
        session, provider = _session(temp_workspace, [
            make_calls(("read_file", {"path": "a.txt"})),
            FinalMessage("a.txt says hello"),
        ])

        result = session.send("what is in a.txt?")

        assert result.text == "a.txt says hello"
        assert result.round_trips == 1
        messages = session.memory.snapshot()
        assert [m.role for m in messages] == ["user", "assistant", "tool", "assistant"]
        assert messages[2].content == "hello"
        assert messages[2].is_error is False
        # The second request carried the tool result
        assert provider.calls[1]["messages"][-1].content == "hello"

    def test_model_sees_tools_and_system_prompt(self, temp_workspace):
        """Each request carries the tool list and the system prompt."""
        session, provider = _session(
            temp_workspace, [FinalMessage("ok")], system_prompt="Be brief."
        )

        session.send("hi")

        assert provider.calls[0]["system"] == "Be brief."
        assert "read_file" in provider.calls[0]["tools"]

    def test_events_in_order(self, temp_workspace, temp_dir, make_calls):
        """Events follow the turn as it happens."""
        (temp_dir / "a.txt").write_text("hello")
        handler = RecordingEventHandler()
        session, _ = _session(temp_workspace, [
            make_calls(("read_file", {"path": "a.txt"}), text="Let me look."),
            FinalMessage("done"),
        ], handler=handler)

        session.send("look")

        assert [type(e) for e in handler.events] == [
            UserMessageReceived,
            AwaitingModel,
            AssistantNote,
            ToolCallStarted,
            ToolCallFinished,
            AwaitingModel,
            AssistantMessage,
        ]
        assert [e.round_trip for e in handler.of_type(AwaitingModel)] == [1, 2]

    def test_multiple_calls_run_in_order(self, temp_workspace, temp_dir, make_calls):
        """Calls in one response run and are answered in issued order."""
        (temp_dir / "a.txt").write_text("A")
        (temp_dir / "b.txt").write_text("B")
        handler = RecordingEventHandler()
        session, _ = _session(temp_workspace, [
            make_calls(
                ("read_file", {"path": "b.txt"}),
                ("read_file", {"path": "a.txt"}),
            ),
            FinalMessage("done"),
        ], handler=handler)

        session.send("read both")

        started = [e.call.arguments["path"] for e in handler.of_type(ToolCallStarted)]
        assert started == ["b.txt", "a.txt"]
        messages = session.memory.snapshot()
        assert [m.content for m in messages if m.role == "tool"] == ["B", "A"]
        _assert_paired(messages)

    def test_history_carries_over(self, temp_workspace):
        """A second turn sees the first."""
        session, provider = _session(
            temp_workspace, [FinalMessage("one"), FinalMessage("two")]
        )

        session.send("first")
        session.send("second")

        contents = [m.content for m in provider.calls[1]["messages"]]
        assert contents == ["first", "one", "second"]

    def test_send_while_busy(self, temp_workspace):
        """A turn can't start while another is running."""
        session, _ = _session(temp_workspace, [])
        session._state = TurnState.MODEL_PENDING

        with pytest.raises(ConversationError):
            session.send("hi")

    def test_invalid_round_trip_limit(self, temp_workspace):
        """The limit must be at least one."""
        with pytest.raises(ValueError):
            _session(temp_workspace, [], max_round_trips=0)


# ============================================================================
# Tool Failure Tests
# ============================================================================

class TestToolFailures:
    """Tool problems go back to the model instead of ending the turn."""

    def test_edit_without_match(self, temp_workspace, temp_dir, make_calls):
        """A failed edit is reported and the model gets another go."""
        target = temp_dir / "f.txt"
        target.write_text("alpha\n")
        session, provider = _session(temp_workspace, [
            make_calls(("edit_file", {
                "path": "f.txt", "old_string": "gamma", "new_string": "delta",
            })),
            FinalMessage("I could not find that text."),
        ])

        result = session.send("replace gamma")

        tool_msg = session.memory.snapshot()[2]
        assert tool_msg.is_error is True
        assert "no matching region found in f.txt" in tool_msg.content
        assert target.read_text() == "alpha\n"
        assert result.text == "I could not find that text."

    def test_unknown_tool(self, temp_workspace, make_calls):
        """Unknown tools get an error result listing what exists."""
        session, _ = _session(temp_workspace, [
            make_calls(("frobnicate", {})),
            FinalMessage("sorry"),
        ])

        session.send("frobnicate")

        tool_msg = session.memory.snapshot()[2]
        assert tool_msg.is_error is True
        assert "unknown tool: frobnicate" in tool_msg.content
        assert "Available tools: read_file" in tool_msg.content

    def test_invalid_arguments(self, temp_workspace, make_calls):
        """Bad arguments become an error result."""
        session, _ = _session(temp_workspace, [
            make_calls(("read_file", {"file": "a.txt"})),
            FinalMessage("oops"),
        ])

        session.send("read")

        tool_msg = session.memory.snapshot()[2]
        assert tool_msg.is_error is True
        assert "invalid arguments for read_file" in tool_msg.content


# ============================================================================
# Approval Tests
# ============================================================================

class TestApproval:
    """Tools that change things ask first."""

    def test_denied_write(self, temp_workspace, temp_dir, make_calls):
        """A denied write does not happen."""
        handler = RecordingEventHandler(approvals=["deny"])
        session, _ = _session(temp_workspace, [
            make_calls(("write_file", {"path": "x.txt", "content": "x"})),
            FinalMessage("ok, I won't"),
        ], handler=handler)

        session.send("write x")

        assert not (temp_dir / "x.txt").exists()
        tool_msg = session.memory.snapshot()[2]
        assert tool_msg.is_error is True
        assert "Operation cancelled by user: write_file" in tool_msg.content
        assert handler.approval_requests[0][0].name == "write_file"

    def test_feedback(self, temp_workspace, temp_dir, make_calls):
        """Feedback reaches the model in place of the result."""
        handler = RecordingEventHandler(approvals=["feedback: call it y.txt"])
        session, _ = _session(temp_workspace, [
            make_calls(("write_file", {"path": "x.txt", "content": "x"})),
            FinalMessage("renaming"),
        ], handler=handler)

        session.send("write x")

        tool_msg = session.memory.snapshot()[2]
        assert "User declined write_file and said instead: call it y.txt" in tool_msg.content
        assert not (temp_dir / "x.txt").exists()

    def test_invalid_call_never_asks(self, temp_workspace, temp_dir, make_calls):
        """A call that fails validation is not put to the user."""
        handler = RecordingEventHandler()
        session, _ = _session(temp_workspace, [
            make_calls(("write_file", {"path": "x.txt"})),
            FinalMessage("missing content"),
        ], handler=handler)

        session.send("write x")

        assert handler.approval_requests == []
        tool_msg = session.memory.snapshot()[2]
        assert tool_msg.is_error is True
        assert "invalid arguments for write_file" in tool_msg.content
        assert not (temp_dir / "x.txt").exists()

    def test_always_stops_asking(self, temp_workspace, temp_dir, make_calls):
        """After "always" the same tool runs without asking."""
        handler = RecordingEventHandler(approvals=["always"], default_reply="deny")
        session, _ = _session(temp_workspace, [
            make_calls(("write_file", {"path": "a.txt", "content": "a"})),
            make_calls(("write_file", {"path": "b.txt", "content": "b"})),
            FinalMessage("both written"),
        ], handler=handler)

        session.send("write two files")

        assert len(handler.approval_requests) == 1
        assert (temp_dir / "a.txt").read_text() == "a"
        assert (temp_dir / "b.txt").read_text() == "b"

    def test_read_only_tools_never_ask(self, temp_workspace, temp_dir, make_calls):
        """Reads run without an approval request."""
        (temp_dir / "a.txt").write_text("a")
        handler = RecordingEventHandler(default_reply="deny")
        session, _ = _session(temp_workspace, [
            make_calls(("read_file", {"path": "a.txt"})),
            FinalMessage("read"),
        ], handler=handler)

        session.send("read")

        assert handler.approval_requests == []

    def test_auto_mode(self, temp_workspace, temp_dir, make_calls):
        """Auto mode skips the prompt."""
        handler = RecordingEventHandler(default_reply="deny")
        session, _ = _session(temp_workspace, [
            make_calls(("write_file", {"path": "x.txt", "content": "x"})),
            FinalMessage("done"),
        ], handler=handler, permission_gate=PermissionGate(auto_mode=True))

        session.send("write")

        assert handler.approval_requests == []
        assert (temp_dir / "x.txt").exists()


# ============================================================================
# Round-trip Limit Tests
# ============================================================================

class TestRoundTripLimit:
    """A model that never stops calling tools is cut off."""

    def test_stops_at_limit(self, temp_workspace, temp_dir, make_calls):
        """The turn ends with a synthetic answer after the limit."""
        (temp_dir / "a.txt").write_text("a")
        handler = RecordingEventHandler()
        session, provider = _session(
            temp_workspace,
            [make_calls(("read_file", {"path": "a.txt"})) for _ in range(5)],
            handler=handler,
            max_round_trips=3,
        )

        result = session.send("loop forever")

        assert len(provider.calls) == 3
        assert result.round_trips == 3
        assert result.synthetic is True
        assert isinstance(result.error, RoundTripLimitExceeded)
        assert "stopped after 3 rounds" in result.text
        assert session.state is TurnState.AWAITING_USER_INPUT

        messages = session.memory.snapshot()
        assert messages[-1].role == "assistant"
        assert messages[-1].content == result.text
        _assert_paired(messages)
        assert handler.of_type(AssistantMessage)[-1].synthetic is True

    def test_next_turn_after_limit(self, temp_workspace, temp_dir, make_calls):
        """The session keeps working after hitting the limit."""
        (temp_dir / "a.txt").write_text("a")
        session, _ = _session(
            temp_workspace,
            [make_calls(("read_file", {"path": "a.txt"})), FinalMessage("continued")],
            max_round_trips=1,
        )

        assert session.send("go").synthetic is True
        assert session.send("continue").text == "continued"


# ============================================================================
# Abort Tests
# ============================================================================

class TestAbort:
    """Turns that end without an answer."""

    def test_fatal_model_error(self, temp_workspace):
        """A fatal error aborts the turn without retrying."""
        handler = RecordingEventHandler()
        session, provider = _session(
            temp_workspace, [ModelError("Mock", "no-such-model")], handler=handler
        )

        result = session.send("hi")

        assert result.aborted is True
        assert result.aborted_reason.startswith("model error: Model 'no-such-model'")
        assert len(provider.calls) == 1
        assert session.state is TurnState.ABORTED
        assert handler.of_type(TurnAborted)[0].reason == result.aborted_reason

    def test_transient_errors_are_retried(self, temp_workspace):
        """Transient failures are retried before the answer arrives."""
        session, provider = _session(temp_workspace, [
            ServiceUnavailableError("Mock", "overloaded"),
            RateLimitError("Mock"),
            FinalMessage("finally"),
        ])

        result = session.send("hi")

        assert result.text == "finally"
        assert len(provider.calls) == 3

    def test_retries_exhausted(self, temp_workspace):
        """Transient failures abort once retries run out."""
        session, provider = _session(
            temp_workspace, [ServiceUnavailableError("Mock") for _ in range(3)]
        )

        result = session.send("hi")

        assert result.aborted is True
        assert len(provider.calls) == 3

    def test_error_after_tools_keeps_pairing(self, temp_workspace, temp_dir, make_calls):
        """An abort mid-turn leaves a well-formed history."""
        (temp_dir / "a.txt").write_text("a")
        session, _ = _session(temp_workspace, [
            make_calls(("read_file", {"path": "a.txt"})),
            ModelError("Mock", "gone"),
            FinalMessage("back again"),
        ])

        assert session.send("read").aborted is True
        _assert_paired(session.memory.snapshot())
        assert session.send("retry").text == "back again"

    @pytest.mark.parametrize("calls", [
        (ToolCall("c1", "read_file", {"path": "a.txt"}), ToolCall("c1", "read_file", {"path": "b.txt"})),
        (ToolCall(None, "read_file", {"path": "a.txt"}),),
    ], ids=["duplicate-ids", "missing-id"])
    def test_malformed_tool_calls(self, temp_workspace, calls):
        """Unusable tool calls abort the turn and leave memory untouched."""
        handler = RecordingEventHandler()
        session, provider = _session(
            temp_workspace, [ToolCalls(calls), FinalMessage("recovered")], handler=handler
        )

        result = session.send("go")

        assert result.aborted is True
        assert result.aborted_reason.startswith("model error: Unusable response")
        assert session.state is TurnState.ABORTED
        assert len(provider.calls) == 1
        assert handler.of_type(ToolCallStarted) == []
        messages = session.memory.snapshot()
        assert [m.role for m in messages] == ["user"]
        _assert_paired(messages)

        assert session.send("again").text == "recovered"
        assert session.state is TurnState.AWAITING_USER_INPUT

    def test_unexpected_provider_error(self, temp_workspace, temp_dir, make_calls):
        """Errors outside the LLMError hierarchy abort too."""
        (temp_dir / "a.txt").write_text("a")
        boom = RuntimeError("boom")
        session, _ = _session(temp_workspace, [
            make_calls(("read_file", {"path": "a.txt"})),
            boom,
            FinalMessage("fine now"),
        ])

        result = session.send("read")

        assert result.aborted is True
        assert result.aborted_reason == "unexpected error: RuntimeError: boom"
        assert result.error.__cause__ is boom
        assert session.state is TurnState.ABORTED
        _assert_paired(session.memory.snapshot())
        assert session.memory.at_safe_boundary is True

        assert session.send("retry").text == "fine now"

    def test_cancel_answers_remaining_calls(self, temp_workspace, make_calls):
        """Calls cut off by a cancel still get results."""
        registry = build_default_registry(workspace=temp_workspace)
        tool = _CancelDuringRun()
        registry.register_instance(tool)
        handler = RecordingEventHandler()
        session, provider = _session(temp_workspace, [
            make_calls(("cancel_me", {}), ("cancel_me", {})),
            FinalMessage("never reached"),
        ], handler=handler, registry=registry)
        tool.session = session

        result = session.send("go")

        assert result.aborted is True
        assert result.aborted_reason == "cancelled by user"
        assert tool.runs == 1
        assert len(provider.calls) == 1

        messages = session.memory.snapshot()
        _assert_paired(messages)
        assert messages[-1].is_error is True
        assert messages[-1].content == "Error: turn aborted: cancelled by user"
        assert len(handler.of_type(ToolCallFinished)) == 2

    def test_cancel_while_waiting_for_model(self, temp_workspace):
        """Cancelling abandons an in-flight model request."""
        provider = _BlockingProvider()
        session = ChatSession(provider, build_default_registry(workspace=temp_workspace))
        threading.Timer(0.2, session.cancel).start()

        try:
            result = session.send("hi")
        finally:
            provider.release.set()

        assert result.aborted is True
        assert result.aborted_reason == "cancelled by user"
        assert [m.role for m in session.memory.snapshot()] == ["user"]

    def test_keyboard_interrupt(self, temp_workspace, make_calls):
        """Ctrl+C during a tool aborts the turn cleanly."""
        class _Interrupt(Tool):
            name = "interrupt"
            description = "Raises KeyboardInterrupt"

            def execute(self, **kwargs):
                raise KeyboardInterrupt

            def get_schema(self):
                return {"properties": {}, "required": []}

        registry = build_default_registry(workspace=temp_workspace)
        registry.register_instance(_Interrupt())
        session, _ = _session(temp_workspace, [
            make_calls(("interrupt", {})),
        ], registry=registry)

        result = session.send("go")

        assert result.aborted is True
        _assert_paired(session.memory.snapshot())
        assert session.memory.snapshot()[-1].tool_call_id == "call_1"
