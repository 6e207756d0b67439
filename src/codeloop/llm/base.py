"""Abstract LLM interface and the conversation data model."""

import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Sequence, Union

from codeloop.tools.base import ToolDescriptor


# =============================================================================
# Errors
# =============================================================================

def _with_detail(summary: str, detail: str) -> str:
    return f"{summary}: {detail}" if detail else summary


class LLMError(Exception):
    """A model request failed.

    ``transient`` errors are retried by the provider; anything else ends
    the turn. Subclasses set ``hint`` as their default suggestion.
    """

    transient: bool = False
    hint: str = ""

    def __init__(self, message: str, provider: str = "", suggestion: Optional[str] = None):
        self.message = message
        self.provider = provider
        self.suggestion = self.hint if suggestion is None else suggestion
        super().__init__(self.format_message())

    def format_message(self) -> str:
        text = f"[{self.provider}] {self.message}" if self.provider else self.message
        if self.suggestion:
            text += f"\n  Suggestion: {self.suggestion}"
        return text


class APIKeyError(LLMError):
    """No credentials, or the API refused them."""

    def __init__(self, provider: str):
        super().__init__(
            "API key not configured or rejected",
            provider,
            f"Set {provider.upper()}_API_KEY or CODELOOP_API_KEY",
        )


class ConnectionError(LLMError):
    transient = True
    hint = "Check the network and the configured base_url"

    def __init__(self, provider: str, details: str = ""):
        super().__init__(_with_detail("Connection failed", details), provider)


class RateLimitError(LLMError):
    """Too many requests. retry_after is the server's hint in seconds, 0 if none."""

    transient = True
    hint = "Requests are being throttled; slow down or wait"

    def __init__(self, provider: str, retry_after: float = 0):
        self.retry_after = retry_after
        message = "Rate limit exceeded"
        if retry_after:
            message += f" (retry after {retry_after:g}s)"
        super().__init__(message, provider)


class ServiceUnavailableError(LLMError):
    """Overloaded or 5xx."""

    transient = True
    hint = "The service is having trouble; try again shortly"

    def __init__(self, provider: str, details: str = ""):
        super().__init__(_with_detail("Service unavailable", details), provider)


class ModelError(LLMError):
    hint = "Check the model name and what your plan gives access to"

    def __init__(self, provider: str, model: str):
        self.model = model
        super().__init__(f"Model '{model}' not available", provider)


class ContextLengthError(LLMError):
    """The conversation no longer fits the model's context window."""

    hint = "Use /clear to start over, or lower memory_max_tokens"

    def __init__(self, provider: str, limit: int = 0):
        message = "Context length exceeded"
        if limit:
            message += f" (limit: {limit} tokens)"
        super().__init__(message, provider)


class ResponseParseError(LLMError):
    hint = "The reply was malformed; retrying the turn may help"

    def __init__(self, provider: str, details: str = ""):
        super().__init__(_with_detail("Unusable response", details), provider)


# Aliases for callers that only care about the classification
ModelTransientError = (ConnectionError, RateLimitError, ServiceUnavailableError)
ModelFatalError = LLMError


def is_transient(error: BaseException) -> bool:
    """Whether an error is worth retrying."""
    return isinstance(error, LLMError) and error.transient


def retry_after_seconds(error: Exception) -> float:
    """The retry-after header of an SDK error's HTTP response, 0 if absent."""
    response = getattr(error, "response", None)
    if response is None:
        return 0
    try:
        return float(response.headers.get("retry-after", 0))
    except (TypeError, ValueError):
        return 0


# =============================================================================
# Conversation data model
# =============================================================================

@dataclass(frozen=True)
class ToolCall:
    """A tool call from the LLM."""
    id: str
    name: str
    arguments: dict = field(default_factory=dict)

    def __post_init__(self):
        # Private copy so later mutation by the caller can't leak in
        object.__setattr__(self, "arguments", dict(self.arguments or {}))


@dataclass(frozen=True)
class Message:
    """A conversation message.

    Roles are "user", "assistant" (optionally carrying tool calls) and
    "tool" (the result of exactly one call, matched by tool_call_id).
    """
    role: Literal["user", "assistant", "tool"]
    content: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: Optional[str] = None
    is_error: bool = False

    def __post_init__(self):
        if self.role not in ("user", "assistant", "tool"):
            raise ValueError(f"invalid message role: {self.role!r}")
        object.__setattr__(self, "tool_calls", tuple(self.tool_calls))
        if self.tool_calls and self.role != "assistant":
            raise ValueError("only assistant messages can carry tool calls")
        if self.role == "tool" and not self.tool_call_id:
            raise ValueError("tool messages need a tool_call_id")
        if self.role != "tool" and (self.tool_call_id or self.is_error):
            raise ValueError("tool_call_id and is_error apply to tool messages only")

    @classmethod
    def user(cls, text: str) -> "Message":
        return cls(role="user", content=text)

    @classmethod
    def assistant(cls, text: str = "", tool_calls: Sequence[ToolCall] = ()) -> "Message":
        return cls(role="assistant", content=text, tool_calls=tuple(tool_calls))

    @classmethod
    def tool_result(cls, call_id: str, content: str, is_error: bool = False) -> "Message":
        return cls(role="tool", content=content, tool_call_id=call_id, is_error=is_error)


@dataclass(frozen=True)
class FinalMessage:
    """The model answered in plain text; the turn is over."""
    text: str
    kind: Literal["final"] = "final"


@dataclass(frozen=True)
class ToolCalls:
    """The model wants one or more tools run before it continues."""
    calls: tuple[ToolCall, ...]
    text: str = ""
    kind: Literal["tool_calls"] = "tool_calls"

    def __post_init__(self):
        object.__setattr__(self, "calls", tuple(self.calls))
        if not self.calls:
            raise ValueError("ToolCalls needs at least one call")


ModelResponse = Union[FinalMessage, ToolCalls]


def check_response(response, provider: str = "") -> ModelResponse:
    """Reject responses that cannot go into conversation memory.

    Raises:
        ResponseParseError: Not a FinalMessage or ToolCalls, or a tool call
            lacks an id or name, or two calls share an id.
    """
    if isinstance(response, FinalMessage):
        if not isinstance(response.text, str):
            raise ResponseParseError(provider, "final answer text is not a string")
        return response
    if not isinstance(response, ToolCalls):
        raise ResponseParseError(provider, f"unexpected response type {type(response).__name__}")

    seen = set()
    for call in response.calls:
        if not call.id or not isinstance(call.id, str):
            raise ResponseParseError(provider, f"tool call '{call.name}' has no id")
        if not call.name or not isinstance(call.name, str):
            raise ResponseParseError(provider, f"tool call {call.id} has no name")
        if call.id in seen:
            raise ResponseParseError(provider, f"duplicate tool call id {call.id}")
        seen.add(call.id)
    return response


class LLMProvider(ABC):
    """One model backend.

    Subclasses implement a single request in ``_complete`` and report
    whether they have credentials in ``is_available``. ``complete`` adds
    the credential check and the retry policy on top.
    """

    name: str = "LLM"
    debug: bool = False
    max_retries: int = 3  # total attempts, not extra ones
    retry_delay: float = 1.0

    def complete(
        self,
        messages: Sequence[Message],
        tools: Sequence[ToolDescriptor] = (),
        system: str = None,
    ) -> ModelResponse:
        """Ask the model for its next step.

        Args:
            messages: Conversation so far, oldest first.
            tools: Tools the model may call.
            system: Optional system prompt.

        Returns:
            FinalMessage or ToolCalls.

        Raises:
            LLMError: Credentials are missing, a fatal error occurred, or
                transient errors outlasted every attempt.
            ResponseParseError: The response cannot be recorded as is.
        """
        if not self.is_available():
            raise APIKeyError(self.name)
        response = self._retry_with_backoff(
            self._complete, list(messages), list(tools), system
        )
        return check_response(response, self.name)

    @abstractmethod
    def _complete(
        self,
        messages: list[Message],
        tools: list[ToolDescriptor],
        system: Optional[str],
    ) -> ModelResponse:
        """Perform one request; raise LLMError subclasses on failure."""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        pass

    def _log_debug(self, label: str, data: Any) -> None:
        if not self.debug:
            return
        try:
            text = json.dumps(data, indent=2, default=str)
        except (TypeError, ValueError):
            text = str(data)
        print(f"\033[90m[{self.name} {label}]\n{text}\033[0m")

    def _sleep(self, seconds: float) -> None:
        time.sleep(seconds)

    def _backoff(self, attempt: int, error: LLMError) -> float:
        """Seconds to wait after a failed attempt (0-based)."""
        hint = getattr(error, "retry_after", 0)
        return hint if hint else self.retry_delay * (2 ** attempt)

    def _retry_with_backoff(self, func, *args, **kwargs):
        """Call func, retrying transient LLMErrors up to max_retries attempts in all.

        Fatal errors propagate at once. When attempts run out the last
        transient error is raised.
        """
        attempts = max(1, self.max_retries)
        for attempt in range(attempts):
            try:
                return func(*args, **kwargs)
            except LLMError as e:
                if not e.transient or attempt == attempts - 1:
                    raise
                delay = self._backoff(attempt, e)
                if self.debug:
                    print(f"\033[33m[{self.name}] {type(e).__name__}, retrying in {delay:g}s\033[0m")
                self._sleep(delay)


class MockLLMProvider(LLMProvider):
    """Scripted provider for tests and offline runs.

    Responses (or exceptions to raise) are consumed in order, and every
    request is recorded in ``calls``. Once the script is used up the last
    user message is echoed back as a final answer.
    """

    name = "Mock"

    def __init__(self, responses: Sequence[Union[ModelResponse, Exception]] = ()):
        self.responses: list = list(responses)
        self.calls: list[dict] = []
        self.retry_delay = 0.0
        self._next = 0

    def add_response(self, response: Union[ModelResponse, str, Exception]) -> None:
        """Queue a response. Plain strings become FinalMessages."""
        self.responses.append(FinalMessage(response) if isinstance(response, str) else response)

    def _complete(
        self,
        messages: list[Message],
        tools: list[ToolDescriptor],
        system: Optional[str],
    ) -> ModelResponse:
        self.calls.append({
            "messages": tuple(messages),
            "tools": [t.name for t in tools],
            "system": system,
        })

        if self._next >= len(self.responses):
            prompts = [m.content for m in messages if m.role == "user"]
            return FinalMessage(f"[Mock] Received: {prompts[-1] if prompts else 'No message'}")

        scripted = self.responses[self._next]
        self._next += 1
        if isinstance(scripted, BaseException):
            raise scripted
        return scripted

    def _sleep(self, seconds: float) -> None:
        pass

    def is_available(self) -> bool:
        return True
