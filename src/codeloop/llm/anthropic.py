"""Provider for the Anthropic Messages API."""

from typing import Optional

import anthropic
import httpx

from codeloop.llm.base import (
    LLMProvider, Message, ModelResponse, FinalMessage, ToolCall, ToolCalls,
    LLMError, APIKeyError, ConnectionError, RateLimitError,
    ServiceUnavailableError, ModelError, ContextLengthError, ResponseParseError,
    retry_after_seconds,
)
from codeloop.tools.base import ToolDescriptor

PROVIDER = "Anthropic"
DEFAULT_MODEL = "claude-sonnet-4-20250514"


def _parse_anthropic_error(e: Exception, model: str = "") -> LLMError:
    """Map an SDK exception onto the LLMError hierarchy."""
    if isinstance(e, (anthropic.AuthenticationError, anthropic.PermissionDeniedError)):
        return APIKeyError(PROVIDER)
    if isinstance(e, anthropic.RateLimitError):
        return RateLimitError(PROVIDER, retry_after_seconds(e))
    if isinstance(e, anthropic.NotFoundError):
        return ModelError(PROVIDER, model)
    if isinstance(e, anthropic.BadRequestError):
        text = str(e).lower()
        if "too long" in text or "context length" in text:
            return ContextLengthError(PROVIDER)
        return LLMError(str(e), PROVIDER, "The request was rejected as malformed")
    if isinstance(e, anthropic.InternalServerError):
        return ServiceUnavailableError(PROVIDER, str(e))
    # APITimeoutError is a subclass
    if isinstance(e, anthropic.APIConnectionError):
        return ConnectionError(PROVIDER, str(e))
    return LLMError(str(e), PROVIDER)


def to_anthropic_messages(messages: list[Message]) -> list[dict]:
    """Conversation history in Messages API form.

    Assistant tool calls become tool_use blocks. Tool results become
    tool_result blocks in a user entry, and adjacent user-side entries are
    merged so that roles alternate.
    """
    converted: list[dict] = []

    for msg in messages:
        if msg.role == "assistant":
            blocks = [{"type": "text", "text": msg.content}] if msg.content else []
            blocks.extend(
                {"type": "tool_use", "id": c.id, "name": c.name, "input": dict(c.arguments)}
                for c in msg.tool_calls
            )
            converted.append({
                "role": "assistant",
                "content": blocks or [{"type": "text", "text": "(no content)"}],
            })
            continue

        if msg.role == "tool":
            block = {"type": "tool_result", "tool_use_id": msg.tool_call_id, "content": msg.content}
            if msg.is_error:
                block["is_error"] = True
        else:
            block = {"type": "text", "text": msg.content}

        if converted and converted[-1]["role"] == "user":
            converted[-1]["content"].append(block)
        else:
            converted.append({"role": "user", "content": [block]})

    return converted


def to_anthropic_tools(tools: list[ToolDescriptor]) -> list[dict]:
    return [
        {"name": t.name, "description": t.description, "input_schema": t.input_schema}
        for t in tools
    ]


class AnthropicProvider(LLMProvider):
    """Claude models over the Messages API.

    The SDK client is built on first use. Pass ``client`` to supply one
    directly; it only needs a ``messages.create`` method.
    """

    name = PROVIDER

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        max_tokens: int = 4096,
        debug: bool = False,
        ssl_verify: bool | str = True,
        client=None,
    ):
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.debug = debug
        self.ssl_verify = ssl_verify
        self._client = client

    @property
    def client(self):
        if self._client is None and self.api_key:
            options = {"api_key": self.api_key}
            # True is the SDK default; anything else needs our own transport
            if self.ssl_verify is not True:
                options["http_client"] = httpx.Client(verify=self.ssl_verify)
            self._client = anthropic.Anthropic(**options)
        return self._client

    def is_available(self) -> bool:
        return self._client is not None or bool(self.api_key)

    def _complete(
        self,
        messages: list[Message],
        tools: list[ToolDescriptor],
        system: Optional[str],
    ) -> ModelResponse:
        request = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": to_anthropic_messages(messages),
        }
        if system:
            request["system"] = system
        if tools:
            request["tools"] = to_anthropic_tools(tools)

        self._log_debug("REQUEST", {
            "model": self.model,
            "messages": len(request["messages"]),
            "tools": [t.name for t in tools],
        })

        try:
            response = self.client.messages.create(**request)
        except anthropic.APIError as e:
            raise _parse_anthropic_error(e, self.model) from e
        except httpx.HTTPError as e:
            raise ConnectionError(PROVIDER, str(e)) from e

        result = self._parse_response(response)
        self._log_debug("RESPONSE", {
            "stop_reason": getattr(response, "stop_reason", None),
            "kind": result.kind,
        })
        return result

    def _parse_response(self, response) -> ModelResponse:
        blocks = getattr(response, "content", None)
        if blocks is None:
            raise ResponseParseError(PROVIDER, "response has no content")

        texts = []
        calls = []
        for block in blocks:
            if block.type == "text":
                texts.append(block.text)
            elif block.type == "tool_use":
                if not isinstance(block.input, dict):
                    raise ResponseParseError(
                        PROVIDER, f"tool_use '{block.name}' input is not an object"
                    )
                calls.append(ToolCall(block.id, block.name, block.input))

        text = "\n".join(texts)
        return ToolCalls(calls=tuple(calls), text=text) if calls else FinalMessage(text)
