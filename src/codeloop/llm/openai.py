"""Provider for the Chat Completions API: OpenAI itself and compatible servers."""

import json
from typing import Optional

import httpx
import openai

from codeloop.llm.base import (
    LLMProvider, Message, ModelResponse, FinalMessage, ToolCall, ToolCalls,
    LLMError, APIKeyError, ConnectionError, RateLimitError,
    ServiceUnavailableError, ModelError, ContextLengthError, ResponseParseError,
    retry_after_seconds,
)
from codeloop.tools.base import ToolDescriptor


def _parse_openai_error(e: Exception, model: str = "", provider: str = "OpenAI") -> LLMError:
    """Map an SDK exception onto the LLMError hierarchy."""
    if isinstance(e, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return APIKeyError(provider)
    if isinstance(e, openai.RateLimitError):
        return RateLimitError(provider, retry_after_seconds(e))
    if isinstance(e, openai.NotFoundError):
        return ModelError(provider, model)
    if isinstance(e, openai.BadRequestError):
        text = str(e).lower()
        if "maximum context" in text or "context_length" in text:
            return ContextLengthError(provider)
        return LLMError(str(e), provider, "The request was rejected as malformed")
    if isinstance(e, openai.InternalServerError):
        return ServiceUnavailableError(provider, str(e))
    if isinstance(e, openai.APIConnectionError):
        return ConnectionError(provider, str(e))
    return LLMError(str(e), provider)


def _function_call(call: ToolCall) -> dict:
    return {
        "id": call.id,
        "type": "function",
        "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
    }


def to_openai_messages(messages: list[Message], system: Optional[str] = None) -> list[dict]:
    """Conversation history in Chat Completions form, system prompt first."""
    converted = [{"role": "system", "content": system}] if system else []

    for msg in messages:
        if msg.role == "tool":
            entry = {"role": "tool", "tool_call_id": msg.tool_call_id, "content": msg.content}
        elif msg.tool_calls:
            entry = {
                "role": "assistant",
                "content": msg.content or None,
                "tool_calls": [_function_call(c) for c in msg.tool_calls],
            }
        else:
            entry = {"role": msg.role, "content": msg.content}
        converted.append(entry)

    return converted


def to_openai_tools(tools: list[ToolDescriptor]) -> list[dict]:
    return [
        {
            "type": "function",
            "function": {
                "name": t.name,
                "description": t.description,
                "parameters": t.input_schema,
            },
        }
        for t in tools
    ]


class OpenAIProvider(LLMProvider):
    """Any Chat Completions model (gpt-4o, o1, ...), optionally behind a custom base_url."""

    name = "OpenAI"

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        base_url: Optional[str] = None,
        max_tokens: int = 4096,
        debug: bool = False,
        ssl_verify: bool | str = True,
        client=None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.max_tokens = max_tokens
        self.debug = debug
        self.ssl_verify = ssl_verify
        self._client = client

    @property
    def client(self):
        if self._client is None and self.is_available():
            # Keyless local servers still need a placeholder for the SDK
            options = {"api_key": self.api_key or "not-needed"}
            if self.base_url:
                options["base_url"] = self.base_url
            if self.ssl_verify is not True:
                options["http_client"] = httpx.Client(verify=self.ssl_verify)
            self._client = openai.OpenAI(**options)
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
            "messages": to_openai_messages(messages, system),
        }
        if tools:
            request["tools"] = to_openai_tools(tools)

        self._log_debug("REQUEST", {
            "model": self.model,
            "base_url": self.base_url,
            "messages": len(request["messages"]),
            "tools": [t.name for t in tools],
        })

        try:
            response = self.client.chat.completions.create(**request)
        except openai.APIError as e:
            raise _parse_openai_error(e, self.model, self.name) from e
        except httpx.HTTPError as e:
            raise ConnectionError(self.name, str(e)) from e

        result = self._parse_response(response)
        self._log_debug("RESPONSE", {"kind": result.kind})
        return result

    def _decode_arguments(self, function) -> dict:
        """JSON arguments of one function call, which must decode to an object."""
        try:
            arguments = json.loads(function.arguments or "{}")
        except json.JSONDecodeError as e:
            raise ResponseParseError(
                self.name, f"arguments for '{function.name}' are not valid JSON: {e}"
            ) from e
        if not isinstance(arguments, dict):
            raise ResponseParseError(self.name, f"arguments for '{function.name}' are not an object")
        return arguments

    def _parse_response(self, response) -> ModelResponse:
        choices = getattr(response, "choices", None)
        if not choices:
            raise ResponseParseError(self.name, "response has no choices")

        message = choices[0].message
        calls = tuple(
            ToolCall(tc.id, tc.function.name, self._decode_arguments(tc.function))
            for tc in message.tool_calls or ()
        )
        text = message.content or ""
        return ToolCalls(calls=calls, text=text) if calls else FinalMessage(text)


class CustomLLMProvider(OpenAIProvider):
    """A self-hosted OpenAI-compatible server (Ollama, LM Studio, vLLM, ...).

    Such servers rarely check keys, so a base URL alone makes it available.
    """

    name = "Custom"

    def __init__(
        self,
        base_url: str,
        model: str = "llama3",
        api_key: str = "",
        max_tokens: int = 4096,
        debug: bool = False,
        ssl_verify: bool | str = True,
        client=None,
    ):
        super().__init__(
            api_key, model=model, base_url=base_url, max_tokens=max_tokens,
            debug=debug, ssl_verify=ssl_verify, client=client,
        )

    def is_available(self) -> bool:
        return self._client is not None or bool(self.base_url)
