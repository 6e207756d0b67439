"""LLM subsystem.

Provides:
- Message / ToolCall data model and the FinalMessage | ToolCalls response union
- LLMProvider base class with retry and backoff
- AnthropicProvider, OpenAIProvider and CustomLLMProvider implementations
- MockLLMProvider for testing
- LLMError classes for structured error handling
"""

from typing import Optional, TYPE_CHECKING

from codeloop.llm.base import (
    LLMProvider,
    Message,
    ToolCall,
    FinalMessage,
    ToolCalls,
    ModelResponse,
    MockLLMProvider,
    is_transient,
    check_response,
    # Error classes
    LLMError,
    APIKeyError,
    ConnectionError,
    RateLimitError,
    ServiceUnavailableError,
    ModelError,
    ContextLengthError,
    ResponseParseError,
    ModelTransientError,
    ModelFatalError,
)
from codeloop.llm.anthropic import AnthropicProvider
from codeloop.llm.openai import OpenAIProvider, CustomLLMProvider

if TYPE_CHECKING:
    from codeloop.config import Config


def create_provider(config: "Config") -> Optional[LLMProvider]:
    """Create the LLM provider named by the config.

    Returns None when the provider is unknown or lacks credentials.
    """
    provider_name = config.llm_provider.lower()
    ssl_verify = config.get_ssl_context()

    if provider_name == "anthropic":
        if not config.api_key:
            return None
        provider = AnthropicProvider(
            api_key=config.api_key,
            model=config.llm_model,
            max_tokens=config.max_tokens,
            debug=config.debug,
            ssl_verify=ssl_verify,
        )
    elif provider_name == "openai":
        if not config.api_key:
            return None
        provider = OpenAIProvider(
            api_key=config.api_key,
            model=config.llm_model,
            base_url=config.base_url or None,
            max_tokens=config.max_tokens,
            debug=config.debug,
            ssl_verify=ssl_verify,
        )
    elif provider_name == "custom":
        if not config.base_url:
            return None
        provider = CustomLLMProvider(
            base_url=config.base_url,
            model=config.llm_model,
            api_key=config.api_key,
            max_tokens=config.max_tokens,
            debug=config.debug,
            ssl_verify=ssl_verify,
        )
    else:
        return None

    provider.max_retries = config.max_retries
    provider.retry_delay = config.retry_delay
    return provider


__all__ = [
    # Core classes
    "LLMProvider",
    "Message",
    "ToolCall",
    "FinalMessage",
    "ToolCalls",
    "ModelResponse",
    "MockLLMProvider",
    "is_transient",
    "check_response",
    "create_provider",
    # Providers
    "AnthropicProvider",
    "OpenAIProvider",
    "CustomLLMProvider",
    # Errors
    "LLMError",
    "APIKeyError",
    "ConnectionError",
    "RateLimitError",
    "ServiceUnavailableError",
    "ModelError",
    "ContextLengthError",
    "ResponseParseError",
    "ModelTransientError",
    "ModelFatalError",
]
