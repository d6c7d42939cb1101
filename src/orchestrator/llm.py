"""LLM Integration Layer using LlamaIndex.

Supports multiple LLM providers via LlamaIndex-compatible packages:
- OpenAI
- Azure OpenAI

The LLM has no direct tool host access; it only proposes tool calls.
"""

from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Optional

from shared.config import LLMSettings
from shared.logging import get_logger
from shared.models import ConversationMessage, LLMResponse, ToolCallRequest

logger = get_logger(__name__)


class CompletionEndpointError(Exception):
    """The completion endpoint could not produce a response."""
    pass


class LLMProvider(ABC):
    """
    Abstract base class for LLM providers.

    LLM Integration Rules:
    - LLM receives the conversation and the translated tool schemas
    - LLM outputs text, tool call requests, or both
    - LLM never executes tools itself
    """

    @abstractmethod
    async def complete(
        self,
        messages: list[ConversationMessage],
        tools: Optional[list[dict[str, Any]]] = None,
        tool_choice: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None
    ) -> LLMResponse:
        """
        Generate a completion from the LLM.

        Args:
            messages: Conversation history
            tools: Available tools in OpenAI function format
            tool_choice: Tool choice mode, e.g. "auto"
            temperature: Sampling temperature
            max_tokens: Maximum tokens to generate

        Returns:
            LLM response with content and/or tool calls

        Raises:
            CompletionEndpointError: If the endpoint call fails
        """
        pass


def _tool_calls_from_raw(raw_calls: Optional[list[Any]]) -> list[ToolCallRequest]:
    """Normalise tool calls from OpenAI SDK objects or plain dicts."""
    calls = []
    for tc in raw_calls or []:
        if isinstance(tc, dict):
            function = tc.get("function", {})
            calls.append(ToolCallRequest(
                id=tc["id"],
                tool_name=function.get("name", ""),
                raw_arguments=function.get("arguments") or ""
            ))
        else:
            calls.append(ToolCallRequest(
                id=tc.id,
                tool_name=tc.function.name,
                raw_arguments=tc.function.arguments or ""
            ))
    return calls


def _finish_reason(raw: Any) -> Optional[str]:
    """Read ``choices[0].finish_reason`` from a raw OpenAI response, if present."""
    if raw is None:
        return None
    choices = raw.get("choices") if isinstance(raw, dict) else getattr(raw, "choices", None)
    if not choices:
        return None
    first = choices[0]
    if isinstance(first, dict):
        return first.get("finish_reason")
    return getattr(first, "finish_reason", None)


class LlamaIndexProvider(LLMProvider):
    """Shared plumbing for providers backed by a LlamaIndex chat LLM."""

    def __init__(self, settings: LLMSettings) -> None:
        self.settings = settings
        self._llm = None

    @abstractmethod
    def _build_llm(self):
        """Construct the LlamaIndex LLM instance."""
        pass

    def _get_llm(self):
        """Lazy initialization of LlamaIndex LLM."""
        if self._llm is None:
            self._llm = self._build_llm()
        return self._llm

    def _convert_messages(self, messages: list[ConversationMessage]) -> list:
        """Convert internal messages to LlamaIndex format."""
        from llama_index.core.llms import ChatMessage, MessageRole

        role_map = {
            "user": MessageRole.USER,
            "assistant": MessageRole.ASSISTANT,
            "system": MessageRole.SYSTEM,
            "tool": MessageRole.TOOL,
        }

        result = []
        for msg in messages:
            extra: dict[str, Any] = {}
            if msg.tool_calls:
                extra["tool_calls"] = [call.to_openai() for call in msg.tool_calls]
            if msg.tool_call_id:
                extra["tool_call_id"] = msg.tool_call_id

            result.append(ChatMessage(
                role=role_map[msg.role],
                content=msg.content,
                additional_kwargs=extra,
            ))

        return result

    async def complete(
        self,
        messages: list[ConversationMessage],
        tools: Optional[list[dict[str, Any]]] = None,
        tool_choice: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None
    ) -> LLMResponse:
        """Generate a completion, passing tool schemas straight to the API."""
        kwargs: dict[str, Any] = {}
        if tools:
            kwargs["tools"] = tools
            if tool_choice:
                kwargs["tool_choice"] = tool_choice
        if temperature is not None:
            kwargs["temperature"] = temperature
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens

        try:
            llm = self._get_llm()
            response = await llm.achat(self._convert_messages(messages), **kwargs)
        except Exception as e:
            logger.error("LLM completion failed", error=str(e))
            raise CompletionEndpointError(f"Completion request failed: {e}") from e

        message = response.message
        tool_calls = _tool_calls_from_raw(message.additional_kwargs.get("tool_calls"))
        usage = {
            k: v for k, v in (response.additional_kwargs or {}).items()
            if isinstance(v, int)
        }
        finish_reason = _finish_reason(getattr(response, "raw", None))

        return LLMResponse(
            content=message.content,
            tool_calls=tool_calls,
            finish_reason=finish_reason or ("tool_calls" if tool_calls else "stop"),
            usage=usage
        )


class OpenAIProvider(LlamaIndexProvider):
    """OpenAI LLM provider using LlamaIndex."""

    def _build_llm(self):
        from llama_index.llms.openai import OpenAI

        return OpenAI(
            model=self.settings.model,
            api_key=self.settings.api_key,
            api_base=self.settings.api_base,
            temperature=self.settings.temperature,
            max_tokens=self.settings.max_tokens,
        )


class AzureOpenAIProvider(LlamaIndexProvider):
    """Azure OpenAI LLM provider using LlamaIndex."""

    def _build_llm(self):
        from llama_index.llms.azure_openai import AzureOpenAI

        return AzureOpenAI(
            engine=self.settings.deployment_name or self.settings.model,
            model=self.settings.model,
            api_key=self.settings.api_key,
            azure_endpoint=self.settings.api_base,
            api_version=self.settings.api_version,
            temperature=self.settings.temperature,
            max_tokens=self.settings.max_tokens,
        )


class MockLLMProvider(LLMProvider):
    """Mock LLM provider for testing without API calls."""

    def __init__(self, settings: Optional[LLMSettings] = None) -> None:
        self.settings = settings
        self.call_history: list[dict[str, Any]] = []
        self._responses: deque[LLMResponse] = deque()

    def set_next_response(self, response: LLMResponse) -> None:
        """Queue the next response to return."""
        self._responses.append(response)

    def queue_responses(self, *responses: LLMResponse) -> None:
        """Queue several responses, returned in order."""
        self._responses.extend(responses)

    async def complete(
        self,
        messages: list[ConversationMessage],
        tools: Optional[list[dict[str, Any]]] = None,
        tool_choice: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None
    ) -> LLMResponse:
        """Return the next queued response, or a canned one."""
        self.call_history.append({
            "messages": list(messages),
            "tools": tools,
            "tool_choice": tool_choice,
            "temperature": temperature,
            "max_tokens": max_tokens
        })

        if self._responses:
            return self._responses.popleft()

        return LLMResponse(
            content="This is a mock response.",
            finish_reason="stop",
            usage={"prompt_tokens": 10, "completion_tokens": 5}
        )


def create_llm_provider(settings: LLMSettings) -> LLMProvider:
    """
    Factory function to create appropriate LLM provider.

    Supports:
    - openai: OpenAI API
    - azure_openai: Azure OpenAI Service
    - mock: Mock provider for testing

    Args:
        settings: LLM configuration settings

    Returns:
        Configured LLM provider

    Raises:
        ValueError: If provider is not supported
    """
    providers = {
        "openai": OpenAIProvider,
        "azure_openai": AzureOpenAIProvider,
        "mock": MockLLMProvider,
    }

    provider_class = providers.get(settings.provider)
    if not provider_class:
        raise ValueError(
            f"Unsupported LLM provider: {settings.provider}. "
            f"Supported: {list(providers.keys())}"
        )

    logger.info("Creating LLM provider", provider=settings.provider, model=settings.model)
    return provider_class(settings)
