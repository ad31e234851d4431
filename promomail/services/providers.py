"""Provider adapters.

Each backend convention gets its own reply dataclass, read from the SDK
response by a ``read_*`` function and converted to the shared shapes
(``ModelTurn`` inside a tool loop, ``Completion`` at the edge) by an explicit
adapter function. Business logic never probes provider fields directly.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, ClassVar, Protocol, Sequence

import anthropic
import openai

from promomail.config import settings
from promomail.exceptions import ConfigurationError, EmptyResponseError, ProviderResponseError
from promomail.schemas.usage import Completion, UsageRecord
from promomail.services.model_registry import ModelConfiguration, Provider
from promomail.services.pricing import format_cost, priced_usage

logger = logging.getLogger(__name__)

FETCH_URL_TOOL = {
    "name": "fetch_url",
    "description": "Fetches the HTML content of a URL",
    "input_schema": {
        "type": "object",
        "properties": {
            "url": {
                "type": "string",
                "description": "The URL to fetch",
            }
        },
        "required": ["url"],
    },
}

TOOLS = [FETCH_URL_TOOL]


def to_chat_tools(tools: Sequence[dict]) -> list[dict]:
    """Anthropic-style tool declarations -> OpenAI function tools."""
    return [
        {
            "type": "function",
            "function": {
                "name": tool["name"],
                "description": tool["description"],
                "parameters": tool["input_schema"],
            },
        }
        for tool in tools
    ]


# ---------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------

_MISSING_KEY_MESSAGES = {
    Provider.ANTHROPIC: "Anthropic API key is not configured. Please set ANTHROPIC_API_KEY environment variable.",
    Provider.OPENAI: "OpenAI API key is not configured. Please set OPENAI_API_KEY environment variable.",
    Provider.XAI: "xAI API key is not configured. Please set XAI_API_KEY environment variable.",
}


def _api_key(provider: Provider) -> str:
    return {
        Provider.ANTHROPIC: settings.anthropic_api_key,
        Provider.OPENAI: settings.openai_api_key,
        Provider.XAI: settings.xai_api_key,
    }[provider]


def require_credentials(config: ModelConfiguration) -> None:
    """Fail before any network call when a needed key is missing."""
    for provider in sorted(config.providers_used, key=lambda p: p.value):
        if not _api_key(provider):
            raise ConfigurationError(_MISSING_KEY_MESSAGES[provider])


def get_anthropic_client() -> anthropic.AsyncAnthropic:
    if not settings.anthropic_api_key:
        raise ConfigurationError(_MISSING_KEY_MESSAGES[Provider.ANTHROPIC])
    return anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key)


def get_openai_client() -> openai.AsyncOpenAI:
    if not settings.openai_api_key:
        raise ConfigurationError(_MISSING_KEY_MESSAGES[Provider.OPENAI])
    return openai.AsyncOpenAI(api_key=settings.openai_api_key)


def get_xai_client() -> openai.AsyncOpenAI:
    if not settings.xai_api_key:
        raise ConfigurationError(_MISSING_KEY_MESSAGES[Provider.XAI])
    return openai.AsyncOpenAI(api_key=settings.xai_api_key, base_url=settings.xai_base_url)


# ---------------------------------------------------------------
# Shared shapes
# ---------------------------------------------------------------

@dataclass(frozen=True)
class ToolRequest:
    id: str
    name: str
    arguments: dict
    argument_error: str | None = None


@dataclass(frozen=True)
class ModelTurn:
    """One model round-trip inside a tool loop, provider-neutral."""

    text: str
    wants_tool: bool
    tool_requests: tuple[ToolRequest, ...]
    usage: UsageRecord
    assistant_message: dict
    finish_reason: str | None = None


class ConversationAdapter(Protocol):
    model_id: str
    label: str

    async def send(self, messages: Sequence[dict]) -> ModelTurn: ...

    def tool_result_messages(self, results: Sequence[tuple[ToolRequest, str]]) -> list[dict]: ...


def ensure_content(text: str | None, provider_label: str) -> str:
    if text is None or not text.strip():
        raise EmptyResponseError(
            f"{provider_label} returned an empty response. "
            "The model may have encountered an error or hit context limits."
        )
    return text


def _missing(provider_label: str, what: str) -> ProviderResponseError:
    return ProviderResponseError(f"Invalid response from {provider_label} API: missing {what}")


def _token_count(usage: Any, name: str) -> int:
    return int(getattr(usage, name, 0) or 0) if usage is not None else 0


# ---------------------------------------------------------------
# Anthropic messages convention
# ---------------------------------------------------------------

@dataclass(frozen=True)
class AnthropicReply:
    convention: ClassVar[str] = "messages"

    stop_reason: str | None
    blocks: list
    text: str
    tool_requests: tuple[ToolRequest, ...]
    input_tokens: int
    output_tokens: int


def read_anthropic_reply(response: Any) -> AnthropicReply:
    blocks = getattr(response, "content", None)
    if not isinstance(blocks, list):
        raise _missing("Anthropic", "content blocks")

    texts = [b.text for b in blocks if getattr(b, "type", None) == "text" and getattr(b, "text", None)]
    requests = tuple(
        ToolRequest(id=b.id, name=b.name, arguments=dict(b.input or {}))
        for b in blocks
        if getattr(b, "type", None) == "tool_use"
    )
    usage = getattr(response, "usage", None)
    return AnthropicReply(
        stop_reason=getattr(response, "stop_reason", None),
        blocks=blocks,
        text="\n".join(texts),
        tool_requests=requests,
        input_tokens=_token_count(usage, "input_tokens"),
        output_tokens=_token_count(usage, "output_tokens"),
    )


def anthropic_turn(reply: AnthropicReply, model_id: str) -> ModelTurn:
    return ModelTurn(
        text=reply.text,
        wants_tool=reply.stop_reason == "tool_use",
        tool_requests=reply.tool_requests,
        usage=priced_usage(model_id, reply.input_tokens, reply.output_tokens),
        assistant_message={"role": "assistant", "content": reply.blocks},
        finish_reason=reply.stop_reason,
    )


class AnthropicMessagesAdapter:
    label = "Anthropic"

    def __init__(
        self,
        client: anthropic.AsyncAnthropic,
        model_id: str,
        max_tokens: int,
        tools: Sequence[dict] | None = None,
    ):
        self.client = client
        self.model_id = model_id
        self.max_tokens = max_tokens
        self.tools = list(tools) if tools else None

    async def send(self, messages: Sequence[dict]) -> ModelTurn:
        kwargs = {"model": self.model_id, "max_tokens": self.max_tokens, "messages": list(messages)}
        if self.tools:
            kwargs["tools"] = self.tools
        response = await self.client.messages.create(**kwargs)
        turn = anthropic_turn(read_anthropic_reply(response), self.model_id)
        logger.info(
            "Claude round-trip: model=%s stop=%s tool_calls=%d tokens=%d",
            self.model_id, turn.finish_reason, len(turn.tool_requests), turn.usage.total_tokens,
        )
        return turn

    def tool_result_messages(self, results: Sequence[tuple[ToolRequest, str]]) -> list[dict]:
        return [{
            "role": "user",
            "content": [
                {"type": "tool_result", "tool_use_id": request.id, "content": text}
                for request, text in results
            ],
        }]


# ---------------------------------------------------------------
# OpenAI-compatible chat convention (OpenAI, xAI)
# ---------------------------------------------------------------

@dataclass(frozen=True)
class ChatReply:
    convention: ClassVar[str] = "chat"

    finish_reason: str | None
    content: str | None
    tool_calls: list = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0


def read_chat_reply(response: Any, provider_label: str = "OpenAI") -> ChatReply:
    choices = getattr(response, "choices", None)
    if not choices:
        raise _missing(provider_label, "choices")
    message = getattr(choices[0], "message", None)
    if message is None:
        raise _missing(provider_label, "message")
    usage = getattr(response, "usage", None)
    return ChatReply(
        finish_reason=getattr(choices[0], "finish_reason", None),
        content=getattr(message, "content", None),
        tool_calls=list(getattr(message, "tool_calls", None) or []),
        input_tokens=_token_count(usage, "prompt_tokens"),
        output_tokens=_token_count(usage, "completion_tokens"),
    )


def _chat_tool_request(call: Any) -> ToolRequest:
    raw = call.function.arguments or "{}"
    try:
        arguments = json.loads(raw)
    except json.JSONDecodeError as e:
        return ToolRequest(id=call.id, name=call.function.name, arguments={}, argument_error=str(e))
    if not isinstance(arguments, dict):
        return ToolRequest(id=call.id, name=call.function.name, arguments={},
                           argument_error="arguments must be a JSON object")
    return ToolRequest(id=call.id, name=call.function.name, arguments=arguments)


def chat_turn(reply: ChatReply, model_id: str) -> ModelTurn:
    assistant = {"role": "assistant", "content": reply.content or None}
    if reply.tool_calls:
        assistant["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.function.name, "arguments": call.function.arguments},
            }
            for call in reply.tool_calls
        ]
    return ModelTurn(
        text=reply.content or "",
        wants_tool=bool(reply.tool_calls),
        tool_requests=tuple(_chat_tool_request(call) for call in reply.tool_calls),
        usage=priced_usage(model_id, reply.input_tokens, reply.output_tokens),
        assistant_message=assistant,
        finish_reason=reply.finish_reason,
    )


class ChatCompletionsAdapter:
    def __init__(
        self,
        client: openai.AsyncOpenAI,
        model_id: str,
        max_tokens: int,
        tools: Sequence[dict] | None = None,
        response_format: dict | None = None,
        label: str = "OpenAI",
    ):
        self.client = client
        self.model_id = model_id
        self.max_tokens = max_tokens
        self.tools = list(tools) if tools else None
        self.response_format = response_format
        self.label = label

    async def _create(self, messages: Sequence[dict]) -> Any:
        kwargs = {"model": self.model_id, "messages": list(messages), "max_tokens": self.max_tokens}
        if self.tools:
            kwargs["tools"] = to_chat_tools(self.tools)
            kwargs["tool_choice"] = "auto"
        if self.response_format:
            kwargs["response_format"] = self.response_format
        return await self.client.chat.completions.create(**kwargs)

    async def send(self, messages: Sequence[dict]) -> ModelTurn:
        turn = chat_turn(read_chat_reply(await self._create(messages), self.label), self.model_id)
        logger.info(
            "%s round-trip: model=%s finish=%s tool_calls=%d tokens=%d",
            self.label, self.model_id, turn.finish_reason, len(turn.tool_requests), turn.usage.total_tokens,
        )
        return turn

    def tool_result_messages(self, results: Sequence[tuple[ToolRequest, str]]) -> list[dict]:
        return [
            {"role": "tool", "tool_call_id": request.id, "content": text}
            for request, text in results
        ]

    async def complete(self, messages: Sequence[dict]) -> Completion:
        """Single call without tools; raises on an empty reply."""
        start = time.monotonic()
        response = await self._create(messages)
        elapsed_ms = int((time.monotonic() - start) * 1000)

        reply = read_chat_reply(response, self.label)
        content = ensure_content(reply.content, self.label)
        usage = priced_usage(self.model_id, reply.input_tokens, reply.output_tokens, elapsed_ms)
        logger.info(
            "%s completion: model=%s tokens=%d cost=%s time=%dms",
            self.label, self.model_id, usage.total_tokens, format_cost(usage.estimated_cost_usd), elapsed_ms,
        )
        return Completion(content=content, usage=usage)


# ---------------------------------------------------------------
# OpenAI responses convention
# ---------------------------------------------------------------

@dataclass(frozen=True)
class ResponsesReply:
    convention: ClassVar[str] = "responses"

    output_text: str | None
    input_tokens: int
    output_tokens: int


def read_responses_reply(response: Any) -> ResponsesReply:
    if not hasattr(response, "output_text"):
        raise _missing("OpenAI", "output_text")
    usage = getattr(response, "usage", None)
    return ResponsesReply(
        output_text=response.output_text,
        input_tokens=_token_count(usage, "input_tokens"),
        output_tokens=_token_count(usage, "output_tokens"),
    )


def responses_completion(reply: ResponsesReply, model_id: str, generation_time_ms: int) -> Completion:
    return Completion(
        content=ensure_content(reply.output_text, "OpenAI"),
        usage=priced_usage(model_id, reply.input_tokens, reply.output_tokens, generation_time_ms),
    )


class ResponsesAdapter:
    def __init__(self, client: openai.AsyncOpenAI, model_id: str, max_output_tokens: int):
        self.client = client
        self.model_id = model_id
        self.max_output_tokens = max_output_tokens

    async def complete(self, input_text: str) -> Completion:
        start = time.monotonic()
        response = await self.client.responses.create(
            model=self.model_id,
            input=input_text,
            max_output_tokens=self.max_output_tokens,
        )
        elapsed_ms = int((time.monotonic() - start) * 1000)

        completion = responses_completion(read_responses_reply(response), self.model_id, elapsed_ms)
        logger.info(
            "Responses completion: model=%s tokens=%d cost=%s time=%dms",
            self.model_id, completion.usage.total_tokens,
            format_cost(completion.usage.estimated_cost_usd), elapsed_ms,
        )
        return completion
