"""OpenAI-compatible chat provider - direct HTTP calls with streaming."""

import json
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Literal

import httpx

from taskloop.exceptions import LLMAPIError, LLMError, RateLimitedError, StreamError
from taskloop.logging import get_logger

log = get_logger(__name__)


ToolChoice = Literal["auto", "required", "none"] | dict[str, Any]


@dataclass
class ToolCall:
    """A tool call from the LLM."""

    id: str
    name: str
    arguments: dict[str, Any]


@dataclass
class Message:
    """A message in the conversation."""

    role: str  # "system", "user", "assistant", "tool"
    content: str
    tool_call_id: str | None = None
    tool_name: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)


@dataclass
class LLMResponse:
    """Non-streaming response from the LLM."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str = "stop"
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)


@dataclass
class StreamChunk:
    """One item of a streamed completion.

    ``kind`` is ``text``, ``reasoning``, ``tool_call`` (fully assembled) or
    ``finish``.
    """

    kind: Literal["text", "reasoning", "tool_call", "finish"]
    text: str = ""
    tool_call: ToolCall | None = None
    finish_reason: str | None = None


class LLMProvider(ABC):
    """Abstract base class for model handles."""

    provider: str = ""
    model: str = ""

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: ToolChoice | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        pass

    @abstractmethod
    def stream_chat(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: ToolChoice | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamChunk]:
        pass

    async def close(self) -> None:
        return None


def _raise_for_status(status_code: int, body: str) -> None:
    message = f"API error {status_code}"
    try:
        payload = json.loads(body)
        error = payload.get("error") if isinstance(payload, dict) else None
        if isinstance(error, dict) and error.get("message"):
            message = str(error["message"])
        elif isinstance(error, str) and error:
            message = error
    except json.JSONDecodeError:
        if len(body) < 200 and body.strip():
            message = body.strip()
    if status_code == 429 or "rate limit" in message.lower():
        raise RateLimitedError(message, status_code=status_code)
    raise LLMAPIError(message, status_code=status_code)


class OpenAICompatibleProvider(LLMProvider):
    """Chat completions over any OpenAI-compatible endpoint."""

    def __init__(
        self,
        provider: str,
        model: str,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize provider.

        Args:
            provider: Provider id used for logging and tool-choice quirks
            model: Model name as the endpoint expects it
            base_url: Base URL ending in the API version (e.g. ``.../v1``)
            api_key: Optional bearer token
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests)
        """
        self.provider = provider
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.client = httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            transport=transport,
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @staticmethod
    def _convert_messages(messages: list[Message]) -> list[dict[str, Any]]:
        result: list[dict[str, Any]] = []
        for msg in messages:
            if msg.role == "assistant" and msg.tool_calls:
                result.append({
                    "role": "assistant",
                    "content": msg.content or None,
                    "tool_calls": [
                        {
                            "id": tc.id,
                            "type": "function",
                            "function": {
                                "name": tc.name,
                                "arguments": json.dumps(tc.arguments),
                            },
                        }
                        for tc in msg.tool_calls
                    ],
                })
            elif msg.role == "tool":
                result.append({
                    "role": "tool",
                    "tool_call_id": msg.tool_call_id or "",
                    "content": msg.content or "",
                })
            else:
                result.append({"role": msg.role, "content": msg.content or ""})
        return result

    @staticmethod
    def _convert_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool["name"],
                    "description": tool.get("description", "") or "",
                    "parameters": tool.get("parameters") or {"type": "object", "properties": {}},
                },
            }
            for tool in tools
            if tool.get("name")
        ]

    @staticmethod
    def _convert_tool_choice(tool_choice: ToolChoice) -> Any:
        if isinstance(tool_choice, dict) and tool_choice.get("type") == "tool":
            return {"type": "function", "function": {"name": tool_choice["tool_name"]}}
        return tool_choice

    def _build_body(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None,
        tool_choice: ToolChoice | None,
        max_tokens: int | None,
        stream: bool,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model,
            "messages": self._convert_messages(messages),
            "stream": stream,
        }
        if max_tokens:
            body["max_tokens"] = max_tokens
        if tools:
            body["tools"] = self._convert_tools(tools)
            if tool_choice is not None:
                body["tool_choice"] = self._convert_tool_choice(tool_choice)
        return body

    @staticmethod
    def _parse_arguments(raw: Any) -> dict[str, Any]:
        if isinstance(raw, dict):
            return raw
        if not raw:
            return {}
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            return {"raw": raw}
        return value if isinstance(value, dict) else {"value": value}

    async def complete(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: ToolChoice | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion."""
        url = f"{self.base_url}/chat/completions"
        body = self._build_body(messages, tools, tool_choice, max_tokens, stream=False)

        try:
            response = await self.client.post(url, json=body, headers=self._headers())
        except httpx.HTTPError as e:
            raise LLMAPIError(f"{self.provider} HTTP error: {e}")

        if not response.is_success:
            _raise_for_status(response.status_code, response.text)

        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise LLMError(f"{self.provider} response decode error: {e}")

        choice = (data.get("choices") or [{}])[0]
        message = choice.get("message") or {}
        tool_calls = [
            ToolCall(
                id=str(tc.get("id", "")),
                name=str(tc.get("function", {}).get("name", "")),
                arguments=self._parse_arguments(tc.get("function", {}).get("arguments")),
            )
            for tc in message.get("tool_calls") or []
        ]
        return LLMResponse(
            content=(message.get("content") or "").strip(),
            tool_calls=tool_calls,
            finish_reason=str(choice.get("finish_reason") or "stop"),
            model=str(data.get("model") or self.model),
            usage=dict(data.get("usage") or {}),
        )

    async def stream_chat(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: ToolChoice | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream one completion step as server-sent events."""
        url = f"{self.base_url}/chat/completions"
        body = self._build_body(messages, tools, tool_choice, max_tokens, stream=True)

        # Tool call fragments arrive keyed by index and are emitted once complete.
        pending_calls: dict[int, dict[str, str]] = {}
        finish_reason: str | None = None

        try:
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    _raise_for_status(response.status_code, error_text)

                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line.startswith("data:"):
                        continue
                    payload = line[len("data:"):].strip()
                    if payload == "[DONE]":
                        break
                    try:
                        chunk = json.loads(payload)
                    except json.JSONDecodeError:
                        continue

                    for choice in chunk.get("choices") or []:
                        delta = choice.get("delta") or {}
                        reasoning = delta.get("reasoning_content") or delta.get("reasoning")
                        if reasoning:
                            yield StreamChunk(kind="reasoning", text=str(reasoning))
                        if delta.get("content"):
                            yield StreamChunk(kind="text", text=str(delta["content"]))
                        for fragment in delta.get("tool_calls") or []:
                            slot = pending_calls.setdefault(
                                int(fragment.get("index", 0)),
                                {"id": "", "name": "", "arguments": ""},
                            )
                            if fragment.get("id"):
                                slot["id"] = str(fragment["id"])
                            function = fragment.get("function") or {}
                            if function.get("name"):
                                slot["name"] += str(function["name"])
                            if function.get("arguments"):
                                slot["arguments"] += str(function["arguments"])
                        if choice.get("finish_reason"):
                            finish_reason = str(choice["finish_reason"])
        except (LLMAPIError, LLMError):
            raise
        except httpx.HTTPError as e:
            raise StreamError(f"{self.provider} streaming error: {e}")

        for index in sorted(pending_calls):
            slot = pending_calls[index]
            if not slot["name"]:
                continue
            yield StreamChunk(
                kind="tool_call",
                tool_call=ToolCall(
                    id=slot["id"] or f"call_{index}",
                    name=slot["name"],
                    arguments=self._parse_arguments(slot["arguments"]),
                ),
            )
        yield StreamChunk(kind="finish", finish_reason=finish_reason or ("tool_calls" if pending_calls else "stop"))

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


OLLAMA_BASE_URL = "http://localhost:11434"
LMSTUDIO_BASE_URL = "http://localhost:1234"
LITELLM_BASE_URL = "http://localhost:4000"

# provider -> (base url, api key env var)
_HOSTED_PROVIDERS: dict[str, tuple[str, str]] = {
    "openai": ("https://api.openai.com/v1", "OPENAI_API_KEY"),
    "anthropic": ("https://api.anthropic.com/v1", "ANTHROPIC_API_KEY"),
    "google": ("https://generativelanguage.googleapis.com/v1beta/openai", "GOOGLE_GENERATIVE_AI_API_KEY"),
    "groq": ("https://api.groq.com/openai/v1", "GROQ_API_KEY"),
    "deepseek": ("https://api.deepseek.com/v1", "DEEPSEEK_API_KEY"),
    "xai": ("https://api.x.ai/v1", "XAI_API_KEY"),
    "moonshot": ("https://api.moonshot.cn/v1", "MOONSHOT_API_KEY"),
    "openrouter": ("https://openrouter.ai/api/v1", "OPENROUTER_API_KEY"),
    "minimax": ("https://api.minimax.chat/v1", "MINIMAX_API_KEY"),
    "zai": ("https://api.z.ai/v1", "ZAI_API_KEY"),
    "zai-coding-plan": ("https://api.z.ai/v1", "ZAI_API_KEY"),
}

# Only these accept a caller-supplied base URL.
_BASE_URL_OVERRIDABLE = {"openai"}


def strip_provider_prefix(model_id: str, provider: str) -> str:
    """``ollama/llama3.2`` -> ``llama3.2`` for provider ``ollama``."""
    prefix = f"{provider}/"
    return model_id[len(prefix):] if model_id.startswith(prefix) else model_id


def _local_base(base_url: str | None, default: str) -> str:
    return (base_url or default).rstrip("/") + "/v1"


def create_model(
    provider: str,
    model_id: str,
    api_key: str | None = None,
    base_url: str | None = None,
    timeout: float = 120.0,
) -> LLMProvider | None:
    """Create a model handle for a provider.

    Args:
        provider: Provider id (openai, anthropic, groq, ollama, ...)
        model_id: Model id, optionally prefixed with ``<provider>/``
        api_key: Optional API key; falls back to the provider's env var
        base_url: Optional base URL for local/self-hosted providers
        timeout: Request timeout in seconds

    Returns:
        Configured provider, or None when the provider is not supported
    """
    model = strip_provider_prefix(model_id, provider)

    if provider in _HOSTED_PROVIDERS:
        default_base, key_env = _HOSTED_PROVIDERS[provider]
        resolved_base = (base_url or default_base) if provider in _BASE_URL_OVERRIDABLE else default_base
        if provider == "openrouter":
            # OpenRouter routes on the full vendor-prefixed id.
            model = model_id
        return OpenAICompatibleProvider(
            provider=provider,
            model=model,
            base_url=resolved_base,
            api_key=api_key or os.environ.get(key_env) or None,
            timeout=timeout,
        )

    if provider == "ollama":
        return OpenAICompatibleProvider(
            provider=provider,
            model=model,
            base_url=_local_base(base_url, OLLAMA_BASE_URL),
            timeout=timeout,
        )

    if provider == "lmstudio":
        return OpenAICompatibleProvider(
            provider=provider,
            model=model,
            base_url=_local_base(base_url, LMSTUDIO_BASE_URL),
            timeout=timeout,
        )

    if provider == "litellm":
        return OpenAICompatibleProvider(
            provider=provider,
            model=model,
            base_url=_local_base(base_url, LITELLM_BASE_URL),
            api_key=api_key or "not-needed",
            timeout=timeout,
        )

    if provider == "azure-foundry":
        if base_url and api_key:
            return OpenAICompatibleProvider(
                provider=provider,
                model=model,
                base_url=base_url.rstrip("/"),
                api_key=api_key,
                timeout=timeout,
            )
        return None

    return None


__all__ = [
    "LLMProvider",
    "LLMResponse",
    "Message",
    "OpenAICompatibleProvider",
    "StreamChunk",
    "ToolCall",
    "ToolChoice",
    "create_model",
    "strip_provider_prefix",
]
