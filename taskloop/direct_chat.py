"""Direct chat for simple prompts.

Skips the tool-enabled agent loop and makes one non-streaming chat
completion against an OpenAI-compatible endpoint, retrying on rate limits.
"""

import asyncio
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Literal

import httpx

from taskloop.config import DirectChatSettings, get_config
from taskloop.exceptions import LLMAPIError, RateLimitedError
from taskloop.llm import LMSTUDIO_BASE_URL, OLLAMA_BASE_URL, Message, OpenAICompatibleProvider
from taskloop.logging import get_logger
from taskloop.models import TaskMessage, create_message_id
from taskloop.sanitize import sanitize_assistant_text_for_display

log = get_logger(__name__)

DIRECT_SESSION_PREFIX = "direct-"

_PROVIDER_PREFIX_RE = re.compile(r"^[^/]+/")


@dataclass
class DirectChatConfig:
    base_url: str
    model: str
    api_key: str | None = None
    provider_id: str | None = None


@dataclass
class DirectChatCallbacks:
    on_progress: Callable[[str, str | None], None] | None = None
    on_message: Callable[[TaskMessage], None] | None = None
    on_complete: Callable[[str], None] | None = None
    on_error: Callable[[Exception], None] | None = None


@dataclass
class ConversationTurn:
    role: Literal["user", "assistant"]
    content: str


def get_direct_chat_config(
    provider: str,
    model_id: str,
    base_url: str | None = None,
    api_key: str | None = None,
) -> DirectChatConfig | None:
    """Resolve endpoint and model for a provider.

    Returns:
        DirectChatConfig, or None if the provider has no direct chat support
    """
    model = _PROVIDER_PREFIX_RE.sub("", model_id, count=1)
    key = api_key or None

    if provider == "ollama":
        return DirectChatConfig(
            base_url=(base_url or OLLAMA_BASE_URL).rstrip("/") + "/v1",
            model=model,
            provider_id="ollama",
        )
    if provider == "lmstudio":
        return DirectChatConfig(
            base_url=(base_url or LMSTUDIO_BASE_URL).rstrip("/") + "/v1",
            model=model,
            provider_id="lmstudio",
        )
    if provider == "openai":
        return DirectChatConfig(
            base_url=base_url or "https://api.openai.com/v1",
            model=model,
            api_key=key,
            provider_id="openai",
        )

    hosted = {
        "groq": "https://api.groq.com/openai/v1",
        "openrouter": "https://openrouter.ai/api/v1",
        "deepseek": "https://api.deepseek.com/v1",
    }
    if provider in hosted:
        return DirectChatConfig(base_url=hosted[provider], model=model, api_key=key, provider_id=provider)
    return None


def is_direct_chat_session(session_id: str | None) -> bool:
    """True for sessions started by direct chat, which may be continued."""
    return bool(session_id) and session_id.startswith(DIRECT_SESSION_PREFIX)


def _is_rate_limited(error: Exception) -> bool:
    if isinstance(error, RateLimitedError):
        return True
    if isinstance(error, LLMAPIError) and error.status_code == 429:
        return True
    message = str(error).lower()
    return "429" in message or "rate limit" in message


async def run_direct_chat(
    prompt: str,
    config: DirectChatConfig,
    callbacks: DirectChatCallbacks | None = None,
    history: list[ConversationTurn] | None = None,
    *,
    settings: DirectChatSettings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> str:
    """Run one chat completion and return the raw reply text.

    Rate-limited attempts are retried with exponential backoff; any other
    failure ends the call at once.

    Raises:
        LLMError when the request fails (after ``on_error`` is called)
    """
    callbacks = callbacks or DirectChatCallbacks()
    settings = settings or get_config().direct_chat

    def progress(message: str) -> None:
        if callbacks.on_progress is not None:
            callbacks.on_progress("direct-chat", message)

    progress("Connecting...")

    messages = [Message(role="system", content=settings.system_prompt)]
    messages.extend(Message(role=turn.role, content=turn.content) for turn in history or [])
    messages.append(Message(role="user", content=prompt))

    provider = OpenAICompatibleProvider(
        provider=config.provider_id or "direct",
        model=config.model,
        base_url=config.base_url,
        api_key=config.api_key,
        timeout=settings.timeout_seconds,
        transport=transport,
    )

    last_error: Exception | None = None
    try:
        for attempt in range(1, settings.max_retries + 1):
            progress(
                f"Retrying ({attempt}/{settings.max_retries})..." if attempt > 1 else "Generating response..."
            )
            try:
                response = await provider.complete(messages, max_tokens=settings.max_tokens)
            except Exception as e:
                last_error = e
                if _is_rate_limited(e) and attempt < settings.max_retries:
                    delay_ms = settings.initial_retry_delay_ms * 2 ** (attempt - 1)
                    log.info(
                        "Direct chat rate limited, retrying",
                        delay_ms=delay_ms,
                        attempt=attempt,
                        max_retries=settings.max_retries,
                    )
                    await sleep(delay_ms / 1000)
                    continue
                break

            text = response.content.strip()
            if text:
                display = sanitize_assistant_text_for_display(text)
                if callbacks.on_message is not None:
                    callbacks.on_message(TaskMessage(id=create_message_id(), content=display))
            if callbacks.on_complete is not None:
                callbacks.on_complete(text)
            log.info("Direct chat complete", provider=config.provider_id, attempts=attempt)
            return text
    finally:
        await provider.close()

    error = last_error or LLMAPIError("Direct chat failed")
    log.error("Direct chat failed", provider=config.provider_id, error=str(error))
    if callbacks.on_error is not None:
        callbacks.on_error(error)
    raise error
