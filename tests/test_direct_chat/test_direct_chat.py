import json

import httpx
import pytest

from taskloop.config import DirectChatSettings
from taskloop.direct_chat import (
    ConversationTurn,
    DirectChatCallbacks,
    DirectChatConfig,
    get_direct_chat_config,
    is_direct_chat_session,
    run_direct_chat,
)
from taskloop.exceptions import LLMAPIError, RateLimitedError


def _completion(text: str) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"content": text}, "finish_reason": "stop"}]})


class Recorder:
    def __init__(self):
        self.calls: list[tuple[str, object]] = []

    def callbacks(self) -> DirectChatCallbacks:
        return DirectChatCallbacks(
            on_progress=lambda stage, message: self.calls.append(("progress", message)),
            on_message=lambda message: self.calls.append(("message", message.content)),
            on_complete=lambda text: self.calls.append(("complete", text)),
            on_error=lambda error: self.calls.append(("error", error)),
        )

    def kinds(self) -> list[str]:
        return [kind for kind, _ in self.calls if kind != "progress"]


CONFIG = DirectChatConfig(base_url="https://chat.test/v1", model="tiny", api_key="k", provider_id="groq")
SETTINGS = DirectChatSettings(system_prompt="Be brief.")


@pytest.mark.asyncio
async def test_retries_once_after_rate_limit_then_succeeds():
    responses = iter([httpx.Response(429, json={"error": {"message": "Rate limit reached"}}), _completion("Hi!")])
    delays: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        delays.append(seconds)

    recorder = Recorder()
    text = await run_direct_chat(
        "hello",
        CONFIG,
        recorder.callbacks(),
        settings=SETTINGS,
        transport=httpx.MockTransport(lambda request: next(responses)),
        sleep=fake_sleep,
    )

    assert text == "Hi!"
    assert delays == [1.0]
    assert recorder.kinds() == ["message", "complete"]
    progress = [message for kind, message in recorder.calls if kind == "progress"]
    assert progress == ["Connecting...", "Generating response...", "Retrying (2/3)..."]


@pytest.mark.asyncio
async def test_backoff_doubles_until_budget_exhausted():
    delays: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        delays.append(seconds)

    recorder = Recorder()
    with pytest.raises(RateLimitedError):
        await run_direct_chat(
            "hello",
            CONFIG,
            recorder.callbacks(),
            settings=SETTINGS,
            transport=httpx.MockTransport(lambda request: httpx.Response(429, text="slow down")),
            sleep=fake_sleep,
        )

    assert delays == [1.0, 2.0]
    assert recorder.kinds() == ["error"]


@pytest.mark.asyncio
async def test_non_rate_limit_error_is_not_retried():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        return httpx.Response(500, json={"error": {"message": "internal failure"}})

    async def fake_sleep(seconds: float) -> None:
        raise AssertionError("should not sleep")

    recorder = Recorder()
    with pytest.raises(LLMAPIError, match="internal failure"):
        await run_direct_chat(
            "hello",
            CONFIG,
            recorder.callbacks(),
            settings=SETTINGS,
            transport=httpx.MockTransport(handler),
            sleep=fake_sleep,
        )

    assert len(attempts) == 1
    assert recorder.kinds() == ["error"]
    assert isinstance(recorder.calls[-1][1], LLMAPIError)


@pytest.mark.asyncio
async def test_history_follows_system_prompt_and_precedes_prompt():
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return _completion("<think>hmm</think>Sure.")

    recorder = Recorder()
    text = await run_direct_chat(
        "and now?",
        CONFIG,
        recorder.callbacks(),
        history=[ConversationTurn(role="user", content="hi"), ConversationTurn(role="assistant", content="hello")],
        settings=SETTINGS,
        transport=httpx.MockTransport(handler),
    )

    messages = bodies[0]["messages"]
    assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]
    assert messages[0]["content"] == "Be brief."
    assert messages[-1]["content"] == "and now?"
    assert bodies[0]["max_tokens"] == 256
    assert bodies[0]["model"] == "tiny"
    assert text == "<think>hmm</think>Sure."
    assert ("message", "Sure.") in recorder.calls


@pytest.mark.asyncio
async def test_empty_reply_completes_without_message():
    recorder = Recorder()
    text = await run_direct_chat(
        "hello",
        CONFIG,
        recorder.callbacks(),
        settings=SETTINGS,
        transport=httpx.MockTransport(lambda request: _completion("   ")),
    )

    assert text == ""
    assert recorder.kinds() == ["complete"]


def test_direct_chat_config_table():
    ollama = get_direct_chat_config("ollama", "ollama/llama3.2")
    assert ollama.base_url == "http://localhost:11434/v1"
    assert ollama.model == "llama3.2"
    assert ollama.api_key is None

    lmstudio = get_direct_chat_config("lmstudio", "qwen", base_url="http://box:1234/")
    assert lmstudio.base_url == "http://box:1234/v1"

    groq = get_direct_chat_config("groq", "groq/llama-3.1-8b-instant", api_key="gsk")
    assert groq.base_url == "https://api.groq.com/openai/v1"
    assert groq.api_key == "gsk"

    openai = get_direct_chat_config("openai", "gpt-4o-mini", base_url="http://proxy/v1")
    assert openai.base_url == "http://proxy/v1"

    assert get_direct_chat_config("anthropic", "claude-3-5-haiku") is None


def test_direct_chat_session_prefix():
    assert is_direct_chat_session("direct-123") is True
    assert is_direct_chat_session("ai-sdk-123") is False
    assert is_direct_chat_session("") is False
