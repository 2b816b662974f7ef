"""Tests for comet_search/providers -- factory wiring and the SDK-backed clients over respx."""

import json
import logging
from types import SimpleNamespace
from unittest.mock import AsyncMock

import openai
import pytest
import respx
from anthropic.lib.streaming import AsyncMessageStream
from httpx import Response

from comet_search.providers.anthropic import AnthropicProvider
from comet_search.providers.base import CompletionOptions, ProviderError
from comet_search.providers.factory import build_available_providers, build_provider, close_providers
from comet_search.providers.gemini import GeminiProvider
from comet_search.providers.openai_compat import OpenAICompatibleProvider
from config.config_loader import Credentials, ModelConfig

from tests.conftest import MockProvider, make_model_config

_BASE_URL = "http://lm.test/v1"


def _local_config(**overrides) -> ModelConfig:
    cfg = make_model_config("lmstudio")
    cfg.base_url = _BASE_URL
    for key, value in overrides.items():
        setattr(cfg, key, value)
    return cfg


def _completion_body(content: str | None) -> dict:
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 0,
        "model": "lmstudio-model",
        "choices": [
            {"index": 0, "message": {"role": "assistant", "content": content}, "finish_reason": "stop"}
        ],
        "usage": {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7},
    }


def _sse(*deltas: str) -> str:
    events = []
    for delta in deltas:
        chunk = {
            "id": "chatcmpl-1",
            "object": "chat.completion.chunk",
            "created": 0,
            "model": "lmstudio-model",
            "choices": [{"index": 0, "delta": {"content": delta}, "finish_reason": None}],
        }
        events.append(f"data: {json.dumps(chunk)}\n\n")
    events.append("data: [DONE]\n\n")
    return "".join(events)


def test_build_provider_unsupported_sdk():
    cfg = make_model_config("odd")
    cfg.sdk = "cohere"
    with pytest.raises(ProviderError, match="Unsupported sdk"):
        build_provider(cfg, Credentials())


def test_build_provider_missing_key():
    cfg = make_model_config("kimi", api_key_env="MOONSHOT_API_KEY")
    with pytest.raises(ProviderError, match="Missing API key: MOONSHOT_API_KEY"):
        build_provider(cfg, Credentials())


def test_build_provider_picks_class_by_sdk():
    creds = Credentials(api_keys={"ANTHROPIC_API_KEY": "sk-ant"})
    claude = make_model_config("claude", api_key_env="ANTHROPIC_API_KEY")
    claude.sdk = "anthropic"
    assert isinstance(build_provider(claude, creds), AnthropicProvider)
    assert isinstance(build_provider(_local_config(), creds), OpenAICompatibleProvider)


def test_build_available_providers_skips_keyless_backends():
    models = {
        "lmstudio": _local_config(),
        "kimi": make_model_config("kimi", api_key_env="MOONSHOT_API_KEY"),
        "openai": make_model_config("openai", api_key_env="OPENAI_API_KEY"),
    }
    creds = Credentials(api_keys={"MOONSHOT_API_KEY": "moon"})

    providers = build_available_providers(models, creds)

    assert sorted(providers) == ["kimi", "lmstudio"]
    assert providers["kimi"].model_string() == "kimi-model"


async def test_openai_compat_complete():
    provider = OpenAICompatibleProvider(_local_config())
    captured = {}
    with respx.mock(assert_all_called=True) as respx_mock:

        def handler(request):
            captured["body"] = json.loads(request.content)
            return Response(200, json=_completion_body("Hello there"))

        respx_mock.post(f"{_BASE_URL}/chat/completions").mock(side_effect=handler)
        text = await provider.complete("be brief", "hi", CompletionOptions(temperature=0.2, max_tokens=5000))

    assert text == "Hello there"
    body = captured["body"]
    assert body["model"] == "lmstudio-model"
    assert body["messages"][0] == {"role": "system", "content": "be brief"}
    assert body["max_tokens"] == 1024
    assert body["temperature"] == 0.2


async def test_openai_compat_empty_system_prompt_omitted():
    provider = OpenAICompatibleProvider(_local_config())
    captured = {}
    with respx.mock() as respx_mock:

        def handler(request):
            captured["body"] = json.loads(request.content)
            return Response(200, json=_completion_body("OK"))

        respx_mock.post(f"{_BASE_URL}/chat/completions").mock(side_effect=handler)
        await provider.complete("", "ping", CompletionOptions())

    assert [m["role"] for m in captured["body"]["messages"]] == ["user"]


async def test_openai_compat_empty_content_raises():
    provider = OpenAICompatibleProvider(_local_config())
    with respx.mock() as respx_mock:
        respx_mock.post(f"{_BASE_URL}/chat/completions").mock(return_value=Response(200, json=_completion_body("")))
        with pytest.raises(ProviderError, match="Empty response content"):
            await provider.complete("", "hi", CompletionOptions())


async def test_openai_compat_http_error_carries_status():
    provider = OpenAICompatibleProvider(_local_config())
    with respx.mock() as respx_mock:
        respx_mock.post(f"{_BASE_URL}/chat/completions").mock(
            return_value=Response(400, json={"error": {"message": "bad request"}})
        )
        with pytest.raises(ProviderError, match="API call failed") as exc_info:
            await provider.complete("", "hi", CompletionOptions())
    assert exc_info.value.status == 400
    assert str(exc_info.value).startswith("[lmstudio]")


async def test_openai_compat_stream_yields_chunks_in_order():
    provider = OpenAICompatibleProvider(_local_config(stream=True))
    with respx.mock() as respx_mock:
        respx_mock.post(f"{_BASE_URL}/chat/completions").mock(
            return_value=Response(200, text=_sse("Sol", "ar ", "power"), headers={"content-type": "text/event-stream"})
        )
        chunks = [chunk async for chunk in provider.stream_complete("", "hi", CompletionOptions())]

    assert chunks == ["Sol", "ar ", "power"]


async def test_openai_compat_abandoned_stream_closes_response(monkeypatch):
    closed: list[bool] = []
    original_close = openai.AsyncStream.close

    async def spy_close(self):
        closed.append(True)
        await original_close(self)

    monkeypatch.setattr(openai.AsyncStream, "close", spy_close)
    provider = OpenAICompatibleProvider(_local_config(stream=True))
    with respx.mock() as respx_mock:
        respx_mock.post(f"{_BASE_URL}/chat/completions").mock(
            return_value=Response(200, text=_sse("Sol", "ar ", "power"), headers={"content-type": "text/event-stream"})
        )
        chunks = provider.stream_complete("", "hi", CompletionOptions())
        assert await chunks.__anext__() == "Sol"
        await chunks.aclose()

    assert closed


async def test_openai_compat_close_closes_client():
    provider = OpenAICompatibleProvider(_local_config())
    await provider.close()
    assert provider._client.is_closed()


# --- Anthropic ---

_ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"


def _claude_provider() -> AnthropicProvider:
    cfg = make_model_config("claude", api_key_env="ANTHROPIC_API_KEY")
    cfg.sdk = "anthropic"
    return AnthropicProvider(cfg, api_key="sk-ant-test")


def _message_body(*texts: str) -> dict:
    return {
        "id": "msg_1",
        "type": "message",
        "role": "assistant",
        "model": "claude-model",
        "content": [{"type": "text", "text": text} for text in texts],
        "stop_reason": "end_turn",
        "stop_sequence": None,
        "usage": {"input_tokens": 5, "output_tokens": 2},
    }


def _anthropic_sse(*deltas: str) -> str:
    message = _message_body()
    message["usage"] = {"input_tokens": 5, "output_tokens": 1}
    events = [
        ("message_start", {"type": "message_start", "message": message}),
        ("content_block_start", {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}}),
    ]
    for delta in deltas:
        events.append(
            (
                "content_block_delta",
                {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": delta}},
            )
        )
    events += [
        ("content_block_stop", {"type": "content_block_stop", "index": 0}),
        (
            "message_delta",
            {"type": "message_delta", "delta": {"stop_reason": "end_turn", "stop_sequence": None}, "usage": {"output_tokens": 3}},
        ),
        ("message_stop", {"type": "message_stop"}),
    ]
    return "".join(f"event: {name}\ndata: {json.dumps(data)}\n\n" for name, data in events)


async def test_anthropic_complete_joins_text_blocks():
    provider = _claude_provider()
    captured = {}
    with respx.mock(assert_all_called=True) as respx_mock:

        def handler(request):
            captured["body"] = json.loads(request.content)
            return Response(200, json=_message_body("Hello", "there"))

        respx_mock.post(_ANTHROPIC_URL).mock(side_effect=handler)
        text = await provider.complete("be brief", "hi", CompletionOptions(temperature=0.3, max_tokens=5000))

    assert text == "Hello\nthere"
    body = captured["body"]
    assert body["model"] == "claude-model"
    assert body["system"] == "be brief"
    assert body["max_tokens"] == 1024
    assert body["messages"] == [{"role": "user", "content": "hi"}]


async def test_anthropic_empty_system_prompt_omitted():
    provider = _claude_provider()
    captured = {}
    with respx.mock() as respx_mock:

        def handler(request):
            captured["body"] = json.loads(request.content)
            return Response(200, json=_message_body("OK"))

        respx_mock.post(_ANTHROPIC_URL).mock(side_effect=handler)
        await provider.complete("", "ping", CompletionOptions())

    assert "system" not in captured["body"]


async def test_anthropic_empty_content_raises():
    provider = _claude_provider()
    with respx.mock() as respx_mock:
        respx_mock.post(_ANTHROPIC_URL).mock(return_value=Response(200, json=_message_body()))
        with pytest.raises(ProviderError, match="Empty response content"):
            await provider.complete("", "hi", CompletionOptions())


async def test_anthropic_http_error_carries_status():
    provider = _claude_provider()
    error = {"type": "error", "error": {"type": "invalid_request_error", "message": "bad request"}}
    with respx.mock() as respx_mock:
        respx_mock.post(_ANTHROPIC_URL).mock(return_value=Response(400, json=error))
        with pytest.raises(ProviderError, match="API call failed") as exc_info:
            await provider.complete("", "hi", CompletionOptions())
    assert exc_info.value.status == 400
    assert str(exc_info.value).startswith("[claude]")


async def test_anthropic_stream_yields_text_deltas():
    provider = _claude_provider()
    with respx.mock() as respx_mock:
        respx_mock.post(_ANTHROPIC_URL).mock(
            return_value=Response(
                200, text=_anthropic_sse("Sol", "ar ", "power"), headers={"content-type": "text/event-stream"}
            )
        )
        chunks = [chunk async for chunk in provider.stream_complete("", "hi", CompletionOptions())]

    assert chunks == ["Sol", "ar ", "power"]


async def test_anthropic_stream_http_error_raises_provider_error():
    provider = _claude_provider()
    error = {"type": "error", "error": {"type": "invalid_request_error", "message": "bad request"}}
    with respx.mock() as respx_mock:
        respx_mock.post(_ANTHROPIC_URL).mock(return_value=Response(400, json=error))
        with pytest.raises(ProviderError, match="Stream failed") as exc_info:
            [chunk async for chunk in provider.stream_complete("", "hi", CompletionOptions())]
    assert exc_info.value.status == 400


async def test_anthropic_abandoned_stream_closes_response(monkeypatch):
    closed: list[bool] = []
    original_close = AsyncMessageStream.close

    async def spy_close(self):
        closed.append(True)
        await original_close(self)

    monkeypatch.setattr(AsyncMessageStream, "close", spy_close)
    provider = _claude_provider()
    with respx.mock() as respx_mock:
        respx_mock.post(_ANTHROPIC_URL).mock(
            return_value=Response(
                200, text=_anthropic_sse("Sol", "ar ", "power"), headers={"content-type": "text/event-stream"}
            )
        )
        chunks = provider.stream_complete("", "hi", CompletionOptions())
        assert await chunks.__anext__() == "Sol"
        await chunks.aclose()

    assert closed


async def test_anthropic_close_closes_client():
    provider = _claude_provider()
    await provider.close()
    assert provider._client.is_closed()


# --- Gemini ---


def _gemini_provider(models: SimpleNamespace) -> tuple[GeminiProvider, SimpleNamespace]:
    cfg = make_model_config("gemini", api_key_env="GEMINI_API_KEY")
    cfg.sdk = "gemini"
    provider = GeminiProvider(cfg, api_key="g-test")
    client = SimpleNamespace(aio=SimpleNamespace(models=models, aclose=AsyncMock()))
    provider._client = client
    return provider, client


def test_gemini_requires_api_key():
    cfg = make_model_config("gemini", api_key_env="GEMINI_API_KEY")
    with pytest.raises(ProviderError, match="Missing API key: GEMINI_API_KEY"):
        GeminiProvider(cfg, api_key="  ")


async def test_gemini_complete_returns_text():
    generate = AsyncMock(return_value=SimpleNamespace(text="Hello there", usage_metadata=None))
    provider, _ = _gemini_provider(SimpleNamespace(generate_content=generate))

    text = await provider.complete("be brief", "hi", CompletionOptions(temperature=0.4, max_tokens=5000))

    assert text == "Hello there"
    kwargs = generate.await_args.kwargs
    assert kwargs["model"] == "gemini-model"
    assert kwargs["contents"] == "hi"
    assert kwargs["config"].system_instruction == "be brief"
    assert kwargs["config"].max_output_tokens == 1024
    assert kwargs["config"].temperature == 0.4


async def test_gemini_empty_text_raises():
    generate = AsyncMock(return_value=SimpleNamespace(text="", usage_metadata=None))
    provider, _ = _gemini_provider(SimpleNamespace(generate_content=generate))

    with pytest.raises(ProviderError, match="Empty response text"):
        await provider.complete("", "hi", CompletionOptions())


async def test_gemini_api_error_wrapped():
    generate = AsyncMock(side_effect=RuntimeError("quota exhausted"))
    provider, _ = _gemini_provider(SimpleNamespace(generate_content=generate))

    with pytest.raises(ProviderError, match="API call failed: quota exhausted"):
        await provider.complete("", "hi", CompletionOptions())


def _gemini_chunks(texts: list[str], finished: list[bool]):
    async def chunks():
        try:
            for text in texts:
                yield SimpleNamespace(text=text)
        finally:
            finished.append(True)

    return chunks()


async def test_gemini_stream_yields_chunks_and_skips_empty():
    finished: list[bool] = []
    stream = AsyncMock(return_value=_gemini_chunks(["Sol", "", "ar power"], finished))
    provider, _ = _gemini_provider(SimpleNamespace(generate_content_stream=stream))

    chunks = [chunk async for chunk in provider.stream_complete("", "hi", CompletionOptions())]

    assert chunks == ["Sol", "ar power"]
    assert finished == [True]


async def test_gemini_abandoned_stream_closes_response():
    finished: list[bool] = []
    stream = AsyncMock(return_value=_gemini_chunks(["Sol", "ar ", "power"], finished))
    provider, _ = _gemini_provider(SimpleNamespace(generate_content_stream=stream))

    chunks = provider.stream_complete("", "hi", CompletionOptions())
    assert await chunks.__anext__() == "Sol"
    await chunks.aclose()

    assert finished == [True]


async def test_gemini_close_closes_async_client():
    provider, client = _gemini_provider(SimpleNamespace())
    await provider.close()
    client.aio.aclose.assert_awaited_once()


async def test_close_providers_logs_failures_and_closes_the_rest(caplog):
    ok = MockProvider("ok")
    broken = MockProvider("broken")
    broken.close = AsyncMock(side_effect=RuntimeError("already closed"))

    with caplog.at_level(logging.WARNING):
        await close_providers([broken, ok])

    assert ok.closed
    assert "Failed to close backend 'broken'" in caplog.text
