"""Provider adapter tests against mocked HTTP endpoints."""

import json
from types import SimpleNamespace

import httpx
import pytest
from pydantic_ai.models.test import TestModel as EchoModel

from proofmesh.config import ProviderConfig
from proofmesh.contracts import LMRequest
from proofmesh.errors import ProviderError
from proofmesh.providers import (
    AgentProvider,
    AnthropicProvider,
    GeminiProvider,
    OpenAICompatibleProvider,
    ScriptedProvider,
    build_provider,
)
from proofmesh.providers.agent import _usage_tokens


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_openai_compatible_complete():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "choices": [{"message": {"content": "hi there"}, "finish_reason": "stop"}],
                "usage": {"prompt_tokens": 12, "completion_tokens": 3},
            },
        )

    provider = OpenAICompatibleProvider(
        "groq", "https://api.groq.test/v1", api_key="k", models=["llama"], client=_client(handler)
    )
    response = await provider.complete(LMRequest.from_prompt("hello", system="be brief", model="llama"))

    assert response.content == "hi there"
    assert response.tokens_in == 12
    assert response.tokens_out == 3
    assert response.finish_reason == "stop"
    assert seen["url"] == "https://api.groq.test/v1/chat/completions"
    assert seen["auth"] == "Bearer k"
    assert seen["body"]["messages"][0] == {"role": "system", "content": "be brief"}


@pytest.mark.asyncio
async def test_openai_compatible_json_mode_parses_content():
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert body["response_format"] == {"type": "json_object"}
        return httpx.Response(200, json={"choices": [{"message": {"content": '{"ok": true}'}}]})

    provider = OpenAICompatibleProvider(
        "oa", "https://oa.test/v1", models=["m"], json_mode=True, client=_client(handler)
    )
    response = await provider.complete(LMRequest.from_prompt("x", model="m", response_format="json"))
    assert response.parsed == {"ok": True}


@pytest.mark.asyncio
async def test_rate_limit_is_retryable_with_retry_after():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, headers={"retry-after": "3"}, text="slow down")

    provider = OpenAICompatibleProvider("oa", "https://oa.test/v1", models=["m"], client=_client(handler))
    with pytest.raises(ProviderError) as info:
        await provider.complete(LMRequest.from_prompt("x", model="m"))
    assert info.value.retryable
    assert info.value.status == 429
    assert info.value.retry_after == 3.0


@pytest.mark.asyncio
async def test_client_errors_are_not_retryable_but_server_errors_are():
    statuses = iter([400, 503])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(next(statuses), text="boom")

    provider = OpenAICompatibleProvider("oa", "https://oa.test/v1", models=["m"], client=_client(handler))
    with pytest.raises(ProviderError) as bad_request:
        await provider.complete(LMRequest.from_prompt("x", model="m"))
    assert not bad_request.value.retryable

    with pytest.raises(ProviderError) as unavailable:
        await provider.complete(LMRequest.from_prompt("x", model="m"))
    assert unavailable.value.retryable


@pytest.mark.asyncio
async def test_network_error_is_retryable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    provider = OpenAICompatibleProvider("oa", "https://oa.test/v1", models=["m"], client=_client(handler))
    with pytest.raises(ProviderError) as info:
        await provider.complete(LMRequest.from_prompt("x", model="m"))
    assert info.value.retryable


@pytest.mark.asyncio
async def test_openai_list_models():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith("/models")
        return httpx.Response(200, json={"data": [{"id": "a"}, {"id": "b"}, {}]})

    provider = OpenAICompatibleProvider("oa", "https://oa.test/v1", client=_client(handler))
    assert await provider.list_models() == ["a", "b"]


@pytest.mark.asyncio
async def test_anthropic_moves_system_prompt_out_of_messages():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        seen["headers"] = request.headers
        return httpx.Response(
            200,
            json={
                "content": [{"type": "text", "text": "claude says"}],
                "usage": {"input_tokens": 7, "output_tokens": 2},
                "stop_reason": "end_turn",
            },
        )

    provider = AnthropicProvider(api_key="ak", client=_client(handler))
    response = await provider.complete(LMRequest.from_prompt("hello", system="sys"))

    assert response.content == "claude says"
    assert response.tokens_in == 7
    assert seen["body"]["system"] == "sys"
    assert all(m["role"] != "system" for m in seen["body"]["messages"])
    assert seen["headers"]["x-api-key"] == "ak"
    assert seen["body"]["max_tokens"] == 4096


@pytest.mark.asyncio
async def test_gemini_complete_and_list_models():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["key"] == "gk"
        if request.method == "GET":
            return httpx.Response(200, json={"models": [{"name": "models/gemini-2.0-flash"}]})
        body = json.loads(request.content)
        assert body["systemInstruction"] == {"parts": [{"text": "sys"}]}
        assert request.url.path.endswith("/models/gemini-2.0-flash:generateContent")
        return httpx.Response(
            200,
            json={
                "candidates": [{"content": {"parts": [{"text": "gem"}]}, "finishReason": "STOP"}],
                "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 1},
            },
        )

    provider = GeminiProvider(api_key="gk", client=_client(handler))
    response = await provider.complete(LMRequest.from_prompt("q", system="sys"))
    assert response.content == "gem"
    assert response.model == "gemini-2.0-flash"
    assert response.tokens_out == 1
    assert await provider.list_models() == ["gemini-2.0-flash"]


@pytest.mark.asyncio
async def test_agent_provider_runs_pydantic_ai_model():
    provider = AgentProvider("local", {"test-model": EchoModel(custom_output_text="agent reply")})
    response = await provider.complete(LMRequest.from_prompt("hello", model="test-model"))

    assert response.content == "agent reply"
    assert response.provider == "local"
    assert response.model == "test-model"
    assert response.tokens_in > 0
    assert response.tokens_out > 0


@pytest.mark.asyncio
async def test_agent_provider_rejects_unknown_model():
    provider = AgentProvider("local", {"test-model": EchoModel()})
    with pytest.raises(ProviderError):
        await provider.complete(LMRequest.from_prompt("hello", model="other"))


@pytest.mark.asyncio
async def test_scripted_provider_sequences_replies():
    provider = ScriptedProvider("s", ["m"], replies={"m": [ProviderError("x", retryable=True), "second"]})
    with pytest.raises(ProviderError):
        await provider.complete(LMRequest.from_prompt("q", model="m"))
    assert (await provider.complete(LMRequest.from_prompt("q", model="m"))).content == "second"
    assert (await provider.complete(LMRequest.from_prompt("q", model="m"))).content == "second"
    assert len(provider.calls) == 3


def test_build_provider_selects_adapter_by_api_style():
    groq = build_provider(ProviderConfig(name="groq", api_style="groq", api_key="k", models=["llama"]))
    assert isinstance(groq, OpenAICompatibleProvider)
    assert groq.base_url == "https://api.groq.com/openai/v1"

    gemini = build_provider(ProviderConfig(name="g", api_style="gemini", api_key="k"))
    assert isinstance(gemini, GeminiProvider)
    assert "gemini-2.0-flash" in gemini.models

    claude = build_provider(ProviderConfig(name="c", api_style="anthropic", api_key="k"))
    assert isinstance(claude, AnthropicProvider)


def test_agent_usage_read_from_method_or_property():
    class MethodResult:
        def usage(self):
            return SimpleNamespace(input_tokens=7, output_tokens=3)

    property_result = SimpleNamespace(usage=SimpleNamespace(input_tokens=4, output_tokens=2))
    legacy_result = SimpleNamespace(usage=SimpleNamespace(request_tokens=5, response_tokens=None))

    assert _usage_tokens(MethodResult()) == (7, 3)
    assert _usage_tokens(property_result) == (4, 2)
    assert _usage_tokens(legacy_result) == (5, 0)
