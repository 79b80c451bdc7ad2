"""LMClient routing, fallback and ledger recording."""

import pytest

from proofmesh.client import LMClient, extract_json
from proofmesh.context import CallContext
from proofmesh.contracts import CallTrace, LMRequest
from proofmesh.errors import DeadlineExceeded, NotFound, ProviderError, ProviderUnavailable
from proofmesh.providers import ScriptedProvider


def test_extract_json_handles_fences_and_prose():
    assert extract_json('```json\n{"a": 1}\n```') == {"a": 1}
    assert extract_json('Sure! Here it is: [1, 2] done') == [1, 2]
    assert extract_json("no json here") is None
    assert extract_json("") is None


def test_split_model_only_for_known_providers(client):
    assert client.split_model("alpha/m1") == ("alpha", "m1")
    assert client.split_model("meta-llama/llama-3") == (None, "meta-llama/llama-3")
    assert client.split_model("m1") == (None, "m1")


@pytest.mark.asyncio
async def test_complete_routes_to_provider_serving_model(client, provider_a, provider_b):
    response = await client.complete(LMRequest.from_prompt("q", model="m2"))
    assert response.provider == "beta"
    assert response.content == "answer from m2"
    assert provider_a.calls == []


@pytest.mark.asyncio
async def test_fallback_on_provider_failure(ledger):
    broken = ScriptedProvider("first", ["shared"], replies={"shared": ProviderError("down", provider="first")})
    working = ScriptedProvider("second", ["shared"], replies={"shared": "fine"})
    client = LMClient([broken, working], ledger)

    trace = CallTrace(flow_id="flow-1", step_index=0)
    response = await client.complete(LMRequest.from_prompt("q", model="shared"), trace=trace)

    assert response.provider == "second"
    entries = await ledger.flow("flow-1")
    assert [e.provider for e in entries] == ["first", "second"]
    assert entries[0].error
    assert entries[1].error is None
    assert response.ledger_entry_id == entries[1].id


@pytest.mark.asyncio
async def test_all_providers_failing_raises_unavailable(ledger):
    error = ProviderError("overloaded", provider="p", retryable=True)
    client = LMClient([ScriptedProvider("p", ["m"], replies={"m": error})], ledger)
    with pytest.raises(ProviderUnavailable) as info:
        await client.complete(LMRequest.from_prompt("q", model="m"))
    assert info.value.retryable
    assert len(info.value.attempts) == 1


@pytest.mark.asyncio
async def test_unknown_model_records_error_entry(client, ledger):
    with pytest.raises(ProviderUnavailable):
        await client.complete(
            LMRequest.from_prompt("q", model="nope"), trace=CallTrace(flow_id="flow-x")
        )
    entries = await ledger.flow("flow-x")
    assert len(entries) == 1
    assert entries[0].model_id == "nope"
    assert entries[0].error


@pytest.mark.asyncio
async def test_complete_with_unknown_provider_raises_not_found(client):
    with pytest.raises(NotFound):
        await client.complete_with("missing", LMRequest.from_prompt("q", model="m1"))


@pytest.mark.asyncio
async def test_provider_prefixed_model_uses_named_provider(client, provider_a):
    response = await client.complete(LMRequest.from_prompt("q", model="alpha/m1"))
    assert response.provider == "alpha"
    assert provider_a.calls[0].model == "m1"


@pytest.mark.asyncio
async def test_deadline_is_recorded_and_raised(ledger):
    slow = ScriptedProvider("slow", ["m"], delay=1.0)
    client = LMClient([slow], ledger)
    with pytest.raises(DeadlineExceeded):
        await client.complete(
            LMRequest.from_prompt("q", model="m"),
            ctx=CallContext(timeout=0.05),
            trace=CallTrace(flow_id="flow-slow"),
        )
    entries = await ledger.flow("flow-slow")
    assert entries[0].error.startswith("timeout")


@pytest.mark.asyncio
async def test_json_requests_get_parsed_content(ledger):
    provider = ScriptedProvider("p", ["m"], replies={"m": 'result: {"score": 0.9}'})
    client = LMClient([provider], ledger)
    response = await client.complete(
        LMRequest.from_prompt("q", model="m", response_format="json"),
        trace=CallTrace(flow_id="flow-json"),
    )
    assert response.parsed == {"score": 0.9}
    assert (await ledger.flow("flow-json"))[0].response_parsed == {"score": 0.9}


@pytest.mark.asyncio
async def test_no_trace_means_no_ledger_entry(client, ledger):
    await client.complete(LMRequest.from_prompt("q", model="m1"))
    assert await ledger.calls() == []


@pytest.mark.asyncio
async def test_unexpected_exception_is_wrapped(ledger):
    def explode(request):
        raise RuntimeError("kaboom")

    client = LMClient([ScriptedProvider("p", ["m"], replies={"m": explode})], ledger)
    with pytest.raises(ProviderUnavailable) as info:
        await client.complete(LMRequest.from_prompt("q", model="m"))
    assert "kaboom" in str(info.value)
