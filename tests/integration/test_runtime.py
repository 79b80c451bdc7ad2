import pytest

from proofmesh.config import (
    FederationConfig,
    LedgerConfig,
    ProofmeshConfig,
    RateLimitConfig,
    RateLimitsConfig,
)
from proofmesh.contracts import DispatchRequest
from proofmesh.errors import Forbidden, RateLimited
from proofmesh.providers import ScriptedProvider
from proofmesh.runtime import Runtime
from proofmesh.transports import InMemoryTransport


@pytest.fixture
def config(tmp_path, monkeypatch):
    monkeypatch.delenv("PROOFMESH_LEDGER_PATH", raising=False)
    return ProofmeshConfig(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'platform.db'}",
        ledger=LedgerConfig(path=str(tmp_path / "flows.db")),
    )


def build(config):
    return Runtime.from_config(
        config,
        providers=[ScriptedProvider("alpha", ["m1"], replies={"m1": "hello"})],
        transport=InMemoryTransport(),
    )


@pytest.mark.asyncio
async def test_runtime_wires_components(config, operator):
    async with build(config) as runtime:
        result = await runtime.dispatcher.dispatch(DispatchRequest(prompt="hi", models=["m1"]))
        assert result.results[0].content == "hello"
        assert len(await runtime.ledger.flow(result.dispatch_id)) == 1

        workflow = await runtime.workflows.create_workflow(operator, "wired")
        await runtime.workflows.add_step(workflow.workflow_id, operator, {"step_name": "s", "model": "m1"})
        await runtime.workflows.activate(workflow.workflow_id, operator)
        run = await runtime.engine.run(workflow.workflow_id, operator)
        assert run.status == "completed"
        assert run.result["final"] == "hello"

        assert runtime.rate_limiters.search.limit == 30
        assert runtime.envelopes.default_ttl_minutes == 15


@pytest.mark.asyncio
async def test_rate_limits_follow_configuration(config):
    config.rate_limits = RateLimitsConfig(search=RateLimitConfig(limit=1, window_s=60))
    async with build(config) as runtime:
        runtime.rate_limiters.admit_search({"X-Forwarded-For": "203.0.113.9"})
        with pytest.raises(RateLimited):
            runtime.rate_limiters.admit_search({"X-Forwarded-For": "203.0.113.9"})


@pytest.mark.asyncio
async def test_registered_providers_survive_restart(config):
    async with build(config) as runtime:
        await runtime.registry.register(
            "remote", endpoint="http://remote.invalid/v1", models=["remote-1"]
        )

    async with build(config) as runtime:
        assert runtime.client.has_provider("remote")
        assert await runtime.registry.resolve("remote-1") == "remote"


@pytest.mark.asyncio
async def test_ledger_download_requires_federation(config):
    async with build(config) as runtime:
        with pytest.raises(Forbidden):
            runtime.download_ledger()

    config.federation = FederationConfig(enabled=True)
    async with build(config) as runtime:
        await runtime.dispatcher.dispatch(DispatchRequest(prompt="hi", models=["m1"]))
        blob = b"".join(runtime.download_ledger(chunk_size=1024))
    assert blob.startswith(b"SQLite format 3\x00")
