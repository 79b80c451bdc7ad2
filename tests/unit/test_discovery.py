"""Model discovery tests."""

import pytest

from proofmesh.discovery import ModelDiscovery
from proofmesh.errors import Conflict, InvalidInput, ProviderError


@pytest.mark.asyncio
async def test_discover_all_upserts_catalogue(db, client):
    discovery = ModelDiscovery(db, client)
    report = await discovery.discover_all(actor_id="op-1")

    assert report.discovered == {"alpha": 1, "beta": 1}
    assert report.total == 2
    models = await discovery.list_models()
    assert [m.model_id for m in models] == ["alpha/m1", "beta/m2"]

    trail = await db.audit_trail("models", "discovery")
    assert trail[-1].actor_id == "op-1"


@pytest.mark.asyncio
async def test_failed_listing_marks_models_unavailable(db, client, provider_a, monkeypatch):
    discovery = ModelDiscovery(db, client)
    await discovery.discover_all()
    assert await discovery.is_available("alpha", "m1")

    async def broken():
        raise ProviderError("listing failed", provider="alpha")

    monkeypatch.setattr(provider_a, "list_models", broken)
    report = await discovery.discover_all()

    assert "alpha" in report.failed
    assert not await discovery.is_available("alpha", "m1")
    assert not await discovery.is_available("alpha", "alpha/m1")
    assert await discovery.is_available("alpha", "never-seen")
    assert [m.model_id for m in await discovery.list_models()] == ["beta/m2"]


@pytest.mark.asyncio
async def test_models_missing_from_listing_become_unavailable(db, client, provider_b):
    discovery = ModelDiscovery(db, client)
    await discovery.discover_all()

    provider_b.models = ["m2-new"]
    await discovery.discover_all()

    available = {m.model_id for m in await discovery.list_models(provider="beta")}
    assert available == {"beta/m2-new"}
    everything = {m.model_id for m in await discovery.list_models(provider="beta", available_only=False)}
    assert everything == {"beta/m2", "beta/m2-new"}


@pytest.mark.asyncio
async def test_register_model_ownership(db, client):
    discovery = ModelDiscovery(db, client)
    record = await discovery.register_model("gamma", "custom-7b", owner_id="prov-1", display_name="Custom")
    assert record.model_id == "gamma/custom-7b"
    assert record.display_name == "Custom"

    with pytest.raises(Conflict):
        await discovery.register_model("gamma", "custom-7b", owner_id="prov-2")
    with pytest.raises(InvalidInput):
        await discovery.register_model("", "x", owner_id="prov-1")
