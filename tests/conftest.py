import pytest
import pytest_asyncio

from proofmesh.client import LMClient
from proofmesh.contracts import AuthClaims
from proofmesh.db import PlatformDB
from proofmesh.grants import GrantEngine
from proofmesh.ledger import SQLiteLedger
from proofmesh.providers import ScriptedProvider
from proofmesh.registry import ProviderRegistry


@pytest_asyncio.fixture
async def db(tmp_path):
    platform = PlatformDB(f"sqlite+aiosqlite:///{tmp_path / 'platform.db'}")
    await platform.init_db()
    yield platform
    await platform.dispose()


@pytest.fixture
def ledger(tmp_path):
    store = SQLiteLedger(tmp_path / "flows.db")
    yield store
    store.close()


@pytest.fixture
def operator():
    return AuthClaims(user_id="op-1", handle="op", role="operator")


@pytest.fixture
def provider_a():
    return ScriptedProvider("alpha", ["m1"], replies={"m1": "answer from m1"})


@pytest.fixture
def provider_b():
    return ScriptedProvider("beta", ["m2"], replies={"m2": "answer from m2"})


@pytest.fixture
def client(ledger, provider_a, provider_b):
    return LMClient([provider_a, provider_b], ledger)


@pytest.fixture
def registry(db, client):
    return ProviderRegistry(db, client)


@pytest.fixture
def grants(db):
    return GrantEngine(db)
