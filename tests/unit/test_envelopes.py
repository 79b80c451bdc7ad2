"""Envelope router, sinks and delivery worker tests."""

from datetime import timedelta

import httpx
import pytest

from proofmesh.contracts import AuthClaims, DeliveryMessage
from proofmesh.db import EnvelopeRecord
from proofmesh.envelopes import DeliveryError, DeliveryWorker, EnvelopeRouter, WebhookSink, settle_status
from proofmesh.errors import Conflict, Forbidden, InvalidInput, NotFound
from proofmesh.transports.inmemory import InMemoryTransport
from proofmesh.utils import utcnow

ALICE = AuthClaims(user_id="alice", handle="alice")
BOB = AuthClaims(user_id="bob", handle="bob")

TWO_TARGETS = [
    {"target_type": "webhook", "target_config": {"url": "https://hooks.test/a"}},
    {"target_type": "s3", "target_config": {"bucket": "pieces"}},
]


@pytest.fixture
def router(db):
    return EnvelopeRouter(db)


class RecordingSink:
    def __init__(self, failures=None):
        self.failures = list(failures or [])
        self.delivered = []

    async def deliver(self, message: DeliveryMessage) -> None:
        if self.failures:
            raise self.failures.pop(0)
        self.delivered.append(message.target_id)


def test_settle_status():
    assert settle_status(["delivered", "pending"]) is None
    assert settle_status(["delivered", "delivered"]) == "delivered"
    assert settle_status(["failed", "failed"]) == "failed"
    assert settle_status(["delivered", "failed"]) == "partial"
    assert settle_status([]) is None


@pytest.mark.asyncio
async def test_anonymous_envelope_claim_flow(router):
    envelope = await router.create_anonymous("witheout", "hash-1", TWO_TARGETS)
    assert envelope.status == "pending"
    assert envelope.source_user_id is None
    assert envelope.target_count == 2

    status = await router.get_status(envelope.id)
    assert status.status == "pending"
    assert status.target_count == 2
    assert status.delivered_count == 0

    claimed = await router.claim(envelope.id, ALICE)
    assert claimed.source_user_id == "alice"

    with pytest.raises(Conflict):
        await router.claim(envelope.id, BOB)


@pytest.mark.asyncio
async def test_anonymous_only_from_allowed_sources(router):
    with pytest.raises(Forbidden):
        await router.create_anonymous("horostracker", "hash", TWO_TARGETS)


@pytest.mark.asyncio
async def test_create_validates_input(router):
    with pytest.raises(InvalidInput):
        await router.create_envelope(ALICE, "fax", "hash", TWO_TARGETS)
    with pytest.raises(InvalidInput):
        await router.create_envelope(ALICE, "api", "", TWO_TARGETS)
    with pytest.raises(InvalidInput):
        await router.create_envelope(ALICE, "api", "hash", [])
    with pytest.raises(InvalidInput):
        await router.create_envelope(ALICE, "api", "hash", [{"target_type": "carrier-pigeon"}])


@pytest.mark.asyncio
async def test_only_owner_reads_envelope(router):
    envelope = await router.create_envelope(ALICE, "horostracker", "hash", TWO_TARGETS, ttl_minutes=30)
    view = await router.get_envelope(envelope.id, ALICE)
    assert [t.target_type for t in view.targets] == ["webhook", "s3"]
    assert view.ttl_minutes == 30
    assert view.expires_at - view.created_at == timedelta(minutes=30)

    with pytest.raises(Forbidden):
        await router.get_envelope(envelope.id, BOB)
    with pytest.raises(NotFound):
        await router.get_status("missing")


@pytest.mark.asyncio
async def test_listing_by_user_and_batch(router):
    first = await router.create_envelope(ALICE, "api", "h1", TWO_TARGETS, batch_id="batch-1")
    second = await router.create_envelope(ALICE, "api", "h2", TWO_TARGETS, batch_id="batch-1")
    await router.create_envelope(BOB, "api", "h3", TWO_TARGETS)

    mine = await router.list_by_user("alice")
    assert [e.id for e in mine] == [second.id, first.id]
    assert len(await router.list_by_user("alice", limit=1)) == 1
    assert [e.id for e in await router.list_by_batch("batch-1")] == [first.id, second.id]


@pytest.mark.asyncio
async def test_targets_settle_into_partial(router):
    envelope = await router.create_envelope(ALICE, "api", "hash", TWO_TARGETS)
    webhook, s3 = envelope.targets

    status = await router.deliver_target(envelope.id, webhook.id)
    assert status.status == "processing"
    assert status.delivered_count == 1

    status = await router.fail_target(envelope.id, s3.id, "bucket missing")
    assert status.status == "partial"

    view = await router.get_envelope(envelope.id, ALICE)
    assert view.delivered_count + view.failed_count == view.target_count
    with pytest.raises(Conflict):
        await router.deliver_target(envelope.id, s3.id)


@pytest.mark.asyncio
async def test_all_failed_targets_fail_envelope(router):
    envelope = await router.create_envelope(
        ALICE, "api", "hash", [{"target_type": "email", "target_config": {"to": "a@b.c"}}]
    )
    status = await router.fail_target(envelope.id, envelope.targets[0].id, "smtp down")
    assert status.status == "failed"
    view = await router.get_envelope(envelope.id, ALICE)
    assert view.error == "smtp down"


@pytest.mark.asyncio
async def test_status_machine_rejects_backward_moves(router):
    envelope = await router.create_envelope(ALICE, "api", "hash", TWO_TARGETS)
    await router.update_status(envelope.id, "dispatched")
    with pytest.raises(Conflict):
        await router.update_status(envelope.id, "pending")
    with pytest.raises(Conflict):
        await router.update_status(envelope.id, "delivered")
    view = await router.update_status(envelope.id, "processing")
    assert view.status == "processing"


@pytest.mark.asyncio
async def test_expire_envelopes(db, router):
    stale = await router.create_anonymous("api", "hash", TWO_TARGETS)
    fresh = await router.create_anonymous("api", "hash", TWO_TARGETS)
    async with db.transaction() as session:
        record = await session.get(EnvelopeRecord, stale.id)
        record.expires_at = utcnow() - timedelta(minutes=1)

    assert await router.expire_envelopes() == 1
    assert (await router.get_status(stale.id)).status == "expired"
    assert (await router.get_status(fresh.id)).status == "pending"
    with pytest.raises(Conflict):
        await router.claim(stale.id, ALICE)
    assert await router.expire_envelopes() == 0


@pytest.mark.asyncio
async def test_targets_cannot_settle_after_expiry(db, router):
    envelope = await router.create_envelope(ALICE, "api", "hash", TWO_TARGETS)
    webhook, s3 = envelope.targets
    async with db.transaction() as session:
        record = await session.get(EnvelopeRecord, envelope.id)
        record.expires_at = utcnow() - timedelta(seconds=1)

    with pytest.raises(Conflict):
        await router.deliver_target(envelope.id, webhook.id)
    with pytest.raises(Conflict):
        await router.fail_target(envelope.id, s3.id, "late")
    view = await router.get_envelope(envelope.id, ALICE)
    assert view.delivered_count == 0
    assert view.failed_count == 0


@pytest.mark.asyncio
async def test_dispatch_publishes_one_message_per_target(router):
    transport = InMemoryTransport()
    envelope = await router.create_envelope(ALICE, "api", "hash", TWO_TARGETS)

    assert await router.dispatch_envelope(envelope.id, transport) == 2
    assert transport.pending("envelope.webhook") == 1
    assert transport.pending("envelope.s3") == 1
    assert (await router.get_status(envelope.id)).status == "dispatched"

    with pytest.raises(Conflict):
        await router.dispatch_envelope(envelope.id, transport)


@pytest.mark.asyncio
async def test_worker_delivers_and_retries(router):
    transport = InMemoryTransport(poll_interval=0.01)
    webhook_sink = RecordingSink(failures=[DeliveryError("503", retryable=True)])
    s3_sink = RecordingSink()
    worker = DeliveryWorker(router, transport, {"webhook": webhook_sink, "s3": s3_sink})

    envelope = await router.create_envelope(ALICE, "api", "hash", TWO_TARGETS)
    await router.dispatch_envelope(envelope.id, transport)
    await worker.start(lifespan=0.3)

    status = await router.get_status(envelope.id)
    assert status.status == "delivered"
    assert status.delivered_count == 2
    assert webhook_sink.delivered == [envelope.targets[0].id]
    assert s3_sink.delivered == [envelope.targets[1].id]
    assert len(transport.acked) == 3


@pytest.mark.asyncio
async def test_worker_fails_target_after_max_attempts(router):
    transport = InMemoryTransport()
    sink = RecordingSink(failures=[DeliveryError("503", retryable=True)] * 3)
    worker = DeliveryWorker(router, transport, {"email": sink}, max_attempts=2)
    envelope = await router.create_envelope(
        ALICE, "api", "hash", [{"target_type": "email", "target_config": {"to": "a@b.c"}}]
    )
    target_id = envelope.targets[0].id

    first = DeliveryMessage(envelope_id=envelope.id, target_id=target_id, target_type="email", piece_hash="hash")
    await worker.handle(first)
    assert transport.pending("envelope.email") == 1

    await worker.handle(first.model_copy(update={"attempt": 1}))
    status = await router.get_status(envelope.id)
    assert status.status == "failed"
    assert worker.handled == [target_id]


@pytest.mark.asyncio
async def test_worker_fails_target_without_sink_and_drops_unknown(router):
    transport = InMemoryTransport()
    worker = DeliveryWorker(router, transport, {})
    envelope = await router.create_envelope(
        ALICE, "api", "hash", [{"target_type": "ipfs", "target_config": {}}]
    )
    message = DeliveryMessage(
        envelope_id=envelope.id, target_id=envelope.targets[0].id, target_type="ipfs"
    )
    await worker.handle(message)
    assert (await router.get_status(envelope.id)).status == "failed"

    await worker.handle(message.model_copy(update={"envelope_id": "missing"}))
    assert worker.handled == [envelope.targets[0].id]


@pytest.mark.asyncio
async def test_webhook_sink_posts_metadata():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = request.read()
        return httpx.Response(202)

    sink = WebhookSink(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    message = DeliveryMessage(
        envelope_id="e1",
        target_id="t1",
        target_type="webhook",
        target_config={"url": "https://hooks.test/in"},
        piece_hash="abc",
    )
    await sink.deliver(message)
    assert seen["url"] == "https://hooks.test/in"
    assert b'"piece_hash":"abc"' in seen["body"].replace(b" ", b"")


@pytest.mark.asyncio
async def test_webhook_sink_classifies_failures():
    statuses = iter([500, 404])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(next(statuses))

    sink = WebhookSink(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    message = DeliveryMessage(
        envelope_id="e1", target_id="t1", target_type="webhook", target_config={"url": "https://hooks.test/in"}
    )
    with pytest.raises(DeliveryError) as server_error:
        await sink.deliver(message)
    assert server_error.value.retryable

    with pytest.raises(DeliveryError) as not_found:
        await sink.deliver(message)
    assert not not_found.value.retryable

    with pytest.raises(InvalidInput):
        await sink.deliver(message.model_copy(update={"target_config": {}}))
