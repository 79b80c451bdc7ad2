"""Example routing one piece of content to a webhook through an envelope."""

import asyncio

from proofmesh import AuthClaims, Runtime
from proofmesh.envelopes import DeliveryWorker, WebhookSink


async def main():
    """Create an envelope, dispatch it and let a worker deliver it."""
    user = AuthClaims(user_id="user-7", handle="reader", role="user")

    async with Runtime.from_config() as runtime:
        await runtime.transport.connect()
        envelope = await runtime.envelopes.create_envelope(
            user,
            source_type="api",
            piece_hash="sha256:5f1c...",
            targets=[{"target_type": "webhook", "target_config": {"url": "https://example.org/hook"}}],
        )
        published = await runtime.envelopes.dispatch_envelope(envelope.id, runtime.transport)
        print(f"📋 Envelope {envelope.id}: {published} deliveries published")

        sink = WebhookSink()
        worker = DeliveryWorker(runtime.envelopes, runtime.transport, {"webhook": sink})
        try:
            await worker.start(lifespan=5)
        finally:
            await sink.aclose()

        status = await runtime.envelopes.get_status(envelope.id)
        print(f"🔗 Status: {status.status} ({status.delivered_count}/{status.target_count} delivered)")


if __name__ == "__main__":
    asyncio.run(main())
