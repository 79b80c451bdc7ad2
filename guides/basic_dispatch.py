"""Simple example showing a parallel dispatch to several models."""

import asyncio

from proofmesh import DispatchRequest, Runtime


async def main():
    """Send one prompt to every configured model and print the answers."""
    # Providers come from config.yaml or the *_API_KEY environment variables
    async with Runtime.from_config() as runtime:
        models = [m for p in runtime.client.configured() for m in p.models[:1]]
        if not models:
            print("No providers configured; set GROQ_API_KEY or GEMINI_API_KEY first")
            return

        result = await runtime.dispatcher.dispatch(
            DispatchRequest(
                prompt="In one sentence: is the Great Wall of China visible from orbit?",
                models=models,
                timeout_s=20,
            )
        )

        print(f"✅ Dispatch {result.dispatch_id} finished")
        for item in result.results:
            if item.error:
                print(f"❌ {item.model}: {item.error}")
            else:
                print(f"📋 {item.model} ({item.latency_ms}ms): {item.content}")

        entries = await runtime.ledger.flow(result.dispatch_id)
        print(f"🔗 {len(entries)} calls recorded in the ledger")


if __name__ == "__main__":
    asyncio.run(main())
