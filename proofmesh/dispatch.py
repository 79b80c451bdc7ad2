"""Parallel fan-out of one prompt to many models."""

from __future__ import annotations

import asyncio
import hashlib
import logging
from typing import Optional

from .client import LMClient
from .context import CallContext
from .contracts import CallTrace, DispatchRequest, DispatchResult, LMRequest, ModelResult
from .errors import Internal, NotFound, ProofmeshError
from .ledger import LedgerEntry, LedgerRepository
from .registry import ProviderRegistry
from .utils.clock import new_id

logger = logging.getLogger(__name__)


class Dispatcher:
    """Send one prompt to N models at once under a shared deadline.

    Results come back in the order the models were requested. A failing
    model never aborts its siblings; it yields a result carrying ``error``.
    """

    def __init__(
        self,
        client: LMClient,
        registry: ProviderRegistry,
        ledger: LedgerRepository,
        default_timeout_s: float = 30.0,
    ) -> None:
        self.client = client
        self.registry = registry
        self.ledger = ledger
        self.default_timeout_s = default_timeout_s

    async def dispatch(
        self, request: DispatchRequest, ctx: Optional[CallContext] = None
    ) -> DispatchResult:
        dispatch_id = new_id()
        timeout = request.timeout_s or self.default_timeout_s
        ctx = ctx.child(timeout) if ctx else CallContext(timeout)

        if request.persist:
            prompt_hash = hashlib.sha256(request.prompt.encode("utf-8")).hexdigest()
            await self.ledger.create_dispatch(dispatch_id, prompt_hash, list(request.models))

        tasks = [
            asyncio.create_task(self._call_model(dispatch_id, model, request, ctx))
            for model in request.models
        ]
        try:
            results = list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            raise

        if request.persist:
            await self.ledger.complete_dispatch(dispatch_id)

        timed_out = any(r.error and r.error.startswith("timeout") for r in results)
        failures = sum(1 for r in results if r.error)
        logger.info(
            f"Dispatch {dispatch_id} completed: {len(results) - failures}/{len(results)} models answered"
        )
        return DispatchResult(
            dispatch_id=dispatch_id, status="completed", results=results, timed_out=timed_out
        )

    async def _call_model(
        self, dispatch_id: str, model: str, request: DispatchRequest, ctx: CallContext
    ) -> ModelResult:
        trace = (
            CallTrace(flow_id=dispatch_id, dispatch_id=dispatch_id, step_index=0)
            if request.persist
            else None
        )
        lm_request = LMRequest.from_prompt(request.prompt, request.system)

        provider_name, model_name = self.client.split_model(model)
        if provider_name is None:
            try:
                provider_name = await self.registry.resolve(model)
            except NotFound as exc:
                entry_id = await self._record_unroutable(trace, model, lm_request, str(exc))
                return ModelResult(model=model, error=f"{exc.kind}: {exc.message}", ledger_entry_id=entry_id)
            model_name = model

        lm_request.model = model_name
        try:
            response = await self.client.complete_with(provider_name, lm_request, ctx, trace)
        except Internal:
            raise
        except ProofmeshError as exc:
            return ModelResult(model=model, provider=provider_name, error=f"{exc.kind}: {exc.message}")

        return ModelResult(
            model=model,
            provider=response.provider,
            content=response.content,
            tokens_in=response.tokens_in,
            tokens_out=response.tokens_out,
            latency_ms=response.latency_ms,
            ledger_entry_id=response.ledger_entry_id,
        )

    async def _record_unroutable(
        self, trace: Optional[CallTrace], model: str, request: LMRequest, error: str
    ) -> Optional[str]:
        if trace is None:
            return None
        entry = await self.ledger.append(
            LedgerEntry(
                flow_id=trace.flow_id,
                dispatch_id=trace.dispatch_id,
                step_index=0,
                model_id=model,
                prompt=request.prompt,
                system_prompt=request.system_prompt,
                error=f"not_found: {error}",
                finish_reason="error",
            )
        )
        return entry.id

    async def get_dispatch(self, dispatch_id: str) -> dict:
        """Return the dispatch row together with its ledger entries."""
        record = await self.ledger.get_dispatch(dispatch_id)
        if record is None:
            raise NotFound(f"dispatch {dispatch_id} not found")
        entries = await self.ledger.flow(dispatch_id)
        return {"dispatch": record, "entries": entries}


__all__ = ["Dispatcher"]
