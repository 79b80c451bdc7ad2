"""Multi-provider LM client with a configuration-ordered fallback chain."""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Any, Optional

from .context import CallContext
from .contracts import CallTrace, LMRequest, LMResponse
from .errors import (
    DeadlineExceeded,
    NotFound,
    OperationCancelled,
    ProofmeshError,
    ProviderError,
    ProviderUnavailable,
)
from .ledger import LedgerEntry, LedgerRepository
from .providers import BaseProvider

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"^\s*```[A-Za-z0-9_-]*\s*\n?(.*?)\n?```\s*$", re.DOTALL)


def extract_json(text: str) -> Any:
    """Best-effort parse of a JSON object or array embedded in model output.

    Leading code fences are stripped; parsing starts at the first ``{`` or
    ``[``. Returns None when nothing parses.
    """
    if not text:
        return None
    match = _FENCE.match(text)
    body = match.group(1) if match else text
    starts = [i for i in (body.find("{"), body.find("[")) if i >= 0]
    if not starts:
        return None
    try:
        value, _ = json.JSONDecoder().raw_decode(body[min(starts):])
    except ValueError:
        return None
    return value


class LMClient:
    """Send LM requests to named providers or along the fallback chain.

    When a ledger is attached and the caller passes a ``CallTrace``, every
    attempt (successful or not) is recorded before the caller sees the
    outcome.
    """

    def __init__(
        self,
        providers: Optional[list[BaseProvider]] = None,
        ledger: Optional[LedgerRepository] = None,
    ) -> None:
        self._providers: dict[str, BaseProvider] = {}
        self._fallback: list[str] = []
        self.ledger = ledger
        for provider in providers or []:
            self.add_provider(provider, fallback=True)

    # ------------------------------------------------------------------
    # Provider table
    def add_provider(self, provider: BaseProvider, fallback: bool = False) -> None:
        """Make ``provider`` routable by name; optionally append it to the chain."""
        self._providers[provider.name] = provider
        if fallback and provider.name not in self._fallback:
            self._fallback.append(provider.name)

    def remove_provider(self, name: str) -> None:
        self._providers.pop(name, None)
        if name in self._fallback:
            self._fallback.remove(name)

    def get(self, name: str) -> Optional[BaseProvider]:
        return self._providers.get(name)

    def has_provider(self, name: str) -> bool:
        return name in self._providers

    @property
    def fallback_chain(self) -> list[str]:
        return list(self._fallback)

    def configured(self) -> list[BaseProvider]:
        return [self._providers[name] for name in self._fallback]

    def routable(self) -> list[BaseProvider]:
        """Every provider reachable by name, chain members first."""
        extra = [p for name, p in self._providers.items() if name not in self._fallback]
        return self.configured() + extra

    def split_model(self, model: Optional[str]) -> tuple[Optional[str], Optional[str]]:
        """Split ``provider/model`` when the prefix names a known provider."""
        if model and "/" in model:
            prefix, rest = model.split("/", 1)
            if prefix in self._providers:
                return prefix, rest
        return None, model

    # ------------------------------------------------------------------
    # Calls
    async def complete(
        self,
        request: LMRequest,
        ctx: Optional[CallContext] = None,
        trace: Optional[CallTrace] = None,
    ) -> LMResponse:
        """Return the first successful response along the fallback chain."""
        ctx = ctx or CallContext()
        provider_name, model = self.split_model(request.model)
        if provider_name:
            return await self.complete_with(
                provider_name, request.model_copy(update={"model": model}), ctx, trace
            )

        candidates = [
            self._providers[name]
            for name in self._fallback
            if request.model is None or self._providers[name].supports(request.model)
        ]
        if not candidates:
            error = ProviderError(
                f"no provider serves model {request.model}",
                model=request.model or "",
            )
            await self._record(trace, request, None, request.model or "", error=error)
            raise ProviderUnavailable(str(error), attempts=[error])

        attempts: list[ProviderError] = []
        for provider in candidates:
            try:
                return await self._attempt(provider, request, ctx, trace)
            except ProviderError as exc:
                attempts.append(exc)
                logger.warning(f"Provider {provider.name} failed, trying next: {exc}")
                continue
        raise ProviderUnavailable(
            f"all providers failed: {'; '.join(str(a) for a in attempts)}", attempts=attempts
        )

    async def complete_with(
        self,
        provider_name: str,
        request: LMRequest,
        ctx: Optional[CallContext] = None,
        trace: Optional[CallTrace] = None,
    ) -> LMResponse:
        """Call one named provider, no fallback. Failures raise ProviderError."""
        ctx = ctx or CallContext()
        provider = self._providers.get(provider_name)
        if provider is None:
            error = ProviderError(
                f"provider {provider_name} not found", provider=provider_name, model=request.model or ""
            )
            await self._record(trace, request, None, request.model or "", error=error)
            raise NotFound(str(error), provider=provider_name)
        return await self._attempt(provider, request, ctx, trace)

    async def _attempt(
        self,
        provider: BaseProvider,
        request: LMRequest,
        ctx: CallContext,
        trace: Optional[CallTrace],
    ) -> LMResponse:
        model = request.model or provider.default_model or ""
        start = time.perf_counter()
        try:
            response = await ctx.run(provider.complete(request))
        except (DeadlineExceeded, OperationCancelled) as exc:
            elapsed = int((time.perf_counter() - start) * 1000)
            await self._record(trace, request, provider, model, error=exc, latency_ms=elapsed)
            raise
        except ProviderError as exc:
            elapsed = int((time.perf_counter() - start) * 1000)
            await self._record(trace, request, provider, model, error=exc, latency_ms=elapsed)
            raise
        except ProofmeshError:
            raise
        except Exception as exc:
            elapsed = int((time.perf_counter() - start) * 1000)
            wrapped = ProviderError(
                f"{type(exc).__name__}: {exc}", provider=provider.name, model=model
            )
            await self._record(trace, request, provider, model, error=wrapped, latency_ms=elapsed)
            raise wrapped from exc

        wall_ms = int((time.perf_counter() - start) * 1000)
        response.latency_ms = max(response.latency_ms, wall_ms)
        if request.response_format == "json" and response.parsed is None:
            response.parsed = extract_json(response.content)
        entry = await self._record(trace, request, provider, model, response=response)
        if entry is not None:
            response.ledger_entry_id = entry.id
        return response

    async def _record(
        self,
        trace: Optional[CallTrace],
        request: LMRequest,
        provider: Optional[BaseProvider],
        model: str,
        response: Optional[LMResponse] = None,
        error: Optional[BaseException] = None,
        latency_ms: int = 0,
    ) -> Optional[LedgerEntry]:
        if trace is None or self.ledger is None:
            return None
        entry = LedgerEntry(
            flow_id=trace.flow_id,
            dispatch_id=trace.dispatch_id,
            step_index=trace.step_index,
            node_id=trace.node_id,
            replay_of_id=trace.replay_of_id,
            model_id=model,
            provider=provider.name if provider else getattr(error, "provider", "") or "",
            prompt=request.prompt,
            system_prompt=request.system_prompt,
        )
        if response is not None:
            entry.response_raw = response.content
            entry.response_parsed = response.parsed
            entry.tokens_in = response.tokens_in
            entry.tokens_out = response.tokens_out
            entry.latency_ms = response.latency_ms
            entry.finish_reason = response.finish_reason
        else:
            entry.error = _describe(error)
            entry.latency_ms = latency_ms
            entry.finish_reason = "error"
        return await self.ledger.append(entry)

    async def aclose(self) -> None:
        for provider in self._providers.values():
            await provider.aclose()


def _describe(error: Optional[BaseException]) -> str:
    if error is None:
        return "unknown error"
    if isinstance(error, ProviderError) and error.status == 429:
        return "rate limited"
    if isinstance(error, ProofmeshError):
        return f"{error.kind}: {error.message}"
    return str(error)


__all__ = ["LMClient", "extract_json"]
