"""Command line interface for proofmesh operators."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import List, Optional

import typer

from .contracts import DispatchRequest
from .errors import ProofmeshError
from .ledger import get_ledger
from .runtime import Runtime

app = typer.Typer(help="CLI for the proofmesh LM orchestration core")

ledger_app = typer.Typer(help="Inspect the forensic call ledger")
models_app = typer.Typer(help="Model catalogue commands")
envelopes_app = typer.Typer(help="Envelope maintenance")

app.add_typer(ledger_app, name="ledger")
app.add_typer(models_app, name="models")
app.add_typer(envelopes_app, name="envelopes")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level")) -> None:
    """Proofmesh CLI entry point."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _fail(exc: ProofmeshError) -> None:
    typer.secho(f"{exc.kind}: {exc.message}", fg=typer.colors.RED)
    raise typer.Exit(code=1)


@ledger_app.command("calls")
def ledger_calls(
    model: Optional[str] = typer.Option(None, help="Only calls to this model"),
    provider: Optional[str] = typer.Option(None, help="Only calls served by this provider"),
    since: Optional[datetime] = typer.Option(None, help="Earliest created_at (UTC)"),
    limit: int = typer.Option(20, help="Number of calls to show (max 1000)"),
    ledger_path: Optional[str] = typer.Option(None, "--ledger", help="Ledger database file"),
) -> None:
    """
    List recent ledger calls, newest first.

    Example:
        proofmesh ledger calls --model gpt-4o-mini --limit 5
    """
    ledger = get_ledger(ledger_path)
    try:
        entries = asyncio.run(ledger.calls(provider=provider, model_id=model, since=since, limit=limit))
    finally:
        ledger.close()
    if not entries:
        typer.echo("No calls recorded")
        return
    for entry in entries:
        outcome = entry.error or f"{entry.tokens_in}/{entry.tokens_out} tokens"
        typer.echo(
            f"{entry.id}\t{entry.flow_id}\t{entry.step_index}\t{entry.provider}/{entry.model_id}\t"
            f"{entry.latency_ms}ms\t{outcome}"
        )


@ledger_app.command("flow")
def ledger_flow(
    flow_id: str,
    ledger_path: Optional[str] = typer.Option(None, "--ledger", help="Ledger database file"),
) -> None:
    """Show every recorded call of one flow in step order."""
    ledger = get_ledger(ledger_path)
    try:
        entries = asyncio.run(ledger.flow(flow_id))
    finally:
        ledger.close()
    if not entries:
        typer.echo("Flow not found")
        raise typer.Exit(code=1)
    for entry in entries:
        marker = f" (replay of {entry.replay_of_id})" if entry.replay_of_id else ""
        typer.echo(f"[{entry.step_index}] {entry.model_id}{marker}: {entry.error or entry.response_raw}")


@ledger_app.command("stats")
def ledger_stats(
    model: str,
    ledger_path: Optional[str] = typer.Option(None, "--ledger", help="Ledger database file"),
) -> None:
    """
    Show call statistics for one model.

    Latency percentiles are only printed once enough samples exist.
    """
    ledger = get_ledger(ledger_path)
    try:
        stats = asyncio.run(ledger.model_stats(model))
    finally:
        ledger.close()
    typer.echo(f"model: {stats.model_id}")
    typer.echo(f"calls: {stats.total_calls}")
    typer.echo(f"tokens: {stats.tokens_in} in / {stats.tokens_out} out")
    typer.echo(f"avg latency: {stats.avg_latency_ms:.1f}ms")
    typer.echo(f"errors: {stats.error_count} ({stats.error_rate:.1%})")
    if stats.percentiles is None:
        typer.echo("percentiles: insufficient samples")
    else:
        p = stats.percentiles
        typer.echo(f"percentiles: p50={p.p50}ms p95={p.p95}ms p99={p.p99}ms")
    for share in stats.top_flows:
        typer.echo(f"  {share.flow_id}\t{share.calls}")


@models_app.command("discover")
def models_discover() -> None:
    """Query every configured provider for its models and refresh the catalogue."""

    async def _run():
        async with Runtime.from_config() as runtime:
            return await runtime.discovery.discover_all(actor_id="cli")

    report = asyncio.run(_run())
    for provider, count in sorted(report.discovered.items()):
        typer.echo(f"{provider}\t{count} models")
    for provider, error in sorted(report.failed.items()):
        typer.secho(f"{provider}\tfailed: {error}", fg=typer.colors.YELLOW)
    typer.echo(f"Total: {report.total}")


@envelopes_app.command("expire")
def envelopes_expire() -> None:
    """Mark overdue envelopes as expired."""

    async def _run() -> int:
        async with Runtime.from_config() as runtime:
            return await runtime.envelopes.expire_envelopes()

    typer.echo(f"Expired {asyncio.run(_run())} envelopes")


@app.command("dispatch")
def dispatch(
    prompt: str,
    model: List[str] = typer.Option(..., "--model", "-m", help="Target model; repeat for several"),
    system: Optional[str] = typer.Option(None, help="System prompt"),
    timeout: Optional[float] = typer.Option(None, help="Shared deadline in seconds"),
    persist: bool = typer.Option(True, help="Record the calls in the ledger"),
) -> None:
    """
    Send one prompt to several models in parallel.

    Example:
        proofmesh dispatch "Summarize the claim" -m gemini-2.0-flash -m groq/llama-3.3-70b-versatile
    """

    async def _run():
        async with Runtime.from_config() as runtime:
            request = DispatchRequest(
                prompt=prompt, system=system, models=model, timeout_s=timeout, persist=persist
            )
            return await runtime.dispatcher.dispatch(request)

    try:
        result = asyncio.run(_run())
    except ProofmeshError as exc:
        _fail(exc)
        return
    typer.echo(f"dispatch {result.dispatch_id}")
    for item in result.results:
        if item.error:
            typer.secho(f"{item.model}\tERROR {item.error}", fg=typer.colors.RED)
        else:
            typer.echo(f"{item.model}\t{item.provider}\t{item.latency_ms}ms\t{item.content}")


if __name__ == "__main__":
    app()
