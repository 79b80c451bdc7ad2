"""Benchmarks: compare several models over one workflow across a node corpus."""

from __future__ import annotations

import asyncio
import json
import logging
import statistics
from typing import Any, Optional

from sqlalchemy import select

from .contracts import AuthClaims
from .db import BenchmarkRecord, PlatformDB, WorkflowRunRecord
from .errors import Conflict, InvalidInput, NotFound
from .ledger import LedgerRepository
from .nodes import Node, NodeStore
from .utils.clock import utcnow
from .workflows import WorkflowEngine, WorkflowService

logger = logging.getLogger(__name__)

DEFAULT_METRICS = ["fidelity", "hallucination_count", "source_accuracy", "latency"]
LOWER_IS_BETTER = frozenset({"hallucination_count", "latency"})


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def run_metrics(run: WorkflowRunRecord, metrics: list[str], latency_ms: int) -> dict[str, Optional[float]]:
    """Pull metric values for one run from the final step's parsed output."""
    final = (run.result or {}).get("final")
    values: dict[str, Optional[float]] = {}
    for metric in metrics:
        if metric == "latency":
            values[metric] = float(latency_ms)
        elif isinstance(final, dict):
            values[metric] = _number(final.get(metric))
        else:
            values[metric] = None
    return values


def aggregate(
    cells: dict[str, dict[str, dict[str, Any]]], models: list[str], metrics: list[str]
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Return per-model mean/stddev per metric and per-node best model per metric.

    ``cells`` maps node id to model to ``{"metrics": {...}, "latency_ms": ...}``.
    Best-model ties go to the lower latency.
    """
    per_model: dict[str, Any] = {}
    for model in models:
        per_model[model] = {}
        for metric in metrics:
            values = [
                cell[model]["metrics"][metric]
                for cell in cells.values()
                if model in cell and cell[model]["metrics"].get(metric) is not None
            ]
            per_model[model][metric] = {
                "mean": statistics.fmean(values) if values else None,
                "stddev": statistics.pstdev(values) if values else None,
                "n": len(values),
            }

    best: dict[str, Any] = {}
    for node_id, cell in cells.items():
        best[node_id] = {}
        for metric in metrics:
            scored = [
                (model, data["metrics"][metric], data["latency_ms"])
                for model, data in cell.items()
                if data["metrics"].get(metric) is not None
            ]
            if not scored:
                best[node_id][metric] = None
                continue
            sign = 1 if metric in LOWER_IS_BETTER else -1
            scored.sort(key=lambda item: (sign * item[1], item[2]))
            best[node_id][metric] = scored[0][0]
    return per_model, best


class BenchmarkRunner:
    def __init__(
        self,
        db: PlatformDB,
        workflows: WorkflowService,
        engine: WorkflowEngine,
        node_store: NodeStore,
        ledger: LedgerRepository,
    ) -> None:
        self.db = db
        self.workflows = workflows
        self.engine = engine
        self.node_store = node_store
        self.ledger = ledger

    async def create_benchmark(
        self,
        claims: AuthClaims,
        name: str,
        workflow_name: str,
        models: list[str],
        filter_tags: Optional[list[str]] = None,
        filter_min_score: Optional[float] = None,
        metrics: Optional[list[str]] = None,
        replay_from: Optional[str] = None,
    ) -> BenchmarkRecord:
        if not name or not workflow_name or not models:
            raise InvalidInput("name, workflow_name and models are required")
        await self.workflows.get_by_name(workflow_name)
        record = BenchmarkRecord(
            name=name,
            models=list(models),
            filter_tags=list(filter_tags or []),
            filter_min_score=filter_min_score,
            workflow_name=workflow_name,
            metrics=list(metrics or DEFAULT_METRICS),
            replay_from=replay_from,
            created_by=claims.user_id,
        )
        async with self.db.transaction() as session:
            session.add(record)
            await self.db.audit("benchmark", record.id, "created", claims.user_id, session=session)
        return record

    async def list_benchmarks(self, limit: int = 50) -> list[BenchmarkRecord]:
        async with self.db.session() as session:
            result = await session.execute(
                select(BenchmarkRecord).order_by(BenchmarkRecord.created_at.desc()).limit(limit)
            )
            return list(result.scalars().all())

    async def get_benchmark(self, benchmark_id: str) -> BenchmarkRecord:
        async with self.db.session() as session:
            record = await session.get(BenchmarkRecord, benchmark_id)
        if record is None:
            raise NotFound(f"benchmark {benchmark_id} not found")
        return record

    async def export_benchmark(self, benchmark_id: str) -> str:
        """JSON text of the benchmark results."""
        record = await self.get_benchmark(benchmark_id)
        return json.dumps(record.results or {}, indent=2, sort_keys=True, default=str)

    async def replay_benchmark(
        self, benchmark_id: str, claims: AuthClaims, models: list[str]
    ) -> BenchmarkRecord:
        """New pending benchmark inheriting configuration, with a new model set."""
        if not models:
            raise InvalidInput("models are required for a replay")
        source = await self.get_benchmark(benchmark_id)
        return await self.create_benchmark(
            claims,
            name=f"replay:{source.name}",
            workflow_name=source.workflow_name,
            models=models,
            filter_tags=source.filter_tags,
            filter_min_score=source.filter_min_score,
            metrics=source.metrics,
            replay_from=source.id,
        )

    async def run_benchmark(self, benchmark_id: str, claims: AuthClaims) -> BenchmarkRecord:
        """Run the workflow once per (node, model) and store the aggregate."""
        async with self.db.transaction() as session:
            record = await session.get(BenchmarkRecord, benchmark_id)
            if record is None:
                raise NotFound(f"benchmark {benchmark_id} not found")
            if record.status != "pending":
                raise Conflict(f"benchmark {benchmark_id} is {record.status}")
            record.status = "running"

        try:
            workflow = await self.workflows.get_by_name(record.workflow_name)
            nodes = await self._corpus(record)
            logger.info(
                f"Benchmark {record.name}: {len(nodes)} nodes x {len(record.models)} models"
            )
            cells: dict[str, dict[str, dict[str, Any]]] = {}
            for node in nodes:
                runs = await asyncio.gather(
                    *(
                        self.engine.run(
                            workflow.workflow_id, claims, node_id=node.id, body=node.body, target_model=model
                        )
                        for model in record.models
                    )
                )
                cells[node.id] = {}
                for model, run in zip(record.models, runs):
                    latency = sum(e.latency_ms for e in await self.ledger.flow(run.run_id))
                    cells[node.id][model] = {
                        "run_id": run.run_id,
                        "status": run.status,
                        "error": run.error,
                        "latency_ms": latency,
                        "metrics": run_metrics(run, record.metrics, latency),
                    }
            per_model, best = aggregate(cells, record.models, record.metrics)
            results = {
                "node_count": len(nodes),
                "models": record.models,
                "metrics": record.metrics,
                "per_model": per_model,
                "per_node_best": best,
                "cells": cells,
            }
        except Exception as exc:
            logger.exception(f"Benchmark {benchmark_id} failed")
            await self._finish(benchmark_id, "failed", error=str(exc))
            raise

        return await self._finish(benchmark_id, "completed", results=results)

    async def _corpus(self, record: BenchmarkRecord) -> list[Node]:
        nodes = await self.node_store.list_nodes(tags=record.filter_tags or None)
        if record.filter_min_score is None:
            return nodes
        return [n for n in nodes if n.score is not None and n.score >= record.filter_min_score]

    async def _finish(
        self,
        benchmark_id: str,
        status: str,
        results: Optional[dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> BenchmarkRecord:
        async with self.db.transaction() as session:
            record = await session.get(BenchmarkRecord, benchmark_id)
            record.status = status
            record.results = results or {}
            record.error = error
            record.completed_at = utcnow()
            await self.db.audit("benchmark", benchmark_id, status, record.created_by, session=session)
        return record


__all__ = [
    "BenchmarkRunner",
    "DEFAULT_METRICS",
    "LOWER_IS_BETTER",
    "aggregate",
    "run_metrics",
]
