"""SQLite implementation of the forensic ledger."""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from ..errors import LedgerWriteError, NotFound
from ..utils.clock import as_utc, utcnow
from .models import (
    REPLAY_INDEX_OFFSET,
    DispatchRecord,
    FlowShare,
    LatencyPercentiles,
    LedgerEntry,
    ModelStats,
    ReplayBatch,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
MAX_PAGE = 1000
_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%f"

_ENTRY_COLUMNS = (
    "seq, id, flow_id, dispatch_id, step_index, node_id, model_id, provider, prompt, "
    "system_prompt, response_raw, response_parsed, tokens_in, tokens_out, latency_ms, "
    "finish_reason, error, eval_score, replay_of_id, created_at"
)


def _ts(value: datetime) -> str:
    return as_utc(value).strftime(_TS_FORMAT)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)


class SQLiteLedger:
    """Append-only call ledger stored in a single sqlite file.

    Every statement goes through one lock so the journal has a single
    writer. ``created_at`` is strictly increasing in append
    order with microsecond resolution.
    """

    schema_version = SCHEMA_VERSION

    def __init__(self, db_path: str | Path = ":memory:", stats_min_samples: int = 20):
        self.db_path = str(db_path)
        self.stats_min_samples = stats_min_samples
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._ensure_schema()
        row = self._fetchone("SELECT MAX(created_at) AS last FROM flow_steps")
        self._last_ts = _parse_ts(row["last"]) if row and row["last"] else None

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS flow_steps (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                flow_id TEXT NOT NULL,
                dispatch_id TEXT,
                step_index INTEGER NOT NULL,
                node_id TEXT,
                model_id TEXT NOT NULL,
                provider TEXT NOT NULL,
                prompt TEXT NOT NULL,
                system_prompt TEXT NOT NULL,
                response_raw TEXT NOT NULL,
                response_parsed TEXT,
                tokens_in INTEGER NOT NULL DEFAULT 0,
                tokens_out INTEGER NOT NULL DEFAULT 0,
                latency_ms INTEGER NOT NULL DEFAULT 0,
                finish_reason TEXT NOT NULL DEFAULT '',
                error TEXT,
                eval_score REAL,
                replay_of_id TEXT,
                created_at TEXT NOT NULL
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_flow_steps_flow ON flow_steps(flow_id, step_index)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_flow_steps_model ON flow_steps(model_id, created_at)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_flow_steps_replay ON flow_steps(replay_of_id)")
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS dispatches (
                id TEXT PRIMARY KEY,
                prompt_hash TEXT NOT NULL,
                models TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                completed_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS replay_batches (
                id TEXT PRIMARY KEY,
                original_model TEXT NOT NULL,
                replay_model TEXT NOT NULL,
                provider TEXT,
                filter_tag TEXT,
                total_steps INTEGER NOT NULL DEFAULT 0,
                completed INTEGER NOT NULL DEFAULT 0,
                failed INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                completed_at TEXT
            )
            """
        )
        cur.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _next_timestamp(self) -> datetime:
        now = utcnow()
        if self._last_ts is not None and now <= self._last_ts:
            now = self._last_ts + timedelta(microseconds=1)
        self._last_ts = now
        return now

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> LedgerEntry:
        return LedgerEntry(
            seq=row["seq"],
            id=row["id"],
            flow_id=row["flow_id"],
            dispatch_id=row["dispatch_id"],
            step_index=row["step_index"],
            node_id=row["node_id"],
            model_id=row["model_id"],
            provider=row["provider"],
            prompt=row["prompt"],
            system_prompt=row["system_prompt"],
            response_raw=row["response_raw"],
            response_parsed=json.loads(row["response_parsed"]) if row["response_parsed"] else None,
            tokens_in=row["tokens_in"],
            tokens_out=row["tokens_out"],
            latency_ms=row["latency_ms"],
            finish_reason=row["finish_reason"],
            error=row["error"],
            eval_score=row["eval_score"],
            replay_of_id=row["replay_of_id"],
            created_at=_parse_ts(row["created_at"]),
        )

    def _append(self, entry: LedgerEntry) -> LedgerEntry:
        with self._lock:
            step_index = entry.step_index
            if entry.replay_of_id and step_index is None:
                original = self._fetchone(
                    "SELECT step_index FROM flow_steps WHERE id = ?", entry.replay_of_id
                )
                if original is None:
                    raise NotFound(f"ledger entry {entry.replay_of_id} not found")
                prior = self._fetchone(
                    "SELECT COUNT(*) AS n FROM flow_steps WHERE replay_of_id = ?",
                    entry.replay_of_id,
                )
                step_index = original["step_index"] + REPLAY_INDEX_OFFSET + prior["n"]

            created_at = self._next_timestamp()
            stored = entry.model_copy(
                update={
                    "id": entry.id or str(uuid.uuid4()),
                    "step_index": step_index or 0,
                    "created_at": created_at,
                }
            )
            cur = self._conn.cursor()
            cur.execute(
                """
                INSERT INTO flow_steps (
                    id, flow_id, dispatch_id, step_index, node_id, model_id, provider,
                    prompt, system_prompt, response_raw, response_parsed, tokens_in,
                    tokens_out, latency_ms, finish_reason, error, eval_score,
                    replay_of_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    stored.id,
                    stored.flow_id,
                    stored.dispatch_id,
                    stored.step_index,
                    stored.node_id,
                    stored.model_id,
                    stored.provider,
                    stored.prompt,
                    stored.system_prompt,
                    stored.response_raw,
                    json.dumps(stored.response_parsed) if stored.response_parsed is not None else None,
                    stored.tokens_in,
                    stored.tokens_out,
                    stored.latency_ms,
                    stored.finish_reason,
                    stored.error,
                    stored.eval_score,
                    stored.replay_of_id,
                    _ts(created_at),
                ),
            )
            self._conn.commit()
            stored.seq = cur.lastrowid
            return stored

    # ------------------------------------------------------------------
    # Write path
    async def append(self, entry: LedgerEntry) -> LedgerEntry:
        """Record one call; raises LedgerWriteError when it cannot be stored."""
        try:
            return await asyncio.to_thread(self._append, entry)
        except sqlite3.Error as exc:
            logger.error(
                f"Ledger write failed for flow {entry.flow_id} model {entry.model_id}: {exc}"
            )
            raise LedgerWriteError(f"ledger write failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Read path
    async def get(self, entry_id: str) -> Optional[LedgerEntry]:
        row = await asyncio.to_thread(
            self._fetchone, f"SELECT {_ENTRY_COLUMNS} FROM flow_steps WHERE id = ?", entry_id
        )
        return self._row_to_entry(row) if row else None

    async def flow(self, flow_id: str) -> list[LedgerEntry]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_ENTRY_COLUMNS} FROM flow_steps WHERE flow_id = ? ORDER BY step_index, seq",
            flow_id,
        )
        return [self._row_to_entry(r) for r in rows]

    async def at(self, flow_id: str, step_index: int) -> list[LedgerEntry]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_ENTRY_COLUMNS} FROM flow_steps WHERE flow_id = ? AND step_index = ? ORDER BY seq",
            flow_id,
            step_index,
        )
        return [self._row_to_entry(r) for r in rows]

    async def calls(
        self,
        provider: Optional[str] = None,
        model_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[LedgerEntry]:
        """Page through calls, newest first. ``limit`` is clamped to 1..1000."""
        limit = max(1, min(limit or 100, MAX_PAGE))
        clauses: list[str] = []
        params: list[Any] = []
        if provider:
            clauses.append("provider = ?")
            params.append(provider)
        if model_id:
            clauses.append("model_id = ?")
            params.append(model_id)
        if since:
            clauses.append("created_at >= ?")
            params.append(_ts(since))
        if until:
            clauses.append("created_at < ?")
            params.append(_ts(until))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_ENTRY_COLUMNS} FROM flow_steps {where} "
            "ORDER BY created_at DESC, seq DESC LIMIT ? OFFSET ?",
            *params,
            limit,
            max(0, offset),
        )
        return [self._row_to_entry(r) for r in rows]

    async def originals(self, model_id: str) -> list[LedgerEntry]:
        """Entries for ``model_id`` that are not themselves replays, oldest first."""
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_ENTRY_COLUMNS} FROM flow_steps "
            "WHERE model_id = ? AND replay_of_id IS NULL ORDER BY seq",
            model_id,
        )
        return [self._row_to_entry(r) for r in rows]

    async def replays_of(self, entry_id: str) -> list[LedgerEntry]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_ENTRY_COLUMNS} FROM flow_steps WHERE replay_of_id = ? ORDER BY seq",
            entry_id,
        )
        return [self._row_to_entry(r) for r in rows]

    async def model_stats(self, model_id: str) -> ModelStats:
        totals = await asyncio.to_thread(
            self._fetchone,
            """
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(tokens_in), 0) AS tokens_in,
                   COALESCE(SUM(tokens_out), 0) AS tokens_out,
                   COALESCE(AVG(latency_ms), 0) AS avg_latency,
                   COALESCE(SUM(CASE WHEN error IS NOT NULL AND error != '' THEN 1 ELSE 0 END), 0) AS errors
            FROM flow_steps WHERE model_id = ?
            """,
            model_id,
        )
        latencies = [
            r["latency_ms"]
            for r in await asyncio.to_thread(
                self._fetchall,
                "SELECT latency_ms FROM flow_steps WHERE model_id = ? AND latency_ms > 0 ORDER BY latency_ms",
                model_id,
            )
        ]
        total = totals["total"]
        percentiles = None
        count = len(latencies)
        if count >= self.stats_min_samples and count > 0:
            percentiles = LatencyPercentiles(
                p50=latencies[count // 2],
                p95=latencies[min(count - 1, count * 95 // 100)],
                p99=latencies[min(count - 1, count * 99 // 100)],
            )
        return ModelStats(
            model_id=model_id,
            total_calls=total,
            tokens_in=totals["tokens_in"],
            tokens_out=totals["tokens_out"],
            avg_latency_ms=float(totals["avg_latency"]),
            error_count=totals["errors"],
            error_rate=(totals["errors"] / total) if total else 0.0,
            percentiles=percentiles,
            top_flows=await self.flow_distribution(model_id),
        )

    async def flow_distribution(self, model_id: str, top: int = 10) -> list[FlowShare]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT flow_id, COUNT(*) AS calls FROM flow_steps
            WHERE model_id = ? GROUP BY flow_id ORDER BY calls DESC, flow_id LIMIT ?
            """,
            model_id,
            top,
        )
        return [FlowShare(flow_id=r["flow_id"], calls=r["calls"]) for r in rows]

    # ------------------------------------------------------------------
    # Dispatch rows
    async def create_dispatch(
        self, dispatch_id: str, prompt_hash: str, models: list[str]
    ) -> DispatchRecord:
        record = DispatchRecord(
            id=dispatch_id, prompt_hash=prompt_hash, models=models, created_at=utcnow()
        )
        try:
            await asyncio.to_thread(
                self._execute,
                "INSERT INTO dispatches (id, prompt_hash, models, status, created_at) VALUES (?, ?, ?, ?, ?)",
                record.id,
                record.prompt_hash,
                json.dumps(record.models),
                record.status,
                _ts(record.created_at),
            )
        except sqlite3.Error as exc:
            raise LedgerWriteError(f"dispatch write failed: {exc}") from exc
        return record

    async def complete_dispatch(self, dispatch_id: str) -> None:
        try:
            await asyncio.to_thread(
                self._execute,
                "UPDATE dispatches SET status = 'completed', completed_at = ? WHERE id = ?",
                _ts(utcnow()),
                dispatch_id,
            )
        except sqlite3.Error as exc:
            raise LedgerWriteError(f"dispatch write failed: {exc}") from exc

    async def get_dispatch(self, dispatch_id: str) -> Optional[DispatchRecord]:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM dispatches WHERE id = ?", dispatch_id
        )
        if row is None:
            return None
        return DispatchRecord(
            id=row["id"],
            prompt_hash=row["prompt_hash"],
            models=json.loads(row["models"]),
            status=row["status"],
            created_at=_parse_ts(row["created_at"]),
            completed_at=_parse_ts(row["completed_at"]),
        )

    # ------------------------------------------------------------------
    # Replay batches
    async def create_replay_batch(self, batch: ReplayBatch) -> ReplayBatch:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO replay_batches (
                id, original_model, replay_model, provider, filter_tag, total_steps,
                completed, failed, status, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            batch.id,
            batch.original_model,
            batch.replay_model,
            batch.provider,
            batch.filter_tag,
            batch.total_steps,
            batch.completed,
            batch.failed,
            batch.status,
            _ts(batch.created_at),
        )
        return batch

    async def finish_replay_batch(self, batch_id: str, completed: int, failed: int) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE replay_batches SET completed = ?, failed = ?, status = 'completed', completed_at = ?
            WHERE id = ?
            """,
            completed,
            failed,
            _ts(utcnow()),
            batch_id,
        )

    async def get_replay_batch(self, batch_id: str) -> Optional[ReplayBatch]:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM replay_batches WHERE id = ?", batch_id
        )
        if row is None:
            return None
        return ReplayBatch(
            id=row["id"],
            original_model=row["original_model"],
            replay_model=row["replay_model"],
            provider=row["provider"],
            filter_tag=row["filter_tag"],
            total_steps=row["total_steps"],
            completed=row["completed"],
            failed=row["failed"],
            status=row["status"],
            created_at=_parse_ts(row["created_at"]),
            completed_at=_parse_ts(row["completed_at"]),
        )

    # ------------------------------------------------------------------
    # Blob export
    def iter_blob(self, chunk_size: int = 65536) -> Iterator[bytes]:
        """Stream the ledger database file as-is."""
        if self.db_path == ":memory:":
            raise NotFound("in-memory ledger has no database file")
        with self._lock:
            self._conn.commit()
        with open(self.db_path, "rb") as f:
            while True:
                chunk = f.read(chunk_size)
                if not chunk:
                    break
                yield chunk

    def close(self) -> None:
        self._conn.close()
