"""Workflow run engine: schedules steps, fans out groups, retries and records."""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Iterator, Optional

from sqlalchemy import select

from ..client import LMClient
from ..context import CallContext
from ..contracts import AuthClaims, CallTrace, LMRequest, LMResponse
from ..db import (
    CriteriaListRecord,
    PlatformDB,
    StepRunRecord,
    WorkflowRecord,
    WorkflowRunRecord,
    WorkflowStepRecord,
)
from ..discovery import ModelDiscovery
from ..errors import (
    Conflict,
    InvalidInput,
    NotFound,
    OperationCancelled,
    ProofmeshError,
    is_retryable,
)
from ..grants import GrantEngine
from ..ledger import LedgerRepository
from ..registry import ProviderRegistry
from ..utils import render_template, schedule_retry, utcnow
from ..utils.clock import new_id
from .definitions import model_keys
from .models import TARGET_PLACEHOLDER, TERMINAL_RUN_STATUSES, BatchHandle, StepOutcome

logger = logging.getLogger(__name__)


class StepFailed(ProofmeshError):
    """A step failed in a way retrying cannot fix."""

    kind = "step_failed"


def plan_groups(
    steps: list[WorkflowStepRecord],
) -> list[tuple[Optional[str], list[WorkflowStepRecord]]]:
    """Partition steps into execution groups.

    Steps sharing a ``fan_group`` form one group placed at the position of
    its lowest-ordered member; every other step is a singleton.
    """
    ordered = sorted(steps, key=lambda s: (s.step_order, s.created_at))
    groups: list[tuple[Optional[str], list[WorkflowStepRecord]]] = []
    index: dict[str, int] = {}
    for step in ordered:
        if step.fan_group is None:
            groups.append((None, [step]))
        elif step.fan_group in index:
            groups[index[step.fan_group]][1].append(step)
        else:
            index[step.fan_group] = len(groups)
            groups.append((step.fan_group, [step]))
    return groups


def effective_model(step: WorkflowStepRecord, target_model: Optional[str], override_all: bool) -> str:
    """Model a step runs against once a run-level target model is applied."""
    if step.model == TARGET_PLACEHOLDER:
        return target_model or ""
    if target_model and override_all:
        return target_model
    return step.model


class WorkflowEngine:
    """Executes active workflows as background runs.

    Each run walks its step groups in order. Singletons run alone; members of
    a fan group run concurrently under a shared deadline. Every attempt is
    traced into the ledger with ``flow_id`` set to the run id.
    """

    def __init__(
        self,
        db: PlatformDB,
        client: LMClient,
        registry: ProviderRegistry,
        grants: GrantEngine,
        ledger: LedgerRepository,
        discovery: Optional[ModelDiscovery] = None,
        backoff_base_s: float = 0.25,
        backoff_cap_s: float = 4.0,
    ) -> None:
        self.db = db
        self.client = client
        self.registry = registry
        self.grants = grants
        self.ledger = ledger
        self.discovery = discovery
        self.backoff_base_s = backoff_base_s
        self.backoff_cap_s = backoff_cap_s
        self._tasks: dict[str, asyncio.Task] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}

    # ------------------------------------------------------------------
    # Starting runs
    async def execute(
        self,
        workflow_id: str,
        claims: AuthClaims,
        node_id: Optional[str] = None,
        pre_prompt: str = "",
        body: Optional[str] = None,
        target_model: Optional[str] = None,
        batch_id: Optional[str] = None,
    ) -> str:
        """Validate and schedule a run; returns the run id immediately."""
        workflow = await self._load_active(workflow_id)
        steps = await self._steps(workflow_id)
        if not steps:
            raise InvalidInput(f"workflow {workflow.name} has no steps")
        override_all = not any(s.model == TARGET_PLACEHOLDER for s in steps)
        await self._enforce_grants(claims, steps, target_model, override_all)

        run = WorkflowRunRecord(
            workflow_id=workflow_id,
            workflow_version=workflow.version,
            batch_id=batch_id,
            node_id=node_id,
            user_id=claims.user_id,
            role=claims.role,
            pre_prompt=pre_prompt,
            body=body,
            target_model=target_model,
        )
        step_runs = {
            step.step_id: StepRunRecord(
                run_id=run.run_id,
                step_id=step.step_id,
                step_name=step.step_name,
                step_order=step.step_order,
                step_type=step.step_type,
                provider=step.provider,
                model=effective_model(step, target_model, override_all),
            )
            for step in steps
        }
        async with self.db.transaction() as session:
            session.add(run)
            for step_run in step_runs.values():
                session.add(step_run)
            await self.db.audit(
                "workflow_run", run.run_id, "run_started", claims.user_id,
                detail={"workflow_id": workflow_id, "version": workflow.version}, session=session,
            )

        event = asyncio.Event()
        self._cancel_events[run.run_id] = event
        task = asyncio.create_task(
            self._drive(run, workflow, steps, step_runs, override_all, CallContext(cancel_event=event))
        )
        self._tasks[run.run_id] = task
        task.add_done_callback(lambda _t, run_id=run.run_id: self._forget(run_id))
        logger.info(f"Run {run.run_id} of workflow {workflow.name} scheduled")
        return run.run_id

    async def run(self, workflow_id: str, claims: AuthClaims, **kwargs: Any) -> WorkflowRunRecord:
        """Execute and wait for the run to finish."""
        run_id = await self.execute(workflow_id, claims, **kwargs)
        return await self.wait(run_id)

    async def wait(self, run_id: str) -> WorkflowRunRecord:
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.shield(task)
        return await self.get_run(run_id)

    async def cancel(self, run_id: str, actor_id: Optional[str] = None) -> None:
        run = await self.get_run(run_id)
        if run.status in TERMINAL_RUN_STATUSES:
            raise Conflict(f"run {run_id} is already {run.status}")
        event = self._cancel_events.get(run_id)
        if event is not None:
            event.set()
            logger.info(f"Cancellation requested for run {run_id}")
            return
        # not driven by this process any more
        await self._finish_run(run_id, "cancelled", error="cancelled")
        await self.db.audit("workflow_run", run_id, "run_cancelled", actor_id)

    async def batch_run(
        self,
        workflow_ids: list[str],
        claims: AuthClaims,
        node_id: Optional[str] = None,
        pre_prompt: str = "",
        body: Optional[str] = None,
    ) -> BatchHandle:
        """Schedule one run per workflow with shared inputs under one batch id."""
        if not workflow_ids:
            raise InvalidInput("at least one workflow is required")
        for workflow_id in workflow_ids:
            await self._load_active(workflow_id)
        batch_id = new_id()
        run_ids = [
            await self.execute(
                workflow_id, claims, node_id=node_id, pre_prompt=pre_prompt, body=body, batch_id=batch_id
            )
            for workflow_id in workflow_ids
        ]
        logger.info(f"Batch {batch_id} scheduled {len(run_ids)} runs")
        return BatchHandle(batch_id=batch_id, run_ids=run_ids)

    def _forget(self, run_id: str) -> None:
        self._tasks.pop(run_id, None)
        self._cancel_events.pop(run_id, None)

    # ------------------------------------------------------------------
    # Reads
    async def get_run(self, run_id: str) -> WorkflowRunRecord:
        async with self.db.session() as session:
            run = await session.get(WorkflowRunRecord, run_id)
        if run is None:
            raise NotFound(f"run {run_id} not found")
        return run

    async def step_runs(self, run_id: str) -> list[StepRunRecord]:
        async with self.db.session() as session:
            result = await session.execute(
                select(StepRunRecord)
                .where(StepRunRecord.run_id == run_id)
                .order_by(StepRunRecord.step_order, StepRunRecord.step_name)
            )
            return list(result.scalars().all())

    async def list_runs(
        self,
        workflow_id: Optional[str] = None,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> list[WorkflowRunRecord]:
        stmt = select(WorkflowRunRecord).order_by(WorkflowRunRecord.started_at.desc())
        if workflow_id:
            stmt = stmt.where(WorkflowRunRecord.workflow_id == workflow_id)
        if user_id:
            stmt = stmt.where(WorkflowRunRecord.user_id == user_id)
        if status:
            stmt = stmt.where(WorkflowRunRecord.status == status)
        async with self.db.session() as session:
            return list((await session.execute(stmt.limit(max(1, min(limit, 500))))).scalars().all())

    async def get_batch(self, batch_id: str) -> list[WorkflowRunRecord]:
        async with self.db.session() as session:
            result = await session.execute(
                select(WorkflowRunRecord)
                .where(WorkflowRunRecord.batch_id == batch_id)
                .order_by(WorkflowRunRecord.started_at)
            )
            runs = list(result.scalars().all())
        if not runs:
            raise NotFound(f"batch {batch_id} not found")
        return runs

    # ------------------------------------------------------------------
    # Driving a run
    async def _drive(
        self,
        run: WorkflowRunRecord,
        workflow: WorkflowRecord,
        steps: list[WorkflowStepRecord],
        step_runs: dict[str, StepRunRecord],
        override_all: bool,
        ctx: CallContext,
    ) -> None:
        run_id = run.run_id
        base = {
            "body": run.body or "",
            "node_id": run.node_id or "",
            "user_id": run.user_id,
        }
        base["pre_prompt"] = run.pre_prompt or render_template(workflow.pre_prompt_template, base)
        context: dict[str, Any] = dict(base)
        outputs: dict[str, Any] = {}
        counter = itertools.count()
        done: set[str] = set()
        # the run's cancel event stops the run between groups only; step calls
        # carry the deadline alone so the executing step can finish
        call_ctx = CallContext(deadline=ctx.deadline)

        try:
            await self._update_run(run_id, status="running")
            last_output: Any = None
            for fan_group, group in plan_groups(steps):
                ctx.check()
                if fan_group is None:
                    step = group[0]
                    outcome = await self._run_step(
                        run, step, step_runs[step.step_id], context, call_ctx, counter, override_all
                    )
                    outcomes = [outcome]
                else:
                    outcomes = await self._run_fan_group(
                        run, fan_group, group, step_runs, context, call_ctx, counter, override_all
                    )
                done.update(s.step_id for s in group)

                failed = [o for o in outcomes if not o.ok and o.required]
                for outcome in outcomes:
                    if outcome.ok:
                        context[outcome.step_name] = outcome.output
                        outputs[outcome.step_name] = outcome.output
                        last_output = outcome.output
                if fan_group is not None:
                    context[fan_group] = {o.step_name: o.output for o in outcomes if o.ok}
                if failed:
                    first = failed[0]
                    await self._skip_remaining(step_runs, done)
                    await self._finish_run(
                        run_id, "failed", error=f"step {first.step_name}: {first.error}", result={"outputs": outputs}
                    )
                    await self.db.audit(
                        "workflow_run", run_id, "run_failed", run.user_id,
                        detail={"step": first.step_name, "error": first.error},
                    )
                    logger.warning(f"Run {run_id} failed at step {first.step_name}: {first.error}")
                    return

            ctx.check()
            await self._finish_run(
                run_id, "completed", result={"outputs": outputs, "final": last_output}
            )
            await self.db.audit("workflow_run", run_id, "run_completed", run.user_id)
            logger.info(f"Run {run_id} completed ({len(outputs)} steps)")
        except OperationCancelled:
            await self._skip_remaining(step_runs, done)
            await self._finish_run(run_id, "cancelled", error="cancelled", result={"outputs": outputs})
            await self.db.audit("workflow_run", run_id, "run_cancelled", run.user_id)
            logger.info(f"Run {run_id} cancelled")
        except Exception as exc:
            logger.exception(f"Run {run_id} crashed")
            await self._skip_remaining(step_runs, done)
            await self._finish_run(run_id, "failed", error=f"internal: {exc}", result={"outputs": outputs})
            await self.db.audit("workflow_run", run_id, "run_failed", run.user_id, detail={"error": str(exc)})

    async def _run_fan_group(
        self,
        run: WorkflowRunRecord,
        fan_group: str,
        group: list[WorkflowStepRecord],
        step_runs: dict[str, StepRunRecord],
        context: dict[str, Any],
        ctx: CallContext,
        counter: Iterator[int],
        override_all: bool,
    ) -> list[StepOutcome]:
        await self.db.audit(
            "workflow_run", run.run_id, "fan_out_started", run.user_id,
            detail={"fan_group": fan_group, "steps": [s.step_name for s in group]},
        )
        group_ctx = ctx.child(max(s.timeout_ms for s in group) / 1000)
        # every member sees the same snapshot of prior outputs
        snapshot = dict(context)
        outcomes = await asyncio.gather(
            *(
                self._run_step(
                    run, step, step_runs[step.step_id], snapshot, group_ctx, counter, override_all,
                    required=bool((step.config or {}).get("required", False)),
                )
                for step in group
            )
        )
        await self.db.audit(
            "workflow_run", run.run_id, "fan_in_completed", run.user_id,
            detail={"fan_group": fan_group, "completed": sum(1 for o in outcomes if o.ok)},
        )
        return list(outcomes)

    async def _run_step(
        self,
        run: WorkflowRunRecord,
        step: WorkflowStepRecord,
        step_run: StepRunRecord,
        context: dict[str, Any],
        ctx: CallContext,
        counter: Iterator[int],
        override_all: bool,
        required: bool = True,
    ) -> StepOutcome:
        model = effective_model(step, run.target_model, override_all)
        step_context = dict(context)
        response_format = "text"
        if step.criteria_list_id:
            step_context["criteria"] = await self._criteria(step.criteria_list_id)
            response_format = "json"
        prompt = render_template(step.prompt_template, step_context)
        system = render_template(step.system_prompt, step_context)
        request = LMRequest.from_prompt(
            prompt,
            system or None,
            model or None,
            temperature=(step.config or {}).get("temperature"),
            max_tokens=(step.config or {}).get("max_tokens"),
            response_format=response_format,
        )

        await self._update_step_run(
            step_run.step_run_id,
            status="running",
            model=model,
            input={"prompt": prompt, "system_prompt": system, "model": model},
            started_at=utcnow(),
        )
        await self.db.audit(
            "workflow_run", run.run_id, "step_started", run.user_id, detail={"step": step.step_name}
        )

        entry_ids: list[str] = []
        attempt = 0
        while True:
            attempt += 1
            step_index = next(counter)
            trace = CallTrace(flow_id=run.run_id, step_index=step_index, node_id=run.node_id)
            try:
                response = await self._call(step, request, ctx.child(step.timeout_ms / 1000), trace)
                if response.ledger_entry_id:
                    entry_ids.append(response.ledger_entry_id)
                parsed = response.parsed
                if step.criteria_list_id and not isinstance(parsed, dict):
                    raise StepFailed("expected a JSON object keyed by criteria")
                break
            except ProofmeshError as exc:
                entry_ids.extend(await self._entry_ids_at(run.run_id, step_index, entry_ids))
                error = f"{exc.kind}: {exc.message}"
                if is_retryable(exc) and attempt <= step.retry_max:
                    logger.warning(
                        f"Step {step.step_name} attempt {attempt} failed, retrying: {error}"
                    )
                    await self.db.audit(
                        "workflow_run", run.run_id, "step_retried", run.user_id,
                        detail={"step": step.step_name, "attempt": attempt, "error": error},
                    )
                    try:
                        await schedule_retry(
                            attempt, ctx, self.backoff_base_s, self.backoff_cap_s,
                            retry_after=getattr(exc, "retry_after", None),
                        )
                    except ProofmeshError as wait_exc:
                        error = f"{wait_exc.kind}: {wait_exc.message}"
                    else:
                        continue
                await self._update_step_run(
                    step_run.step_run_id, status="failed", error=error,
                    attempts=attempt, ledger_entry_ids=entry_ids, finished_at=utcnow(),
                )
                await self.db.audit(
                    "workflow_run", run.run_id, "step_failed", run.user_id,
                    detail={"step": step.step_name, "error": error},
                )
                return StepOutcome(
                    step.step_name, "failed", error=error, required=required, ledger_entry_ids=entry_ids
                )

        output = parsed if parsed is not None else response.content
        await self._update_step_run(
            step_run.step_run_id,
            status="completed",
            provider=response.provider,
            output=response.content,
            response_parsed=parsed,
            attempts=attempt,
            ledger_entry_ids=entry_ids,
            finished_at=utcnow(),
        )
        await self.db.audit(
            "workflow_run", run.run_id, "step_completed", run.user_id,
            detail={"step": step.step_name, "attempts": attempt},
        )
        return StepOutcome(
            step.step_name, "completed", output=output, required=required, ledger_entry_ids=entry_ids
        )

    async def _call(
        self, step: WorkflowStepRecord, request: LMRequest, ctx: CallContext, trace: CallTrace
    ) -> LMResponse:
        """Route a step request to its provider, falling back to the client chain."""
        provider_name = step.provider or None
        if provider_name is None and request.model:
            provider_name, _ = self.client.split_model(request.model)
            if provider_name is None:
                try:
                    provider_name = await self.registry.resolve(request.model)
                except NotFound:
                    provider_name = None

        if provider_name and request.model and self.discovery is not None:
            if not await self.discovery.is_available(provider_name, request.model):
                raise StepFailed(f"model {provider_name}/{request.model} is unavailable")

        if provider_name is None:
            return await self.client.complete(request, ctx, trace)
        _, model_name = self.client.split_model(request.model)
        return await self.client.complete_with(
            provider_name, request.model_copy(update={"model": model_name}), ctx, trace
        )

    async def _entry_ids_at(self, run_id: str, step_index: int, known: list[str]) -> list[str]:
        entries = await self.ledger.at(run_id, step_index)
        return [e.id for e in entries if e.id not in known]

    # ------------------------------------------------------------------
    # Helpers
    async def _load_active(self, workflow_id: str) -> WorkflowRecord:
        async with self.db.session() as session:
            workflow = await session.get(WorkflowRecord, workflow_id)
        if workflow is None:
            raise NotFound(f"workflow {workflow_id} not found")
        if workflow.status != "active":
            raise Conflict(f"workflow {workflow.name} is {workflow.status}, not active")
        return workflow

    async def _steps(self, workflow_id: str) -> list[WorkflowStepRecord]:
        async with self.db.session() as session:
            result = await session.execute(
                select(WorkflowStepRecord)
                .where(WorkflowStepRecord.workflow_id == workflow_id)
                .order_by(WorkflowStepRecord.step_order, WorkflowStepRecord.created_at)
            )
            return list(result.scalars().all())

    async def _criteria(self, list_id: str) -> list[str]:
        async with self.db.session() as session:
            record = await session.get(CriteriaListRecord, list_id)
        if record is None:
            raise StepFailed(f"criteria list {list_id} not found")
        return list(record.items)

    async def _enforce_grants(
        self,
        claims: AuthClaims,
        steps: list[WorkflowStepRecord],
        target_model: Optional[str],
        override_all: bool,
    ) -> None:
        for step in steps:
            model = effective_model(step, target_model, override_all)
            if not model:
                continue
            for key in model_keys(step.provider, model):
                await self.grants.enforce(claims.user_id, claims.role, key, step.step_type)

    async def _update_run(self, run_id: str, **fields: Any) -> None:
        async with self.db.transaction() as session:
            run = await session.get(WorkflowRunRecord, run_id)
            for key, value in fields.items():
                setattr(run, key, value)

    async def _finish_run(
        self, run_id: str, status: str, error: Optional[str] = None, result: Optional[dict] = None
    ) -> None:
        fields: dict[str, Any] = {"status": status, "error": error, "finished_at": utcnow()}
        if result is not None:
            fields["result"] = result
        await self._update_run(run_id, **fields)

    async def _update_step_run(self, step_run_id: str, **fields: Any) -> None:
        async with self.db.transaction() as session:
            step_run = await session.get(StepRunRecord, step_run_id)
            for key, value in fields.items():
                setattr(step_run, key, value)

    async def _skip_remaining(self, step_runs: dict[str, StepRunRecord], done: set[str]) -> None:
        pending = [sr.step_run_id for step_id, sr in step_runs.items() if step_id not in done]
        if not pending:
            return
        async with self.db.transaction() as session:
            for step_run_id in pending:
                step_run = await session.get(StepRunRecord, step_run_id)
                if step_run.status in ("pending", "running"):
                    step_run.status = "skipped"


__all__ = ["StepFailed", "WorkflowEngine", "effective_model", "plan_groups"]
