"""Workflow runs end to end: step chaining, fan groups, retries, cancellation."""

import asyncio

import pytest

from proofmesh.db import ModelRecord
from proofmesh.discovery import ModelDiscovery
from proofmesh.errors import Conflict, Forbidden, InvalidInput, ProviderError
from proofmesh.providers import ScriptedProvider
from proofmesh.workflows import WorkflowEngine, WorkflowService


@pytest.fixture
def provider_a():
    return ScriptedProvider("alpha", ["m1"], default_reply=lambda req: f"m1<{req.prompt}>")


@pytest.fixture
def provider_b():
    return ScriptedProvider("beta", ["m2"], default_reply=lambda req: f"m2<{req.prompt}>")


@pytest.fixture
def service(db, grants):
    return WorkflowService(db, grants)


@pytest.fixture
def engine(db, client, registry, grants, ledger):
    return WorkflowEngine(db, client, registry, grants, ledger, backoff_base_s=0.01, backoff_cap_s=0.05)


async def build_workflow(service, claims, name, steps, pre_prompt_template=""):
    workflow = await service.create_workflow(claims, name, pre_prompt_template=pre_prompt_template)
    for spec in steps:
        await service.add_step(workflow.workflow_id, claims, spec)
    await service.submit(workflow.workflow_id, claims)
    await service.activate(workflow.workflow_id, claims)
    return workflow.workflow_id


@pytest.mark.asyncio
async def test_three_step_chain_round_trip(service, engine, ledger, operator):
    workflow_id = await build_workflow(
        service,
        operator,
        "chain",
        [
            {"step_name": "extract", "step_order": 0, "model": "m1", "prompt_template": "extract {{body}}"},
            {"step_name": "check", "step_order": 1, "model": "m1", "prompt_template": "check {{extract}}"},
            {"step_name": "final", "step_order": 2, "model": "m2", "prompt_template": "final {{check}}"},
        ],
    )

    run = await engine.run(workflow_id, operator, body="the sky is green", node_id="n1")

    assert run.status == "completed"
    assert run.error is None
    assert run.result["final"] == "m2<final m1<check m1<extract the sky is green>>>"
    assert list(run.result["outputs"]) == ["extract", "check", "final"]

    step_runs = await engine.step_runs(run.run_id)
    assert [s.step_name for s in step_runs] == ["extract", "check", "final"]
    assert [s.step_order for s in step_runs] == [0, 1, 2]
    assert all(s.status == "completed" and s.attempts == 1 for s in step_runs)
    assert step_runs[2].provider == "beta"

    entries = await ledger.flow(run.run_id)
    assert [e.step_index for e in entries] == [0, 1, 2]
    assert all(e.node_id == "n1" for e in entries)
    assert [s.ledger_entry_ids for s in step_runs] == [[e.id] for e in entries]


@pytest.mark.asyncio
async def test_pre_prompt_template_renders_into_context(service, engine, operator):
    workflow_id = await build_workflow(
        service,
        operator,
        "preprompt",
        [{"step_name": "only", "model": "m1", "prompt_template": "{{pre_prompt}}|{{body}}"}],
        pre_prompt_template="Node {{node_id}}",
    )
    run = await engine.run(workflow_id, operator, body="b", node_id="n7")
    assert run.result["final"] == "m1<Node n7|b>"

    explicit = await engine.run(workflow_id, operator, body="b", pre_prompt="given")
    assert explicit.result["final"] == "m1<given|b>"


@pytest.mark.asyncio
async def test_fan_group_joins_before_next_step(service, engine, ledger, operator):
    workflow_id = await build_workflow(
        service,
        operator,
        "fan",
        [
            {"step_name": "seed", "step_order": 0, "model": "m1", "prompt_template": "{{body}}"},
            {"step_name": "left", "step_order": 1, "model": "m1", "prompt_template": "L {{seed}}", "fan_group": "F"},
            {"step_name": "right", "step_order": 1, "model": "m2", "prompt_template": "R {{seed}}", "fan_group": "F"},
            {"step_name": "join", "step_order": 2, "model": "m2", "prompt_template": "{{left}} & {{right}}"},
        ],
    )

    run = await engine.run(workflow_id, operator, body="x")

    assert run.status == "completed"
    assert run.result["final"] == "m2<m1<L m1<x>> & m2<R m1<x>>>"
    step_runs = await engine.step_runs(run.run_id)
    assert [s.status for s in step_runs] == ["completed"] * 4

    indexes = [e.step_index for e in await ledger.flow(run.run_id)]
    assert indexes == [0, 1, 2, 3]

    actions = [row.action for row in await engine.db.audit_trail("workflow_run", run.run_id)]
    assert actions.index("fan_out_started") < actions.index("fan_in_completed")
    assert actions[-1] == "run_completed"


@pytest.mark.asyncio
async def test_fan_group_is_exposed_as_mapping(service, engine, operator):
    workflow_id = await build_workflow(
        service,
        operator,
        "fan-map",
        [
            {"step_name": "a", "step_order": 0, "model": "m1", "prompt_template": "a", "fan_group": "G"},
            {"step_name": "b", "step_order": 0, "model": "m1", "prompt_template": "b", "fan_group": "G"},
            {"step_name": "merge", "step_order": 1, "model": "m1", "prompt_template": "{{G}}"},
        ],
    )
    run = await engine.run(workflow_id, operator)
    assert run.result["final"] == 'm1<{"a": "m1<a>", "b": "m1<b>"}>'


@pytest.mark.asyncio
async def test_optional_fan_member_failure_does_not_fail_run(service, engine, client, operator):
    client.add_provider(
        ScriptedProvider("broken", ["m9"], replies={"m9": ProviderError("bad request", provider="broken")}),
        fallback=True,
    )
    workflow_id = await build_workflow(
        service,
        operator,
        "optional-fan",
        [
            {"step_name": "ok", "step_order": 0, "model": "m1", "prompt_template": "ok", "fan_group": "F"},
            {"step_name": "bad", "step_order": 0, "model": "m9", "prompt_template": "bad", "fan_group": "F"},
            {"step_name": "after", "step_order": 1, "model": "m1", "prompt_template": "[{{bad}}]{{ok}}"},
        ],
    )
    run = await engine.run(workflow_id, operator)

    assert run.status == "completed"
    assert run.result["final"] == "m1<[]m1<ok>>"
    statuses = {s.step_name: s.status for s in await engine.step_runs(run.run_id)}
    assert statuses == {"ok": "completed", "bad": "failed", "after": "completed"}


@pytest.mark.asyncio
async def test_required_fan_member_failure_fails_run(service, engine, client, operator):
    client.add_provider(
        ScriptedProvider("broken", ["m9"], replies={"m9": ProviderError("bad request", provider="broken")}),
        fallback=True,
    )
    workflow_id = await build_workflow(
        service,
        operator,
        "required-fan",
        [
            {"step_name": "ok", "step_order": 0, "model": "m1", "fan_group": "F"},
            {"step_name": "bad", "step_order": 0, "model": "m9", "fan_group": "F", "config": {"required": True}},
            {"step_name": "after", "step_order": 1, "model": "m1"},
        ],
    )
    run = await engine.run(workflow_id, operator)

    assert run.status == "failed"
    assert run.error.startswith("step bad: provider_error")
    statuses = {s.step_name: s.status for s in await engine.step_runs(run.run_id)}
    assert statuses["after"] == "skipped"


@pytest.mark.asyncio
async def test_retryable_failure_is_retried(service, engine, client, ledger, operator):
    flaky = ScriptedProvider(
        "flaky", ["m8"], replies={"m8": [ProviderError("overloaded", provider="flaky", retryable=True), "recovered"]}
    )
    client.add_provider(flaky, fallback=True)
    workflow_id = await build_workflow(
        service, operator, "retry", [{"step_name": "s", "model": "m8", "retry_max": 2}]
    )

    run = await engine.run(workflow_id, operator)

    assert run.status == "completed"
    assert run.result["final"] == "recovered"
    step_run = (await engine.step_runs(run.run_id))[0]
    assert step_run.attempts == 2
    assert len(step_run.ledger_entry_ids) == 2

    entries = await ledger.flow(run.run_id)
    assert [e.step_index for e in entries] == [0, 1]
    assert entries[0].error
    actions = [row.action for row in await engine.db.audit_trail("workflow_run", run.run_id)]
    assert "step_retried" in actions


@pytest.mark.asyncio
async def test_retries_exhausted(service, engine, client, operator):
    error = ProviderError("overloaded", provider="flaky", retryable=True)
    client.add_provider(ScriptedProvider("flaky", ["m8"], replies={"m8": error}), fallback=True)
    workflow_id = await build_workflow(
        service, operator, "exhaust", [{"step_name": "s", "model": "m8", "retry_max": 1}]
    )

    run = await engine.run(workflow_id, operator)
    assert run.status == "failed"
    assert (await engine.step_runs(run.run_id))[0].attempts == 2


@pytest.mark.asyncio
async def test_failure_skips_remaining_steps(service, engine, client, operator):
    client.add_provider(
        ScriptedProvider("broken", ["m9"], replies={"m9": ProviderError("bad request", provider="broken")}),
        fallback=True,
    )
    workflow_id = await build_workflow(
        service,
        operator,
        "skip",
        [
            {"step_name": "first", "step_order": 0, "model": "m9"},
            {"step_name": "second", "step_order": 1, "model": "m1"},
            {"step_name": "third", "step_order": 2, "model": "m1"},
        ],
    )

    run = await engine.run(workflow_id, operator)

    assert run.status == "failed"
    assert run.error == "step first: provider_error: bad request"
    step_runs = await engine.step_runs(run.run_id)
    assert [s.status for s in step_runs] == ["failed", "skipped", "skipped"]
    assert step_runs[0].attempts == 1


@pytest.mark.asyncio
async def test_criteria_step_requests_json(service, engine, client, operator):
    judge = ScriptedProvider(
        "judge", ["m5"], replies={"m5": '```json\n{"fidelity": 0.9, "hallucination_count": 1}\n```'}
    )
    client.add_provider(judge, fallback=True)
    criteria = await service.create_criteria_list(operator, "fidelity", ["cites sources", "no speculation"])
    workflow_id = await build_workflow(
        service,
        operator,
        "criteria",
        [
            {
                "step_name": "judge",
                "step_type": "validate",
                "model": "m5",
                "criteria_list_id": criteria.list_id,
                "prompt_template": "Judge against {{criteria}}: {{body}}",
            }
        ],
    )

    run = await engine.run(workflow_id, operator, body="claim")

    assert run.status == "completed"
    assert run.result["final"] == {"fidelity": 0.9, "hallucination_count": 1}
    assert judge.calls[0].response_format == "json"
    assert judge.calls[0].prompt == 'Judge against ["cites sources", "no speculation"]: claim'
    step_run = (await engine.step_runs(run.run_id))[0]
    assert step_run.response_parsed == {"fidelity": 0.9, "hallucination_count": 1}


@pytest.mark.asyncio
async def test_criteria_step_without_json_fails(service, engine, client, operator):
    client.add_provider(ScriptedProvider("judge", ["m5"], replies={"m5": "looks fine to me"}), fallback=True)
    criteria = await service.create_criteria_list(operator, "c", ["x"])
    workflow_id = await build_workflow(
        service,
        operator,
        "criteria-bad",
        [{"step_name": "judge", "step_type": "chain", "model": "m5", "criteria_list_id": criteria.list_id}],
    )

    run = await engine.run(workflow_id, operator)
    assert run.status == "failed"
    assert "step_failed" in run.error
    assert (await engine.step_runs(run.run_id))[0].attempts == 1


@pytest.mark.asyncio
async def test_target_placeholder_and_override(service, engine, operator):
    placeholder = await build_workflow(
        service,
        operator,
        "placeholder",
        [
            {"step_name": "fixed", "step_order": 0, "model": "m1", "prompt_template": "a"},
            {"step_name": "target", "step_order": 1, "model": "$TARGET", "prompt_template": "b"},
        ],
    )
    run = await engine.run(placeholder, operator, target_model="m2")
    outputs = run.result["outputs"]
    assert outputs == {"fixed": "m1<a>", "target": "m2<b>"}

    plain = await build_workflow(
        service, operator, "plain", [{"step_name": "s", "model": "m1", "prompt_template": "c"}]
    )
    overridden = await engine.run(plain, operator, target_model="m2")
    assert overridden.result["final"] == "m2<c>"
    assert (await engine.step_runs(overridden.run_id))[0].model == "m2"


@pytest.mark.asyncio
async def test_run_enforces_grants_on_target_model(service, engine, grants, operator):
    await grants.create_grant("operator", operator.user_id, "m2", "*", "deny", created_by="admin")
    workflow_id = await build_workflow(service, operator, "granted", [{"step_name": "s", "model": "$TARGET"}])

    with pytest.raises(Forbidden):
        await engine.execute(workflow_id, operator, target_model="m2")
    assert await engine.list_runs(workflow_id=workflow_id) == []


@pytest.mark.asyncio
async def test_run_preconditions(service, engine, operator):
    draft = await service.create_workflow(operator, "draft-only")
    await service.add_step(draft.workflow_id, operator, {"step_name": "s", "model": "m1"})
    with pytest.raises(Conflict):
        await engine.execute(draft.workflow_id, operator)

    empty = await service.create_workflow(operator, "empty")
    await service.activate(empty.workflow_id, operator)
    with pytest.raises(InvalidInput):
        await engine.execute(empty.workflow_id, operator)


@pytest.mark.asyncio
async def test_cancel_lets_running_step_finish(service, engine, client, ledger, operator, provider_a):
    client.add_provider(ScriptedProvider("slow", ["m7"], delay=0.5), fallback=True)
    workflow_id = await build_workflow(
        service,
        operator,
        "cancellable",
        [
            {"step_name": "slow", "step_order": 0, "model": "m7"},
            {"step_name": "next", "step_order": 1, "model": "m1"},
        ],
    )

    run_id = await engine.execute(workflow_id, operator)
    await asyncio.sleep(0.1)
    await engine.cancel(run_id, actor_id=operator.user_id)
    run = await engine.wait(run_id)

    assert run.status == "cancelled"
    assert run.result["outputs"] == {"slow": "ok"}
    step_runs = await engine.step_runs(run_id)
    assert [s.status for s in step_runs] == ["completed", "skipped"]

    entries = await ledger.flow(run_id)
    assert len(entries) == 1
    assert entries[0].error is None
    assert entries[0].response_raw == "ok"
    assert step_runs[0].ledger_entry_ids == [entries[0].id]
    assert provider_a.calls == []
    with pytest.raises(Conflict):
        await engine.cancel(run_id)


@pytest.mark.asyncio
async def test_batch_run_shares_batch_id(service, engine, operator):
    first = await build_workflow(service, operator, "batch-a", [{"step_name": "s", "model": "m1", "prompt_template": "{{body}}"}])
    second = await build_workflow(service, operator, "batch-b", [{"step_name": "s", "model": "m2", "prompt_template": "{{body}}"}])

    handle = await engine.batch_run([first, second], operator, body="shared")
    runs = [await engine.wait(run_id) for run_id in handle.run_ids]

    assert [r.result["final"] for r in runs] == ["m1<shared>", "m2<shared>"]
    batch = await engine.get_batch(handle.batch_id)
    assert {r.run_id for r in batch} == set(handle.run_ids)
    assert all(r.batch_id == handle.batch_id for r in batch)

    with pytest.raises(InvalidInput):
        await engine.batch_run([], operator)


@pytest.mark.asyncio
async def test_unavailable_model_fails_without_calling(db, service, client, registry, grants, ledger, operator, provider_a):
    engine = WorkflowEngine(db, client, registry, grants, ledger, discovery=ModelDiscovery(db, client))
    async with db.transaction() as session:
        session.add(ModelRecord(model_id="alpha/m1", provider="alpha", model_name="m1", is_available=False))
    workflow_id = await build_workflow(service, operator, "unavailable", [{"step_name": "s", "model": "m1"}])

    run = await engine.run(workflow_id, operator)

    assert run.status == "failed"
    assert "unavailable" in run.error
    assert provider_a.calls == []
    assert await ledger.flow(run.run_id) == []
