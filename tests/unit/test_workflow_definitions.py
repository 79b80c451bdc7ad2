"""Workflow definition, step editing and lifecycle tests."""

import pytest

from proofmesh.contracts import AuthClaims
from proofmesh.errors import Conflict, Forbidden, InvalidInput, NotFound
from proofmesh.workflows import StepSpec, WorkflowService, model_keys, plan_groups

OTHER_OPERATOR = AuthClaims(user_id="op-2", handle="op2", role="operator")
PLAIN_USER = AuthClaims(user_id="u-1", handle="user", role="user")


@pytest.fixture
def service(db, grants):
    return WorkflowService(db, grants)


def test_model_keys():
    assert model_keys("", "m1") == ["m1"]
    assert model_keys("groq", "llama") == ["llama", "groq/llama"]
    assert model_keys("groq", "groq/llama") == ["groq/llama"]


@pytest.mark.asyncio
async def test_denied_model_inserts_no_step(service, grants, operator):
    await grants.create_grant("operator", operator.user_id, "m1", "llm", "deny", created_by="admin")
    workflow = await service.create_workflow(operator, "claims-check")

    with pytest.raises(Forbidden):
        await service.add_step(
            workflow.workflow_id, operator, {"step_name": "s1", "step_type": "llm", "model": "m1"}
        )
    assert await service.list_steps(workflow.workflow_id) == []
    assert (await service.get_workflow(workflow.workflow_id)).version == 1

    step = await service.add_step(
        workflow.workflow_id, operator, {"step_name": "s1", "step_type": "author", "model": "m1"}
    )
    assert step.step_type == "author"


@pytest.mark.asyncio
async def test_target_placeholder_skips_grant_check(service, grants, operator):
    await grants.create_grant("operator", operator.user_id, "*", "*", "deny", created_by="admin")
    workflow = await service.create_workflow(operator, "bench-flow")
    step = await service.add_step(
        workflow.workflow_id, operator, StepSpec(step_name="s1", model="$TARGET")
    )
    assert step.model == "$TARGET"


@pytest.mark.asyncio
async def test_create_workflow_rules(service, operator):
    with pytest.raises(Forbidden):
        await service.create_workflow(PLAIN_USER, "nope")
    with pytest.raises(InvalidInput):
        await service.create_workflow(operator, "  ")

    await service.create_workflow(operator, "unique")
    with pytest.raises(Conflict):
        await service.create_workflow(OTHER_OPERATOR, "unique")
    assert [w.name for w in await service.list_workflows(owner_id=operator.user_id)] == ["unique"]
    assert (await service.get_by_name("unique")).owner_id == operator.user_id
    with pytest.raises(NotFound):
        await service.get_by_name("missing")


@pytest.mark.asyncio
async def test_step_editing_bumps_version(service, operator):
    workflow = await service.create_workflow(operator, "editable")
    step = await service.add_step(
        workflow.workflow_id, operator, {"step_name": "extract", "prompt_template": "{{body}}"}
    )
    assert (await service.get_workflow(workflow.workflow_id)).version == 2

    updated = await service.update_step(step.step_id, operator, prompt_template="Extract: {{body}}", retry_max=1)
    assert updated.prompt_template == "Extract: {{body}}"
    assert updated.retry_max == 1
    assert (await service.get_workflow(workflow.workflow_id)).version == 3

    with pytest.raises(Conflict):
        await service.add_step(workflow.workflow_id, operator, {"step_name": "extract"})
    with pytest.raises(InvalidInput):
        await service.add_step(workflow.workflow_id, operator, {"step_name": "bad", "timeout_ms": 0})
    with pytest.raises(InvalidInput):
        await service.add_step(workflow.workflow_id, operator, {"step_name": "bad", "step_type": "summarize"})
    with pytest.raises(Forbidden):
        await service.add_step(workflow.workflow_id, OTHER_OPERATOR, {"step_name": "intruder"})

    await service.delete_step(step.step_id, operator)
    assert await service.list_steps(workflow.workflow_id) == []
    assert (await service.get_workflow(workflow.workflow_id)).version == 4
    with pytest.raises(NotFound):
        await service.delete_step(step.step_id, operator)


@pytest.mark.asyncio
async def test_update_workflow(service, operator):
    workflow = await service.create_workflow(operator, "first-name")
    await service.create_workflow(operator, "taken")

    updated = await service.update_workflow(
        workflow.workflow_id, operator, name="second-name", description="desc"
    )
    assert updated.name == "second-name"
    assert updated.version == 2
    with pytest.raises(Conflict):
        await service.update_workflow(workflow.workflow_id, operator, name="taken")


@pytest.mark.asyncio
async def test_lifecycle_and_audit(service, operator):
    workflow = await service.create_workflow(operator, "lifecycle")
    await service.add_step(workflow.workflow_id, operator, {"step_name": "only"})

    with pytest.raises(Forbidden):
        await service.submit(workflow.workflow_id, OTHER_OPERATOR)
    submitted = await service.submit(workflow.workflow_id, operator)
    assert submitted.status == "pending_validation"

    with pytest.raises(Conflict):
        await service.add_step(workflow.workflow_id, operator, {"step_name": "late"})
    with pytest.raises(Forbidden):
        await service.activate(workflow.workflow_id, PLAIN_USER)

    active = await service.activate(workflow.workflow_id, OTHER_OPERATOR)
    assert active.status == "active"
    assert active.validated_by == OTHER_OPERATOR.user_id
    with pytest.raises(Conflict):
        await service.submit(workflow.workflow_id, operator)

    archived = await service.archive(workflow.workflow_id, operator)
    assert archived.status == "archived"
    with pytest.raises(Conflict):
        await service.archive(workflow.workflow_id, operator)

    actions = [row.action for row in await service.audit_trail(workflow.workflow_id)]
    assert actions == ["created", "step_added", "submitted", "activated", "archived"]


@pytest.mark.asyncio
async def test_criteria_lists(service, operator):
    criteria = await service.create_criteria_list(operator, "fidelity", ["cites sources", "no speculation"])
    workflow = await service.create_workflow(operator, "validator")

    with pytest.raises(InvalidInput):
        await service.add_step(
            workflow.workflow_id, operator,
            {"step_name": "plain", "step_type": "llm", "criteria_list_id": criteria.list_id},
        )
    with pytest.raises(InvalidInput):
        await service.add_step(
            workflow.workflow_id, operator,
            {"step_name": "check", "step_type": "validate", "criteria_list_id": "missing"},
        )
    await service.add_step(
        workflow.workflow_id, operator,
        {"step_name": "check", "step_type": "validate", "criteria_list_id": criteria.list_id},
    )

    with pytest.raises(Conflict):
        await service.delete_criteria_list(criteria.list_id, operator)
    with pytest.raises(Forbidden):
        await service.update_criteria_list(criteria.list_id, OTHER_OPERATOR, items=["x"])

    updated = await service.update_criteria_list(criteria.list_id, operator, items=["cites sources"])
    assert updated.items == ["cites sources"]
    assert [c.list_id for c in await service.list_criteria_lists(owner_id=operator.user_id)] == [criteria.list_id]

    spare = await service.create_criteria_list(operator, "spare", ["x"])
    await service.delete_criteria_list(spare.list_id, operator)
    with pytest.raises(NotFound):
        await service.get_criteria_list(spare.list_id)
    with pytest.raises(InvalidInput):
        await service.create_criteria_list(operator, "empty", [])


@pytest.mark.asyncio
async def test_plan_groups_merges_fan_members(service, operator):
    workflow = await service.create_workflow(operator, "fan")
    for name, order, group in [("a", 0, None), ("b", 1, "F"), ("c", 1, "F"), ("d", 2, None)]:
        await service.add_step(
            workflow.workflow_id, operator, {"step_name": name, "step_order": order, "fan_group": group}
        )

    groups = plan_groups(await service.list_steps(workflow.workflow_id))
    assert [(g, [s.step_name for s in members]) for g, members in groups] == [
        (None, ["a"]),
        ("F", ["b", "c"]),
        (None, ["d"]),
    ]
