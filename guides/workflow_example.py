"""Example running a three-step validation workflow against in-process models."""

import asyncio

from pydantic_ai.models.test import TestModel

from proofmesh import AuthClaims, ProofmeshConfig, Runtime
from proofmesh.config import LedgerConfig
from proofmesh.providers import AgentProvider


async def main():
    """Author, validate and chain a claim through one workflow run."""
    config = ProofmeshConfig(
        database_url="sqlite+aiosqlite:///guide.db",
        ledger=LedgerConfig(path="guide-flows.db"),
    )
    # TestModel answers locally, so no API key is needed
    provider = AgentProvider(
        "local",
        {
            "drafter": TestModel(custom_output_text="The claim cites one peer-reviewed source."),
            "judge": TestModel(custom_output_text='{"fidelity": 0.8, "hallucination_count": 0}'),
        },
    )
    operator = AuthClaims(user_id="op-1", handle="operator", role="operator")

    async with Runtime.from_config(config, providers=[provider]) as runtime:
        workflows = runtime.workflows
        criteria = await workflows.create_criteria_list(
            operator, "fidelity", ["fidelity", "hallucination_count"]
        )
        workflow = await workflows.create_workflow(
            operator, "claim-check", pre_prompt_template="You are checking node {{node_id}}."
        )
        await workflows.add_step(
            workflow.workflow_id,
            operator,
            {
                "step_name": "draft",
                "step_type": "author",
                "step_order": 0,
                "model": "drafter",
                "prompt_template": "{{pre_prompt}} Summarize: {{body}}",
            },
        )
        await workflows.add_step(
            workflow.workflow_id,
            operator,
            {
                "step_name": "judge",
                "step_type": "validate",
                "step_order": 1,
                "model": "judge",
                "criteria_list_id": criteria.list_id,
                "prompt_template": "Score {{draft}} against {{criteria}}",
            },
        )
        await workflows.activate(workflow.workflow_id, operator)

        run = await runtime.engine.run(
            workflow.workflow_id, operator, node_id="node-42", body="Coffee extends lifespan."
        )
        print(f"Run {run.run_id}: {run.status}")
        for step_run in await runtime.engine.step_runs(run.run_id):
            print(f"  {step_run.step_name}: {step_run.output}")
        print(f"Final verdict: {run.result['final']}")


if __name__ == "__main__":
    asyncio.run(main())
