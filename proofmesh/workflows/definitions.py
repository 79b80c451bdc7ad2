"""Workflow definitions, step editing, criteria lists and the status machine."""

from __future__ import annotations

import logging
from typing import Any, Optional, Union

from pydantic import ValidationError
from sqlalchemy import select

from ..contracts import AuthClaims
from ..db import (
    AuditLogRecord,
    CriteriaListRecord,
    PlatformDB,
    WorkflowRecord,
    WorkflowStepRecord,
)
from ..errors import Conflict, Forbidden, InvalidInput, NotFound
from ..grants import GrantEngine, allowed_step_types
from ..utils.clock import utcnow
from .models import TARGET_PLACEHOLDER, StepSpec

logger = logging.getLogger(__name__)

CRITERIA_STEP_TYPES = ("validate", "chain")


def model_keys(provider: str, model: str) -> list[str]:
    """Grant lookup keys for a step's model: the bare name and, when known, ``provider/model``."""
    keys = [model]
    if provider and not model.startswith(f"{provider}/"):
        keys.append(f"{provider}/{model}")
    return keys


class WorkflowService:
    """Create, edit and move workflows through their lifecycle.

    Edits are only accepted while a workflow is in ``draft``; each edit bumps
    the version in the same transaction. Every transition is audited.
    """

    def __init__(self, db: PlatformDB, grants: GrantEngine) -> None:
        self.db = db
        self.grants = grants

    # ------------------------------------------------------------------
    # Workflows
    async def create_workflow(
        self,
        claims: AuthClaims,
        name: str,
        description: str = "",
        workflow_type: str = "custom",
        pre_prompt_template: str = "",
    ) -> WorkflowRecord:
        if not allowed_step_types(claims.role):
            raise Forbidden(f"role {claims.role} may not create workflows")
        if not name or not name.strip():
            raise InvalidInput("name is required")
        workflow = WorkflowRecord(
            name=name.strip(),
            description=description,
            workflow_type=workflow_type,
            owner_id=claims.user_id,
            owner_role=claims.role,
            pre_prompt_template=pre_prompt_template,
        )
        async with self.db.transaction() as session:
            existing = await session.execute(
                select(WorkflowRecord).where(WorkflowRecord.name == workflow.name)
            )
            if existing.scalars().first() is not None:
                raise Conflict(f"workflow {workflow.name} already exists")
            session.add(workflow)
            await self.db.audit(
                "workflow", workflow.workflow_id, "created", claims.user_id, session=session
            )
        logger.info(f"Workflow {workflow.name} created by {claims.user_id}")
        return workflow

    async def get_workflow(self, workflow_id: str) -> WorkflowRecord:
        async with self.db.session() as session:
            workflow = await session.get(WorkflowRecord, workflow_id)
        if workflow is None:
            raise NotFound(f"workflow {workflow_id} not found")
        return workflow

    async def get_by_name(self, name: str) -> WorkflowRecord:
        async with self.db.session() as session:
            result = await session.execute(select(WorkflowRecord).where(WorkflowRecord.name == name))
            workflow = result.scalars().first()
        if workflow is None:
            raise NotFound(f"workflow {name} not found")
        return workflow

    async def list_workflows(
        self, status: Optional[str] = None, owner_id: Optional[str] = None
    ) -> list[WorkflowRecord]:
        stmt = select(WorkflowRecord).order_by(WorkflowRecord.created_at)
        if status:
            stmt = stmt.where(WorkflowRecord.status == status)
        if owner_id:
            stmt = stmt.where(WorkflowRecord.owner_id == owner_id)
        async with self.db.session() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def update_workflow(
        self,
        workflow_id: str,
        claims: AuthClaims,
        name: Optional[str] = None,
        description: Optional[str] = None,
        pre_prompt_template: Optional[str] = None,
    ) -> WorkflowRecord:
        async with self.db.transaction() as session:
            workflow = await self._editable(session, workflow_id, claims)
            if name is not None and name.strip() != workflow.name:
                clash = await session.execute(
                    select(WorkflowRecord).where(WorkflowRecord.name == name.strip())
                )
                if clash.scalars().first() is not None:
                    raise Conflict(f"workflow {name} already exists")
                workflow.name = name.strip()
            if description is not None:
                workflow.description = description
            if pre_prompt_template is not None:
                workflow.pre_prompt_template = pre_prompt_template
            self._bump(workflow)
            await self.db.audit(
                "workflow", workflow_id, "updated", claims.user_id,
                detail={"version": workflow.version}, session=session,
            )
        return workflow

    # ------------------------------------------------------------------
    # Steps
    async def add_step(
        self, workflow_id: str, claims: AuthClaims, spec: Union[StepSpec, dict[str, Any]]
    ) -> WorkflowStepRecord:
        spec = _coerce_spec(spec)
        await self._check_step(claims, spec)
        step = WorkflowStepRecord(workflow_id=workflow_id, **spec.model_dump())
        async with self.db.transaction() as session:
            workflow = await self._editable(session, workflow_id, claims)
            await self._check_criteria(session, spec)
            clash = await session.execute(
                select(WorkflowStepRecord)
                .where(WorkflowStepRecord.workflow_id == workflow_id)
                .where(WorkflowStepRecord.step_name == spec.step_name)
            )
            if clash.scalars().first() is not None:
                raise Conflict(f"step {spec.step_name} already exists")
            session.add(step)
            self._bump(workflow)
            await self.db.audit(
                "workflow", workflow_id, "step_added", claims.user_id,
                detail={"step": spec.step_name, "version": workflow.version}, session=session,
            )
        return step

    async def update_step(
        self, step_id: str, claims: AuthClaims, **changes: Any
    ) -> WorkflowStepRecord:
        async with self.db.session() as session:
            current = await session.get(WorkflowStepRecord, step_id)
        if current is None:
            raise NotFound(f"step {step_id} not found")
        merged = {
            name: getattr(current, name) for name in StepSpec.model_fields
        }
        merged.update(changes)
        spec = _coerce_spec(merged)
        await self._check_step(claims, spec)

        async with self.db.transaction() as session:
            step = await session.get(WorkflowStepRecord, step_id)
            if step is None:
                raise NotFound(f"step {step_id} not found")
            workflow = await self._editable(session, step.workflow_id, claims)
            await self._check_criteria(session, spec)
            if spec.step_name != step.step_name:
                clash = await session.execute(
                    select(WorkflowStepRecord)
                    .where(WorkflowStepRecord.workflow_id == step.workflow_id)
                    .where(WorkflowStepRecord.step_name == spec.step_name)
                )
                if clash.scalars().first() is not None:
                    raise Conflict(f"step {spec.step_name} already exists")
            for key, value in spec.model_dump().items():
                setattr(step, key, value)
            self._bump(workflow)
            await self.db.audit(
                "workflow", workflow.workflow_id, "step_updated", claims.user_id,
                detail={"step": step.step_name, "version": workflow.version}, session=session,
            )
        return step

    async def delete_step(self, step_id: str, claims: AuthClaims) -> None:
        async with self.db.transaction() as session:
            step = await session.get(WorkflowStepRecord, step_id)
            if step is None:
                raise NotFound(f"step {step_id} not found")
            workflow = await self._editable(session, step.workflow_id, claims)
            await session.delete(step)
            self._bump(workflow)
            await self.db.audit(
                "workflow", workflow.workflow_id, "step_deleted", claims.user_id,
                detail={"step": step.step_name, "version": workflow.version}, session=session,
            )

    async def list_steps(self, workflow_id: str) -> list[WorkflowStepRecord]:
        async with self.db.session() as session:
            result = await session.execute(
                select(WorkflowStepRecord)
                .where(WorkflowStepRecord.workflow_id == workflow_id)
                .order_by(WorkflowStepRecord.step_order, WorkflowStepRecord.created_at)
            )
            return list(result.scalars().all())

    async def _check_step(self, claims: AuthClaims, spec: StepSpec) -> None:
        self.grants.ensure_step_type_allowed(claims.role, spec.step_type)
        if spec.criteria_list_id and spec.step_type not in CRITERIA_STEP_TYPES:
            raise InvalidInput("only validate and chain steps take a criteria list")
        if spec.model and spec.model != TARGET_PLACEHOLDER:
            for key in model_keys(spec.provider, spec.model):
                await self.grants.enforce(claims.user_id, claims.role, key, spec.step_type)

    async def _check_criteria(self, session: Any, spec: StepSpec) -> None:
        if spec.criteria_list_id and await session.get(CriteriaListRecord, spec.criteria_list_id) is None:
            raise InvalidInput(f"criteria list {spec.criteria_list_id} not found")

    # ------------------------------------------------------------------
    # Status machine
    async def submit(self, workflow_id: str, claims: AuthClaims) -> WorkflowRecord:
        async with self.db.transaction() as session:
            workflow = await self._load(session, workflow_id)
            if workflow.owner_id != claims.user_id:
                raise Forbidden("only the owner may submit a workflow")
            self._transition(workflow, ("draft",), "pending_validation")
            await self.db.audit("workflow", workflow_id, "submitted", claims.user_id, session=session)
        return workflow

    async def activate(self, workflow_id: str, claims: AuthClaims) -> WorkflowRecord:
        if claims.role != "operator":
            raise Forbidden("activation requires the operator role")
        async with self.db.transaction() as session:
            workflow = await self._load(session, workflow_id)
            self._transition(workflow, ("draft", "pending_validation"), "active")
            workflow.validated_by = claims.user_id
            await self.db.audit("workflow", workflow_id, "activated", claims.user_id, session=session)
        logger.info(f"Workflow {workflow.name} activated by {claims.user_id}")
        return workflow

    async def archive(self, workflow_id: str, claims: AuthClaims) -> WorkflowRecord:
        async with self.db.transaction() as session:
            workflow = await self._load(session, workflow_id)
            if workflow.owner_id != claims.user_id and claims.role != "operator":
                raise Forbidden("only the owner or an operator may archive a workflow")
            self._transition(workflow, ("active",), "archived")
            await self.db.audit("workflow", workflow_id, "archived", claims.user_id, session=session)
        return workflow

    async def audit_trail(self, workflow_id: str) -> list[AuditLogRecord]:
        return await self.db.audit_trail("workflow", workflow_id)

    @staticmethod
    def _transition(workflow: WorkflowRecord, sources: tuple[str, ...], target: str) -> None:
        if workflow.status not in sources:
            raise Conflict(f"cannot move workflow from {workflow.status} to {target}")
        workflow.status = target
        workflow.updated_at = utcnow()

    @staticmethod
    def _bump(workflow: WorkflowRecord) -> None:
        workflow.version += 1
        workflow.updated_at = utcnow()

    async def _load(self, session: Any, workflow_id: str) -> WorkflowRecord:
        workflow = await session.get(WorkflowRecord, workflow_id)
        if workflow is None:
            raise NotFound(f"workflow {workflow_id} not found")
        return workflow

    async def _editable(self, session: Any, workflow_id: str, claims: AuthClaims) -> WorkflowRecord:
        workflow = await self._load(session, workflow_id)
        if workflow.owner_id != claims.user_id:
            raise Forbidden("only the owner may edit a workflow")
        if workflow.status != "draft":
            raise Conflict(f"workflow is {workflow.status}; edits require draft")
        return workflow

    # ------------------------------------------------------------------
    # Criteria lists
    async def create_criteria_list(
        self, claims: AuthClaims, name: str, items: list[str], description: str = ""
    ) -> CriteriaListRecord:
        if not name or not items:
            raise InvalidInput("name and at least one item are required")
        record = CriteriaListRecord(
            name=name, description=description, items=list(items), owner_id=claims.user_id
        )
        async with self.db.transaction() as session:
            session.add(record)
        return record

    async def get_criteria_list(self, list_id: str) -> CriteriaListRecord:
        async with self.db.session() as session:
            record = await session.get(CriteriaListRecord, list_id)
        if record is None:
            raise NotFound(f"criteria list {list_id} not found")
        return record

    async def list_criteria_lists(self, owner_id: Optional[str] = None) -> list[CriteriaListRecord]:
        stmt = select(CriteriaListRecord).order_by(CriteriaListRecord.created_at)
        if owner_id:
            stmt = stmt.where(CriteriaListRecord.owner_id == owner_id)
        async with self.db.session() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def update_criteria_list(
        self,
        list_id: str,
        claims: AuthClaims,
        name: Optional[str] = None,
        items: Optional[list[str]] = None,
        description: Optional[str] = None,
    ) -> CriteriaListRecord:
        async with self.db.transaction() as session:
            record = await session.get(CriteriaListRecord, list_id)
            if record is None:
                raise NotFound(f"criteria list {list_id} not found")
            if record.owner_id != claims.user_id:
                raise Forbidden("only the owner may edit a criteria list")
            if items is not None:
                if not items:
                    raise InvalidInput("a criteria list needs at least one item")
                record.items = list(items)
            if name:
                record.name = name
            if description is not None:
                record.description = description
        return record

    async def delete_criteria_list(self, list_id: str, claims: AuthClaims) -> None:
        async with self.db.transaction() as session:
            record = await session.get(CriteriaListRecord, list_id)
            if record is None:
                raise NotFound(f"criteria list {list_id} not found")
            if record.owner_id != claims.user_id:
                raise Forbidden("only the owner may delete a criteria list")
            users = await session.execute(
                select(WorkflowStepRecord).where(WorkflowStepRecord.criteria_list_id == list_id)
            )
            if users.scalars().first() is not None:
                raise Conflict("criteria list is referenced by a workflow step")
            await session.delete(record)


def _coerce_spec(spec: Union[StepSpec, dict[str, Any]]) -> StepSpec:
    if isinstance(spec, StepSpec):
        return spec
    try:
        return StepSpec(**spec)
    except ValidationError as exc:
        raise InvalidInput(str(exc)) from exc
