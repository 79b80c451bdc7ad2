"""Model grant engine: allow/deny decisions per grantee, model and step type."""

from __future__ import annotations

import logging
from typing import Iterable, NamedTuple, Optional

from sqlalchemy import select

from .contracts import STEP_TYPES
from .db import (
    ModelGrantRecord,
    ModelRecord,
    OperatorGroupMemberRecord,
    OperatorGroupRecord,
    PlatformDB,
)
from .errors import Conflict, Forbidden, InvalidInput, NotFound

logger = logging.getLogger(__name__)

GRANTEE_TYPES = ("operator", "operator_group", "role")
EFFECTS = ("allow", "deny")

# Step types each role may put into a workflow.
ROLE_STEP_TYPES: dict[str, frozenset[str]] = {
    "operator": frozenset(STEP_TYPES),
    "provider": frozenset(STEP_TYPES),
}


class GrantDecision(NamedTuple):
    allowed: bool
    explicit: bool
    reason: str = ""


def allowed_step_types(role: str) -> frozenset[str]:
    return ROLE_STEP_TYPES.get(role, frozenset())


def grant_matches(grant: ModelGrantRecord, model_id: str, step_type: str) -> bool:
    """True when ``grant`` covers the model (exact, ``provider/*`` or ``*``) and step type."""
    if grant.step_type not in ("*", step_type):
        return False
    if grant.model_id in ("*", model_id):
        return True
    return grant.model_id.endswith("/*") and model_id.startswith(grant.model_id[:-1])


def _first_effect(grants: Iterable[ModelGrantRecord]) -> Optional[str]:
    effects = {g.effect for g in grants}
    if "deny" in effects:
        return "deny"
    if "allow" in effects:
        return "allow"
    return None


class GrantEngine:
    def __init__(self, db: PlatformDB) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Decisions
    async def check(
        self, user_id: str, role: str, model_id: str, step_type: str
    ) -> GrantDecision:
        """Resolve the grant for (user, role, model, step type).

        Operator grants beat group grants, which beat role grants; at each
        level a deny wins over an allow. With no matching grant the result
        is an implicit allow.
        """
        async with self.db.session() as session:
            rows = (
                await session.execute(
                    select(ModelGrantRecord).where(
                        (
                            (ModelGrantRecord.grantee_type == "operator")
                            & (ModelGrantRecord.grantee_id == user_id)
                        )
                        | (
                            (ModelGrantRecord.grantee_type == "role")
                            & (ModelGrantRecord.grantee_id == role)
                        )
                        | (ModelGrantRecord.grantee_type == "operator_group")
                    )
                )
            ).scalars().all()
            group_ids = set(
                (
                    await session.execute(
                        select(OperatorGroupMemberRecord.group_id).where(
                            OperatorGroupMemberRecord.operator_id == user_id
                        )
                    )
                ).scalars().all()
            )

        matching = [g for g in rows if grant_matches(g, model_id, step_type)]
        levels = (
            ("operator", [g for g in matching if g.grantee_type == "operator"]),
            (
                "operator_group",
                [g for g in matching if g.grantee_type == "operator_group" and g.grantee_id in group_ids],
            ),
            ("role", [g for g in matching if g.grantee_type == "role"]),
        )
        for level, grants in levels:
            effect = _first_effect(grants)
            if effect is not None:
                return GrantDecision(effect == "allow", True, f"{effect} by {level} grant")
        return GrantDecision(True, False, "no matching grant")

    async def enforce(self, user_id: str, role: str, model_id: str, step_type: str) -> GrantDecision:
        """Raise Forbidden on an explicit denial; warn on an implicit allow."""
        decision = await self.check(user_id, role, model_id, step_type)
        if decision.explicit and not decision.allowed:
            raise Forbidden(
                f"model {model_id} denied for {step_type} steps", user_id=user_id, model_id=model_id
            )
        if not decision.explicit:
            logger.warning(
                f"No grant for user {user_id} ({role}) on {model_id}/{step_type}; allowing by default"
            )
        return decision

    def ensure_step_type_allowed(self, role: str, step_type: str) -> None:
        if step_type not in STEP_TYPES:
            raise InvalidInput(f"unknown step_type {step_type}")
        if step_type not in allowed_step_types(role):
            raise Forbidden(f"role {role} may not create {step_type} steps")

    async def list_allowed_models(
        self, user_id: str, role: str, step_type: str = "llm"
    ) -> list[ModelRecord]:
        async with self.db.session() as session:
            models = (
                await session.execute(
                    select(ModelRecord)
                    .where(ModelRecord.is_available == True)  # noqa: E712
                    .order_by(ModelRecord.provider, ModelRecord.model_id)
                )
            ).scalars().all()
        allowed = []
        for model in models:
            decision = await self.check(user_id, role, model.model_id, step_type)
            if decision.allowed:
                allowed.append(model)
        return allowed

    # ------------------------------------------------------------------
    # Grant rows
    async def create_grant(
        self,
        grantee_type: str,
        grantee_id: str,
        model_id: str,
        step_type: str,
        effect: str,
        created_by: str,
    ) -> ModelGrantRecord:
        _validate_grant(grantee_type, grantee_id, model_id, step_type, effect)
        grant = ModelGrantRecord(
            grantee_type=grantee_type,
            grantee_id=grantee_id,
            model_id=model_id,
            step_type=step_type,
            effect=effect,
            created_by=created_by,
        )
        async with self.db.transaction() as session:
            existing = await session.execute(
                select(ModelGrantRecord)
                .where(ModelGrantRecord.grantee_type == grantee_type)
                .where(ModelGrantRecord.grantee_id == grantee_id)
                .where(ModelGrantRecord.model_id == model_id)
                .where(ModelGrantRecord.step_type == step_type)
                .where(ModelGrantRecord.effect == effect)
            )
            if existing.scalars().first() is not None:
                raise Conflict("grant already exists")
            session.add(grant)
            await self.db.audit("grant", grant.grant_id, f"created_{effect}", created_by, session=session)
        logger.info(f"Grant {effect} {grantee_type}:{grantee_id} -> {model_id}/{step_type}")
        return grant

    async def delete_grant(self, grant_id: str, by: Optional[str] = None) -> None:
        async with self.db.transaction() as session:
            grant = await session.get(ModelGrantRecord, grant_id)
            if grant is None:
                raise NotFound(f"grant {grant_id} not found")
            await session.delete(grant)
            await self.db.audit("grant", grant_id, "deleted", by, session=session)

    async def list_grants(
        self, grantee_type: Optional[str] = None, grantee_id: Optional[str] = None
    ) -> list[ModelGrantRecord]:
        stmt = select(ModelGrantRecord).order_by(ModelGrantRecord.created_at)
        if grantee_type:
            stmt = stmt.where(ModelGrantRecord.grantee_type == grantee_type)
        if grantee_id:
            stmt = stmt.where(ModelGrantRecord.grantee_id == grantee_id)
        async with self.db.session() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def bulk_set_grants(
        self,
        models: list[str],
        grant: list[str],
        revoke: list[str],
        by: str,
        grantee_type: str = "operator",
    ) -> dict[str, int]:
        """Allow every (model, grantee) in ``models × grant`` and drop ``models × revoke``.

        Existing allow rows are left alone and revoking only drops model-wide
        rows, so step-specific grants survive. Runs in one transaction.
        """
        if not models:
            raise InvalidInput("models is required")
        if grantee_type not in GRANTEE_TYPES:
            raise InvalidInput(f"unknown grantee_type {grantee_type}")
        granted = revoked = 0
        async with self.db.transaction() as session:
            existing = (
                await session.execute(
                    select(ModelGrantRecord)
                    .where(ModelGrantRecord.grantee_type == grantee_type)
                    .where(ModelGrantRecord.model_id.in_(models))
                )
            ).scalars().all()
            present = {
                (g.grantee_id, g.model_id)
                for g in existing
                if g.step_type == "*" and g.effect == "allow"
            }
            for model_id in models:
                for grantee_id in grant:
                    if (grantee_id, model_id) in present:
                        continue
                    session.add(
                        ModelGrantRecord(
                            grantee_type=grantee_type,
                            grantee_id=grantee_id,
                            model_id=model_id,
                            step_type="*",
                            effect="allow",
                            created_by=by,
                        )
                    )
                    present.add((grantee_id, model_id))
                    granted += 1
            revoke_set = set(revoke)
            for row in existing:
                if row.grantee_id in revoke_set and row.step_type == "*":
                    await session.delete(row)
                    revoked += 1
            await self.db.audit(
                "grant",
                "bulk",
                "bulk_set",
                by,
                detail={"models": models, "granted": granted, "revoked": revoked},
                session=session,
            )
        return {"granted": granted, "revoked": revoked}

    # ------------------------------------------------------------------
    # Operator groups
    async def create_group(
        self, provider_id: str, name: str, description: str = ""
    ) -> OperatorGroupRecord:
        if not name:
            raise InvalidInput("name is required")
        group = OperatorGroupRecord(provider_id=provider_id, name=name, description=description)
        async with self.db.transaction() as session:
            existing = await session.execute(
                select(OperatorGroupRecord)
                .where(OperatorGroupRecord.provider_id == provider_id)
                .where(OperatorGroupRecord.name == name)
            )
            if existing.scalars().first() is not None:
                raise Conflict(f"group {name} already exists")
            session.add(group)
        return group

    async def delete_group(self, group_id: str) -> None:
        async with self.db.transaction() as session:
            group = await session.get(OperatorGroupRecord, group_id)
            if group is None:
                raise NotFound(f"group {group_id} not found")
            members = await session.execute(
                select(OperatorGroupMemberRecord).where(OperatorGroupMemberRecord.group_id == group_id)
            )
            for member in members.scalars().all():
                await session.delete(member)
            grants = await session.execute(
                select(ModelGrantRecord)
                .where(ModelGrantRecord.grantee_type == "operator_group")
                .where(ModelGrantRecord.grantee_id == group_id)
            )
            for grant in grants.scalars().all():
                await session.delete(grant)
            await session.delete(group)

    async def list_groups(self, provider_id: Optional[str] = None) -> list[OperatorGroupRecord]:
        stmt = select(OperatorGroupRecord).order_by(OperatorGroupRecord.name)
        if provider_id:
            stmt = stmt.where(OperatorGroupRecord.provider_id == provider_id)
        async with self.db.session() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def add_member(self, group_id: str, operator_id: str) -> None:
        async with self.db.transaction() as session:
            if await session.get(OperatorGroupRecord, group_id) is None:
                raise NotFound(f"group {group_id} not found")
            if await session.get(OperatorGroupMemberRecord, (group_id, operator_id)) is not None:
                raise Conflict(f"{operator_id} is already a member")
            session.add(OperatorGroupMemberRecord(group_id=group_id, operator_id=operator_id))

    async def remove_member(self, group_id: str, operator_id: str) -> None:
        async with self.db.transaction() as session:
            member = await session.get(OperatorGroupMemberRecord, (group_id, operator_id))
            if member is None:
                raise NotFound(f"{operator_id} is not a member of {group_id}")
            await session.delete(member)

    async def members(self, group_id: str) -> list[str]:
        async with self.db.session() as session:
            result = await session.execute(
                select(OperatorGroupMemberRecord.operator_id)
                .where(OperatorGroupMemberRecord.group_id == group_id)
                .order_by(OperatorGroupMemberRecord.added_at)
            )
            return list(result.scalars().all())

    async def groups_for(self, operator_id: str) -> list[str]:
        async with self.db.session() as session:
            result = await session.execute(
                select(OperatorGroupMemberRecord.group_id).where(
                    OperatorGroupMemberRecord.operator_id == operator_id
                )
            )
            return list(result.scalars().all())


def _validate_grant(
    grantee_type: str, grantee_id: str, model_id: str, step_type: str, effect: str
) -> None:
    if grantee_type not in GRANTEE_TYPES:
        raise InvalidInput(f"unknown grantee_type {grantee_type}")
    if effect not in EFFECTS:
        raise InvalidInput(f"unknown effect {effect}")
    if step_type != "*" and step_type not in STEP_TYPES:
        raise InvalidInput(f"unknown step_type {step_type}")
    if not grantee_id or not model_id:
        raise InvalidInput("grantee_id and model_id are required")


__all__ = [
    "GRANTEE_TYPES",
    "GrantDecision",
    "GrantEngine",
    "ROLE_STEP_TYPES",
    "allowed_step_types",
    "grant_matches",
]
