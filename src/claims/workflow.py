"""Runs one claim transition as a single SQLite write unit."""

from __future__ import annotations

import logging
from typing import Any

import aiosqlite

from claims.engine import (
    EFFECT_LOCK,
    EFFECT_PROJECT,
    EFFECT_RELEASE,
    EFFECT_REVERT,
    DecisionEngine,
    Transition,
)
from claims.errors import NotFound
from claims.models import Actor, Claim, ClaimableResource
from claims.notifications import NotificationEmitter, emit_all
from claims.projector import PermissionProjector
from claims.repository import ClaimRepository
from database import utc_now_iso, with_sqlite_retry


logger = logging.getLogger(__name__)


class ClaimWorkflow:
    """Load -> evaluate -> write state, decision, effects and audit -> commit -> notify."""

    def __init__(
        self,
        repository: ClaimRepository,
        engine: DecisionEngine,
        projector: PermissionProjector,
        emitter: NotificationEmitter,
    ) -> None:
        self.repository = repository
        self.engine = engine
        self.projector = projector
        self.emitter = emitter

    async def apply_action(
        self,
        claim_id: int,
        actor: Actor,
        action: str,
        reason: str | None = None,
        *,
        extra_changes: dict[str, Any] | None = None,
    ) -> Claim:
        async def _op() -> tuple[Claim, Transition]:
            async with self.repository.transaction() as db:
                claim = await self.repository.get_claim(db, claim_id)
                if claim is None:
                    raise NotFound(f"Claim {claim_id} not found.")
                resource = await self.repository.get_resource(db, claim.resource_id)
                if resource is None:
                    raise NotFound(f"Resource {claim.resource_id} not found.")

                transition = self.engine.evaluate(claim, resource, actor, action, reason, now_iso=utc_now_iso())
                await self._persist(db, claim, resource, transition, extra_changes or {})
                updated = await self.repository.get_claim(db, claim.id)
            if updated is None:
                raise RuntimeError(f"Failed to read claim {claim_id} after {action}")
            return updated, transition

        updated, transition = await with_sqlite_retry(
            _op,
            where=f"claims.workflow.{action}",
            db_path=self.repository.db_path,
        )
        logger.info(
            "Claim %s: %s -> %s by %s (%s)",
            updated.id,
            transition.from_state,
            transition.to_state,
            actor.id,
            actor.role,
        )
        await emit_all(self.emitter, transition.events)
        return updated

    async def _persist(
        self,
        db: aiosqlite.Connection,
        claim: Claim,
        resource: ClaimableResource,
        transition: Transition,
        extra_changes: dict[str, Any],
    ) -> None:
        changes = {**transition.changes, **extra_changes}
        await self.repository.update_claim(
            db,
            claim.id,
            expected_version=claim.version,
            state=transition.to_state,
            **changes,
        )
        claim.version += 1
        claim.state = transition.to_state

        await self.repository.append_decision(
            db,
            claim_id=claim.id,
            actor=transition.actor,
            action=transition.action,
            reason=transition.reason,
            from_state=transition.from_state,
            to_state=transition.to_state,
        )

        for effect in transition.effects:
            if effect == EFFECT_LOCK:
                await self.repository.acquire_claim_lock(db, resource.id, claim.id)
            elif effect == EFFECT_PROJECT:
                await self.projector.apply(db, claim)
            elif effect == EFFECT_REVERT:
                await self.projector.revert(db, claim)
            elif effect == EFFECT_RELEASE:
                await self.repository.release_claim_lock(db, resource.id, claim.id)
            else:
                raise RuntimeError(f"Unknown transition effect: {effect}")

        await self.repository.write_audit_log(
            db,
            entity="claim",
            entity_id=claim.id,
            actor_id=transition.actor.id,
            action=f"claim_{transition.action}",
            payload={
                "resource_id": resource.id,
                "from_state": transition.from_state,
                "to_state": transition.to_state,
                "actor_role": transition.actor.role,
                "reason": transition.reason,
                "effects": list(transition.effects),
            },
        )
