"""Dispute escalation and admin override."""

from __future__ import annotations

import logging

from claims.errors import Unauthorized, ValidationError
from claims.models import (
    ACTION_DISPUTE,
    OVERRIDE_ACTIONS,
    STATE_DISPUTED,
    Actor,
    Claim,
)
from claims.workflow import ClaimWorkflow


logger = logging.getLogger(__name__)


class DisputeResolver:
    """A dispute is raised once per claim; the admin override is final."""

    def __init__(self, workflow: ClaimWorkflow) -> None:
        self.workflow = workflow

    async def escalate(self, claim_id: int, raised_by: Actor, reason: str | None) -> Claim:
        claim = await self.workflow.apply_action(int(claim_id), raised_by, ACTION_DISPUTE, reason)
        logger.info("Claim %s disputed by %s (was %s)", claim.id, raised_by.id, claim.disputed_from)
        return claim

    async def resolve(
        self,
        claim_id: int,
        admin: Actor,
        outcome: str,
        reason: str | None = None,
    ) -> Claim:
        """`outcome` is override_approve or override_reject."""
        if not admin.is_admin:
            raise Unauthorized("Only an admin can resolve a disputed claim.")
        normalized = str(outcome or "").strip().lower()
        if normalized not in OVERRIDE_ACTIONS:
            raise ValidationError(f"Unknown dispute outcome: {outcome}")
        return await self.workflow.apply_action(int(claim_id), admin, normalized, reason)

    async def list_open_disputes(self, admin: Actor, *, limit: int = 50, offset: int = 0) -> list[Claim]:
        if not admin.is_admin:
            raise Unauthorized("Only an admin can list disputes.")
        repository = self.workflow.repository
        async with repository.connect() as db:
            return await repository.list_claims(db, states=[STATE_DISPUTED], limit=limit, offset=offset)
