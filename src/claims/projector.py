"""Permission projector: applies an approved claim onto its resource."""

from __future__ import annotations

import logging
from typing import Any

import aiosqlite

from claims.catalog import SQLiteCatalog
from claims.errors import NotFound
from claims.models import Claim
from claims.policies import PROJECT_CONTROLLER, policy_for
from claims.repository import ClaimRepository


logger = logging.getLogger(__name__)


class PermissionProjector:
    """Writes controller / self-manager assignments.

    The snapshot of the resource taken at projection time is stored on the
    claim, so reversing an overridden approval is a lookup-and-restore.
    """

    def __init__(self, repository: ClaimRepository) -> None:
        self.repository = repository

    async def apply(self, db: aiosqlite.Connection, claim: Claim) -> bool:
        """Project `claim`; returns False when it was already applied."""
        resource = await self.repository.get_resource(db, claim.resource_id)
        if resource is None:
            raise NotFound(f"Resource {claim.resource_id} not found.")
        if resource.applied_claim_id == claim.id:
            logger.info("Claim %s already projected onto %s; skipping", claim.id, resource.id)
            await self.repository.release_claim_lock(db, resource.id, claim.id)
            return False

        snapshot: dict[str, Any] = {
            "controller_id": resource.controller_id,
            "self_managed_by": resource.self_managed_by,
            "applied_claim_id": resource.applied_claim_id,
        }
        policy = policy_for(claim.claim_type)
        self_managed_by = resource.self_managed_by
        if policy.projection == PROJECT_CONTROLLER:
            await SQLiteCatalog(self.repository, db).set_controller(resource.id, claim.claimant_id)
        else:
            # Dual control: the owner keeps the management link.
            self_managed_by = claim.claimant_id
        await self.repository.set_projection(
            db,
            resource.id,
            self_managed_by=self_managed_by,
            applied_claim_id=claim.id,
        )
        await self.repository.update_claim(
            db,
            claim.id,
            expected_version=claim.version,
            prior_controller_snapshot=snapshot,
        )
        claim.version += 1
        claim.prior_controller_snapshot = snapshot
        await self.repository.release_claim_lock(db, resource.id, claim.id)
        logger.info(
            "Projected claim %s (%s) onto %s for %s",
            claim.id,
            claim.claim_type,
            resource.id,
            claim.claimant_id,
        )
        return True

    async def revert(self, db: aiosqlite.Connection, claim: Claim) -> bool:
        """Restore the pre-claim state; returns False when nothing to undo."""
        resource = await self.repository.get_resource(db, claim.resource_id)
        if resource is None:
            raise NotFound(f"Resource {claim.resource_id} not found.")
        snapshot = claim.prior_controller_snapshot
        if resource.applied_claim_id != claim.id or snapshot is None:
            logger.info("Claim %s has no live projection on %s; nothing to revert", claim.id, resource.id)
            return False

        policy = policy_for(claim.claim_type)
        if policy.projection == PROJECT_CONTROLLER:
            await SQLiteCatalog(self.repository, db).set_controller(resource.id, snapshot.get("controller_id"))
        await self.repository.set_projection(
            db,
            resource.id,
            self_managed_by=snapshot.get("self_managed_by"),
            applied_claim_id=snapshot.get("applied_claim_id"),
        )
        logger.info("Reverted projection of claim %s on %s", claim.id, resource.id)
        return True
