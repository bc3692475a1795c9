"""Claim-type policies: what each claim type requires and what it grants."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final

from claims.errors import ValidationError
from claims.evidence.base import EVIDENCE_DOCUMENT, EVIDENCE_PHONE_TOKEN, EVIDENCE_SELFIE
from claims.models import (
    CLAIM_EMPLOYEE_SELF_CLAIM,
    CLAIM_ESTABLISHMENT_OWNERSHIP,
    CLAIM_TIERS,
    RESOURCE_EMPLOYEE_PROFILE,
    RESOURCE_ESTABLISHMENT,
    TIER_STANDARD,
    Actor,
    ClaimableResource,
)
from claims.notifications import ADMIN_RECIPIENT


PROJECT_CONTROLLER: Final = "controller"
PROJECT_SELF_MANAGER: Final = "self_manager"


@dataclass(frozen=True)
class ClaimTypePolicy:
    claim_type: str
    resource_kind: str
    projection: str
    allowed_tiers: frozenset[str] = frozenset()
    default_tier: str | None = None
    evidence_kinds: frozenset[str] = frozenset({EVIDENCE_SELFIE, EVIDENCE_DOCUMENT, EVIDENCE_PHONE_TOKEN})

    def normalize_tier(self, tier: str | None) -> str | None:
        normalized = str(tier or "").strip().lower() or None
        if not self.allowed_tiers:
            if normalized is not None:
                raise ValidationError(f"Claim type {self.claim_type} does not take a tier.")
            return None
        if normalized is None:
            return self.default_tier
        if normalized not in self.allowed_tiers:
            raise ValidationError(f"Unknown claim tier: {tier}")
        return normalized

    def holder_of(self, resource: ClaimableResource) -> str | None:
        """Who currently holds what this claim type would grant."""
        if self.projection == PROJECT_CONTROLLER:
            return resource.controller_id
        return resource.self_managed_by

    def is_claimant_holder(self, resource: ClaimableResource, claimant_id: str) -> bool:
        return claimant_id in {resource.controller_id, self.holder_of(resource)}

    def is_taken(self, resource: ClaimableResource) -> bool:
        return self.holder_of(resource) is not None

    def can_review(self, actor: Actor, resource: ClaimableResource) -> bool:
        """The controller reviews; house-managed resources go to the moderators."""
        if resource.controller_id is not None:
            return actor.id == resource.controller_id
        return actor.is_admin

    def reviewer_recipient(self, resource: ClaimableResource) -> str:
        return resource.controller_id or ADMIN_RECIPIENT


ESTABLISHMENT_OWNERSHIP_POLICY = ClaimTypePolicy(
    claim_type=CLAIM_ESTABLISHMENT_OWNERSHIP,
    resource_kind=RESOURCE_ESTABLISHMENT,
    projection=PROJECT_CONTROLLER,
    allowed_tiers=frozenset(CLAIM_TIERS),
    default_tier=TIER_STANDARD,
)

EMPLOYEE_SELF_CLAIM_POLICY = ClaimTypePolicy(
    claim_type=CLAIM_EMPLOYEE_SELF_CLAIM,
    resource_kind=RESOURCE_EMPLOYEE_PROFILE,
    projection=PROJECT_SELF_MANAGER,
)

POLICIES: dict[str, ClaimTypePolicy] = {
    ESTABLISHMENT_OWNERSHIP_POLICY.claim_type: ESTABLISHMENT_OWNERSHIP_POLICY,
    EMPLOYEE_SELF_CLAIM_POLICY.claim_type: EMPLOYEE_SELF_CLAIM_POLICY,
}


def policy_for(claim_type: str) -> ClaimTypePolicy:
    policy = POLICIES.get(str(claim_type or "").strip().lower())
    if policy is None:
        raise ValidationError(f"Unknown claim type: {claim_type}")
    return policy
