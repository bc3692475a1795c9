"""Claim domain models and vocabulary."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Final


# Resource kinds
RESOURCE_ESTABLISHMENT: Final = "establishment"
RESOURCE_EMPLOYEE_PROFILE: Final = "employee_profile"
RESOURCE_KINDS: Final[set[str]] = {RESOURCE_ESTABLISHMENT, RESOURCE_EMPLOYEE_PROFILE}

# Claim types
CLAIM_ESTABLISHMENT_OWNERSHIP: Final = "establishment_ownership"
CLAIM_EMPLOYEE_SELF_CLAIM: Final = "employee_self_claim"

# Ownership claim tiers
TIER_STANDARD: Final = "standard"
TIER_VIP: Final = "vip"
CLAIM_TIERS: Final[set[str]] = {TIER_STANDARD, TIER_VIP}

# Claim states
STATE_PENDING: Final = "pending"
STATE_INFO_REQUESTED: Final = "info_requested"
STATE_DISPUTED: Final = "disputed"
STATE_APPROVED: Final = "approved"
STATE_REJECTED: Final = "rejected"
STATE_WITHDRAWN: Final = "withdrawn"
ACTIVE_STATES: Final[frozenset[str]] = frozenset({STATE_PENDING, STATE_INFO_REQUESTED, STATE_DISPUTED})
TERMINAL_STATES: Final[frozenset[str]] = frozenset({STATE_APPROVED, STATE_REJECTED, STATE_WITHDRAWN})

# Actions recorded in the decision history
ACTION_APPROVE: Final = "approve"
ACTION_REJECT: Final = "reject"
ACTION_REQUEST_INFO: Final = "request_info"
ACTION_DISPUTE: Final = "dispute"
ACTION_OVERRIDE_APPROVE: Final = "override_approve"
ACTION_OVERRIDE_REJECT: Final = "override_reject"
ACTION_RESUBMIT: Final = "resubmit"
ACTION_WITHDRAW: Final = "withdraw"
REVIEWER_ACTIONS: Final[frozenset[str]] = frozenset({ACTION_APPROVE, ACTION_REJECT, ACTION_REQUEST_INFO})
OVERRIDE_ACTIONS: Final[frozenset[str]] = frozenset({ACTION_OVERRIDE_APPROVE, ACTION_OVERRIDE_REJECT})
CLAIMANT_ACTIONS: Final[frozenset[str]] = frozenset({ACTION_RESUBMIT, ACTION_WITHDRAW})

# Actor roles
ROLE_ADMIN: Final = "admin"
ROLE_OWNER: Final = "owner"
ROLE_USER: Final = "user"
ACTOR_ROLES: Final[set[str]] = {ROLE_ADMIN, ROLE_OWNER, ROLE_USER}

# Payment verification states
PAYMENT_PENDING: Final = "pending"
PAYMENT_VERIFIED: Final = "verified"
PAYMENT_REJECTED: Final = "rejected"
PAYMENT_ACTION_VERIFY: Final = "verify"
PAYMENT_ACTION_REJECT: Final = "reject"

# VIP subscription status
VIP_ACTIVE: Final = "active"
VIP_CANCELLED: Final = "cancelled"


@dataclass(frozen=True, slots=True)
class Actor:
    """Caller identity as resolved by the host's session layer."""

    id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


@dataclass(frozen=True, slots=True)
class Evidence:
    """References to uploaded proof; the core never reads the media itself."""

    selfie_ref: str | None = None
    document_ref: str | None = None
    phone_token: str | None = None
    statement: str | None = None

    @classmethod
    def from_values(
        cls,
        *,
        selfie_ref: str | None = None,
        document_ref: str | None = None,
        phone_token: str | None = None,
        statement: str | None = None,
    ) -> Evidence:
        def _clean(value: str | None) -> str | None:
            cleaned = str(value or "").strip()
            return cleaned or None

        return cls(
            selfie_ref=_clean(selfie_ref),
            document_ref=_clean(document_ref),
            phone_token=_clean(phone_token),
            statement=_clean(statement),
        )

    def references(self) -> dict[str, str]:
        """Supplied verification references keyed by evidence kind."""
        refs: dict[str, str] = {}
        if self.selfie_ref:
            refs["selfie"] = self.selfie_ref
        if self.document_ref:
            refs["document"] = self.document_ref
        if self.phone_token:
            refs["phone_token"] = self.phone_token
        return refs

    def fingerprint(self) -> str:
        parts = (self.selfie_ref, self.document_ref, self.phone_token, self.statement)
        return "|".join(part or "" for part in parts)


@dataclass(slots=True)
class ClaimableResource:
    id: str
    kind: str
    controller_id: str | None = None
    owning_establishment_id: str | None = None
    self_managed_by: str | None = None
    applied_claim_id: int | None = None
    active_claim_id: int | None = None

    @property
    def claim_locked(self) -> bool:
        return self.active_claim_id is not None


@dataclass(frozen=True, slots=True)
class Decision:
    claim_id: int
    seq: int
    actor_id: str
    actor_role: str
    action: str
    from_state: str
    to_state: str
    created_at: str
    reason: str | None = None


@dataclass(slots=True)
class Claim:
    id: int
    resource_id: str
    resource_kind: str
    claimant_id: str
    claim_type: str
    evidence: Evidence
    state: str
    submitted_at: str
    updated_at: str
    version: int = 1
    tier: str | None = None
    previous_claim_id: int | None = None
    resubmission_count: int = 0
    evidence_repeated: bool = False
    disputed_from: str | None = None
    contested_controller_id: str | None = None
    prior_controller_snapshot: dict[str, object] | None = None
    decided_at: str | None = None
    history: list[Decision] = field(default_factory=list)

    @property
    def last_decision(self) -> Decision | None:
        return self.history[-1] if self.history else None


@dataclass(slots=True)
class PaymentVerification:
    id: int
    establishment_id: str
    amount: int
    currency: str
    duration_days: int
    submitted_by: str
    submitted_at: str
    state: str
    version: int = 1
    admin_notes: str | None = None
    decided_by: str | None = None
    decided_at: str | None = None
    vip_expires_at: str | None = None


@dataclass(slots=True)
class VipSubscription:
    establishment_id: str
    starts_at: str
    expires_at: str
    last_transaction_id: int | None = None
    status: str = VIP_ACTIVE
    cancelled_at: str | None = None
    cancelled_by: str | None = None
