"""Decision engine: pure evaluation of a reviewer action against a claim.

Nothing here touches storage. `DecisionEngine.evaluate` either raises a typed
error or returns a `Transition` describing the next state, the decision to
append, the claim fields to write and the side effects for the workflow to
run inside the same transaction.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Final

from claims.errors import InvalidTransition, ReasonRequired, ResourceAlreadyClaimed, Unauthorized
from claims.models import (
    ACTION_APPROVE,
    ACTION_DISPUTE,
    ACTION_OVERRIDE_APPROVE,
    ACTION_OVERRIDE_REJECT,
    ACTION_REJECT,
    ACTION_REQUEST_INFO,
    ACTION_RESUBMIT,
    ACTION_WITHDRAW,
    CLAIMANT_ACTIONS,
    OVERRIDE_ACTIONS,
    PAYMENT_ACTION_REJECT,
    PAYMENT_ACTION_VERIFY,
    PAYMENT_PENDING,
    PAYMENT_REJECTED,
    PAYMENT_VERIFIED,
    REVIEWER_ACTIONS,
    STATE_APPROVED,
    STATE_DISPUTED,
    STATE_INFO_REQUESTED,
    STATE_PENDING,
    STATE_REJECTED,
    STATE_WITHDRAWN,
    TERMINAL_STATES,
    Actor,
    Claim,
    ClaimableResource,
)
from claims.notifications import (
    ADMIN_RECIPIENT,
    EVENT_CLAIM_APPROVED,
    EVENT_CLAIM_DISPUTED,
    EVENT_CLAIM_INFO_REQUESTED,
    EVENT_CLAIM_OVERRIDE,
    EVENT_CLAIM_REJECTED,
    EVENT_CLAIM_RESUBMITTED,
    EVENT_CLAIM_WITHDRAWN,
    NotificationEvent,
)
from claims.policies import ClaimTypePolicy, policy_for


EFFECT_PROJECT: Final = "project"
EFFECT_REVERT: Final = "revert"
EFFECT_LOCK: Final = "lock"
EFFECT_RELEASE: Final = "release"

REASON_REQUIRED_ACTIONS: Final[frozenset[str]] = frozenset(
    {ACTION_REJECT, ACTION_OVERRIDE_REJECT, ACTION_DISPUTE, PAYMENT_ACTION_REJECT}
)


@dataclass(frozen=True)
class StateMachine:
    """Transition table shared by claims and payment verifications."""

    name: str
    transitions: Mapping[tuple[str, str], str]

    def next_state(self, state: str, action: str) -> str:
        target = self.transitions.get((state, action))
        if target is None:
            raise InvalidTransition(f"Cannot {action} a {self.name} in state {state}.")
        return target


CLAIM_STATE_MACHINE = StateMachine(
    name="claim",
    transitions={
        (STATE_PENDING, ACTION_APPROVE): STATE_APPROVED,
        (STATE_PENDING, ACTION_REJECT): STATE_REJECTED,
        (STATE_PENDING, ACTION_REQUEST_INFO): STATE_INFO_REQUESTED,
        (STATE_INFO_REQUESTED, ACTION_APPROVE): STATE_APPROVED,
        (STATE_INFO_REQUESTED, ACTION_REJECT): STATE_REJECTED,
        (STATE_INFO_REQUESTED, ACTION_RESUBMIT): STATE_PENDING,
        (STATE_PENDING, ACTION_WITHDRAW): STATE_WITHDRAWN,
        (STATE_INFO_REQUESTED, ACTION_WITHDRAW): STATE_WITHDRAWN,
        (STATE_PENDING, ACTION_DISPUTE): STATE_DISPUTED,
        (STATE_INFO_REQUESTED, ACTION_DISPUTE): STATE_DISPUTED,
        (STATE_APPROVED, ACTION_DISPUTE): STATE_DISPUTED,
        (STATE_REJECTED, ACTION_DISPUTE): STATE_DISPUTED,
        (STATE_DISPUTED, ACTION_OVERRIDE_APPROVE): STATE_APPROVED,
        (STATE_DISPUTED, ACTION_OVERRIDE_REJECT): STATE_REJECTED,
    },
)

PAYMENT_STATE_MACHINE = StateMachine(
    name="payment verification",
    transitions={
        (PAYMENT_PENDING, PAYMENT_ACTION_VERIFY): PAYMENT_VERIFIED,
        (PAYMENT_PENDING, PAYMENT_ACTION_REJECT): PAYMENT_REJECTED,
    },
)


def normalize_reason(reason: str | None) -> str | None:
    cleaned = str(reason or "").strip()
    return cleaned or None


def require_reason(action: str, reason: str | None) -> str | None:
    normalized = normalize_reason(reason)
    if action in REASON_REQUIRED_ACTIONS and normalized is None:
        raise ReasonRequired(f"A reason is required to {action}.")
    return normalized


@dataclass(frozen=True)
class Transition:
    action: str
    actor: Actor
    from_state: str
    to_state: str
    reason: str | None
    effects: tuple[str, ...] = ()
    changes: dict[str, Any] = field(default_factory=dict)
    events: tuple[NotificationEvent, ...] = ()


class DecisionEngine:
    def __init__(self, machine: StateMachine = CLAIM_STATE_MACHINE) -> None:
        self.machine = machine

    def evaluate(
        self,
        claim: Claim,
        resource: ClaimableResource,
        actor: Actor,
        action: str,
        reason: str | None = None,
        *,
        now_iso: str,
    ) -> Transition:
        # Legality first: a retried or raced decision surfaces as InvalidTransition.
        to_state = self.machine.next_state(claim.state, action)
        if action == ACTION_DISPUTE and any(d.action == ACTION_DISPUTE for d in claim.history):
            raise InvalidTransition(f"Claim {claim.id} was already disputed; the override is final.")

        policy = policy_for(claim.claim_type)
        self._authorize(policy, claim, resource, actor, action)
        normalized_reason = require_reason(action, reason)
        if to_state == STATE_APPROVED and policy.is_taken(resource) and resource.applied_claim_id != claim.id:
            raise ResourceAlreadyClaimed(
                f"Resource {resource.id} is held by {policy.holder_of(resource)}; dispute that assignment instead."
            )

        effects: list[str] = []
        changes: dict[str, Any] = {}
        if to_state == STATE_APPROVED:
            effects.extend([EFFECT_PROJECT, EFFECT_RELEASE])
        elif to_state == STATE_REJECTED:
            if action == ACTION_OVERRIDE_REJECT and claim.disputed_from == STATE_APPROVED:
                effects.append(EFFECT_REVERT)
            effects.append(EFFECT_RELEASE)
        elif to_state == STATE_WITHDRAWN:
            effects.append(EFFECT_RELEASE)
        elif action == ACTION_DISPUTE:
            changes["disputed_from"] = claim.state
            # Whoever holds the resource now is the assignment under contest.
            changes["contested_controller_id"] = policy.holder_of(resource)
            if claim.state in TERMINAL_STATES:
                # Back to non-terminal: the resource must be locked again.
                effects.append(EFFECT_LOCK)
        if to_state in TERMINAL_STATES:
            changes["decided_at"] = now_iso

        return Transition(
            action=action,
            actor=actor,
            from_state=claim.state,
            to_state=to_state,
            reason=normalized_reason,
            effects=tuple(effects),
            changes=changes,
            events=tuple(self._events(policy, claim, resource, actor, action, normalized_reason)),
        )

    def _authorize(
        self,
        policy: ClaimTypePolicy,
        claim: Claim,
        resource: ClaimableResource,
        actor: Actor,
        action: str,
    ) -> None:
        if action in REVIEWER_ACTIONS:
            if actor.id == claim.claimant_id:
                raise Unauthorized("Claimants cannot review their own claim.")
            if not policy.can_review(actor, resource):
                raise Unauthorized("Only the resource controller or a moderator can review this claim.")
        elif action in OVERRIDE_ACTIONS:
            if not actor.is_admin:
                raise Unauthorized("Only an admin can resolve a disputed claim.")
        elif action in CLAIMANT_ACTIONS:
            if actor.id != claim.claimant_id:
                raise Unauthorized("Only the claimant can change this claim.")
        elif action == ACTION_DISPUTE:
            if claim.state == STATE_APPROVED and actor.id == claim.claimant_id:
                raise Unauthorized("Claimants cannot dispute their own approval.")

    def _events(
        self,
        policy: ClaimTypePolicy,
        claim: Claim,
        resource: ClaimableResource,
        actor: Actor,
        action: str,
        reason: str | None,
    ) -> list[NotificationEvent]:
        def _to(event_type: str, *recipients: str | None) -> list[NotificationEvent]:
            seen: list[str] = []
            for recipient in recipients:
                if recipient and recipient not in seen:
                    seen.append(recipient)
            return [
                NotificationEvent(type=event_type, recipient_id=recipient, claim_id=claim.id, reason_or_notes=reason)
                for recipient in seen
            ]

        if action == ACTION_APPROVE:
            return _to(EVENT_CLAIM_APPROVED, claim.claimant_id)
        if action == ACTION_REJECT:
            return _to(EVENT_CLAIM_REJECTED, claim.claimant_id)
        if action == ACTION_REQUEST_INFO:
            return _to(EVENT_CLAIM_INFO_REQUESTED, claim.claimant_id)
        if action == ACTION_DISPUTE:
            claimant = claim.claimant_id if actor.id != claim.claimant_id else None
            return _to(EVENT_CLAIM_DISPUTED, ADMIN_RECIPIENT, claimant)
        if action in OVERRIDE_ACTIONS:
            raisers = [d.actor_id for d in claim.history if d.action == ACTION_DISPUTE]
            return _to(EVENT_CLAIM_OVERRIDE, claim.claimant_id, *raisers)
        if action == ACTION_RESUBMIT:
            return _to(EVENT_CLAIM_RESUBMITTED, policy.reviewer_recipient(resource))
        if action == ACTION_WITHDRAW:
            return _to(EVENT_CLAIM_WITHDRAWN, policy.reviewer_recipient(resource))
        return []
