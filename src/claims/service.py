"""Claim use-cases: submission, reviewer decisions, claimant actions, queries."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

import aiosqlite

from claims.disputes import DisputeResolver
from claims.engine import DecisionEngine
from claims.errors import (
    ClaimantAlreadyController,
    DuplicateActiveClaim,
    MissingRequiredEvidence,
    NotFound,
    ResourceAlreadyClaimed,
    Unauthorized,
    ValidationError,
)
from claims.evidence import EvidenceStore, SQLiteEvidenceRegistry
from claims.models import (
    ACTION_APPROVE,
    ACTION_REJECT,
    ACTION_REQUEST_INFO,
    ACTION_RESUBMIT,
    ACTION_WITHDRAW,
    ACTOR_ROLES,
    CLAIM_EMPLOYEE_SELF_CLAIM,
    REVIEWER_ACTIONS,
    STATE_INFO_REQUESTED,
    STATE_PENDING,
    STATE_REJECTED,
    STATE_WITHDRAWN,
    Actor,
    Claim,
    ClaimableResource,
    Decision,
    Evidence,
)
from claims.notifications import (
    EVENT_CLAIM_SUBMITTED,
    LoggingNotificationEmitter,
    NotificationEmitter,
    NotificationEvent,
    emit_all,
)
from claims.permissions import allowed_actions
from claims.policies import ClaimTypePolicy, policy_for
from claims.projector import PermissionProjector
from claims.repository import ClaimRepository
from claims.workflow import ClaimWorkflow
from config import CFG
from database import with_sqlite_retry


logger = logging.getLogger(__name__)

REVIEW_QUEUE_STATES: tuple[str, ...] = (STATE_PENDING, STATE_INFO_REQUESTED)
# A rejected or withdrawn claim by the same claimant starts a re-claim chain.
RECLAIM_SOURCE_STATES = {STATE_REJECTED, STATE_WITHDRAWN}


def _require_actor(actor: Actor) -> None:
    if not str(actor.id or "").strip():
        raise Unauthorized("Anonymous callers cannot use claims.")
    if actor.role not in ACTOR_ROLES:
        raise ValidationError(f"Unknown actor role: {actor.role}")


class ClaimService:
    """Use-cases behind the claim API.

    Every write is one SQLite transaction; notification events are handed to
    the emitter only after it commits.
    """

    def __init__(
        self,
        repository: ClaimRepository | None = None,
        evidence_store: EvidenceStore | None = None,
        emitter: NotificationEmitter | None = None,
        *,
        statement_max_len: int | None = None,
    ) -> None:
        self.repository = repository or ClaimRepository()
        self.evidence_store = evidence_store or SQLiteEvidenceRegistry(self.repository.db_path)
        self.emitter = emitter or LoggingNotificationEmitter()
        self.statement_max_len = int(statement_max_len or CFG.statement_max_len)
        self.engine = DecisionEngine()
        self.projector = PermissionProjector(self.repository)
        self.workflow = ClaimWorkflow(self.repository, self.engine, self.projector, self.emitter)
        self.disputes = DisputeResolver(self.workflow)

    # ---- validation ------------------------------------------------------

    def _validate_statement(self, evidence: Evidence) -> None:
        if evidence.statement and len(evidence.statement) > self.statement_max_len:
            raise ValidationError(
                f"Statement is too long ({len(evidence.statement)} > {self.statement_max_len} characters)."
            )

    async def _validate_evidence(self, policy: ClaimTypePolicy, evidence: Evidence) -> None:
        references = evidence.references()
        if not any(kind in policy.evidence_kinds for kind in references):
            raise MissingRequiredEvidence("Provide a selfie, an ID document or a verified phone token.")
        for kind, reference in references.items():
            if not await self.evidence_store.exists(reference):
                raise MissingRequiredEvidence(f"Evidence {reference} was not found.")
            stored_kind = await self.evidence_store.kind(reference)
            if stored_kind != kind:
                raise MissingRequiredEvidence(f"Evidence {reference} is not a {kind}.")

    async def _require_unlinked_worker(self, db: aiosqlite.Connection, worker: Actor) -> None:
        """A worker is linked to at most one employee profile."""
        linked = await self.repository.find_self_managed_resource(db, worker.id)
        if linked is not None:
            raise ClaimantAlreadyController(f"You already have a linked employee profile ({linked.id}).")
        active = await self.repository.find_active_claim_by_claimant(db, worker.id, CLAIM_EMPLOYEE_SELF_CLAIM)
        if active is not None:
            raise DuplicateActiveClaim(
                f"Your self-claim {active.id} on {active.resource_id} is still open."
            )

    # ---- submission ------------------------------------------------------

    async def submit(
        self,
        claimant: Actor,
        resource_id: str,
        claim_type: str,
        evidence: Evidence,
        tier: str | None = None,
    ) -> Claim:
        _require_actor(claimant)
        policy = policy_for(claim_type)
        normalized_tier = policy.normalize_tier(tier)
        evidence = Evidence.from_values(
            selfie_ref=evidence.selfie_ref,
            document_ref=evidence.document_ref,
            phone_token=evidence.phone_token,
            statement=evidence.statement,
        )
        self._validate_statement(evidence)
        await self._validate_evidence(policy, evidence)

        async def _op() -> tuple[Claim, ClaimableResource]:
            async with self.repository.transaction() as db:
                resource = await self.repository.get_resource(db, str(resource_id))
                if resource is None:
                    raise NotFound(f"Resource {resource_id} not found.")
                if resource.kind != policy.resource_kind:
                    raise ValidationError(f"A {policy.claim_type} claim cannot target a {resource.kind}.")
                if policy.is_claimant_holder(resource, claimant.id):
                    raise ClaimantAlreadyController("You already manage this resource.")
                if policy.claim_type == CLAIM_EMPLOYEE_SELF_CLAIM:
                    await self._require_unlinked_worker(db, claimant)
                if policy.is_taken(resource):
                    raise ResourceAlreadyClaimed(f"Resource {resource.id} is already claimed.")
                if resource.claim_locked:
                    raise DuplicateActiveClaim(f"Resource {resource.id} already has an active claim.")

                previous_claim_id: int | None = None
                resubmission_count = 0
                evidence_repeated = False
                previous = await self.repository.find_latest_claim_by_claimant(db, resource.id, claimant.id)
                if previous is not None and previous.state in RECLAIM_SOURCE_STATES:
                    previous_claim_id = previous.id
                    resubmission_count = previous.resubmission_count + 1
                    evidence_repeated = previous.evidence.fingerprint() == evidence.fingerprint()

                claim_id = await self.repository.insert_claim(
                    db,
                    resource=resource,
                    claimant_id=claimant.id,
                    claim_type=policy.claim_type,
                    tier=normalized_tier,
                    evidence=evidence,
                    state=STATE_PENDING,
                    previous_claim_id=previous_claim_id,
                    resubmission_count=resubmission_count,
                    evidence_repeated=evidence_repeated,
                )
                await self.repository.acquire_claim_lock(db, resource.id, claim_id)
                await self.repository.write_audit_log(
                    db,
                    entity="claim",
                    entity_id=claim_id,
                    actor_id=claimant.id,
                    action="claim_submitted",
                    payload={
                        "resource_id": resource.id,
                        "claim_type": policy.claim_type,
                        "tier": normalized_tier,
                        "previous_claim_id": previous_claim_id,
                        "evidence_repeated": evidence_repeated,
                    },
                )
                claim = await self.repository.get_claim(db, claim_id)
            if claim is None:
                raise RuntimeError("Failed to read claim after submit")
            return claim, resource

        claim, resource = await with_sqlite_retry(
            _op,
            where="claims.submit",
            db_path=self.repository.db_path,
        )
        logger.info(
            "Claim %s submitted by %s for %s %s (type=%s tier=%s resubmission=%s)",
            claim.id,
            claimant.id,
            resource.kind,
            resource.id,
            claim.claim_type,
            claim.tier,
            claim.resubmission_count,
        )
        await emit_all(
            self.emitter,
            [
                NotificationEvent(
                    type=EVENT_CLAIM_SUBMITTED,
                    recipient_id=policy.reviewer_recipient(resource),
                    claim_id=claim.id,
                )
            ],
        )
        return claim

    # ---- reviewer actions ------------------------------------------------

    async def decide(
        self,
        reviewer: Actor,
        claim_id: int,
        action: str,
        reason: str | None = None,
    ) -> Claim:
        _require_actor(reviewer)
        normalized = str(action or "").strip().lower()
        if normalized not in REVIEWER_ACTIONS:
            raise ValidationError(f"Unknown reviewer action: {action}")
        return await self.workflow.apply_action(int(claim_id), reviewer, normalized, reason)

    async def approve(self, reviewer: Actor, claim_id: int, notes: str | None = None) -> Claim:
        return await self.decide(reviewer, claim_id, ACTION_APPROVE, notes)

    async def reject(self, reviewer: Actor, claim_id: int, reason: str | None) -> Claim:
        return await self.decide(reviewer, claim_id, ACTION_REJECT, reason)

    async def request_info(self, reviewer: Actor, claim_id: int, message: str | None = None) -> Claim:
        return await self.decide(reviewer, claim_id, ACTION_REQUEST_INFO, message)

    # ---- claimant actions ------------------------------------------------

    async def resubmit_evidence(self, claimant: Actor, claim_id: int, evidence: Evidence) -> Claim:
        """Replace the evidence of an info_requested claim and send it back for review."""
        _require_actor(claimant)
        async with self.repository.connect() as db:
            current = await self.repository.get_claim(db, int(claim_id), with_history=False)
        if current is None:
            raise NotFound(f"Claim {claim_id} not found.")
        policy = policy_for(current.claim_type)
        evidence = Evidence.from_values(
            selfie_ref=evidence.selfie_ref,
            document_ref=evidence.document_ref,
            phone_token=evidence.phone_token,
            statement=evidence.statement,
        )
        self._validate_statement(evidence)
        await self._validate_evidence(policy, evidence)
        return await self.workflow.apply_action(
            int(claim_id),
            claimant,
            ACTION_RESUBMIT,
            None,
            extra_changes={
                "selfie_ref": evidence.selfie_ref,
                "document_ref": evidence.document_ref,
                "phone_token": evidence.phone_token,
                "statement": evidence.statement,
                "evidence_fingerprint": evidence.fingerprint(),
            },
        )

    async def withdraw(self, claimant: Actor, claim_id: int) -> Claim:
        _require_actor(claimant)
        return await self.workflow.apply_action(int(claim_id), claimant, ACTION_WITHDRAW)

    # ---- disputes --------------------------------------------------------

    async def dispute(self, raised_by: Actor, claim_id: int, reason: str | None) -> Claim:
        _require_actor(raised_by)
        return await self.disputes.escalate(int(claim_id), raised_by, reason)

    async def resolve_dispute(
        self,
        admin: Actor,
        claim_id: int,
        outcome: str,
        reason: str | None = None,
    ) -> Claim:
        _require_actor(admin)
        return await self.disputes.resolve(int(claim_id), admin, outcome, reason)

    # ---- queries ---------------------------------------------------------

    async def _load_visible(self, actor: Actor, claim_id: int) -> tuple[Claim, ClaimableResource]:
        _require_actor(actor)
        async with self.repository.connect() as db:
            claim = await self.repository.get_claim(db, int(claim_id))
            if claim is None:
                raise NotFound(f"Claim {claim_id} not found.")
            resource = await self.repository.get_resource(db, claim.resource_id)
        if resource is None:
            raise NotFound(f"Resource {claim.resource_id} not found.")
        if actor.is_admin or actor.id == claim.claimant_id:
            return claim, resource
        reviewers = {resource.controller_id, claim.contested_controller_id}
        if actor.id in reviewers:
            return claim, resource
        raise Unauthorized("You cannot view this claim.")

    async def get_claim(self, actor: Actor, claim_id: int) -> Claim:
        claim, _ = await self._load_visible(actor, claim_id)
        return claim

    async def get_history(self, actor: Actor, claim_id: int) -> list[Decision]:
        claim, _ = await self._load_visible(actor, claim_id)
        return list(claim.history)

    async def get_audit_trail(self, admin: Actor, claim_id: int) -> list[dict[str, Any]]:
        if not admin.is_admin:
            raise Unauthorized("Only an admin can read the audit trail.")
        async with self.repository.connect() as db:
            return await self.repository.list_audit_log(db, entity="claim", entity_id=int(claim_id))

    async def list_claims_for_claimant(
        self,
        claimant: Actor,
        *,
        states: Sequence[str] | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Claim]:
        _require_actor(claimant)
        async with self.repository.connect() as db:
            return await self.repository.list_claims(
                db,
                states=states,
                claimant_id=claimant.id,
                limit=limit,
                offset=offset,
            )

    async def list_review_queue(
        self,
        reviewer: Actor,
        states: Sequence[str] = REVIEW_QUEUE_STATES,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Claim]:
        """Claims awaiting this reviewer: owned resources, plus house-managed ones for admins."""
        _require_actor(reviewer)
        async with self.repository.connect() as db:
            return await self.repository.list_claims_for_controller(
                db,
                reviewer.id,
                states=states,
                include_house_managed=reviewer.is_admin,
                limit=limit,
                offset=offset,
            )

    async def get_resource(self, resource_id: str) -> ClaimableResource:
        async with self.repository.connect() as db:
            resource = await self.repository.get_resource(db, str(resource_id))
        if resource is None:
            raise NotFound(f"Resource {resource_id} not found.")
        return resource

    async def check_permission(self, actor: Actor, resource_id: str, action: str) -> bool:
        resource = await self.get_resource(resource_id)
        return action in allowed_actions(resource, actor.id)


def get_claim_service(emitter: NotificationEmitter | None = None) -> ClaimService:
    """Service wired to the configured database and the SQLite evidence registry."""
    return ClaimService(ClaimRepository(), emitter=emitter)
