#!/usr/bin/env python3
"""
Claim submission policy smoke-check.

What it validates:
- a single ID document is enough evidence; a second claimant is locked out
- evidence is checked before resource state (missing, unknown, wrong kind)
- claim type / tier / statement length validation
- controller and already-claimed guards
- reject with reason, then re-claim by the same claimant links the chain

Run:
  python3 scripts/smoke_claims_submission_policy.py
"""

from __future__ import annotations

import asyncio
import shutil
import sys
import tempfile
from pathlib import Path


def _setup_import_path() -> None:
    for candidate in (
        Path(__file__).resolve().parents[1] / "src",
        Path.cwd() / "src",
        Path("/app/src"),
    ):
        if candidate.exists():
            sys.path.insert(0, str(candidate))
            return


_setup_import_path()

from claims.catalog import sync_resource  # noqa: E402
from claims.errors import (  # noqa: E402
    ClaimantAlreadyController,
    DuplicateActiveClaim,
    MissingRequiredEvidence,
    NotFound,
    ResourceAlreadyClaimed,
    ValidationError,
)
from claims.evidence import InMemoryEvidenceStore  # noqa: E402
from claims.models import Actor, Evidence  # noqa: E402
from claims.notifications import ADMIN_RECIPIENT, MemoryNotificationEmitter  # noqa: E402
from claims.repository import ClaimRepository  # noqa: E402
from claims.service import ClaimService  # noqa: E402
from database import init_db  # noqa: E402


ADMIN = Actor(id="A1", role="admin")


def _assert(cond: bool, message: str) -> None:
    if not cond:
        raise AssertionError(message)


async def _expect(exc_type: type[BaseException], awaitable, message: str) -> None:
    try:
        await awaitable
    except exc_type:
        return
    raise AssertionError(message)


async def _run_checks(db_path: str) -> None:
    await init_db(db_path)
    repository = ClaimRepository(db_path)
    evidence_store = InMemoryEvidenceStore(
        {
            "doc-1": "document",
            "doc-2": "document",
            "selfie-1": "selfie",
            "phone-1": "phone_token",
        }
    )
    emitter = MemoryNotificationEmitter()
    service = ClaimService(repository, evidence_store, emitter, statement_max_len=50)

    await sync_resource(repository, "E123", "establishment")
    await sync_resource(repository, "E201", "establishment")
    await sync_resource(repository, "E300", "establishment", controller_id="O1")
    await sync_resource(repository, "P1", "employee_profile", controller_id="O1", owning_establishment_id="E300")

    u1 = Actor(id="U1", role="user")
    u2 = Actor(id="U2", role="user")

    # Document-only claim on a house-managed establishment.
    claim = await service.submit(u1, "E123", "establishment_ownership", Evidence(document_ref="doc-1"))
    _assert(claim.state == "pending", f"claim must be pending, got {claim.state}")
    _assert(claim.tier == "standard", f"default tier must be standard, got {claim.tier}")
    resource = await service.get_resource("E123")
    _assert(resource.active_claim_id == claim.id, "resource must be locked by the new claim")
    submitted = emitter.of_type("claim_submitted")
    _assert(len(submitted) == 1, "one claim_submitted event expected")
    _assert(submitted[0].recipient_id == ADMIN_RECIPIENT, "house-managed claims go to the admins")

    await _expect(
        DuplicateActiveClaim,
        service.submit(u2, "E123", "establishment_ownership", Evidence(selfie_ref="selfie-1")),
        "second claimant must get DuplicateActiveClaim",
    )
    # Evidence is checked before the lock.
    await _expect(
        MissingRequiredEvidence,
        service.submit(u2, "E123", "establishment_ownership", Evidence(statement="It is mine")),
        "claim without evidence must fail with MissingRequiredEvidence",
    )
    await _expect(
        MissingRequiredEvidence,
        service.submit(u2, "E201", "establishment_ownership", Evidence(document_ref="doc-missing")),
        "unknown evidence reference must be rejected",
    )
    await _expect(
        MissingRequiredEvidence,
        service.submit(u2, "E201", "establishment_ownership", Evidence(selfie_ref="doc-1")),
        "evidence of the wrong kind must be rejected",
    )
    await _expect(
        ValidationError,
        service.submit(u2, "E201", "establishment_ownership", Evidence(document_ref="doc-2", statement="x" * 51)),
        "statement over the limit must be rejected",
    )
    await _expect(
        ValidationError,
        service.submit(u2, "E201", "venue_takeover", Evidence(document_ref="doc-2")),
        "unknown claim type must be rejected",
    )
    await _expect(
        ValidationError,
        service.submit(u2, "E201", "establishment_ownership", Evidence(document_ref="doc-2"), tier="gold"),
        "unknown tier must be rejected",
    )
    await _expect(
        ValidationError,
        service.submit(u2, "P1", "employee_self_claim", Evidence(selfie_ref="selfie-1"), tier="vip"),
        "self-claims do not take a tier",
    )
    await _expect(
        NotFound,
        service.submit(u2, "E999", "establishment_ownership", Evidence(document_ref="doc-2")),
        "unknown resource must raise NotFound",
    )
    await _expect(
        ValidationError,
        service.submit(u2, "E201", "employee_self_claim", Evidence(selfie_ref="selfie-1")),
        "self-claim on an establishment must be rejected",
    )
    await _expect(
        ResourceAlreadyClaimed,
        service.submit(u2, "E300", "establishment_ownership", Evidence(document_ref="doc-2")),
        "owned establishment must raise ResourceAlreadyClaimed",
    )
    await _expect(
        ClaimantAlreadyController,
        service.submit(Actor(id="O1", role="owner"), "E300", "establishment_ownership", Evidence(document_ref="doc-2")),
        "controller claiming its own establishment must be refused",
    )

    # Both evidence paths at once are accepted.
    both = await service.submit(
        u2,
        "E201",
        "establishment_ownership",
        Evidence(selfie_ref="selfie-1", document_ref="doc-2", phone_token="phone-1"),
        tier="VIP",
    )
    _assert(both.state == "pending" and both.tier == "vip", "selfie+document+phone claim must be accepted")

    # Reject with reason, then re-claim with the same evidence.
    rejected = await service.reject(ADMIN, claim.id, "  Document is unreadable  ")
    _assert(rejected.state == "rejected", f"claim must be rejected, got {rejected.state}")
    _assert(rejected.last_decision is not None, "rejection must be in history")
    _assert(rejected.last_decision.reason == "Document is unreadable", "reason must be stored trimmed")
    _assert(rejected.decided_at is not None, "decided_at must be set on terminal states")
    resource = await service.get_resource("E123")
    _assert(resource.active_claim_id is None, "rejection must release the claim lock")
    rejections = emitter.of_type("claim_rejected")
    _assert(
        len(rejections) == 1
        and rejections[0].recipient_id == "U1"
        and rejections[0].reason_or_notes == "Document is unreadable",
        "claimant must get the rejection reason verbatim",
    )

    again = await service.submit(u1, "E123", "establishment_ownership", Evidence(document_ref="doc-1"))
    _assert(again.state == "pending", "re-claim after rejection must be accepted")
    _assert(again.previous_claim_id == claim.id, "re-claim must link the rejected claim")
    _assert(again.resubmission_count == 1, f"resubmission_count must be 1, got {again.resubmission_count}")
    _assert(again.evidence_repeated, "identical evidence must be flagged")

    history = await service.list_claims_for_claimant(u1)
    _assert([item.id for item in history] == [claim.id, again.id], "claimant listing must include both claims")


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="claims-smoke-submission-"))
    try:
        asyncio.run(_run_checks(str(tmpdir / "claims.db")))
        print("OK: claim submission policy smoke passed.")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


if __name__ == "__main__":
    main()
