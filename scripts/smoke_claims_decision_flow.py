#!/usr/bin/env python3
"""
Claim decision state machine smoke-check.

What it validates:
- reject without a reason fails and leaves the claim pending
- only the controller (or an admin for house-managed resources) reviews
- request_info -> resubmit -> approve round trip, with ordered history
- illegal actions raise InvalidTransition before authorization
- withdraw is claimant-only and terminal
- decision rows cannot be edited or deleted

Run:
  python3 scripts/smoke_claims_decision_flow.py
"""

from __future__ import annotations

import asyncio
import shutil
import sqlite3
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
from claims.errors import InvalidTransition, ReasonRequired, Unauthorized, ValidationError  # noqa: E402
from claims.evidence import InMemoryEvidenceStore  # noqa: E402
from claims.models import Actor, Evidence  # noqa: E402
from claims.notifications import ADMIN_RECIPIENT, MemoryNotificationEmitter  # noqa: E402
from claims.repository import ClaimRepository  # noqa: E402
from claims.service import ClaimService  # noqa: E402
from database import init_db  # noqa: E402


ADMIN = Actor(id="A1", role="admin")
OWNER = Actor(id="O1", role="owner")


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
    evidence_store = InMemoryEvidenceStore({"doc-1": "document", "selfie-1": "selfie", "selfie-2": "selfie"})
    emitter = MemoryNotificationEmitter()
    service = ClaimService(repository, evidence_store, emitter)

    await sync_resource(repository, "E1", "establishment")
    await sync_resource(repository, "E2", "establishment")
    await sync_resource(repository, "E9", "establishment", controller_id="O1")
    await sync_resource(repository, "P1", "employee_profile", controller_id="O1", owning_establishment_id="E9")
    await sync_resource(repository, "E3", "establishment")
    await sync_resource(repository, "E4", "establishment")
    await sync_resource(repository, "E10", "establishment", controller_id="A1")
    await sync_resource(repository, "P7", "employee_profile", controller_id="A1", owning_establishment_id="E10")

    u1 = Actor(id="U1", role="user")
    u2 = Actor(id="U2", role="user")
    outsider = Actor(id="U9", role="user")

    claim = await service.submit(u1, "E1", "establishment_ownership", Evidence(document_ref="doc-1"))

    # Missing reason leaves the claim untouched.
    await _expect(ReasonRequired, service.reject(ADMIN, claim.id, None), "reject without reason must fail")
    await _expect(ReasonRequired, service.reject(ADMIN, claim.id, "   "), "blank reason must fail")
    current = await service.get_claim(ADMIN, claim.id)
    _assert(current.state == "pending", f"claim must stay pending, got {current.state}")
    _assert(not current.history, "failed rejects must not write history")

    await _expect(Unauthorized, service.approve(u1, claim.id), "claimant cannot approve own claim")
    await _expect(Unauthorized, service.approve(outsider, claim.id), "non-moderator cannot review house claim")
    await _expect(ValidationError, service.decide(ADMIN, claim.id, "override_approve"), "decide is reviewer-only")
    await _expect(Unauthorized, service.get_claim(outsider, claim.id), "outsiders cannot read the claim")

    info = await service.request_info(ADMIN, claim.id, "Please add a selfie")
    _assert(info.state == "info_requested", f"expected info_requested, got {info.state}")
    _assert(emitter.of_type("claim_info_requested")[0].recipient_id == "U1", "claimant must be asked for info")

    await _expect(
        Unauthorized,
        service.resubmit_evidence(ADMIN, claim.id, Evidence(selfie_ref="selfie-1")),
        "only the claimant can resubmit",
    )
    resubmitted = await service.resubmit_evidence(
        u1, claim.id, Evidence(selfie_ref="selfie-1", document_ref="doc-1", statement="Added a selfie")
    )
    _assert(resubmitted.state == "pending", f"resubmit must return to pending, got {resubmitted.state}")
    _assert(resubmitted.evidence.selfie_ref == "selfie-1", "new evidence must be stored")
    _assert(resubmitted.evidence.statement == "Added a selfie", "new statement must be stored")
    _assert(emitter.of_type("claim_resubmitted")[0].recipient_id == ADMIN_RECIPIENT, "reviewer must be told")

    approved = await service.approve(ADMIN, claim.id)
    _assert(approved.state == "approved", f"expected approved, got {approved.state}")
    _assert(approved.decided_at is not None, "approval must set decided_at")
    resource = await service.get_resource("E1")
    _assert(resource.controller_id == "U1", "approval must make the claimant controller")
    _assert(resource.applied_claim_id == claim.id, "resource must record the applied claim")
    _assert(resource.active_claim_id is None, "approval must release the lock")

    # Legality is checked first: even an outsider gets InvalidTransition here.
    await _expect(InvalidTransition, service.approve(outsider, claim.id), "second approve must be illegal")
    await _expect(InvalidTransition, service.reject(ADMIN, claim.id, "Too late"), "reject after approve is illegal")
    await _expect(InvalidTransition, service.withdraw(u1, claim.id), "withdraw after approve is illegal")

    history = await service.get_history(u1, claim.id)
    _assert(
        [(d.seq, d.action) for d in history] == [(1, "request_info"), (2, "resubmit"), (3, "approve")],
        f"unexpected history: {[(d.seq, d.action) for d in history]}",
    )
    _assert(history[0].reason == "Please add a selfie", "request_info message must be kept")
    _assert(history[2].actor_id == "A1" and history[2].actor_role == "admin", "decision must record the actor")

    trail = await service.get_audit_trail(ADMIN, claim.id)
    _assert(
        [row["action"] for row in trail]
        == ["claim_submitted", "claim_request_info", "claim_resubmit", "claim_approve"],
        f"unexpected audit trail: {[row['action'] for row in trail]}",
    )

    # Withdraw.
    second = await service.submit(u2, "E2", "establishment_ownership", Evidence(document_ref="doc-1"))
    await _expect(Unauthorized, service.withdraw(outsider, second.id), "only the claimant can withdraw")
    withdrawn = await service.withdraw(u2, second.id)
    _assert(withdrawn.state == "withdrawn", f"expected withdrawn, got {withdrawn.state}")
    _assert((await service.get_resource("E2")).active_claim_id is None, "withdraw must release the lock")
    _assert(emitter.of_type("claim_withdrawn")[0].recipient_id == ADMIN_RECIPIENT, "reviewer must be told")
    await _expect(InvalidTransition, service.withdraw(u2, second.id), "second withdraw must be illegal")

    # Owner-controlled profile: the owner reviews, admins do not.
    worker = Actor(id="W1", role="user")
    self_claim = await service.submit(worker, "P1", "employee_self_claim", Evidence(selfie_ref="selfie-2"))
    _assert(self_claim.tier is None, "self-claims carry no tier")
    _assert(emitter.of_type("claim_submitted")[-1].recipient_id == "O1", "owner must get the self-claim")
    owner_queue = await service.list_review_queue(OWNER)
    _assert([item.id for item in owner_queue] == [self_claim.id], "owner queue must hold the self-claim")
    admin_queue = await service.list_review_queue(ADMIN)
    _assert(self_claim.id not in [item.id for item in admin_queue], "owner-controlled claims skip the admins")
    await _expect(Unauthorized, service.approve(ADMIN, self_claim.id), "admin cannot review owner's profile claim")
    approved_profile = await service.approve(OWNER, self_claim.id)
    _assert(approved_profile.state == "approved", "owner approval must succeed")
    profile = await service.get_resource("P1")
    _assert(profile.self_managed_by == "W1", "worker must self-manage the profile")
    _assert(profile.controller_id == "O1", "owner keeps the management link")

    # An admin who also owns a venue pages through one combined queue.
    document = Evidence(document_ref="doc-1")
    house_a = await service.submit(Actor(id="U3", role="user"), "E3", "establishment_ownership", document)
    selfie = Evidence(selfie_ref="selfie-1")
    own = await service.submit(Actor(id="W7", role="user"), "P7", "employee_self_claim", selfie)
    house_b = await service.submit(Actor(id="U4", role="user"), "E4", "establishment_ownership", document)
    full = [item.id for item in await service.list_review_queue(ADMIN)]
    _assert(full == [house_a.id, own.id, house_b.id], f"admin queue must merge house and own claims: {full}")
    first = [item.id for item in await service.list_review_queue(ADMIN, limit=2)]
    rest = [item.id for item in await service.list_review_queue(ADMIN, limit=2, offset=2)]
    _assert(first == full[:2] and rest == full[2:], f"queue pages must not overlap: {first} + {rest}")
    _assert([item.id for item in await service.list_review_queue(OWNER)] == [], "owner queue is empty again")

    # Decision rows are append-only at the storage level.
    conn = sqlite3.connect(db_path)
    try:
        for statement in (
            "UPDATE claim_decisions SET reason = 'edited' WHERE claim_id = ?",
            "DELETE FROM claim_decisions WHERE claim_id = ?",
        ):
            try:
                conn.execute(statement, (claim.id,))
            except sqlite3.DatabaseError:
                pass
            else:
                raise AssertionError(f"append-only trigger did not fire for: {statement}")
    finally:
        conn.close()


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="claims-smoke-decisions-"))
    try:
        asyncio.run(_run_checks(str(tmpdir / "claims.db")))
        print("OK: claim decision flow smoke passed.")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


if __name__ == "__main__":
    main()
