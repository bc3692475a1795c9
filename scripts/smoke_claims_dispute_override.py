#!/usr/bin/env python3
"""
Claim dispute and admin override smoke-check.

What it validates:
- claimant disputes a rejection; only an admin acts on the disputed claim
- override_approve projects the claim, override_reject reverts a projection
- a claim is disputed once; claimants cannot dispute their own approval
- disputing re-arms the claim lock and fails when another claim holds it

Run:
  python3 scripts/smoke_claims_dispute_override.py
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
    DuplicateActiveClaim,
    InvalidTransition,
    ReasonRequired,
    ResourceAlreadyClaimed,
    Unauthorized,
    ValidationError,
)
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
    evidence_store = InMemoryEvidenceStore({"doc-1": "document", "selfie-1": "selfie"})
    emitter = MemoryNotificationEmitter()
    service = ClaimService(repository, evidence_store, emitter)
    for resource_id in ("E5", "E6", "E7", "E8"):
        await sync_resource(repository, resource_id, "establishment")

    # Dispute a rejection, then the admin overrides it.
    u2 = Actor(id="U2", role="user")
    c2 = await service.submit(u2, "E5", "establishment_ownership", Evidence(document_ref="doc-1"))
    await service.reject(ADMIN, c2.id, "Insufficient proof")
    await _expect(ReasonRequired, service.dispute(u2, c2.id, " "), "dispute needs a reason")

    disputed = await service.dispute(u2, c2.id, "I can prove it with a lease")
    _assert(disputed.state == "disputed", f"expected disputed, got {disputed.state}")
    _assert(disputed.disputed_from == "rejected", "dispute must record the source state")
    _assert(disputed.contested_controller_id is None, "an unowned venue has no contested controller")
    _assert((await service.get_resource("E5")).active_claim_id == c2.id, "dispute must re-arm the lock")
    disputed_events = emitter.of_type("claim_disputed")
    _assert(
        [event.recipient_id for event in disputed_events] == [ADMIN_RECIPIENT],
        "claimant-raised dispute goes to the admins only",
    )

    await _expect(InvalidTransition, service.approve(OWNER, c2.id), "reviewer actions are illegal while disputed")
    await _expect(InvalidTransition, service.approve(ADMIN, c2.id), "plain approve is illegal while disputed")
    await _expect(
        Unauthorized,
        service.resolve_dispute(OWNER, c2.id, "override_approve"),
        "only admins resolve disputes",
    )
    await _expect(
        ValidationError,
        service.resolve_dispute(ADMIN, c2.id, "approve"),
        "unknown outcome must be rejected",
    )
    open_disputes = await service.disputes.list_open_disputes(ADMIN)
    _assert([claim.id for claim in open_disputes] == [c2.id], "dispute must be listed as open")
    await _expect(Unauthorized, service.disputes.list_open_disputes(OWNER), "dispute list is admin-only")

    overridden = await service.resolve_dispute(ADMIN, c2.id, "override_approve")
    _assert(overridden.state == "approved", f"expected approved, got {overridden.state}")
    resource = await service.get_resource("E5")
    _assert(resource.controller_id == "U2", "override_approve must project the claimant")
    _assert(resource.active_claim_id is None, "override must release the lock")
    _assert(
        [event.recipient_id for event in emitter.of_type("claim_override")] == ["U2"],
        "override must notify the claimant",
    )
    await _expect(
        InvalidTransition,
        service.dispute(Actor(id="U8", role="user"), c2.id, "Second try"),
        "a claim can be disputed only once",
    )
    _assert(not await service.disputes.list_open_disputes(ADMIN), "no open disputes after override")

    # Third-party dispute of an approval, reverted by override_reject.
    u3 = Actor(id="U3", role="user")
    u4 = Actor(id="U4", role="user")
    c3 = await service.submit(u3, "E6", "establishment_ownership", Evidence(document_ref="doc-1"))
    await service.approve(ADMIN, c3.id)
    await _expect(Unauthorized, service.dispute(u3, c3.id, "Changed my mind"), "claimant cannot dispute own approval")
    emitter.clear()
    contested = await service.dispute(u4, c3.id, "I am the real owner")
    _assert(contested.disputed_from == "approved", "dispute must record approved source")
    _assert(contested.contested_controller_id == "U3", "dispute must record the contested controller")
    _assert(
        sorted(event.recipient_id for event in emitter.of_type("claim_disputed")) == sorted([ADMIN_RECIPIENT, "U3"]),
        "third-party dispute must notify admins and the claimant",
    )
    _assert((await service.get_resource("E6")).controller_id == "U3", "projection holds until resolved")
    await _expect(
        ResourceAlreadyClaimed,
        service.submit(u4, "E6", "establishment_ownership", Evidence(selfie_ref="selfie-1")),
        "disputer cannot open a new claim on a controlled resource",
    )
    await _expect(
        ReasonRequired,
        service.resolve_dispute(ADMIN, c3.id, "override_reject"),
        "override_reject needs a reason",
    )
    reverted = await service.resolve_dispute(ADMIN, c3.id, "override_reject", "Lease belongs to U4")
    _assert(reverted.state == "rejected", f"expected rejected, got {reverted.state}")
    resource = await service.get_resource("E6")
    _assert(resource.controller_id is None, "override_reject must restore the previous controller")
    _assert(resource.applied_claim_id is None, "override_reject must clear the applied claim")
    _assert(resource.active_claim_id is None, "override_reject must release the lock")
    _assert(
        sorted(event.recipient_id for event in emitter.of_type("claim_override")) == ["U3", "U4"],
        "override must notify the claimant and the disputer",
    )
    _assert(
        [d.action for d in reverted.history] == ["approve", "dispute", "override_reject"],
        f"unexpected history: {[d.action for d in reverted.history]}",
    )

    # Dispute cannot steal the lock from another active claim.
    u5 = Actor(id="U5", role="user")
    u6 = Actor(id="U6", role="user")
    c5 = await service.submit(u5, "E7", "establishment_ownership", Evidence(document_ref="doc-1"))
    await service.reject(ADMIN, c5.id, "Wrong venue")
    c6 = await service.submit(u6, "E7", "establishment_ownership", Evidence(selfie_ref="selfie-1"))
    await _expect(
        DuplicateActiveClaim,
        service.dispute(u5, c5.id, "That was my venue"),
        "dispute must fail while another claim holds the lock",
    )
    unchanged = await service.get_claim(ADMIN, c5.id)
    _assert(unchanged.state == "rejected", "failed dispute must roll back")
    _assert([d.action for d in unchanged.history] == ["reject"], "failed dispute must not write history")
    _assert((await service.get_resource("E7")).active_claim_id == c6.id, "lock must stay with the new claim")

    # A rejected claim disputed after someone else took the venue cannot displace them.
    u7 = Actor(id="U7", role="user")
    u9 = Actor(id="U9", role="user")
    c7 = await service.submit(u7, "E8", "establishment_ownership", Evidence(document_ref="doc-1"))
    await service.reject(ADMIN, c7.id, "No lease on file")
    c9 = await service.submit(u9, "E8", "establishment_ownership", Evidence(selfie_ref="selfie-1"))
    await service.approve(ADMIN, c9.id)
    late = await service.dispute(u7, c7.id, "The lease was signed before U9 arrived")
    _assert(
        late.contested_controller_id == "U9",
        f"dispute must name the current holder, got {late.contested_controller_id}",
    )
    _assert(
        (await service.get_claim(u9, c7.id)).id == c7.id,
        "the contested controller must be able to read the dispute",
    )
    await _expect(
        ResourceAlreadyClaimed,
        service.resolve_dispute(ADMIN, c7.id, "override_approve"),
        "override_approve must not silently move an owned venue",
    )
    still = await service.get_claim(ADMIN, c7.id)
    _assert(still.state == "disputed", "failed override must leave the dispute open")
    venue = await service.get_resource("E8")
    _assert(venue.controller_id == "U9" and venue.applied_claim_id == c9.id, "U9 must keep the venue")
    closed = await service.resolve_dispute(ADMIN, c7.id, "override_reject", "Dispute the approval of U9 instead")
    _assert(closed.state == "rejected", f"expected rejected, got {closed.state}")
    venue = await service.get_resource("E8")
    _assert(venue.controller_id == "U9", "override_reject of a rejected claim must not revert anything")
    _assert(venue.active_claim_id is None, "closing the dispute must release the lock")
    _assert((await service.get_claim(ADMIN, c9.id)).state == "approved", "U9 approval stands")


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="claims-smoke-disputes-"))
    try:
        asyncio.run(_run_checks(str(tmpdir / "claims.db")))
        print("OK: claim dispute and override smoke passed.")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


if __name__ == "__main__":
    main()
