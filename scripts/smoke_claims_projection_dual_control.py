#!/usr/bin/env python3
"""
Permission projection and dual-control smoke-check.

What it validates:
- approved ownership claim makes the claimant controller and stores a snapshot
- applying the same claim twice is a no-op
- employee self-claim splits profile permissions between owner and employee
- profile notifications follow the self-manager
- self-claim guards (already self-managed, owner claiming own profile)

Run:
  python3 scripts/smoke_claims_projection_dual_control.py
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
    ReasonRequired,
    ResourceAlreadyClaimed,
)
from claims.evidence import InMemoryEvidenceStore  # noqa: E402
from claims.models import Actor, Evidence  # noqa: E402
from claims.notifications import MemoryNotificationEmitter  # noqa: E402
from claims.permissions import (  # noqa: E402
    EDIT_CORE_FIELDS,
    EDIT_EMPLOYEES,
    EDIT_INFO,
    EDIT_PROFILE_MEDIA,
    RECEIVE_PROFILE_NOTIFICATIONS,
    REMOVE_FROM_ESTABLISHMENT,
    VIEW_ANALYTICS,
    can_perform,
    profile_notification_recipient,
)
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
    evidence_store = InMemoryEvidenceStore({"doc-1": "document", "selfie-1": "selfie", "phone-1": "phone_token"})
    service = ClaimService(repository, evidence_store, MemoryNotificationEmitter())

    await sync_resource(repository, "E1", "establishment")
    await sync_resource(repository, "E9", "establishment", controller_id="O1")
    await sync_resource(repository, "P1", "employee_profile", controller_id="O1", owning_establishment_id="E9")
    await sync_resource(repository, "P2", "employee_profile", controller_id="O1", owning_establishment_id="E9")
    await sync_resource(repository, "P3", "employee_profile", controller_id="O1", owning_establishment_id="E9")

    # Establishment ownership.
    buyer = Actor(id="U1", role="user")
    claim = await service.submit(buyer, "E1", "establishment_ownership", Evidence(document_ref="doc-1"))
    _assert(not await service.check_permission(buyer, "E1", EDIT_INFO), "pending claim grants nothing")
    approved = await service.approve(ADMIN, claim.id)
    _assert(
        approved.prior_controller_snapshot
        == {"controller_id": None, "self_managed_by": None, "applied_claim_id": None},
        f"unexpected snapshot: {approved.prior_controller_snapshot}",
    )
    _assert(await service.check_permission(buyer, "E1", EDIT_INFO), "controller must edit info")
    _assert(await service.check_permission(buyer, "E1", VIEW_ANALYTICS), "controller must view analytics")
    _assert(not await service.check_permission(buyer, "E1", EDIT_EMPLOYEES), "edit_employees is off by default")
    _assert(not await service.check_permission(ADMIN, "E1", EDIT_INFO), "projection grants only the claimant")

    # Idempotence: projecting the applied claim again changes nothing.
    before = await service.get_resource("E1")
    async with repository.transaction() as db:
        stored = await repository.get_claim(db, claim.id)
        changed = await service.projector.apply(db, stored)
    _assert(changed is False, "second projection must report no-op")
    after = await service.get_resource("E1")
    _assert(before == after, f"resource changed on re-projection: {before} != {after}")
    reloaded = await service.get_claim(ADMIN, claim.id)
    _assert(reloaded.version == approved.version, "no-op projection must not bump the claim version")

    # Owner-managed profile before any self-claim.
    profile = await service.get_resource("P1")
    for action in (EDIT_PROFILE_MEDIA, REMOVE_FROM_ESTABLISHMENT, EDIT_CORE_FIELDS, RECEIVE_PROFILE_NOTIFICATIONS):
        _assert(can_perform(profile, "O1", action), f"owner must hold {action} before self-claim")
        _assert(not can_perform(profile, "W1", action), f"worker must not hold {action} before self-claim")
    _assert(profile_notification_recipient(profile) == "O1", "owner receives notifications before self-claim")

    await _expect(
        ClaimantAlreadyController,
        service.submit(OWNER, "P2", "employee_self_claim", Evidence(selfie_ref="selfie-1")),
        "owner cannot self-claim a profile it already controls",
    )

    worker = Actor(id="W1", role="user")
    self_claim = await service.submit(worker, "P1", "employee_self_claim", Evidence(phone_token="phone-1"))
    await _expect(ReasonRequired, service.reject(OWNER, self_claim.id, ""), "owner reject needs a reason")
    still_pending = await service.get_claim(OWNER, self_claim.id)
    _assert(still_pending.state == "pending", "failed reject leaves the claim pending")
    approved_self = await service.approve(OWNER, self_claim.id)
    _assert(approved_self.state == "approved", "owner approval of self-claim must succeed")
    _assert(
        approved_self.prior_controller_snapshot
        == {"controller_id": "O1", "self_managed_by": None, "applied_claim_id": None},
        f"unexpected self-claim snapshot: {approved_self.prior_controller_snapshot}",
    )

    profile = await service.get_resource("P1")
    _assert(profile.controller_id == "O1", "owner link must survive the self-claim")
    _assert(profile.self_managed_by == "W1", "worker must self-manage")
    matrix = {
        EDIT_PROFILE_MEDIA: (False, True),
        REMOVE_FROM_ESTABLISHMENT: (True, False),
        EDIT_CORE_FIELDS: (False, True),
        RECEIVE_PROFILE_NOTIFICATIONS: (False, True),
    }
    for action, (owner_allowed, worker_allowed) in matrix.items():
        _assert(can_perform(profile, "O1", action) is owner_allowed, f"owner permission mismatch for {action}")
        _assert(can_perform(profile, "W1", action) is worker_allowed, f"worker permission mismatch for {action}")
        _assert(not can_perform(profile, "U1", action), f"outsider must not hold {action}")
    _assert(profile_notification_recipient(profile) == "W1", "profile notifications go to the self-manager")

    await _expect(
        ClaimantAlreadyController,
        service.submit(worker, "P1", "employee_self_claim", Evidence(selfie_ref="selfie-1")),
        "self-manager cannot claim again",
    )
    await _expect(
        ResourceAlreadyClaimed,
        service.submit(Actor(id="W2", role="user"), "P1", "employee_self_claim", Evidence(selfie_ref="selfie-1")),
        "self-managed profile cannot be claimed by someone else",
    )

    # One worker, one linked profile.
    await _expect(
        ClaimantAlreadyController,
        service.submit(worker, "P2", "employee_self_claim", Evidence(selfie_ref="selfie-1")),
        "a self-managing worker cannot link a second profile",
    )
    w2 = Actor(id="W2", role="user")
    open_claim = await service.submit(w2, "P2", "employee_self_claim", Evidence(selfie_ref="selfie-1"))
    await _expect(
        DuplicateActiveClaim,
        service.submit(w2, "P3", "employee_self_claim", Evidence(phone_token="phone-1")),
        "one open self-claim per worker",
    )
    await service.withdraw(w2, open_claim.id)
    moved = await service.submit(w2, "P3", "employee_self_claim", Evidence(phone_token="phone-1"))
    _assert(moved.state == "pending", "withdrawing frees the worker for another profile")
    await service.approve(OWNER, moved.id)
    linked = [(await service.get_resource(pid)).self_managed_by for pid in ("P1", "P2", "P3")]
    _assert(linked == ["W1", None, "W2"], f"each worker must manage one profile, got {linked}")


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="claims-smoke-projection-"))
    try:
        asyncio.run(_run_checks(str(tmpdir / "claims.db")))
        print("OK: claim projection and dual-control smoke passed.")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


if __name__ == "__main__":
    main()
