#!/usr/bin/env python3
"""
Claim concurrency smoke-check (real SQLite file, parallel connections).

What it validates:
- concurrent submits on one resource: exactly one wins, others DuplicateActiveClaim
- concurrent approve/reject on one claim: exactly one terminal decision
- a failing notification emitter never rolls back a committed change
- lock-contention retry helper retries only `database is locked`

Run:
  python3 scripts/smoke_claims_concurrency.py
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
from claims.errors import DuplicateActiveClaim, InvalidTransition, ValidationError  # noqa: E402
from claims.evidence import InMemoryEvidenceStore  # noqa: E402
from claims.models import Actor, Evidence  # noqa: E402
from claims.notifications import MemoryNotificationEmitter, NotificationEvent  # noqa: E402
from claims.repository import ClaimRepository  # noqa: E402
from claims.service import ClaimService  # noqa: E402
from database import init_db, with_sqlite_retry  # noqa: E402


ADMIN = Actor(id="A1", role="admin")
CLAIMANTS = 8
RESOURCES = 5


class _BrokenEmitter:
    def __init__(self) -> None:
        self.attempts = 0

    async def emit(self, event: NotificationEvent) -> None:
        self.attempts += 1
        raise RuntimeError(f"delivery down for {event.type}")


def _assert(cond: bool, message: str) -> None:
    if not cond:
        raise AssertionError(message)


async def _check_submit_race(service: ClaimService) -> None:
    results = await asyncio.gather(
        *[
            service.submit(
                Actor(id=f"U{idx}", role="user"),
                "E1",
                "establishment_ownership",
                Evidence(document_ref="doc-1"),
            )
            for idx in range(CLAIMANTS)
        ],
        return_exceptions=True,
    )
    winners = [item for item in results if not isinstance(item, BaseException)]
    losers = [item for item in results if isinstance(item, DuplicateActiveClaim)]
    unexpected = [item for item in results if isinstance(item, BaseException) and item not in losers]
    _assert(not unexpected, f"unexpected submit errors: {unexpected!r}")
    _assert(len(winners) == 1, f"exactly one submit must win, got {len(winners)}")
    _assert(len(losers) == CLAIMANTS - 1, f"losers must get DuplicateActiveClaim, got {len(losers)}")
    resource = await service.get_resource("E1")
    _assert(resource.active_claim_id == winners[0].id, "lock must point at the winning claim")


async def _check_decision_race(service: ClaimService) -> list[int]:
    claim_ids: list[int] = []
    for idx in range(2, RESOURCES + 2):
        claim = await service.submit(
            Actor(id=f"R{idx}", role="user"),
            f"E{idx}",
            "establishment_ownership",
            Evidence(document_ref="doc-1"),
        )
        claim_ids.append(claim.id)

    for claim_id in claim_ids:
        results = await asyncio.gather(
            service.approve(ADMIN, claim_id),
            service.reject(ADMIN, claim_id, "Duplicate moderator click"),
            service.approve(ADMIN, claim_id),
            return_exceptions=True,
        )
        done = [item for item in results if not isinstance(item, BaseException)]
        illegal = [item for item in results if isinstance(item, InvalidTransition)]
        _assert(len(done) == 1, f"claim {claim_id}: exactly one decision must win, got {results!r}")
        _assert(len(illegal) == 2, f"claim {claim_id}: losers must get InvalidTransition, got {results!r}")
    return claim_ids


def _check_storage_invariants(db_path: str, claim_ids: list[int]) -> None:
    conn = sqlite3.connect(db_path)
    try:
        doubled_active = conn.execute(
            """
            SELECT COUNT(*) FROM (
                SELECT resource_id
                  FROM claims
                 WHERE state IN ('pending', 'info_requested', 'disputed')
                 GROUP BY resource_id
                HAVING COUNT(*) > 1
            )
            """
        ).fetchone()[0]
        _assert(doubled_active == 0, f"resources with several active claims: {doubled_active}")
        for claim_id in claim_ids:
            terminal = conn.execute(
                "SELECT COUNT(*) FROM claim_decisions WHERE claim_id = ? AND action IN ('approve', 'reject')",
                (claim_id,),
            ).fetchone()[0]
            _assert(terminal == 1, f"claim {claim_id} has {terminal} terminal decisions")
        stale_locks = conn.execute(
            """
            SELECT COUNT(*)
              FROM active_claims a
              JOIN claims c ON c.id = a.claim_id
             WHERE c.state NOT IN ('pending', 'info_requested', 'disputed')
            """
        ).fetchone()[0]
        _assert(stale_locks == 0, f"locks held by decided claims: {stale_locks}")
        integrity = conn.execute("PRAGMA integrity_check").fetchone()
        _assert(integrity and integrity[0] == "ok", f"integrity_check failed: {integrity}")
    finally:
        conn.close()


async def _check_broken_emitter(repository: ClaimRepository, evidence_store: InMemoryEvidenceStore) -> None:
    emitter = _BrokenEmitter()
    service = ClaimService(repository, evidence_store, emitter)
    claim = await service.submit(
        Actor(id="Z1", role="user"), "E100", "establishment_ownership", Evidence(document_ref="doc-1")
    )
    approved = await service.approve(ADMIN, claim.id)
    _assert(approved.state == "approved", "approval must commit despite emitter failure")
    _assert(emitter.attempts == 2, f"each event must be attempted once, got {emitter.attempts}")
    _assert((await service.get_resource("E100")).controller_id == "Z1", "projection must be committed")


async def _check_retry_helper(db_path: str) -> None:
    calls = {"locked": 0, "broken": 0, "business": 0}

    async def _locked_twice() -> str:
        calls["locked"] += 1
        if calls["locked"] < 3:
            raise sqlite3.OperationalError("database is locked")
        return "done"

    result = await with_sqlite_retry(_locked_twice, where="smoke.locked", retries=3, base_delay=0.001, db_path=db_path)
    _assert(result == "done" and calls["locked"] == 3, f"locked unit must be retried, calls={calls['locked']}")

    async def _broken() -> None:
        calls["broken"] += 1
        raise sqlite3.OperationalError("no such table: nope")

    try:
        await with_sqlite_retry(_broken, where="smoke.broken", retries=3, base_delay=0.001, db_path=db_path)
    except sqlite3.OperationalError:
        pass
    else:
        raise AssertionError("non-lock OperationalError must propagate")
    _assert(calls["broken"] == 1, "non-lock errors must not be retried")

    async def _business() -> None:
        calls["business"] += 1
        raise ValidationError("bad input")

    try:
        await with_sqlite_retry(_business, where="smoke.business", retries=3, base_delay=0.001, db_path=db_path)
    except ValidationError:
        pass
    else:
        raise AssertionError("business errors must propagate")
    _assert(calls["business"] == 1, "business errors must not be retried")

    async def _always_locked() -> None:
        raise sqlite3.OperationalError("database is locked")

    try:
        await with_sqlite_retry(_always_locked, where="smoke.exhausted", retries=1, base_delay=0.001, db_path=db_path)
    except sqlite3.OperationalError:
        pass
    else:
        raise AssertionError("exhausted retries must re-raise")


async def _run_checks(db_path: str) -> None:
    await init_db(db_path)
    repository = ClaimRepository(db_path)
    evidence_store = InMemoryEvidenceStore({"doc-1": "document"})
    service = ClaimService(repository, evidence_store, MemoryNotificationEmitter())
    for idx in range(1, RESOURCES + 2):
        await sync_resource(repository, f"E{idx}", "establishment")
    await sync_resource(repository, "E100", "establishment")

    await _check_submit_race(service)
    claim_ids = await _check_decision_race(service)
    _check_storage_invariants(db_path, claim_ids)
    await _check_broken_emitter(repository, evidence_store)
    await _check_retry_helper(db_path)


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="claims-smoke-concurrency-"))
    try:
        asyncio.run(_run_checks(str(tmpdir / "claims.db")))
        print(f"OK: claim concurrency smoke passed (claimants={CLAIMANTS}, resources={RESOURCES}).")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


if __name__ == "__main__":
    main()
