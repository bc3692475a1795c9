#!/usr/bin/env python3
"""
Cash VIP payment verification smoke-check.

What it validates:
- owner records a cash payment at the listed price; one pending per venue
- admin verification activates VIP for exactly the paid duration
- a second verified payment extends from the current expiry
- rejection needs a reason; decided payments only accept notes
- pricing / currency / ownership validation
- the owner cancels a running VIP subscription once

Run:
  python3 scripts/smoke_claims_cash_verification.py
"""

from __future__ import annotations

import asyncio
import shutil
import sys
import tempfile
from datetime import timedelta
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
    NotFound,
    ReasonRequired,
    Unauthorized,
    ValidationError,
)
from claims.models import Actor  # noqa: E402
from claims.notifications import ADMIN_RECIPIENT, MemoryNotificationEmitter  # noqa: E402
from claims.payments import CashVerificationLedger, available_durations, price_for  # noqa: E402
from claims.repository import ClaimRepository  # noqa: E402
from database import init_db, parse_iso_utc  # noqa: E402


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
    emitter = MemoryNotificationEmitter()
    ledger = CashVerificationLedger(repository, emitter, currency="THB")

    await sync_resource(repository, "E123", "establishment", controller_id="O1")
    await sync_resource(repository, "E124", "establishment", controller_id="O1")
    await sync_resource(repository, "P1", "employee_profile", controller_id="O1", owning_establishment_id="E123")

    _assert(available_durations() == [7, 30, 90, 365], f"unexpected durations: {available_durations()}")
    _assert(
        [price_for(days).price for days in (7, 30, 90, 365)] == [3000, 10800, 25200, 54750],
        "VIP price list mismatch",
    )

    # Validation.
    await _expect(ValidationError, ledger.record_cash_payment(OWNER, "E123", 14, 3000), "14 days is not sold")
    await _expect(ValidationError, ledger.record_cash_payment(OWNER, "E123", 30, 9999), "amount must match price")
    await _expect(
        ValidationError,
        ledger.record_cash_payment(OWNER, "E123", 30, 10800, "USD"),
        "only THB is accepted",
    )
    await _expect(
        Unauthorized,
        ledger.record_cash_payment(Actor(id="U9", role="user"), "E123", 30, 10800),
        "only the controller records payments",
    )
    await _expect(NotFound, ledger.record_cash_payment(OWNER, "E404", 30, 10800), "unknown venue")
    await _expect(ValidationError, ledger.record_cash_payment(OWNER, "P1", 30, 10800), "profiles have no venue VIP")

    # 30-day cash payment verified in person.
    t1 = await ledger.record_cash_payment(OWNER, "E123", 30, 10800, "thb")
    _assert(t1.state == "pending" and t1.currency == "THB", "payment must be pending in THB")
    _assert(
        [(event.type, event.recipient_id) for event in emitter.events] == [("payment_submitted", ADMIN_RECIPIENT)],
        "admins must be told about the payment",
    )
    await _expect(
        DuplicateActiveClaim,
        ledger.record_cash_payment(OWNER, "E123", 7, 3000),
        "one pending payment per establishment",
    )
    await _expect(Unauthorized, ledger.verify(t1.id, OWNER), "owners cannot verify their own payment")
    await _expect(Unauthorized, ledger.list_pending(OWNER), "pending list is admin-only")
    _assert([item.id for item in await ledger.list_pending(ADMIN)] == [t1.id], "payment must be listed")

    verified = await ledger.verify(t1.id, ADMIN, "Cash confirmed in person")
    _assert(verified.state == "verified", f"expected verified, got {verified.state}")
    _assert(verified.admin_notes == "Cash confirmed in person", "notes must be stored")
    _assert(verified.decided_by == "A1", "verifier must be recorded")
    decided_at = parse_iso_utc(verified.decided_at)
    expires_at = parse_iso_utc(verified.vip_expires_at)
    _assert(decided_at is not None and expires_at is not None, "verification timestamps must be set")
    _assert(expires_at - decided_at == timedelta(days=30), f"VIP must last 30 days, got {expires_at - decided_at}")
    subscription = await ledger.get_vip_subscription("E123")
    _assert(subscription is not None and subscription.expires_at == verified.vip_expires_at, "VIP must be active")
    _assert(subscription.last_transaction_id == t1.id, "subscription must point at the payment")
    verified_events = emitter.of_type("payment_verified")
    _assert(
        len(verified_events) == 1
        and verified_events[0].recipient_id == "O1"
        and verified_events[0].reason_or_notes == "Cash confirmed in person",
        "owner must be told with the admin notes",
    )

    await _expect(InvalidTransition, ledger.verify(t1.id, ADMIN), "verify is not repeatable")
    await _expect(InvalidTransition, ledger.reject(t1.id, ADMIN, "Changed mind"), "verified payment is final")
    noted = await ledger.add_note(t1.id, ADMIN, "Receipt filed")
    _assert(noted.state == "verified", "notes do not change the state")
    _assert(noted.admin_notes == "Cash confirmed in person\nReceipt filed", "notes must be appended")
    await _expect(ValidationError, ledger.add_note(t1.id, ADMIN, "  "), "empty note must be rejected")
    _assert((await ledger.get(OWNER, t1.id)).id == t1.id, "payer can read the payment")
    await _expect(Unauthorized, ledger.get(Actor(id="U9", role="user"), t1.id), "outsiders cannot read it")

    # Extension stacks on the running subscription.
    t2 = await ledger.record_cash_payment(OWNER, "E123", 7, 3000)
    extended = await ledger.verify(t2.id, ADMIN)
    _assert(extended.admin_notes is None, "notes are optional")
    new_expiry = parse_iso_utc(extended.vip_expires_at)
    _assert(new_expiry - expires_at == timedelta(days=7), f"extension must add 7 days, got {new_expiry - expires_at}")
    renewed = await ledger.get_vip_subscription("E123")
    _assert(renewed.starts_at == subscription.starts_at, "extension keeps the original start")

    # Rejection.
    t3 = await ledger.record_cash_payment(OWNER, "E124", 90, 25200)
    await _expect(ReasonRequired, ledger.reject(t3.id, ADMIN, ""), "reject needs a reason")
    rejected = await ledger.reject(t3.id, ADMIN, "Amount not received")
    _assert(rejected.state == "rejected", f"expected rejected, got {rejected.state}")
    _assert(rejected.vip_expires_at is None, "rejected payments grant nothing")
    _assert(await ledger.get_vip_subscription("E124") is None, "no VIP after rejection")
    rejected_events = emitter.of_type("payment_rejected")
    _assert(
        rejected_events[-1].recipient_id == "O1" and rejected_events[-1].reason_or_notes == "Amount not received",
        "owner must get the rejection reason",
    )
    _assert(not await ledger.list_pending(ADMIN), "nothing left pending")
    history = await ledger.list_for_establishment(OWNER, "E123")
    _assert([item.id for item in history] == [t1.id, t2.id], "venue payment history mismatch")

    # A rejected payment frees the slot for a new one.
    t4 = await ledger.record_cash_payment(OWNER, "E124", 90, 25200)
    _assert(t4.state == "pending", "new payment allowed after rejection")

    # Owner cancels the running VIP; a later payment starts a fresh subscription.
    await _expect(
        Unauthorized,
        ledger.cancel_vip_subscription(Actor(id="U9", role="user"), "E123"),
        "only the owner cancels VIP",
    )
    await _expect(Unauthorized, ledger.cancel_vip_subscription(ADMIN, "E123"), "admins do not cancel for owners")
    await _expect(NotFound, ledger.cancel_vip_subscription(OWNER, "E124"), "nothing to cancel without VIP")
    cancelled = await ledger.cancel_vip_subscription(OWNER, "E123")
    _assert(cancelled.status == "cancelled", f"expected cancelled, got {cancelled.status}")
    _assert(cancelled.cancelled_by == "O1" and cancelled.cancelled_at is not None, "cancellation must be recorded")
    _assert(cancelled.expires_at == extended.vip_expires_at, "cancellation keeps the paid-until date on record")
    cancel_events = emitter.of_type("vip_cancelled")
    _assert(
        [(event.recipient_id, event.transaction_id) for event in cancel_events] == [("O1", t2.id)],
        f"owner must be told about the cancellation: {cancel_events}",
    )
    await _expect(
        InvalidTransition,
        ledger.cancel_vip_subscription(OWNER, "E123"),
        "already cancelled subscription cannot be cancelled again",
    )
    t5 = await ledger.record_cash_payment(OWNER, "E123", 7, 3000)
    fresh = await ledger.verify(t5.id, ADMIN)
    fresh_start = parse_iso_utc(fresh.decided_at)
    _assert(
        parse_iso_utc(fresh.vip_expires_at) - fresh_start == timedelta(days=7),
        "after cancellation VIP restarts from the verification time",
    )
    restarted = await ledger.get_vip_subscription("E123")
    _assert(restarted.status == "active" and restarted.cancelled_at is None, "new payment reactivates VIP")
    _assert(restarted.starts_at == fresh.decided_at, "restarted VIP starts at the verification time")


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="claims-smoke-cash-"))
    try:
        asyncio.run(_run_checks(str(tmpdir / "claims.db")))
        print("OK: cash VIP verification smoke passed.")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


if __name__ == "__main__":
    main()
