#!/usr/bin/env python3
"""Operator CLI for the claims database.

Examples:
  python3 src/claims_admin.py init-db
  python3 src/claims_admin.py --as 42 sync-resource E123 establishment
  python3 src/claims_admin.py --as 42 evidence doc-1 document
  python3 src/claims_admin.py --as 42 queue
  python3 src/claims_admin.py --as 42 decide 7 reject --reason "Document unreadable"
  python3 src/claims_admin.py --as 42 payments verify 3 --notes "Cash confirmed in person"
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence
from dataclasses import asdict

from claims.catalog import sync_resource
from claims.errors import ClaimError, Unauthorized
from claims.evidence import SQLiteEvidenceRegistry
from claims.models import ACTOR_ROLES, ROLE_ADMIN, ROLE_OWNER, RESOURCE_KINDS, Actor, Claim, PaymentVerification
from claims.payments import CashVerificationLedger, available_durations
from claims.repository import ClaimRepository
from claims.service import ClaimService
from config import CFG, get_db_path
from database import init_db
from logging_setup import configure_logging


logger = logging.getLogger(__name__)


def resolve_operator(operator_id: str, role: str | None = None) -> Actor:
    """Operators listed in ADMIN_IDS act as admins; `role` may only narrow that."""
    clean_id = str(operator_id or "").strip()
    is_admin = clean_id in CFG.admin_ids
    if role == ROLE_ADMIN and not is_admin:
        raise Unauthorized(f"Operator {clean_id or '<anonymous>'} is not listed in ADMIN_IDS.")
    if role:
        return Actor(id=clean_id, role=role)
    return Actor(id=clean_id, role=ROLE_ADMIN if is_admin else ROLE_OWNER)


def _format_claim(claim: Claim) -> str:
    line = (
        f"#{claim.id:<5} {claim.state:<15} {claim.claim_type:<24} "
        f"{claim.resource_id:<12} by {claim.claimant_id} (submitted {claim.submitted_at})"
    )
    if claim.resubmission_count:
        repeated = ", same evidence" if claim.evidence_repeated else ""
        line += f" [re-claim #{claim.resubmission_count} of #{claim.previous_claim_id}{repeated}]"
    return line


def _format_payment(payment: PaymentVerification) -> str:
    return (
        f"#{payment.id:<5} {payment.state:<9} {payment.establishment_id:<12} "
        f"{payment.amount} {payment.currency} / {payment.duration_days}d by {payment.submitted_by}"
    )


async def cmd_init_db(args: argparse.Namespace) -> None:
    await init_db(args.db)
    print(f"Claims database ready: {args.db or get_db_path()}")


async def cmd_sync_resource(args: argparse.Namespace) -> None:
    resource = await sync_resource(
        ClaimRepository(args.db),
        args.resource_id,
        args.kind,
        controller_id=args.controller,
        owning_establishment_id=args.establishment,
    )
    print(f"Resource {resource.id} ({resource.kind}) controller={resource.controller_id or '-'}")


async def cmd_evidence(args: argparse.Namespace) -> None:
    await SQLiteEvidenceRegistry(args.db).register(args.ref, args.kind, uploaded_by=args.operator)
    print(f"Evidence {args.ref} registered as {args.kind}")


async def cmd_queue(args: argparse.Namespace) -> None:
    service = ClaimService(ClaimRepository(args.db))
    claims = await service.list_review_queue(args.actor)
    if not claims:
        print("Review queue is empty.")
        return
    for claim in claims:
        print(_format_claim(claim))


async def cmd_show(args: argparse.Namespace) -> None:
    service = ClaimService(ClaimRepository(args.db))
    claim = await service.get_claim(args.actor, args.claim_id)
    print(_format_claim(claim))
    for decision in claim.history:
        reason = f": {decision.reason}" if decision.reason else ""
        print(
            f"  {decision.seq}. {decision.created_at} {decision.actor_id} ({decision.actor_role}) "
            f"{decision.action} {decision.from_state} -> {decision.to_state}{reason}"
        )


async def cmd_decide(args: argparse.Namespace) -> None:
    service = ClaimService(ClaimRepository(args.db))
    claim = await service.decide(args.actor, args.claim_id, args.action, args.reason)
    print(_format_claim(claim))


async def cmd_dispute(args: argparse.Namespace) -> None:
    service = ClaimService(ClaimRepository(args.db))
    claim = await service.dispute(args.actor, args.claim_id, args.reason)
    print(_format_claim(claim))


async def cmd_resolve(args: argparse.Namespace) -> None:
    service = ClaimService(ClaimRepository(args.db))
    claim = await service.resolve_dispute(args.actor, args.claim_id, args.outcome, args.reason)
    print(_format_claim(claim))


async def cmd_disputes(args: argparse.Namespace) -> None:
    service = ClaimService(ClaimRepository(args.db))
    claims = await service.disputes.list_open_disputes(args.actor)
    if not claims:
        print("No open disputes.")
    for claim in claims:
        print(f"{_format_claim(claim)} (from {claim.disputed_from})")


async def cmd_payments_list(args: argparse.Namespace) -> None:
    payments = await CashVerificationLedger(ClaimRepository(args.db)).list_pending(args.actor)
    if not payments:
        print("No pending cash payments.")
    for payment in payments:
        print(_format_payment(payment))


async def cmd_payments_verify(args: argparse.Namespace) -> None:
    payment = await CashVerificationLedger(ClaimRepository(args.db)).verify(
        args.transaction_id, args.actor, args.notes
    )
    print(f"{_format_payment(payment)}; VIP until {payment.vip_expires_at}")


async def cmd_payments_reject(args: argparse.Namespace) -> None:
    payment = await CashVerificationLedger(ClaimRepository(args.db)).reject(
        args.transaction_id, args.actor, args.reason
    )
    print(_format_payment(payment))


async def cmd_payments_note(args: argparse.Namespace) -> None:
    payment = await CashVerificationLedger(ClaimRepository(args.db)).add_note(
        args.transaction_id, args.actor, args.note
    )
    print(f"{_format_payment(payment)}\n{payment.admin_notes}")


async def cmd_vip(args: argparse.Namespace) -> None:
    subscription = await CashVerificationLedger(ClaimRepository(args.db)).get_vip_subscription(args.establishment_id)
    if subscription is None:
        print(f"No VIP subscription for {args.establishment_id}.")
        return
    for key, value in asdict(subscription).items():
        print(f"{key}: {value}")


async def cmd_vip_cancel(args: argparse.Namespace) -> None:
    ledger = CashVerificationLedger(ClaimRepository(args.db))
    subscription = await ledger.cancel_vip_subscription(args.actor, args.establishment_id)
    print(f"VIP of {subscription.establishment_id} cancelled (was paid until {subscription.expires_at}).")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Claims & cash verification operator tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--db", default=None, help="SQLite path (default: CLAIMS_DB_PATH)")
    parser.add_argument("--as", dest="operator", default="", help="Operator id")
    parser.add_argument(
        "--role",
        default=None,
        choices=sorted(ACTOR_ROLES),
        help="Act with a narrower role; admin requires ADMIN_IDS",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    sub = subparsers.add_parser("init-db", help="Create claim tables")
    sub.set_defaults(func=cmd_init_db)

    sub = subparsers.add_parser("sync-resource", help="Mirror a catalog resource")
    sub.add_argument("resource_id")
    sub.add_argument("kind", choices=sorted(RESOURCE_KINDS))
    sub.add_argument("--controller", default=None)
    sub.add_argument("--establishment", default=None, help="Owning establishment for employee profiles")
    sub.set_defaults(func=cmd_sync_resource)

    sub = subparsers.add_parser("evidence", help="Register an uploaded evidence reference")
    sub.add_argument("ref")
    sub.add_argument("kind", choices=["selfie", "document", "phone_token"])
    sub.set_defaults(func=cmd_evidence)

    sub = subparsers.add_parser("queue", help="Claims awaiting the operator's review")
    sub.set_defaults(func=cmd_queue)

    sub = subparsers.add_parser("show", help="Claim details and decision history")
    sub.add_argument("claim_id", type=int)
    sub.set_defaults(func=cmd_show)

    sub = subparsers.add_parser("decide", help="approve / reject / request_info")
    sub.add_argument("claim_id", type=int)
    sub.add_argument("action", choices=["approve", "reject", "request_info"])
    sub.add_argument("--reason", default=None)
    sub.set_defaults(func=cmd_decide)

    sub = subparsers.add_parser("dispute", help="Escalate a claim to the admins")
    sub.add_argument("claim_id", type=int)
    sub.add_argument("--reason", required=True)
    sub.set_defaults(func=cmd_dispute)

    sub = subparsers.add_parser("resolve", help="Admin override of a disputed claim")
    sub.add_argument("claim_id", type=int)
    sub.add_argument("outcome", choices=["override_approve", "override_reject"])
    sub.add_argument("--reason", default=None)
    sub.set_defaults(func=cmd_resolve)

    sub = subparsers.add_parser("disputes", help="Open disputes")
    sub.set_defaults(func=cmd_disputes)

    payments = subparsers.add_parser("payments", help="Cash VIP payments")
    payment_commands = payments.add_subparsers(dest="payments_command", required=True)

    sub = payment_commands.add_parser("list", help="Pending cash payments")
    sub.set_defaults(func=cmd_payments_list)

    sub = payment_commands.add_parser("verify", help="Confirm a cash payment")
    sub.add_argument("transaction_id", type=int)
    sub.add_argument("--notes", default=None)
    sub.set_defaults(func=cmd_payments_verify)

    sub = payment_commands.add_parser("reject", help="Reject a cash payment")
    sub.add_argument("transaction_id", type=int)
    sub.add_argument("--reason", required=True)
    sub.set_defaults(func=cmd_payments_reject)

    sub = payment_commands.add_parser("note", help="Append an admin note")
    sub.add_argument("transaction_id", type=int)
    sub.add_argument("note")
    sub.set_defaults(func=cmd_payments_note)

    sub = subparsers.add_parser("vip", help=f"VIP status (durations: {available_durations()} days)")
    sub.add_argument("establishment_id")
    sub.set_defaults(func=cmd_vip)

    sub = subparsers.add_parser("vip-cancel", help="Owner cancels the running VIP subscription")
    sub.add_argument("establishment_id")
    sub.set_defaults(func=cmd_vip_cancel)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    configure_logging("claims_admin", file_logging=False)
    args = build_parser().parse_args(argv)
    try:
        args.actor = resolve_operator(args.operator, args.role)
        asyncio.run(args.func(args))
    except ClaimError as error:
        logger.info("claims_admin %s failed: %s", args.command, error.code)
        print(f"Error [{error.code}]: {error}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
