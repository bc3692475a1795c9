#!/usr/bin/env python3
"""
Operator CLI smoke-check.

What it validates:
- init-db / sync-resource / evidence commands prepare a fresh database
- ADMIN_IDS operators act as admins; queue/show/decide work end to end
- business errors map to exit code 1 with the error code on stderr
- --role can only narrow the ADMIN_IDS role
- init-db reports the database resolved from CLAIMS_DB_PATH
- cash payment commands verify a pending payment
- the owner cancels VIP through vip-cancel

Run:
  python3 scripts/smoke_claims_admin_cli.py
"""

from __future__ import annotations

import asyncio
import contextlib
import io
import os
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

import claims_admin  # noqa: E402
from claims.errors import Unauthorized  # noqa: E402
from claims.models import Actor, Evidence  # noqa: E402
from claims.notifications import MemoryNotificationEmitter  # noqa: E402
from claims.payments import CashVerificationLedger  # noqa: E402
from claims.repository import ClaimRepository  # noqa: E402
from claims.service import ClaimService  # noqa: E402
from config import CFG  # noqa: E402


def _assert(cond: bool, message: str) -> None:
    if not cond:
        raise AssertionError(message)


def _run_cli(*argv: str) -> tuple[int, str, str]:
    stdout, stderr = io.StringIO(), io.StringIO()
    with contextlib.redirect_stdout(stdout), contextlib.redirect_stderr(stderr):
        code = claims_admin.main(list(argv))
    return code, stdout.getvalue(), stderr.getvalue()


async def _submit_claim(db_path: str) -> int:
    service = ClaimService(ClaimRepository(db_path), emitter=MemoryNotificationEmitter())
    claim = await service.submit(
        Actor(id="U1", role="user"), "E123", "establishment_ownership", Evidence(document_ref="doc-1")
    )
    return claim.id


async def _record_payment(db_path: str) -> int:
    ledger = CashVerificationLedger(ClaimRepository(db_path), MemoryNotificationEmitter(), currency="THB")
    payment = await ledger.record_cash_payment(Actor(id="O1", role="owner"), "E200", 30, 10800)
    return payment.id


def _run_checks(db_path: str) -> None:
    _assert(claims_admin.resolve_operator("A1").role == "admin", "ADMIN_IDS operator must be admin")
    _assert(claims_admin.resolve_operator("U5").role == "owner", "other operators default to owner")
    _assert(claims_admin.resolve_operator("U5", "user").role == "user", "--role may narrow the role")
    _assert(claims_admin.resolve_operator("A1", "owner").role == "owner", "admins may act with less")
    try:
        claims_admin.resolve_operator("U5", "admin")
    except Unauthorized:
        pass
    else:
        raise AssertionError("--role admin must require ADMIN_IDS")

    env_db = str(Path(db_path).with_name("from-env.db"))
    saved_env = os.environ.get("CLAIMS_DB_PATH")
    os.environ["CLAIMS_DB_PATH"] = env_db
    try:
        code, out, _ = _run_cli("init-db")
    finally:
        if saved_env is None:
            os.environ.pop("CLAIMS_DB_PATH", None)
        else:
            os.environ["CLAIMS_DB_PATH"] = saved_env
    _assert(code == 0 and env_db in out, f"init-db must report the database it created: {out}")
    _assert(Path(env_db).exists(), "init-db must create the CLAIMS_DB_PATH database")

    code, out, _ = _run_cli("--db", db_path, "init-db")
    _assert(code == 0 and db_path in out, f"init-db failed: {code} {out}")
    for argv in (
        ("sync-resource", "E123", "establishment"),
        ("sync-resource", "E200", "establishment", "--controller", "O1"),
        ("--as", "U1", "evidence", "doc-1", "document"),
    ):
        code, out, err = _run_cli("--db", db_path, *argv)
        _assert(code == 0, f"{argv} failed: {err}")

    claim_id = asyncio.run(_submit_claim(db_path))

    code, out, _ = _run_cli("--db", db_path, "--as", "A1", "queue")
    _assert(code == 0 and f"#{claim_id}" in out, f"claim must be queued for the admin: {out}")

    code, _, err = _run_cli("--db", db_path, "--as", "A1", "decide", str(claim_id), "reject")
    _assert(code == 1 and "reason_required" in err, f"reject without reason must fail: {code} {err}")

    code, out, err = _run_cli(
        "--db", db_path, "--as", "A1", "decide", str(claim_id), "reject", "--reason", "Document is unreadable"
    )
    _assert(code == 0 and "rejected" in out, f"reject with reason failed: {err}")

    code, out, _ = _run_cli("--db", db_path, "--as", "A1", "show", str(claim_id))
    _assert(code == 0 and "Document is unreadable" in out, f"show must print the reason: {out}")

    code, _, err = _run_cli("--db", db_path, "--as", "U7", "show", str(claim_id))
    _assert(code == 1 and "unauthorized" in err, f"outsider show must fail: {err}")

    code, _, err = _run_cli("--db", db_path, "--as", "U7", "--role", "admin", "queue")
    _assert(code == 1 and "unauthorized" in err, f"--role admin must not bypass ADMIN_IDS: {code} {err}")

    transaction_id = asyncio.run(_record_payment(db_path))
    code, out, _ = _run_cli("--db", db_path, "--as", "A1", "payments", "list")
    _assert(code == 0 and f"#{transaction_id}" in out, f"pending payment must be listed: {out}")
    code, out, err = _run_cli(
        "--db", db_path, "--as", "A1", "payments", "verify", str(transaction_id), "--notes", "Cash confirmed"
    )
    _assert(code == 0 and "verified" in out, f"verify failed: {err}")
    code, out, _ = _run_cli("--db", db_path, "vip", "E200")
    _assert(code == 0 and "expires_at" in out, f"vip status must be shown: {out}")
    code, out, err = _run_cli("--db", db_path, "--as", "O1", "vip-cancel", "E200")
    _assert(code == 0 and "cancelled" in out, f"owner cancel failed: {err}")
    code, _, err = _run_cli("--db", db_path, "--as", "O1", "vip-cancel", "E200")
    _assert(code == 1 and "invalid_transition" in err, f"second cancel must fail: {code} {err}")


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="claims-smoke-cli-"))
    saved_admin_ids = list(CFG.admin_ids)
    CFG.admin_ids[:] = ["A1"]
    try:
        _run_checks(str(tmpdir / "claims.db"))
        print("OK: claims admin CLI smoke passed.")
    finally:
        CFG.admin_ids[:] = saved_admin_ids
        shutil.rmtree(tmpdir, ignore_errors=True)


if __name__ == "__main__":
    main()
