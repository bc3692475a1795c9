"""Persistence helpers for the claim core.

Every method takes an open connection so a whole use-case (claim row, decision
row, claim lock, resource projection, audit row) commits or rolls back as one
`write_transaction`.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Sequence
from contextlib import AbstractAsyncContextManager
from typing import Any

import aiosqlite

from claims.errors import ConflictError, DuplicateActiveClaim, InvalidTransition
from claims.models import (
    ACTIVE_STATES,
    VIP_ACTIVE,
    VIP_CANCELLED,
    Actor,
    Claim,
    ClaimableResource,
    Decision,
    Evidence,
    PaymentVerification,
    VipSubscription,
)
from database import open_db, utc_now_iso, write_transaction

CLAIM_COLUMNS = """
    c.id, c.resource_id, c.resource_kind, c.claimant_id, c.claim_type, c.tier,
    c.selfie_ref, c.document_ref, c.phone_token, c.statement, c.evidence_fingerprint,
    c.state, c.version, c.previous_claim_id, c.resubmission_count, c.evidence_repeated,
    c.disputed_from, c.contested_controller_id, c.prior_controller_snapshot,
    c.submitted_at, c.updated_at, c.decided_at
"""
MUTABLE_CLAIM_FIELDS = {
    "state",
    "selfie_ref",
    "document_ref",
    "phone_token",
    "statement",
    "evidence_fingerprint",
    "disputed_from",
    "contested_controller_id",
    "prior_controller_snapshot",
    "decided_at",
}
MUTABLE_PAYMENT_FIELDS = {"state", "admin_notes", "decided_by", "decided_at", "vip_expires_at"}
MAX_PAGE_SIZE = 200


def _to_json(data: dict[str, Any] | None) -> str | None:
    if data is None:
        return None
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"))


def _from_json(raw: str | None) -> dict[str, Any] | None:
    if not raw:
        return None
    value = json.loads(raw)
    return value if isinstance(value, dict) else None


def _resource_from_row(row: aiosqlite.Row) -> ClaimableResource:
    return ClaimableResource(
        id=str(row["id"]),
        kind=str(row["kind"]),
        controller_id=row["controller_id"],
        owning_establishment_id=row["owning_establishment_id"],
        self_managed_by=row["self_managed_by"],
        applied_claim_id=row["applied_claim_id"],
        active_claim_id=row["active_claim_id"],
    )


def _decision_from_row(row: aiosqlite.Row) -> Decision:
    return Decision(
        claim_id=int(row["claim_id"]),
        seq=int(row["seq"]),
        actor_id=str(row["actor_id"]),
        actor_role=str(row["actor_role"]),
        action=str(row["action"]),
        reason=row["reason"],
        from_state=str(row["from_state"]),
        to_state=str(row["to_state"]),
        created_at=str(row["created_at"]),
    )


def _claim_from_row(row: aiosqlite.Row) -> Claim:
    return Claim(
        id=int(row["id"]),
        resource_id=str(row["resource_id"]),
        resource_kind=str(row["resource_kind"]),
        claimant_id=str(row["claimant_id"]),
        claim_type=str(row["claim_type"]),
        tier=row["tier"],
        evidence=Evidence(
            selfie_ref=row["selfie_ref"],
            document_ref=row["document_ref"],
            phone_token=row["phone_token"],
            statement=row["statement"],
        ),
        state=str(row["state"]),
        version=int(row["version"]),
        previous_claim_id=row["previous_claim_id"],
        resubmission_count=int(row["resubmission_count"] or 0),
        evidence_repeated=bool(row["evidence_repeated"]),
        disputed_from=row["disputed_from"],
        contested_controller_id=row["contested_controller_id"],
        prior_controller_snapshot=_from_json(row["prior_controller_snapshot"]),
        submitted_at=str(row["submitted_at"]),
        updated_at=str(row["updated_at"]),
        decided_at=row["decided_at"],
    )


def _payment_from_row(row: aiosqlite.Row) -> PaymentVerification:
    return PaymentVerification(
        id=int(row["id"]),
        establishment_id=str(row["establishment_id"]),
        amount=int(row["amount"]),
        currency=str(row["currency"]),
        duration_days=int(row["duration_days"]),
        submitted_by=str(row["submitted_by"]),
        submitted_at=str(row["submitted_at"]),
        state=str(row["state"]),
        version=int(row["version"]),
        admin_notes=row["admin_notes"],
        decided_by=row["decided_by"],
        decided_at=row["decided_at"],
        vip_expires_at=row["vip_expires_at"],
    )


def _page(limit: int, offset: int) -> tuple[int, int]:
    return max(1, min(int(limit), MAX_PAGE_SIZE)), max(0, int(offset))


class ClaimRepository:
    """Claim, decision, resource and payment persistence."""

    def __init__(self, db_path: str | None = None) -> None:
        self.db_path = db_path

    def connect(self) -> AbstractAsyncContextManager[aiosqlite.Connection]:
        return open_db(self.db_path)

    def transaction(self) -> AbstractAsyncContextManager[aiosqlite.Connection]:
        return write_transaction(self.db_path)

    # ---- resources -------------------------------------------------------

    async def upsert_resource(
        self,
        db: aiosqlite.Connection,
        resource_id: str,
        kind: str,
        *,
        controller_id: str | None = None,
        owning_establishment_id: str | None = None,
    ) -> None:
        now = utc_now_iso()
        await db.execute(
            """INSERT INTO claim_resources(
                   id, kind, controller_id, owning_establishment_id,
                   self_managed_by, applied_claim_id, created_at, updated_at
               ) VALUES(?, ?, ?, ?, NULL, NULL, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   kind = excluded.kind,
                   controller_id = excluded.controller_id,
                   owning_establishment_id = excluded.owning_establishment_id,
                   updated_at = excluded.updated_at""",
            (str(resource_id), kind, controller_id, owning_establishment_id, now, now),
        )

    async def get_resource(self, db: aiosqlite.Connection, resource_id: str) -> ClaimableResource | None:
        async with db.execute(
            """SELECT r.id, r.kind, r.controller_id, r.owning_establishment_id,
                      r.self_managed_by, r.applied_claim_id,
                      a.claim_id AS active_claim_id
                 FROM claim_resources r
                 LEFT JOIN active_claims a ON a.resource_id = r.id
                WHERE r.id = ?""",
            (str(resource_id),),
        ) as cur:
            row = await cur.fetchone()
            return _resource_from_row(row) if row else None

    async def find_self_managed_resource(
        self, db: aiosqlite.Connection, manager_id: str
    ) -> ClaimableResource | None:
        async with db.execute(
            """SELECT r.id, r.kind, r.controller_id, r.owning_establishment_id,
                      r.self_managed_by, r.applied_claim_id,
                      a.claim_id AS active_claim_id
                 FROM claim_resources r
                 LEFT JOIN active_claims a ON a.resource_id = r.id
                WHERE r.self_managed_by = ?
                ORDER BY r.id ASC
                LIMIT 1""",
            (str(manager_id),),
        ) as cur:
            row = await cur.fetchone()
            return _resource_from_row(row) if row else None

    async def set_controller(self, db: aiosqlite.Connection, resource_id: str, controller_id: str | None) -> None:
        await db.execute(
            "UPDATE claim_resources SET controller_id = ?, updated_at = ? WHERE id = ?",
            (controller_id, utc_now_iso(), str(resource_id)),
        )

    async def set_projection(
        self,
        db: aiosqlite.Connection,
        resource_id: str,
        *,
        self_managed_by: str | None,
        applied_claim_id: int | None,
    ) -> None:
        await db.execute(
            """UPDATE claim_resources
                  SET self_managed_by = ?, applied_claim_id = ?, updated_at = ?
                WHERE id = ?""",
            (self_managed_by, applied_claim_id, utc_now_iso(), str(resource_id)),
        )

    # ---- claim lock ------------------------------------------------------

    async def acquire_claim_lock(self, db: aiosqlite.Connection, resource_id: str, claim_id: int) -> None:
        try:
            await db.execute(
                "INSERT INTO active_claims(resource_id, claim_id, locked_at) VALUES(?, ?, ?)",
                (str(resource_id), int(claim_id), utc_now_iso()),
            )
        except sqlite3.IntegrityError as error:
            raise DuplicateActiveClaim(f"Resource {resource_id} already has an active claim.") from error

    async def release_claim_lock(self, db: aiosqlite.Connection, resource_id: str, claim_id: int) -> None:
        await db.execute(
            "DELETE FROM active_claims WHERE resource_id = ? AND claim_id = ?",
            (str(resource_id), int(claim_id)),
        )

    # ---- claims ----------------------------------------------------------

    async def insert_claim(
        self,
        db: aiosqlite.Connection,
        *,
        resource: ClaimableResource,
        claimant_id: str,
        claim_type: str,
        tier: str | None,
        evidence: Evidence,
        state: str,
        previous_claim_id: int | None,
        resubmission_count: int,
        evidence_repeated: bool,
    ) -> int:
        now = utc_now_iso()
        cursor = await db.execute(
            """INSERT INTO claims(
                   resource_id, resource_kind, claimant_id, claim_type, tier,
                   selfie_ref, document_ref, phone_token, statement, evidence_fingerprint,
                   state, version, previous_claim_id, resubmission_count, evidence_repeated,
                   submitted_at, updated_at
               ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?, ?)""",
            (
                resource.id,
                resource.kind,
                str(claimant_id),
                claim_type,
                tier,
                evidence.selfie_ref,
                evidence.document_ref,
                evidence.phone_token,
                evidence.statement,
                evidence.fingerprint(),
                state,
                previous_claim_id,
                int(resubmission_count),
                1 if evidence_repeated else 0,
                now,
                now,
            ),
        )
        return int(cursor.lastrowid)

    async def get_claim(
        self,
        db: aiosqlite.Connection,
        claim_id: int,
        *,
        with_history: bool = True,
    ) -> Claim | None:
        async with db.execute(
            f"SELECT {CLAIM_COLUMNS} FROM claims c WHERE c.id = ?",
            (int(claim_id),),
        ) as cur:
            row = await cur.fetchone()
        if not row:
            return None
        claim = _claim_from_row(row)
        if with_history:
            claim.history = await self.list_decisions(db, claim.id)
        return claim

    async def update_claim(
        self,
        db: aiosqlite.Connection,
        claim_id: int,
        *,
        expected_version: int,
        **fields: Any,
    ) -> None:
        """Compare-and-set update; bumps `version`."""
        unknown = set(fields) - MUTABLE_CLAIM_FIELDS
        if unknown:
            raise ValueError(f"Unsupported claim fields: {sorted(unknown)}")
        if "prior_controller_snapshot" in fields:
            fields["prior_controller_snapshot"] = _to_json(fields["prior_controller_snapshot"])

        assignments = ", ".join(f"{name} = ?" for name in fields)
        params: list[Any] = list(fields.values())
        params.extend([utc_now_iso(), int(claim_id), int(expected_version)])
        cursor = await db.execute(
            f"""UPDATE claims
                   SET {assignments}{', ' if assignments else ''}updated_at = ?, version = version + 1
                 WHERE id = ? AND version = ?""",
            params,
        )
        if int(cursor.rowcount or 0) != 1:
            raise ConflictError(f"Claim {claim_id} was modified concurrently.")

    async def find_latest_claim_by_claimant(
        self,
        db: aiosqlite.Connection,
        resource_id: str,
        claimant_id: str,
    ) -> Claim | None:
        async with db.execute(
            f"""SELECT {CLAIM_COLUMNS}
                  FROM claims c
                 WHERE c.resource_id = ? AND c.claimant_id = ?
                 ORDER BY c.id DESC
                 LIMIT 1""",
            (str(resource_id), str(claimant_id)),
        ) as cur:
            row = await cur.fetchone()
            return _claim_from_row(row) if row else None

    async def find_active_claim_by_claimant(
        self,
        db: aiosqlite.Connection,
        claimant_id: str,
        claim_type: str,
    ) -> Claim | None:
        placeholders = ",".join("?" for _ in ACTIVE_STATES)
        async with db.execute(
            f"""SELECT {CLAIM_COLUMNS}
                  FROM claims c
                 WHERE c.claimant_id = ? AND c.claim_type = ?
                   AND c.state IN ({placeholders})
                 ORDER BY c.id ASC
                 LIMIT 1""",
            (str(claimant_id), claim_type, *sorted(ACTIVE_STATES)),
        ) as cur:
            row = await cur.fetchone()
            return _claim_from_row(row) if row else None

    async def list_claims(
        self,
        db: aiosqlite.Connection,
        *,
        states: Sequence[str] | None = None,
        claimant_id: str | None = None,
        resource_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Claim]:
        clauses: list[str] = []
        params: list[Any] = []
        if states:
            clauses.append(f"c.state IN ({','.join('?' for _ in states)})")
            params.extend(states)
        if claimant_id is not None:
            clauses.append("c.claimant_id = ?")
            params.append(str(claimant_id))
        if resource_id is not None:
            clauses.append("c.resource_id = ?")
            params.append(str(resource_id))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        safe_limit, safe_offset = _page(limit, offset)
        async with db.execute(
            f"""SELECT {CLAIM_COLUMNS}
                  FROM claims c
                  {where}
                 ORDER BY c.submitted_at ASC, c.id ASC
                 LIMIT ? OFFSET ?""",
            (*params, safe_limit, safe_offset),
        ) as cur:
            rows = await cur.fetchall()
            return [_claim_from_row(row) for row in rows]

    async def list_claims_for_controller(
        self,
        db: aiosqlite.Connection,
        controller_id: str,
        *,
        states: Sequence[str],
        include_house_managed: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Claim]:
        """Claims on resources controlled by `controller_id`, optionally plus house-managed ones."""
        safe_limit, safe_offset = _page(limit, offset)
        placeholders = ",".join("?" for _ in states)
        controller_clause = "r.controller_id = ?"
        if include_house_managed:
            controller_clause = "(r.controller_id = ? OR r.controller_id IS NULL)"
        params: list[Any] = [*states, str(controller_id)]
        async with db.execute(
            f"""SELECT {CLAIM_COLUMNS}
                  FROM claims c
                  JOIN claim_resources r ON r.id = c.resource_id
                 WHERE c.state IN ({placeholders})
                   AND {controller_clause}
                 ORDER BY c.submitted_at ASC, c.id ASC
                 LIMIT ? OFFSET ?""",
            (*params, safe_limit, safe_offset),
        ) as cur:
            rows = await cur.fetchall()
            return [_claim_from_row(row) for row in rows]

    # ---- decisions -------------------------------------------------------

    async def append_decision(
        self,
        db: aiosqlite.Connection,
        *,
        claim_id: int,
        actor: Actor,
        action: str,
        reason: str | None,
        from_state: str,
        to_state: str,
    ) -> Decision:
        created_at = utc_now_iso()
        async with db.execute(
            "SELECT COALESCE(MAX(seq), 0) + 1 AS next_seq FROM claim_decisions WHERE claim_id = ?",
            (int(claim_id),),
        ) as cur:
            row = await cur.fetchone()
            seq = int(row["next_seq"])
        try:
            await db.execute(
                """INSERT INTO claim_decisions(
                       claim_id, seq, actor_id, actor_role, action, reason,
                       from_state, to_state, created_at
                   ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (int(claim_id), seq, actor.id, actor.role, action, reason, from_state, to_state, created_at),
            )
        except sqlite3.IntegrityError as error:
            raise InvalidTransition(f"Action {action} was already recorded for claim {claim_id}.") from error
        return Decision(
            claim_id=int(claim_id),
            seq=seq,
            actor_id=actor.id,
            actor_role=actor.role,
            action=action,
            reason=reason,
            from_state=from_state,
            to_state=to_state,
            created_at=created_at,
        )

    async def list_decisions(self, db: aiosqlite.Connection, claim_id: int) -> list[Decision]:
        async with db.execute(
            """SELECT claim_id, seq, actor_id, actor_role, action, reason,
                      from_state, to_state, created_at
                 FROM claim_decisions
                WHERE claim_id = ?
                ORDER BY seq ASC""",
            (int(claim_id),),
        ) as cur:
            rows = await cur.fetchall()
            return [_decision_from_row(row) for row in rows]

    # ---- audit -----------------------------------------------------------

    async def write_audit_log(
        self,
        db: aiosqlite.Connection,
        *,
        entity: str,
        entity_id: int,
        actor_id: str | None,
        action: str,
        payload: dict[str, Any] | None = None,
    ) -> None:
        await db.execute(
            """INSERT INTO claims_audit_log(
                   entity, entity_id, actor_id, action, payload_json, created_at
               ) VALUES(?, ?, ?, ?, ?, ?)""",
            (entity, int(entity_id), actor_id, action, _to_json(payload), utc_now_iso()),
        )

    async def list_audit_log(
        self,
        db: aiosqlite.Connection,
        *,
        entity: str,
        entity_id: int,
    ) -> list[dict[str, Any]]:
        async with db.execute(
            """SELECT id, entity, entity_id, actor_id, action, payload_json, created_at
                 FROM claims_audit_log
                WHERE entity = ? AND entity_id = ?
                ORDER BY id ASC""",
            (entity, int(entity_id)),
        ) as cur:
            rows = await cur.fetchall()
            return [dict(row) for row in rows]

    # ---- payment verifications -------------------------------------------

    async def insert_payment_verification(
        self,
        db: aiosqlite.Connection,
        *,
        establishment_id: str,
        amount: int,
        currency: str,
        duration_days: int,
        submitted_by: str,
        state: str,
    ) -> int:
        try:
            cursor = await db.execute(
                """INSERT INTO payment_verifications(
                       establishment_id, amount, currency, duration_days,
                       submitted_by, submitted_at, state, version
                   ) VALUES(?, ?, ?, ?, ?, ?, ?, 1)""",
                (str(establishment_id), int(amount), currency, int(duration_days), str(submitted_by), utc_now_iso(), state),
            )
        except sqlite3.IntegrityError as error:
            raise DuplicateActiveClaim(
                f"Establishment {establishment_id} already has a pending cash payment."
            ) from error
        return int(cursor.lastrowid)

    async def get_payment_verification(
        self,
        db: aiosqlite.Connection,
        transaction_id: int,
    ) -> PaymentVerification | None:
        async with db.execute(
            """SELECT id, establishment_id, amount, currency, duration_days, submitted_by,
                      submitted_at, state, version, admin_notes, decided_by, decided_at, vip_expires_at
                 FROM payment_verifications
                WHERE id = ?""",
            (int(transaction_id),),
        ) as cur:
            row = await cur.fetchone()
            return _payment_from_row(row) if row else None

    async def update_payment_verification(
        self,
        db: aiosqlite.Connection,
        transaction_id: int,
        *,
        expected_version: int,
        **fields: Any,
    ) -> None:
        unknown = set(fields) - MUTABLE_PAYMENT_FIELDS
        if unknown or not fields:
            raise ValueError(f"Unsupported payment fields: {sorted(unknown)}")
        assignments = ", ".join(f"{name} = ?" for name in fields)
        cursor = await db.execute(
            f"""UPDATE payment_verifications
                   SET {assignments}, version = version + 1
                 WHERE id = ? AND version = ?""",
            (*fields.values(), int(transaction_id), int(expected_version)),
        )
        if int(cursor.rowcount or 0) != 1:
            raise ConflictError(f"Payment verification {transaction_id} was modified concurrently.")

    async def list_payment_verifications(
        self,
        db: aiosqlite.Connection,
        *,
        state: str | None = None,
        establishment_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[PaymentVerification]:
        clauses: list[str] = []
        params: list[Any] = []
        if state is not None:
            clauses.append("state = ?")
            params.append(state)
        if establishment_id is not None:
            clauses.append("establishment_id = ?")
            params.append(str(establishment_id))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        safe_limit, safe_offset = _page(limit, offset)
        async with db.execute(
            f"""SELECT id, establishment_id, amount, currency, duration_days, submitted_by,
                       submitted_at, state, version, admin_notes, decided_by, decided_at, vip_expires_at
                  FROM payment_verifications
                  {where}
                 ORDER BY submitted_at ASC, id ASC
                 LIMIT ? OFFSET ?""",
            (*params, safe_limit, safe_offset),
        ) as cur:
            rows = await cur.fetchall()
            return [_payment_from_row(row) for row in rows]

    async def get_vip_subscription(self, db: aiosqlite.Connection, establishment_id: str) -> VipSubscription | None:
        async with db.execute(
            """SELECT establishment_id, starts_at, expires_at, last_transaction_id,
                      status, cancelled_at, cancelled_by
                 FROM vip_subscriptions
                WHERE establishment_id = ?""",
            (str(establishment_id),),
        ) as cur:
            row = await cur.fetchone()
            if not row:
                return None
            return VipSubscription(
                establishment_id=str(row["establishment_id"]),
                starts_at=str(row["starts_at"]),
                expires_at=str(row["expires_at"]),
                last_transaction_id=row["last_transaction_id"],
                status=str(row["status"]),
                cancelled_at=row["cancelled_at"],
                cancelled_by=row["cancelled_by"],
            )

    async def upsert_vip_subscription(
        self,
        db: aiosqlite.Connection,
        *,
        establishment_id: str,
        starts_at: str,
        expires_at: str,
        transaction_id: int,
    ) -> VipSubscription:
        await db.execute(
            """INSERT INTO vip_subscriptions(
                   establishment_id, starts_at, expires_at, last_transaction_id,
                   status, cancelled_at, cancelled_by, updated_at
               ) VALUES(?, ?, ?, ?, ?, NULL, NULL, ?)
               ON CONFLICT(establishment_id) DO UPDATE SET
                   starts_at = excluded.starts_at,
                   expires_at = excluded.expires_at,
                   last_transaction_id = excluded.last_transaction_id,
                   status = excluded.status,
                   cancelled_at = NULL,
                   cancelled_by = NULL,
                   updated_at = excluded.updated_at""",
            (str(establishment_id), starts_at, expires_at, int(transaction_id), VIP_ACTIVE, utc_now_iso()),
        )
        return VipSubscription(
            establishment_id=str(establishment_id),
            starts_at=starts_at,
            expires_at=expires_at,
            last_transaction_id=int(transaction_id),
        )

    async def cancel_vip_subscription(
        self,
        db: aiosqlite.Connection,
        establishment_id: str,
        *,
        cancelled_by: str,
        cancelled_at: str,
    ) -> None:
        await db.execute(
            """UPDATE vip_subscriptions
                  SET status = ?, cancelled_at = ?, cancelled_by = ?, updated_at = ?
                WHERE establishment_id = ? AND status = ?""",
            (VIP_CANCELLED, cancelled_at, cancelled_by, cancelled_at, str(establishment_id), VIP_ACTIVE),
        )
