import asyncio
import logging
import sqlite3
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import TypeVar

import aiosqlite

from config import CFG, get_db_path
from sqlite_lock_logger import log_sqlite_lock_event


SQLITE_BUSY_TIMEOUT_MS = 5000
WRITE_RETRY_BASE_DELAY_SEC = 0.05

logger = logging.getLogger(__name__)

T = TypeVar("T")


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS claim_resources (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    controller_id TEXT DEFAULT NULL,
    owning_establishment_id TEXT DEFAULT NULL,
    self_managed_by TEXT DEFAULT NULL,
    applied_claim_id INTEGER DEFAULT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS claims (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    resource_id TEXT NOT NULL REFERENCES claim_resources(id),
    resource_kind TEXT NOT NULL,
    claimant_id TEXT NOT NULL,
    claim_type TEXT NOT NULL,
    tier TEXT DEFAULT NULL,
    selfie_ref TEXT DEFAULT NULL,
    document_ref TEXT DEFAULT NULL,
    phone_token TEXT DEFAULT NULL,
    statement TEXT DEFAULT NULL,
    evidence_fingerprint TEXT NOT NULL,
    state TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 1,
    previous_claim_id INTEGER DEFAULT NULL REFERENCES claims(id),
    resubmission_count INTEGER NOT NULL DEFAULT 0,
    evidence_repeated INTEGER NOT NULL DEFAULT 0,
    disputed_from TEXT DEFAULT NULL,
    contested_controller_id TEXT DEFAULT NULL,
    prior_controller_snapshot TEXT DEFAULT NULL,
    submitted_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    decided_at TEXT DEFAULT NULL
);
CREATE INDEX IF NOT EXISTS idx_claims_resource_state ON claims (resource_id, state);
CREATE INDEX IF NOT EXISTS idx_claims_claimant ON claims (claimant_id, submitted_at);
CREATE INDEX IF NOT EXISTS idx_claims_state_submitted ON claims (state, submitted_at);

-- Normalized "current claim per resource" index: the claim lock.
CREATE TABLE IF NOT EXISTS active_claims (
    resource_id TEXT PRIMARY KEY REFERENCES claim_resources(id),
    claim_id INTEGER NOT NULL UNIQUE REFERENCES claims(id),
    locked_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS claim_decisions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    claim_id INTEGER NOT NULL REFERENCES claims(id),
    seq INTEGER NOT NULL,
    actor_id TEXT NOT NULL,
    actor_role TEXT NOT NULL,
    action TEXT NOT NULL,
    reason TEXT DEFAULT NULL,
    from_state TEXT NOT NULL,
    to_state TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (claim_id, seq)
);
-- Terminal and dispute actions happen at most once per claim.
CREATE UNIQUE INDEX IF NOT EXISTS uq_claim_decisions_once
    ON claim_decisions (claim_id, action)
    WHERE action IN ('approve', 'reject', 'dispute', 'override_approve', 'override_reject', 'withdraw');
CREATE TRIGGER IF NOT EXISTS trg_claim_decisions_no_update
    BEFORE UPDATE ON claim_decisions
BEGIN
    SELECT RAISE(ABORT, 'claim_decisions is append-only');
END;
CREATE TRIGGER IF NOT EXISTS trg_claim_decisions_no_delete
    BEFORE DELETE ON claim_decisions
BEGIN
    SELECT RAISE(ABORT, 'claim_decisions is append-only');
END;

CREATE TABLE IF NOT EXISTS evidence_refs (
    ref TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    uploaded_by TEXT DEFAULT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS payment_verifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    establishment_id TEXT NOT NULL REFERENCES claim_resources(id),
    amount INTEGER NOT NULL,
    currency TEXT NOT NULL,
    duration_days INTEGER NOT NULL,
    submitted_by TEXT NOT NULL,
    submitted_at TEXT NOT NULL,
    state TEXT NOT NULL DEFAULT 'pending',
    admin_notes TEXT DEFAULT NULL,
    decided_by TEXT DEFAULT NULL,
    decided_at TEXT DEFAULT NULL,
    vip_expires_at TEXT DEFAULT NULL,
    version INTEGER NOT NULL DEFAULT 1
);
CREATE INDEX IF NOT EXISTS idx_payment_verifications_establishment_state
    ON payment_verifications (establishment_id, state);
CREATE UNIQUE INDEX IF NOT EXISTS uq_payment_verifications_pending
    ON payment_verifications (establishment_id)
    WHERE state = 'pending';

CREATE TABLE IF NOT EXISTS vip_subscriptions (
    establishment_id TEXT PRIMARY KEY REFERENCES claim_resources(id),
    starts_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    last_transaction_id INTEGER DEFAULT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    cancelled_at TEXT DEFAULT NULL,
    cancelled_by TEXT DEFAULT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS claims_audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entity TEXT NOT NULL,
    entity_id INTEGER NOT NULL,
    actor_id TEXT DEFAULT NULL,
    action TEXT NOT NULL,
    payload_json TEXT DEFAULT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_claims_audit_log_entity ON claims_audit_log (entity, entity_id, id);
"""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    """Current UTC timestamp in ISO-8601."""
    return utc_now().isoformat()


def parse_iso_utc(raw_value: str | None) -> datetime | None:
    if not raw_value:
        return None
    try:
        parsed = datetime.fromisoformat(str(raw_value))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


async def apply_sqlite_pragmas(db: aiosqlite.Connection) -> None:
    """Apply SQLite settings for concurrent access from several processes."""
    await db.execute("PRAGMA journal_mode=WAL;")
    await db.execute("PRAGMA synchronous=NORMAL;")
    await db.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS};")
    await db.execute("PRAGMA foreign_keys=ON;")


@asynccontextmanager
async def open_db(db_path: str | None = None) -> AsyncIterator[aiosqlite.Connection]:
    """Open a connection in autocommit mode; transactions are explicit."""
    async with aiosqlite.connect(db_path or get_db_path(), isolation_level=None) as db:
        db.row_factory = aiosqlite.Row
        await apply_sqlite_pragmas(db)
        yield db


@asynccontextmanager
async def write_transaction(db_path: str | None = None) -> AsyncIterator[aiosqlite.Connection]:
    """Short `BEGIN IMMEDIATE` -> writes -> `COMMIT` unit.

    IMMEDIATE takes the write lock up front, so two read-modify-write units on
    the same claim are serialized instead of both reading the old state.
    """
    async with open_db(db_path) as db:
        await db.execute("BEGIN IMMEDIATE")
        try:
            yield db
        except BaseException:
            if db.in_transaction:
                await db.execute("ROLLBACK")
            raise
        else:
            await db.execute("COMMIT")


async def init_db(db_path: str | None = None) -> None:
    """Create claim tables and indexes if they do not exist."""
    async with open_db(db_path) as db:
        await db.executescript(SCHEMA_SQL)
    logger.info("Claims database initialized at %s", db_path or get_db_path())


def is_sqlite_locked_error(exc: BaseException) -> bool:
    if not isinstance(exc, (sqlite3.OperationalError, aiosqlite.OperationalError)):
        return False
    msg = str(exc).lower()
    return "database is locked" in msg or "database table is locked" in msg


async def with_sqlite_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    where: str,
    retries: int | None = None,
    base_delay: float = WRITE_RETRY_BASE_DELAY_SEC,
    db_path: str | None = None,
) -> T:
    """Run a whole write unit, retrying only on SQLite lock contention."""
    max_retries = CFG.write_retry_attempts if retries is None else max(0, int(retries))
    attempt = 0
    while True:
        try:
            return await fn()
        except (sqlite3.OperationalError, aiosqlite.OperationalError) as exc:
            if not is_sqlite_locked_error(exc) or attempt >= max_retries:
                raise
            delay = base_delay * (2**attempt)
            logger.warning("SQLite locked in %s; retry %s/%s in %.2fs", where, attempt + 1, max_retries, delay)
            log_sqlite_lock_event(
                where=where,
                exc=exc,
                attempt=attempt + 1,
                retries=max_retries,
                delay_sec=delay,
                db_path=db_path,
            )
            await asyncio.sleep(delay)
            attempt += 1
