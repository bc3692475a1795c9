import os
from pathlib import Path
from dataclasses import dataclass

from dotenv import load_dotenv

# Load .env from the working directory (where the process is started).
env_path = Path.cwd() / ".env"
load_dotenv(env_path)


DEFAULT_DB_FILE_NAME = "claims.db"


@dataclass
class Config:
    db_path: str
    admin_ids: list[str]  # Operator ids treated as admin by the CLI
    # Claims
    statement_max_len: int
    # Cash verification
    payment_currency: str
    # SQLite
    write_retry_attempts: int


def _clean(value: str | None, default: str = "") -> str:
    if value is None:
        return default
    return value.strip().strip('"').strip("'")


def parse_admin_ids(env_value: str) -> list[str]:
    """Parse admin ids from a comma/space separated string."""
    if not env_value:
        return []
    env_value = _clean(env_value)
    ids = [item.strip() for item in env_value.replace(",", " ").split()]
    return [item for item in ids if item]


def parse_int(value: str | None, default: int) -> int:
    cleaned = _clean(value)
    if not cleaned:
        return default
    try:
        return int(cleaned)
    except ValueError:
        return default


def get_db_path() -> str:
    """Resolve the claims DB path at call time.

    Read on every call so that separate processes (and smoke checks) can point
    the repository at their own database file via CLAIMS_DB_PATH.
    """
    explicit = _clean(os.getenv("CLAIMS_DB_PATH"))
    if explicit:
        return explicit
    return str(Path.cwd() / DEFAULT_DB_FILE_NAME)


def load_config() -> Config:
    return Config(
        db_path=get_db_path(),
        admin_ids=parse_admin_ids(os.getenv("ADMIN_IDS", "")),
        statement_max_len=max(1, parse_int(os.getenv("CLAIM_STATEMENT_MAX_LEN"), 2000)),
        payment_currency=_clean(os.getenv("VIP_PAYMENT_CURRENCY"), "THB").upper() or "THB",
        write_retry_attempts=max(0, parse_int(os.getenv("SQLITE_WRITE_RETRIES"), 3)),
    )


CFG = load_config()
