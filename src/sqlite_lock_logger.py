"""Lightweight SQLite lock observability.

The claims database is shared by the host service and the operator CLI. Even with WAL and
busy_timeout, concurrent `BEGIN IMMEDIATE` transactions can still hit lock contention. When
SQLITE_LOCK_LOG_PATH is set, every retried lock event is appended there as one JSON line so
contention is visible without grepping the main log.

The logger is best-effort: it must never crash application code.
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


def _resolve_lock_log_path() -> str | None:
    explicit = (os.getenv("SQLITE_LOCK_LOG_PATH") or "").strip().strip('"').strip("'")
    return explicit or None


def log_sqlite_lock_event(
    *,
    where: str,
    exc: BaseException,
    attempt: int,
    retries: int,
    delay_sec: float | None = None,
    db_path: str | None = None,
) -> None:
    """Append a JSONL entry about lock contention.

    attempt: 1-based attempt number for readability (1..retries+1).
    """
    path = _resolve_lock_log_path()
    if not path:
        return

    payload: dict[str, Any] = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "where": str(where or ""),
        "attempt": int(attempt),
        "retries": int(retries),
        "error": str(exc),
        "pid": os.getpid(),
    }
    if db_path:
        payload["db_path"] = str(db_path)
    if delay_sec is not None:
        payload["delay_sec"] = round(float(delay_sec), 4)

    try:
        log_path = Path(path)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
        with log_path.open("a", encoding="utf-8") as fh:
            fh.write(line + "\n")
    except OSError:
        # Never fail application flow on lock logging.
        return
