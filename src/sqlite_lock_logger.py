"""SQLite lock observability for the checkout store.

The bot process, the webhook endpoint and the background sweeper/poller all
write to the same SQLite file. WAL and busy_timeout absorb most contention,
but a write can still hit "database is locked". Each retry is appended as a
JSON line to the file named by SQLITE_LOCK_LOG_PATH so contention is visible
in production:

  {"ts": "...", "where": "repository.execute_write_with_retry", "attempt": 1, ...}

Logging is best-effort and never raises into the caller.
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


_LOCK_LOG_PATH: str | None = None
_LOCK_LOG_PATH_INITIALIZED = False


def _resolve_lock_log_path() -> str | None:
    """Resolve the lock log path once per process."""
    global _LOCK_LOG_PATH_INITIALIZED, _LOCK_LOG_PATH
    if _LOCK_LOG_PATH_INITIALIZED:
        return _LOCK_LOG_PATH
    _LOCK_LOG_PATH_INITIALIZED = True

    explicit = (os.getenv("SQLITE_LOCK_LOG_PATH") or "").strip().strip('"').strip("'")
    _LOCK_LOG_PATH = explicit or None
    return _LOCK_LOG_PATH


def log_sqlite_lock_event(
    *,
    where: str,
    exc: BaseException,
    attempt: int,
    retries: int,
    delay_sec: float | None = None,
    extra: dict[str, Any] | None = None,
) -> None:
    """Append a JSONL entry about lock contention.

    attempt: 1-based attempt number (1..retries).
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
    if delay_sec is not None:
        payload["delay_sec"] = round(float(delay_sec), 3)
    if extra:
        for k, v in extra.items():
            payload.setdefault(k, v)

    try:
        log_path = Path(path)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
        with log_path.open("a", encoding="utf-8") as fh:
            fh.write(line + "\n")
    except OSError:
        # Never fail the checkout flow on lock logging.
        return
