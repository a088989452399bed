from __future__ import annotations

import time

from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; use begin_immediate() there.
    """
    return query.with_for_update()


def begin_immediate() -> None:
    """
    Take the SQLite write lock up front so a read-check-write sequence
    cannot interleave with another writer. No-op on other databases,
    which rely on lock_for_update / conditional UPDATEs instead.
    """
    if db.engine.dialect.name != "sqlite":
        return
    # Already holding a write transaction (e.g. flushed rows in this session)
    raw = db.session.connection().connection.dbapi_connection
    if not raw.in_transaction:
        db.session.execute(text("BEGIN IMMEDIATE"))


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (database locked, deadlocks) and
    StaleDataError (optimistic locking conflicts on versioned rows).
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc
