# Overview: Service-layer concurrency primitives; all cross-request exclusion lives in the database.

from __future__ import annotations

import time

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    Correctness never depends on this lock; conditional_update is the guard.
    """
    return query.with_for_update()


def conditional_update(model, criteria: list, values: dict) -> int:
    """
    Compare-and-swap at the storage layer.

    Issues a single UPDATE ... WHERE <criteria> and returns the number of
    rows affected. Callers treat 0 as "precondition no longer holds" and
    must not fall back to a read-then-write.
    """
    return (
        db.session.query(model)
        .filter(*criteria)
        .update(values, synchronize_session=False)
    )


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts).
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

