# Overview: Service-layer operations for concurrency; row locks, retries and the transaction scope.

from __future__ import annotations

import time
from contextlib import contextmanager

from sqlalchemy import text
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import PersistenceError
from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    populate_existing() makes the locked read overwrite any stale copy of the
    row already held in the identity map.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; acquire_write_lock() covers it.
    """
    return query.with_for_update().populate_existing()


def acquire_write_lock() -> None:
    """
    Take the database write lock up front on SQLite.

    Must run before any other statement of the transaction. On servers with
    row locks (PostgreSQL, MySQL) this is a no-op and lock_for_update() does
    the work.
    """
    if db.engine.dialect.name == "sqlite":
        db.session.execute(text("BEGIN IMMEDIATE"))


@contextmanager
def transaction_scope(*, write_lock: bool = False):
    """
    Unit of work around db.session.

    Commits when the block exits normally and rolls back on every other exit
    path. Unexpected storage errors surface as PersistenceError; lock/stale
    errors propagate unchanged so run_with_retry() can retry them.
    """
    try:
        if write_lock:
            acquire_write_lock()
        yield db.session
        db.session.commit()
    except (OperationalError, StaleDataError):
        db.session.rollback()
        raise
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise PersistenceError("Unexpected storage failure", details={"reason": exc.__class__.__name__}) from exc
    except BaseException:
        db.session.rollback()
        raise


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
