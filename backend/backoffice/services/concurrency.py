# Overview: Transaction helpers shared by every writing service: row locks, the SQLite write lock, and error mapping.

from __future__ import annotations

from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..errors import ConcurrentModificationError, PersistenceTimeoutError


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; begin_write_transaction()
    takes the database write lock there instead.
    """
    return query.with_for_update()


def begin_write_transaction() -> None:
    """
    Start the transaction with the write lock already held.

    On SQLite this issues BEGIN IMMEDIATE so two writers serialize at the
    start of the operation rather than deadlocking on lock upgrade. Skipped
    when the connection is already inside a transaction (nested service
    calls share the outer one).
    """
    if db.engine.dialect.name != "sqlite":
        return
    dbapi_connection = db.session.connection().connection.dbapi_connection
    if not dbapi_connection.in_transaction:
        db.session.execute(text("BEGIN IMMEDIATE"))


def run_atomic(func):
    """
    Run func and commit, or roll everything back.

    No retry happens here: optimistic-lock conflicts surface as
    ConcurrentModificationError and lock/statement timeouts as
    PersistenceTimeoutError so the caller decides.
    """
    try:
        result = func()
        db.session.commit()
        return result
    except StaleDataError as exc:
        db.session.rollback()
        raise ConcurrentModificationError(
            "record was modified by another transaction",
            details={"reason": str(exc)},
        ) from exc
    except OperationalError as exc:
        db.session.rollback()
        raise PersistenceTimeoutError(
            "database did not respond within the configured timeout",
            details={"reason": str(exc.orig) if exc.orig is not None else str(exc)},
        ) from exc
    except Exception:
        db.session.rollback()
        raise
