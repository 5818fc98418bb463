# Overview: Transaction helpers: row locks, write-transaction start and bounded retry.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ConcurrencyConflict
from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; begin_write() takes the database
    write lock there instead. Rows already in the identity map are refreshed.
    """
    return query.with_for_update().populate_existing()


def begin_write() -> None:
    """
    Start the unit of work as a write transaction.

    On SQLite this issues BEGIN IMMEDIATE so two writers serialize before either
    reads stock. Skipped when the connection is already inside a transaction
    (the caller's unit of work already holds it).
    """
    if db.engine.dialect.name != "sqlite":
        return
    conn = db.session.connection()
    dbapi_conn = conn.connection.dbapi_connection
    if getattr(dbapi_conn, "in_transaction", False):
        return
    db.session.execute(text("BEGIN IMMEDIATE"))


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float = 0.1):
    """
    Execute a DB unit of work with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts), then raises ConcurrencyConflict.
    Any other exception rolls the session back and propagates unchanged.
    """
    if attempts is None:
        attempts = int(current_app.config.get("LOCK_RETRY_ATTEMPTS", 3))
    attempts = max(1, attempts)
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise ConcurrencyConflict(
                    "Concurrent update conflict; please retry",
                    {"attempts": attempts, "cause": type(exc).__name__},
                ) from exc
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
