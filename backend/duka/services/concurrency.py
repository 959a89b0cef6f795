# Overview: Service-layer helpers for transactional units of work; locking and retry.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..errors import DukaError


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    Rows already in the session are overwritten with what the locked read
    returns, so a check made earlier in the request cannot go stale.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; writers there are serialized
    by begin_write() instead.
    """
    return query.with_for_update().populate_existing()


def begin_write() -> None:
    """
    Open the write transaction for a unit of work.

    On SQLite this takes the database write lock up front (BEGIN IMMEDIATE)
    so that the reads made while validating an order cannot go stale before
    the writes land. Other databases rely on lock_for_update() and the
    conditional updates in stock_service.

    Anything the session loaded before this point is expired and re-read
    under the lock.
    """
    db.session.expire_all()
    if db.engine.dialect.name == "sqlite":
        db.session.execute(text("BEGIN IMMEDIATE"))


def in_transaction() -> bool:
    return db.session().in_transaction()


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, (OperationalError, StaleDataError)):
        return True
    return isinstance(exc, DukaError) and exc.retryable


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float = 0.05):
    """
    Execute a unit of work, rolling back on ANY failure.

    Retries on OperationalError (deadlocks, locks), StaleDataError
    (optimistic locking conflicts) and retryable domain conflicts such as a
    lost order-number race. Everything else is rolled back and re-raised.
    """
    if attempts is None:
        attempts = current_app.config.get("ORDER_RETRY_ATTEMPTS", 3)

    for attempt in range(attempts):
        try:
            return func()
        except Exception as exc:
            db.session.rollback()
            if not _is_retryable(exc) or attempt >= attempts - 1:
                raise
            current_app.logger.info(
                "Retrying unit of work after %s (attempt %d/%d)",
                type(exc).__name__, attempt + 1, attempts,
            )
            time.sleep(backoff_base * (2 ** attempt))
