# Overview: Locking, retry and savepoint helpers shared by the posting services.

from __future__ import annotations

import time

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking to a holder (product, SKU, transaction) read.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; the version_id_col check on
    Product/ProductSku still turns lost updates into StaleDataError there.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). func must re-read everything it writes,
    since the session is rolled back between attempts.
    """
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError):
            db.session.rollback()
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))


def insert_or_fetch(create, fetch):
    """
    Insert a row keyed by a unique constraint, tolerating a concurrent insert.

    create() adds and flushes the new row inside a savepoint. If another
    writer got there first the savepoint is rolled back and fetch() returns
    the winner's row.
    """
    nested = db.session.begin_nested()
    try:
        row = create()
        nested.commit()
        return row
    except IntegrityError:
        nested.rollback()
        row = fetch()
        if row is None:
            raise
        return row
