# Overview: Optimistic-concurrency helpers shared by the ledger services.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ConcurrentModification
from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    The version_id_col guard is what actually protects the row.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute one unit of work, retrying it on concurrency conflicts.

    func must re-read every row it mutates and commit at the end; on
    StaleDataError (version mismatch) or OperationalError (lock contention)
    the session is rolled back and func runs again with fresh state.

    Any other exception rolls back and propagates unchanged. When the
    retry budget is exhausted ConcurrentModification is raised.
    """
    if attempts is None:
        attempts = current_app.config.get("STOCK_CAS_MAX_ATTEMPTS", 5)
    if backoff_base is None:
        backoff_base = current_app.config.get("STOCK_CAS_BACKOFF_SECONDS", 0.02)

    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt < attempts - 1:
                time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise

    raise ConcurrentModification(
        "Concurrent modification, please retry",
        details={"attempts": attempts},
    ) from last_exc
