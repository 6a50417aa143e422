# Overview: Service-layer helpers for concurrency; row locks, retries and status compare-and-set.

from __future__ import annotations

import time

from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..exceptions import ConflictError, NotFoundError
from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB unit of work with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). Any other failure rolls the session back
    before propagating so a half-applied transition never lingers.
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
        except Exception:
            db.session.rollback()
            raise
    if last_exc:
        raise last_exc


def compare_and_set(model, record_id: int, *, expected, values: dict, label: str):
    """
    Move a record's status only if it still holds the expected status.

    Issues a single UPDATE ... WHERE id = :id AND status IN (:expected) so the
    check and the write are one statement; every column in values changes
    together with the status or not at all. Bumps version_id so ORM-level
    optimistic locking sees the change.

    Returns the refreshed ORM instance.

    Raises:
        NotFoundError: no row with that id
        ConflictError: the row exists but its status has moved on
    """
    expected_statuses = (expected,) if isinstance(expected, str) else tuple(expected)

    stmt = (
        update(model)
        .where(model.id == record_id, model.status.in_(expected_statuses))
        .values(version_id=model.version_id + 1, **values)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)

    if result.rowcount != 1:
        current = db.session.query(model.status).filter(model.id == record_id).scalar()
        if current is None:
            raise NotFoundError(f"{label} {record_id} not found")
        raise ConflictError(
            f"{label} {record_id} is already {current}",
            current_status=current,
        )

    return db.session.get(model, record_id, populate_existing=True)
