# Overview: Service-layer concurrency helpers; row locks, per-key locks and retry on conflicts.

from __future__ import annotations

import threading
import time
from contextlib import contextmanager

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


# key -> [lock, holders and waiters]; entries are dropped when the count reaches 0
_key_locks: dict[tuple, list] = {}
_key_locks_guard = threading.Lock()


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


@contextmanager
def keyed_lock(key: tuple, *, timeout: float = 10.0):
    """
    Serialize work on one logical key (e.g. a distributor+product pair)
    within this process.

    Complements lock_for_update for backends that ignore row locks. The
    registry only holds keys that are currently locked or awaited.
    """
    with _key_locks_guard:
        entry = _key_locks.get(key)
        if entry is None:
            entry = [threading.Lock(), 0]
            _key_locks[key] = entry
        entry[1] += 1

    lock = entry[0]
    try:
        if not lock.acquire(timeout=timeout):
            raise TimeoutError(f"timed out waiting for lock {key!r}")
        try:
            yield
        finally:
            lock.release()
    finally:
        with _key_locks_guard:
            entry[1] -= 1
            if entry[1] == 0:
                del _key_locks[key]


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). Each retry re-runs func from scratch,
    so state checks are evaluated against fresh rows.
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


def commit_with_retry(*, attempts: int = 3, backoff_base: float = 0.1):
    """Commit current session with retry handling."""
    def _op():
        db.session.commit()
    return run_with_retry(_op, attempts=attempts, backoff_base=backoff_base)
