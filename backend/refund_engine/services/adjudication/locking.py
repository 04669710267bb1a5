"""
Single-writer discipline per refund request.

Three layers, all required for a transition:
1. In-process lock keyed by reference id (threads in one worker)
2. SELECT ... FOR UPDATE on the request row (workers sharing a database)
3. Optimistic version column, checked on flush (anything that slipped past)

Human decisions and the SLA monitor both go through locked_request().
"""
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ...models.db_models import RefundRequestDB
from .errors import ConcurrentTransitionError, NotFoundError


class RequestLockRegistry:
    """
    In-process RLocks keyed by reference id.

    Entries are reference-counted and dropped once no thread holds or waits
    on them, so the registry only ever holds locks for requests in flight.
    """

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._users: Dict[str, int] = {}
        self._guard = threading.Lock()

    @contextmanager
    def hold(self, reference_id: str, blocking: bool = True, timeout: float = 30.0) -> Iterator[bool]:
        """Yield True once the lock is held, False if it could not be taken."""
        with self._guard:
            lock = self._locks.get(reference_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[reference_id] = lock
            self._users[reference_id] = self._users.get(reference_id, 0) + 1

        acquired = lock.acquire(True, timeout) if blocking else lock.acquire(False)
        try:
            yield acquired
        finally:
            if acquired:
                lock.release()
            with self._guard:
                self._users[reference_id] -= 1
                if self._users[reference_id] == 0:
                    del self._users[reference_id]
                    del self._locks[reference_id]

    def active(self) -> int:
        """Number of reference ids currently held or awaited."""
        with self._guard:
            return len(self._locks)


DEFAULT_LOCKS = RequestLockRegistry()


@contextmanager
def locked_request(
    db: Session,
    reference_id: str,
    locks: Optional[RequestLockRegistry] = None,
    expected_version: Optional[int] = None,
    blocking: bool = True,
    timeout: float = 30.0,
) -> Iterator[RefundRequestDB]:
    """
    Yield the request row under the per-request lock.

    Raises ConcurrentTransitionError if the lock is busy (non-blocking or
    timed out) or if the row's version differs from expected_version.
    """
    registry = locks if locks is not None else DEFAULT_LOCKS
    with registry.hold(reference_id, blocking, timeout) as acquired:
        if not acquired:
            raise ConcurrentTransitionError(f"Request {reference_id} is being modified by another writer")

        request = (
            db.query(RefundRequestDB)
            .filter(RefundRequestDB.reference_id == reference_id)
            .populate_existing()
            .with_for_update()
            .one_or_none()
        )
        if request is None:
            raise NotFoundError(f"Refund request {reference_id} not found")
        if expected_version is not None and request.version != expected_version:
            raise ConcurrentTransitionError(
                f"Request {reference_id} changed (version {request.version}, expected {expected_version})"
            )
        yield request


@contextmanager
def request_transaction(
    db: Session,
    reference_id: str,
    locks: Optional[RequestLockRegistry] = None,
    expected_version: Optional[int] = None,
    blocking: bool = True,
) -> Iterator[RefundRequestDB]:
    """
    locked_request() plus commit on success and rollback on any error.
    The commit happens while the lock is still held.
    """
    try:
        with locked_request(db, reference_id, locks, expected_version, blocking) as request:
            yield request
            db.commit()
    except StaleDataError as e:
        db.rollback()
        raise ConcurrentTransitionError(f"Request {reference_id} was modified concurrently") from e
    except Exception:
        db.rollback()
        raise
