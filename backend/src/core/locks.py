"""
Keyed in-process locks with bounded waits.

Reservation commits are serialized per product, journaling per account and
cap evaluation per (account, product). Each key maps to its own lock, so
work on disjoint keys never blocks. Acquisition is bounded by a timeout and
surfaces BusyError instead of waiting indefinitely.

Multi-process deployments additionally take a row lock
(SELECT ... FOR UPDATE NOWAIT) on the owning row inside the same scope with
`lock_row`.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Generator, Hashable, Optional, Type, TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from core.config import BUSY_RETRY_COUNT, LOCK_TIMEOUT_SECONDS
from core.exceptions import BusyError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class KeyedLockRegistry:
    """Registry of one lock per key, created on first use."""

    def __init__(self, timeout_seconds: float = LOCK_TIMEOUT_SECONDS):
        self.timeout_seconds = timeout_seconds
        self._locks: Dict[Hashable, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, key: Hashable) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: Hashable, timeout_seconds: Optional[float] = None) -> Generator[None, None, None]:
        """
        Hold the lock for `key` for the duration of the block.

        Raises:
            BusyError: If the lock is not acquired within the timeout
        """
        timeout = self.timeout_seconds if timeout_seconds is None else timeout_seconds
        lock = self._lock_for(key)
        if not lock.acquire(timeout=timeout):
            raise BusyError(
                f"Timed out after {timeout}s waiting for {key!r}",
                lock_key=repr(key),
                timeout_seconds=timeout,
            )
        try:
            yield
        finally:
            lock.release()

    def is_held(self, key: Hashable) -> bool:
        return self._lock_for(key).locked()


# Global singleton instance
_lock_registry: Optional[KeyedLockRegistry] = None


def get_lock_registry() -> KeyedLockRegistry:
    """Get the process-wide lock registry."""
    global _lock_registry
    if _lock_registry is None:
        _lock_registry = KeyedLockRegistry()
    return _lock_registry


def product_lock_key(product_id: int) -> tuple:
    return ("product", product_id)


def journal_lock_key(account_id: int) -> tuple:
    return ("journal", account_id)


def cap_lock_key(account_id: int, product_id: int) -> tuple:
    return ("cap", account_id, product_id)


def statement_lock_key(account_id: int) -> tuple:
    return ("statement", account_id)


def call_with_busy_retry(func: Callable[[], T], retries: int = BUSY_RETRY_COUNT, label: str = "operation") -> T:
    """
    Call `func`, retrying up to `retries` extra times on BusyError.

    Each attempt already waits the full lock timeout, so no extra sleep is
    added between attempts. The last BusyError is re-raised unchanged.
    """
    attempt = 0
    while True:
        try:
            return func()
        except BusyError:
            if attempt >= retries:
                logger.warning(f"{label} still busy after {attempt + 1} attempts, giving up")
                raise
            attempt += 1
            logger.info(f"{label} busy, retrying (attempt {attempt + 1}/{retries + 1})")


def lock_row(db: Session, model: Type[Any], row_id: int) -> Optional[Any]:
    """
    Load a row with SELECT ... FOR UPDATE NOWAIT, refreshing any cached copy.

    Dialects without row locks (SQLite) load the row normally; the keyed
    in-process lock held by the caller is what serializes them.

    Raises:
        BusyError: If another transaction holds the row lock
    """
    try:
        return db.query(model).filter(model.id == row_id).populate_existing().with_for_update(nowait=True).first()
    except OperationalError as e:
        db.rollback()
        logger.warning(f"Row lock on {model.__tablename__} {row_id} not available: {e}")
        raise BusyError(
            f"{model.__tablename__} {row_id} is locked by another transaction",
            table=model.__tablename__,
            row_id=row_id,
        ) from e
