"""Named advisory lock shared by every instance that uses the same database.

Each lock is one ``job_locks`` row keyed by a hash of the lock name.  The
row is a lease: it expires after ``ttl_seconds`` so a holder that crashed
without releasing does not block the job forever.
"""

from __future__ import annotations

import hashlib
import logging
import time
import uuid
from contextlib import contextmanager
from typing import Iterator, Optional

from . import config, db

logger = logging.getLogger(__name__)


def lock_id_for(key: str) -> int:
    """Stable signed 63-bit id for a lock name."""
    digest = hashlib.sha1(key.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") >> 1


class DistributedLock:
    """Non-blocking named mutual exclusion backed by the shared datastore."""

    def __init__(self, ttl_seconds: Optional[int] = None, owner: Optional[str] = None) -> None:
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else config.LOCK_TTL_SECONDS
        self.owner = owner or uuid.uuid4().hex

    def try_acquire(self, key: str) -> bool:
        """Take the lock if nobody holds an unexpired lease. Never waits, and not re-entrant."""
        lock_id = lock_id_for(key)
        now = time.time()
        with db.transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO job_locks (lock_id, owner, acquired_at, expires_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(lock_id) DO UPDATE SET
                  owner       = excluded.owner,
                  acquired_at = excluded.acquired_at,
                  expires_at  = excluded.expires_at
                WHERE job_locks.expires_at <= ?
                """,
                (lock_id, self.owner, now, now + self.ttl_seconds, now),
            )
            # 0 rows when an unexpired lease exists, including our own.
            acquired = cur.rowcount == 1

        if acquired:
            logger.debug("Lock %s acquired by %s", key, self.owner)
        else:
            logger.info("Lock %s is already held", key)
        return acquired

    def release(self, key: str) -> None:
        """Drop the lock if this instance holds it."""
        lock_id = lock_id_for(key)
        with db.connect() as conn:
            cur = conn.execute(
                "DELETE FROM job_locks WHERE lock_id = ? AND owner = ?",
                (lock_id, self.owner),
            )
        if cur.rowcount == 0:
            logger.warning("Lock %s was not held by %s at release (lease expired?)", key, self.owner)
        else:
            logger.debug("Lock %s released by %s", key, self.owner)

    @contextmanager
    def hold(self, key: str) -> Iterator[bool]:
        """
        Yield whether the lock was acquired; release it on every exit path
        when it was.

            with lock.hold(config.LOCK_KEY) as acquired:
                if not acquired:
                    return skipped
                ...
        """
        acquired = self.try_acquire(key)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(key)


__all__ = ["DistributedLock", "lock_id_for"]
