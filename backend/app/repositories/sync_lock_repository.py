from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from uuid import uuid4

from backend.app.repositories.common import Clock, to_iso, utc_now
from backend.app.repositories.database import Database

LOGGER = logging.getLogger("tubesync.sync_lock")

DEFAULT_LOCK_TTL_SECONDS = 900


@dataclass(frozen=True)
class SyncLock:
    lock_id: str
    user_id: str
    sync_id: str | None
    acquired_at: str
    expires_at: str
    cancelled: bool


class SyncLockRepository:
    """Per-user advisory lock: insert-if-absent with an expiry."""

    def __init__(
        self,
        db: Database,
        *,
        ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
        clock: Clock = utc_now,
    ) -> None:
        self._db = db
        self._ttl = timedelta(seconds=max(1, ttl_seconds))
        self._clock = clock

    def acquire(self, user_id: str, *, sync_id: str | None = None) -> str | None:
        now = self._clock()
        lock_id = f"lock_{uuid4().hex}"
        with self._db.transaction() as conn:
            conn.execute(
                "DELETE FROM sync_locks WHERE user_id = ? AND expires_at <= ?",
                (user_id, to_iso(now)),
            )
            cursor = conn.execute(
                """
                INSERT INTO sync_locks (id, user_id, sync_id, acquired_at, expires_at, cancelled)
                VALUES (?, ?, ?, ?, ?, 0)
                ON CONFLICT(user_id) DO NOTHING
                """,
                (lock_id, user_id, sync_id, to_iso(now), to_iso(now + self._ttl)),
            )
        if cursor.rowcount != 1:
            LOGGER.info("sync lock busy user_id=%s", user_id)
            return None
        LOGGER.debug("sync lock acquired user_id=%s lock_id=%s", user_id, lock_id)
        return lock_id

    def extend(self, user_id: str, lock_id: str) -> bool:
        now = self._clock()
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE sync_locks
                SET expires_at = ?
                WHERE user_id = ? AND id = ? AND cancelled = 0
                """,
                (to_iso(now + self._ttl), user_id, lock_id),
            )
        extended = cursor.rowcount == 1
        if not extended:
            LOGGER.warning("sync lock extend_failed user_id=%s lock_id=%s", user_id, lock_id)
        return extended

    def release(self, user_id: str, lock_id: str | None = None) -> bool:
        with self._db.connection() as conn:
            if lock_id is None:
                cursor = conn.execute("DELETE FROM sync_locks WHERE user_id = ?", (user_id,))
            else:
                cursor = conn.execute(
                    "DELETE FROM sync_locks WHERE user_id = ? AND id = ?",
                    (user_id, lock_id),
                )
        return cursor.rowcount > 0

    def request_cancellation(self, user_id: str) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE sync_locks
                SET cancelled = 1
                WHERE user_id = ? AND expires_at > ?
                """,
                (user_id, to_iso(self._clock())),
            )
        return cursor.rowcount > 0

    def is_cancelled(self, user_id: str, lock_id: str) -> bool:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT cancelled FROM sync_locks WHERE user_id = ? AND id = ?",
                (user_id, lock_id),
            ).fetchone()
        # A lock that vanished was reaped or released elsewhere.
        if row is None:
            return True
        return bool(row["cancelled"])

    def get_lock(self, user_id: str) -> SyncLock | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT id, user_id, sync_id, acquired_at, expires_at, cancelled
                FROM sync_locks
                WHERE user_id = ? AND expires_at > ?
                """,
                (user_id, to_iso(self._clock())),
            ).fetchone()
        if row is None:
            return None
        return SyncLock(
            lock_id=str(row["id"]),
            user_id=str(row["user_id"]),
            sync_id=row["sync_id"],
            acquired_at=str(row["acquired_at"]),
            expires_at=str(row["expires_at"]),
            cancelled=bool(row["cancelled"]),
        )

    def is_sync_in_progress(self, user_id: str) -> bool:
        return self.get_lock(user_id) is not None

    def cleanup_expired(self) -> int:
        with self._db.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM sync_locks WHERE expires_at <= ?",
                (to_iso(self._clock()),),
            )
        reaped = max(0, cursor.rowcount)
        if reaped:
            LOGGER.info("sync lock expired_reaped count=%s", reaped)
        return reaped
