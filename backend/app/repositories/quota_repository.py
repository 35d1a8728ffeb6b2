from __future__ import annotations

from backend.app.repositories.common import utc_now_iso
from backend.app.repositories.database import Database


class QuotaRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def increment(self, *, user_id: str, date_utc: str, units: int, calls: int = 1) -> int:
        units_to_add = max(0, units)
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO api_quota (user_id, date_utc, units_used, calls, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id, date_utc) DO UPDATE SET
                    units_used = api_quota.units_used + excluded.units_used,
                    calls = api_quota.calls + excluded.calls,
                    updated_at = excluded.updated_at
                """,
                (user_id, date_utc, units_to_add, max(0, calls), utc_now_iso()),
            )
            row = conn.execute(
                """
                SELECT units_used
                FROM api_quota
                WHERE user_id = ? AND date_utc = ?
                """,
                (user_id, date_utc),
            ).fetchone()
        return int(row["units_used"]) if row is not None else units_to_add

    def units_used(self, *, user_id: str, date_utc: str) -> int:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT units_used
                FROM api_quota
                WHERE user_id = ? AND date_utc = ?
                """,
                (user_id, date_utc),
            ).fetchone()
        return int(row["units_used"]) if row is not None else 0
