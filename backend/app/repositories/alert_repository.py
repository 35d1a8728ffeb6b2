from __future__ import annotations

import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Literal
from uuid import uuid4

from backend.app.repositories.common import (
    Clock,
    dumps_json,
    load_json_dict,
    placeholders,
    to_iso,
    utc_now,
)
from backend.app.repositories.database import Database

AlertType = Literal[
    "high_failure_rate",
    "channel_died",
    "quota_warning",
    "quota_exhausted",
    "sync_error",
]
AlertSeverity = Literal["info", "warning", "error", "critical"]


@dataclass(frozen=True)
class AlertRecord:
    id: str
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    data: dict[str, Any]
    created_at: str
    acknowledged_at: str | None


@dataclass(frozen=True)
class AlertCounts:
    total_unacknowledged: int = 0
    critical: int = 0
    error: int = 0
    warning: int = 0
    info: int = 0


class AlertRepository:
    def __init__(self, db: Database, *, clock: Clock = utc_now) -> None:
        self._db = db
        self._clock = clock

    def create(
        self,
        *,
        alert_type: AlertType,
        severity: AlertSeverity,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> AlertRecord:
        record = AlertRecord(
            id=f"alert_{uuid4().hex}",
            alert_type=alert_type,
            severity=severity,
            title=title,
            message=message,
            data=dict(data or {}),
            created_at=to_iso(self._clock()),
            acknowledged_at=None,
        )
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO sync_alerts
                (id, alert_type, severity, title, message, data_json, created_at, acknowledged_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, NULL)
                """,
                (
                    record.id,
                    record.alert_type,
                    record.severity,
                    record.title,
                    record.message,
                    dumps_json(record.data),
                    record.created_at,
                ),
            )
        return record

    def list_unacknowledged(self, *, limit: int = 50) -> list[AlertRecord]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT id, alert_type, severity, title, message, data_json, created_at,
                       acknowledged_at
                FROM sync_alerts
                WHERE acknowledged_at IS NULL
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (max(1, limit),),
            ).fetchall()
        return [_row_to_alert(row) for row in rows]

    def count_unacknowledged(self) -> AlertCounts:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT severity, COUNT(*) AS alert_count
                FROM sync_alerts
                WHERE acknowledged_at IS NULL
                GROUP BY severity
                """
            ).fetchall()
        by_severity = {str(row["severity"]): int(row["alert_count"]) for row in rows}
        return AlertCounts(
            total_unacknowledged=sum(by_severity.values()),
            critical=by_severity.get("critical", 0),
            error=by_severity.get("error", 0),
            warning=by_severity.get("warning", 0),
            info=by_severity.get("info", 0),
        )

    def acknowledge(self, alert_ids: Iterable[str]) -> int:
        ids = list(dict.fromkeys(alert_ids))
        if not ids:
            return 0
        with self._db.connection() as conn:
            cursor = conn.execute(
                f"""
                UPDATE sync_alerts
                SET acknowledged_at = ?
                WHERE acknowledged_at IS NULL AND id IN ({placeholders(len(ids))})
                """,
                (to_iso(self._clock()), *ids),
            )
        return max(0, cursor.rowcount)

    def acknowledge_all(self) -> int:
        with self._db.connection() as conn:
            cursor = conn.execute(
                "UPDATE sync_alerts SET acknowledged_at = ? WHERE acknowledged_at IS NULL",
                (to_iso(self._clock()),),
            )
        return max(0, cursor.rowcount)


def _row_to_alert(row: sqlite3.Row) -> AlertRecord:
    return AlertRecord(
        id=str(row["id"]),
        alert_type=row["alert_type"],
        severity=row["severity"],
        title=str(row["title"]),
        message=str(row["message"]),
        data=load_json_dict(row["data_json"]),
        created_at=str(row["created_at"]),
        acknowledged_at=row["acknowledged_at"],
    )
