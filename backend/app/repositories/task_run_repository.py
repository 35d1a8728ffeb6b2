from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from backend.app.repositories.common import dumps_json, load_json_dict, parse_iso_datetime, to_iso
from backend.app.repositories.database import Database

TaskStatus = Literal["running", "ok", "error"]


@dataclass(frozen=True)
class TaskRun:
    task_name: str
    last_started_at: datetime | None
    last_finished_at: datetime | None
    last_status: TaskStatus | None
    last_result: dict[str, Any]


class TaskRunRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def get(self, task_name: str) -> TaskRun | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT task_name, last_started_at, last_finished_at, last_status, last_result_json
                FROM scheduled_task_runs
                WHERE task_name = ?
                """,
                (task_name,),
            ).fetchone()
        return _row_to_task_run(row) if row is not None else None

    def list_all(self) -> list[TaskRun]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT task_name, last_started_at, last_finished_at, last_status, last_result_json
                FROM scheduled_task_runs
                ORDER BY task_name ASC
                """
            ).fetchall()
        return [_row_to_task_run(row) for row in rows]

    def mark_started(self, task_name: str, started_at: datetime) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO scheduled_task_runs (task_name, last_started_at, last_status)
                VALUES (?, ?, 'running')
                ON CONFLICT(task_name) DO UPDATE SET
                    last_started_at = excluded.last_started_at,
                    last_status = excluded.last_status
                """,
                (task_name, to_iso(started_at)),
            )

    def mark_finished(
        self,
        task_name: str,
        *,
        finished_at: datetime,
        status: TaskStatus,
        result: dict[str, Any],
    ) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE scheduled_task_runs
                SET last_finished_at = ?, last_status = ?, last_result_json = ?
                WHERE task_name = ?
                """,
                (to_iso(finished_at), status, dumps_json(result), task_name),
            )


def _row_to_task_run(row: sqlite3.Row) -> TaskRun:
    raw_status = row["last_status"]
    status: TaskStatus | None = raw_status if raw_status in ("running", "ok", "error") else None
    return TaskRun(
        task_name=str(row["task_name"]),
        last_started_at=parse_iso_datetime(row["last_started_at"]),
        last_finished_at=parse_iso_datetime(row["last_finished_at"]),
        last_status=status,
        last_result=load_json_dict(row["last_result_json"]),
    )
