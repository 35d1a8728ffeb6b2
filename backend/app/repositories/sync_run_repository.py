from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from typing import Any, Literal

from backend.app.repositories.common import dumps_json, load_json_list
from backend.app.repositories.database import Database

SyncPhase = Literal[
    "idle",
    "starting",
    "fetching_channel_details",
    "syncing_videos",
    "syncing_playlists",
    "completing",
    "complete",
    "error",
    "quota_paused",
]
SyncRunStatus = Literal["running", "committed", "rolled_back"]

TERMINAL_PHASES: frozenset[str] = frozenset({"complete", "error", "quota_paused"})


@dataclass(frozen=True)
class SyncRun:
    sync_id: str
    user_id: str
    trigger: str
    phase: SyncPhase
    status: SyncRunStatus
    started_at: str
    updated_at: str
    message: str | None = None
    total_channels: int = 0
    channels_processed: int = 0
    channels_failed: int = 0
    channels_skipped: int = 0
    total_playlists: int = 0
    playlists_processed: int = 0
    videos_added: int = 0
    quota_used: int = 0
    current_item: str | None = None
    errors: list[dict[str, Any]] = field(default_factory=list)
    queued_channel_ids: list[str] = field(default_factory=list)
    processed_channel_ids: list[str] = field(default_factory=list)
    paused_for_quota: bool = False
    resume_after: str | None = None
    resumed_by_sync_id: str | None = None
    completed_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES


_RUN_COLUMNS = """
    sync_id,
    user_id,
    trigger,
    phase,
    status,
    message,
    total_channels,
    channels_processed,
    channels_failed,
    channels_skipped,
    total_playlists,
    playlists_processed,
    videos_added,
    quota_used,
    current_item,
    errors_json,
    queued_channel_ids_json,
    processed_channel_ids_json,
    paused_for_quota,
    resume_after,
    resumed_by_sync_id,
    started_at,
    updated_at,
    completed_at
"""


class SyncRunRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def create(self, run: SyncRun) -> None:
        with self._db.connection() as conn:
            conn.execute(
                f"""
                INSERT INTO sync_runs ({_RUN_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run.sync_id,
                    run.user_id,
                    run.trigger,
                    run.phase,
                    run.status,
                    run.message,
                    run.total_channels,
                    run.channels_processed,
                    run.channels_failed,
                    run.channels_skipped,
                    run.total_playlists,
                    run.playlists_processed,
                    run.videos_added,
                    run.quota_used,
                    run.current_item,
                    dumps_json(run.errors),
                    dumps_json(run.queued_channel_ids),
                    dumps_json(run.processed_channel_ids),
                    1 if run.paused_for_quota else 0,
                    run.resume_after,
                    run.resumed_by_sync_id,
                    run.started_at,
                    run.updated_at,
                    run.completed_at,
                ),
            )

    def save_progress(self, run: SyncRun) -> None:
        """Persist the tracker-owned columns.

        Commit status and quota-pause columns belong to the staging layer and
        are left untouched.
        """
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE sync_runs
                SET phase = ?,
                    message = ?,
                    total_channels = ?,
                    channels_processed = ?,
                    channels_failed = ?,
                    channels_skipped = ?,
                    total_playlists = ?,
                    playlists_processed = ?,
                    videos_added = ?,
                    quota_used = ?,
                    current_item = ?,
                    errors_json = ?,
                    queued_channel_ids_json = ?,
                    processed_channel_ids_json = ?,
                    updated_at = ?,
                    completed_at = ?
                WHERE sync_id = ?
                """,
                (
                    run.phase,
                    run.message,
                    run.total_channels,
                    run.channels_processed,
                    run.channels_failed,
                    run.channels_skipped,
                    run.total_playlists,
                    run.playlists_processed,
                    run.videos_added,
                    run.quota_used,
                    run.current_item,
                    dumps_json(run.errors),
                    dumps_json(run.queued_channel_ids),
                    dumps_json(run.processed_channel_ids),
                    run.updated_at,
                    run.completed_at,
                    run.sync_id,
                ),
            )

    def get(self, sync_id: str) -> SyncRun | None:
        with self._db.connection() as conn:
            row = conn.execute(
                f"SELECT {_RUN_COLUMNS} FROM sync_runs WHERE sync_id = ?",
                (sync_id,),
            ).fetchone()
        return _row_to_run(row) if row is not None else None

    def get_latest_for_user(self, user_id: str) -> SyncRun | None:
        runs = self.list_for_user(user_id, limit=1)
        return runs[0] if runs else None

    def list_for_user(self, user_id: str, *, limit: int = 20) -> list[SyncRun]:
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_RUN_COLUMNS}
                FROM sync_runs
                WHERE user_id = ?
                ORDER BY started_at DESC, rowid DESC
                LIMIT ?
                """,
                (user_id, max(1, limit)),
            ).fetchall()
        return [_row_to_run(row) for row in rows]


def _row_to_run(row: sqlite3.Row) -> SyncRun:
    return SyncRun(
        sync_id=str(row["sync_id"]),
        user_id=str(row["user_id"]),
        trigger=str(row["trigger"]),
        phase=row["phase"],
        status=row["status"],
        started_at=str(row["started_at"]),
        updated_at=str(row["updated_at"]),
        message=row["message"],
        total_channels=int(row["total_channels"]),
        channels_processed=int(row["channels_processed"]),
        channels_failed=int(row["channels_failed"]),
        channels_skipped=int(row["channels_skipped"]),
        total_playlists=int(row["total_playlists"]),
        playlists_processed=int(row["playlists_processed"]),
        videos_added=int(row["videos_added"]),
        quota_used=int(row["quota_used"]),
        current_item=row["current_item"],
        errors=[item for item in load_json_list(row["errors_json"]) if isinstance(item, dict)],
        queued_channel_ids=[str(item) for item in load_json_list(row["queued_channel_ids_json"])],
        processed_channel_ids=[
            str(item) for item in load_json_list(row["processed_channel_ids_json"])
        ],
        paused_for_quota=bool(row["paused_for_quota"]),
        resume_after=row["resume_after"],
        resumed_by_sync_id=row["resumed_by_sync_id"],
        completed_at=row["completed_at"],
    )
