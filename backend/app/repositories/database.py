from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS user_settings (
    user_id TEXT PRIMARY KEY,
    import_mode TEXT NULL,
    import_limit INTEGER NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS channels (
    id TEXT PRIMARY KEY,
    youtube_id TEXT NOT NULL UNIQUE,
    title TEXT NOT NULL,
    thumbnail TEXT NULL,
    uploads_playlist_id TEXT NULL,
    last_playlist_refresh TEXT NULL,
    last_fetched_at TEXT NULL,
    activity_level TEXT NOT NULL DEFAULT 'medium',
    health_status TEXT NOT NULL DEFAULT 'healthy',
    consecutive_failures INTEGER NOT NULL DEFAULT 0,
    last_success_at TEXT NULL,
    last_failure_at TEXT NULL,
    last_failure_reason TEXT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_channels_activity_fetched
ON channels(activity_level, last_fetched_at);

CREATE TABLE IF NOT EXISTS channel_groups (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_channel_groups_user
ON channel_groups(user_id);

CREATE TABLE IF NOT EXISTS group_channels (
    group_id TEXT NOT NULL,
    channel_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (group_id, channel_id),
    FOREIGN KEY(group_id) REFERENCES channel_groups(id) ON DELETE CASCADE,
    FOREIGN KEY(channel_id) REFERENCES channels(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS user_playlists (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    youtube_playlist_id TEXT NOT NULL,
    title TEXT NOT NULL,
    last_fetched_at TEXT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (user_id, youtube_playlist_id)
);

CREATE TABLE IF NOT EXISTS group_playlists (
    group_id TEXT NOT NULL,
    playlist_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (group_id, playlist_id),
    FOREIGN KEY(group_id) REFERENCES channel_groups(id) ON DELETE CASCADE,
    FOREIGN KEY(playlist_id) REFERENCES user_playlists(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS videos (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    channel_id TEXT NOT NULL,
    youtube_id TEXT NOT NULL,
    title TEXT NOT NULL,
    thumbnail TEXT NULL,
    duration TEXT NULL,
    duration_seconds INTEGER NULL,
    is_short INTEGER NOT NULL DEFAULT 0,
    description TEXT NULL,
    published_at TEXT NULL,
    source_playlist_id TEXT NULL,
    sync_id TEXT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (user_id, youtube_id)
);

CREATE INDEX IF NOT EXISTS idx_videos_user_channel
ON videos(user_id, channel_id);

CREATE INDEX IF NOT EXISTS idx_videos_channel_published
ON videos(channel_id, published_at DESC);

CREATE TABLE IF NOT EXISTS video_channels (
    user_id TEXT NOT NULL,
    youtube_id TEXT NOT NULL,
    channel_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (user_id, youtube_id, channel_id)
);

CREATE TABLE IF NOT EXISTS video_trash (
    user_id TEXT NOT NULL,
    youtube_id TEXT NOT NULL,
    trashed_at TEXT NOT NULL,
    PRIMARY KEY (user_id, youtube_id)
);

CREATE TABLE IF NOT EXISTS sync_staging_videos (
    sync_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    channel_id TEXT NOT NULL,
    youtube_id TEXT NOT NULL,
    title TEXT NOT NULL,
    thumbnail TEXT NULL,
    duration TEXT NULL,
    duration_seconds INTEGER NULL,
    is_short INTEGER NOT NULL DEFAULT 0,
    description TEXT NULL,
    published_at TEXT NULL,
    source_playlist_id TEXT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (sync_id, youtube_id)
);

CREATE INDEX IF NOT EXISTS idx_sync_staging_videos_created
ON sync_staging_videos(created_at);

CREATE TABLE IF NOT EXISTS sync_staging_video_channels (
    sync_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    youtube_id TEXT NOT NULL,
    channel_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (sync_id, youtube_id, channel_id)
);

CREATE INDEX IF NOT EXISTS idx_sync_staging_video_channels_created
ON sync_staging_video_channels(created_at);

CREATE TABLE IF NOT EXISTS sync_runs (
    sync_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    trigger TEXT NOT NULL,
    phase TEXT NOT NULL,
    status TEXT NOT NULL,
    message TEXT NULL,
    total_channels INTEGER NOT NULL DEFAULT 0,
    channels_processed INTEGER NOT NULL DEFAULT 0,
    channels_failed INTEGER NOT NULL DEFAULT 0,
    channels_skipped INTEGER NOT NULL DEFAULT 0,
    total_playlists INTEGER NOT NULL DEFAULT 0,
    playlists_processed INTEGER NOT NULL DEFAULT 0,
    videos_added INTEGER NOT NULL DEFAULT 0,
    quota_used INTEGER NOT NULL DEFAULT 0,
    current_item TEXT NULL,
    errors_json TEXT NOT NULL DEFAULT '[]',
    queued_channel_ids_json TEXT NOT NULL DEFAULT '[]',
    processed_channel_ids_json TEXT NOT NULL DEFAULT '[]',
    paused_for_quota INTEGER NOT NULL DEFAULT 0,
    resume_after TEXT NULL,
    resumed_by_sync_id TEXT NULL,
    started_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT NULL
);

CREATE INDEX IF NOT EXISTS idx_sync_runs_user_started
ON sync_runs(user_id, started_at DESC);

CREATE INDEX IF NOT EXISTS idx_sync_runs_paused
ON sync_runs(paused_for_quota, resume_after);

CREATE TABLE IF NOT EXISTS sync_locks (
    id TEXT NOT NULL,
    user_id TEXT PRIMARY KEY,
    sync_id TEXT NULL,
    acquired_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    cancelled INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS api_quota (
    user_id TEXT NOT NULL,
    date_utc TEXT NOT NULL,
    units_used INTEGER NOT NULL,
    calls INTEGER NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (user_id, date_utc)
);

CREATE TABLE IF NOT EXISTS sync_alerts (
    id TEXT PRIMARY KEY,
    alert_type TEXT NOT NULL,
    severity TEXT NOT NULL,
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    data_json TEXT NOT NULL,
    created_at TEXT NOT NULL,
    acknowledged_at TEXT NULL
);

CREATE INDEX IF NOT EXISTS idx_sync_alerts_created
ON sync_alerts(created_at DESC);

CREATE TABLE IF NOT EXISTS scheduled_task_runs (
    task_name TEXT PRIMARY KEY,
    last_started_at TEXT NULL,
    last_finished_at TEXT NULL,
    last_status TEXT NULL,
    last_result_json TEXT NULL
);
"""


class Database:
    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction that takes the database write lock up front.

        Everything executed inside commits together; any exception discards it.
        """
        with self.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise

    def initialize(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA_SQL)

    def ping(self) -> None:
        with self.connection() as conn:
            conn.execute("SELECT 1").fetchone()
