from __future__ import annotations

import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Literal
from uuid import uuid4

from backend.app.repositories.common import placeholders, to_iso, utc_now_iso
from backend.app.repositories.database import Database

HealthStatus = Literal["healthy", "warning", "unhealthy", "dead"]
ActivityLevel = Literal["high", "medium", "low"]
ImportMode = Literal["new_only", "limited", "unlimited"]

_CHANNEL_COLUMNS = """
    c.id, c.youtube_id, c.title, c.thumbnail, c.uploads_playlist_id, c.last_playlist_refresh,
    c.last_fetched_at, c.activity_level, c.health_status, c.consecutive_failures,
    c.last_success_at, c.last_failure_at, c.last_failure_reason
"""


@dataclass(frozen=True)
class ChannelRecord:
    id: str
    youtube_id: str
    title: str
    thumbnail: str | None
    uploads_playlist_id: str | None
    last_playlist_refresh: str | None
    last_fetched_at: str | None
    activity_level: ActivityLevel
    health_status: HealthStatus
    consecutive_failures: int
    last_success_at: str | None
    last_failure_at: str | None
    last_failure_reason: str | None


@dataclass(frozen=True)
class UserChannel:
    user_id: str
    channel: ChannelRecord


@dataclass(frozen=True)
class PlaylistRecord:
    id: str
    user_id: str
    youtube_playlist_id: str
    title: str
    last_fetched_at: str | None


class ChannelRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    # Channels.

    def get_or_create_channel(
        self,
        *,
        youtube_id: str,
        title: str,
        uploads_playlist_id: str | None = None,
        thumbnail: str | None = None,
        activity_level: ActivityLevel = "medium",
    ) -> ChannelRecord:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO channels
                (id, youtube_id, title, thumbnail, uploads_playlist_id, activity_level, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(youtube_id) DO NOTHING
                """,
                (
                    f"ch_{uuid4().hex}",
                    youtube_id,
                    title,
                    thumbnail,
                    uploads_playlist_id,
                    activity_level,
                    utc_now_iso(),
                ),
            )
            row = conn.execute(
                f"SELECT {_CHANNEL_COLUMNS} FROM channels c WHERE c.youtube_id = ?",
                (youtube_id,),
            ).fetchone()
        assert row is not None
        return _row_to_channel(row)

    def get_channel(self, channel_id: str) -> ChannelRecord | None:
        with self._db.connection() as conn:
            row = conn.execute(
                f"SELECT {_CHANNEL_COLUMNS} FROM channels c WHERE c.id = ?",
                (channel_id,),
            ).fetchone()
        return _row_to_channel(row) if row is not None else None

    def list_user_channels(
        self,
        user_id: str,
        *,
        channel_id: str | None = None,
        group_id: str | None = None,
        channel_ids: Iterable[str] | None = None,
    ) -> list[ChannelRecord]:
        clauses = ["g.user_id = ?"]
        params: list[object] = [user_id]
        if channel_id is not None:
            clauses.append("c.id = ?")
            params.append(channel_id)
        if group_id is not None:
            clauses.append("g.id = ?")
            params.append(group_id)
        if channel_ids is not None:
            ids = list(dict.fromkeys(channel_ids))
            if not ids:
                return []
            clauses.append(f"c.id IN ({placeholders(len(ids))})")
            params.extend(ids)

        # Least recently fetched first so a run cut short by quota resumes fairly.
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_CHANNEL_COLUMNS}
                FROM channels c
                JOIN group_channels gc ON gc.channel_id = c.id
                JOIN channel_groups g ON g.id = gc.group_id
                WHERE {" AND ".join(clauses)}
                GROUP BY c.id
                ORDER BY c.last_fetched_at IS NOT NULL, c.last_fetched_at ASC, c.youtube_id ASC
                """,
                params,
            ).fetchall()
        return [_row_to_channel(row) for row in rows]

    def mark_fetched(self, channel_id: str, fetched_at: datetime) -> None:
        with self._db.connection() as conn:
            conn.execute(
                "UPDATE channels SET last_fetched_at = ? WHERE id = ?",
                (to_iso(fetched_at), channel_id),
            )

    def set_uploads_playlist_id(
        self,
        channel_id: str,
        uploads_playlist_id: str,
        *,
        refreshed_at: datetime,
    ) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE channels
                SET uploads_playlist_id = ?, last_playlist_refresh = ?
                WHERE id = ?
                """,
                (uploads_playlist_id, to_iso(refreshed_at), channel_id),
            )

    def mark_playlist_refreshed(self, channel_id: str, refreshed_at: datetime) -> None:
        with self._db.connection() as conn:
            conn.execute(
                "UPDATE channels SET last_playlist_refresh = ? WHERE id = ?",
                (to_iso(refreshed_at), channel_id),
            )

    # Candidate sets for scheduled jobs.

    def list_stale_channels(
        self,
        *,
        cutoff: datetime,
        limit: int,
        activity_level: ActivityLevel | None,
    ) -> list[UserChannel]:
        clauses = [
            "c.health_status != 'dead'",
            "(c.last_fetched_at IS NULL OR c.last_fetched_at < ?)",
        ]
        params: list[object] = [to_iso(cutoff)]
        if activity_level is not None:
            clauses.append("c.activity_level = ?")
            params.append(activity_level)
        params.append(max(0, limit))
        return self._list_user_channels_where(
            " AND ".join(clauses),
            params,
            order_by="c.last_fetched_at IS NOT NULL, c.last_fetched_at ASC",
        )

    def list_channels_needing_playlist_refresh(
        self,
        *,
        cutoff: datetime,
        limit: int,
    ) -> list[UserChannel]:
        return self._list_user_channels_where(
            "c.health_status != 'dead' "
            "AND (c.last_playlist_refresh IS NULL OR c.last_playlist_refresh < ?)",
            [to_iso(cutoff), max(0, limit)],
            order_by="c.last_playlist_refresh IS NOT NULL, c.last_playlist_refresh ASC",
        )

    def list_dead_channels(self, *, limit: int) -> list[UserChannel]:
        return self._list_user_channels_where(
            "c.health_status = 'dead'",
            [max(0, limit)],
            order_by="c.last_failure_at ASC",
        )

    def _list_user_channels_where(
        self,
        where_sql: str,
        params: list[object],
        *,
        order_by: str,
    ) -> list[UserChannel]:
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_CHANNEL_COLUMNS}, MIN(g.user_id) AS user_id
                FROM channels c
                JOIN group_channels gc ON gc.channel_id = c.id
                JOIN channel_groups g ON g.id = gc.group_id
                WHERE {where_sql}
                GROUP BY c.id
                ORDER BY {order_by}
                LIMIT ?
                """,
                params,
            ).fetchall()
        return [
            UserChannel(user_id=str(row["user_id"]), channel=_row_to_channel(row))
            for row in rows
        ]

    # Health state, written by the channel health tracker.

    def record_success(self, channel_id: str, at: datetime) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE channels
                SET consecutive_failures = 0,
                    health_status = 'healthy',
                    last_success_at = ?,
                    last_failure_reason = NULL
                WHERE id = ?
                """,
                (to_iso(at), channel_id),
            )

    def record_failure(
        self,
        channel_id: str,
        *,
        at: datetime,
        reason: str,
        warning_after: int,
        unhealthy_after: int,
        dead_after: int,
    ) -> ChannelRecord | None:
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE channels
                SET consecutive_failures = consecutive_failures + 1,
                    health_status = CASE
                        WHEN consecutive_failures + 1 >= ? THEN 'dead'
                        WHEN consecutive_failures + 1 >= ? THEN 'unhealthy'
                        WHEN consecutive_failures + 1 >= ? THEN 'warning'
                        ELSE 'healthy'
                    END,
                    last_failure_at = ?,
                    last_failure_reason = ?
                WHERE id = ?
                """,
                (dead_after, unhealthy_after, warning_after, to_iso(at), reason[:500], channel_id),
            )
            row = conn.execute(
                f"SELECT {_CHANNEL_COLUMNS} FROM channels c WHERE c.id = ?",
                (channel_id,),
            ).fetchone()
        return _row_to_channel(row) if row is not None else None

    def list_channels_with_status(
        self,
        channel_ids: Iterable[str],
        status: HealthStatus,
    ) -> list[ChannelRecord]:
        ids = list(dict.fromkeys(channel_ids))
        if not ids:
            return []
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_CHANNEL_COLUMNS}
                FROM channels c
                WHERE c.health_status = ? AND c.id IN ({placeholders(len(ids))})
                """,
                [status, *ids],
            ).fetchall()
        return [_row_to_channel(row) for row in rows]

    def list_user_unhealthy_channels(self, user_id: str) -> list[ChannelRecord]:
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_CHANNEL_COLUMNS}
                FROM channels c
                JOIN group_channels gc ON gc.channel_id = c.id
                JOIN channel_groups g ON g.id = gc.group_id
                WHERE g.user_id = ? AND c.health_status != 'healthy'
                GROUP BY c.id
                ORDER BY c.consecutive_failures DESC, c.youtube_id ASC
                """,
                (user_id,),
            ).fetchall()
        return [_row_to_channel(row) for row in rows]

    def revive_channels(self, channel_ids: Iterable[str]) -> int:
        ids = list(dict.fromkeys(channel_ids))
        if not ids:
            return 0
        with self._db.connection() as conn:
            cursor = conn.execute(
                f"""
                UPDATE channels
                SET health_status = 'healthy', consecutive_failures = 0, last_failure_reason = NULL
                WHERE id IN ({placeholders(len(ids))})
                """,
                ids,
            )
        return cursor.rowcount

    def list_healthy_channel_levels(self) -> dict[str, ActivityLevel]:
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT id, activity_level FROM channels WHERE health_status = 'healthy'"
            ).fetchall()
        return {str(row["id"]): _coerce_activity_level(row["activity_level"]) for row in rows}

    def count_recent_uploads(
        self,
        channel_ids: Iterable[str],
        *,
        week_cutoff: datetime,
        month_cutoff: datetime,
    ) -> dict[str, tuple[int, int]]:
        ids = list(dict.fromkeys(channel_ids))
        counts: dict[str, tuple[int, int]] = {channel_id: (0, 0) for channel_id in ids}
        if not ids:
            return counts
        # Videos are per-user copies, so count distinct uploads per channel.
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT channel_id,
                       COUNT(
                           DISTINCT CASE WHEN published_at >= ? THEN youtube_id END
                       ) AS week_count,
                       COUNT(DISTINCT youtube_id) AS month_count
                FROM videos
                WHERE published_at >= ? AND channel_id IN ({placeholders(len(ids))})
                GROUP BY channel_id
                """,
                [to_iso(week_cutoff), to_iso(month_cutoff), *ids],
            ).fetchall()
        for row in rows:
            counts[str(row["channel_id"])] = (int(row["week_count"]), int(row["month_count"]))
        return counts

    def set_activity_level(self, channel_ids: Iterable[str], level: ActivityLevel) -> int:
        ids = list(dict.fromkeys(channel_ids))
        if not ids:
            return 0
        with self._db.connection() as conn:
            cursor = conn.execute(
                f"UPDATE channels SET activity_level = ? WHERE id IN ({placeholders(len(ids))})",
                [level, *ids],
            )
        return cursor.rowcount

    # Groups and playlists.

    def create_group(self, *, user_id: str, name: str) -> str:
        group_id = f"grp_{uuid4().hex}"
        with self._db.connection() as conn:
            conn.execute(
                "INSERT INTO channel_groups (id, user_id, name, created_at) VALUES (?, ?, ?, ?)",
                (group_id, user_id, name, utc_now_iso()),
            )
        return group_id

    def add_channel_to_group(self, *, group_id: str, channel_id: str) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO group_channels (group_id, channel_id, created_at)
                VALUES (?, ?, ?)
                ON CONFLICT(group_id, channel_id) DO NOTHING
                """,
                (group_id, channel_id, utc_now_iso()),
            )

    def remove_channel_from_group(self, *, user_id: str, group_id: str, channel_id: str) -> int:
        """Unlink a channel; drop the user's videos once no group of theirs holds it."""
        with self._db.transaction() as conn:
            conn.execute(
                """
                DELETE FROM group_channels
                WHERE group_id = ? AND channel_id = ?
                  AND group_id IN (SELECT id FROM channel_groups WHERE user_id = ?)
                """,
                (group_id, channel_id, user_id),
            )
            still_grouped = conn.execute(
                """
                SELECT 1
                FROM group_channels gc
                JOIN channel_groups g ON g.id = gc.group_id
                WHERE g.user_id = ? AND gc.channel_id = ?
                LIMIT 1
                """,
                (user_id, channel_id),
            ).fetchone()
            if still_grouped is not None:
                return 0
            conn.execute(
                "DELETE FROM video_channels WHERE user_id = ? AND channel_id = ?",
                (user_id, channel_id),
            )
            cursor = conn.execute(
                "DELETE FROM videos WHERE user_id = ? AND channel_id = ?",
                (user_id, channel_id),
            )
            return cursor.rowcount

    def add_playlist(self, *, user_id: str, youtube_playlist_id: str, title: str) -> PlaylistRecord:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO user_playlists (id, user_id, youtube_playlist_id, title, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id, youtube_playlist_id) DO NOTHING
                """,
                (f"pl_{uuid4().hex}", user_id, youtube_playlist_id, title, utc_now_iso()),
            )
            row = conn.execute(
                """
                SELECT id, user_id, youtube_playlist_id, title, last_fetched_at
                FROM user_playlists
                WHERE user_id = ? AND youtube_playlist_id = ?
                """,
                (user_id, youtube_playlist_id),
            ).fetchone()
        assert row is not None
        return _row_to_playlist(row)

    def add_playlist_to_group(self, *, group_id: str, playlist_id: str) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO group_playlists (group_id, playlist_id, created_at)
                VALUES (?, ?, ?)
                ON CONFLICT(group_id, playlist_id) DO NOTHING
                """,
                (group_id, playlist_id, utc_now_iso()),
            )

    def list_grouped_playlists(self, user_id: str) -> list[PlaylistRecord]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT p.id, p.user_id, p.youtube_playlist_id, p.title, p.last_fetched_at
                FROM user_playlists p
                JOIN group_playlists gp ON gp.playlist_id = p.id
                WHERE p.user_id = ?
                GROUP BY p.id
                ORDER BY p.last_fetched_at IS NOT NULL, p.last_fetched_at ASC
                """,
                (user_id,),
            ).fetchall()
        return [_row_to_playlist(row) for row in rows]

    def mark_playlist_fetched(self, playlist_id: str, fetched_at: datetime) -> None:
        with self._db.connection() as conn:
            conn.execute(
                "UPDATE user_playlists SET last_fetched_at = ? WHERE id = ?",
                (to_iso(fetched_at), playlist_id),
            )

    # Per-user video bookkeeping.

    def count_videos_by_channel(self, user_id: str, channel_ids: Iterable[str]) -> dict[str, int]:
        ids = list(dict.fromkeys(channel_ids))
        counts = {channel_id: 0 for channel_id in ids}
        if not ids:
            return counts
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT channel_id, COUNT(*) AS video_count
                FROM videos
                WHERE user_id = ? AND channel_id IN ({placeholders(len(ids))})
                GROUP BY channel_id
                """,
                [user_id, *ids],
            ).fetchall()
        for row in rows:
            counts[str(row["channel_id"])] = int(row["video_count"])
        return counts

    def list_video_ids_from_playlist(self, user_id: str, playlist_id: str) -> set[str]:
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT youtube_id FROM videos WHERE user_id = ? AND source_playlist_id = ?",
                (user_id, playlist_id),
            ).fetchall()
        return {str(row["youtube_id"]) for row in rows}

    def trash_video(self, *, user_id: str, youtube_id: str) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO video_trash (user_id, youtube_id, trashed_at)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id, youtube_id) DO NOTHING
                """,
                (user_id, youtube_id, utc_now_iso()),
            )
            conn.execute(
                "DELETE FROM videos WHERE user_id = ? AND youtube_id = ?",
                (user_id, youtube_id),
            )

    # Import preferences.

    def get_import_settings(self, user_id: str) -> tuple[ImportMode | None, int | None]:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT import_mode, import_limit FROM user_settings WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        if row is None:
            return None, None
        raw_mode = row["import_mode"]
        mode: ImportMode | None = (
            raw_mode if raw_mode in ("new_only", "limited", "unlimited") else None
        )
        raw_limit = row["import_limit"]
        return mode, (int(raw_limit) if isinstance(raw_limit, int) and raw_limit > 0 else None)

    def set_import_settings(
        self,
        *,
        user_id: str,
        mode: ImportMode,
        limit: int | None = None,
    ) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO user_settings (user_id, import_mode, import_limit, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    import_mode = excluded.import_mode,
                    import_limit = excluded.import_limit,
                    updated_at = excluded.updated_at
                """,
                (user_id, mode, limit, utc_now_iso()),
            )


def _row_to_channel(row: sqlite3.Row) -> ChannelRecord:
    raw_status = str(row["health_status"])
    status: HealthStatus = (
        raw_status if raw_status in ("healthy", "warning", "unhealthy", "dead") else "healthy"
    )
    return ChannelRecord(
        id=str(row["id"]),
        youtube_id=str(row["youtube_id"]),
        title=str(row["title"]),
        thumbnail=_none_if_empty(row["thumbnail"]),
        uploads_playlist_id=_none_if_empty(row["uploads_playlist_id"]),
        last_playlist_refresh=_none_if_empty(row["last_playlist_refresh"]),
        last_fetched_at=_none_if_empty(row["last_fetched_at"]),
        activity_level=_coerce_activity_level(row["activity_level"]),
        health_status=status,
        consecutive_failures=int(row["consecutive_failures"]),
        last_success_at=_none_if_empty(row["last_success_at"]),
        last_failure_at=_none_if_empty(row["last_failure_at"]),
        last_failure_reason=_none_if_empty(row["last_failure_reason"]),
    )


def _row_to_playlist(row: sqlite3.Row) -> PlaylistRecord:
    return PlaylistRecord(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        youtube_playlist_id=str(row["youtube_playlist_id"]),
        title=str(row["title"]),
        last_fetched_at=_none_if_empty(row["last_fetched_at"]),
    )


def _coerce_activity_level(value: object) -> ActivityLevel:
    if value == "high":
        return "high"
    if value == "low":
        return "low"
    return "medium"


def _none_if_empty(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None
