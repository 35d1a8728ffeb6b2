from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from backend.app.repositories.common import (
    Clock,
    load_json_list,
    next_utc_midnight,
    placeholders,
    to_iso,
    utc_now,
)
from backend.app.repositories.database import Database

LOGGER = logging.getLogger("tubesync.staging")

STAGING_BATCH_SIZE = 1_000
ORPHAN_SCAN_LIMIT = 1_000


class StagingError(Exception):
    def __init__(self, message: str, *, staged: int, total: int, batch_number: int) -> None:
        super().__init__(message)
        self.staged = staged
        self.total = total
        self.batch_number = batch_number


class StageableVideo(Protocol):
    @property
    def youtube_id(self) -> str: ...

    @property
    def channel_id(self) -> str: ...

    @property
    def title(self) -> str: ...

    @property
    def thumbnail(self) -> str | None: ...

    @property
    def duration(self) -> str | None: ...

    @property
    def duration_seconds(self) -> int | None: ...

    @property
    def is_short(self) -> bool: ...

    @property
    def description(self) -> str | None: ...

    @property
    def published_at(self) -> str | None: ...


@dataclass(frozen=True)
class CommitResult:
    videos_committed: int
    duplicates_linked: int


@dataclass(frozen=True)
class RollbackResult:
    videos_discarded: int
    associations_discarded: int


@dataclass(frozen=True)
class ResumableSync:
    sync_id: str
    user_id: str
    trigger: str
    queued_channel_ids: list[str]
    processed_channel_ids: list[str]
    resume_after: str | None


@dataclass(frozen=True)
class OrphanCleanupResult:
    syncs_cleaned_up: int
    videos_deleted: int
    associations_deleted: int


class StagingRepository:
    """Buffers fetched videos per sync and promotes or discards them atomically."""

    def __init__(
        self,
        db: Database,
        *,
        batch_size: int = STAGING_BATCH_SIZE,
        clock: Clock = utc_now,
    ) -> None:
        self._db = db
        self._batch_size = max(1, batch_size)
        self._clock = clock

    def stage_videos(
        self,
        sync_id: str,
        user_id: str,
        channel_id: str | None,
        videos: Sequence[StageableVideo],
        source_playlist_id: str | None = None,
    ) -> int:
        """Upsert videos into staging. ``channel_id=None`` keeps each video's own channel."""
        if not videos:
            return 0
        created_at = to_iso(self._clock())
        total = len(videos)
        total_batches = (total + self._batch_size - 1) // self._batch_size
        staged = 0
        for batch_number, start in enumerate(range(0, total, self._batch_size), start=1):
            batch = videos[start : start + self._batch_size]
            rows = [
                (
                    sync_id,
                    user_id,
                    channel_id or video.channel_id,
                    video.youtube_id,
                    video.title or "Untitled",
                    video.thumbnail,
                    video.duration,
                    video.duration_seconds,
                    1 if video.is_short else 0,
                    video.description,
                    video.published_at,
                    source_playlist_id,
                    created_at,
                )
                for video in batch
            ]
            try:
                with self._db.connection() as conn:
                    conn.executemany(
                        """
                        INSERT INTO sync_staging_videos (
                            sync_id,
                            user_id,
                            channel_id,
                            youtube_id,
                            title,
                            thumbnail,
                            duration,
                            duration_seconds,
                            is_short,
                            description,
                            published_at,
                            source_playlist_id,
                            created_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(sync_id, youtube_id) DO UPDATE SET
                            channel_id = excluded.channel_id,
                            title = excluded.title,
                            thumbnail = excluded.thumbnail,
                            duration = excluded.duration,
                            duration_seconds = excluded.duration_seconds,
                            is_short = excluded.is_short,
                            description = excluded.description,
                            published_at = excluded.published_at,
                            source_playlist_id = COALESCE(
                                excluded.source_playlist_id,
                                sync_staging_videos.source_playlist_id
                            )
                        """,
                        rows,
                    )
            except sqlite3.Error as exc:
                message = f"Failed to stage video batch {batch_number}/{total_batches}: {exc}"
                LOGGER.error("staging batch_failed sync_id=%s %s", sync_id, message)
                raise StagingError(
                    message, staged=staged, total=total, batch_number=batch_number
                ) from exc
            staged += len(batch)
        return staged

    def stage_video_channels_bulk(
        self,
        sync_id: str,
        user_id: str,
        associations: Sequence[tuple[str, str]],
    ) -> int:
        """Stage (youtube_id, channel_id) pairs used for duplicate-channel bookkeeping."""
        if not associations:
            return 0
        created_at = to_iso(self._clock())
        total = len(associations)
        total_batches = (total + self._batch_size - 1) // self._batch_size
        staged = 0
        for batch_number, start in enumerate(range(0, total, self._batch_size), start=1):
            batch = associations[start : start + self._batch_size]
            try:
                with self._db.connection() as conn:
                    conn.executemany(
                        """
                        INSERT INTO sync_staging_video_channels (
                            sync_id,
                            user_id,
                            youtube_id,
                            channel_id,
                            created_at
                        )
                        VALUES (?, ?, ?, ?, ?)
                        ON CONFLICT(sync_id, youtube_id, channel_id) DO NOTHING
                        """,
                        [
                            (sync_id, user_id, youtube_id, channel_id, created_at)
                            for youtube_id, channel_id in batch
                        ],
                    )
            except sqlite3.Error as exc:
                message = (
                    "Failed to stage video-channel associations batch "
                    f"{batch_number}/{total_batches}: {exc}"
                )
                LOGGER.error("staging batch_failed sync_id=%s %s", sync_id, message)
                raise StagingError(
                    message, staged=staged, total=total, batch_number=batch_number
                ) from exc
            staged += len(batch)
        return staged

    def stage_videos_for_sync(
        self,
        sync_id: str,
        user_id: str,
        channel_id: str | None,
        videos: Sequence[StageableVideo],
        source_playlist_id: str | None = None,
    ) -> int:
        """Stage videos the user has not trashed, plus their channel associations."""
        trashed = self._trashed_ids(user_id, [video.youtube_id for video in videos])
        kept = [video for video in videos if video.youtube_id not in trashed]
        if not kept:
            return 0
        staged = self.stage_videos(sync_id, user_id, channel_id, kept, source_playlist_id)
        self.stage_video_channels_bulk(
            sync_id,
            user_id,
            [(video.youtube_id, channel_id or video.channel_id) for video in kept],
        )
        return staged

    def commit_sync(self, sync_id: str) -> CommitResult:
        now_iso = to_iso(self._clock())
        with self._db.transaction() as conn:
            # Videos trashed while the run was in flight stay trashed.
            conn.execute(
                """
                DELETE FROM sync_staging_videos
                WHERE sync_id = ?
                  AND EXISTS (
                      SELECT 1
                      FROM video_trash AS vt
                      WHERE vt.user_id = sync_staging_videos.user_id
                        AND vt.youtube_id = sync_staging_videos.youtube_id
                  )
                """,
                (sync_id,),
            )
            conn.execute(
                """
                DELETE FROM sync_staging_video_channels
                WHERE sync_id = ?
                  AND EXISTS (
                      SELECT 1
                      FROM video_trash AS vt
                      WHERE vt.user_id = sync_staging_video_channels.user_id
                        AND vt.youtube_id = sync_staging_video_channels.youtube_id
                  )
                """,
                (sync_id,),
            )
            videos_cursor = conn.execute(
                """
                INSERT INTO videos (
                    id,
                    user_id,
                    channel_id,
                    youtube_id,
                    title,
                    thumbnail,
                    duration,
                    duration_seconds,
                    is_short,
                    description,
                    published_at,
                    source_playlist_id,
                    sync_id,
                    created_at,
                    updated_at
                )
                SELECT
                    lower(hex(randomblob(16))),
                    user_id,
                    channel_id,
                    youtube_id,
                    title,
                    thumbnail,
                    duration,
                    duration_seconds,
                    is_short,
                    description,
                    published_at,
                    source_playlist_id,
                    sync_id,
                    ?,
                    ?
                FROM sync_staging_videos
                WHERE sync_id = ?
                ON CONFLICT(user_id, youtube_id) DO UPDATE SET
                    title = excluded.title,
                    thumbnail = excluded.thumbnail,
                    duration = excluded.duration,
                    duration_seconds = excluded.duration_seconds,
                    is_short = excluded.is_short,
                    description = excluded.description,
                    published_at = excluded.published_at,
                    source_playlist_id = COALESCE(
                        excluded.source_playlist_id,
                        videos.source_playlist_id
                    ),
                    sync_id = excluded.sync_id,
                    updated_at = excluded.updated_at
                """,
                (now_iso, now_iso, sync_id),
            )
            videos_committed = max(0, videos_cursor.rowcount)
            links_cursor = conn.execute(
                """
                INSERT INTO video_channels (user_id, youtube_id, channel_id, created_at)
                SELECT user_id, youtube_id, channel_id, created_at
                FROM sync_staging_video_channels
                WHERE sync_id = ?
                ON CONFLICT(user_id, youtube_id, channel_id) DO NOTHING
                """,
                (sync_id,),
            )
            duplicates_linked = max(0, links_cursor.rowcount)
            conn.execute("DELETE FROM sync_staging_videos WHERE sync_id = ?", (sync_id,))
            conn.execute("DELETE FROM sync_staging_video_channels WHERE sync_id = ?", (sync_id,))
            conn.execute(
                """
                UPDATE sync_runs
                SET status = 'committed', updated_at = ?
                WHERE sync_id = ?
                """,
                (now_iso, sync_id),
            )
        LOGGER.info(
            "staging committed sync_id=%s videos=%s links=%s",
            sync_id,
            videos_committed,
            duplicates_linked,
        )
        return CommitResult(videos_committed=videos_committed, duplicates_linked=duplicates_linked)

    def rollback_sync(self, sync_id: str) -> RollbackResult:
        now_iso = to_iso(self._clock())
        with self._db.transaction() as conn:
            videos_cursor = conn.execute(
                "DELETE FROM sync_staging_videos WHERE sync_id = ?",
                (sync_id,),
            )
            links_cursor = conn.execute(
                "DELETE FROM sync_staging_video_channels WHERE sync_id = ?",
                (sync_id,),
            )
            conn.execute(
                """
                UPDATE sync_runs
                SET status = 'rolled_back',
                    paused_for_quota = 0,
                    resume_after = NULL,
                    updated_at = ?
                WHERE sync_id = ?
                """,
                (now_iso, sync_id),
            )
        result = RollbackResult(
            videos_discarded=max(0, videos_cursor.rowcount),
            associations_discarded=max(0, links_cursor.rowcount),
        )
        LOGGER.info(
            "staging rolled_back sync_id=%s videos=%s links=%s",
            sync_id,
            result.videos_discarded,
            result.associations_discarded,
        )
        return result

    def pause_sync_for_quota(self, sync_id: str) -> datetime:
        now = self._clock()
        resume_after = next_utc_midnight(now)
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE sync_runs
                SET paused_for_quota = 1,
                    resume_after = ?,
                    phase = 'quota_paused',
                    updated_at = ?
                WHERE sync_id = ?
                """,
                (to_iso(resume_after), to_iso(now), sync_id),
            )
        LOGGER.info(
            "staging quota_paused sync_id=%s resume_after=%s", sync_id, resume_after.isoformat()
        )
        return resume_after

    def get_resumable_syncs(self, now: datetime | None = None) -> list[ResumableSync]:
        current = now or self._clock()
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT
                    sync_id,
                    user_id,
                    trigger,
                    queued_channel_ids_json,
                    processed_channel_ids_json,
                    resume_after
                FROM sync_runs
                WHERE paused_for_quota = 1
                  AND resumed_by_sync_id IS NULL
                  AND resume_after IS NOT NULL
                  AND resume_after <= ?
                ORDER BY resume_after ASC, started_at ASC
                """,
                (to_iso(current),),
            ).fetchall()
        return [
            ResumableSync(
                sync_id=str(row["sync_id"]),
                user_id=str(row["user_id"]),
                trigger=str(row["trigger"]),
                queued_channel_ids=[
                    str(item) for item in load_json_list(row["queued_channel_ids_json"])
                ],
                processed_channel_ids=[
                    str(item) for item in load_json_list(row["processed_channel_ids_json"])
                ],
                resume_after=row["resume_after"],
            )
            for row in rows
        ]

    def mark_resumed(self, sync_id: str, resumed_by: str) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE sync_runs
                SET resumed_by_sync_id = ?, updated_at = ?
                WHERE sync_id = ?
                """,
                (resumed_by, to_iso(self._clock()), sync_id),
            )

    def get_staged_video_count(self, sync_id: str) -> int:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS staged FROM sync_staging_videos WHERE sync_id = ?",
                (sync_id,),
            ).fetchone()
        return int(row["staged"]) if row is not None else 0

    def is_video_staged(self, sync_id: str, youtube_id: str) -> bool:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT 1
                FROM sync_staging_videos
                WHERE sync_id = ? AND youtube_id = ?
                """,
                (sync_id, youtube_id),
            ).fetchone()
        return row is not None

    def cleanup_orphaned_staging(self, max_age_seconds: int) -> OrphanCleanupResult:
        """Drop staging rows left behind by runs that crashed before deciding."""
        now = self._clock()
        cutoff = to_iso(now - timedelta(seconds=max(0, max_age_seconds)))
        with self._db.transaction() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT s.sync_id
                FROM sync_staging_videos AS s
                WHERE s.created_at < ?
                  AND NOT EXISTS (
                      SELECT 1
                      FROM sync_locks AS l
                      WHERE l.sync_id = s.sync_id AND l.expires_at > ?
                  )
                  AND NOT EXISTS (
                      SELECT 1
                      FROM sync_runs AS r
                      WHERE r.sync_id = s.sync_id
                        AND r.paused_for_quota = 1
                        AND r.resumed_by_sync_id IS NULL
                  )
                LIMIT ?
                """,
                (cutoff, to_iso(now), ORPHAN_SCAN_LIMIT),
            ).fetchall()
            sync_ids = [str(row["sync_id"]) for row in rows]
            if not sync_ids:
                return OrphanCleanupResult(0, 0, 0)
            marks = placeholders(len(sync_ids))
            videos_cursor = conn.execute(
                f"DELETE FROM sync_staging_videos WHERE sync_id IN ({marks})",
                sync_ids,
            )
            links_cursor = conn.execute(
                f"DELETE FROM sync_staging_video_channels WHERE sync_id IN ({marks})",
                sync_ids,
            )
        result = OrphanCleanupResult(
            syncs_cleaned_up=len(sync_ids),
            videos_deleted=max(0, videos_cursor.rowcount),
            associations_deleted=max(0, links_cursor.rowcount),
        )
        LOGGER.info(
            "staging orphans_cleaned syncs=%s videos=%s links=%s",
            result.syncs_cleaned_up,
            result.videos_deleted,
            result.associations_deleted,
        )
        return result

    def _trashed_ids(self, user_id: str, youtube_ids: Iterable[str]) -> set[str]:
        ids = list(dict.fromkeys(youtube_ids))
        if not ids:
            return set()
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT youtube_id
                FROM video_trash
                WHERE user_id = ? AND youtube_id IN ({placeholders(len(ids))})
                """,
                [user_id, *ids],
            ).fetchall()
        return {str(row["youtube_id"]) for row in rows}
