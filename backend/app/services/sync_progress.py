from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import replace
from typing import Any

from backend.app.repositories.common import Clock, to_iso, utc_now
from backend.app.repositories.sync_run_repository import SyncPhase, SyncRun, SyncRunRepository

LOGGER = logging.getLogger("tubesync.sync_progress")

DEFAULT_WRITE_EVERY = 10
MAX_RECORDED_ERRORS = 200


class SyncProgressTracker:
    """In-memory view of one sync run, persisted to ``sync_runs`` for polling clients.

    Per-channel updates are written on the first channel, every ``write_every``
    channels, and the last one. Phase changes and terminal states always write.
    """

    def __init__(
        self,
        repository: SyncRunRepository,
        *,
        sync_id: str,
        user_id: str,
        trigger: str,
        write_every: int = DEFAULT_WRITE_EVERY,
        clock: Clock = utc_now,
    ) -> None:
        self._repository = repository
        self._write_every = max(1, write_every)
        self._clock = clock
        now_iso = to_iso(clock())
        self._run = SyncRun(
            sync_id=sync_id,
            user_id=user_id,
            trigger=trigger,
            phase="idle",
            status="running",
            started_at=now_iso,
            updated_at=now_iso,
        )
        self._dirty = False

    @property
    def run(self) -> SyncRun:
        return self._run

    @property
    def sync_id(self) -> str:
        return self._run.sync_id

    def start(self) -> None:
        self._run = replace(self._run, phase="starting", message="Starting sync")
        self._repository.create(self._run)

    def set_targets(
        self,
        *,
        channel_ids: Sequence[str],
        total_playlists: int = 0,
        skipped: int = 0,
    ) -> None:
        self._update(
            total_channels=len(channel_ids),
            queued_channel_ids=list(channel_ids),
            total_playlists=total_playlists,
            channels_skipped=self._run.channels_skipped + skipped,
        )
        self.flush()

    def set_phase(self, phase: SyncPhase, message: str | None = None) -> None:
        self._update(phase=phase, message=message or self._run.message, current_item=None)
        self.flush()

    def update_channel(self, index: int, title: str) -> None:
        total = self._run.total_channels
        self._update(current_item=f"Channel {index}/{total}: {title}")
        if index == 1 or index == total or index % self._write_every == 0:
            self.flush()

    def update_playlist(self, index: int, title: str) -> None:
        self._update(current_item=f"Playlist {index}/{self._run.total_playlists}: {title}")
        self.flush()

    def record_channel_success(self, channel_id: str, *, videos_staged: int) -> None:
        self._update(
            channels_processed=self._run.channels_processed + 1,
            videos_added=self._run.videos_added + videos_staged,
            processed_channel_ids=[*self._run.processed_channel_ids, channel_id],
        )

    def record_channel_failure(self, channel_id: str, *, channel_title: str, reason: str) -> None:
        LOGGER.warning(
            "sync channel_failed sync_id=%s channel_id=%s reason=%s",
            self._run.sync_id,
            channel_id,
            reason,
        )
        self._update(
            channels_failed=self._run.channels_failed + 1,
            processed_channel_ids=[*self._run.processed_channel_ids, channel_id],
        )
        self._record_error(
            {"kind": "channel", "id": channel_id, "title": channel_title, "reason": reason}
        )

    def record_playlist_result(
        self,
        playlist_id: str,
        *,
        title: str,
        videos_staged: int,
        error: str | None = None,
    ) -> None:
        self._update(
            playlists_processed=self._run.playlists_processed + 1,
            videos_added=self._run.videos_added + videos_staged,
        )
        if error is not None:
            LOGGER.warning(
                "sync playlist_failed sync_id=%s playlist_id=%s reason=%s",
                self._run.sync_id,
                playlist_id,
                error,
            )
            self._record_error(
                {"kind": "playlist", "id": playlist_id, "title": title, "reason": error}
            )

    def record_error(self, reason: str) -> None:
        self._record_error({"kind": "run", "reason": reason})

    def set_quota_used(self, units: int) -> None:
        self._update(quota_used=max(0, units))

    def set_videos_added(self, videos_added: int) -> None:
        self._update(videos_added=max(0, videos_added))

    def flush(self) -> None:
        if not self._dirty:
            return
        self._run = replace(self._run, updated_at=to_iso(self._clock()))
        self._repository.save_progress(self._run)
        self._dirty = False

    def complete(self, message: str) -> SyncRun:
        return self._finish("complete", message)

    def fail(self, message: str) -> SyncRun:
        return self._finish("error", message)

    def pause_for_quota(self, message: str) -> SyncRun:
        return self._finish("quota_paused", message)

    def _finish(self, phase: SyncPhase, message: str) -> SyncRun:
        self._update(
            phase=phase,
            message=message,
            current_item=None,
            completed_at=to_iso(self._clock()),
        )
        self.flush()
        return self._run

    def _record_error(self, error: dict[str, str]) -> None:
        if len(self._run.errors) >= MAX_RECORDED_ERRORS:
            return
        stamped = {**error, "at": to_iso(self._clock())}
        self._update(errors=[*self._run.errors, stamped])

    def _update(self, **changes: Any) -> None:
        self._run = replace(self._run, **changes)
        self._dirty = True
