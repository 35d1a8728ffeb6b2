from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Literal
from uuid import uuid4

from backend.app.logging_config import sync_log_context
from backend.app.repositories.channel_repository import (
    ChannelRecord,
    ChannelRepository,
    ImportMode,
    PlaylistRecord,
)
from backend.app.repositories.common import Clock, parse_iso_datetime, utc_now
from backend.app.repositories.staging_repository import (
    CommitResult,
    ResumableSync,
    StagingError,
    StagingRepository,
)
from backend.app.repositories.sync_lock_repository import SyncLockRepository
from backend.app.repositories.sync_run_repository import SyncRun, SyncRunRepository
from backend.app.services.channel_health import ChannelHealthTracker
from backend.app.services.quota_ledger import QuotaLedger, QuotaStatus, estimate_quota_needed
from backend.app.services.sync_alerts import SyncAlertService
from backend.app.services.sync_progress import SyncProgressTracker
from backend.app.services.video_fetch import (
    ChannelFetchResult,
    FetchedVideo,
    FetchOptions,
    ShortsClassifier,
    fetch_channel_details,
    fetch_channel_videos,
    fetch_playlist_videos,
    resolve_uploads_playlist_ids,
)
from backend.app.services.youtube_api import (
    RetryPolicy,
    TokenBucketRateLimiter,
    YouTubeApi,
    YouTubeApiError,
    YouTubeClientProvider,
)
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("tubesync.sync")

SyncOutcomeKind = Literal[
    "success",
    "partial_success",
    "all_failed",
    "quota_paused",
    "cancelled",
    "failed",
    "auth_expired",
    "nothing_to_sync",
]

PLAYLIST_QUOTA_ESTIMATE_UNITS = 2


class SyncAlreadyInProgressError(Exception):
    def __init__(self, user_id: str) -> None:
        super().__init__("A sync is already in progress for this account.")
        self.user_id = user_id


class InsufficientQuotaError(Exception):
    def __init__(self, reason: str, status: QuotaStatus) -> None:
        super().__init__(reason)
        self.reason = reason
        self.status = status


class SyncLockLostError(Exception):
    pass


@dataclass(frozen=True)
class SyncRequest:
    """What to sync. At most one of ``channel_id``, ``group_id``, ``channel_ids``.

    The override fields are for scheduled jobs: ``max_videos_per_channel``
    replaces the user's import mode, and ``use_cursor`` bounds each channel
    by its last-fetched timestamp.
    """

    channel_id: str | None = None
    group_id: str | None = None
    channel_ids: tuple[str, ...] | None = None
    trigger: str = "manual"
    include_playlists: bool = True
    max_videos_per_channel: int | None = None
    use_cursor: bool = True
    allow_critical_quota: bool = False
    resume_of: str | None = None


@dataclass(frozen=True)
class SyncOutcome:
    sync_id: str | None
    kind: SyncOutcomeKind
    message: str
    committed: bool = False
    rolled_back: bool = False
    videos_committed: int = 0
    duplicates_linked: int = 0
    channels_processed: int = 0
    channels_failed: int = 0
    channels_skipped: int = 0
    playlists_processed: int = 0
    quota_used: int = 0
    resume_after: datetime | None = None
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.kind in {"success", "partial_success", "quota_paused", "nothing_to_sync"}


@dataclass
class _RunState:
    cancelled: bool = False
    failed: bool = False
    quota_exhausted: bool = False
    auth_expired: bool = False
    channels_succeeded: int = 0
    channels_failed: int = 0
    playlists_succeeded: int = 0
    failure_reason: str | None = None


@dataclass
class _Maintenance:
    last_lock_extend: float
    last_token_refresh: float


class VideoSyncService:
    def __init__(
        self,
        *,
        channels: ChannelRepository,
        staging: StagingRepository,
        locks: SyncLockRepository,
        runs: SyncRunRepository,
        health: ChannelHealthTracker,
        quota_ledger: QuotaLedger,
        client_provider: YouTubeClientProvider,
        limiter: TokenBucketRateLimiter,
        retry_policy: RetryPolicy,
        classifier: ShortsClassifier,
        telemetry: TelemetryClient,
        alerts: SyncAlertService | None = None,
        default_import_mode: ImportMode = "limited",
        default_import_limit: int = 100,
        unlimited_import_max_results: int = 50_000,
        new_only_max_results: int = 50,
        playlist_import_max_results: int = 5_000,
        lock_extend_interval_seconds: int = 300,
        token_refresh_interval_seconds: int = 1_800,
        progress_write_every: int = 10,
        clock: Clock = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._channels = channels
        self._staging = staging
        self._locks = locks
        self._runs = runs
        self._health = health
        self._quota_ledger = quota_ledger
        self._client_provider = client_provider
        self._limiter = limiter
        self._retry_policy = retry_policy
        self._classifier = classifier
        self._telemetry = telemetry
        self._alerts = alerts
        self._default_import_mode = default_import_mode
        self._default_import_limit = max(1, default_import_limit)
        self._unlimited_import_max_results = max(1, unlimited_import_max_results)
        self._new_only_max_results = max(1, new_only_max_results)
        self._playlist_import_max_results = max(1, playlist_import_max_results)
        self._lock_extend_interval_seconds = max(1, lock_extend_interval_seconds)
        self._token_refresh_interval_seconds = max(1, token_refresh_interval_seconds)
        self._progress_write_every = max(1, progress_write_every)
        self._clock = clock
        self._monotonic = monotonic
        self._sleep = sleep

    def start_sync(self, user_id: str, request: SyncRequest | None = None) -> SyncOutcome:
        request = request or SyncRequest()
        channels = self._resolve_channels(user_id, request)
        playlists = (
            self._channels.list_grouped_playlists(user_id) if request.include_playlists else []
        )
        if not channels and not playlists:
            if request.resume_of is not None:
                # Nothing left of the paused run; close it out so it is not offered again.
                self._staging.mark_resumed(request.resume_of, request.resume_of)
            return SyncOutcome(
                sync_id=None,
                kind="nothing_to_sync",
                message=_empty_selection_message(request),
            )

        sync_id = f"sync_{uuid4().hex}"
        lock_id = self._locks.acquire(user_id, sync_id=sync_id)
        if lock_id is None:
            self._telemetry.emit(
                "sync.run.rejected", user_id=user_id, trigger=request.trigger, reason="in_progress"
            )
            raise SyncAlreadyInProgressError(user_id)

        try:
            with sync_log_context(sync_id=sync_id, user_id=user_id, trigger=request.trigger):
                return self._run(
                    user_id=user_id,
                    sync_id=sync_id,
                    lock_id=lock_id,
                    request=request,
                    channels=channels,
                    playlists=playlists,
                )
        finally:
            self._locks.release(user_id, lock_id)

    def resume_sync(self, resumable: ResumableSync) -> SyncOutcome:
        processed = set(resumable.processed_channel_ids)
        remaining = tuple(
            channel_id for channel_id in resumable.queued_channel_ids if channel_id not in processed
        )
        LOGGER.info(
            "sync resuming paused_sync_id=%s remaining_channels=%s",
            resumable.sync_id,
            len(remaining),
        )
        return self.start_sync(
            resumable.user_id,
            SyncRequest(
                channel_ids=remaining,
                trigger="resume",
                include_playlists=True,
                resume_of=resumable.sync_id,
            ),
        )

    def get_progress(self, user_id: str) -> SyncRun | None:
        return self._runs.get_latest_for_user(user_id)

    def list_history(self, user_id: str, *, limit: int = 20) -> list[SyncRun]:
        return self._runs.list_for_user(user_id, limit=limit)

    def cancel_sync(self, user_id: str) -> bool:
        cancelled = self._locks.request_cancellation(user_id)
        LOGGER.info("sync cancel_requested user_id=%s accepted=%s", user_id, cancelled)
        return cancelled

    def _resolve_channels(self, user_id: str, request: SyncRequest) -> list[ChannelRecord]:
        channels = self._channels.list_user_channels(
            user_id,
            channel_id=request.channel_id,
            group_id=request.group_id,
            channel_ids=request.channel_ids,
        )
        if request.channel_ids is not None:
            # Explicit lists keep their order so a resume picks up where the pause left off.
            position = {channel_id: index for index, channel_id in enumerate(request.channel_ids)}
            channels.sort(key=lambda channel: position.get(channel.id, len(position)))
        return channels

    def _run(
        self,
        *,
        user_id: str,
        sync_id: str,
        lock_id: str,
        request: SyncRequest,
        channels: list[ChannelRecord],
        playlists: list[PlaylistRecord],
    ) -> SyncOutcome:
        skippable = self._health.get_skippable_channel_ids(channel.id for channel in channels)
        active = [channel for channel in channels if channel.id not in skippable]

        mode, limit = self._import_settings(user_id)
        estimated = estimate_quota_needed(
            channel_count=len(active),
            videos_per_channel=request.max_videos_per_channel or _mode_estimate(mode, limit),
        ) + len(playlists) * PLAYLIST_QUOTA_ESTIMATE_UNITS
        quota_check = self._quota_ledger.check_available(
            user_id,
            estimated,
            allow_critical=request.allow_critical_quota,
        )
        if not quota_check.allowed:
            reason = quota_check.reason or "Insufficient quota"
            self._telemetry.emit(
                "sync.run.rejected",
                user_id=user_id,
                trigger=request.trigger,
                reason="quota",
                estimated_units=estimated,
                remaining=quota_check.status.remaining,
            )
            raise InsufficientQuotaError(reason, quota_check.status)

        tracker = SyncProgressTracker(
            self._runs,
            sync_id=sync_id,
            user_id=user_id,
            trigger=request.trigger,
            write_every=self._progress_write_every,
            clock=self._clock,
        )
        tracker.start()
        if request.resume_of is not None:
            self._staging.mark_resumed(request.resume_of, sync_id)
        tracker.set_targets(
            channel_ids=[channel.id for channel in active],
            total_playlists=len(playlists),
            skipped=len(skippable),
        )
        self._telemetry.emit(
            "sync.run.start",
            sync_id=sync_id,
            user_id=user_id,
            trigger=request.trigger,
            channels=len(active),
            skipped=len(skippable),
            playlists=len(playlists),
            estimated_units=estimated,
        )
        LOGGER.info(
            "sync started sync_id=%s user_id=%s channels=%s skipped=%s playlists=%s",
            sync_id,
            user_id,
            len(active),
            len(skippable),
            len(playlists),
        )

        try:
            api = self.build_api(user_id)
        except YouTubeApiError as exc:
            tracker.record_error(str(exc))
            self._staging.rollback_sync(sync_id)
            tracker.fail(str(exc))
            self._telemetry.emit(
                "sync.run.finish", sync_id=sync_id, user_id=user_id, kind="failed", error=str(exc)
            )
            raise

        state = _RunState()
        now = self._monotonic()
        maintenance = _Maintenance(last_lock_extend=now, last_token_refresh=now)
        try:
            active = self._ensure_uploads_playlists(api, active, tracker, state)
            tracker.set_phase("syncing_videos", f"Syncing {len(active)} channels")
            self._sync_channels(
                api,
                user_id=user_id,
                sync_id=sync_id,
                lock_id=lock_id,
                request=request,
                channels=active,
                mode=mode,
                limit=limit,
                tracker=tracker,
                state=state,
                maintenance=maintenance,
            )
            if playlists and not (
                state.cancelled or state.failed or state.quota_exhausted or state.auth_expired
            ):
                tracker.set_phase("syncing_playlists", f"Syncing {len(playlists)} playlists")
                self._sync_playlists(
                    api,
                    user_id=user_id,
                    sync_id=sync_id,
                    lock_id=lock_id,
                    playlists=playlists,
                    tracker=tracker,
                    state=state,
                    maintenance=maintenance,
                )
        except SyncLockLostError as exc:
            state.failed = True
            state.failure_reason = str(exc)
            tracker.record_error(str(exc))
        except Exception:
            LOGGER.exception("sync run_failed sync_id=%s user_id=%s", sync_id, user_id)
            self._abort_run(user_id=user_id, sync_id=sync_id, tracker=tracker)
            raise

        tracker.set_quota_used(api.calls_made)
        return self._finalize(
            user_id=user_id,
            sync_id=sync_id,
            request=request,
            tracker=tracker,
            state=state,
            total_channels=len(active),
            skipped=len(skippable),
        )

    def _sync_channels(
        self,
        api: YouTubeApi,
        *,
        user_id: str,
        sync_id: str,
        lock_id: str,
        request: SyncRequest,
        channels: Sequence[ChannelRecord],
        mode: ImportMode,
        limit: int,
        tracker: SyncProgressTracker,
        state: _RunState,
        maintenance: _Maintenance,
    ) -> None:
        if not channels or state.quota_exhausted:
            return
        video_counts = self._channels.count_videos_by_channel(
            user_id, [channel.id for channel in channels]
        )
        for index, channel in enumerate(channels, start=1):
            if self._locks.is_cancelled(user_id, lock_id):
                LOGGER.info("sync cancelled sync_id=%s at_channel=%s", sync_id, index)
                state.cancelled = True
                return
            self._maintain(user_id=user_id, lock_id=lock_id, maintenance=maintenance)
            if self._token_refresh_due(maintenance) and not self._refresh_token(
                api, user_id=user_id, maintenance=maintenance
            ):
                state.auth_expired = True
                tracker.record_error("Authentication expired during sync")
                return

            tracker.update_channel(index, channel.title)
            skip, since, max_results = self._fetch_window(
                channel,
                existing_videos=video_counts.get(channel.id, 0),
                mode=mode,
                limit=limit,
                request=request,
            )
            if skip:
                # New-only mode starts a new channel's cursor at now.
                self._channels.mark_fetched(channel.id, self._clock())
                self._health.record_success(channel.id)
                tracker.record_channel_success(channel.id, videos_staged=0)
                state.channels_succeeded += 1
                continue

            with self._telemetry.span(
                "sync.channel", sync_id=sync_id, channel_id=channel.id
            ) as span_attributes:
                result = self._fetch_channel(api, channel, since=since, max_results=max_results)
                span_attributes.update(
                    videos=len(result.videos),
                    api_calls=result.api_calls_made,
                    quota_exhausted=result.quota_exhausted,
                )
            tracker.set_quota_used(api.calls_made)

            if result.quota_exhausted:
                LOGGER.info(
                    "sync quota_exhausted sync_id=%s at_channel=%s/%s",
                    sync_id,
                    index,
                    len(channels),
                )
                state.quota_exhausted = True
                # Partial videos are kept; the channel stays queued for the resume.
                self._stage(sync_id, user_id, channel, result.videos, tracker, state)
                return

            if result.error is not None and not result.videos:
                self._record_channel_failure(channel, result.error, tracker, state)
                continue

            staged = self._stage(sync_id, user_id, channel, result.videos, tracker, state)
            if staged is None:
                return
            self._channels.mark_fetched(channel.id, self._clock())
            self._health.record_success(channel.id)
            tracker.record_channel_success(channel.id, videos_staged=staged)
            state.channels_succeeded += 1

    def _fetch_channel(
        self,
        api: YouTubeApi,
        channel: ChannelRecord,
        *,
        since: datetime | None,
        max_results: int,
    ) -> ChannelFetchResult:
        uploads_playlist_id = channel.uploads_playlist_id or ""
        result = fetch_channel_videos(
            api,
            uploads_playlist_id=uploads_playlist_id,
            channel_id=channel.id,
            since=since,
            max_results=max_results,
            classifier=self._classifier,
            options=FetchOptions(filter_shorts=True),
            clock=self._clock,
        )
        if not (result.list_not_found and result.should_refresh_list_id):
            return result

        LOGGER.info(
            "sync uploads_playlist_stale channel_id=%s youtube_id=%s",
            channel.id,
            channel.youtube_id,
        )
        try:
            fresh_id = resolve_uploads_playlist_ids(api, [channel.youtube_id]).get(
                channel.youtube_id
            )
        except YouTubeApiError as exc:
            if exc.code == "QUOTA_EXCEEDED":
                return ChannelFetchResult(videos=[], error=str(exc), quota_exhausted=True)
            fresh_id = None
        if fresh_id is None or fresh_id == uploads_playlist_id:
            return ChannelFetchResult(
                videos=[],
                error="Channel uploads playlist not found (may have been deleted)",
                list_not_found=True,
            )

        self._channels.set_uploads_playlist_id(channel.id, fresh_id, refreshed_at=self._clock())
        retried = fetch_channel_videos(
            api,
            uploads_playlist_id=fresh_id,
            channel_id=channel.id,
            since=since,
            max_results=max_results,
            classifier=self._classifier,
            options=FetchOptions(filter_shorts=True),
            clock=self._clock,
        )
        if retried.list_not_found:
            return replace(
                retried, error="Channel uploads playlist not found (may have been deleted)"
            )
        return retried

    def _sync_playlists(
        self,
        api: YouTubeApi,
        *,
        user_id: str,
        sync_id: str,
        lock_id: str,
        playlists: Sequence[PlaylistRecord],
        tracker: SyncProgressTracker,
        state: _RunState,
        maintenance: _Maintenance,
    ) -> None:
        for index, playlist in enumerate(playlists, start=1):
            if self._locks.is_cancelled(user_id, lock_id):
                state.cancelled = True
                return
            self._maintain(user_id=user_id, lock_id=lock_id, maintenance=maintenance)
            tracker.update_playlist(index, playlist.title)

            existing = self._channels.list_video_ids_from_playlist(user_id, playlist.id)
            result = fetch_playlist_videos(
                api,
                playlist_id=playlist.youtube_playlist_id,
                classifier=self._classifier,
                max_results=self._playlist_import_max_results,
                existing_video_ids=existing,
                options=FetchOptions(filter_shorts=True),
                clock=self._clock,
            )
            tracker.set_quota_used(api.calls_made)

            videos = self._attach_playlist_channels(result.videos)
            staged = 0
            if videos:
                try:
                    staged = self._staging.stage_videos_for_sync(
                        sync_id, user_id, None, videos, source_playlist_id=playlist.id
                    )
                except StagingError as exc:
                    self._record_staging_failure(playlist.title, exc, tracker, state)
                    return

            if result.quota_exhausted:
                state.quota_exhausted = True
                tracker.record_playlist_result(
                    playlist.id, title=playlist.title, videos_staged=staged
                )
                return

            error = result.error if result.error is not None and not videos else None
            tracker.record_playlist_result(
                playlist.id, title=playlist.title, videos_staged=staged, error=error
            )
            if error is None:
                self._channels.mark_playlist_fetched(playlist.id, self._clock())
                state.playlists_succeeded += 1

    def _attach_playlist_channels(self, videos: Sequence[FetchedVideo]) -> list[FetchedVideo]:
        """Map uploader YouTube ids to local channels, creating rows for new uploaders."""
        titles: dict[str, str] = {}
        for video in videos:
            if video.channel_id != "unknown" and video.channel_id not in titles:
                titles[video.channel_id] = video.channel_title or video.channel_id
        local_ids = {
            youtube_id: self._channels.get_or_create_channel(youtube_id=youtube_id, title=title).id
            for youtube_id, title in titles.items()
        }
        return [
            replace(video, channel_id=local_ids[video.channel_id])
            for video in videos
            if video.channel_id in local_ids
        ]

    def _stage(
        self,
        sync_id: str,
        user_id: str,
        channel: ChannelRecord,
        videos: Sequence[FetchedVideo],
        tracker: SyncProgressTracker,
        state: _RunState,
    ) -> int | None:
        if not videos:
            return 0
        try:
            return self._staging.stage_videos_for_sync(sync_id, user_id, channel.id, videos)
        except StagingError as exc:
            self._record_staging_failure(channel.title, exc, tracker, state)
            return None

    def _record_staging_failure(
        self,
        title: str,
        exc: StagingError,
        tracker: SyncProgressTracker,
        state: _RunState,
    ) -> None:
        LOGGER.error(
            "sync staging_failed title=%s staged=%s total=%s batch=%s",
            title,
            exc.staged,
            exc.total,
            exc.batch_number,
        )
        state.failed = True
        state.failure_reason = f"Staging failed: {exc} (saved {exc.staged}/{exc.total} videos)"
        tracker.record_error(state.failure_reason)

    def _record_channel_failure(
        self,
        channel: ChannelRecord,
        reason: str,
        tracker: SyncProgressTracker,
        state: _RunState,
    ) -> None:
        updated = self._health.record_failure(channel.id, reason)
        self._channels.mark_fetched(channel.id, self._clock())
        tracker.record_channel_failure(channel.id, channel_title=channel.title, reason=reason)
        state.channels_failed += 1
        if (
            self._alerts is not None
            and updated is not None
            and updated.health_status == "dead"
            and channel.health_status != "dead"
        ):
            self._alerts.channel_died(updated)

    def _ensure_uploads_playlists(
        self,
        api: YouTubeApi,
        channels: list[ChannelRecord],
        tracker: SyncProgressTracker,
        state: _RunState,
    ) -> list[ChannelRecord]:
        missing = [channel for channel in channels if channel.uploads_playlist_id is None]
        if not missing:
            return channels

        tracker.set_phase(
            "fetching_channel_details", f"Fetching details for {len(missing)} channels"
        )
        try:
            details = fetch_channel_details(api, [channel.youtube_id for channel in missing])
        except YouTubeApiError as exc:
            if exc.code == "QUOTA_EXCEEDED":
                state.quota_exhausted = True
            LOGGER.warning("sync channel_details_failed code=%s error=%s", exc.code, exc)
            details = {}

        now = self._clock()
        resolved: list[ChannelRecord] = []
        for channel in channels:
            if channel.uploads_playlist_id is not None:
                resolved.append(channel)
                continue
            detail = details.get(channel.youtube_id)
            if detail is None or detail.uploads_playlist_id is None:
                if not state.quota_exhausted:
                    self._record_channel_failure(
                        channel, "Channel details unavailable", tracker, state
                    )
                continue
            self._channels.set_uploads_playlist_id(
                channel.id, detail.uploads_playlist_id, refreshed_at=now
            )
            resolved.append(replace(channel, uploads_playlist_id=detail.uploads_playlist_id))
        return resolved

    def _fetch_window(
        self,
        channel: ChannelRecord,
        *,
        existing_videos: int,
        mode: ImportMode,
        limit: int,
        request: SyncRequest,
    ) -> tuple[bool, datetime | None, int]:
        """Return (skip, since, max_results) for one channel."""
        cursor = parse_iso_datetime(channel.last_fetched_at)

        if request.max_videos_per_channel is not None:
            # A channel whose videos were all removed re-imports from scratch.
            use_cursor = request.use_cursor and existing_videos > 0
            return False, cursor if use_cursor else None, request.max_videos_per_channel
        if mode == "new_only":
            # A channel with nothing committed is new whatever its stored cursor says.
            if cursor is None or existing_videos == 0:
                return True, None, 0
            return False, cursor, self._new_only_max_results
        if mode == "unlimited":
            return False, None, self._unlimited_import_max_results
        return False, None, limit

    def _finalize(
        self,
        *,
        user_id: str,
        sync_id: str,
        request: SyncRequest,
        tracker: SyncProgressTracker,
        state: _RunState,
        total_channels: int,
        skipped: int,
    ) -> SyncOutcome:
        tracker.set_phase("completing", "Finalizing sync")
        succeeded = state.channels_succeeded + state.playlists_succeeded
        should_commit = not state.cancelled and not state.failed and (
            state.quota_exhausted or succeeded > 0
        )

        try:
            commit, resume_after = self._settle_staging(
                user_id=user_id, sync_id=sync_id, should_commit=should_commit, state=state
            )
        except Exception:
            LOGGER.exception("sync finalize_failed sync_id=%s user_id=%s", sync_id, user_id)
            self._abort_run(user_id=user_id, sync_id=sync_id, tracker=tracker)
            raise
        tracker.set_videos_added(commit.videos_committed)

        kind, message = _summarize(
            state,
            committed_videos=commit.videos_committed,
            total_channels=total_channels,
        )
        if kind == "quota_paused":
            run = tracker.pause_for_quota(message)
        elif kind in {"failed", "all_failed", "auth_expired"}:
            run = tracker.fail(message)
        else:
            run = tracker.complete(message)

        outcome = SyncOutcome(
            sync_id=sync_id,
            kind=kind,
            message=message,
            committed=should_commit,
            rolled_back=not should_commit,
            videos_committed=commit.videos_committed,
            duplicates_linked=commit.duplicates_linked,
            channels_processed=state.channels_succeeded,
            channels_failed=state.channels_failed,
            channels_skipped=skipped,
            playlists_processed=run.playlists_processed,
            quota_used=run.quota_used,
            resume_after=resume_after,
            errors=list(run.errors),
        )
        self._telemetry.emit(
            "sync.run.finish",
            sync_id=sync_id,
            user_id=user_id,
            trigger=request.trigger,
            kind=kind,
            videos_committed=outcome.videos_committed,
            channels_processed=outcome.channels_processed,
            channels_failed=outcome.channels_failed,
            quota_used=outcome.quota_used,
        )
        LOGGER.info("sync finished sync_id=%s kind=%s message=%s", sync_id, kind, message)
        return outcome

    def _settle_staging(
        self,
        *,
        user_id: str,
        sync_id: str,
        should_commit: bool,
        state: _RunState,
    ) -> tuple[CommitResult, datetime | None]:
        """Commit (pausing first when quota ran out) or roll back the staged batch."""
        if not should_commit:
            rollback = self._staging.rollback_sync(sync_id)
            self._telemetry.emit(
                "sync.rollback",
                sync_id=sync_id,
                videos_discarded=rollback.videos_discarded,
                associations_discarded=rollback.associations_discarded,
            )
            return CommitResult(videos_committed=0, duplicates_linked=0), None

        resume_after: datetime | None = None
        if state.quota_exhausted:
            resume_after = self._staging.pause_sync_for_quota(sync_id)
            self._telemetry.emit(
                "sync.quota_paused",
                sync_id=sync_id,
                user_id=user_id,
                resume_after=resume_after.isoformat(),
            )
            if self._alerts is not None:
                self._alerts.quota_exhausted(
                    user_id=user_id, sync_id=sync_id, resume_after=resume_after
                )
        commit = self._staging.commit_sync(sync_id)
        self._telemetry.emit(
            "sync.commit",
            sync_id=sync_id,
            videos_committed=commit.videos_committed,
            duplicates_linked=commit.duplicates_linked,
        )
        return commit, resume_after

    def _abort_run(
        self,
        *,
        user_id: str,
        sync_id: str,
        tracker: SyncProgressTracker,
    ) -> None:
        """Discard staged rows and close the run record after an unexpected error.

        The caller re-raises the original error, so a failing rollback is only
        logged here.
        """
        try:
            self._staging.rollback_sync(sync_id)
        except Exception:
            LOGGER.exception("sync rollback_failed sync_id=%s", sync_id)
        tracker.fail("Sync failed unexpectedly - rolled back all changes")
        self._telemetry.emit("sync.run.finish", sync_id=sync_id, user_id=user_id, kind="failed")

    def _maintain(
        self,
        *,
        user_id: str,
        lock_id: str,
        maintenance: _Maintenance,
    ) -> None:
        now = self._monotonic()
        if now - maintenance.last_lock_extend >= self._lock_extend_interval_seconds:
            if not self._locks.extend(user_id, lock_id):
                raise SyncLockLostError("Sync stopped: failed to extend lock")
            maintenance.last_lock_extend = now

    def _token_refresh_due(self, maintenance: _Maintenance) -> bool:
        elapsed = self._monotonic() - maintenance.last_token_refresh
        return elapsed >= self._token_refresh_interval_seconds

    def _refresh_token(
        self,
        api: YouTubeApi,
        *,
        user_id: str,
        maintenance: _Maintenance,
    ) -> bool:
        try:
            api.replace_client(self._client_provider.refresh_client(user_id))
        except YouTubeApiError as exc:
            LOGGER.warning("sync token_refresh_failed user_id=%s error=%s", user_id, exc)
            return False
        maintenance.last_token_refresh = self._monotonic()
        return True

    def build_api(self, user_id: str) -> YouTubeApi:
        def on_retry(attempt: int, error: YouTubeApiError, delay_seconds: float) -> None:
            self._telemetry.emit(
                "youtube.api.retry",
                user_id=user_id,
                attempt=attempt,
                code=error.code,
                delay_seconds=round(delay_seconds, 3),
            )

        return YouTubeApi(
            self._client_provider.get_client(user_id),
            user_id=user_id,
            quota_ledger=self._quota_ledger,
            limiter=self._limiter,
            retry_policy=self._retry_policy,
            on_retry=on_retry,
            sleep=self._sleep,
        )

    def _import_settings(self, user_id: str) -> tuple[ImportMode, int]:
        mode, limit = self._channels.get_import_settings(user_id)
        return mode or self._default_import_mode, limit or self._default_import_limit


def _mode_estimate(mode: ImportMode, limit: int) -> int:
    if mode == "new_only":
        return 10
    if mode == "unlimited":
        return 200
    return limit


def _empty_selection_message(request: SyncRequest) -> str:
    if request.group_id is not None:
        return "No channels in this group."
    if request.channel_id is not None or request.channel_ids is not None:
        return "No valid channels to sync."
    return "No channels to sync. Import your subscriptions first."


def _summarize(
    state: _RunState,
    *,
    committed_videos: int,
    total_channels: int,
) -> tuple[SyncOutcomeKind, str]:
    if state.cancelled:
        return "cancelled", "Sync cancelled - rolled back all changes"
    if state.failed:
        return "failed", "Sync failed - rolled back all changes"
    if state.auth_expired:
        return (
            "auth_expired",
            f"Sync stopped at {state.channels_succeeded}/{total_channels} channels "
            f"(authentication expired) - {committed_videos} videos saved; "
            "reconnect YouTube to sync the rest",
        )
    if state.quota_exhausted:
        return (
            "quota_paused",
            f"Sync paused at {state.channels_succeeded}/{total_channels} channels "
            f"(quota exhausted) - {committed_videos} videos saved",
        )
    succeeded = state.channels_succeeded + state.playlists_succeeded
    if state.channels_failed > 0 and succeeded > 0:
        return (
            "partial_success",
            f"Partial success: {state.channels_succeeded} channels synced "
            f"({committed_videos} videos), {state.channels_failed} channels failed",
        )
    if succeeded == 0:
        return "all_failed", "All channels failed - no videos imported"
    return (
        "success",
        f"Synced {state.channels_succeeded} channels, added {committed_videos} videos",
    )
