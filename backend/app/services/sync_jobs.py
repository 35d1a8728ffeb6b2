from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any, Literal
from uuid import uuid4

from backend.app.repositories.channel_repository import (
    ActivityLevel,
    ChannelRecord,
    ChannelRepository,
    UserChannel,
)
from backend.app.repositories.common import Clock, utc_now
from backend.app.repositories.staging_repository import StagingError, StagingRepository
from backend.app.repositories.sync_lock_repository import SyncLockRepository
from backend.app.services.channel_health import ChannelHealthTracker
from backend.app.services.quota_ledger import QuotaLedger
from backend.app.services.sync_alerts import SyncAlertService
from backend.app.services.sync_service import (
    InsufficientQuotaError,
    SyncAlreadyInProgressError,
    SyncOutcome,
    SyncRequest,
    VideoSyncService,
)
from backend.app.services.video_fetch import (
    FetchedVideo,
    FetchOptions,
    ShortsClassifier,
    fetch_channel_details,
    fetch_channel_videos,
    resolve_uploads_playlist_ids,
)
from backend.app.services.youtube_api import MAX_IDS_PER_REQUEST, YouTubeApi, YouTubeApiError

LOGGER = logging.getLogger("tubesync.jobs")

JobName = Literal[
    "refresh_high",
    "refresh_medium",
    "refresh_low",
    "refresh_playlists",
    "retry_dead_channels",
    "resume_paused_syncs",
    "cleanup",
    "activity_levels",
]

DEAD_CHANNEL_RETRY_VIDEOS = 10
DEAD_CHANNEL_RETRY_QUOTA_UNITS = 3


@dataclass(frozen=True)
class TierConfig:
    level: ActivityLevel
    stale_after_hours: int
    max_channels_per_run: int
    videos_per_channel: int
    allow_critical_quota: bool = False


TIER_CONFIGS: dict[ActivityLevel, TierConfig] = {
    "high": TierConfig(
        level="high",
        stale_after_hours=2,
        max_channels_per_run=50,
        videos_per_channel=20,
        allow_critical_quota=True,
    ),
    "medium": TierConfig(
        level="medium",
        stale_after_hours=6,
        max_channels_per_run=75,
        videos_per_channel=30,
    ),
    "low": TierConfig(
        level="low",
        stale_after_hours=24,
        max_channels_per_run=100,
        videos_per_channel=50,
    ),
}


@dataclass
class JobResult:
    job: str
    success: bool = True
    message: str = ""
    channels_processed: int = 0
    channels_failed: int = 0
    channels_skipped: int = 0
    videos_added: int = 0
    quota_used: int = 0
    duration_ms: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)

    def add_outcome(self, outcome: SyncOutcome) -> None:
        self.channels_processed += outcome.channels_processed
        self.channels_failed += outcome.channels_failed
        self.channels_skipped += outcome.channels_skipped
        self.videos_added += outcome.videos_committed
        self.quota_used += outcome.quota_used
        self.errors.extend(outcome.errors)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class SyncJobRunner:
    """Periodic maintenance and refresh jobs shared by the scheduler and cron endpoints."""

    def __init__(
        self,
        *,
        sync_service: VideoSyncService,
        channels: ChannelRepository,
        health: ChannelHealthTracker,
        staging: StagingRepository,
        locks: SyncLockRepository,
        quota_ledger: QuotaLedger,
        classifier: ShortsClassifier,
        alerts: SyncAlertService | None = None,
        orphan_staging_max_age_seconds: int = 7_200,
        playlist_refresh_stale_days: int = 30,
        playlist_refresh_limit: int = 50,
        dead_channel_retry_limit: int = 25,
        clock: Clock = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sync_service = sync_service
        self._channels = channels
        self._health = health
        self._staging = staging
        self._locks = locks
        self._quota_ledger = quota_ledger
        self._classifier = classifier
        self._alerts = alerts
        self._orphan_staging_max_age_seconds = max(0, orphan_staging_max_age_seconds)
        self._playlist_refresh_stale_days = max(1, playlist_refresh_stale_days)
        self._playlist_refresh_limit = max(1, playlist_refresh_limit)
        self._dead_channel_retry_limit = max(1, dead_channel_retry_limit)
        self._clock = clock
        self._monotonic = monotonic

    def run(self, job: JobName) -> JobResult:
        if job == "refresh_high":
            return self.run_tier_refresh("high")
        if job == "refresh_medium":
            return self.run_tier_refresh("medium")
        if job == "refresh_low":
            return self.run_tier_refresh("low")
        if job == "refresh_playlists":
            return self.refresh_stale_upload_playlists()
        if job == "retry_dead_channels":
            return self.retry_dead_channels()
        if job == "resume_paused_syncs":
            return self.resume_paused_syncs()
        if job == "cleanup":
            return self.cleanup()
        return self.update_activity_levels()

    def run_tier_refresh(self, level: ActivityLevel) -> JobResult:
        config = TIER_CONFIGS[level]
        started = self._monotonic()
        result = JobResult(job=f"refresh_{level}")
        cutoff = self._clock() - timedelta(hours=config.stale_after_hours)
        # The low tier sweeps whatever the faster tiers left behind.
        candidates = self._channels.list_stale_channels(
            cutoff=cutoff,
            limit=config.max_channels_per_run,
            activity_level=None if level == "low" else level,
        )
        if not candidates:
            result.message = f"No {level}-activity channels need refreshing"
            return self._finish(result, started)

        for user_id, user_channels in _group_by_user(candidates).items():
            request = SyncRequest(
                channel_ids=tuple(channel.id for channel in user_channels),
                trigger=f"cron-{level}",
                include_playlists=False,
                max_videos_per_channel=config.videos_per_channel,
                use_cursor=True,
                allow_critical_quota=config.allow_critical_quota,
            )
            try:
                outcome = self._sync_service.start_sync(user_id, request)
            except SyncAlreadyInProgressError:
                LOGGER.info("jobs tier_user_busy level=%s user_id=%s", level, user_id)
                result.channels_skipped += len(user_channels)
                continue
            except InsufficientQuotaError as exc:
                LOGGER.info(
                    "jobs tier_user_quota level=%s user_id=%s reason=%s", level, user_id, exc
                )
                result.channels_skipped += len(user_channels)
                continue
            except YouTubeApiError as exc:
                LOGGER.warning(
                    "jobs tier_user_failed level=%s user_id=%s code=%s", level, user_id, exc.code
                )
                result.channels_failed += len(user_channels)
                result.errors.append({"kind": "user", "id": user_id, "reason": str(exc)})
                continue
            result.add_outcome(outcome)

        result.message = (
            f"Processed {result.channels_processed} channels, added {result.videos_added} videos"
        )
        self._check_failure_rate(result)
        return self._finish(result, started)

    def refresh_stale_upload_playlists(
        self,
        *,
        stale_days: int | None = None,
        limit: int | None = None,
    ) -> JobResult:
        started = self._monotonic()
        result = JobResult(job="refresh_playlists")
        now = self._clock()
        candidates = self._channels.list_channels_needing_playlist_refresh(
            cutoff=now - timedelta(days=stale_days or self._playlist_refresh_stale_days),
            limit=limit or self._playlist_refresh_limit,
        )
        if not candidates:
            result.message = "No channels need playlist refresh"
            return self._finish(result, started)

        updated = unchanged = 0
        for user_id, user_channels in _group_by_user(candidates).items():
            needed = math.ceil(len(user_channels) / MAX_IDS_PER_REQUEST)
            check = self._quota_ledger.check_available(user_id, needed, allow_critical=True)
            if not check.allowed:
                result.channels_skipped += len(user_channels)
                continue
            try:
                api = self._sync_service.build_api(user_id)
            except YouTubeApiError as exc:
                LOGGER.warning(
                    "jobs playlist_refresh_client_failed user_id=%s error=%s", user_id, exc
                )
                result.channels_skipped += len(user_channels)
                continue

            for start in range(0, len(user_channels), MAX_IDS_PER_REQUEST):
                batch = user_channels[start : start + MAX_IDS_PER_REQUEST]
                calls_before = api.calls_made
                try:
                    details = fetch_channel_details(api, [channel.youtube_id for channel in batch])
                except YouTubeApiError as exc:
                    result.channels_failed += len(batch)
                    result.errors.extend(_channel_error(channel, str(exc)) for channel in batch)
                    continue
                finally:
                    result.quota_used += api.calls_made - calls_before

                for channel in batch:
                    detail = details.get(channel.youtube_id)
                    if detail is None or detail.uploads_playlist_id is None:
                        result.channels_failed += 1
                        result.errors.append(
                            _channel_error(channel, "Channel not found in YouTube API")
                        )
                        continue
                    if detail.uploads_playlist_id != channel.uploads_playlist_id:
                        self._channels.set_uploads_playlist_id(
                            channel.id, detail.uploads_playlist_id, refreshed_at=now
                        )
                        updated += 1
                    else:
                        self._channels.mark_playlist_refreshed(channel.id, now)
                        unchanged += 1
                    result.channels_processed += 1

        result.details = {
            "channels_checked": len(candidates),
            "playlists_updated": updated,
            "playlists_unchanged": unchanged,
        }
        result.message = (
            f"Checked {len(candidates)} channels: {updated} updated, {unchanged} unchanged, "
            f"{result.channels_failed} failed, {result.channels_skipped} skipped"
        )
        return self._finish(result, started)

    def retry_dead_channels(self, *, limit: int | None = None) -> JobResult:
        started = self._monotonic()
        result = JobResult(job="retry_dead_channels")
        due = self._health.list_dead_channels_due_for_retry(
            limit=limit or self._dead_channel_retry_limit
        )
        if not due:
            result.message = "No dead channels ready for retry"
            return self._finish(result, started)

        apis: dict[str, YouTubeApi] = {}
        recovered = still_dead = 0
        for entry in due:
            channel = entry.channel
            check = self._quota_ledger.check_available(
                entry.user_id, DEAD_CHANNEL_RETRY_QUOTA_UNITS
            )
            if not check.allowed:
                result.channels_skipped += 1
                continue
            api = apis.get(entry.user_id)
            if api is None:
                try:
                    api = self._sync_service.build_api(entry.user_id)
                except YouTubeApiError as exc:
                    result.channels_skipped += 1
                    result.errors.append(_channel_error(channel, str(exc)))
                    continue
                apis[entry.user_id] = api

            reason, videos = self._recheck_dead_channel(api, channel)
            if reason is not None:
                self._health.record_failure(channel.id, reason)
                still_dead += 1
                result.channels_failed += 1
                result.errors.append(_channel_error(channel, reason))
                continue

            self._health.record_success(channel.id)
            self._channels.mark_fetched(channel.id, self._clock())
            recovered += 1
            result.channels_processed += 1
            result.videos_added += self._save_recovered_videos(entry.user_id, channel, videos)
            LOGGER.info("jobs dead_channel_recovered channel_id=%s", channel.id)

        result.quota_used = sum(api.calls_made for api in apis.values())
        result.details = {
            "channels_checked": len(due),
            "channels_recovered": recovered,
            "channels_still_dead": still_dead,
        }
        result.message = (
            f"Checked {len(due)} dead channels: {recovered} recovered, "
            f"{still_dead} still dead, {result.channels_skipped} skipped"
        )
        return self._finish(result, started)

    def resume_paused_syncs(self) -> JobResult:
        started = self._monotonic()
        result = JobResult(job="resume_paused_syncs")
        resumable = self._staging.get_resumable_syncs()
        if not resumable:
            result.message = "No paused syncs to resume"
            return self._finish(result, started)

        resumed = 0
        for paused in resumable:
            try:
                outcome = self._sync_service.resume_sync(paused)
            except (SyncAlreadyInProgressError, InsufficientQuotaError) as exc:
                LOGGER.info(
                    "jobs resume_deferred sync_id=%s user_id=%s reason=%s",
                    paused.sync_id,
                    paused.user_id,
                    exc,
                )
                continue
            except YouTubeApiError as exc:
                result.errors.append({"kind": "sync", "id": paused.sync_id, "reason": str(exc)})
                continue
            resumed += 1
            result.add_outcome(outcome)

        result.details = {"syncs_found": len(resumable), "syncs_resumed": resumed}
        result.message = f"Resumed {resumed} of {len(resumable)} paused syncs"
        self._check_failure_rate(result)
        return self._finish(result, started)

    def cleanup(self) -> JobResult:
        started = self._monotonic()
        orphans = self._staging.cleanup_orphaned_staging(self._orphan_staging_max_age_seconds)
        expired_locks = self._locks.cleanup_expired()
        result = JobResult(
            job="cleanup",
            message=(
                f"Cleared {orphans.syncs_cleaned_up} abandoned syncs and "
                f"{expired_locks} expired locks"
            ),
            details={
                "abandoned_syncs_cleared": orphans.syncs_cleaned_up,
                "staged_videos_discarded": orphans.videos_deleted,
                "staged_associations_discarded": orphans.associations_deleted,
                "expired_locks_cleared": expired_locks,
            },
        )
        return self._finish(result, started)

    def update_activity_levels(self) -> JobResult:
        started = self._monotonic()
        update = self._health.update_channel_activity_levels()
        result = JobResult(
            job="activity_levels",
            message=f"Updated activity level for {update.updated} channels",
            details=asdict(update),
        )
        return self._finish(result, started)

    def _recheck_dead_channel(
        self,
        api: YouTubeApi,
        channel: ChannelRecord,
    ) -> tuple[str | None, list[FetchedVideo]]:
        """Fetch a few recent uploads; returns (failure_reason, videos)."""
        uploads_playlist_id = channel.uploads_playlist_id
        try:
            if uploads_playlist_id is None:
                uploads_playlist_id = self._refresh_uploads_id(api, channel)
                if uploads_playlist_id is None:
                    return "Could not get uploads playlist ID", []

            fetched = fetch_channel_videos(
                api,
                uploads_playlist_id=uploads_playlist_id,
                channel_id=channel.id,
                since=None,
                max_results=DEAD_CHANNEL_RETRY_VIDEOS,
                classifier=self._classifier,
                options=FetchOptions(check_quota=False),
                clock=self._clock,
            )
            if fetched.list_not_found:
                if self._refresh_uploads_id(api, channel) is None:
                    return "Playlist not found, refresh failed", []
                return "Playlist refreshed, will retry next run", []
        except YouTubeApiError as exc:
            return str(exc), []
        if fetched.error is not None and not fetched.videos:
            return fetched.error, []
        return None, list(fetched.videos)

    def _refresh_uploads_id(self, api: YouTubeApi, channel: ChannelRecord) -> str | None:
        fresh = resolve_uploads_playlist_ids(api, [channel.youtube_id]).get(channel.youtube_id)
        if fresh is not None:
            self._channels.set_uploads_playlist_id(channel.id, fresh, refreshed_at=self._clock())
        return fresh

    def _save_recovered_videos(
        self,
        user_id: str,
        channel: ChannelRecord,
        videos: list[FetchedVideo],
    ) -> int:
        if not videos:
            return 0
        sync_id = f"sync_{uuid4().hex}"
        lock_id = self._locks.acquire(user_id, sync_id=sync_id)
        if lock_id is None:
            # The user's own sync will pick these up from the refreshed cursor.
            LOGGER.info(
                "jobs recovered_videos_deferred user_id=%s channel_id=%s", user_id, channel.id
            )
            return 0
        try:
            self._staging.stage_videos_for_sync(sync_id, user_id, channel.id, videos)
            return self._staging.commit_sync(sync_id).videos_committed
        except StagingError:
            self._staging.rollback_sync(sync_id)
            raise
        finally:
            self._locks.release(user_id, lock_id)

    def _check_failure_rate(self, result: JobResult) -> None:
        if self._alerts is None:
            return
        self._alerts.check_failure_rate(
            sync_type=result.job,
            channels_processed=result.channels_processed,
            channels_failed=result.channels_failed,
            errors=result.errors,
        )

    def _finish(self, result: JobResult, started: float) -> JobResult:
        result.duration_ms = int((self._monotonic() - started) * 1000)
        LOGGER.info(
            "jobs finished job=%s processed=%s failed=%s skipped=%s videos=%s duration_ms=%s",
            result.job,
            result.channels_processed,
            result.channels_failed,
            result.channels_skipped,
            result.videos_added,
            result.duration_ms,
        )
        return result


def _group_by_user(entries: Iterable[UserChannel]) -> dict[str, list[ChannelRecord]]:
    grouped: dict[str, list[ChannelRecord]] = {}
    for entry in entries:
        grouped.setdefault(entry.user_id, []).append(entry.channel)
    return grouped


def _channel_error(channel: ChannelRecord, reason: str) -> dict[str, Any]:
    return {"kind": "channel", "id": channel.id, "youtube_id": channel.youtube_id, "reason": reason}
