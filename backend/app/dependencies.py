from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from backend.app.config import AppSettings, load_settings
from backend.app.repositories.alert_repository import AlertRepository
from backend.app.repositories.channel_repository import ChannelRepository
from backend.app.repositories.database import Database
from backend.app.repositories.quota_repository import QuotaRepository
from backend.app.repositories.staging_repository import StagingRepository
from backend.app.repositories.sync_lock_repository import SyncLockRepository
from backend.app.repositories.sync_run_repository import SyncRunRepository
from backend.app.repositories.task_run_repository import TaskRunRepository
from backend.app.services.channel_health import ChannelHealthTracker
from backend.app.services.quota_ledger import QuotaLedger
from backend.app.services.sync_alerts import SyncAlertService
from backend.app.services.sync_jobs import SyncJobRunner
from backend.app.services.sync_service import VideoSyncService
from backend.app.services.video_fetch import ShortsClassifier
from backend.app.services.youtube_api import (
    OAuthYouTubeClientProvider,
    RetryPolicy,
    TokenBucketRateLimiter,
)
from backend.app.telemetry import TelemetryClient, build_telemetry_client


@dataclass(frozen=True)
class SyncComponents:
    database: Database
    channels: ChannelRepository
    staging: StagingRepository
    locks: SyncLockRepository
    runs: SyncRunRepository
    task_runs: TaskRunRepository
    health: ChannelHealthTracker
    quota_ledger: QuotaLedger
    alerts: SyncAlertService
    sync_service: VideoSyncService
    jobs: SyncJobRunner


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


@lru_cache(maxsize=1)
def get_database() -> Database:
    database = Database(get_settings().db_path)
    database.initialize()
    return database


@lru_cache(maxsize=1)
def get_components() -> SyncComponents:
    settings = get_settings()
    telemetry = get_telemetry()
    database = get_database()

    channels = ChannelRepository(database)
    staging = StagingRepository(database, batch_size=settings.staging_batch_size)
    locks = SyncLockRepository(database, ttl_seconds=settings.sync_lock_ttl_seconds)
    runs = SyncRunRepository(database)
    health = ChannelHealthTracker(channels)
    quota_ledger = QuotaLedger(
        QuotaRepository(database),
        daily_limit=settings.youtube_daily_quota_limit,
        warning_threshold=settings.youtube_quota_warning_percent,
        critical_threshold=settings.youtube_quota_critical_percent,
    )
    classifier = ShortsClassifier(
        max_duration_seconds=settings.shorts_max_duration_seconds,
        non_short_patterns=settings.shorts_non_short_patterns,
    )
    alerts = SyncAlertService(AlertRepository(database), telemetry=telemetry)

    sync_service = VideoSyncService(
        channels=channels,
        staging=staging,
        locks=locks,
        runs=runs,
        health=health,
        quota_ledger=quota_ledger,
        client_provider=OAuthYouTubeClientProvider(
            token_dir=settings.youtube_token_dir,
            client_secret_path=settings.youtube_client_secret_path,
        ),
        limiter=TokenBucketRateLimiter(
            requests_per_second=settings.youtube_requests_per_second,
            burst_size=settings.youtube_burst_size,
        ),
        retry_policy=RetryPolicy(
            max_retries=settings.youtube_retry_max_retries,
            initial_delay_ms=settings.youtube_retry_initial_delay_ms,
            max_delay_ms=settings.youtube_retry_max_delay_ms,
            backoff_multiplier=settings.youtube_retry_backoff_multiplier,
        ),
        classifier=classifier,
        telemetry=telemetry,
        alerts=alerts,
        default_import_mode=settings.default_import_mode,
        default_import_limit=settings.default_import_limit,
        unlimited_import_max_results=settings.unlimited_import_max_results,
        new_only_max_results=settings.new_only_max_results,
        playlist_import_max_results=settings.playlist_import_max_results,
        lock_extend_interval_seconds=settings.sync_lock_extend_interval_seconds,
        token_refresh_interval_seconds=settings.youtube_token_refresh_interval_seconds,
        progress_write_every=settings.sync_progress_write_every,
    )
    jobs = SyncJobRunner(
        sync_service=sync_service,
        channels=channels,
        health=health,
        staging=staging,
        locks=locks,
        quota_ledger=quota_ledger,
        classifier=classifier,
        alerts=alerts,
        orphan_staging_max_age_seconds=settings.orphan_staging_max_age_seconds,
        playlist_refresh_stale_days=settings.playlist_refresh_stale_days,
        playlist_refresh_limit=settings.playlist_refresh_limit,
        dead_channel_retry_limit=settings.dead_channel_retry_limit,
    )

    return SyncComponents(
        database=database,
        channels=channels,
        staging=staging,
        locks=locks,
        runs=runs,
        task_runs=TaskRunRepository(database),
        health=health,
        quota_ledger=quota_ledger,
        alerts=alerts,
        sync_service=sync_service,
        jobs=jobs,
    )


def get_sync_service() -> VideoSyncService:
    return get_components().sync_service


def get_job_runner() -> SyncJobRunner:
    return get_components().jobs


def get_channel_health() -> ChannelHealthTracker:
    return get_components().health


def get_quota_ledger() -> QuotaLedger:
    return get_components().quota_ledger


def get_sync_locks() -> SyncLockRepository:
    return get_components().locks


def get_alert_service() -> SyncAlertService:
    return get_components().alerts


def reset_cached_dependencies() -> None:
    get_components.cache_clear()
    get_database.cache_clear()
    get_telemetry.cache_clear()
    get_settings.cache_clear()
