from __future__ import annotations

import json
import types
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from backend.app.repositories.alert_repository import AlertRepository
from backend.app.repositories.channel_repository import (
    ChannelRecord,
    ChannelRepository,
    ImportMode,
)
from backend.app.repositories.database import Database
from backend.app.repositories.quota_repository import QuotaRepository
from backend.app.repositories.staging_repository import StagingRepository
from backend.app.repositories.sync_lock_repository import SyncLockRepository
from backend.app.repositories.sync_run_repository import SyncRunRepository
from backend.app.services.channel_health import ChannelHealthTracker
from backend.app.services.quota_ledger import QuotaLedger
from backend.app.services.sync_alerts import SyncAlertService
from backend.app.services.sync_jobs import SyncJobRunner
from backend.app.services.sync_service import VideoSyncService
from backend.app.services.video_fetch import ShortsClassifier
from backend.app.services.youtube_api import RetryPolicy, TokenBucketRateLimiter, YouTubeAuthError
from backend.app.telemetry import TelemetryClient

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


class MutableClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class CaptureSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        self.events.append((event_name, dict(attributes)))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


class FakeHttpError(Exception):
    """Shaped like ``googleapiclient.errors.HttpError`` for error classification."""

    def __init__(self, status: int, reason: str, message: str = "request failed") -> None:
        super().__init__(message)
        self.resp = types.SimpleNamespace(status=status)
        self.content = json.dumps(
            {"error": {"message": message, "errors": [{"reason": reason}]}}
        ).encode("utf-8")


def quota_exceeded_error() -> FakeHttpError:
    return FakeHttpError(403, "quotaExceeded", "The request cannot be completed: quota exceeded")


class _FakeRequest:
    def __init__(self, handler: Callable[[], dict[str, Any]]) -> None:
        self._handler = handler

    def execute(self) -> dict[str, Any]:
        return self._handler()


class _FakeResource:
    def __init__(self, client: FakeYouTubeClient, name: str) -> None:
        self._client = client
        self._name = name

    def list(self, **kwargs: Any) -> _FakeRequest:
        return _FakeRequest(lambda: self._client.handle(self._name, kwargs))


class FakeYouTubeClient:
    """In-memory stand-in for the discovery-built YouTube Data API client."""

    def __init__(self) -> None:
        self.playlist_items: dict[str, list[dict[str, Any]]] = {}
        self.video_items: dict[str, dict[str, Any]] = {}
        self.channel_items: dict[str, dict[str, Any]] = {}
        self.playlist_failures: dict[str, list[BaseException]] = {}
        self.resource_failures: dict[str, list[BaseException]] = {}
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.on_call: Callable[[str, dict[str, Any]], None] | None = None

    def playlistItems(self) -> _FakeResource:
        return _FakeResource(self, "playlistItems")

    def videos(self) -> _FakeResource:
        return _FakeResource(self, "videos")

    def channels(self) -> _FakeResource:
        return _FakeResource(self, "channels")

    def add_upload(
        self,
        playlist_id: str,
        video_id: str,
        *,
        published_at: datetime,
        owner_channel_id: str = "UC_owner",
        title: str | None = None,
        duration: str = "PT10M5S",
        live_broadcast_content: str = "none",
    ) -> None:
        """Append to a playlist; callers add uploads newest first."""
        published_iso = published_at.isoformat()
        self.playlist_items.setdefault(playlist_id, []).append(
            {
                "snippet": {"videoOwnerChannelId": owner_channel_id},
                "contentDetails": {"videoId": video_id, "videoPublishedAt": published_iso},
            }
        )
        self.video_items[video_id] = {
            "id": video_id,
            "snippet": {
                "title": title or f"Video {video_id}",
                "description": f"About {video_id}",
                "publishedAt": published_iso,
                "liveBroadcastContent": live_broadcast_content,
                "channelId": owner_channel_id,
                "channelTitle": f"Channel {owner_channel_id}",
                "thumbnails": {"medium": {"url": f"https://i.ytimg.com/vi/{video_id}/mq.jpg"}},
            },
            "contentDetails": {"duration": duration},
        }

    def add_channel(self, youtube_id: str, *, uploads_playlist_id: str | None) -> None:
        related = {"uploads": uploads_playlist_id} if uploads_playlist_id else {}
        self.channel_items[youtube_id] = {
            "id": youtube_id,
            "snippet": {"title": f"Channel {youtube_id}"},
            "contentDetails": {"relatedPlaylists": related},
        }

    def fail_playlist(self, playlist_id: str, error: BaseException, *, times: int = 1) -> None:
        self.playlist_failures.setdefault(playlist_id, []).extend([error] * times)

    def count_calls(self, resource: str) -> int:
        return sum(1 for name, _ in self.calls if name == resource)

    def handle(self, resource: str, kwargs: dict[str, Any]) -> dict[str, Any]:
        self.calls.append((resource, kwargs))
        if self.on_call is not None:
            self.on_call(resource, kwargs)
        pending = self.resource_failures.get(resource)
        if pending:
            raise pending.pop(0)
        if resource == "playlistItems":
            return self._list_playlist_items(kwargs)
        ids = str(kwargs["id"]).split(",")
        source = self.video_items if resource == "videos" else self.channel_items
        return {"items": [source[item_id] for item_id in ids if item_id in source]}

    def _list_playlist_items(self, kwargs: dict[str, Any]) -> dict[str, Any]:
        playlist_id = str(kwargs["playlistId"])
        pending = self.playlist_failures.get(playlist_id)
        if pending:
            raise pending.pop(0)
        items = self.playlist_items.get(playlist_id)
        if items is None:
            raise FakeHttpError(404, "playlistNotFound", "The playlist could not be found")
        start = int(kwargs.get("pageToken") or 0)
        end = start + int(kwargs["maxResults"])
        page: dict[str, Any] = {"items": items[start:end]}
        if end < len(items):
            page["nextPageToken"] = str(end)
        return page


class FakeClientProvider:
    def __init__(self, client: FakeYouTubeClient) -> None:
        self.client = client
        self.unauthorized_users: set[str] = set()
        self.refresh_calls = 0

    def get_client(self, user_id: str) -> Any:
        if user_id in self.unauthorized_users:
            raise YouTubeAuthError(f"YouTube account not connected for {user_id}")
        return self.client

    def refresh_client(self, user_id: str) -> Any:
        self.refresh_calls += 1
        return self.get_client(user_id)


@dataclass
class SyncStack:
    database: Database
    clock: MutableClock
    client: FakeYouTubeClient
    provider: FakeClientProvider
    sink: CaptureSink
    channels: ChannelRepository
    staging: StagingRepository
    locks: SyncLockRepository
    runs: SyncRunRepository
    health: ChannelHealthTracker
    quota_ledger: QuotaLedger
    alerts: SyncAlertService
    service: VideoSyncService
    jobs: SyncJobRunner
    monotonic_now: list[float] = field(default_factory=lambda: [0.0])

    def subscribe(
        self,
        user_id: str,
        youtube_id: str,
        *,
        uploads_playlist_id: str | None = None,
        group_id: str | None = None,
    ) -> ChannelRecord:
        channel = self.channels.get_or_create_channel(
            youtube_id=youtube_id,
            title=f"Channel {youtube_id}",
            uploads_playlist_id=uploads_playlist_id,
        )
        target_group = group_id or self.channels.create_group(user_id=user_id, name="All")
        self.channels.add_channel_to_group(group_id=target_group, channel_id=channel.id)
        return channel

    def count_videos(self, user_id: str) -> int:
        with self.database.connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM videos WHERE user_id = ?", (user_id,)
            ).fetchone()
        return int(row["total"])


def build_sync_stack(
    tmp_path: Path,
    *,
    daily_quota_limit: int = 10_000,
    default_import_mode: ImportMode = "limited",
    lock_extend_interval_seconds: int = 300,
    token_refresh_interval_seconds: int = 1_800,
) -> SyncStack:
    database = Database(tmp_path / "state.db")
    database.initialize()
    clock = MutableClock()
    client = FakeYouTubeClient()
    provider = FakeClientProvider(client)
    sink = CaptureSink()
    telemetry = TelemetryClient(enabled=True, sink=sink)
    monotonic_now = [0.0]

    channels = ChannelRepository(database)
    staging = StagingRepository(database, clock=clock)
    locks = SyncLockRepository(database, clock=clock)
    runs = SyncRunRepository(database)
    health = ChannelHealthTracker(channels, clock=clock)
    quota_ledger = QuotaLedger(
        QuotaRepository(database), daily_limit=daily_quota_limit, clock=clock
    )
    alerts = SyncAlertService(AlertRepository(database, clock=clock), telemetry=telemetry)
    classifier = ShortsClassifier()
    service = VideoSyncService(
        channels=channels,
        staging=staging,
        locks=locks,
        runs=runs,
        health=health,
        quota_ledger=quota_ledger,
        client_provider=provider,
        limiter=TokenBucketRateLimiter(requests_per_second=1_000.0, burst_size=1_000),
        retry_policy=RetryPolicy(max_retries=1, initial_delay_ms=1, max_delay_ms=2),
        classifier=classifier,
        telemetry=telemetry,
        alerts=alerts,
        default_import_mode=default_import_mode,
        lock_extend_interval_seconds=lock_extend_interval_seconds,
        token_refresh_interval_seconds=token_refresh_interval_seconds,
        progress_write_every=1,
        clock=clock,
        monotonic=lambda: monotonic_now[0],
        sleep=lambda _: None,
    )
    jobs = SyncJobRunner(
        sync_service=service,
        channels=channels,
        health=health,
        staging=staging,
        locks=locks,
        quota_ledger=quota_ledger,
        classifier=classifier,
        alerts=alerts,
        clock=clock,
        monotonic=lambda: monotonic_now[0],
    )
    return SyncStack(
        database=database,
        clock=clock,
        client=client,
        provider=provider,
        sink=sink,
        channels=channels,
        staging=staging,
        locks=locks,
        runs=runs,
        health=health,
        quota_ledger=quota_ledger,
        alerts=alerts,
        service=service,
        jobs=jobs,
        monotonic_now=monotonic_now,
    )
