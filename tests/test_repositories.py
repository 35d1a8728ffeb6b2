from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from backend.app.repositories.alert_repository import AlertRepository
from backend.app.repositories.channel_repository import ChannelRepository
from backend.app.repositories.database import Database
from backend.app.repositories.quota_repository import QuotaRepository
from backend.app.repositories.staging_repository import StagingError, StagingRepository
from backend.app.repositories.sync_lock_repository import SyncLockRepository
from backend.app.repositories.sync_run_repository import SyncRunRepository
from backend.app.repositories.task_run_repository import TaskRunRepository
from backend.app.services.channel_health import (
    ChannelHealthTracker,
    calculate_activity_level,
    dead_channel_retry_at,
    health_status_for_failures,
)
from backend.app.services.quota_ledger import QuotaLedger, estimate_quota_needed
from backend.app.services.sync_progress import SyncProgressTracker
from backend.app.services.video_fetch import FetchedVideo
from tests.support import NOW, MutableClock

USER = "user-1"


def _db(tmp_path: Path) -> Database:
    db = Database(tmp_path / "state.db")
    db.initialize()
    return db


def _video(youtube_id: str, channel_id: str, *, title: str | None = None) -> FetchedVideo:
    return FetchedVideo(
        youtube_id=youtube_id,
        channel_id=channel_id,
        title=title or f"Video {youtube_id}",
        thumbnail=None,
        duration="10:00",
        duration_seconds=600,
        is_short=False,
        description=None,
        published_at=NOW.isoformat(),
    )


def _user_videos(db: Database) -> list[tuple[str, str]]:
    with db.connection() as conn:
        rows = conn.execute(
            "SELECT youtube_id, title FROM videos WHERE user_id = ? ORDER BY youtube_id",
            (USER,),
        ).fetchall()
    return [(str(row["youtube_id"]), str(row["title"])) for row in rows]


def test_staging_commit_promotes_videos_and_skips_trash(tmp_path: Path) -> None:
    db = _db(tmp_path)
    clock = MutableClock()
    channels = ChannelRepository(db)
    staging = StagingRepository(db, batch_size=2, clock=clock)
    channel = channels.get_or_create_channel(youtube_id="UC_a", title="A")
    channels.trash_video(user_id=USER, youtube_id="v_trashed")

    staged = staging.stage_videos_for_sync(
        "sync_1",
        USER,
        channel.id,
        [_video(f"v{index}", channel.id) for index in range(5)] + [_video("v_trashed", channel.id)],
    )
    assert staged == 5
    assert staging.get_staged_video_count("sync_1") == 5
    assert staging.is_video_staged("sync_1", "v_trashed") is False

    # Trashed after staging, before the commit.
    channels.trash_video(user_id=USER, youtube_id="v4")
    result = staging.commit_sync("sync_1")

    assert result.videos_committed == 4
    assert result.duplicates_linked == 4
    assert [youtube_id for youtube_id, _ in _user_videos(db)] == ["v0", "v1", "v2", "v3"]
    assert staging.get_staged_video_count("sync_1") == 0


def test_staging_commit_updates_existing_videos(tmp_path: Path) -> None:
    db = _db(tmp_path)
    channels = ChannelRepository(db)
    staging = StagingRepository(db, clock=MutableClock())
    channel = channels.get_or_create_channel(youtube_id="UC_a", title="A")

    staging.stage_videos("sync_1", USER, channel.id, [_video("v1", channel.id, title="Old")])
    staging.commit_sync("sync_1")
    staging.stage_videos("sync_2", USER, channel.id, [_video("v1", channel.id, title="New")])
    staging.commit_sync("sync_2")

    assert _user_videos(db) == [("v1", "New")]


def test_staging_commit_is_idempotent(tmp_path: Path) -> None:
    db = _db(tmp_path)
    staging = StagingRepository(db, clock=MutableClock())
    videos = [_video("v1", "ch_1"), _video("v2", "ch_1")]
    staging.stage_videos_for_sync("sync_1", USER, "ch_1", videos)

    first = staging.commit_sync("sync_1")
    second = staging.commit_sync("sync_1")

    assert first.videos_committed == 2
    assert second.videos_committed == 0
    assert second.duplicates_linked == 0
    assert _user_videos(db) == [("v1", "Video v1"), ("v2", "Video v2")]


def test_staging_error_reports_exactly_what_was_saved(tmp_path: Path) -> None:
    db = _db(tmp_path)
    staging = StagingRepository(db, batch_size=2, clock=MutableClock())
    with db.connection() as conn:
        conn.execute(
            """
            CREATE TRIGGER reject_staged_video
            BEFORE INSERT ON sync_staging_videos
            WHEN NEW.youtube_id = 'v3'
            BEGIN
                SELECT RAISE(ABORT, 'disk is full');
            END
            """
        )

    with pytest.raises(StagingError) as exc_info:
        staging.stage_videos("sync_1", USER, "ch_1", [_video(f"v{i}", "ch_1") for i in range(5)])

    assert exc_info.value.staged == 2
    assert exc_info.value.total == 5
    assert exc_info.value.batch_number == 2
    assert "batch 2/3" in str(exc_info.value)
    assert staging.get_staged_video_count("sync_1") == 2
    assert staging.is_video_staged("sync_1", "v2") is False


def test_staging_rollback_discards_everything(tmp_path: Path) -> None:
    db = _db(tmp_path)
    staging = StagingRepository(db, clock=MutableClock())

    staging.stage_videos_for_sync("sync_1", USER, "ch_1", [_video("v1", "ch_1")])
    result = staging.rollback_sync("sync_1")

    assert result.videos_discarded == 1
    assert result.associations_discarded == 1
    assert _user_videos(db) == []


def test_staging_quota_pause_and_resume_bookkeeping(tmp_path: Path) -> None:
    db = _db(tmp_path)
    clock = MutableClock()
    runs = SyncRunRepository(db)
    staging = StagingRepository(db, clock=clock)
    tracker = SyncProgressTracker(
        runs, sync_id="sync_1", user_id=USER, trigger="manual", clock=clock
    )
    tracker.start()
    tracker.set_targets(channel_ids=["ch_1", "ch_2"])
    tracker.record_channel_success("ch_1", videos_staged=3)
    tracker.flush()

    resume_after = staging.pause_sync_for_quota("sync_1")

    assert resume_after == (NOW + timedelta(days=1)).replace(hour=0)
    run = runs.get("sync_1")
    assert run is not None
    assert run.paused_for_quota is True
    assert run.phase == "quota_paused"
    assert staging.get_resumable_syncs() == []
    (resumable,) = staging.get_resumable_syncs(now=resume_after)
    assert resumable.queued_channel_ids == ["ch_1", "ch_2"]
    assert resumable.processed_channel_ids == ["ch_1"]

    staging.mark_resumed("sync_1", "sync_2")
    assert staging.get_resumable_syncs(now=resume_after) == []


def test_orphan_cleanup_spares_locked_and_paused_runs(tmp_path: Path) -> None:
    db = _db(tmp_path)
    clock = MutableClock()
    runs = SyncRunRepository(db)
    staging = StagingRepository(db, clock=clock)
    locks = SyncLockRepository(db, ttl_seconds=4 * 3600, clock=clock)
    for sync_id in ("sync_orphan", "sync_locked", "sync_paused"):
        staging.stage_videos_for_sync(sync_id, USER, "ch_1", [_video(f"v_{sync_id}", "ch_1")])
    locks.acquire(USER, sync_id="sync_locked")
    SyncProgressTracker(runs, sync_id="sync_paused", user_id=USER, trigger="manual").start()
    staging.pause_sync_for_quota("sync_paused")

    clock.advance(hours=3)
    result = staging.cleanup_orphaned_staging(max_age_seconds=7_200)

    assert result.syncs_cleaned_up == 1
    assert staging.get_staged_video_count("sync_orphan") == 0
    assert staging.get_staged_video_count("sync_locked") == 1
    assert staging.get_staged_video_count("sync_paused") == 1


def test_sync_lock_lifecycle(tmp_path: Path) -> None:
    db = _db(tmp_path)
    clock = MutableClock()
    locks = SyncLockRepository(db, ttl_seconds=900, clock=clock)

    lock_id = locks.acquire(USER, sync_id="sync_1")
    assert lock_id is not None
    assert locks.acquire(USER) is None
    assert locks.is_sync_in_progress(USER) is True

    clock.advance(seconds=600)
    assert locks.extend(USER, lock_id) is True
    clock.advance(seconds=600)
    lock = locks.get_lock(USER)
    assert lock is not None
    assert lock.sync_id == "sync_1"
    assert lock.cancelled is False

    assert locks.request_cancellation(USER) is True
    assert locks.is_cancelled(USER, lock_id) is True
    assert locks.extend(USER, lock_id) is False

    assert locks.release(USER, "lock_other") is False
    assert locks.release(USER, lock_id) is True
    assert locks.is_cancelled(USER, lock_id) is True
    assert locks.request_cancellation(USER) is False


def test_sync_lock_expires_and_can_be_reacquired(tmp_path: Path) -> None:
    db = _db(tmp_path)
    clock = MutableClock()
    locks = SyncLockRepository(db, ttl_seconds=60, clock=clock)
    assert locks.acquire(USER) is not None
    assert locks.acquire("user-2") is not None

    clock.advance(seconds=61)

    assert locks.get_lock(USER) is None
    assert locks.acquire(USER) is not None
    assert locks.cleanup_expired() == 1


def test_quota_ledger_status_and_checks(tmp_path: Path) -> None:
    clock = MutableClock()
    ledger = QuotaLedger(QuotaRepository(_db(tmp_path)), daily_limit=100, clock=clock)

    assert ledger.track(USER, "playlistItems.list") == 1
    assert ledger.track_batch(USER, [("videos.list", 3), ("channels.list", 1)]) == 5
    status = ledger.get_status(USER)
    assert status.used == 5
    assert status.remaining == 95
    assert status.reset_at == (NOW + timedelta(days=1)).replace(hour=0)
    assert ledger.check_available(USER, 90).allowed is True

    denied = ledger.check_available(USER, 96)
    assert denied.allowed is False
    assert denied.reason == "Insufficient quota: operation needs ~96 units, 95 remaining."

    ledger.track(USER, "videos.list", 87)
    assert ledger.get_status(USER).is_warning is True
    assert ledger.check_available(USER, 1).allowed is True
    ledger.track(USER, "videos.list", 3)
    critical = ledger.check_available(USER, 1)
    assert critical.allowed is False
    assert critical.reason is not None and "critical (95%)" in critical.reason
    assert ledger.check_available(USER, 1, allow_critical=True).allowed is True

    clock.advance(days=1)
    assert ledger.get_status(USER).used == 0


def test_estimate_quota_needed() -> None:
    assert estimate_quota_needed(channel_count=1) == 3
    assert estimate_quota_needed(channel_count=3, videos_per_channel=120) == 14
    assert estimate_quota_needed(channel_count=0, subscription_count=120) == 7
    assert estimate_quota_needed(channel_count=1, full_sync=True) == 3


def test_health_thresholds_and_dead_backoff(tmp_path: Path) -> None:
    db = _db(tmp_path)
    clock = MutableClock()
    channels = ChannelRepository(db)
    health = ChannelHealthTracker(channels, clock=clock)
    channel = channels.get_or_create_channel(youtube_id="UC_a", title="A")

    assert [health_status_for_failures(count) for count in (1, 2, 5, 10)] == [
        "healthy",
        "warning",
        "unhealthy",
        "dead",
    ]
    for _ in range(9):
        health.record_failure(channel.id, "Timeout")
    assert health.get_skippable_channel_ids([channel.id]) == set()

    dead = health.record_failure(channel.id, "x" * 600)
    assert dead is not None
    assert dead.health_status == "dead"
    assert dead.last_failure_reason == "x" * 500
    assert dead_channel_retry_at(dead) == NOW + timedelta(hours=24)
    assert health.get_skippable_channel_ids([channel.id]) == {channel.id}

    for _ in range(5):
        health.record_failure(channel.id, "Timeout")
    latest = channels.get_channel(channel.id)
    assert latest is not None
    assert dead_channel_retry_at(latest) == NOW + timedelta(hours=192)

    clock.advance(hours=200)
    assert health.get_skippable_channel_ids([channel.id]) == set()

    health.record_success(channel.id)
    revived = channels.get_channel(channel.id)
    assert revived is not None
    assert revived.health_status == "healthy"
    assert revived.consecutive_failures == 0
    assert dead_channel_retry_at(revived) is None


def test_revive_only_touches_subscribed_channels(tmp_path: Path) -> None:
    db = _db(tmp_path)
    channels = ChannelRepository(db)
    health = ChannelHealthTracker(channels, clock=MutableClock())
    mine = channels.get_or_create_channel(youtube_id="UC_mine", title="Mine")
    theirs = channels.get_or_create_channel(youtube_id="UC_theirs", title="Theirs")
    group_id = channels.create_group(user_id=USER, name="All")
    channels.add_channel_to_group(group_id=group_id, channel_id=mine.id)
    for channel_id in (mine.id, theirs.id):
        for _ in range(10):
            health.record_failure(channel_id, "gone")

    assert [channel.id for channel in health.get_unhealthy_channels(USER)] == [mine.id]
    assert health.revive_user_channels(USER, [mine.id, theirs.id]) == 1
    assert health.get_unhealthy_channels(USER) == []
    still_dead = channels.get_channel(theirs.id)
    assert still_dead is not None and still_dead.health_status == "dead"


def test_calculate_activity_level() -> None:
    assert calculate_activity_level(2, 2) == "high"
    assert calculate_activity_level(0, 8) == "high"
    assert calculate_activity_level(1, 1) == "medium"
    assert calculate_activity_level(0, 4) == "medium"
    assert calculate_activity_level(0, 3) == "low"


def test_channel_listing_orders_least_recently_fetched_first(tmp_path: Path) -> None:
    db = _db(tmp_path)
    channels = ChannelRepository(db)
    group_id = channels.create_group(user_id=USER, name="All")
    other_group = channels.create_group(user_id=USER, name="Favourites")
    records = {
        youtube_id: channels.get_or_create_channel(youtube_id=youtube_id, title=youtube_id)
        for youtube_id in ("UC_c", "UC_b", "UC_a", "UC_d")
    }
    for record in records.values():
        channels.add_channel_to_group(group_id=group_id, channel_id=record.id)
    channels.add_channel_to_group(group_id=other_group, channel_id=records["UC_a"].id)
    channels.mark_fetched(records["UC_c"].id, NOW)
    channels.mark_fetched(records["UC_d"].id, NOW - timedelta(hours=1))

    listed = channels.list_user_channels(USER)
    in_group = channels.list_user_channels(USER, group_id=other_group)

    assert [channel.youtube_id for channel in listed] == ["UC_a", "UC_b", "UC_d", "UC_c"]
    assert [channel.youtube_id for channel in in_group] == ["UC_a"]
    assert channels.list_user_channels(USER, channel_ids=[]) == []
    assert channels.list_user_channels("someone-else") == []


def test_removing_channel_from_last_group_drops_user_videos(tmp_path: Path) -> None:
    db = _db(tmp_path)
    channels = ChannelRepository(db)
    staging = StagingRepository(db, clock=MutableClock())
    channel = channels.get_or_create_channel(youtube_id="UC_a", title="A")
    first = channels.create_group(user_id=USER, name="One")
    second = channels.create_group(user_id=USER, name="Two")
    channels.add_channel_to_group(group_id=first, channel_id=channel.id)
    channels.add_channel_to_group(group_id=second, channel_id=channel.id)
    staging.stage_videos_for_sync("sync_1", USER, channel.id, [_video("v1", channel.id)])
    staging.commit_sync("sync_1")

    assert channels.remove_channel_from_group(
        user_id=USER, group_id=first, channel_id=channel.id
    ) == 0
    assert len(_user_videos(db)) == 1
    assert channels.remove_channel_from_group(
        user_id=USER, group_id=second, channel_id=channel.id
    ) == 1
    assert _user_videos(db) == []


def test_import_settings_round_trip(tmp_path: Path) -> None:
    channels = ChannelRepository(_db(tmp_path))

    assert channels.get_import_settings(USER) == (None, None)
    channels.set_import_settings(user_id=USER, mode="limited", limit=25)
    assert channels.get_import_settings(USER) == ("limited", 25)
    channels.set_import_settings(user_id=USER, mode="new_only")
    assert channels.get_import_settings(USER) == ("new_only", None)


def test_progress_tracker_throttles_channel_writes(tmp_path: Path) -> None:
    db = _db(tmp_path)
    runs = SyncRunRepository(db)
    tracker = SyncProgressTracker(
        runs, sync_id="sync_1", user_id=USER, trigger="manual", write_every=10
    )
    tracker.start()
    tracker.set_targets(channel_ids=[f"ch_{index}" for index in range(25)], skipped=2)

    tracker.update_channel(1, "First")
    stored = runs.get("sync_1")
    assert stored is not None and stored.current_item == "Channel 1/25: First"

    tracker.update_channel(2, "Second")
    stored = runs.get("sync_1")
    assert stored is not None and stored.current_item == "Channel 1/25: First"

    tracker.update_channel(10, "Tenth")
    tracker.record_channel_failure("ch_9", channel_title="Ninth", reason="Timeout")
    tracker.record_error("Authentication expired during sync")
    run = tracker.complete("Done")

    stored = runs.get("sync_1")
    assert stored is not None
    assert stored == run
    assert stored.phase == "complete"
    assert stored.is_terminal is True
    assert stored.channels_skipped == 2
    assert stored.channels_failed == 1
    assert [error["kind"] for error in stored.errors] == ["channel", "run"]
    assert stored.errors[0]["title"] == "Ninth"


def test_alert_repository_lists_counts_and_acknowledges(tmp_path: Path) -> None:
    clock = MutableClock()
    alerts = AlertRepository(_db(tmp_path), clock=clock)
    first = alerts.create(
        alert_type="channel_died", severity="warning", title="Dead", message="m", data={"a": 1}
    )
    clock.advance(minutes=1)
    second = alerts.create(
        alert_type="high_failure_rate", severity="critical", title="Bad", message="m"
    )

    listed = alerts.list_unacknowledged()
    assert [alert.id for alert in listed] == [second.id, first.id]
    assert listed[1].data == {"a": 1}
    counts = alerts.count_unacknowledged()
    assert (counts.total_unacknowledged, counts.critical, counts.warning) == (2, 1, 1)

    assert alerts.acknowledge([first.id, "alert_missing"]) == 1
    assert alerts.acknowledge([first.id]) == 0
    assert alerts.acknowledge_all() == 1
    assert alerts.list_unacknowledged() == []


def test_task_run_repository_tracks_last_run(tmp_path: Path) -> None:
    tasks = TaskRunRepository(_db(tmp_path))

    assert tasks.get("cleanup") is None
    tasks.mark_started("cleanup", NOW)
    running = tasks.get("cleanup")
    assert running is not None and running.last_status == "running"

    tasks.mark_finished(
        "cleanup", finished_at=NOW + timedelta(seconds=2), status="ok", result={"cleared": 3}
    )
    finished = tasks.get("cleanup")
    assert finished is not None
    assert finished.last_started_at == NOW
    assert finished.last_finished_at == NOW + timedelta(seconds=2)
    assert finished.last_result == {"cleared": 3}
    assert [task.task_name for task in tasks.list_all()] == ["cleanup"]
