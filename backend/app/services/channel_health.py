from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta

from backend.app.repositories.channel_repository import (
    ActivityLevel,
    ChannelRecord,
    ChannelRepository,
    HealthStatus,
    UserChannel,
)
from backend.app.repositories.common import Clock, parse_iso_datetime, utc_now

LOGGER = logging.getLogger("tubesync.channel_health")

WARNING_AFTER_FAILURES = 2
UNHEALTHY_AFTER_FAILURES = 5
DEAD_AFTER_FAILURES = 10
DEAD_RETRY_BASE_HOURS = 24
DEAD_RETRY_MAX_HOURS = 192


@dataclass(frozen=True)
class ActivityLevelUpdate:
    updated: int
    high_to_medium: int
    medium_to_low: int
    low_to_medium: int
    medium_to_high: int


def health_status_for_failures(consecutive_failures: int) -> HealthStatus:
    if consecutive_failures >= DEAD_AFTER_FAILURES:
        return "dead"
    if consecutive_failures >= UNHEALTHY_AFTER_FAILURES:
        return "unhealthy"
    if consecutive_failures >= WARNING_AFTER_FAILURES:
        return "warning"
    return "healthy"


def dead_channel_retry_at(channel: ChannelRecord) -> datetime | None:
    """When a dead channel becomes eligible for its next retry: 24h, 48h, 96h, then 192h."""
    if channel.health_status != "dead":
        return None
    last_failure = parse_iso_datetime(channel.last_failure_at)
    if last_failure is None:
        return None
    extra_failures = max(0, channel.consecutive_failures - DEAD_AFTER_FAILURES)
    backoff_hours = min(DEAD_RETRY_BASE_HOURS * (2**extra_failures), DEAD_RETRY_MAX_HOURS)
    return last_failure + timedelta(hours=backoff_hours)


def calculate_activity_level(videos_in_last_week: int, videos_in_last_month: int) -> ActivityLevel:
    if videos_in_last_week >= 2 or videos_in_last_month >= 8:
        return "high"
    if videos_in_last_week >= 1 or videos_in_last_month >= 4:
        return "medium"
    return "low"


class ChannelHealthTracker:
    def __init__(self, repository: ChannelRepository, *, clock: Clock = utc_now) -> None:
        self._repository = repository
        self._clock = clock

    def record_success(self, channel_id: str) -> None:
        self._repository.record_success(channel_id, self._clock())

    def record_failure(self, channel_id: str, reason: str) -> ChannelRecord | None:
        channel = self._repository.record_failure(
            channel_id,
            at=self._clock(),
            reason=reason,
            warning_after=WARNING_AFTER_FAILURES,
            unhealthy_after=UNHEALTHY_AFTER_FAILURES,
            dead_after=DEAD_AFTER_FAILURES,
        )
        if channel is not None and channel.consecutive_failures == DEAD_AFTER_FAILURES:
            LOGGER.warning(
                "channel marked dead channel_id=%s youtube_id=%s reason=%s",
                channel.id,
                channel.youtube_id,
                reason,
            )
        return channel

    def get_skippable_channel_ids(self, channel_ids: Iterable[str]) -> set[str]:
        now = self._clock()
        skippable: set[str] = set()
        for channel in self._repository.list_channels_with_status(channel_ids, "dead"):
            retry_at = dead_channel_retry_at(channel)
            if retry_at is None or retry_at > now:
                skippable.add(channel.id)
        return skippable

    def list_dead_channels_due_for_retry(self, *, limit: int) -> list[UserChannel]:
        now = self._clock()
        # Scan a wider window since most dead channels are still backing off.
        candidates = self._repository.list_dead_channels(limit=max(limit, 1) * 4)
        due: list[UserChannel] = []
        for candidate in candidates:
            retry_at = dead_channel_retry_at(candidate.channel)
            if retry_at is not None and retry_at <= now:
                due.append(candidate)
            if len(due) >= limit:
                break
        return due

    def get_unhealthy_channels(self, user_id: str) -> list[ChannelRecord]:
        return self._repository.list_user_unhealthy_channels(user_id)

    def revive_dead_channels(self, channel_ids: Iterable[str]) -> int:
        revived = self._repository.revive_channels(channel_ids)
        LOGGER.info("channels revived count=%s", revived)
        return revived

    def revive_user_channels(self, user_id: str, channel_ids: Iterable[str]) -> int:
        """Revive only channels the user is subscribed to."""
        owned = self._repository.list_user_channels(user_id, channel_ids=channel_ids)
        return self.revive_dead_channels(channel.id for channel in owned)

    def update_channel_activity_levels(self) -> ActivityLevelUpdate:
        now = self._clock()
        current_levels = self._repository.list_healthy_channel_levels()
        if not current_levels:
            return ActivityLevelUpdate(0, 0, 0, 0, 0)

        counts = self._repository.count_recent_uploads(
            current_levels.keys(),
            week_cutoff=now - timedelta(days=7),
            month_cutoff=now - timedelta(days=30),
        )
        moves: dict[ActivityLevel, list[str]] = {"high": [], "medium": [], "low": []}
        transitions: dict[tuple[ActivityLevel, ActivityLevel], int] = {}
        for channel_id, old_level in current_levels.items():
            week_count, month_count = counts.get(channel_id, (0, 0))
            new_level = calculate_activity_level(week_count, month_count)
            if new_level == old_level:
                continue
            moves[new_level].append(channel_id)
            transitions[(old_level, new_level)] = transitions.get((old_level, new_level), 0) + 1

        for level, channel_ids in moves.items():
            self._repository.set_activity_level(channel_ids, level)

        result = ActivityLevelUpdate(
            updated=sum(len(channel_ids) for channel_ids in moves.values()),
            high_to_medium=transitions.get(("high", "medium"), 0),
            medium_to_low=transitions.get(("medium", "low"), 0),
            low_to_medium=transitions.get(("low", "medium"), 0),
            medium_to_high=transitions.get(("medium", "high"), 0),
        )
        LOGGER.info("channel activity levels updated updated=%s", result.updated)
        return result
