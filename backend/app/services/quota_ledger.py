from __future__ import annotations

import logging
import math
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Literal

from backend.app.repositories.common import Clock, next_utc_midnight, utc_now
from backend.app.repositories.quota_repository import QuotaRepository

LOGGER = logging.getLogger("tubesync.quota")

QuotaOperation = Literal[
    "subscriptions.list",
    "channels.list",
    "playlistItems.list",
    "playlists.list",
    "videos.list",
]

# Units per request, from the YouTube Data API v3 cost table. Detail lookups
# are charged per batch of up to 50 ids.
QUOTA_COSTS: dict[QuotaOperation, int] = {
    "subscriptions.list": 1,
    "channels.list": 1,
    "playlistItems.list": 1,
    "playlists.list": 1,
    "videos.list": 1,
}
DAILY_QUOTA_LIMIT = 10_000
QUOTA_WARNING_THRESHOLD = 0.9
QUOTA_CRITICAL_THRESHOLD = 0.95
ESTIMATE_SAFETY_BUFFER = 1.1


@dataclass(frozen=True)
class QuotaStatus:
    used: int
    limit: int
    remaining: int
    reset_at: datetime
    percent_used: float
    is_warning: bool
    is_critical: bool
    is_exhausted: bool


@dataclass(frozen=True)
class QuotaCheck:
    allowed: bool
    reason: str | None
    status: QuotaStatus


class QuotaLedger:
    def __init__(
        self,
        repository: QuotaRepository,
        *,
        daily_limit: int = DAILY_QUOTA_LIMIT,
        warning_threshold: float = QUOTA_WARNING_THRESHOLD,
        critical_threshold: float = QUOTA_CRITICAL_THRESHOLD,
        clock: Clock = utc_now,
    ) -> None:
        self._repository = repository
        self._daily_limit = max(1, daily_limit)
        self._warning_threshold = warning_threshold
        self._critical_threshold = critical_threshold
        self._clock = clock

    @property
    def daily_limit(self) -> int:
        return self._daily_limit

    @property
    def critical_threshold(self) -> float:
        return self._critical_threshold

    def get_status(self, user_id: str) -> QuotaStatus:
        now = self._clock()
        used = self._repository.units_used(user_id=user_id, date_utc=_date_key(now))
        return self._status_for(used, now)

    def check_available(
        self,
        user_id: str,
        estimated_units: int,
        *,
        allow_critical: bool = False,
    ) -> QuotaCheck:
        status = self.get_status(user_id)
        if status.is_exhausted:
            return QuotaCheck(
                allowed=False,
                reason=(
                    "Daily YouTube API quota exhausted. "
                    f"Resets at {status.reset_at.isoformat()}."
                ),
                status=status,
            )
        if status.remaining < estimated_units:
            return QuotaCheck(
                allowed=False,
                reason=(
                    f"Insufficient quota: operation needs ~{estimated_units} units, "
                    f"{status.remaining} remaining."
                ),
                status=status,
            )
        if status.is_critical and not allow_critical:
            return QuotaCheck(
                allowed=False,
                reason=(
                    f"Quota usage is critical ({round(status.percent_used * 100)}%); "
                    "only essential operations may run until the daily reset."
                ),
                status=status,
            )
        return QuotaCheck(allowed=True, reason=None, status=status)

    def track(self, user_id: str, operation: QuotaOperation, count: int = 1) -> int:
        units = QUOTA_COSTS[operation] * max(0, count)
        if units == 0:
            return self.get_status(user_id).used
        total = self._repository.increment(
            user_id=user_id,
            date_utc=_date_key(self._clock()),
            units=units,
            calls=max(0, count),
        )
        LOGGER.debug(
            "quota tracked user_id=%s operation=%s units=%s total=%s",
            user_id,
            operation,
            units,
            total,
        )
        return total

    def track_batch(
        self,
        user_id: str,
        operations: Iterable[tuple[QuotaOperation, int]],
    ) -> int:
        units = 0
        calls = 0
        for operation, count in operations:
            units += QUOTA_COSTS[operation] * max(0, count)
            calls += max(0, count)
        if units == 0:
            return self.get_status(user_id).used
        return self._repository.increment(
            user_id=user_id,
            date_utc=_date_key(self._clock()),
            units=units,
            calls=calls,
        )

    def _status_for(self, used: int, now: datetime) -> QuotaStatus:
        limit = self._daily_limit
        remaining = max(0, limit - used)
        percent_used = used / limit
        return QuotaStatus(
            used=used,
            limit=limit,
            remaining=remaining,
            reset_at=next_utc_midnight(now),
            percent_used=percent_used,
            is_warning=percent_used >= self._warning_threshold,
            is_critical=percent_used >= self._critical_threshold,
            is_exhausted=remaining <= 0,
        )


def estimate_quota_needed(
    *,
    channel_count: int,
    videos_per_channel: int | None = None,
    full_sync: bool = False,
    subscription_count: int = 0,
) -> int:
    per_channel_videos = videos_per_channel
    if per_channel_videos is None:
        per_channel_videos = 50 if full_sync else 10
    pages_per_channel = max(1, math.ceil(max(0, per_channel_videos) / 50))

    # One playlistItems page per 50 videos plus one videos.list batch.
    units = max(0, channel_count) * (1 + pages_per_channel)
    if subscription_count > 0:
        units += math.ceil(subscription_count / 50) * 2
    return math.ceil(units * ESTIMATE_SAFETY_BUFFER)


def _date_key(now: datetime) -> str:
    return now.astimezone(UTC).date().isoformat()
