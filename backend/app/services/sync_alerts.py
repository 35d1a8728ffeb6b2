from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any

from backend.app.repositories.alert_repository import (
    AlertCounts,
    AlertRecord,
    AlertRepository,
    AlertSeverity,
    AlertType,
)
from backend.app.repositories.channel_repository import ChannelRecord
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("tubesync.alerts")

FAILURE_RATE_WARNING = 0.1
FAILURE_RATE_ERROR = 0.2
FAILURE_RATE_CRITICAL = 0.5
WARNING_MIN_FAILURES = 3


class SyncAlertService:
    """Turns notable sync outcomes into persisted alerts."""

    def __init__(self, repository: AlertRepository, *, telemetry: TelemetryClient) -> None:
        self._repository = repository
        self._telemetry = telemetry

    def check_failure_rate(
        self,
        *,
        sync_type: str,
        channels_processed: int,
        channels_failed: int,
        errors: Sequence[dict[str, Any]] = (),
    ) -> AlertRecord | None:
        """Raise at most one failure-rate alert for a batch of channel syncs.

        ``channels_processed`` counts successes only; the rate is taken over
        successes plus failures.
        """
        total = channels_processed + channels_failed
        if total <= 0:
            return None
        failure_rate = channels_failed / total
        percent = round(failure_rate * 100)
        data: dict[str, Any] = {
            "sync_type": sync_type,
            "failure_rate": failure_rate,
            "channels_failed": channels_failed,
            "channels_processed": channels_processed,
        }

        if failure_rate >= FAILURE_RATE_CRITICAL:
            return self._create(
                "high_failure_rate",
                "critical",
                title=f"Critical: {percent}% of channels failed",
                message=(
                    f"{channels_failed} out of {total} channels failed during {sync_type} "
                    "sync. This may indicate a system-wide issue."
                ),
                data={**data, "errors": list(errors[:10])},
            )
        if failure_rate >= FAILURE_RATE_ERROR:
            return self._create(
                "high_failure_rate",
                "error",
                title=f"High failure rate: {percent}% of channels failed",
                message=(
                    f"{channels_failed} out of {total} channels failed during {sync_type} sync."
                ),
                data={**data, "errors": list(errors[:5])},
            )
        if failure_rate >= FAILURE_RATE_WARNING and channels_failed >= WARNING_MIN_FAILURES:
            return self._create(
                "high_failure_rate",
                "warning",
                title=f"{channels_failed} channels failed during sync",
                message=f"{percent}% failure rate during {sync_type} sync.",
                data=data,
            )
        return None

    def channel_died(self, channel: ChannelRecord) -> AlertRecord:
        return self._create(
            "channel_died",
            "warning",
            title=f"Channel marked as dead: {channel.title or channel.youtube_id}",
            message=(
                "Channel has failed 10+ consecutive times and will only be retried "
                "on the dead-channel backoff schedule."
            ),
            data={
                "channel_id": channel.id,
                "youtube_id": channel.youtube_id,
                "channel_title": channel.title,
                "consecutive_failures": channel.consecutive_failures,
                "last_error": channel.last_failure_reason,
            },
        )

    def quota_exhausted(
        self,
        *,
        user_id: str,
        sync_id: str,
        resume_after: datetime,
    ) -> AlertRecord:
        return self._create(
            "quota_exhausted",
            "error",
            title="Daily YouTube API quota exhausted",
            message=f"Sync paused; it will resume after {resume_after.isoformat()}.",
            data={
                "user_id": user_id,
                "sync_id": sync_id,
                "resume_after": resume_after.isoformat(),
            },
        )

    def sync_error(self, *, sync_type: str, reason: str) -> AlertRecord:
        return self._create(
            "sync_error",
            "error",
            title=f"{sync_type} sync failed",
            message=reason,
            data={"sync_type": sync_type},
        )

    def list_unacknowledged(self, *, limit: int = 50) -> list[AlertRecord]:
        return self._repository.list_unacknowledged(limit=limit)

    def counts(self) -> AlertCounts:
        return self._repository.count_unacknowledged()

    def acknowledge(self, alert_ids: Iterable[str] | None = None) -> int:
        if alert_ids is None:
            return self._repository.acknowledge_all()
        return self._repository.acknowledge(alert_ids)

    def _create(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        *,
        title: str,
        message: str,
        data: dict[str, Any],
    ) -> AlertRecord:
        record = self._repository.create(
            alert_type=alert_type,
            severity=severity,
            title=title,
            message=message,
            data=data,
        )
        LOGGER.warning(
            "alert created alert_id=%s type=%s severity=%s title=%s",
            record.id,
            alert_type,
            severity,
            title,
        )
        self._telemetry.emit(
            "sync.alert.created",
            alert_id=record.id,
            alert_type=alert_type,
            severity=severity,
        )
        return record
