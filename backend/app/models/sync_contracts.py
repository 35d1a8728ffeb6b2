from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from backend.app.repositories.alert_repository import AlertCounts, AlertRecord
from backend.app.repositories.channel_repository import ChannelRecord
from backend.app.repositories.sync_lock_repository import SyncLock
from backend.app.repositories.sync_run_repository import SyncRun
from backend.app.services.quota_ledger import QuotaStatus
from backend.app.services.sync_jobs import JobResult
from backend.app.services.sync_service import SyncOutcome, SyncOutcomeKind


def _normalize_optional_id(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


class SyncVideosRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    channel_id: str | None = Field(default=None, max_length=120)
    group_id: str | None = Field(default=None, max_length=120)

    @field_validator("channel_id", "group_id", mode="before")
    @classmethod
    def _normalize_ids(cls, value: object) -> str | None:
        return _normalize_optional_id(value)

    @model_validator(mode="after")
    def _single_target(self) -> SyncVideosRequest:
        if self.channel_id is not None and self.group_id is not None:
            raise ValueError("channel_id and group_id are mutually exclusive")
        return self


class SyncVideosResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    success: bool
    kind: SyncOutcomeKind
    sync_id: str | None
    message: str
    videos_added: int = 0
    duplicates_linked: int = 0
    channels_processed: int = 0
    channels_failed: int = 0
    channels_skipped: int = 0
    playlists_processed: int = 0
    quota_used: int = 0
    resume_after: datetime | None = None
    errors: list[dict[str, Any]] = Field(default_factory=lambda: [])

    @classmethod
    def from_outcome(cls, outcome: SyncOutcome) -> SyncVideosResponse:
        return cls(
            success=outcome.success,
            kind=outcome.kind,
            sync_id=outcome.sync_id,
            message=outcome.message,
            videos_added=outcome.videos_committed,
            duplicates_linked=outcome.duplicates_linked,
            channels_processed=outcome.channels_processed,
            channels_failed=outcome.channels_failed,
            channels_skipped=outcome.channels_skipped,
            playlists_processed=outcome.playlists_processed,
            quota_used=outcome.quota_used,
            resume_after=outcome.resume_after,
            errors=outcome.errors,
        )


class SyncProgressResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    sync_id: str
    trigger: str
    phase: str
    status: str
    message: str | None = None
    current_item: str | None = None
    total_channels: int
    channels_processed: int
    channels_failed: int
    channels_skipped: int
    total_playlists: int
    playlists_processed: int
    videos_added: int
    quota_used: int
    errors: list[dict[str, Any]]
    paused_for_quota: bool
    resume_after: str | None = None
    started_at: str
    updated_at: str
    completed_at: str | None = None

    @classmethod
    def from_run(cls, run: SyncRun) -> SyncProgressResponse:
        return cls(
            sync_id=run.sync_id,
            trigger=run.trigger,
            phase=run.phase,
            status=run.status,
            message=run.message,
            current_item=run.current_item,
            total_channels=run.total_channels,
            channels_processed=run.channels_processed,
            channels_failed=run.channels_failed,
            channels_skipped=run.channels_skipped,
            total_playlists=run.total_playlists,
            playlists_processed=run.playlists_processed,
            videos_added=run.videos_added,
            quota_used=run.quota_used,
            errors=run.errors,
            paused_for_quota=run.paused_for_quota,
            resume_after=run.resume_after,
            started_at=run.started_at,
            updated_at=run.updated_at,
            completed_at=run.completed_at,
        )


class SyncProgressEnvelope(BaseModel):
    model_config = ConfigDict(extra="forbid")

    in_progress: bool
    progress: SyncProgressResponse | None = None


class SyncHistoryResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    runs: list[SyncProgressResponse]


class SyncCancelResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    cancelled: bool
    message: str


class SyncLockResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    in_progress: bool
    sync_id: str | None = None
    acquired_at: str | None = None
    expires_at: str | None = None
    cancel_requested: bool = False

    @classmethod
    def from_lock(cls, lock: SyncLock | None) -> SyncLockResponse:
        if lock is None:
            return cls(in_progress=False)
        return cls(
            in_progress=True,
            sync_id=lock.sync_id,
            acquired_at=lock.acquired_at,
            expires_at=lock.expires_at,
            cancel_requested=lock.cancelled,
        )


class QuotaStatusResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    used: int
    limit: int
    remaining: int
    percent_used: float
    reset_at: datetime
    is_warning: bool
    is_critical: bool
    is_exhausted: bool

    @classmethod
    def from_status(cls, status: QuotaStatus) -> QuotaStatusResponse:
        return cls(
            used=status.used,
            limit=status.limit,
            remaining=status.remaining,
            percent_used=round(status.percent_used, 4),
            reset_at=status.reset_at,
            is_warning=status.is_warning,
            is_critical=status.is_critical,
            is_exhausted=status.is_exhausted,
        )


class ChannelHealthItem(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    youtube_id: str
    title: str
    health_status: Literal["healthy", "warning", "unhealthy", "dead"]
    consecutive_failures: int
    last_success_at: str | None = None
    last_failure_at: str | None = None
    last_failure_reason: str | None = None

    @classmethod
    def from_channel(cls, channel: ChannelRecord) -> ChannelHealthItem:
        return cls(
            id=channel.id,
            youtube_id=channel.youtube_id,
            title=channel.title,
            health_status=channel.health_status,
            consecutive_failures=channel.consecutive_failures,
            last_success_at=channel.last_success_at,
            last_failure_at=channel.last_failure_at,
            last_failure_reason=channel.last_failure_reason,
        )


class UnhealthyChannelsResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    channels: list[ChannelHealthItem]


class ReviveChannelsRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    channel_ids: list[str] = Field(min_length=1, max_length=500)


class ReviveChannelsResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    revived: int


class AlertItem(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    alert_type: str
    severity: str
    title: str
    message: str
    data: dict[str, Any]
    created_at: str

    @classmethod
    def from_record(cls, record: AlertRecord) -> AlertItem:
        return cls(
            id=record.id,
            alert_type=record.alert_type,
            severity=record.severity,
            title=record.title,
            message=record.message,
            data=record.data,
            created_at=record.created_at,
        )


class AlertCountsResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    total_unacknowledged: int
    critical: int
    error: int
    warning: int
    info: int

    @classmethod
    def from_counts(cls, counts: AlertCounts) -> AlertCountsResponse:
        return cls(
            total_unacknowledged=counts.total_unacknowledged,
            critical=counts.critical,
            error=counts.error,
            warning=counts.warning,
            info=counts.info,
        )


class AlertsResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    alerts: list[AlertItem]
    counts: AlertCountsResponse


class AcknowledgeAlertsRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    alert_ids: list[str] | None = None
    all: bool = False

    @model_validator(mode="after")
    def _target_required(self) -> AcknowledgeAlertsRequest:
        if not self.all and not self.alert_ids:
            raise ValueError("provide alert_ids or set all=true")
        return self


class AcknowledgeAlertsResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    acknowledged: int


class JobResultResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    job: str
    success: bool
    message: str
    channels_processed: int
    channels_failed: int
    channels_skipped: int
    videos_added: int
    quota_used: int
    duration_ms: int
    errors: list[dict[str, Any]]
    details: dict[str, Any]

    @classmethod
    def from_result(cls, result: JobResult) -> JobResultResponse:
        return cls.model_validate(result.to_dict())
