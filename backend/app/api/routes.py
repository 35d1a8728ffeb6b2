from __future__ import annotations

import hmac
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.app.config import AppSettings
from backend.app.dependencies import (
    get_alert_service,
    get_channel_health,
    get_job_runner,
    get_quota_ledger,
    get_settings,
    get_sync_locks,
    get_sync_service,
)
from backend.app.models.sync_contracts import (
    AcknowledgeAlertsRequest,
    AcknowledgeAlertsResponse,
    AlertCountsResponse,
    AlertItem,
    AlertsResponse,
    ChannelHealthItem,
    JobResultResponse,
    QuotaStatusResponse,
    ReviveChannelsRequest,
    ReviveChannelsResponse,
    SyncCancelResponse,
    SyncHistoryResponse,
    SyncLockResponse,
    SyncProgressEnvelope,
    SyncProgressResponse,
    SyncVideosRequest,
    SyncVideosResponse,
    UnhealthyChannelsResponse,
)
from backend.app.repositories.sync_lock_repository import SyncLockRepository
from backend.app.services.channel_health import ChannelHealthTracker
from backend.app.services.quota_ledger import QuotaLedger
from backend.app.services.sync_alerts import SyncAlertService
from backend.app.services.sync_jobs import JobResult, SyncJobRunner
from backend.app.services.sync_service import (
    InsufficientQuotaError,
    SyncAlreadyInProgressError,
    SyncRequest,
    VideoSyncService,
)
from backend.app.services.youtube_api import YouTubeApiError, YouTubeAuthError

router = APIRouter()


def require_user_id(
    x_user_id: Annotated[str | None, Header(max_length=120)] = None,
) -> str:
    user_id = x_user_id.strip() if isinstance(x_user_id, str) else ""
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-ID header.")
    return user_id


def require_cron_secret(
    settings: Annotated[AppSettings, Depends(get_settings)],
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    if settings.cron_secret is None:
        raise HTTPException(
            status_code=403,
            detail="Cron endpoints are disabled; set TUBESYNC_CRON_SECRET to enable them.",
        )
    expected = f"Bearer {settings.cron_secret}"
    if authorization is None or not hmac.compare_digest(authorization, expected):
        raise HTTPException(status_code=401, detail="Invalid cron secret.")


UserId = Annotated[str, Depends(require_user_id)]


@router.post(
    "/sync/videos",
    response_model=SyncVideosResponse,
    tags=["sync"],
    operation_id="sync_videos",
)
def sync_videos(
    request: SyncVideosRequest,
    user_id: UserId,
    sync_service: Annotated[VideoSyncService, Depends(get_sync_service)],
) -> SyncVideosResponse:
    context_tokens = bind_contextvars(user_id=user_id)
    try:
        outcome = sync_service.start_sync(
            user_id,
            SyncRequest(channel_id=request.channel_id, group_id=request.group_id),
        )
    except SyncAlreadyInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except InsufficientQuotaError as exc:
        raise HTTPException(
            status_code=429,
            detail={
                "message": exc.reason,
                "quota": QuotaStatusResponse.from_status(exc.status).model_dump(mode="json"),
            },
        ) from exc
    except YouTubeAuthError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    except YouTubeApiError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    finally:
        reset_contextvars(**context_tokens)
    return SyncVideosResponse.from_outcome(outcome)


@router.get(
    "/sync/progress",
    response_model=SyncProgressEnvelope,
    tags=["sync"],
    operation_id="sync_progress",
)
def sync_progress(
    user_id: UserId,
    sync_service: Annotated[VideoSyncService, Depends(get_sync_service)],
) -> SyncProgressEnvelope:
    run = sync_service.get_progress(user_id)
    if run is None:
        return SyncProgressEnvelope(in_progress=False)
    return SyncProgressEnvelope(
        in_progress=run.status == "running",
        progress=SyncProgressResponse.from_run(run),
    )


@router.get(
    "/sync/history",
    response_model=SyncHistoryResponse,
    tags=["sync"],
    operation_id="sync_history",
)
def sync_history(
    user_id: UserId,
    sync_service: Annotated[VideoSyncService, Depends(get_sync_service)],
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
) -> SyncHistoryResponse:
    runs = sync_service.list_history(user_id, limit=limit)
    return SyncHistoryResponse(runs=[SyncProgressResponse.from_run(run) for run in runs])


@router.post(
    "/sync/cancel",
    response_model=SyncCancelResponse,
    tags=["sync"],
    operation_id="sync_cancel",
)
def sync_cancel(
    user_id: UserId,
    sync_service: Annotated[VideoSyncService, Depends(get_sync_service)],
) -> SyncCancelResponse:
    if sync_service.cancel_sync(user_id):
        return SyncCancelResponse(
            cancelled=True,
            message="Cancellation requested; the sync stops before its next channel.",
        )
    return SyncCancelResponse(cancelled=False, message="No sync is in progress.")


@router.get(
    "/sync/lock",
    response_model=SyncLockResponse,
    tags=["sync"],
    operation_id="sync_lock_status",
)
def sync_lock_status(
    user_id: UserId,
    locks: Annotated[SyncLockRepository, Depends(get_sync_locks)],
) -> SyncLockResponse:
    return SyncLockResponse.from_lock(locks.get_lock(user_id))


@router.get(
    "/quota",
    response_model=QuotaStatusResponse,
    tags=["quota"],
    operation_id="quota_status",
)
def quota_status(
    user_id: UserId,
    quota_ledger: Annotated[QuotaLedger, Depends(get_quota_ledger)],
) -> QuotaStatusResponse:
    return QuotaStatusResponse.from_status(quota_ledger.get_status(user_id))


@router.get(
    "/channels/unhealthy",
    response_model=UnhealthyChannelsResponse,
    tags=["channels"],
    operation_id="channels_unhealthy",
)
def channels_unhealthy(
    user_id: UserId,
    health: Annotated[ChannelHealthTracker, Depends(get_channel_health)],
) -> UnhealthyChannelsResponse:
    channels = health.get_unhealthy_channels(user_id)
    return UnhealthyChannelsResponse(
        channels=[ChannelHealthItem.from_channel(channel) for channel in channels]
    )


@router.post(
    "/channels/revive",
    response_model=ReviveChannelsResponse,
    tags=["channels"],
    operation_id="channels_revive",
)
def channels_revive(
    request: ReviveChannelsRequest,
    user_id: UserId,
    health: Annotated[ChannelHealthTracker, Depends(get_channel_health)],
) -> ReviveChannelsResponse:
    return ReviveChannelsResponse(
        revived=health.revive_user_channels(user_id, request.channel_ids)
    )


@router.get(
    "/alerts",
    response_model=AlertsResponse,
    tags=["alerts"],
    operation_id="alerts_list",
)
def alerts_list(
    alerts: Annotated[SyncAlertService, Depends(get_alert_service)],
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
) -> AlertsResponse:
    records = alerts.list_unacknowledged(limit=limit)
    return AlertsResponse(
        alerts=[AlertItem.from_record(record) for record in records],
        counts=AlertCountsResponse.from_counts(alerts.counts()),
    )


@router.post(
    "/alerts/acknowledge",
    response_model=AcknowledgeAlertsResponse,
    tags=["alerts"],
    operation_id="alerts_acknowledge",
)
def alerts_acknowledge(
    request: AcknowledgeAlertsRequest,
    alerts: Annotated[SyncAlertService, Depends(get_alert_service)],
) -> AcknowledgeAlertsResponse:
    alert_ids = None if request.all else request.alert_ids
    return AcknowledgeAlertsResponse(acknowledged=alerts.acknowledge(alert_ids))


CronAuth = Annotated[None, Depends(require_cron_secret)]
JobRunner = Annotated[SyncJobRunner, Depends(get_job_runner)]


def _job_response(result: JobResult) -> JobResultResponse:
    return JobResultResponse.from_result(result)


@router.post(
    "/cron/refresh/{tier}",
    response_model=JobResultResponse,
    tags=["cron"],
    operation_id="cron_refresh_tier",
)
def cron_refresh_tier(
    tier: Literal["high", "medium", "low"],
    _: CronAuth,
    jobs: JobRunner,
) -> JobResultResponse:
    return _job_response(jobs.run_tier_refresh(tier))


@router.post(
    "/cron/refresh-playlists",
    response_model=JobResultResponse,
    tags=["cron"],
    operation_id="cron_refresh_playlists",
)
def cron_refresh_playlists(_: CronAuth, jobs: JobRunner) -> JobResultResponse:
    return _job_response(jobs.refresh_stale_upload_playlists())


@router.post(
    "/cron/retry-dead-channels",
    response_model=JobResultResponse,
    tags=["cron"],
    operation_id="cron_retry_dead_channels",
)
def cron_retry_dead_channels(_: CronAuth, jobs: JobRunner) -> JobResultResponse:
    return _job_response(jobs.retry_dead_channels())


@router.post(
    "/cron/resume-paused-syncs",
    response_model=JobResultResponse,
    tags=["cron"],
    operation_id="cron_resume_paused_syncs",
)
def cron_resume_paused_syncs(_: CronAuth, jobs: JobRunner) -> JobResultResponse:
    return _job_response(jobs.resume_paused_syncs())


@router.post(
    "/cron/cleanup",
    response_model=JobResultResponse,
    tags=["cron"],
    operation_id="cron_cleanup",
)
def cron_cleanup(_: CronAuth, jobs: JobRunner) -> JobResultResponse:
    return _job_response(jobs.cleanup())


@router.post(
    "/cron/activity-levels",
    response_model=JobResultResponse,
    tags=["cron"],
    operation_id="cron_activity_levels",
)
def cron_activity_levels(_: CronAuth, jobs: JobRunner) -> JobResultResponse:
    return _job_response(jobs.update_activity_levels())
