from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, cast

import pytest
from pydantic import ValidationError

from backend.app.models.sync_contracts import (
    AcknowledgeAlertsRequest,
    JobResultResponse,
    SyncLockResponse,
    SyncVideosRequest,
    SyncVideosResponse,
)
from backend.app.repositories.sync_lock_repository import SyncLock
from backend.app.scripts.export_openapi import main as export_openapi
from backend.app.scripts.youtube_oauth_setup import copy_client_secret_if_needed
from backend.app.services.sync_jobs import JobResult
from backend.app.services.sync_service import SyncOutcome
from backend.app.services.youtube_api import YouTubeAuthError


def test_sync_request_normalizes_blank_ids() -> None:
    request = SyncVideosRequest(channel_id="  ", group_id=" grp_1 ")

    assert request.channel_id is None
    assert request.group_id == "grp_1"


def test_sync_request_rejects_unknown_fields() -> None:
    with pytest.raises(ValidationError):
        SyncVideosRequest.model_validate({"channel": "ch_1"})


def test_sync_response_from_quota_paused_outcome() -> None:
    resume_after = datetime(2026, 3, 3, tzinfo=UTC)
    outcome = SyncOutcome(
        sync_id="sync_1",
        kind="quota_paused",
        message="Quota exhausted. Synced 1 channels, 1 remaining.",
        videos_committed=6,
        channels_processed=1,
        quota_used=12,
        resume_after=resume_after,
    )

    response = SyncVideosResponse.from_outcome(outcome)

    assert response.success is True
    assert response.videos_added == 6
    assert response.resume_after == resume_after
    assert response.errors == []


def test_lock_response_maps_cancel_flag() -> None:
    lock = SyncLock(
        lock_id="lock_1",
        user_id="user-1",
        sync_id="sync_1",
        acquired_at="2026-03-02T12:00:00+00:00",
        expires_at="2026-03-02T12:15:00+00:00",
        cancelled=True,
    )

    assert SyncLockResponse.from_lock(None).in_progress is False
    response = SyncLockResponse.from_lock(lock)
    assert response.in_progress is True
    assert response.cancel_requested is True


def test_acknowledge_request_requires_target() -> None:
    with pytest.raises(ValidationError):
        AcknowledgeAlertsRequest()
    assert AcknowledgeAlertsRequest(all=True).alert_ids is None


def test_job_result_response_round_trips_details() -> None:
    result = JobResult(job="cleanup", message="done", details={"expired_locks_cleared": 2})

    response = JobResultResponse.from_result(result)

    assert response.details == {"expired_locks_cleared": 2}
    assert response.errors == []


def test_export_openapi_writes_schema(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    export_openapi()

    output = tmp_path / "openapi" / "openapi.json"
    assert output.exists()

    schema = cast(dict[str, Any], json.loads(output.read_text(encoding="utf-8")))
    assert schema["info"]["title"] == "tubesync API"
    assert "/sync/videos" in schema["paths"]
    assert "/cron/refresh/{tier}" in schema["paths"]


def test_copy_client_secret_if_needed(tmp_path: Path) -> None:
    source = tmp_path / "source.json"
    source.write_text('{"installed": {}}', encoding="utf-8")

    destination = tmp_path / "nested" / "dest.json"
    copy_client_secret_if_needed(source, destination)

    assert destination.read_text(encoding="utf-8") == '{"installed": {}}'


def test_copy_client_secret_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(YouTubeAuthError):
        copy_client_secret_if_needed(tmp_path / "missing.json", tmp_path / "dest.json")
