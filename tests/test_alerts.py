from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from backend.app.repositories.alert_repository import AlertRepository
from backend.app.repositories.channel_repository import ChannelRepository
from backend.app.repositories.database import Database
from backend.app.services.sync_alerts import SyncAlertService
from backend.app.telemetry import TelemetryClient
from tests.support import NOW, CaptureSink, MutableClock


def _service(tmp_path: Path, sink: CaptureSink | None = None) -> SyncAlertService:
    database = Database(tmp_path / "state.db")
    database.initialize()
    telemetry = (
        TelemetryClient(enabled=True, sink=sink) if sink is not None else TelemetryClient.disabled()
    )
    return SyncAlertService(AlertRepository(database, clock=MutableClock()), telemetry=telemetry)


@pytest.mark.parametrize(
    ("processed", "failed", "severity"),
    [
        (5, 5, "critical"),
        (7, 3, "error"),
        (17, 3, "warning"),
        (18, 2, None),
        (27, 3, "warning"),
        (8, 0, None),
        (0, 0, None),
    ],
)
def test_failure_rate_thresholds(
    tmp_path: Path, processed: int, failed: int, severity: str | None
) -> None:
    service = _service(tmp_path)

    alert = service.check_failure_rate(
        sync_type="refresh_medium", channels_processed=processed, channels_failed=failed
    )

    if severity is None:
        assert alert is None
        assert service.counts().total_unacknowledged == 0
    else:
        assert alert is not None
        assert alert.severity == severity
        assert alert.alert_type == "high_failure_rate"


def test_critical_alert_keeps_first_ten_errors(tmp_path: Path) -> None:
    service = _service(tmp_path)
    errors = [{"kind": "channel", "id": f"ch_{index}", "reason": "boom"} for index in range(12)]

    alert = service.check_failure_rate(
        sync_type="manual", channels_processed=0, channels_failed=12, errors=errors
    )

    assert alert is not None
    assert alert.title == "Critical: 100% of channels failed"
    assert len(alert.data["errors"]) == 10
    assert alert.data["failure_rate"] == 1.0
    assert alert.message.startswith("12 out of 12 channels failed during manual sync.")


def test_channel_died_and_quota_alerts(tmp_path: Path) -> None:
    sink = CaptureSink()
    service = _service(tmp_path, sink)
    database = Database(tmp_path / "state.db")
    channels = ChannelRepository(database)
    channel = channels.get_or_create_channel(
        youtube_id="UC_gone", title="Gone Channel", uploads_playlist_id="UU_gone"
    )

    died = service.channel_died(channel)
    exhausted = service.quota_exhausted(
        user_id="user-1", sync_id="sync_1", resume_after=NOW + timedelta(hours=12)
    )

    assert died.severity == "warning"
    assert died.title == "Channel marked as dead: Gone Channel"
    assert died.data["youtube_id"] == "UC_gone"
    assert exhausted.severity == "error"
    assert exhausted.data["sync_id"] == "sync_1"
    assert sink.names().count("sync.alert.created") == 2


def test_acknowledge_selected_and_all(tmp_path: Path) -> None:
    service = _service(tmp_path)
    first = service.sync_error(sync_type="refresh_low", reason="database locked")
    service.sync_error(sync_type="refresh_high", reason="database locked")

    assert service.acknowledge([first.id]) == 1
    assert service.counts().error == 1
    assert service.acknowledge() == 1
    assert service.list_unacknowledged() == []
