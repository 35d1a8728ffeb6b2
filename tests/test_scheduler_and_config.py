from __future__ import annotations

import time
from pathlib import Path
from typing import Any, cast

import pytest

from backend.app.config import load_settings
from backend.app.repositories.database import Database
from backend.app.repositories.task_run_repository import TaskRunRepository
from backend.app.services.scheduler_service import DEFAULT_TASKS, ScheduledTask, SchedulerService
from backend.app.services.sync_jobs import JobResult
from backend.app.telemetry import TelemetryClient
from tests.support import CaptureSink, MutableClock


class _FakeJobRunner:
    def __init__(self, *, failing: frozenset[str] = frozenset()) -> None:
        self.calls: list[str] = []
        self._failing = failing

    def run(self, name: str) -> JobResult:
        self.calls.append(name)
        if name in self._failing:
            raise RuntimeError(f"{name} exploded")
        return JobResult(job=name, message=f"ran {name}")


def _task_runs(tmp_path: Path) -> TaskRunRepository:
    database = Database(tmp_path / "state.db")
    database.initialize()
    return TaskRunRepository(database)


def test_default_tasks_cover_every_periodic_job() -> None:
    intervals = {task.name: task.interval_seconds for task in DEFAULT_TASKS}

    assert intervals["refresh_high"] == 2 * 60 * 60
    assert intervals["refresh_medium"] == 6 * 60 * 60
    assert intervals["refresh_low"] == 24 * 60 * 60
    assert intervals["refresh_playlists"] == 7 * 24 * 60 * 60
    assert set(intervals) == {
        "cleanup",
        "resume_paused_syncs",
        "refresh_high",
        "refresh_medium",
        "refresh_low",
        "retry_dead_channels",
        "refresh_playlists",
        "activity_levels",
    }


def test_scheduler_runs_tasks_when_their_interval_elapses(tmp_path: Path) -> None:
    jobs = _FakeJobRunner()
    clock = MutableClock()
    task_runs = _task_runs(tmp_path)
    scheduler = SchedulerService(
        cast(Any, jobs),
        task_runs,
        60,
        tasks=(ScheduledTask("cleanup", 3600), ScheduledTask("refresh_low", 86_400)),
        clock=clock,
    )

    assert scheduler.run_due_tasks() == 2
    assert scheduler.run_due_tasks() == 0

    clock.advance(hours=1)
    assert [task.name for task in scheduler.due_tasks()] == ["cleanup"]
    scheduler.run_due_tasks()

    assert jobs.calls == ["cleanup", "refresh_low", "cleanup"]
    record = task_runs.get("refresh_low")
    assert record is not None
    assert record.last_status == "ok"
    assert record.last_result["message"] == "ran refresh_low"


def test_scheduler_records_task_failures(tmp_path: Path) -> None:
    jobs = _FakeJobRunner(failing=frozenset({"cleanup"}))
    sink = CaptureSink()
    task_runs = _task_runs(tmp_path)
    scheduler = SchedulerService(
        cast(Any, jobs),
        task_runs,
        60,
        tasks=(ScheduledTask("cleanup", 3600),),
        telemetry=TelemetryClient(enabled=True, sink=sink),
        clock=MutableClock(),
    )

    assert scheduler.run_task("cleanup") is None

    record = task_runs.get("cleanup")
    assert record is not None
    assert record.last_status == "error"
    assert record.last_result == {"error_type": "RuntimeError", "error": "cleanup exploded"}
    assert sink.names() == ["scheduler.task.start", "scheduler.task.error"]


def test_scheduler_thread_polls_until_stopped(tmp_path: Path) -> None:
    jobs = _FakeJobRunner()
    scheduler = SchedulerService(
        cast(Any, jobs),
        _task_runs(tmp_path),
        1,
        tasks=(ScheduledTask("cleanup", 3600),),
    )
    scheduler.start()
    time.sleep(0.5)
    scheduler.stop()

    assert jobs.calls == ["cleanup"]


def test_scheduler_process_lock_allows_single_instance(tmp_path: Path) -> None:
    lock_path = tmp_path / "scheduler.lock"
    first_jobs = _FakeJobRunner()
    second_jobs = _FakeJobRunner()
    tasks = (ScheduledTask("cleanup", 3600),)
    first = SchedulerService(
        cast(Any, first_jobs), _task_runs(tmp_path), 1, tasks=tasks, lock_path=lock_path
    )
    second = SchedulerService(
        cast(Any, second_jobs), _task_runs(tmp_path), 1, tasks=tasks, lock_path=lock_path
    )

    first.start()
    second.start()
    time.sleep(0.5)
    second.stop()
    first.stop()

    assert first_jobs.calls == ["cleanup"]
    assert second_jobs.calls == []


def test_load_settings_parses_values_and_paths(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    data_dir = tmp_path / "data"
    data_dir.mkdir(parents=True)
    (data_dir / "youtube-client-secret.json").write_text("{}", encoding="utf-8")

    monkeypatch.setenv("TUBESYNC_DATA_DIR", str(data_dir))
    monkeypatch.setenv("TUBESYNC_ENABLE_SCHEDULER", "false")
    monkeypatch.setenv("TUBESYNC_YOUTUBE_DAILY_QUOTA_LIMIT", "12000")
    monkeypatch.setenv("TUBESYNC_YOUTUBE_QUOTA_WARNING_PERCENT", "0.75")
    monkeypatch.setenv("TUBESYNC_DEFAULT_IMPORT_MODE", "New-Only")
    monkeypatch.setenv("TUBESYNC_SHORTS_NON_SHORT_PATTERNS", '["teaser", " trailer ", ""]')
    monkeypatch.setenv("TUBESYNC_CRON_SECRET", "  ")
    monkeypatch.setenv("TUBESYNC_TELEMETRY_SINK", " LOG ")
    monkeypatch.setenv("TUBESYNC_LOG_LEVEL", "DEBUG")

    settings = load_settings()

    assert settings.scheduler_enabled is False
    assert settings.youtube_daily_quota_limit == 12_000
    assert settings.youtube_quota_warning_percent == 0.75
    assert settings.default_import_mode == "new_only"
    assert settings.shorts_non_short_patterns == ("teaser", "trailer")
    assert settings.cron_secret is None
    assert settings.telemetry_sink == "log"
    assert settings.db_path == (data_dir / "state.db").resolve()
    assert settings.youtube_token_dir == (data_dir / "tokens").resolve()
    assert settings.log_dir == (data_dir / "logs").resolve()


def test_load_settings_keeps_explicit_paths(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    data_dir = tmp_path / "data"
    secret = tmp_path / "elsewhere" / "secret.json"
    secret.parent.mkdir(parents=True)
    secret.write_text("{}", encoding="utf-8")

    monkeypatch.setenv("TUBESYNC_DATA_DIR", str(data_dir))
    monkeypatch.setenv("TUBESYNC_YOUTUBE_CLIENT_SECRET_PATH", str(secret))
    monkeypatch.setenv("TUBESYNC_DB_PATH", str(tmp_path / "custom.db"))

    settings = load_settings()

    assert settings.youtube_client_secret_path == secret.resolve()
    assert settings.db_path == (tmp_path / "custom.db").resolve()
    assert settings.scheduler_enabled is True


def test_load_settings_requires_client_secret(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("TUBESYNC_DATA_DIR", str(tmp_path / "empty"))

    with pytest.raises(ValueError, match="Missing OAuth client secret JSON"):
        load_settings()

    assert load_settings(validate_oauth_secrets=False).data_dir == (tmp_path / "empty").resolve()


def test_load_settings_rejects_unknown_import_mode(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("TUBESYNC_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("TUBESYNC_DEFAULT_IMPORT_MODE", "everything")

    with pytest.raises(ValueError, match="TUBESYNC_DEFAULT_IMPORT_MODE"):
        load_settings(validate_oauth_secrets=False)
