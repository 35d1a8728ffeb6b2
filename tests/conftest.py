from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from backend.app.dependencies import reset_cached_dependencies
from backend.app.main import create_app

CRON_SECRET = "test-cron-secret"


@pytest.fixture
def client(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[TestClient]:
    data_dir = tmp_path / "runtime-data"
    data_dir.mkdir(parents=True, exist_ok=True)
    (data_dir / "youtube-client-secret.json").write_text("{}", encoding="utf-8")

    monkeypatch.setenv("TUBESYNC_DATA_DIR", str(data_dir))
    monkeypatch.setenv("TUBESYNC_ENABLE_SCHEDULER", "0")
    monkeypatch.setenv("TUBESYNC_CRON_SECRET", CRON_SECRET)
    monkeypatch.setenv("TUBESYNC_TELEMETRY_SINK", "none")
    reset_cached_dependencies()

    app = create_app()
    with TestClient(app) as test_client:
        yield test_client

    reset_cached_dependencies()
