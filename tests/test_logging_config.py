from __future__ import annotations

import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

import pytest
import structlog
from structlog.contextvars import get_contextvars

from backend.app.config import load_settings
from backend.app.logging_config import (
    LOG_FILE_NAME,
    ROOT_LOGGER_NAME,
    configure_application_logging,
    sync_log_context,
)


def test_configure_application_logging_writes_json_file(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("TUBESYNC_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("TUBESYNC_LOG_LEVEL", "warning")
    monkeypatch.setenv("TUBESYNC_LOG_MAX_BYTES", "0")
    settings = load_settings(validate_oauth_secrets=False)

    log_file = configure_application_logging(settings)
    with sync_log_context(sync_id="sync_1", user_id="user-1", trigger="manual"):
        logging.getLogger(f"{ROOT_LOGGER_NAME}.sync").info("sync committed videos=%s", 4)
    for handler in logging.getLogger(ROOT_LOGGER_NAME).handlers:
        handler.flush()

    assert log_file == (tmp_path / "logs" / LOG_FILE_NAME).resolve()
    records = [
        json.loads(line) for line in log_file.read_text(encoding="utf-8").splitlines() if line
    ]
    committed = [record for record in records if record["event"] == "sync committed videos=4"]
    assert len(committed) == 1
    assert committed[0]["sync_id"] == "sync_1"
    assert committed[0]["sync_trigger"] == "manual"
    assert committed[0]["logger"] == "tubesync.sync"
    assert logging.getLogger("googleapiclient.discovery").level == logging.WARNING
    structlog.reset_defaults()


def test_sync_log_context_unbinds_on_exit() -> None:
    with sync_log_context(sync_id="sync_2", user_id="user-2", trigger="cron-high"):
        assert get_contextvars()["sync_id"] == "sync_2"

    assert "sync_id" not in get_contextvars()


def test_file_logs_rotate_and_redact_credentials(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("TUBESYNC_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("TUBESYNC_LOG_MAX_BYTES", "4096")
    monkeypatch.setenv("TUBESYNC_LOG_BACKUP_COUNT", "2")
    settings = load_settings(validate_oauth_secrets=False)

    log_file = configure_application_logging(settings)
    structlog.get_logger("tubesync.youtube").info("token refreshed", refresh_token="abc123")
    root = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in root.handlers:
        handler.flush()

    file_handlers = [
        handler for handler in root.handlers if isinstance(handler, RotatingFileHandler)
    ]
    assert len(file_handlers) == 1
    assert file_handlers[0].backupCount == 2
    contents = log_file.read_text(encoding="utf-8")
    assert "abc123" not in contents
    assert '"refresh_token": "[redacted]"' in contents
    structlog.reset_defaults()
