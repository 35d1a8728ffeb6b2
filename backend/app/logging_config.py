from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path

import structlog
from structlog.contextvars import bind_contextvars, reset_contextvars
from structlog.typing import EventDict, Processor, WrappedLogger

from backend.app.config import AppSettings
from backend.app.telemetry import REDACTED, is_sensitive_key

LOG_FILE_NAME = "tubesync.log"
TELEMETRY_LOG_FILE_NAME = "tubesync-telemetry.log"
ROOT_LOGGER_NAME = "tubesync"
TELEMETRY_LOGGER_NAME = f"{ROOT_LOGGER_NAME}.telemetry"
# Google client libraries log every discovery fetch and HTTP request at INFO/DEBUG.
QUIET_LIBRARY_LOGGERS: tuple[str, ...] = (
    "googleapiclient.discovery",
    "googleapiclient.discovery_cache",
    "google_auth_httplib2",
    "urllib3.connectionpool",
)
_STRUCTLOG_KEYS_TO_KEEP: frozenset[str] = frozenset({"event", "level", "logger", "timestamp"})


def configure_application_logging(settings: AppSettings) -> Path:
    """Route `tubesync.*` loggers to stdout and a JSON-lines file under `log_dir`.

    Telemetry events get their own file so the main log stays readable. Returns
    the main log file path.
    """
    settings.log_dir.mkdir(parents=True, exist_ok=True)
    log_file = settings.log_dir / LOG_FILE_NAME
    telemetry_log_file = settings.log_dir / TELEMETRY_LOG_FILE_NAME

    _configure_structlog()

    root = _isolated_logger(ROOT_LOGGER_NAME, logging.DEBUG)
    console = logging.StreamHandler(stream=sys.stdout)
    console.setLevel(_resolve_log_level(settings.log_level))
    console.setFormatter(_console_formatter(colors=_is_tty(sys.stdout)))
    root.addHandler(console)
    root.addHandler(_json_file_handler(log_file, logging.DEBUG, settings))

    telemetry = _isolated_logger(TELEMETRY_LOGGER_NAME, logging.INFO)
    telemetry.addHandler(_json_file_handler(telemetry_log_file, logging.INFO, settings))

    for name in QUIET_LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    root.info(
        "logging configured console_level=%s path=%s telemetry_path=%s max_bytes=%s backups=%s",
        settings.log_level.upper(),
        log_file,
        telemetry_log_file,
        settings.log_max_bytes,
        settings.log_backup_count,
    )
    return log_file


@contextmanager
def sync_log_context(*, sync_id: str, user_id: str, trigger: str) -> Iterator[None]:
    """Tag every log line emitted during one sync run with its identity."""
    tokens = bind_contextvars(sync_id=sync_id, user_id=user_id, sync_trigger=trigger)
    try:
        yield
    finally:
        reset_contextvars(**tokens)


def _configure_structlog() -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            _redact_sensitive_fields,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def _isolated_logger(name: str, level: int) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    return logger


def _json_file_handler(path: Path, level: int, settings: AppSettings) -> logging.Handler:
    handler: logging.Handler
    if settings.log_max_bytes > 0:
        handler = RotatingFileHandler(
            path,
            maxBytes=settings.log_max_bytes,
            backupCount=settings.log_backup_count,
            encoding="utf-8",
        )
    else:
        handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_pre_chain(),
            processors=[
                _add_source_location,
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(sort_keys=True),
            ],
        )
    )
    return handler


def _console_formatter(*, colors: bool) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_pre_chain(),
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.dev.ConsoleRenderer(colors=colors),
        ],
    )


def _pre_chain() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
        _redact_sensitive_fields,
    ]


def _redact_sensitive_fields(
    _logger: WrappedLogger,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    for key in list(event_dict):
        if key.startswith("_") or key in _STRUCTLOG_KEYS_TO_KEEP:
            continue
        if is_sensitive_key(key):
            event_dict[key] = REDACTED
    return event_dict


def _add_source_location(
    _logger: WrappedLogger,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    record = event_dict.get("_record")
    if isinstance(record, logging.LogRecord):
        event_dict["module"] = record.module
        event_dict["lineno"] = record.lineno
        event_dict["func_name"] = record.funcName
        event_dict["thread_name"] = record.threadName
    return event_dict


def _resolve_log_level(raw_level: str) -> int:
    resolved = logging.getLevelName(raw_level.strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def _is_tty(stream: object) -> bool:
    isatty = getattr(stream, "isatty", None)
    if not callable(isatty):
        return False
    try:
        return bool(isatty())
    except (OSError, ValueError):
        return False
