from __future__ import annotations

import logging
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Literal, Protocol

import structlog

TelemetryValue = bool | int | float | str | None

SENSITIVE_KEY_TOKENS: frozenset[str] = frozenset(
    {
        "access_token",
        "authorization",
        "client_secret",
        "cookie",
        "credentials",
        "refresh_token",
        "secret",
        "token",
    }
)
REDACTED = "[redacted]"
_MAX_STRING_LENGTH = 160


def is_sensitive_key(key: str) -> bool:
    normalized = key.strip().lower()
    return any(token in normalized for token in SENSITIVE_KEY_TOKENS)


class TelemetrySink(Protocol):
    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        ...


class NoOpTelemetrySink:
    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        _ = (event_name, attributes)


class StructuredLogTelemetrySink:
    """Writes each event to the `tubesync.telemetry` logger (its own log file)."""

    def __init__(self) -> None:
        self._logger = structlog.get_logger("tubesync.telemetry")

    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        self._logger.info("telemetry", telemetry_event=event_name, **dict(attributes))


@dataclass(frozen=True)
class TelemetryClient:
    enabled: bool
    sink: TelemetrySink
    bound: Mapping[str, Any] = field(default_factory=lambda: {})

    @classmethod
    def disabled(cls) -> TelemetryClient:
        return cls(enabled=False, sink=NoOpTelemetrySink())

    def bind(self, **attributes: Any) -> TelemetryClient:
        """Return a client that adds `attributes` to every event it emits."""
        return replace(self, bound={**self.bound, **attributes})

    def emit(self, event_name: str, **attributes: Any) -> None:
        if not self.enabled:
            return
        self.sink.emit(
            event_name=event_name,
            attributes=sanitize_attributes({**self.bound, **attributes}),
        )

    @contextmanager
    def span(self, event_prefix: str, **attributes: Any) -> Iterator[dict[str, Any]]:
        """Emit `<prefix>.start`, then `.finish` or `.error` with the elapsed time.

        Callers may add result attributes to the yielded dict; they are attached
        to the finish event.
        """
        started_at = time.perf_counter()
        extra: dict[str, Any] = {}
        self.emit(f"{event_prefix}.start", **attributes)
        try:
            yield extra
        except Exception as exc:
            self.emit(
                f"{event_prefix}.error",
                **attributes,
                duration_ms=elapsed_ms(started_at),
                error_type=type(exc).__name__,
            )
            raise
        self.emit(
            f"{event_prefix}.finish",
            **attributes,
            **extra,
            duration_ms=elapsed_ms(started_at),
        )


def build_telemetry_client(*, enabled: bool, sink: Literal["none", "log"]) -> TelemetryClient:
    if not enabled or sink == "none":
        return TelemetryClient.disabled()
    if sink == "log":
        return TelemetryClient(enabled=True, sink=StructuredLogTelemetrySink())

    logging.getLogger("tubesync.telemetry").warning(
        "unsupported telemetry sink requested; disabling telemetry sink=%s",
        sink,
    )
    return TelemetryClient.disabled()


def elapsed_ms(started_at: float) -> int:
    return int((time.perf_counter() - started_at) * 1000)


def sanitize_attributes(attributes: Mapping[str, Any]) -> dict[str, TelemetryValue]:
    """Flatten event attributes to scalars, redacting anything credential-like.

    Collections collapse to their size and unknown objects to their type name,
    so event payloads never carry video titles or API responses wholesale.
    """
    sanitized: dict[str, TelemetryValue] = {}
    for raw_key, raw_value in attributes.items():
        key = str(raw_key).strip().lower()
        if not key:
            continue
        sanitized[key] = REDACTED if is_sensitive_key(key) else _scalar(raw_value)
    return sanitized


def _scalar(value: Any) -> TelemetryValue:
    if value is None or isinstance(value, bool | int | float):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, str):
        compact = " ".join(value.split())
        if len(compact) > _MAX_STRING_LENGTH:
            return f"{compact[:_MAX_STRING_LENGTH]}..."
        return compact
    if isinstance(value, list | tuple | set | frozenset):
        return len(value)
    return type(value).__name__
