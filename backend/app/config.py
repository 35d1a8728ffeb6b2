from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DATA_DIR = ".tubesync"
IMPORT_MODES: frozenset[str] = frozenset({"new_only", "limited", "unlimited"})
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (
    ("db_path", Path("state.db")),
    ("youtube_token_dir", Path("tokens")),
    ("youtube_client_secret_path", Path("youtube-client-secret.json")),
    ("log_dir", Path("logs")),
)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = (
    "scheduler_enabled",
    "telemetry_enabled",
)
_TRUE_VALUES: frozenset[str] = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES: frozenset[str] = frozenset({"0", "false", "no", "off"})


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _data_dir_default_note(relative_path: Path) -> str:
    return f"Defaults to `${{TUBESYNC_DATA_DIR}}/{relative_path}` when not explicitly set."


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


def _parse_bool_with_default(value: Any, *, default: bool) -> bool:
    """Lenient flag parsing: anything unrecognised falls back to the field default."""
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower() if value is not None else ""
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    return default


def _normalize_optional_text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


class AppSettings(BaseSettings):
    """
    Canonical runtime configuration.

    Every option is read from a `TUBESYNC_*` environment variable (or `.env`)
    and documents its default here.
    """

    model_config = SettingsConfigDict(
        env_prefix="TUBESYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Core paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for local state, logs, and OAuth artifacts.",
    )
    db_path: Path = Field(
        default=_default_in_data_dir(Path("state.db")),
        description=f"SQLite database path. {_data_dir_default_note(Path('state.db'))}",
    )
    youtube_token_dir: Path = Field(
        default=_default_in_data_dir(Path("tokens")),
        description=(
            "Directory holding one OAuth token JSON per user (`<user_id>.json`). "
            f"{_data_dir_default_note(Path('tokens'))}"
        ),
    )
    youtube_client_secret_path: Path = Field(
        default=_default_in_data_dir(Path("youtube-client-secret.json")),
        description=(
            "OAuth client secret JSON path. "
            f"{_data_dir_default_note(Path('youtube-client-secret.json'))}"
        ),
    )

    # Scheduler.
    scheduler_enabled: bool = Field(
        default=True,
        validation_alias="TUBESYNC_ENABLE_SCHEDULER",
        description="Enable the background scheduler loop that runs the periodic sync jobs.",
    )
    scheduler_poll_interval_seconds: int = Field(
        default=60,
        description="How often the scheduler checks whether a periodic job is due.",
    )

    # Quota ledger.
    youtube_daily_quota_limit: int = Field(
        default=10_000,
        description="Daily YouTube Data API quota budget per user.",
    )
    youtube_quota_warning_percent: float = Field(
        default=0.9,
        description="Fraction of the daily budget at which quota status reports a warning.",
    )
    youtube_quota_critical_percent: float = Field(
        default=0.95,
        description=(
            "Fraction of the daily budget above which only essential operations may spend quota."
        ),
    )

    # API client rate limiting and retries.
    youtube_requests_per_second: float = Field(
        default=10.0,
        description="Token bucket refill rate for outbound YouTube API calls.",
    )
    youtube_burst_size: int = Field(
        default=15,
        description="Token bucket capacity for outbound YouTube API calls.",
    )
    youtube_retry_max_retries: int = Field(
        default=3,
        description="Maximum retries for retryable YouTube API failures.",
    )
    youtube_retry_initial_delay_ms: int = Field(
        default=1_000,
        description="Initial backoff delay for retried YouTube API calls.",
    )
    youtube_retry_max_delay_ms: int = Field(
        default=30_000,
        description="Backoff delay cap for retried YouTube API calls.",
    )
    youtube_retry_backoff_multiplier: float = Field(
        default=2.0,
        description="Exponential backoff multiplier between retries.",
    )

    # Fetch pipeline.
    shorts_max_duration_seconds: int = Field(
        default=181,
        description="Videos at or under this duration are classified as short-form content.",
    )
    shorts_non_short_patterns: tuple[str, ...] = Field(
        default=("teaser",),
        description=(
            "Case-insensitive title patterns that mark a short-duration video as long-form. "
            "Set through the environment as a JSON list."
        ),
    )
    playlist_import_max_results: int = Field(
        default=5_000,
        description="Upper bound on videos fetched from a single playlist during one run.",
    )

    # Sync orchestration.
    sync_lock_ttl_seconds: int = Field(
        default=900,
        ge=60,
        description="Expiry of the per-user sync lock; it is extended while a run is alive.",
    )
    sync_lock_extend_interval_seconds: int = Field(
        default=300,
        description="Wall-clock interval between sync lock extensions during a run.",
    )
    youtube_token_refresh_interval_seconds: int = Field(
        default=1_800,
        description="Wall-clock interval between OAuth client refreshes during a run.",
    )
    sync_progress_write_every: int = Field(
        default=10,
        ge=1,
        description=(
            "Persist channel progress every N channels (first and last are always written)."
        ),
    )
    staging_batch_size: int = Field(
        default=1_000,
        ge=1,
        description="Rows per staging insert batch.",
    )
    orphan_staging_max_age_seconds: int = Field(
        default=7_200,
        description="Staging rows older than this with no live owner are discarded by the janitor.",
    )
    default_import_mode: Literal["new_only", "limited", "unlimited"] = Field(
        default="limited",
        description="Import-volume mode for users without an explicit preference.",
    )
    default_import_limit: int = Field(
        default=100,
        ge=1,
        description="Videos per channel fetched in `limited` mode when the user has no preference.",
    )
    unlimited_import_max_results: int = Field(
        default=50_000,
        description="Videos per channel fetched in `unlimited` mode.",
    )
    new_only_max_results: int = Field(
        default=50,
        description="Videos per channel fetched past the cursor in `new_only` mode.",
    )

    # Periodic jobs.
    playlist_refresh_stale_days: int = Field(
        default=30,
        description="Uploads-list identifiers older than this are re-resolved by the weekly job.",
    )
    playlist_refresh_limit: int = Field(
        default=50,
        description="Channels re-resolved per weekly uploads-list refresh run.",
    )
    dead_channel_retry_limit: int = Field(
        default=25,
        description="Dead channels rechecked per retry run.",
    )
    cron_secret: str | None = Field(
        default=None,
        description=(
            "Bearer secret required by `/cron/*` endpoints. Endpoints are disabled when unset."
        ),
    )

    # Logging.
    log_dir: Path = Field(
        default=_default_in_data_dir(Path("logs")),
        description=f"Directory for backend log files. {_data_dir_default_note(Path('logs'))}",
    )
    log_level: str = Field(
        default="INFO",
        description="Console log level (stdout).",
    )
    log_max_bytes: int = Field(
        default=10 * 1024 * 1024,
        ge=0,
        description="Rotate each log file at this size; `0` leaves rotation to an external tool.",
    )
    log_backup_count: int = Field(
        default=5,
        ge=0,
        description="Rotated log files kept per log.",
    )

    # Telemetry.
    telemetry_enabled: bool = Field(
        default=True,
        description="Enable lightweight internal telemetry events.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description=(
            "Telemetry sink backend. `log` emits structured telemetry locally; "
            "`none` disables sink output."
        ),
    )

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("TUBESYNC_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("TUBESYNC_TELEMETRY_SINK must be set to: none, log.")

    @field_validator("default_import_mode", mode="before")
    @classmethod
    def _normalize_import_mode(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("TUBESYNC_DEFAULT_IMPORT_MODE must be a string.")
        normalized = value.strip().lower().replace("-", "_")
        if normalized in IMPORT_MODES:
            return normalized
        raise ValueError(
            "TUBESYNC_DEFAULT_IMPORT_MODE must be set to: new_only, limited, unlimited."
        )

    @field_validator("shorts_non_short_patterns", mode="before")
    @classmethod
    def _normalize_patterns(cls, value: Any) -> tuple[str, ...]:
        if value is None:
            return ()
        raw_items: list[Any]
        if isinstance(value, str):
            raw_items = list(value.split(","))
        elif isinstance(value, list | tuple):
            raw_items = list(value)
        else:
            raise ValueError("TUBESYNC_SHORTS_NON_SHORT_PATTERNS must be a list of strings.")
        patterns: list[str] = []
        for item in raw_items:
            if isinstance(item, str) and item.strip():
                patterns.append(item.strip())
        return tuple(patterns)

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None:
            return None
        return _resolve_path(value)

    @field_validator(*_BOOLEAN_COERCION_FIELDS, mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any, info: ValidationInfo) -> bool:
        field_name = info.field_name
        assert field_name is not None
        default_value = cls.model_fields[field_name].default
        assert isinstance(default_value, bool)
        return _parse_bool_with_default(value, default=default_value)

    @field_validator("cron_secret", mode="before")
    @classmethod
    def _normalize_optional_strings(cls, value: Any) -> str | None:
        return _normalize_optional_text(value)


def load_settings(*, validate_oauth_secrets: bool = True) -> AppSettings:
    """Read settings from the environment and anchor unset paths in `data_dir`.

    With `validate_oauth_secrets`, a missing OAuth client secret fails fast so a
    misconfigured server does not start and then reject every sync.
    """
    settings = _anchor_paths(AppSettings())
    if validate_oauth_secrets and not settings.youtube_client_secret_path.is_file():
        raise ValueError(
            "Invalid configuration for YouTube OAuth:\n"
            f"- Missing OAuth client secret JSON: {settings.youtube_client_secret_path}\n"
            "- Set TUBESYNC_YOUTUBE_CLIENT_SECRET_PATH or place it in TUBESYNC_DATA_DIR."
        )
    return settings


def _anchor_paths(settings: AppSettings) -> AppSettings:
    updates: dict[str, Path] = {}
    for field_name, relative_default in _DATA_DIR_RELATIVE_DEFAULTS:
        if field_name in settings.model_fields_set:
            updates[field_name] = _resolve_path(getattr(settings, field_name))
        else:
            updates[field_name] = _resolve_path(settings.data_dir / relative_default)
    return settings.model_copy(update=updates)
