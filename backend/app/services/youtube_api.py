from __future__ import annotations

import errno
import json
import logging
import random
import re
import socket
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from importlib import import_module
from pathlib import Path
from typing import Any, Literal, Protocol, TypeVar, cast

from backend.app.services.quota_ledger import QuotaLedger, QuotaOperation

LOGGER = logging.getLogger("tubesync.youtube")

YOUTUBE_READONLY_SCOPE = "https://www.googleapis.com/auth/youtube.readonly"
MAX_IDS_PER_REQUEST = 50

YouTubeErrorCode = Literal[
    "QUOTA_EXCEEDED",
    "RATE_LIMITED",
    "UNAUTHORIZED",
    "NOT_FOUND",
    "PRIVATE_OR_DELETED",
    "NETWORK_ERROR",
    "UNKNOWN",
]

_RETRYABLE_CODES: frozenset[str] = frozenset({"RATE_LIMITED", "NETWORK_ERROR", "UNKNOWN"})
_NETWORK_ERRNOS: frozenset[int] = frozenset(
    {errno.ECONNRESET, errno.ETIMEDOUT, errno.ECONNREFUSED, errno.EHOSTUNREACH}
)
_NETWORK_MESSAGE_MARKERS: tuple[str, ...] = (
    "econnreset",
    "etimedout",
    "enotfound",
    "connection reset",
    "connection aborted",
    "timed out",
    "name or service not known",
    "temporary failure in name resolution",
)
_NETWORK_CLASS_MARKERS: tuple[str, ...] = (
    "servernotfound",
    "timeout",
    "connectionerror",
    "remotedisconnected",
)

T = TypeVar("T")


class YouTubeApiError(Exception):
    def __init__(
        self,
        message: str,
        *,
        code: YouTubeErrorCode,
        status_code: int | None = None,
        reason: str | None = None,
        retry_after_seconds: float | None = None,
    ) -> None:
        super().__init__(message)
        self.code: YouTubeErrorCode = code
        self.retryable = code in _RETRYABLE_CODES
        self.status_code = status_code
        self.reason = reason
        self.retry_after_seconds = retry_after_seconds


class YouTubeAuthError(YouTubeApiError):
    def __init__(self, message: str) -> None:
        super().__init__(message, code="UNAUTHORIZED")


def classify_youtube_error(exc: BaseException) -> YouTubeApiError:
    if isinstance(exc, YouTubeApiError):
        return exc

    status = _extract_status_code(exc)
    google_message, reason = _extract_google_error(exc)
    message = google_message or _summarize_exception_message(exc)
    normalized_message = message.lower()
    retry_after = _extract_retry_after_seconds(exc)

    if status == 403 and (
        reason in {"quotaExceeded", "dailyLimitExceeded"} or "quota" in normalized_message
    ):
        return YouTubeApiError(
            "YouTube API quota exhausted for today. Try again after midnight UTC.",
            code="QUOTA_EXCEEDED",
            status_code=status,
            reason=reason,
        )
    if status == 429 or reason in {"rateLimitExceeded", "userRateLimitExceeded"}:
        return YouTubeApiError(
            "Too many requests to the YouTube API.",
            code="RATE_LIMITED",
            status_code=status,
            reason=reason,
            retry_after_seconds=retry_after,
        )
    if status in {401, 403} and (
        status == 401 or reason == "authError" or "auth" in normalized_message
    ):
        return YouTubeApiError(
            "YouTube connection expired. Reconnect the account.",
            code="UNAUTHORIZED",
            status_code=status,
            reason=reason,
        )
    if status == 404 or reason in {"playlistNotFound", "channelNotFound"}:
        return YouTubeApiError(
            "Channel or playlist not found. It may have been deleted.",
            code="NOT_FOUND",
            status_code=status,
            reason=reason,
        )
    if reason in {"playlistItemNotFound", "videoNotFound"}:
        return YouTubeApiError(
            "Some content is private or has been removed.",
            code="PRIVATE_OR_DELETED",
            status_code=status,
            reason=reason,
        )
    if status is None and _is_network_error(exc):
        return YouTubeApiError(
            f"Network error talking to the YouTube API: {_summarize_exception_message(exc)}",
            code="NETWORK_ERROR",
        )
    return YouTubeApiError(
        message,
        code="UNKNOWN",
        status_code=status,
        reason=reason,
        retry_after_seconds=retry_after,
    )


class TokenBucketRateLimiter:
    def __init__(
        self,
        *,
        requests_per_second: float = 10.0,
        burst_size: int = 15,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._rate = max(0.001, requests_per_second)
        self._capacity = float(max(1, burst_size))
        self._tokens = self._capacity
        self._clock = clock
        self._sleep = sleep
        self._updated_at = clock()
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        with self._lock:
            self._refill()
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return True
            return False

    def acquire(self) -> float:
        """Take one token, sleeping until one is available. Returns seconds waited."""
        waited = 0.0
        while True:
            with self._lock:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return waited
                wait_seconds = (1.0 - self._tokens) / self._rate
            self._sleep(wait_seconds)
            waited += wait_seconds

    def available_tokens(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated_at)
        self._updated_at = now
        self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    initial_delay_ms: int = 1_000
    max_delay_ms: int = 30_000
    backoff_multiplier: float = 2.0
    jitter_ratio: float = 0.3

    def compute_delay_seconds(
        self,
        attempt: int,
        *,
        random_fn: Callable[[], float] = random.random,
    ) -> float:
        base_ms = self.initial_delay_ms * (self.backoff_multiplier ** max(0, attempt))
        capped_ms = min(base_ms, float(self.max_delay_ms))
        jitter_ms = capped_ms * self.jitter_ratio * random_fn()
        return min(capped_ms + jitter_ms, float(self.max_delay_ms)) / 1000.0


RetryCallback = Callable[[int, YouTubeApiError, float], None]


def call_with_retry(
    fn: Callable[[], T],
    *,
    policy: RetryPolicy,
    limiter: TokenBucketRateLimiter | None = None,
    on_retry: RetryCallback | None = None,
    sleep: Callable[[float], None] = time.sleep,
    random_fn: Callable[[], float] = random.random,
) -> T:
    attempt = 0
    while True:
        if limiter is not None:
            limiter.acquire()
        try:
            return fn()
        except Exception as exc:
            classified = classify_youtube_error(exc)
            if not classified.retryable or attempt >= policy.max_retries:
                if classified is exc:
                    raise
                raise classified from exc

            delay_seconds = policy.compute_delay_seconds(attempt, random_fn=random_fn)
            if classified.retry_after_seconds is not None:
                delay_seconds = min(
                    max(delay_seconds, classified.retry_after_seconds),
                    policy.max_delay_ms / 1000.0,
                )
            attempt += 1
            if on_retry is not None:
                on_retry(attempt, classified, delay_seconds)
            LOGGER.info(
                "youtube api retry attempt=%s code=%s delay_seconds=%.2f",
                attempt,
                classified.code,
                delay_seconds,
            )
            sleep(delay_seconds)


class YouTubeApi:
    """One user's view of the YouTube Data API.

    Every request is rate limited, retried per the policy, and charged to the
    user's quota ledger once it succeeds.
    """

    def __init__(
        self,
        client: Any,
        *,
        user_id: str,
        quota_ledger: QuotaLedger,
        limiter: TokenBucketRateLimiter,
        retry_policy: RetryPolicy,
        on_retry: RetryCallback | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._user_id = user_id
        self._quota_ledger = quota_ledger
        self._limiter = limiter
        self._retry_policy = retry_policy
        self._on_retry = on_retry
        self._sleep = sleep
        self.calls_made = 0

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def quota_ledger(self) -> QuotaLedger:
        return self._quota_ledger

    def replace_client(self, client: Any) -> None:
        self._client = client

    def list_playlist_items(
        self,
        *,
        playlist_id: str,
        page_token: str | None,
        max_results: int,
    ) -> dict[str, Any]:
        query_kwargs: dict[str, object] = {
            "part": "snippet,contentDetails",
            "playlistId": playlist_id,
            "maxResults": max(1, min(MAX_IDS_PER_REQUEST, max_results)),
        }
        if page_token is not None:
            query_kwargs["pageToken"] = page_token
        return self._execute(
            "playlistItems.list",
            lambda: self._client.playlistItems().list(**query_kwargs).execute(),
        )

    def list_videos(self, video_ids: list[str]) -> dict[str, Any]:
        chunk = video_ids[:MAX_IDS_PER_REQUEST]
        return self._execute(
            "videos.list",
            lambda: self._client.videos()
            .list(
                part="snippet,contentDetails",
                id=",".join(chunk),
                maxResults=len(chunk),
            )
            .execute(),
        )

    def list_channels(self, channel_ids: list[str]) -> dict[str, Any]:
        chunk = channel_ids[:MAX_IDS_PER_REQUEST]
        return self._execute(
            "channels.list",
            lambda: self._client.channels()
            .list(
                part="contentDetails,snippet",
                id=",".join(chunk),
                maxResults=len(chunk),
            )
            .execute(),
        )

    def _execute(self, operation: QuotaOperation, request: Callable[[], Any]) -> dict[str, Any]:
        response = call_with_retry(
            request,
            policy=self._retry_policy,
            limiter=self._limiter,
            on_retry=self._on_retry,
            sleep=self._sleep,
        )
        self.calls_made += 1
        self._quota_ledger.track(self._user_id, operation)
        return as_dict(response)


class YouTubeClientProvider(Protocol):
    def get_client(self, user_id: str) -> Any:
        ...

    def refresh_client(self, user_id: str) -> Any:
        ...


class OAuthYouTubeClientProvider:
    def __init__(self, *, token_dir: Path, client_secret_path: Path) -> None:
        self._token_dir = token_dir
        self._client_secret_path = client_secret_path

    def token_path(self, user_id: str) -> Path:
        safe_user_id = re.sub(r"[^A-Za-z0-9_.-]", "_", user_id)
        return (self._token_dir / f"{safe_user_id}.json").resolve()

    def get_client(self, user_id: str) -> Any:
        return build_youtube_client(token_path=self.token_path(user_id))

    def refresh_client(self, user_id: str) -> Any:
        return build_youtube_client(token_path=self.token_path(user_id), force_refresh=True)

    def authorize(self, user_id: str) -> Path:
        return run_oauth_flow(
            token_path=self.token_path(user_id),
            client_secret_path=self._client_secret_path,
        )


def build_youtube_client(*, token_path: Path, force_refresh: bool = False) -> Any:
    try:
        requests_module = import_module("google.auth.transport.requests")
        credentials_module = import_module("google.oauth2.credentials")
        discovery_module = import_module("googleapiclient.discovery")
    except ImportError as exc:  # pragma: no cover - dependency controlled at runtime
        raise YouTubeAuthError(
            "YouTube sync requires google-api-python-client and google-auth dependencies"
        ) from exc

    request_cls: Any = requests_module.Request
    credentials_cls: Any = credentials_module.Credentials
    build_fn: Any = discovery_module.build

    if not token_path.exists():
        raise YouTubeAuthError(
            f"YouTube account not connected: missing OAuth token at {token_path}"
        )

    credentials: Any = credentials_cls.from_authorized_user_file(
        str(token_path), [YOUTUBE_READONLY_SCOPE]
    )
    needs_refresh = force_refresh or not credentials.valid
    if needs_refresh:
        if not credentials.refresh_token:
            raise YouTubeAuthError(
                f"YouTube OAuth token at {token_path} cannot be refreshed; reconnect the account."
            )
        try:
            credentials.refresh(request_cls())
        except Exception as exc:
            LOGGER.warning(
                "youtube oauth token_refresh_failed token_path=%s",
                token_path,
                exc_info=True,
            )
            if _oauth_refresh_requires_reauth(exc):
                raise YouTubeAuthError(
                    "YouTube OAuth token has expired or was revoked; reconnect the account."
                ) from exc
            raise classify_youtube_error(exc) from exc
        token_path.write_text(str(credentials.to_json()), encoding="utf-8")

    return build_fn("youtube", "v3", credentials=credentials, cache_discovery=False)


def run_oauth_flow(*, token_path: Path, client_secret_path: Path) -> Path:
    try:
        flow_module = import_module("google_auth_oauthlib.flow")
    except ImportError as exc:  # pragma: no cover - dependency controlled at runtime
        raise YouTubeAuthError("OAuth setup requires google-auth-oauthlib") from exc

    if not client_secret_path.exists():
        raise YouTubeAuthError(f"Missing OAuth client secret file at {client_secret_path}")

    flow_cls: Any = flow_module.InstalledAppFlow
    flow = flow_cls.from_client_secrets_file(str(client_secret_path), [YOUTUBE_READONLY_SCOPE])
    credentials = flow.run_local_server(port=0)
    if credentials is None:
        raise YouTubeAuthError("OAuth flow did not return credentials")

    token_path.parent.mkdir(parents=True, exist_ok=True)
    token_path.write_text(str(credentials.to_json()), encoding="utf-8")
    return token_path


def _oauth_refresh_requires_reauth(exc: Exception) -> bool:
    normalized = str(exc).lower()
    return "invalid_grant" in normalized or "expired or revoked" in normalized


def _extract_status_code(exc: BaseException) -> int | None:
    response = getattr(exc, "resp", None)
    raw_status = getattr(response, "status", None) if response is not None else None
    if raw_status is None:
        raw_status = getattr(exc, "status_code", None)
    if isinstance(raw_status, int):
        return raw_status
    if isinstance(raw_status, str) and raw_status.isdigit():
        return int(raw_status)
    return None


def _extract_google_error(exc: BaseException) -> tuple[str | None, str | None]:
    payload: dict[str, Any] = {}
    raw_content = getattr(exc, "content", None)
    if isinstance(raw_content, bytes):
        raw_content = raw_content.decode("utf-8", errors="replace")
    if isinstance(raw_content, str) and raw_content.strip():
        try:
            payload = as_dict(json.loads(raw_content))
        except json.JSONDecodeError:
            payload = {}

    error = as_dict(payload.get("error"))
    message = error.get("message")
    reason: str | None = None
    for item in as_list(error.get("errors")):
        raw_reason = as_dict(item).get("reason")
        if isinstance(raw_reason, str) and raw_reason:
            reason = raw_reason
            break

    if reason is None:
        for detail in as_list(getattr(exc, "error_details", None)):
            raw_reason = as_dict(detail).get("reason")
            if isinstance(raw_reason, str) and raw_reason:
                reason = raw_reason
                break

    return (message if isinstance(message, str) and message else None), reason


def _extract_retry_after_seconds(exc: BaseException) -> float | None:
    response = getattr(exc, "resp", None)
    headers: Any = response if response is not None else None
    if headers is None or not hasattr(headers, "get"):
        headers = getattr(response, "headers", None)
    if headers is None or not hasattr(headers, "get"):
        return None
    raw_value = headers.get("retry-after") or headers.get("Retry-After")
    if isinstance(raw_value, str) and raw_value.strip().isdigit():
        return float(raw_value.strip())
    return None


def _is_network_error(exc: BaseException) -> bool:
    if isinstance(exc, socket.timeout | socket.gaierror | TimeoutError | ConnectionError):
        return True
    raw_errno = getattr(exc, "errno", None)
    if isinstance(raw_errno, int) and raw_errno in _NETWORK_ERRNOS:
        return True
    class_name = exc.__class__.__name__.lower()
    if any(marker in class_name for marker in _NETWORK_CLASS_MARKERS):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _NETWORK_MESSAGE_MARKERS)


def _summarize_exception_message(exc: BaseException, *, max_length: int = 400) -> str:
    raw = str(exc).strip()
    if not raw:
        raw = repr(exc)
    if len(raw) <= max_length:
        return raw
    return f"{raw[: max_length - 3]}..."


def as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        raw_dict = cast(dict[object, object], value)
        converted: dict[str, Any] = {}
        for key, item in raw_dict.items():
            if isinstance(key, str):
                converted[key] = item
        return converted
    return {}


def as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        raw_list = cast(list[Any], value)
        return list(raw_list)
    return []
