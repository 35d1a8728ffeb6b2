from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from backend.app.repositories.common import Clock, parse_iso_datetime, utc_now
from backend.app.services.youtube_api import (
    MAX_IDS_PER_REQUEST,
    YouTubeApi,
    YouTubeApiError,
    as_dict,
    as_list,
)

LOGGER = logging.getLogger("tubesync.fetch")

SHORTS_MAX_DURATION_SECONDS = 181
DEFAULT_NON_SHORT_PATTERNS: tuple[str, ...] = ("teaser",)
PLAYLIST_IMPORT_MAX_RESULTS = 5_000
LIST_QUOTA_CHECK_INTERVAL = 10
DETAILS_QUOTA_CHECK_INTERVAL = 5
DESCRIPTION_MAX_CHARS = 500

_LIVE_BROADCAST_TYPES = frozenset({"live", "upcoming"})
_SHORTS_TAG = re.compile(r"#shorts", re.IGNORECASE)
_ISO_DURATION = re.compile(r"PT(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?")


class ShortsClassifier:
    def __init__(
        self,
        *,
        max_duration_seconds: int = SHORTS_MAX_DURATION_SECONDS,
        non_short_patterns: Iterable[str] = DEFAULT_NON_SHORT_PATTERNS,
    ) -> None:
        self._max_duration_seconds = max_duration_seconds
        self._non_short_patterns = tuple(
            re.compile(re.escape(pattern), re.IGNORECASE)
            for pattern in non_short_patterns
            if pattern.strip()
        )

    def is_short(
        self,
        title: str,
        duration_seconds: int | None,
        live_broadcast_content: str | None = None,
    ) -> bool:
        # Live streams report zero duration but are never shorts.
        if live_broadcast_content in _LIVE_BROADCAST_TYPES:
            return False
        if _SHORTS_TAG.search(title):
            return True
        if duration_seconds is None or duration_seconds > self._max_duration_seconds:
            return False
        return not any(pattern.search(title) for pattern in self._non_short_patterns)


@dataclass(frozen=True)
class FetchOptions:
    filter_shorts: bool = True
    filter_live: bool = True
    filter_scheduled: bool = True
    check_quota: bool = True


@dataclass(frozen=True)
class FetchedVideo:
    youtube_id: str
    channel_id: str
    title: str
    thumbnail: str | None
    duration: str | None
    duration_seconds: int | None
    is_short: bool
    description: str | None
    published_at: str | None
    channel_title: str | None = None


@dataclass(frozen=True)
class ChannelFetchResult:
    videos: list[FetchedVideo]
    error: str | None = None
    api_calls_made: int = 0
    quota_exhausted: bool = False
    list_not_found: bool = False
    should_refresh_list_id: bool = False


@dataclass(frozen=True)
class PlaylistFetchResult:
    videos: list[FetchedVideo]
    error: str | None = None
    api_calls_made: int = 0
    quota_exhausted: bool = False
    list_not_found: bool = False


@dataclass(frozen=True)
class ChannelDetails:
    youtube_id: str
    title: str
    thumbnail: str | None
    uploads_playlist_id: str | None


@dataclass
class _ListedItem:
    youtube_id: str
    owner_channel_id: str | None


@dataclass
class _DetailsOutcome:
    videos: list[FetchedVideo] = field(default_factory=list)
    quota_exhausted: bool = False
    error: str | None = None


def parse_duration(iso_duration: str | None) -> tuple[str | None, int | None]:
    """Parse an ISO 8601 duration like ``PT1H2M3S`` into ("1:02:03", 3723)."""
    if not iso_duration:
        return None, None
    match = _ISO_DURATION.search(iso_duration)
    if match is None:
        return None, None
    hours, minutes, seconds = (int(group or 0) for group in match.groups())
    total = hours * 3600 + minutes * 60 + seconds
    return format_duration(total), total


def format_duration(total_seconds: int) -> str:
    hours, remainder = divmod(max(0, total_seconds), 3600)
    minutes, seconds = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{seconds:02d}"
    return f"{minutes}:{seconds:02d}"


class _QuotaGate:
    """Re-reads the quota ledger on the first call and every ``interval`` calls after."""

    def __init__(self, api: YouTubeApi, *, interval: int, enabled: bool) -> None:
        self._api = api
        self._interval = interval
        self._enabled = enabled
        self._stop = False

    def should_stop(self, number: int) -> bool:
        if not self._enabled:
            return False
        if number == 1 or number % self._interval == 0:
            ledger = self._api.quota_ledger
            status = ledger.get_status(self._api.user_id)
            self._stop = status.is_exhausted or status.percent_used >= ledger.critical_threshold
            LOGGER.debug(
                "fetch quota_check user_id=%s number=%s percent_used=%.3f stop=%s",
                self._api.user_id,
                number,
                status.percent_used,
                self._stop,
            )
        return self._stop


def fetch_channel_videos(
    api: YouTubeApi,
    *,
    uploads_playlist_id: str,
    channel_id: str,
    since: datetime | None,
    max_results: int,
    classifier: ShortsClassifier,
    options: FetchOptions = FetchOptions(),
    clock: Clock = utc_now,
) -> ChannelFetchResult:
    calls_before = api.calls_made
    now = clock()
    listed: list[_ListedItem] = []
    gate = _QuotaGate(api, interval=LIST_QUOTA_CHECK_INTERVAL, enabled=options.check_quota)

    try:
        page_token: str | None = None
        page_number = 0
        reached_cursor = False
        while True:
            page_number += 1
            if gate.should_stop(page_number):
                LOGGER.info(
                    "fetch quota_critical channel_id=%s page=%s", channel_id, page_number
                )
                return ChannelFetchResult(
                    videos=[],
                    api_calls_made=api.calls_made - calls_before,
                    quota_exhausted=True,
                )
            try:
                page = api.list_playlist_items(
                    playlist_id=uploads_playlist_id,
                    page_token=page_token,
                    max_results=max_results - len(listed),
                )
            except YouTubeApiError as exc:
                if exc.code == "NOT_FOUND":
                    return ChannelFetchResult(
                        videos=[],
                        error="Uploads playlist not found",
                        api_calls_made=api.calls_made - calls_before,
                        list_not_found=True,
                        should_refresh_list_id=True,
                    )
                if exc.code == "QUOTA_EXCEEDED":
                    return ChannelFetchResult(
                        videos=[],
                        error="Quota exceeded",
                        api_calls_made=api.calls_made - calls_before,
                        quota_exhausted=True,
                    )
                raise

            for item in as_list(page.get("items")):
                content = as_dict(as_dict(item).get("contentDetails"))
                published_at = parse_iso_datetime(content.get("videoPublishedAt"))
                # Uploads arrive newest first, so the first item at or before
                # the cursor ends the incremental window.
                if since is not None and published_at is not None and published_at <= since:
                    reached_cursor = True
                    break
                if options.filter_scheduled and published_at is not None and published_at > now:
                    continue
                video_id = content.get("videoId")
                if isinstance(video_id, str) and video_id:
                    listed.append(_ListedItem(youtube_id=video_id, owner_channel_id=None))

            page_token = _next_page_token(page)
            if reached_cursor or len(listed) >= max_results or page_token is None:
                break

        LOGGER.debug(
            "fetch listed channel_id=%s items=%s pages=%s", channel_id, len(listed), page_number
        )
        if not listed:
            return ChannelFetchResult(videos=[], api_calls_made=api.calls_made - calls_before)

        outcome = _fetch_details(
            api,
            listed,
            default_channel_id=channel_id,
            classifier=classifier,
            options=options,
            keep_shorts=False,
            now=now,
        )
    except YouTubeApiError as exc:
        LOGGER.warning(
            "fetch channel_failed channel_id=%s code=%s error=%s", channel_id, exc.code, exc
        )
        return ChannelFetchResult(
            videos=[],
            error=str(exc),
            api_calls_made=api.calls_made - calls_before,
            quota_exhausted=exc.code == "QUOTA_EXCEEDED",
            list_not_found=exc.code == "NOT_FOUND",
            should_refresh_list_id=exc.code == "NOT_FOUND",
        )

    return ChannelFetchResult(
        videos=outcome.videos,
        error=outcome.error,
        api_calls_made=api.calls_made - calls_before,
        quota_exhausted=outcome.quota_exhausted,
    )


def fetch_playlist_videos(
    api: YouTubeApi,
    *,
    playlist_id: str,
    classifier: ShortsClassifier,
    max_results: int = PLAYLIST_IMPORT_MAX_RESULTS,
    existing_video_ids: frozenset[str] | set[str] = frozenset(),
    options: FetchOptions = FetchOptions(),
    clock: Clock = utc_now,
) -> PlaylistFetchResult:
    """Fetch an arbitrary playlist from the start.

    Videos carry their owning YouTube channel id since a playlist mixes
    uploaders. Ids in ``existing_video_ids`` are skipped before the detail
    lookup so refreshes only pay for new entries.
    """
    calls_before = api.calls_made
    now = clock()
    listed: list[_ListedItem] = []
    gate = _QuotaGate(api, interval=LIST_QUOTA_CHECK_INTERVAL, enabled=options.check_quota)

    try:
        page_token: str | None = None
        page_number = 0
        while True:
            page_number += 1
            if gate.should_stop(page_number):
                return PlaylistFetchResult(
                    videos=[],
                    api_calls_made=api.calls_made - calls_before,
                    quota_exhausted=True,
                )
            try:
                page = api.list_playlist_items(
                    playlist_id=playlist_id,
                    page_token=page_token,
                    max_results=max_results - len(listed),
                )
            except YouTubeApiError as exc:
                if exc.code == "NOT_FOUND":
                    return PlaylistFetchResult(
                        videos=[],
                        error="Playlist not found or is private",
                        api_calls_made=api.calls_made - calls_before,
                        list_not_found=True,
                    )
                if exc.code == "QUOTA_EXCEEDED":
                    return PlaylistFetchResult(
                        videos=[],
                        error="Quota exceeded",
                        api_calls_made=api.calls_made - calls_before,
                        quota_exhausted=True,
                    )
                raise

            for item in as_list(page.get("items")):
                item_dict = as_dict(item)
                content = as_dict(item_dict.get("contentDetails"))
                video_id = content.get("videoId")
                if not isinstance(video_id, str) or not video_id:
                    continue
                if video_id in existing_video_ids:
                    continue
                published_at = parse_iso_datetime(content.get("videoPublishedAt"))
                if options.filter_scheduled and published_at is not None and published_at > now:
                    continue
                owner = as_dict(item_dict.get("snippet")).get("videoOwnerChannelId")
                listed.append(
                    _ListedItem(
                        youtube_id=video_id,
                        owner_channel_id=owner if isinstance(owner, str) and owner else None,
                    )
                )

            page_token = _next_page_token(page)
            if len(listed) >= max_results or page_token is None:
                break

        if not listed:
            return PlaylistFetchResult(videos=[], api_calls_made=api.calls_made - calls_before)

        outcome = _fetch_details(
            api,
            listed,
            default_channel_id=None,
            classifier=classifier,
            options=options,
            keep_shorts=not options.filter_shorts,
            now=now,
        )
    except YouTubeApiError as exc:
        LOGGER.warning(
            "fetch playlist_failed playlist_id=%s code=%s error=%s", playlist_id, exc.code, exc
        )
        return PlaylistFetchResult(
            videos=[],
            error=str(exc),
            api_calls_made=api.calls_made - calls_before,
            quota_exhausted=exc.code == "QUOTA_EXCEEDED",
            list_not_found=exc.code == "NOT_FOUND",
        )

    return PlaylistFetchResult(
        videos=outcome.videos,
        error=outcome.error,
        api_calls_made=api.calls_made - calls_before,
        quota_exhausted=outcome.quota_exhausted,
    )


def fetch_channel_details(
    api: YouTubeApi,
    channel_youtube_ids: Sequence[str],
) -> dict[str, ChannelDetails]:
    details: dict[str, ChannelDetails] = {}
    unique_ids = list(dict.fromkeys(channel_id for channel_id in channel_youtube_ids if channel_id))
    for start in range(0, len(unique_ids), MAX_IDS_PER_REQUEST):
        response = api.list_channels(unique_ids[start : start + MAX_IDS_PER_REQUEST])
        for item in as_list(response.get("items")):
            item_dict = as_dict(item)
            youtube_id = item_dict.get("id")
            if not isinstance(youtube_id, str) or not youtube_id:
                continue
            snippet = as_dict(item_dict.get("snippet"))
            related = as_dict(as_dict(item_dict.get("contentDetails")).get("relatedPlaylists"))
            uploads = related.get("uploads")
            details[youtube_id] = ChannelDetails(
                youtube_id=youtube_id,
                title=str(snippet.get("title") or youtube_id),
                thumbnail=_thumbnail_url(snippet),
                uploads_playlist_id=uploads if isinstance(uploads, str) and uploads else None,
            )
    return details


def resolve_uploads_playlist_ids(
    api: YouTubeApi,
    channel_youtube_ids: Sequence[str],
) -> dict[str, str]:
    return {
        youtube_id: detail.uploads_playlist_id
        for youtube_id, detail in fetch_channel_details(api, channel_youtube_ids).items()
        if detail.uploads_playlist_id is not None
    }


def _fetch_details(
    api: YouTubeApi,
    listed: list[_ListedItem],
    *,
    default_channel_id: str | None,
    classifier: ShortsClassifier,
    options: FetchOptions,
    keep_shorts: bool,
    now: datetime,
) -> _DetailsOutcome:
    outcome = _DetailsOutcome()
    owners = {item.youtube_id: item.owner_channel_id for item in listed}
    video_ids = list(dict.fromkeys(item.youtube_id for item in listed))
    gate = _QuotaGate(api, interval=DETAILS_QUOTA_CHECK_INTERVAL, enabled=options.check_quota)

    for batch_number, start in enumerate(range(0, len(video_ids), MAX_IDS_PER_REQUEST), start=1):
        if gate.should_stop(batch_number):
            outcome.quota_exhausted = True
            return outcome
        try:
            response = api.list_videos(video_ids[start : start + MAX_IDS_PER_REQUEST])
        except YouTubeApiError as exc:
            if exc.code == "QUOTA_EXCEEDED":
                outcome.quota_exhausted = True
                outcome.error = "Quota exceeded"
                return outcome
            raise

        for item in as_list(response.get("items")):
            video = _parse_video(
                as_dict(item),
                owners=owners,
                default_channel_id=default_channel_id,
                classifier=classifier,
                options=options,
                now=now,
            )
            if video is None:
                continue
            if video.is_short and not keep_shorts:
                continue
            outcome.videos.append(video)
    return outcome


def _parse_video(
    item: dict[str, object],
    *,
    owners: dict[str, str | None],
    default_channel_id: str | None,
    classifier: ShortsClassifier,
    options: FetchOptions,
    now: datetime,
) -> FetchedVideo | None:
    youtube_id = item.get("id")
    if not isinstance(youtube_id, str) or not youtube_id:
        return None
    snippet = as_dict(item.get("snippet"))
    live_broadcast_content = snippet.get("liveBroadcastContent")
    if not isinstance(live_broadcast_content, str):
        live_broadcast_content = None
    if options.filter_live and live_broadcast_content in _LIVE_BROADCAST_TYPES:
        return None

    published_raw = snippet.get("publishedAt")
    published_at = parse_iso_datetime(published_raw)
    if options.filter_scheduled and published_at is not None and published_at > now:
        return None

    duration, duration_seconds = parse_duration(
        _optional_str(as_dict(item.get("contentDetails")).get("duration"))
    )
    title = str(snippet.get("title") or "")
    channel_id = default_channel_id
    if channel_id is None:
        channel_id = owners.get(youtube_id) or _optional_str(snippet.get("channelId")) or "unknown"
    description = _optional_str(snippet.get("description"))

    return FetchedVideo(
        youtube_id=youtube_id,
        channel_id=channel_id,
        title=title,
        thumbnail=_thumbnail_url(snippet),
        duration=duration,
        duration_seconds=duration_seconds,
        is_short=classifier.is_short(title, duration_seconds, live_broadcast_content),
        description=description[:DESCRIPTION_MAX_CHARS] if description else None,
        published_at=_optional_str(published_raw),
        channel_title=_optional_str(snippet.get("channelTitle")),
    )


def _thumbnail_url(snippet: dict[str, object]) -> str | None:
    thumbnails = as_dict(snippet.get("thumbnails"))
    for size in ("medium", "high", "default"):
        url = as_dict(thumbnails.get(size)).get("url")
        if isinstance(url, str) and url:
            return url
    return None


def _next_page_token(page: dict[str, object]) -> str | None:
    token = page.get("nextPageToken")
    return token if isinstance(token, str) and token else None


def _optional_str(value: object) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None
