from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from backend.app.repositories.database import Database
from backend.app.repositories.quota_repository import QuotaRepository
from backend.app.services.quota_ledger import QuotaLedger
from backend.app.services.video_fetch import (
    FetchOptions,
    ShortsClassifier,
    fetch_channel_details,
    fetch_channel_videos,
    fetch_playlist_videos,
    format_duration,
    parse_duration,
    resolve_uploads_playlist_ids,
)
from backend.app.services.youtube_api import RetryPolicy, TokenBucketRateLimiter, YouTubeApi
from tests.support import NOW, FakeYouTubeClient, MutableClock, quota_exceeded_error

USER = "user-1"


def _api(tmp_path: Path, client: FakeYouTubeClient, *, daily_limit: int = 10_000) -> YouTubeApi:
    database = Database(tmp_path / "state.db")
    database.initialize()
    ledger = QuotaLedger(QuotaRepository(database), daily_limit=daily_limit, clock=MutableClock())
    return YouTubeApi(
        client,
        user_id=USER,
        quota_ledger=ledger,
        limiter=TokenBucketRateLimiter(requests_per_second=1_000.0, burst_size=1_000),
        retry_policy=RetryPolicy(max_retries=0),
    )


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("PT1H2M3S", ("1:02:03", 3723)),
        ("PT10M5S", ("10:05", 605)),
        ("PT45S", ("0:45", 45)),
        ("P0D", (None, None)),
        (None, (None, None)),
        ("", (None, None)),
    ],
)
def test_parse_duration(raw: str | None, expected: tuple[str | None, int | None]) -> None:
    assert parse_duration(raw) == expected


def test_format_duration_clamps_negative_values() -> None:
    assert format_duration(-5) == "0:00"
    assert format_duration(3600) == "1:00:00"


def test_shorts_classifier_rules() -> None:
    classifier = ShortsClassifier()

    assert classifier.is_short("Quick tip", 59) is True
    assert classifier.is_short("Quick tip", 181) is True
    assert classifier.is_short("Quick tip", 182) is False
    assert classifier.is_short("Long talk #Shorts", 900) is True
    assert classifier.is_short("Movie teaser", 60) is False
    assert classifier.is_short("Premiere", 0, "upcoming") is False
    assert classifier.is_short("Unknown length", None) is False


def test_shorts_classifier_custom_patterns() -> None:
    classifier = ShortsClassifier(max_duration_seconds=60, non_short_patterns=("trailer", " "))

    assert classifier.is_short("Official Trailer", 30) is False
    assert classifier.is_short("Teaser", 30) is True
    assert classifier.is_short("Clip", 61) is False


def test_fetch_channel_videos_pages_until_limit(tmp_path: Path) -> None:
    client = FakeYouTubeClient()
    for index in range(120):
        client.add_upload("UU_a", f"v{index:03d}", published_at=NOW - timedelta(hours=index + 1))
    api = _api(tmp_path, client)

    result = fetch_channel_videos(
        api,
        uploads_playlist_id="UU_a",
        channel_id="ch_local",
        since=None,
        max_results=75,
        classifier=ShortsClassifier(),
        clock=MutableClock(),
    )

    assert len(result.videos) == 75
    assert result.videos[0].youtube_id == "v000"
    assert {video.channel_id for video in result.videos} == {"ch_local"}
    assert [kwargs["maxResults"] for name, kwargs in client.calls if name == "playlistItems"] == [
        50,
        25,
    ]
    assert client.count_calls("videos") == 2
    assert result.api_calls_made == 4


def test_fetch_channel_videos_stops_at_cursor_and_skips_scheduled(tmp_path: Path) -> None:
    client = FakeYouTubeClient()
    client.add_upload("UU_a", "v_premiere", published_at=NOW + timedelta(days=1))
    client.add_upload("UU_a", "v_new", published_at=NOW - timedelta(hours=1))
    client.add_upload("UU_a", "v_seen", published_at=NOW - timedelta(days=2))
    client.add_upload("UU_a", "v_older", published_at=NOW - timedelta(days=3))
    api = _api(tmp_path, client)

    result = fetch_channel_videos(
        api,
        uploads_playlist_id="UU_a",
        channel_id="ch_local",
        since=NOW - timedelta(days=2),
        max_results=50,
        classifier=ShortsClassifier(),
        clock=MutableClock(),
    )

    assert [video.youtube_id for video in result.videos] == ["v_new"]
    assert result.videos[0].duration == "10:05"
    assert result.videos[0].duration_seconds == 605


def test_fetch_channel_videos_reports_missing_playlist(tmp_path: Path) -> None:
    api = _api(tmp_path, FakeYouTubeClient())

    result = fetch_channel_videos(
        api,
        uploads_playlist_id="UU_gone",
        channel_id="ch_local",
        since=None,
        max_results=10,
        classifier=ShortsClassifier(),
        clock=MutableClock(),
    )

    assert result.list_not_found is True
    assert result.should_refresh_list_id is True
    assert result.videos == []


def test_fetch_channel_videos_reports_quota_exhaustion(tmp_path: Path) -> None:
    client = FakeYouTubeClient()
    client.add_upload("UU_a", "v1", published_at=NOW - timedelta(hours=1))
    client.resource_failures["videos"] = [quota_exceeded_error()]
    api = _api(tmp_path, client)

    result = fetch_channel_videos(
        api,
        uploads_playlist_id="UU_a",
        channel_id="ch_local",
        since=None,
        max_results=10,
        classifier=ShortsClassifier(),
        clock=MutableClock(),
    )

    assert result.quota_exhausted is True
    assert result.error == "Quota exceeded"


def test_fetch_stops_before_calling_when_quota_is_critical(tmp_path: Path) -> None:
    client = FakeYouTubeClient()
    client.add_upload("UU_a", "v1", published_at=NOW - timedelta(hours=1))
    api = _api(tmp_path, client, daily_limit=100)
    api.quota_ledger.track(USER, "videos.list", 95)

    result = fetch_channel_videos(
        api,
        uploads_playlist_id="UU_a",
        channel_id="ch_local",
        since=None,
        max_results=10,
        classifier=ShortsClassifier(),
        clock=MutableClock(),
    )
    unchecked = fetch_channel_videos(
        api,
        uploads_playlist_id="UU_a",
        channel_id="ch_local",
        since=None,
        max_results=10,
        classifier=ShortsClassifier(),
        options=FetchOptions(check_quota=False),
        clock=MutableClock(),
    )

    assert result.quota_exhausted is True
    assert result.api_calls_made == 0
    assert [video.youtube_id for video in unchecked.videos] == ["v1"]


def test_fetch_playlist_videos_keeps_uploaders_and_skips_known_ids(tmp_path: Path) -> None:
    client = FakeYouTubeClient()
    client.add_upload(
        "PL_mix", "v_known", published_at=NOW - timedelta(days=1), owner_channel_id="UC_x"
    )
    client.add_upload(
        "PL_mix", "v_new", published_at=NOW - timedelta(days=2), owner_channel_id="UC_y"
    )
    client.add_upload(
        "PL_mix",
        "v_short",
        published_at=NOW - timedelta(days=3),
        owner_channel_id="UC_y",
        duration="PT40S",
    )
    api = _api(tmp_path, client)

    filtered = fetch_playlist_videos(
        api,
        playlist_id="PL_mix",
        classifier=ShortsClassifier(),
        existing_video_ids={"v_known"},
        clock=MutableClock(),
    )
    with_shorts = fetch_playlist_videos(
        api,
        playlist_id="PL_mix",
        classifier=ShortsClassifier(),
        options=FetchOptions(filter_shorts=False),
        clock=MutableClock(),
    )

    assert [(video.youtube_id, video.channel_id) for video in filtered.videos] == [
        ("v_new", "UC_y")
    ]
    assert filtered.videos[0].channel_title == "Channel UC_y"
    assert [video.youtube_id for video in with_shorts.videos] == ["v_known", "v_new", "v_short"]
    assert with_shorts.videos[2].is_short is True


def test_fetch_playlist_videos_reports_private_playlist(tmp_path: Path) -> None:
    result = fetch_playlist_videos(
        _api(tmp_path, FakeYouTubeClient()),
        playlist_id="PL_private",
        classifier=ShortsClassifier(),
        clock=MutableClock(),
    )

    assert result.list_not_found is True
    assert result.error == "Playlist not found or is private"


def test_channel_details_and_uploads_resolution(tmp_path: Path) -> None:
    client = FakeYouTubeClient()
    client.add_channel("UC_a", uploads_playlist_id="UU_a")
    client.add_channel("UC_b", uploads_playlist_id=None)
    api = _api(tmp_path, client)

    details = fetch_channel_details(api, ["UC_a", "UC_b", "UC_a", ""])
    uploads = resolve_uploads_playlist_ids(api, ["UC_a", "UC_b", "UC_c"])

    assert details["UC_a"].title == "Channel UC_a"
    assert details["UC_b"].uploads_playlist_id is None
    assert client.calls[0][1]["id"] == "UC_a,UC_b"
    assert uploads == {"UC_a": "UU_a"}
