from datetime import datetime, timedelta, timezone

import pytest

from durations import (
    discord_timestamp,
    format_remaining_time,
    format_timedelta,
    parse_duration,
    validate_duration,
)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("30m", timedelta(minutes=30)),
        ("2h", timedelta(hours=2)),
        ("1h30m", timedelta(hours=1, minutes=30)),
        ("1d 12h", timedelta(days=1, hours=12)),
        ("1w", timedelta(weeks=1)),
        ("2H", timedelta(hours=2)),
    ],
)
def test_parse_duration(text, expected):
    assert parse_duration(text) == expected


@pytest.mark.parametrize("text", ["", "   ", "abc", "0m", "10s", None])
def test_parse_duration_rejects_invalid(text):
    assert parse_duration(text) is None


def test_validate_duration_bounds():
    assert validate_duration("1m") == (True, "")
    assert validate_duration("52w")[0] is True

    valid, error = validate_duration("53w")
    assert not valid and "cannot exceed" in error

    valid, error = validate_duration("nonsense")
    assert not valid and "Invalid duration format" in error

    valid, error = validate_duration("5m", min_duration=timedelta(minutes=10))
    assert not valid and "at least" in error


def test_format_timedelta():
    assert format_timedelta(timedelta(days=2, hours=3, minutes=15)) == "2d 3h 15m"
    assert format_timedelta(timedelta(hours=3, minutes=15)) == "3h 15m"
    assert format_timedelta(timedelta(minutes=15, seconds=30)) == "15m 30s"
    assert format_timedelta(timedelta(seconds=30)) == "30s"
    assert format_timedelta(timedelta(seconds=-5)) == "0s"


def test_format_remaining_time():
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert format_remaining_time(now - timedelta(seconds=1), now) == "Expired"
    assert format_remaining_time(now + timedelta(seconds=30), now) == "Less than a minute"
    assert format_remaining_time(now + timedelta(days=1, hours=2, minutes=5), now) == "1d 2h 5m"
    assert format_remaining_time(now + timedelta(hours=3), now) == "3h"


def test_discord_timestamp():
    moment = datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert discord_timestamp(moment) == f"<t:{int(moment.timestamp())}:R>"
    assert discord_timestamp(moment, "F").endswith(":F>")
