"""Tests for sync checkpoint keys and since-date formatting."""

from datetime import UTC, datetime

import pytest

from missionspine.sync.checkpoints import (
    EPOCH,
    SinceFormat,
    SyncCheckpoint,
    format_since_date,
    generate_checkpoint_key,
    parse_since_date,
)

WHEN = datetime(2024, 3, 5, 14, 30, 15, 250000, tzinfo=UTC)


class TestCheckpointKeys:
    def test_operation_id_wins(self):
        """An operation reference keys by source:operation."""
        assert generate_checkpoint_key("github", "listRepos", "/repos") == "github:listRepos"

    def test_path_is_normalized(self):
        """Paths drop their query string and trailing slash."""
        assert generate_checkpoint_key("github", None, "/repos/?page=2") == "github:/repos"

    def test_source_only(self):
        """Without operation or path the key is the source."""
        assert generate_checkpoint_key("github") == "github"


class TestFormatSinceDate:
    @pytest.mark.parametrize(
        "fmt,expected",
        [
            (SinceFormat.ISO, "2024-03-05T14:30:15.250Z"),
            (SinceFormat.UNIX, str(int(WHEN.timestamp()))),
            (SinceFormat.UNIX_MS, str(int(WHEN.timestamp() * 1000))),
            (SinceFormat.DATE_ONLY, "2024-03-05"),
            ("unix", str(int(WHEN.timestamp()))),
        ],
    )
    def test_formats(self, fmt, expected):
        """Each since format renders as the API expects."""
        assert format_since_date(WHEN, fmt) == expected

    def test_epoch_for_first_sync(self):
        """The epoch renders as the start of 1970."""
        assert format_since_date(EPOCH) == "1970-01-01T00:00:00.000Z"


class TestParseSinceDate:
    def test_iso_string(self):
        """ISO strings parse to aware datetimes."""
        assert parse_since_date("2024-03-05T14:30:15.250Z") == WHEN

    def test_unix_seconds_and_millis(self):
        """Numbers below year 3000 are seconds, above are milliseconds."""
        seconds = int(WHEN.timestamp())
        assert parse_since_date(seconds) == datetime.fromtimestamp(seconds, tz=UTC)
        assert parse_since_date(seconds * 1000) == datetime.fromtimestamp(seconds, tz=UTC)

    @pytest.mark.parametrize("value", [None, True, "not a date", {"a": 1}])
    def test_unparseable(self, value):
        """Anything else is None."""
        assert parse_since_date(value) is None


class TestSyncCheckpoint:
    def test_dict_round_trip(self):
        """Checkpoints survive to_dict/from_dict."""
        checkpoint = SyncCheckpoint(key="api:/users", synced_at=WHEN, record_count=3, mission="m")
        assert SyncCheckpoint.from_dict(checkpoint.to_dict()) == checkpoint
