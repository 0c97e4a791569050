import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from log_aggregator.filters import LogFilters
from log_aggregator.line_processor import PollCursor, dedupe_signature, process_log_text, split_timestamp
from log_aggregator.timeutil import (
    format_rfc3339,
    parse_duration,
    parse_rfc3339,
    precise_sort_key,
    seconds_since,
    sort_key,
)
from models import JsonPathFilter

FETCHED_AT = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def process(text, filters=None, cursor=None):
    return process_log_text(
        text,
        namespace="default",
        pod="web-1",
        container="app",
        filters=filters or LogFilters(),
        cursor=cursor,
        fetched_at=FETCHED_AT,
    )


class TestTimeutil:
    def test_precise_sort_key_keeps_nanoseconds(self):
        assert precise_sort_key("2024-05-01T10:00:00.12Z") > precise_sort_key("2024-05-01T10:00:00.1Z")
        assert precise_sort_key("2024-05-01T10:00:01.5Z") > precise_sort_key("2024-05-01T10:00:01Z")
        assert precise_sort_key("2024-05-01T10:00:00.000000002Z") > precise_sort_key("2024-05-01T10:00:00.000000001Z")
        assert precise_sort_key("garbage") == precise_sort_key(None)

    def test_parse_duration(self):
        assert parse_duration("30s") == 30
        assert parse_duration("5m") == 300
        assert parse_duration("1h") == 3600
        assert parse_duration("2d") == 172800

    @pytest.mark.parametrize("value", ["", "5", "m5", "1.5h", "10w"])
    def test_parse_duration_rejects_bad_values(self, value):
        with pytest.raises(ValueError):
            parse_duration(value)

    def test_parse_rfc3339_truncates_nanoseconds(self):
        parsed = parse_rfc3339("2024-05-01T10:00:00.123456789Z")
        assert parsed == datetime(2024, 5, 1, 10, 0, 0, 123456, tzinfo=timezone.utc)

    def test_parse_rfc3339_offsets_and_garbage(self):
        assert parse_rfc3339("2024-05-01T12:00:00+02:00") == datetime(2024, 5, 1, 10, tzinfo=timezone.utc)
        assert parse_rfc3339("yesterday") is None
        assert parse_rfc3339(None) is None

    def test_format_rfc3339(self):
        assert format_rfc3339(datetime(2024, 5, 1, 10, tzinfo=timezone.utc)) == "2024-05-01T10:00:00Z"
        assert format_rfc3339(datetime(2024, 5, 1, 10, 0, 0, 500)) == "2024-05-01T10:00:00.000500Z"

    def test_seconds_since_rounds_up(self):
        now = datetime(2024, 5, 1, 10, 0, 10, 500000, tzinfo=timezone.utc)
        assert seconds_since("2024-05-01T10:00:00Z", now) == 11
        assert seconds_since("2024-05-01T10:00:20Z", now) == 1
        assert seconds_since("bad", now) is None

    def test_sort_key_puts_unparseable_first(self):
        assert sort_key("bad") < sort_key("2024-05-01T10:00:00Z")


def test_split_timestamp():
    assert split_timestamp("2024-05-01T10:00:00.123456789Z hello world") == (
        "2024-05-01T10:00:00.123456789Z",
        "hello world",
    )
    assert split_timestamp("hello world") == (None, "hello world")
    assert split_timestamp("2024-05-01") == (None, "2024-05-01")


def test_lines_without_timestamp_use_fetch_time():
    lines = process("plain line\n\n   \n")
    assert len(lines) == 1
    assert lines[0].timestamp == "2024-05-01T12:00:00Z"
    assert lines[0].message == "plain line"
    assert lines[0].type == "log"
    assert lines[0].container == "app"


def test_json_message_is_parsed():
    lines = process('2024-05-01T10:00:00Z {"level": "error", "msg": "boom"}\n2024-05-01T10:00:01Z [1, 2]')
    assert lines[0].payload == {"level": "error", "msg": "boom"}
    assert lines[1].payload == [1, 2]


def test_invalid_json_keeps_line_without_payload():
    lines = process("2024-05-01T10:00:00Z {not json")
    assert len(lines) == 1
    assert lines[0].payload is None


def test_json_path_filters_only_apply_to_json_lines():
    filters = LogFilters.build(json_path_filters=[JsonPathFilter(path="level", equals="error")])
    text = "\n".join(
        [
            '2024-05-01T10:00:00Z {"level": "info"}',
            '2024-05-01T10:00:01Z {"level": "error"}',
            "2024-05-01T10:00:02Z plain text line",
        ]
    )
    messages = [line.message for line in process(text, filters=filters)]
    assert messages == ['{"level": "error"}', "plain text line"]


def test_cursor_dedupes_overlapping_fetches():
    cursor = PollCursor()
    first = process("2024-05-01T10:00:00Z a\n2024-05-01T10:00:01Z b", cursor=cursor)
    second = process("2024-05-01T10:00:01Z b\n2024-05-01T10:00:02Z c", cursor=cursor)

    assert [line.message for line in first] == ["a", "b"]
    assert [line.message for line in second] == ["c"]
    assert cursor.last_since_timestamp == "2024-05-01T10:00:02Z"
    assert cursor.last_signature == (precise_sort_key("2024-05-01T10:00:02Z"), "c")


def test_cursor_advances_on_filtered_lines():
    cursor = PollCursor()
    filters = LogFilters.build(message_pattern="keep")
    lines = process("2024-05-01T10:00:00Z keep me\n2024-05-01T10:00:05Z drop me", filters=filters, cursor=cursor)
    assert [line.message for line in lines] == ["keep me"]
    assert cursor.last_since_timestamp == "2024-05-01T10:00:05Z"


def test_poll_cursor_admit_is_strict():
    cursor = PollCursor()
    assert cursor.admit(dedupe_signature("2024-05-01T10:00:00Z", "a"))
    assert not cursor.admit(dedupe_signature("2024-05-01T10:00:00Z", "a"))
    assert not cursor.admit(dedupe_signature("2024-04-30T10:00:00Z", "z"))
    assert cursor.admit(dedupe_signature("2024-05-01T10:00:00Z", "b"))


def test_cursor_orders_mixed_fraction_lengths_by_time():
    cursor = PollCursor()
    text = "\n".join(
        [
            "2024-05-01T10:00:00.1Z first",
            "2024-05-01T10:00:00.12Z second",
            "2024-05-01T10:00:01Z third",
            "2024-05-01T10:00:01.5Z fourth",
            "2024-05-01T10:00:01.500000001Z fifth",
        ]
    )
    assert [line.message for line in process(text, cursor=cursor)] == ["first", "second", "third", "fourth", "fifth"]

    # a refetch of the overlap window emits nothing new
    assert process(text, cursor=cursor) == []


def test_fetched_at_default_is_now():
    before = datetime.now(timezone.utc) - timedelta(seconds=1)
    lines = process_log_text("x", "default", "p", "c", LogFilters())
    assert parse_rfc3339(lines[0].timestamp) >= before.replace(microsecond=0)
