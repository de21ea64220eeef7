import datetime as dt
from zoneinfo import ZoneInfo

import pytest

from clinicbook.scheduling.time_helpers import (
    format_hhmm,
    minutes_of_day,
    parse_hhmm,
    resolve_timezone,
    slot_start,
    time_from_minutes,
)


class TestParseHhmm:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("09:00", dt.time(9, 0)),
            ("9:30", dt.time(9, 30)),
            (" 16:45 ", dt.time(16, 45)),
            ("00:00", dt.time(0, 0)),
        ],
        ids=["padded", "single-digit-hour", "whitespace", "midnight"],
    )
    def test_parses(self, value: str, expected: dt.time) -> None:
        assert parse_hhmm(value) == expected

    @pytest.mark.parametrize("value", ["", "9", "9:5", "ab:cd", "25:00", "09:00:00", "-1:00"])
    def test_rejects_invalid(self, value: str) -> None:
        with pytest.raises(ValueError):
            parse_hhmm(value)


class TestMinuteArithmetic:
    def test_format(self) -> None:
        assert format_hhmm(dt.time(9, 5)) == "09:05"

    def test_minutes_round_trip(self) -> None:
        assert minutes_of_day(dt.time(13, 30)) == 810
        assert time_from_minutes(810) == dt.time(13, 30)

    @pytest.mark.parametrize("minutes", [-1, 1440])
    def test_time_from_minutes_out_of_range(self, minutes: int) -> None:
        with pytest.raises(ValueError, match="outside a single day"):
            time_from_minutes(minutes)

    def test_slot_start_is_aware(self) -> None:
        tz = ZoneInfo("Asia/Bangkok")

        start = slot_start(dt.date(2030, 1, 7), dt.time(9, 0), tz)

        assert start.tzinfo is tz
        assert start.astimezone(dt.timezone.utc).hour == 2


class TestResolveTimezone:
    def test_valid_name(self) -> None:
        assert resolve_timezone("Asia/Bangkok") == ZoneInfo("Asia/Bangkok")

    def test_invalid_name_falls_back_to_utc(self) -> None:
        assert resolve_timezone("Not/AZone") is dt.timezone.utc
