from datetime import date, datetime, timezone
import logging

import pytest
import pytz

from lessonbook.core.exceptions import ConfigurationException
from lessonbook.core.timezone_utils import (
    day_bounds,
    get_timezone,
    hhmm_to_minutes,
    local_date,
    minutes_to_hhmm,
    parse_hhmm,
    parse_iso_datetime,
    sunday_based_weekday,
    week_start_for,
)


class TestHHMM:
    def test_parse_valid(self):
        assert parse_hhmm("09:30") == (9, 30)
        assert parse_hhmm("23:59") == (23, 59)
        assert parse_hhmm(" 07:15:00 ") == (7, 15)

    @pytest.mark.parametrize(
        "value", ["24:00", "9am", "", None, "12:60", "12:3045", "09:30 pm", "09:30:7"]
    )
    def test_parse_invalid_raises(self, value):
        with pytest.raises(ConfigurationException):
            parse_hhmm(value)

    def test_malformed_value_resolves_to_midnight_with_warning(self, caplog):
        with caplog.at_level(logging.WARNING):
            assert hhmm_to_minutes("noon", context="latest_end_time") == 0
        assert "Data quality" in caplog.text

    def test_round_trip_formatting(self):
        assert hhmm_to_minutes("17:45") == 17 * 60 + 45
        assert minutes_to_hhmm(17 * 60 + 45) == "17:45"


class TestCalendarHelpers:
    def test_week_starts_on_monday(self):
        assert week_start_for(date(2030, 1, 13)) == date(2030, 1, 7)
        assert week_start_for(date(2030, 1, 7)) == date(2030, 1, 7)

    def test_sunday_is_day_zero(self):
        assert sunday_based_weekday(date(2030, 1, 6)) == 0
        assert sunday_based_weekday(date(2030, 1, 7)) == 1
        assert sunday_based_weekday(date(2030, 1, 12)) == 6

    def test_day_bounds_in_business_timezone(self):
        tz = get_timezone("Australia/Brisbane")
        start, end = day_bounds(date(2030, 1, 8), tz)

        assert start.astimezone(timezone.utc) == datetime(2030, 1, 7, 14, 0, tzinfo=timezone.utc)
        assert (end - start).total_seconds() == 24 * 3600

    def test_local_date_uses_timezone(self):
        tz = get_timezone("Australia/Brisbane")
        assert local_date(datetime(2030, 1, 7, 20, 0, tzinfo=timezone.utc), tz) == date(2030, 1, 8)

    def test_unknown_timezone_falls_back_to_utc(self):
        assert get_timezone("Mars/Olympus_Mons") is pytz.UTC


class TestParseIsoDatetime:
    def test_zulu_suffix(self):
        assert parse_iso_datetime("2030-01-08T10:00:00Z") == datetime(
            2030, 1, 8, 10, 0, tzinfo=timezone.utc
        )

    def test_naive_value_is_treated_as_utc(self):
        parsed = parse_iso_datetime("2030-01-08T10:00:00")
        assert parsed is not None and parsed.utcoffset().total_seconds() == 0

    @pytest.mark.parametrize("value", [None, "", "not a date", 42])
    def test_invalid_values_return_none(self, value):
        assert parse_iso_datetime(value) is None
