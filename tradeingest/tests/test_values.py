"""Tests for cell value parsing (amounts, dates, times, instants)."""

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from tradeingest.parsers.values import (
    as_instant,
    clean_text,
    combine_date_time,
    expand_two_digit_year,
    parse_date,
    parse_datetime,
    parse_number,
    parse_quantity,
    parse_time,
    to_utc,
)


class TestNumbers:
    @pytest.mark.parametrize("raw,expected", [
        ("$1,234.56", 1234.56),
        ("(12.50)", -12.5),
        ("-3", -3.0),
        ("+7", 7.0),
        ("USD 4.00", 4.0),
        ("'15.25'", 15.25),
        (".5", 0.5),
        (42, 42.0),
    ])
    def test_parse_number(self, raw, expected):
        assert parse_number(raw) == pytest.approx(expected)

    def test_garbage_returns_default(self):
        assert parse_number("abc") == 0.0
        assert parse_number("", default=None) is None
        assert parse_number(None) == 0.0
        assert parse_number(float("nan")) == 0.0

    def test_absurd_magnitude_returns_default(self):
        assert parse_number(1e16) == 0.0

    def test_quantity_is_absolute_whole_units(self):
        assert parse_quantity("-100") == 100
        assert parse_quantity("+2") == 2
        assert parse_quantity("2.6") == 3


def test_clean_text_strips_quotes():
    assert clean_text('  "AAPL" ') == "AAPL"
    assert clean_text("“TSLA”") == "TSLA"
    assert clean_text(None) == ""


class TestDates:
    def test_us_four_digit_year(self):
        assert parse_date("01/15/2024") == date(2024, 1, 15)

    def test_us_two_digit_year(self):
        assert parse_date("1/5/24") == date(2024, 1, 5)
        assert parse_date("1/5/75") == date(1975, 1, 5)

    def test_iso_and_compact(self):
        assert parse_date("2024-01-15") == date(2024, 1, 15)
        assert parse_date("20240115") == date(2024, 1, 15)

    def test_as_of_takes_first_date(self):
        assert parse_date("10/21/2024 as of 10/18/2024") == date(2024, 10, 21)

    def test_out_of_range_is_none(self):
        assert parse_date("01/01/2150") is None
        assert parse_date("13/45/2024") is None
        assert parse_date("") is None

    def test_two_digit_year_pivot(self):
        assert expand_two_digit_year(49) == 2049
        assert expand_two_digit_year(50) == 1950
        assert expand_two_digit_year(2024) == 2024


class TestTimes:
    def test_compact(self):
        assert parse_time("093000") == time(9, 30)
        assert parse_time("1430") == time(14, 30)

    def test_twelve_hour(self):
        assert parse_time("2:15 PM") == time(14, 15)
        assert parse_time("12:05:01 AM") == time(0, 5, 1)

    def test_fractional_seconds(self):
        assert parse_time("09:30:00.250") == time(9, 30, 0, 250000)

    def test_invalid(self):
        assert parse_time("25:00") is None
        assert parse_time("soon") is None


class TestDatetimes:
    def test_ibkr_comma_form(self):
        assert parse_datetime("2024-01-15, 10:30:00") == datetime(2024, 1, 15, 10, 30)

    def test_packed_semicolon_form(self):
        assert parse_datetime("20240115;143000") == datetime(2024, 1, 15, 14, 30)

    def test_date_only_defaults_to_market_open(self):
        assert parse_datetime("2024-01-15") == datetime(2024, 1, 15, 9, 30)

    def test_explicit_offset_is_kept(self):
        parsed = parse_datetime("2024-03-01T14:30:00+02:00")
        assert parsed.utcoffset() == timedelta(hours=2)
        assert to_utc(parsed) == datetime(2024, 3, 1, 12, 30, tzinfo=timezone.utc)

    def test_combine_date_time(self):
        assert combine_date_time("01/15/2024", "10:05:00") == datetime(2024, 1, 15, 10, 5)
        assert combine_date_time("01/15/2024") == datetime(2024, 1, 15, 9, 30)
        assert combine_date_time("not a date", "10:00") is None


class TestInstants:
    def test_naive_is_taken_as_utc(self):
        assert to_utc(datetime(2024, 1, 15, 9, 30)) == datetime(
            2024, 1, 15, 9, 30, tzinfo=timezone.utc
        )

    def test_naive_in_broker_zone(self):
        ny = ZoneInfo("America/New_York")
        assert to_utc(datetime(2024, 1, 15, 9, 30), ny) == datetime(
            2024, 1, 15, 14, 30, tzinfo=timezone.utc
        )

    def test_epoch_millis(self):
        assert as_instant(1705311000000) == datetime(2024, 1, 15, 9, 30, tzinfo=timezone.utc)

    def test_iso_string(self):
        assert as_instant("2024-01-15T09:30:00Z") == datetime(
            2024, 1, 15, 9, 30, tzinfo=timezone.utc
        )

    def test_unparseable_is_none(self):
        assert as_instant("garbage") is None
        assert as_instant("") is None
        assert as_instant(None) is None
