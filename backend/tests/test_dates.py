from datetime import UTC, date, datetime, timedelta, timezone

import pytest

from shared.dates import coerce_date, coerce_datetime, day_bounds, day_start, month_key


class TestCoerceDatetime:
    def test_naive_is_assumed_utc(self):
        assert coerce_datetime(datetime(2026, 1, 2, 3, 4)) == datetime(2026, 1, 2, 3, 4, tzinfo=UTC)

    def test_aware_is_converted_to_utc(self):
        plus8 = timezone(timedelta(hours=8))
        result = coerce_datetime(datetime(2026, 1, 2, 1, 0, tzinfo=plus8))
        assert result == datetime(2026, 1, 1, 17, 0, tzinfo=UTC)
        assert result.tzinfo == UTC

    def test_date_becomes_utc_midnight(self):
        assert coerce_datetime(date(2026, 5, 1)) == datetime(2026, 5, 1, tzinfo=UTC)

    def test_iso_string_with_z_suffix(self):
        assert coerce_datetime("2026-05-01T12:30:00Z") == datetime(2026, 5, 1, 12, 30, tzinfo=UTC)

    def test_invalid_string(self):
        with pytest.raises(ValueError):
            coerce_datetime("not a date")

    def test_unsupported_type(self):
        with pytest.raises(TypeError):
            coerce_datetime(12345)  # type: ignore[arg-type]


class TestDayHelpers:
    def test_coerce_date_uses_utc_day(self):
        plus8 = timezone(timedelta(hours=8))
        # 07:00 in UTC+8 is still the previous day in UTC
        assert coerce_date(datetime(2026, 3, 2, 7, 0, tzinfo=plus8)) == date(2026, 3, 1)

    def test_coerce_date_passes_dates_through(self):
        assert coerce_date(date(2026, 3, 2)) == date(2026, 3, 2)

    def test_day_bounds_are_half_open(self):
        start, end = day_bounds("2026-03-02T18:00:00Z")
        assert start == datetime(2026, 3, 2, tzinfo=UTC)
        assert end - start == timedelta(days=1)
        assert day_start(end) == end

    def test_month_key(self):
        assert month_key(date(2026, 3, 9)) == "2026-03"
