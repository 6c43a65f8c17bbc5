"""Unit tests for timestamp utilities."""

from datetime import datetime, timedelta, timezone

from ridematch.utils.timestamps import (
    ensure_utc,
    from_storage,
    minutes_between,
    to_storage,
    utc_now,
)


class TestUtcNow:
    """Tests for utc_now function."""

    def test_utc_now_returns_utc_datetime(self):
        now = utc_now()

        assert now.tzinfo == timezone.utc
        assert isinstance(now, datetime)

    def test_utc_now_is_recent(self):
        before = datetime.now(timezone.utc)
        now = utc_now()
        after = datetime.now(timezone.utc)

        assert before <= now <= after


class TestEnsureUtc:
    """Tests for ensure_utc function."""

    def test_ensure_utc_with_none(self):
        assert ensure_utc(None) is None

    def test_ensure_utc_with_naive_datetime(self):
        """Naive datetimes are treated as UTC."""
        result = ensure_utc(datetime(2025, 11, 4, 12, 0, 0))

        assert result.tzinfo == timezone.utc
        assert result.hour == 12

    def test_ensure_utc_with_other_timezone(self):
        """Dhaka time (UTC+6) is converted to UTC."""
        dhaka = timezone(timedelta(hours=6))
        result = ensure_utc(datetime(2025, 11, 4, 14, 0, 0, tzinfo=dhaka))

        assert result.tzinfo == timezone.utc
        assert result.hour == 8


class TestStorageFormat:
    """Tests for the fixed-width storage representation."""

    def test_to_storage_format(self):
        dt = datetime(2025, 11, 4, 14, 0, 0, tzinfo=timezone.utc)

        assert to_storage(dt) == "2025-11-04T14:00:00.000000Z"

    def test_to_storage_none(self):
        assert to_storage(None) is None

    def test_to_storage_converts_offset_to_utc(self):
        dhaka = timezone(timedelta(hours=6))

        assert to_storage(datetime(2025, 11, 4, 20, 0, tzinfo=dhaka)) == "2025-11-04T14:00:00.000000Z"

    def test_storage_strings_sort_chronologically(self):
        """Lexical order of stored values matches time order."""
        times = [
            datetime(2025, 11, 4, 9, 5, 0, 1, tzinfo=timezone.utc),
            datetime(2025, 11, 4, 10, 0, 0, tzinfo=timezone.utc),
            datetime(2025, 11, 4, 9, 5, 0, tzinfo=timezone.utc),
            datetime(2024, 12, 31, 23, 59, 59, tzinfo=timezone.utc),
        ]

        assert sorted(to_storage(t) for t in times) == [to_storage(t) for t in sorted(times)]

    def test_from_storage_restores_value(self):
        dt = datetime(2025, 11, 4, 14, 0, 0, 123456, tzinfo=timezone.utc)

        assert from_storage(to_storage(dt)) == dt

    def test_from_storage_without_microseconds(self):
        result = from_storage("2025-11-04T14:00:00Z")

        assert result == datetime(2025, 11, 4, 14, 0, 0, tzinfo=timezone.utc)

    def test_from_storage_empty(self):
        assert from_storage(None) is None
        assert from_storage("") is None


class TestMinutesBetween:
    def test_minutes_between_is_absolute(self):
        a = datetime(2025, 11, 4, 14, 0, tzinfo=timezone.utc)
        b = datetime(2025, 11, 4, 14, 10, tzinfo=timezone.utc)

        assert minutes_between(a, b) == 10.0
        assert minutes_between(b, a) == 10.0

    def test_minutes_between_fractional(self):
        a = datetime(2025, 11, 4, 14, 0, tzinfo=timezone.utc)

        assert minutes_between(a, a + timedelta(seconds=90)) == 1.5

