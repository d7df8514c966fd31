"""Tests for canonical timestamp conversion."""

from datetime import datetime, timedelta, timezone

import pytest

from marketbill.billing.errors import InvalidTimestampError
from marketbill.billing.timestamps import to_utc, utcnow

JAN1 = datetime(2025, 1, 1, 3, 0, tzinfo=timezone.utc)


class TestToUtc:
    def test_aware_datetime_converted(self):
        local = datetime(2025, 1, 1, 0, 0, tzinfo=timezone(timedelta(hours=-3)))
        assert to_utc(local) == JAN1
        assert to_utc(local).tzinfo == timezone.utc

    def test_naive_datetime_taken_as_utc(self):
        assert to_utc(datetime(2025, 1, 1, 3, 0)) == JAN1

    def test_epoch_seconds(self):
        assert to_utc(1735700400) == JAN1

    def test_epoch_milliseconds(self):
        assert to_utc(1735700400000) == JAN1

    def test_iso_string_with_z(self):
        assert to_utc("2025-01-01T03:00:00Z") == JAN1

    def test_iso_string_with_offset(self):
        assert to_utc("2025-01-01T00:00:00-03:00") == JAN1

    def test_document_store_mapping(self):
        value = to_utc({"seconds": 1735700400, "nanoseconds": 500_000_000})
        assert value == JAN1 + timedelta(milliseconds=500)

    def test_underscored_mapping(self):
        assert to_utc({"_seconds": 1735700400, "_nanoseconds": 0}) == JAN1

    @pytest.mark.parametrize(
        "bad",
        [None, True, "yesterday", float("nan"), {"nanoseconds": 5}, [2025, 1, 1]],
    )
    def test_rejects_unusable_values(self, bad):
        with pytest.raises(InvalidTimestampError):
            to_utc(bad)

    def test_utcnow_is_aware(self):
        assert utcnow().tzinfo == timezone.utc
