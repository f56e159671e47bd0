"""Unit tests for the shared byte accounting helpers."""

from datetime import timedelta

import pytest

from app.exceptions.base import ValidationError
from app.shared.byte_utils import (
    available_bytes,
    ceil_div,
    chunk_count,
    estimate_eta_seconds,
    format_bytes,
    parse_ttl,
    used_percent,
)


class TestFormatBytes:
    @pytest.mark.parametrize(
        "value,expected",
        [
            (0, "0.00 B"),
            (1023, "1023.00 B"),
            (1536, "1.50 KB"),
            (5 * 1024 * 1024, "5.00 MB"),
            (1024**3, "1.00 GB"),
            (1024**5, "1024.00 TB"),
        ],
    )
    def test_format_bytes(self, value, expected):
        assert format_bytes(value) == expected


class TestPercentages:
    def test_used_percent(self):
        assert used_percent(50, 200) == 25.0
        assert used_percent(1, 3) == 33.33

    def test_used_percent_zero_limit(self):
        assert used_percent(0, 0) == 0.0
        assert used_percent(10, 0) == 100.0

    def test_available_never_negative(self):
        assert available_bytes(10, 100) == 90
        assert available_bytes(150, 100) == 0

    def test_large_values_stay_exact(self):
        limit = 1024 * 1024**4
        assert available_bytes(limit - 1, limit) == 1


class TestChunkMath:
    def test_ceil_div(self):
        assert ceil_div(10, 5) == 2
        assert ceil_div(11, 5) == 3
        assert ceil_div(0, 5) == 0

    def test_ceil_div_rejects_zero(self):
        with pytest.raises(ValueError):
            ceil_div(1, 0)

    def test_chunk_count_for_empty_file(self):
        assert chunk_count(0, 1024) == 1

    def test_chunk_count(self):
        assert chunk_count(5 * 1024 * 1024 + 1, 1024 * 1024) == 6

    def test_eta_unknown_without_speed(self):
        assert estimate_eta_seconds(1000, 0) is None

    def test_eta_rounds_up(self):
        assert estimate_eta_seconds(1001, 100) == 11


class TestParseTtl:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("30m", timedelta(minutes=30)),
            ("1h", timedelta(hours=1)),
            ("7d", timedelta(days=7)),
        ],
    )
    def test_valid(self, value, expected):
        assert parse_ttl(value) == expected

    def test_timedelta_passthrough(self):
        assert parse_ttl(timedelta(seconds=90)) == timedelta(seconds=90)

    @pytest.mark.parametrize("value", ["", "1", "h", "1w", "-1h", "1.5h", "0h"])
    def test_invalid(self, value):
        with pytest.raises(ValidationError):
            parse_ttl(value)

    def test_non_positive_timedelta(self):
        with pytest.raises(ValidationError):
            parse_ttl(timedelta(0))
