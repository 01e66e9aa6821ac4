"""Tests for the human-readable formatting helpers."""

import pytest

from termtune.utils.formatting import (
    format_clock,
    format_duration,
    format_percent,
    format_size,
    format_speed,
    format_volume,
)


@pytest.mark.parametrize(
    ("size", "expected"),
    [(0, "0 B"), (512, "512.0 B"), (1536, "1.5 KB"), (145 * 1024 * 1024, "145.0 MB")],
)
def test_format_size(size, expected):
    assert format_size(size) == expected


@pytest.mark.parametrize(
    ("seconds", "expected"),
    [(0, "0s"), (59.9, "59s"), (60, "1m"), (9252, "2h 34m 12s")],
)
def test_format_duration(seconds, expected):
    assert format_duration(seconds) == expected


@pytest.mark.parametrize(
    ("ms", "expected"),
    [(0, "0:00"), (187_000, "3:07"), (3_729_500, "1:02:09"), (-5, "0:00")],
)
def test_format_clock(ms, expected):
    assert format_clock(ms) == expected


def test_format_volume():
    assert format_volume(0.7) == "70%"
    assert format_volume(0.0) == "0%"


def test_format_speed():
    assert format_speed(2.5 * 1024 * 1024) == "2.5 MB/s"
    assert format_speed(0) == "0 B/s"


def test_format_percent():
    assert format_percent(1, 3) == "33%"
    assert format_percent(5, 0) == "0%"
