# testing/test_time_utils.py
"""
Tests for clock-time helpers: parsing, wrapping, travel time and customer slots.
"""

import os
from datetime import datetime

os.environ.setdefault("DB_PATH", "test_rental_scheduler.db")

from src.api.time_utils import (
    add_minutes,
    ensure_end_after_start,
    format_am_pm,
    minutes_to_time,
    normalize_time_slot,
    parse_time_slot_end,
    parse_time_slot_start,
    subtract_minutes,
    time_to_minutes,
    to_datetime,
    travel_minutes,
)


def test_time_to_minutes_formats():
    assert time_to_minutes("08:00") == 480
    assert time_to_minutes("8:05") == 485
    assert time_to_minutes("16:30:00") == 990
    assert time_to_minutes("2:30pm") == 870
    assert time_to_minutes("12:00am") == 0
    assert time_to_minutes("13.15") == 795


def test_time_to_minutes_rejects_bad_input():
    for bad in ["", None, "25:00", "12:60", "noon", "7", 480, "13:00pm"]:
        assert time_to_minutes(bad) is None, bad


def test_minutes_round_trip():
    for m in range(0, 24 * 60):
        assert time_to_minutes(minutes_to_time(m)) == m


def test_minutes_to_time_wraps():
    assert minutes_to_time(24 * 60 + 15) == "00:15"
    assert minutes_to_time(-30) == "23:30"


def test_add_and_subtract_minutes():
    assert add_minutes("23:30", 45) == "00:15"
    assert subtract_minutes("00:10", 20) == "23:50"
    assert add_minutes("bad", 10) == "bad"


def test_travel_minutes_rounds_half_up():
    assert travel_minutes(20, 3) == 60
    assert travel_minutes(2.5, 1) == 3
    assert travel_minutes(0.1, 3) == 0
    assert travel_minutes(-5, 3) == 0
    assert travel_minutes(float("nan"), 3) == 0
    assert travel_minutes(None, 3) == 0


def test_to_datetime_and_overnight_roll():
    start = to_datetime("2026-03-14", "22:00")
    assert start == datetime(2026, 3, 14, 22, 0)
    end = ensure_end_after_start(start, to_datetime("2026-03-14", "01:00"))
    assert end == datetime(2026, 3, 15, 1, 0)
    assert to_datetime("2026-03-14", "bad") is None
    assert to_datetime("not-a-date", "10:00") is None


def test_time_slots():
    slot = "11:30am - 1:00pm"
    assert parse_time_slot_start(slot) == 690
    assert parse_time_slot_end(slot) == 780
    assert parse_time_slot_start("NONE") is None
    assert normalize_time_slot(" none ") == ""
    assert normalize_time_slot("9:00am - 11:00am") == "9:00am - 11:00am"


def test_format_am_pm():
    assert format_am_pm("16:30") == "4:30pm"
    assert format_am_pm("00:05") == "12:05am"
