# testing/test_workload.py
"""
Tests for the team workload index: engaged intervals, job counts and
conflict detection.
"""

import os

os.environ.setdefault("DB_PATH", "test_rental_scheduler.db")

from src.api.models import REMAIN_ON_SITE
from src.api.time_utils import to_datetime
from src.api.workload import (
    engaged_interval,
    find_conflict,
    find_schedule_clashes,
    get_tasks_for_date,
    get_team_job_counts,
    get_team_tasks_for_day,
)
from testing.mock_data import make_order, scheduled_record

DATE = "2026-03-14"


def _busy_order(number, team="Team A", dep="09:00", arr="09:30", end="10:30", hub="11:00", **kw):
    return make_order(number, schedule={"setup": scheduled_record(DATE, team, dep, arr, end, hub, **kw)})


def test_engaged_interval_runs_until_back_at_hub():
    interval = engaged_interval(_busy_order("SO-1"), "setup")
    assert interval.start == to_datetime(DATE, "09:00")
    assert interval.end == to_datetime(DATE, "11:00")
    assert interval.site_arrival == to_datetime(DATE, "09:30")
    assert interval.site_end == to_datetime(DATE, "10:30")
    assert interval.destination == "Site SO-1"


def test_engaged_interval_remain_on_site_ends_at_site():
    order = _busy_order("SO-1", hub=None, policy=REMAIN_ON_SITE, next_task="SO-2")
    assert engaged_interval(order, "setup").end == to_datetime(DATE, "10:30")


def test_engaged_interval_overnight_return():
    order = _busy_order("SO-1", dep="21:00", arr="21:30", end="23:30", hub="00:30")
    interval = engaged_interval(order, "setup")
    assert interval.end == to_datetime("2026-03-15", "00:30")


def test_engaged_interval_needs_team_and_date():
    order = _busy_order("SO-1")
    order["schedule"]["setup"]["team"] = None
    assert engaged_interval(order, "setup") is None
    assert engaged_interval(make_order("SO-2"), "setup") is None


def test_dismantle_not_counted_when_not_required():
    order = make_order(
        "SO-1",
        dismantle_required=False,
        schedule={"dismantle": scheduled_record(DATE, "Team A", "09:00", "09:30", "10:00", "10:30")},
    )
    assert get_tasks_for_date(DATE, [order]) == []


def test_team_job_counts():
    orders = [
        _busy_order("SO-1"),
        _busy_order("SO-2", dep="12:00", arr="12:30", end="13:00", hub="13:30"),
        _busy_order("SO-3", team="Team B"),
    ]
    counts = get_team_job_counts(DATE, orders)
    assert counts["Team A"] == 2
    assert counts["Team B"] == 1
    assert counts["Team E"] == 0


def test_conflict_names_clashing_order():
    """Team A busy 09:00-11:00; a new 10:00-12:00 interval for Team A clashes."""
    orders = [_busy_order("SO-Y")]
    conflict = find_conflict(
        to_datetime(DATE, "10:00"), to_datetime(DATE, "12:00"), "Team A", DATE, "SO-NEW", orders,
    )
    assert conflict is not None
    assert conflict.order_number == "SO-Y"


def test_conflict_is_half_open_and_ignores_own_order():
    orders = [_busy_order("SO-Y")]
    assert find_conflict(to_datetime(DATE, "11:00"), to_datetime(DATE, "12:00"), "Team A", DATE, "SO-N", orders) is None
    assert find_conflict(to_datetime(DATE, "10:00"), to_datetime(DATE, "12:00"), "Team B", DATE, "SO-N", orders) is None
    assert find_conflict(to_datetime(DATE, "10:00"), to_datetime(DATE, "12:00"), "Team A", DATE, "SO-Y", orders) is None


def test_schedule_clash_messages():
    other = make_order("SO-12", schedule={"dismantle": scheduled_record(DATE, "Team A", "09:00", "09:30", "10:30", "11:00")})
    mine = _busy_order("SO-1", dep="10:00", arr="10:30", end="11:30", hub="12:00")
    assert find_schedule_clashes(mine, [other, mine]) == ["SETUP: Team A clashes with SO-12 (dismantle)"]


def test_schedule_clash_between_own_phases():
    order = make_order(
        "SO-1",
        schedule={
            "setup": scheduled_record(DATE, "Team A", "09:00", "09:30", "10:30", "11:00"),
            "dismantle": scheduled_record(DATE, "Team A", "10:00", "10:30", "11:30", "12:00"),
        },
    )
    assert find_schedule_clashes(order, [order]) == ["DISMANTLE: Team A clashes with SO-1 (setup)"]


def test_team_tasks_for_day_sorted():
    orders = [
        _busy_order("SO-2", dep="13:00", arr="13:30", end="14:00", hub="14:30"),
        _busy_order("SO-1"),
    ]
    assert [t.order_number for t in get_team_tasks_for_day("Team A", DATE, orders)] == ["SO-1", "SO-2"]
