# testing/test_cojoin.py
"""
Tests for co-join detection:
- tail co-join onto a task that finishes nearby (and its linked-order update)
- head co-join ahead of a later nearby task
- radius and waiting-time limits, tasks that end too late
- choosing between tail and head
"""

import asyncio
import os

os.environ.setdefault("DB_PATH", "test_rental_scheduler.db")

from src.api.cojoin import (
    HEAD_FIRST,
    apply_linked_update,
    choose_cojoin,
    find_head_cojoin_candidate,
    find_tail_cojoin_candidate,
    with_linked_updates,
)
from src.api.models import AISettings, CoJoinInfo, REMAIN_ON_SITE
from src.api.workload import engaged_interval
from testing.mock_data import fixed_distance_lookup, make_order, scheduled_record

DATE = "2026-03-14"
SETTINGS = AISettings(hub_address="Hub", buffer_time_minutes=30, minutes_per_km=3, radius_km=10, waiting_hours=1.5)


def _dismantle_ending(number, end, team="Team C", site="Site Y"):
    # dismantle at `site`, arriving 90 minutes before `end`
    end_mins = int(end[:2]) * 60 + int(end[3:])
    arrival = f"{(end_mins - 90) // 60:02d}:{(end_mins - 90) % 60:02d}"
    departure = f"{(end_mins - 120) // 60:02d}:{(end_mins - 120) % 60:02d}"
    hub = f"{(end_mins + 30) // 60:02d}:{(end_mins + 30) % 60:02d}"
    return make_order(
        number,
        address=site,
        setup_date="2026-03-13",
        dismantle_date=DATE,
        schedule={"dismantle": scheduled_record(DATE, team, departure, arrival, end, hub)},
    )


def _tail(orders, lookup, arrival="14:30", slot="2:30pm - 4:30pm", **kw):
    return asyncio.run(find_tail_cojoin_candidate(
        DATE, arrival, "Site Z", "setup", "Z", orders, SETTINGS, lookup, customer_slot=slot, **kw,
    ))


def test_tail_cojoin_onto_nearby_dismantle():
    """Y's dismantle ends 14:00 at a site 8km away; Z's setup can follow it."""
    orders = [_dismantle_ending("Y", "14:00")]
    lookup = fixed_distance_lookup({("Site Y", "Site Z"): 8})

    info = _tail(orders, lookup)

    assert info.applied is True
    assert info.type == "tail"
    assert info.linked_order_number == "Y"
    assert info.team == "Team C"
    assert info.travel_mins == 24
    assert info.waiting_mins == 6
    assert info.adjusted_arrival_time is None
    assert info.adjusted_departure_time == "14:06"
    update = info.linked_order_update
    assert update.order_number == "Y"
    assert update.phase == "dismantle"
    assert update.new_value == REMAIN_ON_SITE
    assert update.next_task_order_number == "Z"


def test_tail_rejects_wait_over_limit():
    orders = [_dismantle_ending("Y", "12:00")]
    info = _tail(orders, fixed_distance_lookup({("Site Y", "Site Z"): 8}))
    assert info.applied is False
    assert "wait=126min" in info.reason


def test_tail_rejects_outside_radius():
    orders = [_dismantle_ending("Y", "14:00")]
    info = _tail(orders, fixed_distance_lookup({("Site Y", "Site Z"): 15}))
    assert info.applied is False
    assert "15.0km > 10" in info.reason


def test_tail_rejects_task_ending_after_arrival():
    orders = [_dismantle_ending("Y", "14:40")]
    info = _tail(orders, fixed_distance_lookup({("Site Y", "Site Z"): 2}))
    assert info.applied is False
    assert "none end before 14:30" in info.reason


def test_tail_rejects_when_travel_makes_it_late():
    # ends 14:20, 5km = 15 min -> earliest arrival 14:35 > 14:30
    orders = [_dismantle_ending("Y", "14:20")]
    info = _tail(orders, fixed_distance_lookup({("Site Y", "Site Z"): 5}))
    assert info.applied is False
    assert "ends too late" in info.reason


def test_tail_needs_distance_lookup():
    orders = [_dismantle_ending("Y", "14:00")]
    info = _tail(orders, None)
    assert info.applied is False
    assert "distance unavailable" in info.reason.lower()


def test_tail_skips_unresolved_distance():
    orders = [_dismantle_ending("Y", "14:00")]
    info = _tail(orders, fixed_distance_lookup({}))
    assert info.applied is False
    assert "Y: distance unavailable" in info.reason


def test_tail_respects_excluded_teams():
    orders = [_dismantle_ending("Y", "14:00")]
    info = _tail(orders, fixed_distance_lookup({("Site Y", "Site Z"): 8}), excluded_teams=["Team C"])
    assert info.applied is False


def test_tail_rejects_when_linked_team_busy_in_between():
    orders = [
        _dismantle_ending("Y", "14:00"),
        make_order("W", schedule={"setup": scheduled_record(DATE, "Team C", "14:05", "14:10", "14:20", "14:25")}),
    ]
    info = _tail(orders, fixed_distance_lookup({("Site Y", "Site Z"): 8}))
    assert info.applied is False
    assert "busy due to W" in info.reason


def _later_setup(number="Y", team="Team B", site="Site Y"):
    return make_order(number, address=site, schedule={"setup": scheduled_record(DATE, team, "11:00", "11:30", "12:30", "13:00")})


def test_head_cojoin_before_later_task():
    """Z (9am slot, 90 min) finishes 10:30; Y starts 11:30 5km away."""
    orders = [_later_setup()]
    info = asyncio.run(find_head_cojoin_candidate(
        DATE, "09:00", 90, "Site Z", "setup", "Z", orders, SETTINGS,
        fixed_distance_lookup({("Site Z", "Site Y"): 5}),
        customer_slot="9:00am - 11:00am", min_arrival_mins=510, lead_in_mins=30,
    ))

    assert info.applied is True
    assert info.type == "head"
    assert info.linked_order_number == "Y"
    assert info.team == "Team B"
    assert info.waiting_mins == 45
    assert info.adjusted_departure_time == "11:15"
    update = info.linked_order_update
    assert update.new_value is None
    assert update.departure_address == "Site Z"
    assert update.departure_time == "11:15"
    assert update.travel_mins == 15


def test_head_cojoin_rejects_long_wait():
    orders = [_later_setup()]
    info = asyncio.run(find_head_cojoin_candidate(
        DATE, "08:30", 30, "Site Z", "setup", "Z", orders, SETTINGS,
        fixed_distance_lookup({("Site Z", "Site Y"): 5}),
    ))
    assert info.applied is False
    assert "waiting limit" in info.reason


def test_apply_linked_update_is_idempotent():
    orders = [_dismantle_ending("Y", "14:00")]
    info = _tail(orders, fixed_distance_lookup({("Site Y", "Site Z"): 8}))

    once = apply_linked_update(orders[0], info.linked_order_update)
    twice = apply_linked_update(once, info.linked_order_update)

    assert once == twice
    record = once["schedule"]["dismantle"]
    assert record["return_policy"] == REMAIN_ON_SITE
    assert record["next_task_order_number"] == "Z"
    assert record["hub_arrival_time"] is None
    # the original snapshot is untouched
    assert orders[0]["schedule"]["dismantle"]["return_policy"] == "return-to-hub"


def test_snapshot_with_update_frees_linked_team_after_site_end():
    orders = [_dismantle_ending("Y", "14:00")]
    info = _tail(orders, fixed_distance_lookup({("Site Y", "Site Z"): 8}))
    snapshot = with_linked_updates(orders, [info.linked_order_update])
    interval = engaged_interval(snapshot[0], "dismantle")
    assert f"{interval.end:%H:%M}" == "14:00"


def _applied(kind, arrival=None):
    return CoJoinInfo(applied=True, type=kind, linked_order_number=kind.upper(), adjusted_arrival_time=arrival, reason=kind)


def test_choose_without_preferred_time_avoids_overtime_first():
    # tail pushes the end past 16:30, base does not
    chosen = choose_cojoin(
        900, _applied("tail", "15:30"), CoJoinInfo.none("no head"), 60, 30, 990, no_preferred_time=True,
    )
    assert chosen.applied is False


def test_choose_without_preferred_time_prefers_cojoin_when_no_ot():
    chosen = choose_cojoin(
        540, _applied("tail"), CoJoinInfo.none("no head"), 60, 30, 990, no_preferred_time=True,
    )
    assert chosen.type == "tail"


def test_choose_auto_avoid_ot_picks_side_without_overtime():
    chosen = choose_cojoin(
        900, _applied("tail", "15:45"), _applied("head", "14:30"), 60, 0, 990, no_preferred_time=False,
    )
    assert chosen.type == "head"


def test_choose_head_first_strategy():
    chosen = choose_cojoin(
        540, _applied("tail"), _applied("head"), 60, 0, 990, no_preferred_time=False, strategy=HEAD_FIRST,
    )
    assert chosen.type == "head"
