# testing/test_scheduler.py
"""
Tests for the AI scheduling engine.

Tests verify:
- departure / arrival / end times from distance, work minutes and buffer
- overtime decision (informational vs deploy another team)
- team choice: least loaded free team, preferred team, same team for dismantle
- co-join chaining onto another order's task
- customer window, same-day departure and warnings
"""

import asyncio
import os

import pytest

os.environ.setdefault("DB_PATH", "test_rental_scheduler.db")

from src.api.errors import InvalidOrderError
from src.api.models import AISettings, AppSettings, DEPLOY_NEW_TEAM, REMAIN_ON_SITE, ScheduleProposal
from src.api.scheduler import (
    calculate_work_minutes,
    check_customer_window,
    deploy_new_team,
    pick_team,
    run_ai_schedule,
)
from src.api.time_utils import to_datetime
from testing.mock_data import fixed_distance_lookup, make_order, scheduled_record

DATE = "2026-03-14"
AI = AISettings(hub_address="Hub", buffer_time_minutes=30, minutes_per_km=3, radius_km=10, waiting_hours=1.5)


def schedule(order, orders=(), ai=AI, app=None, distance_km=10, **kw):
    return asyncio.run(run_ai_schedule(order, list(orders), ai, app or AppSettings(), distance_km, **kw))


def test_calculate_work_minutes_from_inventory_times():
    order = make_order("SO-1", items=[
        {"inventory_id": "tent-10x10", "quantity": 2},
        {"inventory_id": "extra-chair", "quantity": 10},
    ])
    assert calculate_work_minutes(order, "setup", AppSettings()) == 80
    assert calculate_work_minutes(order, "dismantle", AppSettings()) == 80


def test_calculate_work_minutes_legacy_fallbacks():
    legacy_item = make_order("SO-1", items=[{"inventory_id": "old", "quantity": 3, "setup_mins_per_unit": 10}])
    assert calculate_work_minutes(legacy_item, "dismantle", AppSettings()) == 30

    tents_only = make_order("SO-2", items=[])
    tents_only["pricing"] = {"tent20x20": {"quantity": 2}}
    assert calculate_work_minutes(tents_only, "setup", AppSettings()) == 70


def test_scenario_basic_times_no_overtime():
    """20km at 3 min/km, 90 min work, 15 min buffer: 08:00 -> 09:00 -> 10:45."""
    ai = AISettings(hub_address="Hub", buffer_time_minutes=15, minutes_per_km=3, radius_km=10, waiting_hours=1.5)
    order = make_order("X", items=[{"inventory_id": "tent-10x10", "quantity": 3}], dismantle_required=False)

    proposal = schedule(order, ai=ai, distance_km=20)

    setup = proposal.setup
    assert proposal.dismantle is None
    assert setup.departure_time == "08:00"
    assert setup.arrival_time == "09:00"
    assert setup.travel_mins == 60
    assert setup.end_time == "10:45"
    assert setup.hub_arrival_time == "11:45"
    assert setup.team == "Team A"
    assert proposal.overtime_decision.required is False
    assert proposal.no_overlap is True


def test_scenario_long_job_recommends_new_team():
    ai = AISettings(hub_address="Hub", buffer_time_minutes=15, minutes_per_km=3, radius_km=10, waiting_hours=1.5)
    order = make_order("X", items=[{"inventory_id": "stage", "quantity": 1, "setup_mins_per_unit": 480}], dismantle_required=False)

    proposal = schedule(order, ai=ai, distance_km=20)

    assert proposal.setup.end_time == "17:15"
    assert proposal.setup.overtime is True
    assert proposal.overtime_decision.required is True
    assert proposal.overtime_decision.recommendation == DEPLOY_NEW_TEAM


def test_slot_sets_arrival_and_dismantle_keeps_team():
    order = make_order("SO-1", setup_slot="10:00am - 12:00pm", dismantle_slot="2:00pm - 4:00pm")
    proposal = schedule(order)

    assert proposal.setup.arrival_time == "10:00"
    assert proposal.setup.departure_time == "09:30"
    assert proposal.dismantle.arrival_time == "14:00"
    assert proposal.dismantle.team == proposal.setup.team
    assert proposal.within_preferred is True


def test_busy_team_is_skipped():
    busy = make_order("SO-Y", schedule={"setup": scheduled_record(DATE, "Team A", "07:30", "08:00", "11:30", "12:00")})
    order = make_order("SO-1")

    proposal = schedule(order, [busy])

    assert proposal.setup.team == "Team B"
    assert proposal.setup.conflict_with is None
    assert proposal.workload_counts[DATE]["Team A"] == 1


def test_preferred_team_used_when_free_and_overload_warning():
    busy = [
        make_order(f"SO-{i}", schedule={"setup": scheduled_record(DATE, "Team A", f"{12 + i}:00", f"{12 + i}:10", f"{12 + i}:40", f"{12 + i}:50")})
        for i in range(4)
    ]
    proposal = schedule(make_order("SO-NEW"), busy, preferred_setup_team="Team A")

    assert proposal.setup.team == "Team A"
    assert proposal.setup.team_job_count == 4
    assert proposal.setup.team_overloaded is True
    assert any("workload" in line for line in proposal.setup.reasoning)


def test_excluded_teams_not_proposed():
    proposal = schedule(make_order("SO-1"), excluded_teams=["Team A", "Team B"])
    assert proposal.setup.team == "Team C"


def test_missing_distance_uses_zero_with_warning():
    proposal = schedule(make_order("SO-1"), distance_km=None)
    assert proposal.distance_km == 0
    assert proposal.setup.travel_mins == 0
    assert any("Distance unavailable" in line for line in proposal.setup.reasoning)


def test_long_travel_warning():
    proposal = schedule(make_order("SO-1"), distance_km=35)
    assert proposal.long_travel_warning is True


def test_same_day_order_cannot_leave_before_it_was_placed():
    order = make_order("SO-1", created_at=f"{DATE}T11:20:00+08:00")
    proposal = schedule(order)
    assert proposal.setup.departure_time == "11:20"
    assert proposal.setup.arrival_time == "11:50"


def test_no_phase_to_schedule_raises():
    order = make_order("AH-0001", order_source="ad-hoc")
    order["ad_hoc_options"] = {"requires_setup": False, "requires_dismantle": False}
    with pytest.raises(InvalidOrderError):
        schedule(order)


def test_missing_date_raises():
    order = make_order("SO-1", setup_date=None, dismantle_required=False)
    with pytest.raises(InvalidOrderError):
        schedule(order)


def test_tail_cojoin_applied_and_team_locked():
    """Y's dismantle ends 14:00 at a site 8km from Z; Z's setup chains onto it."""
    y = make_order(
        "Y", address="Site Y", setup_date="2026-03-13",
        schedule={"dismantle": scheduled_record(DATE, "Team C", "12:00", "12:30", "14:00", "14:30")},
    )
    z = make_order("Z", address="Site Z", setup_slot="2:30pm - 4:30pm", dismantle_required=False)
    lookup = fixed_distance_lookup({("Site Y", "Site Z"): 8})

    proposal = schedule(z, [y], distance_lookup=lookup)

    setup = proposal.setup
    assert setup.cojoin.applied is True
    assert setup.cojoin.type == "tail"
    assert setup.cojoin.linked_order_number == "Y"
    assert setup.team == "Team C"
    assert setup.departure_address == "Site Y"
    assert setup.departure_time == "14:06"
    assert setup.arrival_time == "14:30"
    assert setup.end_time == "16:00"
    assert setup.hub_arrival_time == "16:30"
    assert proposal.overtime_decision.required is False


def test_head_cojoin_keeps_team_on_site():
    y = make_order("Y", address="Site Y", schedule={"setup": scheduled_record(DATE, "Team B", "11:00", "11:30", "12:30", "13:00")})
    z = make_order("Z", address="Site Z", setup_slot="9:00am - 11:00am", dismantle_required=False)

    proposal = schedule(z, [y], distance_lookup=fixed_distance_lookup({("Site Z", "Site Y"): 5}))

    setup = proposal.setup
    assert setup.cojoin.type == "head"
    assert setup.team == "Team B"
    assert setup.return_policy == REMAIN_ON_SITE
    assert setup.next_task_order_number == "Y"
    assert setup.hub_arrival_time == setup.end_time == "10:30"


def test_cojoin_disabled():
    y = make_order(
        "Y", address="Site Y", setup_date="2026-03-13",
        schedule={"dismantle": scheduled_record(DATE, "Team C", "12:00", "12:30", "14:00", "14:30")},
    )
    z = make_order("Z", address="Site Z", setup_slot="2:30pm - 4:30pm", dismantle_required=False)

    proposal = schedule(z, [y], allow_cojoin=False, distance_lookup=fixed_distance_lookup({("Site Y", "Site Z"): 8}))

    assert proposal.setup.cojoin.applied is False
    assert proposal.setup.departure_address == "Hub"
    assert proposal.setup.team == "Team A"


def test_customer_window_modes():
    assert check_customer_window("10:30", "10:00am - 12:00pm", 1.5)[0] is True
    within, deviation, _ = check_customer_window("09:00", "10:00am - 12:00pm", 1.5)
    assert (within, deviation) == (True, -60)
    assert check_customer_window("09:00", "10:00am - 12:00pm", 1.5, "strict")[0] is False
    assert check_customer_window("14:00", "10:00am - 12:00pm", 1.5)[0] is False
    assert check_customer_window("14:00", "", 1.5)[0] is True


def test_pick_team_all_busy_names_conflict():
    orders = [
        make_order(f"SO-{t[-1]}", schedule={"setup": scheduled_record(DATE, t, "08:00", "08:30", "11:30", "12:00")})
        for t in ["Team A", "Team B", "Team C", "Team D", "Team E"]
    ]
    choice = pick_team(
        DATE, to_datetime(DATE, "09:00"), to_datetime(DATE, "10:00"), "setup", "SO-NEW", orders,
        {t: 1 for t in ["Team A", "Team B", "Team C", "Team D", "Team E"]},
    )
    assert choice.conflict is not None
    assert choice.conflict.order_number == f"SO-{choice.team[-1]}"


def test_capacity_overflow_reported_when_all_busy():
    orders = [
        make_order(f"SO-{t[-1]}", schedule={"setup": scheduled_record(DATE, t, "07:00", "07:30", "11:30", "12:00")})
        for t in ["Team A", "Team B", "Team C", "Team D", "Team E"]
    ]
    proposal = schedule(make_order("SO-NEW", dismantle_required=False), orders)
    assert proposal.capacity_overflow.is_overflow is True
    assert proposal.no_overlap is False


def test_deploy_new_team_excludes_proposed_team():
    order = make_order("X", items=[{"inventory_id": "stage", "quantity": 1, "setup_mins_per_unit": 480}], dismantle_required=False)
    original = schedule(order, distance_km=20)

    alternative, comparison = asyncio.run(deploy_new_team(order, [], AI, AppSettings(), 20, original))

    assert alternative.setup.team != original.setup.team
    assert comparison["original"]["setup"]["team"] == original.setup.team
    assert comparison["stillRequiresOT"] is True


def test_proposal_round_trips_through_json_contract():
    proposal = schedule(make_order("SO-1", setup_slot="12:30pm - 2:00pm"))
    data = proposal.to_dict()

    assert data["setupTeam"] == "Team A"
    assert data["setupTravelTimeHours"] == 0
    assert data["setupTravelTimeMins"] == 30
    assert data["noOverlap"] is True

    rebuilt = ScheduleProposal.from_dict(data)
    assert rebuilt.to_dict() == data
