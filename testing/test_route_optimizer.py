# testing/test_route_optimizer.py
"""
Tests for the daily route optimizer.

Team A's day (hub "Hub"), scheduled C -> A -> B:
    Hub-A 2km, Hub-B 4km, Hub-C 10km, A-B 2km, B-C 6km, A-C 8km (3 min/km)
Nearest neighbor from the hub gives A -> B -> C: 20km instead of 24km.
"""

import asyncio
import os

import pytest

os.environ.setdefault("DB_PATH", "test_rental_scheduler.db")

from src import db
from src.api.errors import NoTasksForRouteError
from src.api.models import AISettings, REMAIN_ON_SITE, RETURN_TO_HUB
from src.api.route_optimizer import (
    KeepOrderStrategy,
    NearestNeighborStrategy,
    apply_optimized_route,
    get_route_strategy,
    optimize_daily_route,
)
from testing.mock_data import fixed_distance_lookup, make_order, scheduled_record

DATE = "2026-03-14"
AI = AISettings(hub_address="Hub", buffer_time_minutes=30, minutes_per_km=3, radius_km=10, waiting_hours=1.5)

DISTANCES = {
    ("Hub", "Site A"): 2,
    ("Hub", "Site B"): 4,
    ("Hub", "Site C"): 10,
    ("Site A", "Site B"): 2,
    ("Site B", "Site C"): 6,
    ("Site A", "Site C"): 8,
}


@pytest.fixture(autouse=True)
def clean_database():
    """Clean database before each test to ensure isolation."""
    db.init_db()
    db.clear_orders()
    yield
    db.clear_orders()


def _day(c_slot="NONE", c_mode="flexible", c_next=None):
    c_record = scheduled_record(
        DATE, "Team A", "08:00", "08:30", "09:30", None if c_next else "10:00",
        policy=REMAIN_ON_SITE if c_next else RETURN_TO_HUB, next_task=c_next,
        travel_mins=30, distance_km=10, departure_address="Hub",
    )
    return [
        make_order("C", address="Site C", setup_slot=c_slot, setup_mode=c_mode, schedule={"setup": c_record}),
        make_order("A", address="Site A", schedule={"setup": scheduled_record(
            DATE, "Team A", "10:00", "10:06", "11:00", "11:06", travel_mins=6, distance_km=2, departure_address="Hub",
        )}),
        make_order("B", address="Site B", schedule={"setup": scheduled_record(
            DATE, "Team A", "11:10", "11:22", "12:00", "12:12", travel_mins=12, distance_km=4, departure_address="Hub",
        )}),
    ]


def _optimize(orders, lookup="table", **kw):
    if lookup == "table":
        lookup = fixed_distance_lookup(DISTANCES)
    return asyncio.run(optimize_daily_route("Team A", DATE, orders, AI, lookup, **kw))


def test_nearest_neighbor_shortens_route():
    result = _optimize(_day())

    assert [s.order_number for s in result.original_route] == ["C", "A", "B"]
    assert [s.order_number for s in result.optimized_route] == ["A", "B", "C"]
    assert result.original.distance_km == 24
    assert result.optimized.distance_km == 20
    assert result.distance_saved_km == 4.0
    assert result.time_saved_mins == 12
    assert result.percent_saved == 16.7
    assert result.estimated_legs == 0
    assert result.strategy == "nearest-neighbor"

    first, second, last = result.optimized_route
    assert (first.departure_time, first.arrival_time, first.end_time) == ("08:00", "08:06", "09:00")
    assert (second.arrival_time, second.end_time) == ("09:06", "09:44")
    assert (last.arrival_time, last.end_time, last.travel_mins) == ("10:02", "11:02", 18)
    assert result.return_travel_mins == 30


def test_summary_json_shape():
    data = _optimize(_day()).to_dict()
    assert data["distanceSavedKm"] == 4.0
    assert data["percentSaved"] == 16.7
    assert [s["orderNumber"] for s in data["optimizedRoute"]] == ["A", "B", "C"]
    assert data["optimizedRoute"][0]["isRigid"] is False


def test_apply_chains_stops_and_returns_last_to_hub():
    for order in _day():
        db.save_order(order)
    result = _optimize(db.get_all_orders())

    results = apply_optimized_route(result)

    assert all(r.ok for r in results)
    a = db.get_order("A")["schedule"]["setup"]
    assert a["return_policy"] == REMAIN_ON_SITE
    assert a["next_task_order_number"] == "B"
    assert a["hub_arrival_time"] is None

    b = db.get_order("B")["schedule"]["setup"]
    assert b["departure_address"] == "Site A"
    assert b["departure_time"] == "09:00"
    assert b["next_task_order_number"] == "C"

    c = db.get_order("C")["schedule"]["setup"]
    assert c["departure_address"] == "Site B"
    assert c["return_policy"] == RETURN_TO_HUB
    assert c["return_to"] == "Hub"
    assert c["hub_arrival_time"] == "11:32"


def test_apply_reports_missing_order():
    orders = _day()
    for order in orders[1:]:
        db.save_order(order)
    result = _optimize(orders)

    results = apply_optimized_route(result)

    missing = [r for r in results if not r.ok]
    assert [r.order_number for r in missing] == ["C"]


def test_strict_window_stop_keeps_its_time():
    result = _optimize(_day(c_slot="8:30am - 10:30am", c_mode="strict"))

    assert [s.order_number for s in result.optimized_route] == ["C", "B", "A"]
    first = result.optimized_route[0]
    assert first.is_rigid is True
    assert first.arrival_time == "08:30"
    assert first.late is False


def test_cojoin_chain_moves_as_one_block():
    result = _optimize(_day(c_next="A"))

    order = [s.order_number for s in result.optimized_route]
    assert order == ["B", "C", "A"]
    assert order.index("A") == order.index("C") + 1
    assert result.optimized_route[1].cojoin_chain_id == result.optimized_route[2].cojoin_chain_id == "C"


def test_keep_order_strategy_recomputes_metrics_only():
    result = _optimize(_day(), strategy=KeepOrderStrategy())

    assert [s.order_number for s in result.optimized_route] == ["C", "A", "B"]
    assert result.strategy == "none"
    assert result.distance_saved_km == 0
    assert result.percent_saved == 0


def test_legs_estimated_without_lookup():
    result = _optimize(_day(), lookup=None)

    assert result.estimated_legs == 4
    assert any("estimated" in note for note in result.notes)


def test_no_tasks_for_team():
    with pytest.raises(NoTasksForRouteError):
        asyncio.run(optimize_daily_route("Team B", DATE, _day(), AI, None))


def test_get_route_strategy_modes():
    assert isinstance(get_route_strategy("none"), KeepOrderStrategy)
    assert isinstance(get_route_strategy("nearest-neighbor"), NearestNeighborStrategy)


# Rigid R (strict 10:00-12:00, 20km out) scheduled before flexible F (1km out, 60 min job).
# F is nearer but serving it first (09:03-10:03, then 57 min to R) would make R late.
RIGID_DISTANCES = {
    ("Hub", "Site R"): 20,
    ("Hub", "Site F"): 1,
    ("Site F", "Site R"): 19,
}


def _rigid_day():
    return [
        make_order("R", address="Site R", setup_slot="10:00am - 12:00pm", setup_mode="strict", schedule={
            "setup": scheduled_record(
                DATE, "Team A", "09:00", "10:00", "11:00", "12:00", travel_mins=60, distance_km=20, departure_address="Hub",
            ),
        }),
        make_order("F", address="Site F", schedule={
            "setup": scheduled_record(
                DATE, "Team A", "12:00", "12:03", "13:03", "13:06", travel_mins=3, distance_km=1, departure_address="Hub",
            ),
        }),
    ]


class _NearestFirst:
    name = "nearest-first"

    def reorder(self, stops, start_address, legs):
        return sorted(stops, key=lambda s: legs.get(start_address, s.address).distance_km)


def test_flexible_stop_not_served_when_it_makes_rigid_stop_late():
    result = _optimize(_rigid_day(), lookup=fixed_distance_lookup(RIGID_DISTANCES))

    assert [s.order_number for s in result.optimized_route] == ["R", "F"]
    rigid = result.optimized_route[0]
    assert rigid.arrival_time == "10:00"
    assert rigid.late is False
    assert not any("current order kept" in note for note in result.notes)


def test_reorder_with_late_rigid_stop_keeps_current_order():
    result = _optimize(_rigid_day(), lookup=fixed_distance_lookup(RIGID_DISTANCES), strategy=_NearestFirst())

    assert [s.order_number for s in result.optimized_route] == ["R", "F"]
    assert not any(s.late for s in result.optimized_route)
    assert result.distance_saved_km == 0
    assert any("fixed-time stop late" in note for note in result.notes)
