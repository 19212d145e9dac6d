# route_optimizer.py
#
# Daily route optimization for one team: reorder the day's stops to cut
# driving, then walk the new order forward to get arrival/departure times.
#
# - strict-window stops are rigid: they keep their arrival time (the team
#   waits if early) and are taken once they are due
# - co-join chains (remain-on-site -> next task) move as one block
# - legs come from the injected distance lookup; unresolved legs use the
#   stored hub distance or a flat 10 km / 30 min estimate
#
# Mode comes from ROUTE_OPTIMIZATION_MODE: "nearest-neighbor" (default) or
# "none" (keep the current order, recompute metrics only).

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Protocol, Tuple

from config.settings import ROUTE_OPTIMIZATION_MODE
from src import db
from src.api.cojoin import DistanceLookup
from src.api.commit import CommitResult
from src.api.errors import NoTasksForRouteError
from src.api.models import REMAIN_ON_SITE, RETURN_TO_HUB, STRICT, AISettings
from src.api.order_flow import schedule_key, schedule_record, time_slot, time_window_mode
from src.api.time_utils import minutes_to_time, time_to_minutes, travel_minutes
from src.api.workload import get_team_tasks_for_day

logger = logging.getLogger(__name__)

SUPPORTED_MODES = {"nearest-neighbor", "none"}

DEFAULT_DAY_START = "09:00"
DEFAULT_LEG_KM = 10.0
DEFAULT_LEG_MINS = 30


def get_route_optimization_mode() -> str:
    """Return normalized routing mode."""
    mode = (ROUTE_OPTIMIZATION_MODE or "nearest-neighbor").lower()
    return mode if mode in SUPPORTED_MODES else "nearest-neighbor"


@dataclass
class RouteStop:
    order_number: str
    phase: str
    address: str
    arrival_time: str
    departure_time: str
    end_time: str
    work_mins: int
    travel_mins: int = 0
    distance_km: float = 0.0
    is_rigid: bool = False
    is_cojoin: bool = False
    cojoin_chain_id: Optional[str] = None
    waiting_mins: int = 0
    late: bool = False
    # stored hub -> site leg, used when the lookup can't resolve one
    stored_distance_km: Optional[float] = None
    stored_travel_mins: Optional[int] = None

    @property
    def fixed_mins(self) -> Optional[int]:
        return time_to_minutes(self.arrival_time) if self.is_rigid else None

    def to_dict(self) -> dict:
        return {
            "orderNumber": self.order_number,
            "phase": self.phase,
            "address": self.address,
            "arrivalTime": self.arrival_time,
            "departureTime": self.departure_time,
            "endTime": self.end_time,
            "workMins": self.work_mins,
            "travelMins": self.travel_mins,
            "distanceKm": self.distance_km,
            "isRigid": self.is_rigid,
            "isCoJoin": self.is_cojoin,
            "coJoinChainId": self.cojoin_chain_id,
            "waitingMins": self.waiting_mins,
            "late": self.late,
        }


@dataclass
class Leg:
    distance_km: float
    travel_mins: int
    estimated: bool = False


class LegTable:
    """Site-to-site legs for one optimization run."""

    def __init__(self, legs: Dict[Tuple[str, str], Leg]):
        self._legs = legs

    def get(self, from_address: str, to_address: str) -> Leg:
        if from_address == to_address:
            return Leg(0.0, 0)
        return self._legs.get((from_address, to_address)) or Leg(DEFAULT_LEG_KM, DEFAULT_LEG_MINS, True)


class RouteStrategy(Protocol):
    name: str

    def reorder(self, stops: List[RouteStop], start_address: str, legs: LegTable) -> List[RouteStop]:
        ...


# ---------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------
@dataclass(eq=False)
class _Block:
    stops: List[RouteStop]

    @property
    def first(self) -> RouteStop:
        return self.stops[0]

    @property
    def last(self) -> RouteStop:
        return self.stops[-1]

    @property
    def fixed_mins(self) -> Optional[int]:
        # a chain with a rigid member is pinned to its first stop's time
        if any(s.is_rigid for s in self.stops):
            return time_to_minutes(self.first.arrival_time)
        return None


def _blocks(stops: List[RouteStop]) -> List[_Block]:
    blocks: List[_Block] = []
    by_chain: Dict[str, _Block] = {}
    for stop in stops:
        if stop.cojoin_chain_id:
            block = by_chain.get(stop.cojoin_chain_id)
            if block is None:
                block = by_chain[stop.cojoin_chain_id] = _Block([])
                blocks.append(block)
            block.stops.append(stop)
        else:
            blocks.append(_Block([stop]))
    return blocks


class KeepOrderStrategy:
    """ROUTE_OPTIMIZATION_MODE=none: keep the scheduled order."""

    name = "none"

    def reorder(self, stops, start_address, legs):
        return sorted(stops, key=lambda s: time_to_minutes(s.arrival_time) or 0)


class NearestNeighborStrategy:
    """
    Greedy nearest neighbor from the start address. A rigid block is taken
    as soon as it is due (its fixed arrival <= now + due_window_mins);
    otherwise the nearest flexible block that still leaves time to reach the
    next rigid block by its fixed arrival goes next.
    """

    name = "nearest-neighbor"

    def __init__(self, day_start: str = DEFAULT_DAY_START, due_window_mins: int = 30):
        self.day_start = day_start
        self.due_window_mins = due_window_mins

    def reorder(self, stops, start_address, legs):
        remaining = _blocks(sorted(stops, key=lambda s: time_to_minutes(s.arrival_time) or 0))
        now = time_to_minutes(self.day_start) or 0
        location = start_address
        ordered: List[RouteStop] = []

        while remaining:
            rigid = [b for b in remaining if b.fixed_mins is not None]
            due = [b for b in rigid if b.fixed_mins <= now + self.due_window_mins]
            flexible = [b for b in remaining if b.fixed_mins is None]
            if rigid and not due:
                upcoming = min(rigid, key=lambda b: b.fixed_mins)
                flexible = [
                    b for b in flexible
                    if self._finish(b, location, now, legs)
                    + legs.get(b.last.address, upcoming.first.address).travel_mins
                    <= upcoming.fixed_mins
                ]
            if due:
                block = min(due, key=lambda b: b.fixed_mins)
            elif flexible:
                block = min(flexible, key=lambda b: legs.get(location, b.first.address).distance_km)
            else:
                block = min(rigid, key=lambda b: b.fixed_mins)
            remaining.remove(block)

            now = self._finish(block, location, now, legs)
            location = block.last.address
            ordered.extend(block.stops)
        return ordered

    @staticmethod
    def _finish(block: _Block, location: str, now: int, legs: LegTable) -> int:
        """Minute the team leaves `block`'s last stop when heading there from `location` at `now`."""
        arrival = now + legs.get(location, block.first.address).travel_mins
        if block.fixed_mins is not None:
            arrival = max(arrival, block.fixed_mins)
        now = arrival
        previous = None
        for stop in block.stops:
            if previous is not None:
                now += legs.get(previous.address, stop.address).travel_mins
            now += stop.work_mins
            previous = stop
        return now


def get_route_strategy(mode: Optional[str] = None, day_start: str = DEFAULT_DAY_START) -> RouteStrategy:
    resolved = (mode or get_route_optimization_mode()).lower()
    if resolved == "none":
        return KeepOrderStrategy()
    return NearestNeighborStrategy(day_start=day_start)


# ---------------------------------------------------------------
# Stops and legs
# ---------------------------------------------------------------
def _stops_for_day(team: str, date: str, orders: List[dict], start_address: str) -> List[RouteStop]:
    by_number = {o.get("order_number"): o for o in orders}
    tasks = get_team_tasks_for_day(team, date, orders)
    stops = []
    for task in tasks:
        order = by_number.get(task.order_number) or {}
        record = schedule_record(order, task.phase)
        rigid = bool(time_slot(order, task.phase)) and time_window_mode(order, task.phase) == STRICT
        work = int((task.site_end - task.site_arrival).total_seconds() // 60)
        hub_leg = (record.get("departure_address") or start_address) == start_address
        stops.append(RouteStop(
            order_number=task.order_number,
            phase=task.phase,
            address=task.destination,
            arrival_time=f"{task.site_arrival:%H:%M}",
            departure_time=f"{task.start:%H:%M}",
            end_time=f"{task.site_end:%H:%M}",
            work_mins=max(0, work),
            travel_mins=int(record.get("travel_mins") or 0),
            distance_km=float(record.get("distance_km") or 0),
            is_rigid=rigid,
            is_cojoin=record.get("return_policy") == REMAIN_ON_SITE,
            stored_distance_km=record.get("distance_km") if hub_leg else None,
            stored_travel_mins=record.get("travel_mins") if hub_leg else None,
        ))

    # chain ids: follow remain-on-site -> next task within the day
    numbers = {s.order_number for s in stops}
    for stop in stops:
        if stop.cojoin_chain_id is None and stop.is_cojoin:
            stop.cojoin_chain_id = stop.order_number
        if not stop.is_cojoin:
            continue
        next_number = schedule_record(by_number.get(stop.order_number) or {}, stop.phase).get("next_task_order_number")
        if next_number in numbers:
            for other in stops:
                if other.order_number == next_number and other.cojoin_chain_id is None:
                    other.cojoin_chain_id = stop.cojoin_chain_id
    return stops


async def _build_legs(
    stops: List[RouteStop],
    start_address: str,
    distance_lookup: Optional[DistanceLookup],
    ai_settings: AISettings,
) -> LegTable:
    addresses = [start_address] + [s.address for s in stops]
    stored = {s.address: s for s in stops if s.stored_distance_km is not None}
    legs: Dict[Tuple[str, str], Leg] = {}

    for origin in addresses:
        for dest in addresses:
            if origin == dest or (origin, dest) in legs:
                continue
            estimate = await distance_lookup(origin, dest) if distance_lookup else None
            if estimate is not None:
                mins = estimate.travel_mins
                if mins is None:
                    mins = travel_minutes(estimate.distance_km, ai_settings.minutes_per_km)
                legs[(origin, dest)] = Leg(float(estimate.distance_km), int(round(mins)))
                continue

            # the stored leg is hub -> site; reuse it for either direction
            known = stored.get(dest) if origin == start_address else stored.get(origin) if dest == start_address else None
            if known is not None:
                km = float(known.stored_distance_km or 0)
                mins = known.stored_travel_mins
                if mins is None:
                    mins = travel_minutes(km, ai_settings.minutes_per_km)
                legs[(origin, dest)] = Leg(km, int(mins), True)
            else:
                legs[(origin, dest)] = Leg(DEFAULT_LEG_KM, DEFAULT_LEG_MINS, True)
    return LegTable(legs)


@dataclass
class RouteTotals:
    distance_km: float
    time_mins: int
    estimated_legs: int = 0


def _walk(stops: List[RouteStop], start_address: str, legs: LegTable, day_start: int) -> Tuple[List[RouteStop], RouteTotals]:
    """
    Timed copy of `stops` in the given order, leaving `start_address` at
    `day_start`. Rigid stops keep their arrival (waiting if early, flagged
    late if they can't be reached in time).
    """
    timed = []
    now = day_start
    location = start_address
    distance = 0.0
    total = 0
    estimated = 0
    for stop in stops:
        leg = legs.get(location, stop.address)
        reach = now + leg.travel_mins
        fixed = stop.fixed_mins
        arrival, waiting = reach, 0
        if fixed is not None and fixed > reach:
            arrival, waiting = fixed, fixed - reach
        late = fixed is not None and reach > fixed
        departure = arrival - leg.travel_mins
        end = arrival + stop.work_mins
        timed.append(replace(
            stop,
            arrival_time=minutes_to_time(arrival),
            departure_time=minutes_to_time(departure),
            end_time=minutes_to_time(end),
            travel_mins=leg.travel_mins,
            distance_km=leg.distance_km,
            waiting_mins=waiting,
            late=late,
        ))
        estimated += int(leg.estimated)
        distance += leg.distance_km
        total += leg.travel_mins + stop.work_mins
        now, location = end, stop.address

    back = legs.get(location, start_address)
    distance += back.distance_km
    total += back.travel_mins
    estimated += int(back.estimated)
    return timed, RouteTotals(round(distance, 1), total, estimated)


@dataclass
class DailyRouteOptimization:
    team: str
    date: str
    starting_address: str
    strategy: str
    original_route: List[RouteStop]
    optimized_route: List[RouteStop]
    original: RouteTotals
    optimized: RouteTotals
    return_travel_mins: int = 0
    estimated_legs: int = 0
    notes: List[str] = field(default_factory=list)

    @property
    def distance_saved_km(self) -> float:
        return round(max(0.0, self.original.distance_km - self.optimized.distance_km), 1)

    @property
    def time_saved_mins(self) -> int:
        return max(0, self.original.time_mins - self.optimized.time_mins)

    @property
    def percent_saved(self) -> float:
        if self.original.distance_km <= 0:
            return 0.0
        return round(self.distance_saved_km / self.original.distance_km * 100, 1)

    def to_dict(self) -> dict:
        return {
            "team": self.team,
            "date": self.date,
            "startingAddress": self.starting_address,
            "strategy": self.strategy,
            "originalRoute": [s.to_dict() for s in self.original_route],
            "optimizedRoute": [s.to_dict() for s in self.optimized_route],
            "originalDistanceKm": self.original.distance_km,
            "optimizedDistanceKm": self.optimized.distance_km,
            "originalTimeMins": self.original.time_mins,
            "optimizedTimeMins": self.optimized.time_mins,
            "distanceSavedKm": self.distance_saved_km,
            "timeSavedMins": self.time_saved_mins,
            "percentSaved": self.percent_saved,
            "estimatedLegs": self.estimated_legs,
            "notes": list(self.notes),
        }


async def optimize_daily_route(
    team: str,
    date: str,
    orders: List[dict],
    ai_settings: AISettings,
    distance_lookup: Optional[DistanceLookup],
    starting_address: Optional[str] = None,
    strategy: Optional[RouteStrategy] = None,
) -> DailyRouteOptimization:
    """
    Reorder `team`'s stops on `date` and compare against the current order.
    Nothing is written; see apply_optimized_route.

    Raises:
        NoTasksForRouteError: the team has nothing scheduled that day
    """
    orders = list(orders)
    start_address = (starting_address or "").strip() or ai_settings.hub_address
    stops = _stops_for_day(team, date, orders, start_address)
    if not stops:
        raise NoTasksForRouteError(team, date)

    original = sorted(stops, key=lambda s: time_to_minutes(s.arrival_time) or 0)
    first_departure = time_to_minutes(original[0].departure_time)
    day_start = first_departure if first_departure is not None else time_to_minutes(DEFAULT_DAY_START)

    strategy = strategy or get_route_strategy(day_start=minutes_to_time(day_start))
    legs = await _build_legs(stops, start_address, distance_lookup, ai_settings)

    original_timed, original_totals = _walk(original, start_address, legs, day_start)
    reordered = strategy.reorder(list(original), start_address, legs)
    optimized_timed, optimized_totals = _walk(reordered, start_address, legs, day_start)

    notes = []
    changed = [(s.order_number, s.phase) for s in reordered] != [(s.order_number, s.phase) for s in original]
    if changed and any(s.late for s in optimized_timed):
        # a fixed-time stop may never be pushed past its slot
        notes.append("Reordering would make a fixed-time stop late; current order kept")
        reordered, optimized_timed, optimized_totals = original, original_timed, original_totals
    elif changed and optimized_totals.distance_km >= original_totals.distance_km:
        notes.append("No shorter order found; current order kept")
        reordered, optimized_timed, optimized_totals = original, original_timed, original_totals
    late = [s.order_number for s in optimized_timed if s.late]
    if late:
        notes.append(f"Fixed-time stop(s) reached late: {', '.join(late)}")
    if optimized_totals.estimated_legs:
        notes.append(f"{optimized_totals.estimated_legs} leg(s) estimated without the distance service")

    result = DailyRouteOptimization(
        team=team,
        date=date,
        starting_address=start_address,
        strategy=strategy.name,
        original_route=original_timed,
        optimized_route=optimized_timed,
        original=original_totals,
        optimized=optimized_totals,
        return_travel_mins=legs.get(optimized_timed[-1].address, start_address).travel_mins,
        estimated_legs=optimized_totals.estimated_legs,
        notes=notes,
    )
    logger.info(
        f"Route for {team} on {date}: {len(stops)} stop(s), "
        f"{original_totals.distance_km}km -> {optimized_totals.distance_km}km ({result.percent_saved}% saved)"
    )
    return result


def _route_record_update(stop: RouteStop, previous: Optional[RouteStop], following: Optional[RouteStop], optimization):
    def updater(order: dict) -> dict:
        updated = dict(order)
        schedule = dict(updated.get("schedule") or {})
        key = schedule_key(stop.phase)
        record = dict(schedule.get(key) or {})
        record.update({
            "departure_address": previous.address if previous else optimization.starting_address,
            "departure_time": stop.departure_time,
            "travel_mins": stop.travel_mins,
            "distance_km": stop.distance_km,
            "arrival_time": stop.arrival_time,
            "end_time": stop.end_time,
        })
        if following is not None:
            record.update({
                "return_policy": REMAIN_ON_SITE,
                "next_task_order_number": following.order_number,
                "return_from": None,
                "return_to": None,
                "return_travel_mins": 0,
                "hub_arrival_time": None,
            })
        else:
            back = optimization.return_travel_mins
            end = time_to_minutes(stop.end_time) or 0
            record.update({
                "return_policy": RETURN_TO_HUB,
                "next_task_order_number": None,
                "return_from": stop.address,
                "return_to": optimization.starting_address,
                "return_travel_mins": back,
                "hub_arrival_time": minutes_to_time(end + back),
            })
        schedule[key] = record
        updated["schedule"] = schedule
        return updated

    return updater


def apply_optimized_route(optimization: DailyRouteOptimization) -> List[CommitResult]:
    """
    Write the optimized times and chaining back to each order. Every stop
    but the last stays on site and points at the next one; the last
    returns to the start address.
    """
    route = optimization.optimized_route
    results = []
    for i, stop in enumerate(route):
        previous = route[i - 1] if i > 0 else None
        following = route[i + 1] if i + 1 < len(route) else None
        if db.get_order(stop.order_number) is None:
            results.append(CommitResult(stop.order_number, ok=False, error=f"Order {stop.order_number} not found"))
            continue
        db.update_order_by_number(stop.order_number, _route_record_update(stop, previous, following, optimization))
        results.append(CommitResult(stop.order_number, ok=True))

    logger.info(f"Applied optimized route for {optimization.team} on {optimization.date} ({len(route)} stops)")
    return results
