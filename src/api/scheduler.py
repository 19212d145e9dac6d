# scheduler.py
#
# AI scheduling engine (one order at a time, advisory only):
# - travel time from the hub distance and minutes-per-km
# - departure / arrival / end / back-at-hub times per phase
# - co-join with tasks other orders already have that day
# - team choice: co-join lock -> preferred team if free -> least loaded free team
# - overtime decision, customer window, lunch and workload warnings
# - plain-language reasoning lines for the operator
#
# Nothing is written here. The proposal goes back to the operator, who can
# regenerate it or apply it through src/api/commit.py.

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from config.settings import LONG_TRAVEL_KM, OVERLOADED_TEAM_TASKS
from src.api.cojoin import (
    AUTO_AVOID_OT,
    DistanceLookup,
    choose_cojoin,
    find_head_cojoin_candidate,
    find_tail_cojoin_candidate,
    with_linked_updates,
)
from src.api.errors import InvalidOrderError
from src.api.models import (
    DISMANTLE,
    FLEXIBLE,
    REMAIN_ON_SITE,
    RETURN_TO_HUB,
    SETUP,
    STRICT,
    AISettings,
    AppSettings,
    CapacityOverflow,
    CoJoinInfo,
    PhasePlan,
    ScheduleProposal,
)
from src.api.order_flow import (
    customer_address,
    is_phase_required,
    phase_date,
    time_slot,
    time_window_mode as phase_window_mode,
)
from src.api.overtime import (
    check_capacity_overflow,
    compare_with_alternative,
    evaluate_overtime,
    get_lunch_suggestion,
)
from src.api.time_utils import (
    minutes_of,
    minutes_to_time,
    parse_time_slot_end,
    parse_time_slot_start,
    time_to_minutes,
    to_datetime,
    travel_minutes,
)
from src.api.workload import TEAMS, TaskInterval, find_conflict, get_team_job_counts
from src.timezone_utils import parse_iso_local

logger = logging.getLogger(__name__)

# arrival used when a customer slot is present but can't be parsed
UNPARSED_SLOT_ARRIVAL = {SETUP: 10 * 60, DISMANTLE: 18 * 60}

# legacy orders without item ids: tent quantities in pricing
LEGACY_TENTS = {
    "tent10x10": ("tent-10x10", "tent10x10_minutes"),
    "tent20x20": ("tent-20x20", "tent20x20_minutes"),
    "tent20x30": ("tent-20x30", "tent20x30_minutes"),
}


# ---------------------------------------------------------------
# Work duration
# ---------------------------------------------------------------
def _qty(value) -> float:
    try:
        n = float(value)
    except (TypeError, ValueError):
        return 0.0
    return n if n > 0 and n != float("inf") else 0.0


def _per_unit_minutes(item: dict, phase: str, task_times: Dict[str, dict]) -> float:
    times = task_times.get(item.get("inventory_id") or "")
    if times:
        return max(0, times.get(f"{phase}_mins", 0) or 0)

    # legacy per-item fields; dismantle falls back to the setup figure
    legacy_setup = item.get("setup_mins_per_unit")
    legacy_dismantle = item.get("dismantle_mins_per_unit")
    if phase == DISMANTLE and isinstance(legacy_dismantle, (int, float)):
        return max(0, legacy_dismantle)
    if isinstance(legacy_setup, (int, float)):
        return max(0, legacy_setup)
    return 0


def calculate_work_minutes(order: dict, phase: str, app_settings: AppSettings) -> int:
    """
    On-site work minutes for a phase: sum of quantity x per-unit minutes over
    the order's items. Orders without usable items fall back to the tent
    quantities in their pricing.
    """
    task_times = app_settings.inventory_task_times_by_id
    total = 0.0
    for item in order.get("items") or []:
        qty = _qty(item.get("quantity"))
        if qty:
            total += qty * _per_unit_minutes(item, phase, task_times)

    if total <= 0:
        pricing = order.get("pricing") or {}
        for key, (inv_id, setting_name) in LEGACY_TENTS.items():
            qty = _qty((pricing.get(key) or {}).get("quantity"))
            if not qty:
                continue
            per_unit = (task_times.get(inv_id) or {}).get(f"{phase}_mins") or getattr(app_settings, setting_name, 0)
            total += qty * max(0, per_unit or 0)

    return int(round(total))


# ---------------------------------------------------------------
# Customer window
# ---------------------------------------------------------------
def check_customer_window(arrival_time: str, slot: str, waiting_hours: float, mode: str = FLEXIBLE) -> Tuple[bool, int, str]:
    """
    Is the arrival acceptable for the customer's slot?
    strict: must be inside the slot. flexible: up to waiting_hours either side.

    Returns (within, deviation_mins, reason); negative deviation means early.
    """
    if not slot:
        return True, 0, "No preferred time (NONE)"
    arrival = time_to_minutes(arrival_time)
    start = parse_time_slot_start(slot)
    end = parse_time_slot_end(slot)
    if arrival is None or start is None or end is None:
        return True, 0, "Could not parse times"

    if start <= arrival <= end:
        return True, 0, "Within customer's preferred time slot"

    flex = 0 if mode == STRICT else int(waiting_hours * 60)
    if arrival < start:
        deviation = start - arrival
        if deviation <= flex:
            return True, -deviation, f"{deviation} mins earlier than slot start (within {waiting_hours}h flexibility)"
    else:
        deviation = arrival - end
        if deviation <= flex:
            return True, deviation, f"{deviation} mins later than slot end (within {waiting_hours}h flexibility)"

    if mode == STRICT:
        return False, deviation, f"Outside strict time window by {deviation} mins"
    return False, deviation, f"Outside acceptable range ({deviation} mins beyond {waiting_hours}h flexibility)"


# ---------------------------------------------------------------
# Team choice
# ---------------------------------------------------------------
@dataclass
class TeamChoice:
    team: str
    job_count: int
    conflict: Optional[TaskInterval]
    reason: str


def pick_team(
    date: str,
    start: datetime,
    end: datetime,
    phase: str,
    order_number: str,
    orders: List[dict],
    counts: Dict[str, int],
    preferred_team: Optional[str] = None,
    excluded_teams: Iterable[str] = (),
) -> TeamChoice:
    """
    Preferred team if it is free, else the least loaded free team. When
    every team is busy, still return one (preferred or least loaded) with
    the clashing task so the operator sees who it is.
    """
    excluded = set(excluded_teams)
    ranked = sorted((t for t in TEAMS if t not in excluded), key=lambda t: counts.get(t, 0))

    if preferred_team and preferred_team not in excluded:
        if find_conflict(start, end, preferred_team, date, order_number, orders, phase) is None:
            return TeamChoice(
                preferred_team, counts.get(preferred_team, 0), None,
                f"User preferred {preferred_team} ({counts.get(preferred_team, 0)} tasks today)",
            )

    for team in ranked:
        if find_conflict(start, end, team, date, order_number, orders, phase) is None:
            return TeamChoice(team, counts.get(team, 0), None, f"{team} selected (fewest tasks: {counts.get(team, 0)})")

    fallback = preferred_team if preferred_team and preferred_team not in excluded else (ranked[0] if ranked else TEAMS[0])
    conflict = find_conflict(start, end, fallback, date, order_number, orders, phase)
    clash = conflict.order_number if conflict else None
    return TeamChoice(
        fallback, counts.get(fallback, 0), conflict,
        f"All teams busy - {fallback} assigned with conflict ({clash})",
    )


def _alternative_team_free(date, start, end, phase, order_number, orders, chosen, excluded) -> bool:
    for team in TEAMS:
        if team == chosen or team in excluded:
            continue
        if find_conflict(start, end, team, date, order_number, orders, phase) is None:
            return True
    return False


# ---------------------------------------------------------------
# Engine
# ---------------------------------------------------------------
def _at(date: str, mins: int) -> datetime:
    return to_datetime(date, "00:00") + timedelta(minutes=mins)


def _clean_distance(distance_km) -> Optional[float]:
    try:
        km = float(distance_km)
    except (TypeError, ValueError):
        return None
    if km != km or km < 0 or km == float("inf"):
        return None
    return km


@dataclass
class _Leg:
    departure_mins: int
    arrival_mins: int


async def run_ai_schedule(
    order: dict,
    all_orders: Iterable[dict],
    ai_settings: AISettings,
    app_settings: AppSettings,
    distance_km,
    allow_cojoin: bool = True,
    excluded_teams: Iterable[str] = (),
    preferred_setup_team: Optional[str] = None,
    preferred_dismantle_team: Optional[str] = None,
    time_window_mode: str = FLEXIBLE,
    cojoin_strategy: str = AUTO_AVOID_OT,
    distance_lookup: Optional[DistanceLookup] = None,
) -> ScheduleProposal:
    """
    Propose setup and dismantle schedules for one order.

    Args:
        order: the order being scheduled
        all_orders: snapshot of every order (the order itself may be in it)
        ai_settings / app_settings: configuration, passed in explicitly
        distance_km: hub -> site distance from the caller; None/invalid counts as 0
        allow_cojoin: False to never chain onto other orders
        excluded_teams: teams that must not be proposed
        preferred_setup_team / preferred_dismantle_team: operator's choice, used when free
        time_window_mode: "strict" forces every customer window to be exact
        cojoin_strategy: "auto-avoid-ot", "tail-first" or "head-first"
        distance_lookup: async site -> site distance for co-join checks;
                         without it co-join is not proposed

    Returns:
        ScheduleProposal (nothing is persisted)

    Raises:
        InvalidOrderError: the order has no phase to schedule or no date for one
    """
    number = order.get("order_number") or ""
    orders = list(all_orders)
    excluded = [t for t in excluded_teams if t in TEAMS]
    destination = customer_address(order)

    phases = [p for p in (SETUP, DISMANTLE) if is_phase_required(order, p)]
    if not phases:
        raise InvalidOrderError(f"Order {number} has no setup or dismantle to schedule")

    km = _clean_distance(distance_km)
    distance_note = None
    if km is None:
        km = 0.0
        distance_note = "Distance unavailable: using 0 km, enter the distance manually"

    travel = travel_minutes(km, ai_settings.minutes_per_km)
    buffer_mins = int(round(ai_settings.buffer_time_minutes))
    work_start = time_to_minutes(app_settings.work_start_time)
    work_end = time_to_minutes(app_settings.work_end_time)

    slots = {p: time_slot(order, p) for p in phases}
    no_preferred_times = not any(slots.values())
    preferred_teams = {SETUP: preferred_setup_team, DISMANTLE: preferred_dismantle_team}

    placed = parse_iso_local(order.get("created_at"))

    plans: Dict[str, PhasePlan] = {}
    base_ends: Dict[str, Optional[int]] = {SETUP: None, DISMANTLE: None}
    end_mins_by_phase: Dict[str, int] = {}
    alternative_free: Dict[str, bool] = {SETUP: False, DISMANTLE: False}
    workload_counts: Dict[str, Dict[str, int]] = {}
    capacity = CapacityOverflow()

    for phase in phases:
        reasoning: List[str] = []
        date = phase_date(order, phase)
        if not date or to_datetime(date, "00:00") is None:
            raise InvalidOrderError(f"Order {number} has no valid {phase} date")

        slot = slots[phase]
        mode = STRICT if STRICT in (time_window_mode, phase_window_mode(order, phase)) else FLEXIBLE
        work = calculate_work_minutes(order, phase, app_settings)
        duration = work + buffer_mins

        # same-day orders can't leave the hub before the order was placed
        min_departure = work_start
        same_day = placed is not None and phase == SETUP and placed.date().isoformat() == date
        if same_day and minutes_of(placed) > work_start:
            min_departure = minutes_of(placed)
            reasoning.append(
                f"Sales order time: {placed:%Y-%m-%d %H:%M} (same-day). "
                f"Earliest departure is {minutes_to_time(min_departure)}."
            )

        def journey(preferred_arrival: int) -> _Leg:
            ideal = preferred_arrival - travel
            departure = max(ideal, min_departure)
            if departure != ideal:
                label = (
                    f"Sales order time: cannot depart before {minutes_to_time(min_departure)}"
                    if min_departure > work_start
                    else f"Work start: cannot depart before {app_settings.work_start_time}"
                )
                reasoning.append(
                    f"{label}; {phase} departs {minutes_to_time(departure)} -> ETA "
                    f"{minutes_to_time(departure + travel)} (preferred slot start {minutes_to_time(preferred_arrival)})"
                )
            return _Leg(departure, departure + travel)

        preferred_arrival = parse_time_slot_start(slot)
        if preferred_arrival is None:
            preferred_arrival = UNPARSED_SLOT_ARRIVAL[phase] if slot else work_start
        leg = journey(preferred_arrival)

        reasoning.append(f"Distance hub->site: {km:g} km")
        reasoning.append(f"Travel model: {ai_settings.minutes_per_km:g} mins/km -> {travel} mins")
        if distance_note:
            reasoning.append(f"Warning: {distance_note}")
        if no_preferred_times:
            reasoning.append(
                "Preferred time: NONE (no time window). Priority: avoid OT by deploying any free team first; "
                "co-join is secondary."
            )

        # --- co-join ---
        cojoin = CoJoinInfo.none("Co-join disabled by user")
        if allow_cojoin:
            if not destination:
                cojoin = CoJoinInfo.none("No delivery address; co-join not checked")
            else:
                arrival_str = minutes_to_time(leg.arrival_mins)
                tail = await find_tail_cojoin_candidate(
                    date, arrival_str, destination, phase, number, orders, ai_settings, distance_lookup,
                    customer_slot=slot,
                    min_arrival_mins=(min_departure + travel) if same_day else None,
                    mode=mode,
                    excluded_teams=excluded,
                )
                head = await find_head_cojoin_candidate(
                    date, arrival_str, duration, destination, phase, number, orders, ai_settings, distance_lookup,
                    customer_slot=slot,
                    min_arrival_mins=min_departure + travel,
                    mode=mode,
                    excluded_teams=excluded,
                    lead_in_mins=travel,
                )
                cojoin = choose_cojoin(
                    leg.arrival_mins, tail, head, work, buffer_mins, work_end, no_preferred_times,
                    strategy=cojoin_strategy,
                )
                if not cojoin.applied:
                    # surface the most informative rejection
                    cojoin = CoJoinInfo.none(f"Tail: {tail.reason} | Head: {head.reason}")

        base_arrival = leg.arrival_mins
        departure_address = ai_settings.hub_address
        leg_travel, leg_km = travel, km
        arrival = leg.arrival_mins
        departure = leg.departure_mins
        return_policy, next_task = RETURN_TO_HUB, None

        if cojoin.applied:
            adjusted = time_to_minutes(cojoin.adjusted_arrival_time) if cojoin.adjusted_arrival_time else None
            if cojoin.type == "tail":
                arrival = adjusted if adjusted is not None else leg.arrival_mins
                departure = time_to_minutes(cojoin.adjusted_departure_time)
                departure_address = cojoin.linked_order_site or ""
                leg_travel, leg_km = cojoin.travel_mins, cojoin.distance_km
            else:
                if adjusted is not None and adjusted != leg.arrival_mins:
                    shifted = journey(adjusted)
                    departure, arrival = shifted.departure_mins, shifted.arrival_mins
                return_policy, next_task = REMAIN_ON_SITE, cojoin.linked_order_number
            if arrival != base_arrival:
                reasoning.append(
                    f"Co-join priority: arrival shifted to {minutes_to_time(arrival)} (within customer flexibility)"
                )

        end = arrival + duration
        back_at_base = end + travel if return_policy == RETURN_TO_HUB else end

        # the co-join team must also be free for the rest of our interval
        if cojoin.applied:
            snapshot = with_linked_updates(orders, [cojoin.linked_order_update])
            busy = find_conflict(_at(date, departure), _at(date, back_at_base), cojoin.team, date, number, snapshot, phase)
            if busy:
                reasoning.append(
                    f"Co-join with {cojoin.linked_order_number} dropped: {cojoin.team} busy with {busy.order_number}"
                )
                cojoin = CoJoinInfo.none(f"{cojoin.team} busy with {busy.order_number} after the chained task")
                departure_address = ai_settings.hub_address
                leg_travel, leg_km = travel, km
                departure, arrival = leg.departure_mins, leg.arrival_mins
                return_policy, next_task = RETURN_TO_HUB, None
                end = arrival + duration
                back_at_base = end + travel

        reasoning.append(f"Co-join check: {cojoin.reason}")
        if cojoin.applied and arrival > base_arrival:
            base_ends[phase] = base_arrival + duration

        # --- customer window ---
        within, _, window_reason = check_customer_window(
            minutes_to_time(arrival), slot, ai_settings.waiting_hours, mode,
        )
        reasoning.append(f"Customer time: {window_reason}")

        # --- team ---
        start_dt, end_dt = _at(date, departure), _at(date, back_at_base)
        counts = get_team_job_counts(date, orders)
        workload_counts[date] = counts

        # our own setup doesn't show up in the snapshot; keep its team out if the times overlap
        phase_excluded = list(excluded)
        setup_plan = plans.get(SETUP)
        if phase == DISMANTLE and setup_plan and setup_plan.date == date:
            setup_start = _at(date, time_to_minutes(setup_plan.departure_time))
            setup_end = _at(date, time_to_minutes(setup_plan.hub_arrival_time))
            if setup_start < end_dt and start_dt < setup_end:
                phase_excluded.append(setup_plan.team)

        if cojoin.applied:
            choice = TeamChoice(
                cojoin.team, counts.get(cojoin.team, 0), None,
                f"Team locked by co-join with {cojoin.linked_order_number}",
            )
        else:
            choice = None
            if phase == DISMANTLE and setup_plan and not preferred_teams[DISMANTLE] and setup_plan.team not in phase_excluded:
                same = find_conflict(start_dt, end_dt, setup_plan.team, date, number, orders, phase)
                if same is None:
                    choice = TeamChoice(
                        setup_plan.team, counts.get(setup_plan.team, 0), None,
                        f"Same team ({setup_plan.team}) available for both setup and dismantle",
                    )
                else:
                    reasoning.append(
                        f"Team consistency: {setup_plan.team} has conflict at dismantle time ({same.order_number})"
                    )
            if choice is None:
                choice = pick_team(
                    date, start_dt, end_dt, phase, number, orders, counts,
                    preferred_team=preferred_teams[phase], excluded_teams=phase_excluded,
                )

        reasoning.append(f"Team selection: {choice.reason}")
        if choice.conflict:
            reasoning.append(
                f"Warning: overlap conflict with {choice.conflict.order_number} ({choice.conflict.phase})"
            )

        alternative_free[phase] = _alternative_team_free(
            date, start_dt, end_dt, phase, number, orders, choice.team, phase_excluded,
        )
        if not capacity.is_overflow and not cojoin.applied:
            capacity = check_capacity_overflow(date, start_dt, end_dt, number, orders, app_settings, phase)
            if capacity.is_overflow:
                reasoning.append(f"Warning: all teams busy; suggested OT team {capacity.suggested_ot_team}")

        # --- overtime / lunch / warnings ---
        overtime = work_end is not None and end > work_end
        end_mins_by_phase[phase] = end
        if overtime:
            reasoning.append(
                f"Work end: task ends after {app_settings.work_end_time} (treat as last task -> return to hub)"
            )
        else:
            reasoning.append(f"Work end: within {app_settings.work_end_time}")

        arrival_time, end_time = minutes_to_time(arrival), minutes_to_time(end)
        lunch = get_lunch_suggestion(arrival_time, end_time, app_settings.lunch_start_time, app_settings.lunch_end_time)
        reasoning.append(f"Lunch: {lunch.reason}" if lunch else "Lunch: no clash with lunch window")

        overloaded = choice.job_count >= OVERLOADED_TEAM_TASKS
        if overloaded:
            reasoning.append(
                f"Warning: workload - {choice.team} has {choice.job_count} tasks today "
                f"(>= {OVERLOADED_TEAM_TASKS})"
            )
        if km > LONG_TRAVEL_KM:
            reasoning.append(f"Warning: long travel - {km:g}km exceeds {LONG_TRAVEL_KM}km, consider reassignment")

        plans[phase] = PhasePlan(
            phase=phase,
            date=date,
            team=choice.team,
            departure_address=departure_address,
            departure_time=minutes_to_time(departure),
            arrival_time=arrival_time,
            travel_mins=leg_travel,
            distance_km=leg_km,
            duration_mins=work,
            buffer_mins=buffer_mins,
            end_time=end_time,
            hub_arrival_time=minutes_to_time(back_at_base),
            destination=destination,
            return_policy=return_policy,
            next_task_order_number=next_task,
            overtime=overtime,
            lunch_suggestion=lunch,
            cojoin=cojoin,
            conflict_with=choice.conflict.order_number if choice.conflict else None,
            team_job_count=choice.job_count,
            team_overloaded=overloaded,
            within_preferred=within,
            reasoning=reasoning,
        )

        # later phases see this phase's linked-order change
        if cojoin.applied:
            orders = with_linked_updates(orders, [cojoin.linked_order_update])

    decision = evaluate_overtime(
        end_mins_by_phase.get(SETUP),
        end_mins_by_phase.get(DISMANTLE),
        app_settings,
        setup_base_end_mins=base_ends[SETUP],
        dismantle_base_end_mins=base_ends[DISMANTLE],
        setup_alternative_free=alternative_free[SETUP],
        dismantle_alternative_free=alternative_free[DISMANTLE],
    )

    proposal = ScheduleProposal(
        order_number=number,
        setup=plans.get(SETUP),
        dismantle=plans.get(DISMANTLE),
        distance_km=km,
        hub_address=ai_settings.hub_address,
        overtime_decision=decision,
        capacity_overflow=capacity,
        workload_counts=workload_counts,
        long_travel_warning=km > LONG_TRAVEL_KM,
        work_end_time=app_settings.work_end_time,
        lunch_start_time=app_settings.lunch_start_time,
        lunch_end_time=app_settings.lunch_end_time,
    )
    logger.info(
        f"AI schedule for {number}: "
        + ", ".join(f"{p.phase} {p.team} {p.departure_time}-{p.hub_arrival_time}" for p in proposal.phases)
        + f" (noOverlap={proposal.no_overlap}, OT={decision.required})"
    )
    return proposal


async def deploy_new_team(
    order: dict,
    all_orders: Iterable[dict],
    ai_settings: AISettings,
    app_settings: AppSettings,
    distance_km,
    proposal: ScheduleProposal,
    excluded_teams: Iterable[str] = (),
    time_window_mode: str = FLEXIBLE,
    distance_lookup: Optional[DistanceLookup] = None,
) -> Tuple[ScheduleProposal, dict]:
    """
    "Deploy another team": rerun with co-join off and the proposal's teams
    excluded, and return (alternative, side-by-side comparison).
    """
    excluded = set(excluded_teams) | {p.team for p in proposal.phases if p.team}
    alternative = await run_ai_schedule(
        order,
        all_orders,
        ai_settings,
        app_settings,
        distance_km,
        allow_cojoin=False,
        excluded_teams=sorted(excluded),
        time_window_mode=time_window_mode,
        distance_lookup=distance_lookup,
    )
    return alternative, compare_with_alternative(proposal, alternative)
