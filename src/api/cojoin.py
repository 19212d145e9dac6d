# cojoin.py
#
# Co-join detection: chain a new task onto a task another order already has
# on the same day, so the team goes site -> site instead of via the hub.
#
#   tail: the other order's task runs first, the team then drives to us
#   head: our task runs first, the team then drives on to the other order
#
# Candidates must be inside radius_km and the idle time between the two
# tasks must be 0 .. waiting_hours. Nothing here writes to storage: an
# accepted chain is described as a LinkedOrderUpdate and applied later by
# src/api/commit.py.

import copy
import logging
from datetime import timedelta
from typing import Awaitable, Callable, Iterable, List, Optional

from src.api.models import (
    CoJoinInfo,
    DistanceEstimate,
    LinkedOrderUpdate,
    AISettings,
    REMAIN_ON_SITE,
    RETURN_TO_HUB,
    STRICT,
    FLEXIBLE,
)
from src.api.order_flow import schedule_key, schedule_record, time_slot, time_window_mode
from src.api.time_utils import (
    minutes_to_time,
    parse_time_slot_end,
    parse_time_slot_start,
    time_to_minutes,
    to_datetime,
    travel_minutes,
)
from src.api.workload import TaskInterval, get_tasks_for_date

logger = logging.getLogger(__name__)

DistanceLookup = Callable[[str, str], Awaitable[Optional[DistanceEstimate]]]

# busy days can have a lot of candidates; each one may cost a distance lookup
MAX_TAIL_CANDIDATES = 10

AUTO_AVOID_OT = "auto-avoid-ot"
TAIL_FIRST = "tail-first"
HEAD_FIRST = "head-first"
COJOIN_STRATEGIES = (AUTO_AVOID_OT, TAIL_FIRST, HEAD_FIRST)


def acceptable_arrival_range(slot: str, mode: str = FLEXIBLE):
    """
    (slot_start, slot_end, min_acceptable, max_acceptable) in minutes.
    Only a strict window bounds the arrival; flexible gives None bounds.
    """
    slot_start = parse_time_slot_start(slot)
    slot_end = parse_time_slot_end(slot)
    if slot_start is None or slot_end is None or mode != STRICT:
        return slot_start, slot_end, None, None
    return slot_start, slot_end, slot_start, slot_end


def _within_linked_window(task: TaskInterval, orders: List[dict], mode: str) -> bool:
    linked = next((o for o in orders if o.get("order_number") == task.order_number), None)
    if linked is None:
        return True
    slot = time_slot(linked, task.phase)
    if not slot:
        return True
    # the linked order's own strict window counts even when we are flexible
    effective = STRICT if STRICT in (mode, time_window_mode(linked, task.phase)) else FLEXIBLE
    _, _, lo, hi = acceptable_arrival_range(slot, effective)
    if lo is None or hi is None:
        return True
    arrive = _day_minutes(task, task.site_arrival)
    finish = _day_minutes(task, task.site_end)
    return lo <= arrive <= hi and lo <= finish <= hi


def _day_minutes(task: TaskInterval, dt) -> int:
    midnight = to_datetime(task.date, "00:00")
    return int((dt - midnight).total_seconds() // 60)


def _team_busy(
    team: str,
    date: str,
    start_mins: int,
    end_mins: int,
    orders: List[dict],
    skip: Iterable[str],
) -> Optional[TaskInterval]:
    midnight = to_datetime(date, "00:00")
    start = midnight + timedelta(minutes=start_mins)
    end = midnight + timedelta(minutes=end_mins)
    skip = set(skip)
    for task in get_tasks_for_date(date, orders):
        if task.team != team or task.order_number in skip:
            continue
        if task.overlaps(start, end):
            return task
    return None


async def _resolve_leg(
    distance_lookup: Optional[DistanceLookup],
    from_address: str,
    to_address: str,
    settings: AISettings,
):
    """(distance_km, travel_mins) between two sites, or None when unknown."""
    if distance_lookup is None or not from_address or not to_address:
        return None
    estimate = await distance_lookup(from_address, to_address)
    if estimate is None:
        return None
    if estimate.travel_mins is not None:
        travel = int(round(estimate.travel_mins))
    else:
        travel = travel_minutes(estimate.distance_km, settings.minutes_per_km)
    return estimate.distance_km, travel


def _linked_policy(order: Optional[dict], phase: str) -> str:
    if order is None:
        return RETURN_TO_HUB
    return schedule_record(order, phase).get("return_policy") or RETURN_TO_HUB


async def find_tail_cojoin_candidate(
    date: str,
    arrival_time: str,
    destination: str,
    phase: str,
    current_order_number: str,
    orders: List[dict],
    settings: AISettings,
    distance_lookup: Optional[DistanceLookup],
    customer_slot: str = "",
    min_arrival_mins: Optional[int] = None,
    mode: str = FLEXIBLE,
    excluded_teams: Iterable[str] = (),
) -> CoJoinInfo:
    """
    Look back for a task on `date` that finishes at a nearby site early
    enough for its team to drive over and start our task.

    Candidates are tried latest-finishing first. The chosen arrival is the
    earliest one that is reachable and acceptable; the team waits at the
    linked site for whatever slack is left.
    """
    arrival_mins = time_to_minutes(arrival_time)
    if arrival_mins is None:
        return CoJoinInfo.none(f'Invalid arrival time: "{arrival_time}"')
    if distance_lookup is None:
        return CoJoinInfo.none("Site-to-site distance unavailable; co-join not proposed")

    _, _, lo, hi = acceptable_arrival_range(customer_slot, mode)
    min_acceptable = lo if lo is not None else arrival_mins
    max_acceptable = hi if hi is not None else arrival_mins
    if min_arrival_mins is not None:
        min_acceptable = max(min_acceptable, min_arrival_mins)

    excluded = set(excluded_teams)
    tasks = get_tasks_for_date(date, orders)
    candidates = [
        t for t in tasks
        if t.order_number != current_order_number
        and t.team not in excluded
        and _day_minutes(t, t.site_end) <= max_acceptable
    ]
    if not candidates:
        if not tasks:
            return CoJoinInfo.none(f"No scheduled tasks found on {date}")
        return CoJoinInfo.none(f"Found {len(tasks)} task(s) on {date} but none end before {minutes_to_time(max_acceptable)}")

    candidates.sort(key=lambda t: t.site_end, reverse=True)

    rejections = []
    for cand in candidates[:MAX_TAIL_CANDIDATES]:
        if not _within_linked_window(cand, orders, mode):
            rejections.append(f"{cand.order_number}: outside linked order time window")
            continue

        leg = await _resolve_leg(distance_lookup, cand.destination, destination, settings)
        if leg is None:
            rejections.append(f"{cand.order_number}: distance unavailable")
            continue
        km, travel = leg
        if km > settings.radius_km:
            rejections.append(f"{cand.order_number}: dist={km:.1f}km > {settings.radius_km}km")
            continue

        cand_end = _day_minutes(cand, cand.site_end)
        earliest = cand_end + travel
        if earliest > max_acceptable:
            rejections.append(
                f"{cand.order_number}: ends too late (earliest arrive {minutes_to_time(earliest)} "
                f"> max {minutes_to_time(max_acceptable)})"
            )
            continue

        chosen = max(earliest, min_acceptable)
        depart = chosen - travel
        waiting = depart - cand_end
        if waiting < 0:
            rejections.append(f"{cand.order_number}: ends too late (wait={waiting}min)")
            continue
        if waiting > settings.max_waiting_mins:
            rejections.append(f"{cand.order_number}: wait={waiting}min > {settings.max_waiting_mins:g}min")
            continue

        busy = _team_busy(cand.team, date, cand_end, chosen, orders, (current_order_number, cand.order_number))
        if busy:
            rejections.append(f"{cand.order_number}: {cand.team} busy due to {busy.order_number}")
            continue

        linked = next((o for o in orders if o.get("order_number") == cand.order_number), None)
        chosen_time = minutes_to_time(chosen)
        logger.debug(f"Tail co-join for {current_order_number}: {cand.order_number} ({cand.team}) wait {waiting}min")
        return CoJoinInfo(
            applied=True,
            type="tail",
            linked_order_number=cand.order_number,
            linked_order_site=cand.destination,
            team=cand.team,
            distance_km=km,
            travel_mins=travel,
            waiting_mins=waiting,
            reason=(
                f"Tail co-join: link to {cand.order_number} ({cand.team}), {km:.1f}km, "
                f"wait {waiting}min, arrive {chosen_time}"
            ),
            adjusted_arrival_time=None if chosen == arrival_mins else chosen_time,
            adjusted_departure_time=minutes_to_time(depart),
            linked_order_update=LinkedOrderUpdate(
                order_number=cand.order_number,
                phase=cand.phase,
                old_value=_linked_policy(linked, cand.phase),
                new_value=REMAIN_ON_SITE,
                next_task_order_number=current_order_number,
            ),
        )

    if rejections:
        return CoJoinInfo.none(f"Checked {len(candidates)} candidate(s): " + "; ".join(rejections))
    return CoJoinInfo.none(
        f"No eligible co-join: nearest task is outside {settings.radius_km}km "
        f"or wait exceeds {settings.waiting_hours}h"
    )


async def find_head_cojoin_candidate(
    date: str,
    arrival_time: str,
    task_duration_mins: int,
    destination: str,
    phase: str,
    current_order_number: str,
    orders: List[dict],
    settings: AISettings,
    distance_lookup: Optional[DistanceLookup],
    customer_slot: str = "",
    min_arrival_mins: Optional[int] = None,
    mode: str = FLEXIBLE,
    excluded_teams: Iterable[str] = (),
    lead_in_mins: int = 0,
) -> CoJoinInfo:
    """
    Look forward for a task on `date` starting at a nearby site late enough
    that our team can finish here (arrival + task_duration_mins) and drive
    over. `lead_in_mins` is our own hub -> site travel; the linked team has
    to be free for that leg too.
    """
    base_mins = time_to_minutes(arrival_time)
    if base_mins is None:
        return CoJoinInfo.none(f'Invalid arrival time: "{arrival_time}"')
    if distance_lookup is None:
        return CoJoinInfo.none("Site-to-site distance unavailable; co-join not proposed")

    slot_start, _, lo, hi = acceptable_arrival_range(customer_slot, mode)
    slot_start = slot_start if slot_start is not None else base_mins
    min_acceptable = lo if lo is not None else base_mins
    max_acceptable = hi if hi is not None else base_mins
    if min_arrival_mins is not None:
        min_acceptable = max(min_acceptable, min_arrival_mins)

    # a 0-minute wait ("butt joint") is allowed
    earliest_end = min_acceptable + task_duration_mins
    excluded = set(excluded_teams)
    candidates = [
        t for t in get_tasks_for_date(date, orders)
        if t.order_number != current_order_number
        and t.team not in excluded
        and _day_minutes(t, t.site_arrival) >= earliest_end
    ]
    if not candidates:
        return CoJoinInfo.none("No later tasks found on this date")

    candidates.sort(key=lambda t: t.site_arrival)
    max_wait = settings.max_waiting_mins

    rejections = []
    for cand in candidates:
        if not _within_linked_window(cand, orders, mode):
            rejections.append(f"{cand.order_number}: outside linked order time window")
            continue

        leg = await _resolve_leg(distance_lookup, destination, cand.destination, settings)
        if leg is None:
            rejections.append(f"{cand.order_number}: distance unavailable")
            continue
        km, travel = leg
        if km > settings.radius_km:
            rejections.append(f"{cand.order_number}: dist={km:.1f}km > {settings.radius_km}km")
            continue

        cand_arrival = _day_minutes(cand, cand.site_arrival)
        latest_end = cand_arrival - travel
        earliest_end_allowed = latest_end - max_wait
        lower = max(min_acceptable, earliest_end_allowed - task_duration_mins)
        upper = min(max_acceptable, latest_end - task_duration_mins)
        if lower > upper:
            rejections.append(f"{cand.order_number}: no arrival time fits the waiting limit")
            continue

        # closest to the customer's slot start within the feasible range
        chosen = int(min(max(slot_start, lower), upper))
        chosen_end = chosen + task_duration_mins
        depart = cand_arrival - travel
        waiting = depart - chosen_end
        if waiting < 0 or waiting > max_wait:
            rejections.append(f"{cand.order_number}: wait={waiting}min outside 0..{max_wait:g}min")
            continue

        busy = _team_busy(
            cand.team, date, chosen - lead_in_mins, depart, orders,
            (current_order_number, cand.order_number),
        )
        if busy:
            rejections.append(f"{cand.order_number}: {cand.team} busy due to {busy.order_number}")
            continue

        linked = next((o for o in orders if o.get("order_number") == cand.order_number), None)
        depart_time = minutes_to_time(depart)
        logger.debug(f"Head co-join for {current_order_number}: {cand.order_number} ({cand.team}) wait {waiting}min")
        return CoJoinInfo(
            applied=True,
            type="head",
            linked_order_number=cand.order_number,
            linked_order_site=cand.destination,
            team=cand.team,
            distance_km=km,
            travel_mins=travel,
            waiting_mins=waiting,
            reason=f"Head co-join: proceed to {cand.order_number} ({km:.1f}km, wait {waiting}min)",
            adjusted_arrival_time=None if chosen == base_mins else minutes_to_time(chosen),
            adjusted_departure_time=depart_time,
            # the linked order keeps its return policy; its inbound leg now starts at our site
            linked_order_update=LinkedOrderUpdate(
                order_number=cand.order_number,
                phase=cand.phase,
                old_value=_linked_policy(linked, cand.phase),
                new_value=None,
                next_task_order_number=None,
                departure_address=destination,
                departure_time=depart_time,
                travel_mins=travel,
                distance_km=km,
            ),
        )

    if rejections:
        return CoJoinInfo.none(f"Checked {len(candidates)} later task(s): " + "; ".join(rejections))
    return CoJoinInfo.none("No eligible head co-join found")


def choose_cojoin(
    base_arrival_mins: int,
    tail: CoJoinInfo,
    head: CoJoinInfo,
    work_mins: int,
    buffer_mins: int,
    work_end_mins: Optional[int],
    no_preferred_time: bool,
    strategy: str = AUTO_AVOID_OT,
    disabled_reason: str = "No co-join found",
) -> CoJoinInfo:
    """
    Pick none / tail / head for one phase.

    Without a customer time the priority is to avoid overtime first and
    only then to prefer a co-join (earliest finish wins). With a customer
    time the strategy decides.
    """
    base = CoJoinInfo.none(disabled_reason)

    def _end(opt: CoJoinInfo) -> int:
        arrival = base_arrival_mins
        if opt.applied and opt.adjusted_arrival_time:
            adjusted = time_to_minutes(opt.adjusted_arrival_time)
            arrival = adjusted if adjusted is not None else base_arrival_mins
        return arrival + work_mins + buffer_mins

    def _ot(opt: CoJoinInfo) -> bool:
        return work_end_mins is not None and _end(opt) > work_end_mins

    if no_preferred_time:
        options = [(base, False)]
        options += [(opt, True) for opt in (tail, head) if opt.applied]
        no_ot = [(opt, is_cj) for opt, is_cj in options if not _ot(opt)]
        if no_ot:
            cojoins = sorted((opt for opt, is_cj in no_ot if is_cj), key=_end)
            return cojoins[0] if cojoins else base
        return min((opt for opt, _ in options), key=_end)

    if strategy == AUTO_AVOID_OT and tail.applied and head.applied:
        if _ot(tail) and not _ot(head):
            return head
        if _ot(head) and not _ot(tail):
            return tail
        if _end(tail) != _end(head):
            return tail if _end(tail) < _end(head) else head
        return tail

    if strategy == HEAD_FIRST:
        return head if head.applied else tail if tail.applied else base

    # tail-first, and auto-avoid-ot when only one side applied
    return tail if tail.applied else head if head.applied else base


def apply_linked_update(order: dict, update: LinkedOrderUpdate) -> dict:
    """
    Return a copy of `order` with `update` applied to its schedule record.
    Pure; used for what-if snapshots and by the commit step.
    """
    updated = copy.deepcopy(order)
    schedule = updated.setdefault("schedule", {})
    record = schedule.setdefault(schedule_key(update.phase), {})

    if update.new_value:
        record["return_policy"] = update.new_value
        if update.new_value == REMAIN_ON_SITE:
            record["return_from"] = None
            record["return_to"] = None
            record["return_travel_mins"] = 0
            record["hub_arrival_time"] = None
    if update.next_task_order_number:
        record["next_task_order_number"] = update.next_task_order_number
    if update.departure_time:
        record["departure_time"] = update.departure_time
        record["departure_address"] = update.departure_address
        if update.travel_mins is not None:
            record["travel_mins"] = update.travel_mins
        if update.distance_km is not None:
            record["distance_km"] = update.distance_km
    return updated


def with_linked_updates(orders: Iterable[dict], updates: Iterable[LinkedOrderUpdate]) -> List[dict]:
    """Snapshot of `orders` as it would look after the given updates."""
    by_number = {}
    for update in updates:
        by_number.setdefault(update.order_number, []).append(update)
    result = []
    for order in orders:
        for update in by_number.get(order.get("order_number"), []):
            order = apply_linked_update(order, update)
        result.append(order)
    return result
