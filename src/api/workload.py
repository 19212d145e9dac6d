# workload.py
#
# Team workload index. Teams aren't stored anywhere; what a team is doing on
# a day is worked out by scanning every order's schedule record:
# - engaged intervals per order/phase (departure -> back at hub, or site end)
# - task counts per team (workload)
# - conflict checks (same team, half-open overlap, other orders only)

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from src.api.models import PHASES, RETURN_TO_HUB, REMAIN_ON_SITE
from src.api.order_flow import customer_address, is_phase_required, schedule_record
from src.api.time_utils import ensure_end_after_start, to_datetime

logger = logging.getLogger(__name__)

TEAMS = ["Team A", "Team B", "Team C", "Team D", "Team E"]


@dataclass
class TaskInterval:
    order_number: str
    phase: str
    team: str
    date: str
    start: datetime        # team leaves hub / previous site
    end: datetime          # team is free again (back at hub, or site end when chained)
    site_arrival: datetime
    site_end: datetime
    destination: str

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return start < self.end and end > self.start


def engaged_interval(order: dict, phase: str) -> Optional[TaskInterval]:
    """
    The interval a phase keeps its team busy, or None when the phase has no
    team, no date, or no resolvable start/end time.
    """
    record = schedule_record(order, phase)
    team = record.get("team")
    date = record.get("date")
    if not team or not date:
        return None

    start = to_datetime(date, record.get("departure_time") or record.get("arrival_time"))
    if start is None:
        return None

    site_arrival = to_datetime(date, record.get("arrival_time") or record.get("departure_time"))
    if site_arrival is None:
        site_arrival = start
    elif site_arrival < start:
        site_arrival = ensure_end_after_start(start, site_arrival)

    site_end = to_datetime(date, record.get("end_time") or record.get("hub_arrival_time"))
    if site_end is None:
        return None
    site_end = ensure_end_after_start(start, site_end)

    end = site_end
    policy = record.get("return_policy") or RETURN_TO_HUB
    if policy != REMAIN_ON_SITE:
        hub_arrival = to_datetime(date, record.get("hub_arrival_time"))
        if hub_arrival is not None:
            end = ensure_end_after_start(start, hub_arrival)

    return TaskInterval(
        order_number=order.get("order_number", ""),
        phase=phase,
        team=team,
        date=date,
        start=start,
        end=end,
        site_arrival=site_arrival,
        site_end=site_end,
        destination=customer_address(order),
    )


def get_tasks_for_date(date: str, orders: Iterable[dict], phases=PHASES) -> List[TaskInterval]:
    """Every engaged interval on `date` across all orders (each phase counts as one task)."""
    tasks = []
    for order in orders:
        for phase in phases:
            if not is_phase_required(order, phase):
                continue
            interval = engaged_interval(order, phase)
            if interval and interval.date == date:
                tasks.append(interval)
    return tasks


def get_team_job_counts(date: str, orders: Iterable[dict]) -> Dict[str, int]:
    counts = {team: 0 for team in TEAMS}
    for task in get_tasks_for_date(date, orders):
        if task.team in counts:
            counts[task.team] += 1
    return counts


def get_team_intervals(date: str, orders: Iterable[dict]) -> Dict[str, List[TaskInterval]]:
    """Per-team intervals on a date, sorted by start."""
    by_team = {team: [] for team in TEAMS}
    for task in get_tasks_for_date(date, orders):
        by_team.setdefault(task.team, []).append(task)
    for intervals in by_team.values():
        intervals.sort(key=lambda t: t.start)
    return by_team


def find_conflict(
    start: datetime,
    end: datetime,
    team: str,
    date: str,
    current_order_number: str,
    orders: Iterable[dict],
    phase: Optional[str] = None,
) -> Optional[TaskInterval]:
    """
    First task of another order that keeps `team` busy during [start, end).
    The order being (re)scheduled never conflicts with itself. `phase` is the
    phase being scheduled; it only shows up in the debug log.
    """
    for task in get_tasks_for_date(date, orders):
        if task.team != team or task.order_number == current_order_number:
            continue
        if task.overlaps(start, end):
            logger.debug(
                f"{phase or 'task'} for {current_order_number}: {team} busy with "
                f"{task.order_number} ({task.phase}) {task.start:%H:%M}-{task.end:%H:%M}"
            )
            return task
    return None


def find_schedule_clashes(order: dict, orders: Iterable[dict]) -> List[str]:
    """
    Commit-time guard: check every scheduled phase of `order` against all
    other orders. Returns messages like "SETUP: Team A clashes with SO-12 (dismantle)".
    """
    orders = list(orders)
    number = order.get("order_number", "")
    clashes = []
    own: List[TaskInterval] = []
    for phase in PHASES:
        if not is_phase_required(order, phase):
            continue
        interval = engaged_interval(order, phase)
        if interval is None:
            continue
        other = find_conflict(interval.start, interval.end, interval.team, interval.date, number, orders, phase)
        if other:
            clashes.append(f"{phase.upper()}: {interval.team} clashes with {other.order_number} ({other.phase})")
        # the order's own phases can't share a team at the same time either
        for earlier in own:
            if earlier.team == interval.team and earlier.overlaps(interval.start, interval.end):
                clashes.append(f"{phase.upper()}: {interval.team} clashes with {number} ({earlier.phase})")
        own.append(interval)
    return clashes


def get_team_tasks_for_day(team: str, date: str, orders: Iterable[dict]) -> List[TaskInterval]:
    return get_team_intervals(date, orders).get(team, [])
