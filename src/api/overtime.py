# overtime.py
#
# Overtime policy:
# - a task is overtime when it ends strictly after work_end_time
# - company policy is to avoid OT, so when another team is free (or
#   dropping the co-join would finish in time) we recommend deploying a
#   new team; otherwise OT is informational only
# - the operator always makes the final call, nothing here is applied
#
# Also: lunch-window suggestions and the "all teams busy" capacity check.

import logging
from datetime import datetime
from typing import Iterable, Optional

from src.api.models import (
    ALLOW_OT,
    DEPLOY_NEW_TEAM,
    AppSettings,
    CapacityOverflow,
    LunchSuggestion,
    OvertimeDecision,
    PhaseOvertime,
)
from src.api.time_utils import format_am_pm, minutes_to_time, time_to_minutes
from src.api.workload import TEAMS, find_conflict, get_tasks_for_date

logger = logging.getLogger(__name__)


def check_overtime(end_time: str, work_end_time: str) -> bool:
    """True when end_time is strictly after work_end_time. Unparseable times are never OT."""
    end_mins = time_to_minutes(end_time)
    work_end_mins = time_to_minutes(work_end_time)
    if end_mins is None or work_end_mins is None:
        return False
    return end_mins > work_end_mins


def _end_minutes(end) -> Optional[int]:
    # engine passes minute offsets so ends past midnight stay comparable
    if end is None:
        return None
    if isinstance(end, (int, float)):
        return int(end)
    return time_to_minutes(end)


def _phase_overtime(end, base_end_mins, work_end_mins, alternative_free) -> Optional[PhaseOvertime]:
    end_mins = _end_minutes(end)
    if end_mins is None or work_end_mins is None or end_mins <= work_end_mins:
        return None
    can_avoid = base_end_mins is not None and base_end_mins <= work_end_mins
    return PhaseOvertime(
        overtime=True,
        can_avoid_by_disabling_cojoin=can_avoid,
        alternative_team_free=bool(alternative_free),
    )


def evaluate_overtime(
    setup_end,
    dismantle_end,
    app_settings: AppSettings,
    setup_base_end_mins: Optional[int] = None,
    dismantle_base_end_mins: Optional[int] = None,
    setup_alternative_free: bool = False,
    dismantle_alternative_free: bool = False,
) -> OvertimeDecision:
    """
    Overtime decision for a proposal.

    Args:
        setup_end / dismantle_end: proposed end, "HH:MM" or minutes since midnight
                                   (None if the phase isn't scheduled)
        app_settings: working hours
        *_base_end_mins: end time the phase would have without its co-join shift
                         (None when co-join did not move the arrival)
        *_alternative_free: another, non-excluded team is conflict-free for the phase

    Returns:
        OvertimeDecision; recommendation is "deploy-new-team" when OT is
        required and avoidable for some phase, else "allow-ot".
    """
    work_end = app_settings.work_end_time
    work_end_mins = time_to_minutes(work_end)

    setup = _phase_overtime(setup_end, setup_base_end_mins, work_end_mins, setup_alternative_free)
    dismantle = _phase_overtime(dismantle_end, dismantle_base_end_mins, work_end_mins, dismantle_alternative_free)

    if not setup and not dismantle:
        return OvertimeDecision(required=False, recommendation=ALLOW_OT, message="")

    avoidable = any(
        p.can_avoid_by_disabling_cojoin or p.alternative_team_free
        for p in (setup, dismantle) if p
    )
    late = []
    if setup:
        late.append(f"SETUP ends {minutes_to_time(_end_minutes(setup_end))}")
    if dismantle:
        late.append(f"DISMANTLE ends {minutes_to_time(_end_minutes(dismantle_end))}")

    message = f"OT detected: {', '.join(late)} (after {work_end}). "
    if avoidable:
        message += "Recommended: deploy another team (co-join disabled) to avoid OT, or allow OT."
    else:
        message += "No free team can avoid it; allow OT or adjust the schedule manually."

    logger.debug(f"Overtime decision: {message}")
    return OvertimeDecision(
        required=True,
        recommendation=DEPLOY_NEW_TEAM if avoidable else ALLOW_OT,
        message=message,
        setup=setup,
        dismantle=dismantle,
    )


def _phase_summary(proposal, phase: str) -> Optional[dict]:
    plan = getattr(proposal, phase)
    if plan is None:
        return None
    return {
        "team": plan.team,
        "departureTime": plan.departure_time,
        "arrivalTime": plan.arrival_time,
        "endTime": plan.end_time,
        "hubArrivalTime": plan.hub_arrival_time,
        "overtime": plan.overtime,
        "coJoin": plan.cojoin.applied,
    }


def compare_with_alternative(original, alternative) -> dict:
    """
    Side-by-side view of a proposal and its "deploy another team" rerun,
    so the operator can trade OT against the new times.
    """
    return {
        "stillRequiresOT": alternative.overtime_decision.required,
        "original": {
            "overtimeRequired": original.overtime_decision.required,
            "setup": _phase_summary(original, "setup"),
            "dismantle": _phase_summary(original, "dismantle"),
        },
        "alternative": {
            "overtimeRequired": alternative.overtime_decision.required,
            "setup": _phase_summary(alternative, "setup"),
            "dismantle": _phase_summary(alternative, "dismantle"),
        },
    }


def get_lunch_suggestion(
    task_start: str,
    task_end: str,
    lunch_start: str,
    lunch_end: str,
) -> Optional[LunchSuggestion]:
    """
    If the task overlaps the lunch window, move lunch to just before or just
    after the task, whichever keeps it closer to the normal lunch time.
    """
    start = time_to_minutes(task_start)
    end = time_to_minutes(task_end)
    l_start = time_to_minutes(lunch_start)
    l_end = time_to_minutes(lunch_end)
    if None in (start, end, l_start, l_end):
        return None
    if not (start < l_end and end > l_start):
        return None

    length = l_end - l_start
    window_mid = (l_start + l_end) / 2
    before_mid = start - length / 2
    after_mid = end + length / 2

    if abs(before_mid - window_mid) <= abs(after_mid - window_mid):
        return LunchSuggestion(
            start=minutes_to_time(start - length),
            end=minutes_to_time(start),
            reason=f"Task overlaps lunch window ({lunch_start}-{lunch_end}), lunch moved before task",
        )
    return LunchSuggestion(
        start=minutes_to_time(end),
        end=minutes_to_time(end + length),
        reason=f"Task overlaps lunch window ({lunch_start}-{lunch_end}), lunch moved after task",
    )


def check_capacity_overflow(
    date: str,
    start: datetime,
    end: datetime,
    current_order_number: str,
    orders: Iterable[dict],
    app_settings: AppSettings,
    phase: Optional[str] = None,
) -> CapacityOverflow:
    """
    All five teams busy for [start, end)? Then OT is the only way to take
    the job; suggest the team whose last task of the day finishes first.
    """
    orders = list(orders)
    for team in TEAMS:
        if find_conflict(start, end, team, date, current_order_number, orders, phase) is None:
            return CapacityOverflow()

    tasks = get_tasks_for_date(date, orders)
    best_team, best_finish = None, None
    for team in TEAMS:
        ends = [t.end for t in tasks if t.team == team]
        if not ends:
            continue
        finish = max(ends)
        if best_finish is None or finish < best_finish:
            best_team, best_finish = team, finish

    finish_time = best_finish.strftime("%H:%M") if best_finish else None
    message = (
        "CAPACITY OVERFLOW - OVERTIME REQUIRED\n"
        f"All teams are fully booked from {format_am_pm(app_settings.work_start_time)} "
        f"to {format_am_pm(app_settings.work_end_time)}.\n"
        "Manual action required: please assign overtime (OT).\n"
        f"Suggested OT: {best_team} finishes earliest at {finish_time}"
    )
    logger.warning(f"Capacity overflow on {date} for {current_order_number}")
    return CapacityOverflow(
        is_overflow=True,
        suggested_ot_team=best_team,
        suggested_ot_finish_time=finish_time,
        message=message,
    )
