# commit.py
#
# Applying a schedule proposal the operator accepted:
#   1. fresh read of the order and every other order
#   2. merge the proposal into the order's schedule records
#   3. re-check for double booking against the fresh data, with the
#      co-join changes applied (the proposal may be stale by now)
#   4. save the order, then each linked co-join order on its own
#
# A linked write that still fails after retries leaves the primary order
# saved; the missing change is recorded in the reconciliation table.

import logging
import sqlite3
from dataclasses import dataclass, field, replace
from typing import List, Optional

from src import db
from src.api.cojoin import apply_linked_update, with_linked_updates
from src.api.errors import OrderNotFoundError, OvertimeNotAcceptedError, ScheduleClashError
from src.api.models import (
    REMAIN_ON_SITE,
    RETURN_TO_HUB,
    AISettings,
    CoJoinInfo,
    LinkedOrderUpdate,
    PhasePlan,
    ScheduleProposal,
)
from src.api.order_flow import next_status, schedule_key
from src.api.retry import retry_sync
from src.api.time_utils import MINUTES_PER_DAY, minutes_to_time, time_to_minutes, travel_minutes
from src.api.workload import find_schedule_clashes

logger = logging.getLogger(__name__)


@dataclass
class CommitResult:
    order_number: str
    ok: bool
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {"orderNumber": self.order_number, "ok": self.ok, "error": self.error}


@dataclass
class ScheduleCommitOutcome:
    primary: CommitResult
    linked: List[CommitResult] = field(default_factory=list)
    needs_reconciliation: bool = False
    order: Optional[dict] = None

    def to_dict(self) -> dict:
        return {
            "primary": self.primary.to_dict(),
            "linked": [r.to_dict() for r in self.linked],
            "needsReconciliation": self.needs_reconciliation,
            "order": self.order,
        }


# ---------------------------------------------------------------
# Linked (co-join) order writes
# ---------------------------------------------------------------
@retry_sync(max_retries=2, initial_delay=0.05, exceptions=(sqlite3.Error,))
def _write_linked_update(update: LinkedOrderUpdate):
    db.update_order_by_number(update.order_number, lambda order: apply_linked_update(order, update))


def apply_cojoin_update(cojoin: CoJoinInfo) -> CommitResult:
    """
    Write a co-join's linked-order change (remain-on-site + next task for a
    tail, moved inbound leg for a head). Applying it twice gives the same
    record. Does nothing for a co-join that wasn't applied.
    """
    update = cojoin.linked_order_update if cojoin and cojoin.applied else None
    if update is None:
        return CommitResult(order_number=(cojoin.linked_order_number or "") if cojoin else "", ok=True)

    if db.get_order(update.order_number) is None:
        logger.warning(f"Co-join target {update.order_number} no longer exists, nothing to update")
        db.record_reconciliation(update.order_number, update.phase, "Co-join target order missing", update.to_dict())
        return CommitResult(update.order_number, ok=False, error=f"Order {update.order_number} not found")

    try:
        _write_linked_update(update)
    except sqlite3.Error as e:
        logger.error(f"Co-join update for {update.order_number} ({update.phase}) failed: {e}")
        db.record_reconciliation(
            update.order_number,
            update.phase,
            f"Co-join update not written: {e}",
            update.to_dict(),
        )
        return CommitResult(update.order_number, ok=False, error=str(e))

    logger.info(
        f"Co-join update applied to {update.order_number} ({update.phase}): "
        f"{update.old_value} -> {update.new_value or update.old_value}"
    )
    return CommitResult(update.order_number, ok=True)


# ---------------------------------------------------------------
# Primary order
# ---------------------------------------------------------------
def _gap(start: str, end: str) -> int:
    a, b = time_to_minutes(start), time_to_minutes(end)
    if a is None or b is None:
        return 0
    return (b - a) % MINUTES_PER_DAY


def _without_cojoin(plan: PhasePlan, proposal: ScheduleProposal, ai_settings: AISettings) -> PhasePlan:
    """
    The same plan with its co-join declined: the team leaves from and returns
    to the hub. Arrival and work times are kept.
    """
    hub_travel = travel_minutes(proposal.distance_km, ai_settings.minutes_per_km)
    arrival = time_to_minutes(plan.arrival_time) or 0
    end = time_to_minutes(plan.end_time) or 0
    return replace(
        plan,
        departure_address=proposal.hub_address,
        departure_time=minutes_to_time(arrival - hub_travel),
        travel_mins=hub_travel,
        distance_km=proposal.distance_km,
        hub_arrival_time=minutes_to_time(end + hub_travel),
        return_policy=RETURN_TO_HUB,
        next_task_order_number=None,
        cojoin=CoJoinInfo.none("Co-join declined by user"),
    )


def _phase_record(plan: PhasePlan, hub_address: str, existing: dict) -> dict:
    record = dict(existing or {})
    returning = plan.return_policy != REMAIN_ON_SITE
    record.update({
        "date": plan.date,
        "team": plan.team,
        "departure_address": plan.departure_address,
        "departure_time": plan.departure_time,
        "travel_mins": plan.travel_mins,
        "distance_km": plan.distance_km,
        "arrival_time": plan.arrival_time,
        "work_mins": plan.duration_mins,
        "buffer_mins": plan.buffer_mins,
        "buffer_reason": record.get("buffer_reason") or "Standard buffer",
        "end_time": plan.end_time,
        "return_policy": plan.return_policy,
        "return_from": plan.destination if returning else None,
        "return_to": hub_address if returning else None,
        "return_travel_mins": _gap(plan.end_time, plan.hub_arrival_time) if returning else 0,
        "hub_arrival_time": plan.hub_arrival_time if returning else None,
        "next_task_order_number": plan.next_task_order_number,
    })
    return record


def merge_proposal(order: dict, proposal: ScheduleProposal) -> dict:
    """Copy of `order` with the proposal's phases written into its schedule."""
    merged = dict(order)
    schedule = dict(merged.get("schedule") or {})
    for plan in proposal.phases:
        key = schedule_key(plan.phase)
        schedule[key] = _phase_record(plan, proposal.hub_address, schedule.get(key))
    merged["schedule"] = schedule
    return merged


def apply_schedule_proposal(
    order_number: str,
    proposal: ScheduleProposal,
    accept_cojoin: bool = True,
    accept_overtime: bool = False,
    ai_settings: Optional[AISettings] = None,
) -> ScheduleCommitOutcome:
    """
    Persist an accepted proposal.

    Args:
        order_number: order the proposal is for
        proposal: engine output (possibly round-tripped through the portal)
        accept_cojoin: False declines every co-join; the phases then go
                       hub -> site -> hub and no linked order is touched
        accept_overtime: must be True when the proposal runs into overtime
        ai_settings: travel model for declined co-joins

    Raises:
        OrderNotFoundError: the order is gone
        OvertimeNotAcceptedError: OT required but not accepted
        ScheduleClashError: the schedule now double-books a team (nothing written)
    """
    current = db.get_order(order_number)
    if current is None:
        raise OrderNotFoundError(order_number)

    late = [p.phase for p in proposal.phases if p.overtime]
    if (proposal.overtime_decision.required or late) and not accept_overtime:
        raise OvertimeNotAcceptedError(order_number, late or [p.phase for p in proposal.phases])

    if not accept_cojoin:
        settings = ai_settings or AISettings()
        declined = {
            phase: _without_cojoin(plan, proposal, settings) if plan and plan.cojoin.applied else plan
            for phase, plan in (("setup", proposal.setup), ("dismantle", proposal.dismantle))
        }
        proposal = replace(proposal, **declined)

    cojoins = [p.cojoin for p in proposal.phases if p.cojoin.applied and p.cojoin.linked_order_update]
    updates = [c.linked_order_update for c in cojoins]
    merged = merge_proposal(current, proposal)

    # clash check on fresh data as it will look after every write
    others = [o for o in db.get_all_orders() if o.get("order_number") != order_number]
    snapshot = with_linked_updates(others + [merged], updates)
    clashes = find_schedule_clashes(merged, snapshot)
    for update in updates:
        linked = next((o for o in snapshot if o.get("order_number") == update.order_number), None)
        if linked is not None:
            clashes += [c for c in find_schedule_clashes(linked, snapshot) if c not in clashes]
    if clashes:
        logger.warning(f"Schedule for {order_number} rejected: {'; '.join(clashes)}")
        raise ScheduleClashError(order_number, clashes)

    status = merged.get("status")
    if status == "scheduling":
        merged["status"] = next_status(merged, status)

    saved = db.save_order(merged)
    logger.info(
        f"Schedule applied to {order_number}: "
        + ", ".join(f"{p.phase} {p.team} {p.departure_time}-{p.end_time}" for p in proposal.phases)
    )

    linked_results = [apply_cojoin_update(c) for c in cojoins]
    failed = [r for r in linked_results if not r.ok]
    if failed:
        logger.warning(
            f"{order_number} saved but {len(failed)} co-join update(s) need reconciliation: "
            + ", ".join(r.order_number for r in failed)
        )

    return ScheduleCommitOutcome(
        primary=CommitResult(order_number, ok=True),
        linked=linked_results,
        needs_reconciliation=bool(failed),
        order=saved,
    )
