# order_flow.py
#
# Order accessors shared by the scheduler and the route optimizer, plus the
# order status lifecycle:
#   draft -> scheduling -> packing -> procurement -> setting-up -> dismantling -> completed
# Ad-hoc orders skip the phases they don't need and may end in other-adhoc.

from typing import Optional

from src.api.models import SETUP, DISMANTLE, OTHER_ADHOC, STRICT, FLEXIBLE
from src.api.time_utils import normalize_time_slot

STATUSES = [
    "draft",
    "scheduling",
    "packing",
    "procurement",
    "setting-up",
    "dismantling",
    "other-adhoc",
    "completed",
]


def is_ad_hoc(order: dict) -> bool:
    return order.get("order_source") == "ad-hoc"


def _ad_hoc_options(order: dict) -> dict:
    opts = order.get("ad_hoc_options") or {}
    return {
        "requires_packing": opts.get("requires_packing", True),
        "requires_setup": opts.get("requires_setup", True),
        "requires_dismantle": opts.get("requires_dismantle", True),
        # older ad-hoc orders stored this as requires_pickup
        "requires_other_adhoc": opts.get("requires_other_adhoc", opts.get("requires_pickup", False)),
    }


def is_phase_required(order: dict, phase: str) -> bool:
    """Whether an order needs the given phase ("packing", "setup", "dismantle", "other-adhoc")."""
    if not is_ad_hoc(order):
        if phase == OTHER_ADHOC:
            return False
        if phase == DISMANTLE:
            return (order.get("event") or {}).get("dismantle_required", True)
        return True

    opts = _ad_hoc_options(order)
    if phase == "packing":
        return opts["requires_packing"]
    if phase == SETUP:
        return opts["requires_setup"]
    if phase == DISMANTLE:
        return opts["requires_dismantle"]
    return opts["requires_other_adhoc"]


def next_status(order: dict, current: str) -> str:
    """Status an order moves to after `current` is done. Unknown statuses stay put."""
    if not is_ad_hoc(order):
        requires_dismantle = (order.get("event") or {}).get("dismantle_required", True)
        flow = {
            "draft": "scheduling",
            "scheduling": "packing",
            "packing": "procurement",
            "procurement": "setting-up",
            "setting-up": "dismantling" if requires_dismantle else "completed",
            "dismantling": "completed",
        }
        return flow.get(current, current)

    opts = _ad_hoc_options(order)

    def _after_procurement():
        if opts["requires_setup"]:
            return "setting-up"
        if opts["requires_dismantle"]:
            return "dismantling"
        if opts["requires_other_adhoc"]:
            return "other-adhoc"
        return "completed"

    if current == "draft":
        return "scheduling"
    if current == "scheduling":
        return "packing" if opts["requires_packing"] else _after_procurement()
    if current == "packing":
        return "procurement"
    if current == "procurement":
        return _after_procurement()
    if current == "setting-up":
        if opts["requires_dismantle"]:
            return "dismantling"
        return "other-adhoc" if opts["requires_other_adhoc"] else "completed"
    if current == "dismantling":
        return "other-adhoc" if opts["requires_other_adhoc"] else "completed"
    if current == "other-adhoc":
        return "completed"
    return current


# ---------------------------------------------------------------
# Accessors
# ---------------------------------------------------------------
def schedule_key(phase: str) -> str:
    """Key of a phase inside order["schedule"] ("other-adhoc" -> "other_adhoc")."""
    return phase.replace("-", "_")


def schedule_record(order: dict, phase: str) -> dict:
    return ((order.get("schedule") or {}).get(schedule_key(phase))) or {}


def customer_address(order: dict) -> str:
    customer = order.get("customer") or {}
    return (customer.get("delivery_address") or customer.get("billing_address") or "").strip()


def phase_date(order: dict, phase: str) -> Optional[str]:
    """Customer's preferred date for a phase, falling back to the event date."""
    event = order.get("event") or {}
    if phase == SETUP:
        return event.get("setup_date") or event.get("event_date")
    if phase == DISMANTLE:
        return event.get("dismantle_date") or event.get("event_date")
    return schedule_record(order, phase).get("date")


def time_slot(order: dict, phase: str) -> str:
    """Customer time slot for a phase; "" when there is none."""
    if phase not in (SETUP, DISMANTLE):
        return ""
    event = order.get("event") or {}
    return normalize_time_slot(event.get(f"{phase}_time_slot"))


def time_window_mode(order: dict, phase: str) -> str:
    event = order.get("event") or {}
    mode = (event.get(f"{phase.replace('-', '_')}_time_window_mode") or FLEXIBLE).lower()
    return STRICT if mode == STRICT else FLEXIBLE
