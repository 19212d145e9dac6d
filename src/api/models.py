# models.py
#
# Shared scheduling types:
# - AISettings / AppSettings (configuration passed into every core call)
# - co-join, overtime and per-phase plan records
# - ScheduleProposal, the engine's output and the JSON contract the portal uses
#
# Internally everything is snake_case; to_dict() produces the camelCase
# field names the portal front-end reads.

import math
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional

from config.settings import DEFAULT_AI_SETTINGS, DEFAULT_APP_SETTINGS
from src.api.time_utils import time_to_minutes

SETUP = "setup"
DISMANTLE = "dismantle"
OTHER_ADHOC = "other-adhoc"
PHASES = (SETUP, DISMANTLE, OTHER_ADHOC)

RETURN_TO_HUB = "return-to-hub"
REMAIN_ON_SITE = "remain-on-site"

STRICT = "strict"
FLEXIBLE = "flexible"

DEPLOY_NEW_TEAM = "deploy-new-team"
ALLOW_OT = "allow-ot"


def _as_number(value, fallback):
    if isinstance(value, bool):
        return fallback
    if isinstance(value, (int, float)) and math.isfinite(value):
        return value
    return fallback


def _as_string(value, fallback):
    if isinstance(value, str) and value.strip():
        return value.strip()
    return fallback


def _as_hhmm(value, fallback):
    text = _as_string(value, fallback)
    return text if time_to_minutes(text) is not None else fallback


@dataclass
class AISettings:
    hub_address: str = DEFAULT_AI_SETTINGS["hub_address"]
    buffer_time_minutes: float = DEFAULT_AI_SETTINGS["buffer_time_minutes"]
    minutes_per_km: float = DEFAULT_AI_SETTINGS["minutes_per_km"]
    radius_km: float = DEFAULT_AI_SETTINGS["radius_km"]
    waiting_hours: float = DEFAULT_AI_SETTINGS["waiting_hours"]

    @classmethod
    def from_dict(cls, raw: Optional[dict]) -> "AISettings":
        raw = raw if isinstance(raw, dict) else {}
        d = DEFAULT_AI_SETTINGS
        return cls(
            hub_address=_as_string(raw.get("hub_address"), d["hub_address"]),
            buffer_time_minutes=max(0, _as_number(raw.get("buffer_time_minutes"), d["buffer_time_minutes"])),
            minutes_per_km=max(0, _as_number(raw.get("minutes_per_km"), d["minutes_per_km"])),
            radius_km=max(0, _as_number(raw.get("radius_km"), d["radius_km"])),
            waiting_hours=max(0, _as_number(raw.get("waiting_hours"), d["waiting_hours"])),
        )

    @property
    def max_waiting_mins(self) -> float:
        return self.waiting_hours * 60

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class AppSettings:
    work_start_time: str = DEFAULT_APP_SETTINGS["work_start_time"]
    work_end_time: str = DEFAULT_APP_SETTINGS["work_end_time"]
    lunch_start_time: str = DEFAULT_APP_SETTINGS["lunch_start_time"]
    lunch_end_time: str = DEFAULT_APP_SETTINGS["lunch_end_time"]
    inventory_task_times_by_id: Dict[str, Dict[str, float]] = field(
        default_factory=lambda: {k: dict(v) for k, v in DEFAULT_APP_SETTINGS["inventory_task_times_by_id"].items()}
    )
    tent10x10_minutes: float = DEFAULT_APP_SETTINGS["tent10x10_minutes"]
    tent20x20_minutes: float = DEFAULT_APP_SETTINGS["tent20x20_minutes"]
    tent20x30_minutes: float = DEFAULT_APP_SETTINGS["tent20x30_minutes"]
    sunday_ot_fee: float = DEFAULT_APP_SETTINGS["sunday_ot_fee"]

    @classmethod
    def from_dict(cls, raw: Optional[dict]) -> "AppSettings":
        raw = raw if isinstance(raw, dict) else {}
        d = DEFAULT_APP_SETTINGS

        # saved task times are merged over the defaults, never replace them wholesale
        task_times = {k: dict(v) for k, v in d["inventory_task_times_by_id"].items()}
        raw_times = raw.get("inventory_task_times_by_id")
        if isinstance(raw_times, dict):
            for inv_id, times in raw_times.items():
                if not isinstance(times, dict):
                    continue
                current = task_times.get(inv_id, {})
                setup = _as_number(times.get("setup_mins"), current.get("setup_mins", 0))
                dismantle = _as_number(times.get("dismantle_mins"), current.get("dismantle_mins", setup))
                task_times[inv_id] = {"setup_mins": max(0, setup), "dismantle_mins": max(0, dismantle)}

        return cls(
            work_start_time=_as_hhmm(raw.get("work_start_time"), d["work_start_time"]),
            work_end_time=_as_hhmm(raw.get("work_end_time"), d["work_end_time"]),
            lunch_start_time=_as_hhmm(raw.get("lunch_start_time"), d["lunch_start_time"]),
            lunch_end_time=_as_hhmm(raw.get("lunch_end_time"), d["lunch_end_time"]),
            inventory_task_times_by_id=task_times,
            tent10x10_minutes=_as_number(raw.get("tent10x10_minutes"), d["tent10x10_minutes"]),
            tent20x20_minutes=_as_number(raw.get("tent20x20_minutes"), d["tent20x20_minutes"]),
            tent20x30_minutes=_as_number(raw.get("tent20x30_minutes"), d["tent20x30_minutes"]),
            sunday_ot_fee=_as_number(raw.get("sunday_ot_fee"), d["sunday_ot_fee"]),
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class DistanceEstimate:
    """Site-to-site distance; travel_mins is set when the routing service returned a duration."""
    distance_km: float
    travel_mins: Optional[int] = None


@dataclass
class LinkedOrderUpdate:
    """
    Change proposed for an already scheduled order (never applied by the engine).

    Tail co-join: new_value="remain-on-site" and next_task_order_number point
    the linked order at us. Head co-join: the return policy stays, the
    departure_* fields move the linked order's inbound leg to start at our site.
    """
    order_number: str
    phase: str
    old_value: str
    new_value: Optional[str]
    next_task_order_number: Optional[str]
    departure_address: Optional[str] = None
    departure_time: Optional[str] = None
    travel_mins: Optional[int] = None
    distance_km: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "orderNumber": self.order_number,
            "phase": self.phase,
            "oldValue": self.old_value,
            "newValue": self.new_value,
            "nextTaskOrderNumber": self.next_task_order_number,
            "departureAddress": self.departure_address,
            "departureTime": self.departure_time,
            "travelMins": self.travel_mins,
            "distanceKm": self.distance_km,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["LinkedOrderUpdate"]:
        if not data:
            return None
        return cls(
            order_number=data["orderNumber"],
            phase=data.get("phase", SETUP),
            old_value=data.get("oldValue", RETURN_TO_HUB),
            new_value=data.get("newValue"),
            next_task_order_number=data.get("nextTaskOrderNumber"),
            departure_address=data.get("departureAddress"),
            departure_time=data.get("departureTime"),
            travel_mins=data.get("travelMins"),
            distance_km=data.get("distanceKm"),
        )


@dataclass
class CoJoinInfo:
    applied: bool = False
    type: Optional[str] = None  # "head" | "tail"
    linked_order_number: Optional[str] = None
    linked_order_site: Optional[str] = None
    team: Optional[str] = None
    distance_km: Optional[float] = None
    travel_mins: Optional[int] = None
    waiting_mins: Optional[int] = None
    reason: str = "No eligible co-join found"
    adjusted_arrival_time: Optional[str] = None
    adjusted_departure_time: Optional[str] = None
    linked_order_update: Optional[LinkedOrderUpdate] = None

    @classmethod
    def none(cls, reason: str) -> "CoJoinInfo":
        return cls(reason=reason)

    def to_dict(self) -> dict:
        return {
            "applied": self.applied,
            "type": self.type,
            "linkedOrderNumber": self.linked_order_number,
            "linkedOrderSite": self.linked_order_site,
            "team": self.team,
            "distanceKm": self.distance_km,
            "travelMins": self.travel_mins,
            "waitingMins": self.waiting_mins,
            "reason": self.reason,
            "adjustedArrivalTime": self.adjusted_arrival_time,
            "adjustedDepartureTime": self.adjusted_departure_time,
            "linkedOrderUpdate": self.linked_order_update.to_dict() if self.linked_order_update else None,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "CoJoinInfo":
        if not data:
            return cls.none("No co-join")
        return cls(
            applied=bool(data.get("applied")),
            type=data.get("type"),
            linked_order_number=data.get("linkedOrderNumber"),
            linked_order_site=data.get("linkedOrderSite"),
            team=data.get("team"),
            distance_km=data.get("distanceKm"),
            travel_mins=data.get("travelMins"),
            waiting_mins=data.get("waitingMins"),
            reason=data.get("reason", ""),
            adjusted_arrival_time=data.get("adjustedArrivalTime"),
            adjusted_departure_time=data.get("adjustedDepartureTime"),
            linked_order_update=LinkedOrderUpdate.from_dict(data.get("linkedOrderUpdate")),
        )


@dataclass
class LunchSuggestion:
    start: str
    end: str
    reason: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class CapacityOverflow:
    is_overflow: bool = False
    suggested_ot_team: Optional[str] = None
    suggested_ot_finish_time: Optional[str] = None
    message: str = ""

    def to_dict(self) -> dict:
        return {
            "isOverflow": self.is_overflow,
            "suggestedOTTeam": self.suggested_ot_team,
            "suggestedOTFinishTime": self.suggested_ot_finish_time,
            "message": self.message,
        }


@dataclass
class PhaseOvertime:
    overtime: bool
    can_avoid_by_disabling_cojoin: bool
    alternative_team_free: bool

    def to_dict(self) -> dict:
        return {
            "overtime": self.overtime,
            "canAvoidByDisablingCoJoin": self.can_avoid_by_disabling_cojoin,
            "alternativeTeamFree": self.alternative_team_free,
        }


@dataclass
class OvertimeDecision:
    required: bool = False
    recommendation: str = ALLOW_OT
    message: str = ""
    setup: Optional[PhaseOvertime] = None
    dismantle: Optional[PhaseOvertime] = None

    def to_dict(self) -> dict:
        return {
            "required": self.required,
            "recommendation": self.recommendation,
            "message": self.message,
            "setup": self.setup.to_dict() if self.setup else None,
            "dismantle": self.dismantle.to_dict() if self.dismantle else None,
        }


@dataclass
class PhasePlan:
    """Proposed schedule for one phase (setup or dismantle) of one order."""
    phase: str
    date: str
    team: Optional[str]
    departure_address: str
    departure_time: str
    arrival_time: str
    travel_mins: int
    distance_km: float
    duration_mins: int
    buffer_mins: int
    end_time: str
    hub_arrival_time: str
    destination: str
    return_policy: str = RETURN_TO_HUB
    next_task_order_number: Optional[str] = None
    overtime: bool = False
    lunch_suggestion: Optional[LunchSuggestion] = None
    cojoin: CoJoinInfo = field(default_factory=lambda: CoJoinInfo.none("No co-join found"))
    conflict_with: Optional[str] = None
    team_job_count: int = 0
    team_overloaded: bool = False
    within_preferred: bool = True
    reasoning: List[str] = field(default_factory=list)

    def to_dict(self, prefix: Optional[str] = None) -> dict:
        p = prefix or self.phase
        hours, mins = divmod(int(self.travel_mins), 60)
        return {
            f"{p}Date": self.date,
            f"{p}Team": self.team,
            f"{p}DepartureAddress": self.departure_address,
            f"{p}DepartureTime": self.departure_time,
            f"{p}ArrivalTime": self.arrival_time,
            f"{p}TravelTimeHours": hours,
            f"{p}TravelTimeMins": mins,
            f"{p}DistanceKm": self.distance_km,
            f"{p}DurationMins": self.duration_mins,
            f"{p}BufferMins": self.buffer_mins,
            f"{p}EndTime": self.end_time,
            f"{p}HubArrivalTime": self.hub_arrival_time,
            f"{p}Destination": self.destination,
            f"{p}ReturnPolicy": self.return_policy,
            f"{p}NextTaskOrderNumber": self.next_task_order_number,
            f"{p}Overtime": self.overtime,
            f"{p}LunchSuggestion": self.lunch_suggestion.to_dict() if self.lunch_suggestion else None,
            f"{p}CoJoin": self.cojoin.to_dict(),
            f"{p}ConflictWith": self.conflict_with,
            f"{p}TeamJobCount": self.team_job_count,
            f"{p}TeamOverloaded": self.team_overloaded,
            f"{p}WithinPreferred": self.within_preferred,
            f"{p}Reasoning": list(self.reasoning),
        }

    @classmethod
    def from_dict(cls, phase: str, data: dict) -> "PhasePlan":
        p = phase
        travel = int(data.get(f"{p}TravelTimeHours", 0)) * 60 + int(data.get(f"{p}TravelTimeMins", 0))
        lunch = data.get(f"{p}LunchSuggestion")
        return cls(
            phase=phase,
            date=data[f"{p}Date"],
            team=data.get(f"{p}Team"),
            departure_address=data.get(f"{p}DepartureAddress", ""),
            departure_time=data[f"{p}DepartureTime"],
            arrival_time=data[f"{p}ArrivalTime"],
            travel_mins=travel,
            distance_km=data.get(f"{p}DistanceKm", 0),
            duration_mins=int(data.get(f"{p}DurationMins", 0)),
            buffer_mins=int(data.get(f"{p}BufferMins", 0)),
            end_time=data[f"{p}EndTime"],
            hub_arrival_time=data.get(f"{p}HubArrivalTime", data[f"{p}EndTime"]),
            destination=data.get(f"{p}Destination", ""),
            return_policy=data.get(f"{p}ReturnPolicy", RETURN_TO_HUB),
            next_task_order_number=data.get(f"{p}NextTaskOrderNumber"),
            overtime=bool(data.get(f"{p}Overtime", False)),
            lunch_suggestion=LunchSuggestion(**lunch) if lunch else None,
            cojoin=CoJoinInfo.from_dict(data.get(f"{p}CoJoin")),
            conflict_with=data.get(f"{p}ConflictWith"),
            team_job_count=int(data.get(f"{p}TeamJobCount", 0)),
            team_overloaded=bool(data.get(f"{p}TeamOverloaded", False)),
            within_preferred=bool(data.get(f"{p}WithinPreferred", True)),
            reasoning=list(data.get(f"{p}Reasoning", [])),
        )


@dataclass
class ScheduleProposal:
    """Ephemeral engine result. Nothing here is persisted until it is applied."""
    order_number: str
    setup: Optional[PhasePlan]
    dismantle: Optional[PhasePlan]
    distance_km: float
    hub_address: str
    overtime_decision: OvertimeDecision
    capacity_overflow: CapacityOverflow
    workload_counts: Dict[str, Dict[str, int]]
    long_travel_warning: bool
    work_end_time: str
    lunch_start_time: str
    lunch_end_time: str

    @property
    def phases(self) -> List[PhasePlan]:
        return [p for p in (self.setup, self.dismantle) if p is not None]

    @property
    def no_overlap(self) -> bool:
        return all(p.conflict_with is None for p in self.phases)

    @property
    def within_preferred(self) -> bool:
        return all(p.within_preferred for p in self.phases)

    def to_dict(self) -> dict:
        out = {"orderNumber": self.order_number}
        if self.setup:
            out.update(self.setup.to_dict())
        if self.dismantle:
            out.update(self.dismantle.to_dict())
        out.update({
            "distanceKm": self.distance_km,
            "hubAddress": self.hub_address,
            "noOverlap": self.no_overlap,
            "withinPreferred": self.within_preferred,
            "overtimeDecision": self.overtime_decision.to_dict(),
            "capacityOverflow": self.capacity_overflow.to_dict(),
            "workloadCounts": self.workload_counts,
            "longTravelWarning": self.long_travel_warning,
            "workEndTime": self.work_end_time,
            "lunchStartTime": self.lunch_start_time,
            "lunchEndTime": self.lunch_end_time,
        })
        return out

    @classmethod
    def from_dict(cls, data: dict) -> "ScheduleProposal":
        """Rebuild a proposal the portal sent back for applying."""
        ot = data.get("overtimeDecision") or {}
        cap = data.get("capacityOverflow") or {}

        def _phase_ot(raw):
            if not raw:
                return None
            return PhaseOvertime(
                overtime=bool(raw.get("overtime")),
                can_avoid_by_disabling_cojoin=bool(raw.get("canAvoidByDisablingCoJoin")),
                alternative_team_free=bool(raw.get("alternativeTeamFree")),
            )

        return cls(
            order_number=data["orderNumber"],
            setup=PhasePlan.from_dict(SETUP, data) if f"{SETUP}Date" in data else None,
            dismantle=PhasePlan.from_dict(DISMANTLE, data) if f"{DISMANTLE}Date" in data else None,
            distance_km=data.get("distanceKm", 0),
            hub_address=data.get("hubAddress", ""),
            overtime_decision=OvertimeDecision(
                required=bool(ot.get("required")),
                recommendation=ot.get("recommendation", ALLOW_OT),
                message=ot.get("message", ""),
                setup=_phase_ot(ot.get("setup")),
                dismantle=_phase_ot(ot.get("dismantle")),
            ),
            capacity_overflow=CapacityOverflow(
                is_overflow=bool(cap.get("isOverflow")),
                suggested_ot_team=cap.get("suggestedOTTeam"),
                suggested_ot_finish_time=cap.get("suggestedOTFinishTime"),
                message=cap.get("message", ""),
            ),
            workload_counts=data.get("workloadCounts", {}),
            long_travel_warning=bool(data.get("longTravelWarning")),
            work_end_time=data.get("workEndTime", DEFAULT_APP_SETTINGS["work_end_time"]),
            lunch_start_time=data.get("lunchStartTime", DEFAULT_APP_SETTINGS["lunch_start_time"]),
            lunch_end_time=data.get("lunchEndTime", DEFAULT_APP_SETTINGS["lunch_end_time"]),
        )
