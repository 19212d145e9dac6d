import logging

from fastapi import FastAPI, HTTPException, Request

from src import logging_config  # noqa: F401  (configures logging on import)
from src.db import (
    delete_order,
    get_all_orders,
    get_order,
    get_reconciliation,
    init_db,
    load_settings,
    next_ad_hoc_number,
    resolve_reconciliation,
    save_order,
    save_settings,
)
from src.api.cojoin import AUTO_AVOID_OT, COJOIN_STRATEGIES
from src.api.commit import apply_schedule_proposal
from src.api.distance import (
    GEOCODE_FAILED,
    NOT_CONFIGURED,
    ROUTE_FAILED,
    UNAVAILABLE,
    DistanceClient,
    make_distance_lookup,
)
from src.api.errors import (
    InvalidOrderError,
    NoTasksForRouteError,
    OrderNotFoundError,
    OvertimeNotAcceptedError,
    ScheduleClashError,
)
from src.api.models import FLEXIBLE, STRICT, AISettings, AppSettings, ScheduleProposal
from src.api.order_flow import STATUSES, customer_address
from src.api.route_optimizer import apply_optimized_route, optimize_daily_route
from src.api.scheduler import deploy_new_team, run_ai_schedule
from src.api.workload import TEAMS, find_schedule_clashes, get_team_job_counts

logger = logging.getLogger(__name__)

init_db()

# -------------------
# CONFIG / GLOBALS
# -------------------
app = FastAPI(title="Event Rental Scheduler")
DISTANCE = DistanceClient()

DISTANCE_ERROR_STATUS = {
    NOT_CONFIGURED: 500,
    GEOCODE_FAILED: 400,
    ROUTE_FAILED: 404,
    UNAVAILABLE: 502,
}


def get_distance_lookup():
    """Site-to-site lookup for co-join and routing; None when no API key is set."""
    return make_distance_lookup(DISTANCE) if DISTANCE.configured else None


def current_settings():
    return AISettings.from_dict(load_settings("ai")), AppSettings.from_dict(load_settings("app"))


async def read_body(request: Request) -> dict:
    if not await request.body():
        return {}
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Empty or invalid payload")
    return data


def check_status(data: dict):
    status = data.get("status")
    if status is not None and status not in STATUSES:
        raise HTTPException(status_code=400, detail=f"Unknown status: {status}")


def check_clashes(data: dict):
    """Manual edits go through the same no-overlap guard as a commit."""
    schedule = data.get("schedule")
    if schedule is not None and not (
        isinstance(schedule, dict) and all(isinstance(r, dict) or r is None for r in schedule.values())
    ):
        raise HTTPException(status_code=400, detail="Invalid schedule")
    others = [o for o in get_all_orders() if o.get("order_number") != data.get("order_number")]
    clashes = find_schedule_clashes(data, others)
    if clashes:
        logger.warning(f"Rejected save of {data.get('order_number')}: {clashes}")
        raise HTTPException(
            status_code=409,
            detail={"message": "Schedule clashes with existing bookings", "clashes": clashes},
        )


def require_order(order_number: str) -> dict:
    order = get_order(order_number)
    if order is None:
        raise HTTPException(status_code=404, detail=f"Order {order_number} not found")
    return order


def window_mode(data: dict) -> str:
    return STRICT if str(data.get("timeWindowMode") or FLEXIBLE).lower() == STRICT else FLEXIBLE


# -------------------
# DISTANCE
# -------------------
@app.post("/calculate-distance")
async def calculate_distance(request: Request):
    """
    Payload: {"fromAddress": "...", "toAddress": "..."}
    Returns distance (km), duration (minutes) and a static map URL.
    """
    data = await read_body(request)
    from_address = (data.get("fromAddress") or "").strip()
    to_address = (data.get("toAddress") or "").strip()
    if not from_address or not to_address:
        raise HTTPException(status_code=400, detail="Missing fromAddress or toAddress")

    result = await DISTANCE.calculate(from_address, to_address)
    if not result.get("success"):
        status = DISTANCE_ERROR_STATUS.get(result.get("code"), 500)
        raise HTTPException(status_code=status, detail=result.get("error", "Distance calculation failed"))
    return result


# -------------------
# ORDERS
# -------------------
@app.get("/orders")
async def list_orders():
    return {"orders": get_all_orders()}


@app.post("/orders")
async def create_order(request: Request):
    data = await read_body(request)
    if not data.get("order_number"):
        if data.get("order_source") != "ad-hoc":
            raise HTTPException(status_code=400, detail="Missing order_number")
        data["order_number"] = next_ad_hoc_number()
    if get_order(data["order_number"]) is not None:
        raise HTTPException(status_code=409, detail=f"Order {data['order_number']} already exists")
    data.setdefault("status", "draft")
    check_status(data)
    check_clashes(data)
    return save_order(data)


@app.get("/orders/{order_number}")
async def read_order(order_number: str):
    return require_order(order_number)


@app.put("/orders/{order_number}")
async def update_order(order_number: str, request: Request):
    data = await read_body(request)
    data["order_number"] = order_number
    check_status(data)
    check_clashes(data)
    return save_order(data)


@app.delete("/orders/{order_number}")
async def remove_order(order_number: str):
    if not delete_order(order_number):
        raise HTTPException(status_code=404, detail=f"Order {order_number} not found")
    return {"deleted": order_number}


# -------------------
# AI SCHEDULING
# -------------------
async def resolve_distance_km(data: dict, order: dict, ai_settings: AISettings):
    """Hub -> site km from the request, else from the distance service, else None."""
    if data.get("distanceKm") is not None:
        return data.get("distanceKm")
    destination = customer_address(order)
    if not destination or not DISTANCE.configured:
        return None
    result = await DISTANCE.calculate(ai_settings.hub_address, destination)
    if not result.get("success"):
        logger.warning(f"Hub distance for {order.get('order_number')} unavailable: {result.get('error')}")
        return None
    return result["distance"]["km"]


@app.post("/orders/{order_number}/ai-schedule")
async def ai_schedule(order_number: str, request: Request):
    """
    Payload (all optional):
    {
        "distanceKm": 12.5,
        "allowCoJoin": true,
        "excludedTeams": ["Team C"],
        "preferredSetupTeam": "Team A",
        "preferredDismantleTeam": null,
        "timeWindowMode": "flexible",
        "coJoinStrategy": "auto-avoid-ot"
    }
    """
    data = await read_body(request)
    order = require_order(order_number)
    ai_settings, app_settings = current_settings()

    strategy = data.get("coJoinStrategy") or AUTO_AVOID_OT
    if strategy not in COJOIN_STRATEGIES:
        raise HTTPException(status_code=400, detail=f"Unknown coJoinStrategy: {strategy}")

    try:
        distance_km = await resolve_distance_km(data, order, ai_settings)
        proposal = await run_ai_schedule(
            order,
            get_all_orders(),
            ai_settings,
            app_settings,
            distance_km,
            allow_cojoin=bool(data.get("allowCoJoin", True)),
            excluded_teams=data.get("excludedTeams") or [],
            preferred_setup_team=data.get("preferredSetupTeam"),
            preferred_dismantle_team=data.get("preferredDismantleTeam"),
            time_window_mode=window_mode(data),
            cojoin_strategy=strategy,
            distance_lookup=get_distance_lookup(),
        )
    except InvalidOrderError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        logger.exception(f"AI scheduling failed for {order_number}")
        raise HTTPException(status_code=500, detail="AI scheduling failed, please retry")

    return proposal.to_dict()


@app.post("/orders/{order_number}/ai-schedule/deploy-new-team")
async def ai_schedule_deploy_new_team(order_number: str, request: Request):
    """
    Payload: {"proposal": {...}, "distanceKm": 12.5, "excludedTeams": [...], "timeWindowMode": "..."}
    Reruns without co-join and without the proposal's teams.
    """
    data = await read_body(request)
    order = require_order(order_number)
    if not data.get("proposal"):
        raise HTTPException(status_code=400, detail="Missing proposal")
    ai_settings, app_settings = current_settings()

    try:
        proposal = ScheduleProposal.from_dict(data["proposal"])
    except (KeyError, TypeError, ValueError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid proposal: {e}")

    try:
        distance_km = await resolve_distance_km(data, order, ai_settings)
        alternative, comparison = await deploy_new_team(
            order,
            get_all_orders(),
            ai_settings,
            app_settings,
            distance_km if distance_km is not None else proposal.distance_km,
            proposal,
            excluded_teams=data.get("excludedTeams") or [],
            time_window_mode=window_mode(data),
            distance_lookup=get_distance_lookup(),
        )
    except InvalidOrderError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        logger.exception(f"Deploy-new-team scheduling failed for {order_number}")
        raise HTTPException(status_code=500, detail="AI scheduling failed, please retry")

    return {"alternative": alternative.to_dict(), "comparison": comparison}


@app.post("/orders/{order_number}/schedule/apply")
async def schedule_apply(order_number: str, request: Request):
    """
    Payload: {"proposal": {...}, "acceptCoJoin": true, "acceptOvertime": false}
    """
    data = await read_body(request)
    if not data.get("proposal"):
        raise HTTPException(status_code=400, detail="Missing proposal")
    try:
        proposal = ScheduleProposal.from_dict(data["proposal"])
    except (KeyError, TypeError, ValueError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid proposal: {e}")
    if proposal.order_number != order_number:
        raise HTTPException(status_code=400, detail="Proposal is for a different order")

    ai_settings, _ = current_settings()
    try:
        outcome = apply_schedule_proposal(
            order_number,
            proposal,
            accept_cojoin=bool(data.get("acceptCoJoin", True)),
            accept_overtime=bool(data.get("acceptOvertime", False)),
            ai_settings=ai_settings,
        )
    except OrderNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except OvertimeNotAcceptedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ScheduleClashError as e:
        raise HTTPException(status_code=409, detail={"message": str(e), "clashes": e.clashes})

    return outcome.to_dict()


@app.post("/orders/{order_number}/schedule/check")
async def schedule_check(order_number: str, request: Request):
    """
    Clash check for a manual edit. Payload: {"schedule": {"setup": {...}, "dismantle": {...}}}
    """
    data = await read_body(request)
    order = dict(require_order(order_number))
    if isinstance(data.get("schedule"), dict):
        order["schedule"] = {**(order.get("schedule") or {}), **data["schedule"]}
    others = [o for o in get_all_orders() if o.get("order_number") != order_number]
    clashes = find_schedule_clashes(order, others)
    return {"ok": not clashes, "clashes": clashes}


@app.get("/workload")
async def workload(date: str):
    return {"date": date, "counts": get_team_job_counts(date, get_all_orders())}


# -------------------
# DAILY ROUTES
# -------------------
def require_team(team: str) -> str:
    if team not in TEAMS:
        raise HTTPException(status_code=404, detail=f"Unknown team: {team}")
    return team


async def optimize_route(team: str, date: str, start: str = None):
    ai_settings, _ = current_settings()
    try:
        return await optimize_daily_route(
            require_team(team), date, get_all_orders(), ai_settings, get_distance_lookup(), starting_address=start,
        )
    except NoTasksForRouteError as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.get("/teams/{team}/route")
async def team_route(team: str, date: str, start: str = None):
    optimization = await optimize_route(team, date, start)
    return optimization.to_dict()


@app.post("/teams/{team}/route/apply")
async def team_route_apply(team: str, request: Request):
    """
    Payload: {"date": "2026-03-14", "start": "optional starting address"}
    """
    data = await read_body(request)
    if not data.get("date"):
        raise HTTPException(status_code=400, detail="Missing date")
    optimization = await optimize_route(team, data["date"], data.get("start"))
    results = apply_optimized_route(optimization)
    return {"optimization": optimization.to_dict(), "results": [r.to_dict() for r in results]}


# -------------------
# SETTINGS
# -------------------
@app.get("/settings")
async def get_settings():
    ai_settings, app_settings = current_settings()
    return {"ai": ai_settings.to_dict(), "app": app_settings.to_dict()}


@app.put("/settings")
async def put_settings(request: Request):
    data = await read_body(request)
    if "ai" in data:
        save_settings("ai", AISettings.from_dict(data["ai"]).to_dict())
    if "app" in data:
        save_settings("app", AppSettings.from_dict(data["app"]).to_dict())
    return await get_settings()


# -------------------
# RECONCILIATION
# -------------------
@app.get("/reconciliation")
async def list_reconciliation(include_resolved: bool = False):
    return {"entries": get_reconciliation(include_resolved)}


@app.post("/reconciliation/{entry_id}/resolve")
async def resolve_reconciliation_entry(entry_id: int):
    if not resolve_reconciliation(entry_id):
        raise HTTPException(status_code=404, detail=f"Reconciliation entry {entry_id} not found")
    return {"resolved": entry_id}
