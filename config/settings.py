# config/settings.py
#
#   loading environment variables (API keys, db path) from .env
#   and the default scheduling settings used when nothing is saved yet

import os
from dotenv import load_dotenv

load_dotenv()  # loads .env into environment


# storage
DB_PATH = os.getenv("DB_PATH", "rental_scheduler.db")
APP_TIMEZONE = os.getenv("APP_TIMEZONE", "Asia/Kuala_Lumpur")

# geoapify distance / routing (optional - scheduling works without it)
GEOAPIFY_API_KEY = os.getenv("GEOAPIFY_API_KEY")
GEOAPIFY_API_BASE = os.getenv("GEOAPIFY_API_BASE", "https://api.geoapify.com/v1")
DISTANCE_TIMEOUT_SECONDS = float(os.getenv("DISTANCE_TIMEOUT_SECONDS", "10"))

# "nearest-neighbor" or "none"
ROUTE_OPTIMIZATION_MODE = os.getenv("ROUTE_OPTIMIZATION_MODE", "nearest-neighbor")


# ---------------------------------------------------------------
# Defaults for AI + app settings (overridden by the settings table)
# ---------------------------------------------------------------
DEFAULT_HUB_ADDRESS = (
    "2A, PERSIARAN KILANG PENGKALAN 28, KAWASAN PERINDUSTRIAN PENGKALAN MAJU LAHAT, "
    "31500 Ipoh, Perak"
)

DEFAULT_AI_SETTINGS = {
    "hub_address": DEFAULT_HUB_ADDRESS,
    "buffer_time_minutes": 30,
    "minutes_per_km": 3,
    "radius_km": 10,
    "waiting_hours": 1.5,
}

DEFAULT_INVENTORY_TASK_TIMES = {
    # tents
    "tent-10x10": {"setup_mins": 30, "dismantle_mins": 20},
    "tent-20x20": {"setup_mins": 35, "dismantle_mins": 25},
    "tent-20x30": {"setup_mins": 40, "dismantle_mins": 30},
    # tables & chairs
    "table-set": {"setup_mins": 8, "dismantle_mins": 8},
    "long-table": {"setup_mins": 8, "dismantle_mins": 8},
    "long-table-skirting": {"setup_mins": 16, "dismantle_mins": 12},
    "extra-chair": {"setup_mins": 2, "dismantle_mins": 4},
    # equipment
    "cooler-fan": {"setup_mins": 10, "dismantle_mins": 10},
}

DEFAULT_APP_SETTINGS = {
    "tent10x10_minutes": 30,
    "tent20x20_minutes": 35,
    "tent20x30_minutes": 40,
    "inventory_task_times_by_id": DEFAULT_INVENTORY_TASK_TIMES,
    "sunday_ot_fee": 300,
    "work_start_time": "08:00",
    "work_end_time": "16:30",
    "lunch_start_time": "13:00",
    "lunch_end_time": "14:00",
}

# warning thresholds used in the reasoning trail
LONG_TRAVEL_KM = 30
OVERLOADED_TEAM_TASKS = 4
