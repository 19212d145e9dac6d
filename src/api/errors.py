# errors.py
#
# Exceptions raised by the scheduling layer. The web app turns these into
# HTTP responses; conflicts found while *proposing* are returned as data,
# these are only for things the caller has to act on.

from typing import List


class SchedulingError(Exception):
    """Base class for scheduler errors."""


class OrderNotFoundError(SchedulingError):
    def __init__(self, order_number: str):
        super().__init__(f"Order {order_number} not found")
        self.order_number = order_number


class InvalidOrderError(SchedulingError):
    """Order is missing something scheduling needs (e.g. a setup date)."""


class ScheduleClashError(SchedulingError):
    """
    Commit-time double booking. `clashes` holds one message per clash,
    e.g. "SETUP: Team A clashes with SO-12 (dismantle)".
    """

    def __init__(self, order_number: str, clashes: List[str]):
        super().__init__(f"Schedule for {order_number} clashes: " + "; ".join(clashes))
        self.order_number = order_number
        self.clashes = list(clashes)


class OvertimeNotAcceptedError(SchedulingError):
    def __init__(self, order_number: str, phases: List[str]):
        super().__init__(
            f"Schedule for {order_number} runs into overtime ({', '.join(phases)}); "
            "overtime must be accepted explicitly"
        )
        self.order_number = order_number
        self.phases = list(phases)


class NoTasksForRouteError(SchedulingError):
    def __init__(self, team: str, date: str):
        super().__init__(f"No tasks found for {team} on {date}")
        self.team = team
        self.date = date
