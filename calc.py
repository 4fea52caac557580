"""
Calendar utilities and goal calculation for office tracking.
Pure functions for month math and the monthly in-office goal.
"""

import calendar
import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Iterable, List, Optional

from models import AppSettings

logger = logging.getLogger(__name__)


def month_key(day: date) -> str:
    """Month key in the persisted "YYYY-MM" format."""
    return f"{day.year:04d}-{day.month:02d}"


def month_start(day: date) -> date:
    return day.replace(day=1)


def month_days(year: int, month: int) -> List[date]:
    """Every calendar day of a month."""
    return [date(year, month, d) for d in range(1, calendar.monthrange(year, month)[1] + 1)]


def tracking_weekday(day: date) -> int:
    """Weekday number used by tracking_days: 1=Sunday ... 7=Saturday."""
    return day.isoweekday() % 7 + 1


def month_grid(year: int, month: int) -> List[List[Optional[date]]]:
    """
    Generate a calendar grid for the given month.

    Args:
        year: Year (e.g., 2024)
        month: Month (1-12)

    Returns:
        List of weeks, each containing 7 days (None for empty cells)
    """
    grid = []
    for week in calendar.monthcalendar(year, month):
        grid.append([date(year, month, day) if day else None for day in week])
    return grid


def weekdays_in_month(settings: AppSettings, for_month: date) -> int:
    """Count of days in the month that fall on a tracked weekday."""
    tracked = set(settings.tracking_days)
    return sum(1 for day in month_days(for_month.year, for_month.month)
               if tracking_weekday(day) in tracked)


def holidays_in_month(settings: AppSettings, for_month: date) -> List[date]:
    """Resolved holidays in the month, limited to tracked weekdays."""
    tracked = set(settings.tracking_days)
    return [
        day for day in settings.holiday_calendar.holidays_in_month(for_month.year, for_month.month)
        if tracking_weekday(day) in tracked
    ]


def pto_days(settings: AppSettings, for_month: date) -> List[date]:
    return list(settings.pto_sick_days.get(month_key(for_month), []))


@dataclass
class GoalCalculationBreakdown:
    """Step-by-step figures behind an automatically calculated goal."""
    weekdays_in_month: int
    holidays: List[date] = field(default_factory=list)
    business_days: int = 0
    pto_days: List[date] = field(default_factory=list)
    working_days: int = 0
    policy_percentage: float = 0.0
    required_days: int = 0
    is_locked: bool = False

    @property
    def holiday_count(self) -> int:
        return len(self.holidays)

    @property
    def pto_count(self) -> int:
        return len(self.pto_days)

    @property
    def percentage_string(self) -> str:
        return f"{round(self.policy_percentage * 100)}%"

    @property
    def formula_description(self) -> str:
        if self.pto_count > 0:
            return (f"({self.business_days} business days − {self.pto_count} PTO) "
                    f"× {self.percentage_string} = {self.required_days}")
        return f"{self.business_days} business days × {self.percentage_string} = {self.required_days}"


def goal_breakdown(settings: AppSettings, for_month: date) -> GoalCalculationBreakdown:
    """
    Compute the policy-based goal for a month and every step leading to it.

    Locks are not consulted here: the breakdown always reflects current
    settings. is_locked tells the caller a different value is in force.

    Args:
        settings: User settings
        for_month: Any date in the target month

    Returns:
        GoalCalculationBreakdown for the month
    """
    weekdays = weekdays_in_month(settings, for_month)
    holidays = holidays_in_month(settings, for_month)
    business_days = max(0, weekdays - len(holidays))
    pto = pto_days(settings, for_month)
    working_days = max(0, business_days - len(pto))
    policy = settings.company_policy

    return GoalCalculationBreakdown(
        weekdays_in_month=weekdays,
        holidays=holidays,
        business_days=business_days,
        pto_days=pto,
        working_days=working_days,
        policy_percentage=policy.required_percentage,
        required_days=policy.required_days(working_days),
        is_locked=month_key(for_month) in settings.locked_monthly_goals,
    )


def monthly_goal(settings: AppSettings, for_month: date) -> int:
    """
    Effective in-office goal for a month.

    A locked goal wins over everything; otherwise manual mode returns the
    configured constant and auto mode derives it from the calendar, holidays,
    PTO and company policy.
    """
    locked = settings.locked_monthly_goals.get(month_key(for_month))
    if locked is not None:
        return locked
    if not settings.auto_calculate_goal:
        return settings.monthly_goal
    return goal_breakdown(settings, for_month).required_days


class GoalCalculator:
    """
    Monthly goal with lock management.

    lock_trigger decides which months get frozen automatically (see
    goal_lock). Without one only explicit lock_goal calls lock a month.
    """

    def __init__(self, lock_trigger=None):
        self.lock_trigger = lock_trigger

    def monthly_goal(self, settings: AppSettings, for_month: date) -> int:
        return monthly_goal(settings, for_month)

    def breakdown(self, settings: AppSettings, for_month: date) -> GoalCalculationBreakdown:
        return goal_breakdown(settings, for_month)

    def lock_goal(self, settings: AppSettings, for_month: date, value: Optional[int] = None) -> int:
        """Freeze the month's goal at its current (or an explicit) value."""
        key = month_key(for_month)
        goal = monthly_goal(settings, for_month) if value is None else max(0, int(value))
        settings.locked_monthly_goals[key] = goal
        logger.info("Locked goal for %s at %d", key, goal)
        return goal

    def unlock_goal(self, settings: AppSettings, for_month: date) -> bool:
        removed = settings.locked_monthly_goals.pop(month_key(for_month), None)
        return removed is not None

    def apply_locks(self, settings: AppSettings, today: date,
                    candidate_months: Iterable[date] = ()) -> List[str]:
        """
        Ask the lock trigger which months to freeze and lock them.

        Returns:
            Month keys that were newly locked
        """
        if self.lock_trigger is None or not settings.auto_calculate_goal:
            return []
        newly_locked = []
        for month in self.lock_trigger.months_to_lock(settings, today, candidate_months):
            if month_key(month) in settings.locked_monthly_goals:
                continue
            self.lock_goal(settings, month)
            newly_locked.append(month_key(month))
        return newly_locked


def get_month_name(month: int) -> str:
    """Get full month name from month number."""
    return calendar.month_name[month]


def add_months(source_date: date, months: int) -> date:
    """Add months to a date, handling edge cases."""
    month = source_date.month - 1 + months
    year = source_date.year + month // 12
    month = month % 12 + 1
    day = min(source_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def tracked_days_remaining(settings: AppSettings, today: date) -> int:
    """Tracked weekdays from today (inclusive) to the end of the month."""
    tracked = set(settings.tracking_days)
    last = date(today.year, today.month, calendar.monthrange(today.year, today.month)[1])
    count = 0
    day = today
    while day <= last:
        if tracking_weekday(day) in tracked:
            count += 1
        day += timedelta(days=1)
    return count
