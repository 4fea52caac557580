"""
Strategies deciding when a month's goal gets frozen.

A locked goal stops later policy, holiday or PTO edits from rewriting a
month that is already under way or finished. GoalCalculator.apply_locks
asks one of these which months to lock.
"""

from abc import ABC, abstractmethod
from datetime import date
from typing import Iterable, List

from calc import month_start
from models import AppSettings


class GoalLockTrigger(ABC):

    @abstractmethod
    def months_to_lock(self, settings: AppSettings, today: date,
                       candidate_months: Iterable[date]) -> List[date]:
        """Month starts whose goal should be frozen now."""
        raise NotImplementedError


class NeverLock(GoalLockTrigger):
    """Only explicit lock_goal calls freeze a month."""

    def months_to_lock(self, settings: AppSettings, today: date,
                       candidate_months: Iterable[date]) -> List[date]:
        return []


class PastMonthLock(GoalLockTrigger):
    """
    Lock at month rollover.

    Every candidate month strictly before today's month is frozen the first
    time the store runs after the boundary is crossed.
    """

    def months_to_lock(self, settings: AppSettings, today: date,
                       candidate_months: Iterable[date]) -> List[date]:
        current = month_start(today)
        return sorted({month_start(m) for m in candidate_months if month_start(m) < current})


class FirstComputationLock(PastMonthLock):
    """Like PastMonthLock, and also freezes the current month right away."""

    def months_to_lock(self, settings: AppSettings, today: date,
                       candidate_months: Iterable[date]) -> List[date]:
        months = set(super().months_to_lock(settings, today, candidate_months))
        months.add(month_start(today))
        return sorted(months)
