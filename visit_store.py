"""
Office visit store.
Keeps at most one visit per calendar day, turns geofence enter/exit into
sessions, and answers month-scoped progress queries.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from calc import GoalCalculator, month_start, tracked_days_remaining
from goal_lock import PastMonthLock
from models import AppSettings, Coordinate, OfficeEvent, OfficeVisit
from schema import (
    LEGACY_CURRENT_VISIT_KEY,
    LEGACY_IN_OFFICE_KEY,
    SETTINGS_KEY,
    VISITS_KEY,
    decode_settings,
    decode_visits,
    encode_settings,
    encode_visits,
    is_current_visits_format,
    merge_legacy_current_visit,
)

logger = logging.getLogger(__name__)

GEOFENCE_ENTER = "enter"
GEOFENCE_EXIT = "exit"


@dataclass
class MonthProgress:
    current: int
    goal: int
    percentage: float


def progress_percentage(current: int, goal: int) -> float:
    """current / goal clamped to [0, 1]; a goal of 0 or less yields 0."""
    if goal <= 0:
        return 0.0
    return max(0.0, min(current / goal, 1.0))


def consolidate_visits(day_visits: List[OfficeVisit]) -> OfficeVisit:
    """
    Merge several records for the same day into one multi-session visit.

    Records are ordered by entry time; the earliest supplies date,
    coordinate and id. Each record becomes one event, open if the record
    had no exit time. An open event followed by a later one is closed at
    the next entry so only the last event can stay open.
    """
    ordered = sorted(day_visits, key=lambda v: v.entry_time)
    base = ordered[0]
    events = [OfficeEvent(entry_time=v.entry_time, exit_time=v.exit_time) for v in ordered]

    for i, event in enumerate(events[:-1]):
        if event.is_open:
            logger.warning("Closing dangling session on %s at next entry %s",
                           base.date, events[i + 1].entry_time)
            events[i] = OfficeEvent(entry_time=event.entry_time, exit_time=events[i + 1].entry_time)

    return OfficeVisit(date=base.date, events=events, coordinate=base.coordinate, id=base.id)


class VisitStore:
    """
    In-memory visit collection persisted to a key-value store.

    Every command is find-by-date, mutate, persist. Persisting is
    fire-and-forget: a failed write is logged and the in-memory state stays
    authoritative.
    """

    def __init__(self, kv, settings: Optional[AppSettings] = None,
                 visits: Optional[List[OfficeVisit]] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 goal_calculator: Optional[GoalCalculator] = None):
        self.kv = kv
        self.settings = settings or AppSettings()
        self.visits: List[OfficeVisit] = list(visits or [])
        self.clock = clock
        self.goal_calculator = goal_calculator or GoalCalculator(PastMonthLock())

    @classmethod
    def load(cls, kv, clock: Optional[Callable[[], datetime]] = None,
             goal_calculator: Optional[GoalCalculator] = None,
             default_timezone: Optional[str] = None) -> "VisitStore":
        """
        Read settings and visits, upgrading and repairing them once.

        Legacy payloads are rewritten in the current format, a legacy
        current-visit snapshot is folded in (or dropped when stale), and
        same-day duplicates are consolidated.

        default_timezone applies only when no settings have been saved yet.
        Legacy visit dates are read in the store's local timezone.
        """
        raw_settings = kv.get(SETTINGS_KEY)
        settings = decode_settings(raw_settings)
        if raw_settings is None and default_timezone:
            settings.timezone = default_timezone

        raw_visits = kv.get(VISITS_KEY)
        store = cls(kv, settings, None, clock, goal_calculator)
        local_tz = store.local_tzinfo()
        store.visits = decode_visits(raw_visits, local_tz)

        needs_save = not is_current_visits_format(raw_visits)
        legacy_snapshot = kv.get(LEGACY_CURRENT_VISIT_KEY)
        if merge_legacy_current_visit(store.visits, legacy_snapshot, store.today(), local_tz):
            needs_save = True
        if legacy_snapshot is not None or kv.get(LEGACY_IN_OFFICE_KEY) is not None:
            store._delete(LEGACY_CURRENT_VISIT_KEY)
            store._delete(LEGACY_IN_OFFICE_KEY)

        if store.cleanup_duplicate_entries() == 0 and needs_save:
            store._save_visits()

        store.apply_goal_locks()
        return store

    # Clock

    def _tzinfo(self):
        try:
            return ZoneInfo(self.settings.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone %r, using UTC", self.settings.timezone)
            return timezone.utc

    def local_tzinfo(self):
        """Zone calendar days are keyed in: the clock's when it is aware."""
        if self.clock is not None:
            tz = self.clock().tzinfo
            if tz is not None:
                return tz
        return self._tzinfo()

    def now(self) -> datetime:
        if self.clock is not None:
            return self.clock()
        return datetime.now(self._tzinfo())

    def today(self) -> date:
        return self.now().date()

    # Persistence

    def _write(self, key: str, value: str) -> None:
        try:
            self.kv.set(key, value)
        except Exception as e:
            logger.error("Failed to persist %s: %s", key, e)

    def _delete(self, key: str) -> None:
        try:
            self.kv.delete(key)
        except Exception as e:
            logger.error("Failed to delete %s: %s", key, e)

    def _save_visits(self) -> None:
        self._write(VISITS_KEY, encode_visits(self.visits))

    def _save_settings(self) -> None:
        self._write(SETTINGS_KEY, encode_settings(self.settings))

    # Lookups

    def _index_for(self, day: date) -> Optional[int]:
        for i, visit in enumerate(self.visits):
            if visit.date == day:
                return i
        return None

    def visit_for(self, day: date) -> Optional[OfficeVisit]:
        idx = self._index_for(day)
        return self.visits[idx] if idx is not None else None

    def current_visit(self) -> Optional[OfficeVisit]:
        """Today's visit while a session is open."""
        visit = self.visit_for(self.today())
        if visit is not None and visit.is_active_session:
            return visit
        return None

    def is_currently_in_office(self) -> bool:
        return self.current_visit() is not None

    # Commands

    def add_or_update(self, visit: OfficeVisit) -> bool:
        """
        Insert a visit or replace the closed visit for the same day.

        Returns:
            False when the day already has an open session (duplicate prevented)
        """
        idx = self._index_for(visit.date)
        if idx is not None:
            if self.visits[idx].is_active_session:
                logger.warning("DUPLICATE PREVENTED: active session already exists for %s", visit.date)
                return False
            self.visits[idx] = visit
            logger.info("Replaced existing visit for %s", visit.date)
        else:
            self.visits.append(visit)
            logger.info("Added new visit for %s", visit.date)

        self._save_visits()
        return True

    def start_visit(self, coordinate: Optional[Coordinate] = None,
                    at: Optional[datetime] = None) -> OfficeVisit:
        """
        Record arrival at the office.

        Re-entering on a day that already has a closed visit opens another
        session on it; arriving while a session is open changes nothing.
        """
        at = at or self.now()
        day = at.date()
        visit = self.visit_for(day)

        if visit is not None and visit.is_active_session:
            logger.info("DUPLICATE PREVENTED: session already active for %s", day)
            return visit

        if visit is not None:
            visit.start_new_session(at)
            logger.info("Resumed office session for %s", day)
        else:
            visit = OfficeVisit(date=day, coordinate=coordinate or Coordinate())
            visit.start_new_session(at)
            self.visits.append(visit)
            logger.info("Started new office session for %s", day)

        self._save_visits()
        return visit

    def _open_visit_for_exit(self, day: date) -> Optional[OfficeVisit]:
        # Sessions that ran past midnight are still closed by the exit
        for candidate in (day, day - timedelta(days=1)):
            visit = self.visit_for(candidate)
            if visit is not None and visit.is_active_session:
                return visit
        return None

    def end_visit(self, at: Optional[datetime] = None) -> Optional[OfficeVisit]:
        """
        Record leaving the office.

        Short visits are kept: a session under the one-hour floor is still
        stored, it just does not count as a valid visit.
        """
        at = at or self.now()
        visit = self._open_visit_for_exit(at.date())
        if visit is None:
            logger.info("No active visit to end")
            return None

        visit.end_current_session(at)
        self._save_visits()

        if visit.is_valid_visit:
            logger.info("Completed valid office session, total %s", visit.formatted_duration)
        else:
            logger.info("Completed session (%s), saved for record", visit.formatted_duration)
        return visit

    def handle_geofence_event(self, kind: str, coordinate: Optional[Coordinate] = None,
                              at: Optional[datetime] = None) -> Optional[OfficeVisit]:
        """
        Route a geofence crossing to start_visit or end_visit.

        Entries reported outside every configured office are ignored when
        offices are configured and a coordinate is given.
        """
        if kind == GEOFENCE_ENTER:
            if (coordinate is not None and self.settings.office_locations
                    and self.settings.office_at(coordinate) is None):
                logger.info("Entry at %s is outside all offices, ignoring", coordinate)
                return None
            return self.start_visit(coordinate, at)
        if kind == GEOFENCE_EXIT:
            return self.end_visit(at)
        logger.warning("Unknown geofence event %r", kind)
        return None

    def delete_visit(self, visit_id: str) -> bool:
        remaining = [v for v in self.visits if v.id != visit_id]
        if len(remaining) == len(self.visits):
            return False
        self.visits = remaining
        self._save_visits()
        return True

    def clear_all_data(self) -> None:
        self.visits = []
        self.settings = AppSettings()
        self._save_visits()
        self._save_settings()

    def update_settings(self, settings: AppSettings) -> None:
        self.settings = settings
        self._save_settings()

    def cleanup_duplicate_entries(self) -> int:
        """
        Consolidate same-day records into single visits.

        Returns:
            Number of records removed
        """
        by_day: Dict[date, List[OfficeVisit]] = {}
        for visit in self.visits:
            by_day.setdefault(visit.date, []).append(visit)

        cleaned = []
        removed = 0
        for day, day_visits in by_day.items():
            if len(day_visits) > 1:
                logger.warning("Found %d visits for %s - consolidating into session",
                               len(day_visits), day)
                cleaned.append(consolidate_visits(day_visits))
                removed += len(day_visits) - 1
            else:
                cleaned.append(day_visits[0])

        if removed:
            self.visits = cleaned
            self._save_visits()
            logger.info("Cleanup complete: consolidated %d duplicate visits", removed)
        return removed

    # Goals

    def monthly_goal(self, for_month: Optional[date] = None) -> int:
        return self.goal_calculator.monthly_goal(self.settings, for_month or self.today())

    def lock_goal(self, for_month: Optional[date] = None, value: Optional[int] = None) -> int:
        goal = self.goal_calculator.lock_goal(self.settings, for_month or self.today(), value)
        self._save_settings()
        return goal

    def unlock_goal(self, for_month: Optional[date] = None) -> bool:
        unlocked = self.goal_calculator.unlock_goal(self.settings, for_month or self.today())
        if unlocked:
            self._save_settings()
        return unlocked

    def apply_goal_locks(self) -> List[str]:
        """Let the lock trigger freeze months that have attendance or PTO data."""
        candidates = {month_start(v.date) for v in self.visits}
        for days in self.settings.pto_sick_days.values():
            candidates.update(month_start(d) for d in days)
        locked = self.goal_calculator.apply_locks(self.settings, self.today(), candidates)
        if locked:
            self._save_settings()
        return locked

    # Queries

    def visits_for_month(self, month: date) -> List[OfficeVisit]:
        return [v for v in self.visits if v.date.year == month.year and v.date.month == month.month]

    def valid_visits_for_month(self, month: date) -> List[OfficeVisit]:
        return [v for v in self.visits_for_month(month) if v.is_valid_visit]

    def month_progress(self, today: Optional[date] = None) -> MonthProgress:
        """Valid or in-progress visits this month against the month's goal."""
        today = today or self.today()
        current = sum(1 for v in self.visits_for_month(today) if v.is_valid_visit or v.is_active_session)
        goal = self.monthly_goal(today)
        return MonthProgress(current=current, goal=goal, percentage=progress_percentage(current, goal))

    def weekly_progress(self, today: Optional[date] = None) -> int:
        """Valid or in-progress visits since Monday."""
        today = today or self.today()
        week_start = today - timedelta(days=today.weekday())
        return sum(
            1 for v in self.visits
            if week_start <= v.date <= today and (v.is_valid_visit or v.is_active_session)
        )

    def average_duration_hours(self, today: Optional[date] = None) -> float:
        valid = self.valid_visits_for_month(today or self.today())
        if not valid:
            return 0.0
        return sum(v.duration for v in valid) / len(valid) / 3600

    def days_remaining_in_month(self, today: Optional[date] = None) -> int:
        return tracked_days_remaining(self.settings, today or self.today())

    def pace_needed(self, current: int, goal: int, today: Optional[date] = None) -> str:
        """Office days per week needed to reach the goal by month end."""
        remaining = max(0, goal - current)
        days_left = self.days_remaining_in_month(today)
        if remaining <= 0:
            return "Goal complete!"
        if days_left <= 0:
            return "0.0 days/week"

        per_week = len(set(self.settings.tracking_days))
        if per_week == 0:
            return "No tracking days set"

        weekly_rate = remaining / days_left * per_week
        if weekly_rate > per_week:
            return "Goal unreachable"
        return f"{weekly_rate:.1f} days/week"

    def status_message(self, current: int, goal: int) -> str:
        remaining = max(0, goal - current)
        if remaining == 0:
            return "Goal achieved! 🎉"
        if self.is_currently_in_office():
            return "Currently in office"
        if remaining == 1:
            return "1 more day needed"
        return f"{remaining} more days needed"
