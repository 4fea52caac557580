"""
Progress snapshot for read-only consumers (home/lock screen widgets).

The app publishes a snapshot after every change; readers never touch the
visit store. A snapshot older than 24 hours is not trusted to say whether
the user is in the office.
"""

import json
import logging
import math
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timedelta
from typing import Optional

from calc import get_month_name
from schema import WIDGET_DATA_KEY
from visit_store import VisitStore

logger = logging.getLogger(__name__)

STALE_AFTER = timedelta(hours=24)


@dataclass(frozen=True)
class WidgetData:
    current: int
    goal: int
    percentage: float
    month_name: str
    is_currently_in_office: bool
    current_visit_duration: Optional[float]
    weekly_progress: int
    average_duration: float
    days_remaining: int
    pace_needed: str
    last_updated: datetime
    status_message: str
    days_left_in_month: int

    @property
    def safe_percentage(self) -> float:
        if not math.isfinite(self.percentage) or self.percentage < 0:
            return 0.0
        return min(self.percentage, 1.0)

    @property
    def safe_percentage_display(self) -> int:
        return max(0, min(100, int(self.safe_percentage * 100)))

    @property
    def is_goal_complete(self) -> bool:
        return self.current >= self.goal

    def is_stale(self, now: datetime) -> bool:
        return now - self.last_updated > STALE_AFTER

    def to_json(self) -> str:
        data = asdict(self)
        data['last_updated'] = self.last_updated.isoformat()
        return json.dumps(data)

    @classmethod
    def from_json(cls, raw: str) -> "WidgetData":
        data = json.loads(raw)
        data['last_updated'] = datetime.fromisoformat(data['last_updated'])
        return cls(**data)


def no_data(now: datetime, goal: int = 12) -> WidgetData:
    """Placeholder shown before the app has published anything."""
    return WidgetData(
        current=0,
        goal=goal,
        percentage=0.0,
        month_name=f"{get_month_name(now.month)} {now.year}",
        is_currently_in_office=False,
        current_visit_duration=None,
        weekly_progress=0,
        average_duration=0.0,
        days_remaining=goal,
        pace_needed="Open app to start",
        last_updated=now,
        status_message=f"{goal} more days needed",
        days_left_in_month=0,
    )


def build_widget_data(store: VisitStore) -> WidgetData:
    """Snapshot the store's current month for widget rendering."""
    now = store.now()
    today = now.date()
    progress = store.month_progress(today)
    current_visit = store.current_visit()

    return WidgetData(
        current=progress.current,
        goal=progress.goal,
        percentage=progress.percentage,
        month_name=f"{get_month_name(today.month)} {today.year}",
        is_currently_in_office=current_visit is not None,
        current_visit_duration=(
            (now - current_visit.entry_time).total_seconds() if current_visit else None
        ),
        weekly_progress=store.weekly_progress(today),
        average_duration=store.average_duration_hours(today),
        days_remaining=max(0, progress.goal - progress.current),
        pace_needed=store.pace_needed(progress.current, progress.goal, today),
        last_updated=now,
        status_message=store.status_message(progress.current, progress.goal),
        days_left_in_month=store.days_remaining_in_month(today),
    )


def publish_widget_data(store: VisitStore) -> WidgetData:
    """Build a snapshot and write it to the shared store (fire-and-forget)."""
    data = build_widget_data(store)
    try:
        store.kv.set(WIDGET_DATA_KEY, data.to_json())
    except Exception as e:
        logger.error("Failed to publish widget data: %s", e)
    return data


def read_widget_data(kv, now: datetime) -> WidgetData:
    """
    Read the published snapshot.

    Missing or unreadable snapshots yield the no-data placeholder. Stale
    ones keep their counts but drop the in-office flag.
    """
    raw = kv.get(WIDGET_DATA_KEY)
    if not raw:
        logger.info("No widget data published yet")
        return no_data(now)

    try:
        data = WidgetData.from_json(raw)
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        logger.error("Failed to decode widget data: %s", e)
        return no_data(now)

    if data.is_stale(now):
        logger.warning("Widget data is stale (>24h old)")
        return replace(
            data,
            is_currently_in_office=False,
            current_visit_duration=None,
            pace_needed="Open app to refresh",
        )
    return data
