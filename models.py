"""
Domain models for office attendance tracking.
Visits and their entry/exit sessions, company policy and user settings.
"""

import logging
import math
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from holiday_calendar import HolidayCalendar

logger = logging.getLogger(__name__)

# Minimum total time on site for a day to count toward the goal
VALID_VISIT_SECONDS = 3600

EARTH_RADIUS_M = 6_371_000.0


@dataclass(frozen=True)
class Coordinate:
    """
    Latitude/longitude pair.

    Out-of-range or non-finite values are replaced with (0, 0) rather than
    rejected, so a bad fix from the location provider never blocks storage.
    """
    latitude: float = 0.0
    longitude: float = 0.0

    def __post_init__(self):
        valid = is_valid_coordinate(self.latitude, self.longitude)
        object.__setattr__(self, 'latitude', float(self.latitude) if valid else 0.0)
        object.__setattr__(self, 'longitude', float(self.longitude) if valid else 0.0)

    def to_dict(self) -> Dict[str, float]:
        return {'latitude': self.latitude, 'longitude': self.longitude}


def is_valid_coordinate(latitude: Any, longitude: Any) -> bool:
    try:
        lat = float(latitude)
        lon = float(longitude)
    except (TypeError, ValueError):
        return False
    return (
        math.isfinite(lat) and math.isfinite(lon)
        and -90 <= lat <= 90 and -180 <= lon <= 180
    )


def haversine_m(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance in meters."""
    phi1 = math.radians(a.latitude)
    phi2 = math.radians(b.latitude)
    d_phi = math.radians(b.latitude - a.latitude)
    d_lambda = math.radians(b.longitude - a.longitude)

    h = math.sin(d_phi / 2.0) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2.0) ** 2
    return EARTH_RADIUS_M * 2.0 * math.atan2(math.sqrt(h), math.sqrt(1.0 - h))


@dataclass(frozen=True)
class OfficeEvent:
    """One contiguous presence interval. exit_time None means still inside."""
    entry_time: datetime
    exit_time: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.exit_time is None

    @property
    def duration(self) -> Optional[float]:
        """Seconds between entry and exit, None while open."""
        if self.exit_time is None:
            return None
        return (self.exit_time - self.entry_time).total_seconds()

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            'entry_time': self.entry_time.isoformat(),
            'exit_time': self.exit_time.isoformat() if self.exit_time else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OfficeEvent":
        entry = data.get('entry_time', data.get('entryTime'))
        exit_ = data.get('exit_time', data.get('exitTime'))
        return cls(
            entry_time=datetime.fromisoformat(entry),
            exit_time=datetime.fromisoformat(exit_) if exit_ else None,
        )


@dataclass
class OfficeVisit:
    """
    A calendar day's office attendance.

    A day may hold several sessions (events) when the user leaves and comes
    back. At most one event, the last one, is ever open.
    """
    date: date
    events: List[OfficeEvent] = field(default_factory=list)
    coordinate: Coordinate = field(default_factory=Coordinate)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def is_active_session(self) -> bool:
        return bool(self.events) and self.events[-1].is_open

    @property
    def duration(self) -> Optional[float]:
        """Total seconds across all sessions, None if empty or still in progress."""
        if not self.events or any(event.is_open for event in self.events):
            return None
        return sum(event.duration for event in self.events)

    @property
    def is_valid_visit(self) -> bool:
        duration = self.duration
        return duration is not None and duration >= VALID_VISIT_SECONDS

    @property
    def entry_time(self) -> datetime:
        if self.events:
            return self.events[0].entry_time
        return datetime.combine(self.date, time.min)

    @property
    def exit_time(self) -> Optional[datetime]:
        if not self.events or any(e.is_open for e in self.events):
            return None
        return self.events[-1].exit_time

    @property
    def day_of_week(self) -> str:
        return self.date.strftime('%A')

    @property
    def formatted_duration(self) -> str:
        duration = self.duration
        if duration is None:
            return "In progress"
        if not math.isfinite(duration) or duration < 0:
            return "Invalid duration"
        hours = int(duration // 3600)
        minutes = int((duration % 3600) // 60)
        return f"{hours}h {minutes}m"

    # Session management

    def start_new_session(self, at: datetime) -> bool:
        """
        Open a new session.

        Does nothing and returns False while a session is already open, so a
        visit never holds two open events. A start time earlier than the last
        recorded instant is clamped to it.
        """
        if self.is_active_session:
            logger.info("Session already open for %s, start ignored", self.date)
            return False
        if self.events:
            last = self.events[-1]
            floor = last.exit_time or last.entry_time
            if at < floor:
                logger.warning("Start time %s precedes last event, clamping to %s", at, floor)
                at = floor
        self.events.append(OfficeEvent(entry_time=at))
        return True

    def end_current_session(self, at: datetime) -> bool:
        """Close the open session. Returns False when nothing was open."""
        if not self.is_active_session:
            return False
        current = self.events[-1]
        if at < current.entry_time:
            logger.warning("Exit time %s precedes entry %s, clamping", at, current.entry_time)
            at = current.entry_time
        self.events[-1] = replace(current, exit_time=at)
        return True

    def resume_session(self, at: datetime) -> None:
        """Close and immediately reopen at the same instant."""
        self.end_current_session(at)
        self.start_new_session(at)

    def to_dict(self) -> Dict[str, Any]:
        data = {'id': self.id, 'date': self.date.isoformat()}
        data.update(self.coordinate.to_dict())
        data['events'] = [event.to_dict() for event in self.events]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OfficeVisit":
        return cls(
            id=data.get('id') or str(uuid.uuid4()),
            date=date.fromisoformat(data['date'][:10]),
            events=[OfficeEvent.from_dict(e) for e in data.get('events', [])],
            coordinate=Coordinate(data.get('latitude', 0.0), data.get('longitude', 0.0)),
        )


class PolicyType(Enum):
    HYBRID_50 = "hybrid_50"
    HYBRID_40 = "hybrid_40"
    HYBRID_60 = "hybrid_60"
    FULL_OFFICE = "full_office"
    FULL_REMOTE = "full_remote"
    CUSTOM = "custom"


POLICY_PERCENTAGES = {
    PolicyType.HYBRID_50: Decimal('0.50'),
    PolicyType.HYBRID_40: Decimal('0.40'),
    PolicyType.HYBRID_60: Decimal('0.60'),
    PolicyType.FULL_OFFICE: Decimal('1'),
    PolicyType.FULL_REMOTE: Decimal('0'),
}

POLICY_NAMES = {
    PolicyType.HYBRID_50: "Hybrid 50%",
    PolicyType.HYBRID_40: "Hybrid 40%",
    PolicyType.HYBRID_60: "Hybrid 60%",
    PolicyType.FULL_OFFICE: "Full Office",
    PolicyType.FULL_REMOTE: "Full Remote",
}


@dataclass
class CompanyPolicy:
    """The company's in-office attendance policy."""
    policy_type: PolicyType = PolicyType.HYBRID_50
    custom_percentage: int = 50

    def __post_init__(self):
        self.custom_percentage = max(0, min(100, int(self.custom_percentage)))

    @property
    def _percentage(self) -> Decimal:
        if self.policy_type is PolicyType.CUSTOM:
            return Decimal(self.custom_percentage) / 100
        return POLICY_PERCENTAGES[self.policy_type]

    @property
    def required_percentage(self) -> float:
        return float(self._percentage)

    def required_days(self, working_days: int) -> int:
        """
        Required in-office days for a number of working days.

        Formula: ceil(working_days * percentage). Decimal arithmetic keeps
        products like 10 * 0.6 from rounding up to 7.
        """
        working_days = max(0, int(working_days))
        return math.ceil(Decimal(working_days) * self._percentage)

    @property
    def display_name(self) -> str:
        if self.policy_type is PolicyType.CUSTOM:
            return f"Custom ({self.custom_percentage}%)"
        return POLICY_NAMES[self.policy_type]

    @property
    def formula_description(self) -> str:
        percent = int(self._percentage * 100)
        return f"(Business Days − PTO) × {percent}%, rounded up"

    def to_dict(self) -> Dict[str, Any]:
        return {'policy_type': self.policy_type.value, 'custom_percentage': self.custom_percentage}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CompanyPolicy":
        return cls(
            policy_type=PolicyType(data.get('policy_type', PolicyType.HYBRID_50.value)),
            custom_percentage=data.get('custom_percentage', 50),
        )


def required_days(working_days: int, policy: CompanyPolicy) -> int:
    return policy.required_days(working_days)


@dataclass
class OfficeLocation:
    """A configured office whose geofence counts as being at work."""
    name: str = "Office"
    coordinate: Optional[Coordinate] = None
    address: str = ""
    detection_radius: float = 200.0
    is_primary: bool = False
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    MAX_LOCATIONS = 2

    def contains(self, coordinate: Coordinate) -> bool:
        if self.coordinate is None:
            return False
        return haversine_m(self.coordinate, coordinate) <= self.detection_radius

    @property
    def short_address(self) -> str:
        return self.address.split(',')[0].strip()

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'id': self.id,
            'name': self.name,
            'address': self.address,
            'detection_radius': self.detection_radius,
            'is_primary': self.is_primary,
        }
        if self.coordinate is not None:
            data.update(self.coordinate.to_dict())
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OfficeLocation":
        coordinate = None
        if is_valid_coordinate(data.get('latitude'), data.get('longitude')):
            coordinate = Coordinate(float(data['latitude']), float(data['longitude']))
        return cls(
            id=data.get('id') or str(uuid.uuid4()),
            name=data.get('name', "Office"),
            coordinate=coordinate,
            address=data.get('address', ""),
            detection_radius=float(data.get('detection_radius', 200.0)),
            is_primary=bool(data.get('is_primary', False)),
        )


def _default_tracking_days() -> List[int]:
    # 1=Sunday ... 7=Saturday, Monday through Friday
    return [2, 3, 4, 5, 6]


@dataclass
class AppSettings:
    """User configuration consumed by the goal calculator and visit store."""
    tracking_days: List[int] = field(default_factory=_default_tracking_days)
    monthly_goal: int = 12
    auto_calculate_goal: bool = True
    company_policy: CompanyPolicy = field(default_factory=CompanyPolicy)
    holiday_calendar: HolidayCalendar = field(default_factory=HolidayCalendar)
    office_locations: List[OfficeLocation] = field(default_factory=list)
    pto_sick_days: Dict[str, List[date]] = field(default_factory=dict)
    locked_monthly_goals: Dict[str, int] = field(default_factory=dict)
    timezone: str = "America/Los_Angeles"
    notifications_enabled: bool = True
    is_setup_complete: bool = False

    def add_office_location(self, location: OfficeLocation) -> bool:
        if len(self.office_locations) >= OfficeLocation.MAX_LOCATIONS:
            logger.warning("Already tracking %d offices, ignoring %s",
                           len(self.office_locations), location.name)
            return False
        if not self.office_locations:
            location.is_primary = True
        self.office_locations.append(location)
        return True

    def office_at(self, coordinate: Coordinate) -> Optional[OfficeLocation]:
        for location in self.office_locations:
            if location.contains(coordinate):
                return location
        return None

    @property
    def tracking_days_formatted(self) -> str:
        names = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]
        return ", ".join(names[d - 1] for d in sorted(self.tracking_days) if 1 <= d <= 7)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tracking_days': list(self.tracking_days),
            'monthly_goal': self.monthly_goal,
            'auto_calculate_goal': self.auto_calculate_goal,
            'company_policy': self.company_policy.to_dict(),
            'holiday_calendar': self.holiday_calendar.to_dict(),
            'office_locations': [loc.to_dict() for loc in self.office_locations],
            'pto_sick_days': {
                key: [d.isoformat() for d in days] for key, days in self.pto_sick_days.items()
            },
            'locked_monthly_goals': dict(self.locked_monthly_goals),
            'timezone': self.timezone,
            'notifications_enabled': self.notifications_enabled,
            'is_setup_complete': self.is_setup_complete,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppSettings":
        defaults = cls()
        return cls(
            tracking_days=[int(d) for d in data.get('tracking_days', defaults.tracking_days)],
            monthly_goal=int(data.get('monthly_goal', defaults.monthly_goal)),
            auto_calculate_goal=bool(data.get('auto_calculate_goal', defaults.auto_calculate_goal)),
            company_policy=CompanyPolicy.from_dict(data.get('company_policy', {})),
            holiday_calendar=HolidayCalendar.from_dict(data.get('holiday_calendar', {})),
            office_locations=[
                OfficeLocation.from_dict(loc)
                for loc in data.get('office_locations', [])[:OfficeLocation.MAX_LOCATIONS]
            ],
            pto_sick_days={
                key: [date.fromisoformat(d[:10]) for d in days]
                for key, days in data.get('pto_sick_days', {}).items()
            },
            locked_monthly_goals={
                key: int(goal) for key, goal in data.get('locked_monthly_goals', {}).items()
            },
            timezone=data.get('timezone', defaults.timezone),
            notifications_enabled=bool(data.get('notifications_enabled', True)),
            is_setup_complete=bool(data.get('is_setup_complete', False)),
        )
