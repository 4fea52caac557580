"""
Holiday calendars for goal calculation.
Pure date rules for US market and federal holidays, plus presets and
user overrides (removals and custom additions).
"""

import calendar
import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

import holidays

logger = logging.getLogger(__name__)

# date.weekday() values
MONDAY = 0
THURSDAY = 3


class USHoliday(Enum):
    """US federal and market holidays. Values are display names."""
    NEW_YEARS_DAY = "New Year's Day"
    MLK_DAY = "Martin Luther King Jr. Day"
    PRESIDENTS_DAY = "Presidents Day"
    GOOD_FRIDAY = "Good Friday"
    MEMORIAL_DAY = "Memorial Day"
    JUNETEENTH = "Juneteenth"
    INDEPENDENCE_DAY = "Independence Day"
    LABOR_DAY = "Labor Day"
    COLUMBUS_DAY = "Columbus Day"
    VETERANS_DAY = "Veterans Day"
    THANKSGIVING = "Thanksgiving Day"
    CHRISTMAS = "Christmas Day"

    def date_for(self, year: int) -> date:
        """Observed date of this holiday in the given year."""
        return _RULES[self](year)


def observed_date(year: int, month: int, day: int) -> date:
    """
    Shift a fixed-date holiday off the weekend.

    Sunday is observed the following Monday, Saturday the preceding Friday.
    """
    actual = date(year, month, day)
    weekday = actual.weekday()
    if weekday == 6:
        return actual + timedelta(days=1)
    if weekday == 5:
        return actual - timedelta(days=1)
    return actual


def nth_weekday(year: int, month: int, weekday: int, nth: int) -> date:
    """
    Get the nth occurrence of a weekday in a month.

    Args:
        year: Year
        month: Month (1-12)
        weekday: Weekday as returned by date.weekday() (Monday=0)
        nth: Occurrence, starting at 1

    Returns:
        The matching date
    """
    first = date(year, month, 1)
    offset = (weekday - first.weekday()) % 7
    return first + timedelta(days=offset + 7 * (nth - 1))


def last_weekday(year: int, month: int, weekday: int) -> date:
    """Get the last occurrence of a weekday in a month."""
    last = date(year, month, calendar.monthrange(year, month)[1])
    offset = (last.weekday() - weekday) % 7
    return last - timedelta(days=offset)


def easter_sunday(year: int) -> date:
    """
    Easter Sunday via the Anonymous Gregorian (Meeus/Jones/Butcher) algorithm.
    """
    a = year % 19
    b = year // 100
    c = year % 100
    d = b // 4
    e = b % 4
    f = (b + 8) // 25
    g = (b - f + 1) // 3
    h = (19 * a + b - d - g + 15) % 30
    i = c // 4
    k = c % 4
    l = (32 + 2 * e + 2 * i - h - k) % 7
    m = (a + 11 * h + 22 * l) // 451
    month = (h + l - 7 * m + 114) // 31
    day = ((h + l - 7 * m + 114) % 31) + 1
    return date(year, month, day)


def good_friday(year: int) -> date:
    return easter_sunday(year) - timedelta(days=2)


_RULES = {
    USHoliday.NEW_YEARS_DAY: lambda y: observed_date(y, 1, 1),
    USHoliday.MLK_DAY: lambda y: nth_weekday(y, 1, MONDAY, 3),
    USHoliday.PRESIDENTS_DAY: lambda y: nth_weekday(y, 2, MONDAY, 3),
    USHoliday.GOOD_FRIDAY: good_friday,
    USHoliday.MEMORIAL_DAY: lambda y: last_weekday(y, 5, MONDAY),
    USHoliday.JUNETEENTH: lambda y: observed_date(y, 6, 19),
    USHoliday.INDEPENDENCE_DAY: lambda y: observed_date(y, 7, 4),
    USHoliday.LABOR_DAY: lambda y: nth_weekday(y, 9, MONDAY, 1),
    USHoliday.COLUMBUS_DAY: lambda y: nth_weekday(y, 10, MONDAY, 2),
    USHoliday.VETERANS_DAY: lambda y: observed_date(y, 11, 11),
    USHoliday.THANKSGIVING: lambda y: nth_weekday(y, 11, THURSDAY, 4),
    USHoliday.CHRISTMAS: lambda y: observed_date(y, 12, 25),
}


class HolidayPreset(Enum):
    NYSE = "nyse"
    US_FEDERAL = "us_federal"
    NONE = "none"
    REGIONAL = "regional"

    @property
    def display_name(self) -> str:
        return {
            HolidayPreset.NYSE: "NYSE / Stock Exchange",
            HolidayPreset.US_FEDERAL: "US Federal",
            HolidayPreset.NONE: "None",
            HolidayPreset.REGIONAL: "Regional (country/state)",
        }[self]

    @property
    def holidays(self) -> List[USHoliday]:
        """Named US holidays in this preset. Regional presets have none."""
        return list(PRESET_HOLIDAYS.get(self, []))


PRESET_HOLIDAYS: Dict[HolidayPreset, List[USHoliday]] = {
    HolidayPreset.NYSE: [
        USHoliday.NEW_YEARS_DAY, USHoliday.MLK_DAY, USHoliday.PRESIDENTS_DAY,
        USHoliday.GOOD_FRIDAY, USHoliday.MEMORIAL_DAY, USHoliday.JUNETEENTH,
        USHoliday.INDEPENDENCE_DAY, USHoliday.LABOR_DAY, USHoliday.THANKSGIVING,
        USHoliday.CHRISTMAS,
    ],
    HolidayPreset.US_FEDERAL: [
        USHoliday.NEW_YEARS_DAY, USHoliday.MLK_DAY, USHoliday.PRESIDENTS_DAY,
        USHoliday.MEMORIAL_DAY, USHoliday.JUNETEENTH, USHoliday.INDEPENDENCE_DAY,
        USHoliday.LABOR_DAY, USHoliday.COLUMBUS_DAY, USHoliday.VETERANS_DAY,
        USHoliday.THANKSGIVING, USHoliday.CHRISTMAS,
    ],
    HolidayPreset.NONE: [],
}


def holidays_for_preset(preset: HolidayPreset, year: int) -> List[date]:
    """
    Get the observed dates of every holiday in a preset.

    Args:
        preset: Holiday preset (regional presets need a HolidayCalendar)
        year: Year (e.g., 2025)

    Returns:
        Sorted list of dates
    """
    return sorted(holiday.date_for(year) for holiday in preset.holidays)


def regional_holidays(country: str, subdivision: Optional[str], year: int) -> Dict[date, str]:
    """Country (and optional state/province) holidays from the holidays library."""
    try:
        found = holidays.country_holidays(country, subdiv=subdivision or None, years=year)
    except NotImplementedError:
        logger.warning("No holiday data for country=%s subdivision=%s", country, subdivision)
        return {}
    return {day: name for day, name in found.items() if day.year == year}


@dataclass(frozen=True)
class HolidayDate:
    """
    A holiday reference used for custom removals and additions.

    Either points at a named US holiday, or carries an explicit month/day
    with a display name that is projected onto any year.
    """
    holiday: Optional[USHoliday] = None
    month: Optional[int] = None
    day: Optional[int] = None
    name: Optional[str] = None

    @classmethod
    def named(cls, holiday: USHoliday) -> "HolidayDate":
        return cls(holiday=holiday)

    @classmethod
    def custom(cls, month: int, day: int, name: str) -> "HolidayDate":
        return cls(month=month, day=day, name=name)

    def date_for(self, year: int) -> Optional[date]:
        if self.holiday is not None:
            return self.holiday.date_for(year)
        if self.month is None or self.day is None:
            return None
        try:
            return date(year, self.month, self.day)
        except ValueError:
            # Feb 29 outside leap years, or garbage from an old payload
            return None

    @property
    def display_name(self) -> str:
        if self.holiday is not None:
            return self.holiday.value
        return self.name or "Unknown Holiday"

    def to_dict(self) -> Dict[str, Any]:
        if self.holiday is not None:
            return {'holiday': self.holiday.name}
        return {'month': self.month, 'day': self.day, 'name': self.name}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HolidayDate":
        holiday = data.get('holiday')
        if holiday:
            return cls(holiday=USHoliday[holiday])
        return cls(month=data.get('month'), day=data.get('day'), name=data.get('name'))


@dataclass
class HolidayCalendar:
    """Holiday preset plus the user's removals and additions."""
    preset: HolidayPreset = HolidayPreset.NYSE
    custom_removals: List[HolidayDate] = field(default_factory=list)
    custom_additions: List[HolidayDate] = field(default_factory=list)
    country: str = "US"
    subdivision: Optional[str] = None

    def preset_holidays(self, year: int) -> Dict[date, str]:
        """Preset dates for a year mapped to their names."""
        if self.preset is HolidayPreset.REGIONAL:
            return regional_holidays(self.country, self.subdivision, year)
        return {holiday.date_for(year): holiday.value for holiday in self.preset.holidays}

    def named_holidays(self, year: int) -> Dict[date, str]:
        """
        Resolved holidays for a year with display names.

        Removals are matched by date; additions are projected onto the year.
        """
        removal_dates = {d for d in (r.date_for(year) for r in self.custom_removals) if d}
        resolved = {
            day: name for day, name in self.preset_holidays(year).items()
            if day not in removal_dates
        }
        for addition in self.custom_additions:
            day = addition.date_for(year)
            if day is not None:
                resolved.setdefault(day, addition.display_name)
        return dict(sorted(resolved.items()))

    def holidays_for_year(self, year: int) -> List[date]:
        return list(self.named_holidays(year))

    def named_holidays_in_month(self, year: int, month: int) -> Dict[date, str]:
        """
        Holidays falling on a date inside the given month, with names.

        A Saturday New Year's Day is observed on Dec 31 of the previous year,
        so December also looks at the following year's list.
        """
        candidates = dict(self.named_holidays(year))
        if month == 12:
            for day, name in self.named_holidays(year + 1).items():
                candidates.setdefault(day, name)
        return {
            day: name for day, name in sorted(candidates.items())
            if day.year == year and day.month == month
        }

    def holidays_in_month(self, year: int, month: int) -> List[date]:
        return list(self.named_holidays_in_month(year, month))

    def preset_holidays_with_state(self, year: int) -> List[Dict[str, Any]]:
        """Preset holidays for a year with whether the user left them enabled."""
        removed = {r.holiday for r in self.custom_removals if r.holiday is not None}
        return [
            {'holiday': holiday, 'date': holiday.date_for(year), 'enabled': holiday not in removed}
            for holiday in self.preset.holidays
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'preset': self.preset.value,
            'custom_removals': [r.to_dict() for r in self.custom_removals],
            'custom_additions': [a.to_dict() for a in self.custom_additions],
            'country': self.country,
            'subdivision': self.subdivision,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HolidayCalendar":
        return cls(
            preset=HolidayPreset(data.get('preset', HolidayPreset.NYSE.value)),
            custom_removals=[HolidayDate.from_dict(r) for r in data.get('custom_removals', [])],
            custom_additions=[HolidayDate.from_dict(a) for a in data.get('custom_additions', [])],
            country=data.get('country') or "US",
            subdivision=data.get('subdivision'),
        )


def resolve(holiday_calendar: HolidayCalendar, year: int) -> List[date]:
    """
    Apply removals and additions on top of the calendar's preset.

    Args:
        holiday_calendar: Preset plus user overrides
        year: Year to resolve

    Returns:
        Sorted, deduplicated list of holiday dates
    """
    return holiday_calendar.holidays_for_year(year)
