"""
Persisted JSON formats and their one-time upgrade.

Visits are stored as a versioned envelope. Version 1 is the legacy bare
list written by the mobile app: each item may carry an "events" array and
always carries flattened entryTime/exitTime/duration fields. Version 2
stores events only. Reading upgrades to version 2; writing only ever
produces version 2.
"""

import json
import logging
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any, Dict, List, Optional

from models import AppSettings, Coordinate, OfficeEvent, OfficeVisit

logger = logging.getLogger(__name__)

SETTINGS_KEY = "AppSettings"
VISITS_KEY = "OfficeVisits"
WIDGET_DATA_KEY = "WidgetData"
# Read once by the upgrade step, then deleted
LEGACY_CURRENT_VISIT_KEY = "CurrentVisit"
LEGACY_IN_OFFICE_KEY = "IsCurrentlyInOffice"

VISITS_SCHEMA_VERSION = 2
SETTINGS_SCHEMA_VERSION = 1

# Apple platforms encode dates as seconds since this instant by default
APPLE_REFERENCE_DATE = datetime(2001, 1, 1, tzinfo=timezone.utc)


def parse_instant(value: Any) -> datetime:
    """
    Parse a stored instant.

    Accepts ISO 8601 strings and numeric seconds since 2001-01-01 UTC.
    """
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return APPLE_REFERENCE_DATE + timedelta(seconds=value)
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    raise ValueError(f"Unsupported instant: {value!r}")


def parse_day(value: Any, tz: Optional[tzinfo] = None) -> date:
    """
    Calendar day of a stored visit date.

    Legacy clients store the day as local midnight, so timezone-aware
    instants are converted to tz before taking the date.
    """
    if isinstance(value, str) and len(value) == 10:
        return date.fromisoformat(value)
    instant = parse_instant(value)
    if tz is not None and instant.tzinfo is not None:
        instant = instant.astimezone(tz)
    return instant.date()


def _legacy_event(data: Dict[str, Any]) -> OfficeEvent:
    entry = data.get('entry_time', data.get('entryTime'))
    exit_ = data.get('exit_time', data.get('exitTime'))
    return OfficeEvent(
        entry_time=parse_instant(entry),
        exit_time=parse_instant(exit_) if exit_ is not None else None,
    )


def visit_from_legacy(item: Dict[str, Any], tz: Optional[tzinfo] = None) -> OfficeVisit:
    """
    Build a visit from a version 1 record.

    The events array is preferred; without it a single event is synthesized
    from the flattened entryTime/exitTime fields.
    """
    events_data = item.get('events')
    if isinstance(events_data, list):
        events = [_legacy_event(e) for e in events_data]
    else:
        events = [_legacy_event(item)]

    visit = OfficeVisit(
        date=parse_day(item['date'], tz),
        events=events,
        coordinate=Coordinate(item.get('latitude', 0.0), item.get('longitude', 0.0)),
    )
    if item.get('id'):
        visit.id = str(item['id'])
    return visit


def upgrade_visits_payload(payload: Any, tz: Optional[tzinfo] = None) -> Dict[str, Any]:
    """
    Bring a decoded visits payload up to the current version.

    Args:
        payload: Decoded JSON (legacy list or versioned envelope)
        tz: Zone legacy visit dates are local to (UTC when None)

    Returns:
        Version 2 envelope. Records that cannot be read are dropped and logged.
    """
    if isinstance(payload, dict) and payload.get('version') == VISITS_SCHEMA_VERSION:
        return payload

    if isinstance(payload, dict):
        items = payload.get('visits', [])
    elif isinstance(payload, list):
        items = payload
    else:
        logger.error("Unrecognised visits payload of type %s, starting empty", type(payload).__name__)
        items = []

    upgraded = []
    for item in items:
        try:
            upgraded.append(visit_from_legacy(item, tz).to_dict())
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Skipping unreadable legacy visit %r: %s", item, e)

    logger.info("Upgraded %d legacy visits to schema v%d", len(upgraded), VISITS_SCHEMA_VERSION)
    return {'version': VISITS_SCHEMA_VERSION, 'visits': upgraded}


def decode_visits(raw: Optional[str], tz: Optional[tzinfo] = None) -> List[OfficeVisit]:
    """Decode the stored visits collection, upgrading legacy payloads."""
    if not raw:
        return []
    try:
        payload = upgrade_visits_payload(json.loads(raw), tz)
    except json.JSONDecodeError as e:
        logger.error("Stored visits are not valid JSON: %s", e)
        return []

    visits = []
    for item in payload.get('visits', []):
        try:
            visits.append(OfficeVisit.from_dict(item))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Skipping unreadable visit %r: %s", item, e)
    return visits


def is_current_visits_format(raw: Optional[str]) -> bool:
    if not raw:
        return True
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return False
    return isinstance(payload, dict) and payload.get('version') == VISITS_SCHEMA_VERSION


def encode_visits(visits: List[OfficeVisit]) -> str:
    return json.dumps({
        'version': VISITS_SCHEMA_VERSION,
        'visits': [visit.to_dict() for visit in visits],
    })


def decode_settings(raw: Optional[str]) -> AppSettings:
    """Decode stored settings; anything unreadable falls back to defaults."""
    if not raw:
        return AppSettings()
    try:
        data = json.loads(raw)
        return AppSettings.from_dict(data)
    except (json.JSONDecodeError, AttributeError, KeyError, TypeError, ValueError) as e:
        logger.error("Failed to decode settings, using defaults: %s", e)
        return AppSettings()


def encode_settings(settings: AppSettings) -> str:
    data = settings.to_dict()
    data['version'] = SETTINGS_SCHEMA_VERSION
    return json.dumps(data)


def merge_legacy_current_visit(visits: List[OfficeVisit], raw_snapshot: Optional[str],
                               today: date, tz: Optional[tzinfo] = None) -> bool:
    """
    Fold a legacy current-visit snapshot into the visits collection.

    A snapshot from another day is stale and discarded. Today's snapshot is
    only added when the collection has no record for today.

    Returns:
        True if the collection changed
    """
    if not raw_snapshot:
        return False
    try:
        snapshot = visit_from_legacy(json.loads(raw_snapshot), tz)
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        logger.warning("Discarding unreadable current-visit snapshot: %s", e)
        return False

    if snapshot.date != today:
        logger.info("Discarding stale current visit from %s", snapshot.date)
        return False
    if any(v.date == today for v in visits):
        return False

    logger.info("Restoring current visit for %s from legacy snapshot", today)
    visits.append(snapshot)
    return True
