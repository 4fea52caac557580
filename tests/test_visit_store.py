"""
Visit store tests
- One visit per day, multi-session days, duplicate prevention
- Geofence routing and overnight exits
- Same-day consolidation and the load-time upgrade
- Progress queries and fire-and-forget persistence
"""

import json
import logging
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from conftest import FailingKeyValueStore, FixedClock
from db import MemoryKeyValueStore
from models import AppSettings, Coordinate, OfficeEvent, OfficeLocation, OfficeVisit
from schema import (
    APPLE_REFERENCE_DATE,
    LEGACY_CURRENT_VISIT_KEY,
    LEGACY_IN_OFFICE_KEY,
    SETTINGS_KEY,
    VISITS_KEY,
    encode_settings,
    encode_visits,
)
from visit_store import (
    GEOFENCE_ENTER,
    GEOFENCE_EXIT,
    VisitStore,
    consolidate_visits,
    progress_percentage,
)

HQ = Coordinate(40.7128, -74.0060)


def closed_visit(day: date, hours: float = 8, start_hour: int = 9) -> OfficeVisit:
    start = datetime(day.year, day.month, day.day, start_hour)
    return OfficeVisit(date=day, events=[OfficeEvent(start, start + timedelta(hours=hours))])


def stored_visits(kv):
    return json.loads(kv.get(VISITS_KEY))


class TestSessions:

    def test_start_visit_creates_and_persists(self, store, kv):
        visit = store.start_visit()

        assert visit.date == date(2025, 3, 4)
        assert store.is_currently_in_office()
        assert store.current_visit() is visit

        payload = stored_visits(kv)
        assert payload["version"] == 2
        assert len(payload["visits"]) == 1

    def test_start_twice_keeps_one_open_event(self, store, clock):
        store.start_visit()
        clock.advance(minutes=30)
        visit = store.start_visit()

        assert len(store.visits) == 1
        assert len(visit.events) == 1
        assert visit.events[0].entry_time == datetime(2025, 3, 4, 9)

    def test_end_visit_closes_session(self, store, clock):
        store.start_visit()
        clock.advance(hours=8)
        visit = store.end_visit()

        assert not store.is_currently_in_office()
        assert visit.duration == 8 * 3600
        assert visit.is_valid_visit

    def test_short_visit_is_kept(self, store, clock):
        store.start_visit()
        clock.advance(minutes=30)
        visit = store.end_visit()

        assert store.visits == [visit]
        assert not visit.is_valid_visit
        assert visit.formatted_duration == "0h 30m"

    def test_reentry_adds_session(self, store, clock):
        store.start_visit()
        clock.advance(hours=3)
        store.end_visit()
        clock.advance(hours=1)
        visit = store.start_visit()

        assert len(store.visits) == 1
        assert len(visit.events) == 2
        assert visit.is_active_session

    def test_end_without_active_visit(self, store):
        assert store.end_visit() is None
        assert store.visits == []

    def test_overnight_exit_closes_yesterday(self, kv):
        clock = FixedClock(datetime(2025, 3, 4, 22))
        store = VisitStore(kv, AppSettings(), clock=clock)
        store.start_visit()
        clock.advance(hours=3)

        visit = store.end_visit()
        assert visit.date == date(2025, 3, 4)
        assert visit.duration == 3 * 3600

    def test_add_or_update(self, store, clock):
        store.start_visit()
        assert store.add_or_update(closed_visit(date(2025, 3, 4))) is False
        assert store.visits[0].is_active_session

        clock.advance(hours=1)
        store.end_visit()
        replacement = closed_visit(date(2025, 3, 4), hours=6)
        assert store.add_or_update(replacement) is True
        assert store.visits == [replacement]

        assert store.add_or_update(closed_visit(date(2025, 3, 3))) is True
        assert len(store.visits) == 2

    def test_delete_and_clear(self, store, kv):
        visit = closed_visit(date(2025, 3, 3))
        store.add_or_update(visit)
        store.add_or_update(closed_visit(date(2025, 3, 4)))

        assert store.delete_visit(visit.id) is True
        assert store.delete_visit(visit.id) is False
        assert len(store.visits) == 1

        store.settings.monthly_goal = 3
        store.clear_all_data()
        assert store.visits == []
        assert store.settings == AppSettings()
        assert stored_visits(kv)["visits"] == []


class TestGeofence:

    def _store_with_office(self, kv, clock):
        settings = AppSettings()
        settings.add_office_location(OfficeLocation(name="HQ", coordinate=HQ))
        return VisitStore(kv, settings, clock=clock)

    def test_enter_and_exit(self, kv, clock):
        store = self._store_with_office(kv, clock)
        visit = store.handle_geofence_event(GEOFENCE_ENTER, HQ)
        assert visit.coordinate == HQ
        assert store.is_currently_in_office()

        clock.advance(hours=2)
        store.handle_geofence_event(GEOFENCE_EXIT)
        assert not store.is_currently_in_office()

    def test_enter_outside_every_office_is_ignored(self, kv, clock):
        store = self._store_with_office(kv, clock)
        assert store.handle_geofence_event(GEOFENCE_ENTER, Coordinate(41.0, -74.0)) is None
        assert store.visits == []

    def test_unknown_event(self, store):
        assert store.handle_geofence_event("dwell") is None


class TestConsolidation:

    DAY = date(2025, 3, 4)

    def _record(self, hour, exit_hour=None):
        entry = datetime(2025, 3, 4, hour)
        exit_time = datetime(2025, 3, 4, exit_hour) if exit_hour else None
        return OfficeVisit(date=self.DAY, events=[OfficeEvent(entry, exit_time)])

    def test_records_merge_in_entry_order(self):
        t1, t2, t3 = self._record(9, 10), self._record(11, 12), self._record(14)
        merged = consolidate_visits([t3, t1, t2])

        assert merged.id == t1.id
        assert [e.entry_time.hour for e in merged.events] == [9, 11, 14]
        assert merged.events[2].is_open
        assert merged.is_active_session

    def test_dangling_open_event_closed_at_next_entry(self):
        merged = consolidate_visits([self._record(9), self._record(13, 17)])

        assert merged.events[0] == OfficeEvent(datetime(2025, 3, 4, 9), datetime(2025, 3, 4, 13))
        assert not merged.is_active_session
        assert merged.duration == 8 * 3600

    def test_cleanup_duplicate_entries(self, kv, clock):
        other_day = closed_visit(date(2025, 3, 3))
        store = VisitStore(kv, AppSettings(), visits=[
            self._record(14), other_day, self._record(9, 10), self._record(11, 12),
        ], clock=clock)

        assert store.cleanup_duplicate_entries() == 2
        assert len(store.visits) == 2
        assert store.visit_for(date(2025, 3, 3)) is other_day
        assert len(store.visit_for(self.DAY).events) == 3
        assert len(stored_visits(kv)["visits"]) == 2

        assert store.cleanup_duplicate_entries() == 0


class TestLoad:

    def test_legacy_payload_is_upgraded(self, clock):
        legacy = [
            {"date": "2025-03-03T08:00:00", "entryTime": "2025-03-03T09:00:00",
             "exitTime": "2025-03-03T17:00:00", "duration": 28800},
            {"date": "2025-03-03T08:00:00", "entryTime": "2025-03-03T18:00:00",
             "exitTime": "2025-03-03T19:00:00", "duration": 3600},
        ]
        kv = MemoryKeyValueStore({
            VISITS_KEY: json.dumps(legacy),
            LEGACY_IN_OFFICE_KEY: "true",
        })
        store = VisitStore.load(kv, clock=clock)

        assert len(store.visits) == 1
        assert store.visits[0].duration == 9 * 3600
        assert stored_visits(kv)["version"] == 2
        assert LEGACY_IN_OFFICE_KEY not in kv.data

    def test_legacy_payload_without_duplicates_is_rewritten(self, clock):
        kv = MemoryKeyValueStore({VISITS_KEY: json.dumps([
            {"date": "2025-03-03", "entryTime": "2025-03-03T09:00:00", "exitTime": "2025-03-03T17:00:00"},
        ])})
        VisitStore.load(kv, clock=clock)
        assert stored_visits(kv)["version"] == 2

    def test_todays_current_visit_is_restored(self, clock):
        snapshot = {"date": "2025-03-04", "entryTime": "2025-03-04T08:30:00", "exitTime": None}
        kv = MemoryKeyValueStore({
            LEGACY_CURRENT_VISIT_KEY: json.dumps(snapshot),
            LEGACY_IN_OFFICE_KEY: "true",
        })
        store = VisitStore.load(kv, clock=clock)

        assert store.is_currently_in_office()
        assert LEGACY_CURRENT_VISIT_KEY not in kv.data
        assert len(stored_visits(kv)["visits"]) == 1

    def test_stale_current_visit_is_discarded(self, clock):
        snapshot = {"date": "2025-03-01", "entryTime": "2025-03-01T08:30:00", "exitTime": None}
        kv = MemoryKeyValueStore({LEGACY_CURRENT_VISIT_KEY: json.dumps(snapshot)})
        store = VisitStore.load(kv, clock=clock)

        assert store.visits == []
        assert not store.is_currently_in_office()
        assert LEGACY_CURRENT_VISIT_KEY not in kv.data

    def test_past_months_get_locked_on_load(self, clock):
        kv = MemoryKeyValueStore({
            VISITS_KEY: encode_visits([closed_visit(date(2025, 2, 10)), closed_visit(date(2025, 3, 3))]),
            SETTINGS_KEY: encode_settings(AppSettings()),
        })
        store = VisitStore.load(kv, clock=clock)

        assert set(store.settings.locked_monthly_goals) == {"2025-02"}
        assert "2025-02" in json.loads(kv.get(SETTINGS_KEY))["locked_monthly_goals"]

    def test_empty_store(self, kv, clock):
        store = VisitStore.load(kv, clock=clock)
        assert store.visits == []
        assert store.settings == AppSettings()


class TestProgress:

    def test_progress_percentage(self):
        assert progress_percentage(6, 12) == 0.5
        assert progress_percentage(15, 12) == 1.0
        assert progress_percentage(3, 0) == 0.0
        assert progress_percentage(0, 0) == 0.0

    def test_month_progress_counts_valid_and_active(self, kv, clock):
        settings = AppSettings(auto_calculate_goal=False, monthly_goal=10)
        store = VisitStore(kv, settings, visits=[
            closed_visit(date(2025, 3, 3)),
            closed_visit(date(2025, 3, 2)),
            closed_visit(date(2025, 3, 1), hours=0.5),
            closed_visit(date(2025, 2, 28)),
        ], clock=clock)
        store.start_visit()

        progress = store.month_progress()
        assert progress.current == 3
        assert progress.goal == 10
        assert progress.percentage == 0.3

    def test_month_progress_is_clamped(self, kv, clock):
        settings = AppSettings(auto_calculate_goal=False, monthly_goal=2)
        visits = [closed_visit(date(2025, 3, d)) for d in (1, 2, 3)]
        store = VisitStore(kv, settings, visits=visits, clock=clock)

        assert store.month_progress().percentage == 1.0

    def test_weekly_progress_starts_monday(self, kv, clock):
        # 2025-03-04 is a Tuesday
        visits = [closed_visit(date(2025, 3, d)) for d in (2, 3, 4)]
        store = VisitStore(kv, AppSettings(), visits=visits, clock=clock)
        assert store.weekly_progress() == 2

    def test_average_duration(self, kv, clock):
        visits = [closed_visit(date(2025, 3, 3), hours=6), closed_visit(date(2025, 3, 4), hours=8),
                  closed_visit(date(2025, 3, 2), hours=0.5)]
        store = VisitStore(kv, AppSettings(), visits=visits, clock=clock)
        assert store.average_duration_hours() == 7.0

    def test_pace_needed(self, kv):
        store = VisitStore(kv, AppSettings(), clock=FixedClock(datetime(2026, 1, 29, 9)))
        assert store.days_remaining_in_month() == 2
        assert store.pace_needed(8, 10) == "5.0 days/week"
        assert store.pace_needed(9, 10) == "2.5 days/week"
        assert store.pace_needed(7, 10) == "Goal unreachable"
        assert store.pace_needed(10, 10) == "Goal complete!"

    def test_status_message(self, store):
        assert store.status_message(12, 12) == "Goal achieved! 🎉"
        assert store.status_message(11, 12) == "1 more day needed"
        assert store.status_message(4, 12) == "8 more days needed"
        store.start_visit()
        assert store.status_message(4, 12) == "Currently in office"


class TestPersistenceFailures:

    def test_failed_write_keeps_memory_state(self, clock, caplog):
        store = VisitStore(FailingKeyValueStore(), AppSettings(), clock=clock)
        with caplog.at_level(logging.ERROR):
            visit = store.start_visit()

        assert store.visits == [visit]
        assert store.is_currently_in_office()
        assert "Failed to persist OfficeVisits" in caplog.text

    def test_goal_lock_persists_settings(self, store, kv):
        store.lock_goal(date(2025, 3, 1), value=7)
        assert json.loads(kv.get(SETTINGS_KEY))["locked_monthly_goals"] == {"2025-03": 7}
        assert store.monthly_goal() == 7

        assert store.unlock_goal(date(2025, 3, 1)) is True
        assert store.monthly_goal() == 11


class TestLocalTimezone:

    TOKYO = ZoneInfo("Asia/Tokyo")

    def _legacy_day(self, day: date):
        local_midnight = datetime(day.year, day.month, day.day, tzinfo=self.TOKYO)
        midnight = (local_midnight - APPLE_REFERENCE_DATE).total_seconds()
        return {"date": midnight, "entryTime": midnight + 9 * 3600, "exitTime": midnight + 17 * 3600}

    def test_legacy_day_keeps_local_date_and_reentry_resumes_it(self):
        kv = MemoryKeyValueStore({VISITS_KEY: json.dumps([self._legacy_day(date(2025, 3, 5))])})
        clock = FixedClock(datetime(2025, 3, 5, 19, tzinfo=self.TOKYO))
        store = VisitStore.load(kv, clock=clock)

        assert [v.date for v in store.visits] == [date(2025, 3, 5)]

        visit = store.start_visit()
        assert len(store.visits) == 1
        assert visit.date == date(2025, 3, 5)
        assert len(visit.events) == 2
        assert stored_visits(kv)["visits"][0]["date"] == "2025-03-05"

    def test_default_timezone_applies_before_load_logic(self):
        kv = MemoryKeyValueStore({VISITS_KEY: json.dumps([self._legacy_day(date(2025, 3, 5))])})
        store = VisitStore.load(kv, clock=FixedClock(datetime(2025, 3, 5, 19)),
                                default_timezone="Asia/Tokyo")

        assert store.settings.timezone == "Asia/Tokyo"
        assert store.visits[0].date == date(2025, 3, 5)

    def test_default_timezone_ignored_once_settings_saved(self, clock):
        kv = MemoryKeyValueStore({SETTINGS_KEY: encode_settings(AppSettings(timezone="Europe/Berlin"))})
        store = VisitStore.load(kv, clock=clock, default_timezone="Asia/Tokyo")
        assert store.settings.timezone == "Europe/Berlin"

    def test_first_run_clock_uses_default_timezone(self, kv):
        store = VisitStore.load(kv, default_timezone="Asia/Tokyo")

        assert store.local_tzinfo() == self.TOKYO
        assert store.now().utcoffset() == timedelta(hours=9)
