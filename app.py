"""
Streamlit dashboard for in-office day tracking.
Month calendar with visits and holidays, progress toward the monthly goal,
check-in/check-out controls and policy settings.
"""

import logging
from dataclasses import replace
from datetime import date

import streamlit as st

import calc
import db
from holiday_calendar import HolidayPreset
from models import CompanyPolicy, Coordinate, OfficeLocation, PolicyType
from visit_store import GEOFENCE_ENTER, GEOFENCE_EXIT, VisitStore
from widget import publish_widget_data

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger("office_tracker")

st.set_page_config(
    page_title="In-Office Days",
    page_icon="🏢",
    layout="wide",
    initial_sidebar_state="expanded"
)

WEEKDAY_ABBR = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]
# tracking_days numbering (1=Sunday ... 7=Saturday) for the Mon..Sun labels
WEEKDAY_NUMBERS = [2, 3, 4, 5, 6, 7, 1]

if 'current_year' not in st.session_state:
    today = date.today()
    st.session_state.current_year = today.year
    st.session_state.current_month = today.month


def get_kv_store():
    """Supabase when configured, otherwise a store living in this session."""
    if 'kv_store' not in st.session_state:
        try:
            st.session_state.kv_store = db.open_supabase_store()
            st.session_state.kv_backend = "supabase"
        except RuntimeError as e:
            logger.warning("Falling back to in-session storage: %s", e)
            st.session_state.kv_store = db.MemoryKeyValueStore()
            st.session_state.kv_backend = "memory"
    return st.session_state.kv_store


def load_store():
    try:
        return VisitStore.load(get_kv_store(), default_timezone=db.get_secret("TIMEZONE"))
    except Exception as e:
        st.error(f"Error loading data: {e}")
        return None


def save_settings(store: VisitStore, settings) -> None:
    store.update_settings(settings)
    publish_widget_data(store)
    st.rerun()


def render_checkin(store: VisitStore):
    """Manual stand-in for geofence enter/exit callbacks."""
    in_office = store.is_currently_in_office()
    col1, col2, col3 = st.columns([2, 1, 1])
    with col1:
        if in_office:
            visit = store.current_visit()
            st.success(f"🏢 In office since {visit.events[-1].entry_time:%H:%M}")
        else:
            st.info("🏠 Not in office")
    with col2:
        if st.button("Arrived", disabled=in_office, use_container_width=True):
            primary = next((o for o in store.settings.office_locations if o.is_primary), None)
            coordinate = primary.coordinate if primary and primary.coordinate else None
            store.handle_geofence_event(GEOFENCE_ENTER, coordinate)
            publish_widget_data(store)
            st.rerun()
    with col3:
        if st.button("Left", disabled=not in_office, use_container_width=True):
            store.handle_geofence_event(GEOFENCE_EXIT)
            publish_widget_data(store)
            st.rerun()


def render_progress(store: VisitStore):
    progress = store.month_progress()
    col1, col2, col3 = st.columns(3)
    col1.metric("Office days", f"{progress.current} / {progress.goal}")
    col2.metric("This week", store.weekly_progress())
    col3.metric("Avg. hours", f"{store.average_duration_hours():.1f}")
    st.progress(progress.percentage)
    st.caption(
        f"{store.status_message(progress.current, progress.goal)} · "
        f"{store.pace_needed(progress.current, progress.goal)}"
    )


def render_calendar(store: VisitStore):
    """Month grid with visits and holidays."""
    year = st.session_state.current_year
    month = st.session_state.current_month
    first = date(year, month, 1)

    col1, col2, col3 = st.columns([1, 3, 1])
    with col1:
        if st.button("◀", key="prev_month"):
            prev = calc.add_months(first, -1)
            st.session_state.current_year, st.session_state.current_month = prev.year, prev.month
            st.rerun()
    with col2:
        st.markdown(f"<h2 style='text-align: center'>{calc.get_month_name(month)} {year}</h2>",
                    unsafe_allow_html=True)
    with col3:
        if st.button("▶", key="next_month"):
            nxt = calc.add_months(first, 1)
            st.session_state.current_year, st.session_state.current_month = nxt.year, nxt.month
            st.rerun()

    holidays = store.settings.holiday_calendar.named_holidays_in_month(year, month)
    pto = set(calc.pto_days(store.settings, first))
    visits = {v.date: v for v in store.visits_for_month(first)}

    cols = st.columns(7)
    for i, weekday in enumerate(WEEKDAY_ABBR):
        cols[i].markdown(f"**{weekday}**")

    for week in calc.month_grid(year, month):
        cols = st.columns(7)
        for i, day_date in enumerate(week):
            with cols[i]:
                if day_date is None:
                    st.markdown("&nbsp;", unsafe_allow_html=True)
                    continue
                lines = [f"**{day_date.day}**"]
                visit = visits.get(day_date)
                if visit is not None:
                    badge = "🏢" if visit.is_valid_visit or visit.is_active_session else "⏱️"
                    lines.append(f"{badge} {visit.formatted_duration}")
                if day_date in holidays:
                    lines.append(f"🎉 {holidays[day_date]}")
                if day_date in pto:
                    lines.append("🏖️ PTO")
                st.markdown("  \n".join(lines))


def render_goal(store: VisitStore):
    year = st.session_state.current_year
    month = st.session_state.current_month
    first = date(year, month, 1)
    settings = store.settings
    goal = store.monthly_goal(first)

    st.subheader(f"🎯 Goal: {goal} days")
    if settings.auto_calculate_goal:
        breakdown = store.goal_calculator.breakdown(settings, first)
        st.markdown(f"`{breakdown.formula_description}`")
        st.caption(f"{breakdown.weekdays_in_month} tracked weekdays, "
                   f"{breakdown.holiday_count} holidays")

    key = calc.month_key(first)
    if key in settings.locked_monthly_goals:
        st.caption(f"🔒 Locked at {settings.locked_monthly_goals[key]}")
        if st.button("Unlock goal"):
            store.unlock_goal(first)
            st.rerun()
    elif st.button("Lock goal"):
        store.lock_goal(first)
        st.rerun()


def render_visits(store: VisitStore):
    first = date(st.session_state.current_year, st.session_state.current_month, 1)
    visits = sorted(store.visits_for_month(first), key=lambda v: v.date, reverse=True)
    st.subheader("Visits")
    if not visits:
        st.caption("No visits recorded this month.")
        return
    for visit in visits:
        col1, col2, col3 = st.columns([3, 2, 1])
        col1.markdown(f"{visit.day_of_week}, {visit.date:%b %d}")
        sessions = len(visit.events)
        col2.markdown(f"{visit.formatted_duration} · {sessions} session{'s' if sessions != 1 else ''}")
        if col3.button("🗑️", key=f"delete-{visit.id}"):
            store.delete_visit(visit.id)
            publish_widget_data(store)
            st.rerun()


def render_sidebar(store: VisitStore):
    """Policy, holiday, tracking-day, PTO and office settings."""
    settings = store.settings
    st.sidebar.header("⚙️ Goal")

    auto = st.sidebar.toggle("Auto-calculate based on policy", value=settings.auto_calculate_goal)
    policy_types = list(PolicyType)
    policy_type = st.sidebar.selectbox(
        "Company policy",
        options=policy_types,
        index=policy_types.index(settings.company_policy.policy_type),
        format_func=lambda p: CompanyPolicy(policy_type=p).display_name,
    )
    custom_percentage = settings.company_policy.custom_percentage
    if policy_type is PolicyType.CUSTOM:
        custom_percentage = st.sidebar.slider("Custom %", 0, 100, custom_percentage, step=5)
    manual_goal = settings.monthly_goal
    if not auto:
        manual_goal = st.sidebar.number_input("Monthly goal", 0, 31, settings.monthly_goal)

    presets = list(HolidayPreset)
    preset = st.sidebar.selectbox(
        "Holidays",
        options=presets,
        index=presets.index(settings.holiday_calendar.preset),
        format_func=lambda p: p.display_name,
    )
    country = settings.holiday_calendar.country
    if preset is HolidayPreset.REGIONAL:
        country = st.sidebar.text_input("Country code", value=country)

    selected = st.sidebar.multiselect(
        "Tracked days",
        options=WEEKDAY_NUMBERS,
        default=[d for d in WEEKDAY_NUMBERS if d in settings.tracking_days],
        format_func=lambda d: WEEKDAY_ABBR[WEEKDAY_NUMBERS.index(d)],
    )

    policy = CompanyPolicy(policy_type=policy_type, custom_percentage=custom_percentage)
    calendar_settings = replace(settings.holiday_calendar, preset=preset, country=country)
    changed = (
        auto != settings.auto_calculate_goal or
        policy != settings.company_policy or
        manual_goal != settings.monthly_goal or
        calendar_settings != settings.holiday_calendar or
        set(selected) != set(settings.tracking_days)
    )
    if changed:
        save_settings(store, replace(
            settings,
            auto_calculate_goal=auto,
            company_policy=policy,
            monthly_goal=int(manual_goal),
            holiday_calendar=calendar_settings,
            tracking_days=sorted(selected),
        ))

    st.sidebar.markdown("---")
    st.sidebar.header("🏖️ PTO / Sick days")
    pto_date = st.sidebar.date_input("Day off", value=date.today())
    if st.sidebar.button("Add day off"):
        key = calc.month_key(pto_date)
        days = settings.pto_sick_days.setdefault(key, [])
        if pto_date not in days:
            days.append(pto_date)
            save_settings(store, settings)

    st.sidebar.markdown("---")
    st.sidebar.header("📍 Offices")
    for office in settings.office_locations:
        st.sidebar.markdown(f"**{office.name}** · {office.short_address or 'no address'} "
                            f"· {office.detection_radius:.0f} m")
    if len(settings.office_locations) < OfficeLocation.MAX_LOCATIONS:
        with st.sidebar.form("add_office"):
            name = st.text_input("Name", value="Office")
            address = st.text_input("Address")
            lat = st.number_input("Latitude", -90.0, 90.0, 0.0, format="%.6f")
            lon = st.number_input("Longitude", -180.0, 180.0, 0.0, format="%.6f")
            radius = st.select_slider("Radius (m)", options=[50, 100, 200, 300, 500], value=200)
            if st.form_submit_button("Add office"):
                settings.add_office_location(OfficeLocation(
                    name=name, address=address, coordinate=Coordinate(lat, lon),
                    detection_radius=float(radius),
                ))
                save_settings(store, settings)

    st.sidebar.markdown("---")
    if st.sidebar.button("Clear all data"):
        store.clear_all_data()
        publish_widget_data(store)
        st.rerun()


def main():
    """Main application function."""
    st.title("🏢 In-Office Days")

    store = load_store()
    if store is None:
        st.error("Failed to load application data. Please check your Supabase configuration.")
        st.stop()

    if st.session_state.get("kv_backend") == "memory":
        st.caption("Supabase is not configured; data lives in this browser session only.")

    render_sidebar(store)
    render_checkin(store)
    render_progress(store)
    st.markdown("---")

    left, right = st.columns([3, 1])
    with left:
        render_calendar(store)
    with right:
        render_goal(store)
        render_visits(store)


if __name__ == "__main__":
    main()
