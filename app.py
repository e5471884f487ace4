"""
Shift Reconciler Console
========================
Supervisor view: per-shift trips/stops map and timeline, suggested
locations with dismiss buttons, and the mileage summary.
"""

import streamlit as st
import pandas as pd
import plotly.graph_objects as go
from datetime import date

st.set_page_config(page_title="Shift Reconciler", layout="wide", initial_sidebar_state="expanded")
st.markdown("<style>.block-container{padding-top:0.5rem!important}#MainMenu,footer{visibility:hidden}</style>", unsafe_allow_html=True)

from sqlalchemy import create_engine, text
from database import get_sqlalchemy_url, init_db
from processor import process_shift
from timeline import get_shift_timeline
from suggestions import suggest_locations, ignore_location_cluster
from mileage import summarize

init_db()
engine = create_engine(get_sqlalchemy_url())


def fmt_min(m):
    """Format minutes as 1h05m"""
    m = float(m) if m else 0
    h = int(m // 60)
    mm = int(m % 60)
    return f"{h}h{mm:02d}m" if h > 0 else f"{mm}m"


@st.cache_data(ttl=300)
def load_employees():
    return pd.read_sql("SELECT id, full_name FROM employees ORDER BY full_name", engine)


def load_shifts(employee_id):
    return pd.read_sql(text("""
        SELECT id, status, clocked_in_at, clocked_out_at FROM shifts
        WHERE employee_id = :emp ORDER BY clocked_in_at DESC
    """), engine, params={'emp': int(employee_id)})


def load_trips(shift_id):
    return pd.read_sql(text("""
        SELECT t.*, ls.name AS start_location, le.name AS end_location
        FROM trips t
        LEFT JOIN locations ls ON ls.id = t.start_location_id
        LEFT JOIN locations le ON le.id = t.end_location_id
        WHERE t.shift_id = :shift ORDER BY t.started_at
    """), engine, params={'shift': int(shift_id)})


def load_stops(shift_id):
    return pd.read_sql(text("""
        SELECT s.*, l.name AS location_name
        FROM stationary_clusters s
        LEFT JOIN locations l ON l.id = s.matched_location_id
        WHERE s.shift_id = :shift ORDER BY s.started_at
    """), engine, params={'shift': int(shift_id)})


def load_route(trip_id):
    return pd.read_sql(text("""
        SELECT g.latitude, g.longitude FROM trip_gps_points tp
        JOIN gps_points g ON g.id = tp.gps_point_id
        WHERE tp.trip_id = :trip ORDER BY tp.sequence_order
    """), engine, params={'trip': int(trip_id)})


def shift_map(trips, stops):
    fig = go.Figure()
    lats, lons = [], []
    for _, t in trips.iterrows():
        route = load_route(t['id'])
        if route.empty:
            continue
        fig.add_trace(go.Scattermapbox(mode="lines", lat=route['latitude'], lon=route['longitude'],
            line={'width': 3, 'color': '#E53935'}, name=f"Trip {t['id']}"))
        lats += route['latitude'].tolist()
        lons += route['longitude'].tolist()
    if not stops.empty:
        fig.add_trace(go.Scattermapbox(mode="markers", lat=stops['centroid_latitude'], lon=stops['centroid_longitude'],
            marker={'size': 14, 'color': '#FFC107'},
            text=stops['location_name'].fillna('Unmatched stop'), name="Stops"))
        lats += stops['centroid_latitude'].tolist()
        lons += stops['centroid_longitude'].tolist()

    if lats:
        clat, clon = (min(lats) + max(lats)) / 2, (min(lons) + max(lons)) / 2
        rng = max(max(lats) - min(lats), max(lons) - min(lons))
        zoom = 9 if rng > 0.5 else 11 if rng > 0.1 else 13
    else:
        clat, clon, zoom = 45.5, -73.6, 10

    fig.update_layout(mapbox_style="open-street-map",
        mapbox=dict(center=dict(lat=clat, lon=clon), zoom=zoom),
        margin={"r": 0, "t": 0, "l": 0, "b": 0}, height=380, showlegend=False)
    return fig


# Sidebar
st.sidebar.title("🧭 Shift Reconciler")
employees = load_employees()
if employees.empty:
    st.warning("No employees.")
    st.stop()

employee_name = st.sidebar.selectbox("Employee", employees['full_name'].tolist())
employee_id = int(employees.loc[employees['full_name'] == employee_name, 'id'].iloc[0])
shifts = load_shifts(employee_id)


tab1, tab2, tab3 = st.tabs(["📋 Shift", "💡 Suggested locations", "🚗 Mileage"])

with tab1:
    if shifts.empty:
        st.info("No shifts for this employee.")
    else:
        labels = {f"#{r.id} | {r.clocked_in_at} | {r.status}": r.id for r in shifts.itertuples()}
        shift_id = labels[st.selectbox("Shift", list(labels))]

        if st.button("🔄 Process shift"):
            with st.spinner(f"Processing shift {shift_id}..."):
                try:
                    result = process_shift(shift_id)
                    st.success(f"✓ {result['trips']} trips, {result['stops']} stops")
                except ValueError as e:
                    st.error(str(e))

        trips = load_trips(shift_id)
        stops = load_stops(shift_id)

        c1, c2, c3, c4 = st.columns(4)
        c1.metric("Trips", len(trips))
        c2.metric("KM", f"{trips['distance_km'].sum():.1f}" if not trips.empty else "0.0")
        c3.metric("Stops", len(stops))
        c4.metric("GPS gaps", int(trips['has_gps_gap'].sum()) if not trips.empty else 0)

        st.divider()
        col_tl, col_map = st.columns([6, 4])

        with col_tl:
            st.subheader("Timeline")
            segments = pd.DataFrame(get_shift_timeline(shift_id))
            if segments.empty:
                st.info("No GPS points.")
            else:
                segments['Duration'] = (segments['duration_seconds'] / 60).apply(fmt_min)
                st.dataframe(segments[['segment_type', 'start', 'end', 'Duration', 'point_count', 'location_name']],
                             use_container_width=True, hide_index=True, height=350)

            if not trips.empty:
                st.subheader("Trips")
                df = trips.copy()
                df['Duration'] = df['duration_minutes'].apply(fmt_min)
                st.dataframe(df[['started_at', 'ended_at', 'Duration', 'distance_km', 'transport_mode',
                                 'start_location', 'end_location', 'confidence_score']],
                             use_container_width=True, hide_index=True)

        with col_map:
            st.subheader("Map")
            st.plotly_chart(shift_map(trips, stops), use_container_width=True)

with tab2:
    st.subheader("💡 Suggested locations")
    min_occ = st.slider("Minimum occurrences", 1, 10, 2)
    suggestions = suggest_locations(min_occ)
    if not suggestions:
        st.info("No suggestions.")
    else:
        for i, s in enumerate(suggestions):
            title = f"{s.occurrence_count}x | {s.centroid_latitude:.5f}, {s.centroid_longitude:.5f}"
            with st.expander(title):
                c1, c2 = st.columns(2)
                c1.write(f"**Employees:** {', '.join(s.employee_names)}")
                c1.write(f"**Seen:** {s.first_seen} → {s.last_seen}")
                c2.write(f"**Addresses:** {'; '.join(s.sample_addresses) or '-'}")
                if st.button("🙈 Dismiss", key=f"ign_{i}"):
                    ignore_location_cluster(s.centroid_latitude, s.centroid_longitude, s.occurrence_count)
                    st.success("Dismissed!")
                    st.rerun()

with tab3:
    st.subheader("🚗 Mileage")
    today = date.today()
    period = st.date_input("Period", (today.replace(day=1), today))
    if isinstance(period, tuple) and len(period) == 2:
        summary = summarize(employee_id, period[0], period[1])
        if summary.no_rate_configured:
            st.warning("⚠️ No reimbursement rate configured.")
        c1, c2, c3, c4 = st.columns(4)
        c1.metric("Total km", f"{summary.total_distance_km:.1f}")
        c2.metric("Business km", f"{summary.business_distance_km:.1f}")
        c3.metric("Personal km", f"{summary.personal_distance_km:.1f}")
        c4.metric("Reimbursement", f"$ {summary.estimated_reimbursement:.2f}")
        st.caption(f"Rate {summary.rate_per_km_used:.4f}/km ({summary.rate_source}) | "
                   f"YTD business km {summary.ytd_business_km:.1f}")

st.caption(f"Shift Reconciler | {employee_name} | {today:%Y-%m-%d}")
