"""
Suggested locations
===================
Places employees keep starting/ending trips or clocking in/out at, that no
registered location covers. The unmatched points are clustered with a
DBSCAN-style pass (eps ~30 m, min_points 1) implemented as a grid-indexed
union-find; the input is sorted by (seen_at, kind, source id) so cluster
labels are reproducible, and the drill-down replays exactly the same pass.

Supervisors can dismiss a suggestion (it resurfaces if it grows past the
count seen at dismissal) or dismiss a single trip endpoint.
"""

import math
import logging
from datetime import datetime, timedelta, timezone

import numpy as np
import pandas as pd

from config import (
    SUGGESTION_EPS_M, SUGGESTION_WINDOW_DAYS, SUGGESTION_MAX_CLOCK_ACCURACY_M,
    IGNORED_CLUSTER_RADIUS_M, MIN_SUGGESTION_OCCURRENCES, SUGGESTION_ADDRESS_SAMPLES,
    DEFAULT_ACCURACY_M, OCCURRENCE_RADIUS_M,
)
from database import (
    get_connection, get_placeholder, fetch_dicts, execute_insert_returning_id,
    transaction, format_timestamp, parse_timestamp, IS_POSTGRES,
)
from geo import EARTH_RADIUS_KM, haversine_m, weighted_centroid
from location_matcher import load_active_locations, nearest_containing
from models import ClusterSuggestion

logger = logging.getLogger(__name__)

KIND_ORDER = {'clock_in': 0, 'clock_out': 1, 'end': 2, 'start': 3}
START_KINDS = ('start', 'clock_in')
END_KINDS = ('end', 'clock_out')

# Metres per degree of latitude on the haversine sphere
METERS_PER_DEGREE = math.pi * EARTH_RADIUS_KM * 1000.0 / 180.0

# Grid cells are a bit wider than eps so rounding never splits a neighbour pair
GRID_CELL_MARGIN = 1.001


def _utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ==========================================
# INPUT: UNMATCHED POINTS
# ==========================================

def _trip_endpoint_sql(endpoint, ph):
    time_col = 'started_at' if endpoint == 'start' else 'ended_at'
    # Previous trip's end before a start, next trip's start after an end
    if endpoint == 'start':
        neighbour = f"""(SELECT t2.ended_at FROM trips t2
                         WHERE t2.employee_id = t.employee_id AND t2.started_at < t.started_at
                         ORDER BY t2.started_at DESC LIMIT 1)"""
    else:
        neighbour = f"""(SELECT t2.started_at FROM trips t2
                         WHERE t2.employee_id = t.employee_id AND t2.started_at > t.started_at
                         ORDER BY t2.started_at ASC LIMIT 1)"""
    return f"""
        SELECT t.id AS source_id, t.id AS trip_id, t.shift_id, '{endpoint}' AS kind,
               t.employee_id, e.full_name AS employee_name,
               t.{endpoint}_latitude AS latitude, t.{endpoint}_longitude AS longitude,
               t.{endpoint}_accuracy AS accuracy, t.{time_col} AS seen_at,
               t.{endpoint}_address AS address, {neighbour} AS neighbour_at
        FROM trips t
        JOIN employees e ON e.id = t.employee_id
        WHERE t.{endpoint}_location_id IS NULL
          AND t.{time_col} >= {ph}
          AND NOT EXISTS (
              SELECT 1 FROM ignored_trip_endpoints i
              WHERE i.trip_id = t.id AND i.endpoint_type = '{endpoint}'
          )
    """


def _clock_sql(kind, ph):
    prefix = 'clock_in' if kind == 'clock_in' else 'clock_out'
    time_col = 'clocked_in_at' if kind == 'clock_in' else 'clocked_out_at'
    return f"""
        SELECT s.id AS source_id, NULL AS trip_id, s.id AS shift_id, '{kind}' AS kind,
               s.employee_id, e.full_name AS employee_name,
               s.{prefix}_latitude AS latitude, s.{prefix}_longitude AS longitude,
               s.{prefix}_accuracy AS accuracy, s.{time_col} AS seen_at,
               NULL AS address, NULL AS neighbour_at
        FROM shifts s
        JOIN employees e ON e.id = s.employee_id
        WHERE s.{prefix}_latitude IS NOT NULL
          AND s.{prefix}_longitude IS NOT NULL
          AND s.{time_col} IS NOT NULL
          AND s.{time_col} >= {ph}
          AND COALESCE(s.{prefix}_accuracy, {DEFAULT_ACCURACY_M}) <= {SUGGESTION_MAX_CLOCK_ACCURACY_M}
    """


def collect_unmatched_points(now=None):
    """
    Every point eligible for clustering, sorted by (seen_at, kind, source_id).

    Trip endpoints: no location, not dismissed, not within radius + accuracy
    of an active location. Clock-in/out: accuracy (default 20 m) <= 50 m and
    not inside an active location. Both limited to the trailing window.
    """
    cutoff = format_timestamp((now or _utcnow()) - timedelta(days=SUGGESTION_WINDOW_DAYS))
    ph = get_placeholder(1)
    query = " UNION ALL ".join([
        _trip_endpoint_sql('start', ph), _trip_endpoint_sql('end', ph),
        _clock_sql('clock_in', ph), _clock_sql('clock_out', ph),
    ])

    conn = get_connection()
    try:
        df = pd.read_sql(query, conn, params=(cutoff,) * 4)
        locations = load_active_locations(conn.cursor())
    finally:
        conn.close()

    if df.empty:
        return df

    df['seen_at'] = df['seen_at'].map(parse_timestamp, na_action='ignore')
    df['neighbour_at'] = df['neighbour_at'].map(parse_timestamp, na_action='ignore')
    df['accuracy'] = df['accuracy'].astype(float)

    outside = [
        nearest_containing(row.latitude, row.longitude,
                           None if pd.isna(row.accuracy) else row.accuracy, locations) is None
        for row in df.itertuples()
    ]
    df = df[outside].copy()

    df['kind_order'] = df['kind'].map(KIND_ORDER)
    df = df.sort_values(['seen_at', 'kind_order', 'source_id'], kind='mergesort')
    return df.drop(columns='kind_order').reset_index(drop=True)


# ==========================================
# CLUSTERING (grid-indexed union-find)
# ==========================================

def grid_cell_degrees(eps_m, max_abs_lat):
    """(lat, lon) cell size in degrees, at least eps_m wide up to max_abs_lat."""
    cell_lat = eps_m * GRID_CELL_MARGIN / METERS_PER_DEGREE
    cell_lon = cell_lat / max(math.cos(math.radians(max_abs_lat)), 0.01)
    return cell_lat, cell_lon


def cluster_points(lats, lons, eps_m=SUGGESTION_EPS_M):
    """
    Connected components of the "within eps_m" graph, i.e. DBSCAN with
    min_points = 1. Labels are numbered by first appearance in the input.

    The grid cell is eps_m wide at the highest |latitude| in the set, so any
    two points within eps_m fall in the same or adjacent cells.
    """
    n = len(lats)
    if n == 0:
        return []

    parent = list(range(n))

    def find(i):
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return i

    def union(i, j):
        ri, rj = find(i), find(j)
        if ri != rj:
            parent[max(ri, rj)] = min(ri, rj)

    cell_lat, cell_lon = grid_cell_degrees(eps_m, max(abs(float(lat)) for lat in lats))

    grid = {}
    for i in range(n):
        lat, lon = float(lats[i]), float(lons[i])
        cx, cy = math.floor(lat / cell_lat), math.floor(lon / cell_lon)
        for dx in (-1, 0, 1):
            for dy in (-1, 0, 1):
                for j in grid.get((cx + dx, cy + dy), ()):
                    if haversine_m(lat, lon, float(lats[j]), float(lons[j])) <= eps_m:
                        union(i, j)
        grid.setdefault((cx, cy), []).append(i)

    labels, numbering = [], {}
    for i in range(n):
        labels.append(numbering.setdefault(find(i), len(numbering)))
    return labels


def _clustered_points(now=None):
    df = collect_unmatched_points(now)
    if df.empty:
        return df
    df['cluster'] = cluster_points(df['latitude'].tolist(), df['longitude'].tolist())
    return df


def _summarize_cluster(g):
    lat, lon, _ = weighted_centroid(g['latitude'], g['longitude'], g['accuracy'])
    addresses = []
    for address in g['address']:
        if address and not pd.isna(address) and address not in addresses:
            addresses.append(address)
    return ClusterSuggestion(
        centroid_latitude=lat,
        centroid_longitude=lon,
        occurrence_count=len(g),
        has_start_endpoints=bool(g['kind'].isin(START_KINDS).any()),
        has_end_endpoints=bool(g['kind'].isin(END_KINDS).any()),
        employee_names=sorted(set(g['employee_name'].dropna())),
        first_seen=min(g['seen_at']),
        last_seen=max(g['seen_at']),
        sample_addresses=addresses[:SUGGESTION_ADDRESS_SAMPLES],
    )


def _all_clusters(df):
    return [_summarize_cluster(g) for _, g in df.groupby('cluster', sort=True)]


def list_ignored_clusters():
    conn = get_connection()
    try:
        c = conn.cursor()
        c.execute("SELECT * FROM ignored_location_clusters ORDER BY id")
        return fetch_dicts(c)
    finally:
        conn.close()


def _is_suppressed(cluster, ignored):
    for row in ignored:
        distance = haversine_m(cluster.centroid_latitude, cluster.centroid_longitude,
                               row['centroid_latitude'], row['centroid_longitude'])
        if distance <= IGNORED_CLUSTER_RADIUS_M and cluster.occurrence_count <= row['occurrence_count_at_ignore']:
            return True
    return False


def suggest_locations(min_occurrences=MIN_SUGGESTION_OCCURRENCES, now=None):
    """
    Recurring unmatched places, most frequent first.

    Clusters below min_occurrences are dropped; a cluster near a dismissed
    one stays hidden until it grows past the count recorded at dismissal.
    """
    df = _clustered_points(now)
    if df.empty:
        return []

    ignored = list_ignored_clusters()
    suggestions = [
        cluster for cluster in _all_clusters(df)
        if cluster.occurrence_count >= min_occurrences and not _is_suppressed(cluster, ignored)
    ]
    suggestions.sort(key=lambda s: -s.occurrence_count)
    logger.info("💡 %d suggested locations from %d unmatched points", len(suggestions), len(df))
    return suggestions


def _stop_minutes(row):
    if row['neighbour_at'] is None or pd.isna(row['neighbour_at']):
        return None
    if row['kind'] == 'start':
        delta = row['seen_at'] - row['neighbour_at']
    else:
        delta = row['neighbour_at'] - row['seen_at']
    return round(delta.total_seconds() / 60.0, 1)


def get_cluster_occurrences(latitude, longitude, radius_m=OCCURRENCE_RADIUS_M, now=None):
    """
    Members of the cluster whose centroid is nearest to (latitude,
    longitude), newest first. Empty when no centroid lies within radius_m.

    Each occurrence: trip_id, shift_id, employee_name, endpoint_type,
    latitude, longitude, seen_at, address, gps_accuracy, stop_duration_minutes
    (time parked before a start or after an end; None for clock events).
    """
    df = _clustered_points(now)
    if df.empty:
        return []

    centroids = {label: _summarize_cluster(g) for label, g in df.groupby('cluster', sort=True)}
    labels = list(centroids)
    distances = np.array([
        haversine_m(latitude, longitude, centroids[k].centroid_latitude, centroids[k].centroid_longitude)
        for k in labels
    ])
    best = int(np.argmin(distances))
    if distances[best] > radius_m:
        return []

    members = df[df['cluster'] == labels[best]]
    occurrences = []
    for row in members.to_dict('records'):
        is_trip = row['kind'] in ('start', 'end')
        occurrences.append({
            'trip_id': int(row['trip_id']) if is_trip else None,
            'shift_id': int(row['shift_id']),
            'employee_name': row['employee_name'],
            'endpoint_type': row['kind'],
            'latitude': float(row['latitude']),
            'longitude': float(row['longitude']),
            'seen_at': row['seen_at'],
            'address': None if pd.isna(row['address']) else row['address'],
            'gps_accuracy': None if pd.isna(row['accuracy']) else float(row['accuracy']),
            'stop_duration_minutes': _stop_minutes(row) if is_trip else None,
        })
    occurrences.sort(key=lambda o: o['seen_at'], reverse=True)
    return occurrences


# ==========================================
# DISMISSALS
# ==========================================

def ignore_location_cluster(latitude, longitude, occurrence_count):
    """Dismisses a suggestion; returns the ignore row id."""
    with transaction() as conn:
        c = conn.cursor()
        ignored_id = execute_insert_returning_id(c, f"""
            INSERT INTO ignored_location_clusters
            (centroid_latitude, centroid_longitude, occurrence_count_at_ignore, ignored_at)
            VALUES ({get_placeholder(4)})
        """, (float(latitude), float(longitude), int(occurrence_count), format_timestamp(_utcnow())))
    logger.info("🙈 Cluster at %.5f, %.5f ignored (%d occurrences)", latitude, longitude, occurrence_count)
    return ignored_id


def unignore_location_cluster(ignored_id):
    with transaction() as conn:
        c = conn.cursor()
        c.execute(f"DELETE FROM ignored_location_clusters WHERE id = {get_placeholder(1)}", (ignored_id,))
        if c.rowcount == 0:
            raise ValueError(f"Ignored cluster not found: {ignored_id}")


def ignore_trip_endpoint(trip_id, endpoint_type):
    """Drops one trip endpoint from the suggestion input. Idempotent."""
    if endpoint_type not in ('start', 'end'):
        raise ValueError(f"Invalid endpoint: {endpoint_type}")
    ph = get_placeholder(1)
    with transaction() as conn:
        c = conn.cursor()
        c.execute(f"SELECT id FROM trips WHERE id = {ph}", (trip_id,))
        if c.fetchone() is None:
            raise ValueError(f"Trip not found: {trip_id}")
        conflict = "ON CONFLICT (trip_id, endpoint_type) DO NOTHING" if IS_POSTGRES else ""
        verb = "INSERT" if IS_POSTGRES else "INSERT OR IGNORE"
        c.execute(f"""
            {verb} INTO ignored_trip_endpoints (trip_id, endpoint_type, ignored_at)
            VALUES ({get_placeholder(3)}) {conflict}
        """, (trip_id, endpoint_type, format_timestamp(_utcnow())))
