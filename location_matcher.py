"""
Geofence matcher
================
match_location() is a pure function of a point, its accuracy and the active
locations: the nearest location whose radius plus the accuracy buffer
contains the point wins (ties go to the lowest id).

The rest of the module applies it to stored trip endpoints and stop
centroids: matching a freshly segmented shift, re-matching after a location
is created or edited, and releasing matches of a removed location.
Endpoints whose match_method is 'manual' are never touched.
"""

import logging

import numpy as np

from database import get_placeholder, fetch_dicts, fetch_dict, transaction
from geo import haversine_m, haversine_m_many
from models import Location

logger = logging.getLogger(__name__)

ENDPOINTS = ('start', 'end')


def load_active_locations(c):
    """Active locations ordered by id (the tie-break order)."""
    c.execute("""
        SELECT id, name, location_type, latitude, longitude, radius_meters
        FROM locations
        WHERE is_active = 1
        ORDER BY id
    """)
    return [Location(*row) for row in c.fetchall()]


def nearest_containing(lat, lon, accuracy, locations):
    """(location, distance_m) of the nearest location containing the point, or None."""
    if not locations:
        return None
    buffer = float(accuracy) if accuracy is not None else 0.0
    distances = haversine_m_many(
        lat, lon,
        [loc.latitude for loc in locations],
        [loc.longitude for loc in locations],
    )
    radii = np.array([loc.radius_meters for loc in locations], dtype=float)
    candidates = np.flatnonzero(distances <= radii + buffer)
    if candidates.size == 0:
        return None
    # argmin keeps the first minimum, i.e. the lowest id among equals
    best = candidates[np.argmin(distances[candidates])]
    return locations[best], float(distances[best])


def match_location(lat, lon, accuracy, locations):
    """Id of the matched location, or None when the point is unmatched."""
    found = nearest_containing(lat, lon, accuracy, locations)
    return found[0].id if found else None


def is_inside(location, lat, lon, accuracy):
    buffer = float(accuracy) if accuracy is not None else 0.0
    return haversine_m(lat, lon, location.latitude, location.longitude) <= location.radius_meters + buffer


# ==========================================
# SHIFT MATCHING (after segmentation)
# ==========================================

def match_shift(c, shift_id, locations=None):
    """Matches every non-manual trip endpoint and stop centroid of a shift."""
    if locations is None:
        locations = load_active_locations(c)
    ph = get_placeholder(1)
    matched = 0

    c.execute(f"""
        SELECT id, start_latitude, start_longitude, start_accuracy, start_match_method,
               end_latitude, end_longitude, end_accuracy, end_match_method
        FROM trips WHERE shift_id = {ph}
    """, (shift_id,))
    for trip in fetch_dicts(c):
        for endpoint in ENDPOINTS:
            if trip[f'{endpoint}_match_method'] == 'manual':
                continue
            location_id = match_location(
                trip[f'{endpoint}_latitude'], trip[f'{endpoint}_longitude'],
                trip[f'{endpoint}_accuracy'], locations,
            )
            _set_trip_endpoint(c, trip['id'], endpoint, location_id)
            if location_id is not None:
                matched += 1

    c.execute(f"""
        SELECT id, centroid_latitude, centroid_longitude, centroid_accuracy, match_method
        FROM stationary_clusters WHERE shift_id = {ph}
    """, (shift_id,))
    for cluster in fetch_dicts(c):
        if cluster['match_method'] == 'manual':
            continue
        location_id = match_location(
            cluster['centroid_latitude'], cluster['centroid_longitude'],
            cluster['centroid_accuracy'], locations,
        )
        _set_cluster_match(c, cluster['id'], location_id)
        if location_id is not None:
            matched += 1

    return matched


def _set_trip_endpoint(c, trip_id, endpoint, location_id, method=None):
    if method is None:
        method = 'auto' if location_id is not None else None
    ph = get_placeholder(1)
    c.execute(f"""
        UPDATE trips
        SET {endpoint}_location_id = {ph}, {endpoint}_match_method = {ph}
        WHERE id = {ph}
    """, (location_id, method, trip_id))


def _set_cluster_match(c, cluster_id, location_id, method=None):
    if method is None:
        method = 'auto' if location_id is not None else None
    ph = get_placeholder(1)
    c.execute(f"""
        UPDATE stationary_clusters
        SET matched_location_id = {ph}, match_method = {ph}
        WHERE id = {ph}
    """, (location_id, method, cluster_id))


# ==========================================
# RE-MATCHING ON LOCATION CHANGE
# ==========================================

def empty_summary():
    return {
        'newly_matched_start': 0,
        'newly_matched_end': 0,
        'unmatched_start': 0,
        'unmatched_end': 0,
        'clusters_matched': 0,
        'clusters_unmatched': 0,
    }


def _get_location(c, location_id):
    ph = get_placeholder(1)
    c.execute(f"""
        SELECT id, name, location_type, latitude, longitude, radius_meters, is_active
        FROM locations WHERE id = {ph}
    """, (location_id,))
    return fetch_dict(c)


def rematch_location(c, location_id):
    """
    Re-evaluates endpoints against a created or edited location.

    - auto endpoints matched to it that now fall outside are re-matched
      against the registry (usually ending unmatched)
    - unmatched, non-manual endpoints that now fall inside are matched

    Endpoints already matched to another location are left alone.

    Returns:
        {newly_matched_start, newly_matched_end, unmatched_start,
         unmatched_end, clusters_matched, clusters_unmatched}
    """
    summary = empty_summary()
    row = _get_location(c, location_id)
    if row is None or not row['is_active']:
        return summary

    locations = load_active_locations(c)
    target = next(loc for loc in locations if loc.id == location_id)
    ph = get_placeholder(1)

    for endpoint in ENDPOINTS:
        c.execute(f"""
            SELECT id, {endpoint}_latitude AS lat, {endpoint}_longitude AS lon,
                   {endpoint}_accuracy AS acc, {endpoint}_location_id AS location_id
            FROM trips
            WHERE ({endpoint}_location_id = {ph} OR {endpoint}_location_id IS NULL)
              AND ({endpoint}_match_method IS NULL OR {endpoint}_match_method <> 'manual')
            ORDER BY id
        """, (location_id,))
        for trip in fetch_dicts(c):
            inside = is_inside(target, trip['lat'], trip['lon'], trip['acc'])
            if trip['location_id'] == location_id and not inside:
                new_id = match_location(trip['lat'], trip['lon'], trip['acc'], locations)
                _set_trip_endpoint(c, trip['id'], endpoint, new_id)
                summary[f'unmatched_{endpoint}'] += 1
            elif trip['location_id'] is None and inside:
                new_id = match_location(trip['lat'], trip['lon'], trip['acc'], locations)
                _set_trip_endpoint(c, trip['id'], endpoint, new_id)
                if new_id == location_id:
                    summary[f'newly_matched_{endpoint}'] += 1

    c.execute(f"""
        SELECT id, centroid_latitude AS lat, centroid_longitude AS lon,
               centroid_accuracy AS acc, matched_location_id AS location_id
        FROM stationary_clusters
        WHERE (matched_location_id = {ph} OR matched_location_id IS NULL)
          AND (match_method IS NULL OR match_method <> 'manual')
        ORDER BY id
    """, (location_id,))
    for cluster in fetch_dicts(c):
        inside = is_inside(target, cluster['lat'], cluster['lon'], cluster['acc'])
        if cluster['location_id'] == location_id and not inside:
            _set_cluster_match(c, cluster['id'], match_location(cluster['lat'], cluster['lon'], cluster['acc'], locations))
            summary['clusters_unmatched'] += 1
        elif cluster['location_id'] is None and inside:
            new_id = match_location(cluster['lat'], cluster['lon'], cluster['acc'], locations)
            _set_cluster_match(c, cluster['id'], new_id)
            if new_id == location_id:
                summary['clusters_matched'] += 1

    logger.info("🔁 Re-match for location %s: %s", location_id, summary)
    return summary


def release_location(c, location_id):
    """
    Moves auto matches off a location that is being deactivated or deleted,
    re-matching each endpoint against the remaining active locations.
    """
    summary = empty_summary()
    others = [loc for loc in load_active_locations(c) if loc.id != location_id]
    ph = get_placeholder(1)

    for endpoint in ENDPOINTS:
        c.execute(f"""
            SELECT id, {endpoint}_latitude AS lat, {endpoint}_longitude AS lon, {endpoint}_accuracy AS acc
            FROM trips
            WHERE {endpoint}_location_id = {ph} AND {endpoint}_match_method = 'auto'
        """, (location_id,))
        for trip in fetch_dicts(c):
            _set_trip_endpoint(c, trip['id'], endpoint, match_location(trip['lat'], trip['lon'], trip['acc'], others))
            summary[f'unmatched_{endpoint}'] += 1

    c.execute(f"""
        SELECT id, centroid_latitude AS lat, centroid_longitude AS lon, centroid_accuracy AS acc
        FROM stationary_clusters
        WHERE matched_location_id = {ph} AND match_method = 'auto'
    """, (location_id,))
    for cluster in fetch_dicts(c):
        _set_cluster_match(c, cluster['id'], match_location(cluster['lat'], cluster['lon'], cluster['acc'], others))
        summary['clusters_unmatched'] += 1

    return summary


# ==========================================
# MANUAL OVERRIDES
# ==========================================

def set_manual_endpoint_match(trip_id, endpoint, location_id):
    """Pins a trip endpoint to a location (or to no location with None)."""
    if endpoint not in ENDPOINTS:
        raise ValueError(f"Invalid endpoint: {endpoint}")
    with transaction() as conn:
        c = conn.cursor()
        _set_trip_endpoint(c, trip_id, endpoint, location_id, method='manual')
        if c.rowcount == 0:
            raise ValueError(f"Trip not found: {trip_id}")


def set_manual_cluster_match(cluster_id, location_id):
    with transaction() as conn:
        c = conn.cursor()
        _set_cluster_match(c, cluster_id, location_id, method='manual')
        if c.rowcount == 0:
            raise ValueError(f"Stationary cluster not found: {cluster_id}")


def clear_manual_endpoint_match(trip_id, endpoint):
    """Hands an endpoint back to automatic matching and re-matches it now."""
    if endpoint not in ENDPOINTS:
        raise ValueError(f"Invalid endpoint: {endpoint}")
    ph = get_placeholder(1)
    with transaction() as conn:
        c = conn.cursor()
        c.execute(f"""
            SELECT {endpoint}_latitude, {endpoint}_longitude, {endpoint}_accuracy
            FROM trips WHERE id = {ph}
        """, (trip_id,))
        row = c.fetchone()
        if row is None:
            raise ValueError(f"Trip not found: {trip_id}")
        location_id = match_location(row[0], row[1], row[2], load_active_locations(c))
        _set_trip_endpoint(c, trip_id, endpoint, location_id)
    return location_id
