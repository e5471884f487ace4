"""
Shift timeline
==============
Per-point location memo (location_matches) and the supervisor's timeline
view built from it: consecutive fixes at the same location collapse into one
segment; segments with no location are either travel between two different
places or unmatched time.
"""

import logging

import pandas as pd

from database import get_connection, get_placeholder, transaction, parse_timestamp
from location_matcher import load_active_locations, nearest_containing

logger = logging.getLogger(__name__)


def match_confidence(distance_m, radius_m):
    """1.0 at the center, 0.0 at the edge of the geofence."""
    if not radius_m:
        return 0.0
    return max(0.0, 1.0 - distance_m / radius_m)


def rebuild_location_matches(c, shift_id, locations=None):
    """
    Replaces the memo rows of one shift's fixes. Uses the strict radius (no
    accuracy buffer); each fix keeps only its nearest containing location.

    Returns:
        Number of fixes matched.
    """
    if locations is None:
        locations = load_active_locations(c)
    ph = get_placeholder(1)

    c.execute(f"""
        DELETE FROM location_matches
        WHERE gps_point_id IN (SELECT id FROM gps_points WHERE shift_id = {ph})
    """, (shift_id,))

    c.execute(f"SELECT id, latitude, longitude FROM gps_points WHERE shift_id = {ph}", (shift_id,))
    rows = []
    for point_id, lat, lon in c.fetchall():
        found = nearest_containing(lat, lon, None, locations)
        if found is None:
            continue
        location, distance = found
        rows.append((point_id, location.id, round(distance, 2),
                     round(match_confidence(distance, location.radius_meters), 3)))

    if rows:
        c.executemany(f"""
            INSERT INTO location_matches (gps_point_id, location_id, distance_meters, confidence_score)
            VALUES ({get_placeholder(4)})
        """, rows)
    return len(rows)


def build_location_matches(shift_id):
    """Standalone memo rebuild for one shift (own transaction)."""
    with transaction() as conn:
        matched = rebuild_location_matches(conn.cursor(), shift_id)
    logger.info("🧭 Shift %s: %d fixes matched to locations", shift_id, matched)
    return matched


def _load_matched_points(shift_id):
    ph = get_placeholder(1)
    conn = get_connection()
    try:
        df = pd.read_sql(f"""
            SELECT g.id, g.captured_at, m.location_id, m.confidence_score,
                   l.name AS location_name, l.location_type
            FROM gps_points g
            LEFT JOIN location_matches m ON m.gps_point_id = g.id
            LEFT JOIN locations l ON l.id = m.location_id
            WHERE g.shift_id = {ph}
            ORDER BY g.captured_at, g.id
        """, conn, params=(shift_id,))
    finally:
        conn.close()
    return df


def _segment_type(index, segments):
    if segments[index]['location_id'] is not None:
        return 'matched'
    before = next((s['location_id'] for s in reversed(segments[:index]) if s['location_id'] is not None), None)
    after = next((s['location_id'] for s in segments[index + 1:] if s['location_id'] is not None), None)
    if before is not None and after is not None and before != after:
        return 'travel'
    return 'unmatched'


def get_shift_timeline(shift_id):
    """
    Timeline of a shift, one dict per segment:
    segment_index, segment_type (matched | travel | unmatched), start, end,
    duration_seconds, point_count, location_id, location_name,
    location_type, avg_confidence.
    """
    df = _load_matched_points(shift_id)
    if df.empty:
        return []

    key = df['location_id'].fillna(-1)
    df['group'] = (key != key.shift()).cumsum()

    segments = []
    for _, g in df.groupby('group', sort=True):
        first = g.iloc[0]
        start = parse_timestamp(first['captured_at'])
        end = parse_timestamp(g.iloc[-1]['captured_at'])
        matched = pd.notna(first['location_id'])
        segments.append({
            'segment_index': len(segments),
            'segment_type': None,
            'start': start,
            'end': end,
            'duration_seconds': int((end - start).total_seconds()),
            'point_count': len(g),
            'location_id': int(first['location_id']) if matched else None,
            'location_name': first['location_name'] if matched else None,
            'location_type': first['location_type'] if matched else None,
            'avg_confidence': round(float(g['confidence_score'].mean()), 3) if matched else None,
        })

    for i, segment in enumerate(segments):
        segment['segment_type'] = _segment_type(i, segments)
    return segments
