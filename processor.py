"""
Shift Processor
===============
Recomputes the derived rows of a completed shift from its raw GPS fixes:
- trips (+ trip_gps_points) and stationary clusters via segmentation
- geofence matches of trip endpoints and stop centroids
- the per-fix location memo used by the timeline

Each shift is recomputed in ONE transaction (delete-then-insert), so running
it twice yields the same rows and a failure leaves the previous rows intact.
"""

import sys
import logging
from datetime import date

import pandas as pd

from config import BATCH_SIZE
from database import (
    get_connection, get_placeholder, fetch_dict, execute_insert_returning_id,
    transaction, format_timestamp, parse_timestamp, format_date, init_db, IS_POSTGRES,
)
from models import GpsPoint
from segmentation import segment_shift
from location_matcher import load_active_locations, match_shift
from timeline import rebuild_location_matches
from carpools import detect_carpools

logger = logging.getLogger(__name__)


class ShiftNotFoundError(ValueError):
    pass


class ShiftStillActiveError(ValueError):
    """Shift has not been clocked out yet: its fixes are still arriving."""


def _lock_shift(c, shift_id):
    ph = get_placeholder(1)
    sql = f"SELECT id, employee_id, status FROM shifts WHERE id = {ph}"
    if IS_POSTGRES:
        # One writer per shift
        sql += " FOR UPDATE"
    c.execute(sql, (shift_id,))
    shift = fetch_dict(c)
    if shift is None:
        raise ShiftNotFoundError(f"Shift not found: {shift_id}")
    if shift['status'] != 'completed':
        raise ShiftStillActiveError(f"Shift {shift_id} is still active")
    return shift


def load_shift_points(conn, shift_id):
    """Fixes of a shift as GpsPoint objects, ordered by capture time."""
    df = pd.read_sql(f"""
        SELECT id, latitude, longitude, accuracy, captured_at, speed, heading, altitude, is_mocked
        FROM gps_points
        WHERE shift_id = {get_placeholder(1)}
        ORDER BY captured_at, id
    """, conn, params=(shift_id,))

    if df.empty:
        return []

    df['captured_at'] = pd.to_datetime(df['captured_at'], format='ISO8601')
    df = df.astype(object).where(df.notna(), None)

    return [
        GpsPoint(
            id=int(row['id']),
            latitude=float(row['latitude']),
            longitude=float(row['longitude']),
            accuracy=row['accuracy'],
            captured_at=row['captured_at'].to_pydatetime(),
            speed=row['speed'],
            heading=row['heading'],
            altitude=row['altitude'],
            is_mocked=bool(row['is_mocked']),
        )
        for row in df.to_dict('records')
    ]


def _insert_trips(c, shift, trips):
    query_insert = f"""
        INSERT INTO trips
        (shift_id, employee_id, started_at, ended_at, start_latitude, start_longitude, start_accuracy,
         end_latitude, end_longitude, end_accuracy, distance_km, duration_minutes, classification,
         confidence_score, gps_point_count, low_accuracy_point_count, has_gps_gap, detection_method,
         transport_mode)
        VALUES ({get_placeholder(19)})
    """
    links = []
    for trip in trips:
        trip_id = execute_insert_returning_id(c, query_insert, (
            shift['id'], shift['employee_id'],
            format_timestamp(trip.started_at), format_timestamp(trip.ended_at),
            trip.start_latitude, trip.start_longitude, trip.start_accuracy,
            trip.end_latitude, trip.end_longitude, trip.end_accuracy,
            trip.distance_km, trip.duration_minutes, trip.classification,
            trip.confidence_score, trip.gps_point_count, trip.low_accuracy_point_count,
            1 if trip.has_gps_gap else 0, trip.detection_method, trip.transport_mode,
        ))
        links.extend((trip_id, point_id, seq) for seq, point_id in enumerate(trip.point_ids))

    # Point links in batches
    query_links = f"INSERT INTO trip_gps_points (trip_id, gps_point_id, sequence_order) VALUES ({get_placeholder(3)})"
    for i in range(0, len(links), BATCH_SIZE):
        c.executemany(query_links, links[i:i + BATCH_SIZE])


def _insert_clusters(c, shift, stops):
    rows = [(
        shift['id'], shift['employee_id'],
        s.centroid_latitude, s.centroid_longitude, s.centroid_accuracy,
        format_timestamp(s.started_at), format_timestamp(s.ended_at),
        s.duration_seconds, s.gps_point_count, s.gps_gap_seconds, s.gps_gap_count,
    ) for s in stops]

    query_insert = f"""
        INSERT INTO stationary_clusters
        (shift_id, employee_id, centroid_latitude, centroid_longitude, centroid_accuracy,
         started_at, ended_at, duration_seconds, gps_point_count, gps_gap_seconds, gps_gap_count)
        VALUES ({get_placeholder(11)})
    """
    for i in range(0, len(rows), BATCH_SIZE):
        c.executemany(query_insert, rows[i:i + BATCH_SIZE])


def process_shift(shift_id):
    """
    Segments a completed shift and replaces its derived rows. Carpool days
    its old trips were pooled on are re-detected after the commit.

    Raises:
        ShiftNotFoundError, ShiftStillActiveError: before anything is deleted.

    Returns:
        {'shift_id', 'points', 'trips', 'stops', 'matched', 'memo_matches'}
    """
    ph = get_placeholder(1)
    with transaction() as conn:
        c = conn.cursor()
        shift = _lock_shift(c, shift_id)

        points = load_shift_points(conn, shift_id)
        trips, stops = segment_shift(points)

        # Carpool days this shift's trips take part in: their groups are
        # rebuilt from the new trips once this transaction commits
        c.execute(f"""
            SELECT DISTINCT g.trip_date FROM carpool_groups g
            JOIN carpool_members m ON m.carpool_group_id = g.id
            JOIN trips t ON t.id = m.trip_id
            WHERE t.shift_id = {ph}
        """, (shift_id,))
        carpool_days = sorted(format_date(row[0]) for row in c.fetchall())

        # Delete-then-insert: trip_gps_points, carpool_members and
        # ignored_trip_endpoints go with the trips (ON DELETE CASCADE)
        c.execute(f"DELETE FROM trips WHERE shift_id = {ph}", (shift_id,))
        c.execute(f"DELETE FROM stationary_clusters WHERE shift_id = {ph}", (shift_id,))

        _insert_trips(c, shift, trips)
        _insert_clusters(c, shift, stops)

        locations = load_active_locations(c)
        matched = match_shift(c, shift_id, locations)
        memo = rebuild_location_matches(c, shift_id, locations)

    logger.info("✅ Shift %s: %d fixes -> %d trips, %d stops, %d matches",
                shift_id, len(points), len(trips), len(stops), matched)

    for day in carpool_days:
        detect_carpools(day)

    return {
        'shift_id': shift_id,
        'points': len(points),
        'trips': len(trips),
        'stops': len(stops),
        'matched': matched,
        'memo_matches': memo,
    }


def completed_shift_ids(since=None):
    conn = get_connection()
    try:
        c = conn.cursor()
        sql = "SELECT id FROM shifts WHERE status = 'completed'"
        params = ()
        if since is not None:
            sql += f" AND clocked_in_at >= {get_placeholder(1)}"
            params = (format_timestamp(parse_timestamp(since)),)
        c.execute(sql + " ORDER BY id", params)
        return [row[0] for row in c.fetchall()]
    finally:
        conn.close()


def process_all(since=None):
    """
    Backfill: recomputes every completed shift, each in its own transaction.
    A failing shift is reported and the run moves on.

    Returns:
        {'processed': [...], 'failed': {shift_id: error}}
    """
    shift_ids = completed_shift_ids(since)
    logger.info("🚀 Processing %d shifts", len(shift_ids))

    processed, failed = [], {}
    for i, shift_id in enumerate(shift_ids, start=1):
        try:
            process_shift(shift_id)
            processed.append(shift_id)
        except Exception as e:
            logger.error("❌ Shift %s failed: %s", shift_id, e)
            failed[shift_id] = str(e)
        if i % BATCH_SIZE == 0:
            logger.info("   %d/%d shifts", i, len(shift_ids))

    logger.info("📊 Done: %d processed, %d failed", len(processed), len(failed))
    return {'processed': processed, 'failed': failed}


HELP = """
Shift Processor
===============
Usage: python processor.py [option]

Options:
  --shift ID              Recompute one completed shift
  --all                   Recompute every completed shift
  --since YYYY-MM-DD      Recompute completed shifts clocked in since the date
  --carpools YYYY-MM-DD   Detect carpools among that day's driving trips
  --help                  Show this help
"""


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    init_db()

    if len(sys.argv) > 1:
        command = sys.argv[1]
        argument = sys.argv[2] if len(sys.argv) > 2 else None

        if command == "--shift" and argument:
            try:
                print(process_shift(int(argument)))
            except ValueError as e:
                print(f"⚠️ {e}")
                sys.exit(1)
        elif command == "--all":
            process_all()
        elif command == "--since" and argument:
            process_all(since=date.fromisoformat(argument))
        elif command == "--carpools" and argument:
            groups = detect_carpools(format_date(argument))
            print(f"🚗 {len(groups)} carpool groups detected on {argument}")
        elif command == "--help":
            print(HELP)
        else:
            print(f"Unknown option: {command}")
            print("Use --help to list the options")
    else:
        print(HELP)
