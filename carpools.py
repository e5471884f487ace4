"""
Vehicle periods and carpool detection
=====================================
Vehicle periods record which kind of vehicle an employee drives
(personal / company) over a date range. Carpools are driving trips by
different employees on the same day that start and end together; the
member with a personal vehicle is presumed the driver, and only the driver's
trip stays reimbursable.
"""

import logging

from config import CARPOOL_MAX_ENDPOINT_KM, CARPOOL_MIN_OVERLAP_RATIO
from database import (
    get_connection, get_placeholder, fetch_dicts, execute_insert_returning_id,
    transaction, format_date, parse_timestamp,
)
from geo import haversine_km

logger = logging.getLogger(__name__)

VEHICLE_TYPES = ('personal', 'company')


# ==========================================
# VEHICLE PERIODS
# ==========================================

def add_vehicle_period(employee_id, vehicle_type, started_at, ended_at=None, notes=None):
    """
    Records a vehicle period (open-ended when ended_at is None).

    Raises:
        ValueError: invalid type or dates, or overlap with another period of
        the same employee and vehicle type.
    """
    if vehicle_type not in VEHICLE_TYPES:
        raise ValueError(f"vehicle_type must be personal or company: {vehicle_type!r}")
    start = format_date(started_at)
    end = format_date(ended_at)
    if end is not None and end < start:
        raise ValueError("ended_at is before started_at")

    ph = get_placeholder(1)
    with transaction() as conn:
        c = conn.cursor()
        c.execute(f"""
            SELECT id FROM vehicle_periods
            WHERE employee_id = {ph} AND vehicle_type = {ph}
              AND ({ph} IS NULL OR started_at <= {ph})
              AND (ended_at IS NULL OR ended_at >= {ph})
        """, (employee_id, vehicle_type, end, end, start))
        clash = c.fetchone()
        if clash:
            raise ValueError(f"Overlaps {vehicle_type} vehicle period {clash[0]} of employee {employee_id}")
        return execute_insert_returning_id(c, f"""
            INSERT INTO vehicle_periods (employee_id, vehicle_type, started_at, ended_at, notes)
            VALUES ({get_placeholder(5)})
        """, (employee_id, vehicle_type, start, end, notes))


def _has_period(c, employee_id, vehicle_type, day):
    ph = get_placeholder(1)
    c.execute(f"""
        SELECT 1 FROM vehicle_periods
        WHERE employee_id = {ph} AND vehicle_type = {ph}
          AND started_at <= {ph}
          AND (ended_at IS NULL OR ended_at >= {ph})
    """, (employee_id, vehicle_type, day, day))
    return c.fetchone() is not None


def has_active_vehicle_period(employee_id, vehicle_type, on_date):
    conn = get_connection()
    try:
        return _has_period(conn.cursor(), employee_id, vehicle_type, format_date(on_date))
    finally:
        conn.close()


# ==========================================
# CARPOOL DETECTION
# ==========================================

def is_carpool_pair(a, b):
    """Same route (both ends < 200 m apart) and >= 80% time overlap of the shorter trip."""
    if a['employee_id'] == b['employee_id']:
        return False
    start_km = haversine_km(a['start_latitude'], a['start_longitude'], b['start_latitude'], b['start_longitude'])
    end_km = haversine_km(a['end_latitude'], a['end_longitude'], b['end_latitude'], b['end_longitude'])
    if start_km >= CARPOOL_MAX_ENDPOINT_KM or end_km >= CARPOOL_MAX_ENDPOINT_KM:
        return False

    overlap = (min(a['ended_at'], b['ended_at']) - max(a['started_at'], b['started_at'])).total_seconds()
    shorter = min(a['duration_seconds'], b['duration_seconds'])
    return shorter > 0 and max(0.0, overlap) / shorter >= CARPOOL_MIN_OVERLAP_RATIO


def _group_pairs(trips, pairs):
    """Union-find over trip indexes; returns groups as sorted index lists."""
    parent = list(range(len(trips)))

    def find(i):
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return i

    for i, j in pairs:
        ri, rj = find(i), find(j)
        if ri != rj:
            parent[max(ri, rj)] = min(ri, rj)

    groups = {}
    for i, j in pairs:
        for k in (i, j):
            groups.setdefault(find(k), set()).add(k)
    return [sorted(g) for _, g in sorted(groups.items())]


def _pick_driver(c, members, day):
    """(driver_employee_id, review_needed) for a group."""
    with_personal = sorted(
        {(m['full_name'] or '', m['employee_id']) for m in members
         if _has_period(c, m['employee_id'], 'personal', day)}
    )
    if len(with_personal) == 1:
        return with_personal[0][1], False
    if not with_personal:
        return None, True
    return with_personal[0][1], True


def detect_carpools(trip_date):
    """
    Re-detects the carpools of one day (previous groups of that day are
    replaced).

    Returns:
        list of {carpool_group_id, member_count, driver_employee_id, review_needed}
    """
    day = format_date(trip_date)
    ph = get_placeholder(1)

    with transaction() as conn:
        c = conn.cursor()
        c.execute(f"DELETE FROM carpool_groups WHERE trip_date = {ph}", (day,))

        c.execute(f"""
            SELECT t.id, t.employee_id, e.full_name, t.started_at, t.ended_at,
                   t.start_latitude, t.start_longitude, t.end_latitude, t.end_longitude
            FROM trips t
            JOIN employees e ON e.id = t.employee_id
            WHERE DATE(t.started_at) = {ph}
              AND t.transport_mode = 'driving'
            ORDER BY t.started_at, t.id
        """, (day,))
        trips = []
        for trip in fetch_dicts(c):
            trip['started_at'] = parse_timestamp(trip['started_at'])
            trip['ended_at'] = parse_timestamp(trip['ended_at'])
            trip['duration_seconds'] = (trip['ended_at'] - trip['started_at']).total_seconds()
            if trip['duration_seconds'] > 0:
                trips.append(trip)

        pairs = [
            (i, j)
            for i in range(len(trips))
            for j in range(i + 1, len(trips))
            if is_carpool_pair(trips[i], trips[j])
        ]

        results = []
        for group in _group_pairs(trips, pairs):
            members = [trips[k] for k in group]
            driver_id, review_needed = _pick_driver(c, members, day)
            group_id = execute_insert_returning_id(c, f"""
                INSERT INTO carpool_groups (trip_date, driver_employee_id, review_needed)
                VALUES ({get_placeholder(3)})
            """, (day, driver_id, 1 if review_needed else 0))

            rows = []
            for m in members:
                if driver_id is None:
                    role = 'unassigned'
                elif m['employee_id'] == driver_id:
                    role = 'driver'
                else:
                    role = 'passenger'
                rows.append((group_id, m['id'], m['employee_id'], role))
            c.executemany(f"""
                INSERT INTO carpool_members (carpool_group_id, trip_id, employee_id, role)
                VALUES ({get_placeholder(4)})
            """, rows)

            results.append({
                'carpool_group_id': group_id,
                'member_count': len(members),
                'driver_employee_id': driver_id,
                'review_needed': review_needed,
            })

    logger.info("🚗 %s: %d carpool groups", day, len(results))
    return results
