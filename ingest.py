"""
Point ingestion and shift boundaries
====================================
Entry points used by the upload transport: open/close shifts and store
batches of GPS fixes. Batches are de-duplicated on the client-generated
idempotency id, so re-sending a batch after a network failure is safe.
"""

import logging
from datetime import datetime, timezone

from database import (
    get_placeholder, fetch_dict, execute_insert_returning_id, transaction,
    format_timestamp,
)

logger = logging.getLogger(__name__)


def _utc_naive(value):
    """Accepts datetime or ISO string; returns a naive UTC datetime."""
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def create_employee(full_name):
    with transaction() as conn:
        c = conn.cursor()
        return execute_insert_returning_id(
            c, f"INSERT INTO employees (full_name) VALUES ({get_placeholder(1)})", (full_name,)
        )


def start_shift(employee_id, clocked_in_at, latitude=None, longitude=None, accuracy=None):
    """Clock-in. Returns the new shift id."""
    with transaction() as conn:
        c = conn.cursor()
        ph = get_placeholder(5)
        return execute_insert_returning_id(c, f"""
            INSERT INTO shifts (employee_id, clocked_in_at, clock_in_latitude, clock_in_longitude, clock_in_accuracy)
            VALUES ({ph})
        """, (employee_id, format_timestamp(_utc_naive(clocked_in_at)), latitude, longitude, accuracy))


def end_shift(shift_id, clocked_out_at, latitude=None, longitude=None, accuracy=None):
    """Clock-out: the shift becomes eligible for segmentation."""
    ph = get_placeholder(1)
    with transaction() as conn:
        c = conn.cursor()
        c.execute(f"SELECT id, status FROM shifts WHERE id = {ph}", (shift_id,))
        shift = fetch_dict(c)
        if shift is None:
            raise ValueError(f"Shift not found: {shift_id}")
        c.execute(f"""
            UPDATE shifts
            SET status = 'completed', clocked_out_at = {ph},
                clock_out_latitude = {ph}, clock_out_longitude = {ph}, clock_out_accuracy = {ph}
            WHERE id = {ph}
        """, (format_timestamp(_utc_naive(clocked_out_at)), latitude, longitude, accuracy, shift_id))


def _validate_point(p):
    lat = float(p['latitude'])
    lon = float(p['longitude'])
    if not -90 <= lat <= 90 or not -180 <= lon <= 180:
        raise ValueError(f"coordinates out of range: {lat}, {lon}")
    accuracy = p.get('accuracy')
    if accuracy is not None and float(accuracy) < 0:
        raise ValueError(f"negative accuracy: {accuracy}")
    if not p.get('client_id'):
        raise ValueError("client_id is required")
    return lat, lon


def sync_gps_points(shift_id, employee_id, points):
    """
    Stores a batch of fixes for a shift.

    Each point is a dict with client_id, latitude, longitude, captured_at and
    optionally accuracy, speed, heading, altitude, is_mocked, device_id.

    Returns:
        {'inserted', 'duplicates', 'errors', 'failed_ids'}
    """
    report = {'inserted': 0, 'duplicates': 0, 'errors': 0, 'failed_ids': []}
    if not points:
        return report

    valid = []
    for p in points:
        client_id = p.get('client_id')
        try:
            lat, lon = _validate_point(p)
            captured_at = _utc_naive(p['captured_at'])
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("⚠️ Point rejected %s: %s", client_id, e)
            report['errors'] += 1
            report['failed_ids'].append(client_id)
            continue
        valid.append((captured_at, client_id, lat, lon, p))

    # Chronological order keeps ids monotonic with capture time
    valid.sort(key=lambda v: v[0])
    ph1 = get_placeholder(1)

    with transaction() as conn:
        c = conn.cursor()
        seen = set()
        for captured_at, client_id, lat, lon, p in valid:
            # Skip duplicates (current batch + database)
            if client_id in seen:
                report['duplicates'] += 1
                continue
            c.execute(f"SELECT 1 FROM gps_points WHERE client_id = {ph1}", (client_id,))
            if c.fetchone():
                report['duplicates'] += 1
                continue
            seen.add(client_id)

            c.execute(f"""
                INSERT INTO gps_points (client_id, shift_id, employee_id, latitude, longitude, accuracy,
                                        captured_at, speed, heading, altitude, is_mocked, device_id)
                VALUES ({get_placeholder(12)})
            """, (
                client_id, shift_id, employee_id, lat, lon, p.get('accuracy'), format_timestamp(captured_at),
                p.get('speed'), p.get('heading'), p.get('altitude'),
                1 if p.get('is_mocked') else 0, p.get('device_id'),
            ))
            report['inserted'] += 1

    logger.info("📦 Shift %s: %d inserted, %d duplicates, %d errors",
                shift_id, report['inserted'], report['duplicates'], report['errors'])
    return report
