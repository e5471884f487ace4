"""
Location registry (geofences)
=============================
Create / edit / deactivate / delete named circular geofences. Every change
re-evaluates the auto-matched trip endpoints and stop centroids so that the
derived rows stay a function of the current registry, and returns the
re-match summary so the caller can report the blast radius.
"""

import logging

from config import LOCATION_TYPES, MIN_RADIUS_M, MAX_RADIUS_M, DEFAULT_RADIUS_M
from database import (
    get_connection, get_placeholder, fetch_dict, fetch_dicts,
    execute_insert_returning_id, transaction,
)
from location_matcher import rematch_location, release_location, empty_summary

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ('name', 'location_type', 'latitude', 'longitude', 'radius_meters', 'address', 'notes', 'is_active')


def validate_location(name, location_type, latitude, longitude, radius_meters):
    """Raises ValueError naming the first invalid field."""
    if not name or not str(name).strip():
        raise ValueError("name is required")
    if location_type not in LOCATION_TYPES:
        raise ValueError(f"location_type must be one of {', '.join(LOCATION_TYPES)}: {location_type!r}")
    if latitude is None or not -90 <= float(latitude) <= 90:
        raise ValueError(f"latitude out of range: {latitude}")
    if longitude is None or not -180 <= float(longitude) <= 180:
        raise ValueError(f"longitude out of range: {longitude}")
    if radius_meters is None or not MIN_RADIUS_M <= float(radius_meters) <= MAX_RADIUS_M:
        raise ValueError(f"radius_meters must be between {MIN_RADIUS_M} and {MAX_RADIUS_M}: {radius_meters}")


def _insert_location(c, name, location_type, latitude, longitude, radius_meters, address, notes, is_active):
    validate_location(name, location_type, latitude, longitude, radius_meters)
    ph = get_placeholder(8)
    return execute_insert_returning_id(c, f"""
        INSERT INTO locations (name, location_type, latitude, longitude, radius_meters, address, notes, is_active)
        VALUES ({ph})
    """, (str(name).strip(), location_type, float(latitude), float(longitude),
          float(radius_meters), address, notes, 1 if is_active else 0))


def create_location(name, location_type, latitude, longitude, radius_meters=DEFAULT_RADIUS_M,
                    address=None, notes=None, is_active=True):
    """
    Registers a geofence and matches the unmatched endpoints it now covers.

    Returns:
        (location_id, rematch_summary)
    """
    with transaction() as conn:
        c = conn.cursor()
        location_id = _insert_location(c, name, location_type, latitude, longitude,
                                       radius_meters, address, notes, is_active)
        summary = rematch_location(c, location_id)
    logger.info("📍 Location %s created (%s)", location_id, name)
    return location_id, summary


def bulk_create_locations(rows):
    """
    Inserts many locations, one transaction per row so a bad row does not
    discard the good ones.

    Returns:
        list of {name, id, success, error}
    """
    results = []
    for row in rows:
        try:
            location_id, _ = create_location(
                row.get('name'), row.get('location_type'),
                row.get('latitude'), row.get('longitude'),
                row.get('radius_meters') or DEFAULT_RADIUS_M,
                row.get('address'), row.get('notes'),
                row.get('is_active', True),
            )
            results.append({'name': row.get('name'), 'id': location_id, 'success': True, 'error': None})
        except ValueError as e:
            results.append({'name': row.get('name'), 'id': None, 'success': False, 'error': str(e)})
    return results


def get_location(location_id):
    conn = get_connection()
    try:
        c = conn.cursor()
        c.execute(f"SELECT * FROM locations WHERE id = {get_placeholder(1)}", (location_id,))
        return fetch_dict(c)
    finally:
        conn.close()


def list_locations(active_only=False):
    conn = get_connection()
    try:
        c = conn.cursor()
        sql = "SELECT * FROM locations"
        if active_only:
            sql += " WHERE is_active = 1"
        c.execute(sql + " ORDER BY name, id")
        return fetch_dicts(c)
    finally:
        conn.close()


def update_location(location_id, **changes):
    """
    Edits a geofence. Geometry or activation changes re-match the affected
    endpoints; deactivation releases the location's auto matches.

    Returns:
        The re-match summary (all zeros when nothing spatial changed).
    """
    unknown = set(changes) - set(EDITABLE_FIELDS)
    if unknown:
        raise ValueError(f"Unknown location fields: {', '.join(sorted(unknown))}")

    with transaction() as conn:
        c = conn.cursor()
        c.execute(f"SELECT * FROM locations WHERE id = {get_placeholder(1)}", (location_id,))
        current = fetch_dict(c)
        if current is None:
            raise ValueError(f"Location not found: {location_id}")

        merged = {**current, **changes}
        validate_location(merged['name'], merged['location_type'], merged['latitude'],
                          merged['longitude'], merged['radius_meters'])

        if 'is_active' in changes:
            changes['is_active'] = 1 if changes['is_active'] else 0
        if changes:
            ph = get_placeholder(1)
            assignments = ", ".join(f"{col} = {ph}" for col in changes)
            c.execute(f"UPDATE locations SET {assignments} WHERE id = {ph}",
                      (*changes.values(), location_id))

        was_active = bool(current['is_active'])
        is_active = bool(merged['is_active'])
        if was_active and not is_active:
            return release_location(c, location_id)

        spatial = {'latitude', 'longitude', 'radius_meters', 'is_active'}
        if spatial & set(changes):
            return rematch_location(c, location_id)

        return empty_summary()


def delete_location(location_id):
    """
    Deletes a geofence. Auto matches move to the next containing location
    (or become unmatched); manual references are nulled by the foreign key.
    """
    with transaction() as conn:
        c = conn.cursor()
        c.execute(f"SELECT id FROM locations WHERE id = {get_placeholder(1)}", (location_id,))
        if c.fetchone() is None:
            raise ValueError(f"Location not found: {location_id}")
        summary = release_location(c, location_id)
        c.execute(f"DELETE FROM locations WHERE id = {get_placeholder(1)}", (location_id,))
    logger.info("🗑️ Location %s deleted", location_id)
    return summary
