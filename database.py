import sqlite3
import os
import math
import logging
from contextlib import contextmanager
from datetime import datetime, date

from dotenv import load_dotenv

from config import LOCATION_TYPES

# Environment variables from a local .env
load_dotenv()

logger = logging.getLogger(__name__)


def get_database_url():
    """Returns the PostgreSQL URL from the environment, if any."""
    return os.getenv("DATABASE_URL")


DB_URL = get_database_url()
IS_POSTGRES = bool(DB_URL and DB_URL.startswith("postg"))

# Local SQLite file used when no PostgreSQL URL is configured
DB_NAME = os.getenv("DB_PATH", "shifts.db")


def get_connection():
    """Database connection (SQLite or PostgreSQL)."""
    if IS_POSTGRES:
        import psycopg2
        return psycopg2.connect(DB_URL)
    conn = sqlite3.connect(DB_NAME)
    # ON DELETE SET NULL / CASCADE only work with this pragma on
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def get_placeholder(count=1):
    """SQL placeholders for the active driver (? or %s)."""
    token = "%s" if IS_POSTGRES else "?"
    return ", ".join([token] * count)


def get_sqlalchemy_url():
    """URL for SQLAlchemy engines (console), matching get_connection()."""
    if IS_POSTGRES:
        return DB_URL
    return f"sqlite:///{DB_NAME}"


@contextmanager
def transaction():
    """
    Opens a connection, commits when the block succeeds and rolls back
    when it raises. The connection is always closed.
    """
    conn = get_connection()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def fetch_dicts(cursor):
    """Fetches all remaining rows of a cursor as dicts keyed by column name."""
    columns = [d[0] for d in cursor.description]
    return [dict(zip(columns, row)) for row in cursor.fetchall()]


def fetch_dict(cursor):
    row = cursor.fetchone()
    if row is None:
        return None
    return dict(zip([d[0] for d in cursor.description], row))


def format_timestamp(value):
    """Naive-UTC datetime -> storage string ('YYYY-MM-DD HH:MM:SS[.ffffff]')."""
    if value is None:
        return None
    if isinstance(value, str):
        value = parse_timestamp(value)
    return value.isoformat(sep=' ')


def parse_timestamp(value):
    """Reads a timestamp column (str from SQLite, datetime from psycopg2)."""
    if value is None or isinstance(value, datetime):
        return value
    # pandas reads NULLs of mixed columns as NaN
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    return datetime.fromisoformat(str(value).replace('Z', '+00:00')).replace(tzinfo=None)


def format_date(value):
    if value is None:
        return None
    if isinstance(value, datetime):
        value = value.date()
    if isinstance(value, str):
        value = date.fromisoformat(value[:10])
    return value.isoformat()


def execute_insert_returning_id(cursor, sql, params):
    """Runs an INSERT and returns the new row id (PostgreSQL or SQLite)."""
    if IS_POSTGRES:
        if "RETURNING" not in sql.upper():
            sql += " RETURNING id"
        cursor.execute(sql, params)
        row = cursor.fetchone()
        return row[0] if row else None
    cursor.execute(sql, params)
    return cursor.lastrowid


def init_db():
    """Creates every table and index. Safe to run repeatedly."""
    conn = get_connection()
    c = conn.cursor()

    # Column types per backend
    if IS_POSTGRES:
        TYPE_PK_AUTO = "SERIAL PRIMARY KEY"
        TYPE_DATETIME = "TIMESTAMP"
        TYPE_FLOAT = "DOUBLE PRECISION"
    else:
        TYPE_PK_AUTO = "INTEGER PRIMARY KEY AUTOINCREMENT"
        TYPE_DATETIME = "DATETIME"
        TYPE_FLOAT = "REAL"

    c.execute(f'''
        CREATE TABLE IF NOT EXISTS employees (
            id {TYPE_PK_AUTO},
            full_name TEXT NOT NULL
        )
    ''')

    c.execute(f'''
        CREATE TABLE IF NOT EXISTS shifts (
            id {TYPE_PK_AUTO},
            employee_id INTEGER NOT NULL REFERENCES employees(id),
            status TEXT NOT NULL DEFAULT 'active' CHECK(status IN ('active', 'completed')),
            clocked_in_at {TYPE_DATETIME} NOT NULL,
            clocked_out_at {TYPE_DATETIME},
            clock_in_latitude {TYPE_FLOAT},
            clock_in_longitude {TYPE_FLOAT},
            clock_in_accuracy {TYPE_FLOAT},
            clock_out_latitude {TYPE_FLOAT},
            clock_out_longitude {TYPE_FLOAT},
            clock_out_accuracy {TYPE_FLOAT}
        )
    ''')

    c.execute(f'''
        CREATE TABLE IF NOT EXISTS gps_points (
            id {TYPE_PK_AUTO},
            client_id TEXT NOT NULL UNIQUE,
            shift_id INTEGER NOT NULL REFERENCES shifts(id) ON DELETE CASCADE,
            employee_id INTEGER NOT NULL REFERENCES employees(id),
            latitude {TYPE_FLOAT} NOT NULL,
            longitude {TYPE_FLOAT} NOT NULL,
            accuracy {TYPE_FLOAT},
            captured_at {TYPE_DATETIME} NOT NULL,
            speed {TYPE_FLOAT},
            heading {TYPE_FLOAT},
            altitude {TYPE_FLOAT},
            is_mocked INTEGER NOT NULL DEFAULT 0,
            device_id TEXT
        )
    ''')

    types_sql = ", ".join(f"'{t}'" for t in LOCATION_TYPES)
    c.execute(f'''
        CREATE TABLE IF NOT EXISTS locations (
            id {TYPE_PK_AUTO},
            name TEXT NOT NULL,
            location_type TEXT NOT NULL CHECK(location_type IN ({types_sql})),
            latitude {TYPE_FLOAT} NOT NULL,
            longitude {TYPE_FLOAT} NOT NULL,
            radius_meters {TYPE_FLOAT} NOT NULL DEFAULT 100 CHECK(radius_meters BETWEEN 10 AND 1000),
            address TEXT,
            notes TEXT,
            is_active INTEGER NOT NULL DEFAULT 1
        )
    ''')

    # Derived rows: replaced wholesale by every segmentation run
    c.execute(f'''
        CREATE TABLE IF NOT EXISTS trips (
            id {TYPE_PK_AUTO},
            shift_id INTEGER NOT NULL REFERENCES shifts(id) ON DELETE CASCADE,
            employee_id INTEGER NOT NULL REFERENCES employees(id),
            started_at {TYPE_DATETIME} NOT NULL,
            ended_at {TYPE_DATETIME} NOT NULL,
            start_latitude {TYPE_FLOAT} NOT NULL,
            start_longitude {TYPE_FLOAT} NOT NULL,
            start_accuracy {TYPE_FLOAT},
            end_latitude {TYPE_FLOAT} NOT NULL,
            end_longitude {TYPE_FLOAT} NOT NULL,
            end_accuracy {TYPE_FLOAT},
            distance_km {TYPE_FLOAT} NOT NULL,
            duration_minutes INTEGER NOT NULL CHECK(duration_minutes >= 1),
            classification TEXT NOT NULL DEFAULT 'business' CHECK(classification IN ('business', 'personal')),
            confidence_score {TYPE_FLOAT} NOT NULL,
            gps_point_count INTEGER NOT NULL,
            low_accuracy_point_count INTEGER NOT NULL DEFAULT 0,
            has_gps_gap INTEGER NOT NULL DEFAULT 0,
            start_location_id INTEGER REFERENCES locations(id) ON DELETE SET NULL,
            end_location_id INTEGER REFERENCES locations(id) ON DELETE SET NULL,
            start_match_method TEXT CHECK(start_match_method IN ('auto', 'manual')),
            end_match_method TEXT CHECK(end_match_method IN ('auto', 'manual')),
            detection_method TEXT NOT NULL DEFAULT 'auto'
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS trip_gps_points (
            trip_id INTEGER NOT NULL REFERENCES trips(id) ON DELETE CASCADE,
            gps_point_id INTEGER NOT NULL REFERENCES gps_points(id) ON DELETE CASCADE,
            sequence_order INTEGER NOT NULL,
            PRIMARY KEY (trip_id, gps_point_id)
        )
    ''')

    c.execute(f'''
        CREATE TABLE IF NOT EXISTS stationary_clusters (
            id {TYPE_PK_AUTO},
            shift_id INTEGER NOT NULL REFERENCES shifts(id) ON DELETE CASCADE,
            employee_id INTEGER NOT NULL REFERENCES employees(id),
            centroid_latitude {TYPE_FLOAT} NOT NULL,
            centroid_longitude {TYPE_FLOAT} NOT NULL,
            centroid_accuracy {TYPE_FLOAT},
            started_at {TYPE_DATETIME} NOT NULL,
            ended_at {TYPE_DATETIME} NOT NULL,
            duration_seconds INTEGER NOT NULL CHECK(duration_seconds > 0),
            gps_point_count INTEGER NOT NULL,
            gps_gap_seconds INTEGER NOT NULL DEFAULT 0,
            gps_gap_count INTEGER NOT NULL DEFAULT 0,
            matched_location_id INTEGER REFERENCES locations(id) ON DELETE SET NULL,
            match_method TEXT CHECK(match_method IN ('auto', 'manual'))
        )
    ''')

    # Memo: recomputable from gps_points + locations at any time
    c.execute(f'''
        CREATE TABLE IF NOT EXISTS location_matches (
            id {TYPE_PK_AUTO},
            gps_point_id INTEGER NOT NULL REFERENCES gps_points(id) ON DELETE CASCADE,
            location_id INTEGER NOT NULL REFERENCES locations(id) ON DELETE CASCADE,
            distance_meters {TYPE_FLOAT} NOT NULL,
            confidence_score {TYPE_FLOAT} NOT NULL,
            UNIQUE (gps_point_id, location_id)
        )
    ''')

    c.execute(f'''
        CREATE TABLE IF NOT EXISTS ignored_location_clusters (
            id {TYPE_PK_AUTO},
            centroid_latitude {TYPE_FLOAT} NOT NULL,
            centroid_longitude {TYPE_FLOAT} NOT NULL,
            occurrence_count_at_ignore INTEGER NOT NULL,
            ignored_at {TYPE_DATETIME} NOT NULL
        )
    ''')

    c.execute(f'''
        CREATE TABLE IF NOT EXISTS ignored_trip_endpoints (
            id {TYPE_PK_AUTO},
            trip_id INTEGER NOT NULL REFERENCES trips(id) ON DELETE CASCADE,
            endpoint_type TEXT NOT NULL CHECK(endpoint_type IN ('start', 'end')),
            ignored_at {TYPE_DATETIME} NOT NULL,
            UNIQUE (trip_id, endpoint_type)
        )
    ''')

    c.execute(f'''
        CREATE TABLE IF NOT EXISTS reimbursement_rates (
            id {TYPE_PK_AUTO},
            rate_per_km {TYPE_FLOAT} NOT NULL,
            threshold_km {TYPE_FLOAT},
            rate_after_threshold {TYPE_FLOAT},
            effective_from DATE NOT NULL,
            effective_to DATE,
            rate_source TEXT NOT NULL DEFAULT 'custom'
        )
    ''')

    c.execute(f'''
        CREATE TABLE IF NOT EXISTS vehicle_periods (
            id {TYPE_PK_AUTO},
            employee_id INTEGER NOT NULL REFERENCES employees(id) ON DELETE CASCADE,
            vehicle_type TEXT NOT NULL CHECK(vehicle_type IN ('personal', 'company')),
            started_at DATE NOT NULL,
            ended_at DATE,
            notes TEXT
        )
    ''')

    c.execute(f'''
        CREATE TABLE IF NOT EXISTS carpool_groups (
            id {TYPE_PK_AUTO},
            trip_date DATE NOT NULL,
            status TEXT NOT NULL DEFAULT 'auto_detected' CHECK(status IN ('auto_detected', 'confirmed', 'dismissed')),
            driver_employee_id INTEGER REFERENCES employees(id),
            review_needed INTEGER NOT NULL DEFAULT 0
        )
    ''')

    c.execute(f'''
        CREATE TABLE IF NOT EXISTS carpool_members (
            id {TYPE_PK_AUTO},
            carpool_group_id INTEGER NOT NULL REFERENCES carpool_groups(id) ON DELETE CASCADE,
            trip_id INTEGER NOT NULL UNIQUE REFERENCES trips(id) ON DELETE CASCADE,
            employee_id INTEGER NOT NULL REFERENCES employees(id),
            role TEXT NOT NULL DEFAULT 'unassigned' CHECK(role IN ('driver', 'passenger', 'unassigned'))
        )
    ''')

    conn.commit()

    # Indexes (same syntax on both backends)
    c.execute("CREATE INDEX IF NOT EXISTS idx_gps_points_shift_time ON gps_points(shift_id, captured_at)")
    c.execute("CREATE INDEX IF NOT EXISTS idx_trips_shift ON trips(shift_id)")
    c.execute("CREATE INDEX IF NOT EXISTS idx_trips_employee_start ON trips(employee_id, started_at)")
    c.execute("CREATE INDEX IF NOT EXISTS idx_clusters_shift ON stationary_clusters(shift_id)")
    c.execute("CREATE INDEX IF NOT EXISTS idx_location_matches_point ON location_matches(gps_point_id)")
    c.execute("CREATE INDEX IF NOT EXISTS idx_vehicle_periods_employee ON vehicle_periods(employee_id, vehicle_type)")
    c.execute("CREATE INDEX IF NOT EXISTS idx_carpool_groups_date ON carpool_groups(trip_date)")
    conn.commit()
    conn.close()

    migrate_db()
    logger.info("✅ %s database initialised.", "PostgreSQL" if IS_POSTGRES else "SQLite")


def _existing_columns(c, table):
    if IS_POSTGRES:
        c.execute(
            "SELECT column_name FROM information_schema.columns WHERE table_name = %s",
            (table,)
        )
        return {row[0] for row in c.fetchall()}
    c.execute(f"PRAGMA table_info({table})")
    return {row[1] for row in c.fetchall()}


def migrate_db():
    """
    Additive migration: adds the trip columns introduced after the first
    schema. Can be run any number of times.
    """
    conn = get_connection()
    c = conn.cursor()
    float_type = "DOUBLE PRECISION" if IS_POSTGRES else "REAL"

    # (column_name, sql_definition)
    migrations = [
        ("transport_mode", "TEXT NOT NULL DEFAULT 'unknown'"),
        ("road_distance_km", float_type),
        ("start_address", "TEXT"),
        ("end_address", "TEXT"),
    ]

    existing = _existing_columns(c, "trips")
    for col_name, col_def in migrations:
        if col_name in existing:
            continue
        c.execute(f"ALTER TABLE trips ADD COLUMN {col_name} {col_def}")
        logger.info("Migration: trips.%s added", col_name)

    conn.commit()
    conn.close()


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    init_db()
