from datetime import date, datetime, timedelta

import database
import ingest
from factories import BASE, LAT0, LON0
from processor import load_shift_points


def test_parse_timestamp_reads_nulls_from_pandas_as_none():
    assert database.parse_timestamp(float('nan')) is None
    assert database.parse_timestamp(None) is None


def test_parse_timestamp_accepts_strings_and_dates():
    assert database.parse_timestamp("2026-03-02T08:00:00Z") == BASE
    assert database.parse_timestamp(date(2026, 3, 2)) == datetime(2026, 3, 2)


def test_format_timestamp_keeps_microseconds():
    value = BASE + timedelta(microseconds=500000)
    assert database.format_timestamp(value) == "2026-03-02 08:00:00.500000"
    assert database.parse_timestamp(database.format_timestamp(value)) == value
    assert database.format_timestamp(BASE) == "2026-03-02 08:00:00"


def test_sub_second_fixes_keep_their_spacing():
    employee_id = ingest.create_employee("Alice Martin")
    shift_id = ingest.start_shift(employee_id, BASE)
    ingest.sync_gps_points(shift_id, employee_id, [
        {'client_id': 'a', 'latitude': LAT0, 'longitude': LON0, 'accuracy': 5.0, 'captured_at': BASE},
        {'client_id': 'b', 'latitude': LAT0, 'longitude': LON0, 'accuracy': 5.0,
         'captured_at': BASE + timedelta(milliseconds=500)},
        {'client_id': 'c', 'latitude': LAT0, 'longitude': LON0, 'accuracy': 5.0,
         'captured_at': BASE + timedelta(seconds=2)},
    ])

    conn = database.get_connection()
    try:
        points = load_shift_points(conn, shift_id)
    finally:
        conn.close()

    assert [p.captured_at - BASE for p in points] == [
        timedelta(0), timedelta(milliseconds=500), timedelta(seconds=2),
    ]
