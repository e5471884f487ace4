from datetime import datetime

import database
import ingest
from backfill_addresses import backfill_addresses
from factories import add_trip
from services.geocoding import format_address, reverse_geocode


def test_format_address_street_and_city():
    address = {'road': "Main Street", 'house_number': "123", 'city': "Springfield"}
    assert format_address(address) == "123 Main Street, Springfield"


def test_format_address_falls_back_to_suburb():
    assert format_address({'suburb': "Old Port", 'town': "Laval"}) == "Old Port, Laval"


def test_format_address_empty():
    assert format_address({}) is None
    assert format_address({'country': "Canada"}) is None


def test_reverse_geocode_rejects_bad_coordinates():
    assert reverse_geocode(None, 10.0) is None


def test_backfill_fills_missing_addresses():
    employee_id = ingest.create_employee("Alice Martin")
    shift_id = ingest.start_shift(employee_id, datetime(2026, 3, 2, 8))
    add_trip(shift_id, employee_id, datetime(2026, 3, 2, 9), 5)
    calls = []

    def fake_geocode(lat, lon):
        calls.append((lat, lon))
        return f"{lat:.2f}, {lon:.2f}"

    assert backfill_addresses(limit=10, delay=0, geocode=fake_geocode) == 1
    assert len(calls) == 2
    # Nothing left to do
    assert backfill_addresses(limit=10, delay=0, geocode=fake_geocode) == 0

    conn = database.get_connection()
    try:
        c = conn.cursor()
        c.execute("SELECT start_address, end_address FROM trips")
        assert c.fetchone() == ("45.50, -73.60", "45.55, -73.60")
    finally:
        conn.close()
