from datetime import datetime

import pytest

import database
import ingest
from carpools import add_vehicle_period, has_active_vehicle_period, detect_carpools
from factories import LAT0, LON0, add_trip, count_rows

DAY = '2026-03-02'


def shared_trip(name, minutes=30, start=datetime(2026, 3, 2, 9), begin=(LAT0, LON0), **kwargs):
    employee_id = ingest.create_employee(name)
    shift_id = ingest.start_shift(employee_id, datetime(2026, 3, 2, 8))
    trip_id = add_trip(shift_id, employee_id, start, 25, minutes=minutes, start=begin, **kwargs)
    return employee_id, trip_id


def roles():
    conn = database.get_connection()
    try:
        c = conn.cursor()
        c.execute("SELECT employee_id, role FROM carpool_members ORDER BY employee_id")
        return dict(c.fetchall())
    finally:
        conn.close()


def test_vehicle_period_boundaries():
    employee_id = ingest.create_employee("Alice Martin")
    add_vehicle_period(employee_id, 'personal', '2026-01-01', '2026-01-31')

    assert has_active_vehicle_period(employee_id, 'personal', '2026-01-01')
    assert has_active_vehicle_period(employee_id, 'personal', '2026-01-31')
    assert not has_active_vehicle_period(employee_id, 'personal', '2026-02-01')
    assert not has_active_vehicle_period(employee_id, 'company', '2026-01-15')


def test_overlapping_vehicle_periods_are_rejected():
    employee_id = ingest.create_employee("Alice Martin")
    add_vehicle_period(employee_id, 'personal', '2026-01-01')

    with pytest.raises(ValueError):
        add_vehicle_period(employee_id, 'personal', '2026-06-01', '2026-06-30')
    # Other vehicle type is independent
    add_vehicle_period(employee_id, 'company', '2026-06-01', '2026-06-30')


def test_adjacent_closed_periods_are_allowed():
    employee_id = ingest.create_employee("Alice Martin")
    add_vehicle_period(employee_id, 'personal', '2026-01-01', '2026-01-31')
    add_vehicle_period(employee_id, 'personal', '2026-02-01', None)
    with pytest.raises(ValueError):
        add_vehicle_period(employee_id, 'personal', '2025-12-01', '2026-01-10')


def test_personal_vehicle_owner_is_the_driver():
    alice, _ = shared_trip("Alice Martin")
    bruno, _ = shared_trip("Bruno Costa", minutes=28)
    add_vehicle_period(alice, 'personal', '2026-01-01')

    groups = detect_carpools(DAY)

    assert len(groups) == 1
    assert groups[0]['member_count'] == 2
    assert groups[0]['driver_employee_id'] == alice
    assert groups[0]['review_needed'] is False
    assert roles() == {alice: 'driver', bruno: 'passenger'}


def test_no_personal_vehicle_needs_review():
    alice, _ = shared_trip("Alice Martin")
    bruno, _ = shared_trip("Bruno Costa")

    groups = detect_carpools(DAY)

    assert groups[0]['driver_employee_id'] is None
    assert groups[0]['review_needed'] is True
    assert roles() == {alice: 'unassigned', bruno: 'unassigned'}


def test_several_personal_vehicles_pick_first_by_name():
    bruno, _ = shared_trip("Bruno Costa")
    alice, _ = shared_trip("Alice Martin")
    for employee_id in (alice, bruno):
        add_vehicle_period(employee_id, 'personal', '2026-01-01')

    groups = detect_carpools(DAY)

    assert groups[0]['driver_employee_id'] == alice
    assert groups[0]['review_needed'] is True


def test_distant_or_disjoint_trips_are_not_pooled():
    shared_trip("Alice Martin")
    shared_trip("Bruno Costa", begin=(LAT0 + 0.01, LON0))
    shared_trip("Chloe Dubois", start=datetime(2026, 3, 2, 15))
    shared_trip("Diego Silva", transport_mode='walking')

    assert detect_carpools(DAY) == []


def test_low_overlap_is_not_pooled():
    shared_trip("Alice Martin", minutes=30)
    shared_trip("Bruno Costa", minutes=30, start=datetime(2026, 3, 2, 9, 10))
    assert detect_carpools(DAY) == []


def test_pairs_are_grouped_transitively():
    shared_trip("Alice Martin")
    shared_trip("Bruno Costa")
    shared_trip("Chloe Dubois")

    groups = detect_carpools(DAY)

    assert len(groups) == 1
    assert groups[0]['member_count'] == 3


def test_detection_is_idempotent_per_day():
    shared_trip("Alice Martin")
    shared_trip("Bruno Costa")

    detect_carpools(DAY)
    detect_carpools(DAY)

    assert count_rows("carpool_groups") == 1
    assert count_rows("carpool_members") == 2
