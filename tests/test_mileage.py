from datetime import date, datetime

import pytest

import ingest
from carpools import add_vehicle_period, detect_carpools
from factories import add_trip
from mileage import add_rate, get_effective_rate, compute_tiered_reimbursement, summarize

TIERED = {'rate_per_km': 0.72, 'threshold_km': 5000, 'rate_after_threshold': 0.66}


@pytest.fixture
def employee_shift():
    employee_id = ingest.create_employee("Alice Martin")
    shift_id = ingest.start_shift(employee_id, datetime(2026, 1, 5, 8))
    return employee_id, shift_id


def test_tiered_rate_crosses_threshold():
    assert compute_tiered_reimbursement(300, 4900, TIERED) == 204.00


def test_tiered_rate_below_and_above_threshold():
    assert compute_tiered_reimbursement(100, 0, TIERED) == 72.00
    assert compute_tiered_reimbursement(100, 6000, TIERED) == 66.00


def test_flat_rate_without_threshold():
    assert compute_tiered_reimbursement(100, 9000, {'rate_per_km': 0.5}) == 50.00


def test_summary_with_ytd_crossing_threshold(employee_shift):
    employee_id, shift_id = employee_shift
    add_rate(0.72, '2026-01-01', threshold_km=5000, rate_after_threshold=0.66, rate_source='cra')
    add_trip(shift_id, employee_id, datetime(2026, 1, 15, 9), 4900)
    add_trip(shift_id, employee_id, datetime(2026, 3, 10, 9), 300)

    summary = summarize(employee_id, date(2026, 3, 1), date(2026, 3, 31))

    assert summary.business_distance_km == 300
    assert summary.ytd_business_km == 5200
    assert summary.estimated_reimbursement == 204.00
    assert summary.rate_per_km_used == 0.72
    assert summary.rate_source == 'cra'
    assert not summary.no_rate_configured


def test_no_rate_is_reported_not_zeroed_silently(employee_shift):
    employee_id, shift_id = employee_shift
    add_trip(shift_id, employee_id, datetime(2026, 3, 10, 9), 50)

    summary = summarize(employee_id, '2026-03-01', '2026-03-31')

    assert summary.no_rate_configured
    assert summary.rate_source == 'none'
    assert summary.estimated_reimbursement == 0
    assert summary.business_distance_km == 50


def test_falls_back_to_most_recent_rate():
    add_rate(0.60, '2025-01-01', effective_to='2025-12-31')
    add_rate(0.70, '2026-01-01', effective_to='2026-01-31')

    assert get_effective_rate('2026-01-15')['rate_per_km'] == 0.70
    assert get_effective_rate('2026-03-15')['rate_per_km'] == 0.70
    assert get_effective_rate('2025-06-01')['rate_per_km'] == 0.60


def test_period_end_is_inclusive(employee_shift):
    employee_id, shift_id = employee_shift
    add_rate(0.5, '2026-01-01')
    add_trip(shift_id, employee_id, datetime(2026, 3, 31, 23, 30), 10)
    add_trip(shift_id, employee_id, datetime(2026, 4, 1, 0, 10), 20)

    summary = summarize(employee_id, '2026-03-01', '2026-03-31')

    assert summary.trip_count == 1
    assert summary.estimated_reimbursement == 5.00


def test_only_reimbursable_trips_count_as_business(employee_shift):
    employee_id, shift_id = employee_shift
    add_rate(0.5, '2026-01-01')
    add_trip(shift_id, employee_id, datetime(2026, 3, 2, 9), 10)
    add_trip(shift_id, employee_id, datetime(2026, 3, 3, 9), 20, classification='personal')
    add_trip(shift_id, employee_id, datetime(2026, 3, 4, 9), 2, transport_mode='walking')

    summary = summarize(employee_id, '2026-03-01', '2026-03-31')

    assert summary.total_distance_km == 32
    assert summary.business_distance_km == 10
    assert summary.personal_distance_km == 20
    assert summary.trip_count == 3
    assert summary.business_trip_count == 1
    assert summary.personal_trip_count == 1
    assert summary.estimated_reimbursement == 5.00


def test_company_vehicle_trips_are_not_reimbursed(employee_shift):
    employee_id, shift_id = employee_shift
    add_rate(0.5, '2026-01-01')
    add_vehicle_period(employee_id, 'company', '2026-03-01', '2026-03-15')
    add_trip(shift_id, employee_id, datetime(2026, 3, 10, 9), 10)
    add_trip(shift_id, employee_id, datetime(2026, 3, 20, 9), 30)

    summary = summarize(employee_id, '2026-03-01', '2026-03-31')

    assert summary.business_distance_km == 30


def test_carpool_passengers_are_not_reimbursed():
    add_rate(0.5, '2026-01-01')
    driver = ingest.create_employee("Alice Martin")
    passenger = ingest.create_employee("Bruno Costa")
    add_vehicle_period(driver, 'personal', '2026-01-01')
    for employee_id in (driver, passenger):
        shift_id = ingest.start_shift(employee_id, datetime(2026, 3, 2, 8))
        add_trip(shift_id, employee_id, datetime(2026, 3, 2, 9), 40)

    detect_carpools('2026-03-02')

    assert summarize(driver, '2026-03-01', '2026-03-31').business_distance_km == 40
    passenger_summary = summarize(passenger, '2026-03-01', '2026-03-31')
    assert passenger_summary.business_distance_km == 0
    assert passenger_summary.total_distance_km == 40


def test_invalid_rates_are_rejected():
    with pytest.raises(ValueError):
        add_rate(0, '2026-01-01')
    with pytest.raises(ValueError):
        add_rate(0.5, '2026-01-01', threshold_km=5000)
    with pytest.raises(ValueError):
        add_rate(0.5, '2026-02-01', effective_to='2026-01-01')
