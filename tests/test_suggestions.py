import math
from datetime import timedelta

import pytest

import database
import ingest
from factories import BASE, LAT0, LON0, STEP, drive_then_park, make_shift
from geo import EARTH_RADIUS_KM, haversine_m
from locations import create_location
from processor import process_shift
from suggestions import (
    cluster_points, grid_cell_degrees, suggest_locations, get_cluster_occurrences,
    ignore_location_cluster, unignore_location_cluster, ignore_trip_endpoint, collect_unmatched_points,
)

NOW = BASE + timedelta(days=7)
END_LAT = LAT0 + 4 * STEP


def processed_shift(name, day_offset=0):
    shift_id, employee_id = make_shift(drive_then_park(), name=name, start=BASE + timedelta(days=day_offset))
    process_shift(shift_id)
    return shift_id, employee_id


def trip_id_of(shift_id):
    conn = database.get_connection()
    try:
        c = conn.cursor()
        c.execute("SELECT id FROM trips WHERE shift_id = ?", (shift_id,))
        return c.fetchone()[0]
    finally:
        conn.close()


def by_latitude(suggestions, lat):
    return [s for s in suggestions if abs(s.centroid_latitude - lat) < 0.0005]


def test_cluster_points_links_chains_within_eps():
    step = 25 / 111195.0  # 25 m
    lats = [LAT0, LAT0 + step, LAT0 + 2 * step, LAT0 + 0.01]
    lons = [LON0] * 4
    assert cluster_points(lats, lons) == [0, 0, 0, 1]


def test_cluster_points_uses_longitude_distance_at_high_latitude():
    # 25 m east at 70N is ~0.00066 degrees of longitude
    lat = 70.0
    dlon = 25 / (111195.0 * 0.342)
    assert cluster_points([lat, lat], [10.0, 10.0 + dlon]) == [0, 0]
    assert cluster_points([lat, lat], [10.0, 10.0 + 3 * dlon]) == [0, 1]


def test_cluster_points_empty():
    assert cluster_points([], []) == []


@pytest.mark.parametrize("cell_index", [1000, 168000, 168001])
def test_pairs_just_within_eps_across_cell_borders_are_linked(cell_index):
    # 29.99 m of latitude, starting right below a grid border
    degrees = 29.99 / (math.pi * EARTH_RADIUS_KM * 1000 / 180)
    cell_lat, _ = grid_cell_degrees(30, 46.0)
    lat1 = cell_index * cell_lat - 1e-9
    lat2 = lat1 + degrees

    assert haversine_m(lat1, LON0, lat2, LON0) <= 30
    assert cluster_points([lat1, lat2], [LON0, LON0], eps_m=30) == [0, 0]


def test_pairs_just_within_eps_across_longitude_borders_are_linked():
    lat = 60.0
    _, cell_lon = grid_cell_degrees(30, lat)
    lon1 = 300 * cell_lon - 1e-9
    lon2 = lon1 + 29.99 / (math.pi * EARTH_RADIUS_KM * 1000 / 180 * math.cos(math.radians(lat)))

    assert haversine_m(lat, lon1, lat, lon2) <= 30
    assert cluster_points([lat, lat], [lon1, lon2], eps_m=30) == [0, 0]


def test_recurring_endpoints_become_suggestions():
    processed_shift("Alice Martin")
    processed_shift("Bruno Costa", day_offset=1)

    suggestions = suggest_locations(2, now=NOW)

    assert len(suggestions) == 2
    ends = by_latitude(suggestions, END_LAT)[0]
    assert ends.occurrence_count == 2
    assert ends.has_end_endpoints and not ends.has_start_endpoints
    assert ends.employee_names == ["Alice Martin", "Bruno Costa"]
    assert ends.first_seen < ends.last_seen


def test_single_occurrence_is_below_threshold():
    processed_shift("Alice Martin")
    assert suggest_locations(2, now=NOW) == []
    assert len(suggest_locations(1, now=NOW)) == 2


def test_old_endpoints_are_outside_the_window():
    processed_shift("Alice Martin")
    processed_shift("Bruno Costa", day_offset=1)
    assert suggest_locations(2, now=NOW + timedelta(days=120)) == []


def test_drill_down_count_matches_suggestion():
    processed_shift("Alice Martin")
    processed_shift("Bruno Costa", day_offset=1)
    ends = by_latitude(suggest_locations(2, now=NOW), END_LAT)[0]

    occurrences = get_cluster_occurrences(ends.centroid_latitude, ends.centroid_longitude, now=NOW)

    assert len(occurrences) == ends.occurrence_count
    assert [o['endpoint_type'] for o in occurrences] == ['end', 'end']
    assert occurrences[0]['seen_at'] > occurrences[1]['seen_at']
    assert occurrences[0]['gps_accuracy'] == 10.0


def test_drill_down_far_from_any_cluster_is_empty():
    processed_shift("Alice Martin")
    assert get_cluster_occurrences(LAT0 + 1.0, LON0, now=NOW) == []


def test_stop_duration_between_consecutive_trips():
    shift_id, employee_id = processed_shift("Alice Martin")
    # Same employee, next day: the first trip's end is followed by this trip's start
    second, _ = make_shift(drive_then_park(), employee_id=employee_id, start=BASE + timedelta(days=1))
    process_shift(second)

    occurrences = get_cluster_occurrences(END_LAT, LON0, now=NOW)
    first_end = [o for o in occurrences if o['trip_id'] == trip_id_of(shift_id)][0]
    assert first_end['stop_duration_minutes'] == pytest.approx(24 * 60 - 2, abs=0.1)


def test_suggestions_mix_endpoints_with_and_without_neighbouring_trips():
    _, employee_id = processed_shift("Alice Martin")
    second, _ = make_shift(drive_then_park(), employee_id=employee_id, start=BASE + timedelta(days=1))
    process_shift(second)
    processed_shift("Bruno Costa", day_offset=2)

    suggestions = suggest_locations(2, now=NOW)

    assert sorted(s.occurrence_count for s in suggestions) == [3, 3]
    durations = [o['stop_duration_minutes'] for o in get_cluster_occurrences(END_LAT, LON0, now=NOW)]
    assert durations.count(None) == 2


def test_ignored_cluster_resurfaces_when_it_grows():
    processed_shift("Alice Martin")
    processed_shift("Bruno Costa", day_offset=1)
    ends = by_latitude(suggest_locations(2, now=NOW), END_LAT)[0]

    ignored_id = ignore_location_cluster(ends.centroid_latitude, ends.centroid_longitude, ends.occurrence_count)
    assert by_latitude(suggest_locations(2, now=NOW), END_LAT) == []
    assert len(suggest_locations(2, now=NOW)) == 1

    processed_shift("Chloe Dubois", day_offset=2)
    grown = by_latitude(suggest_locations(2, now=NOW), END_LAT)
    assert grown and grown[0].occurrence_count == 3

    unignore_location_cluster(ignored_id)
    with pytest.raises(ValueError):
        unignore_location_cluster(ignored_id)


def test_ignored_endpoint_leaves_the_input():
    shift_id, _ = processed_shift("Alice Martin")
    processed_shift("Bruno Costa", day_offset=1)

    ignore_trip_endpoint(trip_id_of(shift_id), 'end')
    ignore_trip_endpoint(trip_id_of(shift_id), 'end')

    assert by_latitude(suggest_locations(2, now=NOW), END_LAT) == []
    assert by_latitude(suggest_locations(1, now=NOW), END_LAT)[0].occurrence_count == 1

    with pytest.raises(ValueError):
        ignore_trip_endpoint(trip_id_of(shift_id), 'middle')


def test_registered_location_removes_suggestion():
    processed_shift("Alice Martin")
    processed_shift("Bruno Costa", day_offset=1)

    create_location("Depot", 'building', END_LAT, LON0, 50)

    remaining = suggest_locations(2, now=NOW)
    assert len(remaining) == 1
    assert by_latitude(remaining, END_LAT) == []


def test_clock_events_are_suggestion_input():
    for name in ("Alice Martin", "Bruno Costa"):
        employee_id = ingest.create_employee(name)
        shift_id = ingest.start_shift(employee_id, BASE, LAT0, LON0, 12.0)
        ingest.end_shift(shift_id, BASE + timedelta(hours=8), LAT0 + 0.00005, LON0, None)

    points = collect_unmatched_points(now=NOW)
    assert sorted(points['kind']) == ['clock_in', 'clock_in', 'clock_out', 'clock_out']

    suggestions = suggest_locations(2, now=NOW)
    assert len(suggestions) == 1
    assert suggestions[0].occurrence_count == 4
    assert suggestions[0].has_start_endpoints and suggestions[0].has_end_endpoints


def test_inaccurate_clock_events_are_skipped():
    employee_id = ingest.create_employee("Alice Martin")
    shift_id = ingest.start_shift(employee_id, BASE, LAT0, LON0, 80.0)
    ingest.end_shift(shift_id, BASE + timedelta(hours=8), LAT0, LON0, 60.0)

    assert collect_unmatched_points(now=NOW).empty
