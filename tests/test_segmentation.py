from datetime import timedelta

import pytest

from factories import BASE, LAT0, LON0, STEP, drive_then_park, to_points
from models import GpsPoint
from segmentation import (
    segment_trips, segment_stops, segment_shift, classify_transport_mode, is_ghost_trip,
    usable_points,
)


def moving_track(n_moves, lat0=LAT0, t0=0):
    return [(lat0 + i * STEP, LON0, t0 + i * 30) for i in range(n_moves + 1)]


def test_drive_then_park_gives_one_trip_and_one_stop():
    points = to_points(drive_then_park())
    trips, stops = segment_shift(points)

    assert len(trips) == 1
    trip = trips[0]
    assert trip.distance_km == pytest.approx(1.56, abs=0.01)
    assert trip.started_at == points[0].captured_at
    assert trip.ended_at == points[4].captured_at
    assert trip.point_ids == (1, 2, 3, 4, 5)
    assert trip.transport_mode == 'driving'
    assert trip.duration_minutes == 2
    assert not trip.has_gps_gap
    assert trip.confidence_score == 1.0

    assert len(stops) == 1
    stop = stops[0]
    assert stop.started_at == trip.ended_at
    assert stop.duration_seconds == 240
    assert stop.centroid_latitude == pytest.approx(trip.end_latitude)
    assert stop.centroid_longitude == pytest.approx(trip.end_longitude)


def test_gps_gap_closes_trip_at_last_point_before_gap():
    before = moving_track(4)
    # 20 minutes of silence, then driving again
    after = moving_track(4, lat0=LAT0 + 5 * STEP, t0=120 + 20 * 60)
    points = to_points(before + after)
    gap_start = points[4].captured_at
    gap_end = points[5].captured_at

    trips = segment_trips(points)

    assert len(trips) == 2
    assert trips[0].ended_at == gap_start
    assert trips[0].has_gps_gap
    assert trips[1].started_at == gap_end
    for trip in trips:
        assert not (trip.started_at <= gap_start and trip.ended_at >= gap_end)


def test_points_above_accuracy_limit_never_join_a_trip():
    points = to_points(moving_track(6))
    noisy = GpsPoint(id=3, latitude=points[2].latitude, longitude=points[2].longitude,
                     accuracy=250.0, captured_at=points[2].captured_at)
    points[2] = noisy

    trips = segment_trips(points)

    assert len(trips) == 1
    assert 3 not in trips[0].point_ids
    assert usable_points([noisy]) == []


def test_mocked_points_are_dropped():
    point = GpsPoint(id=1, latitude=LAT0, longitude=LON0, accuracy=5.0, captured_at=BASE, is_mocked=True)
    assert usable_points([point]) == []


def test_speed_glitch_is_ignored():
    points = to_points(moving_track(4))
    # Teleport 10 km east for one fix
    points[2] = GpsPoint(id=3, latitude=points[2].latitude, longitude=LON0 + 0.13,
                         accuracy=10.0, captured_at=points[2].captured_at)

    trips = segment_trips(points)

    assert len(trips) == 1
    assert 3 not in trips[0].point_ids
    assert trips[0].distance_km < 1.56


def test_short_movement_is_not_a_trip():
    # 0.1 km in total
    track = [(LAT0 + i * STEP / 6, LON0, i * 10) for i in range(3)]
    assert segment_trips(to_points(track)) == []


def test_low_accuracy_points_lower_confidence():
    points = to_points(moving_track(4), accuracy=80.0)
    trips = segment_trips(points)
    assert trips[0].low_accuracy_point_count == 5
    assert trips[0].confidence_score == 0.0


def test_stationary_time_closes_the_trip():
    track = moving_track(4)
    # Parked 5 minutes (one fix per minute), then drives again
    parked = [(LAT0 + 4 * STEP, LON0, 120 + 60 * k) for k in range(1, 6)]
    again = moving_track(4, lat0=LAT0 + 4 * STEP, t0=120 + 300)[1:]
    trips = segment_trips(to_points(track + parked + again))
    assert len(trips) == 2


def test_segmentation_is_deterministic():
    points = to_points(drive_then_park())
    assert segment_shift(points) == segment_shift(list(points))


def test_stop_survives_a_silent_gap_without_drift():
    track = [(LAT0, LON0, 0), (LAT0, LON0, 60), (LAT0, LON0, 60 + 20 * 60), (LAT0, LON0, 60 + 21 * 60)]
    stops = segment_stops(to_points(track))

    assert len(stops) == 1
    assert stops[0].gps_gap_count == 1
    assert stops[0].gps_gap_seconds == 20 * 60 - 300
    assert stops[0].duration_seconds == 22 * 60


def test_short_stop_is_discarded():
    track = [(LAT0, LON0, 0), (LAT0, LON0, 60), (LAT0, LON0, 120)]
    assert segment_stops(to_points(track)) == []


def test_stop_centroid_favours_precise_fixes():
    points = [
        GpsPoint(id=1, latitude=LAT0, longitude=LON0, accuracy=5.0, captured_at=BASE),
        GpsPoint(id=2, latitude=LAT0 + 0.0001, longitude=LON0, accuracy=50.0,
                 captured_at=BASE + timedelta(minutes=2)),
        GpsPoint(id=3, latitude=LAT0, longitude=LON0, accuracy=5.0, captured_at=BASE + timedelta(minutes=4)),
    ]
    stop = segment_stops(points)[0]
    assert stop.centroid_latitude - LAT0 < 0.0001 / 10


@pytest.mark.parametrize("distance, minutes, speeds, expected", [
    (5.0, 10, None, 'driving'),
    (0.5, 10, None, 'walking'),
    (0.8, 8, [3, 3, 3, 3, 3, 20], 'walking'),
    (0.8, 8, [3, 20, 25, 30], 'driving'),
    (0.8, 8, None, 'driving'),
    (1.0, 0, None, 'unknown'),
    (None, 5, None, 'unknown'),
])
def test_classify_transport_mode(distance, minutes, speeds, expected):
    assert classify_transport_mode(distance, minutes, speeds) == expected


def test_ghost_trip_detection():
    assert is_ghost_trip('driving', 1.0, 0.01, 50)
    assert is_ghost_trip('walking', 0.6, 0.05, 50)
    assert is_ghost_trip('driving', 1.0, 0.08, 8)
    assert not is_ghost_trip('driving', 1.0, 0.9, 50)
    assert not is_ghost_trip('driving', 1.0, 0.08, 30)


def test_inaccurate_fix_inside_a_stop_is_left_out_of_the_centroid():
    def fix(id, minutes, lat=LAT0, accuracy=5.0):
        return GpsPoint(id=id, latitude=lat, longitude=LON0, accuracy=accuracy,
                        captured_at=BASE + timedelta(minutes=minutes))

    clean = [fix(1, 0), fix(3, 2), fix(4, 4)]
    # 110 m off with a 250 m accuracy radius
    noisy = clean[:1] + [fix(2, 1, lat=LAT0 + 0.001, accuracy=250.0)] + clean[1:]

    stop = segment_stops(noisy)[0]

    assert 2 not in stop.point_ids
    assert stop.point_ids == (1, 3, 4)
    assert stop.centroid_latitude == pytest.approx(LAT0)
    assert stop == segment_stops(clean)[0]
