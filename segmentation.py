"""
Trip and stop segmentation
==========================
Pure functions over one shift's GPS fixes, ordered by capture time:

- segment_trips(): Idle / InTrip state machine folded over the fixes.
  Vehicle speed (>= 15 km/h) opens a trip, transitional speed (5-15 km/h)
  extends it, 3 minutes of stationary speed or a 15 minute signal gap
  closes it. Distance is corrected x1.3 and trips under 0.5 km are noise.
- segment_stops(): runs of stationary-speed fixes lasting >= 3 minutes,
  with an accuracy-weighted centroid and signal-gap bookkeeping.

Fixes worse than 200 m accuracy, mocked fixes, zero-time transitions and
implied speeds over 200 km/h are dropped silently; noisy input is normal.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Optional, Union

from config import (
    MAX_ACCURACY_M, LOW_ACCURACY_M, MAX_SPEED_KMH, VEHICLE_SPEED_KMH,
    STATIONARY_SPEED_KMH, STATIONARY_GAP_MINUTES, GPS_GAP_MINUTES,
    DISTANCE_CORRECTION_FACTOR, MIN_TRIP_DISTANCE_KM, MIN_TRIP_POINTS,
    DRIVING_AVG_SPEED_KMH, WALKING_AVG_SPEED_KMH, GREY_ZONE_SPLIT_KMH,
    SLOW_SEGMENT_KMH, SLOW_SEGMENT_RATIO, WALKING_MAX_DISTANCE_KM,
    GHOST_TRIP_FILTER, MIN_DISPLACEMENT_WALKING_KM, MIN_DISPLACEMENT_DRIVING_KM,
    MIN_DISPLACEMENT_RATIO, SHORT_TRIP_MAX_POINTS,
    MIN_STOP_MINUTES, STOP_GAP_GRACE_SECONDS, STOP_MAX_GAP_DRIFT_M,
)
from geo import haversine_km, weighted_centroid
from models import GpsPoint, Trip, StationaryCluster

logger = logging.getLogger(__name__)


# ==========================================
# NOISE FILTERS
# ==========================================

def usable_points(points: Iterable[GpsPoint]) -> list[GpsPoint]:
    """Drops fixes that never take part in segmentation (poor accuracy, mocked)."""

    kept = []
    for p in points:
        if p.accuracy is not None and p.accuracy > MAX_ACCURACY_M:
            continue
        if p.is_mocked:
            continue
        kept.append(p)
    return kept


def _interval(prev: GpsPoint, point: GpsPoint) -> Optional[tuple[float, float, float]]:
    """(distance_km, elapsed_seconds, speed_kmh), or None for an unusable transition."""

    elapsed = (point.captured_at - prev.captured_at).total_seconds()
    if elapsed <= 0:
        return None
    distance = haversine_km(prev.latitude, prev.longitude, point.latitude, point.longitude)
    speed = distance / (elapsed / 3600.0)
    if speed > MAX_SPEED_KMH:
        return None
    return distance, elapsed, speed


def _is_low_accuracy(point: GpsPoint) -> bool:
    return point.accuracy is not None and point.accuracy > LOW_ACCURACY_M


# ==========================================
# TRIP STATE MACHINE
# ==========================================

@dataclass(frozen=True, slots=True)
class Idle:
    """No trip in progress."""


IDLE = Idle()


@dataclass(slots=True)
class InTrip:
    """A trip being accumulated."""

    start: GpsPoint
    end: GpsPoint
    distance_km: float = 0.0
    points: list[GpsPoint] = field(default_factory=list)
    low_accuracy_count: int = 0
    stationary_since: Optional[datetime] = None
    has_gps_gap: bool = False

    @classmethod
    def open(cls, first: GpsPoint) -> "InTrip":
        return cls(
            start=first,
            end=first,
            points=[first],
            low_accuracy_count=1 if _is_low_accuracy(first) else 0,
        )

    def extend(self, point: GpsPoint, distance_km: float) -> None:
        self.distance_km += distance_km
        self.points.append(point)
        self.end = point
        if _is_low_accuracy(point):
            self.low_accuracy_count += 1
        self.stationary_since = None


TripState = Union[Idle, InTrip]


def advance(state: TripState, prev: GpsPoint, point: GpsPoint) -> tuple[TripState, Optional[InTrip]]:
    """Applies one transition prev -> point.

    Returns:
        (new_state, finished) where finished is the InTrip that this
        transition closed, if any.
    """

    interval = _interval(prev, point)
    if interval is None:
        return state, None
    distance, elapsed, speed = interval

    # Signal loss: the interval across the gap never counts toward a trip
    if elapsed / 60.0 > GPS_GAP_MINUTES:
        if isinstance(state, InTrip):
            state.has_gps_gap = True
            return IDLE, state
        return state, None

    if speed >= VEHICLE_SPEED_KMH:
        if isinstance(state, Idle):
            state = InTrip.open(prev)
        state.extend(point, distance)
        return state, None

    if not isinstance(state, InTrip):
        return state, None

    if speed >= STATIONARY_SPEED_KMH:
        state.extend(point, distance)
        return state, None

    if state.stationary_since is None:
        state.stationary_since = point.captured_at
    if point.captured_at - state.stationary_since >= timedelta(minutes=STATIONARY_GAP_MINUTES):
        return IDLE, state
    return state, None


def segment_speeds(points: list[GpsPoint]) -> list[float]:
    """Speeds (km/h) between consecutive fixes, glitches and zero-time pairs excluded."""

    speeds = []
    for prev, point in zip(points, points[1:]):
        interval = _interval(prev, point)
        if interval is not None:
            speeds.append(interval[2])
    return speeds


def classify_transport_mode(distance_km, duration_minutes, speeds=None) -> str:
    """
    driving / walking / unknown.

    > 10 km/h on average is always driving and < 4 km/h always walking.
    In between, a short trip (< 1 km) whose segments are mostly (> 80%)
    under 5 km/h is walking; otherwise driving.
    """
    if distance_km is None or duration_minutes is None:
        return 'unknown'
    if duration_minutes <= 0 or distance_km < 0:
        return 'unknown'

    avg_speed = distance_km / (duration_minutes / 60.0)
    if avg_speed > DRIVING_AVG_SPEED_KMH:
        return 'driving'
    if avg_speed < WALKING_AVG_SPEED_KMH:
        return 'walking'

    speeds = speeds or []
    if len(speeds) < 2:
        return 'driving' if avg_speed >= GREY_ZONE_SPLIT_KMH else 'walking'

    slow_ratio = sum(1 for s in speeds if s < SLOW_SEGMENT_KMH) / len(speeds)
    if slow_ratio > SLOW_SEGMENT_RATIO and distance_km < WALKING_MAX_DISTANCE_KM:
        return 'walking'
    return 'driving'


def is_ghost_trip(transport_mode: str, distance_km: float, displacement_km: float, point_count: int) -> bool:
    """True for GPS drift that looks like a trip (tiny or circular net displacement)."""

    if transport_mode == 'walking' and displacement_km < MIN_DISPLACEMENT_WALKING_KM:
        return True
    if transport_mode == 'driving' and displacement_km < MIN_DISPLACEMENT_DRIVING_KM:
        return True
    if point_count <= SHORT_TRIP_MAX_POINTS and displacement_km / max(distance_km, 0.001) < MIN_DISPLACEMENT_RATIO:
        return True
    return False


def finish_trip(state: InTrip, ghost_filter: bool = GHOST_TRIP_FILTER) -> Optional[Trip]:
    """Closes an accumulated trip, or returns None when it is not significant."""

    point_count = len(state.points)
    distance = state.distance_km * DISTANCE_CORRECTION_FACTOR
    if distance < MIN_TRIP_DISTANCE_KM or point_count < MIN_TRIP_POINTS:
        logger.debug("Trip discarded: %.3f km, %d points", distance, point_count)
        return None

    minutes = (state.end.captured_at - state.start.captured_at).total_seconds() / 60.0
    duration = max(1, int(minutes))
    mode = classify_transport_mode(distance, duration, segment_speeds(state.points))

    if ghost_filter:
        displacement = haversine_km(
            state.start.latitude, state.start.longitude,
            state.end.latitude, state.end.longitude,
        )
        if is_ghost_trip(mode, distance, displacement, point_count):
            logger.debug("Ghost trip discarded: %.3f km displacement over %.3f km", displacement, distance)
            return None

    return Trip(
        started_at=state.start.captured_at,
        ended_at=state.end.captured_at,
        start_latitude=state.start.latitude,
        start_longitude=state.start.longitude,
        start_accuracy=state.start.accuracy,
        end_latitude=state.end.latitude,
        end_longitude=state.end.longitude,
        end_accuracy=state.end.accuracy,
        distance_km=round(distance, 3),
        duration_minutes=duration,
        confidence_score=round(max(0.0, 1.0 - state.low_accuracy_count / point_count), 2),
        gps_point_count=point_count,
        low_accuracy_point_count=state.low_accuracy_count,
        has_gps_gap=state.has_gps_gap,
        transport_mode=mode,
        point_ids=tuple(p.id for p in state.points),
    )


def segment_trips(points: Iterable[GpsPoint], ghost_filter: bool = GHOST_TRIP_FILTER) -> list[Trip]:
    """Folds the Idle/InTrip machine over a shift's fixes and returns the trips."""

    trips = []
    state: TripState = IDLE
    prev = None

    for point in usable_points(points):
        if prev is not None:
            state, finished = advance(state, prev, point)
            if finished is not None:
                trip = finish_trip(finished, ghost_filter)
                if trip is not None:
                    trips.append(trip)
        prev = point

    # End of data closes the open trip like a gap would
    if isinstance(state, InTrip):
        trip = finish_trip(state, ghost_filter)
        if trip is not None:
            trips.append(trip)

    return trips


# ==========================================
# STOPS (STATIONARY CLUSTERS)
# ==========================================

@dataclass(slots=True)
class _OpenStop:
    points: list[GpsPoint]
    gap_seconds: float = 0.0
    gap_count: int = 0

    def add(self, point: GpsPoint) -> None:
        silence = (point.captured_at - self.points[-1].captured_at).total_seconds()
        if silence > STOP_GAP_GRACE_SECONDS:
            self.gap_seconds += silence - STOP_GAP_GRACE_SECONDS
            self.gap_count += 1
        self.points.append(point)


def _finish_stop(stop: _OpenStop) -> Optional[StationaryCluster]:
    started_at = stop.points[0].captured_at
    ended_at = stop.points[-1].captured_at
    duration = int((ended_at - started_at).total_seconds())
    if duration <= 0 or duration < MIN_STOP_MINUTES * 60:
        return None

    lat, lon, acc = weighted_centroid(
        [p.latitude for p in stop.points],
        [p.longitude for p in stop.points],
        [p.accuracy for p in stop.points],
    )
    return StationaryCluster(
        centroid_latitude=lat,
        centroid_longitude=lon,
        centroid_accuracy=round(acc, 2),
        started_at=started_at,
        ended_at=ended_at,
        duration_seconds=duration,
        gps_point_count=len(stop.points),
        gps_gap_seconds=int(stop.gap_seconds),
        gps_gap_count=stop.gap_count,
        point_ids=tuple(p.id for p in stop.points),
    )


def segment_stops(points: Iterable[GpsPoint]) -> list[StationaryCluster]:
    """Groups consecutive stationary-speed fixes into stops of at least 3 minutes.

    A silence longer than the trip gap still continues a stop when the device
    has not drifted more than STOP_MAX_GAP_DRIFT_M across it.
    """

    stops = []
    current: Optional[_OpenStop] = None
    prev = None

    for point in usable_points(points):
        if prev is not None:
            interval = _interval(prev, point)
            if interval is not None:
                distance, elapsed, speed = interval
                stationary = speed < STATIONARY_SPEED_KMH and (
                    elapsed / 60.0 <= GPS_GAP_MINUTES or distance * 1000.0 <= STOP_MAX_GAP_DRIFT_M
                )
                if stationary:
                    if current is None:
                        current = _OpenStop(points=[prev])
                    current.add(point)
                elif current is not None:
                    stop = _finish_stop(current)
                    if stop is not None:
                        stops.append(stop)
                    current = None
        prev = point

    if current is not None:
        stop = _finish_stop(current)
        if stop is not None:
            stops.append(stop)

    return stops


def segment_shift(points: Iterable[GpsPoint], ghost_filter: bool = GHOST_TRIP_FILTER):
    """Both views of one point stream: (trips, stops)."""

    points = list(points)
    return segment_trips(points, ghost_filter), segment_stops(points)
