"""Value objects passed between the segmentation, matching and mileage layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass(frozen=True, slots=True)
class GpsPoint:
    """A single stored GPS fix.

    Attributes:
        id: Database id of the fix.
        latitude: Latitude in decimal degrees.
        longitude: Longitude in decimal degrees.
        accuracy: Horizontal accuracy radius in meters, None when unreported.
        captured_at: Naive UTC capture time.
        is_mocked: Device reported a mock location provider.
    """

    id: int
    latitude: float
    longitude: float
    accuracy: Optional[float]
    captured_at: datetime
    speed: Optional[float] = None
    heading: Optional[float] = None
    altitude: Optional[float] = None
    is_mocked: bool = False


@dataclass(frozen=True, slots=True)
class Trip:
    """A vehicle movement segment, as produced by segment_trips()."""

    started_at: datetime
    ended_at: datetime
    start_latitude: float
    start_longitude: float
    start_accuracy: Optional[float]
    end_latitude: float
    end_longitude: float
    end_accuracy: Optional[float]
    distance_km: float
    duration_minutes: int
    confidence_score: float
    gps_point_count: int
    low_accuracy_point_count: int
    has_gps_gap: bool
    transport_mode: str
    point_ids: tuple[int, ...]
    classification: str = 'business'
    detection_method: str = 'auto'


@dataclass(frozen=True, slots=True)
class StationaryCluster:
    """A stop: contiguous low-speed fixes around an accuracy-weighted centroid."""

    centroid_latitude: float
    centroid_longitude: float
    centroid_accuracy: float
    started_at: datetime
    ended_at: datetime
    duration_seconds: int
    gps_point_count: int
    gps_gap_seconds: int
    gps_gap_count: int
    point_ids: tuple[int, ...]


@dataclass(frozen=True, slots=True)
class Location:
    """An active circular geofence."""

    id: int
    name: str
    location_type: str
    latitude: float
    longitude: float
    radius_meters: float


@dataclass(slots=True)
class ClusterSuggestion:
    """A recurring unmatched place proposed as a new location."""

    centroid_latitude: float
    centroid_longitude: float
    occurrence_count: int
    has_start_endpoints: bool
    has_end_endpoints: bool
    employee_names: list[str]
    first_seen: datetime
    last_seen: datetime
    sample_addresses: list[str] = field(default_factory=list)


@dataclass(slots=True)
class MileageSummary:
    """Per-employee distance totals and reimbursement for a period."""

    total_distance_km: float
    business_distance_km: float
    personal_distance_km: float
    trip_count: int
    business_trip_count: int
    personal_trip_count: int
    estimated_reimbursement: float
    rate_per_km_used: float
    rate_source: str
    ytd_business_km: float
    no_rate_configured: bool = False
