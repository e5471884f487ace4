"""Great-circle distance and weighted centroid helpers."""

from __future__ import annotations

import math

import numpy as np

from config import DEFAULT_ACCURACY_M, MIN_WEIGHT_ACCURACY_M

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Haversine distance in kilometers between two lat/lon points."""

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2.0) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2.0) ** 2
    return 2.0 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    return haversine_km(lat1, lon1, lat2, lon2) * 1000.0


def haversine_m_many(lat: float, lon: float, lats, lons) -> np.ndarray:
    """Distances in meters from one point to arrays of points (vectorised)."""

    lats = np.radians(np.asarray(lats, dtype=float))
    lons = np.radians(np.asarray(lons, dtype=float))
    phi = math.radians(lat)
    d_phi = lats - phi
    d_lambda = lons - math.radians(lon)

    a = np.sin(d_phi / 2.0) ** 2 + math.cos(phi) * np.cos(lats) * np.sin(d_lambda / 2.0) ** 2
    return 2.0 * EARTH_RADIUS_KM * 1000.0 * np.arcsin(np.minimum(1.0, np.sqrt(a)))


def effective_accuracy(accuracy) -> float:
    """Accuracy used for weighting: unknown -> default, floored above zero."""

    if accuracy is None or (isinstance(accuracy, float) and math.isnan(accuracy)):
        accuracy = DEFAULT_ACCURACY_M
    return max(float(accuracy), MIN_WEIGHT_ACCURACY_M)


def weighted_centroid(lats, lons, accuracies) -> tuple[float, float, float]:
    """Accuracy-weighted centroid.

    Each fix is weighted by 1 / accuracy, so precise fixes dominate. The
    combined accuracy is 1 / sqrt(sum(1 / accuracy^2)).

    Returns:
        (latitude, longitude, accuracy_m)
    """

    acc = np.array([effective_accuracy(a) for a in accuracies], dtype=float)
    weights = 1.0 / acc
    lat = float(np.sum(np.asarray(lats, dtype=float) * weights) / np.sum(weights))
    lon = float(np.sum(np.asarray(lons, dtype=float) * weights) / np.sum(weights))
    combined = float(1.0 / np.sqrt(np.sum(1.0 / acc ** 2)))
    return lat, lon, combined
