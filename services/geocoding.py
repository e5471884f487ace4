"""
Reverse Geocoding Service
=========================
Street-level addresses for trip endpoints via Nominatim (OpenStreetMap).
Coordinates are rounded before lookup so nearby endpoints share one cached
request. Addresses are cosmetic: a failed lookup returns None and never
blocks segmentation.
"""

import os
import logging
from functools import lru_cache

from geopy.geocoders import Nominatim
from geopy.exc import GeocoderTimedOut, GeocoderServiceError

from config import COORDINATE_PRECISION, GEOCODING_TIMEOUT

logger = logging.getLogger(__name__)

USER_AGENT = os.getenv("GEOCODER_USER_AGENT", "shift_reconciler_backfill")

_geolocator = None


def _get_geolocator():
    global _geolocator
    if _geolocator is None:
        _geolocator = Nominatim(user_agent=USER_AGENT, timeout=GEOCODING_TIMEOUT)
    return _geolocator


def format_address(address):
    """
    Short address from a Nominatim 'address' dict:
    '123 Main Street, Springfield'. None when nothing useful is present.
    """
    if not address:
        return None

    street = address.get('road') or address.get('pedestrian') or address.get('footway')
    number = address.get('house_number')
    city = (address.get('city') or address.get('town')
            or address.get('village') or address.get('municipality'))

    parts = []
    if street:
        parts.append(f"{number} {street}" if number else street)
    elif address.get('suburb') or address.get('neighbourhood'):
        parts.append(address.get('suburb') or address.get('neighbourhood'))
    if city:
        parts.append(city)
    return ", ".join(parts) or None


@lru_cache(maxsize=4000)
def _reverse_rounded(lat_r, lon_r):
    try:
        loc = _get_geolocator().reverse(f"{lat_r}, {lon_r}", language='en')
    except (GeocoderTimedOut, GeocoderServiceError) as e:
        logger.warning("Geocoding failed for %s, %s: %s", lat_r, lon_r, e)
        return None
    if loc is None:
        return None
    return format_address(loc.raw.get('address', {})) or loc.address


def reverse_geocode(lat, lon):
    """Cached reverse lookup; None for invalid coordinates or a failed request."""
    try:
        lat_r = round(float(lat), COORDINATE_PRECISION)
        lon_r = round(float(lon), COORDINATE_PRECISION)
    except (TypeError, ValueError):
        return None
    return _reverse_rounded(lat_r, lon_r)
