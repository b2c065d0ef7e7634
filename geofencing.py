"""
Geofencing utilities for Kleanr.

Great-circle distances between a cleaner's reported GPS position and the
home they were sent to, and the on-site check used by tenant-present
reports.
"""

from math import radians, cos, sin, asin, sqrt

EARTH_RADIUS_M = 6371000.0


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def calculate_distance(lat1, lng1, lat2, lng2):
    """Haversine distance in metres between two (lat, lng) points."""
    lat1, lng1, lat2, lng2 = map(radians, [float(lat1), float(lng1), float(lat2), float(lng2)])
    dlat = lat2 - lat1
    dlng = lng2 - lng1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlng / 2) ** 2
    return 2 * EARTH_RADIUS_M * asin(sqrt(a))


def distance_from_home(location, home):
    """Distance from a ``{"latitude", "longitude"}`` fix to a home, or None.

    None when either side lacks coordinates.
    """
    if not location or home is None:
        return None
    lat = location.get("latitude")
    lng = location.get("longitude")
    if lat is None or lng is None or home.latitude is None or home.longitude is None:
        return None
    return calculate_distance(lat, lng, home.latitude, home.longitude)


def is_on_site(distance_m, radius_m):
    """True/False when a distance is known, None otherwise."""
    if distance_m is None:
        return None
    return distance_m <= radius_m
