"""Distance helpers for proximity queries."""

from math import radians, sin, cos, sqrt, atan2


def get_bounding_box(lat, lng, radius_km):
    """
    Calculate a bounding box for SQL filtering.
    Returns (min_lat, max_lat, min_lng, max_lng).
    """
    # Approximate degrees per km at this latitude
    lat_delta = radius_km / 111.0  # ~111 km per degree latitude
    lng_delta = radius_km / (111.0 * max(cos(radians(lat)), 0.01))  # Adjust for longitude

    return (
        lat - lat_delta,  # min_lat
        lat + lat_delta,  # max_lat
        lng - lng_delta,  # min_lng
        lng + lng_delta   # max_lng
    )


def distance(lat1, lon1, lat2, lon2):
    """Calculate distance in km between two coordinates using Haversine formula."""
    R = 6371  # Earth's radius in km
    lat1, lon1, lat2, lon2 = map(radians, [lat1, lon1, lat2, lon2])
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = sin(dlat/2)**2 + cos(lat1) * cos(lat2) * sin(dlon/2)**2
    c = 2 * atan2(sqrt(a), sqrt(1-a))
    return R * c
