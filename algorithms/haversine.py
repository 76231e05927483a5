"""
Haversine Algorithm - Calculate distance between two geographical points
Used by the geo index to measure how far donors are from a request
"""

import math

import numpy as np

# Radius of earth in kilometers
EARTH_RADIUS_KM = 6371.0

# Length of one degree of latitude, in km
KM_PER_DEGREE = math.pi * EARTH_RADIUS_KM / 180.0


def haversine_distance(lat1, lon1, lat2, lon2):
    """
    Calculate straight-line distance between two points.
    Note: This is "as the crow flies" distance, not road distance.

    Args:
        lat1, lon1: Latitude and longitude of point 1 (request)
        lat2, lon2: Latitude and longitude of point 2 (donor)

    Returns:
        Distance in kilometers
    """
    return float(haversine_many(lat1, lon1, np.array([lat2]), np.array([lon2]))[0])


def haversine_many(lat, lon, lats, lons):
    """
    Vectorised haversine from one point to many.

    Every distance the matching core reports goes through this function so
    that a donor's distance is bit-identical whichever code path asked.

    Args:
        lat, lon: Latitude and longitude of the center
        lats, lons: numpy arrays of donor latitudes and longitudes

    Returns:
        numpy array of distances in kilometers
    """
    lat1 = np.radians(lat)
    lon1 = np.radians(lon)
    lat2 = np.radians(np.asarray(lats, dtype=float))
    lon2 = np.radians(np.asarray(lons, dtype=float))

    dlat = lat2 - lat1
    dlon = lon2 - lon1

    a = np.sin(dlat / 2) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin(dlon / 2) ** 2
    # Rounding can push a hair above 1 for antipodal points
    c = 2 * np.arcsin(np.sqrt(np.clip(a, 0.0, 1.0)))

    return c * EARTH_RADIUS_KM


def bounding_box(lat, lon, radius_km):
    """
    Degree bounding box that contains every point within radius_km.

    Returns:
        (min_lat, max_lat, min_lon, max_lon); longitude spans the whole
        globe when the box reaches a pole or crosses the antimeridian.
    """
    dlat = radius_km / KM_PER_DEGREE
    min_lat = max(lat - dlat, -90.0)
    max_lat = min(lat + dlat, 90.0)

    if min_lat <= -90.0 or max_lat >= 90.0:
        return min_lat, max_lat, -180.0, 180.0

    # Widest longitude span is at the latitude edge nearest a pole
    widest = max(abs(min_lat), abs(max_lat))
    dlon = radius_km / (KM_PER_DEGREE * math.cos(math.radians(widest)))
    if dlon >= 180.0 or lon - dlon < -180.0 or lon + dlon > 180.0:
        return min_lat, max_lat, -180.0, 180.0

    return min_lat, max_lat, lon - dlon, lon + dlon
