"""Geographic utility functions.

Pure helpers for distance and proximity calculations used by the scorer and by
the candidate pre-filter. Distances are great-circle (haversine) distances on a
sphere of radius 6371 km.
"""

from dataclasses import dataclass
from math import atan2, cos, radians, sin, sqrt
from typing import Iterable, Protocol, Tuple

EARTH_RADIUS_KM = 6371.0

# Approximate kilometres per degree of latitude
KM_PER_DEGREE_LAT = 111.0

_BASE32 = "0123456789bcdefghjkmnpqrstuvwxyz"


class HasCoordinates(Protocol):
    latitude: float
    longitude: float


@dataclass(frozen=True)
class BoundingBox:
    """Latitude/longitude rectangle used to pre-filter candidate sets."""

    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float

    def contains(self, latitude: float, longitude: float) -> bool:
        return (
            self.min_lat <= latitude <= self.max_lat
            and self.min_lon <= longitude <= self.max_lon
        )


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate distance between two coordinates in kilometres.

    Args:
        lat1: Latitude of first point
        lon1: Longitude of first point
        lat2: Latitude of second point
        lon2: Longitude of second point

    Returns:
        Distance in kilometres
    """
    d_lat = radians(lat2 - lat1)
    d_lon = radians(lon2 - lon1)
    a = (
        sin(d_lat / 2) ** 2
        + cos(radians(lat1)) * cos(radians(lat2)) * sin(d_lon / 2) ** 2
    )
    c = 2 * atan2(sqrt(a), sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def distance_km(a: HasCoordinates, b: HasCoordinates) -> float:
    """Distance in kilometres between two objects exposing latitude/longitude."""
    return haversine_km(a.latitude, a.longitude, b.latitude, b.longitude)


def distance_m(a: HasCoordinates, b: HasCoordinates) -> float:
    """Distance in metres between two objects exposing latitude/longitude."""
    return distance_km(a, b) * 1000.0


def within_radius(center: HasCoordinates, point: HasCoordinates, radius_km: float) -> bool:
    """Check whether point lies within radius_km of center (inclusive)."""
    return distance_km(center, point) <= radius_km


def bounding_box(center: HasCoordinates, radius_km: float) -> BoundingBox:
    """
    Get the bounding box around a location for a given radius.

    The box always contains the circle of radius_km, so it is safe to use as a
    coarse pre-filter before exact distance checks.

    Args:
        center: Center location
        radius_km: Radius in kilometres

    Returns:
        BoundingBox with min/max latitude and longitude
    """
    lat_delta = radius_km / KM_PER_DEGREE_LAT
    cos_lat = cos(radians(center.latitude))
    # Near the poles longitude spans everything
    if cos_lat <= 1e-9:
        lon_delta = 180.0
    else:
        lon_delta = radius_km / (KM_PER_DEGREE_LAT * cos_lat)

    return BoundingBox(
        min_lat=center.latitude - lat_delta,
        max_lat=center.latitude + lat_delta,
        min_lon=center.longitude - lon_delta,
        max_lon=center.longitude + lon_delta,
    )


def centroid(points: Iterable[HasCoordinates]) -> Tuple[float, float]:
    """Arithmetic mean of latitudes and longitudes.

    Raises:
        ValueError: If no points are given
    """
    points = list(points)
    if not points:
        raise ValueError("centroid requires at least one point")

    lat = sum(p.latitude for p in points) / len(points)
    lon = sum(p.longitude for p in points) / len(points)
    return lat, lon


def encode_geohash(latitude: float, longitude: float, precision: int = 9) -> str:
    """
    Encode latitude/longitude to a geohash string.

    Args:
        latitude: Latitude (-90 to 90)
        longitude: Longitude (-180 to 180)
        precision: Number of characters (1-12)

    Returns:
        Geohash string
    """
    lat_range = [-90.0, 90.0]
    lon_range = [-180.0, 180.0]

    chars = []
    bit = 0
    ch = 0
    even = True  # even bits encode longitude

    while len(chars) < precision:
        if even:
            mid = (lon_range[0] + lon_range[1]) / 2
            if longitude >= mid:
                ch = (ch << 1) | 1
                lon_range[0] = mid
            else:
                ch = ch << 1
                lon_range[1] = mid
        else:
            mid = (lat_range[0] + lat_range[1]) / 2
            if latitude >= mid:
                ch = (ch << 1) | 1
                lat_range[0] = mid
            else:
                ch = ch << 1
                lat_range[1] = mid

        even = not even
        bit += 1
        if bit == 5:
            chars.append(_BASE32[ch])
            bit = 0
            ch = 0

    return "".join(chars)
