"""Utility functions for geo calculations and UTC time handling."""

from .geo import (
    BoundingBox,
    bounding_box,
    centroid,
    distance_km,
    distance_m,
    encode_geohash,
    haversine_km,
    within_radius,
)
from .timestamps import (
    Clock,
    ensure_utc,
    from_storage,
    minutes_between,
    to_storage,
    utc_now,
)

__all__ = [
    # Geo
    "BoundingBox",
    "bounding_box",
    "centroid",
    "distance_km",
    "distance_m",
    "encode_geohash",
    "haversine_km",
    "within_radius",
    # Timestamps
    "Clock",
    "utc_now",
    "ensure_utc",
    "to_storage",
    "from_storage",
    "minutes_between",
]
