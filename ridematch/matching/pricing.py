"""Meeting point and fare estimation for a group of requests."""

import math
from datetime import datetime
from typing import List, Sequence, Tuple

from ridematch.config.models import PricingConfig
from ridematch.domain.models import GeoLocation, RideRequest
from ridematch.utils.geo import centroid, distance_km


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def meeting_points(requests: Sequence[RideRequest]) -> Tuple[GeoLocation, GeoLocation]:
    """Centroids of the origins and of the destinations.

    The display address is taken from the first request, since a centroid has
    no address of its own.

    Raises:
        ValueError: If requests is empty
    """
    if not requests:
        raise ValueError("meeting_points requires at least one request")

    pickup_lat, pickup_lon = centroid(r.origin for r in requests)
    dropoff_lat, dropoff_lon = centroid(r.destination for r in requests)

    meeting = GeoLocation(
        latitude=pickup_lat, longitude=pickup_lon, address=requests[0].origin.address
    )
    dropoff = GeoLocation(
        latitude=dropoff_lat, longitude=dropoff_lon, address=requests[0].destination.address
    )
    return meeting, dropoff


def earliest_departure(requests: Sequence[RideRequest]) -> datetime:
    """Departure time of a match: the earliest of its participants."""
    return min(r.departure_time for r in requests)


def estimate_total_cost(
    meeting_point: GeoLocation,
    dropoff_point: GeoLocation,
    total_seats: int,
    pricing: PricingConfig,
) -> int:
    """Estimated fare for the whole vehicle, rounded to whole currency units.

    Example:
        2 km with the default tariff and 2 seats: 50 + 30 * 2 = 110
    """
    km = distance_km(meeting_point, dropoff_point)
    fare = pricing.base_fare + pricing.per_km_rate * km
    if total_seats > pricing.large_vehicle_seat_threshold:
        fare *= pricing.large_vehicle_multiplier
    return _round_half_up(fare)


def split_cost(total_cost: int, riders: int) -> int:
    """Per-person share, rounded half up."""
    if riders <= 0:
        raise ValueError("riders must be positive")
    return _round_half_up(total_cost / riders)


def quote(requests: List[RideRequest], pricing: PricingConfig) -> dict:
    """Everything derived from the request set when a match is formed or reshaped."""
    meeting, dropoff = meeting_points(requests)
    total_seats = sum(r.looking_for_seats for r in requests)
    total_cost = estimate_total_cost(meeting, dropoff, total_seats, pricing)
    return {
        "meeting_point": meeting,
        "dropoff_point": dropoff,
        "departure_time": earliest_departure(requests),
        "total_seats": total_seats,
        "estimated_total_cost": total_cost,
        "cost_per_person": split_cost(total_cost, len(requests)),
    }
