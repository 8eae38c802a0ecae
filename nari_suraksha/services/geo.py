"""Small geometry helpers for the safety map and live location.

Report filtering uses a planar approximation (degrees scaled to metres
at roughly 111 km per degree) which is adequate for the small radii the
map queries with. Haversine is used where a true distance is shown.
"""

from __future__ import annotations

import math
from typing import Final

METRES_PER_DEGREE: Final[float] = 111_000.0
EARTH_RADIUS_M: Final[float] = 6_371_000.0
GEOHASH_PRECISION: Final[int] = 8

_BASE32: Final[str] = "0123456789bcdefghjkmnpqrstuvwxyz"


def planar_distance_degrees(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    return math.hypot(lat1 - lat2, lng1 - lng2)


def within_radius(lat1: float, lng1: float, lat2: float, lng2: float, radius_m: float) -> bool:
    """Planar radius check, not geodesic."""
    return planar_distance_degrees(lat1, lng1, lat2, lng2) <= radius_m / METRES_PER_DEGREE


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def encode_geohash(lat: float, lng: float, precision: int = GEOHASH_PRECISION) -> str:
    """Encode a coordinate as a base-32 geohash of *precision* characters."""
    lat_range = [-90.0, 90.0]
    lng_range = [-180.0, 180.0]
    chars: list[str] = []
    bits = 0
    bit_count = 0
    even = True  # even bits encode longitude

    while len(chars) < precision:
        rng, value = (lng_range, lng) if even else (lat_range, lat)
        mid = (rng[0] + rng[1]) / 2
        if value >= mid:
            bits = (bits << 1) | 1
            rng[0] = mid
        else:
            bits <<= 1
            rng[1] = mid
        even = not even
        bit_count += 1
        if bit_count == 5:
            chars.append(_BASE32[bits])
            bits = 0
            bit_count = 0

    return "".join(chars)
