"""
Geohash encoding and radius query bounds.

A geohash interleaves longitude and latitude bisection bits and writes them
five at a time in base 32, so points that are close together usually share a
long prefix. Radius searches run in two phases:

1. ``query_bounds`` returns a handful of ``(lower, upper)`` string ranges whose
   union is guaranteed to contain every point inside the circle. Stored
   geohashes are scanned with ``lower <= geohash <= upper``.
2. Every candidate is then checked with ``distance_km``. The ranges over-include
   near cell edges, so skipping this step returns false positives.
"""
import math
from typing import List, Tuple

BASE32 = "0123456789bcdefghjkmnpqrstuvwxyz"
BITS_PER_CHAR = 5

# 10 characters is roughly 1.2m x 0.6m per cell.
GEOHASH_PRECISION = 10
MAXIMUM_BITS_PRECISION = 22 * BITS_PER_CHAR

EARTH_MEAN_RADIUS_KM = 6371.0
EARTH_EQ_RADIUS_M = 6378137.0
EARTH_MERI_CIRCUMFERENCE_M = 40007860.0
METERS_PER_DEGREE_LATITUDE = 110574.0
E2 = 0.00669447819799
EPSILON = 1e-12

# Sorts after every base32 character, used as an open upper bound.
RANGE_END = "~"

Point = Tuple[float, float]


def validate_point(lat: float, lng: float) -> None:
    if lat is None or lng is None:
        raise ValueError("Latitude and longitude are required")
    if not isinstance(lat, (int, float)) or not isinstance(lng, (int, float)):
        raise ValueError("Latitude and longitude must be numbers")
    if math.isnan(lat) or math.isnan(lng):
        raise ValueError("Latitude and longitude must be numbers")
    if not -90 <= lat <= 90:
        raise ValueError(f"Latitude must be in [-90, 90], got {lat}")
    if not -180 <= lng <= 180:
        raise ValueError(f"Longitude must be in [-180, 180], got {lng}")


def encode(lat: float, lng: float, precision: int = GEOHASH_PRECISION) -> str:
    """Encode a coordinate pair into a geohash of ``precision`` characters."""
    validate_point(lat, lng)
    if precision <= 0 or precision > 22:
        raise ValueError("Precision must be between 1 and 22")

    lat_range = [-90.0, 90.0]
    lng_range = [-180.0, 180.0]
    chars = []
    hash_value = 0
    bits = 0
    even = True

    while len(chars) < precision:
        value = lng if even else lat
        bounds = lng_range if even else lat_range
        mid = (bounds[0] + bounds[1]) / 2
        if value > mid:
            hash_value = (hash_value << 1) + 1
            bounds[0] = mid
        else:
            hash_value = hash_value << 1
            bounds[1] = mid
        even = not even
        if bits < 4:
            bits += 1
        else:
            bits = 0
            chars.append(BASE32[hash_value])
            hash_value = 0

    return "".join(chars)


def distance_km(p1: Point, p2: Point) -> float:
    """Great-circle (haversine) distance between two ``(lat, lng)`` points."""
    lat1, lng1 = p1
    lat2, lng2 = p2
    lat_delta = math.radians(lat2 - lat1)
    lng_delta = math.radians(lng2 - lng1)
    a = (
        math.sin(lat_delta / 2) * math.sin(lat_delta / 2)
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2))
        * math.sin(lng_delta / 2) * math.sin(lng_delta / 2)
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_MEAN_RADIUS_KM * c


def is_within_radius(center: Point, point: Point, radius_km: float) -> bool:
    return distance_km(center, point) <= radius_km


def _meters_to_longitude_degrees(distance: float, latitude: float) -> float:
    radians = math.radians(latitude)
    num = math.cos(radians) * EARTH_EQ_RADIUS_M * math.pi / 180
    denom = 1 / math.sqrt(1 - E2 * math.sin(radians) * math.sin(radians))
    delta_deg = num * denom
    if delta_deg < EPSILON:
        return 360.0 if distance > 0 else 0.0
    return min(360.0, distance / delta_deg)


def _longitude_bits_for_resolution(resolution: float, latitude: float) -> float:
    degrees = _meters_to_longitude_degrees(resolution, latitude)
    return max(1.0, math.log2(360 / degrees)) if abs(degrees) > 0.000001 else 1.0


def _latitude_bits_for_resolution(resolution: float) -> float:
    return min(math.log2(EARTH_MERI_CIRCUMFERENCE_M / 2 / resolution), MAXIMUM_BITS_PRECISION)


def _wrap_longitude(longitude: float) -> float:
    if -180 <= longitude <= 180:
        return longitude
    adjusted = longitude + 180
    if adjusted > 0:
        return math.fmod(adjusted, 360) - 180
    return 180 - math.fmod(-adjusted, 360)


def _bounding_box_bits(center: Point, size: float) -> int:
    lat_delta = size / METERS_PER_DEGREE_LATITUDE
    lat_north = min(90.0, center[0] + lat_delta)
    lat_south = max(-90.0, center[0] - lat_delta)
    bits_lat = math.floor(_latitude_bits_for_resolution(size)) * 2
    bits_lng_north = math.floor(_longitude_bits_for_resolution(size, lat_north)) * 2 - 1
    bits_lng_south = math.floor(_longitude_bits_for_resolution(size, lat_south)) * 2 - 1
    return int(min(bits_lat, bits_lng_north, bits_lng_south, MAXIMUM_BITS_PRECISION))


def _bounding_box_coordinates(center: Point, radius: float) -> List[Point]:
    lat_degrees = radius / METERS_PER_DEGREE_LATITUDE
    lat_north = min(90.0, center[0] + lat_degrees)
    lat_south = max(-90.0, center[0] - lat_degrees)
    lng_degrees = max(
        _meters_to_longitude_degrees(radius, lat_north),
        _meters_to_longitude_degrees(radius, lat_south),
    )
    west = _wrap_longitude(center[1] - lng_degrees)
    east = _wrap_longitude(center[1] + lng_degrees)
    return [
        (center[0], center[1]),
        (center[0], west),
        (center[0], east),
        (lat_north, center[1]),
        (lat_north, west),
        (lat_north, east),
        (lat_south, center[1]),
        (lat_south, west),
        (lat_south, east),
    ]


def _geohash_range(geohash: str, bits: int) -> Tuple[str, str]:
    precision = math.ceil(bits / BITS_PER_CHAR)
    if len(geohash) < precision:
        return geohash, geohash + RANGE_END

    ghash = geohash[:precision]
    base = ghash[:-1]
    last_value = BASE32.index(ghash[-1])
    significant_bits = bits - len(base) * BITS_PER_CHAR
    unused_bits = BITS_PER_CHAR - significant_bits
    start_value = (last_value >> unused_bits) << unused_bits
    end_value = start_value + (1 << unused_bits)
    if end_value > 31:
        return base + BASE32[start_value], base + RANGE_END
    return base + BASE32[start_value], base + BASE32[end_value]


def query_bounds(center: Point, radius_meters: float) -> List[Tuple[str, str]]:
    """Geohash ranges that together cover the circle around ``center``.

    Bounds are inclusive on both ends and deduplicated, in the order the
    sample points were taken (centre first). Near the poles the whole
    keyspace comes back as a single range.
    """
    validate_point(*center)
    if radius_meters <= 0:
        raise ValueError("Radius must be positive")

    # A circle touching a pole, or one wider than half the globe in longitude,
    # wraps every sample point onto the centre meridian. Scan everything.
    lat_degrees = radius_meters / METERS_PER_DEGREE_LATITUDE
    lat_north = min(90.0, center[0] + lat_degrees)
    lat_south = max(-90.0, center[0] - lat_degrees)
    lng_degrees = max(
        _meters_to_longitude_degrees(radius_meters, lat_north),
        _meters_to_longitude_degrees(radius_meters, lat_south),
    )
    if lat_north >= 90 or lat_south <= -90 or lng_degrees >= 180:
        return [(BASE32[0], RANGE_END)]

    query_bits = max(1, _bounding_box_bits(center, radius_meters))
    precision = math.ceil(query_bits / BITS_PER_CHAR)
    ranges = []
    for lat, lng in _bounding_box_coordinates(center, radius_meters):
        bound = _geohash_range(encode(lat, lng, precision), query_bits)
        if bound not in ranges:
            ranges.append(bound)
    return ranges


def in_bounds(geohash: str, bounds: List[Tuple[str, str]]) -> bool:
    return any(lower <= geohash <= upper for lower, upper in bounds)


def decode_bounds(geohash: str) -> Tuple[Tuple[float, float], Tuple[float, float]]:
    """``((lat_min, lat_max), (lng_min, lng_max))`` of the cell named by ``geohash``."""
    lat_range = [-90.0, 90.0]
    lng_range = [-180.0, 180.0]
    even = True
    for char in geohash:
        value = BASE32.index(char)
        for shift in range(BITS_PER_CHAR - 1, -1, -1):
            bounds = lng_range if even else lat_range
            mid = (bounds[0] + bounds[1]) / 2
            if (value >> shift) & 1:
                bounds[0] = mid
            else:
                bounds[1] = mid
            even = not even
    return (lat_range[0], lat_range[1]), (lng_range[0], lng_range[1])


def decode(geohash: str) -> Point:
    """Centre of the geohash cell."""
    (lat_min, lat_max), (lng_min, lng_max) = decode_bounds(geohash)
    return (lat_min + lat_max) / 2, (lng_min + lng_max) / 2
