import math
import random
import pytest
from pharmalink.utils import geohash

CENTERS = [
    (19.07, 72.87),     # Mumbai
    (51.5074, -0.1278),  # close to the prime meridian
    (-33.8688, 151.2093),
    (0.0, 0.0),          # every cell boundary at once
    (64.1466, -21.9426),
    (0.0, 179.999),      # antimeridian
    (-16.5, -179.99),
    (89.99, 0.0),        # circle reaches over the pole
    (-89.995, 45.0),
    (89.97, 120.0),      # close to the pole without containing it
]


def _offset(center, north_m, east_m):
    lat = center[0] + north_m / 111320.0
    lng = center[1] + east_m / (111320.0 * math.cos(math.radians(center[0])))
    return lat, lng


def _destination(center, bearing_deg, distance_m):
    """Point reached from ``center`` along a great circle, longitude wrapped into [-180, 180)."""
    lat1, lng1 = math.radians(center[0]), math.radians(center[1])
    bearing = math.radians(bearing_deg)
    delta = distance_m / (geohash.EARTH_MEAN_RADIUS_KM * 1000)
    lat2 = math.asin(
        math.sin(lat1) * math.cos(delta) + math.cos(lat1) * math.sin(delta) * math.cos(bearing)
    )
    lng2 = lng1 + math.atan2(
        math.sin(bearing) * math.sin(delta) * math.cos(lat1),
        math.cos(delta) - math.sin(lat1) * math.sin(lat2),
    )
    lng = (math.degrees(lng2) + 540) % 360 - 180
    return max(-90.0, min(90.0, math.degrees(lat2))), lng


def test_encode_known_value():
    assert geohash.encode(57.64911, 10.40744, 11) == "u4pruydqqvj"
    assert geohash.encode(57.64911, 10.40744) == "u4pruydqqv"


def test_encode_is_deterministic():
    assert geohash.encode(19.07, 72.87) == geohash.encode(19.07, 72.87)
    assert len(geohash.encode(19.07, 72.87)) == geohash.GEOHASH_PRECISION


def test_decode_contains_encoded_point():
    (lat_min, lat_max), (lng_min, lng_max) = geohash.decode_bounds(geohash.encode(19.07, 72.87))
    assert lat_min <= 19.07 <= lat_max
    assert lng_min <= 72.87 <= lng_max


def test_nearby_points_share_prefix():
    # Start from the middle of a 6-character cell so 100m never crosses its edge
    center = geohash.decode(geohash.encode(19.07, 72.87, 6))
    prefix = geohash.encode(*center)[:6]
    for north, east in [(100, 0), (-100, 0), (0, 100), (0, -100), (70, 70), (-70, -70)]:
        point = _offset(center, north, east)
        assert geohash.distance_km(center, point) <= 0.101
        assert geohash.encode(*point).startswith(prefix)


@pytest.mark.parametrize("lat,lng", [(91, 0), (-91, 0), (0, 181), (0, -180.5), (float("nan"), 0), (None, 1)])
def test_encode_rejects_invalid_points(lat, lng):
    with pytest.raises(ValueError):
        geohash.encode(lat, lng)


def test_distance_symmetry_and_identity():
    a, b = (19.07, 72.87), (19.08, 72.88)
    assert geohash.distance_km(a, a) == 0
    assert geohash.distance_km(a, b) == pytest.approx(geohash.distance_km(b, a))


def test_distance_matches_known_spacing():
    assert geohash.distance_km((19.07, 72.87), (19.08, 72.88)) == pytest.approx(1.53, abs=0.05)
    assert geohash.distance_km((19.07, 72.87), (19.30, 73.10)) > 20
    # One degree of latitude along a meridian
    assert geohash.distance_km((0, 0), (1, 0)) == pytest.approx(111.19, abs=0.1)


def test_query_bounds_are_ordered_and_unique():
    bounds = geohash.query_bounds((19.07, 72.87), 2000)
    assert bounds
    assert len(bounds) == len(set(bounds))
    for lower, upper in bounds:
        assert lower < upper


def test_query_bounds_rejects_non_positive_radius():
    with pytest.raises(ValueError):
        geohash.query_bounds((19.07, 72.87), 0)


@pytest.mark.parametrize("center", CENTERS)
@pytest.mark.parametrize("radius_m", [300, 2000, 5000])
def test_query_bounds_cover_every_point_in_radius(center, radius_m):
    bounds = geohash.query_bounds(center, radius_m)
    rng = random.Random(f"{center}-{radius_m}")
    checked = 0
    for _ in range(300):
        point = _destination(center, rng.uniform(0, 360), radius_m * math.sqrt(rng.random()))
        if geohash.distance_km(center, point) > radius_m / 1000:
            continue
        checked += 1
        assert geohash.in_bounds(geohash.encode(*point), bounds), point
    assert checked > 100


def test_query_bounds_allow_false_positives_only():
    center = (19.07, 72.87)
    bounds = geohash.query_bounds(center, 2000)
    far = (19.30, 73.10)
    # Far points may or may not be in range; the distance check is what rejects them
    assert not geohash.is_within_radius(center, far, 2)
    assert geohash.in_bounds(geohash.encode(*center), bounds)


def test_query_bounds_reach_across_the_pole():
    center = (89.99, 0.0)
    other_side = (89.995, 180.0)
    assert geohash.distance_km(center, other_side) < 2

    bounds = geohash.query_bounds(center, 2000)
    assert geohash.in_bounds(geohash.encode(*other_side), bounds)

    south, beyond = (-89.99, 10.0), (-89.995, -170.0)
    assert geohash.distance_km(south, beyond) < 2
    assert geohash.in_bounds(geohash.encode(*beyond), geohash.query_bounds(south, 2000))


def test_query_bounds_span_the_antimeridian():
    center = (0.0, 179.999)
    across = (0.0, -179.995)
    assert geohash.distance_km(center, across) < 2
    assert geohash.in_bounds(geohash.encode(*across), geohash.query_bounds(center, 2000))
