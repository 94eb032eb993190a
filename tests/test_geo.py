from __future__ import annotations

import math

import pytest

from parkshare.clock import ManualClock
from parkshare.exceptions import ParkShareValidationError
from parkshare.geo import (
    GeoQueryEngine,
    bounding_box,
    covering_prefixes,
    geohash_encode,
    haversine_m,
    validate_area,
)
from parkshare.models import GeoPoint, PinType
from parkshare.spots import SpotStore
from parkshare.store import InMemoryDocumentStore

CENTER = GeoPoint(latitude=40.0, longitude=-74.0)


def _north_of(point: GeoPoint, meters: float) -> dict[str, float]:
    return {"latitude": point.latitude + math.degrees(meters / 6_371_000.0), "longitude": point.longitude}


def test_haversine_is_zero_at_identical_points_and_symmetric() -> None:
    other = GeoPoint(latitude=40.7128, longitude=-74.0060)

    assert haversine_m(CENTER, CENTER) == 0.0
    assert haversine_m(CENTER, other) == pytest.approx(haversine_m(other, CENTER))


def test_haversine_one_degree_of_latitude() -> None:
    a = GeoPoint(latitude=0.0, longitude=0.0)
    b = GeoPoint(latitude=1.0, longitude=0.0)

    assert haversine_m(a, b) == pytest.approx(111_194.93, abs=0.1)


def test_geohash_encode_known_value() -> None:
    assert geohash_encode(57.64911, 10.40744) == "u4pruydqq"
    assert geohash_encode(57.64911, 10.40744, precision=5) == "u4pru"


def test_bounding_box_wraps_near_antimeridian_and_poles() -> None:
    assert bounding_box(GeoPoint(latitude=0.0, longitude=179.99), 5000).wraps
    assert bounding_box(GeoPoint(latitude=89.99, longitude=0.0), 5000).wraps
    assert not bounding_box(CENTER, 5000).wraps


def test_covering_prefixes_cover_every_point_of_the_box() -> None:
    box = bounding_box(CENTER, 5000)
    prefixes = covering_prefixes(box, max_cells=16)

    assert 0 < len(prefixes) <= 16
    assert "" not in prefixes
    for i in range(11):
        for j in range(11):
            lat = box.min_lat + (box.max_lat - box.min_lat) * i / 10
            lon = box.min_lon + (box.max_lon - box.min_lon) * j / 10
            cell = geohash_encode(lat, lon)
            assert any(cell.startswith(prefix) for prefix in prefixes)


def test_covering_prefixes_fall_back_to_full_scan_for_wrapping_box() -> None:
    box = bounding_box(GeoPoint(latitude=0.0, longitude=-179.999), 5000)

    assert covering_prefixes(box) == [""]


@pytest.mark.parametrize("radius", [0, -1, float("nan"), float("inf"), "5000"])
def test_validate_area_rejects_bad_radius(radius: object) -> None:
    with pytest.raises(ParkShareValidationError) as exc_info:
        validate_area(CENTER, radius)  # type: ignore[arg-type]

    assert exc_info.value.field == "radius_m"


def test_validate_area_rejects_bad_center() -> None:
    with pytest.raises(ParkShareValidationError) as exc_info:
        validate_area({"latitude": 91.0, "longitude": 0.0}, 100)

    assert exc_info.value.field == "latitude"
    assert "between -90 and 90" in exc_info.value.reason


@pytest.mark.asyncio
async def test_query_nearby_applies_exact_radius_cut() -> None:
    clock = ManualClock(1_000_000)
    store = InMemoryDocumentStore()
    spots = SpotStore(store, clock=clock)
    inside = await spots.create("owner-in", _north_of(CENTER, 4999), PinType.WALK_IN)
    await spots.create("owner-out", _north_of(CENTER, 5001), PinType.WALK_IN)

    result = await GeoQueryEngine(store, clock=clock).query_nearby(CENTER, 5000)

    assert [spot.id for spot in result] == [inside]


@pytest.mark.asyncio
async def test_query_nearby_drops_elapsed_leases_without_any_write() -> None:
    clock = ManualClock(1_000_000)
    store = InMemoryDocumentStore()
    spots = SpotStore(store, clock=clock)
    await spots.create("owner-1", CENTER, PinType.WALK_IN)
    engine = GeoQueryEngine(store, clock=clock)

    assert len(await engine.query_nearby(CENTER, 100)) == 1

    clock.advance(minutes=10)
    assert await engine.query_nearby(CENTER, 100) == []


@pytest.mark.asyncio
async def test_query_nearby_ranks_by_priority_then_expiry() -> None:
    clock = ManualClock(1_000_000)
    store = InMemoryDocumentStore()
    spots = SpotStore(store, clock=clock)
    low = await spots.create("owner-low", CENTER, PinType.WALK_IN, owner_reliability=10)
    high = await spots.create("owner-high", CENTER, PinType.WALK_IN, owner_reliability=95)
    soon = await spots.create(
        "owner-soon",
        CENTER,
        PinType.LEAVING_SOON,
        {"will_leave_in_minutes": 5},
        owner_reliability=75,
    )
    late = await spots.create(
        "owner-late",
        CENTER,
        PinType.LEAVING_SOON,
        {"will_leave_in_minutes": 30},
        owner_reliability=75,
    )

    engine = GeoQueryEngine(store, clock=clock)
    ranked = [spot.id for spot in await engine.query_nearby(CENTER, 1000)]
    limited = await engine.query_nearby(CENTER, 1000, max_results=2)

    assert ranked == [high, soon, late, low]
    assert [spot.id for spot in limited] == [high, soon]


@pytest.mark.asyncio
async def test_query_nearby_across_antimeridian_scans_everything() -> None:
    clock = ManualClock(0)
    store = InMemoryDocumentStore()
    spots = SpotStore(store, clock=clock)
    east = await spots.create("owner-e", {"latitude": 0.0, "longitude": 179.999}, PinType.WALK_IN)
    west = await spots.create("owner-w", {"latitude": 0.0, "longitude": -179.999}, PinType.WALK_IN)

    result = await GeoQueryEngine(store, clock=clock).query_nearby({"latitude": 0.0, "longitude": 180.0}, 1000)

    assert {spot.id for spot in result} == {east, west}


def _east_extreme(center: GeoPoint, meters: float) -> GeoPoint:
    """Point of the circle around *center* with the largest longitude."""
    d = meters / 6_371_000.0
    lat = math.radians(center.latitude)
    return GeoPoint(
        latitude=math.degrees(math.asin(math.sin(lat) / math.cos(d))),
        longitude=center.longitude + math.degrees(math.asin(math.sin(d) / math.cos(lat))),
    )


def test_haversine_handles_near_antipodal_points() -> None:
    a = GeoPoint(latitude=-45.14, longitude=0.0)
    b = GeoPoint(latitude=45.14, longitude=180.0)

    assert haversine_m(a, b) == pytest.approx(math.pi * 6_371_000.0, rel=1e-9)
    for i in range(-90, 91):
        lat = i * 0.99
        haversine_m(GeoPoint(latitude=lat, longitude=0.0), GeoPoint(latitude=-lat, longitude=180.0))


@pytest.mark.parametrize(
    ("latitude", "radius"),
    [(0.0, 5000), (45.0, 50_000), (70.0, 200_000), (80.0, 500_000), (-84.0, 300_000)],
)
def test_bounding_box_contains_the_widest_point_of_the_circle(latitude: float, radius: float) -> None:
    center = GeoPoint(latitude=latitude, longitude=19.07)
    widest = _east_extreme(center, radius * 0.9999)
    box = bounding_box(center, radius)

    assert haversine_m(center, widest) <= radius
    assert box.contains(widest)
    if not box.wraps:
        prefixes = covering_prefixes(box, max_cells=16)
        assert any(geohash_encode(widest.latitude, widest.longitude).startswith(p) for p in prefixes)


@pytest.mark.asyncio
async def test_query_nearby_finds_spots_on_the_wide_side_of_a_high_latitude_circle() -> None:
    clock = ManualClock(0)
    store = InMemoryDocumentStore()
    spots = SpotStore(store, clock=clock)
    center = GeoPoint(latitude=80.0, longitude=19.07)
    widest = _east_extreme(center, 499_900)
    spot_id = await spots.create("owner-e", widest, PinType.WALK_IN)

    result = await GeoQueryEngine(store, clock=clock).query_nearby(center, 500_000)

    assert [spot.id for spot in result] == [spot_id]


@pytest.mark.asyncio
async def test_full_scan_survives_an_antipodal_spot() -> None:
    clock = ManualClock(0)
    store = InMemoryDocumentStore()
    spots = SpotStore(store, clock=clock)
    await spots.create("owner-far", {"latitude": -45.14, "longitude": 0.0}, PinType.WALK_IN)
    near = await spots.create("owner-near", {"latitude": 45.14, "longitude": 179.999}, PinType.WALK_IN)

    result = await GeoQueryEngine(store, clock=clock).query_nearby({"latitude": 45.14, "longitude": 180.0}, 1000)

    assert [spot.id for spot in result] == [near]
