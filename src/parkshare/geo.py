"""Geospatial helpers and the two-phase nearby query.

Phase one narrows the scan inside the store with geohash-prefix range
queries.  Phase two applies the exact haversine radius cut and the
effective-status filter.  The prefilter only ever over-selects; the radius
is never approximated.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from parkshare._constants import (
    EARTH_RADIUS_M,
    GEOHASH_PRECISION,
    GEOHASH_RANGE_SENTINEL,
    SPOTS_COLLECTION,
)
from parkshare.clock import Clock, system_clock_ms
from parkshare.exceptions import ParkShareValidationError
from parkshare.lifecycle import is_active
from parkshare.models.spot import GeoPoint, Spot
from parkshare.store.base import DocumentStore

_logger = logging.getLogger(__name__)

_BASE32 = "0123456789bcdefghjkmnpqrstuvwxyz"
# About 0.1 m; keeps bounding boxes supersets of their circles.
_BOX_MARGIN_DEG = 1e-6


def haversine_m(a: GeoPoint, b: GeoPoint) -> float:
    """Great-circle distance in meters between two points."""
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    dlat = lat2 - lat1
    dlon = math.radians(b.longitude - a.longitude)

    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    # Rounding can push h slightly outside [0, 1] for near-antipodal points.
    h = min(1.0, max(0.0, h))
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(h))


@dataclass(frozen=True)
class BoundingBox:
    min_lat: float
    min_lon: float
    max_lat: float
    max_lon: float
    # Set when the box touches a pole or straddles the antimeridian.
    wraps: bool = False

    def contains(self, point: GeoPoint) -> bool:
        if not self.min_lat <= point.latitude <= self.max_lat:
            return False
        return self.wraps or self.min_lon <= point.longitude <= self.max_lon


def bounding_box(center: GeoPoint, radius_m: float) -> BoundingBox:
    """Smallest lat/lon box containing the circle around *center*.

    The longitude half-width is the great-circle extent
    ``asin(sin(d) / cos(lat))``, widened by a small margin so the box stays
    a superset of the circle under float error.
    """
    angular = radius_m / EARTH_RADIUS_M
    dlat = math.degrees(angular) + _BOX_MARGIN_DEG
    min_lat = center.latitude - dlat
    max_lat = center.latitude + dlat
    if min_lat <= -90.0 or max_lat >= 90.0:
        return BoundingBox(max(min_lat, -90.0), -180.0, min(max_lat, 90.0), 180.0, wraps=True)

    sin_d = math.sin(angular)
    cos_lat = math.cos(math.radians(center.latitude))
    if sin_d >= cos_lat:
        # The circle reaches a pole.
        return BoundingBox(min_lat, -180.0, max_lat, 180.0, wraps=True)

    dlon = math.degrees(math.asin(sin_d / cos_lat)) + _BOX_MARGIN_DEG
    min_lon = center.longitude - dlon
    max_lon = center.longitude + dlon
    if dlon >= 180.0 or min_lon < -180.0 or max_lon > 180.0:
        return BoundingBox(min_lat, -180.0, max_lat, 180.0, wraps=True)
    return BoundingBox(min_lat, min_lon, max_lat, max_lon)


def geohash_encode(latitude: float, longitude: float, precision: int = GEOHASH_PRECISION) -> str:
    """Standard base32 geohash of a coordinate."""
    lat_lo, lat_hi = -90.0, 90.0
    lon_lo, lon_hi = -180.0, 180.0
    chars: list[str] = []
    bits = 0
    bit_count = 0
    even = True
    while len(chars) < precision:
        if even:
            mid = (lon_lo + lon_hi) / 2
            if longitude >= mid:
                bits = (bits << 1) | 1
                lon_lo = mid
            else:
                bits <<= 1
                lon_hi = mid
        else:
            mid = (lat_lo + lat_hi) / 2
            if latitude >= mid:
                bits = (bits << 1) | 1
                lat_lo = mid
            else:
                bits <<= 1
                lat_hi = mid
        even = not even
        bit_count += 1
        if bit_count == 5:
            chars.append(_BASE32[bits])
            bits = 0
            bit_count = 0
    return "".join(chars)


def geohash_cell_size(precision: int) -> tuple[float, float]:
    """(height, width) in degrees of one geohash cell at *precision*."""
    total_bits = 5 * precision
    lon_bits = (total_bits + 1) // 2
    lat_bits = total_bits // 2
    return 180.0 / (2**lat_bits), 360.0 / (2**lon_bits)


def _steps(lo: float, hi: float, step: float) -> list[float]:
    values: list[float] = []
    current = lo
    while current < hi:
        values.append(current)
        current += step
    values.append(hi)
    return values


def covering_prefixes(box: BoundingBox, *, max_cells: int = 16) -> list[str]:
    """Geohash prefixes whose cells jointly cover *box*.

    Picks the finest precision needing at most *max_cells* cells.  Returns
    ``[""]`` (scan everything) for wrapping boxes or when even one-character
    cells are too many.
    """
    if box.wraps:
        return [""]
    for precision in range(GEOHASH_PRECISION, 0, -1):
        cell_h, cell_w = geohash_cell_size(precision)
        rows = math.floor((box.max_lat - box.min_lat) / cell_h) + 2
        cols = math.floor((box.max_lon - box.min_lon) / cell_w) + 2
        if rows * cols > max_cells:
            continue
        cells = {
            geohash_encode(lat, lon, precision)
            for lat in _steps(box.min_lat, box.max_lat, cell_h)
            for lon in _steps(box.min_lon, box.max_lon, cell_w)
        }
        if len(cells) <= max_cells:
            return sorted(cells)
    return [""]


def validate_area(center: GeoPoint | dict, radius_m: float) -> GeoPoint:
    """Coerce and check a query center and radius."""
    point = GeoPoint.coerce(center)
    if isinstance(radius_m, bool) or not isinstance(radius_m, (int, float)):
        raise ParkShareValidationError("radius_m", "must be a number")
    if not math.isfinite(radius_m) or radius_m <= 0:
        raise ParkShareValidationError("radius_m", "must be a positive finite number")
    return point


def matches(spot: Spot, center: GeoPoint, radius_m: float, now_ms: int) -> bool:
    """Exact nearby predicate: effectively active and within the haversine radius."""
    return is_active(spot, now_ms) and haversine_m(center, spot.location) <= radius_m


def rank_spots(spots: list[Spot]) -> list[Spot]:
    """Priority descending, then soonest expiry first."""
    return sorted(spots, key=lambda s: (-s.priority_score, s.expires_at, s.id))


class GeoQueryEngine:
    """Radius queries over the spots collection."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        clock: Clock = system_clock_ms,
        max_cells: int = 16,
    ) -> None:
        self._store = store
        self._clock = clock
        self._max_cells = max_cells

    async def _prefilter(self, box: BoundingBox) -> dict[str, Spot]:
        candidates: dict[str, Spot] = {}
        for prefix in covering_prefixes(box, max_cells=self._max_cells):
            end = prefix + GEOHASH_RANGE_SENTINEL if prefix else None
            snapshots = await self._store.range_query(SPOTS_COLLECTION, "geohash", start=prefix or None, end=end)
            for snap in snapshots:
                if snap.data is None or snap.id in candidates:
                    continue
                candidates[snap.id] = Spot.from_document(snap.id, snap.data)
        return candidates

    async def query_nearby(
        self,
        center: GeoPoint | dict,
        radius_m: float,
        *,
        max_results: int | None = None,
    ) -> list[Spot]:
        """Active spots within *radius_m* meters of *center*, best first."""
        point = validate_area(center, radius_m)
        box = bounding_box(point, radius_m)
        candidates = await self._prefilter(box)

        now = self._clock()
        nearby = [spot for spot in candidates.values() if matches(spot, point, radius_m, now)]
        _logger.debug(
            "Nearby query center=(%.5f,%.5f) radius=%.0fm candidates=%d matched=%d",
            point.latitude,
            point.longitude,
            radius_m,
            len(candidates),
            len(nearby),
        )
        ranked = rank_spots(nearby)
        if max_results is not None:
            return ranked[:max_results]
        return ranked
