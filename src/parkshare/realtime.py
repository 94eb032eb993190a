"""Long-lived nearby subscriptions.

Subscriptions are indexed by the geohash prefixes covering their area, so a
store change is only evaluated against subscriptions whose cells it
touches (its old or new position).  Each delivery carries the full
filtered view plus the ids added, removed or updated since the previous
delivery.  Leases run out without any write, so :meth:`sweep_expired`
re-checks every view against the clock.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from parkshare._constants import SPOTS_COLLECTION
from parkshare.clock import Clock, system_clock_ms
from parkshare.geo import GeoQueryEngine, bounding_box, covering_prefixes, matches, rank_spots, validate_area
from parkshare.lifecycle import is_active
from parkshare.models.spot import GeoPoint, Spot
from parkshare.store.base import DocumentChange, DocumentStore, Unsubscribe

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NearbyUpdate:
    """One delivery to a nearby subscriber."""

    spots: list[Spot]
    added: frozenset[str] = frozenset()
    removed: frozenset[str] = frozenset()
    updated: frozenset[str] = frozenset()
    initial: bool = False


NearbyCallback = Callable[[NearbyUpdate], None]


@dataclass(slots=True)
class _Subscription:
    id: int
    center: GeoPoint
    radius_m: float
    callback: NearbyCallback
    prefixes: tuple[str, ...]
    visible: dict[str, Spot] = field(default_factory=dict)
    ready: bool = False
    dirty: bool = False
    active: bool = True


def _geohash_of(data: dict[str, Any] | None) -> str | None:
    if not data:
        return None
    value = data.get("geohash")
    return value if isinstance(value, str) else None


def _parse(change: DocumentChange) -> Spot | None:
    if change.data is None:
        return None
    try:
        return Spot.from_document(change.id, change.data)
    except PydanticValidationError:
        _logger.debug("Ignoring malformed spot document %s", change.id, exc_info=True)
        return None


class RealtimeSubscriptionHub:
    """Fans spot changes out to nearby subscribers."""

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
        self._engine = GeoQueryEngine(store, clock=clock, max_cells=max_cells)
        self._subs: dict[int, _Subscription] = {}
        self._buckets: dict[str, set[int]] = {}
        self._ids = itertools.count(1)
        self._unlisten: Unsubscribe | None = None

    @property
    def subscription_count(self) -> int:
        return len(self._subs)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Begin listening to spot changes.  Idempotent."""
        if self._unlisten is None:
            self._unlisten = self._store.listen(SPOTS_COLLECTION, self._on_changes)

    def stop(self) -> None:
        """Stop listening and drop every subscription."""
        unlisten = self._unlisten
        self._unlisten = None
        if unlisten is not None:
            unlisten()
        for sub in self._subs.values():
            sub.active = False
        self._subs.clear()
        self._buckets.clear()

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def subscribe_nearby(
        self,
        center: GeoPoint | dict[str, Any],
        radius_m: float,
        on_change: NearbyCallback,
    ) -> Unsubscribe:
        """Watch active spots within *radius_m* of *center*.

        *on_change* receives the initial view before this coroutine returns,
        then one :class:`NearbyUpdate` per visible change.  The returned
        callable cancels the subscription; calling it again does nothing.
        """
        point = validate_area(center, radius_m)
        self.start()

        prefixes = tuple(covering_prefixes(bounding_box(point, radius_m), max_cells=self._max_cells))
        sub = _Subscription(
            id=next(self._ids),
            center=point,
            radius_m=radius_m,
            callback=on_change,
            prefixes=prefixes,
        )
        self._register(sub)

        def _unsubscribe() -> None:
            self._unregister(sub)

        try:
            spots = await self._engine.query_nearby(point, radius_m)
            while sub.dirty and sub.active:
                sub.dirty = False
                spots = await self._engine.query_nearby(point, radius_m)
        except BaseException:
            self._unregister(sub)
            raise

        if sub.active:
            sub.visible = {spot.id: spot for spot in spots}
            sub.ready = True
            self._deliver(sub, NearbyUpdate(spots=spots, added=frozenset(sub.visible), initial=True))
        _logger.debug("Subscription %d registered over %d cells", sub.id, len(prefixes))
        return _unsubscribe

    def _register(self, sub: _Subscription) -> None:
        self._subs[sub.id] = sub
        for prefix in sub.prefixes:
            self._buckets.setdefault(prefix, set()).add(sub.id)

    def _unregister(self, sub: _Subscription) -> None:
        if not sub.active:
            return
        sub.active = False
        self._subs.pop(sub.id, None)
        for prefix in sub.prefixes:
            bucket = self._buckets.get(prefix)
            if bucket is None:
                continue
            bucket.discard(sub.id)
            if not bucket:
                del self._buckets[prefix]
        _logger.debug("Subscription %d cancelled", sub.id)

    def _subscribers_for(self, geohashes: set[str]) -> set[int]:
        ids: set[int] = set()
        for geohash in geohashes:
            for length in range(len(geohash) + 1):
                ids.update(self._buckets.get(geohash[:length], ()))
        return ids

    # ------------------------------------------------------------------
    # Change routing
    # ------------------------------------------------------------------

    def _deliver(self, sub: _Subscription, update: NearbyUpdate) -> None:
        try:
            sub.callback(update)
        except Exception:
            _logger.warning("Nearby subscriber %d callback failed", sub.id, exc_info=True)

    def _refresh(self, sub: _Subscription, changes: list[DocumentChange], now: int) -> None:
        before = dict(sub.visible)
        for change in changes:
            spot = _parse(change)
            if spot is not None and matches(spot, sub.center, sub.radius_m, now):
                sub.visible[change.id] = spot
            else:
                sub.visible.pop(change.id, None)
        self._publish(sub, before, now)

    def _publish(self, sub: _Subscription, before: dict[str, Spot], now: int) -> bool:
        for spot_id, spot in list(sub.visible.items()):
            if not is_active(spot, now):
                del sub.visible[spot_id]

        added = frozenset(sub.visible.keys() - before.keys())
        removed = frozenset(before.keys() - sub.visible.keys())
        updated = frozenset(
            spot_id for spot_id in sub.visible.keys() & before.keys() if sub.visible[spot_id] != before[spot_id]
        )
        if not (added or removed or updated):
            return False
        self._deliver(
            sub,
            NearbyUpdate(
                spots=rank_spots(list(sub.visible.values())),
                added=added,
                removed=removed,
                updated=updated,
            ),
        )
        return True

    def _on_changes(self, changes: list[DocumentChange]) -> None:
        now = self._clock()
        routed: dict[int, list[DocumentChange]] = {}
        for change in changes:
            geohashes = {h for h in (_geohash_of(change.data), _geohash_of(change.previous)) if h is not None}
            for sub_id in self._subscribers_for(geohashes):
                routed.setdefault(sub_id, []).append(change)

        for sub_id, batch in routed.items():
            sub = self._subs.get(sub_id)
            if sub is None or not sub.active:
                continue
            if not sub.ready:
                sub.dirty = True
                continue
            self._refresh(sub, batch, now)

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    def sweep_expired(self) -> int:
        """Drop elapsed spots from every view.  Returns the number of deliveries."""
        now = self._clock()
        delivered = 0
        for sub in list(self._subs.values()):
            if sub.active and sub.ready and self._publish(sub, dict(sub.visible), now):
                delivered += 1
        if delivered:
            _logger.debug("Expiry sweep notified %d subscriptions", delivered)
        return delivered

    async def run_expiry_sweeper(self, interval: float) -> None:
        """Call :meth:`sweep_expired` every *interval* seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            self.sweep_expired()
