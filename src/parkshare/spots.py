"""Spot persistence with owner authorization and the leaving-soon slot.

An owner may hold at most one effectively active leaving-soon spot.  The
rule is enforced by a per-owner slot document (``leavingSoonLocks/<owner>``)
read and written in the same transaction as the spot itself.  A slot that
points at a spot which no longer holds it (expired, claimed, edited, gone)
is stale and simply taken over.
"""

from __future__ import annotations

import logging
from typing import Any

from parkshare._constants import (
    LEAVING_SOON_LOCKS_COLLECTION,
    LEAVING_SOON_PRIORITY_BOOST,
    MAX_PRIORITY_SCORE,
    MS_PER_MINUTE,
    SPOTS_COLLECTION,
)
from parkshare.clock import Clock, system_clock_ms
from parkshare.config import ParkShareConfig
from parkshare.exceptions import (
    ActiveLeavingSoonSpotError,
    ParkShareExpiredError,
    ParkShareNotFoundError,
    ParkSharePermissionError,
    ParkShareValidationError,
)
from parkshare.geo import geohash_encode, rank_spots
from parkshare.ledger import priority_score
from parkshare.lifecycle import holds_leaving_soon_slot, initial_status, is_active, is_lease_elapsed
from parkshare.models.spot import GeoPoint, PinType, Spot, SpotParams, SpotPatch
from parkshare.store.base import DocumentStore, Transaction, new_document_id

_logger = logging.getLogger(__name__)

# Patch fields that cannot be cleared.
_NON_NULLABLE = ("pin_type", "status", "will_leave_in_minutes", "is_paid", "location", "expires_at")


def _require_id(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ParkShareValidationError(field, "is required")
    return value.strip()


def _coerce_pin_type(value: Any) -> PinType:
    try:
        return PinType(value)
    except ValueError:
        allowed = ", ".join(p.value for p in PinType)
        raise ParkShareValidationError("pin_type", f"must be one of {allowed}") from None


def _not_found(spot_id: str) -> ParkShareNotFoundError:
    return ParkShareNotFoundError(
        f"Spot {spot_id} not found",
        collection=SPOTS_COLLECTION,
        doc_id=spot_id,
    )


class SpotStore:
    """Owner-authorized create/read/update/delete of spots."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        clock: Clock = system_clock_ms,
        config: ParkShareConfig | None = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._config = config or ParkShareConfig()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _lease_minutes(self, pin_type: PinType, requested: Any) -> int:
        if pin_type == PinType.WALK_IN:
            return self._config.walk_in_lease_minutes
        low = self._config.leaving_soon_min_minutes
        high = self._config.leaving_soon_max_minutes
        if requested is None:
            raise ParkShareValidationError("will_leave_in_minutes", "is required for leaving-soon pins")
        if isinstance(requested, bool) or not isinstance(requested, int):
            raise ParkShareValidationError("will_leave_in_minutes", "must be an integer")
        if not low <= requested <= high:
            raise ParkShareValidationError("will_leave_in_minutes", f"must be between {low} and {high} minutes")
        return requested

    async def _take_slot(self, tx: Transaction, owner_id: str, spot_id: str, now: int) -> None:
        """Point the owner's slot at *spot_id*, unless another spot still holds it.

        Reads before buffering its write; callers must not have written yet.
        """
        lock = await tx.get(LEAVING_SOON_LOCKS_COLLECTION, owner_id)
        held_id = (lock.data or {}).get("spotId")
        if held_id and held_id != spot_id:
            held = await tx.get(SPOTS_COLLECTION, held_id)
            if held.data is not None and holds_leaving_soon_slot(Spot.from_document(held_id, held.data), now):
                raise ActiveLeavingSoonSpotError(owner_id, held_id)
            _logger.debug("Taking over stale leaving-soon slot of %s from %s", owner_id, held_id)
        tx.set(LEAVING_SOON_LOCKS_COLLECTION, owner_id, {"spotId": spot_id, "updatedAt": now})

    async def _read_owned(self, tx: Transaction, spot_id: str, caller_id: str) -> Spot:
        snap = await tx.get(SPOTS_COLLECTION, spot_id)
        if snap.data is None:
            raise _not_found(spot_id)
        spot = Spot.from_document(spot_id, snap.data)
        if spot.owner_id != caller_id:
            raise ParkSharePermissionError(f"Only the owner can modify spot {spot_id}")
        return spot

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create(
        self,
        owner_id: str,
        location: GeoPoint | dict[str, Any],
        pin_type: PinType | str,
        params: SpotParams | dict[str, Any] | None = None,
        *,
        owner_reliability: int | None = None,
        owner_premium: bool = False,
    ) -> str:
        """Validate and persist a new spot, returning its id.

        Raises
        ------
        ParkShareValidationError
            Missing owner, bad coordinates, unknown pin type or a lease
            outside the allowed range.
        ActiveLeavingSoonSpotError
            The owner already holds an active leaving-soon spot.
        """
        owner = _require_id(owner_id, "owner_id")
        point = GeoPoint.coerce(location)
        kind = _coerce_pin_type(pin_type)
        options = SpotParams.coerce(params if params is not None else {})
        minutes = self._lease_minutes(kind, options.will_leave_in_minutes)
        reliability = self._config.default_reliability if owner_reliability is None else owner_reliability

        now = self._clock()
        spot = Spot.coerce(
            {
                "owner_id": owner,
                "location": point,
                "geohash": geohash_encode(point.latitude, point.longitude),
                "pin_type": kind,
                "will_leave_in_minutes": minutes,
                "is_paid": options.is_paid,
                "status": initial_status(kind),
                "created_at": now,
                "expires_at": now + minutes * MS_PER_MINUTE,
                "priority_score": priority_score(reliability, owner_premium, kind),
                "title": options.title,
                "description": options.description,
                "updated_at": now,
            }
        )
        spot_id = new_document_id()

        if kind == PinType.LEAVING_SOON:

            async def _txn(tx: Transaction) -> None:
                await self._take_slot(tx, owner, spot_id, now)
                tx.set(SPOTS_COLLECTION, spot_id, spot.to_document())

            await self._store.run_transaction(_txn, max_attempts=self._config.ledger_transaction_attempts)
        else:
            await self._store.create(SPOTS_COLLECTION, spot.to_document(), doc_id=spot_id)

        _logger.info(
            "Spot %s created owner=%s type=%s expires_at=%d priority=%d",
            spot_id,
            owner,
            kind,
            spot.expires_at,
            spot.priority_score,
        )
        return spot_id

    async def get(self, spot_id: str) -> Spot:
        sid = _require_id(spot_id, "spot_id")
        snap = await self._store.get(SPOTS_COLLECTION, sid)
        if snap.data is None:
            raise _not_found(sid)
        return Spot.from_document(sid, snap.data)

    def _apply_patch(
        self,
        current: Spot,
        patch: SpotPatch,
        now: int,
        owner_reliability: int | None,
        owner_premium: bool | None,
    ) -> Spot:
        touched = patch.touched
        for name in _NON_NULLABLE:
            if name in touched and getattr(patch, name) is None:
                raise ParkShareValidationError(name, "cannot be cleared")

        values = current.model_dump()
        for name in touched:
            values[name] = getattr(patch, name)

        pin_type: PinType = values["pin_type"]
        # An untouched initial status follows the new pin type.
        if "status" not in touched and current.status == initial_status(current.pin_type):
            values["status"] = initial_status(pin_type)
        if touched & {"pin_type", "will_leave_in_minutes"}:
            minutes = self._lease_minutes(pin_type, values["will_leave_in_minutes"])
            values["will_leave_in_minutes"] = minutes
            if "expires_at" not in touched:
                values["expires_at"] = current.created_at + minutes * MS_PER_MINUTE
        if "expires_at" in touched and values["expires_at"] <= current.created_at:
            raise ParkShareValidationError("expires_at", "must be after createdAt")

        if "location" in touched:
            location: GeoPoint = values["location"]
            values["geohash"] = geohash_encode(location.latitude, location.longitude)

        if owner_reliability is not None:
            values["priority_score"] = priority_score(owner_reliability, bool(owner_premium), pin_type)
        elif pin_type != current.pin_type:
            boost = LEAVING_SOON_PRIORITY_BOOST if pin_type == PinType.LEAVING_SOON else -LEAVING_SOON_PRIORITY_BOOST
            values["priority_score"] = max(0, min(current.priority_score + boost, MAX_PRIORITY_SCORE))

        values["updated_at"] = now
        return Spot.coerce(values)

    async def update(
        self,
        spot_id: str,
        caller_id: str,
        patch: SpotPatch | dict[str, Any],
        *,
        owner_reliability: int | None = None,
        owner_premium: bool | None = None,
    ) -> Spot:
        """Apply an owner edit and return the stored result.

        A lease change (pin type or minutes) recomputes ``expires_at`` from
        ``created_at`` unless the patch sets ``expires_at`` itself.
        """
        sid = _require_id(spot_id, "spot_id")
        caller = _require_id(caller_id, "caller_id")
        changes = SpotPatch.coerce(patch)

        async def _txn(tx: Transaction) -> Spot:
            current = await self._read_owned(tx, sid, caller)
            now = self._clock()
            if is_lease_elapsed(now, current.expires_at):
                raise ParkShareExpiredError(sid, current.expires_at)

            updated = self._apply_patch(current, changes, now, owner_reliability, owner_premium)
            was_holding = holds_leaving_soon_slot(current, now)
            will_hold = holds_leaving_soon_slot(updated, now)
            if will_hold and not was_holding:
                await self._take_slot(tx, caller, sid, now)
            elif was_holding and not will_hold:
                lock = await tx.get(LEAVING_SOON_LOCKS_COLLECTION, caller)
                if (lock.data or {}).get("spotId") == sid:
                    tx.delete(LEAVING_SOON_LOCKS_COLLECTION, caller)
            tx.set(SPOTS_COLLECTION, sid, updated.to_document())
            return updated

        updated = await self._store.run_transaction(_txn, max_attempts=self._config.ledger_transaction_attempts)
        _logger.info("Spot %s updated fields=%s", sid, ",".join(sorted(changes.touched)))
        return updated

    async def delete(self, spot_id: str, caller_id: str) -> None:
        """Hard delete by the owner; releases the leaving-soon slot if held."""
        sid = _require_id(spot_id, "spot_id")
        caller = _require_id(caller_id, "caller_id")

        async def _txn(tx: Transaction) -> None:
            await self._read_owned(tx, sid, caller)
            lock = await tx.get(LEAVING_SOON_LOCKS_COLLECTION, caller)
            tx.delete(SPOTS_COLLECTION, sid)
            if (lock.data or {}).get("spotId") == sid:
                tx.delete(LEAVING_SOON_LOCKS_COLLECTION, caller)

        await self._store.run_transaction(_txn, max_attempts=self._config.ledger_transaction_attempts)
        _logger.info("Spot %s deleted by owner", sid)

    async def list_owner_spots(self, owner_id: str, include_expired: bool = False) -> list[Spot]:
        """Spots published by *owner_id*, newest first."""
        owner = _require_id(owner_id, "owner_id")
        snapshots = await self._store.query_equal(SPOTS_COLLECTION, "ownerId", owner)
        spots = [Spot.from_document(s.id, s.data) for s in snapshots if s.data is not None]
        if not include_expired:
            now = self._clock()
            spots = [s for s in spots if is_active(s, now)]
        return sorted(spots, key=lambda s: (-s.created_at, s.id))

    async def list_active(self, max_results: int = 100) -> list[Spot]:
        """Every effectively active spot, best first."""
        now = self._clock()
        snapshots = await self._store.range_query(SPOTS_COLLECTION, "expiresAt", start=now + 1)
        spots = [Spot.from_document(s.id, s.data) for s in snapshots if s.data is not None]
        return rank_spots([s for s in spots if is_active(s, now)])[:max_results]
