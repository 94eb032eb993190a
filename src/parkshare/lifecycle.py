"""Spot lifecycle policy.

This module is the single place that decides what a spot's status *means*.
The stored ``status`` field is never trusted on its own: time is folded in
through :func:`effective_status`, and every read path (queries, realtime
deliveries, claims, owner edits, the leaving-soon slot) branches on that.
"""

from __future__ import annotations

from parkshare.exceptions import ParkShareConflictError, ParkShareExpiredError
from parkshare.models.spot import PinType, Spot, SpotStatus

ACTIVE_STATUSES: frozenset[SpotStatus] = frozenset(
    {
        SpotStatus.POTENTIALLY_FREE,
        SpotStatus.VERIFIED,
        SpotStatus.WALK_IN_PENDING,
        SpotStatus.LEAVING_SOON_ACTIVE,
    }
)
CONFIRMABLE_STATUSES: frozenset[SpotStatus] = ACTIVE_STATUSES
EXPIRED_STATUSES: frozenset[SpotStatus] = frozenset(
    {
        SpotStatus.EXPIRED,
        SpotStatus.WALK_IN_EXPIRED,
        SpotStatus.LEAVING_SOON_EXPIRED,
    }
)


def initial_status(pin_type: PinType) -> SpotStatus:
    """Status written when a spot of *pin_type* is created."""
    if pin_type == PinType.LEAVING_SOON:
        return SpotStatus.LEAVING_SOON_ACTIVE
    return SpotStatus.WALK_IN_PENDING


def is_lease_elapsed(now_ms: int, expires_at: int) -> bool:
    return expires_at <= now_ms


def effective_status(spot: Spot, now_ms: int) -> SpotStatus:
    """Stored status combined with time: an elapsed lease always reads as expired."""
    if is_lease_elapsed(now_ms, spot.expires_at):
        return SpotStatus.EXPIRED
    return spot.status


def is_active(spot: Spot, now_ms: int) -> bool:
    """Whether the spot should be offered to nearby users."""
    return effective_status(spot, now_ms) in ACTIVE_STATUSES


def holds_leaving_soon_slot(spot: Spot, now_ms: int) -> bool:
    """Whether *spot* occupies its owner's single leaving-soon slot."""
    return spot.pin_type == PinType.LEAVING_SOON and effective_status(spot, now_ms) == SpotStatus.LEAVING_SOON_ACTIVE


def check_confirmable(spot: Spot, now_ms: int) -> None:
    """Raise unless *spot* can be claimed at *now_ms*.

    Raises
    ------
    ParkShareExpiredError
        The lease has elapsed, whatever the stored status says, or the
        stored status is one of the terminal expired states.
    ParkShareConflictError
        The spot was already claimed or is in a consumed state.
    """
    status = effective_status(spot, now_ms)
    if status in EXPIRED_STATUSES:
        raise ParkShareExpiredError(spot.id, spot.expires_at)
    if status not in CONFIRMABLE_STATUSES or spot.is_claimed:
        raise ParkShareConflictError(f"Spot {spot.id} is not available (status={status})")
