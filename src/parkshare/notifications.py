"""Notification dispatch seam.

Delivery is fire-and-forget: a failed dispatch is logged and never affects
the operation that triggered it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from parkshare.models.notification import Notification, NotificationKind
from parkshare.models.spot import PinType, Spot

_logger = logging.getLogger(__name__)


class NotificationDispatcher(Protocol):
    """Structural interface of notification backends."""

    async def dispatch(self, notification: Notification) -> None:
        ...


class NullNotificationDispatcher:
    """Dispatcher that drops everything."""

    async def dispatch(self, notification: Notification) -> None:
        _logger.debug("Dropping %s notification for %s", notification.kind, notification.user_id)


class PendingDeliveries:
    """Background deliveries scheduled by one owner.

    Holds strong references to its tasks, since the event loop only keeps
    weak ones.  :meth:`wait` covers this tracker's deliveries only.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[None]] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def fire_and_forget(self, dispatcher: NotificationDispatcher, notification: Notification) -> asyncio.Task[None]:
        """Schedule delivery of *notification* without waiting for it."""

        async def _deliver() -> None:
            try:
                await dispatcher.dispatch(notification)
            except Exception:
                _logger.warning(
                    "Notification %s for %s failed",
                    notification.kind,
                    notification.user_id,
                    exc_info=True,
                )

        task = asyncio.get_running_loop().create_task(_deliver())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait(self) -> None:
        """Wait until every delivery scheduled here has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def pin_verified(owner_id: str, spot_id: str) -> Notification:
    return Notification(
        user_id=owner_id,
        kind=NotificationKind.PIN_VERIFIED,
        spot_id=spot_id,
        title="Pin Verified!",
        body="Great! Someone successfully parked at your shared spot. You earned Park Points!",
        data={"type": NotificationKind.PIN_VERIFIED.value, "spotId": spot_id},
    )


def parking_confirmed(owner_id: str, spot_id: str) -> Notification:
    return Notification(
        user_id=owner_id,
        kind=NotificationKind.PARKING_CONFIRMED,
        spot_id=spot_id,
        title="Parking Confirmed!",
        body="Someone confirmed parking at your leaving-soon spot. You earned full points!",
        data={"type": NotificationKind.PARKING_CONFIRMED.value, "spotId": spot_id},
    )


def claim_notification(spot: Spot) -> Notification:
    """Message telling the owner their spot was claimed."""
    if spot.pin_type == PinType.LEAVING_SOON:
        return parking_confirmed(spot.owner_id, spot.id)
    return pin_verified(spot.owner_id, spot.id)


def new_nearby_pin(user_id: str, spot: Spot) -> Notification:
    """Message telling *user_id* a spot was shared near them."""
    if spot.pin_type == PinType.LEAVING_SOON:
        title = "Leaving Soon Pin Nearby!"
        body = "Someone is leaving their spot soon. Check it out!"
    else:
        title = "New Parking Spot Nearby!"
        body = "A new parking spot has been shared nearby."
    return Notification(
        user_id=user_id,
        kind=NotificationKind.NEW_NEARBY_PIN,
        spot_id=spot.id,
        title=title,
        body=body,
        data={
            "type": NotificationKind.NEW_NEARBY_PIN.value,
            "spotId": spot.id,
            "pinType": spot.pin_type.value,
            "location": {"latitude": spot.location.latitude, "longitude": spot.location.longitude},
        },
    )
