"""Outgoing notification model."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class NotificationKind(StrEnum):
    PIN_VERIFIED = "pin-verified"
    PARKING_CONFIRMED = "parking-confirmed"
    NEW_NEARBY_PIN = "new-nearby-pin"


class Notification(BaseModel):
    """A message handed to a :class:`~parkshare.notifications.NotificationDispatcher`."""

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )

    user_id: str
    kind: NotificationKind
    spot_id: str
    title: str
    body: str
    data: dict[str, Any] = Field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")
