"""Spot (pin) models."""

from __future__ import annotations

import math
from enum import StrEnum
from typing import Any

from pydantic import ConfigDict, Field, field_validator, model_validator

from parkshare._constants import MAX_PRIORITY_SCORE
from parkshare.models._base import ParkShareBaseModel


class PinType(StrEnum):
    """Spot subtype; decides the allowed lease."""

    WALK_IN = "walk-in"
    LEAVING_SOON = "leaving-soon"


class SpotStatus(StrEnum):
    """Stored spot status.

    The type-specific states are written on creation.  The generic ones
    (``potentially-free``, ``verified``, ``expired``, ``occupied``) are kept
    for documents written by older clients and for claims.
    """

    POTENTIALLY_FREE = "potentially-free"
    VERIFIED = "verified"
    EXPIRED = "expired"
    OCCUPIED = "occupied"
    WALK_IN_PENDING = "walk_in_pending"
    WALK_IN_EXPIRED = "walk_in_expired"
    LEAVING_SOON_ACTIVE = "leaving_soon_active"
    LEAVING_SOON_EXPIRED = "leaving_soon_expired"


def _strip_optional(value: Any) -> Any:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class GeoPoint(ParkShareBaseModel):
    """A latitude/longitude pair in decimal degrees."""

    latitude: float
    longitude: float

    @field_validator("latitude")
    @classmethod
    def _check_latitude(cls, value: float) -> float:
        if not math.isfinite(value) or not -90.0 <= value <= 90.0:
            raise ValueError("Invalid latitude (must be between -90 and 90)")
        return value

    @field_validator("longitude")
    @classmethod
    def _check_longitude(cls, value: float) -> float:
        if not math.isfinite(value) or not -180.0 <= value <= 180.0:
            raise ValueError("Invalid longitude (must be between -180 and 180)")
        return value


class Spot(ParkShareBaseModel):
    """A time-bounded geolocated availability record.

    Parameters
    ----------
    id : str
        Document id.
    owner_id : str
        User who published the spot.
    location : GeoPoint
        Where the spot is.
    geohash : str
        Derived cell of ``location``; used for coarse range prefiltering.
    pin_type : PinType
        Walk-in or leaving-soon.
    will_leave_in_minutes : int
        Lease length in minutes.
    is_paid : bool
        Whether parking there costs money.
    status : SpotStatus
        Stored status.  Never branch on it directly; use
        :func:`parkshare.lifecycle.effective_status`.
    created_at, expires_at : int
        Epoch milliseconds; ``expires_at`` is strictly after ``created_at``.
    priority_score : int
        Ranking value in ``[0, 150]``.
    claimed_by : str or None
        Confirmer id once the spot has been claimed.
    """

    id: str = ""
    owner_id: str
    location: GeoPoint
    geohash: str = ""
    pin_type: PinType
    will_leave_in_minutes: int = Field(gt=0)
    is_paid: bool = False
    status: SpotStatus
    created_at: int
    expires_at: int
    priority_score: int = Field(default=0, ge=0, le=MAX_PRIORITY_SCORE)
    title: str | None = None
    description: str | None = None
    claimed_by: str | None = None
    updated_at: int | None = None

    @field_validator("owner_id")
    @classmethod
    def _require_owner(cls, value: str) -> str:
        owner = value.strip()
        if not owner:
            raise ValueError("owner id is required")
        return owner

    @field_validator("title", "description", mode="before")
    @classmethod
    def _strip_text(cls, value: Any) -> Any:
        return _strip_optional(value)

    @model_validator(mode="after")
    def _check_lease(self) -> Spot:
        if self.expires_at <= self.created_at:
            raise ValueError("expiresAt must be after createdAt")
        return self

    @property
    def is_claimed(self) -> bool:
        return self.claimed_by is not None


class SpotParams(ParkShareBaseModel):
    """Optional creation inputs beyond owner, location and pin type."""

    will_leave_in_minutes: int | None = None
    is_paid: bool = False
    title: str | None = None
    description: str | None = None

    @field_validator("title", "description", mode="before")
    @classmethod
    def _strip_text(cls, value: Any) -> Any:
        return _strip_optional(value)


class SpotPatch(ParkShareBaseModel):
    """Owner edit.  Only fields explicitly set are applied.

    Unknown keys (``owner_id``, ``claimed_by``, ...) are rejected.
    """

    model_config = ConfigDict(extra="forbid")

    title: str | None = None
    description: str | None = None
    pin_type: PinType | None = None
    status: SpotStatus | None = None
    will_leave_in_minutes: int | None = None
    is_paid: bool | None = None
    location: GeoPoint | None = None
    expires_at: int | None = None

    @field_validator("title", "description", mode="before")
    @classmethod
    def _strip_text(cls, value: Any) -> Any:
        return _strip_optional(value)

    @property
    def touched(self) -> frozenset[str]:
        return frozenset(self.model_fields_set)
