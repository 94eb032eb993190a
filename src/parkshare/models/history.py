"""Claim history model."""

from __future__ import annotations

from pydantic import Field

from parkshare.models._base import ParkShareBaseModel


class HistoryRecord(ParkShareBaseModel):
    """Immutable audit entry written when a spot is claimed."""

    id: str = ""
    spot_id: str
    confirmer_id: str
    owner_id: str
    confirmed_at: int
    rating_given: int | None = Field(default=None, ge=1, le=5)
