"""Reward outbox model."""

from __future__ import annotations

from enum import StrEnum

from pydantic import Field

from parkshare.models._base import ParkShareBaseModel


class RewardStatus(StrEnum):
    PENDING = "pending"
    APPLIED = "applied"


class RewardEvent(ParkShareBaseModel):
    """Pending reward written in the same transaction as a claim.

    The id equals the :class:`~parkshare.models.history.HistoryRecord` id,
    which makes application idempotent.  The ``*_points`` and
    ``owner_reliability`` fields are filled in when the event is applied.
    """

    id: str = ""
    spot_id: str
    confirmer_id: str
    owner_id: str
    multiplier: float = Field(ge=1)
    status: RewardStatus = RewardStatus.PENDING
    created_at: int
    applied_at: int | None = None
    confirmer_points: int | None = None
    owner_points: int | None = None
    owner_reliability: int | None = None

    @property
    def is_applied(self) -> bool:
        return self.status == RewardStatus.APPLIED
