"""Points account and caller identity models."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from parkshare._constants import MAX_RELIABILITY, MIN_RELIABILITY
from parkshare.models._base import ParkShareBaseModel


class Badge(StrEnum):
    TRUSTED_SOURCE = "trusted-source"
    TOP_SHARER = "top-sharer"
    PARK_MASTER = "park-master"


class AuthContext(BaseModel):
    """Caller identity supplied by the authentication collaborator."""

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        str_strip_whitespace=True,
    )

    caller_id: str = Field(min_length=1)
    is_premium: bool = False


class PointsAccount(ParkShareBaseModel):
    """Gamification balance for one user.  The document id is the user id."""

    user_id: str
    points: int = Field(default=0, ge=0)
    reliability_score: int = Field(default=50, ge=MIN_RELIABILITY, le=MAX_RELIABILITY)
    badges: tuple[str, ...] = ()
    is_premium: bool = False
    is_active: bool = True
    updated_at: int | None = None

    @field_validator("badges", mode="before")
    @classmethod
    def _dedupe_badges(cls, value: Any) -> Any:
        if value is None:
            return ()
        if isinstance(value, (list, tuple, set, frozenset)):
            return tuple(dict.fromkeys(str(b) for b in value))
        return value

    @classmethod
    def from_document(cls, doc_id: str, data: dict[str, Any]) -> PointsAccount:
        return cls.model_validate({**data, "userId": doc_id})


class LevelProgress(BaseModel):
    """Where a balance sits between two levels."""

    model_config = ConfigDict(frozen=True)

    level: int
    points_in_current_level: int
    points_for_next_level: int
    progress_percentage: float
