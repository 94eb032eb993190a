"""Data models for parkshare documents and messages."""

from parkshare.models._base import ParkShareBaseModel, to_validation_error
from parkshare.models.account import AuthContext, Badge, LevelProgress, PointsAccount
from parkshare.models.history import HistoryRecord
from parkshare.models.notification import Notification, NotificationKind
from parkshare.models.rewards import RewardEvent, RewardStatus
from parkshare.models.spot import GeoPoint, PinType, Spot, SpotParams, SpotPatch, SpotStatus

__all__ = [
    "AuthContext",
    "Badge",
    "GeoPoint",
    "HistoryRecord",
    "LevelProgress",
    "Notification",
    "NotificationKind",
    "ParkShareBaseModel",
    "PinType",
    "PointsAccount",
    "RewardEvent",
    "RewardStatus",
    "Spot",
    "SpotParams",
    "SpotPatch",
    "SpotStatus",
    "to_validation_error",
]
