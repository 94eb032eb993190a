"""parkshare - Async engine for sharing short-lived parking spots."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("parkshare")
except PackageNotFoundError:
    __version__ = "0+local"
from parkshare.client import ParkShareClient
from parkshare.clock import ManualClock, system_clock_ms
from parkshare.config import MqttSettings, ParkShareConfig
from parkshare.confirmation import ConfirmationResult, ConfirmationTransactor, RewardWorker
from parkshare.exceptions import (
    ActiveLeavingSoonSpotError,
    ParkShareConfigError,
    ParkShareConflictError,
    ParkShareError,
    ParkShareExpiredError,
    ParkShareNotFoundError,
    ParkSharePermissionError,
    ParkShareTransactionConflictError,
    ParkShareTransientStoreError,
    ParkShareTransportError,
    ParkShareValidationError,
)
from parkshare.geo import GeoQueryEngine, haversine_m
from parkshare.ledger import PointsLedger, calculate_level, level_progress, points_for_next_level, priority_score
from parkshare.lifecycle import effective_status
from parkshare.models import (
    AuthContext,
    Badge,
    GeoPoint,
    HistoryRecord,
    LevelProgress,
    Notification,
    NotificationKind,
    PinType,
    PointsAccount,
    RewardEvent,
    RewardStatus,
    Spot,
    SpotParams,
    SpotPatch,
    SpotStatus,
)
from parkshare.notifications import NotificationDispatcher, NullNotificationDispatcher, PendingDeliveries
from parkshare.realtime import NearbyUpdate, RealtimeSubscriptionHub
from parkshare.spots import SpotStore
from parkshare.store import DocumentStore, InMemoryDocumentStore

__all__ = [
    "__version__",
    "ActiveLeavingSoonSpotError",
    "AuthContext",
    "Badge",
    "ConfirmationResult",
    "ConfirmationTransactor",
    "DocumentStore",
    "GeoPoint",
    "GeoQueryEngine",
    "HistoryRecord",
    "InMemoryDocumentStore",
    "LevelProgress",
    "ManualClock",
    "MqttSettings",
    "NearbyUpdate",
    "Notification",
    "NotificationDispatcher",
    "NotificationKind",
    "NullNotificationDispatcher",
    "ParkShareClient",
    "ParkShareConfig",
    "ParkShareConfigError",
    "ParkShareConflictError",
    "ParkShareError",
    "ParkShareExpiredError",
    "ParkShareNotFoundError",
    "ParkSharePermissionError",
    "ParkShareTransactionConflictError",
    "ParkShareTransientStoreError",
    "ParkShareTransportError",
    "ParkShareValidationError",
    "PendingDeliveries",
    "PinType",
    "PointsAccount",
    "PointsLedger",
    "RealtimeSubscriptionHub",
    "RewardEvent",
    "RewardStatus",
    "RewardWorker",
    "Spot",
    "SpotParams",
    "SpotPatch",
    "SpotStatus",
    "SpotStore",
    "calculate_level",
    "effective_status",
    "haversine_m",
    "level_progress",
    "points_for_next_level",
    "priority_score",
    "system_clock_ms",
]
