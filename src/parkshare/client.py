"""High-level async facade over the spot lifecycle engine."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

import aiohttp
from pydantic import ValidationError as PydanticValidationError

from parkshare._mqtt import MqttNotificationDispatcher
from parkshare._transport import WebhookNotificationDispatcher
from parkshare.clock import Clock, system_clock_ms
from parkshare.config import ParkShareConfig
from parkshare.confirmation import ConfirmationResult, ConfirmationTransactor, RewardWorker
from parkshare.exceptions import ParkShareError
from parkshare.geo import GeoQueryEngine
from parkshare.ledger import PointsLedger, level_progress
from parkshare.models import (
    AuthContext,
    GeoPoint,
    HistoryRecord,
    LevelProgress,
    PinType,
    PointsAccount,
    Spot,
    SpotParams,
    SpotPatch,
    to_validation_error,
)
from parkshare.notifications import (
    NotificationDispatcher,
    NullNotificationDispatcher,
    PendingDeliveries,
    new_nearby_pin,
)
from parkshare.realtime import NearbyCallback, RealtimeSubscriptionHub
from parkshare.spots import SpotStore
from parkshare.store import DocumentStore, InMemoryDocumentStore, Unsubscribe

_logger = logging.getLogger(__name__)


def _coerce_auth(auth: AuthContext | dict[str, Any]) -> AuthContext:
    if isinstance(auth, AuthContext):
        return auth
    try:
        return AuthContext.model_validate(auth)
    except PydanticValidationError as exc:
        raise to_validation_error(exc) from exc


class ParkShareClient:
    """Async client for publishing, discovering and claiming parking spots.

    Usage::

        async with ParkShareClient(config) as client:
            spot_id = await client.create_spot(auth, location, PinType.WALK_IN)
            spots = await client.query_nearby(location, 5000)

    Without an explicit *dispatcher*, notifications go to the configured
    webhook, else to the configured MQTT broker, else nowhere.
    """

    def __init__(
        self,
        config: ParkShareConfig | None = None,
        *,
        store: DocumentStore | None = None,
        clock: Clock = system_clock_ms,
        dispatcher: NotificationDispatcher | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._config = config or ParkShareConfig()
        self._store: DocumentStore = store if store is not None else InMemoryDocumentStore()
        self._clock = clock
        self._dispatcher = dispatcher
        self._external_session = session is not None
        self._http_session = session
        self._mqtt: MqttNotificationDispatcher | None = None
        self._tasks: list[asyncio.Task[None]] = []
        self._transactor: ConfirmationTransactor | None = None
        self._deliveries = PendingDeliveries()
        self._active_dispatcher: NotificationDispatcher = NullNotificationDispatcher()

        self.ledger = PointsLedger(self._store, clock=clock, config=self._config)
        self.spots = SpotStore(self._store, clock=clock, config=self._config)
        self.geo = GeoQueryEngine(self._store, clock=clock, max_cells=self._config.max_geohash_cells)
        self.hub = RealtimeSubscriptionHub(self._store, clock=clock, max_cells=self._config.max_geohash_cells)
        self.rewards = RewardWorker(self._store, self.ledger, config=self._config)

    @property
    def config(self) -> ParkShareConfig:
        return self._config

    @property
    def store(self) -> DocumentStore:
        return self._store

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> ParkShareClient:
        dispatcher = self._dispatcher or await self._build_dispatcher()
        self._active_dispatcher = dispatcher
        self._transactor = ConfirmationTransactor(
            self._store,
            self.rewards,
            clock=self._clock,
            config=self._config,
            dispatcher=dispatcher,
            deliveries=self._deliveries,
        )
        self.hub.start()

        loop = asyncio.get_running_loop()
        if self._config.expiry_sweep_interval > 0:
            self._tasks.append(loop.create_task(self.hub.run_expiry_sweeper(self._config.expiry_sweep_interval)))
        if self._config.reward_drain_interval > 0:
            self._tasks.append(loop.create_task(self.rewards.run(self._config.reward_drain_interval)))
        return self

    async def __aexit__(self, *exc: Any) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

        self.hub.stop()
        await self._deliveries.wait()
        self._transactor = None
        self._active_dispatcher = NullNotificationDispatcher()

        if self._mqtt is not None:
            self._mqtt.stop()
            self._mqtt = None
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    async def _build_dispatcher(self) -> NotificationDispatcher:
        if self._config.webhook_url:
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession()
            return WebhookNotificationDispatcher(
                self._config.webhook_url,
                self._http_session,
                token=self._config.webhook_token,
                timeout=self._config.webhook_timeout,
            )
        if self._config.mqtt.host:
            try:
                runtime = MqttNotificationDispatcher(self._config.mqtt, logger=_logger)
                runtime.start()
            except Exception:
                _logger.warning("MQTT dispatcher startup failed; notifications disabled", exc_info=True)
            else:
                self._mqtt = runtime
                return runtime
        return NullNotificationDispatcher()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_transactor(self) -> ConfirmationTransactor:
        if self._transactor is None:
            raise ParkShareError("Client not initialized. Use 'async with ParkShareClient(...) as client:'")
        return self._transactor

    async def _sync_account(self, auth: AuthContext | dict[str, Any]) -> PointsAccount:
        context = _coerce_auth(auth)
        return await self.ledger.ensure_account(context.caller_id, is_premium=context.is_premium)

    # ------------------------------------------------------------------
    # Spots
    # ------------------------------------------------------------------

    async def create_spot(
        self,
        auth: AuthContext | dict[str, Any],
        location: GeoPoint | dict[str, Any],
        pin_type: PinType | str,
        params: SpotParams | dict[str, Any] | None = None,
    ) -> str:
        """Publish a spot owned by the caller.  Returns the new spot id."""
        account = await self._sync_account(auth)
        return await self.spots.create(
            account.user_id,
            location,
            pin_type,
            params,
            owner_reliability=account.reliability_score,
            owner_premium=account.is_premium,
        )

    async def get_spot(self, spot_id: str) -> Spot:
        return await self.spots.get(spot_id)

    async def update_spot(
        self,
        auth: AuthContext | dict[str, Any],
        spot_id: str,
        patch: SpotPatch | dict[str, Any],
    ) -> Spot:
        account = await self._sync_account(auth)
        return await self.spots.update(
            spot_id,
            account.user_id,
            patch,
            owner_reliability=account.reliability_score,
            owner_premium=account.is_premium,
        )

    async def delete_spot(self, auth: AuthContext | dict[str, Any], spot_id: str) -> None:
        await self.spots.delete(spot_id, _coerce_auth(auth).caller_id)

    async def list_owner_spots(self, owner_id: str, *, include_expired: bool = False) -> list[Spot]:
        return await self.spots.list_owner_spots(owner_id, include_expired=include_expired)

    async def list_active_spots(self, max_results: int = 100) -> list[Spot]:
        return await self.spots.list_active(max_results)

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def query_nearby(
        self,
        center: GeoPoint | dict[str, Any],
        radius_m: float | None = None,
        *,
        max_results: int | None = None,
    ) -> list[Spot]:
        radius = self._config.default_radius_m if radius_m is None else radius_m
        return await self.geo.query_nearby(center, radius, max_results=max_results)

    async def subscribe_nearby(
        self,
        center: GeoPoint | dict[str, Any],
        radius_m: float | None,
        on_change: NearbyCallback,
    ) -> Unsubscribe:
        radius = self._config.default_radius_m if radius_m is None else radius_m
        return await self.hub.subscribe_nearby(center, radius, on_change)

    def sweep_expired(self) -> int:
        return self.hub.sweep_expired()

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    async def confirm(
        self,
        auth: AuthContext | dict[str, Any],
        spot_id: str,
        rating: int | None = None,
    ) -> ConfirmationResult:
        """Claim a spot for the caller."""
        transactor = self._require_transactor()
        account = await self._sync_account(auth)
        return await transactor.confirm(spot_id, account.user_id, rating=rating)

    async def notify_new_nearby_pin(self, user_id: str, spot_id: str) -> None:
        """Tell *user_id* in the background that *spot_id* was shared near them."""
        self._require_transactor()
        spot = await self.spots.get(spot_id)
        self._deliveries.fire_and_forget(self._active_dispatcher, new_nearby_pin(user_id, spot))

    async def list_history(self, confirmer_id: str) -> list[HistoryRecord]:
        return await self._require_transactor().list_history(confirmer_id)

    async def drain_rewards(self) -> int:
        return await self.rewards.drain()

    # ------------------------------------------------------------------
    # Points
    # ------------------------------------------------------------------

    async def get_account(self, user_id: str) -> PointsAccount:
        return await self.ledger.get_account(user_id)

    async def get_points(self, user_id: str) -> int:
        return await self.ledger.get_points(user_id)

    async def get_level_progress(self, user_id: str) -> LevelProgress:
        return level_progress(await self.ledger.get_points(user_id))

    async def award_points(
        self,
        user_id: str,
        base_points: int,
        is_premium: bool = False,
        multiplier: float | None = None,
    ) -> int:
        """Credit points directly.  *multiplier* defaults to the current reward multiplier."""
        factor = self._config.reward_multiplier if multiplier is None else multiplier
        return await self.ledger.award_points(user_id, base_points, is_premium, factor)
