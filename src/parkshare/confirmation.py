"""Atomic spot claims and the reward outbox worker.

A claim writes three documents in one transaction: the spot transition,
the immutable history record and a pending reward event sharing the
history id.  Rewards and notifications run after commit and can never
undo a claim; an event that could not be applied stays pending until the
worker drains it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from parkshare._constants import HISTORY_COLLECTION, REWARD_OUTBOX_COLLECTION, SPOTS_COLLECTION
from parkshare.clock import Clock, system_clock_ms
from parkshare.config import ParkShareConfig
from parkshare.exceptions import (
    ParkShareNotFoundError,
    ParkSharePermissionError,
    ParkShareTransientStoreError,
    ParkShareValidationError,
)
from parkshare.ledger import PointsLedger
from parkshare.lifecycle import check_confirmable
from parkshare.models.history import HistoryRecord
from parkshare.models.rewards import RewardEvent, RewardStatus
from parkshare.models.spot import Spot, SpotStatus
from parkshare.notifications import (
    NotificationDispatcher,
    NullNotificationDispatcher,
    PendingDeliveries,
    claim_notification,
)
from parkshare.store.base import DocumentStore, Transaction, new_document_id

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfirmationResult:
    """Outcome of a committed claim.

    ``reward`` is the applied event when post-commit processing succeeded,
    otherwise the pending event as written by the claim.
    """

    spot: Spot
    history: HistoryRecord
    reward: RewardEvent


def _require_id(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ParkShareValidationError(field, "is required")
    return value.strip()


class RewardWorker:
    """Applies outbox events through :meth:`PointsLedger.apply_reward`."""

    def __init__(
        self,
        store: DocumentStore,
        ledger: PointsLedger,
        *,
        config: ParkShareConfig | None = None,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._config = config or ParkShareConfig()

    async def process(self, event_id: str) -> RewardEvent | None:
        """Apply one event, backing off on transient store errors."""
        attempts = self._config.reward_retry_attempts
        delay = self._config.reward_retry_delay
        attempt = 1
        while True:
            try:
                return await self._ledger.apply_reward(event_id)
            except ParkShareTransientStoreError:
                if attempt >= attempts:
                    raise
                _logger.info(
                    "Transient store error applying reward %s, retry %d/%d in %.2fs",
                    event_id,
                    attempt,
                    attempts,
                    delay,
                )
                await asyncio.sleep(delay)
                delay *= 2
                attempt += 1

    async def pending(self) -> list[RewardEvent]:
        snapshots = await self._store.query_equal(REWARD_OUTBOX_COLLECTION, "status", RewardStatus.PENDING.value)
        events = [RewardEvent.from_document(s.id, s.data) for s in snapshots if s.data is not None]
        return sorted(events, key=lambda e: (e.created_at, e.id))

    async def drain(self) -> int:
        """Try every pending event once.  Returns how many got applied."""
        applied = 0
        for event in await self.pending():
            try:
                if await self.process(event.id) is not None:
                    applied += 1
            except Exception:
                _logger.warning("Reward %s still pending", event.id, exc_info=True)
        if applied:
            _logger.info("Drained %d pending rewards", applied)
        return applied

    async def run(self, interval: float) -> None:
        """Drain forever, every *interval* seconds, until cancelled."""
        while True:
            try:
                await self.drain()
            except Exception:
                _logger.warning("Reward drain failed", exc_info=True)
            await asyncio.sleep(interval)


class ConfirmationTransactor:
    """Claims spots."""

    def __init__(
        self,
        store: DocumentStore,
        rewards: RewardWorker,
        *,
        clock: Clock = system_clock_ms,
        config: ParkShareConfig | None = None,
        dispatcher: NotificationDispatcher | None = None,
        deliveries: PendingDeliveries | None = None,
    ) -> None:
        self._store = store
        self._rewards = rewards
        self._clock = clock
        self._config = config or ParkShareConfig()
        self._dispatcher: NotificationDispatcher = dispatcher or NullNotificationDispatcher()
        self.deliveries = deliveries if deliveries is not None else PendingDeliveries()

    async def confirm(self, spot_id: str, confirmer_id: str, *, rating: int | None = None) -> ConfirmationResult:
        """Claim *spot_id* for *confirmer_id*.

        Runs as a single-attempt transaction: of several concurrent claims on
        one spot exactly one commits and the rest fail with a conflict.

        Raises
        ------
        ParkShareNotFoundError
            No such spot.
        ParkSharePermissionError
            The confirmer owns the spot.
        ParkShareExpiredError
            The lease has elapsed.
        ParkShareConflictError
            Already claimed, not in a claimable state, or lost a race.
        """
        sid = _require_id(spot_id, "spot_id")
        confirmer = _require_id(confirmer_id, "confirmer_id")
        if rating is not None and (isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5):
            raise ParkShareValidationError("rating", "must be an integer between 1 and 5")

        history_id = new_document_id()
        multiplier = self._config.reward_multiplier

        async def _txn(tx: Transaction) -> tuple[Spot, HistoryRecord, RewardEvent]:
            snap = await tx.get(SPOTS_COLLECTION, sid)
            if snap.data is None:
                raise ParkShareNotFoundError(f"Spot {sid} not found", collection=SPOTS_COLLECTION, doc_id=sid)
            spot = Spot.from_document(sid, snap.data)
            if spot.owner_id == confirmer:
                raise ParkSharePermissionError("You cannot confirm your own spot")

            now = self._clock()
            check_confirmable(spot, now)

            claimed = spot.model_copy(update={"status": SpotStatus.VERIFIED, "claimed_by": confirmer, "updated_at": now})
            history = HistoryRecord(
                id=history_id,
                spot_id=sid,
                confirmer_id=confirmer,
                owner_id=spot.owner_id,
                confirmed_at=now,
                rating_given=rating,
            )
            event = RewardEvent(
                id=history_id,
                spot_id=sid,
                confirmer_id=confirmer,
                owner_id=spot.owner_id,
                multiplier=multiplier,
                created_at=now,
            )
            tx.update(
                SPOTS_COLLECTION,
                sid,
                {"status": SpotStatus.VERIFIED.value, "claimedBy": confirmer, "updatedAt": now},
            )
            tx.set(HISTORY_COLLECTION, history_id, history.to_document())
            tx.set(REWARD_OUTBOX_COLLECTION, history_id, event.to_document())
            return claimed, history, event

        spot, history, event = await self._store.run_transaction(_txn, max_attempts=1)
        _logger.info("Spot %s claimed by %s (history %s)", sid, confirmer, history_id)

        reward = event
        try:
            applied = await self._rewards.process(event.id)
        except Exception:
            _logger.warning("Reward %s left pending after claim of %s", event.id, sid, exc_info=True)
        else:
            if applied is not None:
                reward = applied

        self.deliveries.fire_and_forget(self._dispatcher, claim_notification(spot))
        return ConfirmationResult(spot=spot, history=history, reward=reward)

    async def list_history(self, confirmer_id: str) -> list[HistoryRecord]:
        """Claims made by *confirmer_id*, most recent first."""
        confirmer = _require_id(confirmer_id, "confirmer_id")
        snapshots = await self._store.query_equal(HISTORY_COLLECTION, "confirmerId", confirmer)
        records = [HistoryRecord.from_document(s.id, s.data) for s in snapshots if s.data is not None]
        return sorted(records, key=lambda r: (-r.confirmed_at, r.id))
