from __future__ import annotations

import asyncio

import pytest

from parkshare._constants import HISTORY_COLLECTION, REWARD_OUTBOX_COLLECTION, SPOTS_COLLECTION
from parkshare.clock import ManualClock
from parkshare.config import ParkShareConfig
from parkshare.confirmation import ConfirmationResult, ConfirmationTransactor, RewardWorker
from parkshare.exceptions import (
    ParkShareConflictError,
    ParkShareExpiredError,
    ParkShareNotFoundError,
    ParkSharePermissionError,
    ParkShareTransientStoreError,
    ParkShareValidationError,
)
from parkshare.ledger import PointsLedger
from parkshare.models import Notification, NotificationKind, PinType, RewardEvent, SpotStatus
from parkshare.spots import SpotStore
from parkshare.store import InMemoryDocumentStore

T0 = 1_000_000
HERE = {"latitude": 40.0, "longitude": -74.0}


class _RecordingDispatcher:
    def __init__(self) -> None:
        self.sent: list[Notification] = []

    async def dispatch(self, notification: Notification) -> None:
        self.sent.append(notification)


class _Setup:
    def __init__(self, **config: object) -> None:
        self.clock = ManualClock(T0)
        self.config = ParkShareConfig(**config)  # type: ignore[arg-type]
        self.store = InMemoryDocumentStore()
        self.ledger = PointsLedger(self.store, clock=self.clock, config=self.config)
        self.spots = SpotStore(self.store, clock=self.clock, config=self.config)
        self.rewards = RewardWorker(self.store, self.ledger, config=self.config)
        self.dispatcher = _RecordingDispatcher()
        self.transactor = ConfirmationTransactor(
            self.store,
            self.rewards,
            clock=self.clock,
            config=self.config,
            dispatcher=self.dispatcher,
        )

    async def spot(self, owner_id: str = "owner", pin_type: PinType = PinType.WALK_IN, minutes: int = 15) -> str:
        await self.ledger.ensure_account(owner_id)
        return await self.spots.create(owner_id, HERE, pin_type, {"will_leave_in_minutes": minutes})


@pytest.mark.asyncio
async def test_confirm_writes_history_and_applies_rewards() -> None:
    s = _Setup()
    spot_id = await s.spot()
    await s.ledger.ensure_account("driver")
    s.clock.advance(minutes=1)

    result = await s.transactor.confirm(spot_id, "driver", rating=4)

    assert isinstance(result, ConfirmationResult)
    assert result.spot.status == SpotStatus.VERIFIED
    assert result.spot.claimed_by == "driver"
    assert result.history.owner_id == "owner"
    assert result.history.confirmed_at == T0 + 60_000
    assert result.history.rating_given == 4
    assert result.reward.id == result.history.id
    assert result.reward.is_applied

    stored = await s.spots.get(spot_id)
    assert stored.status == SpotStatus.VERIFIED
    assert stored.claimed_by == "driver"
    assert (await s.store.get(HISTORY_COLLECTION, result.history.id)).exists
    assert await s.ledger.get_points("driver") == 5
    owner = await s.ledger.get_account("owner")
    assert (owner.points, owner.reliability_score) == (10, 52)


@pytest.mark.asyncio
async def test_premium_rewards_use_the_special_event_multiplier() -> None:
    s = _Setup(special_event=True)
    spot_id = await s.spot()
    await s.ledger.ensure_account("driver", is_premium=True)

    result = await s.transactor.confirm(spot_id, "driver")

    assert result.reward.multiplier == 3.0
    assert await s.ledger.get_points("driver") == 15
    assert await s.ledger.get_points("owner") == 10


@pytest.mark.asyncio
async def test_concurrent_confirms_have_exactly_one_winner() -> None:
    s = _Setup()
    spot_id = await s.spot()
    drivers = [f"driver-{i}" for i in range(5)]
    for driver in drivers:
        await s.ledger.ensure_account(driver)

    results = await asyncio.gather(
        *(s.transactor.confirm(spot_id, driver) for driver in drivers),
        return_exceptions=True,
    )

    winners = [r for r in results if isinstance(r, ConfirmationResult)]
    losers = [r for r in results if isinstance(r, ParkShareConflictError)]
    assert len(winners) == 1
    assert len(losers) == 4
    assert len(await s.store.range_query(HISTORY_COLLECTION, "confirmedAt")) == 1
    assert len(await s.store.range_query(REWARD_OUTBOX_COLLECTION, "createdAt")) == 1
    assert await s.ledger.get_points("owner") == 10
    assert sum([await s.ledger.get_points(d) for d in drivers]) == 5


@pytest.mark.asyncio
async def test_second_confirm_is_a_conflict() -> None:
    s = _Setup()
    spot_id = await s.spot()
    await s.ledger.ensure_account("driver")
    await s.ledger.ensure_account("late")
    await s.transactor.confirm(spot_id, "driver")

    with pytest.raises(ParkShareConflictError):
        await s.transactor.confirm(spot_id, "late")

    assert await s.ledger.get_points("late") == 0


@pytest.mark.asyncio
async def test_owner_cannot_confirm_their_own_spot() -> None:
    s = _Setup()
    spot_id = await s.spot()

    with pytest.raises(ParkSharePermissionError, match="You cannot confirm your own spot"):
        await s.transactor.confirm(spot_id, "owner")

    assert (await s.spots.get(spot_id)).claimed_by is None


@pytest.mark.asyncio
async def test_confirm_of_elapsed_spot_raises_expired() -> None:
    s = _Setup()
    spot_id = await s.spot()
    s.clock.advance(minutes=10)

    with pytest.raises(ParkShareExpiredError):
        await s.transactor.confirm(spot_id, "driver")

    assert not (await s.store.range_query(HISTORY_COLLECTION, "confirmedAt"))


@pytest.mark.asyncio
async def test_confirm_of_stored_expired_status_raises_expired() -> None:
    s = _Setup()
    spot_id = await s.spot()
    await s.store.update(SPOTS_COLLECTION, spot_id, {"status": SpotStatus.WALK_IN_EXPIRED.value})

    with pytest.raises(ParkShareExpiredError):
        await s.transactor.confirm(spot_id, "driver")


@pytest.mark.asyncio
async def test_confirm_validates_input_and_existence() -> None:
    s = _Setup()
    spot_id = await s.spot()

    with pytest.raises(ParkShareNotFoundError):
        await s.transactor.confirm("missing", "driver")
    with pytest.raises(ParkShareValidationError) as exc_info:
        await s.transactor.confirm(spot_id, "driver", rating=6)
    assert exc_info.value.field == "rating"
    with pytest.raises(ParkShareValidationError):
        await s.transactor.confirm(spot_id, " ")


@pytest.mark.asyncio
async def test_missing_account_leaves_reward_pending_until_drained() -> None:
    s = _Setup()
    spot_id = await s.spot()

    result = await s.transactor.confirm(spot_id, "newcomer")

    assert not result.reward.is_applied
    assert (await s.spots.get(spot_id)).claimed_by == "newcomer"
    assert [e.id for e in await s.rewards.pending()] == [result.history.id]

    await s.ledger.ensure_account("newcomer")
    assert await s.rewards.drain() == 1
    assert await s.rewards.pending() == []
    assert await s.ledger.get_points("newcomer") == 5
    assert await s.rewards.drain() == 0


@pytest.mark.asyncio
async def test_owner_is_notified_after_commit() -> None:
    s = _Setup()
    walk_in = await s.spot()
    leaving = await s.spot("other-owner", PinType.LEAVING_SOON)
    await s.ledger.ensure_account("driver")

    await s.transactor.confirm(walk_in, "driver")
    await s.transactor.confirm(leaving, "driver")
    await s.transactor.deliveries.wait()

    assert [(n.user_id, n.kind) for n in s.dispatcher.sent] == [
        ("owner", NotificationKind.PIN_VERIFIED),
        ("other-owner", NotificationKind.PARKING_CONFIRMED),
    ]
    assert s.dispatcher.sent[0].data == {"type": "pin-verified", "spotId": walk_in}


@pytest.mark.asyncio
async def test_history_is_listed_newest_first() -> None:
    s = _Setup()
    first = await s.spot("owner-a")
    second = await s.spot("owner-b")
    await s.ledger.ensure_account("driver")

    await s.transactor.confirm(first, "driver")
    s.clock.advance(seconds=30)
    await s.transactor.confirm(second, "driver")

    history = await s.transactor.list_history("driver")

    assert [h.spot_id for h in history] == [second, first]
    assert await s.transactor.list_history("nobody") == []


class _FlakyLedger:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    async def apply_reward(self, event_id: str) -> RewardEvent | None:
        self.calls += 1
        if self.calls <= self.failures:
            raise ParkShareTransientStoreError("store unavailable")
        return RewardEvent(
            id=event_id,
            spot_id="s",
            confirmer_id="c",
            owner_id="o",
            multiplier=2,
            created_at=1,
            status="applied",
        )


@pytest.mark.asyncio
async def test_reward_worker_backs_off_on_transient_errors() -> None:
    ledger = _FlakyLedger(failures=2)
    worker = RewardWorker(
        InMemoryDocumentStore(),
        ledger,  # type: ignore[arg-type]
        config=ParkShareConfig(reward_retry_attempts=3, reward_retry_delay=0),
    )

    applied = await worker.process("evt")

    assert applied is not None
    assert applied.is_applied
    assert ledger.calls == 3


@pytest.mark.asyncio
async def test_reward_worker_gives_up_after_the_last_attempt() -> None:
    ledger = _FlakyLedger(failures=5)
    worker = RewardWorker(
        InMemoryDocumentStore(),
        ledger,  # type: ignore[arg-type]
        config=ParkShareConfig(reward_retry_attempts=2, reward_retry_delay=0),
    )

    with pytest.raises(ParkShareTransientStoreError):
        await worker.process("evt")

    assert ledger.calls == 2
