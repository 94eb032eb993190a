from __future__ import annotations

import pytest

from parkshare._constants import REWARD_OUTBOX_COLLECTION
from parkshare.clock import ManualClock
from parkshare.config import ParkShareConfig
from parkshare.exceptions import ParkShareConflictError, ParkShareNotFoundError, ParkShareValidationError
from parkshare.ledger import (
    PointsLedger,
    calculate_level,
    check_badge_eligibility,
    level_progress,
    points_for_next_level,
    priority_score,
    reward_for,
)
from parkshare.models import Badge, PinType, PointsAccount, RewardEvent
from parkshare.store import InMemoryDocumentStore


@pytest.mark.parametrize(
    ("points", "level"),
    [(-5, 1), (0, 1), (99, 1), (100, 2), (399, 2), (400, 3), (899, 3), (900, 4), (8100, 10)],
)
def test_calculate_level(points: int, level: int) -> None:
    assert calculate_level(points) == level


def test_points_for_next_level() -> None:
    assert points_for_next_level(0) == 100
    assert points_for_next_level(1) == 100
    assert points_for_next_level(2) == 400
    assert points_for_next_level(3) == 900


def test_level_progress() -> None:
    progress = level_progress(150)

    assert progress.level == 2
    assert progress.points_in_current_level == 50
    assert progress.points_for_next_level == 400
    assert progress.progress_percentage == 16.7
    assert level_progress(0).progress_percentage == 0.0


def test_reward_and_priority_arithmetic() -> None:
    assert reward_for(10, True, 2) == 20
    assert reward_for(10, False, 2) == 10
    assert reward_for(5, True, 1.5) == 7
    assert priority_score(50, False, PinType.WALK_IN) == 50
    assert priority_score(50, True, PinType.LEAVING_SOON) == 85
    assert priority_score(100, True, "leaving-soon") == 135
    assert priority_score(140, True, PinType.LEAVING_SOON) == 150


def test_badge_rules() -> None:
    account = PointsAccount(user_id="u", points=8100, reliability_score=79)

    assert not check_badge_eligibility(account, Badge.TRUSTED_SOURCE)
    assert check_badge_eligibility(account, Badge.TOP_SHARER)
    assert check_badge_eligibility(account, Badge.PARK_MASTER)
    assert not check_badge_eligibility(account, "unknown-badge")
    assert check_badge_eligibility(account.model_copy(update={"reliability_score": 80}), "trusted-source")


def _ledger(**config: object) -> tuple[PointsLedger, InMemoryDocumentStore, ManualClock]:
    clock = ManualClock(5_000)
    store = InMemoryDocumentStore()
    return PointsLedger(store, clock=clock, config=ParkShareConfig(**config)), store, clock  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_ensure_account_creates_then_syncs_premium() -> None:
    ledger, _store, _clock = _ledger(default_reliability=60)

    created = await ledger.ensure_account("alice")
    synced = await ledger.ensure_account("alice", is_premium=True)

    assert created.points == 0
    assert created.reliability_score == 60
    assert not created.is_premium
    assert synced.is_premium
    assert (await ledger.get_account("alice")).is_premium


@pytest.mark.asyncio
async def test_award_points_applies_premium_multiplier() -> None:
    ledger, _store, _clock = _ledger()
    await ledger.ensure_account("alice")

    assert await ledger.award_points("alice", 10, is_premium=True, multiplier=2) == 20
    assert await ledger.award_points("alice", 10) == 10
    assert await ledger.get_points("alice") == 30


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("args", "field"),
    [
        (("", 10), "user_id"),
        (("alice", -1), "base_points"),
        (("alice", 10, True, 0.5), "multiplier"),
    ],
)
async def test_award_points_validates_input(args: tuple[object, ...], field: str) -> None:
    ledger, _store, _clock = _ledger()
    await ledger.ensure_account("alice")

    with pytest.raises(ParkShareValidationError) as exc_info:
        await ledger.award_points(*args)  # type: ignore[arg-type]

    assert exc_info.value.field == field
    assert await ledger.get_points("alice") == 0


@pytest.mark.asyncio
async def test_award_points_to_missing_account_raises_not_found() -> None:
    ledger, _store, _clock = _ledger()

    with pytest.raises(ParkShareNotFoundError):
        await ledger.award_points("ghost", 5)


@pytest.mark.asyncio
async def test_adjust_reliability_is_clamped() -> None:
    ledger, _store, _clock = _ledger(default_reliability=99)
    await ledger.ensure_account("alice")

    assert await ledger.adjust_reliability("alice", True) == 100
    assert await ledger.adjust_reliability("alice", True) == 100
    assert await ledger.adjust_reliability("alice", False) == 99

    ledger_low, _store, _clock = _ledger(default_reliability=0)
    await ledger_low.ensure_account("bob")
    assert await ledger_low.adjust_reliability("bob", False) == 0


@pytest.mark.asyncio
async def test_badges_are_awarded_once() -> None:
    ledger, _store, _clock = _ledger(default_reliability=85)
    await ledger.ensure_account("alice")
    await ledger.award_points("alice", 500)

    earned = await ledger.evaluate_badges("alice")

    assert earned == ["trusted-source", "top-sharer"]
    assert await ledger.evaluate_badges("alice") == []
    with pytest.raises(ParkShareConflictError):
        await ledger.award_badge("alice", Badge.TOP_SHARER)

    account = await ledger.award_badge("alice", "early-adopter")
    assert account.badges == ("trusted-source", "top-sharer", "early-adopter")


@pytest.mark.asyncio
async def test_apply_reward_is_idempotent() -> None:
    ledger, store, clock = _ledger()
    await ledger.ensure_account("confirmer", is_premium=True)
    await ledger.ensure_account("owner")
    event = RewardEvent(id="h1", spot_id="s1", confirmer_id="confirmer", owner_id="owner", multiplier=2, created_at=1)
    await store.set(REWARD_OUTBOX_COLLECTION, event.id, event.to_document())
    clock.advance(seconds=1)

    applied = await ledger.apply_reward("h1")

    assert applied is not None
    assert applied.is_applied
    assert applied.applied_at == 6_000
    assert (applied.confirmer_points, applied.owner_points, applied.owner_reliability) == (10, 10, 52)
    assert await ledger.apply_reward("h1") is None
    assert await ledger.get_points("confirmer") == 10
    owner = await ledger.get_account("owner")
    assert (owner.points, owner.reliability_score) == (10, 52)


@pytest.mark.asyncio
async def test_apply_reward_with_missing_account_leaves_event_pending() -> None:
    ledger, store, _clock = _ledger()
    await ledger.ensure_account("confirmer")
    event = RewardEvent(id="h1", spot_id="s1", confirmer_id="confirmer", owner_id="owner", multiplier=2, created_at=1)
    await store.set(REWARD_OUTBOX_COLLECTION, event.id, event.to_document())

    with pytest.raises(ParkShareNotFoundError):
        await ledger.apply_reward("h1")

    stored = (await store.get(REWARD_OUTBOX_COLLECTION, "h1")).data
    assert stored is not None
    assert stored["status"] == "pending"
    assert await ledger.get_points("confirmer") == 0
