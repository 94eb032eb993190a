"""Park points ledger.

Pure arithmetic (levels, rewards, priority, badge rules) lives in module
level functions.  :class:`PointsLedger` persists accounts and runs every
balance or reliability change as a store transaction.
"""

from __future__ import annotations

import logging
import math
from typing import Any

from parkshare._constants import (
    ACCOUNTS_COLLECTION,
    LEAVING_SOON_PRIORITY_BOOST,
    MAX_PRIORITY_SCORE,
    MAX_RELIABILITY,
    MIN_RELIABILITY,
    POINTS_PER_LEVEL_UNIT,
    PREMIUM_PRIORITY_BOOST,
    RELIABILITY_FAILURE_DELTA,
    RELIABILITY_SUCCESS_DELTA,
    REWARD_OUTBOX_COLLECTION,
)
from parkshare.clock import Clock, system_clock_ms
from parkshare.config import ParkShareConfig
from parkshare.exceptions import (
    ParkShareConflictError,
    ParkShareNotFoundError,
    ParkShareValidationError,
)
from parkshare.models.account import Badge, LevelProgress, PointsAccount
from parkshare.models.rewards import RewardEvent, RewardStatus
from parkshare.models.spot import PinType
from parkshare.store.base import DocumentStore, Transaction

_logger = logging.getLogger(__name__)

TRUSTED_SOURCE_MIN_RELIABILITY = 80
TOP_SHARER_MIN_POINTS = 500
PARK_MASTER_MIN_LEVEL = 10


# ------------------------------------------------------------------
# Pure arithmetic
# ------------------------------------------------------------------


def calculate_level(points: int) -> int:
    """``floor(sqrt(points / 100)) + 1``; negative balances sit at level 1.

    Level 1 covers 0-99 points, level 2 100-399, level 3 400-899 and so on.
    """
    if points < 0:
        return 1
    return math.isqrt(points // POINTS_PER_LEVEL_UNIT) + 1


def points_for_next_level(level: int) -> int:
    """Total balance at which *level* + 1 starts."""
    if level < 1:
        return POINTS_PER_LEVEL_UNIT
    return level**2 * POINTS_PER_LEVEL_UNIT


def level_progress(points: int) -> LevelProgress:
    level = calculate_level(points)
    floor_points = (level - 1) ** 2 * POINTS_PER_LEVEL_UNIT
    next_points = points_for_next_level(level)
    in_level = points - floor_points
    percentage = min(in_level / (next_points - floor_points) * 100, 100.0)
    return LevelProgress(
        level=level,
        points_in_current_level=in_level,
        points_for_next_level=next_points,
        progress_percentage=round(percentage, 1),
    )


def reward_for(base_points: int, is_premium: bool, multiplier: float) -> int:
    """Points actually granted for *base_points*."""
    if is_premium:
        return math.floor(base_points * multiplier)
    return base_points


def priority_score(reliability: int, is_premium: bool, pin_type: PinType | str) -> int:
    """Ranking value of a new spot, capped at 150."""
    score = reliability
    if is_premium:
        score += PREMIUM_PRIORITY_BOOST
    if pin_type == PinType.LEAVING_SOON:
        score += LEAVING_SOON_PRIORITY_BOOST
    return max(0, min(score, MAX_PRIORITY_SCORE))


def next_reliability(score: int, success: bool) -> int:
    if success:
        return min(score + RELIABILITY_SUCCESS_DELTA, MAX_RELIABILITY)
    return max(score - RELIABILITY_FAILURE_DELTA, MIN_RELIABILITY)


def check_badge_eligibility(account: PointsAccount, badge: Badge | str) -> bool:
    """Whether *account* currently qualifies for *badge*.  Unknown badges never do."""
    if badge == Badge.TRUSTED_SOURCE:
        return account.reliability_score >= TRUSTED_SOURCE_MIN_RELIABILITY
    if badge == Badge.TOP_SHARER:
        return account.points >= TOP_SHARER_MIN_POINTS
    if badge == Badge.PARK_MASTER:
        return calculate_level(account.points) >= PARK_MASTER_MIN_LEVEL
    return False


def _require_user_id(user_id: Any, field: str = "user_id") -> str:
    if not isinstance(user_id, str) or not user_id.strip():
        raise ParkShareValidationError(field, "is required")
    return user_id.strip()


def _account_from(snapshot_data: dict[str, Any] | None, user_id: str) -> PointsAccount:
    if snapshot_data is None:
        raise ParkShareNotFoundError(
            f"Account {user_id} not found",
            collection=ACCOUNTS_COLLECTION,
            doc_id=user_id,
        )
    return PointsAccount.from_document(user_id, snapshot_data)


# ------------------------------------------------------------------
# Persistent ledger
# ------------------------------------------------------------------


class PointsLedger:
    """Account persistence and atomic balance changes."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        clock: Clock = system_clock_ms,
        config: ParkShareConfig | None = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._config = config or ParkShareConfig()

    @property
    def _attempts(self) -> int:
        return self._config.ledger_transaction_attempts

    async def ensure_account(self, user_id: str, *, is_premium: bool = False) -> PointsAccount:
        """Create the account if needed and mirror the caller's premium flag."""
        uid = _require_user_id(user_id)

        async def _txn(tx: Transaction) -> PointsAccount:
            snap = await tx.get(ACCOUNTS_COLLECTION, uid)
            now = self._clock()
            if snap.data is None:
                account = PointsAccount(
                    user_id=uid,
                    reliability_score=self._config.default_reliability,
                    is_premium=is_premium,
                    updated_at=now,
                )
                tx.set(ACCOUNTS_COLLECTION, uid, account.to_document())
                return account
            account = PointsAccount.from_document(uid, snap.data)
            if account.is_premium != is_premium:
                tx.update(ACCOUNTS_COLLECTION, uid, {"isPremium": is_premium, "updatedAt": now})
                account = account.model_copy(update={"is_premium": is_premium, "updated_at": now})
            return account

        account = await self._store.run_transaction(_txn, max_attempts=self._attempts)
        _logger.debug("Account %s ensured premium=%s", uid, account.is_premium)
        return account

    async def get_account(self, user_id: str) -> PointsAccount:
        uid = _require_user_id(user_id)
        snap = await self._store.get(ACCOUNTS_COLLECTION, uid)
        return _account_from(snap.data, uid)

    async def get_points(self, user_id: str) -> int:
        return (await self.get_account(user_id)).points

    async def award_points(
        self,
        user_id: str,
        base_points: int,
        is_premium: bool = False,
        multiplier: float = 2.0,
    ) -> int:
        """Atomically add points to a balance.

        Parameters
        ----------
        user_id : str
            Account to credit.
        base_points : int
            Non-negative base amount.
        is_premium : bool
            Whether *multiplier* applies.
        multiplier : float
            Premium multiplier, at least 1.

        Returns
        -------
        int
            Points actually granted.

        Raises
        ------
        ParkShareValidationError
            Bad inputs.
        ParkShareNotFoundError
            No such account.
        """
        uid = _require_user_id(user_id)
        if isinstance(base_points, bool) or not isinstance(base_points, int):
            raise ParkShareValidationError("base_points", "must be an integer")
        if base_points < 0:
            raise ParkShareValidationError("base_points", "cannot be negative")
        if isinstance(multiplier, bool) or not isinstance(multiplier, (int, float)) or not multiplier >= 1:
            raise ParkShareValidationError("multiplier", "must be at least 1")

        granted = reward_for(base_points, is_premium, multiplier)

        async def _txn(tx: Transaction) -> int:
            snap = await tx.get(ACCOUNTS_COLLECTION, uid)
            account = _account_from(snap.data, uid)
            tx.update(
                ACCOUNTS_COLLECTION,
                uid,
                {"points": account.points + granted, "updatedAt": self._clock()},
            )
            return account.points + granted

        balance = await self._store.run_transaction(_txn, max_attempts=self._attempts)
        _logger.info("Awarded %d points to %s (balance %d)", granted, uid, balance)
        return granted

    async def adjust_reliability(self, user_id: str, success: bool) -> int:
        """Move reliability by the fixed success/failure delta.  Returns the new score."""
        uid = _require_user_id(user_id)

        async def _txn(tx: Transaction) -> int:
            snap = await tx.get(ACCOUNTS_COLLECTION, uid)
            account = _account_from(snap.data, uid)
            score = next_reliability(account.reliability_score, success)
            tx.update(ACCOUNTS_COLLECTION, uid, {"reliabilityScore": score, "updatedAt": self._clock()})
            return score

        score = await self._store.run_transaction(_txn, max_attempts=self._attempts)
        _logger.debug("Reliability of %s is now %d", uid, score)
        return score

    async def award_badge(self, user_id: str, badge: Badge | str) -> PointsAccount:
        uid = _require_user_id(user_id)
        if not isinstance(badge, str) or not badge.strip():
            raise ParkShareValidationError("badge", "is required")
        name = str(badge).strip()

        async def _txn(tx: Transaction) -> PointsAccount:
            snap = await tx.get(ACCOUNTS_COLLECTION, uid)
            account = _account_from(snap.data, uid)
            if name in account.badges:
                raise ParkShareConflictError(f"Account {uid} already has badge {name}")
            badges = [*account.badges, name]
            now = self._clock()
            tx.update(ACCOUNTS_COLLECTION, uid, {"badges": badges, "updatedAt": now})
            return account.model_copy(update={"badges": tuple(badges), "updated_at": now})

        return await self._store.run_transaction(_txn, max_attempts=self._attempts)

    async def evaluate_badges(self, user_id: str) -> list[str]:
        """Award every badge the account newly qualifies for.  Returns the new ones."""
        uid = _require_user_id(user_id)

        async def _txn(tx: Transaction) -> list[str]:
            snap = await tx.get(ACCOUNTS_COLLECTION, uid)
            account = _account_from(snap.data, uid)
            earned = [
                badge.value
                for badge in Badge
                if badge.value not in account.badges and check_badge_eligibility(account, badge)
            ]
            if earned:
                tx.update(
                    ACCOUNTS_COLLECTION,
                    uid,
                    {"badges": [*account.badges, *earned], "updatedAt": self._clock()},
                )
            return earned

        earned = await self._store.run_transaction(_txn, max_attempts=self._attempts)
        if earned:
            _logger.info("Account %s earned badges %s", uid, ", ".join(earned))
        return earned

    async def apply_reward(self, event_id: str) -> RewardEvent | None:
        """Apply one outbox event.

        Credits the confirmer and the owner, raises the owner's reliability
        and marks the event applied, all in one transaction.  Returns the
        applied event, or ``None`` when it had already been applied.
        """

        async def _txn(tx: Transaction) -> RewardEvent | None:
            event_snap = await tx.get(REWARD_OUTBOX_COLLECTION, event_id)
            if event_snap.data is None:
                raise ParkShareNotFoundError(
                    f"Reward event {event_id} not found",
                    collection=REWARD_OUTBOX_COLLECTION,
                    doc_id=event_id,
                )
            event = RewardEvent.from_document(event_id, event_snap.data)
            if event.is_applied:
                return None

            confirmer_snap = await tx.get(ACCOUNTS_COLLECTION, event.confirmer_id)
            owner_snap = await tx.get(ACCOUNTS_COLLECTION, event.owner_id)
            confirmer = _account_from(confirmer_snap.data, event.confirmer_id)
            owner = _account_from(owner_snap.data, event.owner_id)

            confirmer_points = reward_for(self._config.confirmer_base_points, confirmer.is_premium, event.multiplier)
            owner_points = reward_for(self._config.owner_base_points, owner.is_premium, event.multiplier)
            if owner.user_id == confirmer.user_id:
                owner = owner.model_copy(update={"points": owner.points + confirmer_points})
            reliability = next_reliability(owner.reliability_score, True)
            now = self._clock()

            tx.update(
                ACCOUNTS_COLLECTION,
                confirmer.user_id,
                {"points": confirmer.points + confirmer_points, "updatedAt": now},
            )
            tx.update(
                ACCOUNTS_COLLECTION,
                owner.user_id,
                {
                    "points": owner.points + owner_points,
                    "reliabilityScore": reliability,
                    "updatedAt": now,
                },
            )
            applied = event.model_copy(
                update={
                    "status": RewardStatus.APPLIED,
                    "applied_at": now,
                    "confirmer_points": confirmer_points,
                    "owner_points": owner_points,
                    "owner_reliability": reliability,
                }
            )
            tx.set(REWARD_OUTBOX_COLLECTION, event_id, applied.to_document())
            return applied

        applied = await self._store.run_transaction(_txn, max_attempts=self._attempts)
        if applied is None:
            _logger.debug("Reward %s already applied", event_id)
        else:
            _logger.info(
                "Reward %s applied confirmer=%s(+%s) owner=%s(+%s)",
                event_id,
                applied.confirmer_id,
                applied.confirmer_points,
                applied.owner_id,
                applied.owner_points,
            )
        return applied
