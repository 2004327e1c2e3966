"""
Quota Enforcer

Per-tier daily and monthly request quotas, measured from the usage ledger.

``used`` for a window is the number of the user's ledger records in that
window with outcome ``success`` and quota state ``counted``. Both windows
must have room for an operation to be admitted; admin users are always
admitted.

The service awaits ``admit``, which runs the check in a worker thread so a
file-backed ledger is never read on the event loop. Each check reads the
ledger once and counts both windows from that snapshot.

Soft limit: the check is not coupled to the ledger write that follows the
routed operation. Concurrent requests from the same user can each observe
``used < limit`` and all proceed, so usage may overshoot a limit by up to the
number of in-flight requests minus one. A hard cap would need an atomic
increment-and-check on a per-user, per-window counter in the store.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Literal

from .ledger import UsageLedger, start_of_day, start_of_month
from .models import OperationKind, QuotaLimits, QuotaSnapshot, SubscriptionTier, User
from .settings import Settings, SettingsStore

logger = logging.getLogger(__name__)

Window = Literal["daily", "monthly"]


@dataclass(frozen=True)
class Admit:
    """The operation may proceed."""
    daily: QuotaSnapshot
    monthly: QuotaSnapshot

    admitted = True


@dataclass(frozen=True)
class Reject:
    """The operation is refused before any provider call."""
    reason: str
    window: Window
    limit: int
    used: int
    resets_at: datetime
    daily: QuotaSnapshot
    monthly: QuotaSnapshot

    admitted = False


class QuotaExceededError(Exception):
    """Raised by the service layer when a quota check rejects an operation."""

    def __init__(self, reason: str, limit: int, used: int, window: Window, resets_at: datetime):
        self.reason = reason
        self.limit = limit
        self.used = used
        self.window = window
        self.resets_at = resets_at
        super().__init__(reason)

    @classmethod
    def from_reject(cls, reject: Reject) -> "QuotaExceededError":
        return cls(reject.reason, reject.limit, reject.used, reject.window, reject.resets_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": "quota_exceeded",
            "message": self.reason,
            "window": self.window,
            "limit": self.limit,
            "used": self.used,
            "resetsAt": self.resets_at.isoformat(),
        }


@dataclass(frozen=True)
class QuotaStatus:
    """Quota picture for one user."""
    user_id: str
    tier: SubscriptionTier
    daily: QuotaSnapshot
    monthly: QuotaSnapshot
    daily_resets_at: datetime
    monthly_resets_at: datetime

    @property
    def unlimited(self) -> bool:
        return self.daily.unbounded and self.monthly.unbounded

    def to_dict(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "tier": self.tier.value,
            "unlimited": self.unlimited,
            "daily": {**self.daily.to_dict(), "resetsAt": self.daily_resets_at.isoformat()},
            "monthly": {**self.monthly.to_dict(), "resetsAt": self.monthly_resets_at.isoformat()},
        }


def next_day(moment: datetime) -> datetime:
    return start_of_day(moment) + timedelta(days=1)


def next_month(moment: datetime) -> datetime:
    first = start_of_month(moment)
    if first.month == 12:
        return first.replace(year=first.year + 1, month=1)
    return first.replace(month=first.month + 1)


class QuotaEnforcer:
    """Admission control against per-tier request quotas."""

    def __init__(
        self,
        ledger: UsageLedger,
        settings_store: SettingsStore,
        clock: Callable[[], datetime] | None = None,
    ):
        self.ledger = ledger
        self.settings_store = settings_store
        self.clock = clock or ledger.clock

    def limits_for(self, user: User) -> QuotaLimits:
        settings: Settings = self.settings_store.get()
        return settings.limits_for(user.effective_tier)

    def _snapshots(self, user: User, now: datetime) -> tuple[QuotaSnapshot, QuotaSnapshot]:
        limits = self.limits_for(user)
        daily_used, monthly_used = self.ledger.quota_usage(user.user_id, now)
        return (
            QuotaSnapshot(used=daily_used, limit=limits.daily),
            QuotaSnapshot(used=monthly_used, limit=limits.monthly),
        )

    def check_and_admit(self, user: User, kind: OperationKind | None = None) -> Admit | Reject:
        """
        Decide whether ``user`` may run one more operation now.

        ``kind`` is accepted for logging; quotas count every operation kind
        the same way.
        """
        now = self.clock()
        if user.is_admin:
            unbounded = QuotaSnapshot(used=0, limit=None)
            return Admit(daily=unbounded, monthly=unbounded)

        daily, monthly = self._snapshots(user, now)
        operation = kind.value if kind else "operation"

        if daily.exhausted:
            logger.info(
                "Quota rejected %s for user %s: daily %d/%d",
                operation, user.user_id, daily.used, daily.limit,
            )
            return Reject(
                reason=(
                    f"You have reached your daily limit of {daily.limit} AI requests. "
                    "Please try again tomorrow."
                ),
                window="daily",
                limit=daily.limit,
                used=daily.used,
                resets_at=next_day(now),
                daily=daily,
                monthly=monthly,
            )

        if monthly.exhausted:
            logger.info(
                "Quota rejected %s for user %s: monthly %d/%d",
                operation, user.user_id, monthly.used, monthly.limit,
            )
            return Reject(
                reason=(
                    f"You have reached your monthly limit of {monthly.limit} AI requests. "
                    "Upgrade your plan for higher limits."
                ),
                window="monthly",
                limit=monthly.limit,
                used=monthly.used,
                resets_at=next_month(now),
                daily=daily,
                monthly=monthly,
            )

        logger.debug(
            "Quota admitted %s for user %s (daily %d, monthly %d)",
            operation, user.user_id, daily.used, monthly.used,
        )
        return Admit(daily=daily, monthly=monthly)

    async def admit(self, user: User, kind: OperationKind | None = None) -> Admit | Reject:
        """
        ``check_and_admit`` run in a worker thread, since reading the ledger
        may block on file I/O.
        """
        return await asyncio.to_thread(self.check_and_admit, user, kind)

    def get_quota_status(self, user: User) -> QuotaStatus:
        now = self.clock()
        if user.is_admin:
            daily_used, monthly_used = self.ledger.quota_usage(user.user_id, now)
            daily = QuotaSnapshot(used=daily_used, limit=None)
            monthly = QuotaSnapshot(used=monthly_used, limit=None)
        else:
            daily, monthly = self._snapshots(user, now)
        return QuotaStatus(
            user_id=user.user_id,
            tier=user.effective_tier,
            daily=daily,
            monthly=monthly,
            daily_resets_at=next_day(now),
            monthly_resets_at=next_month(now),
        )

    def reset_daily(self, user_id: str) -> int:
        """
        Forgive today's counted successes for a user.

        Records are kept for analytics; they stop counting toward quota.
        Returns the number of records forgiven.
        """
        forgiven = self.ledger.mark_forgiven(user_id, since=start_of_day(self.clock()))
        logger.info("Daily quota reset for user %s (%d records forgiven)", user_id, forgiven)
        return forgiven

    def update_limits(
        self,
        tier: SubscriptionTier | str,
        daily: int,
        monthly: int,
        updated_by: str | None = None,
    ) -> Settings:
        """Change a tier's limits; both must be at least 1."""
        return self.settings_store.update_quota_limits(tier, daily, monthly, updated_by=updated_by)
