"""
Data for the administrative surface: quota listings, per-user detail,
limit changes, daily resets, settings and system statistics.

Everything here reads or writes the usage ledger and the settings store; the
user directory itself belongs to the caller, which passes ``User`` objects in.
"""

import logging
from typing import Any, Iterable, Literal

from .fallback_tracker import FallbackTracker
from .ledger import UsageLedger, start_of_month
from .models import SubscriptionTier, User
from .quota import QuotaEnforcer
from .settings import SettingsStore

logger = logging.getLogger(__name__)

SortKey = Literal["usage", "cost", "percentage", "name"]

NEAR_LIMIT_PERCENT = 80.0


class AdminService:
    """Administrative views over usage and settings."""

    def __init__(
        self,
        ledger: UsageLedger,
        settings_store: SettingsStore,
        quota: QuotaEnforcer,
        fallback_tracker: FallbackTracker | None = None,
    ):
        self.ledger = ledger
        self.settings_store = settings_store
        self.quota = quota
        self.fallback_tracker = fallback_tracker

    @classmethod
    def for_service(cls, service) -> "AdminService":
        """Build from an :class:`~ai_router.service.AIService`."""
        return cls(
            service.ledger,
            service.settings_store,
            service.quota,
            fallback_tracker=service.router.fallback_tracker,
        )

    def _user_entry(self, user: User) -> dict[str, Any]:
        status = self.quota.get_quota_status(user)
        month_start = start_of_month(self.ledger.clock())
        providers = self.ledger.summarize_by_provider(since=month_start, user_id=user.user_id)
        monthly_cost = sum(p["cost"] for p in providers.values())
        monthly_tokens = sum(p["tokens"] for p in providers.values())
        return {
            "userId": user.user_id,
            "name": user.name,
            "email": user.email,
            "role": user.role,
            "tier": status.tier.value,
            "quota": {
                "daily": status.daily.to_dict(),
                "monthly": {
                    **status.monthly.to_dict(),
                    "totalCost": monthly_cost,
                    "totalTokens": monthly_tokens,
                },
            },
            "providers": {
                name: {"calls": p["calls"], "cost": p["cost"]} for name, p in providers.items()
            },
        }

    def list_quota_status(
        self,
        users: Iterable[User],
        sort_by: SortKey = "usage",
        order: Literal["asc", "desc"] = "desc",
    ) -> dict[str, Any]:
        """
        Quota status of every user with a fleet summary.

        Sorting: ``usage`` (daily used), ``cost`` (monthly cost),
        ``percentage`` (daily percentage) or ``name``; ``order`` applies the
        same way to every key, so ``desc`` lists names Z to A.
        """
        entries = [self._user_entry(user) for user in users]

        sort_keys = {
            "usage": lambda e: e["quota"]["daily"]["used"],
            "cost": lambda e: e["quota"]["monthly"]["totalCost"],
            "percentage": lambda e: e["quota"]["daily"]["percentage"],
            "name": lambda e: (e["name"] or "").lower(),
        }
        key = sort_keys.get(sort_by, sort_keys["usage"])
        entries.sort(key=key, reverse=order == "desc")

        by_provider: dict[str, dict[str, Any]] = {}
        for entry in entries:
            for name, data in entry["providers"].items():
                totals = by_provider.setdefault(name, {"calls": 0, "cost": 0.0})
                totals["calls"] += data["calls"]
                totals["cost"] += data["cost"]

        limited = [e for e in entries if e["tier"] != SubscriptionTier.ADMIN.value]
        return {
            "users": entries,
            "totalUsers": len(entries),
            "summary": {
                "totalDailyUsage": sum(e["quota"]["daily"]["used"] for e in entries),
                "totalMonthlyCost": sum(e["quota"]["monthly"]["totalCost"] for e in entries),
                "byProvider": by_provider,
                "usersNearLimit": sum(
                    1 for e in limited if e["quota"]["daily"]["percentage"] >= NEAR_LIMIT_PERCENT
                ),
                "usersOverLimit": sum(
                    1 for e in limited
                    if e["quota"]["daily"]["limit"] is not None
                    and e["quota"]["daily"]["used"] >= e["quota"]["daily"]["limit"]
                ),
            },
        }

    def get_user_detail(self, user: User, days: int = 30, recent: int = 20) -> dict[str, Any]:
        """Quota, usage by feature this month, per-day series and recent records."""
        status = self.quota.get_quota_status(user)
        month_start = start_of_month(self.ledger.clock())
        return {
            "user": {
                "id": user.user_id,
                "name": user.name,
                "email": user.email,
                "role": user.role,
                "tier": status.tier.value,
            },
            "quota": status.to_dict(),
            "usageByFeature": self.ledger.summarize_by_feature(user.user_id, since=month_start),
            "dailyUsage": self.ledger.daily_series(user.user_id, days=days),
            "recentRequests": [r.to_dict() for r in self.ledger.recent(user.user_id, limit=recent)],
        }

    def update_quota_limits(
        self,
        tier: SubscriptionTier | str,
        daily: int,
        monthly: int,
        updated_by: str | None = None,
    ) -> dict[str, Any]:
        settings = self.quota.update_limits(tier, daily, monthly, updated_by)
        logger.info("Quota limits for %s set to %s/%s by %s", tier, daily, monthly, updated_by)
        return settings.to_dict()["aiQuota"]

    def reset_daily_quota(self, user_id: str) -> dict[str, Any]:
        forgiven = self.quota.reset_daily(user_id)
        return {"userId": user_id, "recordsReset": forgiven}

    def get_settings(self) -> dict[str, Any]:
        return self.settings_store.get().to_dict()

    def update_settings(self, changes: dict[str, Any], updated_by: str | None = None) -> dict[str, Any]:
        return self.settings_store.update(changes, updated_by=updated_by).to_dict()

    def reset_settings(self, updated_by: str | None = None) -> dict[str, Any]:
        return self.settings_store.reset(updated_by=updated_by).to_dict()

    def get_system_stats(self, recent_fallbacks: int = 10) -> dict[str, Any]:
        stats = {"ai": self.ledger.stats()}
        if self.fallback_tracker is not None:
            stats["fallbacks"] = self.fallback_tracker.get_summary()
            stats["recentFallbacks"] = [
                event.to_dict() for event in self.fallback_tracker.get_recent_events(recent_fallbacks)
            ]
        return stats

    def purge_usage(self, user_id: str | None = None) -> dict[str, Any]:
        """Delete usage rows (support tooling; quota resets use ``reset_daily_quota``)."""
        return {"userId": user_id, "recordsDeleted": self.ledger.purge(user_id)}
