"""
Administrative settings: quota limits, feature flags and rate-limit table.

The settings are held as immutable snapshots. Every write builds a new
snapshot and swaps it in under a lock, so readers never observe a partially
applied update. Concurrent administrative writes are last-writer-wins.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Mapping

from .models import QuotaLimits, SubscriptionTier

logger = logging.getLogger(__name__)


class SettingsError(Exception):
    """Invalid settings update."""
    pass


def is_limit(value: Any) -> bool:
    # bool is an int subclass
    return isinstance(value, int) and not isinstance(value, bool) and value >= 1


@dataclass(frozen=True)
class RateLimitRule:
    window_ms: int
    max_requests: int

    def to_dict(self) -> dict[str, int]:
        return {"windowMs": self.window_ms, "max": self.max_requests}


DEFAULT_FEATURES: dict[str, bool] = {
    "registration": True,
    "githubImport": True,
    "atsAnalyzer": True,
    "aiEnhancement": True,
    "feedback": True,
    "templateUpload": True,
}

DEFAULT_RATE_LIMITS: dict[str, RateLimitRule] = {
    "general": RateLimitRule(window_ms=900_000, max_requests=100),
    "auth": RateLimitRule(window_ms=900_000, max_requests=5),
    "ai": RateLimitRule(window_ms=60_000, max_requests=10),
    "upload": RateLimitRule(window_ms=900_000, max_requests=20),
}


@dataclass(frozen=True)
class Settings:
    """One immutable version of the administrative settings."""
    quota: Mapping[SubscriptionTier, QuotaLimits]
    features: Mapping[str, bool] = field(default_factory=lambda: dict(DEFAULT_FEATURES))
    rate_limits: Mapping[str, RateLimitRule] = field(
        default_factory=lambda: dict(DEFAULT_RATE_LIMITS)
    )
    version: int = 1
    updated_by: str | None = None
    updated_at: datetime | None = None

    def limits_for(self, tier: SubscriptionTier) -> QuotaLimits:
        """Quota limits for a tier. Admin is always unbounded."""
        if tier is SubscriptionTier.ADMIN:
            return QuotaLimits(daily=None, monthly=None)
        return self.quota.get(tier) or self.quota[SubscriptionTier.FREE]

    def to_dict(self) -> dict[str, Any]:
        return {
            "aiQuota": {tier.value: limits.to_dict() for tier, limits in self.quota.items()},
            "features": dict(self.features),
            "rateLimits": {name: rule.to_dict() for name, rule in self.rate_limits.items()},
            "version": self.version,
            "lastUpdatedBy": self.updated_by,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


class SettingsStore:
    """
    Versioned holder for the current :class:`Settings` snapshot.

    Example:
        store = SettingsStore(config.quota)
        store.update_quota_limits(SubscriptionTier.FREE, 20, 400, updated_by="admin-1")
        store.get().limits_for(SubscriptionTier.FREE)
    """

    def __init__(
        self,
        default_quota: Mapping[SubscriptionTier, QuotaLimits],
        clock: Callable[[], datetime] = datetime.now,
    ):
        if SubscriptionTier.FREE not in default_quota:
            raise SettingsError("Default quota must define the free tier")
        self._defaults = dict(default_quota)
        self._clock = clock
        self._lock = threading.Lock()
        self._current = Settings(quota=dict(self._defaults))

    def get(self) -> Settings:
        """Current snapshot. Never mutate the returned mappings."""
        return self._current

    @property
    def version(self) -> int:
        return self._current.version

    def _swap(self, build: Callable[[Settings], Settings], updated_by: str | None) -> Settings:
        with self._lock:
            current = self._current
            new = replace(
                build(current),
                version=current.version + 1,
                updated_by=updated_by,
                updated_at=self._clock(),
            )
            self._current = new
        logger.info("Settings updated to version %d by %s", new.version, updated_by)
        return new

    def update_quota_limits(
        self,
        tier: SubscriptionTier | str,
        daily: int,
        monthly: int,
        updated_by: str | None = None,
    ) -> Settings:
        """
        Replace the daily/monthly limits for one tier.

        Raises:
            SettingsError: For an unknown or admin tier, or limits that are not
                integers of at least 1
        """
        try:
            tier = SubscriptionTier(tier)
        except ValueError:
            raise SettingsError(f"Unknown subscription tier: {tier}")
        if tier is SubscriptionTier.ADMIN:
            raise SettingsError("Admin quota is always unbounded")
        if not (is_limit(daily) and is_limit(monthly)):
            raise SettingsError("Quota limits must be at least 1")

        def build(current: Settings) -> Settings:
            quota = dict(current.quota)
            quota[tier] = QuotaLimits(daily=int(daily), monthly=int(monthly))
            return replace(current, quota=quota)

        return self._swap(build, updated_by)

    def update(self, changes: Mapping[str, Any], updated_by: str | None = None) -> Settings:
        """
        Merge a partial update into the current settings.

        Accepted keys are ``aiQuota``, ``features`` and ``rateLimits``; each
        is merged key by key into the existing mapping.
        """
        unknown = set(changes) - {"aiQuota", "features", "rateLimits"}
        if unknown:
            raise SettingsError(f"Unknown settings keys: {', '.join(sorted(unknown))}")

        quota_changes = self._parse_quota(changes.get("aiQuota") or {})
        feature_changes = changes.get("features") or {}
        if not all(isinstance(v, bool) for v in feature_changes.values()):
            raise SettingsError("Feature flags must be booleans")
        rate_changes = self._parse_rate_limits(changes.get("rateLimits") or {})

        def build(current: Settings) -> Settings:
            return replace(
                current,
                quota={**current.quota, **quota_changes},
                features={**current.features, **feature_changes},
                rate_limits={**current.rate_limits, **rate_changes},
            )

        return self._swap(build, updated_by)

    def reset(self, updated_by: str | None = None) -> Settings:
        """Restore the configured defaults."""
        return self._swap(lambda _: Settings(quota=dict(self._defaults)), updated_by)

    def _parse_quota(self, raw: Mapping[str, Any]) -> dict[SubscriptionTier, QuotaLimits]:
        parsed = {}
        for tier_name, limits in raw.items():
            try:
                tier = SubscriptionTier(tier_name)
            except ValueError:
                raise SettingsError(f"Unknown subscription tier: {tier_name}")
            if tier is SubscriptionTier.ADMIN:
                raise SettingsError("Admin quota is always unbounded")
            if not isinstance(limits, Mapping):
                raise SettingsError(f"Quota for '{tier_name}' must be a mapping")
            daily = limits.get("daily")
            monthly = limits.get("monthly")
            if not (is_limit(daily) and is_limit(monthly)):
                raise SettingsError("Quota limits must be at least 1")
            parsed[tier] = QuotaLimits(daily=daily, monthly=monthly)
        return parsed

    def _parse_rate_limits(self, raw: Mapping[str, Any]) -> dict[str, RateLimitRule]:
        parsed = {}
        for name, rule in raw.items():
            try:
                parsed[name] = RateLimitRule(
                    window_ms=int(rule["windowMs"]),
                    max_requests=int(rule["max"]),
                )
            except (KeyError, TypeError, ValueError):
                raise SettingsError(f"Invalid rate limit rule: {name}")
            if parsed[name].window_ms <= 0 or parsed[name].max_requests <= 0:
                raise SettingsError(f"Rate limit '{name}' must be positive")
        return parsed
