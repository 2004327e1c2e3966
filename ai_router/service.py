"""
AI service: the inbound operation interface.

Wires configuration, settings, ledger, quota enforcer and router together and
exposes ``perform_operation`` to the request handlers.
"""

import asyncio
import logging
import random
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable

from .adapters import ProviderAdapter
from .billing import BillingEngine
from .config import ConfigError, ConfigManager
from .fallback_tracker import FallbackTracker
from .ledger import UsageLedger, create_store
from .models import OperationKind, User
from .prompts import PayloadError, validate_payload
from .quota import QuotaEnforcer, QuotaExceededError, Reject
from .router import Router
from .settings import SettingsStore

logger = logging.getLogger(__name__)


class AIServiceError(Exception):
    """Base exception for AI service errors."""
    pass


class ValidationError(AIServiceError):
    """Exception raised when an operation request is invalid."""
    pass


class AIService:
    """
    Entry point for AI-backed resume operations.

    Example:
        service = AIService.from_config("config.yaml")
        service.validate()
        result = await service.perform_operation(user, "match", {
            "resume_text": "...",
            "job_description": "...",
        })
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        ledger: UsageLedger,
        settings_store: SettingsStore,
        router: Router,
        quota: QuotaEnforcer,
    ):
        self._config_manager = config_manager
        self._ledger = ledger
        self._settings_store = settings_store
        self._router = router
        self._quota = quota

    @classmethod
    def from_config(
        cls,
        config: str | Path | ConfigManager | None = None,
        adapters: dict[str, ProviderAdapter] | None = None,
        ledger: UsageLedger | None = None,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = datetime.now,
    ) -> "AIService":
        """
        Build a service from a config file path or a ConfigManager.

        Args:
            config: Path to YAML config, a ConfigManager, or None for config.yaml
            adapters: Pre-built adapters by provider name (tests, local runs)
            ledger: Usage ledger; defaults to the store named in the config
            rng: Random source for hybrid draws and jitter
            sleep: Awaitable sleep used between retries
            clock: Wall clock used for quota windows and record timestamps
        """
        config_manager = config if isinstance(config, ConfigManager) else ConfigManager(config)
        cfg = config_manager.config
        ledger = ledger or UsageLedger(create_store(cfg.ledger), clock=clock)
        settings_store = SettingsStore(cfg.quota, clock=clock)
        router = Router(
            config_manager,
            ledger,
            billing=BillingEngine(config_manager),
            adapters=adapters,
            rng=rng,
            fallback_tracker=FallbackTracker(clock=clock),
            sleep=sleep,
        )
        quota = QuotaEnforcer(ledger, settings_store, clock=clock)
        return cls(config_manager, ledger, settings_store, router, quota)

    @property
    def config_manager(self) -> ConfigManager:
        return self._config_manager

    @property
    def ledger(self) -> UsageLedger:
        return self._ledger

    @property
    def settings_store(self) -> SettingsStore:
        return self._settings_store

    @property
    def router(self) -> Router:
        return self._router

    @property
    def quota(self) -> QuotaEnforcer:
        return self._quota

    def validate(self) -> list[str]:
        """
        Check that every provider the routing table can select is usable.

        Returns:
            Sorted list of referenced providers

        Raises:
            ConfigError: If any referenced provider is not configured
        """
        referenced = sorted(self._config_manager.referenced_providers())
        missing = []
        for provider in referenced:
            try:
                self._router.get_adapter(provider)
            except ConfigError as e:
                missing.append(f"{provider} ({e})")
        if missing:
            raise ConfigError(f"Providers not configured: {', '.join(missing)}")
        logger.info("AI service ready with providers: %s", ", ".join(referenced))
        return referenced

    @staticmethod
    def _parse_kind(kind: OperationKind | str) -> OperationKind:
        try:
            return OperationKind(kind)
        except ValueError:
            raise ValidationError(f"Unknown operation: {kind}")

    async def perform_operation(
        self,
        user: User,
        kind: OperationKind | str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Run one AI operation on behalf of a user.

        Returns:
            {data, tokenUsage, provider, model, cost, fallback, fallbackReason}

        Raises:
            ValidationError: If the operation or payload is invalid
            QuotaExceededError: If the user's quota is exhausted
            ProviderError: If the provider (and fallback, when taken) failed
        """
        kind = self._parse_kind(kind)
        try:
            validate_payload(kind, payload)
        except PayloadError as e:
            raise ValidationError(str(e)) from e

        decision = await self._quota.admit(user, kind)
        if isinstance(decision, Reject):
            raise QuotaExceededError.from_reject(decision)

        result = await self._router.route(user, kind, payload)
        return {
            "data": result.data,
            "tokenUsage": {
                "inputTokens": result.token_usage.input_tokens,
                "outputTokens": result.token_usage.output_tokens,
                "totalTokens": result.token_usage.total_tokens,
            },
            "provider": result.provider,
            "model": result.model,
            "cost": {
                "amount": result.cost.amount,
                "currency": result.cost.currency,
                "amountDisplay": result.cost.amount_display,
                "displayCurrency": result.cost.display_currency,
            },
            "responseTime": round(result.latency_ms, 2),
            "fallback": result.is_fallback,
            "fallbackReason": result.fallback_reason,
        }

    def get_service_info(self, user: User) -> dict[str, Any]:
        """Routing summary for a user's tier."""
        info = self._router.resolver.describe_tier(user.effective_tier)
        info["pinned"] = {
            kind.value: self._router.resolver.quality_provider
            for kind in sorted(
                self._config_manager.config.routing.pinned_kinds, key=lambda k: k.value
            )
        }
        return info

    def get_quota_status(self, user: User) -> dict[str, Any]:
        return self._quota.get_quota_status(user).to_dict()

    async def aclose(self) -> None:
        await self._router.aclose()
