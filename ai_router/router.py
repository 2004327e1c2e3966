"""
Router module for tier-based AI provider selection.
Implements per-tier routing policies with retry and one-shot fallback to the
quality provider.
"""

import asyncio
import logging
import random
import time
from typing import Any, Awaitable, Callable

from .adapters import ADAPTER_TYPES, ProviderAdapter, ProviderError, StubAdapter
from .adapters.base import ProviderResult
from .billing import BillingEngine, BillingError
from .config import ConfigError, ConfigManager
from .fallback_tracker import FallbackTracker
from .ledger import UsageLedger
from .models import (
    CostBreakdown,
    OperationKind,
    Outcome,
    RouteResult,
    TokenUsage,
    User,
)
from .policy import HybridPolicy, RoutingPolicy, TierPolicyResolver
from .prompts import validate_payload
from .retry import RetryExhaustedError, with_retry

logger = logging.getLogger(__name__)


class RouterError(Exception):
    """Exception raised when routing fails."""
    pass


class Router:
    """
    Provider selector for resume operations.

    For each operation:
    1. Resolve the tier policy and pick a target (one uniform draw for hybrid
       policies).
    2. Call the target through the retry executor.
    3. If a non-quality target exhausts its retries or fails fatally, fall
       back once to the quality provider.
    4. Write exactly one usage record, attributed to the provider that
       produced the result, before returning or raising.

    Cancellation during a provider call or backoff sleep propagates without a
    usage record. A cancellation that arrives while the record is being
    written waits for the write to finish and then propagates.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        ledger: UsageLedger,
        billing: BillingEngine | None = None,
        adapters: dict[str, ProviderAdapter] | None = None,
        rng: random.Random | None = None,
        fallback_tracker: FallbackTracker | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize Router.

        Args:
            config_manager: Source of routing, retry and provider settings
            ledger: Usage ledger receiving one record per routed operation
            billing: Cost model (defaults to one built on ``config_manager``)
            adapters: Pre-built adapters by provider name; others are created
                lazily from provider configuration
            rng: Random source for hybrid draws and backoff jitter
            fallback_tracker: Fallback statistics sink
            sleep: Awaitable sleep used between retries
        """
        self.config_manager = config_manager
        self.ledger = ledger
        self.billing = billing or BillingEngine(config_manager)
        self.fallback_tracker = fallback_tracker or FallbackTracker()
        self._adapters: dict[str, ProviderAdapter] = dict(adapters or {})
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._resolver = TierPolicyResolver(config_manager.config.routing)

    @property
    def resolver(self) -> TierPolicyResolver:
        return self._resolver

    def get_adapter(self, provider: str) -> ProviderAdapter:
        """
        Get or create the adapter for a provider.

        Raises:
            ConfigError: If the provider is not configured or its type is unknown
        """
        if provider in self._adapters:
            return self._adapters[provider]

        provider_config = self.config_manager.get_provider_config(provider)
        adapter_class = ADAPTER_TYPES.get(provider_config.type)
        if adapter_class is None:
            raise ConfigError(f"Unsupported provider type: {provider_config.type}")

        kwargs: dict[str, Any] = {"timeout": provider_config.timeout}
        if provider_config.base_url:
            kwargs["base_url"] = provider_config.base_url
        if adapter_class is StubAdapter:
            kwargs["name"] = provider

        adapter = adapter_class(
            api_key=provider_config.api_key,
            model=provider_config.model,
            **kwargs,
        )
        self._adapters[provider] = adapter
        return adapter

    def select_provider(self, policy: RoutingPolicy) -> str:
        """Pick the target for a resolved policy."""
        if isinstance(policy, HybridPolicy):
            provider = policy.choose(self._rng.random())
        else:
            provider = policy.provider
        if not provider:
            raise RouterError(f"No provider for policy {policy.describe()}")
        return provider

    def fallback_target(self, provider: str) -> str | None:
        """Provider to fall back to after ``provider`` fails, if any."""
        routing = self.config_manager.config.routing
        if provider != routing.quality_provider:
            return routing.quality_provider
        if routing.fallback_from_primary and routing.cost_provider != provider:
            return routing.cost_provider
        return None

    def should_fall_back(self, error: Exception) -> bool:
        """
        Whether a failure may be retried on another provider.

        Request errors (400/422) and configuration errors fail the same way
        everywhere and never fall back.
        """
        if not isinstance(error, ProviderError):
            return False
        if isinstance(error, RetryExhaustedError):
            return True
        if error.is_request_error:
            return False
        return self.config_manager.config.routing.fallback_on_fatal

    def _model_for(self, provider: str) -> str:
        adapter = self._adapters.get(provider)
        if adapter is not None:
            return adapter.model
        try:
            return self.config_manager.get_provider_config(provider).model
        except ConfigError:
            return ""

    async def _call(
        self,
        provider: str,
        kind: OperationKind,
        payload: dict[str, Any],
    ) -> ProviderResult:
        adapter = self.get_adapter(provider)
        return await with_retry(
            lambda: adapter.perform(kind, payload),
            policy=self.config_manager.get_retry_config(provider),
            sleep=self._sleep,
            rng=self._rng,
            operation_name=f"{provider}.{kind.value}",
        )

    def _cost(self, provider: str, usage: TokenUsage, model: str) -> CostBreakdown:
        try:
            return self.billing.calculate_cost_from_usage(provider, usage, model=model)
        except BillingError as e:
            logger.warning("No pricing for %s/%s, recording zero cost: %s", provider, model, e)
            return self.billing.zero_cost()

    async def _write(self, record: Awaitable[Any]) -> None:
        """Await a ledger write; a cancellation waits for the write, then propagates."""
        task = asyncio.ensure_future(record)
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.done():
                await task
            raise

    async def route(
        self,
        user: User,
        kind: OperationKind,
        payload: dict[str, Any],
    ) -> RouteResult:
        """
        Route one operation for a user.

        Returns:
            RouteResult from the provider that produced the result

        Raises:
            PayloadError: If the payload is invalid (nothing is called or recorded)
            ConfigError: If the target provider is not configured
            ProviderError: If the target (and fallback, when taken) failed
        """
        validate_payload(kind, payload)

        tier = user.effective_tier
        policy = self._resolver.resolve(tier, kind)
        target = self.select_provider(policy)
        metadata: dict[str, Any] = {
            "tier": tier.value,
            "policy": policy.describe(),
            "targetProvider": target,
            "fallback": False,
        }
        logger.info("Routing %s for user %s to %s (%s)", kind.value, user.user_id, target, policy.describe())

        start = time.perf_counter()
        provider = target
        fallback_reason: str | None = None
        try:
            result = await self._call(target, kind, payload)
        except Exception as e:
            fallback = self.fallback_target(target) if self.should_fall_back(e) else None
            if fallback is None:
                await self._record_failure(user, kind, target, e, start, metadata)
                raise

            fallback_reason = str(e)
            provider = fallback
            metadata.update({"fallback": True, "fallbackReason": fallback_reason})
            logger.warning(
                "Provider %s failed for %s (%s); falling back to %s",
                target, kind.value, e, fallback,
            )
            fallback_start = time.perf_counter()
            try:
                result = await self._call(fallback, kind, payload)
            except Exception as fallback_error:
                self.fallback_tracker.record_fallback(
                    user.user_id, kind.value, target, fallback, fallback_reason,
                    (time.perf_counter() - fallback_start) * 1000, success=False,
                )
                await self._record_failure(user, kind, fallback, fallback_error, start, metadata)
                raise
            self.fallback_tracker.record_fallback(
                user.user_id, kind.value, target, fallback, fallback_reason,
                (time.perf_counter() - fallback_start) * 1000, success=True,
            )

        latency_ms = (time.perf_counter() - start) * 1000
        cost = self._cost(provider, result.usage, result.model)
        await self._write(self.ledger.record(
            user_id=user.user_id,
            operation=kind,
            provider=provider,
            model=result.model,
            token_usage=result.usage,
            cost=cost,
            latency_ms=latency_ms,
            outcome=Outcome.SUCCESS,
            metadata=metadata,
        ))

        return RouteResult(
            data=result.data,
            provider=provider,
            model=result.model,
            token_usage=result.usage,
            cost=cost,
            latency_ms=latency_ms,
            is_fallback=fallback_reason is not None,
            fallback_reason=fallback_reason,
        )

    async def _record_failure(
        self,
        user: User,
        kind: OperationKind,
        provider: str,
        error: Exception,
        start: float,
        metadata: dict[str, Any],
    ) -> None:
        failure_metadata = dict(metadata)
        if isinstance(error, RetryExhaustedError):
            failure_metadata["attempts"] = error.attempts
        status_code = getattr(error, "status_code", None)
        if status_code is not None:
            failure_metadata["statusCode"] = status_code
        await self._write(self.ledger.record(
            user_id=user.user_id,
            operation=kind,
            provider=provider,
            model=self._model_for(provider),
            token_usage=TokenUsage(),
            cost=self.billing.zero_cost(),
            latency_ms=(time.perf_counter() - start) * 1000,
            outcome=Outcome.ERROR,
            error_message=str(error),
            metadata=failure_metadata,
        ))

    async def aclose(self) -> None:
        """Close every adapter's HTTP client."""
        for adapter in self._adapters.values():
            await adapter.aclose()
