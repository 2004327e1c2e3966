"""
Tier policy resolver: maps a subscription tier and operation kind to a
routing policy. Pure and deterministic; no I/O and no randomness.
"""

from dataclasses import dataclass

from .config import RoutingConfig
from .models import OperationKind, SubscriptionTier


@dataclass(frozen=True)
class FixedPolicy:
    """Always use one provider."""
    provider: str

    def describe(self) -> str:
        return self.provider


@dataclass(frozen=True)
class HybridPolicy:
    """
    Probabilistic split between two providers.

    ``primary_weight`` is the probability of choosing ``primary``.
    """
    primary: str
    secondary: str
    primary_weight: float

    def __post_init__(self):
        if not 0.0 <= self.primary_weight <= 1.0:
            raise ValueError("primary_weight must be within [0, 1]")

    def choose(self, sample: float) -> str:
        """Pick a provider from a uniform sample in [0, 1)."""
        return self.primary if sample < self.primary_weight else self.secondary

    def describe(self) -> str:
        return (
            f"hybrid({self.primary} {self.primary_weight:.0%}, "
            f"{self.secondary} {1 - self.primary_weight:.0%})"
        )


RoutingPolicy = FixedPolicy | HybridPolicy


class TierPolicyResolver:
    """
    Resolve the routing policy for (tier, operation kind).

    Rules, in order:
    1. Pinned kinds (cover letters by default) always use the quality provider.
    2. A hybrid tier returns its hybrid split for hybrid-eligible kinds and the
       quality provider for everything else.
    3. A fixed tier returns its provider.
    """

    def __init__(self, routing: RoutingConfig):
        self._routing = routing

    @property
    def quality_provider(self) -> str:
        return self._routing.quality_provider

    @property
    def cost_provider(self) -> str:
        return self._routing.cost_provider

    def resolve(self, tier: SubscriptionTier, kind: OperationKind) -> RoutingPolicy:
        routing = self._routing
        if kind in routing.pinned_kinds:
            return FixedPolicy(routing.quality_provider)

        route = routing.tiers.get(tier) or routing.tiers.get(SubscriptionTier.FREE)
        if route is None:
            return FixedPolicy(routing.cost_provider)

        if route.is_hybrid:
            if kind in routing.hybrid_kinds:
                return HybridPolicy(
                    primary=route.primary,
                    secondary=route.secondary,
                    primary_weight=route.primary_weight,
                )
            return FixedPolicy(routing.quality_provider)

        return FixedPolicy(route.provider)

    def describe_tier(self, tier: SubscriptionTier) -> dict:
        """Summary of the tier's routing used by service info endpoints."""
        route = self._routing.tiers.get(tier) or self._routing.tiers.get(SubscriptionTier.FREE)
        if route is None or not route.is_hybrid:
            provider = route.provider if route else self._routing.cost_provider
            return {"tier": tier.value, "aiModel": provider, "isHybrid": False}
        return {
            "tier": tier.value,
            "aiModel": "hybrid",
            "isHybrid": True,
            "primary": route.primary,
            "secondary": route.secondary,
            "primaryWeight": route.primary_weight,
            "hybridKinds": sorted(kind.value for kind in self._routing.hybrid_kinds),
        }
