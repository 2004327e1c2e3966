"""
Billing engine for the AI router.
Converts token usage into cost in the base and display currencies.
"""

from .config import ConfigManager, ConfigError, CurrencyConfig
from .models import CostBreakdown, PricingRule, TokenUsage


class BillingError(Exception):
    """Billing related errors"""
    pass


class BillingEngine:
    """
    计费引擎 - 根据Token使用量计算成本。

    Formula:
        cost = (input_tokens / per_tokens) * input_cost +
               (output_tokens / per_tokens) * output_cost
        display = cost * currency.rate

    The engine is pure: it performs no I/O and keeps no state beyond the
    pricing table it was built from.
    """

    def __init__(self, config_manager: ConfigManager | None = None):
        """
        Initialize BillingEngine.

        Args:
            config_manager: ConfigManager instance. If None, creates a new one.
        """
        self._config_manager = config_manager or ConfigManager()

    @property
    def currency(self) -> CurrencyConfig:
        return self._config_manager.config.currency

    def get_pricing_rule(self, provider: str, model: str | None = None) -> PricingRule:
        """
        Get the pricing rule for a provider, optionally for a specific model.

        Without a model the provider's first rule is used, which is the usual
        case since every provider is configured with a single model.

        Raises:
            BillingError: If pricing rule is not found
        """
        if model is None:
            rules = self._config_manager.config.pricing.get(provider) or {}
            if not rules:
                raise BillingError(f"No pricing rules for provider: {provider}")
            return next(iter(rules.values()))
        try:
            return self._config_manager.get_pricing_rule(provider, model)
        except ConfigError as e:
            raise BillingError(f"Failed to get pricing rule: {e}")

    def calculate_cost(
        self,
        provider: str,
        input_tokens: int,
        output_tokens: int,
        model: str | None = None,
    ) -> CostBreakdown:
        """
        Calculate cost for a given token usage.

        Returns:
            CostBreakdown with the base amount and the display amount

        Raises:
            BillingError: If pricing rule is not found or tokens are negative
        """
        if input_tokens < 0:
            raise BillingError("input_tokens cannot be negative")
        if output_tokens < 0:
            raise BillingError("output_tokens cannot be negative")

        rule = self.get_pricing_rule(provider, model)
        amount = rule.calculate_cost(input_tokens, output_tokens)
        currency = self.currency
        return CostBreakdown(
            amount=amount,
            amount_display=amount * currency.rate,
            currency=currency.base,
            display_currency=currency.display,
        )

    def calculate_cost_from_usage(
        self,
        provider: str,
        usage: TokenUsage,
        model: str | None = None,
    ) -> CostBreakdown:
        """Calculate cost from a TokenUsage object."""
        return self.calculate_cost(
            provider=provider,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            model=model,
        )

    def zero_cost(self) -> CostBreakdown:
        currency = self.currency
        return CostBreakdown(currency=currency.base, display_currency=currency.display)
