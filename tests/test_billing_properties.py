"""
Property-based tests for the cost model.

cost = (input_tokens / per_tokens) * input_cost + (output_tokens / per_tokens) * output_cost
display = cost * currency rate
"""

import pytest
from hypothesis import given, strategies as st, settings

from ai_router.billing import BillingEngine, BillingError
from ai_router.config import Config, ConfigManager, CurrencyConfig
from ai_router.models import PricingRule, TokenUsage


def make_billing(rate: float = 84.0) -> BillingEngine:
    config = Config(currency=CurrencyConfig(base="USD", display="INR", rate=rate))
    return BillingEngine(ConfigManager.from_config(config))


class TestBillingFormulaCorrectness:
    """
    For any token usage and pricing rule, the calculated cost must match the
    formula and be non-negative, for both per-1K and per-1M rate tables.
    """

    @settings(max_examples=100)
    @given(
        input_tokens=st.integers(min_value=0, max_value=100_000_000),
        output_tokens=st.integers(min_value=0, max_value=100_000_000),
        input_cost=st.floats(min_value=0.0, max_value=1000.0, allow_nan=False, allow_infinity=False),
        output_cost=st.floats(min_value=0.0, max_value=1000.0, allow_nan=False, allow_infinity=False),
        per_tokens=st.sampled_from([1_000, 1_000_000]),
    )
    def test_billing_formula_correctness(
        self,
        input_tokens: int,
        output_tokens: int,
        input_cost: float,
        output_cost: float,
        per_tokens: int,
    ):
        pricing_rule = PricingRule(
            provider="test_provider",
            model="test_model",
            input_cost=input_cost,
            output_cost=output_cost,
            per_tokens=per_tokens,
        )

        calculated_cost = pricing_rule.calculate_cost(input_tokens, output_tokens)
        expected_cost = (
            (input_tokens / per_tokens) * input_cost +
            (output_tokens / per_tokens) * output_cost
        )

        assert calculated_cost == pytest.approx(expected_cost, rel=1e-9, abs=1e-9)
        assert calculated_cost >= 0, f"Cost must be non-negative, got {calculated_cost}"

    @settings(max_examples=100)
    @given(
        input_tokens=st.integers(min_value=0, max_value=10_000_000),
        output_tokens=st.integers(min_value=0, max_value=10_000_000),
        rate=st.floats(min_value=0.01, max_value=500.0, allow_nan=False, allow_infinity=False),
    )
    def test_display_amount_uses_conversion_rate(self, input_tokens: int, output_tokens: int, rate: float):
        billing = make_billing(rate)
        cost = billing.calculate_cost("openai", input_tokens, output_tokens)

        assert cost.currency == "USD"
        assert cost.display_currency == "INR"
        assert cost.amount_display == pytest.approx(cost.amount * rate)

    @settings(max_examples=50)
    @given(
        input_tokens=st.integers(min_value=0, max_value=1_000_000),
        output_tokens=st.integers(min_value=0, max_value=1_000_000),
    )
    def test_cost_is_deterministic(self, input_tokens: int, output_tokens: int):
        billing = make_billing()
        first = billing.calculate_cost("gemini", input_tokens, output_tokens)
        second = billing.calculate_cost_from_usage("gemini", TokenUsage(input_tokens, output_tokens))
        assert first == second


class TestDefaultRateTable:

    def test_gpt4o_per_million_rates(self):
        cost = make_billing().calculate_cost("openai", 1_000_000, 1_000_000, model="gpt-4o")
        assert cost.amount == pytest.approx(12.50)
        assert cost.amount_display == pytest.approx(12.50 * 84)

    def test_gemini_flash_per_thousand_rates(self):
        cost = make_billing().calculate_cost("gemini", 1_000, 1_000, model="gemini-2.5-flash")
        assert cost.amount == pytest.approx(0.0005)

    def test_provider_without_model_uses_first_rule(self):
        billing = make_billing()
        assert billing.get_pricing_rule("openai").model == "gpt-4o"

    def test_unknown_provider_raises(self):
        with pytest.raises(BillingError):
            make_billing().calculate_cost("anthropic", 10, 10)

    def test_unknown_model_raises(self):
        with pytest.raises(BillingError):
            make_billing().calculate_cost("openai", 10, 10, model="gpt-3")

    def test_negative_tokens_rejected(self):
        with pytest.raises(BillingError):
            make_billing().calculate_cost("openai", -1, 10)
        with pytest.raises(BillingError):
            make_billing().calculate_cost("openai", 10, -1)

    def test_zero_cost_carries_currencies(self):
        zero = make_billing().zero_cost()
        assert zero.amount == 0.0
        assert (zero.currency, zero.display_currency) == ("USD", "INR")
