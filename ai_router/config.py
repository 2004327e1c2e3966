"""
Configuration management for the AI router.
Supports YAML configuration loading with environment variable substitution.
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .models import OperationKind, PricingRule, QuotaLimits, SubscriptionTier


class ConfigError(Exception):
    """Configuration related errors"""
    pass


@dataclass
class RetryConfig:
    """Bounded exponential backoff parameters (seconds)."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    jitter: float = 0.25


@dataclass
class ProviderConfig:
    """Configuration for a single AI provider"""
    api_key: str
    model: str
    type: str
    base_url: str | None = None
    timeout: float = 60.0
    retry: RetryConfig | None = None


@dataclass
class TierRoute:
    """
    Routing entry for one tier.

    Either ``provider`` is set (fixed routing) or the three hybrid fields are.
    """
    provider: str | None = None
    primary: str | None = None
    secondary: str | None = None
    primary_weight: float | None = None

    @property
    def is_hybrid(self) -> bool:
        return self.provider is None


@dataclass
class RoutingConfig:
    """Tier to provider routing table."""
    quality_provider: str = "openai"
    cost_provider: str = "gemini"
    hybrid_weight: float = 0.7
    hybrid_kinds: frozenset[OperationKind] = frozenset(
        {OperationKind.PARSE, OperationKind.CATEGORIZE, OperationKind.SUMMARIZE}
    )
    pinned_kinds: frozenset[OperationKind] = frozenset({OperationKind.GENERATE})
    fallback_on_fatal: bool = True
    fallback_from_primary: bool = False
    tiers: dict[SubscriptionTier, TierRoute] = field(default_factory=dict)

    def __post_init__(self):
        if not self.tiers:
            self.tiers = default_tier_routes(
                self.quality_provider, self.cost_provider, self.hybrid_weight
            )


@dataclass
class CurrencyConfig:
    base: str = "USD"
    display: str = "INR"
    rate: float = 84.0


@dataclass
class LedgerConfig:
    backend: str = "memory"
    path: str | None = None


DEFAULT_QUOTA_LIMITS: dict[SubscriptionTier, QuotaLimits] = {
    SubscriptionTier.FREE: QuotaLimits(daily=10, monthly=200),
    SubscriptionTier.ONE_TIME: QuotaLimits(daily=30, monthly=200),
    SubscriptionTier.PRO: QuotaLimits(daily=100, monthly=2000),
    SubscriptionTier.PREMIUM: QuotaLimits(daily=100, monthly=2000),
    SubscriptionTier.STUDENT: QuotaLimits(daily=50, monthly=1000),
    SubscriptionTier.LIFETIME: QuotaLimits(daily=100, monthly=2000),
    SubscriptionTier.ADMIN: QuotaLimits(daily=None, monthly=None),
}

DEFAULT_PRICING: dict[str, dict[str, PricingRule]] = {
    "openai": {
        "gpt-4o": PricingRule("openai", "gpt-4o", 2.50, 10.00, per_tokens=1_000_000),
    },
    "gemini": {
        "gemini-2.5-flash": PricingRule(
            "gemini", "gemini-2.5-flash", 0.000125, 0.000375, per_tokens=1_000
        ),
    },
}


def default_tier_routes(
    quality_provider: str,
    cost_provider: str,
    hybrid_weight: float,
) -> dict[SubscriptionTier, TierRoute]:
    """Build the stock tier table around a quality and a cost provider."""
    hybrid = TierRoute(
        primary=cost_provider,
        secondary=quality_provider,
        primary_weight=hybrid_weight,
    )
    return {
        SubscriptionTier.FREE: TierRoute(provider=cost_provider),
        SubscriptionTier.ONE_TIME: TierRoute(provider=quality_provider),
        SubscriptionTier.PRO: hybrid,
        SubscriptionTier.PREMIUM: TierRoute(provider=quality_provider),
        SubscriptionTier.STUDENT: hybrid,
        SubscriptionTier.LIFETIME: TierRoute(provider=quality_provider),
        SubscriptionTier.ADMIN: TierRoute(provider=quality_provider),
    }


@dataclass
class Config:
    """Complete system configuration"""
    providers: dict[str, ProviderConfig] = field(default_factory=dict)
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    pricing: dict[str, dict[str, PricingRule]] = field(
        default_factory=lambda: {p: dict(m) for p, m in DEFAULT_PRICING.items()}
    )
    currency: CurrencyConfig = field(default_factory=CurrencyConfig)
    quota: dict[SubscriptionTier, QuotaLimits] = field(
        default_factory=lambda: dict(DEFAULT_QUOTA_LIMITS)
    )
    ledger: LedgerConfig = field(default_factory=LedgerConfig)


class ConfigManager:
    """
    Configuration manager for the AI router.

    Supports:
    - Loading configuration from YAML files
    - Environment variable substitution (${VAR_NAME} syntax)
    - Optional .env file next to the config or in a parent directory
    - Building a configuration in code (``ConfigManager.from_config``)
    """

    ENV_VAR_PATTERN = re.compile(r'\$\{([^}]+)\}')
    PROVIDER_TYPES = ("openai", "gemini", "stub")

    def __init__(self, config_path: str | Path | None = None):
        """
        Initialize ConfigManager.

        Args:
            config_path: Path to YAML configuration file. If None, uses config.yaml
        """
        self._config: Config | None = None
        self._config_path = Path(config_path) if config_path else Path("config.yaml")

    @classmethod
    def from_config(cls, config: Config) -> "ConfigManager":
        """Wrap an already-built Config (used by tests and embedding code)."""
        manager = cls()
        manager._config = config
        return manager

    @property
    def config(self) -> Config:
        """Get the loaded configuration, loading it if necessary."""
        if self._config is None:
            self._config = self.load()
        return self._config

    def load(self, config_path: str | Path | None = None) -> Config:
        """
        Load configuration from YAML file.

        Raises:
            ConfigError: If configuration file is invalid or cannot be loaded
        """
        path = Path(config_path) if config_path else self._config_path

        self._load_env_file_if_present(path)

        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        try:
            with open(path, 'r', encoding='utf-8') as f:
                raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML format: {e}")
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file: {e}")

        if raw_config is None:
            raise ConfigError("Configuration file is empty")

        if not isinstance(raw_config, dict):
            raise ConfigError("Configuration must be a YAML mapping")

        self._config = self._parse_config(raw_config)
        return self._config

    def _load_env_file_if_present(self, config_path: Path) -> None:
        search_root = config_path if config_path.is_dir() else config_path.parent
        env_path: Path | None = None
        for candidate_dir in [search_root.resolve(), *search_root.resolve().parents]:
            candidate = candidate_dir / ".env"
            if candidate.exists():
                env_path = candidate
                break

        if env_path is None:
            return

        try:
            lines = env_path.read_text(encoding="utf-8").splitlines()
        except OSError:
            return
        for raw_line in lines:
            line = raw_line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            key = key.strip()
            value = value.strip().strip('"').strip("'")
            if not key:
                continue
            if key not in os.environ or os.environ.get(key, "") == "":
                os.environ[key] = value

    def _substitute_env_vars(self, obj: Any, skip_missing: bool = False) -> Any:
        """
        Recursively substitute environment variables in configuration.

        Supports ${VAR_NAME} syntax. If environment variable is not set,
        returns None when skip_missing=True, otherwise raises ConfigError.
        """
        if isinstance(obj, str):
            def replace_env_var(match: re.Match) -> str:
                var_name = match.group(1)
                value = os.environ.get(var_name)
                if value is None:
                    if skip_missing:
                        return ""
                    raise ConfigError(f"Environment variable not set: {var_name}")
                return value

            result = self.ENV_VAR_PATTERN.sub(replace_env_var, obj)
            if skip_missing and result == "" and self.ENV_VAR_PATTERN.search(obj):
                return None
            return result
        elif isinstance(obj, dict):
            return {k: self._substitute_env_vars(v, skip_missing) for k, v in obj.items()}
        elif isinstance(obj, list):
            return [self._substitute_env_vars(item, skip_missing) for item in obj]
        return obj

    @staticmethod
    def _section(raw: dict, name: str) -> dict:
        value = raw.get(name) or {}
        if not isinstance(value, dict):
            raise ConfigError(f"'{name}' section must be a mapping")
        return value

    def _parse_retry(self, raw: dict, base: RetryConfig | None = None) -> RetryConfig:
        base = base or RetryConfig()
        try:
            retry = RetryConfig(
                max_attempts=int(raw.get('max_attempts', base.max_attempts)),
                base_delay=float(raw.get('base_delay', base.base_delay)),
                max_delay=float(raw.get('max_delay', base.max_delay)),
                jitter=float(raw.get('jitter', base.jitter)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid retry configuration: {e}")
        if retry.max_attempts < 1:
            raise ConfigError("'retry.max_attempts' must be at least 1")
        if retry.base_delay < 0 or retry.max_delay < 0:
            raise ConfigError("Retry delays cannot be negative")
        if not 0 <= retry.jitter < 1:
            raise ConfigError("'retry.jitter' must be in [0, 1)")
        return retry

    def _parse_kinds(self, raw: Any, name: str) -> frozenset[OperationKind]:
        if not isinstance(raw, list):
            raise ConfigError(f"'routing.{name}' must be a list")
        try:
            return frozenset(OperationKind(kind) for kind in raw)
        except ValueError as e:
            raise ConfigError(f"Unknown operation kind in 'routing.{name}': {e}")

    def _parse_tier(self, name: str) -> SubscriptionTier:
        try:
            return SubscriptionTier(name)
        except ValueError:
            raise ConfigError(f"Unknown subscription tier: {name}")

    def _parse_weight(self, value: Any, where: str) -> float:
        try:
            weight = float(value)
        except (TypeError, ValueError):
            raise ConfigError(f"'{where}' must be a number")
        if not 0.0 <= weight <= 1.0:
            raise ConfigError(f"'{where}' must be within [0, 1]")
        return weight

    def _parse_routing(self, raw: dict) -> RoutingConfig:
        quality = raw.get('quality_provider', 'openai')
        cost = raw.get('cost_provider', 'gemini')
        weight = self._parse_weight(raw.get('hybrid_weight', 0.7), 'routing.hybrid_weight')

        routing = RoutingConfig(
            quality_provider=quality,
            cost_provider=cost,
            hybrid_weight=weight,
            fallback_on_fatal=bool(raw.get('fallback_on_fatal', True)),
            fallback_from_primary=bool(raw.get('fallback_from_primary', False)),
        )
        if 'hybrid_kinds' in raw:
            routing.hybrid_kinds = self._parse_kinds(raw['hybrid_kinds'], 'hybrid_kinds')
        if 'pinned_kinds' in raw:
            routing.pinned_kinds = self._parse_kinds(raw['pinned_kinds'], 'pinned_kinds')

        tiers_raw = self._section(raw, 'tiers')
        for tier_name, entry in tiers_raw.items():
            tier = self._parse_tier(tier_name)
            if not isinstance(entry, dict):
                raise ConfigError(f"Routing for tier '{tier_name}' must be a mapping")
            if 'provider' in entry:
                routing.tiers[tier] = TierRoute(provider=entry['provider'])
            elif 'hybrid' in entry and isinstance(entry['hybrid'], dict):
                hybrid = entry['hybrid']
                routing.tiers[tier] = TierRoute(
                    primary=hybrid.get('primary', cost),
                    secondary=hybrid.get('secondary', quality),
                    primary_weight=self._parse_weight(
                        hybrid.get('primary_weight', weight),
                        f'routing.tiers.{tier_name}.hybrid.primary_weight',
                    ),
                )
            else:
                raise ConfigError(
                    f"Routing for tier '{tier_name}' needs 'provider' or 'hybrid'"
                )
        return routing

    def _parse_limit(self, value: Any, where: str) -> int | None:
        if value is None:
            return None
        try:
            limit = int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"'{where}' must be an integer or null")
        if limit < 1:
            raise ConfigError(f"'{where}' must be at least 1")
        return limit

    def _parse_config(self, raw: dict) -> Config:
        """Parse raw configuration dictionary into Config object."""
        config = Config()

        if 'retry' in raw:
            config.retry = self._parse_retry(self._section(raw, 'retry'))

        if 'routing' in raw:
            config.routing = self._parse_routing(self._section(raw, 'routing'))

        # Parse providers (skip those without valid API keys)
        for provider_name, provider_data in self._section(raw, 'providers').items():
            if not isinstance(provider_data, dict):
                raise ConfigError(f"Provider '{provider_name}' configuration must be a mapping")

            provider_data = self._substitute_env_vars(provider_data, skip_missing=True)

            provider_type = provider_data.get('type', provider_name)
            if provider_type not in self.PROVIDER_TYPES:
                raise ConfigError(f"Unsupported provider type: {provider_type}")

            api_key = provider_data.get('api_key')
            if provider_type != "stub" and (not api_key or str(api_key).strip() == ''):
                continue

            model = provider_data.get('model')
            if not model:
                raise ConfigError(f"Provider '{provider_name}' must declare a model")

            retry = None
            if 'retry' in provider_data:
                if not isinstance(provider_data['retry'], dict):
                    raise ConfigError(f"'providers.{provider_name}.retry' must be a mapping")
                retry = self._parse_retry(provider_data['retry'], config.retry)

            config.providers[provider_name] = ProviderConfig(
                api_key=str(api_key or ""),
                model=model,
                type=provider_type,
                base_url=provider_data.get('base_url'),
                timeout=float(provider_data.get('timeout', 60.0)),
                retry=retry,
            )

        # Parse pricing rules
        for provider_name, models_pricing in self._section(raw, 'pricing').items():
            if not isinstance(models_pricing, dict):
                raise ConfigError(f"Pricing for '{provider_name}' must be a mapping")

            config.pricing[provider_name] = {}
            for model_name, pricing_data in models_pricing.items():
                if not isinstance(pricing_data, dict):
                    raise ConfigError(f"Pricing for '{provider_name}/{model_name}' must be a mapping")
                per_tokens = int(pricing_data.get('per_tokens', 1_000_000))
                if per_tokens <= 0:
                    raise ConfigError(f"'per_tokens' for '{provider_name}/{model_name}' must be positive")
                input_cost = float(pricing_data.get('input_cost', 0))
                output_cost = float(pricing_data.get('output_cost', 0))
                if input_cost < 0 or output_cost < 0:
                    raise ConfigError(f"Pricing for '{provider_name}/{model_name}' cannot be negative")
                config.pricing[provider_name][model_name] = PricingRule(
                    provider=provider_name,
                    model=model_name,
                    input_cost=input_cost,
                    output_cost=output_cost,
                    per_tokens=per_tokens,
                )

        if 'currency' in raw:
            currency_raw = self._section(raw, 'currency')
            config.currency = CurrencyConfig(
                base=currency_raw.get('base', 'USD'),
                display=currency_raw.get('display', 'INR'),
                rate=float(currency_raw.get('rate', 84.0)),
            )
            if config.currency.rate <= 0:
                raise ConfigError("'currency.rate' must be positive")

        for tier_name, limits in self._section(raw, 'quota').items():
            tier = self._parse_tier(tier_name)
            if not isinstance(limits, dict):
                raise ConfigError(f"Quota for tier '{tier_name}' must be a mapping")
            config.quota[tier] = QuotaLimits(
                daily=self._parse_limit(limits.get('daily'), f'quota.{tier_name}.daily'),
                monthly=self._parse_limit(limits.get('monthly'), f'quota.{tier_name}.monthly'),
            )

        if 'ledger' in raw:
            ledger_raw = self._section(raw, 'ledger')
            backend = ledger_raw.get('backend', 'memory')
            if backend not in ("memory", "jsonl"):
                raise ConfigError(f"Unsupported ledger backend: {backend}")
            config.ledger = LedgerConfig(backend=backend, path=ledger_raw.get('path'))

        return config

    def get_provider_config(self, provider: str) -> ProviderConfig:
        """
        Get configuration for a specific provider.

        Raises:
            ConfigError: If provider is not configured
        """
        if provider not in self.config.providers:
            raise ConfigError(f"Provider not configured: {provider}")
        return self.config.providers[provider]

    def get_pricing_rule(self, provider: str, model: str) -> PricingRule:
        """
        Get pricing rule for a specific provider and model.

        Raises:
            ConfigError: If pricing rule is not found
        """
        if provider not in self.config.pricing:
            raise ConfigError(f"No pricing rules for provider: {provider}")
        if model not in self.config.pricing[provider]:
            raise ConfigError(f"No pricing rule for model: {provider}/{model}")
        return self.config.pricing[provider][model]

    def get_retry_config(self, provider: str) -> RetryConfig:
        """Retry settings for a provider, falling back to the global ones."""
        provider_config = self.config.providers.get(provider)
        if provider_config is not None and provider_config.retry is not None:
            return provider_config.retry
        return self.config.retry

    def get_available_providers(self) -> list[str]:
        """List of providers that have valid API keys configured."""
        return list(self.config.providers.keys())

    def referenced_providers(self) -> set[str]:
        """Every provider name the routing table can select."""
        routing = self.config.routing
        names = {routing.quality_provider}
        for route in routing.tiers.values():
            if route.is_hybrid:
                names.update({route.primary, route.secondary})
            else:
                names.add(route.provider)
        if routing.fallback_from_primary:
            names.add(routing.cost_provider)
        return {name for name in names if name}
