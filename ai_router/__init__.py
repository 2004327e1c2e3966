"""
AI Router - 按订阅等级路由AI请求，并记录配额与成本

Tier-based routing of resume AI operations across providers, with retry,
fallback, per-tier quotas and a usage/cost ledger.

Example usage:
    from ai_router import AIService, User, SubscriptionTier

    service = AIService.from_config("config.yaml")
    service.validate()
    result = await service.perform_operation(
        User("user123", tier=SubscriptionTier.PRO),
        "summarize",
        {"resume_data": {"name": "Ada", "skills": ["Python"]}},
    )
    print(result["provider"], result["tokenUsage"])
"""

__version__ = "0.1.0"

# Core data models
from .models import (
    CostBreakdown,
    OperationKind,
    Outcome,
    PricingRule,
    QuotaLimits,
    QuotaSnapshot,
    QuotaState,
    RouteResult,
    SubscriptionTier,
    TokenUsage,
    UsageRecord,
    User,
)

# Configuration and settings
from .config import Config, ConfigManager, ConfigError, ProviderConfig
from .settings import Settings, SettingsError, SettingsStore

# Billing engine
from .billing import BillingEngine, BillingError

# Routing
from .policy import FixedPolicy, HybridPolicy, TierPolicyResolver
from .retry import RetryExhaustedError, with_retry
from .router import Router, RouterError
from .fallback_tracker import FallbackTracker, FallbackEvent

# Usage ledger and quotas
from .ledger import InMemoryUsageStore, JsonlUsageStore, UsageLedger
from .quota import Admit, QuotaEnforcer, QuotaExceededError, Reject

# Main service (unified entry point)
from .service import AIService, AIServiceError, ValidationError
from .admin import AdminService

# Provider adapters (for advanced usage)
from .adapters import (
    ProviderAdapter,
    ProviderError,
    RawLLMResult,
    OpenAIAdapter,
    GeminiAdapter,
    StubAdapter,
)

__all__ = [
    # Version
    "__version__",
    # Main entry point
    "AIService",
    "AIServiceError",
    "ValidationError",
    "AdminService",
    # Data models
    "CostBreakdown",
    "OperationKind",
    "Outcome",
    "PricingRule",
    "QuotaLimits",
    "QuotaSnapshot",
    "QuotaState",
    "RouteResult",
    "SubscriptionTier",
    "TokenUsage",
    "UsageRecord",
    "User",
    # Configuration
    "Config",
    "ConfigManager",
    "ProviderConfig",
    "ConfigError",
    "Settings",
    "SettingsError",
    "SettingsStore",
    # Billing
    "BillingEngine",
    "BillingError",
    # Routing
    "FixedPolicy",
    "HybridPolicy",
    "TierPolicyResolver",
    "RetryExhaustedError",
    "with_retry",
    "Router",
    "RouterError",
    "FallbackTracker",
    "FallbackEvent",
    # Ledger and quota
    "InMemoryUsageStore",
    "JsonlUsageStore",
    "UsageLedger",
    "Admit",
    "Reject",
    "QuotaEnforcer",
    "QuotaExceededError",
    # Provider adapters
    "ProviderAdapter",
    "ProviderError",
    "RawLLMResult",
    "OpenAIAdapter",
    "GeminiAdapter",
    "StubAdapter",
]
