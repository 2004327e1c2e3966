"""
Core data models for the AI routing and quota accounting core.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class SubscriptionTier(str, Enum):
    """Subscription level determining quota and default AI provider."""
    FREE = "free"
    ONE_TIME = "one-time"
    PRO = "pro"
    PREMIUM = "premium"
    STUDENT = "student"
    LIFETIME = "lifetime"
    ADMIN = "admin"

    @classmethod
    def parse(cls, value: "str | SubscriptionTier | None") -> "SubscriptionTier":
        """Parse a tier name; unknown or missing tiers fall back to free."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return cls.FREE


class OperationKind(str, Enum):
    """AI operations exposed by the provider adapters."""
    PARSE = "parse"                # resume text -> structured resume
    ENHANCE = "enhance"            # rewrite a resume section
    SUMMARIZE = "summarize"        # professional summary
    CATEGORIZE = "categorize"      # skills categorisation
    MATCH = "match"                # resume/job match analysis
    GENERATE = "generate"          # cover letter


# Feature names used in the persisted usage record.
FEATURE_BY_KIND: dict[OperationKind, str] = {
    OperationKind.MATCH: "ats_analysis",
    OperationKind.ENHANCE: "resume_enhancement",
    OperationKind.PARSE: "github_import",
    OperationKind.SUMMARIZE: "ai_suggestions",
    OperationKind.CATEGORIZE: "ai_suggestions",
    OperationKind.GENERATE: "ai_suggestions",
}


class Outcome(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


class QuotaState(str, Enum):
    """Whether a usage record counts against the user's quota."""
    COUNTED = "counted"
    FORGIVEN = "forgiven"


@dataclass(frozen=True)
class User:
    """The caller on whose behalf an operation runs."""
    user_id: str
    tier: SubscriptionTier = SubscriptionTier.FREE
    role: str = "user"
    name: str | None = None
    email: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.tier is SubscriptionTier.ADMIN or self.role == "admin"

    @property
    def effective_tier(self) -> SubscriptionTier:
        """Tier used for quota decisions; the admin role always wins."""
        return SubscriptionTier.ADMIN if self.is_admin else self.tier


@dataclass
class TokenUsage:
    """Token使用统计"""
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        """总Token数 = 输入Token + 输出Token"""
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class CostBreakdown:
    """Cost of one operation in the base and display currencies."""
    amount: float = 0.0
    amount_display: float = 0.0
    currency: str = "USD"
    display_currency: str = "INR"


@dataclass
class PricingRule:
    """
    Per-provider rate, expressed as cost per ``per_tokens`` tokens.

    ``per_tokens`` is normally 1_000 or 1_000_000 depending on how the
    vendor publishes its prices.
    """
    provider: str
    model: str
    input_cost: float
    output_cost: float
    per_tokens: int = 1_000_000

    def calculate_cost(self, input_tokens: int, output_tokens: int) -> float:
        """根据Token使用量计算成本(base currency)"""
        input_cost = (input_tokens / self.per_tokens) * self.input_cost
        output_cost = (output_tokens / self.per_tokens) * self.output_cost
        return input_cost + output_cost


@dataclass(frozen=True)
class QuotaLimits:
    """Daily/monthly request limits for a tier. None means unbounded."""
    daily: int | None
    monthly: int | None

    def to_dict(self) -> dict[str, int | None]:
        return {"daily": self.daily, "monthly": self.monthly}


@dataclass(frozen=True)
class QuotaSnapshot:
    """Usage against one quota window, derived on demand."""
    used: int
    limit: int | None

    @property
    def unbounded(self) -> bool:
        return self.limit is None

    @property
    def remaining(self) -> int | None:
        if self.limit is None:
            return None
        return max(0, self.limit - self.used)

    @property
    def percentage(self) -> float:
        if self.limit is None or self.limit <= 0:
            return 0.0
        return self.used / self.limit * 100

    @property
    def exhausted(self) -> bool:
        return self.limit is not None and self.used >= self.limit

    def to_dict(self) -> dict[str, Any]:
        return {
            "used": self.used,
            "limit": self.limit,
            "remaining": self.remaining,
            "percentage": round(self.percentage, 2),
        }


@dataclass
class UsageRecord:
    """
    One row of the usage ledger, written once per attempted operation.

    Records are append-only. The only field that changes after the write is
    ``quota_state``, which an administrative reset moves from ``counted`` to
    ``forgiven``.
    """
    user_id: str
    provider: str
    model: str
    operation: OperationKind
    input_tokens: int
    output_tokens: int
    cost: float
    currency: str
    latency_ms: float
    outcome: Outcome
    error_message: str | None = None
    quota_state: QuotaState = QuotaState.COUNTED
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def counts_toward_quota(self) -> bool:
        return self.quota_state is QuotaState.COUNTED

    @property
    def feature(self) -> str:
        return FEATURE_BY_KIND.get(self.operation, "ai_suggestions")

    def to_dict(self) -> dict[str, Any]:
        """Persisted record shape consumed by the rest of the backend."""
        return {
            "userId": self.user_id,
            "aiProvider": self.provider,
            "aiModel": self.model,
            "feature": self.feature,
            "tokensUsed": self.total_tokens,
            "cost": self.cost,
            "responseTime": round(self.latency_ms, 2),
            "status": self.outcome.value,
            "errorMessage": self.error_message,
            "countsTowardQuota": self.counts_toward_quota,
            "metadata": {
                **self.metadata,
                "operation": self.operation.value,
                "tokensIn": self.input_tokens,
                "tokensOut": self.output_tokens,
                "currency": self.currency,
                "quotaState": self.quota_state.value,
            },
            "createdAt": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UsageRecord":
        """Rebuild a record from :meth:`to_dict` output."""
        metadata = dict(data.get("metadata") or {})
        operation = OperationKind(metadata.pop("operation"))
        input_tokens = int(metadata.pop("tokensIn", 0))
        output_tokens = int(metadata.pop("tokensOut", 0))
        currency = metadata.pop("currency", "USD")
        state = metadata.pop("quotaState", None)
        if state is None:
            state = QuotaState.COUNTED if data.get("countsTowardQuota", True) else QuotaState.FORGIVEN
        return cls(
            user_id=data["userId"],
            provider=data["aiProvider"],
            model=data.get("aiModel", ""),
            operation=operation,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=float(data.get("cost", 0.0)),
            currency=currency,
            latency_ms=float(data.get("responseTime", 0.0)),
            outcome=Outcome(data.get("status", "success")),
            error_message=data.get("errorMessage"),
            quota_state=QuotaState(state),
            metadata=metadata,
            timestamp=datetime.fromisoformat(data["createdAt"]),
        )


@dataclass
class RouteResult:
    """Outcome of a routed operation."""
    data: Any
    provider: str
    model: str
    token_usage: TokenUsage
    cost: CostBreakdown
    latency_ms: float
    is_fallback: bool = False
    fallback_reason: str | None = None
