"""
Shared builders for the test suite: stub-backed configuration and services, a fake clock
and a recording sleep.
"""

import random
from datetime import datetime, timedelta

from ai_router.adapters import ProviderError, StubAdapter
from ai_router.config import Config, ConfigManager, ProviderConfig, RetryConfig, RoutingConfig
from ai_router.ledger import UsageLedger
from ai_router.models import OperationKind
from ai_router.router import Router
from ai_router.service import AIService

PAYLOADS = {
    OperationKind.PARSE: {"resume_text": "Ada Lovelace\nEngineer at Analytical Engines"},
    OperationKind.ENHANCE: {"content": ["Wrote code"], "section_type": "experience"},
    OperationKind.SUMMARIZE: {"resume_data": {"name": "Ada", "skills": ["Python"]}},
    OperationKind.CATEGORIZE: {"skills_text": "Python, SQL, Leadership"},
    OperationKind.MATCH: {"resume_text": "Python developer", "job_description": "Python role"},
    OperationKind.GENERATE: {
        "resume_data": {"name": "Ada"},
        "job_description": "Backend engineer",
        "company_name": "Acme",
    },
}

JSON_ANSWERS = {
    OperationKind.PARSE: '{"personalInfo": {"fullName": "Ada"}}',
    OperationKind.CATEGORIZE: '{"categories": []}',
    OperationKind.MATCH: '{"matchScore": 80}',
}


def unavailable(provider: str = "gemini") -> ProviderError:
    return ProviderError(provider, "Service unavailable", status_code=503)


class FakeClock:
    """Settable wall clock."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2025, 3, 14, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class SleepRecorder:
    """Awaitable sleep that records delays instead of waiting."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_config_manager(max_attempts: int = 3, **routing) -> ConfigManager:
    config = Config(
        providers={
            "openai": ProviderConfig(api_key="test-key", model="gpt-4o", type="stub"),
            "gemini": ProviderConfig(api_key="test-key", model="gemini-2.5-flash", type="stub"),
        },
        routing=RoutingConfig(**routing),
        retry=RetryConfig(max_attempts=max_attempts, base_delay=1.0, max_delay=10.0, jitter=0.25),
    )
    return ConfigManager.from_config(config)


def make_adapters() -> dict[str, StubAdapter]:
    return {
        "openai": StubAdapter(name="openai", model="gpt-4o"),
        "gemini": StubAdapter(name="gemini", model="gemini-2.5-flash"),
    }


def make_router(
    seed: int = 7,
    clock: FakeClock | None = None,
    ledger: UsageLedger | None = None,
    max_attempts: int = 3,
    **routing,
):
    """Router over stub adapters; returns (router, ledger, adapters, sleep)."""
    adapters = make_adapters()
    ledger = ledger or UsageLedger(clock=clock or FakeClock())
    sleep = SleepRecorder()
    router = Router(
        make_config_manager(max_attempts=max_attempts, **routing),
        ledger,
        adapters=adapters,
        rng=random.Random(seed),
        sleep=sleep,
    )
    return router, ledger, adapters, sleep


def make_service(
    clock: FakeClock | None = None,
    seed: int = 7,
    ledger: UsageLedger | None = None,
    **routing,
):
    """AIService over stub adapters; returns (service, adapters)."""
    adapters = make_adapters()
    service = AIService.from_config(
        make_config_manager(**routing),
        adapters=adapters,
        ledger=ledger,
        rng=random.Random(seed),
        sleep=SleepRecorder(),
        clock=clock or FakeClock(),
    )
    return service, adapters
