"""
AI Router Usage Example

This script walks through the request flow of the AI router:
1. Build the service (stub providers unless config.yaml is present)
2. Run resume operations for users on different tiers
3. Hit a free-tier quota limit
4. View usage, fallback statistics and quota status as an administrator
"""

import asyncio
import logging
from pathlib import Path

from ai_router import (
    AdminService,
    AIService,
    Config,
    ConfigManager,
    ProviderConfig,
    ProviderError,
    QuotaExceededError,
    StubAdapter,
    SubscriptionTier,
    User,
    ValidationError,
)

RESUME_TEXT = """Ada Lovelace
Senior Engineer, Analytical Engines Ltd (2019 - present)
- Built a batch scheduler in Python processing 2M jobs/day
Skills: Python, SQL, Kubernetes, Leadership"""

JOB_DESCRIPTION = "Backend engineer with Python and Kubernetes experience."


def build_service() -> tuple[AIService, dict[str, StubAdapter]]:
    """Use config.yaml when it exists, otherwise two stub providers."""
    if Path("config.yaml").exists():
        service = AIService.from_config("config.yaml")
        return service, {}

    adapters = {
        "openai": StubAdapter(name="openai", model="gpt-4o"),
        "gemini": StubAdapter(name="gemini", model="gemini-2.5-flash"),
    }
    config = Config(providers={
        "openai": ProviderConfig(api_key="", model="gpt-4o", type="stub"),
        "gemini": ProviderConfig(api_key="", model="gemini-2.5-flash", type="stub"),
    })
    service = AIService.from_config(ConfigManager.from_config(config), adapters=adapters)
    return service, adapters


async def routing_example(service: AIService):
    print("=" * 60)
    print("Routing by Tier")
    print("=" * 60)

    users = [
        User("demo-free", SubscriptionTier.FREE, name="Free User"),
        User("demo-pro", SubscriptionTier.PRO, name="Pro User"),
        User("demo-premium", SubscriptionTier.PREMIUM, name="Premium User"),
    ]
    for user in users:
        info = service.get_service_info(user)
        result = await service.perform_operation(user, "match", {
            "resume_text": RESUME_TEXT,
            "job_description": JOB_DESCRIPTION,
        })
        print(f"\n{user.name} ({info['aiModel']}):")
        print(f"  Provider: {result['provider']} / {result['model']}")
        print(f"  Tokens:   {result['tokenUsage']['totalTokens']}")
        print(f"  Cost:     ${result['cost']['amount']:.6f} "
              f"({result['cost']['amountDisplay']:.4f} {result['cost']['displayCurrency']})")

    cover = await service.perform_operation(users[0], "generate", {
        "resume_data": {"name": "Ada Lovelace"},
        "job_description": JOB_DESCRIPTION,
        "company_name": "Acme",
    })
    print(f"\nCover letters always go to {cover['provider']}")


async def fallback_example(service: AIService, adapters: dict[str, StubAdapter]):
    print("\n" + "=" * 60)
    print("Provider Fallback")
    print("=" * 60)

    if "gemini" not in adapters:
        print("Skipped (real providers configured)")
        return

    adapters["gemini"].push(*[ProviderError("gemini", "Service unavailable", status_code=503)] * 3)
    result = await service.perform_operation(
        User("demo-free", SubscriptionTier.FREE), "categorize", {"skills_text": "Python, SQL"},
    )
    print(f"Served by {result['provider']} (fallback={result['fallback']})")
    print(f"Reason: {result['fallbackReason']}")


async def quota_example(service: AIService):
    print("\n" + "=" * 60)
    print("Quota Enforcement")
    print("=" * 60)

    user = User("demo-quota", SubscriptionTier.FREE)
    try:
        await service.perform_operation(user, "parse", {"resume_text": ""})
    except ValidationError as e:
        print(f"Rejected before routing: {e}")

    for i in range(12):
        try:
            await service.perform_operation(user, "summarize", {"resume_data": {"name": "Ada"}})
        except QuotaExceededError as e:
            print(f"Request {i + 1}: {e}")
            print(f"  Resets at {e.resets_at.isoformat()}")
            break
    print(f"Status: {service.get_quota_status(user)['daily']}")


def admin_example(service: AIService):
    print("\n" + "=" * 60)
    print("Administration")
    print("=" * 60)

    admin = AdminService.for_service(service)
    users = [
        User("demo-free", SubscriptionTier.FREE, name="Free User"),
        User("demo-pro", SubscriptionTier.PRO, name="Pro User"),
        User("demo-quota", SubscriptionTier.FREE, name="Quota User"),
    ]
    listing = admin.list_quota_status(users, sort_by="usage")
    for entry in listing["users"]:
        daily = entry["quota"]["daily"]
        print(f"  {entry['name']:<12} {daily['used']}/{daily['limit']} today")
    print(f"Summary: {listing['summary']}")

    print(f"Reset: {admin.reset_daily_quota('demo-quota')}")
    print(f"Stats: {admin.get_system_stats()}")


async def main():
    """Run all examples."""
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    print("\n" + "=" * 60)
    print("AI Router - Usage Examples")
    print("=" * 60)

    service, adapters = build_service()
    service.validate()
    try:
        await routing_example(service)
        await fallback_example(service, adapters)
        await quota_example(service)
        admin_example(service)
    finally:
        await service.aclose()

    print("\n" + "=" * 60)
    print("Examples completed!")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
