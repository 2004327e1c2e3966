"""
Tests for the provider selector: hybrid split, fallback, one usage record per
operation and cancellation behavior.
"""

import asyncio
import logging
import threading
import time

import pytest
from hypothesis import given, strategies as st, settings

from ai_router.adapters import ProviderError, StubAdapter
from ai_router.config import ConfigError
from ai_router.fallback_tracker import FallbackTracker
from ai_router.ledger import InMemoryUsageStore, UsageLedger
from ai_router.models import OperationKind, Outcome, QuotaState, SubscriptionTier, User
from ai_router.prompts import PayloadError
from ai_router.retry import RetryExhaustedError
from ai_router.router import Router

from support import (
    JSON_ANSWERS,
    PAYLOADS,
    FakeClock,
    SleepRecorder,
    make_config_manager,
    make_router,
    unavailable,
)

FREE = User("u-free", SubscriptionTier.FREE)
PRO = User("u-pro", SubscriptionTier.PRO)
PREMIUM = User("u-premium", SubscriptionTier.PREMIUM)


class TestProviderSelection:

    def test_hybrid_split_matches_weight(self):
        router, ledger, _, _ = make_router(seed=1234)

        async def run():
            return [
                await router.route(PRO, OperationKind.PARSE, PAYLOADS[OperationKind.PARSE])
                for _ in range(2000)
            ]

        results = asyncio.run(run())
        share = sum(1 for r in results if r.provider == "gemini") / len(results)
        assert 0.65 <= share <= 0.75
        assert len(ledger.records()) == 2000

    def test_hybrid_split_is_reproducible_with_seed(self):
        def providers(seed):
            router, _, _, _ = make_router(seed=seed)

            async def run():
                return [
                    (await router.route(PRO, OperationKind.SUMMARIZE, PAYLOADS[OperationKind.SUMMARIZE])).provider
                    for _ in range(20)
                ]

            return asyncio.run(run())

        assert providers(42) == providers(42)

    @settings(max_examples=30, deadline=None)
    @given(tier=st.sampled_from(list(SubscriptionTier)))
    def test_pinned_kind_goes_to_quality_provider(self, tier):
        router, _, _, _ = make_router()
        result = asyncio.run(router.route(
            User("u", tier), OperationKind.GENERATE, PAYLOADS[OperationKind.GENERATE]
        ))
        assert result.provider == "openai"

    def test_admin_role_routes_like_admin_tier(self):
        router, _, _, _ = make_router()
        admin = User("root", SubscriptionTier.FREE, role="admin")
        result = asyncio.run(router.route(admin, OperationKind.PARSE, PAYLOADS[OperationKind.PARSE]))
        assert result.provider == "openai"


class TestUsageRecording:

    @settings(max_examples=30, deadline=None)
    @given(kind=st.sampled_from(list(OperationKind)))
    def test_exactly_one_record_per_successful_operation(self, kind):
        router, ledger, _, _ = make_router()
        result = asyncio.run(router.route(FREE, kind, PAYLOADS[kind]))

        records = ledger.records()
        assert len(records) == 1
        record = records[0]
        assert record.provider == result.provider
        assert record.operation is kind
        assert record.outcome is Outcome.SUCCESS
        assert record.quota_state is QuotaState.COUNTED
        assert record.input_tokens == 120 and record.output_tokens == 80
        assert record.cost == pytest.approx(result.cost.amount)

    def test_success_cost_uses_rate_table(self):
        router, ledger, _, _ = make_router()
        result = asyncio.run(router.route(FREE, OperationKind.MATCH, PAYLOADS[OperationKind.MATCH]))
        assert result.provider == "gemini"
        assert result.cost.amount == pytest.approx(120 / 1000 * 0.000125 + 80 / 1000 * 0.000375)
        assert result.cost.amount_display == pytest.approx(result.cost.amount * 84)

    def test_unpriced_model_records_zero_cost(self, caplog):
        router, ledger, adapters, _ = make_router()
        adapters["gemini"].model = "gemini-2.0-flash"

        with caplog.at_level(logging.WARNING, logger="ai_router.router"):
            result = asyncio.run(router.route(FREE, OperationKind.MATCH, PAYLOADS[OperationKind.MATCH]))

        assert result.model == "gemini-2.0-flash"
        assert result.cost.amount == 0
        record = ledger.records()[0]
        assert record.outcome is Outcome.SUCCESS
        assert record.cost == 0
        assert record.input_tokens == 120
        assert "No pricing for gemini/gemini-2.0-flash" in caplog.text

    def test_structured_answer_is_parsed(self):
        router, _, adapters, _ = make_router()
        adapters["gemini"].push("```json\n" + JSON_ANSWERS[OperationKind.MATCH] + "\n```")
        result = asyncio.run(router.route(FREE, OperationKind.MATCH, PAYLOADS[OperationKind.MATCH]))
        assert result.data == {"matchScore": 80}

    def test_invalid_payload_is_neither_called_nor_recorded(self):
        router, ledger, adapters, _ = make_router()
        with pytest.raises(PayloadError):
            asyncio.run(router.route(FREE, OperationKind.MATCH, {"resume_text": "x"}))
        assert ledger.records() == []
        assert adapters["gemini"].calls == []

    def test_ledger_failure_does_not_mask_result(self):
        class BrokenStore(InMemoryUsageStore):
            def append(self, record):
                raise OSError("disk full")

        router, _, _, _ = make_router(ledger=UsageLedger(BrokenStore(), clock=FakeClock()))
        result = asyncio.run(router.route(FREE, OperationKind.PARSE, PAYLOADS[OperationKind.PARSE]))
        assert result.provider == "gemini"

    def test_unexpected_adapter_error_is_recorded_once(self):
        router, ledger, adapters, _ = make_router()
        adapters["gemini"].push(RuntimeError("boom"))

        with pytest.raises(RuntimeError, match="boom"):
            asyncio.run(router.route(FREE, OperationKind.SUMMARIZE, PAYLOADS[OperationKind.SUMMARIZE]))

        records = ledger.records()
        assert len(records) == 1
        assert records[0].provider == "gemini"
        assert records[0].outcome is Outcome.ERROR
        assert records[0].error_message == "boom"
        assert records[0].cost == 0
        assert adapters["openai"].calls == []

    def test_unexpected_error_on_fallback_is_recorded_once(self):
        router, ledger, adapters, _ = make_router()
        adapters["gemini"].push(unavailable(), unavailable(), unavailable())
        adapters["openai"].push(RuntimeError("boom"))

        with pytest.raises(RuntimeError, match="boom"):
            asyncio.run(router.route(FREE, OperationKind.PARSE, PAYLOADS[OperationKind.PARSE]))

        records = ledger.records()
        assert len(records) == 1
        assert records[0].provider == "openai"
        assert records[0].outcome is Outcome.ERROR
        assert records[0].metadata["fallback"] is True
        assert router.fallback_tracker.get_summary()["failed"] == 1


class TestFallback:

    def test_exhausted_cost_provider_falls_back_to_quality_provider(self):
        router, ledger, adapters, sleep = make_router()
        adapters["gemini"].push(unavailable(), unavailable(), unavailable())

        result = asyncio.run(router.route(FREE, OperationKind.PARSE, PAYLOADS[OperationKind.PARSE]))

        assert result.provider == "openai"
        assert result.is_fallback
        assert "3 attempts" in result.fallback_reason
        assert len(adapters["gemini"].calls) == 3
        assert len(adapters["openai"].calls) == 1
        assert len(sleep.delays) == 2

        records = ledger.records()
        assert len(records) == 1
        assert records[0].provider == "openai"
        assert records[0].outcome is Outcome.SUCCESS
        assert records[0].metadata["fallback"] is True
        assert records[0].metadata["targetProvider"] == "gemini"
        assert "Service unavailable" in records[0].metadata["fallbackReason"]

        summary = router.fallback_tracker.get_summary()
        assert summary["succeeded"] == 1
        assert summary["byRoute"] == {"gemini->openai": 1}

    def test_recovered_retry_does_not_fall_back(self):
        router, ledger, adapters, _ = make_router()
        adapters["gemini"].push(unavailable())
        result = asyncio.run(router.route(FREE, OperationKind.PARSE, PAYLOADS[OperationKind.PARSE]))
        assert result.provider == "gemini"
        assert not result.is_fallback
        assert adapters["openai"].calls == []

    def test_fatal_error_falls_back_without_retry(self):
        router, ledger, adapters, sleep = make_router()
        adapters["gemini"].push(ProviderError("gemini", "Invalid API key", status_code=401))
        result = asyncio.run(router.route(FREE, OperationKind.ENHANCE, PAYLOADS[OperationKind.ENHANCE]))
        assert result.provider == "openai"
        assert len(adapters["gemini"].calls) == 1
        assert sleep.delays == []

    def test_fatal_error_without_fallback_on_fatal_propagates(self):
        router, ledger, adapters, _ = make_router(fallback_on_fatal=False)
        adapters["gemini"].push(ProviderError("gemini", "Invalid API key", status_code=401))
        with pytest.raises(ProviderError):
            asyncio.run(router.route(FREE, OperationKind.ENHANCE, PAYLOADS[OperationKind.ENHANCE]))
        assert adapters["openai"].calls == []
        assert [r.provider for r in ledger.records()] == ["gemini"]

    @pytest.mark.parametrize("status", [400, 422])
    def test_request_errors_never_fall_back(self, status):
        router, ledger, adapters, _ = make_router()
        adapters["gemini"].push(ProviderError("gemini", "bad request", status_code=status))
        with pytest.raises(ProviderError) as exc_info:
            asyncio.run(router.route(FREE, OperationKind.PARSE, PAYLOADS[OperationKind.PARSE]))
        assert exc_info.value.status_code == status
        assert adapters["openai"].calls == []

        records = ledger.records()
        assert len(records) == 1
        assert records[0].outcome is Outcome.ERROR
        assert records[0].provider == "gemini"
        assert records[0].metadata["statusCode"] == status

    def test_malformed_json_answer_is_fatal_and_falls_back(self):
        router, _, adapters, _ = make_router()
        adapters["gemini"].push("this is not json")
        result = asyncio.run(router.route(FREE, OperationKind.MATCH, PAYLOADS[OperationKind.MATCH]))
        assert result.provider == "openai"
        assert len(adapters["gemini"].calls) == 1

    def test_quality_provider_failure_propagates(self):
        router, ledger, adapters, _ = make_router()
        adapters["openai"].push(unavailable("openai"), unavailable("openai"), unavailable("openai"))
        with pytest.raises(RetryExhaustedError) as exc_info:
            asyncio.run(router.route(PREMIUM, OperationKind.MATCH, PAYLOADS[OperationKind.MATCH]))
        assert exc_info.value.attempts == 3
        assert adapters["gemini"].calls == []

        records = ledger.records()
        assert len(records) == 1
        assert records[0].provider == "openai"
        assert records[0].outcome is Outcome.ERROR
        assert records[0].metadata["attempts"] == 3
        assert records[0].total_tokens == 0
        assert records[0].cost == 0.0

    def test_quality_provider_may_fall_back_to_cost_provider_when_enabled(self):
        router, ledger, adapters, _ = make_router(fallback_from_primary=True)
        adapters["openai"].push(unavailable("openai"), unavailable("openai"), unavailable("openai"))
        result = asyncio.run(router.route(PREMIUM, OperationKind.MATCH, PAYLOADS[OperationKind.MATCH]))
        assert result.provider == "gemini"
        assert result.is_fallback

    def test_both_paths_failing_raises_fallback_error_with_one_record(self):
        router, ledger, adapters, _ = make_router()
        adapters["gemini"].push(unavailable(), unavailable(), unavailable())
        adapters["openai"].push(ProviderError("openai", "Invalid API key", status_code=401))

        with pytest.raises(ProviderError) as exc_info:
            asyncio.run(router.route(FREE, OperationKind.PARSE, PAYLOADS[OperationKind.PARSE]))
        assert exc_info.value.provider == "openai"

        records = ledger.records()
        assert len(records) == 1
        assert records[0].provider == "openai"
        assert records[0].outcome is Outcome.ERROR
        assert records[0].metadata["fallback"] is True
        assert router.fallback_tracker.get_summary()["failed"] == 1

    def test_unconfigured_provider_is_recorded_and_raised(self):
        config_manager = make_config_manager()
        del config_manager.config.providers["gemini"]
        ledger = UsageLedger(clock=FakeClock())
        router = Router(
            config_manager,
            ledger,
            adapters={"openai": StubAdapter(name="openai", model="gpt-4o")},
            sleep=SleepRecorder(),
            fallback_tracker=FallbackTracker(),
        )
        with pytest.raises(ConfigError):
            asyncio.run(router.route(FREE, OperationKind.PARSE, PAYLOADS[OperationKind.PARSE]))
        records = ledger.records()
        assert len(records) == 1
        assert records[0].outcome is Outcome.ERROR
        assert records[0].provider == "gemini"

    def test_adapters_are_built_from_provider_config(self):
        config_manager = make_config_manager()
        router = Router(config_manager, UsageLedger(clock=FakeClock()), sleep=SleepRecorder())
        adapter = router.get_adapter("gemini")
        assert isinstance(adapter, StubAdapter)
        assert adapter.name == "gemini"
        assert adapter.model == "gemini-2.5-flash"
        assert router.get_adapter("gemini") is adapter


class TestCancellation:

    def test_cancel_during_provider_call_writes_nothing(self):
        router, ledger, adapters, _ = make_router()
        adapters["gemini"].delay = 10.0

        async def run():
            task = asyncio.create_task(
                router.route(FREE, OperationKind.PARSE, PAYLOADS[OperationKind.PARSE])
            )
            await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(run())
        assert ledger.records() == []

    def test_cancel_during_backoff_writes_nothing(self):
        started = []

        async def slow_sleep(delay):
            started.append(delay)
            await asyncio.sleep(3600)

        router, ledger, adapters, _ = make_router()
        router._sleep = slow_sleep
        adapters["gemini"].push(unavailable(), unavailable(), unavailable())

        async def run():
            task = asyncio.create_task(
                router.route(FREE, OperationKind.PARSE, PAYLOADS[OperationKind.PARSE])
            )
            while not started:
                await asyncio.sleep(0.001)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(run())
        assert ledger.records() == []
        assert adapters["openai"].calls == []

    def test_cancel_during_ledger_write_completes_the_write(self):
        writing = threading.Event()

        class SlowStore(InMemoryUsageStore):
            def append(self, record):
                writing.set()
                time.sleep(0.2)
                super().append(record)

        ledger = UsageLedger(SlowStore(), clock=FakeClock())
        router, _, _, _ = make_router(ledger=ledger)

        async def run():
            task = asyncio.create_task(
                router.route(FREE, OperationKind.PARSE, PAYLOADS[OperationKind.PARSE])
            )
            while not writing.is_set():
                await asyncio.sleep(0.001)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(run())
        records = ledger.records()
        assert len(records) == 1
        assert records[0].outcome is Outcome.SUCCESS


class TestFallbackTracker:

    def test_counters_and_recent_window(self):
        clock = FakeClock()
        tracker = FallbackTracker(max_events=2, clock=clock)
        tracker.record_fallback("u1", "parse", "gemini", "openai", "overloaded", 100.0, success=True)
        clock.advance(seconds=1)
        tracker.record_fallback("u2", "parse", "gemini", "openai", "timeout", 300.0, success=False)
        clock.advance(seconds=1)
        tracker.record_fallback("u3", "match", "openai", "gemini", "rate limit", 200.0, success=True)

        summary = tracker.get_summary()
        assert (summary["total"], summary["succeeded"], summary["failed"]) == (3, 2, 1)
        assert summary["successRate"] == pytest.approx(2 / 3)
        assert summary["averageDurationMs"] == 200.0
        assert summary["byRoute"] == {"gemini->openai": 2, "openai->gemini": 1}
        assert summary["byOperation"] == {"parse": 2, "match": 1}

        # only the last two events are kept, newest first
        assert [e.user_id for e in tracker.get_recent_events()] == ["u3", "u2"]
        assert tracker.get_recent_events(1)[0].to_dict()["route"] == "openai->gemini"
        assert tracker.get_recent_events(0) == []

    def test_clear(self):
        tracker = FallbackTracker()
        tracker.record_fallback("u1", "parse", "gemini", "openai", "x", 1.0, success=True)
        tracker.clear()
        assert tracker.get_summary()["total"] == 0
        assert tracker.get_summary()["successRate"] == 0.0
        assert tracker.get_recent_events() == []
