"""
Usage Ledger

Append-only record of every attempted AI operation. The ledger serves two
readers: analytics (cost, tokens, latency per provider/feature) and the quota
enforcer (count of counted successes inside a time window).

Records are never mutated except for ``quota_state``, which an administrative
reset moves from ``counted`` to ``forgiven``. Rows are only removed by an
explicit ``purge``.

Stores:
- InMemoryUsageStore: process-local list, for tests and local development
- JsonlUsageStore: one JSON object per line in ``{log_dir}/usage.jsonl``
"""

import asyncio
import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from .config import LedgerConfig
from .models import (
    CostBreakdown,
    OperationKind,
    Outcome,
    QuotaState,
    TokenUsage,
    UsageRecord,
)

logger = logging.getLogger(__name__)


class UsageStore(ABC):
    """Storage backend for usage records."""

    @abstractmethod
    def append(self, record: UsageRecord) -> None:
        """Append one record."""

    @abstractmethod
    def all(self) -> list[UsageRecord]:
        """All records in insertion order."""

    @abstractmethod
    def forgive(self, predicate: Callable[[UsageRecord], bool]) -> int:
        """Move matching counted records to ``forgiven``; returns how many changed."""

    @abstractmethod
    def delete(self, predicate: Callable[[UsageRecord], bool]) -> int:
        """Remove matching records; returns how many were removed."""


class InMemoryUsageStore(UsageStore):
    def __init__(self):
        self._records: list[UsageRecord] = []
        self._lock = threading.Lock()

    def append(self, record: UsageRecord) -> None:
        with self._lock:
            self._records.append(record)

    def all(self) -> list[UsageRecord]:
        with self._lock:
            return list(self._records)

    def forgive(self, predicate: Callable[[UsageRecord], bool]) -> int:
        changed = 0
        with self._lock:
            for record in self._records:
                if record.quota_state is QuotaState.COUNTED and predicate(record):
                    record.quota_state = QuotaState.FORGIVEN
                    changed += 1
        return changed

    def delete(self, predicate: Callable[[UsageRecord], bool]) -> int:
        with self._lock:
            kept = [r for r in self._records if not predicate(r)]
            removed = len(self._records) - len(kept)
            self._records = kept
        return removed


class JsonlUsageStore(UsageStore):
    """
    Usage records persisted as JSON lines.

    The file lives at ``path`` or, when omitted, at ``{AI_ROUTER_LOG_DIR}/usage.jsonl``
    (default directory ``logs``). Appends are line writes; state changes and
    purges rewrite the file.
    """

    FILE_NAME = "usage.jsonl"

    def __init__(self, path: str | Path | None = None):
        if path is None:
            log_root = Path(os.getenv("AI_ROUTER_LOG_DIR", "logs"))
            path = log_root / self.FILE_NAME
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def append(self, record: UsageRecord) -> None:
        line = json.dumps(record.to_dict(), ensure_ascii=False)
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")

    def _read(self) -> list[UsageRecord]:
        if not self.path.exists():
            return []
        records = []
        with open(self.path, "r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(UsageRecord.from_dict(json.loads(line)))
                except (ValueError, KeyError) as e:
                    logger.warning("Skipping malformed usage line %s:%d: %s", self.path, line_no, e)
        return records

    def _write(self, records: Iterable[UsageRecord]) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            for record in records:
                f.write(json.dumps(record.to_dict(), ensure_ascii=False) + "\n")
        os.replace(tmp_path, self.path)

    def all(self) -> list[UsageRecord]:
        with self._lock:
            return self._read()

    def forgive(self, predicate: Callable[[UsageRecord], bool]) -> int:
        with self._lock:
            records = self._read()
            changed = 0
            for record in records:
                if record.quota_state is QuotaState.COUNTED and predicate(record):
                    record.quota_state = QuotaState.FORGIVEN
                    changed += 1
            if changed:
                self._write(records)
        return changed

    def delete(self, predicate: Callable[[UsageRecord], bool]) -> int:
        with self._lock:
            records = self._read()
            kept = [r for r in records if not predicate(r)]
            removed = len(records) - len(kept)
            if removed:
                self._write(kept)
        return removed


def create_store(config: LedgerConfig | None = None) -> UsageStore:
    """Build the store named by the ledger configuration."""
    config = config or LedgerConfig()
    if config.backend == "memory":
        return InMemoryUsageStore()
    if config.backend == "jsonl":
        return JsonlUsageStore(config.path)
    raise ValueError(f"Unknown ledger backend: {config.backend}")


def start_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_month(moment: datetime) -> datetime:
    return start_of_day(moment).replace(day=1)


class UsageLedger:
    """Write and query usage records."""

    def __init__(
        self,
        store: UsageStore | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store or InMemoryUsageStore()
        self.clock = clock

    async def record(
        self,
        user_id: str,
        operation: OperationKind,
        provider: str,
        model: str,
        token_usage: TokenUsage,
        cost: CostBreakdown,
        latency_ms: float,
        outcome: Outcome,
        error_message: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[UsageRecord]:
        """
        Append one usage record.

        Never raises on storage failure: the failure is logged and ``None``
        is returned so the caller's own result or error is preserved.
        """
        try:
            record = UsageRecord(
                user_id=user_id,
                provider=provider,
                model=model,
                operation=operation,
                input_tokens=token_usage.input_tokens,
                output_tokens=token_usage.output_tokens,
                cost=cost.amount,
                currency=cost.currency,
                latency_ms=latency_ms,
                outcome=outcome,
                error_message=error_message,
                metadata=dict(metadata or {}),
                timestamp=self.clock(),
            )
            await asyncio.to_thread(self.store.append, record)
        except Exception as e:
            logger.error(
                "Failed to write usage record for user %s (%s via %s): %s",
                user_id, operation.value, provider, e,
            )
            return None
        return record

    # ----- queries -----

    def records(
        self,
        user_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[UsageRecord]:
        """Records filtered by user and ``[since, until)`` window, oldest first."""
        result = []
        for record in self.store.all():
            if user_id is not None and record.user_id != user_id:
                continue
            if since is not None and record.timestamp < since:
                continue
            if until is not None and record.timestamp >= until:
                continue
            result.append(record)
        return result

    def count(
        self,
        user_id: str,
        since: datetime,
        until: Optional[datetime] = None,
        counted_only: bool = True,
        outcome: Optional[Outcome] = Outcome.SUCCESS,
    ) -> int:
        """
        Count a user's records in a window.

        With the defaults this is the quota measure: successful records still
        counted toward quota.
        """
        total = 0
        for record in self.records(user_id, since, until):
            if outcome is not None and record.outcome is not outcome:
                continue
            if counted_only and not record.counts_toward_quota:
                continue
            total += 1
        return total

    def quota_usage(self, user_id: str, now: datetime) -> tuple[int, int]:
        """
        Quota-counted successes for the day and the month containing ``now``,
        from a single read of the store.
        """
        day_start = start_of_day(now)
        daily = monthly = 0
        for record in self.records(user_id, since=start_of_month(now)):
            if record.outcome is not Outcome.SUCCESS or not record.counts_toward_quota:
                continue
            monthly += 1
            if record.timestamp >= day_start:
                daily += 1
        return daily, monthly

    def recent(self, user_id: Optional[str] = None, limit: int = 20) -> list[UsageRecord]:
        """Most recent records, newest first."""
        records = sorted(self.records(user_id), key=lambda r: r.timestamp, reverse=True)
        return records[:limit]

    def summarize_by_provider(
        self,
        since: Optional[datetime] = None,
        user_id: Optional[str] = None,
    ) -> dict[str, dict[str, Any]]:
        summary: dict[str, dict[str, Any]] = {}
        for record in self.records(user_id, since):
            entry = summary.setdefault(
                record.provider, {"calls": 0, "cost": 0.0, "tokens": 0, "errors": 0}
            )
            entry["calls"] += 1
            entry["cost"] += record.cost
            entry["tokens"] += record.total_tokens
            if record.outcome is Outcome.ERROR:
                entry["errors"] += 1
        return summary

    def summarize_by_feature(
        self,
        user_id: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> dict[str, dict[str, Any]]:
        summary: dict[str, dict[str, Any]] = {}
        for record in self.records(user_id, since):
            entry = summary.setdefault(record.feature, {"count": 0, "tokens": 0, "cost": 0.0})
            entry["count"] += 1
            entry["tokens"] += record.total_tokens
            entry["cost"] += record.cost
        return summary

    def daily_series(self, user_id: Optional[str] = None, days: int = 30) -> list[dict[str, Any]]:
        """Per-day count/tokens/cost for the last ``days`` days, oldest first."""
        today = start_of_day(self.clock())
        first = today - timedelta(days=days - 1)
        buckets: dict[str, dict[str, Any]] = {}
        for offset in range(days):
            day = (first + timedelta(days=offset)).date().isoformat()
            buckets[day] = {"date": day, "count": 0, "tokens": 0, "cost": 0.0}
        for record in self.records(user_id, since=first):
            bucket = buckets.get(record.timestamp.date().isoformat())
            if bucket is None:
                continue
            bucket["count"] += 1
            bucket["tokens"] += record.total_tokens
            bucket["cost"] += record.cost
        return list(buckets.values())

    def stats(self) -> dict[str, Any]:
        """System-wide usage statistics."""
        records = self.store.all()
        today = start_of_day(self.clock())
        successes = sum(1 for r in records if r.outcome is Outcome.SUCCESS)
        return {
            "totalRecords": len(records),
            "todayRecords": sum(1 for r in records if r.timestamp >= today),
            "successRate": successes / len(records) if records else 0.0,
            "averageLatencyMs": (
                round(sum(r.latency_ms for r in records) / len(records), 2) if records else 0.0
            ),
            "totalCost": sum(r.cost for r in records),
        }

    # ----- administrative mutations -----

    def mark_forgiven(
        self,
        user_id: str,
        since: datetime,
        until: Optional[datetime] = None,
    ) -> int:
        """
        Forgive a user's counted successful records in a window.

        Records stay in the ledger for analytics; they stop counting toward quota.
        """
        def matches(record: UsageRecord) -> bool:
            return (
                record.user_id == user_id
                and record.outcome is Outcome.SUCCESS
                and record.timestamp >= since
                and (until is None or record.timestamp < until)
            )

        changed = self.store.forgive(matches)
        logger.info("Forgave %d usage records for user %s since %s", changed, user_id, since)
        return changed

    def purge(self, user_id: Optional[str] = None) -> int:
        """Delete records (all, or one user's). Support tooling only."""
        removed = self.store.delete(lambda r: user_id is None or r.user_id == user_id)
        logger.warning("Purged %d usage records (user=%s)", removed, user_id or "*")
        return removed
