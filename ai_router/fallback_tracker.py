"""
Fallback tracker: in-process counters over provider fallbacks, shown on the
admin statistics page. The ledger remains the record of what each request
cost; this only answers "how often does the cost provider fail over, and
does the quality provider save it".
"""

import threading
from collections import Counter, deque
from dataclasses import dataclass
from datetime import datetime
from typing import Callable


@dataclass(frozen=True)
class FallbackEvent:
    """One request that left its target provider."""
    timestamp: datetime
    user_id: str
    operation: str
    original_provider: str
    fallback_provider: str
    error_message: str
    fallback_duration_ms: float
    success: bool

    @property
    def route(self) -> str:
        return f"{self.original_provider}->{self.fallback_provider}"

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "userId": self.user_id,
            "operation": self.operation,
            "route": self.route,
            "errorMessage": self.error_message,
            "fallbackDurationMs": round(self.fallback_duration_ms, 2),
            "success": self.success,
        }


class FallbackTracker:
    """
    Thread-safe fallback counters plus a bounded window of recent events.

    Counters cover every event since start (or the last ``clear``); only the
    last ``max_events`` events are kept individually.
    """

    def __init__(self, max_events: int = 500, clock: Callable[[], datetime] = datetime.now):
        self._clock = clock
        self._lock = threading.Lock()
        self._events: deque[FallbackEvent] = deque(maxlen=max_events)
        self._outcomes: Counter[bool] = Counter()
        self._routes: Counter[str] = Counter()
        self._operations: Counter[str] = Counter()
        self._duration_ms = 0.0

    def record_fallback(
        self,
        user_id: str,
        operation: str,
        original_provider: str,
        fallback_provider: str,
        error_message: str,
        fallback_duration_ms: float,
        success: bool,
    ) -> FallbackEvent:
        """
        Record one fallback.

        Args:
            user_id: User whose request fell back
            operation: Operation kind (e.g. "parse")
            original_provider: Provider that failed
            fallback_provider: Provider used instead
            error_message: Error from the original provider
            fallback_duration_ms: Time spent on the fallback call in milliseconds
            success: Whether the fallback call succeeded
        """
        event = FallbackEvent(
            self._clock(), user_id, operation, original_provider,
            fallback_provider, error_message, fallback_duration_ms, success,
        )
        with self._lock:
            self._events.append(event)
            self._outcomes[success] += 1
            self._routes[event.route] += 1
            self._operations[operation] += 1
            self._duration_ms += fallback_duration_ms
        return event

    def get_summary(self) -> dict:
        with self._lock:
            total = sum(self._outcomes.values())
            saved = self._outcomes[True]
            return {
                "total": total,
                "succeeded": saved,
                "failed": self._outcomes[False],
                "successRate": saved / total if total else 0.0,
                "averageDurationMs": round(self._duration_ms / total, 2) if total else 0.0,
                "byRoute": dict(self._routes),
                "byOperation": dict(self._operations),
            }

    def get_recent_events(self, limit: int = 10) -> list[FallbackEvent]:
        """Most recent events, newest first."""
        if limit <= 0:
            return []
        with self._lock:
            return list(self._events)[::-1][:limit]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
            self._outcomes.clear()
            self._routes.clear()
            self._operations.clear()
            self._duration_ms = 0.0
