from __future__ import annotations

import time
from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock
from typing import Dict, List


@dataclass
class MetricsSnapshot:
    messages_total: int
    intents: Dict[str, int]
    orders_total: int
    sales_total: int
    fallback_calls: int
    fallback_cache_hits: int
    fallback_no_answer: int
    rate_limit_rejections: int = 0
    turn_errors: int = 0
    expired_carts: int = 0
    avg_turn_latency_ms: float = 0.0


@dataclass
class RateLimitWindow:
    """Sliding window for rate limiting."""
    timestamps: List[float] = field(default_factory=list)


class MetricsService:
    def __init__(self) -> None:
        self._lock = Lock()
        self._messages_total = 0
        self._intents: Dict[str, int] = {}
        self._orders_total = 0
        self._sales_total = 0
        self._fallback_calls = 0
        self._fallback_cache_hits = 0
        self._fallback_no_answer = 0
        self._rate_limit_rejections = 0
        self._turn_errors = 0
        self._expired_carts = 0
        self._turn_latencies: List[float] = []
        self._max_latency_samples = 1000
        self._rate_limit_windows: Dict[str, RateLimitWindow] = defaultdict(RateLimitWindow)

    def record_message(self, intent: str | None) -> None:
        with self._lock:
            self._messages_total += 1
            if intent:
                self._intents[intent] = self._intents.get(intent, 0) + 1

    def record_order(self, total: int) -> None:
        with self._lock:
            self._orders_total += 1
            self._sales_total += total

    def record_fallback_call(self, *, cached: bool = False, answered: bool = True) -> None:
        with self._lock:
            if cached:
                self._fallback_cache_hits += 1
                return
            self._fallback_calls += 1
            if not answered:
                self._fallback_no_answer += 1

    def record_turn_error(self) -> None:
        with self._lock:
            self._turn_errors += 1

    def record_expired_cart(self) -> None:
        with self._lock:
            self._expired_carts += 1

    def record_turn_latency(self, latency_ms: float) -> None:
        with self._lock:
            self._turn_latencies.append(latency_ms)
            if len(self._turn_latencies) > self._max_latency_samples:
                self._turn_latencies = self._turn_latencies[-self._max_latency_samples:]

    def check_rate_limit(
        self,
        customer_id: str,
        window_seconds: int = 60,
        max_calls: int = 20,
    ) -> bool:
        """
        Check if customer is within rate limit using sliding window.
        Returns True if the message is allowed, False if rate limited.
        """
        now = time.time()
        cutoff = now - window_seconds

        with self._lock:
            window = self._rate_limit_windows[customer_id]
            window.timestamps = [ts for ts in window.timestamps if ts > cutoff]

            if len(window.timestamps) >= max_calls:
                self._rate_limit_rejections += 1
                return False

            window.timestamps.append(now)
            return True

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            avg_latency = (
                sum(self._turn_latencies) / len(self._turn_latencies)
                if self._turn_latencies else 0.0
            )
            return MetricsSnapshot(
                messages_total=self._messages_total,
                intents=dict(self._intents),
                orders_total=self._orders_total,
                sales_total=self._sales_total,
                fallback_calls=self._fallback_calls,
                fallback_cache_hits=self._fallback_cache_hits,
                fallback_no_answer=self._fallback_no_answer,
                rate_limit_rejections=self._rate_limit_rejections,
                turn_errors=self._turn_errors,
                expired_carts=self._expired_carts,
                avg_turn_latency_ms=avg_latency,
            )


_metrics_service = MetricsService()


def get_metrics_service() -> MetricsService:
    return _metrics_service
