"""
Observability metrics for the replica and cache.

Tracks:
- Latency percentiles per operation (list_products, get_product, sync)
- Cache hit / miss / error counts
- Sync outcomes (synced, skipped as stale, failed)

One collector is created per process by the app factory and injected; there
is no module-level instance.
"""

import statistics
from collections import defaultdict, deque
from datetime import datetime, timezone
from typing import Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MetricsCollector:
    """
    In-memory metrics collector.

    For production, this would be scraped into Prometheus/StatsD.
    """

    def __init__(self, window_size: int = 1000):
        """
        Args:
            window_size: Number of recent samples to keep for percentiles
        """
        self.window_size = window_size

        # Latency tracking (sliding window)
        self.latencies: Dict[str, deque] = defaultdict(lambda: deque(maxlen=window_size))

        # Cache metrics
        self.cache_hits = 0
        self.cache_misses = 0
        self.cache_errors = 0

        # Sync outcomes: "synced", "skipped_stale", "failed", "deleted"
        self.sync_counts: Dict[str, int] = defaultdict(int)

        self.start_time = _utcnow()

    def record_latency(self, operation: str, latency_ms: float):
        self.latencies[operation].append(latency_ms)

    def record_cache_hit(self):
        self.cache_hits += 1

    def record_cache_miss(self):
        self.cache_misses += 1

    def record_cache_error(self):
        self.cache_errors += 1

    def record_sync(self, outcome: str):
        self.sync_counts[outcome] += 1

    def get_percentile(self, operation: str, percentile: float) -> Optional[float]:
        """
        Latency percentile (0-100) for an operation.

        Returns None with fewer than 10 samples.
        """
        values = sorted(self.latencies.get(operation, ()))
        if len(values) < 10:
            return None

        index = int(len(values) * (percentile / 100.0))
        index = min(index, len(values) - 1)
        return values[index]

    def get_cache_hit_rate(self) -> float:
        """Cache hit rate as a percentage."""
        total = self.cache_hits + self.cache_misses
        if total == 0:
            return 0.0
        return (self.cache_hits / total) * 100.0

    def get_summary(self) -> Dict:
        uptime_seconds = (_utcnow() - self.start_time).total_seconds()

        summary = {
            "uptime_seconds": uptime_seconds,
            "cache": {
                "hit_rate_pct": round(self.get_cache_hit_rate(), 2),
                "total_hits": self.cache_hits,
                "total_misses": self.cache_misses,
                "total_errors": self.cache_errors,
            },
            "sync": dict(self.sync_counts),
            "operations": {},
        }

        for operation, samples in self.latencies.items():
            if not samples:
                continue
            op_metrics = {
                "samples": len(samples),
                "latency_avg_ms": round(statistics.mean(samples), 2),
            }
            for label, pct in (("p50", 50), ("p95", 95), ("p99", 99)):
                value = self.get_percentile(operation, pct)
                if value is not None:
                    op_metrics[f"latency_{label}_ms"] = round(value, 2)
            summary["operations"][operation] = op_metrics

        return summary

    def reset(self):
        """Reset all metrics (useful for testing)."""
        self.latencies.clear()
        self.cache_hits = 0
        self.cache_misses = 0
        self.cache_errors = 0
        self.sync_counts.clear()
