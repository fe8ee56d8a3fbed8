"""
Metrics Collector
==================
In-memory counters and latency windows for selections and relay outcomes.
Served as JSON by the /metrics endpoint; nothing is exported elsewhere.
"""

import time
from collections import defaultdict, deque
from datetime import datetime, timezone
from typing import Any, Dict


class LabeledCounter:
    """Counts keyed by relay type, result code or store operation."""

    def __init__(self, name: str):
        self.name = name
        self.by_label: Dict[str, int] = defaultdict(int)

    def inc(self, label: str, amount: int = 1):
        self.by_label[label] += amount

    @property
    def total(self) -> int:
        return sum(self.by_label.values())

    def to_dict(self) -> dict:
        return {"name": self.name, "total": self.total, "by_label": dict(self.by_label)}


class LatencyWindow:
    """Last N observations; stats are computed on read."""

    def __init__(self, name: str, max_samples: int):
        self.name = name
        self.samples: deque = deque(maxlen=max_samples)

    def observe(self, value: float):
        self.samples.append(value)

    def stats(self) -> Dict[str, float]:
        if not self.samples:
            return {"count": 0, "avg": 0.0, "p50": 0.0, "p95": 0.0}
        ordered = sorted(self.samples)
        n = len(ordered)
        return {
            "count": n,
            "avg": round(sum(ordered) / n, 3),
            "p50": round(ordered[min(n // 2, n - 1)], 3),
            "p95": round(ordered[min(n * 95 // 100, n - 1)], 3),
        }

    def to_dict(self) -> dict:
        return {"name": self.name, **self.stats()}


class MetricsCollector:
    """
    Metrics tracked:
    - selections_total       (counter)   by relay type (LB / APP)
    - fallbacks_total        (counter)   all candidates shelved, by relay type
    - shelved_total          (counter)   shelved candidates, by relay type
    - outcomes_total         (counter)   by result code
    - store_errors_total     (counter)   by operation
    - selection_latency_ms   (window)    fetch + rank + pick
    - relay_elapsed          (window)    elapsed time reported with outcomes
    """

    def __init__(self, buffer_size: int = 1000):
        self._start_time = time.monotonic()

        self.selections_total = LabeledCounter("selections_total")
        self.fallbacks_total = LabeledCounter("fallbacks_total")
        self.shelved_total = LabeledCounter("shelved_total")
        self.outcomes_total = LabeledCounter("outcomes_total")
        self.store_errors_total = LabeledCounter("store_errors_total")

        self.selection_latency = LatencyWindow("selection_latency_ms", buffer_size)
        self.relay_elapsed = LatencyWindow("relay_elapsed", buffer_size)

        self._recent_selections: deque = deque(maxlen=50)

    def record_selection(
        self,
        relay_type: str,
        selected: str,
        pool_size: int,
        shelved: int,
        fallback: bool,
        latency_ms: float,
    ):
        self.selections_total.inc(relay_type)
        if shelved:
            self.shelved_total.inc(relay_type, shelved)
        if fallback:
            self.fallbacks_total.inc(relay_type)
        self.selection_latency.observe(latency_ms)
        self._recent_selections.append({
            "relay_type": relay_type,
            "selected": selected,
            "pool_size": pool_size,
            "fallback": fallback,
            "latency_ms": round(latency_ms, 1),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    def record_outcome(self, result: int, elapsed_time: float):
        self.outcomes_total.inc(str(result))
        self.relay_elapsed.observe(elapsed_time)

    def record_store_error(self, operation: str):
        self.store_errors_total.inc(operation)

    @property
    def uptime_seconds(self) -> float:
        return time.monotonic() - self._start_time

    def summary(self) -> Dict[str, Any]:
        """Full metrics summary for /metrics endpoint."""
        return {
            "uptime_seconds": round(self.uptime_seconds, 1),
            "selections": self.selections_total.to_dict(),
            "fallbacks": self.fallbacks_total.to_dict(),
            "shelved": self.shelved_total.to_dict(),
            "outcomes": self.outcomes_total.to_dict(),
            "store_errors": self.store_errors_total.to_dict(),
            "selection_latency": self.selection_latency.to_dict(),
            "relay_elapsed": self.relay_elapsed.to_dict(),
            "recent_selections": list(self._recent_selections)[-10:],
        }

    def health_summary(self) -> Dict[str, Any]:
        """Compact summary for health endpoint."""
        latency = self.selection_latency.stats()
        return {
            "uptime_s": round(self.uptime_seconds, 0),
            "total_selections": self.selections_total.total,
            "total_fallbacks": self.fallbacks_total.total,
            "avg_selection_latency_ms": round(latency["avg"], 1),
            "p95_selection_latency_ms": round(latency["p95"], 1),
        }
