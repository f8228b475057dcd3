"""Application metrics for observability.

Prometheus-compatible metrics for:
- HTTP request counts and latencies
- Reconcile passes by action and outcome
- Node allocations and releases
- Free nodes remaining per hardware profile
"""

from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock
from typing import Any

DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)


@dataclass
class Histogram:
    """Cumulative histogram for latency tracking."""

    buckets: tuple[float, ...] = DEFAULT_BUCKETS
    counts: dict[float, int] = field(default_factory=lambda: defaultdict(int))
    sum: float = 0.0
    count: int = 0

    def observe(self, value: float) -> None:
        self.sum += value
        self.count += 1
        for bucket in self.buckets:
            if value <= bucket:
                self.counts[bucket] += 1

    def to_prometheus(self, name: str, labels: str = "") -> str:
        """Render the histogram in Prometheus text format."""
        extra = f",{labels}" if labels else ""
        lines = [f'{name}_bucket{{le="{b}"{extra}}} {self.counts[b]}' for b in self.buckets]
        lines.append(f'{name}_bucket{{le="+Inf"{extra}}} {self.count}')
        suffix = f"{{{labels}}}" if labels else ""
        lines.append(f"{name}_sum{suffix} {self.sum}")
        lines.append(f"{name}_count{suffix} {self.count}")
        return "\n".join(lines)


class MetricsRegistry:
    """Thread-safe registry of counters, gauges and histograms."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._gauges: dict[str, dict[str, float]] = defaultdict(dict)
        self._histograms: dict[str, dict[str, Histogram]] = defaultdict(dict)

    @staticmethod
    def _key(labels: dict[str, str] | None) -> str:
        if not labels:
            return ""
        return ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))

    def inc_counter(self, name: str, labels: dict[str, str] | None = None, value: int = 1) -> None:
        with self._lock:
            self._counters[name][self._key(labels)] += value

    def set_gauge(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._gauges[name][self._key(labels)] = value

    def observe_histogram(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        key = self._key(labels)
        with self._lock:
            histogram = self._histograms[name].setdefault(key, Histogram())
            histogram.observe(value)

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()

    def to_prometheus(self) -> str:
        """Generate Prometheus text format output."""
        lines: list[str] = []
        with self._lock:
            for kind, series in (("counter", self._counters), ("gauge", self._gauges)):
                for name, values in series.items():
                    lines.append(f"# TYPE {name} {kind}")
                    for key, value in values.items():
                        lines.append(f"{name}{{{key}}} {value}" if key else f"{name} {value}")
                    lines.append("")
            for name, histograms in self._histograms.items():
                lines.append(f"# TYPE {name} histogram")
                lines.extend(h.to_prometheus(name, key) for key, h in histograms.items())
                lines.append("")
        return "\n".join(lines)

    def get_stats(self) -> dict[str, Any]:
        """Get metrics as a dictionary (for JSON endpoints)."""
        with self._lock:
            return {
                "counters": {k: dict(v) for k, v in self._counters.items()},
                "gauges": {k: dict(v) for k, v in self._gauges.items()},
                "histograms": {
                    k: {lk: {"count": h.count, "sum": h.sum} for lk, h in v.items()}
                    for k, v in self._histograms.items()
                },
            }


# Global metrics registry
metrics = MetricsRegistry()


def record_request(method: str, path: str, status_code: int, duration: float) -> None:
    labels = {"method": method, "path": path, "status": str(status_code)}
    metrics.inc_counter("hwmgr_http_requests_total", labels)
    metrics.observe_histogram("hwmgr_http_request_duration_seconds", duration, labels)


def record_reconcile(action: str, outcome: str, duration: float) -> None:
    metrics.inc_counter("hwmgr_reconcile_total", {"action": action, "outcome": outcome})
    metrics.observe_histogram("hwmgr_reconcile_duration_seconds", duration, {"action": action})


def record_allocation(profile: str, outcome: str) -> None:
    metrics.inc_counter("hwmgr_node_allocations_total", {"profile": profile, "outcome": outcome})


def record_release(count: int) -> None:
    metrics.inc_counter("hwmgr_node_releases_total", value=count)


def set_free_nodes(profile: str, count: int) -> None:
    metrics.set_gauge("hwmgr_free_nodes", count, {"profile": profile})

