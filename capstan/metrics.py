"""
capstan/metrics.py -- Prometheus-compatible metrics registry.

Lightweight stdlib-only metrics collection (no prometheus_client dependency).
Exposes counters, gauges, and histograms in Prometheus text format via
``GET /api/metrics``.

Usage::

    from capstan.metrics import get_metrics

    reg = get_metrics()
    reg.record_invocation("weather.lookup", "ok", latency_ms=42.0)
    reg.record_error("RateLimited")
    print(reg.render())        # Prometheus text format
"""

from __future__ import annotations

import bisect
import threading
import time
from typing import Dict, Iterator, List, Optional, Tuple

__all__ = ["Counter", "Gauge", "Histogram", "MetricsRegistry", "get_metrics"]

_LabelKey = Tuple[Tuple[str, str], ...]   # sorted label kv pairs as tuple

# Invocation latency buckets, milliseconds.
DEFAULT_BUCKETS = (1, 5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000)


def _make_key(labels: dict) -> _LabelKey:
    return tuple(sorted((k, str(v)) for k, v in labels.items()))


def _fmt_labels(key: _LabelKey) -> str:
    parts = [f'{k}="{v}"' for k, v in key]
    return "{" + ",".join(parts) + "}" if parts else ""


class _Metric:
    """Shared plumbing: name, help text, a lock and a labelled value table."""

    kind = "untyped"

    def __init__(self, name: str, help_text: str, label_names: tuple = ()):
        self.name = name
        self.help = help_text
        self.label_names = label_names
        self._values: Dict[_LabelKey, float] = {}
        self._lock = threading.Lock()

    def _add(self, amount: float, labels: dict) -> None:
        key = _make_key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def value(self, **labels) -> float:
        with self._lock:
            return self._values.get(_make_key(labels), 0.0)

    def _samples(self) -> Iterator[str]:
        for key, val in sorted(self._values.items()):
            yield f"{self.name}{_fmt_labels(key)} {self._format(val)}"

    @staticmethod
    def _format(val: float) -> str:
        return f"{val:.6g}"

    def render(self) -> str:
        lines = [f"# HELP {self.name} {self.help}", f"# TYPE {self.name} {self.kind}"]
        with self._lock:
            lines.extend(self._samples())
        return "\n".join(lines)


class Counter(_Metric):
    """Monotonically increasing counter."""

    kind = "counter"

    def inc(self, amount: float = 1.0, **labels) -> None:
        if amount < 0:
            raise ValueError("counters only go up")
        self._add(amount, labels)

    @staticmethod
    def _format(val: float) -> str:
        return f"{val:.0f}"


class Gauge(_Metric):
    """Metric that can go up and down."""

    kind = "gauge"

    def set(self, value: float, **labels) -> None:
        with self._lock:
            self._values[_make_key(labels)] = float(value)

    def inc(self, amount: float = 1.0, **labels) -> None:
        self._add(amount, labels)

    def dec(self, amount: float = 1.0, **labels) -> None:
        self._add(-amount, labels)


class Histogram(_Metric):
    """Fixed-bucket histogram.  Each observation lands in exactly one bucket;
    rendering accumulates them into Prometheus' cumulative ``le`` series."""

    kind = "histogram"

    def __init__(self, name: str, help_text: str, buckets: tuple = DEFAULT_BUCKETS):
        super().__init__(name, help_text)
        self._bounds: List[float] = sorted(buckets)
        # One slot per bound plus the overflow (+Inf) slot.
        self._slots: List[int] = [0] * (len(self._bounds) + 1)
        self._sum = 0.0

    def observe(self, value: float) -> None:
        slot = bisect.bisect_left(self._bounds, value)
        with self._lock:
            self._slots[slot] += 1
            self._sum += value

    @property
    def count(self) -> int:
        with self._lock:
            return sum(self._slots)

    def _samples(self) -> Iterator[str]:
        running = 0
        for bound, hits in zip(self._bounds, self._slots):
            running += hits
            yield f'{self.name}_bucket{{le="{bound:g}"}} {running}'
        total = running + self._slots[-1]
        yield f'{self.name}_bucket{{le="+Inf"}} {total}'
        yield f"{self.name}_sum {self._sum:.3f}"
        yield f"{self.name}_count {total}"


# Every family the broker exports: (type, name, help, label names).
_STANDARD_METRICS = (
    (Counter, "capstan_invocations_total", "Invocations by capability and outcome", ("capability", "status")),
    (Counter, "capstan_errors_total", "Broker errors by internal kind", ("kind",)),
    (Counter, "capstan_negotiations_total", "Session negotiations by outcome", ("outcome",)),
    (Counter, "capstan_retries_total", "Automatic retries of pure capabilities", ("capability",)),
    (Counter, "capstan_cancellations_total", "Invocations cancelled by callers", ()),
    (Gauge, "capstan_uptime_seconds", "Broker uptime in seconds", ()),
    (Gauge, "capstan_sessions_active", "Active sessions", ()),
    (Gauge, "capstan_in_flight", "Invocations currently in flight", ()),
    (Gauge, "capstan_capabilities_registered", "Capabilities in the registry", ()),
    (Histogram, "capstan_invocation_duration_ms", "End-to-end invocation duration in milliseconds", ()),
)


class MetricsRegistry:
    """Central metrics store. Call :func:`get_metrics` to get the singleton.

    Each broker owns the families in ``_STANDARD_METRICS``; the ``record_*``
    helpers are no-ops once :meth:`disable` has been called.
    """

    def __init__(self):
        self._families: Dict[str, _Metric] = {}
        self._start_time = time.time()
        self._enabled = True
        for cls, name, help_text, labels in _STANDARD_METRICS:
            self._families[name] = cls(name, help_text) if cls is Histogram else cls(name, help_text, labels)

    # ── Accessors ─────────────────────────────────────────────────────────────

    def _typed(self, name: str, cls: type):
        family = self._families.get(name)
        return family if isinstance(family, cls) else None

    def counter(self, name: str) -> Optional[Counter]:
        return self._typed(name, Counter)

    def gauge(self, name: str) -> Optional[Gauge]:
        return self._typed(name, Gauge)

    def histogram(self, name: str) -> Optional[Histogram]:
        return self._typed(name, Histogram)

    def disable(self) -> None:
        self._enabled = False

    # ── Record helpers ────────────────────────────────────────────────────────

    def record_invocation(self, capability: str, status: str, latency_ms: float) -> None:
        if not self._enabled:
            return
        self.counter("capstan_invocations_total").inc(capability=capability, status=status)
        self.histogram("capstan_invocation_duration_ms").observe(latency_ms)

    def record_error(self, kind: str) -> None:
        if self._enabled:
            self.counter("capstan_errors_total").inc(kind=kind)

    def record_negotiation(self, outcome: str) -> None:
        if self._enabled:
            self.counter("capstan_negotiations_total").inc(outcome=outcome)

    def record_retry(self, capability: str) -> None:
        if self._enabled:
            self.counter("capstan_retries_total").inc(capability=capability)

    def record_cancel(self) -> None:
        if self._enabled:
            self.counter("capstan_cancellations_total").inc()

    def in_flight(self, delta: int) -> None:
        if self._enabled:
            self.gauge("capstan_in_flight").inc(float(delta))

    def update_status(self, sessions_active: int = 0, capabilities: int = 0) -> None:
        """Snapshot-update the status gauges."""
        if not self._enabled:
            return
        self.gauge("capstan_sessions_active").set(sessions_active)
        self.gauge("capstan_capabilities_registered").set(capabilities)
        self.gauge("capstan_uptime_seconds").set(time.time() - self._start_time)

    # ── Render ────────────────────────────────────────────────────────────────

    def render(self) -> str:
        """Render all metrics in Prometheus text exposition format."""
        return "\n".join(family.render() for family in self._families.values()) + "\n"


# ── Singleton ─────────────────────────────────────────────────────────────────

_registry: Optional[MetricsRegistry] = None
_registry_lock = threading.Lock()


def get_metrics() -> MetricsRegistry:
    """Return the process-wide MetricsRegistry singleton."""
    global _registry
    if _registry is None:
        with _registry_lock:
            if _registry is None:
                _registry = MetricsRegistry()
    return _registry
