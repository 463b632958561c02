"""Counters, gauges and histograms rendered in the Prometheus text format."""

from __future__ import annotations

import math
import re
import threading
from typing import Dict, Iterable, Optional, Sequence, Union

__all__ = [
    "Counter",
    "Gauge",
    "Histogram",
    "Registry",
    "render_metrics",
    "REGISTRY",
    "TXS_INDEXED",
    "BLOCK_PROCESS_TIME",
    "ACTIVE_SUBS",
]

DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)

_NAME_RE = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*\Z")


def _format_value(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value == int(value) and abs(value) < 1e15:
        return str(int(value))
    return repr(float(value))


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, help: str) -> None:
        if not _NAME_RE.match(name):
            raise ValueError(f"invalid metric name: {name!r}")
        self.name = name
        self.help = help
        self._lock = threading.Lock()

    def _header(self) -> str:
        return f"# HELP {self.name} {_escape_help(self.help)}\n# TYPE {self.name} {self.kind}\n"

    def render(self) -> str:
        raise NotImplementedError


class Counter(_Metric):
    """A value that only goes up."""

    kind = "counter"

    def __init__(self, name: str, help: str) -> None:
        super().__init__(name, help)
        self._value = 0.0

    @property
    def value(self) -> float:
        return self._value

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counter cannot decrease")
        with self._lock:
            self._value += amount

    def render(self) -> str:
        return f"{self._header()}{self.name} {_format_value(self._value)}\n"


class Gauge(_Metric):
    """A value that can go up and down."""

    kind = "gauge"

    def __init__(self, name: str, help: str) -> None:
        super().__init__(name, help)
        self._value = 0.0

    @property
    def value(self) -> float:
        return self._value

    def inc(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value += amount

    def dec(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value -= amount

    def set(self, value: float) -> None:
        with self._lock:
            self._value = float(value)

    def render(self) -> str:
        return f"{self._header()}{self.name} {_format_value(self._value)}\n"


class Histogram(_Metric):
    """Observations counted into cumulative buckets."""

    kind = "histogram"

    def __init__(self, name: str, help: str, buckets: Sequence[float] = DEFAULT_BUCKETS) -> None:
        super().__init__(name, help)
        bounds = sorted(float(b) for b in buckets if not math.isinf(b))
        if len(set(bounds)) != len(bounds):
            raise ValueError("histogram buckets must be distinct")
        self.buckets = tuple(bounds)
        self._counts = [0] * len(self.buckets)
        self._sum = 0.0
        self._count = 0

    @property
    def count(self) -> int:
        return self._count

    @property
    def sum(self) -> float:
        return self._sum

    def observe(self, value: float) -> None:
        with self._lock:
            for position, bound in enumerate(self.buckets):
                if value <= bound:
                    self._counts[position] += 1
                    break
            self._sum += value
            self._count += 1

    def render(self) -> str:
        with self._lock:
            counts = list(self._counts)
            total, count = self._sum, self._count
        lines = [self._header()]
        cumulative = 0
        for bound, bucket_count in zip(self.buckets, counts):
            cumulative += bucket_count
            lines.append(f'{self.name}_bucket{{le="{_format_value(bound)}"}} {cumulative}\n')
        lines.append(f'{self.name}_bucket{{le="+Inf"}} {count}\n')
        lines.append(f"{self.name}_sum {_format_value(total)}\n")
        lines.append(f"{self.name}_count {count}\n")
        return "".join(lines)


MetricType = Union[Counter, Gauge, Histogram]


class Registry:
    """A named collection of metrics."""

    def __init__(self, metrics: Iterable[MetricType] = ()) -> None:
        self._metrics: Dict[str, MetricType] = {}
        self._lock = threading.Lock()
        for metric in metrics:
            self.register(metric)

    def register(self, metric: MetricType) -> MetricType:
        with self._lock:
            if metric.name in self._metrics:
                raise ValueError(f"duplicate metric: {metric.name}")
            self._metrics[metric.name] = metric
        return metric

    def __contains__(self, name: object) -> bool:
        return name in self._metrics

    def render(self) -> str:
        with self._lock:
            metrics = sorted(self._metrics.values(), key=lambda m: m.name)
        return "".join(metric.render() for metric in metrics)


REGISTRY = Registry()

TXS_INDEXED: Counter = REGISTRY.register(
    Counter("rustbus_txs_indexed_total", "Total transactions indexed")
)
BLOCK_PROCESS_TIME: Histogram = REGISTRY.register(
    Histogram("rustbus_block_process_seconds", "Block processing time in seconds")
)
ACTIVE_SUBS: Gauge = REGISTRY.register(
    Gauge("rustbus_active_subscriptions", "Number of active WebSocket subscriptions")
)


def render_metrics(registry: Optional[Registry] = None) -> str:
    """Text exposition of ``registry``, or of the default registry."""
    return (REGISTRY if registry is None else registry).render()