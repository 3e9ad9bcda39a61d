"""Prometheus text exposition for in-process counters."""

from __future__ import annotations

import math
from typing import Callable, Dict, Protocol


class Metric(Protocol):
    name: str

    def render(self) -> str: ...


def _format(value: float) -> str:
    if math.isinf(value):
        return "+Inf"
    return repr(float(value))


class Counter:
    def __init__(self, name: str, description: str = "") -> None:
        self.name = name
        self.description = description
        self._value = 0.0

    @property
    def value(self) -> float:
        return self._value

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("Counters can only increase")
        self._value += amount

    def render(self) -> str:
        return (
            f"# HELP {self.name} {self.description}\n"
            f"# TYPE {self.name} counter\n"
            f"{self.name} {_format(self._value)}\n"
        )


class Gauge:
    def __init__(self, name: str, description: str = "", supplier: Callable[[], float] | None = None) -> None:
        self.name = name
        self.description = description
        self._value = 0.0
        self._supplier = supplier

    @property
    def value(self) -> float:
        return self._supplier() if self._supplier else self._value

    def set(self, value: float) -> None:
        self._value = value

    def render(self) -> str:
        return (
            f"# HELP {self.name} {self.description}\n"
            f"# TYPE {self.name} gauge\n"
            f"{self.name} {_format(self.value)}\n"
        )


class Histogram:
    def __init__(self, name: str, buckets: list[float], description: str = "") -> None:
        self.name = name
        self.description = description
        self._buckets = sorted(buckets) + [math.inf]
        self._counts = {bucket: 0 for bucket in self._buckets}
        self._sum = 0.0
        self._count = 0

    @property
    def count(self) -> int:
        return self._count

    def observe(self, value: float) -> None:
        self._count += 1
        self._sum += value
        for bucket in self._buckets:
            if value <= bucket:
                self._counts[bucket] += 1

    def render(self) -> str:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} histogram"]
        # Bucket counts are already cumulative since observe() fills every bucket >= value.
        for bucket in self._buckets:
            lines.append(f'{self.name}_bucket{{le="{_format(bucket)}"}} {self._counts[bucket]}')
        lines.append(f"{self.name}_sum {_format(self._sum)}")
        lines.append(f"{self.name}_count {self._count}")
        return "\n".join(lines) + "\n"


class MetricsRegistry:
    def __init__(self) -> None:
        self._metrics: Dict[str, Metric] = {}

    def register(self, metric):
        self._metrics[metric.name] = metric
        return metric

    def get(self, name: str) -> Metric | None:
        return self._metrics.get(name)

    def render(self) -> str:
        return "\n".join(metric.render() for metric in self._metrics.values()) + "\n"


GLOBAL_REGISTRY = MetricsRegistry()
