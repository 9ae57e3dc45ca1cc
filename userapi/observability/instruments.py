"""Counter, gauge and histogram instruments.

Every instrument owns a map of series keyed by label values. Series are created
lazily on first use and never removed; each series carries its own lock so
concurrent writers to different label combinations never contend, and readers
always copy a consistent snapshot.
"""

from __future__ import annotations

import math
import re
from bisect import bisect_left
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from itertools import accumulate
from threading import Lock
from typing import Any, Union

from userapi.observability.errors import (
    InvalidDeltaError,
    InvalidMetricDefinitionError,
    InvalidObservationError,
    LabelCardinalityMismatchError,
)
from userapi.observability.exposition import format_value


_METRIC_NAME_RE = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
_LABEL_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

DEFAULT_BUCKETS: tuple[float, ...] = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)

LabelInput = Union[Sequence[Any], Mapping[str, Any]]


class MetricKind(str, Enum):
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


def validate_label_name(name: str) -> None:
    if not _LABEL_NAME_RE.match(name) or name.startswith("__"):
        raise InvalidMetricDefinitionError(f"invalid label name: {name!r}")


def _normalize_buckets(buckets: Sequence[float]) -> tuple[float, ...]:
    bounds = [float(b) for b in buckets]
    # +Inf is always implied.
    if bounds and math.isinf(bounds[-1]) and bounds[-1] > 0:
        bounds.pop()
    if not bounds:
        raise InvalidMetricDefinitionError("histogram needs at least one finite bucket bound")
    if not all(math.isfinite(b) for b in bounds):
        raise InvalidMetricDefinitionError(f"bucket bounds must be finite: {buckets!r}")
    if any(lower >= upper for lower, upper in zip(bounds, bounds[1:])):
        raise InvalidMetricDefinitionError(f"bucket bounds must be strictly ascending: {buckets!r}")
    return tuple(bounds)


@dataclass(frozen=True)
class MetricDefinition:
    """Identity of a metric: name, kind, help text, label names and (histograms) buckets."""

    name: str
    kind: MetricKind
    help: str
    label_names: tuple[str, ...] = ()
    buckets: tuple[float, ...] | None = None

    def __post_init__(self) -> None:
        try:
            kind = MetricKind(self.kind)
        except ValueError as exc:
            raise InvalidMetricDefinitionError(f"unknown metric kind: {self.kind!r}") from exc

        if not _METRIC_NAME_RE.match(self.name):
            raise InvalidMetricDefinitionError(f"invalid metric name: {self.name!r}")

        label_names = tuple(self.label_names)
        for label in label_names:
            validate_label_name(label)
        if len(set(label_names)) != len(label_names):
            raise InvalidMetricDefinitionError(f"duplicate label names on {self.name}: {label_names!r}")

        if kind is MetricKind.HISTOGRAM:
            if "le" in label_names:
                raise InvalidMetricDefinitionError("histograms reserve the 'le' label")
            buckets: tuple[float, ...] | None = _normalize_buckets(
                DEFAULT_BUCKETS if self.buckets is None else self.buckets
            )
        elif self.buckets is not None:
            raise InvalidMetricDefinitionError(f"only histograms take buckets ({self.name})")
        else:
            buckets = None

        object.__setattr__(self, "kind", kind)
        object.__setattr__(self, "label_names", label_names)
        object.__setattr__(self, "buckets", buckets)

    @classmethod
    def counter(cls, name: str, help: str, label_names: Sequence[str] = ()) -> MetricDefinition:
        return cls(name=name, kind=MetricKind.COUNTER, help=help, label_names=tuple(label_names))

    @classmethod
    def gauge(cls, name: str, help: str, label_names: Sequence[str] = ()) -> MetricDefinition:
        return cls(name=name, kind=MetricKind.GAUGE, help=help, label_names=tuple(label_names))

    @classmethod
    def histogram(
        cls,
        name: str,
        help: str,
        label_names: Sequence[str] = (),
        buckets: Sequence[float] | None = None,
    ) -> MetricDefinition:
        return cls(
            name=name,
            kind=MetricKind.HISTOGRAM,
            help=help,
            label_names=tuple(label_names),
            buckets=None if buckets is None else tuple(buckets),
        )


def _label_str(value: Any) -> str:
    if isinstance(value, Enum):
        value = value.value
    return str(value)


@dataclass(frozen=True)
class LabelValues:
    """Concrete label values, validated against a metric's label names."""

    names: tuple[str, ...]
    values: tuple[str, ...]

    @classmethod
    def bind(cls, names: tuple[str, ...], raw: LabelInput | LabelValues, metric: str = "") -> LabelValues:
        where = f" for {metric}" if metric else ""
        if isinstance(raw, LabelValues):
            if raw.names != names:
                raise LabelCardinalityMismatchError(f"expected labels {names!r}{where}, got {raw.names!r}")
            return raw

        if isinstance(raw, Mapping):
            if set(raw) != set(names):
                raise LabelCardinalityMismatchError(f"expected labels {names!r}{where}, got {tuple(raw)!r}")
            return cls(names, tuple(_label_str(raw[name]) for name in names))

        if isinstance(raw, (str, bytes)):
            raise LabelCardinalityMismatchError(f"label values{where} must be a sequence or mapping, not a string")

        values = tuple(_label_str(v) for v in raw)
        if len(values) != len(names):
            raise LabelCardinalityMismatchError(
                f"expected {len(names)} label values {names!r}{where}, got {len(values)}: {values!r}"
            )
        return cls(names, values)

    def pairs(self) -> tuple[tuple[str, str], ...]:
        return tuple(zip(self.names, self.values))


@dataclass(frozen=True)
class Sample:
    name: str
    labels: tuple[tuple[str, str], ...]
    value: float


@dataclass(frozen=True)
class MetricFamily:
    name: str
    kind: str
    help: str
    samples: tuple[Sample, ...]


@dataclass(frozen=True)
class HistogramSnapshot:
    buckets: tuple[tuple[float, int], ...]
    sum: float
    count: int


def _check_delta(delta: float) -> float:
    delta = float(delta)
    if not (math.isfinite(delta) and delta >= 0):
        raise InvalidDeltaError(f"counter delta must be a finite value >= 0, got {delta!r}")
    return delta


def _check_observation(value: float) -> float:
    value = float(value)
    if not (math.isfinite(value) and value >= 0):
        raise InvalidObservationError(f"observation must be a finite value >= 0, got {value!r}")
    return value


class CounterSeries:
    def __init__(self, label_values: LabelValues) -> None:
        self.label_values = label_values
        self._lock = Lock()
        self._value = 0.0

    def inc(self, delta: float = 1) -> None:
        delta = _check_delta(delta)
        with self._lock:
            self._value += delta

    def get(self) -> float:
        with self._lock:
            return self._value


class GaugeSeries:
    def __init__(self, label_values: LabelValues) -> None:
        self.label_values = label_values
        self._lock = Lock()
        self._value = 0.0

    def set(self, value: float) -> None:
        with self._lock:
            self._value = float(value)

    def inc(self, delta: float = 1) -> None:
        with self._lock:
            self._value += float(delta)

    def dec(self, delta: float = 1) -> None:
        with self._lock:
            self._value -= float(delta)

    def get(self) -> float:
        with self._lock:
            return self._value


class HistogramSeries:
    def __init__(self, label_values: LabelValues, bounds: tuple[float, ...]) -> None:
        self.label_values = label_values
        self._bounds = bounds
        self._lock = Lock()
        # Per-bucket (non-cumulative) counts; the last slot is +Inf.
        self._counts = [0] * (len(bounds) + 1)
        self._sum = 0.0
        self._count = 0

    def observe(self, value: float) -> None:
        value = _check_observation(value)
        index = bisect_left(self._bounds, value)
        with self._lock:
            self._counts[index] += 1
            self._sum += value
            self._count += 1

    def snapshot(self) -> HistogramSnapshot:
        with self._lock:
            counts = list(self._counts)
            total = self._sum
            count = self._count
        bounds = (*self._bounds, math.inf)
        return HistogramSnapshot(
            buckets=tuple(zip(bounds, accumulate(counts))),
            sum=total,
            count=count,
        )


class _Metric:
    def __init__(self, definition: MetricDefinition) -> None:
        self.definition = definition
        self._lock = Lock()
        self._series: dict[tuple[str, ...], Any] = {}
        if not definition.label_names:
            self._series[()] = self._new_series(LabelValues((), ()))

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def label_names(self) -> tuple[str, ...]:
        return self.definition.label_names

    def _new_series(self, label_values: LabelValues) -> Any:
        raise NotImplementedError

    def _series_for(self, labels: LabelInput | LabelValues) -> Any:
        bound = LabelValues.bind(self.definition.label_names, labels, metric=self.name)
        series = self._series.get(bound.values)
        if series is None:
            with self._lock:
                series = self._series.get(bound.values)
                if series is None:
                    series = self._series[bound.values] = self._new_series(bound)
        return series

    def labels(self, *values: Any, **named: Any) -> Any:
        """Return the series handle for one label combination."""

        if values and named:
            raise LabelCardinalityMismatchError(f"pass label values for {self.name} positionally or by name, not both")
        return self._series_for(named if named else values)

    def series(self) -> list[Any]:
        with self._lock:
            items = list(self._series.items())
        return [series for _, series in sorted(items, key=lambda item: item[0])]

    def _samples(self, series: Any) -> list[Sample]:
        return [Sample(self.name, series.label_values.pairs(), series.get())]

    def collect(self) -> MetricFamily:
        samples: list[Sample] = []
        for series in self.series():
            samples.extend(self._samples(series))
        return MetricFamily(
            name=self.name,
            kind=self.definition.kind.value,
            help=self.definition.help,
            samples=tuple(samples),
        )


class Counter(_Metric):
    def _new_series(self, label_values: LabelValues) -> CounterSeries:
        return CounterSeries(label_values)

    def inc(self, labels: LabelInput | LabelValues = (), delta: float = 1) -> None:
        delta = _check_delta(delta)
        self._series_for(labels).inc(delta)


class Gauge(_Metric):
    def _new_series(self, label_values: LabelValues) -> GaugeSeries:
        return GaugeSeries(label_values)

    def set(self, labels: LabelInput | LabelValues, value: float) -> None:
        self._series_for(labels).set(value)

    def inc(self, labels: LabelInput | LabelValues = (), delta: float = 1) -> None:
        self._series_for(labels).inc(delta)

    def dec(self, labels: LabelInput | LabelValues = (), delta: float = 1) -> None:
        self._series_for(labels).dec(delta)


class Histogram(_Metric):
    @property
    def buckets(self) -> tuple[float, ...]:
        return self.definition.buckets or ()

    def _new_series(self, label_values: LabelValues) -> HistogramSeries:
        return HistogramSeries(label_values, self.buckets)

    def observe(self, labels: LabelInput | LabelValues, value: float) -> None:
        value = _check_observation(value)
        self._series_for(labels).observe(value)

    def _samples(self, series: HistogramSeries) -> list[Sample]:
        pairs = series.label_values.pairs()
        snap = series.snapshot()
        samples = [
            Sample(f"{self.name}_bucket", (*pairs, ("le", format_value(bound))), float(count))
            for bound, count in snap.buckets
        ]
        samples.append(Sample(f"{self.name}_sum", pairs, snap.sum))
        samples.append(Sample(f"{self.name}_count", pairs, float(snap.count)))
        return samples


INSTRUMENT_TYPES: dict[MetricKind, type[_Metric]] = {
    MetricKind.COUNTER: Counter,
    MetricKind.GAUGE: Gauge,
    MetricKind.HISTOGRAM: Histogram,
}
