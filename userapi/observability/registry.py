from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator, Mapping
from threading import Lock
from types import MappingProxyType
from typing import Protocol, TypeVar

import structlog

from userapi.observability.errors import (
    DuplicateMetricError,
    InvalidMetricDefinitionError,
    UnknownMetricError,
)
from userapi.observability.exposition import family_lines
from userapi.observability.instruments import (
    INSTRUMENT_TYPES,
    Counter,
    Gauge,
    Histogram,
    MetricDefinition,
    MetricFamily,
    MetricKind,
    validate_label_name,
)


M = TypeVar("M", Counter, Gauge, Histogram)


def sample_names(definition: MetricDefinition) -> tuple[str, ...]:
    """Every sample name a definition puts on the wire."""

    if definition.kind is MetricKind.HISTOGRAM:
        return tuple(f"{definition.name}{suffix}" for suffix in ("", "_bucket", "_sum", "_count"))
    return (definition.name,)


class Collector(Protocol):
    """Produces metric families at scrape time instead of recording them."""

    def describe(self) -> Iterable[str]: ...

    def collect(self) -> Iterable[MetricFamily]: ...


class MetricRegistry:
    """Named instruments plus the default labels merged into every exposed sample.

    One registry is built per process (see ``userapi.observability.metrics.build_registry``)
    and handed to every component that records or exposes metrics; tests build
    their own.
    """

    def __init__(self, default_labels: Mapping[str, object] | None = None) -> None:
        self._lock = Lock()
        self._metrics: dict[str, Counter | Gauge | Histogram] = {}
        self._collectors: list[tuple[tuple[str, ...], Collector]] = []
        # Sample name -> who exposes it.
        self._claimed: dict[str, str] = {}

        labels = {str(name): str(value) for name, value in (default_labels or {}).items()}
        for name in labels:
            validate_label_name(name)
            if name == "le":
                raise InvalidMetricDefinitionError("'le' is reserved for histogram buckets")
        self._default_labels: Mapping[str, str] = MappingProxyType(labels)

    @property
    def default_labels(self) -> Mapping[str, str]:
        return self._default_labels

    def _check_unclaimed(self, names: Iterable[str], owner: str) -> None:
        for name in names:
            holder = self._claimed.get(name)
            if holder is not None:
                raise DuplicateMetricError(f"{owner} would expose {name}, already exposed by {holder}")

    def register(self, definition: MetricDefinition) -> Counter | Gauge | Histogram:
        with self._lock:
            existing = self._metrics.get(definition.name)
            if existing is not None:
                if existing.definition == definition:
                    return existing
                raise DuplicateMetricError(
                    f"{definition.name} is already registered as {existing.definition!r}, "
                    f"refusing {definition!r}"
                )
            names = sample_names(definition)
            owner = f"{definition.kind.value} {definition.name}"
            self._check_unclaimed(names, owner)

            metric = INSTRUMENT_TYPES[definition.kind](definition)
            self._metrics[definition.name] = metric
            self._claimed.update((name, owner) for name in names)

        structlog.get_logger("metrics").debug(
            "metric_registered",
            metric=definition.name,
            kind=definition.kind.value,
            label_names=list(definition.label_names),
        )
        return metric

    def register_collector(self, collector: Collector) -> None:
        names = tuple(collector.describe())
        owner = f"collector {type(collector).__name__}"
        with self._lock:
            if len(set(names)) != len(names):
                raise DuplicateMetricError(f"{owner} describes the same family twice: {names!r}")
            self._check_unclaimed(names, owner)
            self._collectors.append((names, collector))
            self._claimed.update((name, owner) for name in names)

    def _get(self, name: str, kind: type[M]) -> M:
        metric = self._metrics.get(name)
        if not isinstance(metric, kind):
            found = f" (registered as {metric.definition.kind.value})" if metric is not None else ""
            raise UnknownMetricError(f"no {kind.__name__.lower()} registered as {name!r}{found}")
        return metric

    def counter(self, name: str) -> Counter:
        return self._get(name, Counter)

    def gauge(self, name: str) -> Gauge:
        return self._get(name, Gauge)

    def histogram(self, name: str) -> Histogram:
        return self._get(name, Histogram)

    def _sources(self) -> list[tuple[str, Callable[[], Iterable[MetricFamily]]]]:
        with self._lock:
            sources: list[tuple[str, Callable[[], Iterable[MetricFamily]]]] = [
                (name, lambda metric=metric: (metric.collect(),)) for name, metric in self._metrics.items()
            ]
            sources.extend((min(names, default=""), collector.collect) for names, collector in self._collectors)
        return sorted(sources, key=lambda source: source[0])

    def families(self) -> Iterator[MetricFamily]:
        """Yield one snapshot per metric family, ordered by name.

        Each family is snapshotted only when reached, and each series under its own lock.
        """

        for _, produce in self._sources():
            yield from produce()

    def collect(self) -> Iterator[str]:
        """Yield exposition lines; call again for a fresh pass."""

        defaults = dict(self._default_labels)
        for family in self.families():
            yield from family_lines(family, defaults)

    def render(self) -> str:
        lines = list(self.collect())
        return "\n".join(lines) + "\n" if lines else ""

    def get_sample_value(self, name: str, labels: Mapping[str, object] | None = None) -> float | None:
        """Return the current value of one sample, ignoring default labels."""

        wanted = {str(k): str(v) for k, v in (labels or {}).items()}
        for family in self.families():
            for sample in family.samples:
                if sample.name == name and dict(sample.labels) == wanted:
                    return sample.value
        return None
