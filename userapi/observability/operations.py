from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from enum import Enum
from time import perf_counter

import structlog

from userapi.observability.metrics import DEPENDENCY_RESPONSE_TIME, USER_OPERATIONS_TOTAL
from userapi.observability.registry import MetricRegistry


class Outcome(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    NOT_FOUND = "not_found"


class OperationRecorder:
    """Domain-level instrumentation for business logic.

    Recording never raises: a broken metric layer is logged and the caller's
    transaction carries on unobserved.
    """

    def __init__(
        self,
        registry: MetricRegistry,
        operations_metric: str = USER_OPERATIONS_TOTAL.name,
        latency_metric: str = DEPENDENCY_RESPONSE_TIME.name,
    ) -> None:
        self._registry = registry
        self._operations_metric = operations_metric
        self._latency_metric = latency_metric

    def record_operation(self, kind: str, outcome: Outcome | str) -> None:
        try:
            status = Outcome(outcome)
            self._registry.counter(self._operations_metric).inc((kind, status))
        except Exception as exc:  # noqa: BLE001 - instrumentation must not break the caller
            structlog.get_logger("metrics").warning(
                "record_operation_failed",
                operation=kind,
                outcome=str(outcome),
                error=str(exc),
            )

    def record_dependency_latency(self, operation: str, duration_seconds: float) -> None:
        try:
            self._registry.histogram(self._latency_metric).observe((operation,), duration_seconds)
        except Exception as exc:  # noqa: BLE001
            structlog.get_logger("metrics").warning(
                "record_dependency_latency_failed",
                operation=operation,
                duration_seconds=duration_seconds,
                error=str(exc),
            )

    @contextmanager
    def time_dependency(self, operation: str) -> Iterator[None]:
        """Time the enclosed block as one dependency call, whether or not it raises."""

        start = perf_counter()
        try:
            yield
        finally:
            self.record_dependency_latency(operation, perf_counter() - start)
