from __future__ import annotations

from typing import TYPE_CHECKING

from userapi.observability.instruments import MetricDefinition
from userapi.observability.process import ProcessCollector
from userapi.observability.registry import MetricRegistry

if TYPE_CHECKING:
    from userapi.config import Settings


HTTP_REQUEST_DURATION = MetricDefinition.histogram(
    "http_request_duration_seconds",
    "Duration of HTTP requests in seconds",
    label_names=("method", "route", "status_code"),
    buckets=(0.1, 0.3, 0.5, 0.7, 1, 3, 5, 7, 10),
)

HTTP_REQUESTS_TOTAL = MetricDefinition.counter(
    "http_requests_total",
    "Total number of HTTP requests",
    label_names=("method", "route", "status_code"),
)

ACTIVE_CONNECTIONS = MetricDefinition.gauge(
    "active_connections_total",
    "Number of active connections",
)

USER_OPERATIONS_TOTAL = MetricDefinition.counter(
    "user_operations_total",
    "Total number of user operations",
    label_names=("operation", "status"),
)

DEPENDENCY_RESPONSE_TIME = MetricDefinition.histogram(
    "database_response_time_seconds",
    "Database response time in seconds",
    label_names=("operation",),
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1),
)

APPLICATION_ERRORS_TOTAL = MetricDefinition.counter(
    "application_errors_total",
    "Total number of application errors",
    label_names=("error_type", "endpoint"),
)

STANDARD_METRICS: tuple[MetricDefinition, ...] = (
    HTTP_REQUEST_DURATION,
    HTTP_REQUESTS_TOTAL,
    ACTIVE_CONNECTIONS,
    USER_OPERATIONS_TOTAL,
    DEPENDENCY_RESPONSE_TIME,
    APPLICATION_ERRORS_TOTAL,
)


def register_standard_metrics(registry: MetricRegistry) -> MetricRegistry:
    for definition in STANDARD_METRICS:
        registry.register(definition)
    return registry


def build_registry(settings: Settings) -> MetricRegistry:
    """Build the process registry: default labels, standard metrics, process collector."""

    registry = MetricRegistry(default_labels={"app": settings.app_name, "version": settings.app_version})
    register_standard_metrics(registry)
    if settings.enable_process_metrics:
        registry.register_collector(ProcessCollector())
    return registry
