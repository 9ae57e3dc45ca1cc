from __future__ import annotations


class MetricsError(Exception):
    """Base class for instrumentation programming errors."""


class DuplicateMetricError(MetricsError):
    """A metric name was registered twice with different definitions."""


class UnknownMetricError(MetricsError, LookupError):
    """No metric of the requested kind is registered under that name."""


class LabelCardinalityMismatchError(MetricsError, ValueError):
    """Label values do not match the metric's declared label names."""


class InvalidDeltaError(MetricsError, ValueError):
    """A counter was asked to move backwards."""


class InvalidObservationError(MetricsError, ValueError):
    """A histogram observation was negative or not finite."""


class InvalidMetricDefinitionError(MetricsError, ValueError):
    """A metric definition has an invalid name, label name or bucket layout."""
