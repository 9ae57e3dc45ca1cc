import pytest
from structlog.testing import capture_logs

from userapi.observability.operations import OperationRecorder, Outcome
from userapi.observability.registry import MetricRegistry


def _operations(registry: MetricRegistry, kind: str, status: str) -> float | None:
    return registry.get_sample_value("user_operations_total", {"operation": kind, "status": status})


def _latency_count(registry: MetricRegistry, operation: str) -> float | None:
    return registry.get_sample_value("database_response_time_seconds_count", {"operation": operation})


def test_record_operation_accepts_enum_and_string_outcomes(standard_registry) -> None:
    recorder = OperationRecorder(standard_registry)
    recorder.record_operation("update", Outcome.NOT_FOUND)
    recorder.record_operation("update", "not_found")
    recorder.record_operation("update", Outcome.SUCCESS)

    assert _operations(standard_registry, "update", "not_found") == 2
    assert _operations(standard_registry, "update", "success") == 1


def test_free_text_outcome_is_logged_not_raised(standard_registry) -> None:
    recorder = OperationRecorder(standard_registry)

    with capture_logs() as logs:
        recorder.record_operation("update", "database exploded at 10:32")

    assert _operations(standard_registry, "update", "database exploded at 10:32") is None
    assert [entry["event"] for entry in logs] == ["record_operation_failed"]
    assert logs[0]["log_level"] == "warning"


def test_recorder_survives_unregistered_metrics() -> None:
    recorder = OperationRecorder(MetricRegistry())

    recorder.record_operation("create", Outcome.SUCCESS)
    recorder.record_dependency_latency("insert", 0.01)
    with recorder.time_dependency("select"):
        pass


def test_record_dependency_latency_observes_seconds(standard_registry) -> None:
    recorder = OperationRecorder(standard_registry)
    recorder.record_dependency_latency("select", 0.003)
    recorder.record_dependency_latency("select", 0.2)

    assert _latency_count(standard_registry, "select") == 2
    assert standard_registry.get_sample_value(
        "database_response_time_seconds_bucket", {"operation": "select", "le": "0.005"}
    ) == 1
    assert standard_registry.get_sample_value(
        "database_response_time_seconds_sum", {"operation": "select"}
    ) == pytest.approx(0.203)


def test_invalid_latency_is_dropped(standard_registry) -> None:
    recorder = OperationRecorder(standard_registry)
    recorder.record_dependency_latency("select", -1.0)

    assert _latency_count(standard_registry, "select") is None


def test_time_dependency_records_even_when_block_raises(standard_registry) -> None:
    recorder = OperationRecorder(standard_registry)

    with pytest.raises(KeyError):
        with recorder.time_dependency("delete"):
            raise KeyError("missing row")

    with recorder.time_dependency("delete"):
        pass

    assert _latency_count(standard_registry, "delete") == 2
