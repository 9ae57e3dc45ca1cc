import asyncio

import pytest
from fastapi import FastAPI

from userapi.observability.middleware import (
    UNMATCHED_ROUTE,
    ConnectionTrackerMiddleware,
    HttpMetricsMiddleware,
    error_type,
    route_template,
)
from userapi.observability.registry import MetricRegistry


def _requests(registry: MetricRegistry, method: str, route: str, status: int) -> float | None:
    return registry.get_sample_value(
        "http_requests_total", {"method": method, "route": route, "status_code": status}
    )


def _errors(registry: MetricRegistry, kind: str, endpoint: str) -> float | None:
    return registry.get_sample_value("application_errors_total", {"error_type": kind, "endpoint": endpoint})


def _active(registry: MetricRegistry) -> float | None:
    return registry.get_sample_value("active_connections_total")


async def _noop_receive() -> dict:
    return {"type": "http.request", "body": b"", "more_body": False}


def _http_scope(path: str = "/jobs", method: str = "GET") -> dict:
    return {"type": "http", "method": method, "path": path, "headers": []}


async def test_get_users_counts_one_request(api_client, registry) -> None:
    resp = await api_client.get("/users")
    assert resp.status_code == 200

    assert _requests(registry, "GET", "/users", 200) == 1
    assert registry.get_sample_value(
        "http_request_duration_seconds_count", {"method": "GET", "route": "/users", "status_code": "200"}
    ) == 1


async def test_put_unknown_user_records_client_error_and_not_found(api_client, registry) -> None:
    resp = await api_client.put("/users/999", json={"name": "Nobody", "email": "nobody@example.com"})
    assert resp.status_code == 404

    assert _requests(registry, "PUT", "/users/{user_id}", 404) == 1
    assert _errors(registry, "client_error", "/users/{user_id}") == 1
    assert registry.get_sample_value("user_operations_total", {"operation": "update", "status": "not_found"}) == 1
    assert registry.get_sample_value("user_operations_total", {"operation": "update", "status": "success"}) is None


async def test_route_label_is_the_template_not_the_raw_path(api_client, registry) -> None:
    for user_id in (1, 2):
        resp = await api_client.put(f"/users/{user_id}", json={"name": "Renamed", "email": "r@example.com"})
        assert resp.status_code == 200

    assert _requests(registry, "PUT", "/users/{user_id}", 200) == 2
    assert _requests(registry, "PUT", "/users/1", 200) is None


async def test_unmatched_paths_share_one_route_label(api_client, registry) -> None:
    await api_client.get("/does-not-exist")
    await api_client.get("/neither/does/this")

    assert _requests(registry, "GET", UNMATCHED_ROUTE, 404) == 2
    assert _errors(registry, "client_error", UNMATCHED_ROUTE) == 2


async def test_handler_exception_records_server_error(app: FastAPI, tolerant_client, registry) -> None:
    @app.get("/boom")
    async def boom() -> None:
        raise RuntimeError("handler failed")

    resp = await tolerant_client.get("/boom")
    assert resp.status_code == 500

    assert _requests(registry, "GET", "/boom", 500) == 1
    assert _errors(registry, "server_error", "/boom") == 1
    assert _active(registry) == 0


async def test_scrape_endpoint_is_not_self_observed(api_client, registry) -> None:
    for _ in range(3):
        resp = await api_client.get("/metrics")
        assert resp.status_code == 200

    assert _requests(registry, "GET", "/metrics", 200) is None


async def test_concurrent_posts_are_counted_exactly(api_client, registry) -> None:
    responses = await asyncio.gather(
        *(api_client.post("/users", json={"name": f"user{i}", "email": f"u{i}@example.com"}) for i in range(10))
    )

    assert [r.status_code for r in responses] == [201] * 10
    assert len({r.json()["id"] for r in responses}) == 10
    assert _requests(registry, "POST", "/users", 201) == 10
    assert registry.get_sample_value("user_operations_total", {"operation": "create", "status": "success"}) == 10
    assert _active(registry) == 0


async def test_active_connections_counts_in_flight_requests(app: FastAPI, api_client, registry) -> None:
    release = asyncio.Event()

    @app.get("/slow")
    async def slow() -> dict[str, float | None]:
        await release.wait()
        return {"active": _active(registry)}

    assert _active(registry) == 0
    pending = [asyncio.ensure_future(api_client.get("/slow")) for _ in range(3)]
    for _ in range(200):
        if _active(registry) == 3:
            break
        await asyncio.sleep(0.01)
    assert _active(registry) == 3

    release.set()
    responses = await asyncio.gather(*pending)
    assert all(r.status_code == 200 for r in responses)
    assert _active(registry) == 0


async def test_active_connections_returns_to_zero_after_handler_error(app: FastAPI, tolerant_client, registry) -> None:
    @app.get("/fail")
    async def fail() -> None:
        raise ValueError("nope")

    for _ in range(3):
        resp = await tolerant_client.get("/fail")
        assert resp.status_code == 500
    assert _active(registry) == 0


async def test_connection_tracker_releases_on_client_disconnect(standard_registry) -> None:
    async def app(scope, receive, send) -> None:
        await send({"type": "http.response.start", "status": 200, "headers": []})
        await send({"type": "http.response.body", "body": b"ok"})

    async def disconnected_send(message) -> None:
        raise OSError("client went away")

    middleware = ConnectionTrackerMiddleware(app, registry=standard_registry)
    with pytest.raises(OSError):
        await middleware(_http_scope(), _noop_receive, disconnected_send)

    assert middleware.active == 0
    assert _active(standard_registry) == 0


async def test_connection_tracker_releases_on_cancellation(standard_registry) -> None:
    started = asyncio.Event()

    async def app(scope, receive, send) -> None:
        started.set()
        await asyncio.Event().wait()

    async def send(message) -> None:
        pass

    middleware = ConnectionTrackerMiddleware(app, registry=standard_registry)
    task = asyncio.ensure_future(middleware(_http_scope(), _noop_receive, send))
    await started.wait()
    assert _active(standard_registry) == 1

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert _active(standard_registry) == 0


async def test_http_metrics_records_500_when_app_fails_before_responding(standard_registry) -> None:
    async def app(scope, receive, send) -> None:
        raise RuntimeError("no response")

    async def send(message) -> None:
        pass

    middleware = HttpMetricsMiddleware(app, registry=standard_registry)
    with pytest.raises(RuntimeError):
        await middleware(_http_scope(method="DELETE"), _noop_receive, send)

    assert _requests(standard_registry, "DELETE", UNMATCHED_ROUTE, 500) == 1
    assert _errors(standard_registry, "server_error", UNMATCHED_ROUTE) == 1


async def test_non_http_scopes_pass_through(standard_registry) -> None:
    calls = []

    async def app(scope, receive, send) -> None:
        calls.append(scope["type"])

    inner = HttpMetricsMiddleware(app, registry=standard_registry)
    middleware = ConnectionTrackerMiddleware(inner, registry=standard_registry)
    await middleware({"type": "lifespan"}, _noop_receive, None)

    assert calls == ["lifespan"]
    assert _active(standard_registry) == 0
    assert "http_requests_total{" not in standard_registry.render()


async def test_instrumentation_failure_does_not_change_the_response(
    api_client, registry, monkeypatch: pytest.MonkeyPatch
) -> None:
    def broken_inc(*args, **kwargs) -> None:
        raise RuntimeError("metric store exploded")

    monkeypatch.setattr(registry.counter("http_requests_total"), "inc", broken_inc)

    resp = await api_client.get("/users")
    assert resp.status_code == 200
    assert len(resp.json()) == 2
    assert _active(registry) == 0


async def test_responses_include_x_request_id(api_client) -> None:
    resp = await api_client.get("/health")
    assert resp.status_code == 200
    assert resp.headers.get("x-request-id")


def test_route_template_and_error_type_helpers() -> None:
    class _Route:
        path_format = "/users/{user_id}"

    assert route_template({"route": _Route()}) == "/users/{user_id}"
    assert route_template({"path": "/users/7"}) == UNMATCHED_ROUTE
    assert error_type(200) is None
    assert error_type(302) is None
    assert error_type(404) == "client_error"
    assert error_type(503) == "server_error"
