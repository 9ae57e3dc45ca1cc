from __future__ import annotations

import uuid
from collections.abc import Iterable
from threading import Lock
from time import perf_counter
from typing import Any, Callable

import structlog
from starlette.datastructures import MutableHeaders

from userapi.observability.metrics import (
    ACTIVE_CONNECTIONS,
    APPLICATION_ERRORS_TOTAL,
    HTTP_REQUEST_DURATION,
    HTTP_REQUESTS_TOTAL,
)
from userapi.observability.registry import MetricRegistry


UNMATCHED_ROUTE = "<unmatched>"

_NOT_STARTED = object()


def route_template(scope: dict[str, Any]) -> str:
    """Return the matched route's path template, never the raw request path."""

    route = scope.get("route")
    template = getattr(route, "path_format", None) or getattr(route, "path", None)
    return template if isinstance(template, str) else UNMATCHED_ROUTE


def error_type(status_code: int) -> str | None:
    if status_code >= 500:
        return "server_error"
    if status_code >= 400:
        return "client_error"
    return None


class RequestLifecycleMiddleware:
    """ASGI middleware with paired start/finish hooks around every HTTP request.

    ``on_request_finish`` runs exactly once for each request whose start hook
    succeeded: after a normal response, a handler exception, or a client
    disconnect/cancellation. Hook failures are logged and never reach the client.
    """

    def __init__(self, app: Callable[..., Any]) -> None:
        self.app = app

    def on_request_start(self, scope: dict[str, Any]) -> Any:
        return None

    def on_response_start(self, scope: dict[str, Any], context: Any, message: dict[str, Any]) -> None:
        pass

    def on_request_finish(self, scope: dict[str, Any], context: Any, status_code: int) -> None:
        pass

    def _log_hook_failure(self, hook: str) -> None:
        structlog.get_logger("metrics").exception(
            "instrumentation_hook_failed",
            middleware=type(self).__name__,
            hook=hook,
        )

    async def __call__(self, scope: dict[str, Any], receive: Callable[..., Any], send: Callable[..., Any]) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        try:
            context = self.on_request_start(scope)
        except Exception:  # noqa: BLE001 - instrumentation must not fail the request
            self._log_hook_failure("on_request_start")
            context = _NOT_STARTED

        if context is _NOT_STARTED:
            await self.app(scope, receive, send)
            return

        # Stays 500 if the app raises before starting a response.
        status_code: int = 500

        async def send_wrapper(message: dict[str, Any]) -> None:
            nonlocal status_code

            if message.get("type") == "http.response.start":
                status_code = int(message.get("status", 500))
                try:
                    self.on_response_start(scope, context, message)
                except Exception:  # noqa: BLE001
                    self._log_hook_failure("on_response_start")

            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            try:
                self.on_request_finish(scope, context, status_code)
            except Exception:  # noqa: BLE001
                self._log_hook_failure("on_request_finish")


class RequestContextMiddleware(RequestLifecycleMiddleware):
    """Adds request_id context, the X-Request-ID header and access logs."""

    def on_request_start(self, scope: dict[str, Any]) -> dict[str, Any]:
        request_id = str(uuid.uuid4())
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            path=scope.get("path"),
            method=scope.get("method"),
        )
        return {"request_id": request_id, "start": perf_counter()}

    def on_response_start(self, scope: dict[str, Any], context: dict[str, Any], message: dict[str, Any]) -> None:
        headers = MutableHeaders(scope=message)
        headers["X-Request-ID"] = context["request_id"]

    def on_request_finish(self, scope: dict[str, Any], context: dict[str, Any], status_code: int) -> None:
        elapsed_ms = (perf_counter() - context["start"]) * 1000.0
        try:
            structlog.get_logger("access").info(
                "http_request",
                route=route_template(scope),
                status_code=status_code,
                elapsed_ms=round(elapsed_ms, 2),
            )
        finally:
            structlog.contextvars.clear_contextvars()


class ConnectionTrackerMiddleware(RequestLifecycleMiddleware):
    """Publishes the number of in-flight HTTP requests to a gauge."""

    def __init__(
        self,
        app: Callable[..., Any],
        registry: MetricRegistry,
        metric_name: str = ACTIVE_CONNECTIONS.name,
    ) -> None:
        super().__init__(app)
        self._gauge = registry.gauge(metric_name).labels()
        self._lock = Lock()
        self._active = 0

    @property
    def active(self) -> int:
        with self._lock:
            return self._active

    def on_request_start(self, scope: dict[str, Any]) -> None:
        with self._lock:
            self._active += 1
            self._gauge.set(self._active)

    def on_request_finish(self, scope: dict[str, Any], context: None, status_code: int) -> None:
        with self._lock:
            if self._active == 0:
                structlog.get_logger("metrics").warning("connection_count_underflow")
                return
            self._active -= 1
            self._gauge.set(self._active)


class HttpMetricsMiddleware(RequestLifecycleMiddleware):
    """Records request count, duration and error class per (method, route, status)."""

    def __init__(
        self,
        app: Callable[..., Any],
        registry: MetricRegistry,
        excluded_paths: Iterable[str] = ("/metrics",),
    ) -> None:
        super().__init__(app)
        # Resolved eagerly so a missing metric fails at startup.
        self._requests = registry.counter(HTTP_REQUESTS_TOTAL.name)
        self._duration = registry.histogram(HTTP_REQUEST_DURATION.name)
        self._errors = registry.counter(APPLICATION_ERRORS_TOTAL.name)
        # Avoid self-observing the scrape endpoint.
        self._excluded_paths = frozenset(excluded_paths)

    def on_request_start(self, scope: dict[str, Any]) -> float | None:
        if scope.get("path") in self._excluded_paths:
            return None
        return perf_counter()

    def on_request_finish(self, scope: dict[str, Any], context: float | None, status_code: int) -> None:
        if context is None:
            return

        elapsed = max(perf_counter() - context, 0.0)
        route = route_template(scope)
        labels = (scope.get("method", "GET"), route, status_code)

        self._duration.observe(labels, elapsed)
        self._requests.inc(labels)

        error = error_type(status_code)
        if error is not None:
            self._errors.inc((error, route))
