from __future__ import annotations

from collections.abc import AsyncIterator

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from userapi.config import get_settings
from userapi.main import create_app
from userapi.observability.metrics import register_standard_metrics
from userapi.observability.registry import MetricRegistry


@pytest.fixture(autouse=True)
def test_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("APP_NAME", "users-backend-test")
    monkeypatch.setenv("APP_VERSION", "9.9.9")
    monkeypatch.setenv("ENABLE_METRICS_ENDPOINT", "true")
    monkeypatch.setenv("ENABLE_PROCESS_METRICS", "true")
    get_settings.cache_clear()

    yield

    get_settings.cache_clear()


@pytest.fixture
def app() -> FastAPI:
    return create_app()


@pytest.fixture
def registry(app: FastAPI) -> MetricRegistry:
    return app.state.metrics_registry


@pytest.fixture
def standard_registry() -> MetricRegistry:
    return register_standard_metrics(MetricRegistry())


@pytest.fixture
async def api_client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
async def tolerant_client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    """Client that returns 500 responses instead of re-raising handler errors."""

    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
