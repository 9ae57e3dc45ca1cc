from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from userapi.api.metrics import router as metrics_router
from userapi.api.users import router as users_router
from userapi.config import Settings, get_settings
from userapi.observability.logging import configure_logging
from userapi.observability.metrics import build_registry
from userapi.observability.middleware import (
    ConnectionTrackerMiddleware,
    HttpMetricsMiddleware,
    RequestContextMiddleware,
)
from userapi.observability.operations import OperationRecorder
from userapi.services.user_store import UserStore


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    registry = build_registry(settings)
    recorder = OperationRecorder(registry)

    app = FastAPI(title="Users Backend", version=settings.app_version)
    app.state.settings = settings
    app.state.metrics_registry = registry
    app.state.operation_recorder = recorder
    app.state.user_store = UserStore(recorder)

    # Added innermost first: CORS -> request context -> connection tracker -> HTTP metrics.
    app.add_middleware(HttpMetricsMiddleware, registry=registry)
    app.add_middleware(ConnectionTrackerMiddleware, registry=registry)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(users_router)
    app.include_router(metrics_router)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()
