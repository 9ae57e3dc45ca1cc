from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response

from userapi.config import Settings
from userapi.observability.exposition import CONTENT_TYPE_LATEST
from userapi.observability.registry import MetricRegistry
from userapi.services.dependencies import get_app_settings, get_metrics_registry


router = APIRouter(tags=["metrics"])


@router.get("/metrics", include_in_schema=False)
async def metrics(
    settings: Settings = Depends(get_app_settings),
    registry: MetricRegistry = Depends(get_metrics_registry),
) -> Response:
    if not settings.enable_metrics_endpoint:
        raise HTTPException(status_code=404, detail="Not found")
    return Response(content=registry.render(), media_type=CONTENT_TYPE_LATEST)
