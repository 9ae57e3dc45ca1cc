from __future__ import annotations

from fastapi import Request

from userapi.config import Settings
from userapi.observability.operations import OperationRecorder
from userapi.observability.registry import MetricRegistry
from userapi.services.user_store import UserStore


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics_registry(request: Request) -> MetricRegistry:
    return request.app.state.metrics_registry


def get_operation_recorder(request: Request) -> OperationRecorder:
    return request.app.state.operation_recorder


def get_user_store(request: Request) -> UserStore:
    return request.app.state.user_store
