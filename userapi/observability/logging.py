from __future__ import annotations

import logging
import sys
from collections.abc import MutableMapping
from typing import Any

import structlog

from userapi.config import Settings


_CONFIGURED_FOR: tuple[str, str, int] | None = None


class ServiceFields:
    """Stamps the service name and version onto every event.

    Values already on the event (bound by a caller) win.
    """

    def __init__(self, app: str, version: str) -> None:
        self.app = app
        self.version = version

    def __call__(self, logger: Any, method_name: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
        event_dict.setdefault("app", self.app)
        event_dict.setdefault("version", self.version)
        return event_dict


def resolve_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def shared_processors(settings: Settings) -> list[Any]:
    """Processors run for structlog events and foreign stdlib records alike."""

    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        ServiceFields(settings.app_name, settings.app_version),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def configure_logging(settings: Settings) -> None:
    """JSON logs on stdout for structlog, stdlib and uvicorn loggers.

    Repeated calls with the same service identity and level are no-ops.
    """

    global _CONFIGURED_FOR
    level = resolve_level(settings.log_level)
    identity = (settings.app_name, settings.app_version, level)
    if _CONFIGURED_FOR == identity:
        return

    pre_chain = shared_processors(settings)
    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=pre_chain,
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    # RequestContextMiddleware writes the access log.
    for name in ("uvicorn", "uvicorn.error"):
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False
        server_logger.setLevel(level)
    logging.getLogger("uvicorn.access").disabled = True

    _CONFIGURED_FOR = identity
