# src/api/routes/health.py
"""
Проверка здоровья и статистика realtime канала.
"""

from __future__ import annotations

import time
from typing import Any

from fastapi import APIRouter, Depends

from src.api.dependencies import get_container
from src.container import ServiceContainer
from src.shared.models.common import HealthStatus

router = APIRouter(tags=["Health"])

SERVICE_NAME = "ride_dispatch"
SERVICE_VERSION = "1.0.0"
_STARTED_AT = time.monotonic()


@router.get("/health", response_model=HealthStatus)
async def health_check(container: ServiceContainer = Depends(get_container)) -> HealthStatus:
    """Проверка здоровья сервиса и его зависимостей."""
    dependencies: dict[str, str] = {"storage": container.settings.storage.BACKEND}

    checks = {"postgres": container.db, "redis": container.redis, "rabbitmq": container.event_bus}
    for name, client in checks.items():
        if client is None:
            continue
        dependencies[name] = "ok" if await client.health_check() else "unavailable"

    degraded = any(v == "unavailable" for v in dependencies.values())
    return HealthStatus(
        service=SERVICE_NAME,
        status="degraded" if degraded else "healthy",
        version=SERVICE_VERSION,
        uptime_seconds=round(time.monotonic() - _STARTED_AT, 3),
        dependencies=dependencies,
    )


@router.get("/stats")
async def realtime_stats(container: ServiceContainer = Depends(get_container)) -> dict[str, Any]:
    """Статистика комнат и участников realtime канала."""
    return container.channel.get_stats()
