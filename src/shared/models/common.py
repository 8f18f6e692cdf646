# src/shared/models/common.py
"""
Общие модели для всех адаптеров (HTTP, WebSocket, воркеры).
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from src.common.constants import UserRole


class Principal(BaseModel):
    """
    Проверенный внешним шлюзом пользователь.
    Ядро доверяет этим данным и само учётные данные не проверяет.
    """

    user_id: int = Field(..., description="ID пользователя")
    role: UserRole = Field(UserRole.PASSENGER, description="Роль")

    @property
    def is_admin(self) -> bool:
        return self.role in (UserRole.ADMIN, UserRole.SYSTEM)


class PaginationParams(BaseModel):
    """Параметры пагинации."""

    page: int = Field(default=1, ge=1, description="Номер страницы")
    page_size: int = Field(default=20, ge=1, le=100, description="Размер страницы")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    @property
    def limit(self) -> int:
        return self.page_size


class ErrorResponse(BaseModel):
    """Стандартный ответ с ошибкой."""

    error_code: str
    message: str
    details: dict[str, Any] | None = None
    request_id: str | None = None


class HealthStatus(BaseModel):
    """Статус здоровья сервиса."""

    service: str
    status: str = "healthy"  # healthy, degraded, unhealthy
    version: str | None = None
    uptime_seconds: float | None = None
    dependencies: dict[str, str] = Field(default_factory=dict)
