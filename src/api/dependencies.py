# src/api/dependencies.py
"""
Dependency Injection для HTTP/WebSocket адаптеров.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from fastapi import Depends, Header

from src.common.constants import UserRole
from src.common.errors import UnauthorizedError, ValidationError
from src.shared.models.common import Principal

if TYPE_CHECKING:
    from src.container import ServiceContainer
    from src.core.dispatch import DispatchCoordinator
    from src.core.ledger import LedgerService
    from src.core.rides import RideLifecycleEngine


# Собранные сервисы (синглтон на процесс)
_container: "ServiceContainer | None" = None


def init_dependencies(container: "ServiceContainer") -> None:
    """Инициализировать зависимости при старте приложения."""
    global _container
    _container = container


def cleanup_dependencies() -> None:
    """Очистить ссылки при остановке приложения."""
    global _container
    _container = None


def get_container() -> "ServiceContainer":
    if _container is None:
        raise RuntimeError("Сервисы не инициализированы. Вызовите init_dependencies()")
    return _container


def get_dispatch() -> "DispatchCoordinator":
    return get_container().dispatch


def get_lifecycle() -> "RideLifecycleEngine":
    return get_container().lifecycle


def get_ledger() -> "LedgerService":
    return get_container().ledger


def parse_principal(user_id: Optional[str], role: Optional[str]) -> Principal:
    """
    Principal из данных, проверенных шлюзом.

    Raises:
        UnauthorizedError: нет ID пользователя
        ValidationError: некорректный ID или роль
    """
    if user_id is None or not str(user_id).strip():
        raise UnauthorizedError("Не передан идентификатор пользователя", code="UNAUTHENTICATED")
    try:
        uid = int(user_id)
    except (TypeError, ValueError):
        raise ValidationError(f"Некорректный ID пользователя: {user_id!r}")
    if uid <= 0:
        raise ValidationError(f"Некорректный ID пользователя: {user_id!r}")

    try:
        user_role = UserRole(role) if role else UserRole.PASSENGER
    except ValueError:
        raise ValidationError(f"Неизвестная роль: {role!r}")
    if user_role == UserRole.SYSTEM:
        raise UnauthorizedError("Системная роль недоступна внешним клиентам")
    return Principal(user_id=uid, role=user_role)


async def get_principal(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Principal:
    return parse_principal(x_user_id, x_user_role)


def require_role(principal: Principal, *roles: UserRole) -> Principal:
    if principal.role not in roles and not principal.is_admin:
        raise UnauthorizedError("Операция недоступна для вашей роли")
    return principal


async def get_driver(principal: Principal = Depends(get_principal)) -> Principal:
    return require_role(principal, UserRole.DRIVER)


async def get_admin(principal: Principal = Depends(get_principal)) -> Principal:
    return require_role(principal, UserRole.ADMIN)
