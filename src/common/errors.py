# src/common/errors.py
"""
Иерархия доменных ошибок.

Каждая ошибка несёт машинный код (уходит клиенту в ErrorResponse и
realtime-событиях) и HTTP-статус для REST-адаптера.
"""

from __future__ import annotations

from typing import Any


class DispatchError(Exception):
    """Базовая доменная ошибка."""

    code: str = "INTERNAL"
    status_code: int = 500

    def __init__(self, message: str = "", *, code: str | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if code is not None:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"error_code": self.code, "message": self.message, "details": self.details}


class ValidationError(DispatchError):
    """Некорректные координаты, сумма или параметры запроса."""
    code = "VALIDATION_ERROR"
    status_code = 422


class NotFoundError(DispatchError):
    """Неизвестная поездка или кошелёк."""
    code = "NOT_FOUND"
    status_code = 404


class ConflictError(DispatchError):
    """Поездка уже занята или переход статуса недопустим."""
    code = "CONFLICT"
    status_code = 409


class InsufficientFundsError(DispatchError):
    """Баланс отправителя ниже допустимого порога."""
    code = "INSUFFICIENT_FUNDS"
    status_code = 402


class LimitExceededError(DispatchError):
    """Превышен дневной лимит или границы суммы."""
    code = "LIMIT_EXCEEDED"
    status_code = 429


class UnauthorizedError(DispatchError):
    """Вызывающий не участник поездки или кошелёк заблокирован."""
    code = "UNAUTHORIZED"
    status_code = 403


class SearchTimeoutError(DispatchError):
    """Окно поиска водителя истекло."""
    code = "TIMEOUT"
    status_code = 408


class InternalError(DispatchError):
    """Сбой хранилища или транспорта."""
    code = "INTERNAL"
    status_code = 500
