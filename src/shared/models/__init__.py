# src/shared/models/__init__.py
"""
Общие Pydantic-модели адаптеров.
"""

from src.shared.models.common import (
    ErrorResponse,
    HealthStatus,
    PaginationParams,
    Principal,
)

__all__ = [
    "ErrorResponse",
    "HealthStatus",
    "PaginationParams",
    "Principal",
]
