# src/core/directory/__init__.py
"""
Справочник водителей: позиции, доступность, поиск по радиусу.
"""

from src.core.directory.models import DriverCandidate, DriverPosition
from src.core.directory.service import DriverDirectory
from src.core.directory.store import InMemoryPositionStore, PositionStore, RedisPositionStore

__all__ = [
    "DriverCandidate",
    "DriverPosition",
    "DriverDirectory",
    "InMemoryPositionStore",
    "PositionStore",
    "RedisPositionStore",
]
