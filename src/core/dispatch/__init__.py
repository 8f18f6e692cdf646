# src/core/dispatch/__init__.py
"""
Диспетчеризация: рассылка предложений и разрешение гонки принятия.
"""

from src.core.dispatch.service import DispatchCoordinator

__all__ = ["DispatchCoordinator"]
