# src/api/__init__.py
"""
HTTP и WebSocket адаптеры. Бизнес-логики здесь нет.
"""

from src.api.app import create_app

__all__ = ["create_app"]
