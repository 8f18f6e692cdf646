# src/shared/__init__.py
"""
Общий код адаптеров и сервисов.
"""

__all__: list[str] = []
