# tests/conftest.py
"""
Общие фикстуры и настройки для тестов.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest

# Устанавливаем переменные окружения перед импортом модулей
os.environ.setdefault("DB_PASSWORD", "test_password")
os.environ.setdefault("REDIS_PASSWORD", "")
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("FANOUT_BACKEND", "local")

from src.config.loader import (  # noqa: E402
    DispatchSettings,
    LedgerSettings,
    RabbitMQSettings,
    RealtimeSettings,
    Settings,
    StorageSettings,
)
from src.core.directory import DriverDirectory, InMemoryPositionStore  # noqa: E402
from src.realtime.channel import LocalFanoutChannel  # noqa: E402
from tests.factories import FakeClock  # noqa: E402


# =============================================================================
# ФИКСТУРЫ КОНФИГУРАЦИИ
# =============================================================================

@pytest.fixture(scope="session")
def project_root() -> Path:
    """Корневая директория проекта."""
    return Path(__file__).parent.parent


@pytest.fixture(scope="session")
def config_path(project_root: Path) -> Path:
    """Путь к файлу конфигурации."""
    return project_root / "config" / "config.json"


@pytest.fixture
def memory_settings() -> Settings:
    """Настройки для сборки всех сервисов в памяти процесса."""
    return Settings(
        storage=StorageSettings(BACKEND="memory"),
        rabbitmq=RabbitMQSettings(RABBITMQ_ENABLED=False),
        dispatch=DispatchSettings(SEARCH_RADIUS_KM=5.0, SEARCH_TIMEOUT_SECONDS=600),
        ledger=LedgerSettings(),
        realtime=RealtimeSettings(FANOUT_BACKEND="local", MEMBER_QUEUE_SIZE=100),
    )


@pytest.fixture
def mock_config() -> dict[str, Any]:
    """Мок конфигурации для тестов загрузчика."""
    return {
        "_comment_system": "Системные настройки",
        "PROJECT_NAME": "ride_dispatch_test",
        "VERSION": "1.0.0-test",
        "DEBUG": True,
        "ENVIRONMENT": "test",
        "COMPONENT_MODE": "api",
        "API_PORT": 9090,
        "LOG_LEVEL": "DEBUG",
        "LOG_FORMAT": "json",
        "STORAGE_BACKEND": "memory",
        "DB_HOST": "localhost",
        "DB_NAME": "ride_dispatch_test",
        "REDIS_NAMESPACE": "dispatch_test",
        "RABBITMQ_ENABLED": False,
        "SEARCH_RADIUS_KM": 3.0,
        "SEARCH_TIMEOUT_SECONDS": 120,
        "PRICING": {
            "ride": {"BASE_FARE": 600.0, "PER_KM": 200.0, "MIN_FARE": 700.0},
        },
        "PRICE_ROUNDING_STEP": 100,
        "CURRENCY": "AOA",
        "PLATFORM_COMMISSION_PERCENT": 15.0,
        "DAILY_LIMIT": "100000.00",
        "FANOUT_BACKEND": "local",
    }


@pytest.fixture
def temp_config_file(tmp_path: Path, mock_config: dict[str, Any]) -> Path:
    """Создаёт временный файл конфигурации."""
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps(mock_config, ensure_ascii=False, indent=2))
    return config_file


# =============================================================================
# ФИКСТУРЫ ИНФРАСТРУКТУРЫ (МОКИ)
# =============================================================================

@pytest.fixture
def mock_db() -> AsyncMock:
    """Мок менеджера базы данных."""
    db = AsyncMock()
    db.fetchrow = AsyncMock(return_value=None)
    db.fetch = AsyncMock(return_value=[])
    db.execute = AsyncMock(return_value="INSERT 0 1")
    db.fetchval = AsyncMock(return_value=None)
    return db


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Мок клиента Redis."""
    redis = AsyncMock()
    redis.delete = AsyncMock(return_value=1)
    redis.expire = AsyncMock(return_value=True)
    redis.hget = AsyncMock(return_value=None)
    redis.hset = AsyncMock(return_value=1)
    redis.hmget = AsyncMock(return_value=[])
    redis.hdel = AsyncMock(return_value=1)
    redis.geoadd = AsyncMock(return_value=1)
    redis.georadius = AsyncMock(return_value=[])
    redis.georem = AsyncMock(return_value=1)
    redis.sadd = AsyncMock(return_value=1)
    redis.smembers = AsyncMock(return_value=set())
    redis.publish = AsyncMock(return_value=1)
    return redis


@pytest.fixture
def mock_event_bus() -> AsyncMock:
    """Мок шины событий."""
    event_bus = AsyncMock()
    event_bus.publish = AsyncMock(return_value=None)
    event_bus.subscribe = AsyncMock(return_value=None)
    event_bus.is_connected = True
    return event_bus


# =============================================================================
# ФИКСТУРЫ ДОМЕНА
# =============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def channel() -> LocalFanoutChannel:
    """Локальный realtime канал."""
    return LocalFanoutChannel(member_queue_size=100)


@pytest.fixture
def directory(clock: FakeClock) -> DriverDirectory:
    """Справочник водителей в памяти с управляемыми часами."""
    return DriverDirectory(InMemoryPositionStore(), stale_seconds=120, clock=clock)
