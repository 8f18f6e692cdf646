# src/config/loader.py
"""
Загрузчик конфигурации проекта.
Единственный источник истины: config/config.json.
Секретные данные и адреса инфраструктуры переопределяются из переменных окружения.
"""

from __future__ import annotations

import json
import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


# =============================================================================
# ОПРЕДЕЛЕНИЕ ПУТЕЙ
# =============================================================================

def get_project_root() -> Path:
    """Возвращает корневую директорию проекта."""
    return Path(__file__).parent.parent.parent


def get_config_path() -> Path:
    """Возвращает путь к файлу конфигурации."""
    custom_path = os.getenv("CONFIG_PATH")
    if custom_path:
        return Path(custom_path)
    return get_project_root() / "config" / "config.json"


def load_config_json() -> dict[str, Any]:
    """Загружает config.json и возвращает словарь."""
    config_path = get_config_path()
    if not config_path.exists():
        raise FileNotFoundError(f"Файл конфигурации не найден: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        return json.load(f)


# =============================================================================
# PYDANTIC МОДЕЛИ КОНФИГУРАЦИИ
# =============================================================================

class SystemSettings(BaseModel):
    """Системные настройки."""
    PROJECT_NAME: str = "ride_dispatch"
    VERSION: str = "1.0.0"
    DEBUG: bool = True
    ENVIRONMENT: str = "development"
    COMPONENT_MODE: str = "all"
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8080

    @property
    def is_production(self) -> bool:
        """Продакшн-режим скрывает внутренние детали ошибок."""
        return self.ENVIRONMENT.lower() == "production"


class LoggingSettings(BaseModel):
    """Настройки логирования."""
    LOG_LEVEL: str = "DEBUG"
    LOG_TO_FILE: bool = False
    LOG_FILE_PATH: str = "logs/ride_dispatch.log"
    LOG_FORMAT: str = "colored"
    LOG_MAX_BYTES: int = 10485760
    LOG_BACKUP_COUNT: int = 5


class StorageSettings(BaseModel):
    """Выбор бэкенда хранилища."""
    BACKEND: str = "postgres"

    @field_validator("BACKEND")
    @classmethod
    def check_backend(cls, v: str) -> str:
        if v not in ("postgres", "memory"):
            raise ValueError(f"Неизвестный бэкенд хранилища: {v}")
        return v


class DatabaseSettings(BaseModel):
    """Настройки PostgreSQL."""
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "ride_dispatch"
    DB_USER: str = "postgres"
    DB_PASSWORD: str = ""
    DB_MIN_POOL_SIZE: int = 5
    DB_MAX_POOL_SIZE: int = 20
    DB_COMMAND_TIMEOUT: int = 60
    DB_RETRY_ATTEMPTS: int = 3
    DB_RETRY_DELAY: float = 1.0

    @field_validator("DB_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        if not v:
            return os.getenv("DB_PASSWORD", "")
        return v

    @property
    def dsn(self) -> str:
        """Возвращает DSN для подключения к PostgreSQL."""
        return (
            f"postgresql://{self.DB_USER}:{self.DB_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )


class RedisSettings(BaseModel):
    """Настройки Redis."""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str = ""
    REDIS_NAMESPACE: str = "dispatch"
    REDIS_MAX_CONNECTIONS: int = 50

    @field_validator("REDIS_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        if not v:
            return os.getenv("REDIS_PASSWORD", "")
        return v

    @property
    def url(self) -> str:
        """Возвращает URL для подключения к Redis."""
        auth = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
        return f"redis://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"


class RabbitMQSettings(BaseModel):
    """Настройки RabbitMQ."""
    RABBITMQ_ENABLED: bool = True
    RABBITMQ_HOST: str = "localhost"
    RABBITMQ_PORT: int = 5672
    RABBITMQ_USER: str = "guest"
    RABBITMQ_PASSWORD: str = "guest"
    RABBITMQ_VHOST: str = "/"
    RABBITMQ_EXCHANGE: str = "dispatch.events"
    RABBITMQ_PREFETCH_COUNT: int = 10

    @field_validator("RABBITMQ_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        env_pass = os.getenv("RABBITMQ_PASSWORD", "")
        if env_pass:
            return env_pass
        return v

    @property
    def url(self) -> str:
        """Возвращает URL для подключения к RabbitMQ."""
        return (
            f"amqp://{self.RABBITMQ_USER}:{self.RABBITMQ_PASSWORD}"
            f"@{self.RABBITMQ_HOST}:{self.RABBITMQ_PORT}{self.RABBITMQ_VHOST}"
        )


class DispatchSettings(BaseModel):
    """Настройки поиска водителей и таймаутов."""
    SEARCH_RADIUS_KM: float = 15.0
    SEARCH_LIMIT: int = 20
    POSITION_STALE_SECONDS: int = 120
    SEARCH_TIMEOUT_SECONDS: int = 600
    SWEEP_INTERVAL_SECONDS: int = 30
    SETTLEMENT_RETRY_INTERVAL_SECONDS: int = 60
    COUNTER_OFFER_MAX_PENDING: int = 5


class CategoryFare(BaseModel):
    """Тариф одной категории поездки."""
    BASE_FARE: Decimal = Decimal("500.00")
    PER_KM: Decimal = Decimal("150.00")
    MIN_FARE: Decimal = Decimal("500.00")


class PricingSettings(BaseModel):
    """Тарифы по категориям."""
    CATEGORIES: dict[str, CategoryFare] = Field(default_factory=lambda: {
        "ride": CategoryFare(),
        "moto": CategoryFare(BASE_FARE=Decimal("300"), PER_KM=Decimal("100"), MIN_FARE=Decimal("300")),
        "delivery": CategoryFare(BASE_FARE=Decimal("400"), PER_KM=Decimal("120"), MIN_FARE=Decimal("400")),
    })
    PRICE_ROUNDING_STEP: int = 50


class LedgerSettings(BaseModel):
    """Настройки кошельков и расчётов."""
    CURRENCY: str = "AOA"
    TIMEZONE: str = "Africa/Luanda"
    PLATFORM_COMMISSION_PERCENT: Decimal = Decimal("20")
    TRANSACTION_MIN: Decimal = Decimal("50.00")
    TRANSACTION_MAX: Decimal = Decimal("2000000.00")
    DAILY_LIMIT: Decimal = Decimal("500000.00")
    CLEARING_ACCOUNT_ID: int = -1
    PLATFORM_ACCOUNT_ID: int = -2
    CLEARING_ACCOUNT_FLOOR: Decimal = Decimal("-100000000.00")
    DRIVER_COMMISSION_FLOOR: Decimal = Decimal("-50000.00")


class RealtimeSettings(BaseModel):
    """Настройки realtime-канала."""
    FANOUT_BACKEND: str = "local"
    MEMBER_QUEUE_SIZE: int = 100


# =============================================================================
# ГЛАВНЫЙ КЛАСС НАСТРОЕК
# =============================================================================

class Settings(BaseSettings):
    """
    Главный класс настроек приложения.
    Агрегирует все секции конфигурации.
    """
    system: SystemSettings = Field(default_factory=SystemSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    rabbitmq: RabbitMQSettings = Field(default_factory=RabbitMQSettings)
    dispatch: DispatchSettings = Field(default_factory=DispatchSettings)
    pricing: PricingSettings = Field(default_factory=PricingSettings)
    ledger: LedgerSettings = Field(default_factory=LedgerSettings)
    realtime: RealtimeSettings = Field(default_factory=RealtimeSettings)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @classmethod
    def from_config_json(cls) -> "Settings":
        """
        Создаёт объект Settings из config.json.
        Секреты и адреса переопределяются из переменных окружения.
        """
        config_data = load_config_json()

        # Фильтруем комментарии (ключи, начинающиеся с _comment_)
        filtered_data = {k: v for k, v in config_data.items() if not k.startswith("_comment_")}

        pricing_data = filtered_data.get("PRICING") or {}

        return cls(
            system=SystemSettings(
                PROJECT_NAME=filtered_data.get("PROJECT_NAME", "ride_dispatch"),
                VERSION=filtered_data.get("VERSION", "1.0.0"),
                DEBUG=filtered_data.get("DEBUG", True),
                ENVIRONMENT=os.getenv("ENVIRONMENT", filtered_data.get("ENVIRONMENT", "development")),
                COMPONENT_MODE=os.getenv("COMPONENT_MODE", filtered_data.get("COMPONENT_MODE", "all")),
                API_HOST=os.getenv("API_HOST", filtered_data.get("API_HOST", "0.0.0.0")),
                API_PORT=int(os.getenv("API_PORT", filtered_data.get("API_PORT", 8080))),
            ),
            logging=LoggingSettings(
                LOG_LEVEL=os.getenv("LOG_LEVEL", filtered_data.get("LOG_LEVEL", "DEBUG")),
                LOG_TO_FILE=filtered_data.get("LOG_TO_FILE", False),
                LOG_FILE_PATH=filtered_data.get("LOG_FILE_PATH", "logs/ride_dispatch.log"),
                LOG_FORMAT=os.getenv("LOG_FORMAT", filtered_data.get("LOG_FORMAT", "colored")),
                LOG_MAX_BYTES=filtered_data.get("LOG_MAX_BYTES", 10485760),
                LOG_BACKUP_COUNT=filtered_data.get("LOG_BACKUP_COUNT", 5),
            ),
            storage=StorageSettings(
                BACKEND=os.getenv("STORAGE_BACKEND", filtered_data.get("STORAGE_BACKEND", "postgres")),
            ),
            database=DatabaseSettings(
                DB_HOST=os.getenv("DB_HOST", filtered_data.get("DB_HOST", "localhost")),
                DB_PORT=int(os.getenv("DB_PORT", filtered_data.get("DB_PORT", 5432))),
                DB_NAME=os.getenv("DB_NAME", filtered_data.get("DB_NAME", "ride_dispatch")),
                DB_USER=os.getenv("DB_USER", filtered_data.get("DB_USER", "postgres")),
                DB_PASSWORD=os.getenv("DB_PASSWORD", filtered_data.get("DB_PASSWORD", "")),
                DB_MIN_POOL_SIZE=filtered_data.get("DB_MIN_POOL_SIZE", 5),
                DB_MAX_POOL_SIZE=filtered_data.get("DB_MAX_POOL_SIZE", 20),
                DB_COMMAND_TIMEOUT=filtered_data.get("DB_COMMAND_TIMEOUT", 60),
                DB_RETRY_ATTEMPTS=filtered_data.get("DB_RETRY_ATTEMPTS", 3),
                DB_RETRY_DELAY=filtered_data.get("DB_RETRY_DELAY", 1.0),
            ),
            redis=RedisSettings(
                REDIS_HOST=os.getenv("REDIS_HOST", filtered_data.get("REDIS_HOST", "localhost")),
                REDIS_PORT=int(os.getenv("REDIS_PORT", filtered_data.get("REDIS_PORT", 6379))),
                REDIS_DB=filtered_data.get("REDIS_DB", 0),
                REDIS_PASSWORD=os.getenv("REDIS_PASSWORD", filtered_data.get("REDIS_PASSWORD", "")),
                REDIS_NAMESPACE=filtered_data.get("REDIS_NAMESPACE", "dispatch"),
                REDIS_MAX_CONNECTIONS=filtered_data.get("REDIS_MAX_CONNECTIONS", 50),
            ),
            rabbitmq=RabbitMQSettings(
                RABBITMQ_ENABLED=filtered_data.get("RABBITMQ_ENABLED", True),
                RABBITMQ_HOST=os.getenv("RABBITMQ_HOST", filtered_data.get("RABBITMQ_HOST", "localhost")),
                RABBITMQ_PORT=int(os.getenv("RABBITMQ_PORT", filtered_data.get("RABBITMQ_PORT", 5672))),
                RABBITMQ_USER=os.getenv("RABBITMQ_USER", filtered_data.get("RABBITMQ_USER", "guest")),
                RABBITMQ_PASSWORD=os.getenv("RABBITMQ_PASSWORD", filtered_data.get("RABBITMQ_PASSWORD", "guest")),
                RABBITMQ_VHOST=filtered_data.get("RABBITMQ_VHOST", "/"),
                RABBITMQ_EXCHANGE=filtered_data.get("RABBITMQ_EXCHANGE", "dispatch.events"),
                RABBITMQ_PREFETCH_COUNT=filtered_data.get("RABBITMQ_PREFETCH_COUNT", 10),
            ),
            dispatch=DispatchSettings(
                SEARCH_RADIUS_KM=filtered_data.get("SEARCH_RADIUS_KM", 15.0),
                SEARCH_LIMIT=filtered_data.get("SEARCH_LIMIT", 20),
                POSITION_STALE_SECONDS=filtered_data.get("POSITION_STALE_SECONDS", 120),
                SEARCH_TIMEOUT_SECONDS=filtered_data.get("SEARCH_TIMEOUT_SECONDS", 600),
                SWEEP_INTERVAL_SECONDS=filtered_data.get("SWEEP_INTERVAL_SECONDS", 30),
                SETTLEMENT_RETRY_INTERVAL_SECONDS=filtered_data.get("SETTLEMENT_RETRY_INTERVAL_SECONDS", 60),
                COUNTER_OFFER_MAX_PENDING=filtered_data.get("COUNTER_OFFER_MAX_PENDING", 5),
            ),
            pricing=PricingSettings(
                CATEGORIES={
                    name: CategoryFare(**fare) for name, fare in pricing_data.items()
                } or PricingSettings().CATEGORIES,
                PRICE_ROUNDING_STEP=filtered_data.get("PRICE_ROUNDING_STEP", 50),
            ),
            ledger=LedgerSettings(
                CURRENCY=filtered_data.get("CURRENCY", "AOA"),
                TIMEZONE=filtered_data.get("TIMEZONE", "Africa/Luanda"),
                PLATFORM_COMMISSION_PERCENT=filtered_data.get("PLATFORM_COMMISSION_PERCENT", "20"),
                TRANSACTION_MIN=filtered_data.get("TRANSACTION_MIN", "50.00"),
                TRANSACTION_MAX=filtered_data.get("TRANSACTION_MAX", "2000000.00"),
                DAILY_LIMIT=filtered_data.get("DAILY_LIMIT", "500000.00"),
                CLEARING_ACCOUNT_ID=filtered_data.get("CLEARING_ACCOUNT_ID", -1),
                PLATFORM_ACCOUNT_ID=filtered_data.get("PLATFORM_ACCOUNT_ID", -2),
                CLEARING_ACCOUNT_FLOOR=filtered_data.get("CLEARING_ACCOUNT_FLOOR", "-100000000.00"),
                DRIVER_COMMISSION_FLOOR=filtered_data.get("DRIVER_COMMISSION_FLOOR", "-50000.00"),
            ),
            realtime=RealtimeSettings(
                FANOUT_BACKEND=os.getenv("FANOUT_BACKEND", filtered_data.get("FANOUT_BACKEND", "local")),
                MEMBER_QUEUE_SIZE=filtered_data.get("MEMBER_QUEUE_SIZE", 100),
            ),
        )


@lru_cache()
def get_settings() -> Settings:
    """
    Возвращает синглтон настроек приложения.
    Использует кэширование для производительности.
    """
    from dotenv import load_dotenv

    # Загружаем .env файл
    env_path = get_project_root() / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    return Settings.from_config_json()


# Глобальный экземпляр настроек
settings = get_settings()
