# src/container.py
"""
Сборка сервисов под выбранный бэкенд хранилища.

Одна и та же сборка используется HTTP/WebSocket приложением и воркерами:
postgres (PostgreSQL + Redis + RabbitMQ) или memory (всё в процессе).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from src.common.constants import TypeMsg
from src.common.logger import log_info
from src.config.loader import Settings, get_settings
from src.core.directory import DriverDirectory, InMemoryPositionStore, RedisPositionStore
from src.core.dispatch import DispatchCoordinator
from src.core.ledger import InMemoryLedgerRepository, LedgerService, PostgresLedgerRepository
from src.core.rides import (
    InMemoryRideRepository,
    PostgresRideRepository,
    PriceQuoter,
    RideLifecycleEngine,
)
from src.infra.database import DatabaseManager, close_db, get_db, init_db
from src.infra.event_bus import EventBus, close_event_bus, get_event_bus, init_event_bus
from src.infra.redis_client import RedisClient, close_redis, get_redis, init_redis
from src.realtime import FanoutChannel, LocalFanoutChannel, RedisFanoutChannel


@dataclass
class ServiceContainer:
    """Собранные сервисы и инфраструктура, которой они пользуются."""
    settings: Settings
    channel: FanoutChannel
    directory: DriverDirectory
    lifecycle: RideLifecycleEngine
    ledger: LedgerService
    dispatch: DispatchCoordinator
    event_bus: Optional[EventBus] = None
    db: Optional[DatabaseManager] = None
    redis: Optional[RedisClient] = None
    owns_infra: bool = False


async def build_services(
    settings: Optional[Settings] = None,
    init_infra: bool = True,
) -> ServiceContainer:
    """
    Собирает сервисы.

    Args:
        settings: Настройки (по умолчанию глобальные)
        init_infra: Подключать ли PostgreSQL/Redis/RabbitMQ. False, если
                    инфраструктура уже поднята вызывающим кодом.
    """
    settings = settings or get_settings()
    db: Optional[DatabaseManager] = None
    redis: Optional[RedisClient] = None
    event_bus: Optional[EventBus] = None

    if settings.storage.BACKEND == "memory":
        ride_repo = InMemoryRideRepository()
        ledger_repo = InMemoryLedgerRepository()
        store = InMemoryPositionStore()
    else:
        if init_infra:
            await init_db()
            await init_redis()
        db = get_db()
        redis = get_redis()
        ride_repo = PostgresRideRepository(db)
        ledger_repo = PostgresLedgerRepository(db)
        store = RedisPositionStore(redis)

    if settings.rabbitmq.RABBITMQ_ENABLED and settings.storage.BACKEND != "memory":
        if init_infra:
            await init_event_bus()
        event_bus = get_event_bus()

    queue_size = settings.realtime.MEMBER_QUEUE_SIZE
    if settings.realtime.FANOUT_BACKEND == "redis" and redis is not None:
        channel: FanoutChannel = RedisFanoutChannel(redis, member_queue_size=queue_size)
    else:
        channel = LocalFanoutChannel(member_queue_size=queue_size)
    await channel.start()

    directory = DriverDirectory(store, stale_seconds=settings.dispatch.POSITION_STALE_SECONDS)
    ledger = LedgerService(ledger_repo, settings.ledger, event_bus=event_bus, channel=channel)
    await ledger.bootstrap()

    lifecycle = RideLifecycleEngine(
        ride_repo,
        channel,
        event_bus=event_bus,
        settlement=ledger,
        quoter=PriceQuoter(settings.pricing),
        max_pending_offers=settings.dispatch.COUNTER_OFFER_MAX_PENDING,
    )
    dispatch = DispatchCoordinator(lifecycle, directory, channel, ledger=ledger, settings=settings.dispatch)

    await log_info(
        f"Сервисы собраны: storage={settings.storage.BACKEND}, fanout={type(channel).__name__}",
        type_msg=TypeMsg.INFO,
    )
    return ServiceContainer(
        settings=settings,
        channel=channel,
        directory=directory,
        lifecycle=lifecycle,
        ledger=ledger,
        dispatch=dispatch,
        event_bus=event_bus,
        db=db,
        redis=redis,
        owns_infra=init_infra,
    )


async def shutdown_services(container: ServiceContainer) -> None:
    """Останавливает канал и закрывает инфраструктуру, если сборка её поднимала."""
    await container.channel.stop()
    if not container.owns_infra:
        return
    if container.event_bus is not None:
        await close_event_bus()
    if container.redis is not None:
        await close_redis()
    if container.db is not None:
        await close_db()
