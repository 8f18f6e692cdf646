# src/infra/redis_client.py
"""
Клиент Redis: позиции водителей, отметки офферов и Pub/Sub для realtime.
"""

from __future__ import annotations

import json
from typing import Any

import redis.asyncio as redis

from src.common.logger import log_error, log_info
from src.common.constants import TypeMsg


class RedisClient:
    """
    Асинхронный клиент Redis с пространством имён ключей.

    Поддерживает:
    - Hash и Set операции для позиций и офферов
    - Geo-индекс позиций (GEOADD, GEORADIUS)
    - Публикацию и подписку на каналы
    """

    _instance: RedisClient | None = None
    _client: redis.Redis | None = None

    def __new__(cls) -> RedisClient:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self) -> None:
        if hasattr(self, "_initialized"):
            return
        self._initialized = True
        self._client = None
        self._namespace = "dispatch"

    @property
    def client(self) -> redis.Redis:
        """Возвращает клиент Redis."""
        if self._client is None:
            raise RuntimeError("Redis клиент не инициализирован. Вызовите connect() сначала.")
        return self._client

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    def make_key(self, key: str) -> str:
        """Добавляет namespace к ключу."""
        return f"{self._namespace}:{key}"

    async def connect(
        self,
        url: str | None = None,
        max_connections: int = 50,
        namespace: str | None = None,
    ) -> None:
        """
        Подключается к Redis.

        Args:
            url: URL Redis (если None, берётся из конфига)
            max_connections: Максимальное количество соединений
            namespace: Префикс ключей
        """
        if self._client is not None:
            return

        if url is None:
            from src.config import settings
            url = settings.redis.url
            max_connections = settings.redis.REDIS_MAX_CONNECTIONS
            namespace = settings.redis.REDIS_NAMESPACE

        if namespace:
            self._namespace = namespace

        await log_info("Подключение к Redis...", type_msg=TypeMsg.INFO)

        self._client = redis.from_url(
            url,
            max_connections=max_connections,
            decode_responses=True,
        )
        await self._client.ping()

        await log_info("Подключение к Redis установлено", type_msg=TypeMsg.INFO)

    async def disconnect(self) -> None:
        """Закрывает соединение с Redis."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            await log_info("Соединение с Redis закрыто", type_msg=TypeMsg.INFO)

    # =========================================================================
    # БАЗОВЫЕ ОПЕРАЦИИ
    # =========================================================================

    async def delete(self, *keys: str) -> int:
        return await self.client.delete(*(self.make_key(k) for k in keys))

    async def expire(self, key: str, ttl: int) -> bool:
        return await self.client.expire(self.make_key(key), ttl)

    # =========================================================================
    # HASH ОПЕРАЦИИ
    # =========================================================================

    async def hget(self, name: str, key: str) -> str | None:
        return await self.client.hget(self.make_key(name), key)

    async def hset(self, name: str, key: str, value: str) -> int:
        return await self.client.hset(self.make_key(name), key, value)

    async def hdel(self, name: str, *keys: str) -> int:
        return await self.client.hdel(self.make_key(name), *keys)

    async def hmget(self, name: str, keys: list[str]) -> list[str | None]:
        if not keys:
            return []
        return await self.client.hmget(self.make_key(name), keys)

    # =========================================================================
    # GEO ОПЕРАЦИИ (для поиска водителей)
    # =========================================================================

    async def geoadd(self, key: str, longitude: float, latitude: float, member: str) -> int:
        """
        Добавляет или обновляет точку в geo-индексе.

        Returns:
            Количество новых элементов
        """
        return await self.client.geoadd(self.make_key(key), (longitude, latitude, member))

    async def georadius(
        self,
        key: str,
        longitude: float,
        latitude: float,
        radius: float,
        unit: str = "km",
        count: int | None = None,
    ) -> list[tuple[str, float]]:
        """
        Ищет участников в радиусе от точки, ближайшие первыми.

        Returns:
            Список кортежей (member, distance)
        """
        results = await self.client.georadius(
            self.make_key(key),
            longitude,
            latitude,
            radius,
            unit=unit,
            withdist=True,
            count=count,
            sort="ASC",
        )
        return [(member, float(distance)) for member, distance in results]

    async def georem(self, key: str, member: str) -> int:
        """Удаляет участника из geo-индекса."""
        return await self.client.zrem(self.make_key(key), member)

    # =========================================================================
    # SET ОПЕРАЦИИ
    # =========================================================================

    async def sadd(self, key: str, *members: str) -> int:
        return await self.client.sadd(self.make_key(key), *members)

    async def smembers(self, key: str) -> set[str]:
        return await self.client.smembers(self.make_key(key))

    # =========================================================================
    # PUB/SUB
    # =========================================================================

    async def publish(self, channel: str, data: dict[str, Any]) -> int:
        """
        Публикует JSON-сообщение в канал.

        Returns:
            Количество подписчиков, получивших сообщение
        """
        message = json.dumps(data, ensure_ascii=False, default=str)
        return await self.client.publish(self.make_key(channel), message)

    def pubsub(self) -> Any:
        """Новый объект PubSub на общем пуле соединений."""
        return self.client.pubsub()

    # =========================================================================
    # HEALTH CHECK
    # =========================================================================

    async def health_check(self) -> bool:
        """
        Проверяет здоровье подключения к Redis.

        Returns:
            True если подключение работает
        """
        try:
            return await self.client.ping()
        except Exception as e:
            await log_error(f"Health check Redis failed: {e}")
            return False


def get_redis() -> RedisClient:
    """Возвращает глобальный экземпляр RedisClient."""
    return RedisClient()


async def init_redis() -> None:
    """Инициализирует подключение к Redis по настройкам."""
    from src.config import settings

    redis_client = get_redis()
    await redis_client.connect(
        url=settings.redis.url,
        max_connections=settings.redis.REDIS_MAX_CONNECTIONS,
        namespace=settings.redis.REDIS_NAMESPACE,
    )
    await log_info(
        f"Redis подключён: {settings.redis.REDIS_HOST}:{settings.redis.REDIS_PORT}/{settings.redis.REDIS_DB}",
        type_msg=TypeMsg.INFO,
    )


async def close_redis() -> None:
    """Закрывает подключение к Redis."""
    await get_redis().disconnect()
    await log_info("Redis отключён", type_msg=TypeMsg.INFO)
