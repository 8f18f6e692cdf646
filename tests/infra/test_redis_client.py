# tests/infra/test_redis_client.py
"""
Тесты для клиента Redis.
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.infra.redis_client import RedisClient


class TestRedisClient:
    """Тесты для RedisClient."""

    @pytest.fixture
    def redis_client(self) -> RedisClient:
        """Создаёт экземпляр RedisClient для тестов."""
        # Сбрасываем синглтон для каждого теста
        RedisClient._instance = None
        RedisClient._client = None
        return RedisClient()

    @pytest.fixture
    def connected(self, redis_client: RedisClient) -> AsyncMock:
        """Подставляет мок соединения."""
        raw = AsyncMock()
        redis_client._client = raw
        return raw

    def test_singleton(self) -> None:
        """Проверяет паттерн Singleton."""
        RedisClient._instance = None

        assert RedisClient() is RedisClient()

    def test_client_not_initialized(self, redis_client: RedisClient) -> None:
        """Проверяет ошибку при обращении к неинициализированному клиенту."""
        assert redis_client.is_connected is False
        with pytest.raises(RuntimeError, match="Redis клиент не инициализирован"):
            _ = redis_client.client

    def test_make_key(self, redis_client: RedisClient) -> None:
        """Проверяет формирование ключа с namespace."""
        assert redis_client.make_key("drivers:positions") == "dispatch:drivers:positions"

    @pytest.mark.asyncio
    async def test_connect(self, redis_client: RedisClient) -> None:
        """Проверяет подключение и смену namespace."""
        mock_redis = AsyncMock()
        mock_redis.ping = AsyncMock(return_value=True)

        with patch("redis.asyncio.from_url", return_value=mock_redis) as mock_from_url:
            await redis_client.connect(
                url="redis://localhost:6379/0",
                max_connections=10,
                namespace="dispatch_test",
            )

        mock_from_url.assert_called_once_with(
            "redis://localhost:6379/0", max_connections=10, decode_responses=True
        )
        mock_redis.ping.assert_awaited_once()
        assert redis_client.make_key("k") == "dispatch_test:k"

    @pytest.mark.asyncio
    async def test_connect_already_connected(self, redis_client: RedisClient, connected: AsyncMock) -> None:
        """Проверяет, что повторное подключение пропускается."""
        with patch("redis.asyncio.from_url") as mock_from_url:
            await redis_client.connect(url="redis://localhost:6379/0")

        mock_from_url.assert_not_called()

    @pytest.mark.asyncio
    async def test_disconnect(self, redis_client: RedisClient, connected: AsyncMock) -> None:
        await redis_client.disconnect()

        connected.aclose.assert_awaited_once()
        assert redis_client._client is None

    @pytest.mark.asyncio
    async def test_disconnect_when_not_connected(self, redis_client: RedisClient) -> None:
        """Проверяет отключение, когда соединение не установлено."""
        await redis_client.disconnect()

    @pytest.mark.asyncio
    async def test_hash_operations(self, redis_client: RedisClient, connected: AsyncMock) -> None:
        """Проверяет, что hash операции идут по ключу с namespace."""
        connected.hget.return_value = '{"driver_id": 7}'
        connected.hmget.return_value = ["{}", None]

        await redis_client.hset("drivers:positions", "7", "{}")
        assert await redis_client.hget("drivers:positions", "7") == '{"driver_id": 7}'
        assert await redis_client.hmget("drivers:positions", ["7", "8"]) == ["{}", None]
        assert await redis_client.hmget("drivers:positions", []) == []
        await redis_client.hdel("drivers:positions", "7")

        connected.hset.assert_awaited_once_with("dispatch:drivers:positions", "7", "{}")
        connected.hdel.assert_awaited_once_with("dispatch:drivers:positions", "7")
        connected.hmget.assert_awaited_once_with("dispatch:drivers:positions", ["7", "8"])

    @pytest.mark.asyncio
    async def test_geo_operations(self, redis_client: RedisClient, connected: AsyncMock) -> None:
        """Проверяет geo-индекс: добавление, поиск по радиусу и удаление."""
        connected.georadius.return_value = [["7", "0.4321"], ["9", "1.5"]]

        await redis_client.geoadd("drivers:geo", 13.2, -8.8, "7")
        hits = await redis_client.georadius("drivers:geo", 13.2, -8.8, 5.0, count=10)
        await redis_client.georem("drivers:geo", "7")

        assert hits == [("7", 0.4321), ("9", 1.5)]
        connected.geoadd.assert_awaited_once_with("dispatch:drivers:geo", (13.2, -8.8, "7"))
        connected.georadius.assert_awaited_once_with(
            "dispatch:drivers:geo", 13.2, -8.8, 5.0,
            unit="km", withdist=True, count=10, sort="ASC",
        )
        connected.zrem.assert_awaited_once_with("dispatch:drivers:geo", "7")

    @pytest.mark.asyncio
    async def test_set_operations(self, redis_client: RedisClient, connected: AsyncMock) -> None:
        connected.smembers.return_value = {"3", "4"}

        await redis_client.sadd("ride:r1:offered", "3", "4")
        await redis_client.expire("ride:r1:offered", 3600)

        connected.sadd.assert_awaited_once_with("dispatch:ride:r1:offered", "3", "4")
        connected.expire.assert_awaited_once_with("dispatch:ride:r1:offered", 3600)
        assert await redis_client.smembers("ride:r1:offered") == {"3", "4"}

    @pytest.mark.asyncio
    async def test_delete(self, redis_client: RedisClient, connected: AsyncMock) -> None:
        connected.delete.return_value = 2

        assert await redis_client.delete("a", "b") == 2
        connected.delete.assert_awaited_once_with("dispatch:a", "dispatch:b")

    @pytest.mark.asyncio
    async def test_publish_serializes_json(self, redis_client: RedisClient, connected: AsyncMock) -> None:
        """Проверяет публикацию JSON-сообщения в канал с namespace."""
        connected.publish.return_value = 1

        await redis_client.publish("fanout:user:1", {"event": "ride.accepted", "payload": {"price": "Kz 1 500"}})

        channel, message = connected.publish.await_args.args
        assert channel == "dispatch:fanout:user:1"
        assert json.loads(message)["event"] == "ride.accepted"
        assert "Kz 1 500" in message

    def test_pubsub(self, redis_client: RedisClient) -> None:
        raw = MagicMock()
        redis_client._client = raw

        assert redis_client.pubsub() is raw.pubsub.return_value

    @pytest.mark.asyncio
    async def test_health_check(self, redis_client: RedisClient, connected: AsyncMock) -> None:
        """Проверяет health check на живом и упавшем соединении."""
        connected.ping.return_value = True
        assert await redis_client.health_check() is True

        connected.ping.side_effect = ConnectionError("down")
        assert await redis_client.health_check() is False
