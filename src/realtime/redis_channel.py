# src/realtime/redis_channel.py
"""
Fan-out канал поверх Redis Pub/Sub.

Каждый инстанс держит своих участников локально, а публикация идёт через
Redis-канал fanout:<room>. Фоновый слушатель получает сообщения со всех
инстансов по паттерну fanout:* и раскладывает их локальным участникам.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

from src.common.logger import log_error, log_info
from src.common.constants import TypeMsg
from src.infra.redis_client import RedisClient
from src.realtime.channel import FanoutChannel, build_message

CHANNEL_PREFIX = "fanout:"


class RedisFanoutChannel(FanoutChannel):
    """Канал для нескольких инстансов сервиса."""

    def __init__(self, redis: RedisClient, member_queue_size: int = 100) -> None:
        super().__init__(member_queue_size=member_queue_size)
        self._redis = redis
        self._pubsub: Any = None
        self._task: asyncio.Task | None = None
        self._running = False

    async def publish(self, room: str, event_name: str, payload: dict[str, Any]) -> int:
        message = build_message(room, event_name, payload)
        self._published += 1
        try:
            return await self._redis.publish(f"{CHANNEL_PREFIX}{room}", message)
        except Exception as e:
            await log_error(f"Не удалось опубликовать {event_name} в {room}: {e}")
            return 0

    async def start(self) -> None:
        if self._running:
            return

        self._pubsub = self._redis.pubsub()
        await self._pubsub.psubscribe(self._redis.make_key(f"{CHANNEL_PREFIX}*"))
        self._running = True
        self._task = asyncio.create_task(self._listen())
        await log_info("Redis fan-out слушатель запущен", type_msg=TypeMsg.INFO)

    async def stop(self) -> None:
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._pubsub:
            await self._pubsub.punsubscribe()
            await self._pubsub.aclose()
            self._pubsub = None
        await log_info("Redis fan-out слушатель остановлен", type_msg=TypeMsg.INFO)

    async def _listen(self) -> None:
        while self._running:
            try:
                message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message is None:
                    continue
                self.dispatch_raw(message)
            except asyncio.CancelledError:
                break
            except Exception as e:
                await log_error(f"Ошибка Redis fan-out слушателя: {e}")
                await asyncio.sleep(1)

    def dispatch_raw(self, message: dict[str, Any]) -> int:
        """Разбирает сообщение Pub/Sub и доставляет его локальным участникам."""
        if message.get("type") not in ("message", "pmessage"):
            return 0

        data = message.get("data")
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        try:
            parsed = json.loads(data)
        except (TypeError, json.JSONDecodeError):
            return 0

        if not isinstance(parsed, dict) or "room" not in parsed:
            return 0
        return self._deliver_local(parsed)
