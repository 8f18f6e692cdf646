# src/worker/base.py
"""
Базовый класс для воркеров.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import List, Optional

from src.common.constants import TypeMsg
from src.common.logger import log_error, log_info
from src.infra.event_bus import DomainEvent, EventBus


class BaseWorker(ABC):
    """
    Базовый класс для всех воркеров.

    Воркер либо подписывается на доменные события, либо периодически
    вызывает tick(), либо и то и другое.
    """

    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        interval_seconds: Optional[float] = None,
    ) -> None:
        """
        Инициализирует воркер.

        Args:
            event_bus: Шина событий (без неё воркер работает только по таймеру)
            interval_seconds: Период вызова tick(); None отключает таймер
        """
        self.event_bus = event_bus
        self.interval_seconds = interval_seconds
        self._running = False
        self._tasks: List[asyncio.Task] = []

    @property
    @abstractmethod
    def name(self) -> str:
        """Имя воркера."""
        pass

    @property
    def subscriptions(self) -> List[str]:
        """Список типов событий для подписки."""
        return []

    async def handle_event(self, event: DomainEvent) -> None:
        """
        Обрабатывает событие.

        Args:
            event: Доменное событие
        """

    async def tick(self) -> None:
        """Одна итерация периодической работы."""

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Запускает воркер."""
        if self._running:
            return

        self._running = True
        await log_info(f"Воркер {self.name} запускается...", type_msg=TypeMsg.INFO)

        if self.event_bus is not None and self.event_bus.is_connected:
            for event_type in self.subscriptions:
                await self.event_bus.subscribe(
                    event_type=event_type,
                    handler=self._on_event,
                )
                await log_info(
                    f"Воркер {self.name} подписан на {event_type}",
                    type_msg=TypeMsg.DEBUG,
                )

        if self.interval_seconds:
            self._tasks.append(asyncio.create_task(self._loop()))

        await log_info(f"Воркер {self.name} запущен", type_msg=TypeMsg.INFO)

    async def stop(self) -> None:
        """Останавливает воркер."""
        if not self._running:
            return

        self._running = False

        for task in self._tasks:
            task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        self._tasks.clear()
        await log_info(f"Воркер {self.name} остановлен", type_msg=TypeMsg.INFO)

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                await log_error(f"Ошибка в цикле воркера {self.name}: {e}", exc_info=True)
            await asyncio.sleep(self.interval_seconds)

    async def _on_event(self, event: DomainEvent) -> None:
        """
        Обработчик события.

        Args:
            event: Доменное событие
        """
        if not self._running:
            return

        try:
            await log_info(
                f"Воркер {self.name} получил событие {event.event_type}",
                type_msg=TypeMsg.DEBUG,
            )
            await self.handle_event(event)
        except Exception as e:
            await log_error(
                f"Ошибка в воркере {self.name}: {e}",
                extra={"event_type": event.event_type, "payload": event.payload},
            )
