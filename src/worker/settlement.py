# src/worker/settlement.py
"""
Повтор расчётов по завершённым поездкам.

Сбой расчёта приходит событием ride.settlement_failed: несколько быстрых
повторов с backoff, дальше поездку подбирает периодический проход по
неоплаченным поездкам.
"""

from __future__ import annotations

import asyncio
from typing import List, Optional

from src.common.constants import TypeMsg
from src.common.errors import NotFoundError
from src.common.logger import log_info, log_warning
from src.core.rides.service import RideLifecycleEngine
from src.infra.event_bus import DomainEvent, EventBus, EventTypes
from src.worker.base import BaseWorker


class SettlementRetryWorker(BaseWorker):
    """Повторяет расчёт с теми же ключами идемпотентности."""

    def __init__(
        self,
        lifecycle: RideLifecycleEngine,
        event_bus: Optional[EventBus] = None,
        interval_seconds: Optional[float] = 60,
        max_event_attempts: int = 3,
        backoff_seconds: float = 1.0,
        batch_size: int = 100,
    ) -> None:
        super().__init__(event_bus=event_bus, interval_seconds=interval_seconds)
        self._lifecycle = lifecycle
        self._max_event_attempts = max_event_attempts
        self._backoff_seconds = backoff_seconds
        self._batch_size = batch_size

    @property
    def name(self) -> str:
        return "settlement_retry"

    @property
    def subscriptions(self) -> List[str]:
        return [EventTypes.SETTLEMENT_FAILED]

    async def handle_event(self, event: DomainEvent) -> None:
        ride_id = event.payload.get("ride_id")
        attempt = int(event.payload.get("attempt", 0))
        if not ride_id:
            return
        if attempt + 1 >= self._max_event_attempts:
            await log_warning(f"Расчёт по поездке {ride_id} отложен до периодического повтора")
            return

        await asyncio.sleep(self._backoff_seconds * (2 ** attempt))
        try:
            ride = await self._lifecycle.get(ride_id)
        except NotFoundError:
            await log_warning(f"Поездка {ride_id} для повтора расчёта не найдена")
            return
        await self._lifecycle.settle(ride, attempt=attempt + 1)

    async def tick(self) -> None:
        rides = await self._lifecycle.list_unsettled(limit=self._batch_size)
        if not rides:
            return

        await log_info(f"Повтор расчёта по {len(rides)} поездкам", type_msg=TypeMsg.INFO)
        for ride in rides:
            # Сбой периодического прохода не порождает быстрых повторов
            await self._lifecycle.settle(ride, attempt=self._max_event_attempts)
