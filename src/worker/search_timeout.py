# src/worker/search_timeout.py
"""
Автоотмена поездок, которые слишком долго висят в поиске.
"""

from __future__ import annotations

from typing import Optional

from src.common.constants import TypeMsg
from src.common.logger import log_info
from src.core.dispatch.service import DispatchCoordinator
from src.infra.event_bus import EventBus
from src.worker.base import BaseWorker


class SearchTimeoutSweeper(BaseWorker):
    """Периодически отменяет поездки в searching старше таймаута поиска."""

    def __init__(
        self,
        coordinator: DispatchCoordinator,
        interval_seconds: float = 30,
        event_bus: Optional[EventBus] = None,
    ) -> None:
        super().__init__(event_bus=event_bus, interval_seconds=interval_seconds)
        self._coordinator = coordinator

    @property
    def name(self) -> str:
        return "search_timeout"

    async def tick(self) -> None:
        expired = await self._coordinator.expire_stale_searches()
        if expired:
            await log_info(
                f"Отменено по таймауту поиска: {[r.id for r in expired]}",
                type_msg=TypeMsg.DEBUG,
            )
