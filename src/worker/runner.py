# src/worker/runner.py
"""
Запускалка фоновых воркеров.
"""

from __future__ import annotations

import asyncio
from typing import List, Optional

from src.common.constants import TypeMsg
from src.common.logger import log_error, log_info
from src.container import ServiceContainer, build_services, shutdown_services
from src.worker.base import BaseWorker
from src.worker.search_timeout import SearchTimeoutSweeper
from src.worker.settlement import SettlementRetryWorker


def create_workers(container: ServiceContainer) -> List[BaseWorker]:
    """Воркеры поверх уже собранных сервисов."""
    dispatch_settings = container.settings.dispatch
    return [
        SearchTimeoutSweeper(
            container.dispatch,
            interval_seconds=dispatch_settings.SWEEP_INTERVAL_SECONDS,
            event_bus=container.event_bus,
        ),
        SettlementRetryWorker(
            container.lifecycle,
            event_bus=container.event_bus,
            interval_seconds=dispatch_settings.SETTLEMENT_RETRY_INTERVAL_SECONDS,
        ),
    ]


async def run_workers(container: Optional[ServiceContainer] = None) -> None:
    """
    Запускает воркеры и ждёт отмены.

    Args:
        container: Готовые сервисы. Если None, собираются здесь же и
                   закрываются при остановке.
    """
    owned = container is None
    if container is None:
        container = await build_services()

    workers = create_workers(container)

    try:
        for worker in workers:
            await worker.start()

        await log_info(f"Запущено {len(workers)} воркеров", type_msg=TypeMsg.INFO)

        while True:
            await asyncio.sleep(1)

    except asyncio.CancelledError:
        await log_info("Получен сигнал остановки", type_msg=TypeMsg.INFO)
    except Exception as e:
        await log_error(f"Критическая ошибка воркеров: {e}", exc_info=True)
    finally:
        for worker in workers:
            await worker.stop()

        if owned:
            await shutdown_services(container)

        await log_info("Воркеры остановлены", type_msg=TypeMsg.INFO)
