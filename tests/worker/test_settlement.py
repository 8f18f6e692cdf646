# tests/worker/test_settlement.py
"""
Тесты воркера повтора расчётов.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.common.errors import NotFoundError
from src.infra.event_bus import DomainEvent, EventTypes
from src.worker.settlement import SettlementRetryWorker


@pytest.fixture
def lifecycle() -> MagicMock:
    """Мок движка поездок."""
    lifecycle = MagicMock()
    lifecycle.get = AsyncMock(return_value=MagicMock(id="ride-1"))
    lifecycle.settle = AsyncMock()
    lifecycle.list_unsettled = AsyncMock(return_value=[])
    return lifecycle


def _failed(attempt: int, ride_id: str = "ride-1") -> DomainEvent:
    return DomainEvent(
        event_type=EventTypes.SETTLEMENT_FAILED,
        payload={"ride_id": ride_id, "attempt": attempt},
    )


class TestSettlementRetryWorker:
    """Тесты SettlementRetryWorker."""

    def test_subscriptions(self, lifecycle: MagicMock) -> None:
        worker = SettlementRetryWorker(lifecycle)

        assert worker.name == "settlement_retry"
        assert worker.subscriptions == [EventTypes.SETTLEMENT_FAILED]

    @pytest.mark.asyncio
    async def test_retry_with_backoff(self, lifecycle: MagicMock) -> None:
        """Проверяет экспоненциальную задержку и номер следующей попытки."""
        worker = SettlementRetryWorker(lifecycle, backoff_seconds=0.5)

        with patch("src.worker.settlement.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            await worker.handle_event(_failed(attempt=1))

        mock_sleep.assert_awaited_once_with(1.0)
        lifecycle.settle.assert_awaited_once()
        assert lifecycle.settle.call_args.kwargs["attempt"] == 2

    @pytest.mark.asyncio
    async def test_attempts_exhausted(self, lifecycle: MagicMock) -> None:
        """Проверяет, что после лимита попыток расчёт ждёт периодического прохода."""
        worker = SettlementRetryWorker(lifecycle, max_event_attempts=3)

        with patch("src.worker.settlement.log_warning", new_callable=AsyncMock):
            await worker.handle_event(_failed(attempt=2))

        lifecycle.settle.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_ride(self, lifecycle: MagicMock) -> None:
        lifecycle.get.side_effect = NotFoundError("нет")
        worker = SettlementRetryWorker(lifecycle)

        with patch("src.worker.settlement.asyncio.sleep", new_callable=AsyncMock), \
             patch("src.worker.settlement.log_warning", new_callable=AsyncMock) as mock_warning:
            await worker.handle_event(_failed(attempt=0))

        mock_warning.assert_awaited_once()
        lifecycle.settle.assert_not_called()

    @pytest.mark.asyncio
    async def test_event_without_ride_id(self, lifecycle: MagicMock) -> None:
        worker = SettlementRetryWorker(lifecycle)

        await worker.handle_event(DomainEvent(event_type=EventTypes.SETTLEMENT_FAILED, payload={}))

        lifecycle.get.assert_not_called()

    @pytest.mark.asyncio
    async def test_tick_settles_unpaid(self, lifecycle: MagicMock) -> None:
        """Проверяет периодический проход по неоплаченным поездкам."""
        rides = [MagicMock(id="a"), MagicMock(id="b")]
        lifecycle.list_unsettled.return_value = rides
        worker = SettlementRetryWorker(lifecycle, max_event_attempts=3, batch_size=10)

        with patch("src.worker.settlement.log_info", new_callable=AsyncMock):
            await worker.tick()

        lifecycle.list_unsettled.assert_awaited_once_with(limit=10)
        assert [c.args[0] for c in lifecycle.settle.call_args_list] == rides
        assert all(c.kwargs["attempt"] == 3 for c in lifecycle.settle.call_args_list)

    @pytest.mark.asyncio
    async def test_tick_nothing_to_do(self, lifecycle: MagicMock) -> None:
        worker = SettlementRetryWorker(lifecycle)

        await worker.tick()

        lifecycle.settle.assert_not_called()
