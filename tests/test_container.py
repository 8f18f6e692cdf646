# tests/test_container.py
"""
Тесты сборки сервисов.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from src.config.loader import Settings
from src.container import build_services, shutdown_services
from src.realtime import LocalFanoutChannel
from tests.factories import DESTINATION, LUANDA


class TestBuildServices:
    """Тесты сборки в памяти процесса."""

    @pytest.mark.asyncio
    async def test_memory_backend(self, memory_settings: Settings) -> None:
        """Проверяет, что memory сборка не трогает внешнюю инфраструктуру."""
        container = await build_services(memory_settings)
        try:
            assert container.db is None
            assert container.redis is None
            assert container.event_bus is None
            assert isinstance(container.channel, LocalFanoutChannel)
            assert container.directory.stale_seconds == memory_settings.dispatch.POSITION_STALE_SECONDS
        finally:
            await shutdown_services(container)

    @pytest.mark.asyncio
    async def test_system_accounts_opened(self, memory_settings: Settings) -> None:
        """Проверяет, что клиринговый и платформенный счета открыты при сборке."""
        container = await build_services(memory_settings)
        try:
            clearing = await container.ledger.get_account(container.ledger.clearing_account_id)
            platform = await container.ledger.get_account(container.ledger.platform_account_id)
        finally:
            await shutdown_services(container)

        assert clearing.is_system
        assert platform.is_system

    @pytest.mark.asyncio
    async def test_services_share_channel(self, memory_settings: Settings) -> None:
        """Проверяет, что координатор публикует в тот же канал, что отдан адаптерам."""
        container = await build_services(memory_settings)
        member = container.channel.create_member("probe")
        await container.channel.subscribe("user:1", member)
        try:
            await container.dispatch.request_ride(1, LUANDA, DESTINATION)
            message = await member.receive(timeout=1.0)
        finally:
            await shutdown_services(container)

        assert message["event"] == "ride.no_drivers"


class TestShutdownServices:
    """Тесты остановки."""

    @pytest.mark.asyncio
    async def test_closes_owned_infra(self, memory_settings: Settings, mock_db, mock_redis, mock_event_bus) -> None:
        """Проверяет закрытие инфраструктуры, которую поднимала сборка."""
        container = await build_services(memory_settings)
        container.db = mock_db
        container.redis = mock_redis
        container.event_bus = mock_event_bus
        container.owns_infra = True

        with patch("src.container.close_db", new_callable=AsyncMock) as close_db, \
                patch("src.container.close_redis", new_callable=AsyncMock) as close_redis, \
                patch("src.container.close_event_bus", new_callable=AsyncMock) as close_bus:
            await shutdown_services(container)

        close_db.assert_awaited_once()
        close_redis.assert_awaited_once()
        close_bus.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_keeps_foreign_infra(self, memory_settings: Settings, mock_db) -> None:
        """Проверяет, что чужая инфраструктура не закрывается."""
        container = await build_services(memory_settings, init_infra=False)
        container.db = mock_db

        with patch("src.container.close_db", new_callable=AsyncMock) as close_db:
            await shutdown_services(container)

        close_db.assert_not_called()
