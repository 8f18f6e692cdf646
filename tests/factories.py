# tests/factories.py
"""
Точки, часы и сборка сервисов для тестов.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from src.common.constants import PaymentMethod, RideStatus
from src.config.loader import LedgerSettings
from src.core.ledger import InMemoryLedgerRepository, LedgerService
from src.core.rides.models import Location, Ride

# Луанда: все сценарии строятся вокруг этой точки
LUANDA = Location(lat=-8.8399, lng=13.2894, name="Луанда")
DESTINATION = Location(lat=-8.8147, lng=13.2302, name="Ilha")

# Длина одного градуса меридиана при R = 6371 км
KM_PER_DEGREE = 111.19492664455873


def point_north(origin: Location, km: float) -> tuple[float, float]:
    """Точка в km километрах строго к северу от origin."""
    return origin.lat + km / KM_PER_DEGREE, origin.lng


class FakeClock:
    """Управляемые часы для проверок таймаутов и свежести."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 14, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def completed_ride(
    price: str = "2000.00",
    payment_method: PaymentMethod = PaymentMethod.WALLET,
    requester_id: int = 1,
    driver_id: int = 2,
) -> Ride:
    """Завершённая поездка, готовая к расчёту."""
    return Ride(
        requester_id=requester_id,
        driver_id=driver_id,
        origin=LUANDA,
        destination=DESTINATION,
        quoted_price=Decimal(price),
        final_price=Decimal(price),
        status=RideStatus.COMPLETED,
        payment_method=payment_method,
    )


async def make_ledger(
    settings: LedgerSettings | None = None,
    clock: FakeClock | None = None,
    **kwargs: Any,
) -> LedgerService:
    """Леджер в памяти с открытыми системными счетами."""
    ledger = LedgerService(
        InMemoryLedgerRepository(),
        settings or LedgerSettings(),
        clock=clock or FakeClock(),
        **kwargs,
    )
    await ledger.bootstrap()
    return ledger
