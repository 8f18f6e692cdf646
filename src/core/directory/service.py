# src/core/directory/service.py
"""
Геопространственный справочник водителей.

Хранит последнюю позицию, доступность и адрес канала каждого водителя
и отвечает на запрос «кто в радиусе R от точки P».
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Callable, Iterable, Optional

from src.common.constants import DriverStatus, TypeMsg
from src.common.errors import ValidationError
from src.common.geo import haversine_km, is_valid_coordinate, validate_coordinates
from src.common.logger import log_info
from src.core.directory.models import DriverCandidate, DriverPosition, utc_now
from src.core.directory.store import PositionStore

# Допуск сравнения с радиусом: кандидат ровно на границе не должен
# выпадать из-за погрешности float
RADIUS_EPSILON_KM = 1e-6


class DriverDirectory:
    """Справочник позиций водителей поверх PositionStore."""

    def __init__(
        self,
        store: PositionStore,
        stale_seconds: int = 120,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """
        Args:
            store: Хранилище позиций
            stale_seconds: Окно свежести позиции (секунды)
            clock: Источник текущего времени (UTC)
        """
        self._store = store
        self._stale_seconds = stale_seconds
        self._clock = clock

    @property
    def stale_seconds(self) -> int:
        return self._stale_seconds

    async def upsert_position(
        self,
        driver_id: int,
        lat: float,
        lng: float,
        heading: Optional[float] = None,
        channel_addr: Optional[str] = None,
        availability: Optional[DriverStatus] = None,
        reported_at: Optional[datetime] = None,
    ) -> DriverPosition:
        """
        Записывает или обновляет позицию водителя.

        Без локов: если в хранилище уже лежит более свежий пинг,
        пришедший позже старый пинг игнорируется.

        Raises:
            ValidationError: координаты или курс некорректны
        """
        lat, lng = validate_coordinates(lat, lng)
        heading = self._normalize_heading(heading)
        reported_at = reported_at or self._clock()

        current = await self._store.get(driver_id)
        if current is not None and current.updated_at > reported_at:
            return current

        position = DriverPosition(
            driver_id=driver_id,
            latitude=lat,
            longitude=lng,
            heading=heading if heading is not None else (current.heading if current else None),
            availability=availability or (current.availability if current else DriverStatus.ONLINE),
            channel_address=channel_addr or (current.channel_address if current else None),
            updated_at=reported_at,
        )
        await self._store.put(position)
        return position

    async def set_availability(self, driver_id: int, status: DriverStatus) -> DriverPosition | None:
        """Меняет доступность, не трогая координаты и время пинга."""
        current = await self._store.get(driver_id)
        if current is None:
            return None
        updated = current.model_copy(update={"availability": status})
        await self._store.put(updated)
        await log_info(f"Водитель {driver_id}: {status.value}", type_msg=TypeMsg.DEBUG)
        return updated

    async def get_position(self, driver_id: int) -> DriverPosition | None:
        return await self._store.get(driver_id)

    async def remove(self, driver_id: int) -> None:
        await self._store.remove(driver_id)

    async def find_nearby(
        self,
        lat: float,
        lng: float,
        radius_km: float,
        limit: int,
        exclude: Iterable[int] = (),
    ) -> list[DriverCandidate]:
        """
        Водители в радиусе от точки, по возрастанию расстояния.

        Учитываются только online-водители со свежей позицией и валидными
        координатами. Пустой результат означает «нет водителей», не ошибку.

        Raises:
            ValidationError: некорректная точка, радиус или лимит
        """
        lat, lng = validate_coordinates(lat, lng)
        if not (isinstance(radius_km, (int, float)) and math.isfinite(radius_km) and radius_km > 0):
            raise ValidationError(f"Некорректный радиус поиска: {radius_km}")
        if limit <= 0:
            raise ValidationError(f"Некорректный лимит: {limit}")

        now = self._clock()
        excluded = set(exclude)
        candidates: list[DriverCandidate] = []

        for position in await self._store.within(lat, lng, radius_km + RADIUS_EPSILON_KM):
            if position.driver_id in excluded:
                continue
            if position.availability != DriverStatus.ONLINE:
                continue
            if not position.is_fresh(now, self._stale_seconds):
                continue
            if not is_valid_coordinate(position.latitude, position.longitude):
                continue

            distance = haversine_km(lat, lng, position.latitude, position.longitude)
            if distance <= radius_km + RADIUS_EPSILON_KM:
                candidates.append(
                    DriverCandidate(
                        driver_id=position.driver_id,
                        distance_km=round(distance, 3),
                        channel_address=position.channel_address,
                        last_seen=position.updated_at,
                    )
                )

        candidates.sort(key=lambda c: (c.distance_km, c.driver_id))
        return candidates[:limit]

    # =========================================================================
    # ОТМЕТКИ ОБ ОФФЕРАХ
    # =========================================================================

    async def mark_offered(self, ride_id: str, driver_ids: list[int]) -> None:
        await self._store.add_offers(ride_id, driver_ids)

    async def offered_drivers(self, ride_id: str) -> set[int]:
        return await self._store.get_offers(ride_id)

    async def clear_offers(self, ride_id: str) -> None:
        await self._store.clear_offers(ride_id)

    @staticmethod
    def _normalize_heading(heading: Optional[float]) -> Optional[float]:
        if heading is None:
            return None
        try:
            value = float(heading)
        except (TypeError, ValueError):
            raise ValidationError(f"Некорректный курс: {heading!r}")
        if not math.isfinite(value):
            raise ValidationError(f"Некорректный курс: {heading!r}")
        return value % 360.0
