# src/core/directory/store.py
"""
Хранилища позиций водителей.

Позиции носят рекомендательный характер: запись без локов,
побеждает последний писатель.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from src.core.directory.models import DriverPosition
from src.infra.redis_client import RedisClient

POSITIONS_KEY = "drivers:positions"
GEO_KEY = "drivers:geo"
OFFERS_KEY = "ride:{ride_id}:offered"
OFFERS_TTL = 3600

# Redis GEO не принимает широты за пределами проекции Меркатора
GEO_MAX_LATITUDE = 85.05112878
# Redis считает по сфере R = 6372.7976 км, плюс точность geohash около 0.6 м
GEO_RADIUS_FACTOR = 1.001
GEO_RADIUS_MARGIN_KM = 0.01


class PositionStore(ABC):
    """Контракт хранилища позиций и отметок об офферах."""

    @abstractmethod
    async def get(self, driver_id: int) -> DriverPosition | None: ...

    @abstractmethod
    async def put(self, position: DriverPosition) -> None: ...

    @abstractmethod
    async def remove(self, driver_id: int) -> None: ...

    @abstractmethod
    async def within(self, lat: float, lng: float, radius_km: float) -> list[DriverPosition]:
        """
        Предварительная выборка позиций около точки.

        Может вернуть лишних водителей, но не должна терять попавших в радиус:
        точный фильтр по Haversine, свежести и статусу делает директория.
        """

    @abstractmethod
    async def add_offers(self, ride_id: str, driver_ids: list[int]) -> None: ...

    @abstractmethod
    async def get_offers(self, ride_id: str) -> set[int]: ...

    @abstractmethod
    async def clear_offers(self, ride_id: str) -> None: ...


class InMemoryPositionStore(PositionStore):
    """Хранилище в памяти процесса (один инстанс, тесты)."""

    def __init__(self) -> None:
        self._positions: dict[int, DriverPosition] = {}
        self._offers: dict[str, set[int]] = {}

    async def get(self, driver_id: int) -> DriverPosition | None:
        return self._positions.get(driver_id)

    async def put(self, position: DriverPosition) -> None:
        self._positions[position.driver_id] = position

    async def remove(self, driver_id: int) -> None:
        self._positions.pop(driver_id, None)

    async def within(self, lat: float, lng: float, radius_km: float) -> list[DriverPosition]:
        return list(self._positions.values())

    async def add_offers(self, ride_id: str, driver_ids: list[int]) -> None:
        self._offers.setdefault(ride_id, set()).update(driver_ids)

    async def get_offers(self, ride_id: str) -> set[int]:
        return set(self._offers.get(ride_id, ()))

    async def clear_offers(self, ride_id: str) -> None:
        self._offers.pop(ride_id, None)


class RedisPositionStore(PositionStore):
    """
    Хранилище в Redis: переживает рестарт процесса и общее для всех инстансов.

    Позиции лежат в хеше driver_id -> JSON, рядом geo-индекс для выборки
    по радиусу. Офферы хранятся в множестве на поездку.
    """

    def __init__(self, redis: RedisClient) -> None:
        self._redis = redis

    async def get(self, driver_id: int) -> DriverPosition | None:
        raw = await self._redis.hget(POSITIONS_KEY, str(driver_id))
        if raw is None:
            return None
        return DriverPosition.model_validate_json(raw)

    async def put(self, position: DriverPosition) -> None:
        member = str(position.driver_id)
        await self._redis.hset(POSITIONS_KEY, member, position.model_dump_json())
        if abs(position.latitude) <= GEO_MAX_LATITUDE:
            await self._redis.geoadd(GEO_KEY, position.longitude, position.latitude, member)
        else:
            await self._redis.georem(GEO_KEY, member)

    async def remove(self, driver_id: int) -> None:
        await self._redis.hdel(POSITIONS_KEY, str(driver_id))
        await self._redis.georem(GEO_KEY, str(driver_id))

    async def within(self, lat: float, lng: float, radius_km: float) -> list[DriverPosition]:
        hits = await self._redis.georadius(
            GEO_KEY,
            lng,
            lat,
            radius_km * GEO_RADIUS_FACTOR + GEO_RADIUS_MARGIN_KM,
            unit="km",
        )
        members = [member for member, _ in hits]
        positions = []
        for raw in await self._redis.hmget(POSITIONS_KEY, members):
            if raw is None:
                continue
            try:
                positions.append(DriverPosition.model_validate_json(raw))
            except ValueError:
                # Битая запись не должна ломать поиск
                continue
        return positions

    async def add_offers(self, ride_id: str, driver_ids: list[int]) -> None:
        if not driver_ids:
            return
        key = OFFERS_KEY.format(ride_id=ride_id)
        await self._redis.sadd(key, *(str(d) for d in driver_ids))
        await self._redis.expire(key, OFFERS_TTL)

    async def get_offers(self, ride_id: str) -> set[int]:
        members = await self._redis.smembers(OFFERS_KEY.format(ride_id=ride_id))
        return {int(m) for m in members}

    async def clear_offers(self, ride_id: str) -> None:
        await self._redis.delete(OFFERS_KEY.format(ride_id=ride_id))
