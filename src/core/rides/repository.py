# src/core/rides/repository.py
"""
Репозитории поездок.

Все изменяющие операции движка проходят через with_ride_lock(ride_id):
внутри блока запись поездки захвачена эксклюзивно, а сохранение
фиксируется атомарно на выходе. Исключение внутри блока откатывает всё.
"""

from __future__ import annotations

import asyncio
import json
import weakref
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Optional

import asyncpg

from src.common.constants import PaymentStatus, RideStatus
from src.common.errors import InternalError
from src.common.logger import log_error
from src.core.rides.models import Location, NegotiationEntry, Ride
from src.infra.database import DatabaseManager

ACTIVE_STATUSES = (RideStatus.ACCEPTED, RideStatus.ARRIVED, RideStatus.ONGOING)


class RideLock(ABC):
    """Захваченная запись поездки внутри with_ride_lock."""

    def __init__(self, ride: Optional[Ride]) -> None:
        self.ride = ride

    @abstractmethod
    async def save(self, ride: Ride) -> Ride:
        """Записывает поездку в рамках текущего лока."""


class RideRepository(ABC):
    """Контракт хранилища поездок."""

    @abstractmethod
    async def create(self, ride: Ride) -> Ride: ...

    @abstractmethod
    async def get(self, ride_id: str) -> Optional[Ride]: ...

    @abstractmethod
    def with_ride_lock(self, ride_id: str) -> Any:
        """Асинхронный контекстный менеджер, отдающий RideLock."""

    @abstractmethod
    async def list_for_user(self, user_id: int, limit: int = 20, offset: int = 0) -> list[Ride]: ...

    @abstractmethod
    async def list_searching(
        self,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
    ) -> list[Ride]: ...

    @abstractmethod
    async def list_unsettled(self, limit: int = 100) -> list[Ride]:
        """Завершённые поездки, по которым расчёт ещё не прошёл."""

    @abstractmethod
    async def find_active_for_driver(self, driver_id: int) -> Optional[Ride]: ...


# =============================================================================
# IN-MEMORY
# =============================================================================

class _MemoryRideLock(RideLock):
    def __init__(self, ride: Optional[Ride]) -> None:
        super().__init__(ride)
        self.pending: Optional[Ride] = None

    async def save(self, ride: Ride) -> Ride:
        self.pending = ride.model_copy(deep=True)
        self.ride = ride
        return ride


class InMemoryRideRepository(RideRepository):
    """
    Хранилище в памяти процесса.
    Мьютекс на каждую поездку, изменения применяются только при успешном выходе.
    """

    def __init__(self) -> None:
        self._rides: dict[str, Ride] = {}
        # Лок живёт, пока его держит или ждёт хотя бы одна корутина
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    async def create(self, ride: Ride) -> Ride:
        self._rides[ride.id] = ride.model_copy(deep=True)
        return ride

    async def get(self, ride_id: str) -> Optional[Ride]:
        ride = self._rides.get(ride_id)
        return ride.model_copy(deep=True) if ride else None

    @asynccontextmanager
    async def with_ride_lock(self, ride_id: str) -> AsyncIterator[RideLock]:
        lock = self._locks.get(ride_id)
        if lock is None:
            lock = self._locks[ride_id] = asyncio.Lock()
        async with lock:
            handle = _MemoryRideLock(await self.get(ride_id))
            yield handle
            if handle.pending is not None:
                self._rides[ride_id] = handle.pending

    async def list_for_user(self, user_id: int, limit: int = 20, offset: int = 0) -> list[Ride]:
        rides = [r for r in self._rides.values() if r.is_party(user_id)]
        rides.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in rides[offset:offset + limit]]

    async def list_searching(
        self,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
    ) -> list[Ride]:
        result = []
        for ride in self._rides.values():
            if ride.status != RideStatus.SEARCHING:
                continue
            if created_after is not None and ride.created_at < created_after:
                continue
            if created_before is not None and ride.created_at >= created_before:
                continue
            result.append(ride.model_copy(deep=True))
        result.sort(key=lambda r: r.created_at)
        return result

    async def list_unsettled(self, limit: int = 100) -> list[Ride]:
        rides = [
            r for r in self._rides.values()
            if r.status == RideStatus.COMPLETED and r.payment_status != PaymentStatus.PAID
        ]
        rides.sort(key=lambda r: r.completed_at or r.updated_at)
        return [r.model_copy(deep=True) for r in rides[:limit]]

    async def find_active_for_driver(self, driver_id: int) -> Optional[Ride]:
        for ride in self._rides.values():
            if ride.driver_id == driver_id and ride.status in ACTIVE_STATUSES:
                return ride.model_copy(deep=True)
        return None


# =============================================================================
# POSTGRESQL
# =============================================================================

RIDE_COLUMNS = """
    id, requester_id, driver_id,
    origin_lat, origin_lng, origin_name,
    destination_lat, destination_lng, destination_name,
    distance_km, status, category,
    quoted_price, negotiated_price, final_price, negotiation_history,
    payment_method, payment_status,
    created_at, accepted_at, arrived_at, started_at, completed_at, cancelled_at, updated_at,
    cancelled_by, cancellation_reason
"""


class _PostgresRideLock(RideLock):
    def __init__(self, ride: Optional[Ride], conn: asyncpg.Connection) -> None:
        super().__init__(ride)
        self._conn = conn

    async def save(self, ride: Ride) -> Ride:
        await self._conn.execute(
            """
            UPDATE rides SET
                driver_id = $2, status = $3,
                negotiated_price = $4, final_price = $5, negotiation_history = $6,
                payment_status = $7,
                accepted_at = $8, arrived_at = $9, started_at = $10,
                completed_at = $11, cancelled_at = $12, updated_at = $13,
                cancelled_by = $14, cancellation_reason = $15
            WHERE id = $1
            """,
            ride.id,
            ride.driver_id,
            ride.status.value,
            ride.negotiated_price,
            ride.final_price,
            _dump_history(ride.negotiation_history),
            ride.payment_status.value,
            ride.accepted_at,
            ride.arrived_at,
            ride.started_at,
            ride.completed_at,
            ride.cancelled_at,
            ride.updated_at,
            ride.cancelled_by.value if ride.cancelled_by else None,
            ride.cancellation_reason,
        )
        self.ride = ride
        return ride


class PostgresRideRepository(RideRepository):
    """Репозиторий поездок в PostgreSQL (row-level лок через SELECT ... FOR UPDATE)."""

    def __init__(self, db: DatabaseManager) -> None:
        """
        Args:
            db: Менеджер базы данных
        """
        self._db = db

    async def create(self, ride: Ride) -> Ride:
        try:
            await self._db.execute(
                """
                INSERT INTO rides (
                    id, requester_id, driver_id,
                    origin_lat, origin_lng, origin_name,
                    destination_lat, destination_lng, destination_name,
                    distance_km, status, category,
                    quoted_price, negotiated_price, final_price, negotiation_history,
                    payment_method, payment_status, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10,
                          $11, $12, $13, $14, $15, $16, $17, $18, $19, $20)
                """,
                ride.id,
                ride.requester_id,
                ride.driver_id,
                ride.origin.lat,
                ride.origin.lng,
                ride.origin.name,
                ride.destination.lat,
                ride.destination.lng,
                ride.destination.name,
                ride.distance_km,
                ride.status.value,
                ride.category.value,
                ride.quoted_price,
                ride.negotiated_price,
                ride.final_price,
                _dump_history(ride.negotiation_history),
                ride.payment_method.value,
                ride.payment_status.value,
                ride.created_at,
                ride.updated_at,
            )
        except asyncpg.PostgresError as e:
            await log_error(f"Ошибка создания поездки {ride.id}: {e}")
            raise InternalError("Не удалось сохранить поездку") from e
        return ride

    async def get(self, ride_id: str) -> Optional[Ride]:
        row = await self._fetchrow(f"SELECT {RIDE_COLUMNS} FROM rides WHERE id = $1", ride_id)
        return self._row_to_ride(row) if row else None

    @asynccontextmanager
    async def with_ride_lock(self, ride_id: str) -> AsyncIterator[RideLock]:
        try:
            async with self._db.transaction() as conn:
                row = await conn.fetchrow(
                    f"SELECT {RIDE_COLUMNS} FROM rides WHERE id = $1 FOR UPDATE",
                    ride_id,
                )
                yield _PostgresRideLock(self._row_to_ride(row) if row else None, conn)
        except asyncpg.PostgresError as e:
            await log_error(f"Ошибка транзакции поездки {ride_id}: {e}")
            raise InternalError("Сбой хранилища поездок") from e

    async def list_for_user(self, user_id: int, limit: int = 20, offset: int = 0) -> list[Ride]:
        rows = await self._fetch(
            f"""
            SELECT {RIDE_COLUMNS} FROM rides
            WHERE requester_id = $1 OR driver_id = $1
            ORDER BY created_at DESC
            LIMIT $2 OFFSET $3
            """,
            user_id,
            limit,
            offset,
        )
        return [self._row_to_ride(r) for r in rows]

    async def list_searching(
        self,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
    ) -> list[Ride]:
        rows = await self._fetch(
            f"""
            SELECT {RIDE_COLUMNS} FROM rides
            WHERE status = $1
              AND ($2::timestamptz IS NULL OR created_at >= $2)
              AND ($3::timestamptz IS NULL OR created_at < $3)
            ORDER BY created_at
            """,
            RideStatus.SEARCHING.value,
            created_after,
            created_before,
        )
        return [self._row_to_ride(r) for r in rows]

    async def list_unsettled(self, limit: int = 100) -> list[Ride]:
        rows = await self._fetch(
            f"""
            SELECT {RIDE_COLUMNS} FROM rides
            WHERE status = $1 AND payment_status <> $2
            ORDER BY completed_at
            LIMIT $3
            """,
            RideStatus.COMPLETED.value,
            PaymentStatus.PAID.value,
            limit,
        )
        return [self._row_to_ride(r) for r in rows]

    async def find_active_for_driver(self, driver_id: int) -> Optional[Ride]:
        row = await self._fetchrow(
            f"""
            SELECT {RIDE_COLUMNS} FROM rides
            WHERE driver_id = $1 AND status = ANY($2::text[])
            ORDER BY accepted_at DESC
            LIMIT 1
            """,
            driver_id,
            [s.value for s in ACTIVE_STATUSES],
        )
        return self._row_to_ride(row) if row else None

    async def _fetch(self, query: str, *args: Any) -> list[asyncpg.Record]:
        try:
            return await self._db.fetch(query, *args)
        except asyncpg.PostgresError as e:
            await log_error(f"Ошибка чтения поездок: {e}")
            raise InternalError("Сбой хранилища поездок") from e

    async def _fetchrow(self, query: str, *args: Any) -> Optional[asyncpg.Record]:
        try:
            return await self._db.fetchrow(query, *args)
        except asyncpg.PostgresError as e:
            await log_error(f"Ошибка чтения поездки: {e}")
            raise InternalError("Сбой хранилища поездок") from e

    @staticmethod
    def _row_to_ride(row: Any) -> Ride:
        history = row["negotiation_history"]
        if isinstance(history, str):
            history = json.loads(history)
        return Ride(
            id=str(row["id"]),
            requester_id=row["requester_id"],
            driver_id=row["driver_id"],
            origin=Location(lat=row["origin_lat"], lng=row["origin_lng"], name=row["origin_name"]),
            destination=Location(
                lat=row["destination_lat"],
                lng=row["destination_lng"],
                name=row["destination_name"],
            ),
            distance_km=float(row["distance_km"] or 0.0),
            status=row["status"],
            category=row["category"],
            quoted_price=row["quoted_price"],
            negotiated_price=row["negotiated_price"],
            final_price=row["final_price"],
            negotiation_history=[NegotiationEntry.model_validate(e) for e in history or []],
            payment_method=row["payment_method"],
            payment_status=row["payment_status"],
            created_at=row["created_at"],
            accepted_at=row["accepted_at"],
            arrived_at=row["arrived_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            cancelled_at=row["cancelled_at"],
            updated_at=row["updated_at"],
            cancelled_by=row["cancelled_by"],
            cancellation_reason=row["cancellation_reason"],
        )


def _dump_history(history: list[NegotiationEntry]) -> str:
    return json.dumps([e.model_dump(mode="json") for e in history], ensure_ascii=False)
