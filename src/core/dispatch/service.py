# src/core/dispatch/service.py
"""
Координатор диспетчеризации.

Связывает справочник водителей, движок поездок и realtime канал:
рассылает предложения кандидатам, разрешает гонку принятия,
сообщает проигравшим, что поездка занята.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional

from src.common.constants import DriverStatus, PaymentMethod, RideCategory, TypeMsg
from src.common.errors import ConflictError
from src.common.geo import haversine_km
from src.common.logger import log_debug, log_info
from src.config.loader import DispatchSettings
from src.core.directory.models import DriverCandidate, DriverPosition
from src.core.directory.service import RADIUS_EPSILON_KM, DriverDirectory
from src.core.ledger.service import LedgerService
from src.core.rides.models import Location, NegotiationEntry, Ride
from src.core.rides.service import RideLifecycleEngine
from src.realtime.channel import FanoutChannel, ride_room, user_room
from src.shared.models.common import Principal


class DispatchCoordinator:
    """
    Координатор поиска и матчинга.

    Реализует:
    - Создание поездки и рассылку предложений ближайшим водителям
    - Принятие поездки с уведомлением проигравших
    - Встречные предложения цены
    - Присутствие и геопозицию водителей
    """

    def __init__(
        self,
        lifecycle: RideLifecycleEngine,
        directory: DriverDirectory,
        channel: FanoutChannel,
        ledger: Optional[LedgerService] = None,
        settings: Optional[DispatchSettings] = None,
    ) -> None:
        """
        Args:
            lifecycle: Движок поездок
            directory: Справочник водителей
            channel: Realtime канал
            ledger: Леджер (кошелёк открывается водителю при выходе на линию)
            settings: Секция dispatch конфигурации
        """
        self._lifecycle = lifecycle
        self._directory = directory
        self._channel = channel
        self._ledger = ledger
        self._settings = settings or DispatchSettings()

    # =========================================================================
    # ПОЕЗДКИ
    # =========================================================================

    async def request_ride(
        self,
        requester_id: int,
        origin: Location,
        destination: Location,
        quoted_price: Optional[Decimal | str | int | float] = None,
        category: RideCategory = RideCategory.RIDE,
        payment_method: PaymentMethod = PaymentMethod.CASH,
    ) -> Ride:
        """
        Создаёт поездку и рассылает предложение водителям в радиусе.

        Если водителей нет, пассажир получает ride.no_drivers, а поездка
        остаётся в поиске до таймаута.
        """
        ride = await self._lifecycle.create(
            requester_id,
            origin,
            destination,
            quoted_price=quoted_price,
            category=category,
            payment_method=payment_method,
        )

        candidates = await self._directory.find_nearby(
            origin.lat,
            origin.lng,
            self._settings.SEARCH_RADIUS_KM,
            self._settings.SEARCH_LIMIT,
            exclude={requester_id},
        )

        if not candidates:
            await log_info(f"Поездка {ride.id}: водителей рядом нет", type_msg=TypeMsg.INFO)
            await self._channel.publish(user_room(requester_id), "ride.no_drivers", {"ride_id": ride.id})
            return ride

        await self._offer(ride, candidates)
        await log_info(
            f"Поездка {ride.id} предложена {len(candidates)} водителям",
            type_msg=TypeMsg.INFO,
        )
        return ride

    async def accept_ride(
        self,
        ride_id: str,
        driver_id: int,
        final_price: Optional[Decimal | str | int | float] = None,
    ) -> Ride:
        """
        Принятие поездки водителем. Побеждает первый прошедший лок поездки.

        Raises:
            ConflictError: поездку уже принял другой водитель
        """
        try:
            ride = await self._lifecycle.accept(ride_id, driver_id, final_price)
        except ConflictError as e:
            await log_debug(f"Водитель {driver_id} опоздал к поездке {ride_id}: {e.code}")
            await self._channel.publish(user_room(driver_id), "ride.conflict", {
                "ride_id": ride_id,
                "error_code": e.code,
                "message": e.message,
            })
            raise

        await self._directory.set_availability(driver_id, DriverStatus.BUSY)

        losers = await self._directory.offered_drivers(ride_id)
        losers.discard(driver_id)
        for loser in sorted(losers):
            await self._channel.publish(user_room(loser), "ride.taken", {"ride_id": ride_id})
        await self._directory.clear_offers(ride_id)
        return ride

    async def advance_ride(self, ride_id: str, caller: Principal, target_status: str) -> Ride:
        """Переход статуса; по завершении водитель снова свободен."""
        ride = await self._lifecycle.advance(ride_id, caller, target_status)
        if ride.is_terminal:
            await self._release(ride)
        return ride

    async def cancel_ride(self, ride_id: str, caller: Principal, reason: Optional[str] = None) -> Ride:
        ride = await self._lifecycle.cancel(ride_id, caller.role, reason, actor=caller)
        await self._release(ride)
        return ride

    async def expire_stale_searches(self) -> list[Ride]:
        """Автоотмена поездок, не нашедших водителя за SEARCH_TIMEOUT_SECONDS."""
        expired = await self._lifecycle.expire_stale_searches(self._settings.SEARCH_TIMEOUT_SECONDS)
        for ride in expired:
            await self._release(ride)
        return expired

    # =========================================================================
    # ТОРГ
    # =========================================================================

    async def propose_counter_offer(
        self,
        ride_id: str,
        driver_id: int,
        price: Decimal | str | int | float,
        reason: Optional[str] = None,
    ) -> tuple[Ride, NegotiationEntry]:
        ride, entry = await self._lifecycle.add_counter_offer(ride_id, driver_id, price, reason)

        payload = {
            "ride_id": ride.id,
            "driver_id": driver_id,
            "original_price": str(entry.original_price),
            "proposed_price": str(entry.proposed_price),
            "reason": entry.reason,
            "proposed_at": entry.proposed_at.isoformat(),
        }
        await self._channel.publish(ride_room(ride.id), "ride.counter_offer", payload)
        await self._channel.publish(user_room(ride.requester_id), "ride.counter_offer", payload)
        return ride, entry

    async def respond_to_counter_offer(
        self,
        ride_id: str,
        caller: Principal,
        accept: bool,
        driver_id: Optional[int] = None,
    ) -> tuple[Ride, NegotiationEntry]:
        ride, entry = await self._lifecycle.respond_to_counter_offer(ride_id, caller, accept, driver_id)

        payload = {
            "ride_id": ride.id,
            "driver_id": entry.proposed_by,
            "accepted": accept,
            "price": str(entry.proposed_price),
        }
        await self._channel.publish(ride_room(ride.id), "ride.counter_offer_response", payload)
        await self._channel.publish(user_room(entry.proposed_by), "ride.counter_offer_response", payload)
        return ride, entry

    # =========================================================================
    # ВОДИТЕЛИ
    # =========================================================================

    async def driver_online(
        self,
        driver_id: int,
        lat: float,
        lng: float,
        heading: Optional[float] = None,
        channel_addr: Optional[str] = None,
    ) -> DriverPosition:
        """Выход на линию: кошелёк, позиция, открытые поездки рядом."""
        if self._ledger is not None:
            await self._ledger.open_account(driver_id)

        active = await self._lifecycle.find_active_for_driver(driver_id)
        position = await self._directory.upsert_position(
            driver_id,
            lat,
            lng,
            heading=heading,
            channel_addr=channel_addr,
            availability=DriverStatus.BUSY if active else DriverStatus.ONLINE,
        )
        await log_info(f"Водитель {driver_id} на линии", type_msg=TypeMsg.INFO)

        if position.availability == DriverStatus.ONLINE:
            await self.reoffer_open_rides(position)
        return position

    async def driver_offline(self, driver_id: int) -> Optional[DriverPosition]:
        position = await self._directory.set_availability(driver_id, DriverStatus.OFFLINE)
        await log_info(f"Водитель {driver_id} ушёл с линии", type_msg=TypeMsg.INFO)
        return position

    async def driver_location(
        self,
        driver_id: int,
        lat: float,
        lng: float,
        heading: Optional[float] = None,
    ) -> DriverPosition:
        """
        Пинг геопозиции. Во время поездки позиция уходит в комнату поездки,
        свободному водителю предлагаются открытые поездки, до которых он доехал.
        """
        position = await self._directory.upsert_position(driver_id, lat, lng, heading=heading)

        active = await self._lifecycle.find_active_for_driver(driver_id)
        if active is not None:
            await self._channel.publish(ride_room(active.id), "driver.location_update", {
                "driver_id": driver_id,
                "lat": position.latitude,
                "lng": position.longitude,
                "heading": position.heading,
                "timestamp": position.updated_at.isoformat(),
            })
        elif position.availability == DriverStatus.ONLINE:
            await self.reoffer_open_rides(position)
        return position

    async def nearby_drivers(
        self,
        lat: float,
        lng: float,
        radius_km: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> list[DriverCandidate]:
        return await self._directory.find_nearby(
            lat,
            lng,
            radius_km if radius_km is not None else self._settings.SEARCH_RADIUS_KM,
            limit if limit is not None else self._settings.SEARCH_LIMIT,
        )

    async def reoffer_open_rides(self, position: DriverPosition) -> list[str]:
        """
        Предлагает водителю открытые поездки в радиусе, которые ему ещё
        не предлагались. Возвращает ID предложенных поездок.
        """
        offered: list[str] = []
        for ride in await self._lifecycle.list_open(self._settings.SEARCH_TIMEOUT_SECONDS):
            if ride.requester_id == position.driver_id:
                continue
            distance = haversine_km(ride.origin.lat, ride.origin.lng, position.latitude, position.longitude)
            if distance > self._settings.SEARCH_RADIUS_KM + RADIUS_EPSILON_KM:
                continue
            if position.driver_id in await self._directory.offered_drivers(ride.id):
                continue

            await self._offer(ride, [DriverCandidate(
                driver_id=position.driver_id,
                distance_km=round(distance, 3),
                channel_address=position.channel_address,
                last_seen=position.updated_at,
            )])
            offered.append(ride.id)

        if offered:
            await log_debug(f"Водителю {position.driver_id} повторно предложены поездки: {offered}")
        return offered

    # =========================================================================
    # ВСПОМОГАТЕЛЬНЫЕ
    # =========================================================================

    async def _offer(self, ride: Ride, candidates: list[DriverCandidate]) -> None:
        """Отмечает и рассылает предложение, ближайшим первым."""
        await self._directory.mark_offered(ride.id, [c.driver_id for c in candidates])
        snapshot = ride.snapshot()
        for candidate in candidates:
            await self._channel.publish(user_room(candidate.driver_id), "ride.opportunity", {
                "ride": snapshot,
                "distance_km": candidate.distance_km,
            })

    async def _release(self, ride: Ride) -> None:
        """Освобождает водителя и снимает предложения с закрытой поездки."""
        if not ride.is_terminal:
            return
        if ride.driver_id is not None:
            position = await self._directory.get_position(ride.driver_id)
            if position is not None and position.availability == DriverStatus.BUSY:
                await self._directory.set_availability(ride.driver_id, DriverStatus.ONLINE)

        offered = await self._directory.offered_drivers(ride.id)
        if offered:
            payload: dict[str, Any] = {"ride_id": ride.id, "status": ride.status.value}
            for driver_id in sorted(offered):
                await self._channel.publish(user_room(driver_id), "ride.status_changed", payload)
            await self._directory.clear_offers(ride.id)
