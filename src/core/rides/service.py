# src/core/rides/service.py
"""
Движок жизненного цикла поездки.

Единственный писатель статуса поездки. Каждое изменение проходит через
RideRepository.with_ride_lock; события в канал публикуются только после
коммита, никогда под локом.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from typing import Any, Callable, Optional, Protocol

from src.common.constants import (
    NegotiationStatus,
    PaymentMethod,
    PaymentStatus,
    RideCategory,
    RideStatus,
    TypeMsg,
    UserRole,
)
from src.common.errors import (
    ConflictError,
    DispatchError,
    LimitExceededError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from src.common.geo import validate_coordinates
from src.common.logger import log_error, log_info
from src.common.money import to_positive_money
from src.core.rides.models import Location, NegotiationEntry, Ride, utc_now
from src.core.rides.pricing import PriceQuoter
from src.core.rides.repository import RideRepository
from src.core.rides.state_machine import RideStateMachine
from src.infra.event_bus import DomainEvent, EventBus, EventTypes
from src.realtime.channel import FanoutChannel, ride_room, user_room
from src.shared.models.common import Principal

SEARCH_TIMEOUT_REASON = "search_timeout"


class RideSettlement(Protocol):
    """То, что движку нужно от леджера."""

    async def settle_ride(self, ride: Ride) -> Any: ...


class RideLifecycleEngine:
    """Сервис поездок: создание, матч, переходы статусов, отмена."""

    def __init__(
        self,
        repository: RideRepository,
        channel: FanoutChannel,
        event_bus: Optional[EventBus] = None,
        settlement: Optional[RideSettlement] = None,
        quoter: Optional[PriceQuoter] = None,
        max_pending_offers: int = 5,
        clock: Callable = utc_now,
    ) -> None:
        """
        Args:
            repository: Хранилище поездок
            channel: Realtime канал
            event_bus: Шина доменных событий (необязательна)
            settlement: Леджер для расчёта завершённых поездок
            quoter: Тарификатор для поездок без заявленной цены
            max_pending_offers: Максимум ожидающих встречных предложений
            clock: Источник текущего времени (UTC)
        """
        self._repo = repository
        self._channel = channel
        self._event_bus = event_bus
        self._settlement = settlement
        self._quoter = quoter
        self._max_pending_offers = max_pending_offers
        self._clock = clock

    # =========================================================================
    # ЧТЕНИЕ
    # =========================================================================

    async def get(self, ride_id: str) -> Ride:
        ride = await self._repo.get(ride_id)
        if ride is None:
            raise NotFoundError(f"Поездка {ride_id} не найдена", code="RIDE_NOT_FOUND")
        return ride

    async def get_visible(self, ride_id: str, caller: Principal) -> Ride:
        """
        Текущее состояние поездки для pull-запроса.
        Открытую поездку видят водители, остальные только участники.
        """
        ride = await self.get(ride_id)
        if caller.is_admin or ride.is_party(caller.user_id):
            return ride
        if ride.status == RideStatus.SEARCHING and caller.role == UserRole.DRIVER:
            return ride
        raise UnauthorizedError("Нет доступа к поездке")

    async def list_for_user(self, user_id: int, limit: int = 20, offset: int = 0) -> list[Ride]:
        return await self._repo.list_for_user(user_id, limit=limit, offset=offset)

    async def list_open(self, max_age_seconds: int) -> list[Ride]:
        """Поездки в поиске, созданные не раньше max_age_seconds назад."""
        return await self._repo.list_searching(
            created_after=self._clock() - timedelta(seconds=max_age_seconds),
        )

    async def find_active_for_driver(self, driver_id: int) -> Optional[Ride]:
        return await self._repo.find_active_for_driver(driver_id)

    # =========================================================================
    # СОЗДАНИЕ И МАТЧ
    # =========================================================================

    async def create(
        self,
        requester_id: int,
        origin: Location,
        destination: Location,
        quoted_price: Optional[Decimal | str | int | float] = None,
        category: RideCategory = RideCategory.RIDE,
        payment_method: PaymentMethod = PaymentMethod.CASH,
    ) -> Ride:
        """
        Создаёт поездку в статусе searching.

        Raises:
            ValidationError: некорректные координаты или цена
        """
        validate_coordinates(origin.lat, origin.lng)
        validate_coordinates(destination.lat, destination.lng)

        if quoted_price is not None:
            price = to_positive_money(quoted_price)
        elif self._quoter is not None:
            price = self._quoter.quote(origin, destination, category)
        else:
            raise ValidationError("Не указана цена поездки")

        distance = self._quoter.distance_km(origin, destination) if self._quoter else 0.0
        now = self._clock()
        ride = Ride(
            requester_id=requester_id,
            origin=origin,
            destination=destination,
            distance_km=distance,
            quoted_price=price,
            category=category,
            payment_method=payment_method,
            created_at=now,
            updated_at=now,
        )
        await self._repo.create(ride)

        await log_info(
            f"Поездка {ride.id} создана пассажиром {requester_id}, цена {price}",
            type_msg=TypeMsg.INFO,
        )
        await self._emit(EventTypes.RIDE_REQUESTED, {"ride_id": ride.id, "requester_id": requester_id})
        return ride

    async def accept(
        self,
        ride_id: str,
        driver_id: int,
        final_price: Optional[Decimal | str | int | float] = None,
    ) -> Ride:
        """
        Назначает водителя. Не более одного водителя на поездку.

        Статус и driver_id читаются под локом поездки; всем, кто пришёл
        после победителя, достаётся ConflictError без изменений в записи.

        Raises:
            NotFoundError: поездка не найдена
            ConflictError: поездка уже не в поиске
            ValidationError: пассажир принимает свою же поездку или цена некорректна
        """
        price = to_positive_money(final_price) if final_price is not None else None

        async with self._repo.with_ride_lock(ride_id) as locked:
            ride = locked.ride
            if ride is None:
                raise NotFoundError(f"Поездка {ride_id} не найдена", code="RIDE_NOT_FOUND")
            if ride.status != RideStatus.SEARCHING:
                raise ConflictError(
                    "Поездка уже принята другим водителем",
                    code="RIDE_TAKEN",
                    details={"ride_id": ride_id, "status": ride.status.value},
                )
            if driver_id == ride.requester_id:
                raise ValidationError("Нельзя принять собственную поездку")

            now = self._clock()
            history = [
                entry.model_copy(update={"status": NegotiationStatus.REJECTED, "responded_at": now})
                if entry.status == NegotiationStatus.PENDING and entry.proposed_by != driver_id
                else entry
                for entry in ride.negotiation_history
            ]
            ride = await locked.save(ride.model_copy(update={
                "driver_id": driver_id,
                "status": RideStatus.ACCEPTED,
                "negotiation_history": history,
                "final_price": price if price is not None else ride.negotiated_price or ride.quoted_price,
                "accepted_at": now,
                "updated_at": now,
            }))

        await log_info(f"Поездка {ride_id} принята водителем {driver_id}", type_msg=TypeMsg.INFO)
        await self._notify(ride, "ride.accepted", {"ride": ride.snapshot()})
        await self._notify_status(ride)
        await self._emit(EventTypes.RIDE_ACCEPTED, {"ride_id": ride.id, "driver_id": driver_id})
        return ride

    # =========================================================================
    # ПЕРЕХОДЫ
    # =========================================================================

    async def advance(self, ride_id: str, caller: Principal, target_status: RideStatus | str) -> Ride:
        """
        Переводит поездку в следующий статус по таблице переходов.

        Повторный запрос уже достигнутого терминального статуса возвращает
        запись без изменений.

        Raises:
            ValidationError: неизвестный статус
            NotFoundError: поездка не найдена
            UnauthorizedError: вызывающий не участник поездки
            ConflictError: переход не разрешён
        """
        target = self._parse_status(target_status)

        if target == RideStatus.CANCELLED:
            return await self.cancel(ride_id, caller.role, actor=caller)
        if target == RideStatus.ACCEPTED:
            raise ConflictError("Назначение водителя выполняется только через accept", code="ILLEGAL_TRANSITION")

        async with self._repo.with_ride_lock(ride_id) as locked:
            ride = self._require_party(locked.ride, ride_id, caller)

            if ride.is_terminal:
                if ride.status == target:
                    return ride
                raise ConflictError(
                    f"Поездка уже в терминальном статусе {ride.status.value}",
                    code="ILLEGAL_TRANSITION",
                )
            if not RideStateMachine.can_transition(ride.status, target):
                raise ConflictError(
                    f"Переход {ride.status.value} -> {target.value} недопустим",
                    code="ILLEGAL_TRANSITION",
                    details={"from": ride.status.value, "to": target.value},
                )

            now = self._clock()
            update: dict[str, Any] = {
                "status": target,
                RideStateMachine.TIMESTAMP_FIELDS[target]: now,
                "updated_at": now,
            }
            if target == RideStatus.COMPLETED and ride.final_price is None:
                update["final_price"] = ride.agreed_price
            ride = await locked.save(ride.model_copy(update=update))

        await log_info(f"Поездка {ride_id}: {target.value}", type_msg=TypeMsg.INFO)
        await self._notify_status(ride)

        if target == RideStatus.COMPLETED:
            await self._emit(EventTypes.RIDE_COMPLETED, {"ride_id": ride.id, "final_price": str(ride.final_price)})
            ride = await self.settle(ride)
        else:
            await self._emit(EventTypes.RIDE_STATUS_CHANGED, {"ride_id": ride.id, "status": target.value})
        return ride

    async def cancel(
        self,
        ride_id: str,
        actor_role: UserRole | str,
        reason: Optional[str] = None,
        actor: Optional[Principal] = None,
    ) -> Ride:
        """
        Отменяет поездку из любого нетерминального статуса.

        Raises:
            NotFoundError: поездка не найдена
            UnauthorizedError: актор не участник поездки
            ConflictError: поездка уже завершена
        """
        role = UserRole(actor_role)

        async with self._repo.with_ride_lock(ride_id) as locked:
            ride = locked.ride
            if actor is not None:
                ride = self._require_party(ride, ride_id, actor)
            elif ride is None:
                raise NotFoundError(f"Поездка {ride_id} не найдена", code="RIDE_NOT_FOUND")

            if ride.status == RideStatus.CANCELLED:
                return ride
            if ride.is_terminal:
                raise ConflictError("Завершённую поездку нельзя отменить", code="ILLEGAL_TRANSITION")

            now = self._clock()
            ride = await locked.save(ride.model_copy(update={
                "status": RideStatus.CANCELLED,
                "cancelled_at": now,
                "updated_at": now,
                "cancelled_by": role,
                "cancellation_reason": reason,
            }))

        await log_info(f"Поездка {ride_id} отменена ({role.value}): {reason}", type_msg=TypeMsg.INFO)
        await self._notify_status(ride)
        await self._emit(EventTypes.RIDE_CANCELLED, {
            "ride_id": ride.id,
            "cancelled_by": role.value,
            "reason": reason,
        })
        return ride

    async def expire_stale_searches(self, timeout_seconds: int) -> list[Ride]:
        """
        Отменяет поездки, провисевшие в поиске дольше таймаута.

        Статус перепроверяется под тем же локом, что и accept, поэтому
        только что принятая поездка не будет отменена.
        """
        cutoff = self._clock() - timedelta(seconds=timeout_seconds)
        expired: list[Ride] = []

        for candidate in await self._repo.list_searching(created_before=cutoff):
            async with self._repo.with_ride_lock(candidate.id) as locked:
                ride = locked.ride
                if ride is None or ride.status != RideStatus.SEARCHING or ride.created_at >= cutoff:
                    continue
                now = self._clock()
                ride = await locked.save(ride.model_copy(update={
                    "status": RideStatus.CANCELLED,
                    "cancelled_at": now,
                    "updated_at": now,
                    "cancelled_by": UserRole.SYSTEM,
                    "cancellation_reason": SEARCH_TIMEOUT_REASON,
                }))
            expired.append(ride)

            await self._notify_status(ride)
            await self._publish(user_room(ride.requester_id), "ride.search_timeout", {
                "ride_id": ride.id,
                "error_code": "TIMEOUT",
            })
            await self._emit(EventTypes.RIDE_EXPIRED, {"ride_id": ride.id})

        if expired:
            await log_info(f"Автоотмена по таймауту поиска: {len(expired)}", type_msg=TypeMsg.INFO)
        return expired

    # =========================================================================
    # ТОРГ
    # =========================================================================

    async def add_counter_offer(
        self,
        ride_id: str,
        driver_id: int,
        price: Decimal | str | int | float,
        reason: Optional[str] = None,
    ) -> tuple[Ride, NegotiationEntry]:
        """
        Добавляет встречное предложение водителя в историю торга.
        Статус поездки не меняется.

        Raises:
            NotFoundError, ConflictError, UnauthorizedError, ValidationError, LimitExceededError
        """
        proposed = to_positive_money(price)

        async with self._repo.with_ride_lock(ride_id) as locked:
            ride = locked.ride
            if ride is None:
                raise NotFoundError(f"Поездка {ride_id} не найдена", code="RIDE_NOT_FOUND")
            if ride.is_terminal:
                raise ConflictError("Поездка уже завершена", code="ILLEGAL_TRANSITION")
            if driver_id == ride.requester_id:
                raise ValidationError("Пассажир не может предлагать цену своей поездке")
            if ride.driver_id is not None and ride.driver_id != driver_id:
                raise UnauthorizedError("Цену может предложить только назначенный водитель")

            now = self._clock()
            history = []
            pending = 0
            for entry in ride.negotiation_history:
                # Новое предложение водителя заменяет его прежнее
                if entry.proposed_by == driver_id and entry.status == NegotiationStatus.PENDING:
                    entry = entry.model_copy(update={"status": NegotiationStatus.REJECTED, "responded_at": now})
                if entry.status == NegotiationStatus.PENDING:
                    pending += 1
                history.append(entry)
            if pending >= self._max_pending_offers:
                raise LimitExceededError("Слишком много ожидающих предложений", code="TOO_MANY_OFFERS")

            entry = NegotiationEntry(
                proposed_by=driver_id,
                proposed_at=now,
                original_price=ride.agreed_price,
                proposed_price=proposed,
                reason=reason,
            )
            history.append(entry)
            ride = await locked.save(ride.model_copy(update={
                "negotiation_history": history,
                "updated_at": now,
            }))

        return ride, entry

    async def respond_to_counter_offer(
        self,
        ride_id: str,
        caller: Principal,
        accept: bool,
        driver_id: Optional[int] = None,
    ) -> tuple[Ride, NegotiationEntry]:
        """
        Пассажир принимает или отклоняет последнее ожидающее предложение.

        Raises:
            NotFoundError: поездка или предложение не найдены
            UnauthorizedError: ответить может только пассажир
            ConflictError: поездка уже завершена
        """
        async with self._repo.with_ride_lock(ride_id) as locked:
            ride = locked.ride
            if ride is None:
                raise NotFoundError(f"Поездка {ride_id} не найдена", code="RIDE_NOT_FOUND")
            if caller.user_id != ride.requester_id and not caller.is_admin:
                raise UnauthorizedError("Ответить на предложение может только пассажир")
            if ride.is_terminal:
                raise ConflictError("Поездка уже завершена", code="ILLEGAL_TRANSITION")

            index = self._find_pending_offer(ride, driver_id)
            if index is None:
                raise NotFoundError("Нет ожидающего предложения", code="OFFER_NOT_FOUND")

            now = self._clock()
            history = list(ride.negotiation_history)
            entry = history[index].model_copy(update={
                "status": NegotiationStatus.ACCEPTED if accept else NegotiationStatus.REJECTED,
                "responded_at": now,
            })
            history[index] = entry

            update: dict[str, Any] = {"negotiation_history": history, "updated_at": now}
            if accept:
                update["negotiated_price"] = entry.proposed_price
                if ride.driver_id is not None:
                    update["final_price"] = entry.proposed_price
            ride = await locked.save(ride.model_copy(update=update))

        return ride, entry

    # =========================================================================
    # ОПЛАТА
    # =========================================================================

    async def list_unsettled(self, limit: int = 100) -> list[Ride]:
        return await self._repo.list_unsettled(limit=limit)

    async def settle(self, ride: Ride, attempt: int = 0) -> Ride:
        """
        Запускает расчёт по завершённой поездке и фиксирует статус оплаты.

        Сбой расчёта не откатывает completed: поездка помечается failed,
        а воркер ретраев повторяет расчёт с теми же ключами идемпотентности.
        """
        if self._settlement is None or ride.status != RideStatus.COMPLETED:
            return ride
        if ride.payment_status == PaymentStatus.PAID:
            return ride

        try:
            await self._settlement.settle_ride(ride)
            status = PaymentStatus.PAID
        except DispatchError as e:
            await log_error(f"Расчёт по поездке {ride.id} не прошёл: {e.code} {e.message}")
            status = PaymentStatus.FAILED
        except Exception as e:
            await log_error(f"Расчёт по поездке {ride.id} упал: {e}", exc_info=True)
            status = PaymentStatus.FAILED

        ride = await self.record_payment(ride.id, status)
        if status == PaymentStatus.FAILED:
            await self._emit(EventTypes.SETTLEMENT_FAILED, {"ride_id": ride.id, "attempt": attempt})
        else:
            await self._emit(EventTypes.PAYMENT_COMPLETED, {"ride_id": ride.id, "amount": str(ride.final_price)})
        return ride

    async def record_payment(self, ride_id: str, status: PaymentStatus) -> Ride:
        """Записывает статус оплаты. Оплаченную поездку не понижает."""
        async with self._repo.with_ride_lock(ride_id) as locked:
            ride = locked.ride
            if ride is None:
                raise NotFoundError(f"Поездка {ride_id} не найдена", code="RIDE_NOT_FOUND")
            if ride.payment_status == PaymentStatus.PAID or ride.payment_status == status:
                return ride
            ride = await locked.save(ride.model_copy(update={
                "payment_status": status,
                "updated_at": self._clock(),
            }))

        await self._notify(ride, "ride.payment_status", {"ride_id": ride.id, "payment_status": status.value})
        return ride

    # =========================================================================
    # ВСПОМОГАТЕЛЬНЫЕ
    # =========================================================================

    @staticmethod
    def _parse_status(value: RideStatus | str) -> RideStatus:
        try:
            return RideStatus(value)
        except ValueError:
            raise ValidationError(f"Неизвестный статус поездки: {value!r}")

    @staticmethod
    def _require_party(ride: Optional[Ride], ride_id: str, caller: Principal) -> Ride:
        if ride is None:
            raise NotFoundError(f"Поездка {ride_id} не найдена", code="RIDE_NOT_FOUND")
        if not caller.is_admin and not ride.is_party(caller.user_id):
            raise UnauthorizedError("Вы не участник этой поездки")
        return ride

    @staticmethod
    def _find_pending_offer(ride: Ride, driver_id: Optional[int]) -> Optional[int]:
        # После матча в силе только предложения назначенного водителя
        if ride.driver_id is not None:
            if driver_id is not None and driver_id != ride.driver_id:
                return None
            driver_id = ride.driver_id
        for index in range(len(ride.negotiation_history) - 1, -1, -1):
            entry = ride.negotiation_history[index]
            if entry.status != NegotiationStatus.PENDING:
                continue
            if driver_id is None or entry.proposed_by == driver_id:
                return index
        return None

    async def _notify_status(self, ride: Ride) -> None:
        await self._notify(ride, "ride.status_changed", {
            "ride_id": ride.id,
            "status": ride.status.value,
            "driver_id": ride.driver_id,
            "timestamp": ride.updated_at.isoformat(),
        })

    async def _notify(self, ride: Ride, event_name: str, payload: dict[str, Any]) -> None:
        """Публикует в комнату поездки и в комнаты обоих участников."""
        rooms = [ride_room(ride.id), user_room(ride.requester_id)]
        if ride.driver_id is not None:
            rooms.append(user_room(ride.driver_id))
        for room in rooms:
            await self._publish(room, event_name, payload)

    async def _publish(self, room: str, event_name: str, payload: dict[str, Any]) -> None:
        try:
            await self._channel.publish(room, event_name, payload)
        except Exception as e:
            await log_error(f"Не удалось опубликовать {event_name} в {room}: {e}")

    async def _emit(self, event_type: str, payload: dict[str, Any]) -> None:
        if self._event_bus is None:
            return
        try:
            await self._event_bus.publish(DomainEvent(event_type=event_type, payload=payload))
        except Exception as e:
            await log_error(f"Не удалось опубликовать событие {event_type}: {e}")


__all__ = ["RideLifecycleEngine", "RideSettlement", "SEARCH_TIMEOUT_REASON"]
