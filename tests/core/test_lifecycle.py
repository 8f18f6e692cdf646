# tests/core/test_lifecycle.py
"""
Тесты движка жизненного цикла поездки.
"""

from __future__ import annotations

import asyncio
import gc
from decimal import Decimal

import pytest

from src.common.constants import (
    NegotiationStatus,
    PaymentMethod,
    PaymentStatus,
    RideStatus,
    UserRole,
)
from src.common.errors import (
    ConflictError,
    LimitExceededError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from src.config.loader import PricingSettings
from src.core.rides import InMemoryRideRepository, PriceQuoter, RideLifecycleEngine
from src.core.rides.service import SEARCH_TIMEOUT_REASON
from src.infra.event_bus import EventTypes
from src.realtime import LocalFanoutChannel, ride_room, user_room
from src.shared.models import Principal
from tests.factories import DESTINATION, LUANDA, FakeClock, make_ledger

RIDER = Principal(user_id=1, role=UserRole.PASSENGER)
DRIVER = Principal(user_id=2, role=UserRole.DRIVER)
STRANGER = Principal(user_id=99, role=UserRole.PASSENGER)


def _engine(clock: FakeClock, channel: LocalFanoutChannel | None = None, **kwargs) -> RideLifecycleEngine:
    return RideLifecycleEngine(
        InMemoryRideRepository(),
        channel or LocalFanoutChannel(),
        quoter=PriceQuoter(PricingSettings()),
        clock=clock,
        **kwargs,
    )


async def _drive_to(engine: RideLifecycleEngine, ride_id: str, *statuses: RideStatus):
    ride = None
    for status in statuses:
        ride = await engine.advance(ride_id, DRIVER, status)
    return ride


class TestCreate:
    """Тесты создания поездки."""

    @pytest.mark.asyncio
    async def test_create_with_quote(self, clock: FakeClock) -> None:
        """Проверяет цену по тарифу, если пассажир её не задал."""
        engine = _engine(clock)

        ride = await engine.create(1, LUANDA, DESTINATION)

        assert ride.status == RideStatus.SEARCHING
        assert ride.driver_id is None
        assert ride.quoted_price == Decimal("1600.00")
        assert ride.distance_km == pytest.approx(7.08, abs=0.05)
        assert ride.created_at == clock.now

    @pytest.mark.asyncio
    async def test_create_with_price(self, clock: FakeClock, mock_event_bus) -> None:
        engine = _engine(clock, event_bus=mock_event_bus)

        ride = await engine.create(1, LUANDA, DESTINATION, quoted_price="1200")

        assert ride.quoted_price == Decimal("1200.00")
        event = mock_event_bus.publish.call_args.args[0]
        assert event.event_type == EventTypes.RIDE_REQUESTED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("price", ["0", "-5", "1.001"])
    async def test_create_invalid_price(self, clock: FakeClock, price) -> None:
        with pytest.raises(ValidationError):
            await _engine(clock).create(1, LUANDA, DESTINATION, quoted_price=price)

    @pytest.mark.asyncio
    async def test_create_invalid_coordinates(self, clock: FakeClock) -> None:
        origin = LUANDA.model_copy(update={"lat": 0.0})
        with pytest.raises(ValidationError):
            await _engine(clock).create(1, origin, DESTINATION)


class TestAccept:
    """Тесты назначения водителя."""

    @pytest.mark.asyncio
    async def test_accept(self, clock: FakeClock) -> None:
        channel = LocalFanoutChannel()
        rider = channel.create_member("rider")
        await channel.subscribe(user_room(1), rider)
        engine = _engine(clock, channel)
        ride = await engine.create(1, LUANDA, DESTINATION, quoted_price="1000")
        rider.drain()

        accepted = await engine.accept(ride.id, 2)

        assert accepted.status == RideStatus.ACCEPTED
        assert accepted.driver_id == 2
        assert accepted.accepted_at == clock.now
        assert accepted.final_price == Decimal("1000.00")
        events = [m["event"] for m in rider.drain()]
        assert events == ["ride.accepted", "ride.status_changed"]

    @pytest.mark.asyncio
    async def test_only_one_driver_wins(self, clock: FakeClock) -> None:
        """Проверяет, что из десяти одновременных принятий побеждает ровно одно."""
        engine = _engine(clock)
        ride = await engine.create(1, LUANDA, DESTINATION, quoted_price="1000")

        results = await asyncio.gather(
            *(engine.accept(ride.id, driver_id) for driver_id in range(10, 20)),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert all(isinstance(e, ConflictError) and e.code == "RIDE_TAKEN" for e in losers)
        stored = await engine.get(ride.id)
        assert stored.driver_id == winners[0].driver_id

    @pytest.mark.asyncio
    async def test_requester_cannot_accept_own_ride(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        ride = await engine.create(1, LUANDA, DESTINATION, quoted_price="1000")

        with pytest.raises(ValidationError):
            await engine.accept(ride.id, 1)
        assert (await engine.get(ride.id)).status == RideStatus.SEARCHING

    @pytest.mark.asyncio
    async def test_accept_unknown_ride(self, clock: FakeClock) -> None:
        with pytest.raises(NotFoundError):
            await _engine(clock).accept("missing", 2)

    @pytest.mark.asyncio
    async def test_accept_with_final_price(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        ride = await engine.create(1, LUANDA, DESTINATION, quoted_price="1000")

        accepted = await engine.accept(ride.id, 2, final_price="1100.00")

        assert accepted.final_price == Decimal("1100.00")


class TestAdvance:
    """Тесты переходов статусов."""

    @pytest.mark.asyncio
    async def test_full_cash_ride(self, clock: FakeClock, mock_event_bus) -> None:
        """Проверяет путь searching -> completed и расчёт наличной поездки."""
        ledger = await make_ledger(clock=clock)
        engine = _engine(clock, event_bus=mock_event_bus, settlement=ledger)
        ride = await engine.create(1, LUANDA, DESTINATION, quoted_price="2000")
        await engine.accept(ride.id, 2)

        clock.advance(60)
        arrived = await engine.advance(ride.id, DRIVER, RideStatus.ARRIVED)
        clock.advance(60)
        ongoing = await engine.advance(ride.id, DRIVER, "ongoing")
        clock.advance(600)
        completed = await engine.advance(ride.id, RIDER, RideStatus.COMPLETED)

        assert arrived.arrived_at is not None
        assert ongoing.started_at > arrived.arrived_at
        assert completed.status == RideStatus.COMPLETED
        assert completed.completed_at == clock.now
        assert completed.payment_status == PaymentStatus.PAID
        assert (await ledger.get_account(2)).balance == Decimal("-400.00")
        event_types = [c.args[0].event_type for c in mock_event_bus.publish.call_args_list]
        assert EventTypes.RIDE_COMPLETED in event_types
        assert EventTypes.PAYMENT_COMPLETED in event_types

    @pytest.mark.asyncio
    async def test_cannot_skip_states(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        ride = await engine.create(1, LUANDA, DESTINATION, quoted_price="1000")

        with pytest.raises(ConflictError) as exc_info:
            await engine.advance(ride.id, RIDER, RideStatus.ONGOING)

        assert exc_info.value.code == "ILLEGAL_TRANSITION"
        assert (await engine.get(ride.id)).status == RideStatus.SEARCHING

    @pytest.mark.asyncio
    async def test_accept_only_through_accept(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        ride = await engine.create(1, LUANDA, DESTINATION, quoted_price="1000")

        with pytest.raises(ConflictError):
            await engine.advance(ride.id, DRIVER, RideStatus.ACCEPTED)

    @pytest.mark.asyncio
    async def test_stranger_rejected(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        ride = await engine.create(1, LUANDA, DESTINATION, quoted_price="1000")
        await engine.accept(ride.id, 2)

        with pytest.raises(UnauthorizedError):
            await engine.advance(ride.id, STRANGER, RideStatus.ARRIVED)

    @pytest.mark.asyncio
    async def test_unknown_status(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        ride = await engine.create(1, LUANDA, DESTINATION, quoted_price="1000")

        with pytest.raises(ValidationError):
            await engine.advance(ride.id, RIDER, "teleported")

    @pytest.mark.asyncio
    async def test_repeated_terminal_is_noop(self, clock: FakeClock) -> None:
        """Проверяет, что повтор completed возвращает запись без изменений."""
        engine = _engine(clock)
        ride = await engine.create(1, LUANDA, DESTINATION, quoted_price="1000")
        await engine.accept(ride.id, 2)
        completed = await _drive_to(
            engine, ride.id, RideStatus.ARRIVED, RideStatus.ONGOING, RideStatus.COMPLETED
        )
        clock.advance(30)

        again = await engine.advance(ride.id, DRIVER, RideStatus.COMPLETED)

        assert again.updated_at == completed.updated_at
        with pytest.raises(ConflictError):
            await engine.advance(ride.id, DRIVER, RideStatus.ARRIVED)

    @pytest.mark.asyncio
    async def test_status_events_in_ride_room(self, clock: FakeClock) -> None:
        channel = LocalFanoutChannel()
        engine = _engine(clock, channel)
        ride = await engine.create(1, LUANDA, DESTINATION, quoted_price="1000")
        watcher = channel.create_member("watcher")
        await channel.subscribe(ride_room(ride.id), watcher)

        await engine.accept(ride.id, 2)
        await engine.advance(ride.id, DRIVER, RideStatus.ARRIVED)

        statuses = [
            m["payload"]["status"] for m in watcher.drain() if m["event"] == "ride.status_changed"
        ]
        assert statuses == ["accepted", "arrived"]


class TestCancel:
    """Тесты отмены."""

    @pytest.mark.asyncio
    async def test_cancel_by_rider(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        ride = await engine.create(1, LUANDA, DESTINATION, quoted_price="1000")
        await engine.accept(ride.id, 2)

        cancelled = await engine.advance(ride.id, RIDER, RideStatus.CANCELLED)

        assert cancelled.status == RideStatus.CANCELLED
        assert cancelled.cancelled_by == UserRole.PASSENGER
        assert cancelled.driver_id == 2

    @pytest.mark.asyncio
    async def test_cancel_twice_is_noop(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        ride = await engine.create(1, LUANDA, DESTINATION, quoted_price="1000")
        first = await engine.cancel(ride.id, UserRole.PASSENGER, reason="передумал")

        second = await engine.cancel(ride.id, UserRole.ADMIN)

        assert second.cancelled_by == first.cancelled_by
        assert second.cancellation_reason == "передумал"

    @pytest.mark.asyncio
    async def test_completed_cannot_be_cancelled(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        ride = await engine.create(1, LUANDA, DESTINATION, quoted_price="1000")
        await engine.accept(ride.id, 2)
        await _drive_to(engine, ride.id, RideStatus.ARRIVED, RideStatus.ONGOING, RideStatus.COMPLETED)

        with pytest.raises(ConflictError):
            await engine.cancel(ride.id, UserRole.PASSENGER)

    @pytest.mark.asyncio
    async def test_stranger_cannot_cancel(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        ride = await engine.create(1, LUANDA, DESTINATION, quoted_price="1000")

        with pytest.raises(UnauthorizedError):
            await engine.cancel(ride.id, STRANGER.role, actor=STRANGER)


class TestExpire:
    """Тесты автоотмены по таймауту поиска."""

    @pytest.mark.asyncio
    async def test_expire_stale_searches(self, clock: FakeClock, mock_event_bus) -> None:
        channel = LocalFanoutChannel()
        rider = channel.create_member("rider")
        await channel.subscribe(user_room(1), rider)
        engine = _engine(clock, channel, event_bus=mock_event_bus)
        old = await engine.create(1, LUANDA, DESTINATION, quoted_price="1000")
        taken = await engine.create(1, LUANDA, DESTINATION, quoted_price="1000")
        await engine.accept(taken.id, 2)
        clock.advance(500)
        fresh = await engine.create(1, LUANDA, DESTINATION, quoted_price="1000")
        clock.advance(101)
        rider.drain()

        expired = await engine.expire_stale_searches(600)

        assert [r.id for r in expired] == [old.id]
        assert expired[0].cancelled_by == UserRole.SYSTEM
        assert expired[0].cancellation_reason == SEARCH_TIMEOUT_REASON
        assert (await engine.get(fresh.id)).status == RideStatus.SEARCHING
        assert (await engine.get(taken.id)).status == RideStatus.ACCEPTED
        events = [m["event"] for m in rider.drain()]
        assert "ride.search_timeout" in events
        event_types = [c.args[0].event_type for c in mock_event_bus.publish.call_args_list]
        assert EventTypes.RIDE_EXPIRED in event_types

    @pytest.mark.asyncio
    async def test_nothing_to_expire(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        await engine.create(1, LUANDA, DESTINATION, quoted_price="1000")

        assert await engine.expire_stale_searches(600) == []


class TestNegotiation:
    """Тесты торга."""

    @pytest.mark.asyncio
    async def test_counter_offer_accepted(self, clock: FakeClock) -> None:
        """Проверяет, что принятое предложение становится ценой поездки."""
        engine = _engine(clock)
        ride = await engine.create(1, LUANDA, DESTINATION, quoted_price="1000")

        ride, entry = await engine.add_counter_offer(ride.id, 10, "1300.00", reason="пробки")
        assert entry.original_price == Decimal("1000.00")
        assert ride.status == RideStatus.SEARCHING

        ride, entry = await engine.respond_to_counter_offer(ride.id, RIDER, accept=True)
        assert entry.status == NegotiationStatus.ACCEPTED
        assert ride.negotiated_price == Decimal("1300.00")

        accepted = await engine.accept(ride.id, 10)
        assert accepted.final_price == Decimal("1300.00")

    @pytest.mark.asyncio
    async def test_new_offer_replaces_previous(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        ride = await engine.create(1, LUANDA, DESTINATION, quoted_price="1000")

        await engine.add_counter_offer(ride.id, 10, "1300.00")
        ride, _ = await engine.add_counter_offer(ride.id, 10, "1200.00")

        statuses = [e.status for e in ride.negotiation_history]
        assert statuses == [NegotiationStatus.REJECTED, NegotiationStatus.PENDING]
        assert ride.pending_offer.proposed_price == Decimal("1200.00")

    @pytest.mark.asyncio
    async def test_too_many_offers(self, clock: FakeClock) -> None:
        engine = _engine(clock, max_pending_offers=2)
        ride = await engine.create(1, LUANDA, DESTINATION, quoted_price="1000")
        await engine.add_counter_offer(ride.id, 10, "1100.00")
        await engine.add_counter_offer(ride.id, 11, "1200.00")

        with pytest.raises(LimitExceededError) as exc_info:
            await engine.add_counter_offer(ride.id, 12, "1300.00")

        assert exc_info.value.code == "TOO_MANY_OFFERS"

    @pytest.mark.asyncio
    async def test_rejected_offer_keeps_price(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        ride = await engine.create(1, LUANDA, DESTINATION, quoted_price="1000")
        await engine.add_counter_offer(ride.id, 10, "1500.00")

        ride, entry = await engine.respond_to_counter_offer(ride.id, RIDER, accept=False)

        assert entry.status == NegotiationStatus.REJECTED
        assert ride.negotiated_price is None
        assert ride.agreed_price == Decimal("1000.00")

    @pytest.mark.asyncio
    async def test_only_requester_responds(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        ride = await engine.create(1, LUANDA, DESTINATION, quoted_price="1000")
        await engine.add_counter_offer(ride.id, 10, "1500.00")

        with pytest.raises(UnauthorizedError):
            await engine.respond_to_counter_offer(ride.id, STRANGER, accept=True)

    @pytest.mark.asyncio
    async def test_no_pending_offer(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        ride = await engine.create(1, LUANDA, DESTINATION, quoted_price="1000")

        with pytest.raises(NotFoundError):
            await engine.respond_to_counter_offer(ride.id, RIDER, accept=True)

    @pytest.mark.asyncio
    async def test_requester_cannot_offer(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        ride = await engine.create(1, LUANDA, DESTINATION, quoted_price="1000")

        with pytest.raises(ValidationError):
            await engine.add_counter_offer(ride.id, 1, "900.00")

    @pytest.mark.asyncio
    async def test_other_driver_cannot_offer_after_accept(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        ride = await engine.create(1, LUANDA, DESTINATION, quoted_price="1000")
        await engine.accept(ride.id, 2)

        with pytest.raises(UnauthorizedError):
            await engine.add_counter_offer(ride.id, 10, "1200.00")

    @pytest.mark.asyncio
    async def test_losing_driver_offer_rejected_on_accept(self, clock: FakeClock) -> None:
        """Проверяет, что предложение проигравшего водителя не меняет цену назначенной поездки."""
        engine = _engine(clock)
        ride = await engine.create(1, LUANDA, DESTINATION, quoted_price="2000")
        await engine.add_counter_offer(ride.id, 3, "5000.00")

        accepted = await engine.accept(ride.id, 2)

        assert accepted.final_price == Decimal("2000.00")
        assert [e.status for e in accepted.negotiation_history] == [NegotiationStatus.REJECTED]
        with pytest.raises(NotFoundError):
            await engine.respond_to_counter_offer(ride.id, RIDER, accept=True)
        with pytest.raises(NotFoundError):
            await engine.respond_to_counter_offer(ride.id, RIDER, accept=True, driver_id=3)

        ride = await engine.get(ride.id)
        assert ride.final_price == Decimal("2000.00")
        assert ride.driver_id == 2

    @pytest.mark.asyncio
    async def test_assigned_driver_offer_after_accept(self, clock: FakeClock) -> None:
        """Проверяет, что после матча в силе предложение назначенного водителя."""
        engine = _engine(clock)
        ride = await engine.create(1, LUANDA, DESTINATION, quoted_price="2000")
        await engine.accept(ride.id, 2)
        await engine.add_counter_offer(ride.id, 2, "2400.00")

        ride, entry = await engine.respond_to_counter_offer(ride.id, RIDER, accept=True)

        assert entry.proposed_by == 2
        assert ride.final_price == Decimal("2400.00")


class TestSettlement:
    """Тесты оплаты завершённой поездки."""

    @pytest.mark.asyncio
    async def test_wallet_ride_paid(self, clock: FakeClock) -> None:
        ledger = await make_ledger(clock=clock)
        await ledger.open_account(1, "5000.00")
        engine = _engine(clock, settlement=ledger)
        ride = await engine.create(1, LUANDA, DESTINATION, quoted_price="2000", payment_method=PaymentMethod.WALLET)
        await engine.accept(ride.id, 2)

        completed = await _drive_to(engine, ride.id, RideStatus.ARRIVED, RideStatus.ONGOING, RideStatus.COMPLETED)

        assert completed.payment_status == PaymentStatus.PAID
        assert (await ledger.get_account(1)).balance == Decimal("3000.00")
        assert (await ledger.get_account(2)).balance == Decimal("1600.00")

    @pytest.mark.asyncio
    async def test_failed_settlement_keeps_completed(self, clock: FakeClock, mock_event_bus) -> None:
        """Проверяет, что сбой расчёта помечает оплату failed и шлёт событие."""
        ledger = await make_ledger(clock=clock)
        await ledger.open_account(1, "100.00")
        engine = _engine(clock, event_bus=mock_event_bus, settlement=ledger)
        ride = await engine.create(1, LUANDA, DESTINATION, quoted_price="2000", payment_method=PaymentMethod.WALLET)
        await engine.accept(ride.id, 2)

        completed = await _drive_to(engine, ride.id, RideStatus.ARRIVED, RideStatus.ONGOING, RideStatus.COMPLETED)

        assert completed.status == RideStatus.COMPLETED
        assert completed.payment_status == PaymentStatus.FAILED
        failed = [
            c.args[0] for c in mock_event_bus.publish.call_args_list
            if c.args[0].event_type == EventTypes.SETTLEMENT_FAILED
        ]
        assert failed[0].payload == {"ride_id": ride.id, "attempt": 0}
        assert [r.id for r in await engine.list_unsettled()] == [ride.id]

        await ledger.credit_bonus(1, "5000.00")
        retried = await engine.settle(await engine.get(ride.id), attempt=1)

        assert retried.payment_status == PaymentStatus.PAID
        assert await engine.list_unsettled() == []


class TestVisibility:
    """Тесты чтения поездки."""

    @pytest.mark.asyncio
    async def test_get_visible(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        ride = await engine.create(1, LUANDA, DESTINATION, quoted_price="1000")

        assert (await engine.get_visible(ride.id, RIDER)).id == ride.id
        assert (await engine.get_visible(ride.id, Principal(user_id=50, role=UserRole.DRIVER))).id == ride.id
        with pytest.raises(UnauthorizedError):
            await engine.get_visible(ride.id, STRANGER)

    @pytest.mark.asyncio
    async def test_list_for_user(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        first = await engine.create(1, LUANDA, DESTINATION, quoted_price="1000")
        clock.advance(10)
        second = await engine.create(1, LUANDA, DESTINATION, quoted_price="1000")
        await engine.accept(first.id, 2)

        assert [r.id for r in await engine.list_for_user(1)] == [second.id, first.id]
        assert [r.id for r in await engine.list_for_user(2)] == [first.id]


class TestRideLocks:
    """Тесты локов поездок в памяти."""

    @pytest.mark.asyncio
    async def test_locks_released(self, clock: FakeClock) -> None:
        """Проверяет, что лок поездки не остаётся после завершения операций."""
        engine = _engine(clock)
        rides = [await engine.create(1, LUANDA, DESTINATION, quoted_price="1000") for _ in range(3)]

        await asyncio.gather(*(engine.accept(ride.id, 2) for ride in rides), return_exceptions=True)
        await engine.cancel(rides[0].id, UserRole.PASSENGER)
        gc.collect()

        assert len(engine._repo._locks) == 0
