# src/core/ledger/service.py
"""
Сервис леджера: переводы между кошельками и расчёт по поездкам.

Каждая проводка проходит внутри with_account_lock: проверка ключа
идемпотентности, порога баланса и дневного лимита, списание, зачисление
и запись проводки фиксируются одной транзакцией.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional
from zoneinfo import ZoneInfo

from src.common.constants import (
    LedgerEntryType,
    PaymentMethod,
    RideStatus,
    TypeMsg,
    WalletStatus,
)
from src.common.errors import (
    ConflictError,
    InsufficientFundsError,
    LimitExceededError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from src.common.logger import log_debug, log_error, log_info
from src.common.money import generate_reference, percent_of, to_money, to_positive_money
from src.config.loader import LedgerSettings
from src.core.ledger.models import (
    LedgerEntry,
    ReproducibilityReport,
    SettlementResult,
    TransferResult,
    WalletAccount,
    account_number_for,
    utc_now,
)
from src.core.ledger.repository import AccountLock, LedgerRepository
from src.core.rides.models import Ride
from src.infra.event_bus import DomainEvent, EventBus, EventTypes
from src.realtime.channel import FanoutChannel, user_room


class LedgerService:
    """
    Сервис леджера.

    Реализует:
    - Открытие и блокировку кошельков
    - Переводы с лимитами и идемпотентностью
    - Расчёт по завершённой поездке (выплата водителю и комиссия)
    - Сверку баланса с историей проводок
    """

    def __init__(
        self,
        repository: LedgerRepository,
        settings: Optional[LedgerSettings] = None,
        event_bus: Optional[EventBus] = None,
        channel: Optional[FanoutChannel] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """
        Args:
            repository: Хранилище счетов и проводок
            settings: Секция ledger конфигурации
            event_bus: Шина доменных событий (необязательна)
            channel: Realtime канал для уведомлений о балансе
            clock: Источник текущего времени (UTC)
        """
        self._repo = repository
        self._settings = settings or LedgerSettings()
        self._event_bus = event_bus
        self._channel = channel
        self._clock = clock
        self._tz = ZoneInfo(self._settings.TIMEZONE)

    @property
    def clearing_account_id(self) -> int:
        return self._settings.CLEARING_ACCOUNT_ID

    @property
    def platform_account_id(self) -> int:
        return self._settings.PLATFORM_ACCOUNT_ID

    # =========================================================================
    # СЧЕТА
    # =========================================================================

    async def bootstrap(self) -> None:
        """Открывает клиринговый и платформенный счета, если их нет."""
        for user_id in (self.clearing_account_id, self.platform_account_id):
            await self._repo.create_account(WalletAccount(
                user_id=user_id,
                account_number=account_number_for(user_id),
                floor=self._settings.CLEARING_ACCOUNT_FLOOR,
                currency=self._settings.CURRENCY,
                is_system=True,
            ))
        await log_info("Системные счета леджера готовы", type_msg=TypeMsg.INFO)

    async def open_account(
        self,
        user_id: int,
        initial_balance: Decimal | str | int = Decimal("0.00"),
    ) -> WalletAccount:
        """
        Открывает кошелёк пользователя. Повторный вызов возвращает существующий.

        Raises:
            ValidationError: некорректный ID или отрицательный стартовый баланс
        """
        if user_id <= 0:
            raise ValidationError(f"Некорректный ID пользователя: {user_id}")
        balance = to_money(initial_balance)
        if balance < 0:
            raise ValidationError("Стартовый баланс не может быть отрицательным")

        return await self._repo.create_account(WalletAccount(
            user_id=user_id,
            account_number=account_number_for(user_id),
            balance=balance,
            initial_balance=balance,
            currency=self._settings.CURRENCY,
        ))

    async def get_account(self, user_id: int) -> WalletAccount:
        account = await self._repo.get_account(user_id)
        if account is None:
            raise NotFoundError(f"Кошелёк {user_id} не найден", code="WALLET_NOT_FOUND")
        return account

    async def get_history(self, user_id: int, limit: int = 50, offset: int = 0) -> list[LedgerEntry]:
        await self.get_account(user_id)
        return await self._repo.list_entries(user_id, limit=limit, offset=offset)

    async def resolve_receiver(self, identifier: str | int) -> WalletAccount:
        """
        Находит получателя по ID пользователя или номеру счёта.

        Raises:
            ValidationError: пустой идентификатор
            NotFoundError: получатель не найден
        """
        text = str(identifier).strip()
        if not text:
            raise ValidationError("Не указан получатель")

        if text.isdigit():
            account = await self._repo.get_account(int(text))
        else:
            account = await self._repo.find_by_number(text.upper())

        if account is None or account.is_system:
            raise NotFoundError(f"Получатель {text} не найден", code="RECEIVER_NOT_FOUND")
        return account

    async def block_account(self, user_id: int) -> WalletAccount:
        return await self._set_status(user_id, WalletStatus.BLOCKED)

    async def unblock_account(self, user_id: int) -> WalletAccount:
        return await self._set_status(user_id, WalletStatus.ACTIVE)

    async def _set_status(self, user_id: int, status: WalletStatus) -> WalletAccount:
        async with self._repo.with_account_lock([user_id]) as locked:
            account = locked.accounts.get(user_id)
            if account is None:
                raise NotFoundError(f"Кошелёк {user_id} не найден", code="WALLET_NOT_FOUND")
            account = account.model_copy(update={"status": status, "updated_at": self._clock()})
            await locked.save_account(account)

        await log_info(f"Кошелёк {user_id}: {status.value}", type_msg=TypeMsg.INFO)
        return account

    # =========================================================================
    # ПЕРЕВОДЫ
    # =========================================================================

    async def transfer(
        self,
        sender_id: int,
        receiver_id: int,
        amount: Decimal | str | int | float,
        idempotency_key: Optional[str] = None,
        description: Optional[str] = None,
    ) -> TransferResult:
        """
        Перевод между пользователями.

        Повтор с тем же ключом возвращает прежний результат без повторного списания.

        Raises:
            ValidationError: сумма, границы суммы, перевод самому себе
            NotFoundError: кошелёк не найден
            UnauthorizedError: кошелёк заблокирован
            InsufficientFundsError: баланс опустится ниже порога
            LimitExceededError: превышен дневной лимит
        """
        value = to_positive_money(amount)
        if value < self._settings.TRANSACTION_MIN:
            raise ValidationError(
                f"Минимальная сумма перевода {self._settings.TRANSACTION_MIN}",
                code="AMOUNT_TOO_SMALL",
            )
        if value > self._settings.TRANSACTION_MAX:
            raise ValidationError(
                f"Максимальная сумма перевода {self._settings.TRANSACTION_MAX}",
                code="AMOUNT_TOO_LARGE",
            )

        result = await self._post(
            sender_id,
            receiver_id,
            value,
            entry_type=LedgerEntryType.TRANSFER,
            reference=idempotency_key or generate_reference("TRF", self._local_now()),
            description=description,
            enforce_daily_limit=True,
        )
        if not result.replayed:
            await log_info(
                f"Перевод {result.reference}: {sender_id} -> {receiver_id}, {value}",
                type_msg=TypeMsg.INFO,
            )
            await self._after_commit([result.entry], EventTypes.TRANSFER_COMPLETED)
        return result

    async def transfer_to_identifier(
        self,
        sender_id: int,
        identifier: str | int,
        amount: Decimal | str | int | float,
        idempotency_key: Optional[str] = None,
        description: Optional[str] = None,
    ) -> TransferResult:
        """Перевод по ID пользователя или номеру счёта получателя."""
        receiver = await self.resolve_receiver(identifier)
        return await self.transfer(sender_id, receiver.user_id, amount, idempotency_key, description)

    async def credit_bonus(
        self,
        user_id: int,
        amount: Decimal | str | int | float,
        idempotency_key: Optional[str] = None,
        description: Optional[str] = None,
    ) -> TransferResult:
        """Бонус от платформы на кошелёк пользователя."""
        value = to_positive_money(amount)
        result = await self._post(
            self.platform_account_id,
            user_id,
            value,
            entry_type=LedgerEntryType.BONUS,
            reference=idempotency_key or generate_reference("BNS", self._local_now()),
            description=description or "Бонус платформы",
        )
        if not result.replayed:
            await self._after_commit([result.entry], EventTypes.TRANSFER_COMPLETED)
        return result

    # =========================================================================
    # РАСЧЁТ ПО ПОЕЗДКЕ
    # =========================================================================

    async def settle_ride(self, ride: Ride) -> SettlementResult:
        """
        Расчёт по завершённой поездке.

        Всегда одна выплата клиринг -> водитель (цена минус комиссия, тип
        fare_settlement) и парная комиссия клиринг -> платформа.
        Оплата из кошелька: до них пассажир -> клиринг (полная цена).
        Наличные: после них водитель -> клиринг (собранная выручка) с допуском
        в минус до DRIVER_COMMISSION_FLOOR.

        Ключи проводок выводятся из ID поездки, повторный вызов ничего не меняет.

        Raises:
            ConflictError: поездка не завершена
            ValidationError: у поездки нет водителя
            NotFoundError, UnauthorizedError, InsufficientFundsError
        """
        if ride.status != RideStatus.COMPLETED:
            raise ConflictError("Рассчитать можно только завершённую поездку", code="RIDE_NOT_COMPLETED")
        if ride.driver_id is None:
            raise ValidationError("У поездки нет водителя")

        price = ride.agreed_price
        commission = percent_of(price, self._settings.PLATFORM_COMMISSION_PERCENT)
        payout = price - commission
        driver_id = ride.driver_id
        clearing = self.clearing_account_id
        platform = self.platform_account_id
        meta = {"ride_id": ride.id}

        await self.open_account(driver_id)

        if ride.payment_method == PaymentMethod.WALLET:
            legs = [
                (ride.requester_id, clearing, price, LedgerEntryType.TRANSFER, "charge", None),
                (clearing, driver_id, payout, LedgerEntryType.FARE_SETTLEMENT, "payout", None),
                (clearing, platform, commission, LedgerEntryType.COMMISSION, "commission", None),
            ]
        else:
            # Наличные уже у водителя: выручка возвращается в клиринг,
            # итог для водителя равен минус комиссии
            legs = [
                (clearing, driver_id, payout, LedgerEntryType.FARE_SETTLEMENT, "payout", None),
                (clearing, platform, commission, LedgerEntryType.COMMISSION, "commission", None),
                (driver_id, clearing, price, LedgerEntryType.TRANSFER, "cash",
                 self._settings.DRIVER_COMMISSION_FLOOR),
            ]

        entries: list[LedgerEntry] = []
        fresh: list[LedgerEntry] = []
        participants = {p for leg in legs for p in leg[:2]}

        async with self._repo.with_account_lock(participants) as locked:
            for sender_id, receiver_id, amount, entry_type, leg, floor in legs:
                if amount <= 0:
                    continue
                result = await self._apply(
                    locked,
                    sender_id,
                    receiver_id,
                    amount,
                    entry_type=entry_type,
                    reference=f"ride:{ride.id}:{leg}",
                    description=f"Поездка {ride.id}: {leg}",
                    sender_floor=floor,
                    metadata={**meta, "leg": leg},
                )
                entries.append(result.entry)
                if not result.replayed:
                    fresh.append(result.entry)

        if fresh:
            await log_info(
                f"Расчёт по поездке {ride.id}: водителю {payout}, комиссия {commission}",
                type_msg=TypeMsg.INFO,
            )
            await self._after_commit(fresh, None)
        else:
            await log_debug(f"Поездка {ride.id} уже рассчитана")

        return SettlementResult(ride_id=ride.id, payout=payout, commission=commission, entries=entries)

    # =========================================================================
    # СВЕРКА
    # =========================================================================

    async def verify_reproducibility(self, user_id: int) -> ReproducibilityReport:
        """Стартовый баланс + зачисления - (списания + комиссии) == текущий баланс."""
        account = await self.get_account(user_id)
        entries = await self._repo.all_entries_for(user_id)
        expected = account.initial_balance + sum(
            (e.delta_for(user_id) for e in entries),
            Decimal("0.00"),
        )
        report = ReproducibilityReport(
            user_id=user_id,
            expected_balance=expected,
            actual_balance=account.balance,
            entries_count=len(entries),
        )
        if not report.ok:
            await log_error(
                f"Баланс {user_id} не сходится с историей: {account.balance} != {expected}"
            )
        return report

    # =========================================================================
    # ПРОВОДКИ
    # =========================================================================

    async def _post(
        self,
        sender_id: int,
        receiver_id: int,
        amount: Decimal,
        *,
        entry_type: LedgerEntryType,
        reference: str,
        description: Optional[str] = None,
        enforce_daily_limit: bool = False,
    ) -> TransferResult:
        if sender_id == receiver_id:
            raise ValidationError("Нельзя перевести средства самому себе", code="SELF_TRANSFER")

        async with self._repo.with_account_lock([sender_id, receiver_id]) as locked:
            return await self._apply(
                locked,
                sender_id,
                receiver_id,
                amount,
                entry_type=entry_type,
                reference=reference,
                description=description,
                enforce_daily_limit=enforce_daily_limit,
            )

    async def _apply(
        self,
        locked: AccountLock,
        sender_id: int,
        receiver_id: int,
        amount: Decimal,
        *,
        entry_type: LedgerEntryType,
        reference: str,
        description: Optional[str] = None,
        fee: Decimal = Decimal("0.00"),
        sender_floor: Optional[Decimal] = None,
        enforce_daily_limit: bool = False,
        metadata: Optional[dict[str, Any]] = None,
    ) -> TransferResult:
        """Одна проводка внутри уже захваченных счетов."""
        existing = await locked.find_entry(reference)
        if existing is not None:
            if (existing.sender_id, existing.receiver_id, existing.amount) != (sender_id, receiver_id, amount):
                raise ConflictError(
                    "Ключ идемпотентности уже использован для другой операции",
                    code="IDEMPOTENCY_MISMATCH",
                )
            return TransferResult(entry=existing, replayed=True)

        sender = locked.accounts.get(sender_id)
        receiver = locked.accounts.get(receiver_id)
        if sender is None:
            raise NotFoundError(f"Кошелёк {sender_id} не найден", code="WALLET_NOT_FOUND")
        if receiver is None:
            raise NotFoundError(f"Кошелёк {receiver_id} не найден", code="RECEIVER_NOT_FOUND")
        if not sender.is_active or not receiver.is_active:
            raise UnauthorizedError("Кошелёк заблокирован", code="WALLET_BLOCKED")

        now = self._clock()
        today = self._local_date(now)

        used = sender.used_today(today)
        if enforce_daily_limit and used + amount > self._settings.DAILY_LIMIT:
            raise LimitExceededError(
                f"Превышен дневной лимит {self._settings.DAILY_LIMIT}",
                code="DAILY_LIMIT_EXCEEDED",
                details={"used": str(used), "limit": str(self._settings.DAILY_LIMIT)},
            )

        floor = sender.floor if sender_floor is None else min(sender.floor, sender_floor)
        sender_balance = sender.balance - amount - fee
        if sender_balance < floor:
            raise InsufficientFundsError(
                "Недостаточно средств",
                details={"balance": str(sender.balance), "amount": str(amount + fee)},
            )

        sender_update: dict[str, Any] = {"balance": sender_balance, "updated_at": now}
        if enforce_daily_limit:
            sender_update["daily_limit_used"] = used + amount
            sender_update["last_transaction_date"] = today
        sender = sender.model_copy(update=sender_update)
        receiver = receiver.model_copy(update={"balance": receiver.balance + amount, "updated_at": now})

        entry = LedgerEntry(
            reference=reference,
            entry_type=entry_type,
            sender_id=sender_id,
            receiver_id=receiver_id,
            amount=amount,
            fee=fee,
            currency=self._settings.CURRENCY,
            sender_balance_after=sender.balance,
            receiver_balance_after=receiver.balance,
            description=description,
            metadata=metadata or {},
            created_at=now,
        )
        await locked.save_account(sender)
        await locked.save_account(receiver)
        await locked.append_entry(entry)
        return TransferResult(entry=entry)

    def _local_now(self) -> datetime:
        return self._clock().astimezone(self._tz)

    def _local_date(self, now: datetime) -> date:
        return now.astimezone(self._tz).date()

    async def _after_commit(self, entries: Iterable[LedgerEntry], event_type: Optional[str]) -> None:
        """Уведомления о балансе и доменные события, только после коммита."""
        for entry in entries:
            if self._channel is not None:
                for user_id, balance in (
                    (entry.sender_id, entry.sender_balance_after),
                    (entry.receiver_id, entry.receiver_balance_after),
                ):
                    if user_id <= 0:
                        continue
                    try:
                        await self._channel.publish(user_room(user_id), "wallet.balance_updated", {
                            "reference": entry.reference,
                            "entry_type": entry.entry_type.value,
                            "balance": str(balance),
                        })
                    except Exception as e:
                        await log_error(f"Не удалось уведомить о балансе {user_id}: {e}")

            if self._event_bus is not None and event_type is not None:
                try:
                    await self._event_bus.publish(DomainEvent(event_type=event_type, payload={
                        "reference": entry.reference,
                        "sender_id": entry.sender_id,
                        "receiver_id": entry.receiver_id,
                        "amount": str(entry.amount),
                    }))
                except Exception as e:
                    await log_error(f"Не удалось опубликовать событие {event_type}: {e}")
