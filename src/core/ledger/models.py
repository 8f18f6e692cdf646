# src/core/ledger/models.py
"""
Модели кошельков и проводок.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from src.common.constants import LedgerEntryStatus, LedgerEntryType, WalletStatus


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def account_number_for(user_id: int) -> str:
    """Номер счёта пользователя: AOT + ID, дополненный нулями до 8 знаков."""
    if user_id < 0:
        return f"AOTSYS{abs(user_id):05d}"
    return f"AOT{user_id:08d}"


class WalletAccount(BaseModel):
    """Кошелёк пользователя или системный счёт."""

    user_id: int = Field(..., description="ID владельца (отрицательный у системных счетов)")
    account_number: str = Field(..., description="Номер счёта")
    balance: Decimal = Field(Decimal("0.00"), description="Текущий баланс")
    initial_balance: Decimal = Field(Decimal("0.00"), description="Баланс при открытии")
    floor: Decimal = Field(Decimal("0.00"), description="Минимально допустимый баланс")
    currency: str = Field("AOA", max_length=3)
    status: WalletStatus = Field(WalletStatus.ACTIVE)
    is_system: bool = Field(False, description="Клиринговый или платформенный счёт")

    # Дневной лимит переводов
    daily_limit_used: Decimal = Field(Decimal("0.00"))
    last_transaction_date: Optional[date] = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    class Config:
        from_attributes = True

    @property
    def is_active(self) -> bool:
        return self.status == WalletStatus.ACTIVE

    def used_today(self, today: date) -> Decimal:
        """Сумма переводов за сегодня; счётчик обнуляется со сменой дня."""
        if self.last_transaction_date != today:
            return Decimal("0.00")
        return self.daily_limit_used


class LedgerEntry(BaseModel):
    """Проводка. Только добавляется, никогда не меняется."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    reference: str = Field(..., description="Уникальный ключ идемпотентности")
    entry_type: LedgerEntryType
    sender_id: int
    receiver_id: int
    amount: Decimal
    fee: Decimal = Decimal("0.00")
    currency: str = "AOA"
    sender_balance_after: Decimal
    receiver_balance_after: Decimal
    status: LedgerEntryStatus = LedgerEntryStatus.COMPLETED
    description: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)

    class Config:
        from_attributes = True

    def delta_for(self, user_id: int) -> Decimal:
        """Изменение баланса счёта user_id от этой проводки."""
        delta = Decimal("0.00")
        if self.sender_id == user_id:
            delta -= self.amount + self.fee
        if self.receiver_id == user_id:
            delta += self.amount
        return delta


@dataclass
class TransferResult:
    """Результат перевода. replayed=True, если ключ уже был проведён ранее."""
    entry: LedgerEntry
    replayed: bool = False

    @property
    def reference(self) -> str:
        return self.entry.reference


@dataclass
class SettlementResult:
    """Итог расчёта по поездке."""
    ride_id: str
    payout: Decimal
    commission: Decimal
    entries: list[LedgerEntry] = field(default_factory=list)


@dataclass
class ReproducibilityReport:
    """Сверка баланса счёта с историей проводок."""
    user_id: int
    expected_balance: Decimal
    actual_balance: Decimal
    entries_count: int

    @property
    def ok(self) -> bool:
        return self.expected_balance == self.actual_balance
