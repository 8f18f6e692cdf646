# src/api/schemas.py
"""
Модели запросов и ответов HTTP/WebSocket адаптеров.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from src.common.constants import PaymentMethod, RideCategory, RideStatus
from src.core.ledger.models import LedgerEntry
from src.core.rides.models import Location, Ride


# === ПОЕЗДКИ ===

class RideRequest(BaseModel):
    """Заказ поездки."""
    origin: Location
    destination: Location
    quoted_price: Optional[Decimal] = Field(None, description="Цена; по тарифу, если не задана")
    category: RideCategory = RideCategory.RIDE
    payment_method: PaymentMethod = PaymentMethod.CASH


class AcceptRequest(BaseModel):
    ride_id: Optional[str] = None
    final_price: Optional[Decimal] = None


class AdvanceRequest(BaseModel):
    ride_id: Optional[str] = None
    target_status: RideStatus


class CancelRequest(BaseModel):
    ride_id: Optional[str] = None
    reason: Optional[str] = Field(None, max_length=500)


class CounterOfferRequest(BaseModel):
    ride_id: Optional[str] = None
    price: Decimal
    reason: Optional[str] = Field(None, max_length=500)


class CounterOfferReply(BaseModel):
    ride_id: Optional[str] = None
    accept: bool
    driver_id: Optional[int] = Field(None, description="Чьё предложение; по умолчанию последнее")


class RideListResponse(BaseModel):
    items: list[Ride]
    page: int
    page_size: int


# === ВОДИТЕЛИ ===

class DriverPing(BaseModel):
    """Пинг присутствия или геопозиции."""
    lat: float
    lng: float
    heading: Optional[float] = None
    channel_address: Optional[str] = None


class NearbyDriver(BaseModel):
    driver_id: int
    distance_km: float
    last_seen: Optional[datetime] = None


# === КОШЕЛЁК ===

class TransferRequest(BaseModel):
    receiver_identifier: str = Field(..., min_length=1, description="ID пользователя или номер счёта")
    amount: Decimal
    idempotency_key: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = Field(None, max_length=255)


class TransferResponse(BaseModel):
    success: bool = True
    reference: str
    replayed: bool = False
    amount: Decimal
    balance: Decimal = Field(..., description="Баланс отправителя после перевода")
    entry: LedgerEntry


class BonusRequest(BaseModel):
    user_id: int
    amount: Decimal
    idempotency_key: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = Field(None, max_length=255)


class ReproducibilityResponse(BaseModel):
    user_id: int
    ok: bool
    expected_balance: Decimal
    actual_balance: Decimal
    entries_count: int
