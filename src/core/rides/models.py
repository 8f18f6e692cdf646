# src/core/rides/models.py
"""
Модели данных поездок.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from src.common.constants import (
    NegotiationStatus,
    PaymentMethod,
    PaymentStatus,
    RideCategory,
    RideStatus,
    TERMINAL_RIDE_STATUSES,
    UserRole,
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Location(BaseModel):
    """Точка маршрута."""

    lat: float = Field(..., ge=-90.0, le=90.0, description="Широта")
    lng: float = Field(..., ge=-180.0, le=180.0, description="Долгота")
    name: Optional[str] = Field(None, max_length=500, description="Подпись точки")


class NegotiationEntry(BaseModel):
    """Встречное предложение цены от водителя."""

    proposed_by: int = Field(..., description="ID водителя")
    proposed_at: datetime = Field(default_factory=utc_now)
    original_price: Decimal = Field(..., description="Цена до предложения")
    proposed_price: Decimal = Field(..., description="Предложенная цена")
    reason: Optional[str] = Field(None, max_length=500, description="Комментарий")
    status: NegotiationStatus = Field(NegotiationStatus.PENDING)
    responded_at: Optional[datetime] = None


class Ride(BaseModel):
    """Модель поездки."""

    id: str = Field(default_factory=lambda: str(uuid4()), description="UUID поездки")
    requester_id: int = Field(..., description="ID пассажира")
    driver_id: Optional[int] = Field(None, description="ID водителя (null до матча)")

    origin: Location = Field(..., description="Точка подачи")
    destination: Location = Field(..., description="Точка назначения")
    distance_km: float = Field(0.0, ge=0.0, description="Расстояние по прямой")

    status: RideStatus = Field(RideStatus.SEARCHING, description="Статус поездки")
    category: RideCategory = Field(RideCategory.RIDE, description="Категория")

    # Цены
    quoted_price: Decimal = Field(..., description="Цена при заказе")
    negotiated_price: Optional[Decimal] = Field(None, description="Согласованная цена")
    final_price: Optional[Decimal] = Field(None, description="Итоговая цена")
    negotiation_history: list[NegotiationEntry] = Field(default_factory=list)

    # Оплата
    payment_method: PaymentMethod = Field(PaymentMethod.CASH, description="Способ оплаты")
    payment_status: PaymentStatus = Field(PaymentStatus.PENDING, description="Статус оплаты")

    # Временные метки
    created_at: datetime = Field(default_factory=utc_now)
    accepted_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utc_now)

    # Отмена
    cancelled_by: Optional[UserRole] = Field(None, description="Кто отменил")
    cancellation_reason: Optional[str] = Field(None, max_length=500)

    class Config:
        from_attributes = True

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RIDE_STATUSES

    @property
    def is_active(self) -> bool:
        """Водитель назначен и поездка ещё идёт."""
        return self.status in (RideStatus.ACCEPTED, RideStatus.ARRIVED, RideStatus.ONGOING)

    @property
    def agreed_price(self) -> Decimal:
        """Цена, которую надо списать: итоговая, иначе согласованная, иначе заявленная."""
        if self.final_price is not None:
            return self.final_price
        if self.negotiated_price is not None:
            return self.negotiated_price
        return self.quoted_price

    @property
    def pending_offer(self) -> Optional[NegotiationEntry]:
        for entry in reversed(self.negotiation_history):
            if entry.status == NegotiationStatus.PENDING:
                return entry
        return None

    def is_party(self, user_id: int) -> bool:
        return user_id == self.requester_id or (self.driver_id is not None and user_id == self.driver_id)

    def snapshot(self) -> dict[str, Any]:
        """JSON-совместимый снимок для realtime-событий."""
        return self.model_dump(mode="json")

