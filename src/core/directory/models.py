# src/core/directory/models.py
"""
Модели справочника водителей.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field

from src.common.constants import DriverStatus


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DriverPosition(BaseModel):
    """Последняя известная позиция водителя."""

    driver_id: int = Field(..., description="ID водителя")
    latitude: float = Field(..., ge=-90.0, le=90.0, description="Широта")
    longitude: float = Field(..., ge=-180.0, le=180.0, description="Долгота")
    heading: Optional[float] = Field(None, ge=0.0, lt=360.0, description="Курс в градусах")
    availability: DriverStatus = Field(DriverStatus.ONLINE, description="Доступность")
    channel_address: Optional[str] = Field(None, description="Адрес realtime-канала")
    updated_at: datetime = Field(default_factory=utc_now, description="Время последнего пинга")

    class Config:
        from_attributes = True

    def is_fresh(self, now: datetime, stale_seconds: int) -> bool:
        return (now - self.updated_at).total_seconds() <= stale_seconds


@dataclass
class DriverCandidate:
    """Кандидат на поездку с расстоянием до точки подачи."""
    driver_id: int
    distance_km: float
    channel_address: Optional[str] = None
    last_seen: Optional[datetime] = None
