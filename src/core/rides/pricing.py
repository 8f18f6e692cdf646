# src/core/rides/pricing.py
"""
Оценка стоимости поездки по тарифу категории.
"""

from __future__ import annotations

from decimal import ROUND_CEILING, Decimal

from src.common.constants import RideCategory
from src.common.geo import haversine_km
from src.common.money import CENT
from src.config.loader import CategoryFare, PricingSettings
from src.core.rides.models import Location


class PriceQuoter:
    """Тарификатор: база + км по прямой, не ниже минимума, с округлением вверх до шага."""

    def __init__(self, pricing: PricingSettings) -> None:
        self._categories = pricing.CATEGORIES
        self._step = Decimal(pricing.PRICE_ROUNDING_STEP)

    def tariff(self, category: RideCategory) -> CategoryFare:
        return self._categories.get(category.value) or CategoryFare()

    def distance_km(self, origin: Location, destination: Location) -> float:
        return round(haversine_km(origin.lat, origin.lng, destination.lat, destination.lng), 3)

    def quote(self, origin: Location, destination: Location, category: RideCategory) -> Decimal:
        tariff = self.tariff(category)
        distance = Decimal(str(self.distance_km(origin, destination)))

        price = max(tariff.BASE_FARE + distance * tariff.PER_KM, tariff.MIN_FARE)
        if self._step > 0:
            price = (price / self._step).to_integral_value(rounding=ROUND_CEILING) * self._step
        return price.quantize(CENT)
