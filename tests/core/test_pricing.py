# tests/core/test_pricing.py
"""
Тесты тарификатора.
"""

from decimal import Decimal

import pytest

from src.common.constants import RideCategory
from src.config.loader import CategoryFare, PricingSettings
from src.core.rides import Location, PriceQuoter
from tests.factories import DESTINATION, LUANDA


@pytest.fixture
def quoter() -> PriceQuoter:
    return PriceQuoter(PricingSettings())


class TestPriceQuoter:
    """Тесты PriceQuoter."""

    def test_city_ride(self, quoter: PriceQuoter) -> None:
        """Проверяет цену поездки ~7 км: 500 + 7.08 * 150, вверх до 50."""
        assert quoter.quote(LUANDA, DESTINATION, RideCategory.RIDE) == Decimal("1600.00")

    def test_minimum_fare(self, quoter: PriceQuoter) -> None:
        """Проверяет, что короткая поездка стоит не меньше минимума."""
        assert quoter.quote(LUANDA, LUANDA, RideCategory.MOTO) == Decimal("300.00")

    def test_categories_differ(self, quoter: PriceQuoter) -> None:
        """Проверяет, что мото дешевле обычной поездки."""
        moto = quoter.quote(LUANDA, DESTINATION, RideCategory.MOTO)
        ride = quoter.quote(LUANDA, DESTINATION, RideCategory.RIDE)
        assert moto < ride

    def test_rounding_step(self) -> None:
        """Проверяет округление вверх до шага тарифа."""
        pricing = PricingSettings(
            CATEGORIES={"ride": CategoryFare(BASE_FARE=Decimal("101"), PER_KM=Decimal("0"), MIN_FARE=Decimal("0"))},
            PRICE_ROUNDING_STEP=100,
        )
        assert PriceQuoter(pricing).quote(LUANDA, DESTINATION, RideCategory.RIDE) == Decimal("200.00")

    def test_no_rounding(self) -> None:
        """Проверяет, что нулевой шаг оставляет цену до копеек."""
        pricing = PricingSettings(
            CATEGORIES={"ride": CategoryFare(BASE_FARE=Decimal("100.5"), PER_KM=Decimal("0"), MIN_FARE=Decimal("0"))},
            PRICE_ROUNDING_STEP=0,
        )
        assert PriceQuoter(pricing).quote(LUANDA, DESTINATION, RideCategory.RIDE) == Decimal("100.50")

    def test_missing_category_uses_default(self) -> None:
        """Проверяет тариф по умолчанию для категории без настроек."""
        quoter = PriceQuoter(PricingSettings(CATEGORIES={}))
        assert quoter.tariff(RideCategory.DELIVERY) == CategoryFare()

    def test_distance(self, quoter: PriceQuoter) -> None:
        """Проверяет расстояние по прямой с точностью до метра."""
        north = Location(lat=LUANDA.lat + 1.0, lng=LUANDA.lng)
        assert quoter.distance_km(LUANDA, north) == pytest.approx(111.195, abs=1e-3)
