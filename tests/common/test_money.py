# tests/common/test_money.py
"""
Тесты денежных сумм.
"""

from __future__ import annotations

import re
from datetime import datetime
from decimal import Decimal

import pytest

from src.common.errors import ValidationError
from src.common.money import generate_reference, percent_of, to_money, to_positive_money


class TestToMoney:
    """Тесты для to_money."""

    def test_string_and_int(self) -> None:
        """Проверяет приведение строк и целых к двум знакам."""
        assert to_money("1000") == Decimal("1000.00")
        assert to_money(50) == Decimal("50.00")

    def test_float_has_no_binary_noise(self) -> None:
        """Проверяет, что float не тащит двоичную погрешность."""
        assert to_money(0.1) == Decimal("0.10")

    @pytest.mark.parametrize("value", ["abc", "1.005", "NaN", "Infinity", True, None])
    def test_invalid(self, value) -> None:
        """Проверяет отклонение некорректных сумм."""
        with pytest.raises(ValidationError):
            to_money(value)

    def test_positive_rejects_zero(self) -> None:
        """Проверяет, что ноль не является положительной суммой."""
        with pytest.raises(ValidationError):
            to_positive_money("0.00")
        with pytest.raises(ValidationError):
            to_positive_money("-5")


class TestPercent:
    """Тесты для percent_of."""

    def test_commission(self) -> None:
        """Проверяет 20% от 2000.00."""
        assert percent_of(Decimal("2000.00"), Decimal("20")) == Decimal("400.00")

    def test_half_up(self) -> None:
        """Проверяет округление половины копейки вверх."""
        assert percent_of(Decimal("0.25"), Decimal("10")) == Decimal("0.03")


class TestReference:
    """Тесты для generate_reference."""

    def test_format(self) -> None:
        """Проверяет формат PREFIX-YYYYMMDD-HEX8."""
        reference = generate_reference("TRF", datetime(2026, 3, 14))
        assert re.fullmatch(r"TRF-20260314-[0-9A-F]{8}", reference)

    def test_unique(self) -> None:
        """Проверяет, что референсы не повторяются."""
        assert len({generate_reference("TRF") for _ in range(50)}) == 50
