# src/common/money.py
"""
Денежные суммы: только Decimal с двумя знаками после запятой.
"""

from __future__ import annotations

import secrets
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from src.common.errors import ValidationError

CENT = Decimal("0.01")


def to_money(value: Decimal | str | int | float) -> Decimal:
    """
    Приводит значение к Decimal с двумя знаками.

    float сначала переводится в строку, чтобы не тащить двоичную погрешность.

    Raises:
        ValidationError: значение не число, бесконечно или имеет больше двух знаков
    """
    if isinstance(value, bool):
        raise ValidationError(f"Некорректная сумма: {value!r}")
    try:
        amount = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"Некорректная сумма: {value!r}")

    if not amount.is_finite():
        raise ValidationError(f"Сумма должна быть конечной: {value!r}")
    if amount != amount.quantize(CENT):
        raise ValidationError(f"Сумма имеет больше двух знаков после запятой: {value!r}")
    return amount.quantize(CENT)


def to_positive_money(value: Decimal | str | int | float) -> Decimal:
    """Как to_money, но сумма должна быть строго больше нуля."""
    amount = to_money(value)
    if amount <= 0:
        raise ValidationError(f"Сумма должна быть положительной: {value!r}")
    return amount


def percent_of(amount: Decimal, percent: Decimal) -> Decimal:
    """Процент от суммы, округлённый до копеек (half-up)."""
    return (amount * Decimal(percent) / Decimal(100)).quantize(CENT, rounding=ROUND_HALF_UP)


def generate_reference(prefix: str, now: datetime | None = None) -> str:
    """Референс проводки вида PREFIX-YYYYMMDD-HEX8."""
    now = now or datetime.now()
    return f"{prefix}-{now:%Y%m%d}-{secrets.token_hex(4).upper()}"
