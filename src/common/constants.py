# src/common/constants.py
"""
Общие константы и перечисления.
"""

from enum import Enum


class TypeMsg(str, Enum):
    """Типы сообщений для логирования."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class UserRole(str, Enum):
    """Роли пользователей."""
    PASSENGER = "passenger"
    DRIVER = "driver"
    ADMIN = "admin"
    SYSTEM = "system"


class RideStatus(str, Enum):
    """Статусы поездки."""
    SEARCHING = "searching"
    ACCEPTED = "accepted"
    ARRIVED = "arrived"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Терминальные статусы поездки
TERMINAL_RIDE_STATUSES = frozenset({RideStatus.COMPLETED, RideStatus.CANCELLED})


class RideCategory(str, Enum):
    """Категории поездки."""
    RIDE = "ride"
    MOTO = "moto"
    DELIVERY = "delivery"


class DriverStatus(str, Enum):
    """Статусы доступности водителя."""
    OFFLINE = "offline"
    ONLINE = "online"
    BUSY = "busy"


class PaymentStatus(str, Enum):
    """Статусы оплаты поездки."""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class PaymentMethod(str, Enum):
    """Способы оплаты."""
    CASH = "cash"
    WALLET = "wallet"


class NegotiationStatus(str, Enum):
    """Статусы встречного предложения цены."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class WalletStatus(str, Enum):
    """Статусы кошелька."""
    ACTIVE = "active"
    BLOCKED = "blocked"


class LedgerEntryType(str, Enum):
    """Типы проводок."""
    TRANSFER = "transfer"
    FARE_SETTLEMENT = "fare_settlement"
    COMMISSION = "commission"
    BONUS = "bonus"


class LedgerEntryStatus(str, Enum):
    """Статусы проводок."""
    COMPLETED = "completed"
