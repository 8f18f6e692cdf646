# src/core/rides/__init__.py
"""
Поездки: модели, таблица переходов, репозитории и движок жизненного цикла.
"""

from src.core.rides.models import Location, NegotiationEntry, Ride
from src.core.rides.pricing import PriceQuoter
from src.core.rides.repository import (
    InMemoryRideRepository,
    PostgresRideRepository,
    RideLock,
    RideRepository,
)
from src.core.rides.service import RideLifecycleEngine
from src.core.rides.state_machine import RideStateMachine

__all__ = [
    "Location",
    "NegotiationEntry",
    "Ride",
    "PriceQuoter",
    "InMemoryRideRepository",
    "PostgresRideRepository",
    "RideLock",
    "RideRepository",
    "RideLifecycleEngine",
    "RideStateMachine",
]
