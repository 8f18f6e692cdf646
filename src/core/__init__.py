# src/core/__init__.py
"""
Доменный слой (Core Domain).
Справочник водителей, поездки, диспетчеризация, леджер.
"""

from src.core.directory import DriverDirectory
from src.core.rides import Ride, RideLifecycleEngine
from src.core.ledger import LedgerService
from src.core.dispatch import DispatchCoordinator

__all__ = [
    "DriverDirectory",
    "Ride",
    "RideLifecycleEngine",
    "LedgerService",
    "DispatchCoordinator",
]
