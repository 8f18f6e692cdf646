# src/core/rides/state_machine.py
"""
Таблица допустимых переходов статусов поездки.
"""

from __future__ import annotations

from src.common.constants import RideStatus


class RideStateMachine:
    ALLOWED_TRANSITIONS: dict[RideStatus, frozenset[RideStatus]] = {
        RideStatus.SEARCHING: frozenset({RideStatus.ACCEPTED, RideStatus.CANCELLED}),
        RideStatus.ACCEPTED: frozenset({RideStatus.ARRIVED, RideStatus.CANCELLED}),
        RideStatus.ARRIVED: frozenset({RideStatus.ONGOING, RideStatus.CANCELLED}),
        RideStatus.ONGOING: frozenset({RideStatus.COMPLETED, RideStatus.CANCELLED}),
        RideStatus.COMPLETED: frozenset(),
        RideStatus.CANCELLED: frozenset(),
    }

    # Поле с временем перехода для каждого целевого статуса
    TIMESTAMP_FIELDS: dict[RideStatus, str] = {
        RideStatus.ACCEPTED: "accepted_at",
        RideStatus.ARRIVED: "arrived_at",
        RideStatus.ONGOING: "started_at",
        RideStatus.COMPLETED: "completed_at",
        RideStatus.CANCELLED: "cancelled_at",
    }

    @staticmethod
    def can_transition(current_status: str, new_status: str) -> bool:
        try:
            curr = RideStatus(current_status)
            new = RideStatus(new_status)
        except ValueError:
            return False
        return new in RideStateMachine.ALLOWED_TRANSITIONS[curr]
