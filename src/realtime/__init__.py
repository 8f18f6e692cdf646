# src/realtime/__init__.py
"""
Realtime fan-out: комнаты user:<id> и ride:<id>.
"""

from src.realtime.channel import (
    FanoutChannel,
    LocalFanoutChannel,
    RoomMember,
    ride_room,
    user_room,
)
from src.realtime.redis_channel import RedisFanoutChannel

__all__ = [
    "FanoutChannel",
    "LocalFanoutChannel",
    "RedisFanoutChannel",
    "RoomMember",
    "ride_room",
    "user_room",
]
