# src/realtime/channel.py
"""
Realtime fan-out канал.

Комнаты адресуются как user:<id> и ride:<id>. Доставка best-effort,
не более одного раза на публикацию и участника, без истории: опоздавший
подписчик пропускает прошлые события и запрашивает состояние сам.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from src.common.logger import log_info
from src.common.constants import TypeMsg


def user_room(user_id: int | str) -> str:
    return f"user:{user_id}"


def ride_room(ride_id: str) -> str:
    return f"ride:{ride_id}"


def build_message(room: str, event_name: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Конверт сообщения, который уходит подписчикам."""
    return {
        "event": event_name,
        "room": room,
        "payload": payload,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@dataclass(eq=False)
class RoomMember:
    """
    Участник комнат (одно клиентское соединение).

    Сообщения складываются в ограниченную очередь; отправкой в сокет
    занимается владелец соединения, поэтому публикация не ждёт медленных
    клиентов. При переполнении сообщение для этого участника теряется.
    """
    member_id: str
    max_queue_size: int = 100
    rooms: set[str] = field(default_factory=set)
    dropped: int = 0
    queue: asyncio.Queue = field(init=False)

    def __post_init__(self) -> None:
        self.queue = asyncio.Queue(maxsize=self.max_queue_size)

    def deliver(self, message: dict[str, Any]) -> bool:
        try:
            self.queue.put_nowait(message)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            return False

    async def receive(self, timeout: float | None = None) -> dict[str, Any]:
        """Следующее сообщение (asyncio.TimeoutError по таймауту)."""
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout)

    def drain(self) -> list[dict[str, Any]]:
        """Забирает все накопленные сообщения без ожидания."""
        messages = []
        while not self.queue.empty():
            messages.append(self.queue.get_nowait())
        return messages


class FanoutChannel(ABC):
    """Абстрактная поверхность publish/subscribe по комнатам."""

    def __init__(self, member_queue_size: int = 100) -> None:
        self._member_queue_size = member_queue_size
        self._rooms: dict[str, set[RoomMember]] = {}
        self._published: int = 0

    def create_member(self, member_id: str) -> RoomMember:
        return RoomMember(member_id=member_id, max_queue_size=self._member_queue_size)

    @abstractmethod
    async def publish(self, room: str, event_name: str, payload: dict[str, Any]) -> int:
        """
        Публикует событие в комнату. Никогда не бросает исключений.

        Returns:
            Количество адресатов, которым сообщение поставлено в очередь
            (для распределённых бэкендов: количество инстансов-получателей)
        """

    async def subscribe(self, room: str, member: RoomMember) -> None:
        self._rooms.setdefault(room, set()).add(member)
        member.rooms.add(room)

    async def unsubscribe(self, room: str, member: RoomMember) -> None:
        members = self._rooms.get(room)
        if members is not None:
            members.discard(member)
            if not members:
                del self._rooms[room]
        member.rooms.discard(room)

    async def leave_all(self, member: RoomMember) -> None:
        """Выводит участника из всех комнат (разрыв соединения)."""
        for room in list(member.rooms):
            await self.unsubscribe(room, member)

    def room_members(self, room: str) -> set[RoomMember]:
        return set(self._rooms.get(room, ()))

    def _deliver_local(self, message: dict[str, Any]) -> int:
        """Раскладывает сообщение по очередям локальных участников комнаты."""
        delivered = 0
        for member in list(self._rooms.get(message["room"], ())):
            if member.deliver(message):
                delivered += 1
        return delivered

    def get_stats(self) -> dict[str, Any]:
        members = {m for ms in self._rooms.values() for m in ms}
        return {
            "rooms": len(self._rooms),
            "members": len(members),
            "published": self._published,
            "dropped": sum(m.dropped for m in members),
        }

    async def start(self) -> None:
        """Запуск фоновых задач бэкенда (если есть)."""

    async def stop(self) -> None:
        """Остановка фоновых задач бэкенда (если есть)."""


class LocalFanoutChannel(FanoutChannel):
    """Канал в пределах одного процесса."""

    async def publish(self, room: str, event_name: str, payload: dict[str, Any]) -> int:
        message = build_message(room, event_name, payload)
        self._published += 1
        delivered = self._deliver_local(message)
        await log_info(
            f"Событие {event_name} в {room}: доставлено {delivered}",
            type_msg=TypeMsg.DEBUG,
        )
        return delivered
