# src/api/realtime.py
"""
WebSocket адаптер.

Клиент шлёт {"event": "...", "payload": {...}}, сервер отвечает теми же
конвертами, что уходят в комнаты. При подключении соединение сразу
подписано на свою комнату user:<id>.

Входящие события:
- ping, subscribe, unsubscribe
- ride.request, ride.accept, ride.advance, ride.cancel
- ride.counter_offer, ride.counter_offer_response
- driver.online, driver.offline, driver.location
- wallet.transfer
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PydanticValidationError

from src.api.dependencies import get_container, parse_principal, require_role
from src.api.schemas import (
    AcceptRequest,
    AdvanceRequest,
    CancelRequest,
    CounterOfferReply,
    CounterOfferRequest,
    DriverPing,
    RideRequest,
    TransferRequest,
)
from src.common.constants import UserRole
from src.common.errors import ConflictError, DispatchError, UnauthorizedError, ValidationError
from src.common.logger import log_debug, log_error
from src.container import ServiceContainer
from src.realtime.channel import RoomMember, build_message, ride_room, user_room
from src.shared.models.common import Principal

router = APIRouter(tags=["Realtime"])

DIRECT_ROOM = "direct"

Handler = Callable[[ServiceContainer, Principal, RoomMember, dict[str, Any]], Awaitable[None]]


def _reply(member: RoomMember, event_name: str, payload: dict[str, Any]) -> None:
    member.deliver(build_message(DIRECT_ROOM, event_name, payload))


def _require_ride_id(data: dict[str, Any]) -> str:
    ride_id = data.get("ride_id")
    if not ride_id:
        raise ValidationError("Не указан ride_id")
    return str(ride_id)


# =============================================================================
# ОБРАБОТЧИКИ СОБЫТИЙ КЛИЕНТА
# =============================================================================

async def _on_ping(container: ServiceContainer, principal: Principal, member: RoomMember, data: dict[str, Any]) -> None:
    _reply(member, "pong", {})


async def _on_subscribe(container: ServiceContainer, principal: Principal, member: RoomMember, data: dict[str, Any]) -> None:
    room = str(data.get("room") or "")
    if room == user_room(principal.user_id):
        await container.channel.subscribe(room, member)
        _reply(member, "subscribed", {"room": room})
        return
    if not room.startswith("ride:"):
        raise ValidationError(f"Неизвестная комната: {room!r}")

    # Истории нет: подписчик получает текущее состояние поездки
    ride = await container.lifecycle.get_visible(room.split(":", 1)[1], principal)
    if not (principal.is_admin or ride.is_party(principal.user_id)):
        raise UnauthorizedError("Нет доступа к комнате поездки")
    await container.channel.subscribe(room, member)
    _reply(member, "subscribed", {"room": room, "ride": ride.snapshot()})


async def _on_unsubscribe(container: ServiceContainer, principal: Principal, member: RoomMember, data: dict[str, Any]) -> None:
    room = str(data.get("room") or "")
    await container.channel.unsubscribe(room, member)
    _reply(member, "unsubscribed", {"room": room})


async def _on_ride_request(container: ServiceContainer, principal: Principal, member: RoomMember, data: dict[str, Any]) -> None:
    request = RideRequest.model_validate(data)
    ride = await container.dispatch.request_ride(
        principal.user_id,
        request.origin,
        request.destination,
        quoted_price=request.quoted_price,
        category=request.category,
        payment_method=request.payment_method,
    )
    await container.channel.subscribe(ride_room(ride.id), member)
    _reply(member, "ride.created", {"ride": ride.snapshot()})


async def _on_ride_accept(container: ServiceContainer, principal: Principal, member: RoomMember, data: dict[str, Any]) -> None:
    require_role(principal, UserRole.DRIVER)
    request = AcceptRequest.model_validate(data)
    ride = await container.dispatch.accept_ride(_require_ride_id(data), principal.user_id, request.final_price)
    await container.channel.subscribe(ride_room(ride.id), member)


async def _on_ride_advance(container: ServiceContainer, principal: Principal, member: RoomMember, data: dict[str, Any]) -> None:
    request = AdvanceRequest.model_validate(data)
    await container.dispatch.advance_ride(_require_ride_id(data), principal, request.target_status)


async def _on_ride_cancel(container: ServiceContainer, principal: Principal, member: RoomMember, data: dict[str, Any]) -> None:
    request = CancelRequest.model_validate(data)
    await container.dispatch.cancel_ride(_require_ride_id(data), principal, request.reason)


async def _on_counter_offer(container: ServiceContainer, principal: Principal, member: RoomMember, data: dict[str, Any]) -> None:
    require_role(principal, UserRole.DRIVER)
    request = CounterOfferRequest.model_validate(data)
    await container.dispatch.propose_counter_offer(
        _require_ride_id(data), principal.user_id, request.price, request.reason
    )


async def _on_counter_offer_response(container: ServiceContainer, principal: Principal, member: RoomMember, data: dict[str, Any]) -> None:
    request = CounterOfferReply.model_validate(data)
    await container.dispatch.respond_to_counter_offer(
        _require_ride_id(data), principal, request.accept, request.driver_id
    )


async def _on_driver_online(container: ServiceContainer, principal: Principal, member: RoomMember, data: dict[str, Any]) -> None:
    require_role(principal, UserRole.DRIVER)
    ping = DriverPing.model_validate(data)
    position = await container.dispatch.driver_online(
        principal.user_id,
        ping.lat,
        ping.lng,
        heading=ping.heading,
        channel_addr=ping.channel_address or member.member_id,
    )
    _reply(member, "driver.status", {"availability": position.availability.value})


async def _on_driver_offline(container: ServiceContainer, principal: Principal, member: RoomMember, data: dict[str, Any]) -> None:
    require_role(principal, UserRole.DRIVER)
    await container.dispatch.driver_offline(principal.user_id)
    _reply(member, "driver.status", {"availability": "offline"})


async def _on_driver_location(container: ServiceContainer, principal: Principal, member: RoomMember, data: dict[str, Any]) -> None:
    require_role(principal, UserRole.DRIVER)
    ping = DriverPing.model_validate(data)
    await container.dispatch.driver_location(principal.user_id, ping.lat, ping.lng, heading=ping.heading)


async def _on_wallet_transfer(container: ServiceContainer, principal: Principal, member: RoomMember, data: dict[str, Any]) -> None:
    try:
        request = TransferRequest.model_validate(data)
        result = await container.ledger.transfer_to_identifier(
            principal.user_id,
            request.receiver_identifier,
            request.amount,
            idempotency_key=request.idempotency_key,
            description=request.description,
        )
    except PydanticValidationError:
        _reply(member, "wallet.transfer_result", {"success": False, "reference": None, "error_code": "VALIDATION_ERROR"})
        return
    except DispatchError as e:
        _reply(member, "wallet.transfer_result", {
            "success": False,
            "reference": data.get("idempotency_key"),
            "error_code": e.code,
            "message": e.message,
        })
        return

    _reply(member, "wallet.transfer_result", {
        "success": True,
        "reference": result.reference,
        "error_code": None,
        "replayed": result.replayed,
        "balance": str(result.entry.sender_balance_after),
    })


HANDLERS: dict[str, Handler] = {
    "ping": _on_ping,
    "subscribe": _on_subscribe,
    "unsubscribe": _on_unsubscribe,
    "ride.request": _on_ride_request,
    "ride.accept": _on_ride_accept,
    "ride.advance": _on_ride_advance,
    "ride.cancel": _on_ride_cancel,
    "ride.counter_offer": _on_counter_offer,
    "ride.counter_offer_response": _on_counter_offer_response,
    "driver.online": _on_driver_online,
    "driver.offline": _on_driver_offline,
    "driver.location": _on_driver_location,
    "wallet.transfer": _on_wallet_transfer,
}


async def handle_client_message(
    container: ServiceContainer,
    principal: Principal,
    member: RoomMember,
    message: Any,
) -> None:
    """
    Обрабатывает одно сообщение клиента. Ошибки уходят клиенту событием
    error и соединение не рвут.
    """
    if not isinstance(message, dict):
        _reply(member, "error", {"error_code": "VALIDATION_ERROR", "message": "Ожидался JSON-объект"})
        return

    event_name = message.get("event")
    payload = message.get("payload") or {}
    handler = HANDLERS.get(event_name)
    if handler is None or not isinstance(payload, dict):
        _reply(member, "error", {"error_code": "VALIDATION_ERROR", "message": f"Неизвестное событие: {event_name!r}"})
        return

    try:
        await handler(container, principal, member, payload)
    except ConflictError as e:
        # ride.conflict уже отправлен координатором в комнату пользователя
        if event_name != "ride.accept":
            _reply(member, "error", {"error_code": e.code, "message": e.message, "event": event_name})
    except PydanticValidationError as e:
        _reply(member, "error", {"error_code": "VALIDATION_ERROR", "message": str(e.errors()[:1])})
    except DispatchError as e:
        _reply(member, "error", {"error_code": e.code, "message": e.message, "event": event_name})


async def _pump(websocket: WebSocket, member: RoomMember) -> None:
    """Перекладывает сообщения из очереди участника в сокет."""
    while True:
        message = await member.receive()
        await websocket.send_json(message)


@router.websocket("/ws")
async def realtime_endpoint(
    websocket: WebSocket,
    user_id: Optional[str] = Query(default=None),
    role: Optional[str] = Query(default=None),
) -> None:
    try:
        principal = parse_principal(user_id, role)
    except DispatchError as e:
        await websocket.close(code=1008, reason=e.code)
        return

    container = get_container()
    channel = container.channel
    await websocket.accept()

    member = channel.create_member(f"{principal.user_id}:{uuid4().hex[:8]}")
    await channel.subscribe(user_room(principal.user_id), member)
    pump = asyncio.create_task(_pump(websocket, member))
    await log_debug(f"WebSocket подключён: {member.member_id}")

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                _reply(member, "error", {"error_code": "VALIDATION_ERROR", "message": "Некорректный JSON"})
                continue
            try:
                await handle_client_message(container, principal, member, message)
            except DispatchError as e:
                _reply(member, "error", {"error_code": e.code, "message": e.message})
            except Exception as e:
                await log_error(f"Ошибка обработки сообщения WebSocket {member.member_id}: {e}", exc_info=True)
                _reply(member, "error", {"error_code": "INTERNAL", "message": "Внутренняя ошибка"})
    except WebSocketDisconnect:
        pass
    finally:
        pump.cancel()
        await asyncio.gather(pump, return_exceptions=True)
        await channel.leave_all(member)
        await log_debug(f"WebSocket отключён: {member.member_id}")
