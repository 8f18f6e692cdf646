# src/api/routes/rides.py
"""
HTTP маршруты поездок.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from src.api.dependencies import get_dispatch, get_driver, get_lifecycle, get_principal
from src.api.schemas import (
    AcceptRequest,
    AdvanceRequest,
    CancelRequest,
    CounterOfferReply,
    CounterOfferRequest,
    RideListResponse,
    RideRequest,
)
from src.core.dispatch import DispatchCoordinator
from src.core.rides import Ride, RideLifecycleEngine
from src.shared.models.common import PaginationParams, Principal

router = APIRouter(prefix="/rides", tags=["Rides"])


@router.post("", response_model=Ride, status_code=201, summary="Заказать поездку")
async def request_ride(
    request: RideRequest,
    principal: Principal = Depends(get_principal),
    dispatch: DispatchCoordinator = Depends(get_dispatch),
) -> Ride:
    return await dispatch.request_ride(
        principal.user_id,
        request.origin,
        request.destination,
        quoted_price=request.quoted_price,
        category=request.category,
        payment_method=request.payment_method,
    )


@router.get("", response_model=RideListResponse, summary="Мои поездки")
async def list_rides(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    principal: Principal = Depends(get_principal),
    lifecycle: RideLifecycleEngine = Depends(get_lifecycle),
) -> RideListResponse:
    pagination = PaginationParams(page=page, page_size=page_size)
    items = await lifecycle.list_for_user(principal.user_id, limit=pagination.limit, offset=pagination.offset)
    return RideListResponse(items=items, page=page, page_size=page_size)


@router.get("/{ride_id}", response_model=Ride, summary="Текущее состояние поездки")
async def get_ride(
    ride_id: str,
    principal: Principal = Depends(get_principal),
    lifecycle: RideLifecycleEngine = Depends(get_lifecycle),
) -> Ride:
    return await lifecycle.get_visible(ride_id, principal)


@router.post("/{ride_id}/accept", response_model=Ride, summary="Принять поездку")
async def accept_ride(
    ride_id: str,
    request: AcceptRequest | None = None,
    principal: Principal = Depends(get_driver),
    dispatch: DispatchCoordinator = Depends(get_dispatch),
) -> Ride:
    final_price = request.final_price if request else None
    return await dispatch.accept_ride(ride_id, principal.user_id, final_price)


@router.post("/{ride_id}/advance", response_model=Ride, summary="Следующий статус")
async def advance_ride(
    ride_id: str,
    request: AdvanceRequest,
    principal: Principal = Depends(get_principal),
    dispatch: DispatchCoordinator = Depends(get_dispatch),
) -> Ride:
    return await dispatch.advance_ride(ride_id, principal, request.target_status)


@router.post("/{ride_id}/cancel", response_model=Ride, summary="Отменить поездку")
async def cancel_ride(
    ride_id: str,
    request: CancelRequest | None = None,
    principal: Principal = Depends(get_principal),
    dispatch: DispatchCoordinator = Depends(get_dispatch),
) -> Ride:
    reason = request.reason if request else None
    return await dispatch.cancel_ride(ride_id, principal, reason)


@router.post("/{ride_id}/counter-offers", response_model=Ride, summary="Встречное предложение цены")
async def propose_counter_offer(
    ride_id: str,
    request: CounterOfferRequest,
    principal: Principal = Depends(get_driver),
    dispatch: DispatchCoordinator = Depends(get_dispatch),
) -> Ride:
    ride, _ = await dispatch.propose_counter_offer(ride_id, principal.user_id, request.price, request.reason)
    return ride


@router.post("/{ride_id}/counter-offers/respond", response_model=Ride, summary="Ответ на предложение")
async def respond_to_counter_offer(
    ride_id: str,
    request: CounterOfferReply,
    principal: Principal = Depends(get_principal),
    dispatch: DispatchCoordinator = Depends(get_dispatch),
) -> Ride:
    ride, _ = await dispatch.respond_to_counter_offer(ride_id, principal, request.accept, request.driver_id)
    return ride
