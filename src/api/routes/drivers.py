# src/api/routes/drivers.py
"""
HTTP маршруты присутствия и геопозиции водителей.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from src.api.dependencies import get_dispatch, get_driver, get_principal
from src.api.schemas import DriverPing, NearbyDriver
from src.core.directory import DriverPosition
from src.core.dispatch import DispatchCoordinator
from src.shared.models.common import Principal

router = APIRouter(prefix="/drivers", tags=["Drivers"])


@router.post("/me/online", response_model=DriverPosition, summary="Выйти на линию")
async def go_online(
    ping: DriverPing,
    principal: Principal = Depends(get_driver),
    dispatch: DispatchCoordinator = Depends(get_dispatch),
) -> DriverPosition:
    return await dispatch.driver_online(
        principal.user_id,
        ping.lat,
        ping.lng,
        heading=ping.heading,
        channel_addr=ping.channel_address,
    )


@router.post("/me/offline", summary="Уйти с линии")
async def go_offline(
    principal: Principal = Depends(get_driver),
    dispatch: DispatchCoordinator = Depends(get_dispatch),
) -> dict:
    position = await dispatch.driver_offline(principal.user_id)
    return {"driver_id": principal.user_id, "availability": "offline", "known": position is not None}


@router.post("/me/location", response_model=DriverPosition, summary="Пинг геопозиции")
async def update_location(
    ping: DriverPing,
    principal: Principal = Depends(get_driver),
    dispatch: DispatchCoordinator = Depends(get_dispatch),
) -> DriverPosition:
    return await dispatch.driver_location(principal.user_id, ping.lat, ping.lng, heading=ping.heading)


@router.get("/nearby", response_model=list[NearbyDriver], summary="Водители рядом")
async def nearby_drivers(
    lat: float = Query(...),
    lng: float = Query(...),
    radius_km: Optional[float] = Query(None, gt=0),
    limit: Optional[int] = Query(None, ge=1, le=100),
    principal: Principal = Depends(get_principal),
    dispatch: DispatchCoordinator = Depends(get_dispatch),
) -> list[NearbyDriver]:
    candidates = await dispatch.nearby_drivers(lat, lng, radius_km, limit)
    return [
        NearbyDriver(driver_id=c.driver_id, distance_km=c.distance_km, last_seen=c.last_seen)
        for c in candidates
    ]
