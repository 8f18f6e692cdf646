# src/common/geo.py
"""
Геометрия на сфере: расстояние Haversine и проверка координат.
"""

from __future__ import annotations

import math

from src.common.errors import ValidationError

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """
    Расстояние по дуге большого круга между двумя точками (в км).

    d = 2R·asin(√(sin²(Δlat/2) + cos(lat1)·cos(lat2)·sin²(Δlng/2)))
    """
    if lat1 == lat2 and lng1 == lng2:
        return 0.0

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lng2 - lng1)

    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    # Погрешность float может дать a чуть больше 1 для антиподов
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(min(1.0, a)))


def is_valid_coordinate(lat: float | None, lng: float | None) -> bool:
    """Координаты конечны, в допустимом диапазоне и не нулевые."""
    if lat is None or lng is None:
        return False
    try:
        lat_f = float(lat)
        lng_f = float(lng)
    except (TypeError, ValueError):
        return False
    if not (math.isfinite(lat_f) and math.isfinite(lng_f)):
        return False
    if not (-90.0 <= lat_f <= 90.0 and -180.0 <= lng_f <= 180.0):
        return False
    # (0, 0) и нулевые оси приходят от клиентов без GPS-фикса
    return lat_f != 0.0 and lng_f != 0.0


def validate_coordinates(lat: float | None, lng: float | None) -> tuple[float, float]:
    """
    Проверяет координаты и возвращает их как float.

    Raises:
        ValidationError: координаты некорректны
    """
    if not is_valid_coordinate(lat, lng):
        raise ValidationError(
            f"Некорректные координаты: lat={lat}, lng={lng}",
            details={"lat": lat, "lng": lng},
        )
    return float(lat), float(lng)
