import math
from typing import Protocol

from servmatch.errors import EngineValidationError

EARTH_RADIUS_KM = 6371.0


class Coordinate(Protocol):
    lat: float
    lng: float


def validate_coordinate(lat: float, lng: float) -> None:
    if not -90.0 <= lat <= 90.0:
        raise EngineValidationError(f"Latitude out of range: {lat}")
    if not -180.0 <= lng <= 180.0:
        raise EngineValidationError(f"Longitude out of range: {lng}")


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def distance_km(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance between two coordinates, in kilometres.

    Inputs are assumed valid; call validate_coordinate at the boundary.
    """
    return haversine_km(float(a.lat), float(a.lng), float(b.lat), float(b.lng))
