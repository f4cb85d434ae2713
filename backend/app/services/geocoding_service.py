"""
Géocodage des adresses (API Adresse data.gouv.fr) et distance orthodromique.
"""

import logging
import math
from typing import Optional, Tuple

import requests

from app.config import settings

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371


def get_coordinates(address: str) -> Optional[Tuple[float, float]]:
    """
    Retourne (lat, lon) de la meilleure correspondance, ou None si l'adresse est
    introuvable ou si l'API ne répond pas.
    """
    try:
        response = requests.get(
            settings.GEOCODING_API_URL,
            params={"q": address, "limit": 1},
            timeout=settings.GEOCODING_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        features = response.json().get("features") or []
    except (requests.RequestException, ValueError) as exc:
        logger.error("Erreur de géocodage pour '%s' : %s", address, exc)
        return None

    if not features:
        logger.warning("Adresse introuvable : %s", address)
        return None

    # GeoJSON : [lon, lat]
    lon, lat = features[0]["geometry"]["coordinates"]
    return lat, lon


def calculate_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distance en km par la formule de haversine."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def distance_between_addresses(origin: str, destination: str) -> float:
    """
    Distance arrondie à 0,1 km entre deux adresses.
    Si l'une des deux n'est pas géocodable, la distance vaut 0.
    """
    origin_coords = get_coordinates(origin)
    destination_coords = get_coordinates(destination)
    if origin_coords is None or destination_coords is None:
        return 0.0
    return round(calculate_distance(*origin_coords, *destination_coords), 1)
