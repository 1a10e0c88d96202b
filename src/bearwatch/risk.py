from __future__ import annotations

from collections.abc import Sequence

import numpy as np

from .models import AlertLevel, RiskAssessment, Sighting

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat: float, lng: float, lats: np.ndarray, lngs: np.ndarray) -> np.ndarray:
    """Great-circle distance from one point to many, in kilometres."""
    lat1 = np.radians(lat)
    lat2 = np.radians(lats)
    dlat = lat2 - lat1
    dlng = np.radians(lngs) - np.radians(lng)
    a = np.sin(dlat / 2) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin(dlng / 2) ** 2
    return 2 * EARTH_RADIUS_KM * np.arctan2(np.sqrt(a), np.sqrt(1 - a))


def distance_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    return float(haversine_km(lat1, lng1, np.array([lat2]), np.array([lng2]))[0])


def evaluate_risk(
    sightings: Sequence[Sighting],
    lat: float,
    lng: float,
    *,
    critical_distance_km: float = 5.0,
) -> RiskAssessment:
    """
    Classify the user's position against the nearest known sighting.
    NONE means risk cannot be assessed (no data), not that the area is safe.
    Search-summary records are links, not sightings, and are ignored.
    """
    candidates = [sighting for sighting in sightings if not sighting.is_summary]
    if not candidates:
        return RiskAssessment(alert_level=AlertLevel.NONE)

    lats = np.fromiter((item.lat for item in candidates), dtype=float, count=len(candidates))
    lngs = np.fromiter((item.lng for item in candidates), dtype=float, count=len(candidates))
    distances = haversine_km(lat, lng, lats, lngs)
    index = int(np.argmin(distances))
    nearest_km = float(distances[index])

    level = AlertLevel.DANGER if nearest_km <= critical_distance_km else AlertLevel.WARNING
    return RiskAssessment(alert_level=level, distance_km=round(nearest_km, 3), nearest=candidates[index])
