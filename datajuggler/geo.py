"""
Geo support - GeoPoint values and ``near`` query helpers.

Usage:
    ```python
    here = GeoPoint("-122.4,37.7")            # "lng,lat"
    there = GeoPoint({"lat": 40.7, "lng": -74.0})
    here.distance_to(there, unit="kilometers")

    nf = near_filter({"location": {"near": here, "maxDistance": 10}})
    rows = filter_by_distance(rows, nf)
    ```
"""

from __future__ import annotations

import math
from typing import Any, Optional

__all__ = ["GeoPoint", "near_filter", "filter_by_distance", "EARTH_RADIUS"]

DEG2RAD = 0.01745329252
RAD2DEG = 57.29577951308

EARTH_RADIUS = {
    "kilometers": 6370.99056,
    "meters": 6370990.56,
    "miles": 3958.75,
    "feet": 20902200,
    "radians": 1,
    "degrees": RAD2DEG,
}


class GeoPoint:
    """A point on the earth given by latitude and longitude."""

    __slots__ = ("lat", "lng")

    def __init__(self, data: Any = None, lng: Any = None):
        if isinstance(data, GeoPoint):
            lat, lon = data.lat, data.lng
        elif lng is not None:
            lat, lon = data, lng
        elif isinstance(data, str):
            parts = [p.strip() for p in data.split(",")]
            if len(parts) != 2:
                raise ValueError('must provide a string "lng,lat" creating a GeoPoint with a string')
            lon, lat = parts
        elif isinstance(data, (list, tuple)):
            if len(data) != 2:
                raise ValueError("must provide [lng, lat] creating a GeoPoint with a list")
            lon, lat = data
        elif isinstance(data, dict):
            lat, lon = data.get("lat"), data.get("lng")
        else:
            raise ValueError("must provide a lat and lng object when creating a GeoPoint")

        try:
            lat, lon = float(lat), float(lon)
        except (TypeError, ValueError):
            raise ValueError("lat and lng must be numbers when creating a GeoPoint") from None
        if math.isnan(lat) or math.isnan(lon):
            raise ValueError("lat and lng must be numbers when creating a GeoPoint")
        if not -180 <= lon <= 180:
            raise ValueError("lng must be between -180 and 180")
        if not -90 <= lat <= 90:
            raise ValueError("lat must be between -90 and 90")
        self.lat = lat
        self.lng = lon

    @staticmethod
    def distance_between(a: Any, b: Any, unit: str = "miles") -> float:
        """Great-circle distance between two points (haversine)."""
        a = a if isinstance(a, GeoPoint) else GeoPoint(a)
        b = b if isinstance(b, GeoPoint) else GeoPoint(b)
        if unit not in EARTH_RADIUS:
            raise ValueError(f"Unknown distance unit: {unit}")

        lat1, lng1 = a.lat * DEG2RAD, a.lng * DEG2RAD
        lat2, lng2 = b.lat * DEG2RAD, b.lng * DEG2RAD
        h = (
            math.sin((lat2 - lat1) / 2) ** 2
            + math.cos(lat1) * math.cos(lat2) * math.sin((lng2 - lng1) / 2) ** 2
        )
        return 2 * math.asin(min(1.0, math.sqrt(h))) * EARTH_RADIUS[unit]

    def distance_to(self, point: Any, unit: str = "miles") -> float:
        return GeoPoint.distance_between(self, point, unit)

    def to_json(self) -> dict:
        return {"lat": self.lat, "lng": self.lng}

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, GeoPoint):
            return NotImplemented
        return self.lat == other.lat and self.lng == other.lng

    def __hash__(self) -> int:
        return hash((self.lat, self.lng))

    def __str__(self) -> str:
        return f"{self.lng},{self.lat}"

    def __repr__(self) -> str:
        return f"GeoPoint(lat={self.lat}, lng={self.lng})"


def near_filter(where: Any) -> Optional[dict]:
    """
    Extract the ``near`` condition of a where clause.

    Returns ``{"near", "max_distance", "unit", "key"}`` or None.
    """
    if not isinstance(where, dict):
        return None
    result = None
    for key, cond in where.items():
        if isinstance(cond, dict) and cond.get("near") is not None:
            result = {
                "near": cond["near"],
                "max_distance": cond.get("maxDistance"),
                "unit": cond.get("unit") or "miles",
                "key": key,
            }
    return result


def filter_by_distance(rows: list, nf: dict) -> list:
    """
    Drop rows outside ``max_distance`` and sort the rest nearest first.

    Rows may be dicts or model instances; rows without a location are dropped.
    """
    origin = GeoPoint(nf["near"])
    max_distance = nf.get("max_distance")
    max_distance = max_distance if max_distance and max_distance > 0 else None
    key = nf["key"]

    scored = []
    for row in rows:
        loc = row.get(key) if isinstance(row, dict) else getattr(row, key, None)
        if not loc:
            continue
        try:
            loc = loc if isinstance(loc, GeoPoint) else GeoPoint(loc)
        except ValueError:
            continue
        distance = origin.distance_to(loc, nf.get("unit") or "miles")
        if max_distance is not None and distance > max_distance:
            continue
        scored.append((distance, row))

    scored.sort(key=lambda pair: pair[0])
    return [row for _, row in scored]
