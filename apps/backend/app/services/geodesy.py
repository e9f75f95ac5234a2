"""
geodesy.py — Small-scale geodesy helpers shared by the detector and resolver.

All planar work happens on a local equirectangular tangent plane:

    x = (lon - lon0) * 111111 * cos(lat0)
    y = (lat - lat0) * 111111

which is accurate to well under 1 % for loops a few kilometres across.
It degrades towards the poles; nothing here should be trusted beyond ±85°.

Points can be anything with .latitude/.longitude (LatLng, GpsPoint).
"""

from __future__ import annotations

import math
from typing import Iterable, Protocol, Sequence

from app.models.territory import LatLng

METERS_PER_DEGREE_LAT = 111_111.0
EARTH_RADIUS_M = 6_371_000.0


class HasLatLng(Protocol):
    latitude: float
    longitude: float


XY = tuple[float, float]


def meters_per_degree(latitude: float) -> tuple[float, float]:
    """Return (m per degree latitude, m per degree longitude) at *latitude*."""
    return METERS_PER_DEGREE_LAT, METERS_PER_DEGREE_LAT * math.cos(math.radians(latitude))


def to_local_xy(point: HasLatLng, origin: HasLatLng) -> XY:
    """Project *point* onto the tangent plane centred on *origin* (metres)."""
    m_lat, m_lon = meters_per_degree(origin.latitude)
    return (
        (point.longitude - origin.longitude) * m_lon,
        (point.latitude - origin.latitude) * m_lat,
    )


def from_local_xy(xy: XY, origin: HasLatLng) -> LatLng:
    """Inverse of to_local_xy."""
    m_lat, m_lon = meters_per_degree(origin.latitude)
    return LatLng(
        latitude=origin.latitude + xy[1] / m_lat,
        longitude=origin.longitude + xy[0] / m_lon,
    )


def project_ring(ring: Sequence[HasLatLng]) -> list[XY]:
    """Project a ring onto the plane centred on its first point."""
    if not ring:
        return []
    origin = ring[0]
    return [to_local_xy(p, origin) for p in ring]


def shoelace_area(xy: Sequence[XY]) -> float:
    """Absolute planar area of a ring (closed or open) in projected units²."""
    n = len(xy)
    if n < 3:
        return 0.0
    twice = 0.0
    for i in range(n):
        x1, y1 = xy[i]
        x2, y2 = xy[(i + 1) % n]
        twice += x1 * y2 - x2 * y1
    return abs(twice) / 2.0


def polygon_area_sq_meters(ring: Sequence[HasLatLng]) -> float:
    """
    Planar area of a lat/lng ring in m².

    Works with or without the repeated closing vertex. Returns 0 for rings
    with fewer than 3 distinct points.
    """
    distinct = {(p.latitude, p.longitude) for p in ring}
    if len(distinct) < 3:
        return 0.0
    return shoelace_area(project_ring(ring))


def haversine_meters(a: HasLatLng, b: HasLatLng) -> float:
    """Great-circle distance in metres between two points."""
    phi1 = math.radians(a.latitude)
    phi2 = math.radians(b.latitude)
    d_phi = math.radians(b.latitude - a.latitude)
    d_lambda = math.radians(b.longitude - a.longitude)

    h = math.sin(d_phi / 2.0) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2.0) ** 2
    return 2.0 * EARTH_RADIUS_M * math.atan2(math.sqrt(h), math.sqrt(1.0 - h))


def path_length_meters(points: Iterable[HasLatLng]) -> float:
    """Sum of haversine step lengths along a path."""
    total = 0.0
    prev = None
    for p in points:
        if prev is not None:
            total += haversine_meters(prev, p)
        prev = p
    return total


def offset_by_meters(point: HasLatLng, distance_m: float, bearing_rad: float) -> LatLng:
    """
    Translate *point* by *distance_m* along *bearing_rad* (0 = north,
    clockwise) using the local metres-per-degree scale at the point.
    """
    m_lat, m_lon = meters_per_degree(point.latitude)
    d_north = distance_m * math.cos(bearing_rad)
    d_east = distance_m * math.sin(bearing_rad)
    return LatLng(
        latitude=point.latitude + d_north / m_lat,
        longitude=point.longitude + d_east / m_lon,
    )
