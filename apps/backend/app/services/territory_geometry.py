"""
territory_geometry.py — Pure polygon operations for territory claims.

Territory geometry is a tagged variant:

    Polygon       a single outer ring (possibly with holes)
    MultiPolygon  several disjoint pieces, e.g. a friend's territory cut
                  in two by a new claim

Every function here handles both variants explicitly. Geometries are kept
in lon/lat order (GeoJSON / EPSG:4326) and all set operations run directly
on those coordinates: at territory scale the tangent-plane projection is an
affine map, so differences and intersections computed in degrees are the
same shapes as in metres. Areas are measured after projecting onto the
tangent plane centred on the geometry's first vertex.

No I/O: the store-backed steps live in territory_resolver.py.
"""

from __future__ import annotations

import math
from typing import Sequence, Union

from shapely.affinity import affine_transform
from shapely.errors import GEOSException, ShapelyError
from shapely.geometry import GeometryCollection, MultiPolygon, Polygon, mapping, shape
from shapely.validation import explain_validity

from app.core.errors import GeometryError, RingValidationError
from app.models.territory import LatLng
from app.services.geodesy import meters_per_degree

TerritoryGeometry = Union[Polygon, MultiPolygon]

# Pieces smaller than this (m²) are treated as numerical slivers.
SLIVER_AREA_SQ_METERS = 1e-3


# ── Construction / conversion ─────────────────────────────────────────────────

def ring_to_polygon(ring: Sequence[LatLng]) -> Polygon:
    """
    Build a Polygon from a closed lat/lng ring.

    Raises RingValidationError for short, open, non-finite or self-crossing rings.
    """
    if len(ring) < 4:
        raise RingValidationError(f"ring needs at least 4 positions, got {len(ring)}")

    coords = [(p.longitude, p.latitude) for p in ring]
    if not all(math.isfinite(c) for xy in coords for c in xy):
        raise RingValidationError("ring contains non-finite coordinates")
    if coords[0] != coords[-1]:
        raise RingValidationError("ring is not closed (first point != last point)")
    if len(set(coords)) < 3:
        raise RingValidationError("ring needs at least 3 distinct points")

    polygon = Polygon(coords)
    if not polygon.is_valid:
        raise RingValidationError(f"ring is not a simple polygon: {explain_validity(polygon)}")
    if polygon.area == 0:
        raise RingValidationError("ring encloses no area")
    return polygon


def parse_geometry(geojson: dict) -> TerritoryGeometry:
    """Read a stored GeoJSON geometry; only Polygon and MultiPolygon are allowed."""
    try:
        geom = shape(geojson)
    except (ShapelyError, KeyError, TypeError, ValueError) as exc:
        raise GeometryError(f"unreadable geometry: {exc}") from exc

    if isinstance(geom, (Polygon, MultiPolygon)):
        if geom.is_empty:
            raise GeometryError("stored geometry is empty")
        return geom
    raise GeometryError(f"unexpected geometry type: {geom.geom_type}")


def geometry_to_geojson(geom: TerritoryGeometry) -> dict:
    """GeoJSON mapping with plain lists (BSON can't store tuples)."""
    raw = mapping(geom)
    return {"type": raw["type"], "coordinates": _listify(raw["coordinates"])}


def _listify(value):
    if isinstance(value, (list, tuple)):
        if value and isinstance(value[0], (int, float)):
            return [float(v) for v in value]
        return [_listify(v) for v in value]
    return value


def outer_rings(geom: TerritoryGeometry) -> list[list[LatLng]]:
    """
    Outer ring of each polygon piece as lat/lng lists.

    Holes are dropped here; they survive in the GeoJSON geometry only.
    """
    if isinstance(geom, Polygon):
        polygons = [geom]
    elif isinstance(geom, MultiPolygon):
        polygons = list(geom.geoms)
    else:
        raise GeometryError(f"unexpected geometry type: {geom.geom_type}")

    return [
        [LatLng(latitude=lat, longitude=lng) for lng, lat in poly.exterior.coords]
        for poly in polygons
    ]


# ── Measurement ───────────────────────────────────────────────────────────────

def _to_tangent_plane(geom, origin_lng: float, origin_lat: float):
    m_lat, m_lon = meters_per_degree(origin_lat)
    return affine_transform(geom, [m_lon, 0.0, 0.0, m_lat, -origin_lng * m_lon, -origin_lat * m_lat])


def _first_vertex(geom: TerritoryGeometry) -> tuple[float, float]:
    if isinstance(geom, Polygon):
        return geom.exterior.coords[0]
    if isinstance(geom, MultiPolygon):
        return geom.geoms[0].exterior.coords[0]
    raise GeometryError(f"unexpected geometry type: {geom.geom_type}")


def geometry_area_sq_meters(geom, origin: tuple[float, float] | None = None) -> float:
    """
    Tangent-plane area in m² (holes subtracted).

    *origin* is a (lng, lat) projection centre; defaults to the first vertex.
    """
    if geom is None or geom.is_empty:
        return 0.0
    if origin is None:
        if isinstance(geom, (Polygon, MultiPolygon)):
            origin = _first_vertex(geom)
        else:
            origin = geom.representative_point().coords[0]
    return float(_to_tangent_plane(geom, *origin[:2]).area)


# ── Set operations ────────────────────────────────────────────────────────────

def _polygonal_part(geom) -> TerritoryGeometry | None:
    """Keep only the polygon pieces of an overlay result (drop lines/points)."""
    if geom.is_empty:
        return None
    if isinstance(geom, (Polygon, MultiPolygon)):
        return geom
    if isinstance(geom, GeometryCollection):
        pieces: list[Polygon] = []
        for part in geom.geoms:
            if isinstance(part, Polygon):
                pieces.append(part)
            elif isinstance(part, MultiPolygon):
                pieces.extend(part.geoms)
        if not pieces:
            return None
        return pieces[0] if len(pieces) == 1 else MultiPolygon(pieces)
    return None


def _drop_slivers(geom: TerritoryGeometry, origin) -> TerritoryGeometry | None:
    pieces = [geom] if isinstance(geom, Polygon) else list(geom.geoms)
    kept = [p for p in pieces if geometry_area_sq_meters(p, origin) > SLIVER_AREA_SQ_METERS]
    if not kept:
        return None
    return kept[0] if len(kept) == 1 else MultiPolygon(kept)


def subtract(neighbor: TerritoryGeometry, claim: TerritoryGeometry) -> TerritoryGeometry | None:
    """
    neighbor − claim.

    Returns None when nothing (beyond numerical slivers) is left.
    Raises GeometryError if the geometry engine cannot compute the result.
    """
    if not neighbor.is_valid:
        raise GeometryError(f"neighbor geometry invalid: {explain_validity(neighbor)}")
    try:
        diff = neighbor.difference(claim)
    except (GEOSException, ShapelyError) as exc:
        raise GeometryError(f"difference failed: {exc}") from exc

    remainder = _polygonal_part(diff)
    if remainder is None:
        return None
    return _drop_slivers(remainder, _first_vertex(neighbor))


def overlap_area_sq_meters(a: TerritoryGeometry, b: TerritoryGeometry) -> float:
    """Area of a ∩ b in m², measured in a's projection."""
    try:
        inter = a.intersection(b)
    except (GEOSException, ShapelyError) as exc:
        raise GeometryError(f"intersection failed: {exc}") from exc
    return geometry_area_sq_meters(inter, _first_vertex(a))


def overlaps(a: TerritoryGeometry, b: TerritoryGeometry) -> bool:
    """True when the two geometries share a positive-area region."""
    try:
        return a.intersects(b) and not a.touches(b)
    except (GEOSException, ShapelyError) as exc:
        raise GeometryError(f"intersects test failed: {exc}") from exc
