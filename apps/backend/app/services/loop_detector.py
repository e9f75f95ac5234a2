"""
loop_detector.py — Turns an ordered GPS stream into closed territory loops.

HOW IT WORKS
────────────
One LoopDetector per walk session. Each accepted point is appended to the
open ring; once the ring is long enough, the newest point "closes" a loop
when it comes back within the gate radius of an earlier point of the same
open ring:

    IDLE ──first point──▶ TRACKING ──valid closure──▶ CLOSED ──next point──▶ TRACKING
      │                      │                                                  │
      └──────────────────────┴─────────────── stop() ──────────────────────────▶ STOPPED

A candidate loop is the sub-ring from the gate point to the current point.
It is only emitted when it passes validation:

  1. area  >= min_area_sq_meters   (tangent-plane shoelace)
  2. perimeter >= min_perimeter_meters
  3. the closed ring is simple: no edge crosses another except at the gate

Failed candidates are dropped silently and the ring keeps growing. After a
successful closure the open ring restarts at the closing point, so loops chain.

PRIVACY MASK
────────────
A PrivacyMask is a fixed lat/lng translation drawn once per session. The
detector always measures the raw path and applies the mask to everything it
hands out, so masked and unmasked walks close the same loops with the same
areas.

Points must be pushed strictly in arrival order; debounce and closure both
depend on it.
"""

from __future__ import annotations

import logging
import math
import random
from dataclasses import dataclass
from enum import Enum
from typing import Optional, TypeVar

from pydantic import BaseModel
from shapely.geometry import LinearRing

from app.core.config import Settings, settings
from app.core.errors import TrackingStoppedError
from app.models.session import GpsPoint, Loop
from app.services.geodesy import (
    haversine_meters,
    offset_by_meters,
    path_length_meters,
    polygon_area_sq_meters,
    project_ring,
)

logger = logging.getLogger(__name__)

P = TypeVar("P", bound=BaseModel)


# ── Privacy mask ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PrivacyMask:
    """Uniform lat/lng translation applied to every point of a session."""

    d_lat: float = 0.0
    d_lon: float = 0.0

    @classmethod
    def random(
        cls,
        anchor,
        rng: Optional[random.Random] = None,
        min_offset_m: float = 6_000.0,
        max_offset_m: float = 10_000.0,
    ) -> "PrivacyMask":
        """Draw a 6–10 km offset on a random bearing, scaled at *anchor*."""
        rng = rng or random.Random()
        distance_m = rng.uniform(min_offset_m, max_offset_m)
        bearing = rng.uniform(0.0, 2.0 * math.pi)
        moved = offset_by_meters(anchor, distance_m, bearing)
        mask = cls(
            d_lat=moved.latitude - anchor.latitude,
            d_lon=moved.longitude - anchor.longitude,
        )
        logger.debug("New privacy mask: %.0f m at %.2f rad", distance_m, bearing)
        return mask

    def apply(self, point: P) -> P:
        """Return a translated copy of any model with latitude/longitude."""
        return point.model_copy(
            update={
                "latitude": point.latitude + self.d_lat,
                "longitude": point.longitude + self.d_lon,
            }
        )


# ── Detector ──────────────────────────────────────────────────────────────────

class DetectorState(str, Enum):
    IDLE = "idle"
    TRACKING = "tracking"
    CLOSED = "closed"
    STOPPED = "stopped"


@dataclass(frozen=True)
class DetectorConfig:
    """Thresholds for debounce, closure and loop validation."""

    min_step_meters: float = 3.0
    closure_radius_meters: float = 12.0
    min_points_for_loop: int = 4
    min_area_sq_meters: float = 800.0
    min_perimeter_meters: float = 0.0
    max_step_meters: Optional[float] = None      # None disables the spike filter
    max_accuracy_meters: Optional[float] = None  # None accepts any accuracy

    @classmethod
    def from_settings(cls, cfg: Settings = settings) -> "DetectorConfig":
        return cls(
            min_step_meters=cfg.loop_min_step_meters,
            closure_radius_meters=cfg.loop_closure_radius_meters,
            min_points_for_loop=cfg.loop_min_points,
            min_area_sq_meters=cfg.loop_min_area_sq_meters,
            min_perimeter_meters=cfg.loop_min_perimeter_meters,
            max_step_meters=cfg.loop_max_step_meters,
            max_accuracy_meters=cfg.loop_max_accuracy_meters,
        )


class LoopDetector:
    """State machine over one session's GPS stream."""

    def __init__(
        self,
        config: Optional[DetectorConfig] = None,
        mask: Optional[PrivacyMask] = None,
        loop_id_prefix: str = "loop",
    ):
        self.config = config or DetectorConfig()
        self.mask = mask
        self.loop_id_prefix = loop_id_prefix
        self._state = DetectorState.IDLE
        self._ring: list[GpsPoint] = []
        self._last_accepted: Optional[GpsPoint] = None
        self._loops_emitted = 0

    @property
    def state(self) -> DetectorState:
        return self._state

    @property
    def open_ring(self) -> tuple[GpsPoint, ...]:
        return tuple(self._ring)

    @property
    def loops_emitted(self) -> int:
        return self._loops_emitted

    # ── Ingestion ─────────────────────────────────────────────────────────────

    def accepts(self, point: GpsPoint) -> bool:
        """Debounce / spike / accuracy filter against the last accepted point."""
        cfg = self.config
        if cfg.max_accuracy_meters is not None and point.accuracy_m is not None:
            if point.accuracy_m > cfg.max_accuracy_meters:
                return False
        if self._last_accepted is None:
            return True
        step = haversine_meters(self._last_accepted, point)
        if step < cfg.min_step_meters:
            return False
        if cfg.max_step_meters is not None and step > cfg.max_step_meters:
            return False
        return True

    def push(self, point: GpsPoint) -> Optional[Loop]:
        """
        Feed the next point. Returns the Loop it closed, if any.

        Raises TrackingStoppedError once stop() has been called.
        """
        if self._state is DetectorState.STOPPED:
            raise TrackingStoppedError("loop detector already stopped")

        if not self.accepts(point):
            logger.debug("Dropped point at t=%d (debounce/spike/accuracy)", point.timestamp_ms)
            return None

        self._ring.append(point)
        self._last_accepted = point
        self._state = DetectorState.TRACKING

        if len(self._ring) < self.config.min_points_for_loop:
            return None

        loop = self._try_close()
        if loop is not None:
            self._ring = [point]
            self._state = DetectorState.CLOSED
        return loop

    def stop(self) -> None:
        """End tracking; the unclosed ring is discarded."""
        if self._ring:
            logger.debug("Discarding open ring of %d points on stop", len(self._ring))
        self._ring = []
        self._state = DetectorState.STOPPED

    # ── Closure ───────────────────────────────────────────────────────────────

    def _try_close(self) -> Optional[Loop]:
        cfg = self.config
        ring = self._ring
        current = ring[-1]
        last_gate = len(ring) - cfg.min_points_for_loop

        for gate in range(0, last_gate + 1):
            if haversine_meters(ring[gate], current) > cfg.closure_radius_meters:
                continue
            candidate = ring[gate:]
            closed = candidate if _same_position(candidate[0], current) else candidate + [candidate[0]]
            area = self._validate(closed)
            if area is None:
                continue
            return self._emit(closed, area, current.timestamp_ms)
        return None

    def _validate(self, closed: list[GpsPoint]) -> Optional[float]:
        """Return the ring's area when it is a valid loop, else None."""
        cfg = self.config
        area = polygon_area_sq_meters(closed)
        if area < cfg.min_area_sq_meters:
            logger.debug("Loop rejected: area %.1f < %.1f", area, cfg.min_area_sq_meters)
            return None

        perimeter = path_length_meters(closed)
        if perimeter < cfg.min_perimeter_meters:
            logger.debug("Loop rejected: perimeter %.1f < %.1f", perimeter, cfg.min_perimeter_meters)
            return None

        if not is_simple_ring(closed):
            logger.debug("Loop rejected: ring crosses itself")
            return None
        return area

    def _emit(self, closed: list[GpsPoint], area: float, closed_at_ms: int) -> Loop:
        self._loops_emitted += 1
        coords = [p.as_latlng() for p in closed]
        if self.mask is not None:
            coords = [self.mask.apply(c) for c in coords]
        loop = Loop(
            id=f"{self.loop_id_prefix}-loop-{self._loops_emitted}",
            closed_at_ms=closed_at_ms,
            area_sq_meters=area,
            ring_coordinates=coords,
        )
        logger.info("Loop closed: %s (%d points, %.0f m²)", loop.id, len(coords), area)
        return loop


def is_simple_ring(closed) -> bool:
    """True when no two non-adjacent edges of the closed ring intersect."""
    xy = project_ring(closed)
    if len(set(xy)) < 3:
        return False
    return LinearRing(xy).is_simple


def _same_position(a: GpsPoint, b: GpsPoint) -> bool:
    return a.latitude == b.latitude and a.longitude == b.longitude
