"""
walk_tracker.py — Device-side glue between the location stream, the loop
detector and the session store.

    stream ──▶ WalkTracker.ingest ──▶ LoopDetector.push ──▶ Loop?
                    │                                         │
                    └─ SessionStore.append_point      SessionStore.append_loop
                                                      PlayerStats.record_loop

Points are handled one at a time in arrival order; run() only suspends
while waiting for the next location event.

PlayerStats is the narrow update interface into the app-wide player state:
the tracker pushes results into it instead of reaching into shared globals.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Optional

from app.core.config import settings
from app.models.session import GpsPoint, Loop, WalkSession
from app.services.loop_detector import DetectorConfig, LoopDetector, PrivacyMask
from app.services.session_store import SessionStore
from app.services.xp_ledger import area_to_xp

logger = logging.getLogger(__name__)


@dataclass
class PlayerStats:
    """App-state slice the tracker is allowed to update."""

    total_area_sq_meters: float = 0.0
    total_xp: int = 0
    loops_closed: int = 0
    recent_loops: list[Loop] = field(default_factory=list)

    def record_loop(self, loop: Loop, xp: int) -> None:
        self.total_area_sq_meters += loop.area_sq_meters
        self.total_xp += xp
        self.loops_closed += 1
        self.recent_loops.append(loop)

    def reset(self) -> None:
        """Called on logout."""
        self.total_area_sq_meters = 0.0
        self.total_xp = 0
        self.loops_closed = 0
        self.recent_loops.clear()


def _now_ms() -> int:
    return int(time.time() * 1000)


class WalkTracker:
    """Runs one walk session from start() to stop()."""

    def __init__(
        self,
        store: SessionStore,
        config: Optional[DetectorConfig] = None,
        stats: Optional[PlayerStats] = None,
        mask_location: Optional[bool] = None,
        rng: Optional[random.Random] = None,
        on_loop: Optional[Callable[[Loop], None]] = None,
    ):
        self.store = store
        self.config = config or DetectorConfig.from_settings()
        self.stats = stats
        self.mask_location = settings.mask_location if mask_location is None else mask_location
        self.rng = rng
        self.on_loop = on_loop
        self.session: Optional[WalkSession] = None
        self.detector: Optional[LoopDetector] = None

    @property
    def is_tracking(self) -> bool:
        return self.session is not None

    def start(self, started_at_ms: Optional[int] = None) -> WalkSession:
        if self.is_tracking:
            return self.session
        self.session = self.store.start_session(_now_ms() if started_at_ms is None else started_at_ms)
        # The mask is drawn lazily from the first fix so it scales at the right latitude.
        self.detector = None
        return self.session

    def ingest(self, point: GpsPoint) -> Optional[Loop]:
        """Feed one raw fix. Returns the loop it closed, if any."""
        if self.session is None:
            self.start(point.timestamp_ms)
        if self.detector is None:
            self.detector = LoopDetector(
                self.config,
                mask=self._draw_mask(point),
                loop_id_prefix=self.session.id,
            )

        if not self.detector.accepts(point):
            return None

        stored = self.detector.mask.apply(point) if self.detector.mask else point
        loop = self.detector.push(point)
        self.store.append_point(self.session.id, stored)

        if loop is not None:
            self.store.append_loop(self.session.id, loop)
            if self.stats is not None:
                self.stats.record_loop(loop, area_to_xp(loop.area_sq_meters))
            if self.on_loop is not None:
                self.on_loop(loop)
        return loop

    async def run(self, stream: AsyncIterator[GpsPoint]) -> list[Loop]:
        """Consume *stream* until it ends, then stop. Returns loops closed."""
        loops: list[Loop] = []
        try:
            async for point in stream:
                loop = self.ingest(point)
                if loop is not None:
                    loops.append(loop)
        finally:
            self.stop()
        return loops

    def stop(self, ended_at_ms: Optional[int] = None) -> Optional[WalkSession]:
        """End the session; any unclosed ring is discarded."""
        if self.session is None:
            return None
        if self.detector is not None:
            self.detector.stop()
        finished = self.store.end_session(self.session.id, _now_ms() if ended_at_ms is None else ended_at_ms)
        self.session = None
        self.detector = None
        return finished

    def _draw_mask(self, anchor: GpsPoint) -> Optional[PrivacyMask]:
        if not self.mask_location:
            return None
        return PrivacyMask.random(
            anchor,
            rng=self.rng,
            min_offset_m=settings.mask_min_offset_meters,
            max_offset_m=settings.mask_max_offset_meters,
        )
