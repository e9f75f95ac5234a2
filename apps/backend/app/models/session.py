"""
session.py — Pydantic schemas for device-side walk sessions.

GpsPoint      — one fix from the location provider (input to the detector)
PathPoint     — the stored form of a GpsPoint inside a session
Loop          — a validated closed ring produced by the loop detector
WalkSession   — one tracking session: breadcrumb + loops
Backend*      — the summary shape synced to the server

Everything is frozen: sessions are "mutated" by the store building a new
model with model_copy(update=...), which keeps the on-disk JSON the single
source of truth.
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.models.territory import LatLng


class GpsPoint(BaseModel):
    """A location event. Non-finite or out-of-range coordinates are rejected."""

    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    timestamp_ms: int
    accuracy_m: Optional[float] = Field(default=None, ge=0)

    def as_latlng(self) -> LatLng:
        return LatLng(latitude=self.latitude, longitude=self.longitude)


class PathPoint(BaseModel):
    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    lat: float
    lng: float
    t: int  # ms since epoch

    @classmethod
    def from_gps(cls, point: GpsPoint) -> "PathPoint":
        return cls(lat=point.latitude, lng=point.longitude, t=point.timestamp_ms)


class Loop(BaseModel):
    """A closed, simple ring with its planar area."""

    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    id: str = Field(..., min_length=1)
    closed_at_ms: int
    area_sq_meters: float = Field(..., ge=0)
    ring_coordinates: list[LatLng] = Field(default_factory=list)

    @model_validator(mode="after")
    def _ring_is_closed(self) -> "Loop":
        ring = self.ring_coordinates
        # Stored sessions from older clients carry area only, no ring.
        if ring and ring[0] != ring[-1]:
            raise ValueError("ring_coordinates must start and end on the same point")
        return self


class WalkSession(BaseModel):
    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    id: str = Field(..., min_length=1)
    started_at_ms: int
    ended_at_ms: Optional[int] = None
    points: list[PathPoint] = Field(default_factory=list)
    loops: list[Loop] = Field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.ended_at_ms is None


# ── Backend sync payload ──────────────────────────────────────────────────────

def _iso(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


class BackendLoopPayload(BaseModel):
    session_id: str
    loop_id: str
    closed_at: datetime
    area_sq_meters: float


class BackendSessionPayload(BaseModel):
    session_id: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    num_points: int
    num_loops: int
    loops: list[BackendLoopPayload]

    @classmethod
    def from_session(cls, session: WalkSession) -> "BackendSessionPayload":
        return cls(
            session_id=session.id,
            started_at=_iso(session.started_at_ms),
            ended_at=_iso(session.ended_at_ms) if session.ended_at_ms else None,
            num_points=len(session.points),
            num_loops=len(session.loops),
            loops=[
                BackendLoopPayload(
                    session_id=session.id,
                    loop_id=loop.id,
                    closed_at=_iso(loop.closed_at_ms),
                    area_sq_meters=loop.area_sq_meters,
                )
                for loop in session.loops
            ],
        )
