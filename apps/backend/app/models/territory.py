"""
territory.py — Pydantic schemas for territory claims.

LatLng                 — one ring vertex, in the wire shape the app sends
TerritorySubmitRequest — body of POST /api/v1/territories and
                         PUT /api/v1/territories/{id}
TerritorySaveResponse  — what the claimant sees (always success once stored)
TerritoryOut           — a stored territory for map / "my territories" views

MongoDB document shape (`territories` collection):

  {
    "_id": ObjectId,
    "user_id": "<user id>",
    "geometry": { "type": "Polygon", "coordinates": [[[lng, lat], ...]] },  ← 2dsphere
    "coordinates": [[{"latitude": .., "longitude": ..}, ...]],               ← outer rings
    "area_sq_meters": 14400.0,
    "created_at": ISODate(...),
    "updated_at": ISODate(...)          # only after a PUT
  }
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class LatLng(BaseModel):
    """A WGS84 coordinate pair."""

    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class TerritorySubmitRequest(BaseModel):
    """A finalized loop submitted for persistence as a territory."""

    model_config = ConfigDict(allow_inf_nan=False)

    # Rings of the polygon; only the first (outer) ring is claimed.
    coordinates: list[list[LatLng]] = Field(..., min_length=1)
    area_sq_meters: float = Field(..., ge=0)


class TerritorySaveResponse(BaseModel):
    """Response for a successful claim or update."""

    success: bool = True
    territory_id: str
    created_at: datetime
    xp_awarded: int = 0
    neighbors_adjusted: int = 0
    neighbors_removed: int = 0


class TerritoryOut(BaseModel):
    """A persisted territory as shown on the map."""

    territory_id: str
    user_id: str
    username: Optional[str] = None
    coordinates: list[list[LatLng]]
    area_sq_meters: float
    created_at: datetime


class TerritoryListResponse(BaseModel):
    success: bool = True
    territories: list[TerritoryOut]
