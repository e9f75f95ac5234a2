"""
territories.py — Territory claim routes.

Routes:
  POST /api/v1/territories                 — claim a closed loop (rate limited)
  PUT  /api/v1/territories/{territory_id}  — re-submit / expand your own territory
  GET  /api/v1/territories/mine            — the caller's territories
  GET  /api/v1/territories                 — every territory, for the map (public)

HOW A CLAIM FLOWS
─────────────────
1. The app closes a loop on-device and POSTs its ring + area.
2. TerritoryResolver stores it, then subtracts it from every overlapping
   territory owned by an accepted friend (see services/territory_resolver.py).
3. The claimant always gets 201 once the territory is stored. Neighbor
   adjustments that fail are logged server-side and never surface here.

Errors:
  400  ring is malformed (too short, open, non-finite, self-crossing)
  401  missing / bad token
  404  PUT on a territory that is missing or not yours
  503  database unavailable

TESTING YOUR CHANGES
─────────────────────
  cd apps/backend
  pytest tests/test_territories.py -v

  curl -X POST http://localhost:8000/api/v1/territories \\
    -H "Authorization: Bearer $TOKEN" -H 'Content-Type: application/json' \\
    -d '{"coordinates": [[{"latitude": 51.5, "longitude": -0.12}, ...]], "area_sq_meters": 14400}'
"""

import logging
from datetime import datetime, timezone

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from app.core.config import settings
from app.core.database import get_db
from app.core.errors import RingValidationError, TerritoryNotFoundError
from app.core.rate_limit import limiter
from app.models.territory import (
    LatLng,
    TerritoryListResponse,
    TerritoryOut,
    TerritorySaveResponse,
    TerritorySubmitRequest,
)
from app.routes.auth import CurrentUser
from app.services.territory_resolver import ClaimResult, TerritoryResolver

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/territories", tags=["territories"])


# ── Helpers ───────────────────────────────────────────────────────────────────

def _require_db(db):
    if db is None:
        raise HTTPException(status_code=503, detail="Database unavailable")
    return db


def _to_response(result: ClaimResult) -> TerritorySaveResponse:
    return TerritorySaveResponse(
        territory_id=result.territory_id,
        created_at=result.created_at,
        xp_awarded=result.xp_awarded,
        neighbors_adjusted=len(result.report.adjusted),
        neighbors_removed=len(result.report.deleted),
    )


def _doc_to_territory(doc: dict, usernames: dict[str, str]) -> TerritoryOut:
    return TerritoryOut(
        territory_id=str(doc["_id"]),
        user_id=doc["user_id"],
        username=usernames.get(doc["user_id"]),
        coordinates=[[LatLng(**p) for p in ring] for ring in doc.get("coordinates", [])],
        area_sq_meters=float(doc.get("area_sq_meters") or 0.0),
        created_at=doc.get("created_at", datetime.now(tz=timezone.utc)),
    )


async def _usernames(db, user_ids: set[str]) -> dict[str, str]:
    oids = [ObjectId(u) for u in user_ids if ObjectId.is_valid(u)]
    if not oids:
        return {}
    cursor = db["users"].find({"_id": {"$in": oids}})
    return {str(doc["_id"]): doc.get("username") async for doc in cursor}


async def _list(db, query: dict, limit: int = 0) -> TerritoryListResponse:
    cursor = db["territories"].find(query).sort("created_at", -1)
    if limit:
        cursor = cursor.limit(limit)
    docs = [doc async for doc in cursor]
    names = await _usernames(db, {d["user_id"] for d in docs})

    items = []
    for doc in docs:
        try:
            items.append(_doc_to_territory(doc, names))
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Skipping malformed territory doc %s: %s", doc.get("_id"), exc)
    return TerritoryListResponse(territories=items)


# ── Routes ────────────────────────────────────────────────────────────────────

@router.post("", response_model=TerritorySaveResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.territory_submit_rate)
async def save_territory(
    request: Request,
    payload: TerritorySubmitRequest,
    current_user: CurrentUser,
    db=Depends(get_db),
):
    """Store a newly closed loop as the caller's territory."""
    resolver = TerritoryResolver(_require_db(db))
    try:
        result = await resolver.claim(current_user.id, payload.coordinates[0], payload.area_sq_meters)
    except RingValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return _to_response(result)


@router.put("/{territory_id}", response_model=TerritorySaveResponse)
@limiter.limit(settings.territory_submit_rate)
async def update_territory(
    request: Request,
    territory_id: str,
    payload: TerritorySubmitRequest,
    current_user: CurrentUser,
    db=Depends(get_db),
):
    """Overwrite one of the caller's territories (expand / edit a loop)."""
    resolver = TerritoryResolver(_require_db(db))
    try:
        result = await resolver.update(
            current_user.id, territory_id, payload.coordinates[0], payload.area_sq_meters
        )
    except RingValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except TerritoryNotFoundError:
        raise HTTPException(status_code=404, detail="Territory not found or not owned by user")
    return _to_response(result)


@router.get("/mine", response_model=TerritoryListResponse)
async def my_territories(current_user: CurrentUser, db=Depends(get_db)):
    """The caller's territories, newest first."""
    return await _list(_require_db(db), {"user_id": current_user.id})


@router.get("", response_model=TerritoryListResponse)
async def all_territories(
    limit: int = Query(default=500, ge=1, le=5000),
    db=Depends(get_db),
):
    """Every territory for the shared map view. No auth required."""
    return await _list(_require_db(db), {}, limit=limit)
