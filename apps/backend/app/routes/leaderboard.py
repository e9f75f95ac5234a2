"""
leaderboard.py — XP leaderboards over time windows.

Routes:
  GET /api/v1/leaderboard          — any window (defaults to this week so far)
  GET /api/v1/leaderboard/today    — since local midnight
  GET /api/v1/leaderboard/weekly   — since Monday 00:00 local
  GET /api/v1/leaderboard/me       — caller's XP today / this week (auth)

XP is never stored per user: every board is summed from `xp_events` over
the window, so a takeover_loss lowers the loser's score in any window that
contains it. "Local" means settings.leaderboard_timezone.

Every active player appears on a board, with 0 XP if they earned nothing.
Ordering: XP desc, then username asc; rank is the 1-based position.
"""

import logging
from datetime import datetime
from typing import Annotated, Optional
from zoneinfo import ZoneInfo

from fastapi import APIRouter, Depends, HTTPException, Query

from app.core.config import settings
from app.core.database import get_db
from app.models.leaderboard import LeaderboardResponse, MyXpResponse
from app.routes.auth import CurrentUser
from app.services.xp_ledger import (
    XpLedger,
    aggregate_xp,
    aggregate_xp_by_user,
    local_now,
    rank_leaderboard,
    start_of_today,
    start_of_week,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/leaderboard", tags=["leaderboard"])

LimitParam = Annotated[Optional[int], Query(ge=1, description="Max rows; capped at LEADERBOARD_MAX_LIMIT")]


def _require_db(db):
    if db is None:
        raise HTTPException(status_code=503, detail="Database unavailable")
    return db


def _localize(dt: Optional[datetime]) -> Optional[datetime]:
    # Naive query params are read as local time
    if dt is None or dt.tzinfo is not None:
        return dt
    return dt.replace(tzinfo=ZoneInfo(settings.leaderboard_timezone))


def _effective_limit(limit: Optional[int]) -> int:
    return min(limit or settings.leaderboard_default_limit, settings.leaderboard_max_limit)


async def _board(db, window_start: datetime, window_end: datetime, limit: Optional[int]) -> LeaderboardResponse:
    if window_start > window_end:
        raise HTTPException(status_code=400, detail="window_start must not be after window_end")

    events = await XpLedger(db).events_between(window_start, window_end)
    totals = aggregate_xp_by_user(events, window_start, window_end)

    rows = [
        (str(doc["_id"]), doc.get("username") or "player", totals.get(str(doc["_id"]), 0))
        async for doc in db["users"].find({"is_active": True})
    ]
    logger.debug(
        "Leaderboard %s..%s: %d players, %d events",
        window_start.isoformat(), window_end.isoformat(), len(rows), len(events),
    )
    return LeaderboardResponse(
        window_start=window_start,
        window_end=window_end,
        leaderboard=rank_leaderboard(rows, limit=_effective_limit(limit)),
    )


@router.get("", response_model=LeaderboardResponse)
async def leaderboard(
    window_start: Optional[datetime] = Query(default=None),
    window_end: Optional[datetime] = Query(default=None),
    limit: LimitParam = None,
    db=Depends(get_db),
):
    now = local_now(settings.leaderboard_timezone)
    return await _board(
        _require_db(db),
        _localize(window_start) or start_of_week(now),
        _localize(window_end) or now,
        limit,
    )


@router.get("/today", response_model=LeaderboardResponse)
async def leaderboard_today(limit: LimitParam = None, db=Depends(get_db)):
    now = local_now(settings.leaderboard_timezone)
    return await _board(_require_db(db), start_of_today(now), now, limit)


@router.get("/weekly", response_model=LeaderboardResponse)
async def leaderboard_weekly(limit: LimitParam = None, db=Depends(get_db)):
    now = local_now(settings.leaderboard_timezone)
    return await _board(_require_db(db), start_of_week(now), now, limit)


@router.get("/me", response_model=MyXpResponse)
async def my_xp(current_user: CurrentUser, db=Depends(get_db)):
    """The caller's own XP today and this week."""
    now = local_now(settings.leaderboard_timezone)
    week_start = start_of_week(now)
    events = await XpLedger(_require_db(db)).events_between(week_start, now, user_id=current_user.id)
    return MyXpResponse(
        xp_today=aggregate_xp(events, start_of_today(now), now),
        xp_this_week=aggregate_xp(events, week_start, now),
    )
