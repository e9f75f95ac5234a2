"""
xp_ledger.py — Area → XP conversion, XP event log and leaderboard maths.

The formula follows the server's territory route, which is the
authoritative award. The mobile client previews XP at a different rate
(10 000 per square mile), so on-device totals are only an estimate:

    xp = round(area_m² / 2 589 988.110336 × XP_PER_SQ_MILE), minimum 1

Everything above the XpLedger class is pure and total: it never raises,
malformed areas just score 0.

Event types written to `xp_events`:
  claim          new territory (area not taken from a friend)
  expand         growth of an existing territory (same exclusion)
  takeover_gain  area captured from a friend (claimant, positive)
  takeover_loss  area lost to a friend (previous owner, negative)

USAGE
─────
    from app.services.xp_ledger import area_to_xp, start_of_week
    area_to_xp(2_589_988.110336)   # → 1000
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Iterable, Mapping, Optional, Sequence
from zoneinfo import ZoneInfo

from app.models.leaderboard import LeaderboardEntry
from app.models.session import WalkSession

logger = logging.getLogger(__name__)

SQ_METERS_PER_SQ_MILE = 2_589_988.110336
XP_PER_SQ_MILE = 1000

EVENT_CLAIM = "claim"
EVENT_EXPAND = "expand"
EVENT_TAKEOVER_GAIN = "takeover_gain"
EVENT_TAKEOVER_LOSS = "takeover_loss"


# ── Pure scoring ──────────────────────────────────────────────────────────────

def area_to_xp(area_sq_meters) -> int:
    """XP for an area in m². Any strictly positive area earns at least 1."""
    try:
        area = float(area_sq_meters)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(area) or area <= 0:
        return 0

    xp = round(area / SQ_METERS_PER_SQ_MILE * XP_PER_SQ_MILE)
    return xp if xp > 0 else 1


def signed_xp(delta_area_sq_meters: float) -> int:
    """XP delta for a signed area change (losses score negative)."""
    xp = area_to_xp(abs(delta_area_sq_meters)) if math.isfinite(delta_area_sq_meters) else 0
    return xp if delta_area_sq_meters >= 0 else -xp


def _as_utc(dt: datetime) -> datetime:
    # pymongo hands back naive UTC datetimes unless the client is tz_aware
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


def _in_window(created_at: datetime, start: datetime, end: datetime) -> bool:
    return _as_utc(start) <= _as_utc(created_at) <= _as_utc(end)


def aggregate_xp(events: Iterable[Mapping], window_start: datetime, window_end: datetime) -> int:
    """Sum of delta_xp for events with created_at in [window_start, window_end]."""
    return sum(
        int(e.get("delta_xp") or 0)
        for e in events
        if e.get("created_at") is not None and _in_window(e["created_at"], window_start, window_end)
    )


def aggregate_xp_by_user(
    events: Iterable[Mapping], window_start: datetime, window_end: datetime
) -> dict[str, int]:
    """Per-user totals over the window."""
    totals: dict[str, int] = defaultdict(int)
    for e in events:
        created_at = e.get("created_at")
        if created_at is None or not _in_window(created_at, window_start, window_end):
            continue
        totals[str(e["user_id"])] += int(e.get("delta_xp") or 0)
    return dict(totals)


def rank_leaderboard(rows: Iterable[tuple[str, str, int]], limit: Optional[int] = None) -> list[LeaderboardEntry]:
    """
    Rank (user_id, username, xp) rows: XP desc, then username asc.

    The rank is the 1-based position after sorting; ties get distinct ranks.
    """
    ordered = sorted(rows, key=lambda r: (-r[2], r[1]))
    if limit is not None:
        ordered = ordered[:limit]
    return [
        LeaderboardEntry(rank=i + 1, user_id=user_id, username=username, xp=xp)
        for i, (user_id, username, xp) in enumerate(ordered)
    ]


# ── Windows ───────────────────────────────────────────────────────────────────

def local_now(tz_name: str = "UTC") -> datetime:
    return datetime.now(tz=ZoneInfo(tz_name))


def start_of_today(now: datetime) -> datetime:
    """Local midnight of *now*'s calendar day (keeps *now*'s tzinfo)."""
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_week(now: datetime) -> datetime:
    """Monday 00:00 of *now*'s week."""
    sunday_based = now.isoweekday() % 7          # Sun=0 … Sat=6
    days_since_monday = (sunday_based + 6) % 7
    return start_of_today(now) - timedelta(days=days_since_monday)


def xp_totals_from_sessions(sessions: Sequence[WalkSession], now: datetime) -> tuple[int, int]:
    """
    (xp_today, xp_this_week) over loops recorded in local sessions.

    Loops closed in the future relative to *now* are ignored.
    """
    now_ms = int(now.timestamp() * 1000)
    today_ms = int(start_of_today(now).timestamp() * 1000)
    week_ms = int(start_of_week(now).timestamp() * 1000)

    xp_today = 0
    xp_week = 0
    for session in sessions:
        for loop in session.loops:
            t = loop.closed_at_ms
            if t < week_ms or t > now_ms:
                continue
            xp = area_to_xp(loop.area_sq_meters)
            xp_week += xp
            if t >= today_ms:
                xp_today += xp
    return xp_today, xp_week


# ── Store-backed ledger ───────────────────────────────────────────────────────

class XpLedger:
    """Append-only access to the `xp_events` collection."""

    def __init__(self, db):
        self.db = db

    async def log_event(
        self,
        user_id: str,
        event_type: str,
        delta_area_sq_meters: float,
        territory_id: Optional[str] = None,
    ) -> int:
        """
        Append one XpEvent whose sign follows the area delta.

        Zero-area deltas are not written. Returns the XP delta logged.
        """
        if not delta_area_sq_meters:
            return 0
        delta_xp = signed_xp(delta_area_sq_meters)
        await self.db["xp_events"].insert_one(
            {
                "user_id": user_id,
                "territory_id": territory_id,
                "event_type": event_type,
                "delta_area_sq_meters": float(delta_area_sq_meters),
                "delta_xp": delta_xp,
                "created_at": datetime.now(tz=timezone.utc),
            }
        )
        logger.debug("XP %s for %s: %+d", event_type, user_id, delta_xp)
        return delta_xp

    async def events_between(self, start: datetime, end: datetime, user_id: Optional[str] = None) -> list[dict]:
        query: dict = {"created_at": {"$gte": start, "$lte": end}}
        if user_id is not None:
            query["user_id"] = user_id
        return [doc async for doc in self.db["xp_events"].find(query)]
