"""
leaderboard.py — Pydantic schemas for XP leaderboards.

Ranks are not stored: they are the 1-based position after sorting by
XP (desc) then username (asc).
"""

from datetime import datetime

from pydantic import BaseModel


class LeaderboardEntry(BaseModel):
    rank: int
    user_id: str
    username: str
    xp: int


class LeaderboardResponse(BaseModel):
    success: bool = True
    window_start: datetime
    window_end: datetime
    leaderboard: list[LeaderboardEntry]


class MyXpResponse(BaseModel):
    """Current user's "XP today / this week" card."""

    success: bool = True
    xp_today: int
    xp_this_week: int
