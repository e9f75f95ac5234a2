"""
user.py — Pydantic schemas for the authenticated player.

Accounts are owned by the account service; this API only reads
`users` ({_id, username, is_active}) and its own `user_stats` counters.
"""

from pydantic import BaseModel


class UserOut(BaseModel):
    """Safe user representation — no secrets."""

    id: str
    username: str


class UserProfile(UserOut):
    """Response body of GET /auth/me."""

    territories_owned: int = 0
