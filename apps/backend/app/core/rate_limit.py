"""
rate_limit.py — Global rate limiter instance.

Uses slowapi (a Starlette-compatible wrapper around the `limits` library).
Requests are keyed by client IP address.

Usage in routes:
    from fastapi import Request
    from app.core.rate_limit import limiter

    @router.post("/api/v1/territories")
    @limiter.limit(settings.territory_submit_rate)
    async def save_territory(request: Request, payload: TerritorySubmitRequest):
        ...

Wired into the app in main.py (app.state.limiter + RateLimitExceeded handler).
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

# Key requests by client IP.
# Authenticated endpoints could switch to a user-ID key function later.
limiter = Limiter(key_func=get_remote_address)
