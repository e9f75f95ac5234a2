"""
Health check endpoint.

Used by:
  - Container / orchestrator liveness probes
  - The mobile app, before it flushes buffered walk sessions

Reports the DB ping separately so a caller can tell "API down" from
"API up, MongoDB unreachable" (territory and leaderboard routes answer 503
in the latter case).
"""

import logging

from fastapi import APIRouter
from pydantic import BaseModel
from pymongo.errors import PyMongoError

from app.core import database as db_module
from app.core.config import settings

logger = logging.getLogger(__name__)
router = APIRouter()

API_VERSION = "0.3.0"


class HealthResponse(BaseModel):
    status: str  # "ok" whenever the process answers
    version: str
    database: str  # "connected" | "disconnected"
    environment: str


@router.get("", response_model=HealthResponse, summary="API health check")
async def health_check() -> HealthResponse:
    db_status = "disconnected"
    client = db_module.db_client.client
    if client is not None:
        try:
            await client.admin.command("ping")
            db_status = "connected"
        except PyMongoError as exc:
            logger.warning("DB ping failed: %s", exc)

    return HealthResponse(
        status="ok",
        version=API_VERSION,
        database=db_status,
        environment=settings.environment,
    )
