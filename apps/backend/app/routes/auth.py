"""
auth.py — Bearer-token identity for the territory API.

Routes:
  GET  /auth/me  — return the current player (requires valid JWT)

Accounts, registration and login are handled by the account service; this
module only verifies the HS256 token it issued and loads the player from
the `users` collection. Other routes depend on CurrentUser.

All errors use HTTPException so FastAPI serialises them as:
  { "detail": "..." }
"""

from typing import Annotated

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.database import get_db
from app.core.security import decode_access_token
from app.models.user import UserOut, UserProfile

router = APIRouter(prefix="/auth", tags=["auth"])

# Reusable bearer extractor (does NOT auto-raise on missing token)
_bearer = HTTPBearer(auto_error=False)
CredDep = Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer)]


def _doc_to_user_out(doc: dict) -> UserOut:
    """Convert a raw MongoDB document to a UserOut Pydantic model."""
    return UserOut(id=str(doc["_id"]), username=doc.get("username") or "player")


async def _get_current_user(credentials: CredDep, db=Depends(get_db)) -> UserOut:
    """
    FastAPI dependency — extracts and validates the Bearer token,
    then fetches the user from MongoDB.

    Raises 401 if the token is missing, invalid, or the user no longer exists.
    """
    cred_error = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or expired token",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if not credentials:
        raise cred_error

    user_id = decode_access_token(credentials.credentials)
    if not user_id:
        raise cred_error

    if db is None:
        raise HTTPException(status_code=503, detail="Database unavailable")

    try:
        oid = ObjectId(user_id)
    except InvalidId:
        raise cred_error

    doc = await db["users"].find_one({"_id": oid, "is_active": True})
    if not doc:
        raise cred_error

    return _doc_to_user_out(doc)


# Re-export so other routes can depend on it
CurrentUser = Annotated[UserOut, Depends(_get_current_user)]


@router.get("/me", response_model=UserProfile)
async def me(current_user: CurrentUser, db=Depends(get_db)):
    """Return the current player with their territory count."""
    stats = await db["user_stats"].find_one({"user_id": current_user.id}) or {}
    return UserProfile(
        **current_user.model_dump(),
        territories_owned=int(stats.get("territories_owned", 0)),
    )
