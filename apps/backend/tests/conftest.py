"""
pytest configuration and shared fixtures for the LoopClaim API tests.

Key concern: tests must not require a live MongoDB.
We achieve this by:
  1. Patching connect_to_mongo / close_mongo_connection to no-ops so
     FastAPI's lifespan doesn't try to reach a real database.
  2. Setting db_client.client = None (disconnected) so health check
     correctly reports "disconnected" — a valid test-mode state.
  3. Swapping get_db for an in-memory FakeDB in the API fixtures below.

The FakeDB implements only the subset of the Motor API the territory,
leaderboard and auth routes use (including a shapely-backed $geoIntersects).
"""

import copy
import os
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from bson import ObjectId
from httpx import ASGITransport, AsyncClient
from pymongo.errors import OperationFailure
from shapely.geometry import shape

# Set env vars BEFORE importing the app so Settings picks them up correctly
os.environ.setdefault("ENVIRONMENT", "test")


# ── In-memory MongoDB emulator ─────────────────────────────────────────────────

class FakeCursor:
    def __init__(self, docs: list[dict]):
        self._docs = docs

    def sort(self, key: str, direction: int = 1):
        self._docs.sort(key=lambda d: d.get(key), reverse=direction < 0)
        return self

    def limit(self, n: int):
        if n:
            self._docs = self._docs[:n]
        return self

    def __aiter__(self):
        self._it = iter(self._docs)
        return self

    async def __anext__(self):
        try:
            return next(self._it)
        except StopIteration:
            raise StopAsyncIteration


class FakeCollection:
    """Minimal async-compatible replica of a Motor collection."""

    def __init__(self):
        self._docs: dict[str, dict] = {}
        # _ids whose update/delete should fail like a lost write
        self.fail_writes_for: set = set()

    @property
    def docs(self) -> list[dict]:
        return list(self._docs.values())

    def find(self, query: dict | None = None) -> FakeCursor:
        query = query or {}
        return FakeCursor([copy.deepcopy(d) for d in self._docs.values() if self._matches(d, query)])

    async def find_one(self, query: dict):
        for doc in self._docs.values():
            if self._matches(doc, query):
                return copy.deepcopy(doc)
        return None

    async def insert_one(self, doc: dict):
        oid = doc.get("_id") or ObjectId()
        doc = {**copy.deepcopy(doc), "_id": oid}
        self._docs[str(oid)] = doc
        result = MagicMock()
        result.inserted_id = oid
        return result

    async def update_one(self, query: dict, update: dict, upsert: bool = False):
        self._maybe_fail(query)
        result = MagicMock()
        for doc in self._docs.values():
            if self._matches(doc, query):
                self._apply(doc, update)
                result.matched_count = 1
                result.modified_count = 1
                return result

        result.matched_count = 0
        result.modified_count = 0
        if upsert:
            doc = {k: v for k, v in query.items() if not isinstance(v, dict)}
            self._apply(doc, update)
            await self.insert_one(doc)
        return result

    async def delete_one(self, query: dict):
        self._maybe_fail(query)
        result = MagicMock()
        result.deleted_count = 0
        for key, doc in list(self._docs.items()):
            if self._matches(doc, query):
                del self._docs[key]
                result.deleted_count = 1
                break
        return result

    async def count_documents(self, query: dict) -> int:
        return sum(1 for d in self._docs.values() if self._matches(d, query))

    async def create_index(self, *args, **kwargs):
        return "fake_index"

    def _maybe_fail(self, query: dict) -> None:
        if query.get("_id") in self.fail_writes_for:
            raise OperationFailure("simulated write conflict")

    @staticmethod
    def _apply(doc: dict, update: dict) -> None:
        doc.update(copy.deepcopy(update.get("$set", {})))
        for key, inc in update.get("$inc", {}).items():
            doc[key] = doc.get(key, 0) + inc

    @classmethod
    def _matches(cls, doc: dict, query: dict) -> bool:
        for key, value in query.items():
            if key == "$or":
                if not any(cls._matches(doc, sub) for sub in value):
                    return False
            elif isinstance(value, dict) and any(k.startswith("$") for k in value):
                if not cls._match_ops(doc.get(key), value):
                    return False
            elif doc.get(key) != value:
                return False
        return True

    @staticmethod
    def _match_ops(field, ops: dict) -> bool:
        for op, arg in ops.items():
            if op == "$in" and field not in arg:
                return False
            if op == "$gt" and not (field is not None and field > arg):
                return False
            if op == "$gte" and not (field is not None and field >= arg):
                return False
            if op == "$lte" and not (field is not None and field <= arg):
                return False
            if op == "$geoIntersects":
                if field is None or not shape(field).intersects(shape(arg["$geometry"])):
                    return False
        return True


class FakeDB:
    """Fake MongoDB database — lazily creates collections."""

    def __init__(self):
        self._cols: dict[str, FakeCollection] = {}

    def __getitem__(self, name: str) -> FakeCollection:
        if name not in self._cols:
            self._cols[name] = FakeCollection()
        return self._cols[name]


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
async def mock_db():
    """
    Patch the MongoDB lifecycle for every test.

    - connect_to_mongo → no-op AsyncMock (startup doesn't attempt real connection)
    - close_mongo_connection → no-op AsyncMock
    - db_client.client → None  (health check reports "disconnected", which is fine)
    - db_client.db → None
    """
    with (
        patch("app.core.database.connect_to_mongo", new_callable=AsyncMock),
        patch("app.core.database.close_mongo_connection", new_callable=AsyncMock),
    ):
        import app.core.database as db_module

        original_client = db_module.db_client.client
        original_db = db_module.db_client.db

        db_module.db_client.client = None
        db_module.db_client.db = None

        yield

        db_module.db_client.client = original_client
        db_module.db_client.db = original_db


@pytest.fixture(autouse=True)
def reset_rate_limits():
    """The limiter keeps in-memory counters across tests; start each test clean."""
    from app.core.rate_limit import limiter

    limiter.reset()
    yield


@pytest.fixture()
async def client(mock_db):  # noqa: ARG001 — mock_db must run first
    """HTTPX async test client wired to the FastAPI app (no database)."""
    from app.main import app

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture()
def fake_db():
    """Fresh in-memory DB for each test."""
    return FakeDB()


@pytest.fixture()
async def api_client(fake_db):
    """
    HTTPX client with the get_db FastAPI dependency overridden to use
    the in-memory FakeDB instead of a real MongoDB connection.
    """
    from app.core.database import get_db
    from app.main import app

    app.dependency_overrides[get_db] = lambda: fake_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture()
def make_player(fake_db):
    """
    Factory: insert an active user and return (user_id, auth headers).

        alice_id, alice = await make_player("alice")
        await api_client.get("/auth/me", headers=alice)
    """
    from app.core.security import create_access_token

    async def _make(username: str, is_active: bool = True):
        result = await fake_db["users"].insert_one({"username": username, "is_active": is_active})
        user_id = str(result.inserted_id)
        headers = {"Authorization": f"Bearer {create_access_token(user_id)}"}
        return user_id, headers

    return _make


@pytest.fixture()
def befriend(fake_db):
    """Factory: store an accepted friendship between two user ids."""

    async def _befriend(a: str, b: str, status: str = "accepted"):
        await fake_db["friendships"].insert_one({"user_id_1": a, "user_id_2": b, "status": status})

    return _befriend
