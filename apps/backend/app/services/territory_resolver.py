"""
territory_resolver.py — Persists claims and carves them out of friends' territories.

HOW A SUBMISSION FLOWS
──────────────────────
1. Persist    insert (or overwrite, on update) the claimant's territory and
              bump their territories_owned counter.
2. Scan       find territories of accepted friends whose geometry intersects
              the new one ($geoIntersects on the 2dsphere index, then a planar
              re-check so edge-touching neighbors are ignored).
3. Adjust     for each neighbor T:  D = T − new
                D empty     → delete T, owner's territories_owned −1 (floor 0)
                otherwise   → T.geometry = D, area = area(D), coordinates =
                              outer rings of D
4. Report     every neighbor yields Adjusted | Deleted | Skipped(reason).
              Geometry failures and store write failures skip that neighbor
              only; step 1 has already committed and always stands.

XP accounting (no double counting):
  claimant  +takeover_gain for each captured area,
            +claim / +expand for the remaining, non-captured area
  neighbor  −takeover_loss for the captured area (XP_TAKEOVER_LOSS setting)

CONCURRENCY
───────────
No cross-step transaction and no row locking: each insert / update / delete
is individually atomic, neighbor adjustments are read-modify-write. A
neighbor editing their own territory at the same moment can race us; the
last writer wins.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Sequence, Union

from bson import ObjectId
from bson.errors import InvalidId
from pymongo.errors import PyMongoError

from app.core.config import settings
from app.core.errors import ConflictSkipped, GeometryError, TerritoryNotFoundError
from app.models.territory import LatLng
from app.services.territory_geometry import (
    TerritoryGeometry,
    geometry_area_sq_meters,
    geometry_to_geojson,
    outer_rings,
    overlap_area_sq_meters,
    overlaps,
    parse_geometry,
    ring_to_polygon,
    subtract,
)
from app.services.xp_ledger import (
    EVENT_CLAIM,
    EVENT_EXPAND,
    EVENT_TAKEOVER_GAIN,
    EVENT_TAKEOVER_LOSS,
    XpLedger,
)

logger = logging.getLogger(__name__)


# ── Per-neighbor outcomes ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class Adjusted:
    territory_id: str
    owner_id: str
    captured_sq_meters: float
    remaining_sq_meters: float


@dataclass(frozen=True)
class Deleted:
    territory_id: str
    owner_id: str
    captured_sq_meters: float


@dataclass(frozen=True)
class Skipped:
    territory_id: str
    owner_id: str
    reason: str
    captured_sq_meters: float = 0.0


NeighborOutcome = Union[Adjusted, Deleted, Skipped]


@dataclass
class ResolutionReport:
    """Batch outcome of one overlap pass."""

    outcomes: list[NeighborOutcome] = field(default_factory=list)

    @property
    def captured_sq_meters(self) -> float:
        return sum(o.captured_sq_meters for o in self.outcomes)

    @property
    def adjusted(self) -> list[Adjusted]:
        return [o for o in self.outcomes if isinstance(o, Adjusted)]

    @property
    def deleted(self) -> list[Deleted]:
        return [o for o in self.outcomes if isinstance(o, Deleted)]

    @property
    def skipped(self) -> list[Skipped]:
        return [o for o in self.outcomes if isinstance(o, Skipped)]


@dataclass(frozen=True)
class ClaimResult:
    territory_id: str
    created_at: datetime
    xp_awarded: int
    report: ResolutionReport


def _to_object_id(territory_id: str) -> ObjectId:
    try:
        return ObjectId(territory_id)
    except (InvalidId, TypeError):
        raise TerritoryNotFoundError(territory_id)


# ── Resolver ──────────────────────────────────────────────────────────────────

class TerritoryResolver:
    """Runs steps 1–4 against the Motor database handle."""

    def __init__(self, db, emit_loss_events: Optional[bool] = None):
        self.db = db
        self.ledger = XpLedger(db)
        self.emit_loss_events = (
            settings.xp_takeover_loss if emit_loss_events is None else emit_loss_events
        )

    # ── Public operations ─────────────────────────────────────────────────────

    async def claim(self, owner_id: str, ring: Sequence[LatLng], area_sq_meters: float) -> ClaimResult:
        """Persist a new territory, then resolve overlaps with friends."""
        polygon = ring_to_polygon(ring)
        now = datetime.now(tz=timezone.utc)

        result = await self.db["territories"].insert_one(
            {
                "user_id": owner_id,
                "geometry": geometry_to_geojson(polygon),
                "coordinates": [[p.model_dump() for p in ring]],
                "area_sq_meters": float(area_sq_meters),
                "created_at": now,
            }
        )
        territory_id = str(result.inserted_id)
        await self.db["user_stats"].update_one(
            {"user_id": owner_id},
            {"$inc": {"territories_owned": 1}},
            upsert=True,
        )
        logger.info("Territory %s claimed by %s (%.0f m²)", territory_id, owner_id, area_sq_meters)

        report = await self.resolve_overlaps(owner_id, territory_id, polygon)
        xp = await self._log_takeovers(owner_id, territory_id, report)
        unclaimed = max(0.0, float(area_sq_meters) - report.captured_sq_meters)
        xp += await self._safe_log(owner_id, EVENT_CLAIM, unclaimed, territory_id)

        return ClaimResult(territory_id=territory_id, created_at=now, xp_awarded=xp, report=report)

    async def update(
        self,
        owner_id: str,
        territory_id: str,
        ring: Sequence[LatLng],
        area_sq_meters: float,
    ) -> ClaimResult:
        """
        Overwrite the caller's own territory in place, then resolve overlaps.

        Raises TerritoryNotFoundError (nothing written) when the territory is
        missing or owned by someone else.
        """
        polygon = ring_to_polygon(ring)
        oid = _to_object_id(territory_id)

        existing = await self.db["territories"].find_one({"_id": oid, "user_id": owner_id})
        if not existing:
            raise TerritoryNotFoundError(territory_id)

        old_area = float(existing.get("area_sq_meters") or 0.0)
        now = datetime.now(tz=timezone.utc)
        result = await self.db["territories"].update_one(
            {"_id": oid, "user_id": owner_id},
            {
                "$set": {
                    "geometry": geometry_to_geojson(polygon),
                    "coordinates": [[p.model_dump() for p in ring]],
                    "area_sq_meters": float(area_sq_meters),
                    "updated_at": now,
                }
            },
        )
        if result.matched_count == 0:
            # Deleted by a friend's claim between our read and write.
            raise TerritoryNotFoundError(territory_id)
        logger.info("Territory %s updated by %s (%.0f → %.0f m²)", territory_id, owner_id, old_area, area_sq_meters)

        report = await self.resolve_overlaps(owner_id, territory_id, polygon)
        xp = await self._log_takeovers(owner_id, territory_id, report)
        growth = max(0.0, (float(area_sq_meters) - old_area) - report.captured_sq_meters)
        xp += await self._safe_log(owner_id, EVENT_EXPAND, growth, territory_id)

        return ClaimResult(
            territory_id=territory_id,
            created_at=existing.get("created_at", now),
            xp_awarded=xp,
            report=report,
        )

    async def friend_ids(self, user_id: str) -> list[str]:
        """Ids of users in an accepted friendship with *user_id*."""
        cursor = self.db["friendships"].find(
            {
                "$or": [{"user_id_1": user_id}, {"user_id_2": user_id}],
                "status": "accepted",
            }
        )
        ids = []
        async for doc in cursor:
            other = doc["user_id_2"] if doc["user_id_1"] == user_id else doc["user_id_1"]
            if other != user_id:
                ids.append(other)
        return ids

    async def resolve_overlaps(
        self, owner_id: str, territory_id: str, claim: TerritoryGeometry
    ) -> ResolutionReport:
        """Steps 2–4. Never raises: scan failures and per-neighbor failures only shrink the report."""
        report = ResolutionReport()

        try:
            friends = await self.friend_ids(owner_id)
            if not friends:
                logger.debug("No friends for %s; skipping overlap scan", owner_id)
                return report

            cursor = self.db["territories"].find(
                {
                    "user_id": {"$in": friends},
                    "geometry": {"$geoIntersects": {"$geometry": geometry_to_geojson(claim)}},
                }
            )
            neighbors = [doc async for doc in cursor]
        except PyMongoError as exc:
            # The claim itself is already stored; friends keep their area this round.
            logger.warning("Overlap scan for %s failed, no neighbors adjusted: %s", territory_id, exc)
            return report
        if not neighbors:
            logger.debug("No overlapping friend territories for %s", territory_id)
            return report

        for doc in neighbors:
            outcome = await self._adjust_neighbor(doc, claim)
            if outcome is not None:
                report.outcomes.append(outcome)

        for skipped in report.skipped:
            logger.warning(
                "Overlap adjustment skipped for territory %s (owner %s): %s",
                skipped.territory_id, skipped.owner_id, skipped.reason,
            )
        logger.info(
            "Overlap pass for %s: %d adjusted, %d deleted, %d skipped, %.0f m² captured",
            territory_id, len(report.adjusted), len(report.deleted),
            len(report.skipped), report.captured_sq_meters,
        )
        return report

    # ── Internals ─────────────────────────────────────────────────────────────

    async def _adjust_neighbor(self, doc: dict, claim: TerritoryGeometry) -> Optional[NeighborOutcome]:
        neighbor_id = str(doc["_id"])
        owner_id = doc["user_id"]

        try:
            neighbor = parse_geometry(doc["geometry"])
            if not overlaps(neighbor, claim):
                return None
            captured = overlap_area_sq_meters(neighbor, claim)
            remainder = subtract(neighbor, claim)
        except (GeometryError, KeyError) as exc:
            return Skipped(neighbor_id, owner_id, f"geometry: {exc}")

        try:
            if remainder is None:
                await self._delete_neighbor(doc["_id"], neighbor_id, owner_id)
                return Deleted(neighbor_id, owner_id, captured)

            remaining_area = geometry_area_sq_meters(remainder)
            await self._shrink_neighbor(doc["_id"], neighbor_id, remainder, remaining_area)
            return Adjusted(neighbor_id, owner_id, captured, remaining_area)
        except ConflictSkipped as exc:
            return Skipped(neighbor_id, owner_id, f"store: {exc.reason}")

    async def _delete_neighbor(self, oid, neighbor_id: str, owner_id: str) -> None:
        try:
            await self.db["territories"].delete_one({"_id": oid})
            await self.db["user_stats"].update_one(
                {"user_id": owner_id, "territories_owned": {"$gt": 0}},
                {"$inc": {"territories_owned": -1}},
            )
        except PyMongoError as exc:
            raise ConflictSkipped(neighbor_id, str(exc)) from exc
        logger.info("Friend territory %s fully captured; deleted", neighbor_id)

    async def _shrink_neighbor(self, oid, neighbor_id: str, remainder: TerritoryGeometry, area: float) -> None:
        rings = [[p.model_dump() for p in ring] for ring in outer_rings(remainder)]
        try:
            await self.db["territories"].update_one(
                {"_id": oid},
                {
                    "$set": {
                        "geometry": geometry_to_geojson(remainder),
                        "coordinates": rings,
                        "area_sq_meters": area,
                    }
                },
            )
        except PyMongoError as exc:
            raise ConflictSkipped(neighbor_id, str(exc)) from exc
        logger.info("Friend territory %s reduced to %.0f m²", neighbor_id, area)

    async def _log_takeovers(self, owner_id: str, territory_id: str, report: ResolutionReport) -> int:
        """Gain for the claimant, loss for each neighbor. Returns claimant XP."""
        gained = 0
        for outcome in report.outcomes:
            if isinstance(outcome, Skipped) or outcome.captured_sq_meters <= 0:
                continue
            gained += await self._safe_log(owner_id, EVENT_TAKEOVER_GAIN, outcome.captured_sq_meters, territory_id)
            if self.emit_loss_events:
                await self._safe_log(
                    outcome.owner_id, EVENT_TAKEOVER_LOSS, -outcome.captured_sq_meters, outcome.territory_id
                )
        return gained

    async def _safe_log(self, user_id: str, event_type: str, delta_area: float, territory_id: str) -> int:
        # XP is a secondary effect of a committed claim; a ledger outage must not fail it.
        try:
            return await self.ledger.log_event(user_id, event_type, delta_area, territory_id)
        except PyMongoError as exc:
            logger.error("Failed to log %s XP for %s: %s", event_type, user_id, exc)
            return 0
