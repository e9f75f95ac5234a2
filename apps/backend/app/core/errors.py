"""
errors.py — Domain exceptions for the territory engine.

Routes translate these into HTTPException; services raise them.

  TerritoryError            base class
  ├── RingValidationError   malformed / insufficient ring input      → 400
  ├── GeometryError         geometry engine could not compute a result
  ├── ConflictSkipped       neighbor write failed; adjustment skipped
  ├── TerritoryNotFoundError  missing territory or not owned by caller → 404
  └── TrackingStoppedError  point pushed into a stopped detector

GeometryError and ConflictSkipped never reach the client: the resolver turns
them into a Skipped outcome for the affected neighbor.
"""


class TerritoryError(Exception):
    """Base class for all territory-engine errors."""


class RingValidationError(TerritoryError):
    """Ring is too short, not closed, non-finite or self-intersecting."""


class GeometryError(TerritoryError):
    """Intersection / difference could not be computed for a geometry."""


class ConflictSkipped(TerritoryError):
    """A neighbor adjustment could not be written to the store."""

    def __init__(self, territory_id: str, reason: str):
        super().__init__(f"adjustment of territory {territory_id} skipped: {reason}")
        self.territory_id = territory_id
        self.reason = reason


class TerritoryNotFoundError(TerritoryError):
    """Territory does not exist or belongs to someone else."""

    def __init__(self, territory_id: str):
        super().__init__(f"territory {territory_id} not found or not owned by user")
        self.territory_id = territory_id


class TrackingStoppedError(TerritoryError):
    """The loop detector has already been stopped."""
