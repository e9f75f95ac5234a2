#!/usr/bin/env python3
"""
replay_track.py — Replay a recorded GPS trail through the walk tracker.

Handy for tuning the loop-detection thresholds against real walks without
going outside. The trail is a JSON list of fixes:

    [{"latitude": 51.5, "longitude": -0.12, "timestamp_ms": 1700000000000,
      "accuracy_m": 5.0}, ...]

Usage (from apps/backend/):
    python scripts/replay_track.py trail.json
    python scripts/replay_track.py trail.json --no-mask --store /tmp/sessions.json
    python scripts/replay_track.py trail.json --min-area 400 --radius 20

Detector thresholds default to the LOOP_* settings (env / .env).
Prints one line per closed loop and a session summary at the end.
"""

import argparse
import asyncio
import json
import logging
import sys
import tempfile
from dataclasses import replace
from pathlib import Path

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

from dotenv import load_dotenv

load_dotenv(ROOT / ".env")

from pydantic import TypeAdapter, ValidationError  # noqa: E402

from app.models.session import GpsPoint  # noqa: E402
from app.services.loop_detector import DetectorConfig  # noqa: E402
from app.services.session_store import SessionStore, to_backend_payload  # noqa: E402
from app.services.walk_tracker import PlayerStats, WalkTracker  # noqa: E402

_TRAIL = TypeAdapter(list[GpsPoint])


async def _fixes(points: list[GpsPoint]):
    for point in points:
        yield point


def _load_trail(path: Path) -> list[GpsPoint]:
    try:
        return _TRAIL.validate_json(path.read_bytes())
    except ValidationError as exc:
        print(f"ERROR: {path} is not a valid trail: {exc.error_count()} bad entries")
        print(exc)
        sys.exit(1)


async def replay(args: argparse.Namespace) -> None:
    points = _load_trail(Path(args.trail))
    print(f"Loaded {len(points)} fixes from {args.trail}")

    config = DetectorConfig.from_settings()
    if args.min_area is not None:
        config = replace(config, min_area_sq_meters=args.min_area)
    if args.radius is not None:
        config = replace(config, closure_radius_meters=args.radius)

    store_path = Path(args.store) if args.store else Path(tempfile.mkdtemp()) / "rawPaths_v1.json"
    stats = PlayerStats()
    tracker = WalkTracker(
        SessionStore(store_path),
        config=config,
        stats=stats,
        mask_location=not args.no_mask,
        on_loop=lambda loop: print(
            f"  loop {loop.id}: {loop.area_sq_meters:,.0f} m² "
            f"({len(loop.ring_coordinates)} vertices)"
        ),
    )

    print("\nReplaying…")
    await tracker.run(_fixes(points))

    sessions = SessionStore(store_path).get_all_sessions()
    print(f"\nSession store: {store_path}")
    print(f"Loops closed: {stats.loops_closed}")
    print(f"Total area:   {stats.total_area_sq_meters:,.0f} m²")
    print(f"Total XP:     {stats.total_xp}")
    if args.payload:
        payload = [p.model_dump(mode="json") for p in to_backend_payload(sessions)]
        print(json.dumps(payload, indent=2))


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Replay a GPS trail through the loop detector")
    parser.add_argument("trail", help="JSON file with a list of GPS fixes")
    parser.add_argument("--store", help="Session store file (default: a temp file)")
    parser.add_argument("--no-mask", action="store_true", help="Store raw coordinates")
    parser.add_argument("--min-area", type=float, help="Override minimum loop area (m²)")
    parser.add_argument("--radius", type=float, help="Override closure radius (m)")
    parser.add_argument("--payload", action="store_true", help="Print the backend sync payload")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )
    asyncio.run(replay(args))
