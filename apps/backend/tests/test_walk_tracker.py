"""
test_walk_tracker.py — Stream → detector → session store → player stats.
"""

import random

import pytest

from app.models.session import GpsPoint
from app.models.territory import LatLng
from app.services.geodesy import from_local_xy, haversine_meters
from app.services.loop_detector import DetectorConfig
from app.services.session_store import SessionStore
from app.services.walk_tracker import PlayerStats, WalkTracker

ORIGIN = LatLng(latitude=40.7128, longitude=-74.0060)
SQUARE = [(0, 0), (120, 0), (120, 120), (0, 120), (0, 0)]


def walk(xy_points, t0=1_700_000_000_000):
    return [
        GpsPoint(latitude=p.latitude, longitude=p.longitude, timestamp_ms=t0 + i * 10_000)
        for i, p in enumerate(from_local_xy(xy, ORIGIN) for xy in xy_points)
    ]


async def stream(points):
    for p in points:
        yield p


@pytest.fixture()
def store(tmp_path):
    return SessionStore(tmp_path / "sessions.json")


def tracker_for(store, **kwargs):
    kwargs.setdefault("mask_location", False)
    return WalkTracker(store, config=DetectorConfig(), **kwargs)


class TestRun:
    async def test_run_closes_loop_and_ends_session(self, store):
        stats = PlayerStats()
        tracker = tracker_for(store, stats=stats)
        loops = await tracker.run(stream(walk(SQUARE)))

        assert len(loops) == 1
        assert not tracker.is_tracking
        (session,) = store.get_all_sessions()
        assert session.ended_at_ms is not None
        assert len(session.points) == 5
        assert [loop.id for loop in session.loops] == [f"{session.id}-loop-1"]
        assert stats.loops_closed == 1
        assert stats.total_xp == 6
        assert stats.total_area_sq_meters == pytest.approx(14_400, rel=1e-3)

    async def test_debounced_points_not_stored(self, store):
        points = walk([(0, 0), (1, 0), (50, 0)])
        tracker = tracker_for(store)
        await tracker.run(stream(points))
        (session,) = store.get_all_sessions()
        assert len(session.points) == 2

    async def test_on_loop_callback(self, store):
        seen = []
        tracker = tracker_for(store, on_loop=seen.append)
        await tracker.run(stream(walk(SQUARE)))
        assert len(seen) == 1


class TestMasking:
    async def test_stored_points_and_rings_are_masked(self, store):
        points = walk(SQUARE)
        tracker = tracker_for(store, mask_location=True, rng=random.Random(11))
        loops = await tracker.run(stream(points))

        (session,) = store.get_all_sessions()
        stored = LatLng(latitude=session.points[0].lat, longitude=session.points[0].lng)
        assert haversine_meters(stored, points[0]) > 5_000
        assert loops[0].ring_coordinates[0].latitude == pytest.approx(session.points[0].lat)
        assert loops[0].area_sq_meters == pytest.approx(14_400, rel=1e-3)


class TestStartStop:
    def test_ingest_starts_session_lazily(self, store):
        tracker = tracker_for(store)
        tracker.ingest(walk([(0, 0)])[0])
        assert tracker.is_tracking
        assert store.get_all_sessions()[0].is_active

    def test_start_twice_reuses_session(self, store):
        tracker = tracker_for(store)
        first = tracker.start(1_000)
        assert tracker.start(2_000).id == first.id
        assert len(store.get_all_sessions()) == 1

    def test_stop_without_start(self, store):
        assert tracker_for(store).stop() is None

    def test_stop_discards_open_ring(self, store):
        tracker = tracker_for(store)
        for p in walk(SQUARE[:3]):
            tracker.ingest(p)
        finished = tracker.stop(ended_at_ms=42)
        assert finished.ended_at_ms == 42
        assert finished.loops == []

    def test_zero_timestamps_are_kept(self, store):
        tracker = tracker_for(store)
        assert tracker.start(0).started_at_ms == 0
        assert tracker.stop(ended_at_ms=0).ended_at_ms == 0

    def test_player_stats_reset(self):
        stats = PlayerStats(total_xp=10, loops_closed=2)
        stats.reset()
        assert (stats.total_xp, stats.loops_closed, stats.recent_loops) == (0, 0, [])
