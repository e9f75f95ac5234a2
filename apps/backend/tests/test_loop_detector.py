"""
test_loop_detector.py — Closure, validation, chaining and the privacy mask.

Walks are built from metre offsets around a fixed origin so expected areas
are exact (a 120 m square is 14 400 m²).
"""

import random

import pytest

from app.core.errors import TrackingStoppedError
from app.models.session import GpsPoint
from app.models.territory import LatLng
from app.services.geodesy import from_local_xy, haversine_meters, polygon_area_sq_meters
from app.services.loop_detector import (
    DetectorConfig,
    DetectorState,
    LoopDetector,
    PrivacyMask,
    is_simple_ring,
)

ORIGIN = LatLng(latitude=37.7749, longitude=-122.4194)


def walk(xy_points, t0=1_700_000_000_000, step_ms=5_000, accuracy=None):
    return [
        GpsPoint(
            latitude=p.latitude,
            longitude=p.longitude,
            timestamp_ms=t0 + i * step_ms,
            accuracy_m=accuracy,
        )
        for i, p in enumerate(from_local_xy(xy, ORIGIN) for xy in xy_points)
    ]


def feed(detector, points):
    return [loop for loop in (detector.push(p) for p in points) if loop is not None]


SQUARE = [(0, 0), (120, 0), (120, 120), (0, 120), (0, 0)]
# Crosses itself at (48, 48); lobes differ so the net shoelace area is non-zero.
BOWTIE = [(0, 0), (120, 120), (120, 0), (0, 80), (0, 0)]


class TestClosure:
    def test_square_closes_one_loop(self):
        loops = feed(LoopDetector(), walk(SQUARE))
        assert len(loops) == 1
        assert loops[0].area_sq_meters == pytest.approx(14_400, rel=1e-3)

    def test_ring_is_closed_and_loop_id_numbered(self):
        detector = LoopDetector(loop_id_prefix="sess42")
        (loop,) = feed(detector, walk(SQUARE))
        assert loop.id == "sess42-loop-1"
        assert loop.ring_coordinates[0] == loop.ring_coordinates[-1]
        assert len(loop.ring_coordinates) >= 4

    def test_closing_within_gate_radius_counts(self):
        path = [(0, 0), (120, 0), (120, 120), (0, 120), (8, 5)]
        (loop,) = feed(LoopDetector(), walk(path))
        assert loop.ring_coordinates[0] == loop.ring_coordinates[-1]
        assert loop.area_sq_meters > 13_000

    def test_outside_gate_radius_does_not_close(self):
        path = [(0, 0), (120, 0), (120, 120), (0, 120), (0, 30)]
        assert feed(LoopDetector(), walk(path)) == []

    def test_stopping_15m_short_does_not_close(self):
        path = [(0, 0), (120, 0), (120, -120), (0, -120), (0, -15)]
        assert feed(LoopDetector(DetectorConfig(closure_radius_meters=12)), walk(path)) == []

    def test_closed_at_is_closing_point_time(self):
        points = walk(SQUARE)
        (loop,) = feed(LoopDetector(), points)
        assert loop.closed_at_ms == points[-1].timestamp_ms

    def test_state_transitions(self):
        detector = LoopDetector()
        assert detector.state is DetectorState.IDLE
        points = walk(SQUARE + [(0, 40)])
        for p in points[:2]:
            detector.push(p)
        assert detector.state is DetectorState.TRACKING
        for p in points[2:5]:
            detector.push(p)
        assert detector.state is DetectorState.CLOSED
        detector.push(points[5])
        assert detector.state is DetectorState.TRACKING


class TestValidation:
    @pytest.mark.parametrize("min_area, expected", [(4_001, 0), (3_999, 1)])
    def test_area_threshold(self, min_area, expected):
        rectangle = [(0, 0), (400, 0), (400, 10), (0, 10), (0, 0)]
        detector = LoopDetector(DetectorConfig(min_area_sq_meters=min_area))
        assert len(feed(detector, walk(rectangle))) == expected

    def test_perimeter_threshold(self):
        detector = LoopDetector(DetectorConfig(min_area_sq_meters=100, min_perimeter_meters=500))
        assert feed(detector, walk(SQUARE)) == []

    def test_self_crossing_bowtie_rejected(self):
        assert feed(LoopDetector(DetectorConfig(min_area_sq_meters=1)), walk(BOWTIE)) == []

    def test_is_simple_ring(self):
        square = [from_local_xy(xy, ORIGIN) for xy in SQUARE]
        bowtie = [from_local_xy(xy, ORIGIN) for xy in BOWTIE]
        assert is_simple_ring(square)
        assert not is_simple_ring(bowtie)

    def test_too_few_points_never_close(self):
        detector = LoopDetector(DetectorConfig(min_points_for_loop=6))
        assert feed(detector, walk(SQUARE)) == []

    def test_rejected_candidate_keeps_ring_growing(self):
        # The first return encloses ~60 m²; the walk carries on and closes a big loop.
        path = [(0, 0), (10, 0), (10, 10), (0, 2), (0, 120), (-120, 120), (-120, 0), (-5, 0)]
        loops = feed(LoopDetector(), walk(path))
        assert len(loops) == 1
        assert loops[0].area_sq_meters > 10_000


class TestFiltering:
    def test_jitter_below_min_step_is_dropped(self):
        detector = LoopDetector()
        points = walk([(0, 0), (1, 1), (2, 0)])
        feed(detector, points)
        assert len(detector.open_ring) == 1

    def test_spike_dropped_when_max_step_set(self):
        detector = LoopDetector(DetectorConfig(max_step_meters=200))
        feed(detector, walk([(0, 0), (50, 0), (900, 0), (100, 0)]))
        assert len(detector.open_ring) == 3

    def test_inaccurate_fix_dropped(self):
        detector = LoopDetector(DetectorConfig(max_accuracy_meters=50))
        assert not detector.accepts(walk([(0, 0)], accuracy=80)[0])
        assert detector.accepts(walk([(0, 0)], accuracy=10)[0])


class TestChainingAndStop:
    def test_loops_chain_from_closing_point(self):
        second = [(0, -120), (120, -120), (120, 0), (0, 0)]
        detector = LoopDetector(loop_id_prefix="s1")
        loops = feed(detector, walk(SQUARE + second))
        assert [loop.id for loop in loops] == ["s1-loop-1", "s1-loop-2"]
        assert all(loop.area_sq_meters == pytest.approx(14_400, rel=1e-3) for loop in loops)
        assert loops[1].ring_coordinates[0] == loops[0].ring_coordinates[-1]

    def test_open_ring_restarts_after_closure(self):
        detector = LoopDetector()
        feed(detector, walk(SQUARE))
        assert len(detector.open_ring) == 1

    def test_stop_discards_ring_and_rejects_further_points(self):
        detector = LoopDetector()
        points = walk(SQUARE)
        feed(detector, points[:3])
        detector.stop()
        assert detector.state is DetectorState.STOPPED
        assert detector.open_ring == ()
        with pytest.raises(TrackingStoppedError):
            detector.push(points[3])


class TestPrivacyMask:
    def test_random_offset_within_range(self):
        mask = PrivacyMask.random(ORIGIN, rng=random.Random(7))
        moved = mask.apply(ORIGIN)
        assert 5_900 <= haversine_meters(ORIGIN, moved) <= 10_100

    def test_masked_and_raw_walks_close_same_loops(self):
        mask = PrivacyMask.random(ORIGIN, rng=random.Random(1))
        raw = feed(LoopDetector(), walk(SQUARE))
        masked = feed(LoopDetector(mask=mask), walk(SQUARE))

        assert len(raw) == len(masked) == 1
        assert masked[0].area_sq_meters == raw[0].area_sq_meters
        for r, m in zip(raw[0].ring_coordinates, masked[0].ring_coordinates):
            assert m.latitude == pytest.approx(r.latitude + mask.d_lat)
            assert m.longitude == pytest.approx(r.longitude + mask.d_lon)

    def test_masked_ring_area_close_to_raw(self):
        mask = PrivacyMask.random(ORIGIN, rng=random.Random(3))
        (loop,) = feed(LoopDetector(mask=mask), walk(SQUARE))
        assert polygon_area_sq_meters(loop.ring_coordinates) == pytest.approx(loop.area_sq_meters, rel=1e-2)
