import pytest
import numpy as np
from laser_odometry.config import (
    Criteria, FeatureDefinition, Kernel, ResidualKind, SelectionPolicy, default_feature_definitions,
)
from laser_odometry.features import (
    OCCLUSION_SPAN, FeatureExtractor, ScanOrderError, filtered_scores, prefilter, select_features,
)
from laser_odometry.scores import compute_score, kernel_offset
from laser_odometry.signals import SCAN_POINT_DTYPE, SignalBuffer

MAX_TICKS = 36000


def make_ring(ranges, ticks=None, step=0.01):
    """Ring points on a horizontal arc with the given ranges."""
    ranges = np.asarray(ranges, dtype=float)
    n = len(ranges)
    az = step * np.arange(n)
    pts = np.zeros(n, dtype=SCAN_POINT_DTYPE)
    pts['xyz'] = np.column_stack((ranges * np.cos(az), ranges * np.sin(az), np.zeros(n)))
    pts['intensity'] = 100.0
    pts['tick'] = np.arange(n) * 100 if ticks is None else ticks
    return pts, ranges

def run_prefilter(pts, ranges):
    return prefilter(pts, ranges, MAX_TICKS, occlusion_tol=0.1, occlusion_tol_2=0.1, parallel_tol=0.002)


def test_prefilter_far_side_before_jump():
    pts, ranges = make_ring([5.0] * 20 + [3.0] * 20)
    valid = run_prefilter(pts, ranges)
    assert not valid[19 - OCCLUSION_SPAN:20].any()
    assert valid[:19 - OCCLUSION_SPAN].all()
    assert valid[20:].all()

def test_prefilter_far_side_after_jump():
    pts, ranges = make_ring([3.0] * 20 + [5.0] * 20)
    valid = run_prefilter(pts, ranges)
    assert not valid[20:20 + OCCLUSION_SPAN].any()
    assert valid[:20].all()
    assert valid[20 + OCCLUSION_SPAN:].all()

def test_prefilter_ignores_jump_across_angular_gap():
    ticks = np.arange(40) * 100
    ticks[20:] += int(0.2 * MAX_TICKS)
    pts, ranges = make_ring([5.0] * 20 + [3.0] * 20, ticks=ticks)
    assert run_prefilter(pts, ranges).all()

def test_prefilter_rejects_beam_parallel_surface():
    n = 10
    pts = np.zeros(n, dtype=SCAN_POINT_DTYPE)
    pts['xyz'] = np.column_stack((5.0 + 1.0 * np.arange(n), 0.001 * np.arange(n), np.zeros(n)))
    pts['tick'] = np.arange(n) * 100
    ranges = np.linalg.norm(pts['xyz'], axis=1)
    valid = run_prefilter(pts, ranges)
    assert not valid[1:-1].any()

def test_prefilter_out_of_order_ticks():
    ticks = np.arange(30) * 100
    ticks[10] = 50
    pts, ranges = make_ring([5.0] * 30, ticks=ticks)
    with pytest.raises(ScanOrderError, match="not in order"):
        run_prefilter(pts, ranges)
    assert issubclass(ScanOrderError, ValueError)


def test_filtered_scores_applies_every_criterion():
    ranges = np.full(41, 5.0)
    ranges[20] = 4.0
    valid = np.ones(41, dtype=bool)
    ring_scores = {Kernel.LOAM: compute_score(ranges, Kernel.LOAM, 11),
                   Kernel.RNG_VAR: compute_score(ranges, Kernel.RNG_VAR, 11)}
    edge = FeatureDefinition((Criteria(Kernel.LOAM, SelectionPolicy.HIGH_POS, 5.0),),
                             ResidualKind.POINT_TO_LINE, 4)
    cands = filtered_scores(valid, ring_scores, edge, 11)
    assert [c[0] for c in cands] == [20]
    assert np.isclose(cands[0][1], 10.0)

    # the variance around the spike is not near zero, so nothing survives
    strict = FeatureDefinition((Criteria(Kernel.LOAM, SelectionPolicy.HIGH_POS, 5.0),
                                Criteria(Kernel.RNG_VAR, SelectionPolicy.NEAR_ZERO, 1e-3)),
                               ResidualKind.POINT_TO_LINE, 4)
    assert filtered_scores(valid, ring_scores, strict, 11) == []

    valid[20] = False
    assert filtered_scores(valid, ring_scores, edge, 11) == []

def test_filtered_scores_missing_score():
    valid = np.ones(5, dtype=bool)
    flat = FeatureDefinition((Criteria(Kernel.LOAM, SelectionPolicy.NEAR_ZERO, 0.1),),
                             ResidualKind.POINT_TO_PLANE, 4)
    assert filtered_scores(valid, {Kernel.LOAM: None}, flat, 11) == []


def test_select_features_quota_and_suppression():
    n = 200
    rng = np.random.default_rng(3)
    pts, _ = make_ring(np.full(n, 5.0), ticks=np.arange(n) * (MAX_TICKS // n))
    candidates = [(i, s) for i, s in enumerate(rng.random(n))]
    valid = np.ones(n, dtype=bool)
    angular_bins, n_limit, key_radius = 4, 12, 5
    selected = select_features(pts, candidates, valid, SelectionPolicy.HIGH_POS, n_limit,
                               angular_bins, MAX_TICKS, key_radius)
    idx = np.sort(selected['tick'] // (MAX_TICKS // n))
    bins = (selected['tick'] / MAX_TICKS * angular_bins).astype(int)
    assert np.all(np.bincount(bins, minlength=angular_bins) <= n_limit // angular_bins)
    assert np.all(np.diff(idx) > key_radius)
    # the best candidate always survives
    assert np.argmax([c[1] for c in candidates]) in idx

def test_select_features_near_zero_prefers_smallest():
    pts, _ = make_ring(np.full(50, 5.0))
    scores = np.linspace(1.0, 0.0, 50)
    candidates = [(i, s) for i, s in enumerate(scores)]
    valid = np.ones(50, dtype=bool)
    selected = select_features(pts, candidates, valid, SelectionPolicy.NEAR_ZERO, 1, 1,
                               MAX_TICKS, 2)
    assert len(selected) == 1
    assert selected['tick'][0] == 49 * 100

def test_select_features_zero_quota():
    pts, _ = make_ring(np.full(10, 5.0))
    valid = np.ones(10, dtype=bool)
    selected = select_features(pts, [(3, 1.0)], valid, SelectionPolicy.HIGH_POS, 0, 12, MAX_TICKS, 5)
    assert len(selected) == 0
    assert selected.dtype == np.dtype(SCAN_POINT_DTYPE)


def test_feature_extractor_on_room(room_params, room_packets):
    buffer = SignalBuffer(room_params.n_ring)
    for rows, tick, _ in room_packets:
        for x, y, z, intensity, ring in rows:
            buffer.append(x, y, z, intensity, ring, tick)
    definitions = default_feature_definitions(room_params)
    features = FeatureExtractor(room_params, definitions).extract(buffer)
    assert len(features) == len(definitions)
    assert all(len(f) == room_params.n_ring for f in features)
    flat_idx = 2
    n_flat = sum(len(r) for r in features[flat_idx])
    assert n_flat > room_params.n_edge + room_params.n_flat
    for definition, per_ring in zip(definitions, features):
        for ring_features in per_ring:
            assert len(ring_features) <= definition.n_limit
    # intensity edges are disabled by their zero quota
    assert sum(len(r) for r in features[3]) == 0
    # flat features have near zero curvature
    ring = 8
    pts = buffer.points(ring)
    ranges = np.linalg.norm(pts['xyz'], axis=1)
    loam = compute_score(ranges, Kernel.LOAM, room_params.variance_window)
    off = kernel_offset(Kernel.LOAM, room_params.variance_window)
    for f in features[flat_idx][ring]:
        i = int(np.nonzero(pts['tick'] == f['tick'])[0][0])
        assert abs(loam[i - off]) < room_params.flat_tol
