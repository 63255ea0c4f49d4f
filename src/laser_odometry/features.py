import logging

import numpy as np

from .config import SelectionPolicy
from .scores import compute_scores, kernel_offset
from .signals import SCAN_POINT_DTYPE, RANGE

logger = logging.getLogger(__name__)

# Points invalidated on the far side of an occlusion boundary.
OCCLUSION_SPAN = 5


class ScanOrderError(ValueError):
    """Raised when the ticks of a ring are not monotonically increasing."""


def prefilter(points, ranges, max_ticks, occlusion_tol, occlusion_tol_2, parallel_tol):
    """
    Flags points that would produce unreliable features.

    A point is invalid if it lies next to an occlusion boundary (a range jump
    larger than occlusion_tol_2 between neighbours that are angularly close,
    i.e. less than occlusion_tol of a revolution apart), in which case the
    points on the far side of the jump are dropped, or if both its neighbours
    are far from it relative to its range (surface nearly parallel to the beam).

    Args:
        points (np.ndarray): structured array (SCAN_POINT_DTYPE) of one ring.
        ranges (np.ndarray): (N,) range signal of the ring.

    Returns:
        np.ndarray: (N,) boolean validity mask.
    """
    n = len(points)
    valid = np.ones(n, dtype=bool)
    if n < 3:
        return valid

    ticks = points['tick'].astype(float)
    angular_diff = np.diff(ticks) / max_ticks
    if np.any(angular_diff < 0):
        raise ScanOrderError("input scan clouds are not in order")

    jumps = np.nonzero(np.abs(ranges[1:-1] - ranges[2:]) > occlusion_tol_2)[0] + 1
    for j in jumps:
        if angular_diff[j] >= occlusion_tol:
            continue
        if ranges[j] > ranges[j + 1]:
            valid[max(0, j - OCCLUSION_SPAN):j + 1] = False
        else:
            valid[j + 1:min(n, j + 1 + OCCLUSION_SPAN)] = False

    xyz = points['xyz']
    del_forward = np.sum((xyz[1:-1] - xyz[2:]) ** 2, axis=1)
    del_back = np.sum((xyz[1:-1] - xyz[:-2]) ** 2, axis=1)
    dis = ranges[1:-1] ** 2
    parallel = (del_forward > parallel_tol * dis) & (del_back > parallel_tol * dis)
    valid[1:-1] &= ~parallel
    return valid


def _meets(policy, score, threshold):
    if policy == SelectionPolicy.NEAR_ZERO:
        return abs(score) < threshold
    if policy == SelectionPolicy.HIGH_POS:
        return score > threshold
    if policy == SelectionPolicy.HIGH_NEG:
        return score < -threshold
    return False


def filtered_scores(valid, ring_scores, definition, variance_window):
    """
    Candidates of one feature type in one ring: valid points whose scores
    satisfy every criterion of the definition.

    Returns: list of (point index, primary score)
    """
    offsets = [kernel_offset(c.kernel, variance_window) for c in definition.criteria]
    arrays = [ring_scores[c.kernel] for c in definition.criteria]
    if any(a is None for a in arrays):
        return []
    margin = max(offsets)
    candidates = []
    for j in range(margin, len(valid) - margin):
        if not valid[j]:
            continue
        if all(_meets(c.policy, a[j - off], c.threshold)
               for c, a, off in zip(definition.criteria, arrays, offsets)):
            candidates.append((j, arrays[0][j - offsets[0]]))
    return candidates


def select_features(points, candidates, valid, policy, n_limit, angular_bins,
                    ticks_per_window, key_radius):
    """
    Greedy selection of candidates spread over angular bins.

    Candidates are ranked by primary score, each bin accepts at most
    n_limit // angular_bins points, and accepting a point invalidates its
    key_radius neighbours on either side. `valid` is updated in place.

    Returns: structured array (SCAN_POINT_DTYPE) of selected points.
    """
    max_bin = n_limit // angular_bins
    if max_bin == 0 or not candidates:
        return np.array([], dtype=SCAN_POINT_DTYPE)

    scores = np.array([c[1] for c in candidates])
    if policy == SelectionPolicy.HIGH_POS:
        order = np.argsort(-scores, kind='stable')
    else:
        order = np.argsort(scores, kind='stable')

    cnt_in_bins = np.zeros(angular_bins, dtype=int)
    selected = []
    for o in order:
        idx = candidates[o][0]
        bin_idx = int(points['tick'][idx] / ticks_per_window * angular_bins)
        bin_idx = min(max(bin_idx, 0), angular_bins - 1)
        if cnt_in_bins[bin_idx] >= max_bin:
            continue
        if valid[idx]:
            selected.append(idx)
            valid[max(0, idx - key_radius):idx] = False
            valid[idx + 1:idx + 1 + key_radius] = False
            cnt_in_bins[bin_idx] += 1
    return points[np.array(selected, dtype=int)]


class FeatureExtractor:
    """
    Runs scores, prefilter and selection over a whole window.
    """

    def __init__(self, params, definitions):
        self.params = params
        self.definitions = definitions

    def extract(self, buffer):
        """
        Args:
            buffer (SignalBuffer): points of the completed window.

        Returns:
            list: feature_points[f][ring] structured arrays.
        """
        p = self.params
        scores = compute_scores(buffer, p.variance_window)
        features = [[None] * buffer.n_ring for _ in self.definitions]
        for ring in range(buffer.n_ring):
            points = buffer.points(ring)
            valid = prefilter(points, buffer.signal(RANGE, ring), p.max_ticks,
                              p.occlusion_tol, p.occlusion_tol_2, p.parallel_tol)
            ring_scores = {kernel: scores[kernel][ring] for kernel in scores}
            for f_idx, definition in enumerate(self.definitions):
                f_valid = valid.copy()
                candidates = filtered_scores(f_valid, ring_scores, definition, p.variance_window)
                features[f_idx][ring] = select_features(
                    points, candidates, f_valid, definition.criteria[0].policy,
                    definition.n_limit, p.angular_bins, p.ticks_per_window, p.key_radius)
        logger.debug("Extracted features per type: %s",
                     [sum(len(r) for r in f) for f in features])
        return features
