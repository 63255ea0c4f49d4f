import numpy as np

from .config import ResidualKind


def elevation(point):
    """Vertical beam angle of a map point seen from the map origin."""
    return np.arctan2(point[2], np.hypot(point[0], point[1]))


def find_corresponding_points(local_map, query, kind, max_correspondence_dist, azimuth_tol):
    """
    Picks the map points forming the line (2) or plane (3) matched to query.

    Neighbours inside max_correspondence_dist are taken closest first, but
    the final slot may only be filled once some accepted or candidate point
    sits at least one azimuth_tol bin away from the first one. Points from a
    single scan ring share one beam angle, so this keeps lines and planes
    from being fit along a ring.

    Args:
        local_map (LocalMap): map of the query's feature type.
        query (np.ndarray): (3,) point in the map frame.
        kind (ResidualKind): decides the neighbour count.

    Returns:
        list or None: map indices, or None when no valid set exists.
    """
    knn = kind.n_neighbours
    indices, _ = local_map.radius_search(query, max_correspondence_dist)
    if len(indices) < knn:
        return None

    points = local_map.points
    selected = []
    offset = 0.0
    non_zero_bin = False
    for counter, map_idx in enumerate(indices):
        if counter == 0:
            offset = elevation(points[map_idx])
        else:
            t_bin = (elevation(points[map_idx]) - offset) / azimuth_tol
            cur_bin = int(t_bin + 0.5) if t_bin > 0 else int(t_bin - 0.5)
            if cur_bin != 0:
                non_zero_bin = True
        if len(selected) + 1 != knn or non_zero_bin:
            selected.append(int(map_idx))
        if len(selected) == knn:
            return selected
    return None


def out_of_bounds(local_map, query, kind, indices, max_extrapolation, check_plane=True):
    """
    True when matching query to the line segment / triangle spanned by the map
    points would need more than max_extrapolation of extrapolation.
    """
    points = local_map.points
    pA = points[indices[0]]
    pB = points[indices[1]]
    if kind == ResidualKind.POINT_TO_PLANE:
        if not check_plane:
            return False
        pC = points[indices[2]]
        v0 = pC - pA
        v1 = pB - pA
        v2 = query - pA
        dot00 = v0 @ v0
        dot01 = v0 @ v1
        dot02 = v0 @ v2
        dot11 = v1 @ v1
        dot12 = v1 @ v2
        denom = dot00 * dot11 - dot01 * dot01
        if denom <= 0:
            return True
        u = (dot11 * dot02 - dot01 * dot12) / denom
        v = (dot00 * dot12 - dot01 * dot02) / denom
        return bool(u < -max_extrapolation or v < -max_extrapolation
                    or u + v > 1.0 + max_extrapolation)

    AB = pB - pA
    length_sq = AB @ AB
    if length_sq <= 0:
        return True
    eta = (query - pA) @ AB / length_sq
    return bool(eta < -max_extrapolation or eta > 1.0 + max_extrapolation)
