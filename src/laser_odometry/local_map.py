import logging
from collections import namedtuple
from enum import Enum

import numpy as np
from scipy.spatial import cKDTree

logger = logging.getLogger(__name__)


class AssociationStatus(Enum):
    UNCORRESPONDED = 0
    CORRESPONDED = 1


FeatureAssociation = namedtuple('FeatureAssociation', ['ttl', 'status'])


class LocalMap:
    """
    Persistent map of one feature type, in the map frame.

    Each point carries a time-to-live and a correspondence flag. Rollover
    ages the points (evict), then adds the new window's features wherever the
    map is sparser than the density threshold (insert). The k-d tree is
    rebuilt after each of those passes and is read-only in between.
    """

    def __init__(self, ttl, local_map_range, density):
        self.ttl_full = ttl
        self.local_map_range = local_map_range
        self.density = density
        self._points = np.zeros((0, 3))
        self._ttl = np.zeros(0, dtype=int)
        self._corresponded = np.zeros(0, dtype=bool)
        self.index = None

    def __len__(self):
        return len(self._points)

    @property
    def points(self):
        return self._points

    def association(self, idx):
        status = (AssociationStatus.CORRESPONDED if self._corresponded[idx]
                  else AssociationStatus.UNCORRESPONDED)
        return FeatureAssociation(int(self._ttl[idx]), status)

    def mark_corresponded(self, indices):
        self._corresponded[np.asarray(indices, dtype=int)] = True

    def _rebuild_index(self):
        self.index = cKDTree(self._points) if len(self._points) else None

    def evict(self):
        """
        Ages every point and swap-removes the ones whose TTL ran out or that
        left the local map range. Point order is not preserved.
        """
        points, ttl, corr = self._points.copy(), self._ttl.copy(), self._corresponded.copy()
        size = len(points)
        j = 0
        while j < size:
            if np.linalg.norm(points[j]) < self.local_map_range:
                if corr[j]:
                    corr[j] = False
                    ttl[j] = self.ttl_full
                else:
                    ttl[j] -= 1
                if ttl[j] > 0:
                    j += 1
                    continue
            last = size - 1
            points[j], ttl[j], corr[j] = points[last], ttl[last], corr[last]
            size = last
        self._points, self._ttl, self._corresponded = points[:size], ttl[:size], corr[:size]
        self._rebuild_index()

    def insert(self, candidates):
        """
        Adds candidate points (map frame) whose squared distance to the closest
        existing map point exceeds the density threshold.

        Returns: number of inserted points
        """
        candidates = np.asarray(candidates, dtype=float).reshape(-1, 3)
        if len(candidates) == 0:
            return 0
        if self.index is None:
            keep = np.ones(len(candidates), dtype=bool)
        else:
            dist, _ = self.index.query(candidates, k=1)
            keep = dist * dist > self.density
        new = candidates[keep]
        self._points = np.vstack((self._points, new))
        self._ttl = np.concatenate((self._ttl, np.full(len(new), self.ttl_full, dtype=int)))
        self._corresponded = np.concatenate((self._corresponded, np.zeros(len(new), dtype=bool)))
        self._rebuild_index()
        return len(new)

    def radius_search(self, query, radius):
        """
        Map points within radius of query, sorted by increasing distance.
        Returns: (indices, distances)
        """
        if self.index is None:
            return np.zeros(0, dtype=int), np.zeros(0)
        idx = np.asarray(self.index.query_ball_point(query, radius), dtype=int)
        if len(idx) == 0:
            return idx, np.zeros(0)
        dist = np.linalg.norm(self._points[idx] - query, axis=1)
        order = np.argsort(dist, kind='stable')
        return idx[order], dist[order]
