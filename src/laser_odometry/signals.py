import numpy as np

# A captured lidar return. Ticks are relative to the start of the window.
SCAN_POINT_DTYPE = [
    ('xyz', '3f8'),
    ('intensity', 'f8'),
    ('tick', 'i8'),
]

RANGE = 0
INTENSITY = 1
N_SIGNALS = 2


class SignalBuffer:
    """
    Per-ring storage of the points of the active window together with the
    range and intensity signals the scores are computed from.
    """

    def __init__(self, n_ring, min_intensity=0.0, max_intensity=255.0):
        self.n_ring = n_ring
        self.min_intensity = min_intensity
        self.max_intensity = max_intensity
        self._points = [[] for _ in range(n_ring)]

    def append(self, x, y, z, intensity, ring, tick):
        if not 0 <= ring < self.n_ring:
            raise ValueError(f"Ring index {ring} outside [0, {self.n_ring}).")
        self._points[ring].append(((x, y, z), intensity, tick))

    def clear(self):
        for ring in self._points:
            ring.clear()

    def __len__(self):
        return sum(len(r) for r in self._points)

    def points(self, ring):
        """Structured array of the ring's points, in arrival order."""
        return np.array(self._points[ring], dtype=SCAN_POINT_DTYPE)

    def signal(self, kind, ring):
        pts = self.points(ring)
        if kind == RANGE:
            return np.linalg.norm(pts['xyz'], axis=1) if len(pts) else np.zeros(0)
        if kind == INTENSITY:
            return np.clip(pts['intensity'], self.min_intensity, self.max_intensity)
        raise ValueError(f"Unknown signal {kind}.")
