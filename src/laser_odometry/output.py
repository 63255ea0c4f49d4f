import logging
import threading
from dataclasses import dataclass, field
from typing import List

import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class OdometryOutput:
    """
    Everything published for one solved window. Clouds are in the lidar frame
    at the end of the window unless noted.
    """
    stamp: float
    pose: np.ndarray                     # (4,4) map <- lidar at window end
    velocity: np.ndarray                 # (6,) twist at window end
    undistorted_cloud: np.ndarray        # (n,4) x, y, z, intensity
    undistorted_features: List[np.ndarray] = field(default_factory=list)
    # rows: raw point (3), map points (3 per neighbour), corrected point (3)
    correspondences: List[np.ndarray] = field(default_factory=list)
    map_features: List[np.ndarray] = field(default_factory=list)  # map frame


class OutputChannel:
    """
    Single-slot hand-off between the odometry thread and a consumer thread.

    publish() never blocks: a pending record that was not consumed yet is
    replaced, with a warning. The consumer calls `callback` for each record it
    takes; exceptions from the callback are logged and do not stop it.
    """

    def __init__(self, callback):
        self.callback = callback
        self._cond = threading.Condition()
        self._pending = None
        self._running = True
        self._thread = threading.Thread(target=self._run, name="odometry-output", daemon=True)
        self._thread.start()

    def publish(self, record):
        with self._cond:
            if self._pending is not None:
                logger.warning("Overwriting previous output")
            self._pending = record
            self._cond.notify()

    def _run(self):
        while True:
            with self._cond:
                while self._pending is None and self._running:
                    self._cond.wait()
                if self._pending is None:
                    return
                record, self._pending = self._pending, None
            try:
                self.callback(record)
            except Exception:
                logger.exception("Output function raised")

    def close(self):
        """Delivers a pending record, then stops and joins the consumer thread."""
        with self._cond:
            self._running = False
            self._cond.notify()
        self._thread.join()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
