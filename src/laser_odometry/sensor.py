import numpy as np


class RangeSensor:
    """
    Noise model of a spinning range sensor: independent gaussian errors on
    range, azimuth and elevation, propagated to cartesian coordinates.
    """

    def __init__(self, params):
        self.params = params
        self._spherical_cov = np.diag([
            params.sigma_range ** 2,
            params.sigma_azimuth ** 2,
            params.sigma_elevation ** 2,
        ])

    def euclidean_covariance(self, point):
        """
        point: (3,) in the sensor frame
        Returns: (3,3) covariance of the point in the sensor frame
        """
        x, y, z = point
        r = np.sqrt(x * x + y * y + z * z)
        if r == 0:
            return np.diag([self.params.sigma_range ** 2] * 3)
        azimuth = np.arctan2(y, x)
        elev = np.arcsin(np.clip(z / r, -1.0, 1.0))
        ca, sa = np.cos(azimuth), np.sin(azimuth)
        ce, se = np.cos(elev), np.sin(elev)
        J = np.array([
            [ce * ca, -r * ce * sa, -r * se * ca],
            [ce * sa, r * ce * ca, -r * se * sa],
            [se, 0.0, r * ce],
        ])
        return J @ self._spherical_cov @ J.T
