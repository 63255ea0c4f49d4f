from dataclasses import dataclass

import numpy as np

from .geometry import (
    se3_exp_batch, se3_inverse, se3_left_jacobian_inverse, se3_minus, se3_plus,
    transform_points,
)


@dataclass
class TrajectoryKnot:
    """Pose (map <- lidar) and twist of the sensor at one knot time."""
    pose: np.ndarray
    vel: np.ndarray

    @classmethod
    def identity(cls):
        return cls(np.eye(4), np.zeros(6))

    def copy(self):
        return TrajectoryKnot(self.pose.copy(), self.vel.copy())


class ConstantVelocityInterval:
    """
    White-noise-on-acceleration gaussian process between two knots.

    The local state is x = [xi, varpi] (pose perturbation, twist) with
    transition Phi(dt) = [[I, dt I], [0, I]] and covariance
    Q(dt) = [[dt^3/3 Qc, dt^2/2 Qc], [dt^2/2 Qc, dt Qc]].
    The state at elapsed time tau is hat(tau) x_k + candle(tau) x_kp1.
    """

    def __init__(self, t_k, t_kp1, qc):
        self.qc = np.diag(np.asarray(qc, dtype=float))
        self.set_times(t_k, t_kp1)

    def set_times(self, t_k, t_kp1):
        if t_kp1 <= t_k:
            raise ValueError("Knot times must be strictly increasing.")
        self.t_k = t_k
        self.t_kp1 = t_kp1
        self.dt = t_kp1 - t_k
        self.covariance = self._q(np.array([self.dt]))[0]
        self.inv_covariance = np.linalg.inv(self.covariance)
        # W such that W^T W = Q^-1
        self.inv_covariance_sqrt = np.linalg.cholesky(self.inv_covariance).T
        self._phi_dt = self._phi(np.array([self.dt]))[0]

    def _q(self, taus):
        n = len(taus)
        Q = np.zeros((n, 12, 12))
        Q[:, :6, :6] = (taus ** 3 / 3.0)[:, None, None] * self.qc
        Q[:, :6, 6:] = (taus ** 2 / 2.0)[:, None, None] * self.qc
        Q[:, 6:, :6] = Q[:, :6, 6:]
        Q[:, 6:, 6:] = taus[:, None, None] * self.qc
        return Q

    @staticmethod
    def _phi(taus):
        n = len(taus)
        Phi = np.tile(np.eye(12), (n, 1, 1))
        Phi[:, :6, 6:] = taus[:, None, None] * np.eye(6)
        return Phi

    def interpolation_matrices(self, elapsed):
        """
        Args:
            elapsed (np.ndarray): (n,) time since t_k, within [0, dt].

        Returns:
            (hat, candle): two (n,12,12) arrays
        """
        elapsed = np.atleast_1d(np.asarray(elapsed, dtype=float))
        Q_tau = self._q(elapsed)
        Phi_rest_T = np.transpose(self._phi(self.dt - elapsed), (0, 2, 1))
        candle = Q_tau @ Phi_rest_T @ self.inv_covariance
        hat = self._phi(elapsed) - candle @ self._phi_dt
        return hat, candle


def interpolate_poses(pose_k, pose_kp1, vel_k, vel_kp1, hat, candle):
    """
    Poses inside one interval from its bounding knots.

    Args:
        hat, candle: (n,6,12) pose rows of the interpolation matrices.

    Returns:
        np.ndarray: (n,4,4) poses
    """
    xi = se3_minus(pose_kp1, pose_k)
    jinv_vel = se3_left_jacobian_inverse(xi) @ vel_kp1
    local = (hat[:, :, 6:] @ vel_k
             + candle[:, :, :6] @ xi
             + candle[:, :, 6:] @ jinv_vel)
    return se3_exp_batch(local) @ pose_k


class Trajectory:
    """
    Knots spread evenly over one window, with continuous-time interpolation
    between them. Point times are integer ticks from the window start.
    """

    def __init__(self, num_states, scan_period, ticks_per_window, qc):
        if num_states < 2:
            raise ValueError("Number of parameter states must be at least 2")
        self.num_states = num_states
        self.scan_period = scan_period
        self.ticks_per_window = ticks_per_window
        self.stamps = np.linspace(0.0, scan_period, num_states)
        self.knots = [TrajectoryKnot.identity() for _ in range(num_states)]
        self.set_process_noise(qc)
        self.prior_pose = np.eye(4)
        self.prior_twist = np.zeros(6)

    def set_process_noise(self, qc):
        """Rebuilds the interval models for a new power spectral density Qc."""
        self.intervals = [ConstantVelocityInterval(self.stamps[i], self.stamps[i + 1], qc)
                          for i in range(self.num_states - 1)]

    @property
    def terminal(self):
        return self.knots[-1]

    def transform_indices(self, ticks):
        """
        Interval index and time elapsed inside it for each tick.
        Returns: (k (n,) int, elapsed (n,) float)
        """
        ticks = np.atleast_1d(np.asarray(ticks, dtype=np.int64))
        k = (ticks * (self.num_states - 1)) // self.ticks_per_window
        k = np.clip(k, 0, self.num_states - 2)
        t = ticks * self.scan_period / self.ticks_per_window
        return k, t - self.stamps[k]

    def interpolation_matrices(self, ticks):
        """Returns (k, hat (n,6,12), candle (n,6,12)) for each tick."""
        k, elapsed = self.transform_indices(ticks)
        hat = np.zeros((len(k), 6, 12))
        candle = np.zeros((len(k), 6, 12))
        for interval_idx in np.unique(k):
            sel = k == interval_idx
            h, c = self.intervals[interval_idx].interpolation_matrices(elapsed[sel])
            hat[sel] = h[:, :6, :]
            candle[sel] = c[:, :6, :]
        return k, hat, candle

    def poses_at(self, ticks):
        """(n,4,4) map <- lidar poses at the given ticks."""
        k, hat, candle = self.interpolation_matrices(ticks)
        poses = np.zeros((len(k), 4, 4))
        for interval_idx in np.unique(k):
            sel = k == interval_idx
            a, b = self.knots[interval_idx], self.knots[interval_idx + 1]
            poses[sel] = interpolate_poses(a.pose, b.pose, a.vel, b.vel, hat[sel], candle[sel])
        return poses

    def transform_to_map(self, points, ticks):
        points = np.asarray(points, dtype=float).reshape(-1, 3)
        if len(points) == 0:
            return points.copy()
        return transform_points(self.poses_at(ticks), points)

    def transform_from_map(self, points, ticks):
        """Inverse of transform_to_map: map points back into the lidar frame at each tick."""
        points = np.asarray(points, dtype=float).reshape(-1, 3)
        if len(points) == 0:
            return points.copy()
        poses = self.poses_at(ticks)
        rel = points - poses[:, :3, 3]
        return np.einsum('nji,nj->ni', poses[:, :3, :3], rel)

    def transform_to_cur_lidar(self, points, ticks):
        """Points expressed in the lidar frame at the end of the window."""
        points = np.asarray(points, dtype=float).reshape(-1, 3)
        if len(points) == 0:
            return points.copy()
        T_end_inv = se3_inverse(self.terminal.pose)
        return transform_points(T_end_inv @ self.poses_at(ticks), points)

    def reset(self):
        for knot in self.knots:
            knot.pose = np.eye(4)
            knot.vel = np.zeros(6)
        self.prior_pose = np.eye(4)
        self.prior_twist = np.zeros(6)

    def copy_from(self, other):
        self.knots = [knot.copy() for knot in other.knots]
        self.prior_pose = other.prior_pose.copy()
        self.prior_twist = other.prior_twist.copy()

    def extrapolate(self):
        """
        Reseeds the trajectory for the next window: the terminal state becomes
        the prior, knot 0 starts at the terminal pose and the following knots
        move on at the terminal twist.
        """
        end = self.terminal.copy()
        self.prior_pose = end.pose.copy()
        self.prior_twist = end.vel.copy()
        step = self.scan_period / (self.num_states - 1)
        self.knots[0] = TrajectoryKnot(end.pose.copy(), end.vel.copy())
        for i in range(1, self.num_states):
            self.knots[i] = TrajectoryKnot(se3_plus(self.knots[i - 1].pose, step * end.vel),
                                           end.vel.copy())
