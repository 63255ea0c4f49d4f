import numpy as np

from .config import ResidualKind
from .geometry import se3_left_jacobian_inverse, se3_minus
from .trajectory import interpolate_poses

_DEGENERATE = 1e-9


class ResidualEvaluationError(ValueError):
    """Raised when a measurement residual cannot be built or evaluated."""


def bisquare_loss(scales):
    """
    Bounded (Tukey bisquare) robust loss with one scale per residual component,
    in the form scipy.optimize.least_squares expects from a callable loss.

    rho(s) = a^2/3 (1 - (1 - s/a^2)^3) for s <= a^2, a^2/3 beyond. A scale of
    np.inf leaves the component unweighted (rho(s) = s).

    Args:
        scales (np.ndarray): (m,) loss parameter a per residual component.

    Returns:
        callable: z -> (3, m) array of rho, rho' and rho''.
    """
    a2 = np.asarray(scales, dtype=float) ** 2
    robust = np.isfinite(a2)

    def loss(z):
        rho = np.empty((3, z.size))
        rho[0] = z
        rho[1] = 1.0
        rho[2] = 0.0
        if np.any(robust):
            zr = z[robust]
            ar = a2[robust]
            inside = zr <= ar
            t = np.where(inside, 1.0 - zr / ar, 0.0)
            rho[0, robust] = np.where(inside, ar / 3.0 * (1.0 - t ** 3), ar / 3.0)
            rho[1, robust] = t ** 2
            rho[2, robust] = np.where(inside, -2.0 / ar * t, 0.0)
        return rho

    return loss


class TrajectoryPrior:
    """
    Anchors knot 0 to the end of the previous window:
    e = W [log(T_0 T_prior^-1); v_0 - v_prior].
    """
    robust = False

    def __init__(self, inv_covariance_sqrt, prior_pose, prior_twist):
        self.weight = inv_covariance_sqrt
        self.prior_pose = prior_pose.copy()
        self.prior_twist = prior_twist.copy()
        self.knots = (0,)
        self.size = 12

    def evaluate(self, knots):
        knot = knots[0]
        e = np.concatenate((se3_minus(knot.pose, self.prior_pose), knot.vel - self.prior_twist))
        return self.weight @ e


class ConstantVelocityPrior:
    """
    Gaussian-process motion residual between knots k and k+1:
    e = W [xi - dt v_k; J^-1(xi) v_kp1 - v_k], xi = log(T_kp1 T_k^-1).
    """
    robust = False

    def __init__(self, k, interval):
        self.weight = interval.inv_covariance_sqrt
        self.dt = interval.dt
        self.knots = (k, k + 1)
        self.size = 12

    def evaluate(self, knots):
        a, b = knots[self.knots[0]], knots[self.knots[1]]
        xi = se3_minus(b.pose, a.pose)
        e = np.concatenate((xi - self.dt * a.vel,
                            se3_left_jacobian_inverse(xi) @ b.vel - a.vel))
        return self.weight @ e


def _line_basis(direction):
    """Two unit vectors orthogonal to a unit direction and to each other."""
    axis = np.zeros(3)
    axis[np.argmin(np.abs(direction))] = 1.0
    u = np.cross(direction, axis)
    u /= np.linalg.norm(u)
    return np.vstack((u, np.cross(direction, u)))


class MeasurementResidual:
    """
    Distance of an interpolated feature point to a map line or plane.

    The residual is projection @ (T(tau) p - anchor), where projection holds
    the (optionally noise-whitened) directions normal to the target. One class
    covers both kinds; `kind` selects how the target is built.

    Args:
        kind (ResidualKind): POINT_TO_LINE uses map_points[:2], POINT_TO_PLANE
            uses map_points[:3].
        point (np.ndarray): (3,) raw feature point in the lidar frame.
        map_points (np.ndarray): (2 or 3, 3) target points in the map frame.
        interval (int): trajectory interval the point falls into.
        hat, candle (np.ndarray): (6,12) interpolation rows for the point's tick.
        covariance (np.ndarray): (3,3) point noise in the map frame, or None.
        use_weighting (bool): whiten by the point noise projected on the normals.
    """

    robust = True

    def __init__(self, kind, point, map_points, interval, hat, candle,
                 covariance=None, use_weighting=False):
        self.kind = kind
        self.point = np.asarray(point, dtype=float)
        self.map_points = np.asarray(map_points, dtype=float)
        self.interval = interval
        self.knots = (interval, interval + 1)
        self.hat = hat
        self.candle = candle
        if use_weighting and covariance is None:
            raise ResidualEvaluationError("Weighting requested without a covariance")

        pA = self.map_points[0]
        pB = self.map_points[1]
        self.anchor = pA
        if kind == ResidualKind.POINT_TO_LINE:
            AB = pB - pA
            length = np.linalg.norm(AB)
            if length < _DEGENERATE:
                raise ResidualEvaluationError("Line target points coincide")
            basis = _line_basis(AB / length)
            if use_weighting:
                cov = basis @ covariance @ basis.T
                try:
                    W = np.linalg.inv(np.linalg.cholesky(cov))
                except np.linalg.LinAlgError as err:
                    raise ResidualEvaluationError("Line noise is not positive definite") from err
            else:
                W = np.eye(2)
            self.projection = W @ basis
            self.rescale = float(np.trace(W))
        elif kind == ResidualKind.POINT_TO_PLANE:
            pC = self.map_points[2]
            normal = np.cross(pB - pA, pC - pA)
            norm = np.linalg.norm(normal)
            if norm < _DEGENERATE:
                raise ResidualEvaluationError("Plane target points are collinear")
            normal /= norm
            if use_weighting:
                var = normal @ covariance @ normal
                if var <= 0:
                    raise ResidualEvaluationError("Plane noise is not positive")
                w = 1.0 / np.sqrt(var)
            else:
                w = 1.0
            self.projection = (w * normal).reshape(1, 3)
            self.rescale = float(w)
        else:
            raise ResidualEvaluationError("Unknown residual kind %s" % kind)
        self.size = self.projection.shape[0]

    @classmethod
    def line_as_plane(cls, point, map_points, interval, hat, candle,
                      covariance=None, use_weighting=False):
        """Point-to-plane residual on the plane through a line and the map origin."""
        map_points = np.vstack((np.asarray(map_points, dtype=float)[:2], np.zeros(3)))
        return cls(ResidualKind.POINT_TO_PLANE, point, map_points, interval, hat, candle,
                   covariance, use_weighting)

    @property
    def loss_scale(self):
        """Bisquare parameter for this residual, before the robust_param factor."""
        return self.rescale ** 2

    def evaluate(self, knots):
        a, b = knots[self.knots[0]], knots[self.knots[1]]
        T = interpolate_poses(a.pose, b.pose, a.vel, b.vel, self.hat[None], self.candle[None])[0]
        res = self.projection @ (T[:3, :3] @ self.point + T[:3, 3] - self.anchor)
        if not np.all(np.isfinite(res)):
            raise ResidualEvaluationError("Residual is not finite")
        return res


class MeasurementGroup:
    """
    Measurement residuals of one kind in one interval, evaluated together.
    Behaves like a single residual block of size sum(r.size).
    """
    robust = True

    def __init__(self, residuals):
        if not residuals:
            raise ValueError("A measurement group needs at least one residual.")
        first = residuals[0]
        self.residuals = residuals
        self.knots = first.knots
        self.points = np.array([r.point for r in residuals])
        self.anchors = np.array([r.anchor for r in residuals])
        self.projections = np.array([r.projection for r in residuals])
        self.hats = np.array([r.hat for r in residuals])
        self.candles = np.array([r.candle for r in residuals])
        self.size = int(sum(r.size for r in residuals))

    def evaluate(self, knots):
        a, b = knots[self.knots[0]], knots[self.knots[1]]
        T = interpolate_poses(a.pose, b.pose, a.vel, b.vel, self.hats, self.candles)
        mapped = np.einsum('nij,nj->ni', T[:, :3, :3], self.points) + T[:, :3, 3]
        res = np.einsum('nij,nj->ni', self.projections, mapped - self.anchors).ravel()
        if not np.all(np.isfinite(res)):
            raise ResidualEvaluationError("Residual is not finite")
        return res


def group_measurements(residuals):
    """Groups measurement residuals by (interval, kind, size)."""
    groups = {}
    for r in residuals:
        groups.setdefault((r.interval, r.kind, r.size), []).append(r)
    return [MeasurementGroup(groups[key]) for key in sorted(groups, key=lambda k: (k[0], k[1].value, k[2]))]
