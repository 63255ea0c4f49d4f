import logging
import os

import numpy as np
from scipy.optimize import least_squares
from threadpoolctl import threadpool_limits

from .geometry import se3_plus
from .residuals import ResidualEvaluationError, bisquare_loss, group_measurements
from .trajectory import TrajectoryKnot

logger = logging.getLogger(__name__)

# Central difference step for block jacobians
JACOBIAN_STEP = 1e-6


class DegenerateWindowError(RuntimeError):
    """Raised when a window yields fewer residual blocks than required."""


class WindowSolver:
    """
    Drives scipy's least_squares over the knots of one window.

    The unknowns are tangent-space perturbations [dxi, dv] of every free
    knot around the trajectory at the start of the solve:
    T = exp(dxi) T_lin, v = v_lin + dv. With lock_first, knot 0 is held fixed.
    """

    def __init__(self, params):
        self.params = params

    @property
    def num_threads(self):
        if self.params.solver_threads < 1:
            return os.cpu_count() or 1
        return self.params.solver_threads

    def free_knots(self, num_states):
        return list(range(1 if self.params.lock_first else 0, num_states))

    def _retract(self, x, linearization, free):
        knots = [k.copy() for k in linearization]
        for col, idx in enumerate(free):
            delta = x[12 * col:12 * col + 12]
            knots[idx] = TrajectoryKnot(se3_plus(linearization[idx].pose, delta[:6]),
                                        linearization[idx].vel + delta[6:])
        return knots

    def solve(self, trajectory, blocks, measurements):
        """
        Solves in place for the knots of `trajectory`.

        Args:
            trajectory (Trajectory): knots are read as the linearization point
                and overwritten with the solution.
            blocks (list): prior and motion residual blocks.
            measurements (list): gated MeasurementResidual objects.

        Returns:
            scipy.optimize.OptimizeResult, or None when only_extract_features
            skips the solve or a residual stops evaluating mid-solve. In the
            latter case the knots hold the lowest-cost iterate reached.

        Raises:
            DegenerateWindowError: fewer residual blocks than min_residuals.
        """
        p = self.params
        n_blocks = len(blocks) + len(measurements)
        if n_blocks < p.min_residuals:
            raise DegenerateWindowError(
                "%d residuals, threshold is %d" % (n_blocks, p.min_residuals))
        if p.only_extract_features:
            return None

        all_blocks = list(blocks) + group_measurements(measurements)
        scales = []
        for block in all_blocks:
            if block.robust:
                for r in block.residuals:
                    scales.extend([r.loss_scale * p.robust_param] * r.size)
            else:
                scales.extend([np.inf] * block.size)
        scales = np.asarray(scales)

        linearization = [k.copy() for k in trajectory.knots]
        free = self.free_knots(len(linearization))
        column = {idx: col for col, idx in enumerate(free)}
        offsets = np.cumsum([0] + [b.size for b in all_blocks])
        n_params = 12 * len(free)
        loss = bisquare_loss(scales)
        # lowest-cost iterate evaluated so far
        best = {'x': np.zeros(n_params), 'cost': np.inf}

        def fun(x):
            knots = self._retract(x, linearization, free)
            res = np.concatenate([b.evaluate(knots) for b in all_blocks])
            cost = 0.5 * np.sum(loss(res ** 2)[0])
            if cost < best['cost']:
                best['x'], best['cost'] = x.copy(), cost
            return res

        def jac(x):
            J = np.zeros((offsets[-1], n_params))
            for idx in free:
                touching = [(i, b) for i, b in enumerate(all_blocks) if idx in b.knots]
                if not touching:
                    continue
                for j in range(12):
                    c = 12 * column[idx] + j
                    x_plus = x.copy()
                    x_minus = x.copy()
                    x_plus[c] += JACOBIAN_STEP
                    x_minus[c] -= JACOBIAN_STEP
                    k_plus = self._retract(x_plus, linearization, free)
                    k_minus = self._retract(x_minus, linearization, free)
                    for i, b in touching:
                        J[offsets[i]:offsets[i + 1], c] = (
                            (b.evaluate(k_plus) - b.evaluate(k_minus)) / (2.0 * JACOBIAN_STEP))
            return J

        try:
            with threadpool_limits(limits=self.num_threads, user_api='blas'):
                result = least_squares(fun, np.zeros(n_params), jac=jac, method='trf',
                                       tr_solver='exact', loss=loss,
                                       max_nfev=p.max_inner_iters)
        except ResidualEvaluationError as err:
            logger.error("Cost function did not evaluate, keeping best iterate: %s", err)
            trajectory.knots = self._retract(best['x'], linearization, free)
            return None

        if result.status <= 0:
            logger.info("Solver stopped without converging: %s", result.message)
        trajectory.knots = self._retract(result.x, linearization, free)
        return result

    def remap(self, jacobian, x):
        """
        Projects a tangent-space update off the weakly observable directions:
        eigenvectors of J^T J with eigenvalue below min_eigen are dropped.
        """
        information = jacobian.T @ jacobian
        eigvals, eigvecs = np.linalg.eigh(information)
        keep = eigvals >= self.params.min_eigen
        if np.all(keep):
            return x
        logger.debug("Remapping %d weak directions", int(np.sum(~keep)))
        V = eigvecs[:, keep]
        return V @ (V.T @ x)
