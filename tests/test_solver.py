import logging
import os

import pytest
import numpy as np
from laser_odometry.config import LaserOdomParams, ResidualKind
from laser_odometry.geometry import se3_exp_batch, se3_inverse
from laser_odometry.residuals import ConstantVelocityPrior, MeasurementResidual, ResidualEvaluationError
from laser_odometry.solver import DegenerateWindowError, WindowSolver
from laser_odometry.trajectory import Trajectory

QC = np.full(6, 100.0)
TICKS = 36000
PERIOD = 0.1
TRUE_TWIST = np.array([0.2, 0.1, -0.05, 0.02, -0.03, 0.1])

# Box faces as (axis, offset)
FACES = [(0, 3.0), (0, -2.0), (1, 2.0), (1, -3.0), (2, 2.0), (2, -1.5)]


def box_problem(n_per_face=25, seed=0):
    """
    Plane residuals of a sensor moving at TRUE_TWIST inside a box. The map
    triangles are exact, so the true trajectory zeroes every residual.
    """
    rng = np.random.default_rng(seed)
    traj = Trajectory(2, PERIOD, TICKS, QC)
    traj.knots[0].vel = TRUE_TWIST.copy()
    measurements = []
    for axis, offset in FACES:
        a1, a2 = [i for i in range(3) if i != axis]
        for _ in range(n_per_face):
            w = np.zeros(3)
            w[axis] = offset
            w[a1], w[a2] = rng.uniform(-1.0, 1.0, size=2)
            tick = int(rng.integers(0, TICKS))
            T = se3_exp_batch((tick / TICKS * PERIOD * TRUE_TWIST)[None])[0]
            p = (se3_inverse(T) @ np.append(w, 1.0))[:3]
            d1, d2 = np.zeros(3), np.zeros(3)
            d1[a1], d2[a2] = 0.3, 0.3
            tri = np.array([w + d1, w - 0.5 * d1 + d2, w - 0.5 * d1 - d2])
            k, hat, candle = traj.interpolation_matrices([tick])
            measurements.append(MeasurementResidual(ResidualKind.POINT_TO_PLANE, p, tri,
                                                    int(k[0]), hat[0], candle[0]))
    blocks = [ConstantVelocityPrior(0, traj.intervals[0])]
    return traj, blocks, measurements

def solver_params(**kwargs):
    defaults = dict(min_residuals=10, max_inner_iters=50, solver_threads=1)
    defaults.update(kwargs)
    return LaserOdomParams(**defaults)


def test_solver_recovers_constant_velocity_motion():
    traj, blocks, measurements = box_problem()
    result = WindowSolver(solver_params()).solve(traj, blocks, measurements)
    assert result is not None
    expected_end = se3_exp_batch((PERIOD * TRUE_TWIST)[None])[0]
    assert np.allclose(traj.knots[0].pose, np.eye(4))
    assert np.allclose(traj.terminal.pose, expected_end, atol=1e-5)
    assert np.allclose(traj.terminal.vel, TRUE_TWIST, atol=1e-3)
    assert result.cost < 1e-10

def test_solver_rejects_degenerate_window():
    traj, blocks, measurements = box_problem(n_per_face=2)
    with pytest.raises(DegenerateWindowError, match="threshold is 100"):
        WindowSolver(solver_params(min_residuals=100)).solve(traj, blocks, measurements)

def test_only_extract_features_skips_solve():
    traj, blocks, measurements = box_problem()
    result = WindowSolver(solver_params(only_extract_features=True)).solve(traj, blocks, measurements)
    assert result is None
    assert np.allclose(traj.terminal.pose, np.eye(4))

def test_remap_drops_weak_directions():
    solver = WindowSolver(solver_params(min_eigen=100.0))
    jacobian = np.diag([1.0, 100.0])
    assert np.allclose(solver.remap(jacobian, np.array([1.0, 1.0])), [0.0, 1.0])
    assert np.allclose(solver.remap(np.diag([20.0, 30.0]), np.array([1.0, 2.0])), [1.0, 2.0])

class FailsAwayFromStart:
    """Evaluates only while knot 1 stays at its starting pose."""
    robust = False
    knots = (1,)
    size = 1

    def evaluate(self, knots):
        if np.linalg.norm(knots[1].pose[:3, 3]) > 1e-3:
            raise ResidualEvaluationError("left the valid region")
        return np.zeros(1)

def test_evaluation_failure_keeps_best_iterate(caplog):
    traj, blocks, measurements = box_problem()
    blocks.append(FailsAwayFromStart())
    with caplog.at_level(logging.ERROR, logger="laser_odometry.solver"):
        result = WindowSolver(solver_params()).solve(traj, blocks, measurements)
    assert result is None
    assert "Cost function did not evaluate" in caplog.text
    # only the starting point evaluated cleanly
    assert np.allclose(traj.knots[1].pose, np.eye(4))
    assert np.allclose(traj.terminal.pose, np.eye(4))

def test_thread_count_and_free_knots():
    assert WindowSolver(solver_params(solver_threads=0)).num_threads == (os.cpu_count() or 1)
    assert WindowSolver(solver_params(solver_threads=3)).num_threads == 3
    assert WindowSolver(solver_params(lock_first=True)).free_knots(3) == [1, 2]
    assert WindowSolver(solver_params(lock_first=False)).free_knots(3) == [0, 1, 2]
