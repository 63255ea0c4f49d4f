import copy
import logging
import os
from datetime import datetime

import numpy as np

from .config import LaserOdomParams, ResidualKind, default_feature_definitions
from .correspondence import find_corresponding_points, out_of_bounds
from .features import FeatureExtractor, ScanOrderError
from .geometry import is_near, se3_inverse, se3_minus, se3_plus, transform_points
from .io import TrajectoryWriter, write_correspondences
from .local_map import LocalMap
from .output import OdometryOutput, OutputChannel
from .residuals import (
    ConstantVelocityPrior, MeasurementResidual, ResidualEvaluationError, TrajectoryPrior,
)
from .sensor import RangeSensor
from .signals import SCAN_POINT_DTYPE, SignalBuffer
from .solver import DegenerateWindowError, WindowSolver
from .trajectory import Trajectory, TrajectoryKnot

logger = logging.getLogger(__name__)

# Parameters fixing buffer and trajectory shapes; they cannot change mid-run.
STRUCTURAL_PARAMS = ('n_ring', 'max_ticks', 'n_window', 'num_trajectory_states', 'scan_period')


class LaserOdom:
    """
    Continuous-time lidar odometry over windows of rotating-lidar scans.

    Points are pushed in with add_points(). When a tick wraparound closes a
    window, features are extracted, matched against the local maps and the
    window trajectory is solved. The maps are then updated and the trajectory
    is reseeded for the next window.

    Args:
        params (LaserOdomParams): configuration; validated here.
        feature_definitions (tuple): FeatureDefinition per feature type.
            Defaults to default_feature_definitions(params).
    """

    def __init__(self, params=None, feature_definitions=None):
        self.param = params if params is not None else LaserOdomParams()
        self.param.validate()
        p = self.param
        # default definitions follow later threshold and quota updates
        self._default_definitions = feature_definitions is None
        if feature_definitions is None:
            feature_definitions = default_feature_definitions(p)
        self.feature_definitions = tuple(feature_definitions)
        if not self.feature_definitions:
            raise ValueError("At least one feature definition is required.")

        self.signals = SignalBuffer(p.n_ring, p.min_intensity, p.max_intensity)
        self._build_helpers()

        self.local_maps = [
            LocalMap(p.TTL, p.local_map_range, self._map_density(d))
            for d in self.feature_definitions
        ]
        self.cur_trajectory = self._new_trajectory()
        self.prev_trajectory = self._new_trajectory()

        self.feature_points = self._empty_features()
        # per feature type: (ring, point index, map indices)
        self.feature_corrs = [[] for _ in self.feature_definitions]

        self.initialized = False
        self.full_revolution = False
        self.prv_tick = None
        self.n_scan_in_batch = 0
        self.prv_time = None
        self.cur_time = None
        self.window_count = 0
        self._pose = np.eye(4)
        self._velocity = np.zeros(6)

        self.file_prefix = datetime.now().strftime("%Y-%m-%d_%H-%M-%S_")
        self.trajectory_writer = None
        if p.output_trajectory:
            path = p.trajectory_path or os.path.join(p.output_dir,
                                                     self.file_prefix + "laser_odom_traj.txt")
            self.trajectory_writer = TrajectoryWriter(path)
            self.trajectory_writer.open()
        self.output_channel = None

    def _build_helpers(self):
        self.range_sensor = RangeSensor(self.param.sensor_params)
        self.extractor = FeatureExtractor(self.param, self.feature_definitions)
        self.solver = WindowSolver(self.param)

    def _map_density(self, definition):
        if definition.residual == ResidualKind.POINT_TO_LINE:
            return self.param.edge_map_density
        return self.param.flat_map_density

    def _new_trajectory(self):
        p = self.param
        return Trajectory(p.num_trajectory_states, p.scan_period, p.ticks_per_window, p.Qc)

    def _empty_features(self):
        return [[np.array([], dtype=SCAN_POINT_DTYPE) for _ in range(self.param.n_ring)]
                for _ in self.feature_definitions]

    # configuration

    def get_params(self):
        return self.param

    def update_params(self, **kwargs):
        """
        Changes tunables between windows. Parameters that size the buffers or
        the trajectory cannot be changed once the engine exists.

        Default feature definitions are rebuilt from the new thresholds and
        quotas; the local maps take the new TTL, range and densities, and the
        trajectory intervals the new Qc. Points already in the maps keep their
        remaining TTL.
        """
        fixed = [k for k in kwargs if k in STRUCTURAL_PARAMS]
        if fixed:
            raise ValueError(f"Cannot change {', '.join(fixed)} after construction.")
        new_params = copy.deepcopy(self.param)
        for key, value in kwargs.items():
            if not hasattr(new_params, key):
                raise ValueError(f"Unknown parameter {key}.")
            setattr(new_params, key, value)
        new_params.validate()
        qc_changed = not np.array_equal(new_params.Qc, self.param.Qc)
        self.param = new_params

        if self._default_definitions:
            self.feature_definitions = default_feature_definitions(new_params)
        self._build_helpers()
        for definition, local_map in zip(self.feature_definitions, self.local_maps):
            local_map.ttl_full = new_params.TTL
            local_map.local_map_range = new_params.local_map_range
            local_map.density = self._map_density(definition)
        if qc_changed:
            self.cur_trajectory.set_process_noise(new_params.Qc)
            self.prev_trajectory.set_process_noise(new_params.Qc)

    # state

    @property
    def pose(self):
        """Terminal pose (map <- lidar) of the last processed window."""
        return self._pose.copy()

    @property
    def velocity(self):
        return self._velocity.copy()

    def reset_trajectory(self):
        self.cur_trajectory.reset()
        self.prev_trajectory.reset()
        self._pose = np.eye(4)
        self._velocity = np.zeros(6)

    # input

    def add_points(self, points, tick, stamp):
        """
        Adds the points captured at one tick.

        Args:
            points: iterable of (x, y, z, intensity, ring).
            tick (int): capture tick within the current scan.
            stamp (float): capture time.

        Raises:
            ScanOrderError: the completed window's ticks are out of order. That
                window is discarded; these points still open the next one.
        """
        p = self.param
        window_closed = False
        if self.prv_tick is not None and tick - self.prv_tick < -p.wrap_tolerance:
            self.n_scan_in_batch = (self.n_scan_in_batch + 1) % p.n_window
            window_closed = self.n_scan_in_batch == 0
        self.prv_tick = tick

        try:
            if window_closed:
                self._process_window(stamp)
        finally:
            window_tick = tick + self.n_scan_in_batch * p.max_ticks
            for x, y, z, intensity, ring in points:
                self.signals.append(x, y, z, intensity, int(ring), window_tick)

    def _process_window(self, stamp):
        try:
            self.generate_features()
        except ScanOrderError:
            self._discard_window(stamp)
            raise

        if self.initialized:
            for i in range(self.param.opt_iters):
                if i > 0:
                    last_transform = self.cur_trajectory.terminal.pose.copy()
                if not self.match():
                    self._discard_window(stamp)
                    return
                if i > 0 and is_near(self.cur_trajectory.terminal.pose, last_transform,
                                     self.param.diff_tol):
                    break

            self.window_count += 1
            self._pose = self.cur_trajectory.terminal.pose.copy()
            self._velocity = self.cur_trajectory.terminal.vel.copy()
            if self.trajectory_writer is not None:
                self.trajectory_writer.write(stamp, self._pose)
            if self.param.output_correspondences:
                write_correspondences(self.param.output_dir, self.file_prefix,
                                      self.correspondence_rows())
            if self.output_channel is not None:
                self.output_channel.publish(self.undistort(stamp))
        self.rollover(stamp)

    def _discard_window(self, stamp):
        self.prv_time = self.cur_time
        self.cur_time = stamp
        self.signals.clear()
        self.feature_points = self._empty_features()
        self.feature_corrs = [[] for _ in self.feature_definitions]

    # window processing

    def generate_features(self):
        self.feature_points = self.extractor.extract(self.signals)

    def _feature_arrays(self, f_idx):
        """All points of one feature type: (xyz (n,3), ticks (n,))."""
        pts = np.concatenate(self.feature_points[f_idx])
        return pts['xyz'].reshape(-1, 3), pts['tick']

    def match(self):
        """
        One correspondence search and solve over the current window.

        Returns:
            bool: False when the window was degenerate; the trajectory is
            then reset and the engine is no longer initialized.
        """
        p = self.param
        traj = self.cur_trajectory
        blocks = []
        if p.motion_prior:
            blocks.append(TrajectoryPrior(traj.intervals[0].inv_covariance_sqrt,
                                          traj.prior_pose, traj.prior_twist))
        for k, interval in enumerate(traj.intervals):
            blocks.append(ConstantVelocityPrior(k, interval))

        measurements = []
        self.feature_corrs = [[] for _ in self.feature_definitions]
        for f_idx, definition in enumerate(self.feature_definitions):
            local_map = self.local_maps[f_idx]
            if len(local_map) == 0:
                continue
            for ring in range(p.n_ring):
                pts = self.feature_points[f_idx][ring]
                if len(pts) == 0:
                    continue
                intervals, hats, candles = traj.interpolation_matrices(pts['tick'])
                poses = traj.poses_at(pts['tick'])
                queries = transform_points(poses, pts['xyz'])
                for pt_idx in range(len(pts)):
                    residual = self._build_residual(local_map, definition.residual,
                                                    pts['xyz'][pt_idx], queries[pt_idx],
                                                    poses[pt_idx], intervals[pt_idx],
                                                    hats[pt_idx], candles[pt_idx])
                    if residual is None:
                        continue
                    residual, indices = residual
                    local_map.mark_corresponded(indices)
                    self.feature_corrs[f_idx].append((ring, pt_idx, indices))
                    measurements.append(residual)

        try:
            result = self.solver.solve(traj, blocks, measurements)
        except DegenerateWindowError as err:
            logger.error("Less than expected residuals, resetting: %s", err)
            self.reset_trajectory()
            self.initialized = False
            return False
        if result is not None and p.solution_remapping:
            self.remap_solution(result.jac)
        return True

    def remap_solution(self, jacobian):
        """
        Projects the change of the free knots since the operating point
        (prev_trajectory) off the weakly observable directions of `jacobian`,
        then makes the remapped trajectory the new operating point.
        """
        cur, prev = self.cur_trajectory, self.prev_trajectory
        free = self.solver.free_knots(len(cur.knots))
        diff = np.concatenate([
            np.concatenate((se3_minus(cur.knots[i].pose, prev.knots[i].pose),
                            cur.knots[i].vel - prev.knots[i].vel))
            for i in free
        ])
        mapped = self.solver.remap(jacobian, diff)
        for col, i in enumerate(free):
            delta = mapped[12 * col:12 * col + 12]
            cur.knots[i] = TrajectoryKnot(se3_plus(prev.knots[i].pose, delta[:6]),
                                          prev.knots[i].vel + delta[6:])
        prev.copy_from(cur)

    def _build_residual(self, local_map, kind, point, query, pose, interval, hat, candle):
        """
        Searches the correspondence of one feature point and gates the
        resulting residual. Returns (residual, map indices) or None.
        """
        p = self.param
        indices = find_corresponding_points(local_map, query, kind,
                                            p.max_correspondence_dist, p.azimuth_tol)
        if indices is None:
            return None
        if p.no_extrapolation and out_of_bounds(local_map, query, kind, indices,
                                                p.max_extrapolation,
                                                p.check_plane_extrapolation):
            return None

        covariance = None
        if p.use_weighting:
            R = pose[:3, :3]
            covariance = R @ self.range_sensor.euclidean_covariance(point) @ R.T
        map_points = local_map.points[indices]
        try:
            if kind == ResidualKind.POINT_TO_LINE and p.treat_lines_as_planes:
                residual = MeasurementResidual.line_as_plane(point, map_points, interval, hat,
                                                             candle, covariance, p.use_weighting)
            else:
                residual = MeasurementResidual(kind, point, map_points, interval, hat, candle,
                                               covariance, p.use_weighting)
            value = residual.evaluate(self.cur_trajectory.knots)
        except ResidualEvaluationError as err:
            logger.error("Cost function did not evaluate: %s", err)
            return None
        if np.linalg.norm(value) > residual.loss_scale * p.max_residual_val:
            return None
        return residual, indices

    def rollover(self, stamp):
        self.prv_time = self.cur_time
        self.cur_time = stamp

        self._build_maps()
        self.signals.clear()
        if not self.initialized:
            # avoid initializing against a partial scan
            if not self.full_revolution:
                self.full_revolution = True
                return
            feature_count = sum(len(m) for m in self.local_maps)
            if feature_count >= self.param.n_edge + self.param.n_flat:
                self.initialized = True
                logger.info("Initialized with %d map features", feature_count)
        self.cur_trajectory.extrapolate()
        self.prev_trajectory.copy_from(self.cur_trajectory)

    def _build_maps(self):
        for f_idx, local_map in enumerate(self.local_maps):
            local_map.evict()
            xyz, ticks = self._feature_arrays(f_idx)
            inserted = local_map.insert(self.cur_trajectory.transform_to_map(xyz, ticks))
            logger.debug("Feature type %d: inserted %d, map size %d",
                         f_idx, inserted, len(local_map))

    # output

    def correspondence_rows(self):
        """
        Per feature type, one row per correspondence: raw point, matched map
        points in the lidar frame at window end, corrected point.
        """
        T_end_inv = se3_inverse(self.cur_trajectory.terminal.pose)
        rows = []
        for f_idx, corrs in enumerate(self.feature_corrs):
            type_rows = []
            for ring, pt_idx, indices in corrs:
                pt = self.feature_points[f_idx][ring][pt_idx]
                raw = pt['xyz']
                corrected = self.cur_trajectory.transform_to_cur_lidar(raw, [pt['tick']])[0]
                targets = transform_points(T_end_inv, self.local_maps[f_idx].points[indices])
                type_rows.append(np.concatenate((raw, targets.ravel(), corrected)))
            rows.append(np.array(type_rows))
        return rows

    def undistort(self, stamp):
        """Builds the output record of the solved window."""
        traj = self.cur_trajectory
        clouds = [self.signals.points(r) for r in range(self.param.n_ring)]
        cloud = np.concatenate(clouds)
        xyz = traj.transform_to_cur_lidar(cloud['xyz'].reshape(-1, 3), cloud['tick'])
        intensity = np.clip(cloud['intensity'], self.param.min_intensity, self.param.max_intensity)

        features = []
        for f_idx in range(len(self.feature_definitions)):
            f_xyz, f_ticks = self._feature_arrays(f_idx)
            features.append(traj.transform_to_cur_lidar(f_xyz, f_ticks))

        return OdometryOutput(
            stamp=stamp,
            pose=traj.terminal.pose.copy(),
            velocity=traj.terminal.vel.copy(),
            undistorted_cloud=np.column_stack((xyz, intensity)),
            undistorted_features=features,
            correspondences=self.correspondence_rows(),
            map_features=[m.points.copy() for m in self.local_maps],
        )

    def register_output_function(self, callback):
        """Runs callback(OdometryOutput) on a consumer thread after each solved window."""
        if self.output_channel is not None:
            self.output_channel.close()
        self.output_channel = OutputChannel(callback)

    def close(self):
        if self.output_channel is not None:
            self.output_channel.close()
            self.output_channel = None
        if self.trajectory_writer is not None:
            self.trajectory_writer.close()
            self.trajectory_writer = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
