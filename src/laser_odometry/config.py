from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

import numpy as np


class Kernel(Enum):
    LOAM = 0      # curvature (range)
    LOG = 1       # laplacian of gaussian (intensity)
    FOG = 2       # first derivative of gaussian (intensity)
    RNG_VAR = 3   # sample variance of range
    INT_VAR = 4   # sample variance of intensity


class SelectionPolicy(Enum):
    NEAR_ZERO = 0
    HIGH_POS = 1
    HIGH_NEG = 2


class ResidualKind(Enum):
    POINT_TO_LINE = 0
    POINT_TO_PLANE = 1

    @property
    def n_neighbours(self):
        return 2 if self is ResidualKind.POINT_TO_LINE else 3


@dataclass(frozen=True)
class Criteria:
    kernel: Kernel
    policy: SelectionPolicy
    threshold: float


@dataclass(frozen=True)
class FeatureDefinition:
    """
    One feature type. The first criterion is the primary one: its score is
    used to rank candidates during selection.
    """
    criteria: Tuple[Criteria, ...]
    residual: ResidualKind
    n_limit: int


@dataclass
class RangeSensorParams:
    sigma_range: float = 0.02       # m
    sigma_azimuth: float = 0.003    # rad
    sigma_elevation: float = 0.003  # rad


@dataclass
class LaserOdomParams:
    """
    Every tunable of the odometry engine. Build once, hand to LaserOdom.
    """
    # sensor / windowing
    n_ring: int = 16
    max_ticks: int = 36000
    n_window: int = 1
    scan_period: float = 0.1        # seconds covered by one optimization window
    wrap_tolerance: int = 200
    min_intensity: float = 0.0
    max_intensity: float = 255.0
    sensor_params: RangeSensorParams = field(default_factory=RangeSensorParams)

    # trajectory model
    num_trajectory_states: int = 3
    Qc: np.ndarray = field(default_factory=lambda: np.full(6, 100.0))

    # feature extraction
    variance_window: int = 11
    angular_bins: int = 12
    key_radius: int = 5
    occlusion_tol: float = 0.1      # fraction of max_ticks
    occlusion_tol_2: float = 0.1    # range discontinuity, m
    parallel_tol: float = 0.002
    edge_tol: float = 0.1
    flat_tol: float = 0.1
    int_edge_tol: float = 2.0
    int_flat_tol: float = 0.1
    variance_limit_rng: float = 0.1
    n_edge: int = 40
    n_flat: int = 100
    n_int_edge: int = 0

    # local map
    TTL: int = 5
    local_map_range: float = 10000.0
    edge_map_density: float = 0.01  # squared distance, m^2
    flat_map_density: float = 0.04  # squared distance, m^2

    # correspondences
    max_correspondence_dist: float = 1.0
    azimuth_tol: float = 0.0174532925199433
    no_extrapolation: bool = False
    max_extrapolation: float = 0.0
    check_plane_extrapolation: bool = True

    # residuals / solver
    max_residual_val: float = 0.1
    robust_param: float = 0.2
    use_weighting: bool = False
    treat_lines_as_planes: bool = False
    motion_prior: bool = True
    lock_first: bool = True
    min_residuals: int = 30
    opt_iters: int = 25
    max_inner_iters: int = 100
    diff_tol: float = 1e-5
    solver_threads: int = 0
    only_extract_features: bool = False
    solution_remapping: bool = False
    min_eigen: float = 100.0

    # output
    output_trajectory: bool = False
    output_correspondences: bool = False
    output_dir: str = "."
    trajectory_path: Optional[str] = None  # overrides the timestamped file name

    @property
    def ticks_per_window(self):
        return self.max_ticks * self.n_window

    def validate(self):
        if self.num_trajectory_states < 2:
            raise ValueError("Number of parameter states must be at least 2")
        if self.n_ring <= 0:
            raise ValueError("n_ring must be positive.")
        if self.max_ticks <= 0 or self.n_window <= 0:
            raise ValueError("max_ticks and n_window must be positive.")
        if self.scan_period <= 0:
            raise ValueError("scan_period must be positive.")
        if self.variance_window < 2:
            raise ValueError("variance_window must be at least 2.")
        if self.angular_bins <= 0:
            raise ValueError("angular_bins must be positive.")
        if np.asarray(self.Qc).shape != (6,) or np.any(np.asarray(self.Qc) <= 0):
            raise ValueError("Qc must be a positive 6-vector.")


def default_feature_definitions(params):
    """
    The five feature types: two range edges, range flats and two intensity edges.
    """
    edge_high = (Criteria(Kernel.LOAM, SelectionPolicy.HIGH_POS, params.edge_tol),)
    edge_low = (Criteria(Kernel.LOAM, SelectionPolicy.HIGH_NEG, params.edge_tol),)
    flat = (Criteria(Kernel.LOAM, SelectionPolicy.NEAR_ZERO, params.flat_tol),)
    edge_int_high = (
        Criteria(Kernel.FOG, SelectionPolicy.HIGH_POS, params.int_edge_tol),
        Criteria(Kernel.LOAM, SelectionPolicy.NEAR_ZERO, params.int_flat_tol),
        Criteria(Kernel.RNG_VAR, SelectionPolicy.NEAR_ZERO, params.variance_limit_rng),
    )
    edge_int_low = (
        Criteria(Kernel.FOG, SelectionPolicy.HIGH_NEG, params.int_edge_tol),
        Criteria(Kernel.LOAM, SelectionPolicy.NEAR_ZERO, params.int_flat_tol),
        Criteria(Kernel.RNG_VAR, SelectionPolicy.NEAR_ZERO, params.variance_limit_rng),
    )
    return (
        FeatureDefinition(edge_high, ResidualKind.POINT_TO_LINE, params.n_edge),
        FeatureDefinition(edge_low, ResidualKind.POINT_TO_LINE, params.n_edge),
        FeatureDefinition(flat, ResidualKind.POINT_TO_PLANE, params.n_flat),
        FeatureDefinition(edge_int_high, ResidualKind.POINT_TO_LINE, params.n_int_edge),
        FeatureDefinition(edge_int_low, ResidualKind.POINT_TO_LINE, params.n_int_edge),
    )
