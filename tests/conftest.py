import numpy as np
import pytest

from laser_odometry.config import LaserOdomParams

# Axis aligned room around the sensor: (min, max) per axis, and the return
# intensity of each face.
ROOM = np.array([[-4.0, 6.0], [-5.0, 3.0], [-1.5, 2.5]])
FACE_INTENSITY = np.array([[60.0, 100.0], [30.0, 150.0], [80.0, 120.0]])

N_RING = 16
N_COLUMNS = 360
MAX_TICKS = 36000
SCAN_PERIOD = 0.1


def ring_elevations(n_ring=N_RING):
    return np.deg2rad(np.linspace(-15.0, 15.0, n_ring))


def room_returns(directions):
    """
    Casts unit rays from the origin inside ROOM.
    Returns: (points (n,3), intensity (n,))
    """
    with np.errstate(divide='ignore'):
        t_max = np.where(directions > 0, ROOM[:, 1] / directions,
                         np.where(directions < 0, ROOM[:, 0] / directions, np.inf))
    face_axis = np.argmin(t_max, axis=1)
    t = t_max[np.arange(len(directions)), face_axis]
    face_side = (directions[np.arange(len(directions)), face_axis] > 0).astype(int)
    return directions * t[:, None], FACE_INTENSITY[face_axis, face_side]


def room_revolution(n_ring=N_RING, n_columns=N_COLUMNS, max_ticks=MAX_TICKS, start_stamp=0.0):
    """
    One revolution of a static sensor at the room origin, as a list of
    packets (points, tick, stamp) with points = [(x, y, z, intensity, ring), ...].
    """
    elevations = ring_elevations(n_ring)
    tick_step = max_ticks // n_columns
    packets = []
    for col in range(n_columns):
        azimuth = 2.0 * np.pi * col / n_columns
        dirs = np.column_stack((np.cos(elevations) * np.cos(azimuth),
                                np.cos(elevations) * np.sin(azimuth),
                                np.sin(elevations)))
        pts, intensity = room_returns(dirs)
        rows = [(p[0], p[1], p[2], i, ring)
                for ring, (p, i) in enumerate(zip(pts, intensity))]
        stamp = start_stamp + SCAN_PERIOD * col / n_columns
        packets.append((rows, col * tick_step, stamp))
    return packets


def feed_revolutions(odom, n_revolutions):
    for rev in range(n_revolutions):
        for rows, tick, stamp in room_revolution(start_stamp=rev * SCAN_PERIOD):
            odom.add_points(rows, tick, stamp)


@pytest.fixture
def room_params():
    return LaserOdomParams(
        n_ring=N_RING,
        max_ticks=MAX_TICKS,
        scan_period=SCAN_PERIOD,
        n_edge=12,
        n_flat=24,
        min_residuals=10,
        opt_iters=5,
        max_inner_iters=20,
        solver_threads=1,
    )


@pytest.fixture
def room_packets():
    return room_revolution()


@pytest.fixture
def feed():
    return feed_revolutions
