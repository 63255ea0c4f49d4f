import os

import numpy as np

# Columns of a recorded point stream, one point per line.
POINT_CSV_COLUMNS = ('x', 'y', 'z', 'intensity', 'ring', 'tick', 'stamp')


def read_points_csv(filepath):
    """
    Reads a recorded point stream written as comma separated
    x,y,z,intensity,ring,tick,stamp lines. A header line is skipped if present.

    Returns:
        np.ndarray: structured array with one field per column.
    """
    dtype = [('x', 'f8'), ('y', 'f8'), ('z', 'f8'), ('intensity', 'f8'),
             ('ring', 'i4'), ('tick', 'i8'), ('stamp', 'f8')]
    with open(filepath, 'r') as f:
        first = f.readline().split(',')[0].strip()
    try:
        float(first)
        skip = 0
    except ValueError:
        skip = 1
    data = np.loadtxt(filepath, delimiter=',', skiprows=skip, ndmin=2)
    if data.size == 0:
        return np.zeros(0, dtype=dtype)
    if data.shape[1] != len(POINT_CSV_COLUMNS):
        raise ValueError(f"Expected {len(POINT_CSV_COLUMNS)} columns, got {data.shape[1]}.")
    out = np.zeros(len(data), dtype=dtype)
    for i, name in enumerate(POINT_CSV_COLUMNS):
        out[name] = data[:, i]
    return out


class PLYWriter:
    def __init__(self, filepath):
        self.filepath = filepath

    def write(self, points, intensity=None):
        """
        Writes points (N x 3 float) and an optional per-point intensity to an ASCII PLY file.
        """
        if not isinstance(points, np.ndarray) or points.ndim != 2 or points.shape[1] != 3:
            raise ValueError("Points must be an N x 3 numpy array.")
        if intensity is not None:
            intensity = np.asarray(intensity, dtype=float)
            if intensity.shape != (points.shape[0],):
                raise ValueError("Intensity must hold one value per point.")

        with open(self.filepath, 'w') as f:
            f.write("ply\n")
            f.write("format ascii 1.0\n")
            f.write(f"element vertex {points.shape[0]}\n")
            f.write("property float x\n")
            f.write("property float y\n")
            f.write("property float z\n")
            if intensity is not None:
                f.write("property float intensity\n")
            f.write("end_header\n")

            for i in range(points.shape[0]):
                if intensity is not None:
                    f.write(f"{points[i,0]:.6f} {points[i,1]:.6f} {points[i,2]:.6f} {intensity[i]:.6f}\n")
                else:
                    f.write(f"{points[i,0]:.6f} {points[i,1]:.6f} {points[i,2]:.6f}\n")


class TrajectoryWriter:
    """
    Appends one line per solved window: stamp followed by the row-major 3x4
    pose, comma separated at full precision.
    """

    def __init__(self, filepath):
        self.filepath = filepath
        self.file = None

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def open(self):
        if self.file is None:
            self.file = open(self.filepath, 'a')

    def close(self):
        if self.file:
            self.file.close()
            self.file = None

    def write(self, stamp, pose):
        if self.file is None:
            raise IOError("File not open")
        pose = np.asarray(pose)
        if pose.shape != (4, 4):
            raise ValueError("Pose must be a 4 x 4 numpy array.")
        values = [repr(float(stamp))] + [repr(float(v)) for v in pose[:3, :].ravel()]
        self.file.write(",".join(values) + "\n")
        self.file.flush()


def read_trajectory(filepath):
    """
    Reads a file written by TrajectoryWriter.
    Returns: (stamps (n,), poses (n,4,4))
    """
    data = np.loadtxt(filepath, delimiter=',', ndmin=2)
    if data.size == 0:
        return np.zeros(0), np.zeros((0, 4, 4))
    poses = np.tile(np.eye(4), (len(data), 1, 1))
    poses[:, :3, :] = data[:, 1:13].reshape(-1, 3, 4)
    return data[:, 0], poses


def write_correspondences(output_dir, prefix, correspondences):
    """
    Dumps the correspondence rows of every feature type to
    <prefix>feature_<i>_cor.txt, space separated.

    Returns: list of written paths
    """
    paths = []
    for i, rows in enumerate(correspondences):
        path = os.path.join(output_dir, f"{prefix}feature_{i}_cor.txt")
        rows = np.asarray(rows, dtype=float)
        if rows.size == 0:
            rows = rows.reshape(0, 0)
        np.savetxt(path, rows, delimiter=' ')
        paths.append(path)
    return paths
