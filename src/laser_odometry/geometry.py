import numpy as np
from scipy.spatial.transform import Rotation

# Twist ordering throughout is xi = [v_x, v_y, v_z, omega_x, omega_y, omega_z].
# Poses are 4x4 homogeneous matrices, perturbed on the left: T' = exp(delta) T.

_SMALL_ANGLE = 1e-6

# SO(3) operations

def so3_hat(omega):
    """
    Maps a 3-vector omega to its corresponding skew-symmetric matrix (so(3)).
    omega: (3,) array
    Returns: (3,3) skew-symmetric matrix
    """
    if not isinstance(omega, np.ndarray) or omega.shape != (3,):
        raise ValueError("Input omega must be a (3,) numpy array.")
    return np.array([
        [0, -omega[2], omega[1]],
        [omega[2], 0, -omega[0]],
        [-omega[1], omega[0], 0]
    ])

def so3_vee(Omega):
    """
    Maps a skew-symmetric matrix Omega (so(3)) to its corresponding 3-vector.
    Omega: (3,3) skew-symmetric matrix
    Returns: (3,) array
    """
    if not isinstance(Omega, np.ndarray) or Omega.shape != (3,3):
        raise ValueError("Input Omega must be a (3,3) numpy array.")
    if not np.allclose(Omega, -Omega.T, atol=1e-7):
        raise ValueError("Input Omega must be skew-symmetric.")
    return np.array([Omega[2,1], Omega[0,2], Omega[1,0]])


def so3_exp(omega_hat):
    """
    Computes the SO(3) matrix from an so(3) element omega_hat (a skew-symmetric matrix).
    omega_hat: (3,3) skew-symmetric matrix (so(3) element)
    Returns: (3,3) rotation matrix (SO(3) element)
    """
    if not isinstance(omega_hat, np.ndarray) or omega_hat.shape != (3,3):
        raise ValueError("Input omega_hat must be a (3,3) numpy array.")
    return Rotation.from_rotvec(so3_vee(omega_hat)).as_matrix()

def so3_log(R):
    """
    Computes the so(3) element (skew-symmetric matrix) from an SO(3) rotation matrix.
    R: (3,3) rotation matrix (SO(3) element)
    Returns: (3,3) skew-symmetric matrix (so(3) element)
    """
    if not isinstance(R, np.ndarray) or R.shape != (3,3):
        raise ValueError("Input R must be a (3,3) numpy array.")
    return so3_hat(Rotation.from_matrix(R).as_rotvec())


def _hat_batch(omegas):
    """(n,3) -> (n,3,3) skew-symmetric matrices."""
    n = omegas.shape[0]
    out = np.zeros((n, 3, 3))
    out[:, 0, 1] = -omegas[:, 2]
    out[:, 0, 2] = omegas[:, 1]
    out[:, 1, 0] = omegas[:, 2]
    out[:, 1, 2] = -omegas[:, 0]
    out[:, 2, 0] = -omegas[:, 1]
    out[:, 2, 1] = omegas[:, 0]
    return out


def _so3_left_jacobian_batch(phis):
    theta = np.linalg.norm(phis, axis=1)
    small = theta < _SMALL_ANGLE
    safe = np.where(small, 1.0, theta)
    a = np.where(small, 0.5 - theta**2 / 24.0, (1.0 - np.cos(safe)) / safe**2)
    b = np.where(small, 1.0 / 6.0 - theta**2 / 120.0, (safe - np.sin(safe)) / safe**3)
    P = _hat_batch(phis)
    return np.eye(3) + a[:, None, None] * P + b[:, None, None] * (P @ P)


def so3_left_jacobian(phi):
    """
    Left Jacobian of SO(3), J(phi) = I + (1-cos t)/t^2 phi^ + (t - sin t)/t^3 phi^ phi^.
    phi: (3,) rotation vector
    Returns: (3,3) matrix
    """
    return _so3_left_jacobian_batch(np.asarray(phi, dtype=float).reshape(1, 3))[0]


def so3_left_jacobian_inverse(phi):
    phi = np.asarray(phi, dtype=float)
    theta = np.linalg.norm(phi)
    P = so3_hat(phi)
    if theta < _SMALL_ANGLE:
        c = 1.0 / 12.0
    else:
        c = 1.0 / theta**2 - (1.0 + np.cos(theta)) / (2.0 * theta * np.sin(theta))
    return np.eye(3) - 0.5 * P + c * (P @ P)


# SE(3) operations (represented as 4x4 homogeneous matrices)

def se3_hat(xi):
    """
    Maps a 6-vector xi (twist coordinates: v, omega) to its corresponding
    4x4 matrix representation in se(3).
    xi: (6,) array [v_x, v_y, v_z, omega_x, omega_y, omega_z]
    Returns: (4,4) matrix in se(3)
    """
    if not isinstance(xi, np.ndarray) or xi.shape != (6,):
        raise ValueError("Input xi must be a (6,) numpy array.")
    T_xi = np.zeros((4,4))
    T_xi[:3,:3] = so3_hat(xi[3:])
    T_xi[:3,3] = xi[:3]
    return T_xi

def se3_vee(Xi_hat):
    """
    Maps a 4x4 matrix Xi_hat in se(3) back to its 6-vector twist coordinates.
    Xi_hat: (4,4) matrix in se(3)
    Returns: (6,) array [v_x, v_y, v_z, omega_x, omega_y, omega_z]
    """
    if not isinstance(Xi_hat, np.ndarray) or Xi_hat.shape != (4,4):
        raise ValueError("Input Xi_hat must be a (4,4) numpy array.")
    if not np.allclose(Xi_hat[3,:], 0):
        raise ValueError("Input Xi_hat must have its bottom row as zeros for se(3).")
    return np.concatenate((Xi_hat[:3,3], so3_vee(Xi_hat[:3,:3])))

def se3_exp(xi_hat):
    """
    Computes the SE(3) matrix from an se(3) element xi_hat (4x4 matrix).
    xi_hat: (4,4) matrix (se(3) element)
    Returns: (4,4) homogeneous transformation matrix (SE(3) element)
    """
    return se3_exp_batch(se3_vee(xi_hat).reshape(1, 6))[0]

def se3_log(T):
    """
    Computes the se(3) element (4x4 matrix) from an SE(3) transformation matrix.
    T: (4,4) homogeneous transformation matrix (SE(3) element)
    Returns: (4,4) matrix (se(3) element)
    """
    if not isinstance(T, np.ndarray) or T.shape != (4,4):
        raise ValueError("Input T must be a (4,4) numpy array.")
    phi = Rotation.from_matrix(T[:3,:3]).as_rotvec()
    rho = so3_left_jacobian_inverse(phi) @ T[:3,3]
    return se3_hat(np.concatenate((rho, phi)))


def se3_exp_batch(xis):
    """
    Vectorized exponential map.
    xis: (n,6) twists
    Returns: (n,4,4) poses
    """
    xis = np.asarray(xis, dtype=float)
    n = xis.shape[0]
    T = np.zeros((n, 4, 4))
    T[:, :3, :3] = Rotation.from_rotvec(xis[:, 3:]).as_matrix()
    T[:, :3, 3] = np.einsum('nij,nj->ni', _so3_left_jacobian_batch(xis[:, 3:]), xis[:, :3])
    T[:, 3, 3] = 1.0
    return T


def _se3_q_matrix(xi):
    rho, phi = xi[:3], xi[3:]
    theta = np.linalg.norm(phi)
    R = so3_hat(rho)
    P = so3_hat(phi)
    if theta < 1e-2:
        t2 = theta**2
        c1 = 1.0 / 6.0 - t2 / 120.0
        c2 = 1.0 / 24.0 - t2 / 720.0
        c3 = 1.0 / 120.0 - t2 / 2520.0
    else:
        s, c = np.sin(theta), np.cos(theta)
        c1 = (theta - s) / theta**3
        c2 = (theta**2 + 2.0 * c - 2.0) / (2.0 * theta**4)
        c3 = (2.0 * theta - 3.0 * s + theta * c) / (2.0 * theta**5)
    PR = P @ R
    RP = R @ P
    PRP = PR @ P
    return (0.5 * R + c1 * (PR + RP + PRP)
            + c2 * (P @ PR + RP @ P - 3.0 * PRP)
            + c3 * (PRP @ P + P @ PRP))


def se3_left_jacobian(xi):
    """
    Left Jacobian of SE(3) for twist ordering [v, omega].
    xi: (6,) array
    Returns: (6,6) matrix
    """
    xi = np.asarray(xi, dtype=float)
    J = np.zeros((6, 6))
    Jr = so3_left_jacobian(xi[3:])
    J[:3, :3] = Jr
    J[3:, 3:] = Jr
    J[:3, 3:] = _se3_q_matrix(xi)
    return J


def se3_left_jacobian_inverse(xi):
    xi = np.asarray(xi, dtype=float)
    Jinv_r = so3_left_jacobian_inverse(xi[3:])
    Jinv = np.zeros((6, 6))
    Jinv[:3, :3] = Jinv_r
    Jinv[3:, 3:] = Jinv_r
    Jinv[:3, 3:] = -Jinv_r @ _se3_q_matrix(xi) @ Jinv_r
    return Jinv


def se3_inverse(T):
    R = T[:3,:3]; t = T[:3,3]
    Ti = np.eye(4)
    Ti[:3,:3] = R.T
    Ti[:3,3] = -R.T @ t
    return Ti


def se3_plus(T, delta):
    """Left perturbation on the manifold: exp(delta) * T."""
    return se3_exp_batch(np.asarray(delta, dtype=float).reshape(1, 6))[0] @ T


def se3_minus(T1, T2):
    """Tangent vector delta such that T1 = exp(delta) * T2."""
    return se3_vee(se3_log(T1 @ se3_inverse(T2)))


def is_near(T1, T2, tol):
    return np.linalg.norm(se3_minus(T1, T2)) < tol


def transform_points(T, points):
    """
    Applies one pose (4,4) or a stack of poses (n,4,4) to (n,3) points.
    """
    points = np.asarray(points, dtype=float)
    if T.ndim == 2:
        return points @ T[:3,:3].T + T[:3,3]
    return np.einsum('nij,nj->ni', T[:, :3, :3], points) + T[:, :3, 3]
