"""SO(3) operations: Rodrigues formula, skew-symmetric matrix, Log map,
right Jacobian and roll/pitch/yaw conversions.
"""
import numpy as np
from scipy.spatial.transform import Rotation


def skew(v: np.ndarray) -> np.ndarray:
    """Skew-symmetric matrix from 3-vector.

    Args:
        v: (3,) vector

    Returns:
        (3, 3) skew-symmetric matrix such that skew(v) @ w == cross(v, w)
    """
    return np.array([
        [0.0, -v[2], v[1]],
        [v[2], 0.0, -v[0]],
        [-v[1], v[0], 0.0]
    ])


def exp_so3(ang: np.ndarray) -> np.ndarray:
    """Exponential map: so(3) -> SO(3) via Rodrigues formula.

    Args:
        ang: (3,) angle-axis vector (rotation axis * angle in radians)

    Returns:
        (3, 3) rotation matrix
    """
    ang_norm = np.linalg.norm(ang)
    if ang_norm > 1e-7:
        r_axis = ang / ang_norm
        K = skew(r_axis)
        return np.eye(3) + np.sin(ang_norm) * K + (1.0 - np.cos(ang_norm)) * (K @ K)
    # First order keeps the map differentiable around identity
    return np.eye(3) + skew(ang)


def log_so3(R: np.ndarray) -> np.ndarray:
    """Logarithm map: SO(3) -> so(3).

    Args:
        R: (3, 3) rotation matrix

    Returns:
        (3,) angle-axis vector
    """
    K = np.array([R[2, 1] - R[1, 2], R[0, 2] - R[2, 0], R[1, 0] - R[0, 1]])
    s = 0.5 * np.linalg.norm(K)
    c = 0.5 * (np.trace(R) - 1.0)
    if s < 1e-7:
        if c > 0.0:
            return 0.5 * K
        # Angle close to pi, the antisymmetric part carries no axis
        return Rotation.from_matrix(R).as_rotvec()
    theta = np.arctan2(s, c)
    return theta / (2.0 * s) * K


def right_jacobian(phi: np.ndarray) -> np.ndarray:
    """Right Jacobian of SO(3): Exp(phi + d) ~= Exp(phi) Exp(Jr(phi) d)."""
    theta = np.linalg.norm(phi)
    K = skew(phi)
    if theta < 1e-5:
        return np.eye(3) - 0.5 * K
    theta2 = theta * theta
    return (np.eye(3)
            - (1.0 - np.cos(theta)) / theta2 * K
            + (theta - np.sin(theta)) / (theta2 * theta) * (K @ K))


def rpy_to_matrix(roll: float, pitch: float, yaw: float) -> np.ndarray:
    """Rotation Rz(yaw) @ Ry(pitch) @ Rx(roll)."""
    cr, sr = np.cos(roll), np.sin(roll)
    cp, sp = np.cos(pitch), np.sin(pitch)
    cy, sy = np.cos(yaw), np.sin(yaw)
    return np.array([
        [cy * cp, cy * sp * sr - sy * cr, cy * sp * cr + sy * sr],
        [sy * cp, sy * sp * sr + cy * cr, sy * sp * cr - cy * sr],
        [-sp, cp * sr, cp * cr],
    ])


def rot_to_euler(R: np.ndarray) -> np.ndarray:
    """Rotation matrix to [roll, pitch, yaw], inverse of rpy_to_matrix.

    Args:
        R: (3, 3) rotation matrix

    Returns:
        (3,) Euler angles [roll, pitch, yaw] in radians
    """
    sy = np.sqrt(R[0, 0] ** 2 + R[1, 0] ** 2)
    singular = sy < 1e-6
    if not singular:
        x = np.arctan2(R[2, 1], R[2, 2])
        y = np.arctan2(-R[2, 0], sy)
        z = np.arctan2(R[1, 0], R[0, 0])
    else:
        x = np.arctan2(-R[1, 2], R[1, 1])
        y = np.arctan2(-R[2, 0], sy)
        z = 0.0
    return np.array([x, y, z])


def quaternion_to_matrix(q: np.ndarray) -> np.ndarray:
    """Quaternion [x, y, z, w] to rotation matrix."""
    return Rotation.from_quat(q).as_matrix()


def matrix_to_quaternion(R: np.ndarray) -> np.ndarray:
    """Rotation matrix to quaternion [x, y, z, w]."""
    return Rotation.from_matrix(R).as_quat()
