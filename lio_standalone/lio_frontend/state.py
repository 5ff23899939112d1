"""Manifold value types held by the estimator, with boxplus/boxminus.

Tangent layouts:
    Rot3     [0:3] rotation (right perturbation R @ Exp(d))
    Pose3    [0:3] rotation, [3:6] translation in the body frame
    ImuBias  [0:3] accelerometer bias, [3:6] gyroscope bias
Velocities are plain (3,) arrays with ordinary addition.
"""
import numpy as np
from .so3 import exp_so3, log_so3, quaternion_to_matrix, matrix_to_quaternion


class Rot3:
    """Rotation-only variable."""

    __slots__ = ['matrix']
    dim = 3

    def __init__(self, matrix: np.ndarray = None):
        self.matrix = np.eye(3) if matrix is None else np.asarray(matrix, dtype=np.float64)

    def boxplus(self, delta: np.ndarray) -> 'Rot3':
        return Rot3(self.matrix @ exp_so3(delta))

    def boxminus(self, other: 'Rot3') -> np.ndarray:
        """self (-) other, so that other.boxplus(result) == self."""
        return log_so3(other.matrix.T @ self.matrix)


class Pose3:
    """Rigid transform mapping body coordinates into the parent frame."""

    __slots__ = ['rot', 'pos']
    dim = 6

    def __init__(self, rot: np.ndarray = None, pos: np.ndarray = None):
        self.rot = np.eye(3) if rot is None else np.asarray(rot, dtype=np.float64)
        self.pos = np.zeros(3) if pos is None else np.asarray(pos, dtype=np.float64)

    @classmethod
    def from_quaternion(cls, q: np.ndarray, pos: np.ndarray) -> 'Pose3':
        return cls(quaternion_to_matrix(q), np.array(pos, dtype=np.float64))

    def matrix(self) -> np.ndarray:
        T = np.eye(4)
        T[:3, :3] = self.rot
        T[:3, 3] = self.pos
        return T

    def quaternion(self) -> np.ndarray:
        return matrix_to_quaternion(self.rot)

    def compose(self, other: 'Pose3') -> 'Pose3':
        return Pose3(self.rot @ other.rot, self.rot @ other.pos + self.pos)

    def inverse(self) -> 'Pose3':
        rot_t = self.rot.T
        return Pose3(rot_t, -rot_t @ self.pos)

    def between(self, other: 'Pose3') -> 'Pose3':
        """self^-1 * other."""
        return self.inverse().compose(other)

    def boxplus(self, delta: np.ndarray) -> 'Pose3':
        return Pose3(self.rot @ exp_so3(delta[0:3]), self.pos + self.rot @ delta[3:6])

    def boxminus(self, other: 'Pose3') -> np.ndarray:
        delta = np.zeros(6)
        delta[0:3] = log_so3(other.rot.T @ self.rot)
        delta[3:6] = other.rot.T @ (self.pos - other.pos)
        return delta

    def copy(self) -> 'Pose3':
        return Pose3(self.rot.copy(), self.pos.copy())


class ImuBias:
    """Constant accelerometer and gyroscope bias."""

    __slots__ = ['acc', 'gyr']
    dim = 6

    def __init__(self, acc: np.ndarray = None, gyr: np.ndarray = None):
        self.acc = np.zeros(3) if acc is None else np.asarray(acc, dtype=np.float64)
        self.gyr = np.zeros(3) if gyr is None else np.asarray(gyr, dtype=np.float64)

    def vector(self) -> np.ndarray:
        return np.concatenate([self.acc, self.gyr])

    def boxplus(self, delta: np.ndarray) -> 'ImuBias':
        return ImuBias(self.acc + delta[0:3], self.gyr + delta[3:6])

    def boxminus(self, other: 'ImuBias') -> np.ndarray:
        return self.vector() - other.vector()

    def copy(self) -> 'ImuBias':
        return ImuBias(self.acc.copy(), self.gyr.copy())

    def __repr__(self):
        return f"ImuBias(acc={self.acc}, gyr={self.gyr})"


class NavState:
    """Pose and world-frame velocity of the IMU."""

    __slots__ = ['pose', 'vel']

    def __init__(self, pose: Pose3 = None, vel: np.ndarray = None):
        self.pose = Pose3() if pose is None else pose
        self.vel = np.zeros(3) if vel is None else np.asarray(vel, dtype=np.float64)

    @property
    def rot(self) -> np.ndarray:
        return self.pose.rot

    @property
    def pos(self) -> np.ndarray:
        return self.pose.pos

    def copy(self) -> 'NavState':
        return NavState(self.pose.copy(), self.vel.copy())


def value_dim(value) -> int:
    """Tangent dimension of a graph value."""
    if isinstance(value, np.ndarray):
        return value.size
    return value.dim


def value_boxplus(value, delta: np.ndarray):
    if isinstance(value, np.ndarray):
        return value + delta
    return value.boxplus(delta)


def value_boxminus(value, other) -> np.ndarray:
    if isinstance(value, np.ndarray):
        return value - other
    return value.boxminus(other)
