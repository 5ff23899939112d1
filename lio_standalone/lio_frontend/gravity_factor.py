"""Attitude constraint from an estimated gravity direction.

The residual is the 2-D tangent-plane error on the unit sphere between
the rotated body reference direction R * bRef and the direction opposite
to the measured gravity nZ. It is zero when the body reference axis
points away from gravity, i.e. along the reaction force an accelerometer
at rest senses.
"""
import numpy as np

from .factors import Factor, Gaussian
from .so3 import skew


def tangent_basis(p: np.ndarray) -> np.ndarray:
    """(3, 2) orthonormal basis of the tangent plane of the unit sphere at p."""
    # axis of the smallest component, as far from p as possible
    axis = np.zeros(3)
    axis[int(np.argmin(np.abs(p)))] = 1.0
    b1 = np.cross(p, axis)
    b1 = b1 / np.linalg.norm(b1)
    b2 = np.cross(p, b1)
    return np.column_stack([b1, b2])


class AttitudeResidual:
    """Direction alignment shared by the rotation and pose variants."""

    def __init__(self, nZ: np.ndarray, bRef: np.ndarray = (0.0, 0.0, -1.0)):
        nZ = np.asarray(nZ, dtype=np.float64)
        bRef = np.asarray(bRef, dtype=np.float64)
        self.nZ = nZ / np.linalg.norm(nZ)
        self.bRef = bRef / np.linalg.norm(bRef)
        self.nRef = -self.nZ
        self.basis = tangent_basis(self.nRef)

    def error(self, R: np.ndarray) -> np.ndarray:
        return self.basis.T @ (R @ self.bRef)

    def jacobian(self, R: np.ndarray) -> np.ndarray:
        """(2, 3) derivative with respect to a right rotation perturbation."""
        return self.basis.T @ (-R @ skew(self.bRef))


class Rot3GravityFactor(Factor):

    def __init__(self, key, nZ, noise: Gaussian, bRef=(0.0, 0.0, -1.0)):
        super().__init__([key], noise)
        self.residual = AttitudeResidual(nZ, bRef)

    def unwhitened_error(self, values):
        return self.residual.error(values[self.keys[0]].matrix)

    def jacobians(self, values):
        return [self.residual.jacobian(values[self.keys[0]].matrix)]


class Pose3GravityFactor(Factor):
    """Same constraint on the rotation part of a pose."""

    def __init__(self, key, nZ, noise: Gaussian, bRef=(0.0, 0.0, -1.0)):
        super().__init__([key], noise)
        self.residual = AttitudeResidual(nZ, bRef)

    def unwhitened_error(self, values):
        return self.residual.error(values[self.keys[0]].rot)

    def jacobians(self, values):
        H = np.zeros((2, 6))
        H[:, 0:3] = self.residual.jacobian(values[self.keys[0]].rot)
        return [H]
