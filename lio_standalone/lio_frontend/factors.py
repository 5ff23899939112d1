"""Variable keys, noise models and cost terms for the sliding-window graph.

A factor exposes its variable keys, an unwhitened residual and the
Jacobians of that residual with respect to each variable's tangent space
(right perturbation, see state.py). Jacobians default to central
differences through boxplus; factors with a closed form override them.
"""
import numpy as np

from .preintegration import PreintegratedImu
from .so3 import log_so3
from .state import ImuBias, value_boxminus, value_boxplus, value_dim

# Step for numeric Jacobians
NUMERIC_EPS = 1e-6


def X(k: int) -> tuple:
    """Pose key."""
    return ('x', k)


def V(k: int) -> tuple:
    """Velocity key."""
    return ('v', k)


def B(k: int) -> tuple:
    """Bias key."""
    return ('b', k)


class Gaussian:
    """Gaussian noise model stored as the upper-triangular square-root information."""

    def __init__(self, sqrt_info: np.ndarray):
        self.sqrt_info = np.asarray(sqrt_info, dtype=np.float64)

    @property
    def dim(self) -> int:
        return self.sqrt_info.shape[0]

    @classmethod
    def from_sigmas(cls, sigmas) -> 'Gaussian':
        sigmas = np.asarray(sigmas, dtype=np.float64)
        return cls(np.diag(1.0 / sigmas))

    @classmethod
    def isotropic(cls, dim: int, sigma: float) -> 'Gaussian':
        return cls.from_sigmas(np.full(dim, sigma))

    @classmethod
    def from_covariance(cls, cov: np.ndarray) -> 'Gaussian':
        info = np.linalg.inv(0.5 * (cov + cov.T))
        info = 0.5 * (info + info.T)
        # info = L L^T, sqrt_info = L^T so that sqrt_info^T sqrt_info = info
        return cls(np.linalg.cholesky(info).T)

    def covariance(self) -> np.ndarray:
        R_inv = np.linalg.inv(self.sqrt_info)
        return R_inv @ R_inv.T

    def whiten(self, v: np.ndarray) -> np.ndarray:
        return self.sqrt_info @ v


class Factor:
    """Cost term 0.5 * ||sqrt_info @ r(values)||^2 over a fixed set of keys."""

    def __init__(self, keys, noise: Gaussian):
        self.keys = tuple(keys)
        self.noise = noise

    def unwhitened_error(self, values: dict) -> np.ndarray:
        raise NotImplementedError

    def jacobians(self, values: dict) -> list:
        """d residual / d tangent, one block per key."""
        blocks = []
        for key in self.keys:
            x0 = values[key]
            n = value_dim(x0)
            perturbed = dict(values)
            cols = []
            for i in range(n):
                d = np.zeros(n)
                d[i] = NUMERIC_EPS
                perturbed[key] = value_boxplus(x0, d)
                r_plus = self.unwhitened_error(perturbed)
                perturbed[key] = value_boxplus(x0, -d)
                r_minus = self.unwhitened_error(perturbed)
                cols.append((r_plus - r_minus) / (2.0 * NUMERIC_EPS))
            blocks.append(np.column_stack(cols))
        return blocks

    def linearize(self, values: dict):
        """Whitened residual and whitened Jacobian blocks."""
        r = self.noise.whiten(self.unwhitened_error(values))
        J = [self.noise.sqrt_info @ H for H in self.jacobians(values)]
        return r, J

    def error(self, values: dict) -> float:
        r = self.noise.whiten(self.unwhitened_error(values))
        return 0.5 * float(r @ r)


class PriorFactor(Factor):
    """Unary prior on a pose, velocity or bias."""

    def __init__(self, key, prior, noise: Gaussian):
        super().__init__([key], noise)
        self.prior = prior

    def unwhitened_error(self, values):
        return value_boxminus(values[self.keys[0]], self.prior)

    def jacobians(self, values):
        value = values[self.keys[0]]
        if isinstance(value, (np.ndarray, ImuBias)):
            return [np.eye(value_dim(value))]
        return super().jacobians(values)


class BetweenBiasFactor(Factor):
    """Bias random walk between consecutive keys."""

    def __init__(self, key1, key2, measured: ImuBias, noise: Gaussian):
        super().__init__([key1, key2], noise)
        self.measured = measured

    def unwhitened_error(self, values):
        b1 = values[self.keys[0]]
        b2 = values[self.keys[1]]
        return b2.vector() - b1.vector() - self.measured.vector()

    def jacobians(self, values):
        return [-np.eye(6), np.eye(6)]


class ImuFactor(Factor):
    """Preintegrated IMU constraint between (pose, velocity) at i and j with bias at i.

    Residual [rotation, position, velocity]:
        r_R = Log(dR^T Ri^T Rj)
        r_p = Ri^T (pj - pi - vi dt - 0.5 g dt^2) - dp
        r_v = Ri^T (vj - vi - g dt) - dv
    with deltas bias-corrected to first order.
    """

    def __init__(self, pose_i, vel_i, pose_j, vel_j, bias_i, pim: PreintegratedImu):
        super().__init__([pose_i, vel_i, pose_j, vel_j, bias_i],
                         Gaussian.from_covariance(pim.covariance()))
        self.pim = pim

    def unwhitened_error(self, values):
        pose_i, vel_i, pose_j, vel_j, bias_i = (values[k] for k in self.keys)
        delta_R, delta_p, delta_v = self.pim.corrected_deltas(bias_i)
        g = self.pim.params.gravity
        dt = self.pim.delta_t
        Ri_t = pose_i.rot.T

        r = np.zeros(9)
        r[0:3] = log_so3(delta_R.T @ Ri_t @ pose_j.rot)
        r[3:6] = Ri_t @ (pose_j.pos - pose_i.pos - vel_i * dt - 0.5 * g * dt * dt) - delta_p
        r[6:9] = Ri_t @ (vel_j - vel_i - g * dt) - delta_v
        return r
