"""On-manifold IMU preintegration.

Accumulates rotation, velocity and position deltas in the body frame of
the first sample, the 9x9 covariance of those deltas and their first-order
Jacobians with respect to the bias the samples were integrated with.

Covariance / residual ordering: [0:3] rotation, [3:6] position, [6:9] velocity.
"""
import numpy as np
from dataclasses import dataclass, field

from .config import PipelineConfig
from .so3 import exp_so3, right_jacobian, skew
from .state import ImuBias, NavState, Pose3


@dataclass
class PreintegrationParams:
    """Continuous-time noise densities and the navigation-frame gravity."""
    acc_cov: np.ndarray = field(default_factory=lambda: np.eye(3) * 1e-4)
    gyr_cov: np.ndarray = field(default_factory=lambda: np.eye(3) * 1e-6)
    integration_cov: np.ndarray = field(default_factory=lambda: np.eye(3) * 1e-8)
    gravity: np.ndarray = field(default_factory=lambda: np.array([0.0, 0.0, -9.81]))

    @classmethod
    def make_u(cls, gravity_magnitude: float) -> 'PreintegrationParams':
        """Parameters for a z-up navigation frame."""
        return cls(gravity=np.array([0.0, 0.0, -gravity_magnitude]))

    @classmethod
    def from_config(cls, config: PipelineConfig) -> 'PreintegrationParams':
        params = cls.make_u(config.imu_gravity)
        params.acc_cov = np.eye(3) * config.imu_acc_noise ** 2
        params.gyr_cov = np.eye(3) * config.imu_gyr_noise ** 2
        # error committed in integrating position from velocities
        params.integration_cov = np.eye(3) * 1e-4 ** 2
        return params


class PreintegratedImu:
    """Preintegrated measurements between two keyframes."""

    def __init__(self, params: PreintegrationParams, bias: ImuBias = None):
        self.params = params
        self.bias_hat = ImuBias() if bias is None else bias.copy()
        self.reset_integration()

    def reset_integration(self):
        self.delta_t = 0.0
        self.delta_R = np.eye(3)
        self.delta_p = np.zeros(3)
        self.delta_v = np.zeros(3)
        self.cov = np.zeros((9, 9))

        self.d_r_d_bg = np.zeros((3, 3))
        self.d_p_d_ba = np.zeros((3, 3))
        self.d_p_d_bg = np.zeros((3, 3))
        self.d_v_d_ba = np.zeros((3, 3))
        self.d_v_d_bg = np.zeros((3, 3))

    def reset_integration_and_set_bias(self, bias: ImuBias):
        self.bias_hat = bias.copy()
        self.reset_integration()

    def integrate_measurement(self, acc: np.ndarray, gyr: np.ndarray, dt: float):
        """Add one sample held constant over dt. Non-positive dt is ignored."""
        if dt <= 0.0:
            return

        a = np.asarray(acc, dtype=np.float64) - self.bias_hat.acc
        w = np.asarray(gyr, dtype=np.float64) - self.bias_hat.gyr
        dt2 = dt * dt

        R = self.delta_R
        dR = exp_so3(w * dt)
        Jr = right_jacobian(w * dt)
        R_a_skew = R @ skew(a)

        # Covariance propagation
        A = np.eye(9)
        A[0:3, 0:3] = dR.T
        A[3:6, 0:3] = -0.5 * R_a_skew * dt2
        A[3:6, 6:9] = np.eye(3) * dt
        A[6:9, 0:3] = -R_a_skew * dt

        B = np.zeros((9, 3))
        B[3:6, :] = 0.5 * R * dt2
        B[6:9, :] = R * dt

        C = np.zeros((9, 3))
        C[0:3, :] = Jr * dt

        self.cov = (A @ self.cov @ A.T
                    + B @ (self.params.acc_cov / dt) @ B.T
                    + C @ (self.params.gyr_cov / dt) @ C.T)
        self.cov[3:6, 3:6] += self.params.integration_cov * dt

        # Bias Jacobians, using the previous-step values
        self.d_p_d_ba += self.d_v_d_ba * dt - 0.5 * R * dt2
        self.d_p_d_bg += self.d_v_d_bg * dt - 0.5 * R_a_skew @ self.d_r_d_bg * dt2
        self.d_v_d_ba += -R * dt
        self.d_v_d_bg += -R_a_skew @ self.d_r_d_bg * dt
        self.d_r_d_bg = dR.T @ self.d_r_d_bg - Jr * dt

        # Deltas
        self.delta_p = self.delta_p + self.delta_v * dt + 0.5 * (R @ a) * dt2
        self.delta_v = self.delta_v + (R @ a) * dt
        self.delta_R = R @ dR
        self.delta_t += dt

    def covariance(self) -> np.ndarray:
        """Preintegration covariance, regularized to stay invertible."""
        return self.cov + np.eye(9) * 1e-8

    def corrected_deltas(self, bias: ImuBias):
        """Rotation, position and velocity deltas corrected to first order for a new bias.

        Returns:
            (delta_R (3, 3), delta_p (3,), delta_v (3,))
        """
        db_a = bias.acc - self.bias_hat.acc
        db_g = bias.gyr - self.bias_hat.gyr
        delta_R = self.delta_R @ exp_so3(self.d_r_d_bg @ db_g)
        delta_p = self.delta_p + self.d_p_d_ba @ db_a + self.d_p_d_bg @ db_g
        delta_v = self.delta_v + self.d_v_d_ba @ db_a + self.d_v_d_bg @ db_g
        return delta_R, delta_p, delta_v

    def predict(self, state: NavState, bias: ImuBias) -> NavState:
        """Propagate a navigation state over the integrated interval."""
        delta_R, delta_p, delta_v = self.corrected_deltas(bias)
        g = self.params.gravity
        dt = self.delta_t
        R_i = state.rot

        rot = R_i @ delta_R
        pos = state.pos + state.vel * dt + 0.5 * g * dt * dt + R_i @ delta_p
        vel = state.vel + g * dt + R_i @ delta_v
        return NavState(Pose3(rot, pos), vel)

    def copy(self) -> 'PreintegratedImu':
        other = PreintegratedImu(self.params, self.bias_hat)
        other.delta_t = self.delta_t
        other.delta_R = self.delta_R.copy()
        other.delta_p = self.delta_p.copy()
        other.delta_v = self.delta_v.copy()
        other.cov = self.cov.copy()
        other.d_r_d_bg = self.d_r_d_bg.copy()
        other.d_p_d_ba = self.d_p_d_ba.copy()
        other.d_p_d_bg = self.d_p_d_bg.copy()
        other.d_v_d_ba = self.d_v_d_ba.copy()
        other.d_v_d_bg = self.d_v_d_bg.copy()
        return other
