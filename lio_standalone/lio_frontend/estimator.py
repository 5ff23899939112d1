"""Sliding-window IMU preintegration estimator.

Fuses IMU samples with incremental pose corrections from the registration
stage. Each correction adds one key (pose, velocity, bias) linked to the
previous key by a preintegrated IMU factor and a bias random-walk factor,
and anchored by the correction itself. Every ``reset_interval`` keys the
graph is re-seeded at key 0 from the latest state and its marginal
covariance. Between corrections every IMU sample is propagated from the
last solved state and published as high-rate odometry.

State machine:
    uninitialized --first correction--> running
    running --|v| or |bias| too large--> uninitialized
"""
import threading
from collections import deque

import numpy as np

from .config import PipelineConfig
from .factors import B, BetweenBiasFactor, Gaussian, ImuFactor, PriorFactor, V, X
from .gravity_estimator import GravityEstimator, solve_gravity_lsq
from .gravity_factor import Pose3GravityFactor
from .imu_integrator import DualImuIntegrator
from .preintegration import PreintegrationParams
from .preprocess import imu_converter
from .solver import IncrementalSmoother
from .state import ImuBias, NavState, Pose3
from .types import ImuOdometry, ImuSample, OdometrySample

# Body up axis used as the reference direction of the gravity constraint
BODY_UP = np.array([0.0, 0.0, 1.0])


class ImuPreintegration:
    """IMU/correction fusion with a fast prediction path."""

    def __init__(self, config: PipelineConfig, publish=None, gravity_solver=None):
        """
        Args:
            config: Front-end configuration.
            publish: Optional callable receiving each ImuOdometry.
            gravity_solver: Replacement for solve_gravity_lsq.
        """
        self.config = config
        self.publish = publish
        self.mtx = threading.Lock()

        self.imu2lidar = Pose3(np.eye(3), -config.extrinsic_trans)
        self.lidar2imu = Pose3(np.eye(3), config.extrinsic_trans)

        self.params = PreintegrationParams.from_config(config)
        self.integrator = DualImuIntegrator(self.params, config.imu_rate)

        self.prior_pose_noise = Gaussian.from_sigmas([1e-2] * 6)
        self.prior_vel_noise = Gaussian.isotropic(3, 1e4)
        self.prior_bias_noise = Gaussian.isotropic(6, 1e-3)
        self.correction_noise = Gaussian.from_sigmas([0.05, 0.05, 0.05, 0.1, 0.1, 0.1])
        self.correction_noise_degenerate = Gaussian.from_sigmas([1.0] * 6)
        self.noise_between_bias = np.array([config.imu_acc_bias_n] * 3
                                           + [config.imu_gyr_bias_n] * 3)
        self.gravity_noise = Gaussian.isotropic(2, config.gravity.noise)

        self.gravity_estimator = None
        if config.gravity.enabled:
            self.gravity_estimator = GravityEstimator(
                config.gravity.window_size, config.imu_gravity, config.gravity.tolerance,
                solver=gravity_solver or solve_gravity_lsq)

        self.imu_que_opt = deque()
        self.imu_que_imu = deque()
        # stamp of the last sample dropped from the fast queue
        self.last_time_dropped = -1.0
        self.optimizer = IncrementalSmoother()

        # slack between correction stamp and the IMU samples it consumes
        self.delta_t = config.correction_delay
        self.key = 0
        self.system_initialized = False
        self.done_first_opt = False

        self.prev_pose = Pose3()
        self.prev_vel = np.zeros(3)
        self.prev_state = NavState()
        self.prev_bias = ImuBias()
        self.prev_state_odom = NavState()
        self.prev_bias_odom = ImuBias()

    def reset_optimization(self):
        self.optimizer.reset()

    def reset_params(self):
        """Return to the uninitialized state."""
        self.integrator.last_time_fast = -1.0
        self.done_first_opt = False
        self.system_initialized = False
        if self.gravity_estimator is not None:
            self.gravity_estimator.reset()

    # ─────────────────────────────────────────────────────────
    #  Correction handler
    # ─────────────────────────────────────────────────────────

    def odometry_handler(self, odom: OdometrySample):
        """Add one correction key and re-solve the window."""
        with self.mtx:
            current_correction_time = odom.timestamp

            # make sure we have imu data to integrate
            if not self.imu_que_opt:
                return

            degenerate = bool(odom.degenerate)
            lidar_pose = Pose3.from_quaternion(odom.orientation, odom.position)

            if not self.system_initialized:
                self._initialize(lidar_pose, current_correction_time)
                return

            if self.key == self.config.reset_interval:
                self._reanchor()

            self._add_correction(lidar_pose, degenerate, current_correction_time)

    def _initialize(self, lidar_pose: Pose3, correction_time: float):
        self.reset_optimization()

        # pop old IMU messages
        while self.imu_que_opt and self.imu_que_opt[0].timestamp < correction_time - self.delta_t:
            self.integrator.last_time_windowed = self.imu_que_opt[0].timestamp
            self.imu_que_opt.popleft()

        self.prev_pose = lidar_pose.compose(self.lidar2imu)
        self.prev_vel = np.zeros(3)
        self.prev_bias = ImuBias()
        self.prev_state = NavState(self.prev_pose, self.prev_vel)

        factors = [
            PriorFactor(X(0), self.prev_pose, self.prior_pose_noise),
            PriorFactor(V(0), self.prev_vel, self.prior_vel_noise),
            PriorFactor(B(0), self.prev_bias, self.prior_bias_noise),
        ]
        values = {X(0): self.prev_pose, V(0): self.prev_vel, B(0): self.prev_bias}
        self.optimizer.update(factors, values)

        self.integrator.reset_windowed(self.prev_bias)
        self.integrator.reset_fast(self.prev_bias)

        self.key = 1
        self.system_initialized = True

    def _reanchor(self):
        """Re-seed the graph at key 0 from the latest marginals."""
        last = self.key - 1
        updated_pose_noise = Gaussian.from_covariance(self.optimizer.marginal_covariance(X(last)))
        updated_vel_noise = Gaussian.from_covariance(self.optimizer.marginal_covariance(V(last)))
        updated_bias_noise = Gaussian.from_covariance(self.optimizer.marginal_covariance(B(last)))

        self.reset_optimization()
        factors = [
            PriorFactor(X(0), self.prev_pose, updated_pose_noise),
            PriorFactor(V(0), self.prev_vel, updated_vel_noise),
            PriorFactor(B(0), self.prev_bias, updated_bias_noise),
        ]
        if self._gravity_valid():
            factors.append(self._gravity_factor(X(0)))
        values = {X(0): self.prev_pose, V(0): self.prev_vel, B(0): self.prev_bias}
        self.optimizer.update(factors, values)
        self.key = 1

    def _add_correction(self, lidar_pose: Pose3, degenerate: bool, correction_time: float):
        key = self.key

        # integrate imu data up to the correction
        while self.imu_que_opt:
            imu = self.imu_que_opt[0]
            if imu.timestamp >= correction_time - self.delta_t:
                break
            self.integrator.integrate_windowed(imu)
            self.imu_que_opt.popleft()

        pim = self.integrator.windowed
        factors = []

        if self.gravity_estimator is not None:
            self.gravity_estimator.add_sample(self.prev_pose, pim.copy(), self.prev_vel)
            window = self.config.gravity.window_size
            if self._gravity_valid() and key - window >= 0:
                factors.append(self._gravity_factor(X(key - window)))

        factors.append(ImuFactor(X(key - 1), V(key - 1), X(key), V(key), B(key - 1), pim.copy()))

        bias_sigmas = np.sqrt(max(pim.delta_t, 1e-6)) * self.noise_between_bias
        factors.append(BetweenBiasFactor(B(key - 1), B(key), ImuBias(),
                                         Gaussian.from_sigmas(bias_sigmas)))

        cur_pose = lidar_pose.compose(self.lidar2imu)
        noise = self.correction_noise_degenerate if degenerate else self.correction_noise
        factors.append(PriorFactor(X(key), cur_pose, noise))

        # seed the new key with the IMU prediction
        prop_state = pim.predict(self.prev_state, self.prev_bias)
        values = {X(key): prop_state.pose, V(key): prop_state.vel, B(key): self.prev_bias.copy()}

        self.optimizer.update(factors, values)
        self.optimizer.update()

        result = self.optimizer.calculate_estimate()
        self.prev_pose = result[X(key)]
        self.prev_vel = result[V(key)]
        self.prev_state = NavState(self.prev_pose, self.prev_vel)
        self.prev_bias = result[B(key)]
        self.integrator.reset_windowed(self.prev_bias)

        if self.failure_detection(self.prev_vel, self.prev_bias):
            self.reset_params()
            return

        # re-propagate the fast path from the new state
        self.prev_state_odom = self.prev_state.copy()
        self.prev_bias_odom = self.prev_bias.copy()
        while self.imu_que_imu and self.imu_que_imu[0].timestamp < correction_time - self.delta_t:
            self.last_time_dropped = self.imu_que_imu.popleft().timestamp
        if self.imu_que_imu:
            self.integrator.repropagate_fast(self.imu_que_imu, self.prev_bias_odom,
                                             self.last_time_dropped)

        self.key += 1
        self.done_first_opt = True

    def failure_detection(self, vel: np.ndarray, bias: ImuBias) -> bool:
        if np.linalg.norm(vel) > self.config.max_velocity:
            print("[Estimator] WARNING: Large velocity, reset IMU-preintegration!")
            return True

        if (np.linalg.norm(bias.acc) > self.config.max_bias
                or np.linalg.norm(bias.gyr) > self.config.max_bias):
            print("[Estimator] WARNING: Large bias, reset IMU-preintegration!")
            return True

        return False

    def _gravity_valid(self) -> bool:
        return self.gravity_estimator is not None and self.gravity_estimator.valid

    def _gravity_factor(self, key) -> Pose3GravityFactor:
        nZ = self.gravity_estimator.gravity / np.linalg.norm(self.gravity_estimator.gravity)
        return Pose3GravityFactor(key, nZ, self.gravity_noise, bRef=BODY_UP)

    # ─────────────────────────────────────────────────────────
    #  Fast path
    # ─────────────────────────────────────────────────────────

    def imu_handler(self, imu: ImuSample):
        """Queue a sample and publish the predicted odometry.

        Returns:
            ImuOdometry, or None before the first solved state.
        """
        this_imu = imu_converter(imu, self.config.extrinsic_rot, self.config.extrinsic_rpy,
                                 self.config.nine_axis_imu)
        with self.mtx:
            self.imu_que_opt.append(this_imu)
            self.imu_que_imu.append(this_imu)

            if not self.done_first_opt:
                return None

            self.integrator.integrate_fast(this_imu)
            current_state = self.integrator.fast.predict(self.prev_state_odom,
                                                         self.prev_bias_odom)

            # transform imu pose to lidar
            lidar_pose = current_state.pose.compose(self.imu2lidar)
            odometry = ImuOdometry(
                timestamp=this_imu.timestamp,
                position=lidar_pose.pos,
                orientation=lidar_pose.quaternion(),
                linear_velocity=current_state.vel,
                angular_velocity=this_imu.gyr + self.prev_bias_odom.gyr,
            )
            if self.publish is not None:
                self.publish(odometry)
        return odometry
