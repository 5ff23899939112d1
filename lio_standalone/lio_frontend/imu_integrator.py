"""Dual IMU integrator.

Two accumulators share one set of preintegration parameters:

    fast      advanced on every IMU sample, predicts the published
              high-rate odometry from the last solved state
    windowed  drained up to each correction, feeds the IMU factor
              between consecutive keys

Each keeps its own previous-sample time. The first sample integrated
after a reset of that time uses dt = 1 / imu_rate.
"""
from collections.abc import Iterable

from .preintegration import PreintegratedImu, PreintegrationParams
from .state import ImuBias
from .types import ImuSample


class DualImuIntegrator:

    def __init__(self, params: PreintegrationParams, imu_rate: float,
                 bias: ImuBias = None):
        self.params = params
        self.default_dt = 1.0 / imu_rate
        self.fast = PreintegratedImu(params, bias)
        self.windowed = PreintegratedImu(params, bias)
        self.last_time_fast = -1.0
        self.last_time_windowed = -1.0

    def _dt(self, last_time: float, t: float) -> float:
        return self.default_dt if last_time < 0 else t - last_time

    def integrate_windowed(self, imu: ImuSample):
        dt = self._dt(self.last_time_windowed, imu.timestamp)
        self.windowed.integrate_measurement(imu.acc, imu.gyr, dt)
        self.last_time_windowed = imu.timestamp

    def integrate_fast(self, imu: ImuSample):
        dt = self._dt(self.last_time_fast, imu.timestamp)
        self.fast.integrate_measurement(imu.acc, imu.gyr, dt)
        self.last_time_fast = imu.timestamp

    def reset_windowed(self, bias: ImuBias):
        self.windowed.reset_integration_and_set_bias(bias)

    def reset_fast(self, bias: ImuBias):
        self.fast.reset_integration_and_set_bias(bias)

    def repropagate_fast(self, samples: Iterable, bias: ImuBias, last_time: float = -1.0):
        """Restart the fast accumulator from a new bias and re-integrate samples.

        ``last_time`` is the stamp of the sample preceding ``samples``, or
        negative when unknown.
        """
        self.reset_fast(bias)
        for imu in samples:
            dt = self._dt(last_time, imu.timestamp)
            self.fast.integrate_measurement(imu.acc, imu.gyr, dt)
            last_time = imu.timestamp
