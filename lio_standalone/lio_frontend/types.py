"""Data structures passed between the projector, the estimator and the bus.

Raw sensor messages are plain dataclasses holding numpy arrays. Scans keep
the per-point layout of the driver as a numpy structured array so the
projector can check which channels (ring, time) are present.
"""
import enum
from typing import Optional

import numpy as np
from dataclasses import dataclass, field


class SensorType(enum.Enum):
    """Supported point layouts.

    VELODYNE: spinning multi-ring, float ``time`` offset in seconds.
    OUSTER:   alternate multi-ring, uint32 ``t`` offset in nanoseconds.
    LIVOX:    solid-state non-repetitive pattern, columns from a per-ring counter.
    LEISHEN:  solid-state repetitive pattern, per-point time synthesized
              from azimuth and the scan interval.
    """
    VELODYNE = 'velodyne'
    OUSTER = 'ouster'
    LIVOX = 'livox'
    LEISHEN = 'leishen'


@dataclass(frozen=True)
class ImuSample:
    """Single IMU measurement. Orientation is a quaternion [x, y, z, w]."""
    timestamp: float = 0.0
    acc: np.ndarray = field(default_factory=lambda: np.zeros(3))
    gyr: np.ndarray = field(default_factory=lambda: np.zeros(3))
    orientation: Optional[np.ndarray] = None


@dataclass(frozen=True)
class OdometrySample:
    """Timestamped 6-DoF pose. Orientation is a quaternion [x, y, z, w].

    ``degenerate`` mirrors the covariance[0] marker set by the registration
    stage when its solution is ill-conditioned.
    """
    timestamp: float = 0.0
    position: np.ndarray = field(default_factory=lambda: np.zeros(3))
    orientation: np.ndarray = field(
        default_factory=lambda: np.array([0.0, 0.0, 0.0, 1.0]))
    degenerate: bool = False


@dataclass(frozen=True)
class ImuOdometry(OdometrySample):
    """High-rate provisional odometry published on every IMU sample."""
    linear_velocity: np.ndarray = field(default_factory=lambda: np.zeros(3))
    angular_velocity: np.ndarray = field(default_factory=lambda: np.zeros(3))


@dataclass
class RawScan:
    """Point cloud as delivered by the driver.

    ``points`` is a structured array; x/y/z/intensity are always expected,
    ``ring`` is mandatory for projection and ``time``/``t`` are optional.
    """
    header_time: float = 0.0
    points: np.ndarray = None
    is_dense: bool = True


@dataclass
class LidarScan:
    """Canonical scan with per-point ring index and time offset (seconds)."""
    header_time: float = 0.0
    points: np.ndarray = None       # (N, 3) xyz in lidar frame
    intensities: np.ndarray = None  # (N,)
    rings: np.ndarray = None        # (N,) int
    times: np.ndarray = None        # (N,) offset from header_time in s
    has_time: bool = True

    @property
    def end_time(self) -> float:
        if self.times is None or len(self.times) == 0:
            return self.header_time
        return self.header_time + float(self.times[-1])


@dataclass
class CloudInfo:
    """Per-scan metadata published alongside the deskewed cloud."""
    header_time: float = 0.0
    start_ring_index: np.ndarray = None  # (n_scan,)
    end_ring_index: np.ndarray = None    # (n_scan,)
    point_col_ind: np.ndarray = None     # (M,)
    point_range: np.ndarray = None       # (M,)
    cloud_deskewed: np.ndarray = None    # (M, 4) x, y, z, intensity
    imu_available: bool = False
    odom_available: bool = False
    imu_roll_init: float = 0.0
    imu_pitch_init: float = 0.0
    imu_yaw_init: float = 0.0
    # x, y, z, roll, pitch, yaw
    initial_guess: np.ndarray = field(default_factory=lambda: np.zeros(6))
