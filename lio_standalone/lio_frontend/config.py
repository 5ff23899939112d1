"""Configuration loader for the lidar-inertial front end.

Reads a YAML file section by section into dataclasses. Every key is
optional and falls back to the dataclass default.
"""
import yaml
import numpy as np
from dataclasses import dataclass, field

from .types import SensorType


@dataclass
class GravityConfig:
    """Online gravity-direction refinement."""
    enabled: bool = False
    window_size: int = 10
    noise: float = 0.01
    tolerance: float = 0.5


@dataclass
class PipelineConfig:
    """Full front-end configuration."""
    # Topics
    pointcloud_topic: str = "points_raw"
    imu_topic: str = "imu_correct"
    correction_topic: str = "lio_sam/mapping/odometry_incremental"

    # Sensor
    sensor: SensorType = SensorType.VELODYNE
    n_scan: int = 16
    horizon_scan: int = 1800
    downsample_rate: int = 1
    lidar_min_range: float = 1.0
    lidar_max_range: float = 1000.0
    ring_border: int = 5

    # IMU
    imu_type: int = 0  # 0 = 6-axis, 1 = 9-axis with orientation
    imu_rate: float = 500.0
    imu_acc_noise: float = 3.9939570888238808e-03
    imu_gyr_noise: float = 1.5636343949698187e-03
    imu_acc_bias_n: float = 6.4356659353532566e-05
    imu_gyr_bias_n: float = 3.5640318696367613e-05
    imu_gravity: float = 9.80511

    # Extrinsics: IMU -> lidar
    extrinsic_rot: np.ndarray = field(default_factory=lambda: np.eye(3))
    extrinsic_rpy: np.ndarray = field(default_factory=lambda: np.eye(3))
    extrinsic_trans: np.ndarray = field(default_factory=lambda: np.zeros(3))

    # Estimator
    correction_delay: float = 0.0
    reset_interval: int = 100
    max_velocity: float = 30.0
    max_bias: float = 1.0

    gravity: GravityConfig = field(default_factory=GravityConfig)

    @property
    def nine_axis_imu(self) -> bool:
        return self.imu_type == 1


def parse_sensor_type(value) -> SensorType:
    """Map a config value to a SensorType. Unknown values are fatal."""
    if isinstance(value, SensorType):
        return value
    try:
        return SensorType(str(value).lower())
    except ValueError:
        raise ValueError(
            f"Unknown sensor type: {value!r}. Supported: "
            f"{', '.join(s.value for s in SensorType)}") from None


def _matrix(value, shape):
    return np.array(value, dtype=np.float64).reshape(shape)


def load_config(yaml_path: str) -> PipelineConfig:
    """Load configuration from a YAML file."""
    with open(yaml_path, 'r') as f:
        cfg = yaml.safe_load(f) or {}

    pc = PipelineConfig()

    # Topics
    common = cfg.get('common', {})
    pc.pointcloud_topic = common.get('pointcloud_topic', pc.pointcloud_topic)
    pc.imu_topic = common.get('imu_topic', pc.imu_topic)
    pc.correction_topic = common.get('correction_topic', pc.correction_topic)

    # Sensor
    sensor = cfg.get('sensor', {})
    pc.sensor = parse_sensor_type(sensor.get('sensor', pc.sensor))
    pc.n_scan = int(sensor.get('n_scan', pc.n_scan))
    pc.horizon_scan = int(sensor.get('horizon_scan', pc.horizon_scan))
    pc.downsample_rate = max(1, int(sensor.get('downsample_rate', pc.downsample_rate)))
    pc.lidar_min_range = sensor.get('lidar_min_range', pc.lidar_min_range)
    pc.lidar_max_range = sensor.get('lidar_max_range', pc.lidar_max_range)
    pc.ring_border = int(sensor.get('ring_border', pc.ring_border))

    # IMU
    imu = cfg.get('imu', {})
    pc.imu_type = int(imu.get('imu_type', pc.imu_type))
    pc.imu_rate = imu.get('imu_rate', pc.imu_rate)
    pc.imu_acc_noise = imu.get('imu_acc_noise', pc.imu_acc_noise)
    pc.imu_gyr_noise = imu.get('imu_gyr_noise', pc.imu_gyr_noise)
    pc.imu_acc_bias_n = imu.get('imu_acc_bias_n', pc.imu_acc_bias_n)
    pc.imu_gyr_bias_n = imu.get('imu_gyr_bias_n', pc.imu_gyr_bias_n)
    pc.imu_gravity = imu.get('imu_gravity', pc.imu_gravity)

    # Extrinsics
    ext = cfg.get('extrinsics', {})
    if ext.get('extrinsic_rot') is not None:
        pc.extrinsic_rot = _matrix(ext['extrinsic_rot'], (3, 3))
    if ext.get('extrinsic_rpy') is not None:
        pc.extrinsic_rpy = _matrix(ext['extrinsic_rpy'], (3, 3))
    if ext.get('extrinsic_trans') is not None:
        pc.extrinsic_trans = _matrix(ext['extrinsic_trans'], (3,))

    # Estimator
    est = cfg.get('estimator', {})
    pc.correction_delay = est.get('correction_delay', pc.correction_delay)
    pc.reset_interval = int(est.get('reset_interval', pc.reset_interval))
    pc.max_velocity = est.get('max_velocity', pc.max_velocity)
    pc.max_bias = est.get('max_bias', pc.max_bias)

    # Gravity refinement
    grav = cfg.get('gravity', {})
    gc = pc.gravity
    gc.enabled = bool(grav.get('enabled', gc.enabled))
    gc.window_size = int(grav.get('window_size', gc.window_size))
    gc.noise = grav.get('noise', gc.noise)
    gc.tolerance = grav.get('tolerance', gc.tolerance)

    return pc
