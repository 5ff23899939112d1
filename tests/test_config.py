import numpy as np
import pytest

from lio_frontend.config import PipelineConfig, load_config, parse_sensor_type
from lio_frontend.types import SensorType


def test_defaults():
    config = PipelineConfig()
    assert config.sensor == SensorType.VELODYNE
    assert (config.n_scan, config.horizon_scan) == (16, 1800)
    assert config.reset_interval == 100
    assert config.gravity.window_size == 10
    assert not config.gravity.enabled
    assert not config.nine_axis_imu


def test_load_config(tmp_path):
    path = tmp_path / "params.yaml"
    path.write_text(
        "sensor:\n"
        "  sensor: ouster\n"
        "  n_scan: 64\n"
        "  horizon_scan: 1024\n"
        "  downsample_rate: 0\n"
        "imu:\n"
        "  imu_type: 1\n"
        "  imu_rate: 200\n"
        "extrinsics:\n"
        "  extrinsic_trans: [0.1, 0.2, 0.3]\n"
        "  extrinsic_rot: [1, 0, 0, 0, -1, 0, 0, 0, -1]\n"
        "gravity:\n"
        "  enabled: true\n"
        "  window_size: 5\n"
    )
    config = load_config(str(path))

    assert config.sensor == SensorType.OUSTER
    assert (config.n_scan, config.horizon_scan) == (64, 1024)
    assert config.downsample_rate == 1
    assert config.nine_axis_imu
    assert config.imu_rate == 200
    np.testing.assert_allclose(config.extrinsic_trans, [0.1, 0.2, 0.3])
    np.testing.assert_allclose(config.extrinsic_rot, np.diag([1.0, -1.0, -1.0]))
    np.testing.assert_allclose(config.extrinsic_rpy, np.eye(3))
    assert config.gravity.enabled
    assert config.gravity.window_size == 5
    assert config.gravity.tolerance == 0.5
    assert config.pointcloud_topic == "points_raw"


def test_empty_config_file_gives_defaults(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    config = load_config(str(path))
    assert config.lidar_min_range == 1.0
    assert config.max_velocity == 30.0


def test_sensor_type_parsing():
    assert parse_sensor_type("Livox") == SensorType.LIVOX
    assert parse_sensor_type(SensorType.LEISHEN) == SensorType.LEISHEN
    with pytest.raises(ValueError, match="Unknown sensor type"):
        parse_sensor_type("hesai")


def test_unknown_sensor_in_file_is_fatal(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("sensor:\n  sensor: robosense\n")
    with pytest.raises(ValueError):
        load_config(str(path))
