"""Sensor conversion: IMU extrinsics and raw scan -> canonical LidarScan.

The scan conversion checks the point layout once per scan. Missing rings
and non-dense clouds are fatal, a missing time channel is reported back
through ``LidarScan.has_time`` so the projector can disable deskewing.
"""
import numpy as np

from .so3 import quaternion_to_matrix, matrix_to_quaternion
from .types import ImuSample, LidarScan, RawScan, SensorType


def imu_converter(imu: ImuSample, ext_rot: np.ndarray, ext_rpy: np.ndarray,
                  nine_axis: bool = False) -> ImuSample:
    """Rotate an IMU sample into the lidar-aligned frame.

    Args:
        imu: Raw sample.
        ext_rot: (3, 3) rotation applied to acceleration and angular velocity.
        ext_rpy: (3, 3) rotation whose inverse is appended to the orientation.
        nine_axis: Orientation is required and must be a valid quaternion.

    Returns:
        New ImuSample with converted vectors.
    """
    acc = ext_rot @ np.asarray(imu.acc, dtype=np.float64)
    gyr = ext_rot @ np.asarray(imu.gyr, dtype=np.float64)

    orientation = None
    if imu.orientation is not None:
        q = np.asarray(imu.orientation, dtype=np.float64)
        if np.linalg.norm(q) < 0.1:
            if nine_axis:
                raise ValueError("Invalid quaternion, please use a 9-axis IMU!")
        else:
            rot = quaternion_to_matrix(q) @ ext_rpy.T
            orientation = matrix_to_quaternion(rot)
    elif nine_axis:
        raise ValueError("Invalid quaternion, please use a 9-axis IMU!")

    return ImuSample(timestamp=imu.timestamp, acc=acc, gyr=gyr,
                     orientation=orientation)


class ScanConverter:
    """Convert driver point layouts into a canonical LidarScan."""

    def __init__(self, sensor: SensorType):
        self.sensor = sensor
        # Leishen clouds carry no time channel, the sweep duration is
        # taken from the header stamps of consecutive scans.
        self.first_scan = True
        self.time_prev = 0.0
        self.time_increment = 0.1

    def convert(self, raw: RawScan) -> LidarScan:
        pts = raw.points
        names = pts.dtype.names or ()

        xyz = np.column_stack([
            pts['x'].astype(np.float64),
            pts['y'].astype(np.float64),
            pts['z'].astype(np.float64),
        ]) if len(pts) > 0 else np.zeros((0, 3))

        if not raw.is_dense or not np.all(np.isfinite(xyz)):
            raise ValueError(
                "Point cloud is not in dense format, please remove NaN points first!")

        if 'ring' not in names:
            raise ValueError(
                "Point cloud ring channel not available, please configure your point cloud data!")

        if 'intensity' in names:
            intensities = pts['intensity'].astype(np.float32)
        else:
            intensities = np.zeros(len(pts), dtype=np.float32)
        rings = pts['ring'].astype(np.int64)

        has_time = True
        if self.sensor == SensorType.LEISHEN:
            times = self._azimuth_times(raw.header_time, xyz)
        elif 'time' in names:
            times = pts['time'].astype(np.float64)
        elif 't' in names:
            # Ouster stores the offset in nanoseconds
            times = pts['t'].astype(np.float64) * 1e-9
        else:
            has_time = False
            times = np.zeros(len(pts))

        scan = LidarScan(
            header_time=raw.header_time,
            points=xyz,
            intensities=intensities,
            rings=rings,
            times=times,
            has_time=has_time,
        )
        if has_time and len(times) > 1 and np.any(np.diff(times) < 0):
            order = np.argsort(times, kind='stable')
            scan.points = xyz[order]
            scan.intensities = intensities[order]
            scan.rings = rings[order]
            scan.times = times[order]
        return scan

    def _azimuth_times(self, header_time: float, xyz: np.ndarray) -> np.ndarray:
        """Spread the sweep duration over the points by azimuth."""
        if self.first_scan:
            self.first_scan = False
            self.time_prev = header_time
            self.time_increment = 0.1
        else:
            self.time_increment = header_time - self.time_prev
            self.time_prev = header_time

        if len(xyz) == 0:
            return np.zeros(0)

        angle = np.arctan2(xyz[:, 1], xyz[:, 0])
        start_angle = angle.min()
        angle_range = angle.max() - start_angle
        if angle_range < 0:
            angle_range += 2 * np.pi
        if angle_range == 0:
            return np.zeros(len(xyz))
        return (angle - start_angle) / angle_range * self.time_increment
