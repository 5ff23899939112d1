"""Motion-compensated range-image projection.

Buffers IMU samples, incremental odometry and raw scans arriving on
independent threads. Each processed scan is deskewed point by point
(rotation from integrated gyro rates, translation from the odometry
increment over the sweep), projected into an n_scan x horizon_scan range
image with first-writer-wins cells, and compacted ring by ring into the
published cloud plus CloudInfo metadata.
"""
import threading
from collections import deque

import numpy as np

from .config import PipelineConfig
from .numba_kernels import find_rotation_jit, deskew_points_jit
from .preprocess import ScanConverter, imu_converter
from .so3 import quaternion_to_matrix, rot_to_euler
from .state import Pose3
from .types import CloudInfo, ImuSample, LidarScan, OdometrySample, RawScan, SensorType

# Empty range-image cell
FLT_MAX = np.finfo(np.float32).max

# IMU samples are kept this far (s) around the sweep
IMU_MARGIN = 0.01


class RotationTable:
    """Gyro rates integrated over a sweep, anchored at zero on the first sample."""

    def __init__(self, imu_time: np.ndarray, imu_rot: np.ndarray):
        self.imu_time = np.ascontiguousarray(imu_time, dtype=np.float64)
        self.imu_rot = np.ascontiguousarray(imu_rot, dtype=np.float64)
        self.pointer_cur = len(self.imu_time) - 1

    def find_rotation(self, point_time: float) -> np.ndarray:
        """Roll/pitch/yaw increment at an absolute time."""
        return self.find_rotations(np.array([point_time], dtype=np.float64))[0]

    def find_rotations(self, point_times: np.ndarray) -> np.ndarray:
        return find_rotation_jit(np.ascontiguousarray(point_times, dtype=np.float64),
                                 self.imu_time, self.imu_rot, self.pointer_cur)


def _round_half_away(v: np.ndarray) -> np.ndarray:
    return np.sign(v) * np.floor(np.abs(v) + 0.5)


class AzimuthColumns:
    """Column from the horizontal angle, for spinning sensors."""

    def __init__(self, horizon_scan: int):
        self.horizon_scan = horizon_scan
        self.ang_res_x = 360.0 / float(horizon_scan)

    def columns(self, xyz: np.ndarray, rows: np.ndarray) -> np.ndarray:
        horizon_angle = np.degrees(np.arctan2(xyz[:, 0], xyz[:, 1]))
        col = (-_round_half_away((horizon_angle - 90.0) / self.ang_res_x)
               + self.horizon_scan // 2).astype(np.int64)
        col[col >= self.horizon_scan] -= self.horizon_scan
        return col


class RingCounterColumns:
    """Column from a running per-ring counter, for non-repetitive patterns."""

    def __init__(self, horizon_scan: int):
        self.horizon_scan = horizon_scan

    def columns(self, xyz: np.ndarray, rows: np.ndarray) -> np.ndarray:
        if len(rows) == 0:
            return np.zeros(0, dtype=np.int64)
        order = np.argsort(rows, kind='stable')
        sorted_rows = rows[order]
        group_start = np.r_[0, np.flatnonzero(np.diff(sorted_rows)) + 1]
        group_len = np.diff(np.r_[group_start, len(rows)])
        rank_sorted = np.arange(len(rows)) - np.repeat(group_start, group_len)
        col = np.empty(len(rows), dtype=np.int64)
        col[order] = rank_sorted
        return col


def make_column_strategy(sensor: SensorType, horizon_scan: int):
    if sensor == SensorType.LIVOX:
        return RingCounterColumns(horizon_scan)
    if sensor in (SensorType.VELODYNE, SensorType.OUSTER, SensorType.LEISHEN):
        return AzimuthColumns(horizon_scan)
    raise ValueError(f"Unknown sensor type: {sensor!r}")


class ImageProjection:
    """Deskew raw scans and project them into a range image."""

    # Scans kept queued before the oldest one is processed
    LOOKAHEAD = 2

    def __init__(self, config: PipelineConfig, publish=None):
        """
        Args:
            config: Front-end configuration.
            publish: Optional callable receiving each CloudInfo.
        """
        self.config = config
        self.publish = publish
        self.n_scan = config.n_scan
        self.horizon_scan = config.horizon_scan

        self.converter = ScanConverter(config.sensor)
        self.column_strategy = make_column_strategy(config.sensor, config.horizon_scan)

        self.imu_lock = threading.Lock()
        self.odom_lock = threading.Lock()
        self.cloud_lock = threading.Lock()
        self.scan_lock = threading.Lock()
        self.imu_queue = deque()
        self.odom_queue = deque()
        self.cloud_queue = deque()

        # 0 = unchecked, 1 = per-point time available, -1 = deskew disabled
        self.deskew_flag = 0
        self.scan_stale = False

        self.reset_parameters()

    def reset_parameters(self):
        """Clear all per-scan buffers."""
        self.range_mat = np.full((self.n_scan, self.horizon_scan), FLT_MAX, dtype=np.float32)
        self.full_cloud = np.zeros((self.n_scan * self.horizon_scan, 4))
        self.cloud_info = CloudInfo()
        self.rotation_table = None
        self.odom_deskew_flag = False
        self.odom_incre = np.zeros(3)
        self.time_scan_cur = 0.0
        self.time_scan_end = 0.0

    # ─────────────────────────────────────────────────────────
    #  Input handlers
    # ─────────────────────────────────────────────────────────

    def imu_handler(self, imu: ImuSample):
        this_imu = imu_converter(imu, self.config.extrinsic_rot, self.config.extrinsic_rpy,
                                 self.config.nine_axis_imu)
        with self.imu_lock:
            self.imu_queue.append(this_imu)

    def odometry_handler(self, odom: OdometrySample):
        with self.odom_lock:
            self.odom_queue.append(odom)

    def cloud_handler(self, raw: RawScan) -> list:
        """Queue a scan and process every head scan that has IMU coverage.

        Returns:
            List of CloudInfo published during this call.
        """
        scan = self.converter.convert(raw)
        self._check_time_channel(scan)

        with self.cloud_lock:
            self.cloud_queue.append(scan)

        published = []
        with self.scan_lock:
            while True:
                with self.cloud_lock:
                    if len(self.cloud_queue) <= self.LOOKAHEAD:
                        break
                    head = self.cloud_queue[0]
                info = self.process(head)
                if info is None and not self.scan_stale:
                    break
                with self.cloud_lock:
                    self.cloud_queue.popleft()
                if info is not None:
                    published.append(info)
        return published

    def _check_time_channel(self, scan: LidarScan):
        if self.deskew_flag != 0:
            return
        self.deskew_flag = 1 if scan.has_time else -1
        if self.deskew_flag == -1:
            print("[Projection] WARNING: Point cloud timestamp not available, deskew "
                  "function disabled, system will drift significantly!")

    # ─────────────────────────────────────────────────────────
    #  Per-scan processing
    # ─────────────────────────────────────────────────────────

    def process(self, scan: LidarScan):
        """Deskew, project and extract one scan.

        Returns:
            CloudInfo, or None when IMU data does not cover the sweep.
            ``scan_stale`` tells a scan that can never be covered (it
            starts before the oldest buffered IMU sample) from one that
            only has to wait for more IMU data.
        """
        self.time_scan_cur = scan.header_time
        self.time_scan_end = scan.end_time
        self.scan_stale = False

        if not self.deskew_info():
            return None

        self.project_point_cloud(scan)
        info = self.cloud_extraction()

        if self.publish is not None:
            self.publish(info)
        self.reset_parameters()
        return info

    def deskew_info(self) -> bool:
        with self.imu_lock, self.odom_lock:
            if (not self.imu_queue
                    or self.imu_queue[0].timestamp > self.time_scan_cur
                    or self.imu_queue[-1].timestamp < self.time_scan_end):
                print("[Projection] Waiting for IMU data ...")
                # the IMU front only moves forward, this scan is dropped
                self.scan_stale = bool(self.imu_queue) and \
                    self.imu_queue[0].timestamp > self.time_scan_cur
                return False

            self.imu_deskew_info()
            self.odom_deskew_info()
        return True

    def imu_deskew_info(self):
        info = self.cloud_info
        info.imu_available = False

        while self.imu_queue and self.imu_queue[0].timestamp < self.time_scan_cur - IMU_MARGIN:
            self.imu_queue.popleft()

        if not self.imu_queue:
            return

        imu_time = []
        imu_rot = []
        for imu in self.imu_queue:
            current_time = imu.timestamp

            # orientation estimate at scan start
            if (self.config.nine_axis_imu and imu.orientation is not None
                    and current_time <= self.time_scan_cur):
                rpy = rot_to_euler(quaternion_to_matrix(imu.orientation))
                info.imu_roll_init, info.imu_pitch_init, info.imu_yaw_init = (
                    float(rpy[0]), float(rpy[1]), float(rpy[2]))

            if current_time > self.time_scan_end + IMU_MARGIN:
                break

            if not imu_time:
                imu_time.append(current_time)
                imu_rot.append(np.zeros(3))
                continue

            time_diff = current_time - imu_time[-1]
            imu_rot.append(imu_rot[-1] + np.asarray(imu.gyr) * time_diff)
            imu_time.append(current_time)

        if len(imu_time) - 1 <= 0:
            return

        self.rotation_table = RotationTable(np.array(imu_time), np.array(imu_rot))
        info.imu_available = True

    def odom_deskew_info(self):
        info = self.cloud_info
        info.odom_available = False

        # five IMU periods of slack
        time_diff = 5.0 / self.config.imu_rate
        while self.odom_queue and self.odom_queue[0].timestamp < self.time_scan_cur - time_diff:
            self.odom_queue.popleft()

        if not self.odom_queue:
            return
        if self.odom_queue[0].timestamp > self.time_scan_cur:
            return

        start_odom = self._first_odom_after(self.time_scan_cur)
        start_pose = Pose3.from_quaternion(start_odom.orientation, start_odom.position)
        rpy = rot_to_euler(start_pose.rot)

        # initial guess for scan registration
        info.initial_guess = np.concatenate([start_pose.pos, rpy])
        info.odom_available = True

        self.odom_deskew_flag = False
        if self.odom_queue[-1].timestamp < self.time_scan_end:
            return

        end_odom = self._first_odom_after(self.time_scan_end)
        if bool(start_odom.degenerate) != bool(end_odom.degenerate):
            return

        end_pose = Pose3.from_quaternion(end_odom.orientation, end_odom.position)
        self.odom_incre = start_pose.between(end_pose).pos
        self.odom_deskew_flag = True

    def _first_odom_after(self, t: float) -> OdometrySample:
        odom = self.odom_queue[-1]
        for candidate in self.odom_queue:
            if candidate.timestamp >= t:
                return candidate
        return odom

    def find_positions(self, rel_times: np.ndarray) -> np.ndarray:
        """Translation increment, linear over the sweep."""
        pos = np.zeros((len(rel_times), 3))
        if not self.cloud_info.odom_available or not self.odom_deskew_flag:
            return pos
        duration = self.time_scan_end - self.time_scan_cur
        if duration <= 0:
            return pos
        ratio = np.asarray(rel_times, dtype=np.float64) / duration
        return ratio[:, np.newaxis] * self.odom_incre[np.newaxis, :]

    def deskew_points(self, xyz: np.ndarray, rel_times: np.ndarray) -> np.ndarray:
        """Re-express points relative to the first point's corrected pose."""
        if self.deskew_flag == -1:
            return xyz.copy()
        if not self.cloud_info.imu_available or self.rotation_table is None:
            if len(xyz) > 0:
                print(f"[Projection] WARNING: deskew not available for scan at "
                      f"{self.time_scan_cur:.6f}, IMU rotation missing")
            return xyz.copy()
        if len(xyz) == 0:
            return xyz.copy()

        rot = self.rotation_table.find_rotations(self.time_scan_cur + rel_times)
        pos = self.find_positions(rel_times)
        return deskew_points_jit(np.ascontiguousarray(xyz, dtype=np.float64), rot, pos)

    def project_point_cloud(self, scan: LidarScan):
        """Fill the range image. The first point landing in a cell wins."""
        xyz = scan.points
        rows = scan.rings
        ranges = np.linalg.norm(xyz, axis=1)

        valid = ((ranges >= self.config.lidar_min_range)
                 & (ranges <= self.config.lidar_max_range)
                 & (rows >= 0) & (rows < self.n_scan)
                 & (rows % self.config.downsample_rate == 0))
        idx = np.flatnonzero(valid)

        cols = self.column_strategy.columns(xyz[idx], rows[idx])
        in_bounds = (cols >= 0) & (cols < self.horizon_scan)
        idx = idx[in_bounds]
        cols = cols[in_bounds]

        cells = rows[idx] * self.horizon_scan + cols
        _, first = np.unique(cells, return_index=True)
        keep = np.sort(first)
        kept = idx[keep]
        kept_cells = cells[keep]

        deskewed = self.deskew_points(xyz[kept], scan.times[kept])

        self.range_mat[kept_cells // self.horizon_scan,
                       kept_cells % self.horizon_scan] = np.linalg.norm(deskewed, axis=1)
        self.full_cloud[kept_cells, 0:3] = deskewed
        self.full_cloud[kept_cells, 3] = scan.intensities[kept]

    def cloud_extraction(self) -> CloudInfo:
        """Compact occupied cells ring by ring into the output cloud."""
        info = self.cloud_info
        border = self.config.ring_border

        occupied = self.range_mat != FLT_MAX
        rows, cols = np.nonzero(occupied)
        counts = occupied.sum(axis=1)
        cum = np.cumsum(counts)

        info.header_time = self.time_scan_cur
        info.start_ring_index = (cum - counts) - 1 + border
        info.end_ring_index = cum - 1 - border
        info.point_col_ind = cols.astype(np.int64)
        info.point_range = self.range_mat[rows, cols]
        info.cloud_deskewed = self.full_cloud[rows * self.horizon_scan + cols]
        return info
