"""Front-end wiring and offline replay.

The projector and the estimator are connected the way the message bus
connects them online: IMU samples go to both, corrections go to the
estimator, and every high-rate odometry the estimator publishes feeds the
projector's odometry queue for translational deskew.
"""
import os
import time

from tqdm import tqdm

from .bag_reader import read_bag
from .config import PipelineConfig
from .estimator import ImuPreintegration
from .numba_kernels import warmup as numba_warmup
from .output import odometry_to_row, write_scan_csv, write_trajectory
from .projection import ImageProjection
from .types import ImuOdometry, ImuSample, OdometrySample, RawScan


class LIOFrontend:
    """Deskew + IMU-preintegration front end."""

    def __init__(self, config: PipelineConfig, cloud_callback=None, odometry_callback=None):
        """
        Args:
            config: Front-end configuration.
            cloud_callback: Optional callable receiving each CloudInfo.
            odometry_callback: Optional callable receiving each ImuOdometry.
        """
        self.config = config
        self.cloud_callback = cloud_callback
        self.odometry_callback = odometry_callback
        self.projection = ImageProjection(config, publish=cloud_callback)
        self.estimator = ImuPreintegration(config, publish=self._on_imu_odometry)
        self.trajectory = []

    def _on_imu_odometry(self, odom: ImuOdometry):
        self.projection.odometry_handler(odom)
        self.trajectory.append(odometry_to_row(odom))
        if self.odometry_callback is not None:
            self.odometry_callback(odom)

    def imu_handler(self, imu: ImuSample):
        self.projection.imu_handler(imu)
        return self.estimator.imu_handler(imu)

    def cloud_handler(self, scan: RawScan) -> list:
        return self.projection.cloud_handler(scan)

    def correction_handler(self, odom: OdometrySample):
        self.estimator.odometry_handler(odom)

    def run(self, bag_path: str, output_path: str, scan_output_dir: str = None):
        """Replay a bag through the front end and write the results.

        Args:
            bag_path: Path to the .bag file.
            output_path: Path for the fast-path trajectory (.csv or TUM .txt).
            scan_output_dir: If set, save every deskewed cloud as CSV here.
        """
        if scan_output_dir:
            os.makedirs(scan_output_dir, exist_ok=True)
        print("[Pipeline] Compiling Numba JIT kernels...")
        numba_warmup()
        print("[Pipeline] JIT compilation complete.")

        print(f"[Pipeline] Reading bag: {bag_path}")
        print(f"[Pipeline] Point cloud topic: {self.config.pointcloud_topic}")
        print(f"[Pipeline] IMU topic: {self.config.imu_topic}")
        print(f"[Pipeline] Correction topic: {self.config.correction_topic}")
        print(f"[Pipeline] Sensor: {self.config.sensor.value}")

        messages = list(read_bag(bag_path, self.config.pointcloud_topic,
                                 self.config.imu_topic, self.config.correction_topic))
        n_scans = sum(1 for msg_type, _ in messages if msg_type == 'lidar')
        print(f"\n[Pipeline] Loaded {n_scans} scans, {len(messages) - n_scans} IMU/odometry messages")

        if n_scans == 0:
            print("[Pipeline] No point clouds found. Check topic name.")
            return

        scan_count = 0
        t_start = time.time()
        pbar = tqdm(messages, desc="Replaying", unit="msg", dynamic_ncols=True)
        for msg_type, data in pbar:
            if msg_type == 'imu':
                self.imu_handler(data)
            elif msg_type == 'odom':
                self.correction_handler(data)
            elif msg_type == 'lidar':
                for info in self.cloud_handler(data):
                    if scan_output_dir:
                        scan_csv = os.path.join(scan_output_dir, f"scan_{scan_count:06d}.csv")
                        write_scan_csv(scan_csv, info)
                    scan_count += 1
                    pbar.set_postfix(scans=scan_count, key=self.estimator.key)
        pbar.close()

        elapsed = time.time() - t_start
        print(f"\n[Pipeline] Done. {scan_count} deskewed scans in {elapsed:.1f}s")

        write_trajectory(output_path, self.trajectory)
        print(f"[Pipeline] Trajectory written to: {output_path} "
              f"({len(self.trajectory)} poses)")
