#!/usr/bin/env python3
"""Lidar-inertial front end, offline replay.

Replays a rosbag through scan deskewing and the IMU-preintegration
estimator.

Usage:
    python run.py my_scan.bag
    python run.py my_scan.bag --config custom.yaml
    python run.py my_scan.bag --output-dir results/
    python run.py my_scan.bag --sensor ouster --gravity

Outputs (all saved to --output-dir, default: same folder as bag):
    1. odometry.csv      - high-rate IMU odometry (timestamp, tx,ty,tz, qx,qy,qz,qw)
    2. deskewed_scans/   - per-scan deskewed clouds with column index and range (CSV)
"""
import argparse
import os
import sys
import time

# Add this directory to path so lio_frontend package is importable
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from lio_frontend.config import load_config, parse_sensor_type
from lio_frontend.pipeline import LIOFrontend


def main():
    parser = argparse.ArgumentParser(
        description='Lidar-inertial front end\n\n'
                    'Replay a rosbag and produce:\n'
                    '  1. High-rate IMU odometry CSV\n'
                    '  2. Deskewed per-scan point clouds',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('bag', help='Path to ROS1 .bag file')
    parser.add_argument('--config', default=None,
                        help='Path to YAML config file '
                             '(default: params.yaml in this folder)')
    parser.add_argument('--output-dir', default=None,
                        help='Output directory '
                             '(default: same folder as bag file)')
    parser.add_argument('--pointcloud-topic', default=None,
                        help='Override point cloud topic from config')
    parser.add_argument('--imu-topic', default=None,
                        help='Override IMU topic from config')
    parser.add_argument('--correction-topic', default=None,
                        help='Override correction odometry topic from config')
    parser.add_argument('--sensor', default=None,
                        help='Override sensor type (velodyne, ouster, livox, leishen)')
    parser.add_argument('--gravity', action='store_true',
                        help='Enable online gravity refinement')
    parser.add_argument('--skip-scans', action='store_true',
                        help='Skip saving per-scan deskewed point clouds')

    args = parser.parse_args()

    bag_path = os.path.abspath(args.bag)
    if not os.path.isfile(bag_path):
        print(f"Error: Bag file not found: {bag_path}")
        sys.exit(1)

    # Config
    if args.config:
        config_path = os.path.abspath(args.config)
    else:
        config_path = os.path.join(
            os.path.dirname(os.path.abspath(__file__)), 'params.yaml')

    if not os.path.isfile(config_path):
        print(f"Error: Config file not found: {config_path}")
        sys.exit(1)

    # Output directory
    if args.output_dir:
        out_dir = os.path.abspath(args.output_dir)
    else:
        out_dir = os.path.dirname(bag_path)
    os.makedirs(out_dir, exist_ok=True)

    odom_path = os.path.join(out_dir, 'odometry.csv')
    scan_dir = os.path.join(out_dir, 'deskewed_scans') if not args.skip_scans else None

    config = load_config(config_path)
    if args.pointcloud_topic:
        config.pointcloud_topic = args.pointcloud_topic
    if args.imu_topic:
        config.imu_topic = args.imu_topic
    if args.correction_topic:
        config.correction_topic = args.correction_topic
    if args.sensor:
        config.sensor = parse_sensor_type(args.sensor)
    if args.gravity:
        config.gravity.enabled = True

    print("=" * 60)
    print("  Lidar-Inertial Front End")
    print("=" * 60)
    print(f"  Bag:        {bag_path}")
    print(f"  Config:     {config_path}")
    print(f"  Output dir: {out_dir}")
    print(f"  Outputs:")
    print(f"    1. Odometry:        {odom_path}")
    if scan_dir:
        print(f"    2. Deskewed scans:  {scan_dir}/")
    else:
        print(f"    2. Deskewed scans:  (skipped)")
    print("=" * 60)

    t0 = time.time()
    frontend = LIOFrontend(config)
    frontend.run(bag_path, odom_path, scan_output_dir=scan_dir)

    total = time.time() - t0
    print("\n" + "=" * 60)
    print("  Pipeline Complete!")
    print("=" * 60)
    print(f"  Total time: {total:.1f}s ({total / 60:.1f} min)")
    print(f"\n  Outputs:")
    print(f"    1. {odom_path}")
    if scan_dir:
        n_scans = len([f for f in os.listdir(scan_dir)
                       if f.endswith('.csv')]) if os.path.isdir(scan_dir) else 0
        print(f"    2. {scan_dir}/ ({n_scans} scans)")
    print()


if __name__ == '__main__':
    main()
