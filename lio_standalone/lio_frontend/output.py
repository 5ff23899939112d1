"""Trajectory and point cloud output writers.

Supports TUM format and CSV format for odometry and per-scan deskewed
clouds.
"""
import numpy as np

from .types import CloudInfo, ImuOdometry


def odometry_to_row(odom: ImuOdometry) -> tuple:
    """(timestamp, pos(3,), quat(4,) [qx, qy, qz, qw])."""
    return (odom.timestamp, np.asarray(odom.position), np.asarray(odom.orientation))


def write_tum(filepath: str, trajectory: list):
    """Write trajectory in TUM format.

    Args:
        filepath: Output file path.
        trajectory: List of (timestamp, pos(3,), quat(4,)) tuples.
                   Quaternion in [qx, qy, qz, qw] order.
    """
    with open(filepath, 'w') as f:
        for ts, pos, q in trajectory:
            f.write(f"{ts:.6f} {pos[0]:.6f} {pos[1]:.6f} {pos[2]:.6f} "
                    f"{q[0]:.6f} {q[1]:.6f} {q[2]:.6f} {q[3]:.6f}\n")


def write_odometry_csv(filepath: str, trajectory: list):
    """Write trajectory as CSV with header.

    Columns: timestamp,tx,ty,tz,qx,qy,qz,qw
    """
    with open(filepath, 'w') as f:
        f.write("timestamp,tx,ty,tz,qx,qy,qz,qw\n")
        for ts, pos, q in trajectory:
            f.write(f"{ts:.6f},{pos[0]:.6f},{pos[1]:.6f},{pos[2]:.6f},"
                    f"{q[0]:.6f},{q[1]:.6f},{q[2]:.6f},{q[3]:.6f}\n")


def write_trajectory(filepath: str, trajectory: list):
    """CSV for a .csv path, TUM otherwise."""
    if filepath.endswith('.csv'):
        write_odometry_csv(filepath, trajectory)
    else:
        write_tum(filepath, trajectory)


def write_scan_csv(filepath: str, info: CloudInfo):
    """Write one deskewed cloud as CSV.

    Columns: x,y,z,intensity,col,range
    """
    cloud = info.cloud_deskewed
    with open(filepath, 'w') as f:
        f.write("x,y,z,intensity,col,range\n")
        for i in range(len(cloud)):
            f.write(f"{cloud[i, 0]:.6f},{cloud[i, 1]:.6f},{cloud[i, 2]:.6f},"
                    f"{cloud[i, 3]:.1f},{int(info.point_col_ind[i])},"
                    f"{float(info.point_range[i]):.6f}\n")
