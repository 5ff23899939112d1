"""Numba JIT-compiled kernels for the per-point deskew loop.

Key targets:

1. find_rotation: rotation-table lookup with linear interpolation
2. rpy_to_matrix: roll/pitch/yaw to rotation matrix
3. deskew_points: re-express every point in the first point's frame
"""
import math
import numpy as np
from numba import njit


# ─────────────────────────────────────────────────────────────
#  Matrix operations (3x3)
# ─────────────────────────────────────────────────────────────

@njit(cache=True)
def mat3_mul(A, B):
    """3x3 matrix multiply."""
    C = np.empty((3, 3))
    for i in range(3):
        for j in range(3):
            s = 0.0
            for k in range(3):
                s += A[i, k] * B[k, j]
            C[i, j] = s
    return C


@njit(cache=True)
def mat3_vec3_mul(A, v):
    """3x3 @ 3-vector."""
    r = np.empty(3)
    for i in range(3):
        s = 0.0
        for j in range(3):
            s += A[i, j] * v[j]
        r[i] = s
    return r


@njit(cache=True)
def mat3_transpose(A):
    """Transpose of 3x3."""
    T = np.empty((3, 3))
    for i in range(3):
        for j in range(3):
            T[i, j] = A[j, i]
    return T


@njit(cache=True)
def rpy_to_matrix_jit(roll, pitch, yaw):
    """Rotation Rz(yaw) @ Ry(pitch) @ Rx(roll)."""
    cr = math.cos(roll)
    sr = math.sin(roll)
    cp = math.cos(pitch)
    sp = math.sin(pitch)
    cy = math.cos(yaw)
    sy = math.sin(yaw)
    R = np.empty((3, 3))
    R[0, 0] = cy * cp
    R[0, 1] = cy * sp * sr - sy * cr
    R[0, 2] = cy * sp * cr + sy * sr
    R[1, 0] = sy * cp
    R[1, 1] = sy * sp * sr + cy * cr
    R[1, 2] = sy * sp * cr - cy * sr
    R[2, 0] = -sp
    R[2, 1] = cp * sr
    R[2, 2] = cp * cr
    return R


# ─────────────────────────────────────────────────────────────
#  Rotation table lookup
# ─────────────────────────────────────────────────────────────

@njit(cache=True)
def find_rotation_jit(point_times, imu_time, imu_rot, pointer_cur):
    """Rotation increment at each query time.

    Scans forward to the first table entry later than the query. Between
    two entries the rotation is interpolated linearly; before the first
    or past the last entry the bracketing value is returned unchanged.

    Args:
        point_times: (N,) absolute query times.
        imu_time: (M,) table timestamps.
        imu_rot: (M, 3) accumulated roll/pitch/yaw increments.
        pointer_cur: Index of the last valid table entry.

    Returns:
        (N, 3) interpolated rotation increments.
    """
    n = point_times.shape[0]
    out = np.zeros((n, 3))
    for i in range(n):
        t = point_times[i]
        front = 0
        while front < pointer_cur:
            if t < imu_time[front]:
                break
            front += 1

        if t > imu_time[front] or front == 0 or imu_time[front] <= imu_time[front - 1]:
            for k in range(3):
                out[i, k] = imu_rot[front, k]
        else:
            back = front - 1
            span = imu_time[front] - imu_time[back]
            ratio_front = (t - imu_time[back]) / span
            ratio_back = (imu_time[front] - t) / span
            for k in range(3):
                out[i, k] = imu_rot[front, k] * ratio_front + imu_rot[back, k] * ratio_back
    return out


# ─────────────────────────────────────────────────────────────
#  Per-point deskew
# ─────────────────────────────────────────────────────────────

@njit(cache=True)
def deskew_points_jit(xyz, rot, pos):
    """Transform every point into the frame of the first point.

    Args:
        xyz: (N, 3) raw points.
        rot: (N, 3) roll/pitch/yaw increment at each point time.
        pos: (N, 3) translation increment at each point time.

    Returns:
        (N, 3) deskewed points. The first point is its own reference.
    """
    n = xyz.shape[0]
    out = np.empty((n, 3))
    if n == 0:
        return out

    R_start = rpy_to_matrix_jit(rot[0, 0], rot[0, 1], rot[0, 2])
    R_start_inv = mat3_transpose(R_start)
    p = np.empty(3)
    d = np.empty(3)

    for i in range(n):
        R_cur = rpy_to_matrix_jit(rot[i, 0], rot[i, 1], rot[i, 2])
        R_bt = mat3_mul(R_start_inv, R_cur)
        for k in range(3):
            d[k] = pos[i, k] - pos[0, k]
            p[k] = xyz[i, k]
        t_bt = mat3_vec3_mul(R_start_inv, d)
        q = mat3_vec3_mul(R_bt, p)
        for k in range(3):
            out[i, k] = q[k] + t_bt[k]
    return out


def warmup():
    """Compile all kernels with small dummy inputs."""
    t = np.zeros(2)
    table_t = np.array([0.0, 1.0])
    table_r = np.zeros((2, 3))
    rot = find_rotation_jit(t, table_t, table_r, 1)
    deskew_points_jit(np.zeros((2, 3)), rot, np.zeros((2, 3)))
