"""Online gravity-direction estimation over a window of corrections.

Each correction contributes (pose, preintegrated segment to the next
correction, world velocity). Once the window is full every new sample
pushes out the oldest one and triggers a fit over the newest entries:
poses become relative to the first entry, velocities are rotated into
each entry's own body frame and the solver recovers gravity in the body
frame at the window start.
"""
from collections import deque
from dataclasses import dataclass, field

import numpy as np

from .preintegration import PreintegratedImu
from .state import Pose3


@dataclass
class GravityFit:
    """Solver result. ``gravity`` points towards the ground."""
    success: bool = False
    gravity: np.ndarray = field(default_factory=lambda: np.zeros(3))
    residual_rms: float = 0.0


@dataclass
class GravitySample:
    pose: Pose3
    segment: PreintegratedImu
    velocity: np.ndarray


def solve_gravity_lsq(transforms: list, segments: list, velocities: list,
                      gravity_magnitude: float) -> GravityFit:
    """Linear least-squares gravity fit over consecutive window entries.

    For entries i and i+1 expressed in the window-start frame 0:

        g dt       = R_0,i+1 v_i+1 - R_0i v_i - R_0i dV_i
        0.5 g dt^2 = p_i+1 - p_i - R_0i v_i dt - R_0i dP_i

    where v_i is the velocity in body frame i and dV_i, dP_i are the
    preintegrated deltas of segment i.

    Args:
        transforms: Poses relative to the first entry.
        segments: Preintegrated segment starting at each entry.
        velocities: Body-frame velocity of each entry.
        gravity_magnitude: Known gravity norm.

    Returns:
        GravityFit with gravity scaled to the known magnitude.
    """
    n = min(len(transforms), len(segments), len(velocities))
    if n < 2:
        return GravityFit(success=False)

    A_blocks = []
    b_blocks = []
    for i in range(n - 1):
        dt = segments[i].delta_t
        if dt <= 0.0:
            continue
        T_i = transforms[i]
        T_j = transforms[i + 1]
        v_i = T_i.rot @ velocities[i]
        v_j = T_j.rot @ velocities[i + 1]

        A_blocks.append(np.eye(3) * dt)
        b_blocks.append(v_j - v_i - T_i.rot @ segments[i].delta_v)
        A_blocks.append(np.eye(3) * 0.5 * dt * dt)
        b_blocks.append(T_j.pos - T_i.pos - v_i * dt - T_i.rot @ segments[i].delta_p)

    if not A_blocks:
        return GravityFit(success=False)

    A = np.vstack(A_blocks)
    b = np.concatenate(b_blocks)
    g, *_ = np.linalg.lstsq(A, b, rcond=None)
    norm = np.linalg.norm(g)
    if not np.isfinite(norm) or norm < 1e-6:
        return GravityFit(success=False)

    g = g / norm * gravity_magnitude
    residual_rms = float(np.sqrt(np.mean((A @ g - b) ** 2)))
    return GravityFit(success=True, gravity=g, residual_rms=residual_rms)


class GravityEstimator:
    """Sliding window of correction samples with a sanity-checked gravity fit."""

    def __init__(self, window_size: int, gravity_magnitude: float,
                 tolerance: float = 0.5, solver=solve_gravity_lsq):
        self.window_size = window_size
        self.gravity_magnitude = gravity_magnitude
        self.tolerance = tolerance
        self.solver = solver
        self.samples = deque(maxlen=window_size + 1)
        self.valid = False
        self.gravity = None  # global frame, pointing down

    def reset(self):
        self.samples.clear()
        self.valid = False
        self.gravity = None

    def add_sample(self, pose: Pose3, segment: PreintegratedImu, velocity: np.ndarray):
        """Append a sample and solve once the oldest one has been pushed out."""
        overflow = len(self.samples) == self.samples.maxlen
        self.samples.append(GravitySample(pose.copy(), segment,
                                          np.array(velocity, dtype=np.float64)))
        if overflow:
            self.estimate()

    def estimate(self) -> bool:
        """Fit gravity over the current window and run the sanity check."""
        first = self.samples[0].pose
        transforms = [first.between(s.pose) for s in self.samples]
        segments = [s.segment for s in self.samples]
        velocities = [s.pose.rot.T @ s.velocity for s in self.samples]

        fit = self.solver(transforms, segments, velocities, self.gravity_magnitude)
        if not fit.success:
            self.valid = False
            print("[Gravity] Gravity fit failed")
            return False

        g_global = first.rot @ np.asarray(fit.gravity, dtype=np.float64)
        if g_global[2] + self.gravity_magnitude < self.tolerance:
            self.gravity = g_global
            self.valid = True
            print(f"[Gravity] Accepted gravity: [{g_global[0]:.4f}, {g_global[1]:.4f}, "
                  f"{g_global[2]:.4f}]")
        else:
            self.valid = False
            print(f"[Gravity] Rejected gravity: [{g_global[0]:.4f}, {g_global[1]:.4f}, "
                  f"{g_global[2]:.4f}]")
        return self.valid
