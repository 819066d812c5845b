"""Linear triangulation and the pinhole stereo camera model."""

from __future__ import annotations

import numpy as np

from slamkit.lie import SE3

_GOOD_RATIO = 1e-2


def _vec(v, size: int) -> np.ndarray:
    arr = np.asarray(v, dtype=float).reshape(-1)
    if arr.shape != (size,):
        raise ValueError(f"expected a vector of length {size}, got shape {np.shape(v)}")
    return arr


def triangulation(poses, points):
    """Triangulate a world point from its normalised-plane observations.

    ``poses`` are world-to-camera transforms and ``points`` the matching
    observations ``(x, y, 1)``.  Returns the point, or None when the smallest
    singular value is not clearly smaller than the next one.
    """
    poses = list(poses)
    pts = [np.asarray(p, dtype=float).reshape(-1) for p in points]
    if len(poses) != len(pts):
        raise ValueError("poses and points must have the same length")
    if len(poses) < 2:
        raise ValueError("at least two observations are needed")
    rows = []
    for pose, pt in zip(poses, pts):
        if pt.shape[0] < 2:
            raise ValueError("each point needs at least two coordinates")
        m = pose.matrix3x4()
        rows.append(pt[0] * m[2] - m[0])
        rows.append(pt[1] * m[2] - m[1])
    _, singular, vt = np.linalg.svd(np.array(rows), full_matrices=False)
    v = vt[3]
    if v[3] == 0.0 or singular[2] == 0.0:
        return None
    if singular[3] / singular[2] < _GOOD_RATIO:
        return (v / v[3])[:3]
    return None


def to_vec2(point) -> np.ndarray:
    """A 2D point, given as a pair or as an object with ``x`` and ``y``."""
    if hasattr(point, "x") and hasattr(point, "y"):
        return np.array([float(point.x), float(point.y)])
    return _vec(point, 2)


class Camera:
    """Pinhole camera of a stereo rig.

    ``pose`` is the extrinsic transform from the rig frame to this camera.
    """

    def __init__(self, fx=0.0, fy=0.0, cx=0.0, cy=0.0, baseline=0.0, pose=None):
        self.fx = float(fx)
        self.fy = float(fy)
        self.cx = float(cx)
        self.cy = float(cy)
        self.baseline = float(baseline)
        self.pose = SE3() if pose is None else pose
        self.pose_inv = self.pose.inverse()

    def intrinsic_matrix(self) -> np.ndarray:
        return np.array(
            [[self.fx, 0.0, self.cx], [0.0, self.fy, self.cy], [0.0, 0.0, 1.0]]
        )

    def world2camera(self, p_w, T_c_w: SE3) -> np.ndarray:
        return self.pose * (T_c_w * _vec(p_w, 3))

    def camera2world(self, p_c, T_c_w: SE3) -> np.ndarray:
        return T_c_w.inverse() * (self.pose_inv * _vec(p_c, 3))

    def camera2pixel(self, p_c) -> np.ndarray:
        x, y, z = _vec(p_c, 3)
        return np.array([self.fx * x / z + self.cx, self.fy * y / z + self.cy])

    def pixel2camera(self, p_p, depth=1.0) -> np.ndarray:
        u, v = _vec(p_p, 2)
        return np.array(
            [(u - self.cx) * depth / self.fx, (v - self.cy) * depth / self.fy, depth]
        )

    def world2pixel(self, p_w, T_c_w: SE3) -> np.ndarray:
        return self.camera2pixel(self.world2camera(p_w, T_c_w))

    def pixel2world(self, p_p, T_c_w: SE3, depth=1.0) -> np.ndarray:
        return self.camera2world(self.pixel2camera(p_p, depth), T_c_w)

    def __repr__(self) -> str:
        return (
            f"Camera(fx={self.fx}, fy={self.fy}, cx={self.cx}, cy={self.cy}, "
            f"baseline={self.baseline})"
        )