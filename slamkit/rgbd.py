"""Image undistortion and point clouds from RGB-D and stereo images.

Images are numpy arrays indexed ``[row, column]``; colour images are RGB.
Point clouds are ``N x k`` arrays whose first three columns are x, y, z.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from scipy.spatial import cKDTree

from slamkit.lie import SE3


@dataclass(frozen=True)
class CameraIntrinsics:
    """Pinhole camera intrinsics."""

    fx: float
    fy: float
    cx: float
    cy: float


def undistort_image(image, intrinsics: CameraIntrinsics, k1, k2, p1, p2) -> np.ndarray:
    """Remove radial-tangential distortion with nearest-neighbour sampling.

    Pixels whose source falls outside the image are set to zero.
    """
    img = np.asarray(image)
    if img.ndim != 2:
        raise ValueError("expected a single-channel image")
    rows, cols = img.shape
    fx, fy, cx, cy = intrinsics.fx, intrinsics.fy, intrinsics.cx, intrinsics.cy
    v, u = np.mgrid[0:rows, 0:cols].astype(float)
    x = (u - cx) / fx
    y = (v - cy) / fy
    r2 = x * x + y * y
    radial = 1 + k1 * r2 + k2 * r2 * r2
    x_d = x * radial + 2 * p1 * x * y + p2 * (r2 + 2 * x * x)
    y_d = y * radial + p1 * (r2 + 2 * y * y) + 2 * p2 * x * y
    u_d = fx * x_d + cx
    v_d = fy * y_d + cy
    valid = (u_d >= 0) & (v_d >= 0) & (u_d < cols) & (v_d < rows)
    out = np.zeros_like(img)
    out[valid] = img[v_d[valid].astype(int), u_d[valid].astype(int)]
    return out


def read_poses(path, count=5) -> list[SE3]:
    """Read ``count`` poses given as ``tx ty tz qx qy qz qw`` from a text file."""
    with open(path, encoding="utf-8") as stream:
        values = stream.read().split()
    needed = 7 * count
    if len(values) < needed:
        raise ValueError(f"expected {needed} values for {count} poses, got {len(values)}")
    data = np.array([float(v) for v in values[:needed]]).reshape(count, 7)
    return [SE3.from_quaternion(d[6], d[3], d[4], d[5], d[:3]) for d in data]


def depth_to_points(depth, color, intrinsics: CameraIntrinsics, depth_scale, pose=None) -> np.ndarray:
    """Back-project every pixel with non-zero depth into the world frame.

    Returns ``x y z r g b`` rows, or ``x y z`` rows when ``color`` is None.
    """
    d = np.asarray(depth)
    if d.ndim != 2:
        raise ValueError("depth must be a 2D array")
    if depth_scale <= 0:
        raise ValueError("depth scale must be positive")
    v, u = np.nonzero(d)
    z = d[v, u].astype(float) / depth_scale
    x = (u - intrinsics.cx) * z / intrinsics.fx
    y = (v - intrinsics.cy) * z / intrinsics.fy
    points = np.column_stack((x, y, z))
    if pose is not None:
        points = pose * points if len(points) else points
    if color is None:
        return points
    c = np.asarray(color)
    if c.shape[:2] != d.shape or c.ndim != 3 or c.shape[2] < 3:
        raise ValueError("color must be an RGB image of the same size as depth")
    rgb = c[v, u, :3].astype(float)
    return np.column_stack((points, rgb))


def join_rgbd(colors, depths, poses, intrinsics: CameraIntrinsics, depth_scale) -> np.ndarray:
    """Merge the point clouds of several posed RGB-D frames."""
    colors, depths, poses = list(colors), list(depths), list(poses)
    if not (len(colors) == len(depths) == len(poses)):
        raise ValueError("colors, depths and poses must have the same length")
    clouds = [
        depth_to_points(d, c, intrinsics, depth_scale, p)
        for c, d, p in zip(colors, depths, poses)
    ]
    if not clouds:
        return np.empty((0, 6))
    return np.vstack(clouds)


def stereo_point_cloud(left, disparity, intrinsics: CameraIntrinsics, baseline, max_disparity=96.0) -> np.ndarray:
    """Points ``x y z intensity`` from a disparity map; intensity is in [0, 1]."""
    img = np.asarray(left)
    disp = np.asarray(disparity, dtype=float)
    if img.shape != disp.shape or img.ndim != 2:
        raise ValueError("left image and disparity must be 2D arrays of the same shape")
    v, u = np.nonzero((disp > 0.0) & (disp < max_disparity))
    depth = intrinsics.fx * baseline / disp[v, u]
    x = (u - intrinsics.cx) / intrinsics.fx * depth
    y = (v - intrinsics.cy) / intrinsics.fy * depth
    return np.column_stack((x, y, depth, img[v, u].astype(float) / 255.0))


def statistical_outlier_removal(points, mean_k=50, std_mul=1.0) -> np.ndarray:
    """Drop points whose mean distance to their ``mean_k`` nearest neighbours is
    more than ``std_mul`` standard deviations above the average of that distance."""
    pts = np.asarray(points, dtype=float)
    if mean_k < 1:
        raise ValueError("mean_k must be at least 1")
    n = len(pts)
    if n < 2:
        return pts.copy()
    k = min(mean_k, n - 1)
    tree = cKDTree(pts[:, :3])
    distances, _ = tree.query(pts[:, :3], k=k + 1)
    mean_dist = distances[:, 1:].mean(axis=1)
    threshold = mean_dist.mean() + std_mul * mean_dist.std(ddof=1)
    return pts[mean_dist <= threshold]


def voxel_filter(points, resolution) -> np.ndarray:
    """Replace the points in each cubic voxel by their centroid (all columns)."""
    if resolution <= 0:
        raise ValueError("resolution must be positive")
    pts = np.asarray(points, dtype=float)
    if len(pts) == 0:
        return pts.copy()
    keys = np.floor(pts[:, :3] / resolution).astype(np.int64)
    _, inverse, counts = np.unique(keys, axis=0, return_inverse=True, return_counts=True)
    inverse = inverse.reshape(-1)
    sums = np.zeros((len(counts), pts.shape[1]))
    np.add.at(sums, inverse, pts)
    return sums / counts[:, None]