"""Dense monocular depth estimation along a known camera trajectory.

Each pixel of a reference image carries a Gaussian depth estimate (mean and
variance).  For every new image the pixel is searched for along its epipolar
line with zero-mean NCC, triangulated, and fused into the estimate.
Images are grayscale numpy arrays indexed ``[row, column]``; pixel
coordinates are ``(x, y)`` = ``(column, row)``.
"""

from __future__ import annotations

import argparse
import math
import time
from pathlib import Path
from typing import NamedTuple

import numpy as np
from PIL import Image

from slamkit.lie import SE3

BORDER = 20
WIDTH = 640
HEIGHT = 480
FX = 481.2
FY = -480.0
CX = 319.5
CY = 239.5
NCC_WINDOW_SIZE = 3
NCC_AREA = (2 * NCC_WINDOW_SIZE + 1) ** 2
MIN_COV = 0.1
MAX_COV = 10.0

INIT_DEPTH = 3.0
INIT_COV2 = 3.0
NCC_THRESHOLD = float(np.float32(0.85))
SEARCH_STEP = 0.7
MAX_HALF_LENGTH = 100.0
MIN_SEARCH_DEPTH = 0.1

TRAJECTORY_FILE = "first_200_frames_traj_over_table_input_sequence.txt"
REFERENCE_DEPTH_FILE = "depthmaps/scene_000.depth"

_OFFSETS = np.arange(-NCC_WINDOW_SIZE, NCC_WINDOW_SIZE + 1)
_WIN_X, _WIN_Y = (g.reshape(-1) for g in np.meshgrid(_OFFSETS, _OFFSETS, indexing="ij"))


class DepthError(NamedTuple):
    """Error of an estimated depth map against the truth, inside the border."""

    mean_squared_error: float
    mean_error: float


class DenseDataset(NamedTuple):
    """Image paths, camera-to-world poses and the reference depth map."""

    image_files: list
    poses: list
    ref_depth: np.ndarray


def _point(pt) -> np.ndarray:
    arr = np.asarray(pt, dtype=float).reshape(-1)
    if arr.shape != (2,):
        raise ValueError(f"expected a 2D point, got shape {np.shape(pt)}")
    return arr


def _normalized(v: np.ndarray) -> np.ndarray:
    n = float(np.linalg.norm(v))
    return v / n if n > 0.0 else v


def px2cam(px) -> np.ndarray:
    """Pixel to a point on the normalised image plane (z = 1)."""
    x, y = _point(px)
    return np.array([(x - CX) / FX, (y - CY) / FY, 1.0])


def cam2px(p_cam) -> np.ndarray:
    """Camera-frame point to pixel."""
    p = np.asarray(p_cam, dtype=float).reshape(-1)
    if p.shape != (3,):
        raise ValueError(f"expected a 3D point, got shape {np.shape(p_cam)}")
    return np.array([p[0] * FX / p[2] + CX, p[1] * FY / p[2] + CY])


def inside(pt) -> bool:
    """Whether a pixel lies inside the image, away from the border."""
    x, y = _point(pt)
    return x >= BORDER and y >= BORDER and x + BORDER < WIDTH and y + BORDER <= HEIGHT


def _bilinear_many(image: np.ndarray, xs: np.ndarray, ys: np.ndarray) -> np.ndarray:
    ix = np.floor(xs).astype(int)
    iy = np.floor(ys).astype(int)
    rows, cols = image.shape[:2]
    if np.any(ix < 0) or np.any(iy < 0) or np.any(ix + 1 >= cols) or np.any(iy + 1 >= rows):
        raise IndexError("interpolation point outside the image")
    xx = xs - ix
    yy = ys - iy
    img = image.astype(float)
    value = (
        (1 - xx) * (1 - yy) * img[iy, ix]
        + xx * (1 - yy) * img[iy, ix + 1]
        + (1 - xx) * yy * img[iy + 1, ix]
        + xx * yy * img[iy + 1, ix + 1]
    )
    return value / 255.0


def bilinear(image, pt) -> float:
    """Bilinearly interpolated intensity at ``pt``, scaled to [0, 1]."""
    x, y = _point(pt)
    img = np.asarray(image)
    return float(_bilinear_many(img, np.array([x]), np.array([y]))[0])


def ncc(ref, curr, pt_ref, pt_curr) -> float:
    """Zero-mean normalised cross-correlation of the windows around two pixels."""
    ref = np.asarray(ref)
    curr = np.asarray(curr)
    pr = _point(pt_ref)
    pc = _point(pt_curr)
    rows = (_WIN_Y + pr[1]).astype(int)
    cols = (_WIN_X + pr[0]).astype(int)
    values_ref = ref[rows, cols].astype(float) / 255.0
    values_curr = _bilinear_many(curr, pc[0] + _WIN_X, pc[1] + _WIN_Y)
    dr = values_ref - values_ref.sum() / NCC_AREA
    dc = values_curr - values_curr.sum() / NCC_AREA
    numerator = float(dr @ dc)
    return numerator / math.sqrt(float(dr @ dr) * float(dc @ dc) + 1e-10)


def epipolar_search(ref, curr, T_C_R: SE3, pt_ref, depth_mu, depth_cov):
    """Search the epipolar line of ``pt_ref`` in ``curr`` for its best match.

    ``depth_cov`` is the standard deviation of the depth.  Returns
    ``(pt_curr, epipolar_direction)``, or None when no match scores
    at least the NCC threshold.
    """
    pt_ref = _point(pt_ref)
    f_ref = _normalized(px2cam(pt_ref))
    px_mean_curr = cam2px(T_C_R * (f_ref * depth_mu))
    d_min = max(depth_mu - 3 * depth_cov, MIN_SEARCH_DEPTH)
    d_max = depth_mu + 3 * depth_cov
    px_min_curr = cam2px(T_C_R * (f_ref * d_min))
    px_max_curr = cam2px(T_C_R * (f_ref * d_max))

    epipolar_line = px_max_curr - px_min_curr
    direction = _normalized(epipolar_line)
    half_length = min(0.5 * float(np.linalg.norm(epipolar_line)), MAX_HALF_LENGTH)

    best_ncc = -1.0
    best_px = None
    step = -half_length
    while step <= half_length:
        px_curr = px_mean_curr + step * direction
        step += SEARCH_STEP
        if not inside(px_curr):
            continue
        score = ncc(ref, curr, pt_ref, px_curr)
        if score > best_ncc:
            best_ncc = score
            best_px = px_curr
    if best_ncc < NCC_THRESHOLD:
        return None
    return best_px, direction


def update_depth_filter(pt_ref, pt_curr, T_C_R: SE3, epipolar_direction, depth, depth_cov2):
    """Triangulate a match and fuse it into the depth maps in place.

    Returns the fused ``(mean, variance)`` of the pixel.
    """
    pt_ref = _point(pt_ref)
    pt_curr = _point(pt_curr)
    T_R_C = T_C_R.inverse()
    f_ref = _normalized(px2cam(pt_ref))
    f_curr = _normalized(px2cam(pt_curr))

    t = T_R_C.translation
    f2 = T_R_C.so3 * f_curr
    b = np.array([t @ f_ref, t @ f2])
    A = np.array([[f_ref @ f_ref, -(f_ref @ f2)], [f_ref @ f2, -(f2 @ f2)]])
    ans = np.linalg.solve(A, b)
    xm = ans[0] * f_ref
    xn = t + ans[1] * f2
    depth_estimation = float(np.linalg.norm((xm + xn) / 2.0))

    t_norm = float(np.linalg.norm(t))
    alpha = math.acos(float(np.clip(f_ref @ t / t_norm, -1.0, 1.0)))
    f_curr_prime = _normalized(px2cam(pt_curr + _point(epipolar_direction)))
    beta_prime = math.acos(float(np.clip(f_curr_prime @ -t / t_norm, -1.0, 1.0)))
    gamma = math.pi - alpha - beta_prime
    p_prime = t_norm * math.sin(beta_prime) / math.sin(gamma)
    d_cov2 = (p_prime - depth_estimation) ** 2

    row, col = int(pt_ref[1]), int(pt_ref[0])
    mu = depth[row, col]
    sigma2 = depth_cov2[row, col]
    mu_fuse = (d_cov2 * mu + sigma2 * depth_estimation) / (sigma2 + d_cov2)
    sigma_fuse2 = (sigma2 * d_cov2) / (sigma2 + d_cov2)
    depth[row, col] = mu_fuse
    depth_cov2[row, col] = sigma_fuse2
    return float(mu_fuse), float(sigma_fuse2)


def update(ref, curr, T_C_R: SE3, depth, depth_cov2) -> int:
    """Update every unconverged pixel of the depth maps in place.

    Returns the number of pixels that found a match and were fused.
    """
    if depth.shape != (HEIGHT, WIDTH) or depth_cov2.shape != (HEIGHT, WIDTH):
        raise ValueError(f"depth maps must have shape {(HEIGHT, WIDTH)}")
    mask = np.zeros((HEIGHT, WIDTH), dtype=bool)
    region = (slice(BORDER, HEIGHT - BORDER), slice(BORDER, WIDTH - BORDER))
    cov = depth_cov2[region]
    mask[region] = (cov >= MIN_COV) & (cov <= MAX_COV)

    updated = 0
    for x, y in np.argwhere(mask.T):
        pt_ref = np.array([float(x), float(y)])
        match = epipolar_search(
            ref, curr, T_C_R, pt_ref, depth[y, x], math.sqrt(depth_cov2[y, x])
        )
        if match is None:
            continue
        pt_curr, direction = match
        update_depth_filter(pt_ref, pt_curr, T_C_R, direction, depth, depth_cov2)
        updated += 1
    return updated


def evaluate_depth(depth_truth, depth_estimate) -> DepthError:
    """Mean squared and mean error of the estimate inside the border."""
    truth = np.asarray(depth_truth, dtype=float)
    estimate = np.asarray(depth_estimate, dtype=float)
    if truth.shape != estimate.shape or truth.ndim != 2:
        raise ValueError("depth maps must be 2D arrays of the same shape")
    rows, cols = truth.shape
    if rows <= 2 * BORDER or cols <= 2 * BORDER:
        raise ValueError("depth maps are smaller than the border")
    region = (slice(BORDER, rows - BORDER), slice(BORDER, cols - BORDER))
    error = truth[region] - estimate[region]
    return DepthError(float(np.mean(error * error)), float(np.mean(error)))


def read_dataset(path) -> DenseDataset:
    """Read image names, camera-to-world poses and the reference depth map."""
    root = Path(path)
    image_files = []
    poses = []
    with open(root / TRAJECTORY_FILE, encoding="utf-8") as stream:
        for number, line in enumerate(stream, start=1):
            fields = line.split()
            if not fields:
                continue
            if len(fields) != 8:
                raise ValueError(f"line {number}: expected 8 fields, got {len(fields)}")
            tx, ty, tz, qx, qy, qz, qw = (float(f) for f in fields[1:])
            image_files.append(root / "images" / fields[0])
            poses.append(SE3.from_quaternion(qw, qx, qy, qz, (tx, ty, tz)))

    with open(root / REFERENCE_DEPTH_FILE, encoding="utf-8") as stream:
        values = stream.read().split()
    needed = HEIGHT * WIDTH
    if len(values) < needed:
        raise ValueError(f"reference depth holds {len(values)} values, expected {needed}")
    ref_depth = np.array([float(v) for v in values[:needed]]).reshape(HEIGHT, WIDTH) / 100.0
    return DenseDataset(image_files, poses, ref_depth)


def _load_gray(path) -> np.ndarray:
    with Image.open(path) as img:
        return np.asarray(img.convert("L"))


def main(argv=None) -> int:
    """Estimate the depth of the first image of a dataset and save it."""
    parser = argparse.ArgumentParser(
        prog="slamkit-dense-mapping",
        description="Dense monocular depth estimation with epipolar search and NCC.",
    )
    parser.add_argument("dataset", help="path to the test dataset")
    parser.add_argument("--output", default="depth.png")
    args = parser.parse_args(argv)

    try:
        dataset = read_dataset(args.dataset)
        ref = _load_gray(dataset.image_files[0])
    except (OSError, ValueError, IndexError):
        print("Reading image files failed!")
        return 1
    print(f"read total {len(dataset.image_files)} files.")

    pose_ref_TWC = dataset.poses[0]
    depth = np.full((HEIGHT, WIDTH), INIT_DEPTH)
    depth_cov2 = np.full((HEIGHT, WIDTH), INIT_COV2)

    for index in range(1, len(dataset.image_files)):
        print(f"*** loop {index} ***")
        try:
            curr = _load_gray(dataset.image_files[index])
        except OSError:
            continue
        T_C_R = dataset.poses[index].inverse() * pose_ref_TWC
        start = time.perf_counter()
        update(ref, curr, T_C_R, depth, depth_cov2)
        err = evaluate_depth(dataset.ref_depth, depth)
        print(
            f"Average squared error = {err.mean_squared_error:g}, "
            f"average error: {err.mean_error:g} "
            f"({time.perf_counter() - start:.3f} s)"
        )

    print("estimation returns, saving depth map ...")
    Image.fromarray(np.clip(np.rint(depth), 0, 255).astype(np.uint8)).save(args.output)
    print("done.")
    return 0